"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import json
import logging as py_logging
import sys
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, TextIO

from .api import Result, ServerDeckApi
from .config import AppConfig, load_config
from .download.models import CoreType, ProgressSnapshot
from .errors import ErrorKind, ExitCode, ServerDeckError, exit_code_for, user_facing_error
from .events import DOWNLOAD_PROGRESS, LOG, SERVER_READY, STATUS_CHANGED, TUNNEL_INFO_UPDATED
from .instances.orchestrator import InstanceOrchestrator
from .logging import configure_logging, default_log_path

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
_CORE_CHOICES = tuple(item.value for item in CoreType)
_TERMINAL_STATUSES = {"stopped", "crashed", "deleted"}
_EVENT_POLL_SECONDS = 0.5

ApiFactory = Callable[[AppConfig], ServerDeckApi]


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _port_type(value: str) -> int:
    try:
        port = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("--port must be an integer") from exc
    if port < 1 or port > 65535:
        raise argparse.ArgumentTypeError("--port must be between 1 and 65535")
    return port


def _memory_type(value: str) -> int:
    try:
        megabytes = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("memory must be an integer number of MiB") from exc
    if megabytes < 256:
        raise argparse.ArgumentTypeError("memory must be at least 256 MiB")
    return megabytes


def _major_type(value: str) -> int:
    try:
        major = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Java major version must be an integer") from exc
    if major < 8:
        raise argparse.ArgumentTypeError("Java major version must be 8 or newer")
    return major


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="serverdeck")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--log-level", type=_log_level_type, default="WARN")
    parser.add_argument("--log-file", type=Path, default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    versions = commands.add_parser("versions", help="List available game versions")
    versions.add_argument("core", choices=_CORE_CHOICES)

    builds = commands.add_parser("builds", help="List builds for a game version")
    builds.add_argument("core", choices=_CORE_CHOICES)
    builds.add_argument("version")

    java = commands.add_parser("java", help="Inspect and install Java runtimes")
    java_commands = java.add_subparsers(dest="java_command", required=True)
    java_commands.add_parser("detect", help="Scan this machine for Java runtimes")
    java_install = java_commands.add_parser("install", help="Install a managed Java runtime")
    java_install.add_argument("major", type=_major_type)
    java_required = java_commands.add_parser("required", help="Java major version a game version needs")
    java_required.add_argument("version")

    create = commands.add_parser("create", help="Create and provision an instance")
    create.add_argument("name")
    create.add_argument("version")
    create.add_argument("--core", choices=_CORE_CHOICES, default=CoreType.VANILLA.value)
    create.add_argument("--build", default=None)
    create.add_argument("--port", type=_port_type, default=None)
    create.add_argument("--ram-min", type=_memory_type, default=None)
    create.add_argument("--ram-max", type=_memory_type, default=None)
    create.add_argument("--jvm-arg", action="append", default=[], dest="jvm_args")
    create.add_argument("--java-path", default=None)
    create.add_argument("--auto-restart", action="store_true")

    commands.add_parser("list", help="List instances")

    for name, help_text in (
        ("start", "Start an instance and stay attached until it exits"),
        ("stop", "Stop a running instance"),
        ("delete", "Delete an instance and its files"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("instance")
        if name == "stop":
            sub.add_argument("--force", action="store_true")
            sub.add_argument("--timeout", type=float, default=None)

    send = commands.add_parser("send", help="Send a console command to a running instance")
    send.add_argument("instance")
    send.add_argument("text", nargs="+")

    run_cmd = commands.add_parser("run", help="Start an instance and stream its console")
    run_cmd.add_argument("instance")
    run_cmd.add_argument("--tunnel", action="store_true", help="Open a playit tunnel once the server is ready")

    tunnel = commands.add_parser("tunnel", help="Manage playit tunnels")
    tunnel_commands = tunnel.add_subparsers(dest="tunnel_command", required=True)
    for name in ("create", "start", "stop", "delete"):
        sub = tunnel_commands.add_parser(name)
        sub.add_argument("instance")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def _default_api(config: AppConfig) -> ServerDeckApi:
    return ServerDeckApi(config, orchestrator=InstanceOrchestrator(config, background=False))


def emit(result: Result, stream: TextIO | None = None) -> int:
    print(json.dumps(result.to_dict(), indent=2, sort_keys=True), file=stream or sys.stdout)
    if result.success:
        return int(ExitCode.SUCCESS)
    return int(exit_code_for(result.error_kind or ErrorKind.UNKNOWN))


def _print_progress(snapshot: ProgressSnapshot) -> None:
    percentage = snapshot.percentage
    label = f"{percentage:5.1f}%" if percentage is not None else f"{snapshot.downloaded} bytes"
    print(f"download {label}", file=sys.stderr)


def _format_event(payload: dict[str, Any]) -> str | None:
    topic = payload.get("topic")
    if topic == LOG:
        return str(payload.get("line", ""))
    if topic == STATUS_CHANGED:
        return f"[serverdeck] status: {payload.get('status')}"
    if topic == SERVER_READY:
        return "[serverdeck] server is ready"
    if topic == DOWNLOAD_PROGRESS:
        total = payload.get("total")
        return f"[serverdeck] {payload.get('phase')} download {payload.get('downloaded')}/{total or '?'}"
    if topic == TUNNEL_INFO_UPDATED:
        record = payload.get("record") or {}
        if record.get("claim_url") and not record.get("public_address"):
            return f"[serverdeck] approve the tunnel at {record['claim_url']}"
        if record.get("public_address"):
            return f"[serverdeck] public address: {record['public_address']}:{record.get('public_port')}"
    return None


def _forward_stdin(api: ServerDeckApi, instance_id: str, stdin: TextIO, done: threading.Event) -> None:
    for line in stdin:
        if done.is_set():
            return
        text = line.strip()
        if text:
            api.send_command(instance_id, text)


def attach(
    api: ServerDeckApi,
    instance_id: str,
    *,
    stream_logs: bool,
    open_tunnel: bool = False,
    stdin: TextIO | None = None,
    out: TextIO | None = None,
) -> int:
    """Start ``instance_id`` and block until it exits; Ctrl+C stops it gracefully."""
    out = out or sys.stdout
    subscription = api.subscribe()
    done = threading.Event()
    result = api.start_instance(instance_id)
    if not result.success:
        subscription.unsubscribe()
        return emit(result, out)
    if stream_logs and stdin is not None:
        threading.Thread(target=_forward_stdin, args=(api, instance_id, stdin, done), daemon=True).start()
    final = result
    try:
        while True:
            event = subscription.get(timeout=_EVENT_POLL_SECONDS)
            if event is None or event.instance_id != instance_id:
                continue
            payload = event.to_dict()
            if stream_logs:
                rendered = _format_event(payload)
                if rendered is not None:
                    print(rendered, file=out, flush=True)
            if event.topic == SERVER_READY and open_tunnel:
                api.create_tunnel(instance_id)
                threading.Thread(target=api.start_tunnel, args=(instance_id,), daemon=True).start()
            if event.topic == STATUS_CHANGED and payload.get("status") in _TERMINAL_STATUSES:
                final = api.get_instance(instance_id)
                break
    except KeyboardInterrupt:
        print("[serverdeck] stopping...", file=sys.stderr)
        final = api.stop_instance(instance_id)
    finally:
        done.set()
        subscription.unsubscribe()
    return emit(final, out)


def run_command(api: ServerDeckApi, namespace: argparse.Namespace) -> int:
    command = namespace.command
    if command == "versions":
        return emit(api.list_versions(namespace.core))
    if command == "builds":
        return emit(api.list_builds(namespace.core, namespace.version))
    if command == "java":
        if namespace.java_command == "detect":
            return emit(api.detect_java())
        if namespace.java_command == "install":
            return emit(api.install_java(namespace.major, on_progress=_print_progress))
        return emit(api.required_java(namespace.version))

    loaded = api.load_instances()
    if not loaded.success:
        return emit(loaded)
    if command == "create":
        request = {
            "name": namespace.name,
            "version": namespace.version,
            "core_type": namespace.core,
            "build": namespace.build,
            "port": namespace.port,
            "ram_min": namespace.ram_min,
            "ram_max": namespace.ram_max,
            "jvm_args": namespace.jvm_args,
            "java_path": namespace.java_path,
            "auto_restart": namespace.auto_restart,
        }
        return emit(api.create_instance(request))
    if command == "list":
        return emit(api.list_instances())
    if command == "start":
        return attach(api, namespace.instance, stream_logs=False)
    if command == "run":
        return attach(api, namespace.instance, stream_logs=True, open_tunnel=namespace.tunnel, stdin=sys.stdin)
    if command == "stop":
        return emit(api.stop_instance(namespace.instance, force=namespace.force, timeout=namespace.timeout))
    if command == "delete":
        return emit(api.delete_instance(namespace.instance))
    if command == "send":
        return emit(api.send_command(namespace.instance, " ".join(namespace.text)))
    if command == "tunnel":
        actions = {
            "create": api.create_tunnel,
            "start": api.start_tunnel,
            "stop": api.stop_tunnel,
            "delete": api.delete_tunnel,
        }
        return emit(actions[namespace.tunnel_command](namespace.instance))
    raise ServerDeckError(f"Unknown command: {command}", kind=ErrorKind.INVALID_REQUEST)


def main(
    argv: Sequence[str] | None = None,
    *,
    api_factory: ApiFactory | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(level="WARN", log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)

    api: ServerDeckApi | None = None
    try:
        config = load_config(namespace.config)
        api = (api_factory or _default_api)(config)
        logger.debug("Running command=%s", namespace.command)
        return run_command(api, namespace)
    except ServerDeckError as exc:
        logger.error(
            "Handled ServerDeckError (kind=%s): %s",
            exc.kind.value,
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.exit_code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        print(user_facing_error("Unexpected runtime failure", hint=f"Inspect logs: {log_path}"), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)
    finally:
        if api is not None:
            api.shutdown()


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
