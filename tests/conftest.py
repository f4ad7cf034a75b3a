from __future__ import annotations

import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from serverdeck.events import Event, Subscription

_SECURITY_TEST_FILES = {
    "test_tunnel_manager.py",
    "test_java_installer.py",
    "test_instance_store.py",
}


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(getattr(item, "path", item.fspath)))
        name = path.name

        if "integration" in path.parts:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)

        if name in _SECURITY_TEST_FILES:
            item.add_marker(pytest.mark.security)


STANDIN_SERVER = '''
import sys
import time

mode = sys.argv[1] if len(sys.argv) > 1 else "normal"
print("[12:00:00] [Server thread/INFO]: Starting minecraft server version 1.20.4", flush=True)
print("[12:00:01] [Server thread/WARN]: Using default server.properties", flush=True)
sys.stderr.write("Exception in thread \\"worker\\": simulated\\n")
sys.stderr.flush()
if mode == "crash-on-start":
    sys.exit(3)
print('[12:00:02] [Server thread/INFO]: Done (1.234s)! For help, type "help"', flush=True)
for line in sys.stdin:
    command = line.strip()
    if command == "stop":
        if mode == "ignore-stop":
            continue
        print("[12:00:03] [Server thread/INFO]: Stopping server", flush=True)
        sys.exit(0)
    if command == "exit":
        sys.exit(0)
    if command == "crash":
        sys.exit(3)
    print(f"[12:00:03] [Server thread/INFO]: echo {command}", flush=True)
if mode == "ignore-stop":
    time.sleep(60)
'''


class StandinSpawn:
    """Process spawn hook that runs a small Python stand-in for the JVM."""

    def __init__(self, script: Path, mode: str) -> None:
        self.script = script
        self.mode = mode
        self.commands: list[list[str]] = []

    def __call__(self, command: list[str], cwd: Path) -> subprocess.Popen[bytes]:
        self.commands.append(list(command))
        return subprocess.Popen(
            [sys.executable, "-u", str(self.script), self.mode],
            cwd=str(cwd),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )


@pytest.fixture
def standin_spawn(tmp_path: Path) -> Callable[..., StandinSpawn]:
    script = tmp_path / "standin_server.py"
    script.write_text(STANDIN_SERVER, encoding="utf-8")

    def factory(mode: str = "normal") -> StandinSpawn:
        return StandinSpawn(script, mode)

    return factory


@pytest.fixture
def wait_for_event() -> Callable[..., list[Event]]:
    """Collect events from a subscription until ``predicate`` matches one."""

    def wait(subscription: Subscription, predicate: Callable[[Event], bool], timeout: float = 15.0) -> list[Event]:
        seen: list[Event] = []
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            event = subscription.get(timeout=0.1)
            if event is None:
                continue
            seen.append(event)
            if predicate(event):
                return seen
        raise AssertionError(f"event not observed within {timeout}s; saw {[item.to_dict() for item in seen]}")

    return wait
