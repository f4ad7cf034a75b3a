from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path


def _env_with_pythonpath() -> dict[str, str]:
    env = dict(os.environ)
    existing = env.get("PYTHONPATH", "")
    src_path = str(Path("src").resolve())
    env["PYTHONPATH"] = f"{src_path}{os.pathsep}{existing}" if existing else src_path
    return env


def _config(tmp_path: Path) -> Path:
    path = tmp_path / "config.toml"
    data_dir = (tmp_path / "data").as_posix()
    path.write_text(f'data_dir = "{data_dir}"\n', encoding="utf-8")
    return path


def test_cli_module_reports_invalid_args_via_exit_code(tmp_path: Path) -> None:
    completed = subprocess.run(
        [sys.executable, "-m", "serverdeck", "--log-file", str(tmp_path / "sd.log"), "create", "A", "1.20.4", "--port", "0"],
        capture_output=True,
        text=True,
        check=False,
        env=_env_with_pythonpath(),
    )

    assert completed.returncode == 2
    assert "--port must be between 1 and 65535" in completed.stderr


def test_cli_module_answers_java_requirement(tmp_path: Path) -> None:
    completed = subprocess.run(
        [
            sys.executable,
            "-m",
            "serverdeck",
            "--config",
            str(_config(tmp_path)),
            "--log-level",
            "warning",
            "--log-file",
            str(tmp_path / "sd.log"),
            "java",
            "required",
            "1.20.4",
        ],
        capture_output=True,
        text=True,
        check=False,
        env=_env_with_pythonpath(),
    )

    assert completed.returncode == 0
    assert json.loads(completed.stdout) == {"success": True, "data": 17, "error": None, "error_kind": None}


def test_cli_module_lists_empty_instance_store(tmp_path: Path) -> None:
    completed = subprocess.run(
        [
            sys.executable,
            "-m",
            "serverdeck",
            "--config",
            str(_config(tmp_path)),
            "--log-file",
            str(tmp_path / "sd.log"),
            "list",
        ],
        capture_output=True,
        text=True,
        check=False,
        env=_env_with_pythonpath(),
    )

    assert completed.returncode == 0
    assert json.loads(completed.stdout)["data"] == []
