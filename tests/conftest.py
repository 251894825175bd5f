from __future__ import annotations

import json
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from skills._shared.python.skill_testing import repo_root


@dataclass(frozen=True)
class ScriptRunResult:
    script: str
    argv: list[str]
    exit_code: int
    duration_ms: int
    stdout_path: str
    stderr_path: str
    status: str  # pass|fail
    note: str | None = None


SCRIPT_RUN_RESULTS: list[ScriptRunResult] = []


def out_dir() -> Path:
    return repo_root() / "out" / "tests" / "script-smoke"


def default_env(repo: Path) -> dict[str, str]:
    base = os.environ.copy()

    out_base = out_dir()
    home = out_base / "home"
    tmp = out_base / "tmp"

    for p in (home, tmp):
        p.mkdir(parents=True, exist_ok=True)

    base.update(
        {
            "CODEX_HOME": str(repo),
            "HOME": str(home),
            "TMPDIR": str(tmp),
            "NO_COLOR": "1",
            "PY_COLORS": "0",
            "PYTHONDONTWRITEBYTECODE": "1",
        }
    )

    return base


def discover_scripts() -> list[str]:
    root = repo_root()
    scripts: list[str] = []
    for p in sorted((root / "skills").glob("**/scripts/*.py")):
        scripts.append(p.relative_to(root).as_posix())
    return scripts


def write_logs(script: str, stdout: str, stderr: str) -> tuple[str, str]:
    logs_root = out_dir() / "logs"
    stdout_path = logs_root / f"{script}.stdout.txt"
    stderr_path = logs_root / f"{script}.stderr.txt"
    stdout_path.parent.mkdir(parents=True, exist_ok=True)
    stdout_path.write_text(stdout, "utf-8")
    stderr_path.write_text(stderr, "utf-8")
    return (str(stdout_path), str(stderr_path))


def write_summary_json(results: list[ScriptRunResult]) -> Path:
    out_base = out_dir()
    out_base.mkdir(parents=True, exist_ok=True)
    summary_path = out_base / "summary.json"

    payload = {
        "generated_at": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
        "repo_root": str(repo_root()),
        "python": sys.version.splitlines()[0],
        "results": [
            {
                "script": r.script,
                "argv": r.argv,
                "exit_code": r.exit_code,
                "duration_ms": r.duration_ms,
                "stdout_path": r.stdout_path,
                "stderr_path": r.stderr_path,
                "status": r.status,
                "note": r.note,
            }
            for r in results
        ],
    }

    summary_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", "utf-8")
    return summary_path


def pytest_sessionfinish(session, exitstatus):  # type: ignore[no-untyped-def]
    if not SCRIPT_RUN_RESULTS:
        return
    summary_path = write_summary_json(SCRIPT_RUN_RESULTS)
    if hasattr(session.config, "stash"):
        session.config.stash["script_smoke_summary_path"] = str(summary_path)
