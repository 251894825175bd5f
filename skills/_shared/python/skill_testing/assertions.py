from __future__ import annotations

import importlib.util
import os
import re
import subprocess
import sys
from pathlib import Path
from types import ModuleType
from typing import Iterable

CONTRACT_SECTIONS = ("Prereqs:", "Inputs:", "Outputs:", "Exit codes:", "Failure modes:")


def repo_root() -> Path:
    if code_home := os.environ.get("CODEX_HOME"):
        path = Path(code_home)
        if path.is_dir():
            return path.resolve()
    try:
        root = subprocess.check_output(
            ["git", "rev-parse", "--show-toplevel"],
            text=True,
            stderr=subprocess.DEVNULL,
        ).strip()
    except (OSError, subprocess.CalledProcessError):
        root = ""
    if root and (Path(root) / "skills").is_dir():
        return Path(root).resolve()
    return Path(__file__).resolve().parents[4]


def read_frontmatter(skill_md: Path) -> dict[str, str]:
    lines = skill_md.read_text(encoding="utf-8").splitlines()
    if not lines or lines[0].strip() != "---":
        raise AssertionError(f"missing frontmatter: {skill_md}")
    meta: dict[str, str] = {}
    for line in lines[1:]:
        if line.strip() == "---":
            return meta
        key, sep, value = line.partition(":")
        if sep:
            meta[key.strip()] = value.strip()
    raise AssertionError(f"unterminated frontmatter: {skill_md}")


def assert_skill_contract(skill_root: Path) -> None:
    skill_md = skill_root / "SKILL.md"
    if not skill_md.is_file():
        raise AssertionError(f"missing SKILL.md: {skill_md}")

    meta = read_frontmatter(skill_md)
    for key in ("name", "description"):
        if not meta.get(key):
            raise AssertionError(f"frontmatter missing {key!r}: {skill_md}")
    if meta["name"] != skill_root.name:
        raise AssertionError(f"frontmatter name {meta['name']!r} does not match directory {skill_root.name!r}")

    text = skill_md.read_text(encoding="utf-8")
    m = re.search(r"^## Contract\n(.*?)(?=^## |\Z)", text, flags=re.MULTILINE | re.DOTALL)
    if not m:
        raise AssertionError(f"missing '## Contract' section: {skill_md}")

    contract = m.group(1)
    positions: list[int] = []
    missing: list[str] = []
    for section in CONTRACT_SECTIONS:
        idx = contract.find(f"\n{section}\n")
        if idx < 0:
            missing.append(section)
        positions.append(idx)
    if missing:
        raise AssertionError(f"contract missing sections: {', '.join(missing)}")
    if positions != sorted(positions):
        raise AssertionError(f"contract sections out of order (expected: {' -> '.join(CONTRACT_SECTIONS)})")


def assert_entrypoints_exist(skill_root: Path, rel_paths: Iterable[str]) -> None:
    missing: list[str] = []
    for rel in rel_paths:
        path = skill_root / rel
        if not path.is_file():
            missing.append(rel)
    if missing:
        raise AssertionError(f"missing entrypoints: {', '.join(missing)}")


def resolve_skill_script(skill_root: Path, rel_path: str) -> Path:
    script = skill_root / rel_path
    if not script.is_file():
        raise AssertionError(f"{rel_path} not found under {skill_root}")
    return script.resolve()


def load_skill_module(skill_root: Path, rel_path: str) -> ModuleType:
    script = resolve_skill_script(skill_root, rel_path)
    name = f"skill_{skill_root.name.replace('-', '_')}_{script.stem}"
    if name in sys.modules:
        return sys.modules[name]

    spec = importlib.util.spec_from_file_location(name, script)
    if spec is None or spec.loader is None:
        raise AssertionError(f"cannot load {script}")
    module = importlib.util.module_from_spec(spec)
    # Registered before exec so dataclasses can resolve the module.
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module
