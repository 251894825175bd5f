from .assertions import (
    assert_entrypoints_exist,
    assert_skill_contract,
    load_skill_module,
    repo_root,
    resolve_skill_script,
)

__all__ = [
    "assert_entrypoints_exist",
    "assert_skill_contract",
    "load_skill_module",
    "repo_root",
    "resolve_skill_script",
]
