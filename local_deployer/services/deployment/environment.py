"""
Environment assembly for launched applications.

The child environment is the subset of the parent environment whose names
match an inherit pattern, plus application specific overrides.

Pattern matching is intentionally simple:
- a pattern ending in ``*`` matches every name that starts with the text
  before the wildcard (``LC_.*`` and ``LC_*`` both match ``LC_ALL``)
- any other pattern must equal the variable name exactly
"""
from typing import Dict, Iterable, Mapping, Optional

from local_deployer.core.config import SPRING_APPLICATION_JSON, default_env_vars_to_inherit

__all__ = [
    "SPRING_APPLICATION_JSON",
    "build_environment",
    "default_env_vars_to_inherit",
    "matches_pattern",
]


def matches_pattern(name: str, pattern: str) -> bool:
    """Check a variable name against a single inherit pattern."""
    if pattern.endswith("*"):
        prefix = pattern[:-1]
        if prefix.endswith("."):
            prefix = prefix[:-1]
        return name.startswith(prefix)
    return name == pattern


def build_environment(
    parent_env: Mapping[str, str],
    inherit_patterns: Iterable[str],
    overrides: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Build the environment for a child process.

    Args:
        parent_env: Environment of the deployer process
        inherit_patterns: Names or wildcard patterns to inherit
        overrides: Values set unconditionally, replacing inherited ones

    Returns:
        The child environment
    """
    patterns = list(inherit_patterns)
    # The JSON carrier is always inherited
    if SPRING_APPLICATION_JSON not in patterns:
        patterns.append(SPRING_APPLICATION_JSON)

    env = {
        name: value
        for name, value in parent_env.items()
        if any(matches_pattern(name, pattern) for pattern in patterns)
    }
    if overrides:
        env.update(overrides)
    return env
