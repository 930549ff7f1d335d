"""Environment-style variable substitution for profile files.

Supports ``${name}`` and ``${name|default}`` (defaults may be quoted).
Placeholders without a value or default are left in place so that opaque
secret references such as ``{vault:name:secret}`` pass through untouched.
"""

import os
import re
from typing import Any, Dict, List, Optional

_VARIABLE_PATTERN = re.compile(r"\$\{([^}|]+)(?:\|([^}]*))?\}")


def substitute_variables(text: str, variables: Dict[str, Any]) -> str:
    """Substitute ``${var}`` and ``${var|default}`` placeholders in text.

    Args:
        text: Text containing variable placeholders
        variables: Dictionary of variable values

    Returns:
        Text with variables substituted
    """
    if not text:
        return text

    def replace(match):
        var_name = match.group(1).strip()
        default = match.group(2)

        if var_name in variables:
            return str(variables[var_name])
        if default is not None:
            return _clean_default_value(default.strip())
        return match.group(0)

    return _VARIABLE_PATTERN.sub(replace, text)


def substitute_any(data: Any, variables: Dict[str, Any]) -> Any:
    """Substitute variables in any data structure.

    Args:
        data: Data structure to process
        variables: Dictionary of variable values

    Returns:
        Data structure with variables substituted
    """
    if isinstance(data, str):
        return substitute_variables(data, variables)
    if isinstance(data, dict):
        return {key: substitute_any(value, variables) for key, value in data.items()}
    if isinstance(data, list):
        return [substitute_any(item, variables) for item in data]
    return data


def find_unresolved(data: Any) -> List[str]:
    """Names of placeholders still present anywhere in a data structure."""
    if isinstance(data, str):
        return [m.group(1).strip() for m in _VARIABLE_PATTERN.finditer(data)]
    if isinstance(data, dict):
        return [name for value in data.values() for name in find_unresolved(value)]
    if isinstance(data, list):
        return [name for item in data for name in find_unresolved(item)]
    return []


def build_variables(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Environment variables overlaid with explicit overrides."""
    variables: Dict[str, Any] = dict(os.environ)
    if overrides:
        variables.update(overrides)
    return variables


def _clean_default_value(default: str) -> str:
    """Strip matching quotes from a default value."""
    if len(default) >= 2 and default[0] == default[-1] and default[0] in ('"', "'"):
        return default[1:-1]
    return default
