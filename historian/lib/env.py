"""Environment variable utilities.

Expands ${VAR_NAME} patterns in configuration values and loads .env files
(python-dotenv), so store paths and table names can differ per environment.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_env_vars", "expand_options", "load_env_file"]

# ${VAR_NAME} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        path: Path to .env file. If None, python-dotenv searches upward
              from the current directory.
        override: If True, override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand environment variables in a string.

    Args:
        value: String potentially containing env var references
        strict: If True, raise KeyError for missing variables

    Example:
        >>> os.environ["WAREHOUSE_DIR"] = "/data"
        >>> expand_env_vars("${WAREHOUSE_DIR}/tags.duckdb")
        '/data/tags.duckdb'
    """

    def replacer(match: "re.Match[str]") -> str:
        var_name = match.group(1) or match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is None:
            if strict:
                raise KeyError(f"Environment variable not set: {var_name}")
            return str(match.group(0))
        return env_value

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_options(options: Dict[str, Any], *, strict: bool = False) -> Dict[str, Any]:
    """Recursively expand environment variables in a config mapping."""
    result: Dict[str, Any] = {}

    for key, value in options.items():
        if isinstance(value, str):
            result[key] = expand_env_vars(value, strict=strict)
        elif isinstance(value, dict):
            result[key] = expand_options(value, strict=strict)
        elif isinstance(value, list):
            result[key] = [
                expand_env_vars(item, strict=strict) if isinstance(item, str) else item
                for item in value
            ]
        else:
            result[key] = value

    return result
