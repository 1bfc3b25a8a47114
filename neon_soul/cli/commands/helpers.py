"""Shared helper functions for CLI commands."""

import json
from pathlib import Path
from typing import Any

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_DEGRADED = 2
EXIT_LOCK_HELD = 3
EXIT_CONFIG = 4


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def resolve_workspace(value: str) -> Path:
    """Expand and resolve a workspace argument; ValueError if it is not a directory."""
    workspace = Path(value).expanduser().resolve()
    if not workspace.is_dir():
        raise ValueError(f"Workspace not found: {workspace}")
    return workspace
