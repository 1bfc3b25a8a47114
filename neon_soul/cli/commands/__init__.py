"""CLI command modules for neon-soul.

Each module holds related command handlers dispatched from __main__.py.
"""

from neon_soul.cli.commands.inspect import cmd_status, cmd_trace
from neon_soul.cli.commands.synthesize import cmd_synthesize

__all__ = ["cmd_status", "cmd_synthesize", "cmd_trace"]
