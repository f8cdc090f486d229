from __future__ import annotations

from .console import Console, ConsoleListener, get_console, set_console

__all__ = ["Console", "ConsoleListener", "get_console", "set_console"]
