"""Rich-based logging helpers shared across the engine and the CLI."""

from __future__ import annotations

from dataclasses import dataclass

from rich.console import Console
from rich.theme import Theme
from rich.traceback import install

install(show_locals=False)

_THEME = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "bold green",
        "debug": "dim",
    }
)

# stdout is reserved for payloads (query output, `sqlview serve` responses).
# Highlighting stays off so table and file names are never wrapped in ANSI codes.
_stderr_console = Console(stderr=True, theme=_THEME, highlight=False)


@dataclass(slots=True)
class Logger:
    """Lightweight logger facade; every message goes to stderr."""

    verbose: bool = False

    def info(self, message: str) -> None:
        self._emit(message, "info")

    def success(self, message: str) -> None:
        self._emit(message, "success")

    def warning(self, message: str) -> None:
        self._emit(message, "warning")

    def error(self, message: str) -> None:
        self._emit(message, "error")

    def debug(self, message: str) -> None:
        if self.verbose:
            self._emit(message, "debug")

    @staticmethod
    def _emit(message: str, style: str) -> None:
        _stderr_console.print(message, style=style, markup=False)


def get_logger(verbose: bool = False) -> Logger:
    """Return a configured Logger instance."""
    return Logger(verbose=verbose)
