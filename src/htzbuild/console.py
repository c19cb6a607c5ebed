"""User-facing status output: [INFO]/[SUCCESS]/[WARN]/[ERROR] lines."""

from __future__ import annotations

from rich.console import Console
from rich.text import Text

_console = Console(highlight=False)


def _emit(label: str, style: str, message: str) -> None:
    _console.print(Text.assemble((f"[{label}]", style), " ", message))


def info(message: str) -> None:
    _emit("INFO", "blue", message)


def success(message: str) -> None:
    _emit("SUCCESS", "green", message)


def warn(message: str) -> None:
    _emit("WARN", "bold yellow", message)


def error(message: str) -> None:
    _emit("ERROR", "red", message)


def raw(text: str) -> None:
    """Echo remote output (log tails) without markup or decoration."""
    _console.print(Text(text.rstrip("\n")))


def progress_tick() -> None:
    """Print a single dot without a newline, for readiness polls."""
    _console.print(".", end="")


def end_progress() -> None:
    _console.print()


def banner(title: str, rows: dict[str, str]) -> None:
    rule = "=" * 42
    info("")
    info(rule)
    info(f"  {title}")
    info(rule)
    for key, value in rows.items():
        info(f"  {key + ':':<9}{value}")
    info(rule)
    info("")
