"""UI package exports for the CLI router and plain-text rendering."""

from shellgate.ui.cli import CLIError, build_parser, main, run_cli
from shellgate.ui.render import CLIRenderer, create_renderer, format_event

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "format_event",
    "main",
    "run_cli",
]
