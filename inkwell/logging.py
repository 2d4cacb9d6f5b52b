"""Rich-based logging setup for the command line."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_NOISY_LOGGERS = ("httpx", "httpcore", "openai")


def setup_logging(log_level: str = "warning", *, console: Console | None = None) -> None:
    """Configure the root logger to use Rich.

    Args:
        log_level: Logging level (debug, info, warning, error).
        console: Optional Rich console to use (stderr by default).

    """
    level = getattr(logging, log_level.upper(), logging.WARNING)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=True,
        show_level=True,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # HTTP client request logs only at warning and above
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
