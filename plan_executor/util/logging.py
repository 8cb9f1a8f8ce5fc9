from __future__ import annotations

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str | int = logging.INFO, rich_output: bool | None = None) -> logging.Logger:
    if isinstance(level, str):
        resolved = logging._nameToLevel.get(level.upper())
        if resolved is None:
            raise ValueError(f"Unsupported log level: {level}")
        level = resolved
    if rich_output is None:
        rich_output = sys.stdout.isatty()
    if rich_output:
        handler: logging.Handler = RichHandler(
            console=Console(file=sys.stdout),
            show_path=False,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(name)s | %(message)s"))
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    return logging.getLogger("plan_executor")
