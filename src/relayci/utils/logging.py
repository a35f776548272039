"""Logging setup with Rich integration."""

from __future__ import annotations

import logging
from typing import Union

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Send relayci log records to stderr through a Rich handler."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    console = Console(stderr=True)
    handler = RichHandler(console=console, show_time=True, show_path=False, markup=False)
    logging.basicConfig(level=level, handlers=[handler], format="%(message)s", force=True)


__all__ = ["configure_logging"]
