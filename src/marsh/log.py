#!/usr/bin/env python3
"""marsh.log

Logging setup for the marsh CLIs. Modules log through logging.getLogger(__name__);
only the CLI entrypoints call setup_logging().
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    handlers: list = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # rasterio/fiona are chatty at DEBUG
    for name in ("rasterio", "fiona", "pyogrio"):
        logging.getLogger(name).setLevel(logging.WARNING)
