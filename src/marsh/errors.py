#!/usr/bin/env python3
"""marsh.errors

Exception types shared across subsystems.

- ConfigError: bad configuration or inputs. Fatal; subclasses SystemExit so an
  uncaught one ends the run before partial output is written, the same way the
  YAML loaders fail fast.
- DateSkipped: one acquisition date cannot be processed (missing mask, unreadable
  tile). The batch logs it and moves on.
- GapFillError: a flagged date cannot be repaired from its neighbours.
"""

from __future__ import annotations


class ConfigError(SystemExit):
    """Configuration error; aborts the run."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class DateSkipped(Exception):
    """Recoverable per-date data error."""

    def __init__(self, date: str, reason: str):
        # both args go to Exception so the error survives pickling from pool workers
        super().__init__(date, reason)
        self.date = date
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.date}: {self.reason}"


class GapFillError(ValueError):
    """Flagged date without enough neighbours to repair."""
