"""Utilities for parsing and formatting toolchain progress output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

__all__ = [
    "ProgressUpdate",
    "ProgressParser",
    "BitbakeProgressParser",
    "get_progress_parser",
    "format_progress_message",
]


@dataclass
class ProgressUpdate:
    """Structured representation of an incremental progress update."""

    label: str
    percent: float | None = None
    current: int | None = None
    total: int | None = None


class ProgressParser:
    """Base class for command-specific progress parsers."""

    def prepare(self, command: list[str]) -> list[str]:
        """Return ``command`` potentially augmented for progress output."""

        return command

    def parse(self, text: str) -> list[ProgressUpdate]:
        """Return progress updates extracted from *text*."""

        raise NotImplementedError


class BitbakeProgressParser(ProgressParser):
    """Parse the task counters bitbake prints underneath ``petalinux-build``."""

    _TASK_RE = re.compile(r"(?:NOTE:\s+)?Running task (?P<current>\d+) of (?P<total>\d+)")
    _SETSCENE_RE = re.compile(
        r"(?:NOTE:\s+)?(?:Executing )?Setscene [Tt]asks:?\s+(?P<current>\d+) of (?P<total>\d+)"
    )

    def parse(self, text: str) -> list[ProgressUpdate]:
        stripped = text.strip()
        for label, pattern in (("tasks", self._TASK_RE), ("setscene", self._SETSCENE_RE)):
            match = pattern.search(stripped)
            if not match:
                continue
            current = int(match.group("current"))
            total = int(match.group("total"))
            percent = (current / total) * 100 if total else None
            return [ProgressUpdate(label=label, percent=percent, current=current, total=total)]
        return []


_BITBAKE_FRONTENDS = {"petalinux-build", "petalinux-config"}


def get_progress_parser(command: Sequence[str]) -> tuple[ProgressParser | None, list[str]]:
    """Return a parser suitable for *command* alongside the prepared command."""

    if not command:
        return None, list(command)

    program = Path(command[0]).name
    if program in _BITBAKE_FRONTENDS:
        parser = BitbakeProgressParser()
        return parser, parser.prepare(list(command))
    return None, list(command)


def format_progress_message(update: ProgressUpdate) -> str:
    """Return a human-readable string representing *update*."""

    parts: list[str] = [update.label]
    if update.percent is not None:
        parts.append(f"{update.percent:.0f}%")
    if update.current is not None:
        if update.total is not None:
            parts.append(f"({update.current}/{update.total})")
        else:
            parts.append(f"({update.current})")
    return " ".join(part for part in parts if part)
