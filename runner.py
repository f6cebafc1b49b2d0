"""Subprocess execution with output mirrored into the build log."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from progress import ProgressUpdate, format_progress_message, get_progress_parser

LOG = logging.getLogger("bootbin.build.runner")


@dataclass
class CommandResult:
    """Light-weight wrapper representing the output of ``run_command``."""

    args: list[str]
    returncode: int
    output: str = ""


def run_command(
    command: list[str],
    *,
    check: bool = True,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    capture_output: bool = False,
) -> CommandResult:
    """Run *command* while mirroring its merged stdout/stderr to the logger.

    ``capture_output`` waits for the process to finish before logging; the
    default streams each line as it arrives. Raises
    :class:`subprocess.CalledProcessError` on a non-zero exit when *check* is
    set.
    """

    parser, prepared_command = get_progress_parser([str(part) for part in command])
    LOG.info("$ %s", " ".join(prepared_command))

    output_lines: list[str] = []

    def emit_line(message: str) -> None:
        LOG.info(message)
        output_lines.append(message + "\n")

    def emit_progress(update: ProgressUpdate) -> None:
        emit_line(format_progress_message(update))

    def handle_segment(segment: str) -> None:
        if parser:
            updates = parser.parse(segment)
            if updates:
                for update in updates:
                    emit_progress(update)
                return
        emit_line(segment.rstrip())

    process_env = dict(env) if env is not None else None

    if capture_output:
        completed = subprocess.run(
            prepared_command,
            cwd=cwd,
            env=process_env,
            check=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        for segment in _iter_output_segments(completed.stdout or ""):
            handle_segment(segment)
        returncode = completed.returncode
    else:
        process = subprocess.Popen(
            prepared_command,
            cwd=cwd,
            env=process_env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        assert process.stdout is not None  # For type-checkers.

        for raw_line in process.stdout:
            for segment in _iter_output_segments(raw_line):
                handle_segment(segment)

        process.stdout.close()
        returncode = process.wait()

    if check and returncode != 0:
        raise subprocess.CalledProcessError(returncode, prepared_command, output="".join(output_lines))
    return CommandResult(prepared_command, returncode, "".join(output_lines))


def _iter_output_segments(text: str) -> list[str]:
    """Return sanitized output *text* split into logical display segments."""

    if not text:
        return []
    return text.replace("\r", "\n").splitlines()
