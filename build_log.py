"""Best-effort dump of the toolchain build logs when a command finishes."""

from __future__ import annotations

import contextlib
import logging
import sys
from pathlib import Path
from typing import Iterator, Sequence, TextIO

LOG = logging.getLogger("bootbin.build.report")


def emit_build_logs(log_paths: Sequence[Path], *, stream: TextIO | None = None) -> int:
    """Write every readable log in *log_paths* to *stream*.

    Missing logs are skipped. Read and write errors are logged and never
    raised. Returns the number of logs emitted.
    """

    stream = stream if stream is not None else sys.stderr
    emitted = 0
    for path in log_paths:
        try:
            content = path.read_text(errors="replace")
        except FileNotFoundError:
            LOG.debug("Build log %s not present; nothing to report", path)
            continue
        except OSError as exc:
            LOG.warning("Unable to read build log %s: %s", path, exc)
            continue

        try:
            stream.write(f"===== {path} =====\n")
            stream.write(content)
            if content and not content.endswith("\n"):
                stream.write("\n")
            stream.write(f"===== end of {path} =====\n")
            stream.flush()
        except (OSError, ValueError) as exc:
            LOG.warning("Unable to emit build log %s: %s", path, exc)
            continue
        emitted += 1
    return emitted


@contextlib.contextmanager
def report_build_log(log_paths: Sequence[Path], *, stream: TextIO | None = None) -> Iterator[None]:
    """Emit *log_paths* once the wrapped block exits, however it exits."""

    try:
        yield
    finally:
        emit_build_logs(log_paths, stream=stream)
