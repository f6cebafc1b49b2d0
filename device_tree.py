"""Post-build fix-ups for the generated device tree blob.

PetaLinux 2024.2 still emits the legacy ``arm,primecell`` compatible string for
the PL011 UART, which the target kernel no longer binds. The blob is
decompiled with ``dtc``, rewritten as text and compiled back in place.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from errors import DeviceTreeError
from host_bootstrap import ensure_tool
from runner import run_command

LOG = logging.getLogger("bootbin.build.dtb")

LEGACY_COMPATIBLE = "primecell"
CURRENT_COMPATIBLE = "sbsa-uart"

DEFAULT_SUBSTITUTIONS: tuple[tuple[str, str], ...] = ((LEGACY_COMPATIBLE, CURRENT_COMPATIBLE),)


@dataclass
class RewriteResult:
    blob: Path
    source: Path
    replacements: int


def substitute_compatible(text: str, legacy: str, replacement: str) -> tuple[str, int]:
    """Replace every literal *legacy* in *text*, returning the text and count."""

    count = text.count(legacy)
    if not count:
        return text, 0
    return text.replace(legacy, replacement), count


def decompile(blob: Path, source: Path) -> None:
    _run_dtc(["-I", "dtb", "-O", "dts", "-o", str(source), str(blob)], "decompile")


def compile_source(source: Path, blob: Path) -> None:
    _run_dtc(["-I", "dts", "-O", "dtb", "-o", str(blob), str(source)], "compile")


def _run_dtc(arguments: list[str], action: str) -> None:
    try:
        run_command(["dtc", *arguments])
    except subprocess.CalledProcessError as exc:
        raise DeviceTreeError(
            f"dtc failed to {action} the device tree (exit status {exc.returncode})",
            returncode=exc.returncode,
        ) from exc
    except OSError as exc:
        raise DeviceTreeError(f"Unable to run dtc: {exc}") from exc


def rewrite_device_tree(
    blob: Path,
    source: Path | None = None,
    *,
    substitutions: tuple[tuple[str, str], ...] = DEFAULT_SUBSTITUTIONS,
) -> RewriteResult:
    """Decompile *blob*, apply *substitutions* and recompile it in place.

    The intermediate *source* defaults to the blob path with a ``.dts`` suffix.
    It is left on disk so packaging can confirm the blob is not stale.
    """

    if not blob.is_file():
        raise DeviceTreeError(f"Device tree blob not found: {blob}")
    if source is None:
        source = blob.with_suffix(".dts")

    try:
        ensure_tool("dtc", logger=LOG)
    except RuntimeError as exc:
        raise DeviceTreeError(str(exc)) from exc

    decompile(blob, source)
    try:
        text = source.read_text()
    except OSError as exc:
        raise DeviceTreeError(f"dtc did not produce a readable source at {source}: {exc}") from exc

    total = 0
    for legacy, replacement in substitutions:
        text, count = substitute_compatible(text, legacy, replacement)
        if count:
            LOG.info("Replaced %d occurrence(s) of '%s' with '%s'", count, legacy, replacement)
        total += count
    if not total:
        LOG.info("No legacy compatible strings found in %s", source.name)

    source.write_text(text)
    compile_source(source, blob)
    ensure_blob_current(blob, source)
    return RewriteResult(blob, source, total)


def ensure_blob_current(blob: Path, source: Path) -> None:
    """Raise :class:`DeviceTreeError` if *blob* predates its *source*."""

    if not blob.is_file():
        raise DeviceTreeError(f"Device tree blob not found: {blob}")
    if not source.is_file():
        return
    if blob.stat().st_mtime_ns < source.stat().st_mtime_ns:
        raise DeviceTreeError(
            f"{blob.name} is older than {source.name}; recompile the device tree before packaging",
            hint="Run the dtb stage again.",
        )
