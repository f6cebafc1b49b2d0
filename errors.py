"""Error taxonomy for the BOOT.BIN build pipeline.

Every stage raises a subclass of :class:`PipelineError` so ``build.main`` can
report which stage stopped the run and propagate the failing command's exit
status.
"""

from __future__ import annotations

from typing import Sequence


class PipelineError(RuntimeError):
    """Base class for fatal pipeline failures."""

    stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.hint = hint

    def __str__(self) -> str:
        text = f"[{self.stage}] {super().__str__()}"
        if self.hint:
            text = f"{text}\nHint: {self.hint}"
        return text

    @property
    def exit_status(self) -> int:
        if self.returncode:
            return self.returncode
        return 1


class ProvisioningError(PipelineError):
    """The hardware description or toolchain could not be staged."""

    stage = "stage"


class ProjectInitError(PipelineError):
    """Project creation or hardware-description import failed."""

    stage = "init"


class ConfigurationError(PipelineError):
    """The project configuration could not be read or patched."""

    stage = "config"


class ConfigurationInvariantError(ConfigurationError):
    """The patched configuration does not satisfy the required invariants."""

    def __init__(self, failed: Sequence[str], *, hint: str | None = None) -> None:
        self.failed = list(failed)
        super().__init__(
            "Patched configuration violates: " + "; ".join(self.failed),
            hint=hint,
        )


class ComponentBuildError(PipelineError):
    """A single ``petalinux-build -c`` invocation failed."""

    stage = "components"

    def __init__(
        self,
        message: str,
        *,
        component: str,
        returncode: int | None = None,
        hint: str | None = None,
    ) -> None:
        self.component = component
        super().__init__(f"{component}: {message}", returncode=returncode, hint=hint)


class DeviceTreeError(PipelineError):
    """Decompiling, rewriting or recompiling the device tree failed."""

    stage = "dtb"


class PackagingError(PipelineError):
    """Assembling BOOT.BIN failed or its inputs were not ready."""

    stage = "package"
