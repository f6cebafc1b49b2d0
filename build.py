#!/usr/bin/env python3
"""Versal BOOT.BIN build helper.

This script drives PetaLinux through every stage required to turn an FPGA
hardware description (``.xsa``) into a flashable ``BOOT.BIN``.  When the board
boots an Ubuntu image, the result replaces ``boot1901.bin`` in the boot
partition.  Each stage is exposed as a sub-command:

* ``deps`` – verify required host tooling is available.
* ``stage`` – copy the hardware description and PetaLinux installation into
  the work directory.
* ``init`` – create the PetaLinux project and import the hardware description.
* ``config`` – switch the project configuration to an EXT4 root on the SD card.
* ``components`` – build the device tree, U-Boot, TF-A, PLM and PSM firmware.
* ``dtb`` – rewrite legacy compatible strings in the generated device tree.
* ``package`` – assemble ``BOOT.BIN``.
* ``all`` – execute the entire workflow sequentially.

Whatever happens, the toolchain build log is written to stderr on exit.  Stage
output is logged to ``<workdir>/bootbin.log``.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from build_log import report_build_log
from config_patch import patch_config_file
from device_tree import ensure_blob_current, rewrite_device_tree
from errors import (
    ComponentBuildError,
    ConfigurationError,
    DeviceTreeError,
    PackagingError,
    PipelineError,
    ProjectInitError,
    ProvisioningError,
)
from host_bootstrap import DEPENDENCY_HINTS, HOST_COMMANDS, ensure_commands, set_bootstrap_enabled
from runner import run_command
from toolchain import (
    build_component,
    create_project,
    import_hardware_description,
    load_toolchain_env,
    package_boot,
)

LOG = logging.getLogger("bootbin.build")

REPO_ROOT = Path(__file__).resolve().parent
DEFAULT_WORKDIR = REPO_ROOT / "output"

XSA_SOURCE_ENV = "BOOTBIN_XSA_SOURCE"
TOOLS_SOURCE_ENV = "BOOTBIN_TOOLS_SOURCE"
WORKDIR_ENV = "BOOTBIN_WORKDIR"

DEFAULT_XSA_SOURCE = "/tmp/caliptra-fpga-bitstream/caliptra_fpga.xsa"
DEFAULT_TOOLS_SOURCE = "/fpga-tools/petalinux-tools"

STAGED_XSA_NAME = "caliptra_fpga.xsa"
STAGED_TOOLS_NAME = "petalinux-tools"
PIPELINE_LOG_NAME = "bootbin.log"

PROJECT_NAME = "petalinux_project"
PROJECT_TEMPLATE = "versal"
CONFIG_PATH = Path("project-spec") / "configs" / "config"
IMAGES_PATH = Path("images") / "linux"
BUILD_LOG_PATHS = (Path("build") / "config.log", Path("build") / "build.log")

DEVICE_TREE_BLOB = "system.dtb"
DEVICE_TREE_SOURCE = "system.dts"
BOOT_IMAGE_NAME = "BOOT.BIN"

STAGED_PERMISSIONS = 0o755

# Only device-tree reads the XSA; every component is rebuilt on each run.
COMPONENTS: tuple[tuple[str, str], ...] = (
    ("device-tree", DEVICE_TREE_BLOB),
    ("u-boot", "u-boot.elf"),
    ("arm-trusted-firmware", "bl31.elf"),
    ("plm", "plm.elf"),
    ("psmfw", "psmfw.elf"),
)

_REMOTE_SOURCE_RE = re.compile(r"^(?:[\w.+-]+@)?[\w.-]+:(?!//)")


@dataclass(frozen=True)
class StageArtefact:
    """Description of an artefact produced by a build stage."""

    identifier: str
    kind: str
    description: str


PIPELINE_ORDER = ["deps", "stage", "init", "config", "components", "dtb", "package"]

STAGE_ARTEFACTS: dict[str, list[StageArtefact]] = {
    "deps": [],
    "stage": [
        StageArtefact("input:xsa", "Hardware description", f"{STAGED_XSA_NAME} copied into the work directory"),
        StageArtefact("input:petalinux", "Toolchain", f"{STAGED_TOOLS_NAME}/ PetaLinux installation"),
    ],
    "init": [
        StageArtefact("project", "Directory", f"{PROJECT_NAME}/ created from the '{PROJECT_TEMPLATE}' template"),
    ],
    "config": [
        StageArtefact("project:config", "Configuration", "project-spec/configs/config switched to an EXT4 SD root"),
    ],
    "components": [
        StageArtefact(f"output:{name}", "Build artefact", f"{name} ({component})") for component, name in COMPONENTS
    ],
    "dtb": [
        StageArtefact(f"output:{DEVICE_TREE_SOURCE}", "Intermediate", "Decompiled device tree source"),
        StageArtefact(f"output:{DEVICE_TREE_BLOB}", "Build artefact", "Recompiled device tree blob"),
    ],
    "package": [
        StageArtefact(f"output:{BOOT_IMAGE_NAME}", "Boot image", "Versal boot image for the SD boot partition"),
    ],
}


@dataclass
class BuildContext:
    """Explicit handle threaded through every stage.

    All paths derive from ``workdir``; no stage relies on the process working
    directory. A single work directory must not be driven by two pipeline runs
    at once because the toolchain keeps unlocked state inside the project.
    """

    workdir: Path
    xsa_source: str = DEFAULT_XSA_SOURCE
    tools_source: str = DEFAULT_TOOLS_SOURCE
    clean: bool = False
    hardware_description: Path | None = None
    toolchain_env: dict[str, str] | None = None

    @property
    def staged_xsa(self) -> Path:
        return self.workdir / STAGED_XSA_NAME

    @property
    def tools_dir(self) -> Path:
        return self.workdir / STAGED_TOOLS_NAME

    @property
    def project_dir(self) -> Path:
        return self.workdir / PROJECT_NAME

    @property
    def config_path(self) -> Path:
        return self.project_dir / CONFIG_PATH

    @property
    def images_dir(self) -> Path:
        return self.project_dir / IMAGES_PATH

    @property
    def boot_image(self) -> Path:
        return self.images_dir / BOOT_IMAGE_NAME

    @property
    def build_logs(self) -> list[Path]:
        return [self.project_dir / path for path in BUILD_LOG_PATHS]

    def component_artefacts(self) -> dict[str, Path]:
        return {component: self.images_dir / name for component, name in COMPONENTS}

    def require_hardware_description(self) -> Path:
        """Return the staged XSA, resolving it when a previous run staged it."""

        if self.hardware_description is None:
            try:
                self.hardware_description = self.staged_xsa.resolve(strict=True)
            except (OSError, RuntimeError) as exc:
                raise ProvisioningError(
                    f"Hardware description not staged at {self.staged_xsa}",
                    hint="Run the stage step first.",
                ) from exc
        return self.hardware_description

    def require_toolchain_env(self) -> dict[str, str]:
        """Return the activated toolchain environment, loading it on first use."""

        if self.toolchain_env is None:
            self.toolchain_env = load_toolchain_env(self.tools_dir)
        return self.toolchain_env

    def require_project(self) -> Path:
        """Return the project directory created by the init stage."""

        if not self.project_dir.is_dir():
            raise ProjectInitError(
                f"PetaLinux project not found at {self.project_dir}",
                hint="Run the init step first.",
            )
        return self.project_dir


def log_stage_summary(command: str) -> None:
    """Emit a human-readable summary of artefacts for *command*."""

    if command == "all":
        seen: dict[str, StageArtefact] = {}
        for stage in PIPELINE_ORDER:
            for artefact in STAGE_ARTEFACTS.get(stage, []):
                seen.setdefault(artefact.identifier, artefact)
        artefacts = list(seen.values())
    else:
        artefacts = list(STAGE_ARTEFACTS.get(command, []))

    stage_label = "full pipeline" if command == "all" else f"'{command}' stage"
    LOG.info("Planned artefacts for the %s:", stage_label)
    if not artefacts:
        LOG.info("  (no artefacts expected)")
        return
    for artefact in artefacts:
        LOG.info("  - %s (%s)", artefact.description, artefact.kind)


def setup_logging(workdir: Path) -> None:
    workdir.mkdir(parents=True, exist_ok=True)
    log_path = workdir / PIPELINE_LOG_NAME

    LOG.setLevel(logging.INFO)
    for handler in LOG.handlers:
        handler.close()
    LOG.handlers.clear()

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    file_handler = logging.FileHandler(log_path, mode="w")
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)

    LOG.addHandler(file_handler)
    LOG.addHandler(console_handler)


@contextlib.contextmanager
def translate_failures(
    error_type: Callable[..., PipelineError], message: str, **details: str
) -> Iterator[None]:
    """Re-raise subprocess and OS failures as *error_type*."""

    try:
        yield
    except subprocess.CalledProcessError as exc:
        raise error_type(
            f"{message} (exit status {exc.returncode})", returncode=exc.returncode, **details
        ) from exc
    except OSError as exc:
        raise error_type(f"{message}: {exc}", **details) from exc


def is_remote_source(source: str) -> bool:
    """Return ``True`` when *source* uses scp's ``[user@]host:path`` form."""

    if source.startswith(("/", "./", "../", "~")):
        return False
    return bool(_REMOTE_SOURCE_RE.match(source))


def fetch_artifact(source: str, destination: Path, *, recursive: bool = False) -> Path:
    """Copy *source* to *destination*, replacing anything already there."""

    with translate_failures(ProvisioningError, f"Failed to clear {destination}"):
        if destination.is_dir() and not destination.is_symlink():
            shutil.rmtree(destination)
        elif destination.exists() or destination.is_symlink():
            destination.unlink()
        destination.parent.mkdir(parents=True, exist_ok=True)

    if is_remote_source(source):
        command = ["scp"]
        if recursive:
            command.append("-r")
        command.extend([source, str(destination)])
        with translate_failures(ProvisioningError, f"Failed to fetch {source}"):
            run_command(command)
    else:
        local = Path(source).expanduser()
        if not local.exists():
            raise ProvisioningError(f"Source not found: {local}")
        with translate_failures(ProvisioningError, f"Failed to copy {local}"):
            if local.is_dir():
                shutil.copytree(local, destination, symlinks=True)
            else:
                shutil.copy2(local, destination)

    if not destination.exists():
        raise ProvisioningError(f"Nothing was copied to {destination} from {source}")
    LOG.info("Staged %s -> %s", source, destination)
    return destination


def normalize_permissions(path: Path, mode: int = STAGED_PERMISSIONS) -> None:
    """Apply *mode* to *path* and, for directories, everything beneath it."""

    targets = [path]
    if path.is_dir():
        targets.extend(path.rglob("*"))
    with translate_failures(ProvisioningError, f"Failed to set permissions on {path}"):
        for target in targets:
            if target.is_symlink():
                continue
            os.chmod(target, mode)


def check_dependencies(context: BuildContext) -> None:
    required = [command for command in HOST_COMMANDS if command != "scp"]
    if is_remote_source(context.xsa_source) or is_remote_source(context.tools_source):
        required.append("scp")

    missing = ensure_commands(required, logger=LOG)
    if missing:
        for command in missing:
            hint = DEPENDENCY_HINTS.get(command)
            if hint:
                LOG.error("Missing dependency '%s'. Install via: %s", command, hint)
            else:
                LOG.error("Missing dependency '%s'", command)
        raise ProvisioningError(
            "One or more required tools are unavailable. Install the missing dependencies and retry."
        )
    LOG.info("All required host dependencies are available.")


def stage_artifacts(context: BuildContext) -> Path:
    """Fetch the XSA and PetaLinux tools and return the absolute XSA path."""

    context.workdir.mkdir(parents=True, exist_ok=True)

    xsa = fetch_artifact(context.xsa_source, context.staged_xsa)
    normalize_permissions(xsa)

    tools = fetch_artifact(context.tools_source, context.tools_dir, recursive=True)
    normalize_permissions(tools)

    context.hardware_description = None
    context.toolchain_env = None
    hardware_description = context.require_hardware_description()
    LOG.info("Hardware description resolved to %s", hardware_description)
    return hardware_description


def initialize_project(context: BuildContext) -> Path:
    """Create a fresh PetaLinux project and import the hardware description."""

    xsa = context.require_hardware_description()
    project = context.project_dir

    if project.exists():
        if not context.clean:
            raise ProjectInitError(
                f"PetaLinux project already exists at {project}",
                hint="Pass --clean to rebuild from scratch or remove the directory manually.",
            )
        LOG.info("Removing existing project: %s", project)
        with translate_failures(ProjectInitError, f"Failed to remove {project}"):
            shutil.rmtree(project)

    env = context.require_toolchain_env()

    LOG.info("Creating project %s from template %s", PROJECT_NAME, PROJECT_TEMPLATE)
    with translate_failures(ProjectInitError, "petalinux-create failed"):
        create_project(context.workdir, PROJECT_NAME, PROJECT_TEMPLATE, env)
    if not project.is_dir():
        raise ProjectInitError(f"petalinux-create did not create {project}")

    LOG.info("Importing hardware description %s", xsa)
    with translate_failures(ProjectInitError, "Hardware description import failed"):
        import_hardware_description(project, xsa, env)
    return project


def patch_configuration(context: BuildContext) -> None:
    context.require_project()
    LOG.info("Switching root filesystem to EXT4 on the SD card")
    with translate_failures(ConfigurationError, f"Failed to patch {context.config_path}"):
        patch_config_file(context.config_path)


def build_components(context: BuildContext) -> dict[str, Path]:
    """Build every firmware component in order, stopping at the first failure."""

    project = context.require_project()
    env = context.require_toolchain_env()
    artefacts = context.component_artefacts()

    # A fresh system.dtb is unrewritten until the dtb stage runs again.
    rewritten_source = context.images_dir / DEVICE_TREE_SOURCE
    with translate_failures(
        ComponentBuildError, f"Failed to remove {rewritten_source}", component="device-tree"
    ):
        rewritten_source.unlink(missing_ok=True)

    for component, _ in COMPONENTS:
        LOG.info("Building component %s", component)
        with translate_failures(ComponentBuildError, "petalinux-build failed", component=component):
            build_component(project, component, env)
        if not artefacts[component].exists():
            raise ComponentBuildError(
                f"build did not produce {artefacts[component].name}", component=component
            )
    return artefacts


def rewrite_dtb(context: BuildContext) -> None:
    context.require_project()
    result = rewrite_device_tree(
        context.images_dir / DEVICE_TREE_BLOB,
        context.images_dir / DEVICE_TREE_SOURCE,
    )
    LOG.info("Rewrote %s (%d replacement(s))", result.blob, result.replacements)


def package_boot_image(context: BuildContext) -> Path:
    project = context.require_project()

    missing = [str(path) for path in context.component_artefacts().values() if not path.exists()]
    if missing:
        raise PackagingError("Missing component artefacts: " + ", ".join(missing))

    blob = context.images_dir / DEVICE_TREE_BLOB
    source = context.images_dir / DEVICE_TREE_SOURCE
    if not source.exists():
        raise PackagingError(
            f"{blob.name} has not been rewritten ({source.name} is missing)",
            hint="Run the dtb stage before packaging.",
        )
    try:
        ensure_blob_current(blob, source)
    except DeviceTreeError as exc:
        raise PackagingError(exc.args[0], hint=exc.hint) from exc

    env = context.require_toolchain_env()
    LOG.info("Packaging %s", BOOT_IMAGE_NAME)
    with translate_failures(PackagingError, "petalinux-package failed"):
        package_boot(project, env)

    if not context.boot_image.exists():
        raise PackagingError(f"petalinux-package did not produce {context.boot_image}")
    LOG.info("Created boot image at %s", context.boot_image)
    return context.boot_image


STAGE_EXECUTORS: dict[str, Callable[[BuildContext], object]] = {
    "deps": check_dependencies,
    "stage": stage_artifacts,
    "init": initialize_project,
    "config": patch_configuration,
    "components": build_components,
    "dtb": rewrite_dtb,
    "package": package_boot_image,
}


def run_all(context: BuildContext) -> None:
    for stage in PIPELINE_ORDER:
        LOG.info("==> %s", stage)
        STAGE_EXECUTORS[stage](context)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build a Versal BOOT.BIN with PetaLinux")
    parser.add_argument(
        "--xsa-source",
        default=os.environ.get(XSA_SOURCE_ENV, DEFAULT_XSA_SOURCE),
        help=f"Hardware description to stage, local path or host:path (env: {XSA_SOURCE_ENV}).",
    )
    parser.add_argument(
        "--tools-source",
        default=os.environ.get(TOOLS_SOURCE_ENV, DEFAULT_TOOLS_SOURCE),
        help=f"PetaLinux installation to stage, local path or host:path (env: {TOOLS_SOURCE_ENV}).",
    )
    parser.add_argument(
        "--workdir",
        type=Path,
        default=Path(os.environ.get(WORKDIR_ENV, DEFAULT_WORKDIR)),
        help=f"Directory holding staged inputs and the project (env: {WORKDIR_ENV}).",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Remove an existing PetaLinux project instead of refusing to continue.",
    )
    parser.add_argument(
        "--no-bootstrap",
        action="store_true",
        help="Skip automatic installation of missing host dependencies.",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("deps", help="Validate host dependencies")
    subparsers.add_parser("stage", help="Copy the hardware description and PetaLinux tools")
    subparsers.add_parser("init", help="Create the project and import the hardware description")
    subparsers.add_parser("config", help="Patch the project configuration for an EXT4 SD root")
    subparsers.add_parser("components", help="Build device tree, U-Boot, TF-A, PLM and PSM firmware")
    subparsers.add_parser("dtb", help="Rewrite legacy compatible strings in the device tree")
    subparsers.add_parser("package", help="Assemble BOOT.BIN")
    subparsers.add_parser("all", help="Execute the full build pipeline")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "all"

    context = BuildContext(
        workdir=args.workdir.expanduser().resolve(),
        xsa_source=args.xsa_source,
        tools_source=args.tools_source,
        clean=args.clean,
    )

    setup_logging(context.workdir)
    set_bootstrap_enabled(not args.no_bootstrap)
    log_stage_summary(command)

    executor = run_all if command == "all" else STAGE_EXECUTORS[command]
    try:
        with report_build_log(context.build_logs):
            executor(context)
    except PipelineError as exc:
        LOG.error("%s", exc)
        return exc.exit_status
    except RuntimeError as exc:
        LOG.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
