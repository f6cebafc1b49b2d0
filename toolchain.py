"""Thin wrappers around the PetaLinux command-line tools.

Each helper runs one toolchain command against an explicit directory and
environment; none of them change the process working directory. Failures
surface as :class:`subprocess.CalledProcessError` so the calling stage can
attach its own error type.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Mapping

from errors import ProvisioningError
from host_bootstrap import find_missing_commands
from runner import CommandResult, run_command

LOG = logging.getLogger("bootbin.build.toolchain")

SETTINGS_SCRIPT = "settings.sh"

PETALINUX_COMMANDS = [
    "petalinux-create",
    "petalinux-config",
    "petalinux-build",
    "petalinux-package",
]

BOOT_PACKAGE_ARGS = ["--boot", "--format", "BIN", "--plm", "--psmfw", "--u-boot", "--dtb", "--force"]


def load_toolchain_env(install_dir: Path) -> dict[str, str]:
    """Source ``settings.sh`` from *install_dir* and return the resulting environment."""

    settings = install_dir / SETTINGS_SCRIPT
    if not settings.is_file():
        raise ProvisioningError(
            f"Toolchain activation script not found: {settings}",
            hint="Run the stage step to copy the PetaLinux installation first.",
        )

    LOG.info("Activating toolchain environment from %s", settings)
    try:
        completed = subprocess.run(
            ["bash", "-c", 'source "$1" >/dev/null 2>&1 && env -0', "bash", str(settings)],
            cwd=install_dir,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        raise ProvisioningError(
            f"Sourcing {settings} failed with exit status {exc.returncode}",
            returncode=exc.returncode,
        ) from exc
    except OSError as exc:
        raise ProvisioningError(f"Unable to run bash to activate the toolchain: {exc}") from exc

    env = parse_env_dump(completed.stdout)
    missing = find_missing_commands(PETALINUX_COMMANDS, path=env.get("PATH", ""))
    if missing:
        raise ProvisioningError(
            "Toolchain environment does not provide: " + ", ".join(missing),
            hint=f"Check that {install_dir} is a complete PetaLinux installation.",
        )
    return env


def parse_env_dump(dump: str) -> dict[str, str]:
    """Parse the NUL separated output of ``env -0``."""

    env: dict[str, str] = {}
    for entry in dump.split("\0"):
        if not entry or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        env[key] = value
    return env


def create_project(workdir: Path, name: str, template: str, env: Mapping[str, str]) -> CommandResult:
    return run_command(
        ["petalinux-create", "-t", "project", "--template", template, "--name", name],
        cwd=workdir,
        env=env,
    )


def import_hardware_description(project: Path, xsa: Path, env: Mapping[str, str]) -> CommandResult:
    """Import *xsa* into *project*, accepting every default configuration answer."""

    return run_command(
        ["petalinux-config", "--get-hw-description", str(xsa), "--silentconfig"],
        cwd=project,
        env=env,
    )


def build_component(project: Path, component: str, env: Mapping[str, str]) -> CommandResult:
    return run_command(["petalinux-build", "-c", component], cwd=project, env=env)


def package_boot(project: Path, env: Mapping[str, str]) -> CommandResult:
    return run_command(["petalinux-package", *BOOT_PACKAGE_ARGS], cwd=project, env=env)
