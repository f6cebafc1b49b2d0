"""Shared helpers for ensuring host tooling is available.

The PetaLinux tools themselves arrive with the staged installation, but the
pipeline also needs a handful of host commands: ``bash`` to activate the
toolchain environment, ``scp`` to fetch remote inputs and ``dtc`` to rewrite
the device tree. These helpers try to install whatever is missing through the
system package manager unless bootstrapping was disabled.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Iterable, Mapping, Sequence

LOG = logging.getLogger("bootbin.build.bootstrap")

_bootstrap_enabled = True
_apt_updated = False

HOST_COMMANDS = ["bash", "dtc", "scp"]

DEPENDENCY_HINTS: dict[str, str] = {
    "bash": "sudo apt-get install bash",
    "dtc": "sudo apt-get install device-tree-compiler",
    "scp": "sudo apt-get install openssh-client",
}

APT_PACKAGE_MAP: dict[str, Sequence[str]] = {
    "bash": ["bash"],
    "dtc": ["device-tree-compiler"],
    "scp": ["openssh-client"],
}

DNF_PACKAGE_MAP: dict[str, Sequence[str]] = {
    "bash": ["bash"],
    "dtc": ["dtc"],
    "scp": ["openssh-clients"],
}

PACKAGE_MAP: dict[str, Mapping[str, Sequence[str]]] = {
    "apt-get": APT_PACKAGE_MAP,
    "dnf": DNF_PACKAGE_MAP,
}


def set_bootstrap_enabled(enabled: bool) -> None:
    """Globally enable or disable automatic dependency installation."""

    global _bootstrap_enabled
    _bootstrap_enabled = enabled


def find_missing_commands(commands: Iterable[str], *, path: str | None = None) -> list[str]:
    """Return the entries of *commands* that cannot be found on *path*."""

    return [cmd for cmd in dict.fromkeys(commands) if shutil.which(cmd, path=path) is None]


def ensure_commands(
    commands: Iterable[str],
    *,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Ensure all *commands* are available, attempting installation if allowed.

    Returns a list of commands that remain missing after any attempted
    bootstrapping efforts.
    """

    logger = logger or LOG
    commands = list(dict.fromkeys(commands))
    missing = find_missing_commands(commands)
    if not missing:
        return []

    if not _bootstrap_enabled:
        return missing

    manager = _detect_package_manager()
    if not manager:
        logger.debug("No supported package manager found for automatic installation.")
        return missing

    packages = _collect_packages(manager, missing)
    if not packages:
        logger.debug("No package mapping available for missing commands: %s", ", ".join(missing))
        return missing

    try:
        _install_packages(manager, packages, logger)
    except PermissionError:
        logger.warning(
            "Automatic installation skipped because elevated privileges are required and sudo is unavailable."
        )
        return missing
    except subprocess.CalledProcessError as exc:
        logger.warning(
            "Automatic installation via %s failed with exit code %s.", manager, exc.returncode
        )

    return find_missing_commands(commands)


def ensure_tool(command: str, *, logger: logging.Logger | None = None) -> None:
    """Ensure a single *command* exists or raise :class:`RuntimeError`."""

    remaining = ensure_commands([command], logger=logger)
    if remaining:
        hint = DEPENDENCY_HINTS.get(command)
        message = f"Required command '{command}' is not available."
        if hint:
            message = f"{message} Install it manually, for example: {hint}"
        raise RuntimeError(message)


def _detect_package_manager() -> str | None:
    if shutil.which("apt-get"):
        return "apt-get"
    if shutil.which("dnf"):
        return "dnf"
    return None


def _collect_packages(manager: str, commands: Sequence[str]) -> list[str]:
    mapping = PACKAGE_MAP.get(manager, {})
    packages: set[str] = set()
    for command in commands:
        for package in mapping.get(command, []):
            packages.add(package)
    return sorted(packages)


def _install_packages(manager: str, packages: Sequence[str], logger: logging.Logger) -> None:
    prefix: list[str] = []
    if os.geteuid() != 0:
        sudo = shutil.which("sudo")
        if not sudo:
            raise PermissionError
        prefix = [sudo]

    logger.info("Installing missing packages via %s: %s", manager, ", ".join(packages))

    command_prefix = prefix + [manager]
    if manager == "apt-get":
        _maybe_run_apt_update(command_prefix, logger)
        _run(command_prefix + ["install", "-y", *packages], logger)
    elif manager == "dnf":
        _run(command_prefix + ["install", "-y", *packages], logger)
    else:  # pragma: no cover - guard for future extensions
        raise RuntimeError(f"Unsupported package manager: {manager}")


def _maybe_run_apt_update(command_prefix: Sequence[str], logger: logging.Logger) -> None:
    global _apt_updated
    if _apt_updated:
        return
    _run(list(command_prefix) + ["update"], logger)
    _apt_updated = True


def _run(command: Sequence[str], logger: logging.Logger) -> None:
    logger.info("$ %s", " ".join(str(part) for part in command))
    subprocess.run(command, check=True)
