"""Declarative patches for the PetaLinux ``project-spec/configs/config`` file.

The generated configuration boots from an initrd. The rules below switch the
root filesystem to EXT4 on the second SD card partition. Each rule rewrites a
single key, is a no-op when its pattern is absent and carries a postcondition
that :func:`verify_config` checks once every rule has run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from errors import ConfigurationInvariantError

LOG = logging.getLogger("bootbin.build.config")

SD_ROOT_DEVICE = "/dev/mmcblk0p2"
ROOTFS_TYPES = ("INITRAMFS", "INITRD", "JFFS2", "UBIFS", "NFS", "EXT4", "OTHER")

_ENABLED_ROOTFS_RE = re.compile(r"^CONFIG_SUBSYSTEM_ROOTFS_(?P<kind>[A-Z0-9_]+)=y$")

Postcondition = Callable[[Sequence[str]], bool]


def _line_absent(pattern: str) -> Postcondition:
    compiled = re.compile(pattern)
    return lambda lines: not any(compiled.search(line) for line in lines)


def _line_present(pattern: str) -> Postcondition:
    compiled = re.compile(pattern)
    return lambda lines: any(compiled.search(line) for line in lines)


def _all_of(*checks: Postcondition) -> Postcondition:
    return lambda lines: all(check(lines) for check in checks)


@dataclass(frozen=True)
class ConfigRule:
    """A single line-oriented substitution and the state it guarantees."""

    name: str
    pattern: re.Pattern[str]
    replacement: str
    invariant: str
    postcondition: Postcondition = field(compare=False)

    def apply(self, lines: Sequence[str]) -> tuple[list[str], int]:
        """Return *lines* with the rule applied and the number of lines changed."""

        patched: list[str] = []
        changed = 0
        for line in lines:
            new_line, count = self.pattern.subn(self.replacement, line)
            if count and new_line != line:
                changed += 1
            patched.append(new_line)
        return patched, changed


CONFIG_RULES: tuple[ConfigRule, ...] = (
    ConfigRule(
        name="disable-initrd",
        pattern=re.compile(r"^CONFIG_SUBSYSTEM_ROOTFS_INITRD=y$"),
        replacement="# CONFIG_SUBSYSTEM_ROOTFS_INITRD is not set",
        invariant="initrd root filesystem is disabled",
        postcondition=_line_absent(r"^CONFIG_SUBSYSTEM_ROOTFS_INITRD=y$"),
    ),
    ConfigRule(
        name="enable-ext4",
        pattern=re.compile(r"^# CONFIG_SUBSYSTEM_ROOTFS_EXT4 is not set$"),
        replacement="CONFIG_SUBSYSTEM_ROOTFS_EXT4=y",
        invariant="EXT4 root filesystem is enabled",
        postcondition=_line_present(r"^CONFIG_SUBSYSTEM_ROOTFS_EXT4=y$"),
    ),
    ConfigRule(
        name="sd-root-device",
        pattern=re.compile(r"^CONFIG_SUBSYSTEM_INITRD_RAMDISK_LOADADDR=.*$"),
        replacement=f'CONFIG_SUBSYSTEM_SDROOT_DEV="{SD_ROOT_DEVICE}"',
        invariant=f"root device is {SD_ROOT_DEVICE} and no ramdisk load address is set",
        postcondition=_all_of(
            _line_absent(r"^CONFIG_SUBSYSTEM_INITRD_RAMDISK_LOADADDR="),
            _line_present(rf'^CONFIG_SUBSYSTEM_SDROOT_DEV="{re.escape(SD_ROOT_DEVICE)}"$'),
        ),
    ),
    ConfigRule(
        name="drop-initramfs-image",
        pattern=re.compile(r"^CONFIG_SUBSYSTEM_INITRAMFS_IMAGE_NAME=.*$"),
        replacement="",
        invariant="initramfs image name is not set",
        postcondition=_line_absent(r"^CONFIG_SUBSYSTEM_INITRAMFS_IMAGE_NAME="),
    ),
    ConfigRule(
        name="sd-root-bootargs",
        pattern=re.compile(re.escape("root=/dev/ram0 rw")),
        replacement=f"root={SD_ROOT_DEVICE} rw rootwait",
        invariant="kernel command line does not mount a RAM disk as root",
        postcondition=_line_absent(re.escape("root=/dev/ram0")),
    ),
)


@dataclass
class PatchResult:
    """Patched configuration text and the lines each rule touched."""

    text: str
    changes: dict[str, int]

    @property
    def changed(self) -> bool:
        return any(self.changes.values())


def enabled_rootfs_types(lines: Sequence[str]) -> list[str]:
    """Return the root filesystem types switched on in *lines*."""

    kinds: list[str] = []
    for line in lines:
        match = _ENABLED_ROOTFS_RE.match(line)
        if match and match.group("kind") in ROOTFS_TYPES:
            kinds.append(match.group("kind"))
    return kinds


def patch_config_text(text: str, rules: Sequence[ConfigRule] = CONFIG_RULES) -> PatchResult:
    """Apply *rules* to *text* without touching the filesystem."""

    lines = text.split("\n")
    changes: dict[str, int] = {}
    for rule in rules:
        lines, changed = rule.apply(lines)
        changes[rule.name] = changed
    return PatchResult("\n".join(lines), changes)


def check_config(text: str, rules: Sequence[ConfigRule] = CONFIG_RULES) -> list[str]:
    """Return the invariants *text* violates (empty when the config is valid)."""

    lines = text.split("\n")
    failed = [f"{rule.name}: {rule.invariant}" for rule in rules if not rule.postcondition(lines)]
    kinds = enabled_rootfs_types(lines)
    if kinds != ["EXT4"]:
        enabled = ", ".join(kinds) if kinds else "none"
        failed.append(f"rootfs-type: exactly one root filesystem (EXT4) enabled, found {enabled}")
    return failed


def verify_config(text: str, rules: Sequence[ConfigRule] = CONFIG_RULES) -> None:
    """Raise :class:`ConfigurationInvariantError` unless *text* is fully patched."""

    failed = check_config(text, rules)
    if failed:
        raise ConfigurationInvariantError(
            failed,
            hint="The toolchain may have changed its default configuration keys.",
        )


def patch_config_file(path: Path, rules: Sequence[ConfigRule] = CONFIG_RULES) -> PatchResult:
    """Patch the configuration at *path* in place and verify the result."""

    if not path.is_file():
        raise ConfigurationInvariantError(
            [f"configuration file {path} exists"],
            hint="Run the init stage to create the project first.",
        )

    original = path.read_text()
    result = patch_config_text(original, rules)
    for name, changed in result.changes.items():
        if changed:
            LOG.info("Applied config rule %s (%d line(s))", name, changed)
        else:
            LOG.info("Config rule %s: pattern absent, nothing to change", name)

    verify_config(result.text, rules)

    if result.text != original:
        path.write_text(result.text)
        LOG.info("Wrote %s", path)
    return result
