import tempfile
import unittest
from pathlib import Path

import config_patch
from errors import ConfigurationInvariantError
from fake_toolchain import DEFAULT_CONFIG


class ConfigRuleTests(unittest.TestCase):
    def test_each_rule_is_idempotent(self) -> None:
        lines = DEFAULT_CONFIG.split("\n")
        for rule in config_patch.CONFIG_RULES:
            with self.subTest(rule=rule.name):
                once, changed = rule.apply(lines)
                twice, changed_again = rule.apply(once)
                self.assertEqual(1, changed)
                self.assertEqual(once, twice)
                self.assertEqual(0, changed_again)

    def test_rules_are_noops_when_pattern_absent(self) -> None:
        text = "CONFIG_SUBSYSTEM_HOSTNAME=\"versal\"\n# unrelated comment\n"
        result = config_patch.patch_config_text(text)

        self.assertEqual(text, result.text)
        self.assertFalse(result.changed)

    def test_bootargs_rewritten_in_place(self) -> None:
        result = config_patch.patch_config_text(DEFAULT_CONFIG)

        self.assertIn(
            'clk_ignore_unused root=/dev/mmcblk0p2 rw rootwait"',
            result.text,
        )
        self.assertNotIn("root=/dev/ram0", result.text)

    def test_initramfs_image_line_is_emptied(self) -> None:
        result = config_patch.patch_config_text(DEFAULT_CONFIG)

        self.assertNotIn("CONFIG_SUBSYSTEM_INITRAMFS_IMAGE_NAME", result.text)
        self.assertEqual(len(DEFAULT_CONFIG.split("\n")), len(result.text.split("\n")))


class PatchInvariantTests(unittest.TestCase):
    def test_patched_config_satisfies_invariants(self) -> None:
        result = config_patch.patch_config_text(DEFAULT_CONFIG)

        self.assertEqual([], config_patch.check_config(result.text))
        lines = result.text.split("\n")
        self.assertIn("CONFIG_SUBSYSTEM_ROOTFS_EXT4=y", lines)
        self.assertIn("# CONFIG_SUBSYSTEM_ROOTFS_INITRD is not set", lines)
        self.assertNotIn("CONFIG_SUBSYSTEM_ROOTFS_INITRD=y", lines)
        self.assertIn('CONFIG_SUBSYSTEM_SDROOT_DEV="/dev/mmcblk0p2"', lines)
        self.assertEqual(["EXT4"], config_patch.enabled_rootfs_types(lines))

    def test_patching_twice_matches_patching_once(self) -> None:
        once = config_patch.patch_config_text(DEFAULT_CONFIG)
        twice = config_patch.patch_config_text(once.text)

        self.assertEqual(once.text, twice.text)
        self.assertFalse(twice.changed)

    def test_unpatched_config_reports_every_rule(self) -> None:
        failed = config_patch.check_config(DEFAULT_CONFIG)
        names = [entry.split(":", 1)[0] for entry in failed]

        self.assertEqual(
            [
                "disable-initrd",
                "enable-ext4",
                "sd-root-device",
                "drop-initramfs-image",
                "sd-root-bootargs",
                "rootfs-type",
            ],
            names,
        )

    def test_missing_ext4_key_is_an_invariant_error(self) -> None:
        text = DEFAULT_CONFIG.replace("# CONFIG_SUBSYSTEM_ROOTFS_EXT4 is not set\n", "")
        result = config_patch.patch_config_text(text)

        with self.assertRaises(ConfigurationInvariantError) as ctx:
            config_patch.verify_config(result.text)

        self.assertEqual("config", ctx.exception.stage)
        self.assertTrue(any(entry.startswith("enable-ext4") for entry in ctx.exception.failed))
        self.assertIn("EXT4 root filesystem is enabled", str(ctx.exception))

    def test_second_rootfs_type_is_rejected(self) -> None:
        text = DEFAULT_CONFIG.replace(
            "# CONFIG_SUBSYSTEM_ROOTFS_NFS is not set", "CONFIG_SUBSYSTEM_ROOTFS_NFS=y"
        )
        result = config_patch.patch_config_text(text)

        failed = config_patch.check_config(result.text)

        self.assertEqual(1, len(failed))
        self.assertIn("found NFS, EXT4", failed[0])


class PatchConfigFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.config = Path(self._tempdir.name) / "config"

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def test_file_is_rewritten(self) -> None:
        self.config.write_text(DEFAULT_CONFIG)

        with self.assertLogs(config_patch.LOG, level="INFO") as logs:
            config_patch.patch_config_file(self.config)

        self.assertIn("CONFIG_SUBSYSTEM_ROOTFS_EXT4=y", self.config.read_text())
        self.assertIn("Applied config rule enable-ext4", "\n".join(logs.output))

    def test_invalid_result_leaves_file_untouched(self) -> None:
        text = DEFAULT_CONFIG.replace("# CONFIG_SUBSYSTEM_ROOTFS_EXT4 is not set\n", "")
        self.config.write_text(text)

        with self.assertRaises(ConfigurationInvariantError):
            config_patch.patch_config_file(self.config)

        self.assertEqual(text, self.config.read_text())

    def test_missing_file_raises(self) -> None:
        with self.assertRaises(ConfigurationInvariantError):
            config_patch.patch_config_file(self.config)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
