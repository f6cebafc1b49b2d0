import stat
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import build
from errors import ProvisioningError
from runner import CommandResult


class RemoteSourceTests(unittest.TestCase):
    def test_scp_style_sources_are_remote(self) -> None:
        self.assertTrue(build.is_remote_source("fpga-host:/tmp/bitstream/caliptra_fpga.xsa"))
        self.assertTrue(build.is_remote_source("runner@10.0.0.5:petalinux-tools"))

    def test_local_paths_are_not_remote(self) -> None:
        self.assertFalse(build.is_remote_source("/fpga-tools/petalinux-tools"))
        self.assertFalse(build.is_remote_source("./caliptra_fpga.xsa"))
        self.assertFalse(build.is_remote_source("caliptra_fpga.xsa"))
        self.assertFalse(build.is_remote_source("https://example.com/caliptra_fpga.xsa"))


class StageArtifactsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        root = Path(self._tempdir.name)
        self.xsa = root / "src" / "caliptra_fpga.xsa"
        self.xsa.parent.mkdir()
        self.xsa.write_bytes(b"xsa")
        self.xsa.chmod(0o600)

        self.tools = root / "src" / "petalinux-tools"
        (self.tools / "bin").mkdir(parents=True)
        settings = self.tools / "settings.sh"
        settings.write_text("export PATH=$PATH\n")
        settings.chmod(0o600)

        self.context = build.BuildContext(
            workdir=root / "work",
            xsa_source=str(self.xsa),
            tools_source=str(self.tools),
        )

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def test_local_sources_are_copied_and_made_usable(self) -> None:
        resolved = build.stage_artifacts(self.context)

        self.assertTrue(resolved.is_absolute())
        self.assertEqual(self.context.staged_xsa.resolve(), resolved)
        self.assertEqual(resolved, self.context.hardware_description)
        self.assertEqual(b"xsa", resolved.read_bytes())
        self.assertEqual(0o755, stat.S_IMODE(resolved.stat().st_mode))
        staged_settings = self.context.tools_dir / "settings.sh"
        self.assertEqual(0o755, stat.S_IMODE(staged_settings.stat().st_mode))

    def test_restaging_replaces_previous_copy(self) -> None:
        build.stage_artifacts(self.context)
        (self.context.tools_dir / "leftover").write_text("stale")

        build.stage_artifacts(self.context)

        self.assertFalse((self.context.tools_dir / "leftover").exists())

    def test_missing_source_raises(self) -> None:
        self.xsa.unlink()

        with self.assertRaises(ProvisioningError) as ctx:
            build.stage_artifacts(self.context)

        self.assertEqual("stage", ctx.exception.stage)

    def test_remote_sources_use_scp(self) -> None:
        self.context.xsa_source = "fpga-host:/tmp/caliptra-fpga-bitstream/caliptra_fpga.xsa"
        self.context.tools_source = "fpga-host:/fpga-tools/petalinux-tools"
        commands: list[list[str]] = []

        def fake_scp(command: list[str], **_: object) -> CommandResult:
            commands.append(command)
            destination = Path(command[-1])
            if "-r" in command:
                destination.mkdir(parents=True)
                (destination / "settings.sh").write_text("")
            else:
                destination.write_bytes(b"remote xsa")
            return CommandResult(command, 0)

        with mock.patch("build.run_command", side_effect=fake_scp):
            resolved = build.stage_artifacts(self.context)

        self.assertEqual(
            [
                ["scp", self.context.xsa_source, str(self.context.staged_xsa)],
                ["scp", "-r", self.context.tools_source, str(self.context.tools_dir)],
            ],
            commands,
        )
        self.assertEqual(b"remote xsa", resolved.read_bytes())

    def test_scp_failure_is_a_provisioning_error(self) -> None:
        self.context.xsa_source = "fpga-host:/tmp/caliptra_fpga.xsa"
        error = subprocess.CalledProcessError(255, ["scp"])

        with mock.patch("build.run_command", side_effect=error):
            with self.assertRaises(ProvisioningError) as ctx:
                build.stage_artifacts(self.context)

        self.assertEqual(255, ctx.exception.returncode)
        self.assertEqual(255, ctx.exception.exit_status)


class RequireHardwareDescriptionTests(unittest.TestCase):
    def test_unstaged_description_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            context = build.BuildContext(workdir=Path(tmp_dir))

            with self.assertRaises(ProvisioningError):
                context.require_hardware_description()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
