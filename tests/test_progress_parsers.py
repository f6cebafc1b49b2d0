import unittest

import progress


class BitbakeProgressParserTests(unittest.TestCase):
    def test_running_task_line(self) -> None:
        parser = progress.BitbakeProgressParser()
        updates = parser.parse("NOTE: Running task 1234 of 4936 (/opt/yocto/u-boot-xlnx.bb:do_compile)")
        self.assertEqual(1, len(updates))
        update = updates[0]
        self.assertEqual("tasks", update.label)
        self.assertEqual(1234, update.current)
        self.assertEqual(4936, update.total)
        self.assertAlmostEqual(25.0, update.percent or 0, delta=0.1)

    def test_setscene_line(self) -> None:
        parser = progress.BitbakeProgressParser()
        updates = parser.parse("Setscene tasks: 120 of 480")
        self.assertEqual(1, len(updates))
        self.assertEqual("setscene", updates[0].label)
        self.assertEqual(25.0, updates[0].percent)

    def test_unrelated_line_is_ignored(self) -> None:
        parser = progress.BitbakeProgressParser()
        self.assertEqual([], parser.parse("[INFO] Sourcing buildtools"))

    def test_parser_selected_for_petalinux_build(self) -> None:
        parser, prepared = progress.get_progress_parser(["petalinux-build", "-c", "plm"])
        self.assertIsInstance(parser, progress.BitbakeProgressParser)
        self.assertEqual(["petalinux-build", "-c", "plm"], prepared)

    def test_no_parser_for_other_commands(self) -> None:
        parser, prepared = progress.get_progress_parser(["dtc", "-I", "dtb"])
        self.assertIsNone(parser)
        self.assertEqual(["dtc", "-I", "dtb"], prepared)


class ProgressFormattingTests(unittest.TestCase):
    def test_format_progress_message(self) -> None:
        update = progress.ProgressUpdate(label="tasks", percent=42.0, current=123, total=456)
        message = progress.format_progress_message(update)
        self.assertEqual("tasks 42% (123/456)", message)

    def test_format_without_total(self) -> None:
        update = progress.ProgressUpdate(label="tasks", current=7)
        self.assertEqual("tasks (7)", progress.format_progress_message(update))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
