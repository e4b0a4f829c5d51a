import shutil
import unittest

import tunnelmatic


@unittest.skipUnless(shutil.which("sleep") and shutil.which("false") and shutil.which("cat"),
                     "needs coreutils")
class TestCommandRunner(unittest.TestCase):
    """Exercises the real subprocess path with harmless binaries."""

    def setUp(self):
        # pinned paths that don't exist force the PATH lookup
        self.settings = tunnelmatic.Settings(command_timeout=1, bins={
            "sleep": "/nonexistent/bin/sleep",
            "false": "/nonexistent/bin/false",
            "cat": shutil.which("cat"),
            "ghost": "/nonexistent/bin/tunnelmatic-no-such-binary",
        })
        self.runner = tunnelmatic.CommandRunner(self.settings)

    def test_pinned_path_used_when_present(self):
        self.assertEqual(self.runner.resolve("cat"), shutil.which("cat"))

    def test_which_fallback_when_pinned_path_missing(self):
        self.assertEqual(self.runner.resolve("sleep"), shutil.which("sleep"))

    def test_stdin_and_output_captured(self):
        res = self.runner.run("cat", [], input="alice:pw\n")
        self.assertTrue(res.ok)
        self.assertEqual(res.stdout, "alice:pw")

    def test_missing_binary_is_127(self):
        self.assertIsNone(self.runner.resolve("ghost"))
        res = self.runner.run("ghost", ["x"])
        self.assertEqual(res.returncode, 127)
        self.assertIn("ghost", res.stderr)

    def test_timeout_is_124(self):
        res = self.runner.run("sleep", ["5"])
        self.assertEqual(res.returncode, 124)
        self.assertIn("timed out", res.stderr)

    def test_check_raises_on_nonzero(self):
        with self.assertLogs(level="ERROR"):
            with self.assertRaises(tunnelmatic.OSCommandError) as cm:
                self.runner.check("false", [], context="run false")
        self.assertEqual(cm.exception.cmdkey, "false")
        self.assertEqual(cm.exception.returncode, 1)
        self.assertIn("run false failed (exit 1)", str(cm.exception))

    def test_timeout_surfaces_through_check(self):
        with self.assertLogs(level="ERROR"):
            with self.assertRaises(tunnelmatic.OSCommandError) as cm:
                self.runner.check("sleep", ["5"])
        self.assertEqual(cm.exception.returncode, 124)


if __name__ == "__main__":
    unittest.main()
