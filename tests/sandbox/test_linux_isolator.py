"""Tests for Linux bubblewrap filesystem isolation."""

import os
import tempfile
import unittest
from unittest.mock import patch

from agentspawn.sandbox.base import SandboxOptions
from agentspawn.sandbox.linux_isolator import BubblewrapIsolator


def contains_sequence(args, sequence):
    """Check that ``sequence`` appears contiguously in ``args``."""
    n = len(sequence)
    return any(args[i:i + n] == sequence for i in range(len(args) - n + 1))


class TestBubblewrapIsolator(unittest.TestCase):
    """Test cases for BubblewrapIsolator."""

    def setUp(self):
        """Set up test fixtures."""
        self.workdir = "/tmp/agentspawn-test/project"
        self.isolator = self.make_isolator()

        # Keep the host's ~/.claude out of the generated arguments
        patcher = patch.object(
            BubblewrapIsolator, "credential_dir", return_value="/nonexistent/.claude"
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def make_isolator(self, level="permissive", **kwargs):
        return BubblewrapIsolator(
            SandboxOptions(
                session_name="worker",
                working_directory=self.workdir,
                level=level,
                **kwargs,
            )
        )

    def test_platform(self):
        """Test that platform is correctly identified."""
        self.assertEqual(self.isolator.get_platform(), "linux")
        self.assertEqual(self.isolator.get_backend(), "bwrap")

    @patch("shutil.which")
    def test_is_available_when_bwrap_installed(self, mock_which):
        """Test availability check when bwrap is installed."""
        mock_which.return_value = "/usr/bin/bwrap"
        self.assertTrue(self.isolator.is_available())
        mock_which.assert_called_once_with("bwrap")

    @patch("shutil.which")
    def test_is_available_when_bwrap_not_installed(self, mock_which):
        """Test availability check when bwrap is not installed."""
        mock_which.return_value = None
        self.assertFalse(self.isolator.is_available())

    def test_wrap_command_permissive(self):
        """Permissive binds the whole root read-only and gives /tmp a tmpfs."""
        command, args = self.isolator.wrap_command("claude", ["--print"])

        self.assertEqual(command, "bwrap")
        self.assertIn("--unshare-all", args)
        self.assertIn("--die-with-parent", args)
        self.assertIn("--new-session", args)
        self.assertIn("--share-net", args)
        self.assertTrue(contains_sequence(args, ["--ro-bind", "/", "/"]))
        self.assertTrue(contains_sequence(args, ["--tmpfs", "/tmp"]))
        self.assertTrue(
            contains_sequence(args, ["--bind", self.workdir, self.workdir])
        )
        self.assertTrue(contains_sequence(args, ["--chdir", self.workdir]))
        self.assertEqual(args[-3:], ["--", "claude", "--print"])

    def test_tmp_is_never_bound_read_write(self):
        """/tmp only ever gets a tmpfs, at every level."""
        for level in ("permissive", "standard", "strict"):
            with self.subTest(level=level):
                _command, args = self.make_isolator(level).wrap_command("claude", [])
                self.assertFalse(contains_sequence(args, ["--bind", "/tmp", "/tmp"]))
                self.assertTrue(contains_sequence(args, ["--tmpfs", "/tmp"]))

    def test_workdir_bind_follows_tmpfs(self):
        """A workdir under /tmp must be mounted over the tmpfs, not hidden by it."""
        _command, args = self.isolator.wrap_command("claude", [])
        self.assertLess(args.index("--tmpfs"), args.index("--bind"))

    @patch("agentspawn.sandbox.linux_isolator.os.path.exists")
    def test_wrap_command_standard_binds_system_dirs(self, mock_exists):
        """Standard binds system directories instead of the whole root."""
        mock_exists.return_value = True
        isolator = self.make_isolator("standard")

        _command, args = isolator.wrap_command("claude", [])

        self.assertFalse(contains_sequence(args, ["--ro-bind", "/", "/"]))
        for path in ("/usr", "/bin", "/sbin", "/lib", "/etc", "/lib64"):
            self.assertTrue(contains_sequence(args, ["--ro-bind", path, path]))
        self.assertIn("--share-net", args)

    @patch("agentspawn.sandbox.linux_isolator.os.path.exists")
    def test_wrap_command_skips_missing_lib64(self, mock_exists):
        """Test that /lib64 is only bound where it exists."""
        mock_exists.side_effect = lambda path: path != "/lib64"
        _command, args = self.make_isolator("standard").wrap_command("claude", [])
        self.assertNotIn("/lib64", args)

    def test_wrap_command_strict_has_no_network(self):
        """Test that strict isolation unshares the network."""
        _command, args = self.make_isolator("strict").wrap_command("claude", [])
        self.assertNotIn("--share-net", args)
        self.assertIn("--unshare-all", args)

    def test_credential_dir_bound_read_only_when_present(self):
        """Test that ~/.claude is bound read-only when it exists."""
        with tempfile.TemporaryDirectory() as home:
            credential_dir = os.path.join(home, ".claude")
            os.mkdir(credential_dir)
            with patch.object(
                BubblewrapIsolator, "credential_dir", return_value=credential_dir
            ):
                _command, args = self.isolator.wrap_command("claude", [])

        self.assertTrue(
            contains_sequence(args, ["--ro-bind", credential_dir, credential_dir])
        )

    @patch("shutil.which")
    def test_resource_limits_use_systemd_run(self, mock_which):
        """Test that limits wrap bwrap in a systemd-run scope when available."""
        mock_which.return_value = "/usr/bin/systemd-run"
        isolator = self.make_isolator("standard", memory_limit="512m", cpu_limit=0.5)

        command, args = isolator.wrap_command("claude", ["--print"])

        self.assertEqual(command, "systemd-run")
        self.assertIn("--user", args)
        self.assertIn("--scope", args)
        self.assertIn("--property=MemoryMax=512M", args)
        self.assertIn("--property=CPUQuota=50%", args)
        separator = args.index("--")
        self.assertEqual(args[separator + 1], "bwrap")
        self.assertEqual(args[-2:], ["claude", "--print"])

    @patch("shutil.which")
    def test_resource_limits_skipped_without_systemd_run(self, mock_which):
        """Test that bwrap runs directly when systemd-run is missing."""
        mock_which.return_value = None
        isolator = self.make_isolator("strict", memory_limit="256m")
        command, _args = isolator.wrap_command("claude", [])
        self.assertEqual(command, "bwrap")

    @patch("shutil.which")
    def test_permissive_ignores_resource_limits(self, mock_which):
        """Test that permissive never applies resource limits."""
        mock_which.return_value = "/usr/bin/systemd-run"
        isolator = self.make_isolator("permissive", memory_limit="512m")
        command, _args = isolator.wrap_command("claude", [])
        self.assertEqual(command, "bwrap")


if __name__ == "__main__":
    unittest.main()
