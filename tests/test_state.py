import os
import tempfile
import unittest
import unittest.mock

import tunnelmatic
from fakes import make_settings, seed


class StateTestCase(unittest.TestCase):
    """Temp passwd/group pair with both tunnel groups present."""

    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.td = self._td.name
        self.settings = make_settings(self.td)
        seed(self.settings, group=(
            "sshtunnel-password:x:2001:carol\n"
            "sshtunnel-key:x:2002:\n"
        ))
        self.state = tunnelmatic.StateReader(self.settings)

    def tearDown(self):
        self._td.cleanup()


class TestAuthMode(StateTestCase):
    def test_supplementary_and_primary_membership(self):
        seed(self.settings, passwd=(
            "carol:x:1001:1001::/nonexistent:/usr/sbin/nologin\n"
            "dave:x:1002:2002::/nonexistent:/usr/sbin/nologin\n"
        ))
        self.assertEqual(self.state.auth_mode("carol"), tunnelmatic.AUTH_PASSWORD)
        self.assertEqual(self.state.auth_mode("dave"), tunnelmatic.AUTH_KEY)
        self.assertTrue(self.state.is_tunnel_user("dave"))

    def test_plain_account_is_not_a_tunnel_user(self):
        with self.assertRaises(tunnelmatic.NotFoundError):
            self.state.auth_mode("bob")
        self.assertFalse(self.state.is_tunnel_user("bob"))
        self.assertFalse(self.state.is_tunnel_user("nobody-here"))

    def test_both_groups_resolves_to_password_with_warning(self):
        seed(self.settings, passwd="erin:x:1003:2002::/nonexistent:/usr/sbin/nologin\n")
        with open(self.settings.group_file) as f:
            text = f.read()
        with open(self.settings.group_file, "w") as f:
            f.write(text.replace("sshtunnel-password:x:2001:carol", "sshtunnel-password:x:2001:carol,erin"))

        with self.assertLogs(level="WARNING") as logs:
            self.assertEqual(self.state.auth_mode("erin"), tunnelmatic.AUTH_PASSWORD)
        self.assertIn("erin", logs.output[0])

    def test_reads_are_never_cached(self):
        self.assertFalse(self.state.user_exists("frank"))
        seed(self.settings, passwd="frank:x:1004:2001::/nonexistent:/usr/sbin/nologin\n")
        self.assertTrue(self.state.user_exists("frank"))
        self.assertEqual(self.state.auth_mode("frank"), tunnelmatic.AUTH_PASSWORD)


class TestListing(StateTestCase):
    def test_password_users_first_and_no_duplicates(self):
        seed(self.settings, passwd=(
            "carol:x:1001:2001::/nonexistent:/usr/sbin/nologin\n"
            "dave:x:1002:2002::/nonexistent:/usr/sbin/nologin\n"
            "gina:x:1005:2001::/nonexistent:/usr/sbin/nologin\n"
        ))
        self.assertEqual(self.state.list_tunnel_users(), [
            ("carol", "password"),
            ("gina", "password"),
            ("dave", "key"),
        ])

    def test_missing_groups_read_as_empty(self):
        with open(self.settings.group_file, "w") as f:
            f.write("root:x:0:\n")
        self.assertEqual(self.state.list_tunnel_users(), [])
        self.assertEqual(self.state.group_members("sshtunnel-key"), set())
        self.assertIsNone(self.state.group_gid("sshtunnel-key"))
        self.assertFalse(self.state.groups_non_empty())

    def test_groups_non_empty(self):
        self.assertTrue(self.state.groups_non_empty())
        with open(self.settings.group_file, "w") as f:
            f.write("sshtunnel-password:x:2001:\nsshtunnel-key:x:2002:\n")
        self.assertFalse(self.state.groups_non_empty())

    def test_comments_and_blank_lines_ignored(self):
        seed(self.settings, passwd="\n# comment:x:1:1\n")
        self.assertEqual(self.state.usernames(), {"root", "bob"})


class TestHardeningConfigured(StateTestCase):
    def test_any_dropin_counts(self):
        self.assertFalse(self.state.hardening_configured())
        os.makedirs(self.settings.sshd_config_dir)
        with open(os.path.join(self.settings.sshd_config_dir, tunnelmatic.SSHD_KEYS_FILE), "w") as f:
            f.write("x\n")
        self.assertTrue(self.state.hardening_configured())


class TestSettings(unittest.TestCase):
    def test_env_overlay(self):
        env = {
            "TUNNELMATIC_PASSWD_FILE": "/tmp/passwd",
            "TUNNELMATIC_DENY_FILES": "/a.deny, /b.deny",
            "TUNNELMATIC_COMMAND_TIMEOUT": "5",
            "TUNNELMATIC_KEY_GROUP": "  ",
        }
        with unittest.mock.patch.dict(os.environ, env):
            s = tunnelmatic.fncLoadSettings(version="9.9")
        self.assertEqual(s.version, "9.9")
        self.assertEqual(s.passwd_file, "/tmp/passwd")
        self.assertEqual(s.deny_files, ["/a.deny", "/b.deny"])
        self.assertEqual(s.command_timeout, 5)
        self.assertEqual(s.key_group, tunnelmatic.KEY_GROUP)

    def test_bad_integer_falls_back(self):
        with unittest.mock.patch.dict(os.environ, {"TUNNELMATIC_COMMAND_TIMEOUT": "soon"}):
            s = tunnelmatic.fncLoadSettings()
        self.assertEqual(s.command_timeout, tunnelmatic.COMMAND_TIMEOUT)

    def test_unknown_mode(self):
        with self.assertRaises(tunnelmatic.ValidationError):
            tunnelmatic.Settings().group_for("totp")


if __name__ == "__main__":
    unittest.main()
