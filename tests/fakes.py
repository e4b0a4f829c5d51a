"""Test doubles: a command runner that edits temp passwd/group files."""

import os

from tunnelmatic import CommandResult, CommandRunner, Settings
from tunnelmatic_cli import fncBuildServices

SEED_PASSWD = (
    "root:x:0:0:root:/root:/bin/bash\n"
    "bob:x:1000:1000:Bob:/home/bob:/bin/bash\n"
)
SEED_GROUP = (
    "root:x:0:\n"
    "bob:x:1000:\n"
)

PUBKEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIGn2T8dQ0xtJYvDhHjTa0d3bwPKW0fJq0mK0mD4hLzX1 alice@laptop"
PUBKEY2 = "ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBFakeKey= alice@desk"


def make_settings(td: str) -> Settings:
    passwd = os.path.join(td, "passwd")
    group = os.path.join(td, "group")
    with open(passwd, "w") as f:
        f.write(SEED_PASSWD)
    with open(group, "w") as f:
        f.write(SEED_GROUP)
    return Settings(
        passwd_file=passwd,
        group_file=group,
        authorized_keys_dir=os.path.join(td, "authorized_keys.d"),
        deny_files=[os.path.join(td, "cron.deny"), os.path.join(td, "at.deny")],
        sshd_config_dir=os.path.join(td, "sshd_config.d"),
        fail2ban_jail=os.path.join(td, "jail.d", "tunnelmatic.conf"),
        log_file=os.path.join(td, "log", "tunnelmatic.log"),
    )


def seed(settings: Settings, passwd: str = "", group: str = ""):
    """Append raw lines to the fake account databases."""
    if passwd:
        with open(settings.passwd_file, "a") as f:
            f.write(passwd)
    if group:
        with open(settings.group_file, "a") as f:
            f.write(group)


def build(td: str, missing=()):
    settings = make_settings(td)
    runner = FakeRunner(settings, missing=missing)
    return fncBuildServices(settings, runner=runner)


class FakeRunner(CommandRunner):
    """Records every invocation and applies account changes to the temp files.

    Failures are injected per (cmdkey, last argument); a last argument of
    None matches every call of that command.
    """

    def __init__(self, settings: Settings, missing=()):
        super().__init__(settings)
        self.settings = settings
        self.missing = set(missing)
        self.calls = []
        self.inputs = []
        self.failures = {}
        self.passwords = {}

    def fail(self, cmdkey, arg=None, returncode=1, stderr="simulated failure"):
        self.failures[(cmdkey, arg)] = CommandResult(returncode, "", stderr)

    def commands(self, cmdkey):
        return [args for key, args in self.calls if key == cmdkey]

    def resolve(self, cmdkey):
        if cmdkey in self.missing:
            return None
        return f"/fake/bin/{cmdkey}"

    def run(self, cmdkey, args=None, input=None):
        args = list(args or [])
        self.calls.append((cmdkey, args))
        if input is not None:
            self.inputs.append((cmdkey, input))
        if cmdkey in self.missing:
            return CommandResult(127, "", f"binary not found: {cmdkey}")
        for key in ((cmdkey, args[-1] if args else None), (cmdkey, None)):
            if key in self.failures:
                return self.failures[key]
        handler = getattr(self, "_" + cmdkey.replace("-", "_"), None)
        res = handler(args, input) if handler else None
        return res or CommandResult(0)

    # -- file plumbing --
    def _load(self, path):
        with open(path, encoding="utf-8", errors="surrogateescape") as f:
            return [line.rstrip("\n").split(":") for line in f if line.strip()]

    def _save(self, path, rows):
        with open(path, "w", encoding="utf-8", errors="surrogateescape") as f:
            f.write("".join(":".join(r) + "\n" for r in rows))

    def _next_id(self, path, col):
        used = {int(r[col]) for r in self._load(path)}
        n = 2000
        while n in used:
            n += 1
        return str(n)

    def _gid(self, group):
        for r in self._load(self.settings.group_file):
            if r[0] == group:
                return r[2]
        return None

    def _has_user(self, name):
        return any(r[0] == name for r in self._load(self.settings.passwd_file))

    def _edit_members(self, group, change):
        rows = self._load(self.settings.group_file)
        for r in rows:
            if r[0] == group:
                members = [m for m in r[3].split(",") if m]
                r[3] = ",".join(change(members))
        self._save(self.settings.group_file, rows)

    # -- commands --
    def _groupadd(self, args, input):
        name = args[-1]
        if self._gid(name) is not None:
            return CommandResult(9, "", f"group '{name}' already exists")
        rows = self._load(self.settings.group_file)
        rows.append([name, "x", self._next_id(self.settings.group_file, 2), ""])
        self._save(self.settings.group_file, rows)

    def _groupdel(self, args, input):
        name = args[-1]
        gid = self._gid(name)
        if gid is None:
            return CommandResult(6, "", f"group '{name}' does not exist")
        if any(r[3] == gid for r in self._load(self.settings.passwd_file)):
            return CommandResult(8, "", "cannot remove the primary group of a user")
        rows = [r for r in self._load(self.settings.group_file) if r[0] != name]
        self._save(self.settings.group_file, rows)

    def _useradd(self, args, input):
        name, flags, opts = args[-1], args[:-1], {}
        i = 0
        while i < len(flags):
            if flags[i] in ("--shell", "--home-dir", "--gid", "--comment"):
                opts[flags[i]] = flags[i + 1]
                i += 2
            else:
                i += 1
        if self._has_user(name):
            return CommandResult(9, "", f"user '{name}' already exists")
        gid = self._gid(opts.get("--gid", ""))
        if gid is None:
            return CommandResult(6, "", "group does not exist")
        rows = self._load(self.settings.passwd_file)
        rows.append([name, "x", self._next_id(self.settings.passwd_file, 2), gid,
                     opts.get("--comment", ""), opts.get("--home-dir", ""), opts.get("--shell", "")])
        self._save(self.settings.passwd_file, rows)

    def _usermod(self, args, input):
        flag, group, name = args
        if not self._has_user(name):
            return CommandResult(6, "", f"user '{name}' does not exist")
        gid = self._gid(group)
        if gid is None:
            return CommandResult(6, "", f"group '{group}' does not exist")
        if flag == "-g":
            rows = self._load(self.settings.passwd_file)
            for r in rows:
                if r[0] == name:
                    r[3] = gid
            self._save(self.settings.passwd_file, rows)
        elif flag == "-aG":
            self._edit_members(group, lambda ms: ms if name in ms else ms + [name])

    def _gpasswd(self, args, input):
        _flag, name, group = args
        entry = [r for r in self._load(self.settings.group_file) if r[0] == group]
        if not entry or name not in entry[0][3].split(","):
            return CommandResult(3, "", f"user '{name}' is not a member of '{group}'")
        self._edit_members(group, lambda ms: [m for m in ms if m != name])

    def _userdel(self, args, input):
        name = args[-1]
        if not self._has_user(name):
            return CommandResult(6, "", f"user '{name}' does not exist")
        rows = [r for r in self._load(self.settings.passwd_file) if r[0] != name]
        self._save(self.settings.passwd_file, rows)
        groups = self._load(self.settings.group_file)
        for r in groups:
            r[3] = ",".join(m for m in r[3].split(",") if m and m != name)
        self._save(self.settings.group_file, groups)

    def _chpasswd(self, args, input):
        for line in (input or "").splitlines():
            name, password = line.split(":", 1)
            if not self._has_user(name):
                return CommandResult(1, "", f"user '{name}' does not exist")
            self.passwords[name] = password
