#!/usr/bin/env python3
# Script: tunnelmatic.py
#
# What this does (for my future self):
# - Provision "tunnel users": accounts that can log in over SSH but only open
#   local/SOCKS forwards (no shell, no cron/at, no remote forwards)
# - Auth mode lives in group membership only: sshtunnel-password or sshtunnel-key
# - Key users get a root-owned restricted key file in /etc/ssh/authorized_keys.d
# - Every call re-reads /etc/passwd and /etc/group; there is no state file
# - Teardown deletes users, then groups, then mops up orphaned key/deny entries

# ==============================
# Imports
# ==============================

# Standard library
import base64
import logging
import os
import re
import secrets
import shutil
import stat
import subprocess
import tempfile
from dataclasses import dataclass, field

#=================#
# Global Settings #
#=================#

VERSION = "1.0.0"

AUTH_PASSWORD = "password"
AUTH_KEY = "key"
AUTH_MODES = (AUTH_PASSWORD, AUTH_KEY)

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
PASSWORD_GROUP = "sshtunnel-password"
KEY_GROUP = "sshtunnel-key"
NOLOGIN_SHELL = "/usr/sbin/nologin"
NO_HOME_DIR = "/nonexistent"

PASSWD_FILE = "/etc/passwd"
GROUP_FILE = "/etc/group"
AUTHORIZED_KEYS_DIR = "/etc/ssh/authorized_keys.d"
DENY_FILES = ["/etc/cron.deny", "/etc/at.deny"]
SSHD_CONFIG_DIR = "/etc/ssh/sshd_config.d"
SSHD_SERVICES = ["ssh", "sshd"]     # Debian calls it ssh, RHEL calls it sshd
FAIL2BAN_JAIL = "/etc/fail2ban/jail.d/tunnelmatic.conf"
LOG_FILE = "/var/log/tunnelmatic/tunnelmatic.log"
COMMAND_TIMEOUT = 60                # Seconds per external command

# Drop-in set written by tunnelmatic_sshd. Any of these present == configured.
SSHD_HARDENING_FILE = "10-tunnelmatic-hardening.conf"
SSHD_USERS_FILE = "90-tunnelmatic-users.conf"
SSHD_KEYS_FILE = "91-tunnelmatic-keys.conf"
SSHD_DROPIN_FILES = (SSHD_HARDENING_FILE, SSHD_USERS_FILE, SSHD_KEYS_FILE)

# sshd reads the key file as the target user, so it has to stay world-readable
KEY_FILE_MODE = 0o644
DENY_FILE_MODE = 0o644

# System databases and deny lists may carry non-UTF-8 bytes (old Latin-1
# GECOS fields, hand-edited comments); they must round-trip untouched.
FILE_ENCODING = "utf-8"
FILE_ERRORS = "surrogateescape"

PASSWORD_LENGTH = 16
USERNAME_MAXLEN = 32
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_.-]*$")
PUBLIC_KEY_RE = re.compile(r"^(ssh-rsa|ssh-ed25519|ecdsa-sha2-nistp\d+|ssh-dss) ")

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "useradd":         "/usr/sbin/useradd",
  "usermod":         "/usr/sbin/usermod",
  "userdel":         "/usr/sbin/userdel",
  "groupadd":        "/usr/sbin/groupadd",
  "groupdel":        "/usr/sbin/groupdel",
  "gpasswd":         "/usr/bin/gpasswd",
  "chpasswd":        "/usr/sbin/chpasswd",
  "chown":           "/usr/bin/chown",
  "systemctl":       "/usr/bin/systemctl",
  "sshd":            "/usr/sbin/sshd",
  "fail2ban-client": "/usr/bin/fail2ban-client",
}

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return (v.strip() if v is not None and v.strip() else default)

# Function: _env_int
# Purpose : Read an integer env var; bad values fall back to the default.
# Notes   : Logs the bad value so a typo in the env file doesn't go unnoticed.
def _env_int(name: str, default: int) -> int:
    v = os.getenv(name, "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        logging.error("Bad integer in %s: %r", name, v)
        return default

# Function: _env_list
# Purpose : Parse a list from env using commas/spaces as separators.
# Notes   : Returns default when env missing/blank.
def _env_list(name: str, default: list[str]) -> list[str]:
    v = os.getenv(name, "")
    if not v.strip():
        return list(default)
    parts = [p.strip() for p in re.split(r"[,\s]+", v) if p.strip()]
    return parts or list(default)

#==========#
# Settings #
#==========#

@dataclass
class Settings:
    """Everything that used to be a module global, handed to each component."""
    version: str = VERSION
    password_group: str = PASSWORD_GROUP
    key_group: str = KEY_GROUP
    nologin_shell: str = NOLOGIN_SHELL
    passwd_file: str = PASSWD_FILE
    group_file: str = GROUP_FILE
    authorized_keys_dir: str = AUTHORIZED_KEYS_DIR
    deny_files: list[str] = field(default_factory=lambda: list(DENY_FILES))
    sshd_config_dir: str = SSHD_CONFIG_DIR
    sshd_services: list[str] = field(default_factory=lambda: list(SSHD_SERVICES))
    fail2ban_jail: str = FAIL2BAN_JAIL
    log_file: str = LOG_FILE
    command_timeout: int = COMMAND_TIMEOUT
    bins: dict[str, str] = field(default_factory=lambda: dict(BIN))

    @property
    def tunnel_groups(self) -> tuple[str, str]:
        return (self.password_group, self.key_group)

    def group_for(self, mode: str) -> str:
        if mode == AUTH_PASSWORD:
            return self.password_group
        if mode == AUTH_KEY:
            return self.key_group
        raise ValidationError(f"unknown auth mode: {mode!r}")

# Function: fncLoadSettings
# Purpose : Build Settings from defaults overlaid with TUNNELMATIC_* env vars.
# Notes   : Called once by the entry point; components never read env themselves.
def fncLoadSettings(version: str = VERSION) -> Settings:
    return Settings(
        version=version,
        password_group=_env_str("TUNNELMATIC_PASSWORD_GROUP", PASSWORD_GROUP),
        key_group=_env_str("TUNNELMATIC_KEY_GROUP", KEY_GROUP),
        nologin_shell=_env_str("TUNNELMATIC_NOLOGIN_SHELL", NOLOGIN_SHELL),
        passwd_file=_env_str("TUNNELMATIC_PASSWD_FILE", PASSWD_FILE),
        group_file=_env_str("TUNNELMATIC_GROUP_FILE", GROUP_FILE),
        authorized_keys_dir=_env_str("TUNNELMATIC_AUTHORIZED_KEYS_DIR", AUTHORIZED_KEYS_DIR),
        deny_files=_env_list("TUNNELMATIC_DENY_FILES", DENY_FILES),
        sshd_config_dir=_env_str("TUNNELMATIC_SSHD_CONFIG_DIR", SSHD_CONFIG_DIR),
        sshd_services=_env_list("TUNNELMATIC_SSHD_SERVICES", SSHD_SERVICES),
        fail2ban_jail=_env_str("TUNNELMATIC_FAIL2BAN_JAIL", FAIL2BAN_JAIL),
        log_file=_env_str("TUNNELMATIC_LOG_FILE", LOG_FILE),
        command_timeout=_env_int("TUNNELMATIC_COMMAND_TIMEOUT", COMMAND_TIMEOUT),
    )

#========#
# Errors #
#========#

class TunnelmaticError(Exception):
    """Base for everything the CLI reports as a clean failure."""


class ValidationError(TunnelmaticError):
    pass


class ExistsError(TunnelmaticError):
    pass


class NotFoundError(TunnelmaticError):
    pass


class PreconditionError(TunnelmaticError):
    pass


class OSCommandError(TunnelmaticError):
    """An external command exited non-zero."""

    def __init__(self, cmdkey: str, args: list[str], returncode: int, stderr: str = "",
                 context: str | None = None):
        self.cmdkey = cmdkey
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr
        self.context = context
        what = context or " ".join([cmdkey] + self.args_list)
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"{what} failed (exit {returncode}){detail}")


class PartialFailure(TunnelmaticError):
    """Bulk operation where some items went through and some didn't."""

    def __init__(self, succeeded: list[str], failed: dict[str, str]):
        self.succeeded = list(succeeded)
        self.failed = dict(failed)
        summary = "; ".join(f"{k}: {v}" for k, v in self.failed.items())
        super().__init__(f"{len(self.failed)} item(s) failed: {summary}")

#==========#
# Outcomes #
#==========#

@dataclass
class Outcome:
    """Result of a call that succeeded overall but may carry best-effort warnings."""
    warnings: list[str] = field(default_factory=list)
    password: str | None = None           # generated password, shown to the operator once
    deleted: list[str] = field(default_factory=list)

    def warn(self, message: str, *args) -> None:
        text = message % args if args else message
        logging.warning(text)
        self.warnings.append(text)

    def extend(self, other: "Outcome") -> "Outcome":
        self.warnings.extend(other.warnings)
        self.deleted.extend(other.deleted)
        if other.password is not None:
            self.password = other.password
        return self

#================#
# Command Runner #
#================#

@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs pinned binaries by logical key. Swap it for a fake in tests."""

    def __init__(self, settings: Settings):
        self.bins = settings.bins
        self.timeout = settings.command_timeout

    def resolve(self, cmdkey: str) -> str | None:
        exe = self.bins.get(cmdkey)
        if exe and os.path.exists(exe):
            return exe
        # usr-merge differences (/bin vs /usr/bin) shouldn't break us
        return shutil.which(os.path.basename(exe) if exe else cmdkey)

    def run(self, cmdkey: str, args: list[str] | None = None, input: str | None = None) -> CommandResult:
        exe = self.resolve(cmdkey)
        if not exe:
            return CommandResult(127, "", f"binary not found: {cmdkey} -> {self.bins.get(cmdkey)}")
        logging.debug("exec: %s %s", exe, " ".join(args or []))
        try:
            p = subprocess.run([exe] + (args or []), input=input, capture_output=True,
                               text=True, check=False, timeout=self.timeout)
            return CommandResult(p.returncode, p.stdout.strip(), p.stderr.strip())
        except subprocess.TimeoutExpired:
            return CommandResult(124, "", f"{cmdkey} timed out after {self.timeout}s")
        except FileNotFoundError as e:
            return CommandResult(127, "", str(e))

    def check(self, cmdkey: str, args: list[str] | None = None, input: str | None = None,
              context: str | None = None) -> CommandResult:
        """Like run(), but a non-zero exit raises OSCommandError."""
        res = self.run(cmdkey, args, input=input)
        if not res.ok:
            logging.error("%s failed (rc=%d): %s", context or cmdkey, res.returncode, res.stderr)
            raise OSCommandError(cmdkey, args or [], res.returncode, res.stderr, context)
        return res

#============#
# File utils #
#============#

def _assert_regular_or_missing(p: str | os.PathLike):
    try:
        st = os.lstat(p)
        if not stat.S_ISREG(st.st_mode):
            raise RuntimeError(f"{p} is not a regular file")
    except FileNotFoundError:
        return

# Function: fncWriteAtomic
# Purpose : Replace a file via a temp file in the same dir (never half-written).
# Notes   : Refuses symlinks/non-regular targets; keep_owner copies uid/gid of the old file.
def fncWriteAtomic(path: str, data: str, mode: int = 0o644, keep_owner: bool = False):
    d = os.path.dirname(path) or "."
    _assert_regular_or_missing(path)
    owner = None
    if keep_owner and os.path.exists(path):
        st = os.stat(path)
        owner = (st.st_uid, st.st_gid)
    # write to a secure temp in same dir
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=d)
    try:
        try:
            os.write(fd, data.encode(FILE_ENCODING, FILE_ERRORS))
            os.fsync(fd)
        finally:
            os.close(fd)
        os.chmod(tmp, mode)
        if owner is not None:
            os.chown(tmp, *owner)
        # refuse to overwrite a symlink
        try:
            st = os.lstat(path)
            if stat.S_ISLNK(st.st_mode):
                raise RuntimeError(f"Refusing to overwrite symlink: {path}")
        except FileNotFoundError:
            pass
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise

# Function: fncHardeningConfigured
# Purpose : True when any file of the sshd drop-in set is present.
def fncHardeningConfigured(settings: Settings) -> bool:
    return any(os.path.exists(os.path.join(settings.sshd_config_dir, name))
               for name in SSHD_DROPIN_FILES)

#============#
# Deny lists #
#============#

# Function: fncDenyAdd
# Purpose : Make sure `username` has a line in a cron/at deny file.
# Notes   : Creates the file when missing; returns True only if a line was appended.
def fncDenyAdd(path: str, username: str) -> bool:
    content = ""
    mode = DENY_FILE_MODE
    if os.path.exists(path):
        mode = stat.S_IMODE(os.stat(path).st_mode)
        with open(path, "r", encoding=FILE_ENCODING, errors=FILE_ERRORS) as f:
            content = f.read()
    if username in (line.strip() for line in content.splitlines()):
        logging.debug("%s already listed in %s; no change", username, path)
        return False
    sep = "" if not content or content.endswith("\n") else "\n"
    fncWriteAtomic(path, f"{content}{sep}{username}\n", mode=mode, keep_owner=True)
    logging.info("Added %s to %s", username, path)
    return True

# Function: fncDenyPrune
# Purpose : Drop deny-file lines whose username matches `should_remove`.
# Notes   : Blank lines, comments and everything else stay put, in order.
#           Missing file is a no-op. Returns the removed usernames.
def fncDenyPrune(path: str, should_remove) -> list[str]:
    if not os.path.exists(path):
        return []
    with open(path, "r", encoding=FILE_ENCODING, errors=FILE_ERRORS) as f:
        lines = f.read().splitlines(keepends=True)
    kept, removed = [], []
    for line in lines:
        name = line.strip()
        if name and not name.startswith("#") and should_remove(name):
            removed.append(name)
            continue
        kept.append(line)
    if removed:
        mode = stat.S_IMODE(os.stat(path).st_mode)
        fncWriteAtomic(path, "".join(kept), mode=mode, keep_owner=True)
        logging.info("Removed %s from %s", ", ".join(removed), path)
    return removed

#==============#
# State Reader #
#==============#

class StateReader:
    """Read-only view over the account and group databases.

    Nothing is cached: every method re-parses the files, because other tools
    (or the previous step of the same operation) may have changed them.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def _rows(self, path: str) -> list[list[str]]:
        rows = []
        with open(path, "r", encoding=FILE_ENCODING, errors=FILE_ERRORS) as f:
            for line in f:
                line = line.rstrip("\n")
                if not line or line.startswith("#"):
                    continue
                rows.append(line.split(":"))
        return rows

    def _passwd(self) -> list[list[str]]:
        # name:password:UID:GID:GECOS:home:shell
        return [r for r in self._rows(self.settings.passwd_file) if len(r) >= 4]

    def _group(self, name: str) -> list[str] | None:
        # name:password:GID:user_list
        for r in self._rows(self.settings.group_file):
            if len(r) >= 4 and r[0] == name:
                return r
        return None

    def usernames(self) -> set[str]:
        return {r[0] for r in self._passwd()}

    def user_exists(self, username: str) -> bool:
        return username in self.usernames()

    def user_primary_gid(self, username: str) -> str | None:
        for r in self._passwd():
            if r[0] == username:
                return r[3]
        return None

    def group_gid(self, group: str) -> str | None:
        entry = self._group(group)
        return entry[2] if entry else None

    def _member_list(self, group: str) -> list[str]:
        entry = self._group(group)
        if not entry:
            return []
        return [m for m in entry[3].split(",") if m]

    def _primary_list(self, group: str) -> list[str]:
        gid = self.group_gid(group)
        if gid is None:
            return []
        return [r[0] for r in self._passwd() if r[3] == gid]

    def group_members(self, group: str) -> set[str]:
        """Supplementary members; a missing group is just empty."""
        return set(self._member_list(group))

    def users_with_primary_group(self, group: str) -> set[str]:
        return set(self._primary_list(group))

    def in_group(self, username: str, group: str) -> bool:
        if username in self.group_members(group):
            return True
        gid = self.group_gid(group)
        return gid is not None and self.user_primary_gid(username) == gid

    def auth_mode(self, username: str) -> str:
        in_password = self.in_group(username, self.settings.password_group)
        in_key = self.in_group(username, self.settings.key_group)
        if in_password and in_key:
            logging.warning("User %s is in both %s and %s; treating as password auth",
                            username, *self.settings.tunnel_groups)
        if in_password:
            return AUTH_PASSWORD
        if in_key:
            return AUTH_KEY
        raise NotFoundError(f"user '{username}' is not a tunnel user")

    def is_tunnel_user(self, username: str) -> bool:
        try:
            self.auth_mode(username)
        except NotFoundError:
            return False
        return True

    def list_tunnel_users(self) -> list[tuple[str, str]]:
        """(username, mode) pairs; password users first, each name once."""
        users, seen = [], set()
        for mode in AUTH_MODES:
            group = self.settings.group_for(mode)
            for name in self._member_list(group) + self._primary_list(group):
                if name in seen:
                    continue
                seen.add(name)
                users.append((name, mode))
        return users

    def groups_non_empty(self) -> bool:
        return any(self._member_list(g) or self._primary_list(g) for g in self.settings.tunnel_groups)

    def hardening_configured(self) -> bool:
        return fncHardeningConfigured(self.settings)

#===================#
# Credential Setter #
#===================#

# Function: fncGeneratePassword
# Purpose : Random 16-char alphanumeric password for humans to copy.
# Notes   : 18 CSPRNG bytes -> base64 -> drop "/+=" -> first 16 chars.
#           Redraws in the (very unlikely) case stripping leaves too few chars.
def fncGeneratePassword() -> str:
    password = ""
    while len(password) < PASSWORD_LENGTH:
        encoded = base64.b64encode(secrets.token_bytes(18)).decode()
        password += re.sub(r"[/+=]", "", encoded)
    return password[:PASSWORD_LENGTH]

# Function: fncValidateUsername
# Purpose : Reject empty or unsafe login names before we touch anything.
# Notes   : Names end up in file paths (key dir), so no slashes or dots-only tricks.
def fncValidateUsername(username: str) -> str:
    if not username:
        raise ValidationError("username is required")
    if len(username) > USERNAME_MAXLEN or not USERNAME_RE.match(username):
        raise ValidationError(f"invalid username: {username!r}")
    return username

# Function: fncValidatePublicKey
# Purpose : Cheap syntactic check of an OpenSSH public key line.
# Notes   : Only the key type prefix is checked; returns the stripped key.
def fncValidatePublicKey(key: str) -> str:
    key = (key or "").strip()
    if not key:
        raise ValidationError("public key is required for key-based auth")
    if "\n" in key or "\r" in key:
        raise ValidationError("public key must be a single line")
    if not PUBLIC_KEY_RE.match(key):
        raise ValidationError("invalid public key format")
    return key


class CredentialSetter:
    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner

    def key_file(self, username: str) -> str:
        return os.path.join(self.settings.authorized_keys_dir, username)

    def set_password(self, username: str, password: str) -> None:
        if not password:
            raise ValidationError("password must not be empty")
        if "\n" in password or "\r" in password:
            raise ValidationError("password must be a single line")
        self.runner.check("chpasswd", [], input=f"{username}:{password}\n",
                          context=f"set password for {username}")
        logging.info("Password set for %s (not stored)", username)

    def setup_ssh_key(self, username: str, public_key: str) -> str:
        """Write the restricted key file; returns its path."""
        key = fncValidatePublicKey(public_key)
        os.makedirs(self.settings.authorized_keys_dir, mode=0o755, exist_ok=True)
        path = self.key_file(username)
        # restrict = no pty/agent/X11/remote forwards; port-forwarding turns -L/-D back on
        fncWriteAtomic(path, f"restrict,port-forwarding {key}\n", mode=KEY_FILE_MODE)
        self.runner.check("chown", ["root:root", path], context=f"chown {path}")
        logging.info("SSH key configured for %s at %s", username, path)
        return path

    def remove_ssh_key(self, username: str) -> bool:
        path = self.key_file(username)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        logging.info("Removed SSH key file for %s", username)
        return True

#===================#
# Lifecycle Manager #
#===================#

class TunnelUserManager:
    """Create / update / switch / delete a single tunnel user.

    `hardening` is anything with is_configured() and
    add_authorized_keys_directive(); it's optional
    so the manager can run without touching sshd (tests, embedding).
    """

    def __init__(self, settings: Settings, runner: CommandRunner, state: StateReader,
                 credentials: CredentialSetter, hardening=None):
        self.settings = settings
        self.runner = runner
        self.state = state
        self.credentials = credentials
        self.hardening = hardening

    # -- read side, re-exported for collaborators --
    def exists(self, username: str) -> bool:
        return self.state.user_exists(username)

    def is_tunnel_user(self, username: str) -> bool:
        return self.state.is_tunnel_user(username)

    def get_auth_mode(self, username: str) -> str:
        return self.state.auth_mode(username)

    def list(self) -> list[tuple[str, str]]:
        return self.state.list_tunnel_users()

    # -- credentials --
    def set_password(self, username: str, password: str) -> None:
        self.credentials.set_password(username, password)

    def setup_ssh_key(self, username: str, public_key: str) -> str:
        return self.credentials.setup_ssh_key(username, public_key)

    def ensure_groups(self) -> None:
        for group in self.settings.tunnel_groups:
            if self.state.group_gid(group) is not None:
                continue
            self.runner.check("groupadd", [group], context=f"create group {group}")
            logging.info("Created group: %s", group)

    def _set_membership(self, username: str, mode: str) -> None:
        # Strip supplementary membership of both groups, then make the target
        # the primary group. Primary gid is the single encoding of the mode.
        target = self.settings.group_for(mode)
        for group in self.settings.tunnel_groups:
            if username in self.state.group_members(group):
                self.runner.check("gpasswd", ["-d", username, group],
                                  context=f"remove {username} from {group}")
                logging.info("Removed %s from group %s", username, group)
        if self.state.user_primary_gid(username) != self.state.group_gid(target):
            self.runner.check("usermod", ["-g", target, username],
                              context=f"move {username} to {target}")
            logging.info("Primary group of %s set to %s", username, target)

    def _ensure_key_directive(self) -> Outcome:
        outcome = Outcome()
        if self.hardening is None:
            return outcome
        # a lone keys drop-in would make is_configured() lie; configure() writes it with the rest
        if not self.hardening.is_configured():
            outcome.warn("sshd hardening not configured; AuthorizedKeysFile directive "
                         "will be written by configure")
            return outcome
        try:
            self.hardening.add_authorized_keys_directive()
        except (TunnelmaticError, OSError) as e:
            outcome.warn("Could not add AuthorizedKeysFile directive: %s", e)
        return outcome

    def _block_scheduled_tasks(self, username: str) -> Outcome:
        outcome = Outcome()
        for path in self.settings.deny_files:
            try:
                fncDenyAdd(path, username)
            except (OSError, RuntimeError, ValueError) as e:
                outcome.warn("Could not add %s to %s: %s", username, path, e)
        return outcome

    def create(self, username: str, mode: str, credential: str | None = None,
               adopt_existing: bool = True) -> Outcome:
        """Create a tunnel user, or re-point an existing account at `mode`.

        Steps run in order with no rollback: a failure leaves earlier steps
        applied. An empty password credential gets a generated one, returned
        on the outcome so the caller can show it once.
        """
        fncValidateUsername(username)
        target = self.settings.group_for(mode)
        key = fncValidatePublicKey(credential) if mode == AUTH_KEY else None

        outcome = Outcome()
        self.ensure_groups()

        if self.state.user_exists(username):
            if not self.state.is_tunnel_user(username):
                if not adopt_existing:
                    raise ExistsError(f"user '{username}' already exists and is not a tunnel user")
                outcome.warn("Adopting existing account %s as a tunnel user (%s auth)", username, mode)
            logging.info("User %s already exists, updating group to %s", username, target)
            self._set_membership(username, mode)
        else:
            self.runner.check("useradd", [
                "--system",
                "--shell", self.settings.nologin_shell,
                "--no-create-home",
                "--home-dir", NO_HOME_DIR,
                "--gid", target,
                "--comment", f"SSH tunnel only ({mode})",
                username,
            ], context=f"create user {username}")
            logging.info("Created tunnel user: %s (%s auth)", username, mode)

        if mode == AUTH_KEY:
            self.credentials.setup_ssh_key(username, key)
            outcome.extend(self._ensure_key_directive())
        else:
            password = credential
            if not password:
                password = fncGeneratePassword()
                outcome.password = password
            self.credentials.set_password(username, password)
            self.credentials.remove_ssh_key(username)

        outcome.extend(self._block_scheduled_tasks(username))
        logging.info("User %s configured for tunnel-only access (%s auth)", username, mode)
        return outcome

    def switch_auth_mode(self, username: str, mode: str) -> Outcome:
        """Move a tunnel user to the other auth group. Credentials are untouched."""
        target = self.settings.group_for(mode)
        current = self.state.auth_mode(username)
        self.ensure_groups()
        self._set_membership(username, mode)
        logging.info("Switched %s from %s to %s auth (%s)", username, current, mode, target)
        if mode == AUTH_KEY:
            return self._ensure_key_directive()
        return Outcome()

    def update_credential(self, username: str, mode: str, credential: str | None = None) -> Outcome:
        """Set a new credential first, then switch groups only if the mode changed."""
        self.settings.group_for(mode)
        current = self.state.auth_mode(username)
        outcome = Outcome()
        if mode == AUTH_KEY:
            self.credentials.setup_ssh_key(username, credential)
        else:
            password = credential
            if not password:
                password = fncGeneratePassword()
                outcome.password = password
            self.credentials.set_password(username, password)

        if current != mode:
            outcome.extend(self.switch_auth_mode(username, mode))
        elif mode == AUTH_KEY:
            outcome.extend(self._ensure_key_directive())
        if mode == AUTH_PASSWORD:
            self.credentials.remove_ssh_key(username)
        return outcome

    def delete(self, username: str) -> Outcome:
        """Remove a tunnel user and its key file / deny entries.

        Membership removal and userdel are both attempted even if the first
        part fails; only a failed userdel makes the whole call fail.
        """
        self.state.auth_mode(username)
        outcome = Outcome()

        for group in self.settings.tunnel_groups:
            if username not in self.state.group_members(group):
                continue
            res = self.runner.run("gpasswd", ["-d", username, group])
            if res.ok:
                logging.info("Removed %s from group %s", username, group)
            else:
                outcome.warn("Failed to remove %s from group %s: %s", username, group, res.stderr)

        res = self.runner.run("userdel", [username])
        if not res.ok:
            logging.error("Failed to delete user %s: %s", username, res.stderr)
            raise OSCommandError("userdel", [username], res.returncode, res.stderr,
                                 context=f"delete user {username}")
        logging.info("Deleted user: %s", username)

        try:
            self.credentials.remove_ssh_key(username)
        except OSError as e:
            outcome.warn("Failed to remove SSH key file for %s: %s", username, e)

        for path in self.settings.deny_files:
            try:
                fncDenyPrune(path, lambda name: name == username)
            except (OSError, RuntimeError, ValueError) as e:
                outcome.warn("Failed to prune %s from %s: %s", username, path, e)

        outcome.deleted.append(username)
        return outcome

#======================#
# Teardown Coordinator #
#======================#

UNINSTALL_VARIANTS = ("users", "config", "all")


class TeardownCoordinator:
    """Bulk removal: users -> sshd config -> groups -> key dir -> deny files."""

    def __init__(self, settings: Settings, runner: CommandRunner, state: StateReader,
                 manager: TunnelUserManager, hardening=None, fail2ban=None):
        self.settings = settings
        self.runner = runner
        self.state = state
        self.manager = manager
        self.hardening = hardening
        self.fail2ban = fail2ban

    def groups_have_users(self) -> bool:
        return self.state.groups_non_empty()

    def delete_all_users(self) -> list[str]:
        """Delete every tunnel user. Raises PartialFailure carrying both lists."""
        deleted, failed = [], {}
        for username, _mode in self.state.list_tunnel_users():
            try:
                self.manager.delete(username)
            except TunnelmaticError as e:
                failed[username] = str(e)
                continue
            except Exception as e:
                # anything unexpected still must not lose the deleted list
                logging.exception("Unexpected error deleting %s", username)
                failed[username] = f"{type(e).__name__}: {e}"
                continue
            deleted.append(username)
        if failed:
            raise PartialFailure(deleted, failed)
        return deleted

    def delete_groups(self) -> None:
        if self.state.groups_non_empty():
            raise PreconditionError("cannot delete groups: tunnel users still exist. Delete users first")
        for group in self.settings.tunnel_groups:
            if self.state.group_gid(group) is None:
                logging.debug("Group %s already absent", group)
                continue
            self.runner.check("groupdel", [group], context=f"delete group {group}")
            logging.info("Deleted group: %s", group)

    def cleanup_authorized_keys_dir(self) -> list[str]:
        """Drop key files of vanished accounts; rmdir the directory once empty."""
        keys_dir = self.settings.authorized_keys_dir
        if not os.path.isdir(keys_dir):
            return []
        existing = self.state.usernames()
        removed = []
        for name in sorted(os.listdir(keys_dir)):
            path = os.path.join(keys_dir, name)
            if not os.path.isfile(path) or name in existing:
                continue
            os.remove(path)
            removed.append(name)
            logging.info("Removed orphaned key file %s", path)
        if not os.listdir(keys_dir):
            os.rmdir(keys_dir)
            logging.info("Removed empty directory %s", keys_dir)
        return removed

    def cleanup_deny_files(self) -> Outcome:
        outcome = Outcome()
        existing = self.state.usernames()
        for path in self.settings.deny_files:
            try:
                fncDenyPrune(path, lambda name: name not in existing)
            except (OSError, RuntimeError, ValueError) as e:
                outcome.warn("Failed to clean up %s: %s", path, e)
        return outcome

    def _remove_config(self, outcome: Outcome) -> None:
        if self.hardening is not None and self.hardening.is_configured():
            try:
                self.hardening.remove_and_reload()
            except (TunnelmaticError, OSError) as e:
                outcome.warn("sshd config removal warning: %s", e)
        if self.fail2ban is not None:
            outcome.extend(self.fail2ban.remove())
        try:
            self.delete_groups()
        except TunnelmaticError as e:
            outcome.warn("Group removal warning: %s", e)

    def uninstall(self, variant: str) -> Outcome:
        """Run one of the fixed teardown sequences ("users", "config", "all")."""
        if variant not in UNINSTALL_VARIANTS:
            raise ValidationError(f"unknown uninstall variant: {variant!r}")
        if variant == "config" and self.state.groups_non_empty():
            raise PreconditionError("cannot remove configuration: tunnel users still exist. Delete users first")

        outcome = Outcome()
        partial = None
        if variant in ("users", "all"):
            try:
                outcome.deleted.extend(self.delete_all_users())
            except PartialFailure as e:
                partial = e
                outcome.deleted.extend(e.succeeded)
                outcome.warn("Some users could not be deleted: %s", e)

        if variant in ("config", "all"):
            self._remove_config(outcome)

        try:
            self.cleanup_authorized_keys_dir()
        except OSError as e:
            outcome.warn("Failed to clean up %s: %s", self.settings.authorized_keys_dir, e)
        outcome.extend(self.cleanup_deny_files())

        # users-only teardown reports the failure to the caller after cleanup
        if partial is not None and variant == "users":
            raise partial
        return outcome
