#!/usr/bin/env python3
# Script: tunnelmatic_sshd.py
#
# What this does (for my future self):
# - Writes the sshd drop-in set under /etc/ssh/sshd_config.d (all or nothing)
# - Validates with `sshd -t` before reloading; rolls back the set if sshd hates it
# - Keeps the AuthorizedKeysFile directive for key users in its own drop-in
# - Optional fail2ban jail; anything fail2ban related only ever warns

# ==============================
# Imports
# ==============================

# Standard library
import logging
import os
import tempfile

from tunnelmatic import (
    FILE_ENCODING,
    FILE_ERRORS,
    SSHD_DROPIN_FILES,
    SSHD_HARDENING_FILE,
    SSHD_KEYS_FILE,
    SSHD_USERS_FILE,
    CommandResult,
    CommandRunner,
    OSCommandError,
    Outcome,
    Settings,
    fncHardeningConfigured,
    fncWriteAtomic,
)

#=================#
# Global Settings #
#=================#

MANAGED_HEADER = "# Managed by tunnelmatic - changes will be overwritten\n"

CIPHERS = ",".join([
    "chacha20-poly1305@openssh.com",
    "aes256-gcm@openssh.com",
    "aes128-gcm@openssh.com",
    "aes256-ctr",
    "aes192-ctr",
    "aes128-ctr",
])
KEX_ALGORITHMS = ",".join([
    "curve25519-sha256",
    "curve25519-sha256@libssh.org",
    "diffie-hellman-group16-sha512",
    "diffie-hellman-group18-sha512",
])
MACS = ",".join([
    "hmac-sha2-512-etm@openssh.com",
    "hmac-sha2-256-etm@openssh.com",
    "umac-128-etm@openssh.com",
])

FAIL2BAN_JAIL_CONTENT = MANAGED_HEADER + """[sshd]
enabled  = true
port     = ssh
backend  = systemd
maxretry = 5
findtime = 10m
bantime  = 1h
"""

#========================#
# Hardening Configurator #
#========================#

class SshdHardening:
    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner

    def path(self, name: str) -> str:
        return os.path.join(self.settings.sshd_config_dir, name)

    def is_configured(self) -> bool:
        return fncHardeningConfigured(self.settings)

    def authorized_keys_directive(self) -> str:
        return f"AuthorizedKeysFile {self.settings.authorized_keys_dir}/%u"

    def render(self) -> dict[str, str]:
        """Contents of the whole drop-in set, keyed by file name."""
        pw_group, key_group = self.settings.tunnel_groups
        hardening = MANAGED_HEADER + f"""Ciphers {CIPHERS}
KexAlgorithms {KEX_ALGORITHMS}
MACs {MACS}

# connection rate limiting / keepalive
MaxAuthTries 3
MaxStartups 10:30:60
LoginGraceTime 30
ClientAliveInterval 300
ClientAliveCountMax 2

LogLevel VERBOSE
"""
        users = MANAGED_HEADER + f"""Match Group {pw_group},{key_group}
    AllowTcpForwarding local
    AllowStreamLocalForwarding no
    AllowAgentForwarding no
    X11Forwarding no
    PermitTunnel no
    PermitTTY no
    PermitUserRC no
    GatewayPorts no
    ForceCommand {self.settings.nologin_shell}

Match Group {pw_group}
    PasswordAuthentication yes

Match Group {key_group}
    PasswordAuthentication no
"""
        return {
            SSHD_HARDENING_FILE: hardening,
            SSHD_USERS_FILE: users,
            SSHD_KEYS_FILE: self._render_keys(),
        }

    def _render_keys(self) -> str:
        return MANAGED_HEADER + f"""Match Group {self.settings.key_group}
    {self.authorized_keys_directive()}
"""

    def _read(self, name: str) -> str | None:
        try:
            with open(self.path(name), "r", encoding=FILE_ENCODING, errors=FILE_ERRORS) as f:
                return f.read()
        except FileNotFoundError:
            return None

    def _apply(self, wanted: dict[str, str]) -> bool:
        """Swap in `wanted` as a unit, validate, roll back on failure.

        Returns False when every file already matched (nothing written).
        """
        previous = {name: self._read(name) for name in wanted}
        if all(previous[name] == content for name, content in wanted.items()):
            logging.debug("sshd drop-ins already up to date; no change")
            return False

        os.makedirs(self.settings.sshd_config_dir, mode=0o755, exist_ok=True)
        # stage everything first so a write error can't leave half a set behind
        staged = {}
        try:
            for name, content in wanted.items():
                fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=self.settings.sshd_config_dir)
                staged[name] = tmp
                try:
                    os.write(fd, content.encode())
                    os.fsync(fd)
                finally:
                    os.close(fd)
                os.chmod(tmp, 0o644)
        except OSError:
            for tmp in staged.values():
                if os.path.exists(tmp):
                    os.remove(tmp)
            raise
        for name, tmp in staged.items():
            os.replace(tmp, self.path(name))

        res = self.runner.run("sshd", ["-t"])
        if not res.ok:
            logging.error("sshd -t rejected the new config: %s", res.stderr)
            self._restore(previous)
            raise OSCommandError("sshd", ["-t"], res.returncode, res.stderr,
                                 context="validate sshd configuration")
        return True

    def _restore(self, previous: dict[str, str | None]) -> None:
        for name, content in previous.items():
            if content is None:
                if os.path.exists(self.path(name)):
                    os.remove(self.path(name))
            else:
                fncWriteAtomic(self.path(name), content, mode=0o644)
        logging.info("Restored previous sshd drop-ins")

    def reload(self) -> None:
        service, res = "sshd", CommandResult(127, "", "no sshd service configured")
        for service in self.settings.sshd_services:
            res = self.runner.run("systemctl", ["reload", service])
            if res.ok:
                logging.info("Reloaded %s", service)
                return
        raise OSCommandError("systemctl", ["reload", service], res.returncode, res.stderr,
                             context="reload sshd")

    def configure(self) -> bool:
        """Write the drop-in set and reload sshd. Returns True if anything changed."""
        changed = self._apply(self.render())
        if changed:
            logging.info("Applied sshd hardening in %s", self.settings.sshd_config_dir)
            self.reload()
        return changed

    def add_authorized_keys_directive(self) -> bool:
        """Make sure the key users' AuthorizedKeysFile line exists exactly once."""
        changed = self._apply({SSHD_KEYS_FILE: self._render_keys()})
        if changed:
            logging.info("Added %s", self.authorized_keys_directive())
            self.reload()
        return changed

    def remove_and_reload(self) -> bool:
        removed = []
        for name in SSHD_DROPIN_FILES:
            path = self.path(name)
            if os.path.exists(path):
                os.remove(path)
                removed.append(path)
        if not removed:
            logging.debug("sshd drop-ins not present; nothing to remove")
            return False
        logging.info("Removed sshd drop-ins: %s", ", ".join(removed))
        self.reload()
        return True

#==========#
# fail2ban #
#==========#

class Fail2banJail:
    """Best-effort jail management; every failure comes back as a warning."""

    def __init__(self, settings: Settings, runner: CommandRunner):
        self.settings = settings
        self.runner = runner

    def is_installed(self) -> bool:
        return self.runner.resolve("fail2ban-client") is not None

    def setup(self) -> Outcome:
        outcome = Outcome()
        if not self.is_installed():
            outcome.warn("fail2ban is not installed; skipping brute-force protection")
            return outcome
        jail = self.settings.fail2ban_jail
        try:
            os.makedirs(os.path.dirname(jail), mode=0o755, exist_ok=True)
            fncWriteAtomic(jail, FAIL2BAN_JAIL_CONTENT, mode=0o644)
        except (OSError, RuntimeError) as e:
            outcome.warn("Could not write fail2ban jail %s: %s", jail, e)
            return outcome
        logging.info("Wrote fail2ban jail %s", jail)

        res = self.runner.run("systemctl", ["enable", "--now", "fail2ban"])
        if not res.ok:
            outcome.warn("Could not enable fail2ban: %s", res.stderr)
            return outcome
        res = self.runner.run("fail2ban-client", ["reload"])
        if not res.ok:
            outcome.warn("fail2ban reload failed: %s", res.stderr)
        return outcome

    def remove(self) -> Outcome:
        outcome = Outcome()
        jail = self.settings.fail2ban_jail
        if not os.path.exists(jail):
            return outcome
        try:
            os.remove(jail)
        except OSError as e:
            outcome.warn("Could not remove fail2ban jail %s: %s", jail, e)
            return outcome
        logging.info("Removed fail2ban jail %s", jail)
        if self.is_installed():
            res = self.runner.run("fail2ban-client", ["reload"])
            if not res.ok:
                outcome.warn("fail2ban reload failed: %s", res.stderr)
        return outcome
