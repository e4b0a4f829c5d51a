#!/usr/bin/env python3
# Script: tunnelmatic_cli.py
#
# Command line + interactive menu for tunnelmatic. All the real work lives in
# tunnelmatic.py / tunnelmatic_sshd.py; this file only asks, prints and logs.

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from getpass import getpass

from colorama import init as _cinit, Fore as F, Style as S

from tunnelmatic import (
    AUTH_KEY,
    AUTH_PASSWORD,
    VERSION,
    CommandRunner,
    CredentialSetter,
    ExistsError,
    NotFoundError,
    Outcome,
    PartialFailure,
    PreconditionError,
    Settings,
    StateReader,
    TeardownCoordinator,
    TunnelmaticError,
    TunnelUserManager,
    ValidationError,
    fncLoadSettings,
    fncValidatePublicKey,
    fncValidateUsername,
)
from tunnelmatic_sshd import Fail2banJail, SshdHardening

LOGROTATE_PATH = "/etc/logrotate.d/tunnelmatic"

VERSION_INFO = """
==============================================
| Tunnelmatic                                 |
| Version: {version:<35}|
|                                             |
| SSH tunnel-only users: no shell, no cron,   |
| no remote forwards. Password or key auth,   |
| sshd hardening drop-ins, fail2ban jail.     |
==============================================
"""

# ============================
# Colour / output helpers
# ============================
_cinit(autoreset=True)

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=sys.stdout):
    """Decide if we should output ANSI colours."""
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except Exception:
        return False

def fncColor(text: str, *styles: str) -> str:
    """fncColor('Hello', 'green', 'bold') -> styled text (or plain if disabled)."""
    if not fncWantColor() or not styles:
        return text
    m = {
        "red": F.RED, "green": F.GREEN, "yellow": F.YELLOW, "blue": F.BLUE,
        "magenta": F.MAGENTA, "cyan": F.CYAN, "white": F.WHITE, "gray": F.LIGHTBLACK_EX,
        "bold": S.BRIGHT, "dim": S.DIM,
    }
    seq = "".join(m.get(s, "") for s in styles)
    return f"{seq}{text}{S.RESET_ALL}"

def fncHeading(msg: str): print(fncColor(msg, "magenta", "bold"))
def fncInfo(msg: str):    print(fncColor("[*] ", "cyan") + msg)
def fncOk(msg: str):      print(fncColor("[+] ", "green") + msg)
def fncWarn(msg: str):    print(fncColor("[!] ", "yellow") + msg)
def fncErr(msg: str):     print(fncColor("[-] ", "red") + msg, file=sys.stderr)

def fncPrintVersion(version: str):
    print(fncColor(VERSION_INFO.format(version=version), "cyan"))

def fncReportWarnings(outcome: Outcome):
    for w in outcome.warnings:
        fncWarn(w)

def fncShowPassword(password: str):
    """The only place a generated password is ever shown."""
    bar = "=" * 44
    print()
    print(fncColor(bar, "yellow"))
    print(fncColor("  GENERATED PASSWORD (save this now!):", "yellow", "bold"))
    print(f"  {fncColor(password, 'white', 'bold')}")
    print(fncColor(bar, "yellow"))
    print()

def fncPrintClientUsage(username: str, mode: str):
    key = "-i <private_key> " if mode == AUTH_KEY else ""
    print()
    print("Client usage:")
    print(f"  ssh -D 1080 -N {key}{username}@<server>    # SOCKS proxy")
    print(f"  ssh -L 8080:target:80 -N {key}{username}@<server>  # Local forward")

# ============================
# Logging / preflight
# ============================

# Function: fncRequireRoot
# Purpose : Everything here edits /etc; bail early if not root.
def fncRequireRoot():
    if os.geteuid() != 0:
        fncErr("This needs root. Try sudo.")
        sys.exit(1)

# Function: fncBootstrapPaths
# Purpose : Create the log directory with conservative permissions.
# Notes   : Safe to call multiple times; no-op when present.
def fncBootstrapPaths(settings: Settings):
    log_dir = os.path.dirname(settings.log_file)
    os.makedirs(log_dir, exist_ok=True)
    os.chmod(log_dir, 0o750)

# Function: fncEnsureLogrotate
# Purpose : Drop a logrotate file so the log doesn't grow forever.
# Notes   : Creates once; ignores errors (warns only).
def fncEnsureLogrotate(settings: Settings, path: str = LOGROTATE_PATH):
    content = f"""{settings.log_file} {{
  weekly
  rotate 8
  compress
  missingok
  notifempty
  create 0640 root root
}}
"""
    try:
        if not os.path.exists(path):
            with open(path, "w") as f:
                f.write(content)
            os.chmod(path, 0o644)
    except OSError as e:
        logging.warning("Couldn't write logrotate file (%s): %s", path, e)

# Function: fncSetupLogging
# Purpose : Log to file always; mirror to stderr with --verbose.
# Notes   : INFO for changes; DEBUG for verbose diagnostics. Console output for
#           humans goes through fncInfo/fncWarn, not the logger.
def fncSetupLogging(settings: Settings, verbose: bool = False):
    fncBootstrapPaths(settings)
    handlers = [logging.FileHandler(settings.log_file)]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )
    logging.info("---- tunnelmatic %s start ----", settings.version)
    fncEnsureLogrotate(settings)

# ============================
# Wiring
# ============================

@dataclass
class Services:
    settings: Settings
    runner: CommandRunner
    state: StateReader
    credentials: CredentialSetter
    hardening: SshdHardening
    fail2ban: Fail2banJail
    manager: TunnelUserManager
    teardown: TeardownCoordinator


def fncBuildServices(settings: Settings, runner: CommandRunner | None = None) -> Services:
    runner = runner or CommandRunner(settings)
    state = StateReader(settings)
    credentials = CredentialSetter(settings, runner)
    hardening = SshdHardening(settings, runner)
    fail2ban = Fail2banJail(settings, runner)
    manager = TunnelUserManager(settings, runner, state, credentials, hardening=hardening)
    teardown = TeardownCoordinator(settings, runner, state, manager,
                                   hardening=hardening, fail2ban=fail2ban)
    return Services(settings, runner, state, credentials, hardening, fail2ban, manager, teardown)

# Function: fncConfigureAndCreateUser
# Purpose : One-shot provisioning for scripts that embed tunnelmatic (no prompts).
# Notes   : Applies sshd hardening first when missing; the jail only on request.
#           The returned Outcome carries any generated password.
def fncConfigureAndCreateUser(svc: Services, username: str, mode: str, credential: str | None = None,
                              fail2ban: bool = False, adopt_existing: bool = False) -> Outcome:
    outcome = Outcome()
    if not svc.hardening.is_configured():
        svc.hardening.configure()
    if fail2ban:
        outcome.extend(svc.fail2ban.setup())
    outcome.extend(svc.manager.create(username, mode, credential, adopt_existing=adopt_existing))
    return outcome

# Function: fncUninstallAll
# Purpose : Non-interactive full teardown (users, sshd config, jail, groups, orphans).
def fncUninstallAll(svc: Services) -> Outcome:
    return svc.teardown.uninstall("all")

# ============================
# Interactive prompts
# ============================

def fncAsk(q: str, default: str | None = None) -> str:
    prompt = f"{fncColor('?', 'cyan')} {q}{fncColor(f' [{default}]', 'gray') if default else ''}: "
    a = input(prompt).strip()
    return a or (default or "")

def fncAskBool(q: str, default: bool = True) -> bool:
    hint = "Y/n" if default else "y/N"
    while True:
        a = input(f"{fncColor('?', 'cyan')} {q} {fncColor(f'[{hint}]', 'gray')}: ").strip().lower()
        if not a:
            return default
        if a in ("y", "yes"):
            return True
        if a in ("n", "no"):
            return False
        fncWarn("Please answer y or n.")

def fncPromptAuthMode() -> str:
    fncHeading("\n== Authentication method ==")
    print(f"{fncColor('[1]', 'white')} Password (default) - simpler, suitable for shared access")
    print(f"{fncColor('[2]', 'white')} SSH Key - more secure, user provides their public key")
    while True:
        choice = fncAsk("Choose 1 or 2", "1")
        if choice in ("1", "2"):
            return AUTH_KEY if choice == "2" else AUTH_PASSWORD
        fncWarn("Please enter 1 or 2.")

def fncPromptPassword(username: str) -> str:
    """Empty answer means 'generate one for me'."""
    print()
    print(f"Enter password for '{username}' (leave empty to auto-generate)")
    return getpass(fncColor("Password: ", "cyan", "bold")).strip()

def fncPromptPubkey(username: str) -> str:
    print()
    print(f"Enter the SSH public key for '{username}'")
    print(fncColor("(from their ~/.ssh/id_ed25519.pub or similar)", "gray"))
    while True:
        key = fncAsk("Public key")
        if not key:
            raise ValidationError("public key is required for key-based auth")
        try:
            return fncValidatePublicKey(key)
        except ValidationError as e:
            fncWarn(f"{e}; try again (empty to cancel).")

def fncPromptTunnelUser(svc: Services, verb: str) -> str | None:
    users = svc.manager.list()
    if not users:
        fncInfo(f"No tunnel users to {verb}.")
        return None
    print("Available tunnel users:")
    for name, mode in users:
        print(f"  - {name} ({mode})")
    print()
    return fncAsk(f"Username to {verb} (empty to cancel)") or None

# ============================
# Actions
# ============================

def fncRequireConfigured(svc: Services):
    if not svc.hardening.is_configured():
        raise PreconditionError("sshd not configured. Run 'tunnelmatic configure' first")

def fncDoCreate(svc: Services, args) -> int:
    fncRequireConfigured(svc)
    if args.insecure_password and args.pubkey:
        raise ValidationError("cannot specify both --insecure-password and --pubkey")
    non_interactive = bool(args.insecure_password or args.pubkey)

    username = args.username
    if not username:
        if non_interactive:
            raise ValidationError("username required when using --insecure-password or --pubkey")
        username = fncAsk("Username for tunnel user")
    fncValidateUsername(username)
    if svc.manager.exists(username) and not args.adopt:
        raise ExistsError(f"user '{username}' already exists. Use 'tunnelmatic update {username}' to modify")

    if args.pubkey:
        mode, credential = AUTH_KEY, args.pubkey
    elif args.insecure_password:
        mode, credential = AUTH_PASSWORD, args.insecure_password
    else:
        mode = fncPromptAuthMode()
        credential = fncPromptPubkey(username) if mode == AUTH_KEY else fncPromptPassword(username)
        # only offer the jail when fail2ban is there and we haven't set it up yet
        if (not args.no_fail2ban and svc.fail2ban.is_installed()
                and not os.path.exists(svc.settings.fail2ban_jail)
                and fncAskBool("Enable fail2ban brute-force protection?", True)):
            fncReportWarnings(svc.fail2ban.setup())

    outcome = svc.manager.create(username, mode, credential, adopt_existing=args.adopt)
    if outcome.password:
        fncShowPassword(outcome.password)
    fncReportWarnings(outcome)
    fncOk(f"User '{username}' created successfully ({mode} auth)")
    fncPrintClientUsage(username, mode)
    return 0

def fncDoUpdate(svc: Services, args) -> int:
    fncRequireConfigured(svc)
    if args.insecure_password and args.pubkey:
        raise ValidationError("cannot specify both --insecure-password and --pubkey")
    username = args.username or fncPromptTunnelUser(svc, "update")
    if not username:
        fncInfo("Cancelled")
        return 0
    if not svc.manager.exists(username):
        raise NotFoundError(f"user '{username}' does not exist")
    current = svc.manager.get_auth_mode(username)

    if args.pubkey:
        mode, credential = AUTH_KEY, args.pubkey
    elif args.insecure_password:
        mode, credential = AUTH_PASSWORD, args.insecure_password
    else:
        fncHeading(f"\n== Updating '{username}' (current auth: {current}) ==")
        print(f"{fncColor('[1]', 'white')} Change password (switch to password auth if needed)")
        print(f"{fncColor('[2]', 'white')} Change SSH key (switch to key auth if needed)")
        print(f"{fncColor('[0]', 'white')} Cancel")
        choice = fncAsk("Select option", "0")
        if choice == "1":
            mode, credential = AUTH_PASSWORD, fncPromptPassword(username)
        elif choice == "2":
            mode, credential = AUTH_KEY, fncPromptPubkey(username)
        else:
            fncInfo("Cancelled")
            return 0

    outcome = svc.manager.update_credential(username, mode, credential)
    if outcome.password:
        fncShowPassword(outcome.password)
    fncReportWarnings(outcome)
    if mode != current:
        fncInfo(f"Switched '{username}' from {current} to {mode} authentication")
    fncOk(f"{'SSH key' if mode == AUTH_KEY else 'Password'} updated for '{username}'")
    fncPrintClientUsage(username, mode)
    return 0

def fncDoList(svc: Services, args) -> int:
    fncRequireConfigured(svc)
    users = svc.manager.list()
    if not users:
        fncInfo("No tunnel users found.")
        return 0
    fncHeading("Tunnel users:")
    for name, mode in users:
        print(f"  {name} ({mode} auth)")
    return 0

def fncDoDelete(svc: Services, args) -> int:
    fncRequireConfigured(svc)
    username = args.username or fncPromptTunnelUser(svc, "delete")
    if not username:
        fncInfo("Cancelled")
        return 0
    if not svc.manager.is_tunnel_user(username):
        raise NotFoundError(f"user '{username}' is not a tunnel user")
    if not args.yes and not fncAskBool(f"Delete user '{username}'?", False):
        fncInfo("Cancelled")
        return 0
    outcome = svc.manager.delete(username)
    fncReportWarnings(outcome)
    fncOk(f"User '{username}' deleted successfully")
    return 0

def fncDoConfigure(svc: Services, args) -> int:
    fncInfo("Applying sshd hardening configuration...")
    if svc.hardening.configure():
        fncOk("sshd hardening applied and sshd reloaded")
    else:
        fncInfo("sshd hardening already in place; nothing to do")
    if not args.no_fail2ban:
        fncReportWarnings(svc.fail2ban.setup())
    fncOk("Configuration complete!")
    return 0

def fncDoUninstall(svc: Services, args) -> int:
    variant = args.variant
    users = svc.manager.list()
    fncHeading(f"\n== Uninstall ({variant}) ==")
    if variant in ("users", "all"):
        if users:
            print("The following users will be deleted:")
            for name, mode in users:
                print(f"  - {name} ({mode})")
        else:
            fncInfo("No tunnel users to delete.")
    if variant in ("config", "all"):
        print("This will remove:")
        print(f"  - Tunnel groups ({', '.join(svc.settings.tunnel_groups)})")
        print("  - sshd hardening configuration files")
        print("  - fail2ban jail")
    print("  - Orphaned authorized keys and cron/at deny entries")
    print()
    if not args.yes and not fncAskBool("Proceed?", False):
        fncInfo("Cancelled")
        return 0

    outcome = svc.teardown.uninstall(variant)
    for name in outcome.deleted:
        fncOk(f"Deleted: {name}")
    fncReportWarnings(outcome)
    fncOk("Uninstall complete.")
    return 0

def fncMenu(svc: Services) -> int:
    """Interactive loop used when no sub-command is given."""
    options = [
        ("1", "Create tunnel user"),
        ("2", "Update tunnel user"),
        ("3", "List tunnel users"),
        ("4", "Delete tunnel user"),
        ("5", "Configure sshd hardening"),
        ("6", "Uninstall"),
        ("0", "Exit"),
    ]
    blank = dict(username=None, insecure_password=None, pubkey=None, adopt=False,
                 no_fail2ban=False, yes=False)
    actions = {"1": fncDoCreate, "2": fncDoUpdate, "3": fncDoList, "4": fncDoDelete,
               "5": fncDoConfigure}
    while True:
        print()
        if not svc.hardening.is_configured():
            fncWarn("sshd not configured - run 'Configure sshd hardening' (option 5) first")
        for key, label in options:
            print(f"{fncColor(f'[{key}]', 'white')} {label}")
        choice = fncAsk("Select option")
        if choice in ("0", "q", "quit", "exit"):
            fncInfo("Goodbye!")
            return 0
        try:
            if choice in actions:
                actions[choice](svc, argparse.Namespace(**blank))
            elif choice == "6":
                variant = fncAsk("Uninstall what? users / config / all (empty to cancel)")
                if variant:
                    fncDoUninstall(svc, argparse.Namespace(variant=variant, yes=False))
            else:
                fncErr("Invalid option")
        except PartialFailure as e:
            fncReportPartial(e)
        except TunnelmaticError as e:
            logging.error("%s", e)
            fncErr(str(e))

def fncReportPartial(e: PartialFailure):
    for name in e.succeeded:
        fncOk(f"Deleted: {name}")
    for name, why in e.failed.items():
        fncErr(f"Failed: {name}: {why}")

# ============================
# Entry point
# ============================

def fncBuildParser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tunnelmatic", description="SSH tunnel-only user manager")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging, mirrored to stderr")
    parser.add_argument("--no-color", action="store_true", help="Disable coloured output")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("create", help="Create a new tunnel user")
    p.add_argument("username", nargs="?")
    p.add_argument("--insecure-password", help="Set password (WARNING: visible in process list)")
    p.add_argument("--pubkey", help="Public key for key-based auth")
    p.add_argument("--adopt", action="store_true", help="Turn an existing account into a tunnel user")
    p.add_argument("--no-fail2ban", action="store_true", help="Don't offer fail2ban setup")

    p = sub.add_parser("update", help="Change password/key (switches auth mode if needed)")
    p.add_argument("username", nargs="?")
    p.add_argument("--insecure-password", help="New password (WARNING: visible in process list)")
    p.add_argument("--pubkey", help="New public key")

    sub.add_parser("list", help="List tunnel users")

    p = sub.add_parser("delete", help="Delete a tunnel user")
    p.add_argument("username", nargs="?")
    p.add_argument("-y", "--yes", action="store_true", help="Don't ask for confirmation")

    p = sub.add_parser("configure", help="Apply sshd hardening configuration")
    p.add_argument("--no-fail2ban", action="store_true", help="Skip fail2ban jail setup")

    p = sub.add_parser("uninstall", help="Remove users and/or configuration")
    p.add_argument("variant", choices=["users", "config", "all"])
    p.add_argument("-y", "--yes", action="store_true", help="Don't ask for confirmation")

    sub.add_parser("version", help="Show version information")
    return parser

COMMANDS = {
    "create": fncDoCreate,
    "update": fncDoUpdate,
    "list": fncDoList,
    "delete": fncDoDelete,
    "configure": fncDoConfigure,
    "uninstall": fncDoUninstall,
}

def fncMain(argv: list[str] | None = None, version: str = VERSION, svc: Services | None = None) -> int:
    args = fncBuildParser().parse_args(argv)
    fncSetColorMode(args.no_color)

    if args.command == "version":
        fncPrintVersion(version)
        return 0

    if svc is None:
        fncRequireRoot()
        settings = fncLoadSettings(version=version)
        fncSetupLogging(settings, verbose=args.verbose)
        svc = fncBuildServices(settings)

    try:
        if args.command is None:
            return fncMenu(svc)
        return COMMANDS[args.command](svc, args)
    except PartialFailure as e:
        logging.error("%s", e)
        fncReportPartial(e)
        return 1
    except TunnelmaticError as e:
        logging.error("%s", e)
        fncErr(str(e))
        return 1
    except KeyboardInterrupt:
        fncWarn("Bye then...")
        return 130
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        fncErr(f"Unexpected error: {e}")
        return 1

def main():
    sys.exit(fncMain(version=VERSION))

if __name__ == "__main__":
    main()
