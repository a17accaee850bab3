#!/usr/bin/env python3
"""
provisionctl - YubiKey credential provisioning CLI

Provides command-line access to the provisioning engine:
- List attached tokens and inspect their state
- Plan and apply a desired-state descriptor
- Change unlock secrets without risking lockout
- Rotate derived credentials
- Check expiry and archive the revocation certificate

Usage:
    provisionctl tokens
    provisionctl inspect --token 12345678
    provisionctl plan desired.yaml
    provisionctl apply desired.yaml --allow-destructive
    provisionctl change-secret --token 12345678 --domain openpgp --secret pin
    provisionctl secure-token --token 12345678 --domain piv
    provisionctl rotate --capability encrypt
    provisionctl check-expiry --days 60
    provisionctl archive-revocation

Environment Variables:
    PROVISIONER_CONFIG  - Path to settings file
    GNUPGHOME           - Offline keyring directory
    PROVISIONER_VERBOSE - Verbose logging

Exit codes:
    0   desired state reached / command succeeded
    1   failure, blocked or declined actions
    2   halted by a consistency error; inspect the token and re-run
    130 cancelled
"""

import argparse
import fcntl
import json
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from ..adapters import (
    GpgOfflineStore,
    OfflineCredentialStore,
    RecipientFile,
    RevocationDirectory,
    TokenBackend,
    ToolRunner,
    YubiKeyBackend,
    archive_revocation,
)
from ..config import ProvisionerSettings, load_descriptor, load_settings
from ..constants import Paths
from ..engine import (
    ActionOutcome,
    ExpiryStatus,
    ProvisioningEngine,
    RotationEngine,
    RunReport,
    StateInspector,
    TokenLifecycleManager,
    check_expiry,
)
from ..errors import ConfigError, ProvisioningError
from ..logging_config import configure_from_environment, get_logger
from ..models import (
    ActionKind,
    AppletDomain,
    Capability,
    DesiredState,
    ProvisioningAction,
    SecretKind,
    StateSnapshot,
)
from ..security.secret_scope import SecretSource
from ..utils.error_handling import ErrorCategory, categorize, suggest_recovery_action

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONSISTENCY = 2
EXIT_CANCELLED = 130


# ANSI color codes
class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'

    @classmethod
    def disable(cls):
        """Disable colors for non-TTY output."""
        cls.RESET = ''
        cls.BOLD = ''
        cls.RED = ''
        cls.GREEN = ''
        cls.YELLOW = ''
        cls.BLUE = ''
        cls.CYAN = ''
        cls.GRAY = ''


OUTCOME_COLORS = {
    ActionOutcome.COMPLETED: 'GREEN',
    ActionOutcome.SKIPPED: 'GRAY',
    ActionOutcome.DECLINED: 'YELLOW',
    ActionOutcome.BLOCKED: 'YELLOW',
    ActionOutcome.FAILED: 'RED',
    ActionOutcome.NOT_RUN: 'GRAY',
}


def print_error(msg: str) -> None:
    """Print error message."""
    print(f"{Colors.RED}Error:{Colors.RESET} {msg}", file=sys.stderr)


def print_success(msg: str) -> None:
    """Print success message."""
    print(f"{Colors.GREEN}✓{Colors.RESET} {msg}")


def print_warning(msg: str, file=None) -> None:
    """Print warning message."""
    print(f"{Colors.YELLOW}Warning:{Colors.RESET} {msg}", file=file or sys.stdout)


def print_info(msg: str, file=None) -> None:
    """Print info message."""
    print(f"{Colors.CYAN}ℹ{Colors.RESET} {msg}", file=file or sys.stdout)


def print_json(data) -> None:
    print(json.dumps(data, indent=2))


@contextmanager
def provisioner_lock(gnupghome: str) -> Iterator[None]:
    """Advisory lock so two runs never write the same offline store."""
    home = Path(gnupghome)
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    path = home / Paths.LOCK_FILE_NAME
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise ConfigError(f"Another provisioner run holds {path}") from None
        yield
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class CancelFlag:
    """
    Ctrl-C requests a stop between actions.

    The action in progress always runs to completion; tool children
    ignore SIGINT, and further presses only repeat the notice.
    """

    def __init__(self):
        self.requested = False
        self._previous = None

    def __call__(self) -> bool:
        return self.requested

    def _handler(self, signum, frame):
        if self.requested:
            print_warning("Already stopping; waiting for the current action to finish",
                          file=sys.stderr)
            return
        self.requested = True
        print_warning("Stopping after the current action", file=sys.stderr)

    def __enter__(self) -> 'CancelFlag':
        self._previous = signal.signal(signal.SIGINT, self._handler)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        signal.signal(signal.SIGINT, self._previous)


class ProvisionCLI:
    """CLI handler for provisioning commands."""

    def __init__(
        self,
        settings: ProvisionerSettings,
        store: Optional[OfflineCredentialStore] = None,
        tokens: Optional[TokenBackend] = None,
        source: Optional[SecretSource] = None,
        input_func: Callable[[str], str] = input,
        use_lock: bool = True,
    ):
        self.settings = settings
        self.input = input_func
        self.use_lock = use_lock

        runner = None
        if store is None or tokens is None:
            runner = ToolRunner(
                env={'GNUPGHOME': settings.gnupghome},
                touch_reminder=settings.touch_reminder_seconds,
                on_reminder=lambda message, waited: print_info(
                    f"{message} - touch the YubiKey if it is blinking ({waited:.0f}s)",
                    file=sys.stderr),
            )
        self.store = store or GpgOfflineStore(settings.gnupghome, runner)
        self.tokens = tokens or YubiKeyBackend(settings.gnupghome, settings.age.identity_dir,
                                               runner)
        self.recipients = RecipientFile(settings.age.recipients_file)
        self.scope = settings.secret_scope(source, confirm_weak=self.ask_yes_no)
        self.inspector = StateInspector(self.store, self.tokens, self.recipients)
        self.rotation = RotationEngine(self.store, settings.key_type, settings.expiration)
        self.lifecycle = TokenLifecycleManager(self.inspector, self.tokens)
        self.engine = ProvisioningEngine(
            self.store, self.tokens, self.scope,
            recipients=self.recipients,
            inspector=self.inspector,
            rotation=self.rotation,
            lifecycle=self.lifecycle,
        )

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    def ask_yes_no(self, question: str) -> bool:
        answer = self.input(f"{question} [y/N] ").strip().lower()
        return answer in ('y', 'yes')

    def confirm_action(self, action: ProvisioningAction) -> bool:
        """Per-action confirmation for destructive steps. No yes-to-all."""
        # On stderr: stdout may be carrying a JSON report
        err = sys.stderr
        print(f"\n{Colors.BOLD}{Colors.RED}Destructive action{Colors.RESET}", file=err)
        print(f"  {action.describe()}", file=err)
        if action.kind is ActionKind.RESET_AND_CREATE:
            print(f"  {Colors.YELLOW}The current contents of {action.target} will be lost.{Colors.RESET}",
                  file=err)
        print(f"Type the token serial ({action.target.serial}) to proceed: ", end="", file=err, flush=True)
        answer = self.input("").strip()
        return answer == action.target.serial

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self.use_lock:
            with provisioner_lock(self.settings.gnupghome):
                yield
        else:
            yield

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def _print_snapshot(self, snapshot: StateSnapshot) -> None:
        master = snapshot.master
        print(f"\n{Colors.BOLD}Master:{Colors.RESET} {snapshot.master_id}")
        if master is None:
            print(f"  {Colors.RED}not found in the offline store{Colors.RESET}")
        else:
            material = 'present' if master.has_secret_material else 'absent (stub only)'
            print(f"  {master.fingerprint}  secret material: {material}")

        print(f"\n{Colors.BOLD}Derived credentials:{Colors.RESET}")
        if not snapshot.derived:
            print(f"  {Colors.GRAY}none{Colors.RESET}")
        for cred in snapshot.derived:
            caps = cred.capabilities.letters if cred.capabilities else '?'
            expires = cred.expires_at.date().isoformat() if cred.expires_at else 'never'
            where = cred.card_serial or ('local' if cred.has_local_material else '-')
            print(f"  {cred.fingerprint}  [{caps:<3}] {cred.state.value:<11} "
                  f"expires {expires:<10} {where}")

        for token in snapshot.tokens:
            print(f"\n{Colors.BOLD}YubiKey {token.serial}{Colors.RESET}")
            for applet in token.applets:
                if not applet.available:
                    print(f"  {applet.domain.value}: {Colors.YELLOW}unavailable"
                          f"{Colors.RESET} ({applet.degraded_reason})")
                    continue
                counters = ", ".join(f"{c.kind.value} {c.remaining}/{c.maximum}"
                                     for c in applet.retry_counters)
                print(f"  {applet.domain.value}: {counters}")
                for slot in applet.slots:
                    if slot.is_empty:
                        print(f"    {slot.index:<4} {Colors.GRAY}empty{Colors.RESET}")
                        continue
                    caps = slot.capabilities.letters if slot.capabilities else '?'
                    touch = slot.presence_policy.value if slot.presence_policy else '?'
                    print(f"    {slot.index:<4} {slot.bound_id}  [{caps}] touch={touch}")

        if snapshot.recipients:
            print(f"\n{Colors.BOLD}Recipients:{Colors.RESET} {len(snapshot.recipients)}")
            for recipient in snapshot.recipients:
                print(f"  {recipient}")

    def _print_actions(self, actions: List[ProvisioningAction]) -> None:
        print(f"\n{Colors.BOLD}Plan:{Colors.RESET}\n")
        for i, action in enumerate(actions, 1):
            color = Colors.RED if action.destructive else (
                Colors.YELLOW if action.kind is ActionKind.BLOCKED else Colors.CYAN)
            print(f"  {i:>2}. {color}{action.kind.value:<19}{Colors.RESET} {action.describe()}")
            if action.required_secrets:
                needs = ", ".join(r.label for r in action.required_secrets)
                print(f"      {Colors.GRAY}needs: {needs}{Colors.RESET}")

    def _print_report(self, report: RunReport) -> None:
        print(f"\n{Colors.BOLD}Results:{Colors.RESET}\n")
        for result in report.results:
            color = getattr(Colors, OUTCOME_COLORS[result.outcome])
            print(f"  {color}{result.outcome.value:<10}{Colors.RESET} {result.action.describe()}")
            if result.detail and result.outcome is not ActionOutcome.SKIPPED:
                print(f"             {Colors.GRAY}{result.detail}{Colors.RESET}")
        summary = ", ".join(f"{report.count(o)} {o.value}" for o in ActionOutcome if report.count(o))
        print(f"\n{summary}")

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def cmd_tokens(self, args: argparse.Namespace) -> int:
        """List attached YubiKeys."""
        serials = self.tokens.enumerate()
        if args.output == 'json':
            print_json({'tokens': serials})
        elif not serials:
            print_warning("No YubiKeys attached")
        else:
            for serial in serials:
                print(f"  {serial}")
        return EXIT_OK

    def cmd_inspect(self, args: argparse.Namespace) -> int:
        """Snapshot the offline store and tokens."""
        master_id = self.settings.resolve_master_id(args.master)
        serials = args.token or self.tokens.enumerate()
        snapshot = self.inspector.snapshot(master_id, serials, require_all=False)
        if args.output == 'json':
            print_json(snapshot.to_dict())
        else:
            self._print_snapshot(snapshot)
        return EXIT_OK

    def _desired(self, args: argparse.Namespace) -> DesiredState:
        desired = load_descriptor(args.descriptor, self.settings, args.master,
                                  True if args.allow_destructive else None)
        if args.override_critical:
            desired = replace(desired, override_critical=True)
        return desired

    def cmd_plan(self, args: argparse.Namespace) -> int:
        """Show what apply would do. Never mutates anything."""
        desired = self._desired(args)
        _snapshot, actions = self.engine.plan(desired)
        if args.output == 'json':
            print_json({'master_id': desired.master_id,
                        'actions': [a.to_dict() for a in actions]})
        else:
            self._print_actions(actions)
        return EXIT_OK

    def cmd_apply(self, args: argparse.Namespace) -> int:
        """Plan and execute a descriptor."""
        desired = self._desired(args)
        with self._locked(), CancelFlag() as cancel:
            report = self.engine.run(desired, self.confirm_action, cancel)

        if args.output == 'json':
            # stdout carries only the report
            print_json(report.to_dict())
            return apply_exit_code(report)

        self._print_report(report)
        code = apply_exit_code(report)
        halted = report.halted_by
        if report.cancelled:
            print_warning("Cancelled. Run apply again to continue from the current state.")
        elif code == EXIT_CONSISTENCY:
            print_error(f"Halted: {halted}")
            print_info("Inspect the token, then run apply again to resume.")
        elif halted is not None:
            print_error(f"Halted: {halted}")
            print_info(f"Suggested recovery: {suggest_recovery_action(halted).value}")
        elif code != EXIT_OK:
            print_warning("Desired state not fully reached")
        else:
            print_success("Desired state reached")
        return code

    def cmd_change_secret(self, args: argparse.Namespace) -> int:
        """Change one unlock secret."""
        domain = AppletDomain(args.domain)
        kind = SecretKind.parse(args.secret)
        with self._locked():
            results = self.lifecycle.secure_token(args.token, domain, self.scope, kinds=[kind],
                                                  override_critical=args.override_critical)
        return self._report_secret_changes(results, args.output)

    def cmd_secure_token(self, args: argparse.Namespace) -> int:
        """Replace every unlock secret of one applet."""
        domain = AppletDomain(args.domain)
        print_info(f"Changing the {domain.value} secrets on {args.token} one at a time")
        with self._locked():
            results = self.lifecycle.secure_token(args.token, domain, self.scope,
                                                  override_critical=args.override_critical)
        return self._report_secret_changes(results, args.output)

    def _report_secret_changes(self, results, output: str) -> int:
        if output == 'json':
            print_json([r.to_dict() for r in results])
            return EXIT_OK
        for result in results:
            message = result.to_dict()['secret'] + " changed"
            if result.verified:
                after = result.counter_after
                print_success(f"{message}; retry counter {after.remaining}/{after.maximum}")
            else:
                print_success(f"{message}; retry counter not reported")
            for warning in result.warnings:
                print_warning(warning)
        return EXIT_OK

    def cmd_rotate(self, args: argparse.Namespace) -> int:
        """Retire the active credential of one capability."""
        master_id = self.settings.resolve_master_id(args.master)
        capability = Capability.from_name(args.capability)
        with self._locked():
            with self.scope.acquire("Enter master key passphrase",
                                    SecretKind.ROOT_PASSPHRASE) as passphrase:
                result = self.rotation.rotate(
                    master_id, capability, passphrase,
                    issue_successor=not args.no_successor,
                    accept_zero_active=args.accept_zero_active,
                )
        if args.output == 'json':
            print_json(result.to_dict())
            return EXIT_OK
        for retired in result.retired_ids:
            print_success(f"Retired {retired}")
        if result.new_credential is not None:
            print_success(f"Issued {result.new_credential.fingerprint}")
            print_info("Run apply to place the new credential on your tokens")
        return EXIT_OK

    def cmd_check_expiry(self, args: argparse.Namespace) -> int:
        """Report expired and soon-expiring credentials."""
        master_id = self.settings.resolve_master_id(args.master)
        days = args.days if args.days is not None else self.settings.expiry_threshold_days
        findings = check_expiry(self.store.list_derived(master_id), days)
        flagged = [f for f in findings
                   if f.status in (ExpiryStatus.EXPIRED, ExpiryStatus.EXPIRING_SOON)]

        if args.output == 'json':
            print_json({'threshold_days': days, 'findings': [f.to_dict() for f in findings]})
        else:
            for finding in findings:
                cred = finding.credential
                if finding.status is ExpiryStatus.EXPIRED:
                    print_warning(f"[EXPIRED] {cred.fingerprint} "
                                  f"({-finding.days_left} days ago)")
                elif finding.status is ExpiryStatus.EXPIRING_SOON:
                    print_warning(f"[EXPIRING SOON] {cred.fingerprint} "
                                  f"(in {finding.days_left} days)")
                elif finding.status is ExpiryStatus.NO_EXPIRY:
                    print_info(f"[NO EXPIRY] {cred.fingerprint}")
                elif args.verbose:
                    print(f"  [OK] {cred.fingerprint} (in {finding.days_left} days)")
            if flagged:
                print_warning(f"Found {len(flagged)} credential(s) expired or expiring "
                              f"within {days} days")
            else:
                print_success(f"Nothing expires within the next {days} days")

        return EXIT_FAILURE if flagged and args.strict else EXIT_OK

    def cmd_archive_revocation(self, args: argparse.Namespace) -> int:
        """Copy the master's revocation certificate into write-once storage."""
        master_id = self.settings.resolve_master_id(args.master)
        directory = args.directory or self.settings.revocation_dir
        path = archive_revocation(self.store, RevocationDirectory(directory), master_id)
        print_success(f"Revocation certificate archived at {path}")
        print_info("Keep a copy offline, separate from the master key backup")
        return EXIT_OK


def apply_exit_code(report: RunReport) -> int:
    if report.cancelled:
        return EXIT_CANCELLED
    halted = report.halted_by
    if halted is not None:
        if categorize(halted) is ErrorCategory.CONSISTENCY:
            return EXIT_CONSISTENCY
        return EXIT_FAILURE
    if report.count(ActionOutcome.BLOCKED) or report.count(ActionOutcome.DECLINED):
        return EXIT_FAILURE
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog='provisionctl',
        description='Idempotent YubiKey credential provisioning',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  provisionctl tokens
  provisionctl inspect --token 12345678
  provisionctl plan desired.yaml
  provisionctl apply desired.yaml --allow-destructive
  provisionctl change-secret --token 12345678 --domain openpgp --secret admin-pin
  provisionctl secure-token --token 12345678 --domain piv
  provisionctl rotate --capability encrypt
  provisionctl check-expiry --days 60 --strict
  provisionctl archive-revocation
        """
    )

    parser.add_argument(
        '--no-color', action='store_true',
        help='Disable colored output'
    )
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '--config', metavar='PATH',
        help='Path to settings file'
    )
    parser.add_argument(
        '--master', metavar='KEYID',
        help='Master key id (default: settings or .gpg_master_key_id)'
    )
    parser.add_argument(
        '-o', '--output', choices=['text', 'json'], default='text',
        help='Output format'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('tokens', help='List attached YubiKeys')

    inspect_parser = subparsers.add_parser('inspect', help='Show offline store and token state')
    inspect_parser.add_argument(
        '-t', '--token', action='append', metavar='SERIAL',
        help='Token serial (repeatable; default: all attached)'
    )

    for name, help_text in (('plan', 'Show the actions for a descriptor'),
                            ('apply', 'Execute the actions for a descriptor')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('descriptor', help='Desired-state YAML file')
        sub.add_argument(
            '--allow-destructive', action='store_true',
            help='Allow resetting occupied slots (each one is still confirmed)'
        )
        sub.add_argument(
            '--override-critical', action='store_true',
            help='Plan token writes even when a retry counter is at 1 (this run only)'
        )

    for name, help_text in (('change-secret', 'Change one unlock secret'),
                            ('secure-token', 'Replace all unlock secrets of an applet')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('-t', '--token', required=True, metavar='SERIAL', help='Token serial')
        sub.add_argument(
            '-d', '--domain', choices=[d.value for d in AppletDomain], default='openpgp',
            help='Applet (default: openpgp)'
        )
        if name == 'change-secret':
            sub.add_argument(
                '-s', '--secret', required=True,
                choices=['pin', 'puk', 'reset-code', 'admin-pin', 'management-key'],
                help='Secret to change'
            )
        sub.add_argument(
            '--override-critical', action='store_true',
            help='Proceed even when only one attempt is left'
        )

    rotate_parser = subparsers.add_parser('rotate', help='Retire a credential and issue its successor')
    rotate_parser.add_argument(
        '-c', '--capability', required=True, choices=['sign', 'encrypt', 'authenticate'],
        help='Capability to rotate'
    )
    rotate_parser.add_argument(
        '--no-successor', action='store_true',
        help='Retire without issuing a successor'
    )
    rotate_parser.add_argument(
        '--accept-zero-active', action='store_true',
        help='Confirm that no active credential will remain'
    )

    expiry_parser = subparsers.add_parser('check-expiry', help='Report expiring credentials')
    expiry_parser.add_argument(
        '--days', type=int, metavar='N',
        help='Warning threshold in days (default: settings)'
    )
    expiry_parser.add_argument(
        '--strict', action='store_true',
        help='Exit 1 when anything is expired or expiring'
    )

    revocation_parser = subparsers.add_parser(
        'archive-revocation', help='Archive the master revocation certificate')
    revocation_parser.add_argument(
        '--directory', metavar='PATH',
        help='Target directory (default: settings revocation_dir)'
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Handle colors
    if args.no_color or not sys.stdout.isatty():
        Colors.disable()

    configure_from_environment(verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    try:
        settings = load_settings(args.config)
        cli = ProvisionCLI(settings)
    except ConfigError as e:
        print_error(str(e))
        return EXIT_FAILURE

    command_map = {
        'tokens': cli.cmd_tokens,
        'inspect': cli.cmd_inspect,
        'plan': cli.cmd_plan,
        'apply': cli.cmd_apply,
        'change-secret': cli.cmd_change_secret,
        'secure-token': cli.cmd_secure_token,
        'rotate': cli.cmd_rotate,
        'check-expiry': cli.cmd_check_expiry,
        'archive-revocation': cli.cmd_archive_revocation,
    }

    handler = command_map.get(args.command)
    if handler is None:
        print_error(f"Unknown command: {args.command}")
        return EXIT_FAILURE

    try:
        return handler(args)
    except KeyboardInterrupt:
        print_warning("Interrupted")
        return EXIT_CANCELLED
    except ProvisioningError as e:
        print_error(str(e))
        if categorize(e) is ErrorCategory.CONSISTENCY:
            return EXIT_CONSISTENCY
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
