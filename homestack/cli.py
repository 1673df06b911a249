"""Command line entry point: ``homestack reconcile --all`` and friends."""
from __future__ import annotations

import argparse
import getpass
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional

import yaml

from .converge.runner import Reconciler
from .errors import AuthError, HomestackError
from .models import RunReport, Scope
from .secrets import SecretResolver, encrypt_store, passphrase_from, read_password_file
from .settings import Settings
from .validators import run_validation

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="homestack",
        description="Render and converge docker compose service stacks on this host",
    )
    p.add_argument("--root", type=Path, help="Project root (default: $HOMESTACK_ROOT or cwd)")
    p.add_argument("--vault-password-file", type=Path, help="File holding the vault passphrase")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    p.add_argument("--json", action="store_true", help="Print results as JSON")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_rec = sub.add_parser("reconcile", help="Render and apply services whose definition changed")
    _add_scope(s_rec)
    s_rec.add_argument("--force-pull", action="store_true", help="Pull images and apply even if unchanged")
    s_rec.add_argument("--dry-run", action="store_true", help="Show what would change without applying")

    s_render = sub.add_parser("render", help="Render artifacts and show them without applying")
    _add_scope(s_render)
    s_render.add_argument("--diff", action="store_true", help="Show the diff against the applied artifact")

    s_status = sub.add_parser("status", help="Show the running state of services")
    s_status.add_argument("--service", metavar="NAME")

    s_down = sub.add_parser("teardown", help="Stop service containers")
    _add_scope(s_down)

    s_restart = sub.add_parser("restart", help="Restart service containers")
    _add_scope(s_restart)

    s_logs = sub.add_parser("logs", help="Show recent service logs")
    _add_scope(s_logs)
    s_logs.add_argument("--tail", type=int, default=100)

    sub.add_parser("validate", help="Check registry, templates, and port assignments")

    s_runs = sub.add_parser("runs", help="List recent reconcile runs")
    s_runs.add_argument("--limit", type=int, default=10)

    s_vault = sub.add_parser("vault", help="Manage the encrypted secret store")
    vault_sub = s_vault.add_subparsers(dest="vault_cmd", required=True)
    s_enc = vault_sub.add_parser("encrypt", help="Create the vault from a plaintext YAML mapping")
    s_enc.add_argument("--from", dest="source", type=Path, required=True)
    s_set = vault_sub.add_parser("set", help="Set one secret (value read from a prompt or stdin)")
    s_set.add_argument("key")
    s_unset = vault_sub.add_parser("unset", help="Remove one secret")
    s_unset.add_argument("key")
    vault_sub.add_parser("list", help="List secret names")
    vault_sub.add_parser("rekey", help="Re-encrypt the vault with a new passphrase")
    return p


def _add_scope(parser: argparse.ArgumentParser) -> None:
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--all", action="store_true", help="All enabled services")
    mode.add_argument("--service", metavar="NAME", help="Exactly one service")


def _scope(args: argparse.Namespace) -> Scope:
    return Scope.single(args.service) if args.service else Scope.all()


def configure_logging(verbosity: int, default_level: str) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = getattr(logging, default_level, logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env(root=args.root).with_password_file(args.vault_password_file)
    configure_logging(args.verbose, settings.log_level)

    try:
        if args.cmd == "vault":
            return _vault(args, settings)
        reconciler = Reconciler.from_settings(settings)
        return _dispatch(args, settings, reconciler)
    except HomestackError as exc:
        log.debug("%s failed", args.cmd, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FATAL if exc.fatal else EXIT_FAILED


def _dispatch(args: argparse.Namespace, settings: Settings, reconciler: Reconciler) -> int:
    ask = _passphrase_provider(settings)

    if args.cmd == "reconcile":
        cancel = threading.Event()
        with _cancel_on_sigint(cancel):
            report = reconciler.run(
                _scope(args),
                ask,
                force_pull=args.force_pull,
                dry_run=args.dry_run,
                cancel=cancel,
            )
        _print_report(report, args.json)
        return exit_code(report)

    if args.cmd == "render":
        previews = reconciler.preview(_scope(args), ask)
        failed = False
        for preview in previews:
            if preview.failure is not None:
                failed = True
                print(f"# {preview.service}: {preview.failure.status.value} ({preview.failure.detail})")
                continue
            print(f"# {preview.service} {preview.artifact.fingerprint}")
            if args.diff and preview.diff is not None:
                print("\n".join(preview.diff.text) or "# no changes")
            else:
                print(preview.content)
        return EXIT_FAILED if failed else EXIT_OK

    if args.cmd == "status":
        statuses = reconciler.status(args.service)
        if args.json:
            print(json.dumps([status.model_dump(mode="json") for status in statuses], indent=2))
        else:
            for status in statuses:
                note = f"  ({status.message})" if status.message else ""
                print(f"{status.name:<20} {status.state.value:<18}{note}")
        return EXIT_OK

    if args.cmd in ("teardown", "restart", "logs"):
        return _service_command(args, reconciler)

    if args.cmd == "validate":
        result = run_validation(
            reconciler.registry,
            reconciler.renderer,
            reconciler.resolver,
            docker_binary=settings.docker_binary,
        )
        if args.json:
            print(result.model_dump_json(indent=2))
        else:
            for key, value in result.checks.items():
                print(f"{key:<40} {value}")
            print("valid" if result.ok else "invalid")
        return EXIT_OK if result.ok else EXIT_FAILED

    if args.cmd == "runs":
        records = reconciler.history.recent(args.limit) if reconciler.history else []
        for record in records:
            state = "ok" if record.ok else ("running" if record.ok is None else "failed")
            started = record.started_at.isoformat(timespec="seconds") if record.started_at else "-"
            print(f"{record.run_id}  {started:<25}  {state:<7}  {record.scope}")
        return EXIT_OK

    raise AssertionError(f"unhandled command {args.cmd}")


def _service_command(args: argparse.Namespace, reconciler: Reconciler) -> int:
    """Run teardown, restart, or logs for one service or for every applied one.

    With ``--all`` a failing service is reported and the rest still run.
    """
    if args.service:
        names = [args.service]
    else:
        applied = set(reconciler.store.committed_services())
        names = [service.name for service in reconciler.registry.list() if service.name in applied]

    result = EXIT_OK
    for name in names:
        try:
            if args.cmd == "logs":
                output = reconciler.logs(name, tail=args.tail)
            elif args.cmd == "restart":
                output = reconciler.restart(name)
            else:
                output = reconciler.teardown(name)
        except HomestackError as exc:
            if exc.fatal or args.service:
                raise
            print(f"error: {exc}", file=sys.stderr)
            result = EXIT_FAILED
            continue
        if args.cmd == "logs":
            if not args.service:
                print(f"# {name}")
            sys.stdout.write(output)
        else:
            print(output if args.service else f"{name}: {output}")
    return result


def exit_code(report: RunReport) -> int:
    if report.error is not None:
        return EXIT_FATAL
    if report.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if report.ok else EXIT_FAILED


def format_report(report: RunReport) -> List[str]:
    mode = " (dry run)" if report.dry_run else ""
    lines = [f"Run {report.run_id}: {report.scope}{mode}"]
    for outcome in report.outcomes:
        line = f"  {outcome.service:<20} {outcome.status.value:<14}"
        if outcome.reason:
            line += f" [{outcome.reason}]"
        if outcome.detail:
            line += f" {outcome.detail}"
        lines.append(line.rstrip())
    if report.error is not None:
        lines.append(f"  fatal: {report.error.code}: {report.error.message}")
    counts = ", ".join(f"{count} {status}" for status, count in sorted(report.counts().items()))
    lines.append(f"Result: {'ok' if report.ok else 'failed'}" + (f" ({counts})" if counts else ""))
    return lines


def _print_report(report: RunReport, as_json: bool) -> None:
    if as_json:
        print(report.model_dump_json(indent=2))
    else:
        print("\n".join(format_report(report)))


def _passphrase_provider(settings: Settings) -> Callable[[], str]:
    return lambda: passphrase_from(settings.vault_password_file)


class _cancel_on_sigint:
    """First Ctrl-C asks the run to stop between services; the second interrupts."""

    def __init__(self, event: threading.Event) -> None:
        self.event = event
        self._previous = None

    def _handler(self, signum, frame) -> None:
        if self.event.is_set():
            raise KeyboardInterrupt
        print("cancelling after the current service (Ctrl-C again to abort)", file=sys.stderr)
        self.event.set()

    def __enter__(self) -> "_cancel_on_sigint":
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self._handler)
        return self

    def __exit__(self, *exc_info) -> None:
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)


# Vault ---------------------------------------------------------------------


def _new_passphrase(settings: Settings) -> str:
    if settings.vault_password_file is not None:
        return read_password_file(settings.vault_password_file)
    first = getpass.getpass("New vault password: ")
    second = getpass.getpass("Confirm vault password: ")
    if first != second:
        raise AuthError("Passphrases do not match")
    if not first:
        raise AuthError("Vault passphrase must not be empty")
    return first


def _vault(args: argparse.Namespace, settings: Settings) -> int:
    resolver = SecretResolver(settings.vault_file)

    if args.vault_cmd == "encrypt":
        values = yaml.safe_load(args.source.read_text()) or {}
        if not isinstance(values, dict):
            print(f"error: {args.source} must contain a mapping of secrets", file=sys.stderr)
            return EXIT_FAILED
        encrypt_store(settings.vault_file, values, _new_passphrase(settings))
        print(f"encrypted {len(values)} secrets into {settings.vault_file}")
        return EXIT_OK

    if args.vault_cmd == "list":
        store = resolver.unlock(passphrase_from(settings.vault_password_file))
        for key in sorted(store):
            print(key)
        return EXIT_OK

    if args.vault_cmd == "set":
        passphrase = (
            passphrase_from(settings.vault_password_file)
            if resolver.exists()
            else _new_passphrase(settings)
        )
        if sys.stdin.isatty():
            value = getpass.getpass(f"Value for {args.key}: ")
        else:
            value = sys.stdin.read().rstrip("\r\n")
        resolver.update(passphrase, {args.key: value})
        print(f"set {args.key}")
        return EXIT_OK

    if args.vault_cmd == "unset":
        resolver.update(passphrase_from(settings.vault_password_file), {args.key: None})
        print(f"removed {args.key}")
        return EXIT_OK

    if args.vault_cmd == "rekey":
        old = passphrase_from(settings.vault_password_file, prompt="Current vault password: ")
        first = getpass.getpass("New vault password: ")
        if first != getpass.getpass("Confirm vault password: ") or not first:
            raise AuthError("Passphrases do not match")
        resolver.rekey(old, first)
        print("vault re-encrypted")
        return EXIT_OK

    raise AssertionError(f"unhandled vault command {args.vault_cmd}")


if __name__ == "__main__":
    sys.exit(main())
