#!/usr/bin/env python3
"""Entry point for RouterBackup."""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
import threading
from functools import partial
from pathlib import Path

# Ensure src/ is on sys.path for local imports when running as a script
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from routerbackup.common.messaging import LoggingMessenger  # noqa: E402
from routerbackup.common.orchestrator import BackupOrchestrator, CycleStatus  # noqa: E402
from routerbackup.common.run_summary import format_moment  # noqa: E402
from routerbackup.core.artifacts import (  # noqa: E402
    artifacts_for_device,
    delete_pair,
    format_file_size,
    list_artifacts,
)
from routerbackup.core.config import (  # noqa: E402
    Settings,
    SettingsError,
    load_local_config,
    load_settings,
    resolve_backup_dir,
)
from routerbackup.core.errors import RouterBackupError, error_text  # noqa: E402
from routerbackup.core.history import RunHistoryStore  # noqa: E402
from routerbackup.core.logging import setup_logging  # noqa: E402
from routerbackup.core.models import Device  # noqa: E402
from routerbackup.core.registry import DeviceRegistry  # noqa: E402
from routerbackup.core.schedule import BackupScheduler, ScheduleStore  # noqa: E402
from routerbackup.mikrotik.backup import perform_backup, test_connection  # noqa: E402

CLI_CHAT_ID = "cli"


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""

    parser = argparse.ArgumentParser(
        description=(
            "Backup utility for MikroTik routers. Use this CLI to manage the router registry, "
            "run backups and inspect backup history."
        ),
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=ROOT_DIR / "config" / "local.yml",
        help="Path to the local settings file (YAML)",
    )
    parser.add_argument(
        "--backup-dir",
        type=Path,
        default=None,
        help="Directory where backup files will be written. Overrides config/local.yml.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting. Overrides config/local.yml logging.level.",
    )

    subcommands = parser.add_subparsers(dest="command", title="commands")

    devices_parser = subcommands.add_parser("devices", help="Manage registered routers")
    devices_actions = devices_parser.add_subparsers(dest="action", required=True)
    devices_actions.add_parser("list", help="List registered routers")
    add_parser = devices_actions.add_parser("add", help="Register a router")
    add_parser.add_argument("name")
    add_parser.add_argument("host")
    add_parser.add_argument("username")
    add_parser.add_argument("--port", type=int, default=22)
    add_parser.add_argument("--password", help="Router password; prompted when omitted")
    remove_parser = devices_actions.add_parser("remove", help="Remove a router")
    remove_parser.add_argument("name")

    test_parser = subcommands.add_parser("test", help="Test the SSH connection to a router")
    test_parser.add_argument("name")

    backup_parser = subcommands.add_parser("backup", help="Back up all routers or a single one")
    backup_parser.add_argument("name", nargs="?", default=None)

    history_parser = subcommands.add_parser("history", help="Show recent backup runs")
    history_parser.add_argument("--device", default=None)
    history_parser.add_argument("--limit", type=int, default=10)

    stats_parser = subcommands.add_parser("stats", help="Show backup statistics")
    stats_parser.add_argument("name", nargs="?", default=None)

    artifacts_parser = subcommands.add_parser("artifacts", help="List backup files on disk")
    artifacts_parser.add_argument("name", nargs="?", default=None)
    artifacts_parser.add_argument("--limit", type=int, default=50)

    delete_parser = subcommands.add_parser("delete-artifact", help="Delete a backup file and its pair")
    delete_parser.add_argument("path", type=Path)

    schedule_parser = subcommands.add_parser("schedule", help="Show or change the automatic backup schedule")
    schedule_actions = schedule_parser.add_subparsers(dest="action", required=True)
    schedule_actions.add_parser("show", help="Show the current schedule")
    set_parser = schedule_actions.add_parser("set", help="Set a custom cron expression")
    set_parser.add_argument("expression")
    schedule_actions.add_parser("clear", help="Return to the default schedule")

    subcommands.add_parser("serve", help="Run scheduled backups until interrupted")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the CLI."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logging(args.config, cli_level=logging.DEBUG if args.debug else None)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        settings = load_settings(load_local_config(args.config, logger))
    except SettingsError as exc:
        logger.error("Invalid settings: %s", exc)
        return 1

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.error(f"Unknown command: {args.command}")
        return 2

    try:
        return handler(args, settings, logger)
    except RouterBackupError as exc:
        logger.error("%s", error_text(exc))
        return 1


def _registry(settings: Settings) -> DeviceRegistry:
    return DeviceRegistry(settings.routers_path)


def _history(settings: Settings) -> RunHistoryStore:
    return RunHistoryStore(settings.history_path, limit=settings.history_limit)


def _build_orchestrator(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> BackupOrchestrator:
    backup_dir = resolve_backup_dir(args.backup_dir, settings, logger)
    return BackupOrchestrator(
        registry=_registry(settings),
        history=_history(settings),
        messenger=LoggingMessenger(),
        backup_fn=partial(perform_backup, backup_root=backup_dir, timeout=settings.connect_timeout, logger=logger),
        failure_threshold=settings.failure_alert_threshold,
        repeat_alerts=settings.repeat_failure_alerts,
    )


def _run_devices(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    registry = _registry(settings)
    if args.action == "list":
        devices = registry.list()
        if not devices:
            print("No devices registered yet.")
            return 0
        for index, device in enumerate(devices, start=1):
            print(f"{index}. {device.name} - {device.host}:{device.port} ({device.username})")
        return 0

    if args.action == "add":
        password = args.password or getpass.getpass(f"Password for {args.username}@{args.host}: ")
        device = registry.add(
            Device(name=args.name, host=args.host, username=args.username, password=password, port=args.port)
        )
        print(f'Device "{device.name}" added.')
        return 0

    removed = registry.remove(args.name)
    print(f'Device "{removed.name}" removed.')
    return 0


def _run_test(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    device = _registry(settings).get(args.name)
    if device is None:
        print(f'Device "{args.name}" not found.')
        return 1
    try:
        test_connection(device, timeout=settings.connect_timeout, logger=logger)
    except RouterBackupError as exc:
        print(f'Connection to "{device.name}" failed: {error_text(exc)}')
        return 1
    print(f'Connection to "{device.name}" OK.')
    return 0


def _run_backup(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    orchestrator = _build_orchestrator(args, settings, logger)
    result = orchestrator.run_cycle(CLI_CHAT_ID, triggered_by_schedule=False, device_name=args.name)
    if result.status is not CycleStatus.COMPLETED:
        return 1
    return 0 if result.failed_count == 0 else 1


def _run_history(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    history = _history(settings)
    if args.device:
        entries = history.device_history(args.device, limit=args.limit)
        if not entries:
            print(f'No history for "{args.device}".')
        for entry in entries:
            status = "OK" if entry.success else f"FAILED: {entry.error}"
            origin = "scheduled" if entry.triggered_by_schedule else "manual"
            print(f"{format_moment(entry.timestamp)} [{origin}] {status}")
        return 0

    records = history.list()[: args.limit]
    if not records:
        print("No backups recorded yet.")
    for record in records:
        origin = "scheduled" if record.triggered_by_schedule else "manual"
        print(
            f"{format_moment(record.timestamp)} [{origin}] "
            f"success={record.success_count} failed={record.failed_count}"
        )
        for outcome in record.routers:
            print(f"  * {outcome.name}: {'OK' if outcome.success else outcome.error}")
    return 0


def _run_stats(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    history = _history(settings)
    if args.name:
        stats = history.stats_for_device(args.name)
        print(f"Device: {args.name}")
        print(f"Backups: {stats.total} (success {stats.success}, failed {stats.failed})")
        print(f"Success rate: {stats.success_rate}%")
        print(f"Last successful backup: {format_moment(stats.last_successful_run)}")
        print(f"Consecutive failures: {stats.consecutive_failures}")
        return 0

    overall = history.stats_overall()
    print(f"Runs: {overall.total_runs}")
    print(f"Device backups: {overall.total} (success {overall.success}, failed {overall.failed})")
    print(f"Success rate: {overall.success_rate}%")
    return 0


def _run_artifacts(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    backup_dir = resolve_backup_dir(args.backup_dir, settings, logger)
    if args.name:
        files = artifacts_for_device(backup_dir, args.name, limit=args.limit)
    else:
        files = list_artifacts(backup_dir)[: args.limit]
    if not files:
        print("No backup files found.")
    for item in files:
        print(f"{format_moment(item.timestamp)}  {item.device}  {item.kind.value:<6}  {format_file_size(item.size):>10}  {item.path}")
    return 0


def _run_delete_artifact(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    deleted = delete_pair(args.path)
    if not deleted:
        print(f"Nothing deleted for {args.path}.")
        return 1
    for path in deleted:
        print(f"Deleted {path}")
    return 0


def _run_schedule(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    store = ScheduleStore(settings.schedule_path)
    if args.action == "set":
        scheduler = BackupScheduler(lambda: None, settings.cron_schedule, settings.timezone, store)
        value = scheduler.set_expression(args.expression)
        print(f"Backup schedule set: {value}")
        return 0
    if args.action == "clear":
        store.clear()
        print(f"Backup schedule reset to default: {settings.cron_schedule}")
        return 0

    custom = store.get()
    print(f"Schedule: {custom or settings.cron_schedule} ({'custom' if custom else 'default'})")
    print(f"Timezone: {settings.timezone}")
    return 0


def _run_serve(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> int:
    chat_id = settings.default_chat_id or CLI_CHAT_ID
    orchestrator = _build_orchestrator(args, settings, logger)
    scheduler = BackupScheduler(
        partial(orchestrator.run_cycle, chat_id, True),
        settings.cron_schedule,
        settings.timezone,
        ScheduleStore(settings.schedule_path),
    )
    scheduler.enable()
    logger.info("next backup at %s", format_moment(scheduler.next_fire_time()))
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("stopping scheduler")
    finally:
        scheduler.shutdown()
    return 0


COMMANDS = {
    "devices": _run_devices,
    "test": _run_test,
    "backup": _run_backup,
    "history": _run_history,
    "stats": _run_stats,
    "artifacts": _run_artifacts,
    "delete-artifact": _run_delete_artifact,
    "schedule": _run_schedule,
    "serve": _run_serve,
}


if __name__ == "__main__":
    raise SystemExit(main())
