import sys
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

import paramiko

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from routerbackup.common.orchestrator import BackupOrchestrator, CycleStatus
from routerbackup.core.errors import (
    CommandError,
    ConnectionFailure,
    ConnectionKind,
    DeliveryError,
    TransferError,
)
from routerbackup.core.history import RunHistoryStore
from routerbackup.core.models import BackupResult
from routerbackup.core.registry import DeviceRegistry

FIXED_TIME = datetime(2025, 3, 1, 18, 0, 0)
_SUCCESS = "success"


class RecordingMessenger:
    def __init__(self, fail_files: bool = False) -> None:
        self.fail_files = fail_files
        self.texts: list[tuple[str, str]] = []
        self.files: list[tuple[str, Path, str]] = []

    def send_text(self, chat_id: str, text: str) -> None:
        self.texts.append((chat_id, text))

    def send_file(self, chat_id: str, path: Path, caption: str) -> None:
        if self.fail_files:
            raise DeliveryError("chat unavailable")
        self.files.append((chat_id, path, caption))

    def alerts(self) -> list[str]:
        return [text for _, text in self.texts if text.startswith("ALERT")]


class ScriptedBackup:
    """Backup callable whose behaviour per device name is a list of results or exceptions."""

    def __init__(self, root: Path, script: dict) -> None:
        self.root = root
        self.script = script
        self.calls: list[str] = []

    def __call__(self, device) -> BackupResult:
        self.calls.append(device.name)
        steps = self.script[device.name]
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        backup_path = self.root / f"{device.name}.backup"
        export_path = self.root / f"{device.name}.rsc"
        backup_path.write_bytes(b"b")
        export_path.write_bytes(b"e")
        return BackupResult(label="20250301_180000", device_name=device.name, backup_path=backup_path, export_path=export_path)


def _timeout() -> ConnectionFailure:
    return ConnectionFailure(ConnectionKind.TIMEOUT, "SSH connection timed out (10.0.0.1:22): timed out")


class BackupOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.registry = DeviceRegistry(self.root / "routers.json")
        self.history = RunHistoryStore(self.root / "backup_history.json")
        self.messenger = RecordingMessenger()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _add(self, name: str, host: str = "10.0.0.1") -> None:
        self.registry.add({"name": name, "host": host, "username": "admin", "password": "pw"})

    def _orchestrator(self, script: dict, **kwargs) -> BackupOrchestrator:
        self.backup = ScriptedBackup(self.root, script)
        return BackupOrchestrator(
            registry=self.registry,
            history=self.history,
            messenger=self.messenger,
            backup_fn=self.backup,
            clock=lambda: FIXED_TIME,
            **kwargs,
        )

    def test_third_consecutive_failure_raises_one_alert(self) -> None:
        self._add("a")
        orchestrator = self._orchestrator({"a": [_timeout()]})

        results = [orchestrator.run_cycle("chat") for _ in range(3)]

        self.assertEqual([(), ()], [result.alerts for result in results[:2]])
        self.assertEqual(1, len(results[2].alerts))
        self.assertEqual(3, results[2].alerts[0].consecutive_failures)
        self.assertEqual(1, len(self.messenger.alerts()))
        self.assertIn("a", self.messenger.alerts()[0])
        self.assertEqual(3, len(self.history.list()))
        self.assertEqual(3, self.history.stats_for_device("a").consecutive_failures)

    def test_alert_repeats_after_threshold_by_default(self) -> None:
        self._add("a")
        orchestrator = self._orchestrator({"a": [_timeout()]})

        for _ in range(4):
            orchestrator.run_cycle("chat")

        self.assertEqual(2, len(self.messenger.alerts()))

    def test_alert_fires_once_when_repeats_disabled(self) -> None:
        self._add("a")
        orchestrator = self._orchestrator({"a": [_timeout()]}, repeat_alerts=False)

        for _ in range(5):
            orchestrator.run_cycle("chat")

        self.assertEqual(1, len(self.messenger.alerts()))

    def test_success_resets_failure_counter(self) -> None:
        self._add("a")
        orchestrator = self._orchestrator({"a": [_timeout(), _timeout(), _SUCCESS, _timeout()]})

        for _ in range(4):
            orchestrator.run_cycle("chat")

        self.assertEqual([], self.messenger.alerts())
        self.assertEqual(1, orchestrator.state.failure_count("a"))

    def test_empty_registry_sends_one_message_and_records_nothing(self) -> None:
        orchestrator = self._orchestrator({})

        result = orchestrator.run_cycle("chat")

        self.assertIs(CycleStatus.NO_DEVICES, result.status)
        self.assertEqual(1, len(self.messenger.texts))
        self.assertEqual([], self.history.list())
        self.assertIsNone(orchestrator.state.last_run)

    def test_mixed_results_keep_registry_order(self) -> None:
        self._add("a", "10.0.0.1")
        self._add("b", "10.0.0.2")
        orchestrator = self._orchestrator({"a": [_SUCCESS], "b": [_timeout()]})

        result = orchestrator.run_cycle("chat", triggered_by_schedule=True)

        self.assertIs(CycleStatus.COMPLETED, result.status)
        self.assertEqual(["a", "b"], self.backup.calls)
        record = self.history.list()[0]
        self.assertEqual(["a", "b"], [outcome.name for outcome in record.routers])
        self.assertEqual((1, 1), (record.success_count, record.failed_count))
        self.assertTrue(record.triggered_by_schedule)
        self.assertEqual(FIXED_TIME, record.timestamp)
        self.assertEqual(2, len(self.messenger.files))
        self.assertIn("Success: 1, Failed: 1.", self.messenger.texts[-1][1])
        self.assertEqual(FIXED_TIME, orchestrator.state.last_run.finished_at)

    def test_unexpected_error_does_not_stop_remaining_devices(self) -> None:
        self._add("a", "10.0.0.1")
        self._add("b", "10.0.0.2")
        orchestrator = self._orchestrator(
            {"a": [paramiko.SSHException("channel closed password=hunter2")], "b": [_SUCCESS]}
        )

        with self.assertLogs("routerbackup.common.orchestrator", level="ERROR"):
            result = orchestrator.run_cycle("chat")

        self.assertIs(CycleStatus.COMPLETED, result.status)
        self.assertEqual(["a", "b"], self.backup.calls)
        self.assertEqual(["failed", "success"], [outcome.status for outcome in result.outcomes])
        self.assertEqual("channel closed password=***", result.outcomes[0].error)
        self.assertEqual(1, len(self.history.list()))
        self.assertEqual(1, orchestrator.state.failure_count("a"))
        self.assertIn("Success: 1, Failed: 1.", self.messenger.texts[-1][1])

    def test_named_device_is_matched_case_insensitively(self) -> None:
        self._add("Kantor", "10.0.0.1")
        self._add("Gudang", "10.0.0.2")
        orchestrator = self._orchestrator({"Kantor": [_SUCCESS], "Gudang": [_SUCCESS]})

        result = orchestrator.run_cycle("chat", device_name="kantor")

        self.assertEqual(["Kantor"], self.backup.calls)
        self.assertEqual(1, len(result.outcomes))

    def test_unknown_named_device(self) -> None:
        self._add("Kantor")
        orchestrator = self._orchestrator({"Kantor": [_SUCCESS]})

        result = orchestrator.run_cycle("chat", device_name="ghost")

        self.assertIs(CycleStatus.DEVICE_NOT_FOUND, result.status)
        self.assertEqual([], self.backup.calls)
        self.assertEqual([], self.history.list())

    def test_delivery_failure_keeps_backup_successful(self) -> None:
        self._add("a")
        self.messenger.fail_files = True
        orchestrator = self._orchestrator({"a": [_SUCCESS]})

        result = orchestrator.run_cycle("chat")

        outcome = result.outcomes[0]
        self.assertTrue(outcome.success)
        self.assertEqual({"backup", "export"}, set(outcome.delivery_errors))
        self.assertIn("Undelivered files: 2.", self.messenger.texts[-1][1])
        self.assertEqual(0, orchestrator.state.failure_count("a"))

    def test_retrieval_failure_is_reported_separately(self) -> None:
        self._add("a")
        orchestrator = self._orchestrator({"a": [TransferError("sftp closed")]})

        result = orchestrator.run_cycle("chat")

        outcome = result.outcomes[0]
        self.assertEqual("retrieval_failed", outcome.status)
        self.assertFalse(outcome.success)
        self.assertIn("retrieval failed", outcome.error)
        self.assertEqual("retrieval_failed", self.history.list()[0].routers[0].status)

    def test_errors_are_sanitized_before_recording(self) -> None:
        self._add("a")
        orchestrator = self._orchestrator({"a": [CommandError("/export", "login failed password=hunter2")]})

        result = orchestrator.run_cycle("chat")

        self.assertEqual("login failed password=***", result.outcomes[0].error)
        self.assertNotIn("hunter2", self.history.path.read_text(encoding="utf-8"))
        self.assertFalse(any("hunter2" in text for _, text in self.messenger.texts))

    def test_invalid_threshold(self) -> None:
        with self.assertRaises(ValueError):
            self._orchestrator({}, failure_threshold=0)


if __name__ == "__main__":
    unittest.main()
