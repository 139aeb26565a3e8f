import json
import sys
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from routerbackup.core.errors import ValidationError
from routerbackup.core.history import RunHistoryStore
from routerbackup.core.models import DeviceOutcome, RunRecord

BASE_TIME = datetime(2025, 3, 1, 18, 0, 0)


def _record(minute: int, *outcomes: DeviceOutcome, scheduled: bool = False) -> RunRecord:
    return RunRecord(
        timestamp=BASE_TIME + timedelta(minutes=minute),
        routers=tuple(outcomes),
        triggered_by_schedule=scheduled,
    )


def _ok(name: str) -> DeviceOutcome:
    return DeviceOutcome(name=name, status="success", backup_path=f"/b/{name}.backup", export_path=f"/b/{name}.rsc")


def _fail(name: str, error: str = "SSH connection timed out") -> DeviceOutcome:
    return DeviceOutcome(name=name, status="failed", error=error)


class RunHistoryStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "backup_history.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_newest_record_first(self) -> None:
        store = RunHistoryStore(self.path)
        store.append(_record(0, _ok("a")))
        store.append(_record(1, _fail("a")))

        records = store.list()

        self.assertEqual([BASE_TIME + timedelta(minutes=1), BASE_TIME], [record.timestamp for record in records])
        self.assertEqual("failed", records[0].routers[0].status)

    def test_history_is_capped(self) -> None:
        store = RunHistoryStore(self.path, limit=3)
        for minute in range(5):
            store.append(_record(minute, _ok("a")))

        records = store.list()

        self.assertEqual(3, len(records))
        self.assertEqual(BASE_TIME + timedelta(minutes=4), records[0].timestamp)
        self.assertEqual(BASE_TIME + timedelta(minutes=2), records[-1].timestamp)

    def test_invalid_limit(self) -> None:
        with self.assertRaises(ValueError):
            RunHistoryStore(self.path, limit=0)

    def test_rejects_malformed_record(self) -> None:
        store = RunHistoryStore(self.path)

        with self.assertRaises(ValidationError):
            store.append({"timestamp": "now", "routers": []})
        with self.assertRaises(ValidationError):
            store.append(RunRecord(timestamp="yesterday", routers=()))
        with self.assertRaises(ValidationError):
            store.append(RunRecord(timestamp=BASE_TIME, routers=("a",)))

        self.assertEqual([], store.list())

    def test_record_layout_on_disk(self) -> None:
        store = RunHistoryStore(self.path)
        store.append(_record(0, _ok("a"), _fail("b"), scheduled=True))

        stored = json.loads(self.path.read_text(encoding="utf-8"))

        self.assertTrue(stored[0]["triggered_by_schedule"])
        self.assertEqual(BASE_TIME.isoformat(), stored[0]["timestamp"])
        self.assertEqual(
            {"name", "success", "status", "error", "backup_path", "export_path", "delivery_errors"},
            set(stored[0]["routers"][0].keys()),
        )
        self.assertFalse(stored[0]["routers"][1]["success"])

    def test_consecutive_failures_stop_at_latest_success(self) -> None:
        store = RunHistoryStore(self.path)
        # appended oldest first: fail, fail, fail, success, fail
        for minute, outcome in enumerate((_fail("a"), _fail("a"), _fail("a"), _ok("a"), _fail("a"))):
            store.append(_record(minute, outcome))

        stats = store.stats_for_device("a")

        self.assertEqual(1, stats.consecutive_failures)
        self.assertEqual(5, stats.total)
        self.assertEqual(1, stats.success)
        self.assertEqual(4, stats.failed)
        self.assertEqual(20.0, stats.success_rate)
        self.assertEqual(BASE_TIME + timedelta(minutes=3), stats.last_successful_run)

    def test_consecutive_failures_without_success(self) -> None:
        store = RunHistoryStore(self.path)
        for minute in range(3):
            store.append(_record(minute, _fail("a"), _ok("b")))

        stats = store.stats_for_device("a")

        self.assertEqual(3, stats.consecutive_failures)
        self.assertIsNone(stats.last_successful_run)
        self.assertEqual(0.0, stats.success_rate)

    def test_stats_for_unknown_device(self) -> None:
        stats = RunHistoryStore(self.path).stats_for_device("ghost")

        self.assertEqual(0, stats.total)
        self.assertEqual(0.0, stats.success_rate)
        self.assertEqual(0, stats.consecutive_failures)

    def test_overall_stats(self) -> None:
        store = RunHistoryStore(self.path)
        store.append(_record(0, _ok("a"), _fail("b")))
        store.append(_record(1, _ok("a"), _ok("b")))
        store.append(_record(2, _ok("a")))

        stats = store.stats_overall()

        self.assertEqual(3, stats.total_runs)
        self.assertEqual(5, stats.total)
        self.assertEqual(4, stats.success)
        self.assertEqual(1, stats.failed)
        self.assertEqual(80.0, stats.success_rate)

    def test_device_history_newest_first_with_limit(self) -> None:
        store = RunHistoryStore(self.path)
        store.append(_record(0, _ok("a")))
        store.append(_record(1, _fail("a", "boom"), scheduled=True))
        store.append(_record(2, _ok("b")))

        entries = store.device_history("a", limit=1)

        self.assertEqual(1, len(entries))
        self.assertFalse(entries[0].success)
        self.assertEqual("boom", entries[0].error)
        self.assertTrue(entries[0].triggered_by_schedule)

    def test_corrupted_history_reads_as_empty(self) -> None:
        self.path.write_text("not json at all", encoding="utf-8")
        store = RunHistoryStore(self.path)

        self.assertEqual([], store.list())
        store.append(_record(0, _ok("a")))
        self.assertEqual(1, len(store.list()))


if __name__ == "__main__":
    unittest.main()
