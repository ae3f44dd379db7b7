import unittest
from unittest.mock import patch
import json
import logging
import tempfile

import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from data_classes import Category, Cursor, Finding, Location, ScanMode, ScanState, ScanStatus, Severity
from scan_errors import CorruptPersistedState, PersistFailure
from state_store import ScanStateStore

TARGET = "https://github.com/example/repo"


def sample_state(position=2, status=ScanStatus.IN_PROGRESS):
    finding = Finding(
        fingerprint="f" * 64,
        category=Category.AWS_KEY,
        severity=Severity.CRITICAL,
        first_seen_commit="abc123",
        first_seen_order=0,
        pattern_id="aws_access_key_id",
        description="AWS Access Key ID",
        remediation="Deactivate the key",
        preview="AKIA********",
        locations=[Location("abc123", "config.py", 3), Location("def456", "env.sh", 1)],
    )
    return ScanState(
        target_id=TARGET,
        mode=ScanMode.RUNNING,
        status=status,
        cursor=Cursor(head="head1", position=position, last_commit="def456", total=10),
        seen_commits={"abc123": "scanned", "def456": "skipped: timeout"},
        findings={finding.fingerprint: finding},
        commits_processed=position,
        warnings=["abc123: malformed hunk header in x.py, file entry skipped"],
        updated_at="2024-01-01T00:00:00+00:00",
    )


class TestScanStateStore(unittest.TestCase):
    def setUp(self):
        logging.getLogger().setLevel(logging.CRITICAL)
        self.tmp = tempfile.TemporaryDirectory()
        self.store = ScanStateStore(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def _record_file(self, mode=ScanMode.RUNNING):
        return self.store._record_path(TARGET, mode)

    def test_load_without_record_is_not_started(self):
        state = self.store.load(TARGET, ScanMode.RUNNING)
        self.assertEqual(state.status, ScanStatus.NOT_STARTED)
        self.assertIsNone(state.cursor)
        self.assertEqual(state.findings, {})

    def test_save_and_load_round_trip(self):
        state = sample_state()
        self.store.save(state)

        self.assertEqual(self.store.load(TARGET, ScanMode.RUNNING), state)

    def test_modes_are_stored_separately(self):
        self.store.save(sample_state())

        self.assertEqual(self.store.load(TARGET, ScanMode.DEEP).status, ScanStatus.NOT_STARTED)

    def test_truncated_record_is_corrupt(self):
        self.store.save(sample_state())
        path = self._record_file()
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        with open(path, "w", encoding="utf-8") as f:
            f.write(content[: len(content) // 2])

        with self.assertRaises(CorruptPersistedState) as ctx:
            self.store.load(TARGET, ScanMode.RUNNING)
        self.assertIn("Reset", str(ctx.exception))

    def test_tampered_record_fails_checksum(self):
        self.store.save(sample_state())
        path = self._record_file()
        with open(path, "r", encoding="utf-8") as f:
            record = json.load(f)
        record["state"]["commits_processed"] = 99
        with open(path, "w", encoding="utf-8") as f:
            json.dump(record, f)

        with self.assertRaises(CorruptPersistedState) as ctx:
            self.store.load(TARGET, ScanMode.RUNNING)
        self.assertEqual(ctx.exception.reason, "checksum mismatch")

    def test_unknown_schema_version_is_corrupt(self):
        self.store.save(sample_state())
        path = self._record_file()
        with open(path, "r", encoding="utf-8") as f:
            record = json.load(f)
        record["schema_version"] = 999
        with open(path, "w", encoding="utf-8") as f:
            json.dump(record, f)

        with self.assertRaises(CorruptPersistedState):
            self.store.load(TARGET, ScanMode.RUNNING)

    def test_failed_save_keeps_previous_record(self):
        self.store.save(sample_state(position=2))

        with patch("state_store.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(PersistFailure):
                self.store.save(sample_state(position=3))

        self.assertEqual(self.store.load(TARGET, ScanMode.RUNNING).cursor.position, 2)
        leftovers = [name for name in os.listdir(self.tmp.name) if name.startswith(".tmp-")]
        self.assertEqual(leftovers, [])

    def test_record_never_contains_raw_secret(self):
        self.store.save(sample_state())
        with open(self._record_file(), "r", encoding="utf-8") as f:
            content = f.read()
        self.assertIn("AKIA********", content)
        self.assertNotIn("AKIA1234567890ABCDEF", content)

    def test_reset_removes_records(self):
        state = sample_state()
        self.store.save(state)
        deep = ScanState(target_id=TARGET, mode=ScanMode.DEEP, status=ScanStatus.IN_PROGRESS)
        self.store.save(deep)

        self.assertEqual(self.store.reset(TARGET, ScanMode.DEEP), [ScanMode.DEEP])
        self.assertEqual(self.store.reset(TARGET), [ScanMode.RUNNING])
        self.assertEqual(self.store.reset(TARGET), [])
        self.assertEqual(self.store.load(TARGET, ScanMode.RUNNING).status, ScanStatus.NOT_STARTED)

    def test_reset_clears_corrupt_record(self):
        self.store.save(sample_state())
        with open(self._record_file(), "w", encoding="utf-8") as f:
            f.write("{not json")

        self.store.reset(TARGET, ScanMode.RUNNING)
        self.assertEqual(self.store.load(TARGET, ScanMode.RUNNING).status, ScanStatus.NOT_STARTED)

    def test_list_states_skips_corrupt_records(self):
        self.store.save(sample_state())
        other = ScanState(target_id="/tmp/other", mode=ScanMode.DEEP, status=ScanStatus.COMPLETED)
        self.store.save(other)
        with open(self.store._record_path("/tmp/other", ScanMode.DEEP), "w", encoding="utf-8") as f:
            f.write("garbage")

        states = self.store.list_states()
        self.assertEqual([s.target_id for s in states], [TARGET])

    def test_list_states_without_directory(self):
        self.assertEqual(ScanStateStore(os.path.join(self.tmp.name, "missing")).list_states(), [])


if __name__ == "__main__":
    unittest.main()
