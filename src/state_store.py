import os
import re
import json
import hashlib
import logging
import tempfile
from typing import Any, Dict, List, Optional

from data_classes import SCHEMA_VERSION, ScanMode, ScanState, ScanStatus
from scan_errors import CorruptPersistedState, PersistFailure

logger = logging.getLogger(__name__)


def _checksum(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ScanStateStore:
    """
    Durable store of ScanState records, one JSON file per (target, mode).

    Records are written to a temporary file in the same directory and swapped in
    with os.replace, so a reader sees either the previous or the new record, never a mix.
    """

    def __init__(self, state_dir: str = ".scan_state"):
        self.state_dir = state_dir

    def _record_path(self, target_id: str, mode: ScanMode) -> str:
        slug = re.sub(r"[^A-Za-z0-9]+", "_", target_id).strip("_")[-48:]
        digest = hashlib.sha256(target_id.encode("utf-8")).hexdigest()[:16]
        return os.path.join(self.state_dir, f"{slug}-{digest}.{mode.value}.json")

    def load(self, target_id: str, mode: ScanMode) -> ScanState:
        """Loads the record, or a fresh NotStarted state if none was ever saved"""

        path = self._record_path(target_id, mode)
        if not os.path.exists(path):
            return ScanState(target_id=target_id, mode=mode)

        try:
            with open(path, "r", encoding="utf-8") as f:
                record = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptPersistedState(target_id, mode.value, f"unreadable record ({e})")

        if not isinstance(record, dict):
            raise CorruptPersistedState(target_id, mode.value, "record is not an object")

        version = record.get("schema_version")
        if version != SCHEMA_VERSION:
            raise CorruptPersistedState(
                target_id, mode.value, f"unsupported schema version {version!r}"
            )

        payload = record.get("state")
        if not isinstance(payload, dict) or record.get("checksum") != _checksum(payload):
            raise CorruptPersistedState(target_id, mode.value, "checksum mismatch")

        try:
            state = ScanState.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptPersistedState(target_id, mode.value, f"invalid field ({e})")

        if state.target_id != target_id or state.mode != mode:
            raise CorruptPersistedState(target_id, mode.value, "record belongs to another scan")

        return state

    def save(self, state: ScanState) -> None:
        payload = state.to_dict()
        record = {
            "schema_version": SCHEMA_VERSION,
            "checksum": _checksum(payload),
            "state": payload,
        }
        path = self._record_path(state.target_id, state.mode)
        tmp_path = None

        try:
            os.makedirs(self.state_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".tmp-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise PersistFailure(
                f"Could not persist {state.mode.value} state for {state.target_id}: {e}"
            ) from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)

        logger.debug(
            f"Saved {state.mode.value} state for {state.target_id} "
            f"({state.status.value}, {state.commits_processed} commits)"
        )

    def reset(self, target_id: str, mode: Optional[ScanMode] = None) -> List[ScanMode]:
        """deletes the persisted record(s); the only way to get rid of a corrupt state"""

        removed = []
        modes = [mode] if mode else [ScanMode.RUNNING, ScanMode.DEEP]
        for m in modes:
            path = self._record_path(target_id, m)
            if os.path.exists(path):
                os.remove(path)
                removed.append(m)
                logger.info(f"Reset {m.value} state for {target_id}")
        return removed

    def list_states(self) -> List[ScanState]:
        """every readable record in the store; corrupt ones are reported and skipped"""

        if not os.path.isdir(self.state_dir):
            return []

        states = []
        for name in sorted(os.listdir(self.state_dir)):
            if name.startswith(".tmp-") or not name.endswith(".json"):
                continue
            try:
                with open(os.path.join(self.state_dir, name), "r", encoding="utf-8") as f:
                    record = json.load(f)
                payload = record["state"]
                state = self.load(payload["target_id"], ScanMode(payload["mode"]))
            except (OSError, KeyError, TypeError, ValueError, CorruptPersistedState) as e:
                logger.warning(f"Skipping unreadable state record {name}: {e}")
                continue
            if state.status != ScanStatus.NOT_STARTED:
                states.append(state)
        return states
