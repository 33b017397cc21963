"""Storage for per-device ledger records.

A DeviceLedger holds the minimum persisted state of one device: the
accumulator state, the retained statistics entries and the price history.
Callers hold the device lock while they load, update and save a record.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from .exceptions import LedgerStorageError
from .models import DeviceLedger

logger = logging.getLogger(__name__)


class LedgerStore:
    """Interface for ledger storage backends."""

    def load(self, device_id: str) -> DeviceLedger:
        """Load the record of a device, or an empty record if none exists."""
        raise NotImplementedError

    def save(self, device_id: str, ledger: DeviceLedger) -> None:
        raise NotImplementedError

    def delete(self, device_id: str) -> None:
        raise NotImplementedError

    def device_ids(self) -> list[str]:
        raise NotImplementedError


class InMemoryLedgerStore(LedgerStore):
    """Keeps serialized records in a dict.

    Records are stored as dicts so a loaded ledger never aliases the saved one.
    """

    def __init__(self):
        self._records: dict[str, dict] = {}

    def load(self, device_id: str) -> DeviceLedger:
        data = self._records.get(device_id)
        return DeviceLedger.from_dict(data) if data else DeviceLedger()

    def save(self, device_id: str, ledger: DeviceLedger) -> None:
        self._records[device_id] = ledger.to_dict()

    def delete(self, device_id: str) -> None:
        self._records.pop(device_id, None)

    def device_ids(self) -> list[str]:
        return sorted(self._records)


class JsonFileLedgerStore(LedgerStore):
    """One JSON document per device under a data directory.

    Writes go to a temporary file that replaces the document atomically, so a
    crash never leaves a half-written record.
    """

    SUFFIX = ".ledger.json"

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LedgerStorageError(
                message=f"Cannot create data directory {self.data_dir}: {e}"
            ) from e
        logger.info(f"Ledger records stored in {self.data_dir}")

    def _path(self, device_id: str) -> Path:
        if not device_id or "/" in device_id or "\\" in device_id or device_id in (".", ".."):
            raise LedgerStorageError(device_id, "Invalid device id")
        return self.data_dir / f"{device_id}{self.SUFFIX}"

    def load(self, device_id: str) -> DeviceLedger:
        path = self._path(device_id)
        if not path.exists():
            return DeviceLedger()

        try:
            with open(path, encoding="utf-8") as f:
                return DeviceLedger.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise LedgerStorageError(device_id, f"Cannot read {path}: {e}") from e

    def save(self, device_id: str, ledger: DeviceLedger) -> None:
        path = self._path(device_id)
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(ledger.to_dict(), f)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            Path(tmp_path).unlink(missing_ok=True)
            raise LedgerStorageError(device_id, f"Cannot write {path}: {e}") from e

    def delete(self, device_id: str) -> None:
        self._path(device_id).unlink(missing_ok=True)

    def device_ids(self) -> list[str]:
        return sorted(
            path.name[: -len(self.SUFFIX)] for path in self.data_dir.glob(f"*{self.SUFFIX}")
        )
