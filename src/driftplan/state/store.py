"""State store base: keyed actual-state records with per-identity locking."""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager

from driftplan.errors import StateError
from driftplan.models import InstanceAddress, StateRecord

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateStore(ABC):
    """Maps instance addresses to their last-known actual state.

    The whole document is loaded and saved at once. Individual records are
    written under a per-address lock so two operations never write the same
    record concurrently.
    """

    def __init__(self):
        self._records: dict[InstanceAddress, StateRecord] = {}
        self._lock = threading.Lock()
        self._address_locks: dict[InstanceAddress, threading.RLock] = {}
        self._dirty = False
        self.serial = 0
        self.lineage: str | None = None

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location of the persisted state."""

    @abstractmethod
    def _read(self) -> str | None:
        """Return the persisted document, or None if there is none yet."""

    @abstractmethod
    def _write(self, payload: str) -> None:
        """Persist the serialized document."""

    def load(self) -> "StateStore":
        payload = self._read()
        with self._lock:
            self._records = {}
            self._dirty = False
            if payload is None:
                logger.debug("No state at %s, starting empty", self.location)
                return self
            try:
                document = json.loads(payload)
                version = document.get("version")
                if version != STATE_VERSION:
                    raise StateError(
                        f"{self.location}: unsupported state version {version!r}"
                    )
                self.serial = int(document.get("serial", 0))
                self.lineage = document.get("lineage")
                for item in document.get("resources", []):
                    record = StateRecord.from_dict(item)
                    self._records[record.address] = record
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                raise StateError(f"{self.location}: corrupt state: {exc}") from exc
        logger.debug("Loaded %d records from %s", len(self._records), self.location)
        return self

    def save(self) -> None:
        with self._lock:
            if not self._dirty and self.lineage is not None:
                return
            self.serial += 1
            if self.lineage is None:
                self.lineage = str(uuid.uuid4())
            payload = self.serialize()
            self._dirty = False
        self._write(payload)
        logger.info("Saved state serial %d to %s", self.serial, self.location)

    def serialize(self) -> str:
        return json.dumps(
            {
                "version": STATE_VERSION,
                "serial": self.serial,
                "lineage": self.lineage,
                "resources": [
                    self._records[address].to_dict() for address in sorted(self._records)
                ],
            },
            indent=2,
            sort_keys=True,
        )

    @contextmanager
    def locked(self, address: InstanceAddress) -> Iterator[None]:
        """Hold the write lock for one record."""
        with self._lock:
            lock = self._address_locks.setdefault(address, threading.RLock())
        with lock:
            yield

    def get(self, address: InstanceAddress) -> StateRecord | None:
        with self._lock:
            return self._records.get(address)

    def put(self, record: StateRecord) -> None:
        with self.locked(record.address):
            with self._lock:
                self._records[record.address] = record
                self._dirty = True

    def remove(self, address: InstanceAddress) -> StateRecord | None:
        with self.locked(address):
            with self._lock:
                record = self._records.pop(address, None)
                if record is not None:
                    self._dirty = True
                return record

    def records(self) -> list[StateRecord]:
        with self._lock:
            return [self._records[address] for address in sorted(self._records)]

    def snapshot(self) -> dict[InstanceAddress, StateRecord]:
        with self._lock:
            return dict(self._records)

    def __contains__(self, address: InstanceAddress) -> bool:
        with self._lock:
            return address in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class MemoryStateStore(StateStore):
    """State kept in a string buffer; used by tests and dry runs."""

    def __init__(self, payload: str | None = None):
        super().__init__()
        self.payload = payload

    @property
    def location(self) -> str:
        return "<memory>"

    def _read(self) -> str | None:
        return self.payload

    def _write(self, payload: str) -> None:
        self.payload = payload
