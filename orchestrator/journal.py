import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict, defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, NamedTuple, Optional, Sequence

from filelock import FileLock, Timeout

from orchestrator.constants import FUTURE_ID_SEPARATOR, JOURNAL_JSON_FORMAT
from orchestrator.exceptions import DuplicateRecord, JournalError, RunLocked
from orchestrator.utils import _load_json

logger = logging.getLogger(__name__)

NetworkName = str
StepId = str


class DeploymentRecord(NamedTuple):
    """A confirmed deployment of one step on one network. Never mutated."""

    network: NetworkName
    step_id: StepId
    artifact: str
    address: str
    tx_hash: str
    timestamp: str
    chain_id: int
    block_number: int
    deployer: str
    arguments: Sequence[Any] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "artifact": self.artifact,
            "address": self.address,
            "tx_hash": self.tx_hash,
            "timestamp": self.timestamp,
            "chain_id": int(self.chain_id),
            "block_number": int(self.block_number),
            "deployer": self.deployer,
            "arguments": list(self.arguments),
        }

    @classmethod
    def from_dict(cls, network: NetworkName, step_id: StepId, data: Dict[str, Any]) -> "DeploymentRecord":
        return cls(
            network=network,
            step_id=step_id,
            artifact=data["artifact"],
            address=data["address"],
            tx_hash=data["tx_hash"],
            timestamp=data["timestamp"],
            chain_id=int(data["chain_id"]),
            block_number=int(data["block_number"]),
            deployer=data["deployer"],
            arguments=list(data.get("arguments", list())),
        )


def jsonable(value: Any) -> Any:
    """Converts resolved constructor arguments into a JSON-compatible form."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


class Journal(ABC):
    """
    Durable record of completed steps for one graph, keyed by (network, step id).
    Callers serialise runs with run_lock(); record() is append-only.
    """

    def __init__(self, graph_name: str):
        self.graph_name = graph_name

    @abstractmethod
    def lookup(self, network: NetworkName, step_id: StepId) -> Optional[DeploymentRecord]:
        raise NotImplementedError

    @abstractmethod
    def record(self, record: DeploymentRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def records(self, network: NetworkName) -> "OrderedDict[StepId, DeploymentRecord]":
        raise NotImplementedError

    @abstractmethod
    def run_lock(self, network: NetworkName):
        """Context manager holding the exclusive (network, graph) run lock."""
        raise NotImplementedError

    @abstractmethod
    def pending(self, network: NetworkName, step_id: StepId) -> Optional[str]:
        """Returns the hash of a sent but unconfirmed transaction, if any."""
        raise NotImplementedError

    @abstractmethod
    def mark_pending(self, network: NetworkName, step_id: StepId, tx_hash: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear_pending(self, network: NetworkName, step_id: StepId) -> None:
        raise NotImplementedError


class MemoryJournal(Journal):
    """Process-local journal, for tests and dry runs."""

    def __init__(self, graph_name: str, lock_timeout: Optional[float] = None):
        super().__init__(graph_name)
        self.lock_timeout = lock_timeout
        self._records = defaultdict(OrderedDict)
        self._pending = defaultdict(dict)
        self._guard = threading.Lock()
        self._locks: Dict[NetworkName, threading.Lock] = dict()

    def lookup(self, network: NetworkName, step_id: StepId) -> Optional[DeploymentRecord]:
        with self._guard:
            return self._records[network].get(step_id)

    def record(self, record: DeploymentRecord) -> None:
        with self._guard:
            if record.step_id in self._records[record.network]:
                raise DuplicateRecord(record.network, record.step_id)
            self._records[record.network][record.step_id] = record

    def records(self, network: NetworkName) -> "OrderedDict[StepId, DeploymentRecord]":
        with self._guard:
            return OrderedDict(self._records[network])

    def pending(self, network: NetworkName, step_id: StepId) -> Optional[str]:
        with self._guard:
            return self._pending[network].get(step_id)

    def mark_pending(self, network: NetworkName, step_id: StepId, tx_hash: str) -> None:
        with self._guard:
            self._pending[network][step_id] = tx_hash

    def clear_pending(self, network: NetworkName, step_id: StepId) -> None:
        with self._guard:
            self._pending[network].pop(step_id, None)

    @contextmanager
    def run_lock(self, network: NetworkName) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(network, threading.Lock())
        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not lock.acquire(timeout=timeout):
            raise RunLocked(f"Run lock for {self.graph_name} on {network} is held by another run")
        try:
            yield
        finally:
            lock.release()


class JsonJournal(Journal):
    """
    One JSON document per network at <directory>/<graph>/<network>.json.
    Each write replaces the document atomically; run_lock() is a file lock,
    so runs are serialised across threads and processes.
    """

    def __init__(self, directory: Path, graph_name: str, lock_timeout: Optional[float] = None):
        super().__init__(graph_name)
        self.directory = Path(directory) / graph_name
        self.lock_timeout = lock_timeout
        self._guard = threading.RLock()

    def filepath(self, network: NetworkName) -> Path:
        return self.directory / f"{network}.json"

    def _read(self, network: NetworkName) -> Dict[str, Any]:
        filepath = self.filepath(network)
        if not filepath.exists():
            return {"graph": self.graph_name, "network": network, "records": {}, "pending": {}}
        try:
            data = _load_json(filepath)
        except json.JSONDecodeError as e:
            raise JournalError(f"Journal at {filepath} is not valid JSON: {e}") from e
        data.setdefault("records", {})
        data.setdefault("pending", {})
        return data

    def _write(self, network: NetworkName, data: Dict[str, Any]) -> None:
        filepath = self.filepath(network)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        temp_filepath = filepath.with_suffix(".tmp")
        with open(temp_filepath, "w") as file:
            json.dump(data, file, **JOURNAL_JSON_FORMAT)
            file.flush()
            os.fsync(file.fileno())
        os.replace(temp_filepath, filepath)

    def lookup(self, network: NetworkName, step_id: StepId) -> Optional[DeploymentRecord]:
        with self._guard:
            entry = self._read(network)["records"].get(step_id)
        if entry is None:
            return None
        return DeploymentRecord.from_dict(network, step_id, entry)

    def record(self, record: DeploymentRecord) -> None:
        with self._guard:
            data = self._read(record.network)
            if record.step_id in data["records"]:
                raise DuplicateRecord(record.network, record.step_id)
            entry = record.to_dict()
            entry["sequence"] = len(data["records"])
            data["records"][record.step_id] = entry
            self._write(record.network, data)
        logger.debug("Journaled %s on %s at %s", record.step_id, record.network, self.filepath(record.network))

    def records(self, network: NetworkName) -> "OrderedDict[StepId, DeploymentRecord]":
        with self._guard:
            entries = self._read(network)["records"]
        # JSON keys are sorted on disk; restore journaling order
        ordered = sorted(entries.items(), key=lambda item: item[1].get("sequence", 0))
        return OrderedDict(
            (step_id, DeploymentRecord.from_dict(network, step_id, entry)) for step_id, entry in ordered
        )

    def pending(self, network: NetworkName, step_id: StepId) -> Optional[str]:
        with self._guard:
            return self._read(network)["pending"].get(step_id)

    def mark_pending(self, network: NetworkName, step_id: StepId, tx_hash: str) -> None:
        with self._guard:
            data = self._read(network)
            data["pending"][step_id] = tx_hash
            self._write(network, data)

    def clear_pending(self, network: NetworkName, step_id: StepId) -> None:
        with self._guard:
            data = self._read(network)
            if data["pending"].pop(step_id, None) is not None:
                self._write(network, data)

    @contextmanager
    def run_lock(self, network: NetworkName) -> Iterator[None]:
        self.directory.mkdir(parents=True, exist_ok=True)
        lock_filepath = self.filepath(network).with_suffix(".json.lock")
        # a fresh FileLock per run, so concurrent runs in one process contend on separate descriptors
        lock = FileLock(str(lock_filepath))
        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        try:
            lock.acquire(timeout=timeout)
        except Timeout:
            raise RunLocked(f"Run lock {lock_filepath} is held by another run")
        try:
            yield
        finally:
            lock.release()


def export_addresses(journal: Journal, network: NetworkName) -> Dict[str, str]:
    """Deployed addresses keyed as <graph>#<step>, like ignition's deployed_addresses.json."""
    return {
        f"{journal.graph_name}{FUTURE_ID_SEPARATOR}{step_id}": record.address
        for step_id, record in journal.records(network).items()
    }
