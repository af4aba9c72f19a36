# portraitbook/records.py
"""
Training job records and where they live.

Two stores share one interface: an in-process dict (default, resets on
restart) and a JSON document on disk. Callers only go through the interface.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("succeeded", "failed", "canceled", "completed")
SUCCESS_STATUSES = ("succeeded", "completed")

# fields a status merge is allowed to touch
MUTABLE_FIELDS = ("status", "error", "version", "weights_url")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TrainingJobRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    training_id: str
    destination: str
    trigger_word: str
    owner: str
    model_name: str
    input_url: str
    status: str
    created_at: str
    updated_at: str
    version: Optional[str] = None
    weights_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES

    def to_public(self) -> dict:
        return self.model_dump(by_alias=True)


class TrainingRecordStore(ABC):
    @abstractmethod
    def get(self, training_id: str) -> Optional[TrainingJobRecord]: ...

    @abstractmethod
    def _put(self, record: TrainingJobRecord) -> None: ...

    @abstractmethod
    def _all(self) -> List[TrainingJobRecord]: ...

    @abstractmethod
    def delete(self, training_id: str) -> None: ...

    def create(self, record: TrainingJobRecord) -> TrainingJobRecord:
        if self.get(record.training_id) is not None:
            raise ValueError(f"Training record {record.training_id} already exists")
        record = record.model_copy(update={"updated_at": record.created_at})
        self._put(record)
        return record

    def update(self, training_id: str, **patch) -> Optional[TrainingJobRecord]:
        existing = self.get(training_id)
        if existing is None:
            return None
        illegal = set(patch) - set(MUTABLE_FIELDS)
        if illegal:
            raise ValueError(f"Cannot update immutable fields: {sorted(illegal)}")
        # updatedAt never goes backwards
        updated_at = max(utc_now(), existing.updated_at)
        updated = existing.model_copy(update={**patch, "updated_at": updated_at})
        self._put(updated)
        return updated

    def list(self) -> List[TrainingJobRecord]:
        """Newest first; records created in the same instant keep reverse insertion order."""
        ordered = sorted(enumerate(self._all()), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [record for _, record in ordered]

    def trigger_word_taken(self, trigger_word: str) -> bool:
        return any(r.trigger_word == trigger_word for r in self._all())

    def prune(self, max_terminal: int) -> int:
        """Drop the oldest terminal records beyond max_terminal. 0 disables pruning."""
        if max_terminal <= 0:
            return 0
        terminal = [r for r in self.list() if r.is_terminal]
        stale = terminal[max_terminal:]
        for r in stale:
            self.delete(r.training_id)
        if stale:
            logger.info("Pruned %d old training records", len(stale))
        return len(stale)


class InMemoryRecordStore(TrainingRecordStore):
    def __init__(self):
        self._records: Dict[str, TrainingJobRecord] = {}

    def get(self, training_id: str) -> Optional[TrainingJobRecord]:
        return self._records.get(training_id)

    def _put(self, record: TrainingJobRecord) -> None:
        self._records[record.training_id] = record

    def _all(self) -> List[TrainingJobRecord]:
        return list(self._records.values())

    def delete(self, training_id: str) -> None:
        self._records.pop(training_id, None)


class JsonFileRecordStore(InMemoryRecordStore):
    """In-memory index mirrored to a JSON document after every write."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        for item in payload.get("records", []):
            record = TrainingJobRecord.model_validate(item)
            self._records[record.training_id] = record
        logger.info("Loaded %d training records from %s", len(self._records), self.path)

    def _flush(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"records": [r.to_public() for r in self.list()]}, f, indent=2)
        os.replace(tmp_path, self.path)

    def _put(self, record: TrainingJobRecord) -> None:
        super()._put(record)
        self._flush()

    def delete(self, training_id: str) -> None:
        super().delete(training_id)
        self._flush()


def build_record_store(path: Optional[str]) -> TrainingRecordStore:
    if path:
        return JsonFileRecordStore(path)
    return InMemoryRecordStore()
