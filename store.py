"""
Observation store.

ObservationStore is the interface the rest of the app talks to;
JsonObservationStore keeps everything in one pretty-printed UTF-8 JSON array.
Every write rewrites the whole file. There is no locking: two processes
writing the same file race, and the last full snapshot written wins.
"""
import json
import logging
import os
from abc import ABC, abstractmethod

from pydantic import ValidationError

from errors import StoreCorruptedError
from observations import Observation

log = logging.getLogger(__name__)


class ObservationStore(ABC):

    @abstractmethod
    def read_all(self) -> list[Observation]:
        """All stored observations in insertion order."""

    @abstractmethod
    def upsert(self, observation: Observation) -> Observation:
        """Replace the record with the same image_file in place, or append it."""

    def get(self, image_file: str) -> Observation | None:
        for obs in self.read_all():
            if obs.image_file == image_file:
                return obs
        return None

    def unprocessed(self, image_files) -> list[str]:
        """Image file names not yet stored, sorted, without duplicates (exact, case-sensitive match)."""
        known = {obs.image_file for obs in self.read_all()}
        return sorted(set(image_files) - known)


class JsonObservationStore(ObservationStore):

    def __init__(self, path: str):
        self.path = path

    def _load_records(self) -> list[dict]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            raw = f.read()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreCorruptedError(self.path, f"invalid JSON ({e})") from e
        if not isinstance(data, list):
            raise StoreCorruptedError(self.path, "top-level value is not an array")
        return data

    def read_all(self) -> list[Observation]:
        return self._validate(self._load_records())

    def _validate(self, records: list[dict]) -> list[Observation]:
        try:
            return [Observation.model_validate(r) for r in records]
        except ValidationError as e:
            raise StoreCorruptedError(self.path, f"invalid record ({e.error_count()} errors)") from e

    def upsert(self, observation: Observation) -> Observation:
        # Other records are written back exactly as read
        records = self._load_records()
        existing = self._validate(records)
        for idx, stored in enumerate(existing):
            if stored.image_file == observation.image_file:
                records[idx] = observation.to_record()
                log.info("Replaced %s at index %d", observation.image_file, idx)
                break
        else:
            records.append(observation.to_record())
            log.info("Added %s (%d observations)", observation.image_file, len(records))
        self._write(records)
        return observation

    def _write(self, records: list[dict]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(records, f, indent=2, ensure_ascii=False)
            f.write("\n")
