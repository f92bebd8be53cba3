"""On-disk snapshot of the cache for offline cold starts.

File layout (``<storage_dir>/<storage_key>.json``)::

    {
      "version": 1,
      "saved_at": 1771840800000,
      "entries": [
        {"key": ["people", "u1", "all"], "fetched_at": ..., "policy": {...},
         "data": {"__model__": "PrayerPerson", "items": [...]}}
      ]
    }

Pydantic models are stored by class name and restored only for the classes
listed in ``MODEL_REGISTRY``.  Anything unreadable degrades to an empty cache.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from praysync.cache.policy import policy_from_dict
from praysync.cache.store import CacheStore
from praysync.errors import SerializationError
from praysync.models.intentions import PrayerIntention
from praysync.models.people import PrayerPerson
from praysync.models.prayers import Prayer, PrayerPage, PrayerState, TodaysPrayers, UserStats

logger = logging.getLogger("praysync.cache.persistence")

MODEL_REGISTRY: dict[str, type[BaseModel]] = {
    cls.__name__: cls
    for cls in (PrayerPerson, PrayerIntention, Prayer, TodaysPrayers, PrayerPage, PrayerState, UserStats)
}


def _encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return {"__model__": type(value).__name__, "value": value.model_dump(mode="json")}
    if isinstance(value, list) and value and all(isinstance(v, BaseModel) for v in value):
        names = {type(v).__name__ for v in value}
        if len(names) == 1:
            return {"__model__": names.pop(), "items": [v.model_dump(mode="json") for v in value]}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    return value


def _decode(raw: Any) -> Any:
    if isinstance(raw, dict) and "__model__" in raw:
        model = MODEL_REGISTRY.get(raw["__model__"])
        if model is None:
            raise SerializationError(f"Unknown persisted model {raw['__model__']!r}")
        try:
            if "items" in raw:
                return [model.model_validate(item) for item in raw["items"]]
            return model.model_validate(raw["value"])
        except (PydanticValidationError, KeyError, TypeError) as exc:
            raise SerializationError(f"Invalid persisted {raw['__model__']}: {exc}") from exc
    if isinstance(raw, list):
        return [_decode(v) for v in raw]
    if isinstance(raw, dict):
        return {k: _decode(v) for k, v in raw.items()}
    return raw


class CachePersister:
    """Reads and writes the versioned cache snapshot."""

    def __init__(self, storage_dir: str | Path, storage_key: str, version: int = 1) -> None:
        self.storage_dir = Path(storage_dir)
        self.storage_key = storage_key
        self.version = version

    @classmethod
    def from_settings(cls, settings: Any) -> "CachePersister":
        return cls(settings.storage_dir, settings.storage_key, settings.persist_version)

    @property
    def path(self) -> Path:
        return self.storage_dir / f"{self.storage_key}.json"

    # --- codec ---

    def serialize(self, store: CacheStore) -> str:
        """Encode every populated, JSON-safe entry.

        Raises:
            SerializationError: If the snapshot as a whole cannot be encoded.
        """
        entries = []
        for entry in store.entries():
            if not entry.has_data:
                continue
            try:
                record = {
                    "key": list(entry.key),
                    "fetched_at": entry.fetched_at,
                    "policy": entry.policy.to_dict(),
                    "data": _encode(entry.data),
                }
                json.dumps(record)
            except (TypeError, ValueError) as exc:
                logger.debug("Skipping non-serializable cache entry %s: %s", entry.key, exc)
                continue
            entries.append(record)
        try:
            return json.dumps(
                {"version": self.version, "saved_at": int(time.time() * 1000), "entries": entries}
            )
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Cache snapshot could not be encoded: {exc}") from exc

    def deserialize(self, raw: str) -> list[dict[str, Any]]:
        """Decode a snapshot into entry records with live values.

        Raises:
            SerializationError: Unparseable payload or version mismatch.
        """
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Cache snapshot is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise SerializationError("Cache snapshot is not an object")
        if payload.get("version") != self.version:
            raise SerializationError(
                f"Cache snapshot version {payload.get('version')!r} != {self.version}"
            )
        raw_entries = payload.get("entries")
        if not isinstance(raw_entries, list):
            raise SerializationError("Cache snapshot has no entry list")

        records = []
        for item in raw_entries:
            try:
                records.append(
                    {
                        "key": tuple(str(part) for part in item["key"]),
                        "fetched_at": float(item["fetched_at"]),
                        "policy": policy_from_dict(item["policy"]),
                        "data": _decode(item["data"]),
                    }
                )
            except SerializationError as exc:
                logger.debug("Dropping unreadable cache entry: %s", exc)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.debug("Dropping malformed cache entry: %s", exc)
        return records

    # --- I/O ---

    async def persist(self, store: CacheStore) -> bool:
        """Write the snapshot.  Returns False if the write failed or an empty snapshot was written instead."""
        ok = True
        try:
            payload = self.serialize(store)
        except SerializationError as exc:
            logger.warning("Cache persist failed, writing empty snapshot: %s", exc)
            payload = json.dumps({"version": self.version, "saved_at": None, "entries": []})
            ok = False
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as exc:
            logger.warning("Could not write cache snapshot %s: %s", self.path, exc)
            return False
        return ok

    def _write(self, payload: str) -> None:
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(self.path)

    async def restore(self, store: CacheStore) -> int:
        """Hydrate ``store`` from disk.  Returns the number of entries loaded."""
        if not self.path.exists():
            return 0
        try:
            raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not read cache snapshot %s: %s", self.path, exc)
            return 0
        try:
            records = self.deserialize(raw)
        except SerializationError as exc:
            logger.warning("Discarding cache snapshot: %s", exc)
            return 0

        loaded = 0
        for record in records:
            if store.hydrate(
                record["key"], record["data"], fetched_at=record["fetched_at"], policy=record["policy"]
            ):
                loaded += 1
        logger.info("Restored %d cache entries from %s", loaded, self.path)
        return loaded

    async def remove(self) -> None:
        try:
            await asyncio.to_thread(self.path.unlink, missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove cache snapshot %s: %s", self.path, exc)
