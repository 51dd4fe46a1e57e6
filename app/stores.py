"""Record stores: keyed collections of record dicts.

Every store offers whole-collection ``get``/``put`` plus per-record
``get_record``/``upsert``/``delete`` and a per-key single-writer ``lock``.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Protocol

import httpx


logger = logging.getLogger("forge.stores")


@dataclass
class RecordStoreError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


class RecordStore(Protocol):
    def get(self, key: str) -> List[dict]: ...

    def put(self, key: str, records: List[dict]) -> None: ...

    def get_record(self, key: str, record_id: Any) -> dict | None: ...

    def upsert(self, key: str, record: dict) -> dict: ...

    def delete(self, key: str, record_id: Any) -> bool: ...

    def lock(self, key: str): ...


class KeyLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._guard:
            key_lock = self._locks.setdefault(key, threading.RLock())
        with key_lock:
            yield


def _same_id(left: Any, right: Any) -> bool:
    return left is not None and right is not None and str(left) == str(right)


class CollectionStoreMixin:
    """Per-record operations derived from whole-collection ``get``/``put``."""

    _key_locks: KeyLocks

    def lock(self, key: str):
        if not hasattr(self, "_key_locks"):
            self._key_locks = KeyLocks()
        return self._key_locks.lock(key)

    def get_record(self, key: str, record_id: Any) -> dict | None:
        for record in self.get(key):
            if _same_id(record.get("id"), record_id):
                return record
        return None

    def upsert(self, key: str, record: dict) -> dict:
        if record.get("id") is None:
            raise RecordStoreError("RECORD_ID_MISSING", "record id is required", key)
        with self.lock(key):
            records = self.get(key)
            for idx, existing in enumerate(records):
                if _same_id(existing.get("id"), record.get("id")):
                    records[idx] = copy.deepcopy(record)
                    break
            else:
                records.append(copy.deepcopy(record))
            self.put(key, records)
        return copy.deepcopy(record)

    def delete(self, key: str, record_id: Any) -> bool:
        with self.lock(key):
            records = self.get(key)
            kept = [r for r in records if not _same_id(r.get("id"), record_id)]
            if len(kept) == len(records):
                return False
            self.put(key, kept)
        return True


class MemoryRecordStore(CollectionStoreMixin):
    """Process-local store, id-keyed per collection; also the offline fallback."""

    def __init__(self, initial: Dict[str, List[dict]] | None = None) -> None:
        self._key_locks = KeyLocks()
        self._collections: Dict[str, Dict[str, dict]] = {}
        for key, records in (initial or {}).items():
            self.put(key, records)

    def keys(self) -> list[str]:
        return sorted(self._collections)

    def get(self, key: str) -> List[dict]:
        return [copy.deepcopy(r) for r in self._collections.get(key, {}).values()]

    def put(self, key: str, records: List[dict]) -> None:
        if not isinstance(records, list) or any(not isinstance(r, dict) for r in records):
            raise RecordStoreError("INVALID_COLLECTION", "collection must be a list of objects", key)
        indexed: Dict[str, dict] = {}
        for idx, record in enumerate(records):
            record_id = record.get("id")
            indexed[str(record_id) if record_id is not None else f"__row{idx}"] = copy.deepcopy(record)
        self._collections[key] = indexed

    def get_record(self, key: str, record_id: Any) -> dict | None:
        record = self._collections.get(key, {}).get(str(record_id))
        return copy.deepcopy(record) if record else None

    def upsert(self, key: str, record: dict) -> dict:
        if record.get("id") is None:
            raise RecordStoreError("RECORD_ID_MISSING", "record id is required", key)
        with self.lock(key):
            self._collections.setdefault(key, {})[str(record["id"])] = copy.deepcopy(record)
        return copy.deepcopy(record)

    def delete(self, key: str, record_id: Any) -> bool:
        with self.lock(key):
            return self._collections.get(key, {}).pop(str(record_id), None) is not None


class HttpRecordStore(CollectionStoreMixin):
    """Talks to ``GET/PUT {base_url}/collections/{key}``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: Dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._key_locks = KeyLocks()
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, headers=headers, transport=transport)

    def close(self) -> None:
        self._client.close()

    def get(self, key: str) -> List[dict]:
        res = self._client.get(f"/collections/{key}")
        if res.status_code == 404:
            return []
        res.raise_for_status()
        payload = res.json()
        records = payload.get("records") if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise RecordStoreError("INVALID_COLLECTION", "remote collection is not a list", key)
        return [r for r in records if isinstance(r, dict)]

    def put(self, key: str, records: List[dict]) -> None:
        res = self._client.put(f"/collections/{key}", json={"records": records})
        res.raise_for_status()


class FallbackRecordStore:
    """Use ``primary`` while it answers; fall back to the local store on transport errors."""

    def __init__(self, primary, fallback=None) -> None:
        self.primary = primary
        self.fallback = fallback if fallback is not None else MemoryRecordStore()
        self._key_locks = KeyLocks()

    def _call(self, method: str, *args):
        try:
            return getattr(self.primary, method)(*args)
        except httpx.HTTPError as exc:
            logger.warning("record_store_fallback method=%s key=%s error=%s", method, args[0] if args else None, exc)
            return getattr(self.fallback, method)(*args)

    def lock(self, key: str):
        return self._key_locks.lock(key)

    def get(self, key: str) -> List[dict]:
        return self._call("get", key)

    def put(self, key: str, records: List[dict]) -> None:
        self._call("put", key, records)

    def get_record(self, key: str, record_id: Any) -> dict | None:
        return self._call("get_record", key, record_id)

    def upsert(self, key: str, record: dict) -> dict:
        with self.lock(key):
            return self._call("upsert", key, record)

    def delete(self, key: str, record_id: Any) -> bool:
        with self.lock(key):
            return self._call("delete", key, record_id)
