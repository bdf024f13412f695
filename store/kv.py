# store/kv.py
from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from engine.errors import PersistenceFailure

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Durable key -> JSON-able dict. No multi-key transactions."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        pass


class MemoryStore(KeyValueStore):
    def __init__(self):
        self.data: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self.data.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        self.data[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def items(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        for key in list(self.data):
            yield key, self.get(key)


class JsonFileStore(KeyValueStore):
    """
    The whole table lives in one JSON document.
    - load once at construction; unreadable files start empty
    - every write rewrites the file via temp file + os.replace
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.data: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("[STORE] Failed to load %s, starting with empty state", self.path)
            return {}
        if not isinstance(parsed, dict):
            logger.error("[STORE] %s does not hold an object, starting with empty state", self.path)
            return {}
        logger.info("[STORE] Loaded %d records from %s", len(parsed), self.path)
        return parsed

    def _flush(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self.data, fh, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceFailure(f"failed to write {self.path}: {e}") from e

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self.data.get(key)

    def set(self, key: str, value: Dict[str, Any]) -> None:
        self.data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if key in self.data:
            del self.data[key]
            self._flush()

    def items(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        yield from list(self.data.items())


class FirestoreStore(KeyValueStore):
    """One document per key in a Firestore collection."""

    def __init__(self, db, collection: str = "conversations"):
        self.db = db
        self.collection = self.db.collection(collection)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            doc = self.collection.document(key).get()
        except Exception as e:
            raise PersistenceFailure(f"firestore read failed for {key}: {e}") from e
        if doc.exists:
            return doc.to_dict()
        return None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            self.collection.document(key).set(value)
        except Exception as e:
            raise PersistenceFailure(f"firestore write failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.collection.document(key).delete()
        except Exception as e:
            raise PersistenceFailure(f"firestore delete failed for {key}: {e}") from e

    def items(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        try:
            docs = list(self.collection.stream())
        except Exception as e:
            raise PersistenceFailure(f"firestore scan failed: {e}") from e
        for doc in docs:
            yield doc.id, doc.to_dict()


def firestore_client(secrets_dir: str):
    import firebase_admin
    from firebase_admin import credentials, firestore

    if not firebase_admin._apps:
        cred = credentials.Certificate(os.path.join(secrets_dir, "firebase.json"))
        firebase_admin.initialize_app(cred)
    return firestore.client()


def build_store(settings) -> KeyValueStore:
    if settings.store_backend == "memory":
        return MemoryStore()
    if settings.store_backend == "firestore":
        return FirestoreStore(firestore_client(settings.secrets_dir))
    return JsonFileStore(settings.store_path)
