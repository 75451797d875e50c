"""
Vector catalog store: the system of record for what should be indexed.

Holds CatalogItem metadata, reference embeddings, and the encoded image
payload for each item. Every put/delete bumps a monotonically increasing
revision and notifies subscribed listeners after the write completes, so
an index maintainer can react without the store knowing about it.

Persistence layout (one directory):
    - catalog.json   - versioned item records plus revisions
    - embeddings.npz - reference embeddings keyed by item id
    - payloads.npz   - encoded image bytes keyed by item id
"""

import os
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Protocol

import numpy as np

from .models import CatalogItem, InvalidRecordError, EMBEDDING_DIM, SCHEMA_VERSION

logger = logging.getLogger(__name__)

CATALOG_FILE = "catalog.json"
EMBEDDINGS_FILE = "embeddings.npz"
PAYLOADS_FILE = "payloads.npz"


class CatalogUnavailableError(RuntimeError):
    """The catalog store is closed or was never opened."""


@dataclass(frozen=True)
class CatalogChange:
    kind: str  # "put" or "delete"
    item_id: str


class PendingEntry(NamedTuple):
    item: CatalogItem
    revision: int


class RevisionCursor(Protocol):
    """What list_pending() needs from an index cursor."""

    def revision_of(self, item_id: str) -> Optional[int]:
        """Revision of item_id last processed, or None."""


Listener = Callable[[CatalogChange], None]


class CatalogStore:
    """Thread-safe in-memory catalog with directory persistence."""

    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim
        self._lock = threading.RLock()
        self._items: Dict[str, CatalogItem] = {}
        self._payloads: Dict[str, bytes] = {}
        self._revisions: Dict[str, int] = {}
        self._sequence = 0
        self._listeners: List[Listener] = []
        self._closed = False

    # -- availability -------------------------------------------------

    @property
    def is_open(self) -> bool:
        return not self._closed

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._listeners.clear()
        logger.info("Catalog store closed")

    def _check_open(self) -> None:
        if self._closed:
            raise CatalogUnavailableError("Catalog store is closed")

    # -- change notification -----------------------------------------

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, change: CatalogChange) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception(f"Catalog listener failed on {change.kind} {change.item_id}")

    # -- writes -------------------------------------------------------

    def put(self, item: CatalogItem, payload: Optional[bytes] = None) -> int:
        """
        Insert or replace an item.

        Replacing an item makes it pending for indexing again. A payload
        of None keeps any payload already stored for the item id.

        Returns:
            The new revision of the item.

        Raises:
            ValueError: If the item's embedding has the wrong dimension.
            CatalogUnavailableError: If the store is closed.
        """
        if item.embedding is not None and item.embedding.shape != (self.dim,):
            raise ValueError(
                f"Embedding dimension {item.embedding.shape} doesn't match "
                f"catalog dimension {self.dim}"
            )
        with self._lock:
            self._check_open()
            self._sequence += 1
            self._items[item.item_id] = item
            self._revisions[item.item_id] = self._sequence
            if payload is not None:
                self._payloads[item.item_id] = bytes(payload)
            revision = self._sequence
        logger.debug(f"Saved catalog item {item.item_id} ({item.name}) rev {revision}")
        self._notify(CatalogChange("put", item.item_id))
        return revision

    def delete(self, item_id: str) -> bool:
        """Delete an item. Returns False if it did not exist."""
        with self._lock:
            self._check_open()
            if item_id not in self._items:
                return False
            del self._items[item_id]
            self._revisions.pop(item_id, None)
            self._payloads.pop(item_id, None)
        logger.debug(f"Deleted catalog item {item_id}")
        self._notify(CatalogChange("delete", item_id))
        return True

    def load_records(self,
                     records: Iterable[Dict[str, Any]],
                     payloads: Optional[Dict[str, bytes]] = None) -> int:
        """
        Validate and insert dictionary records.

        Malformed records are skipped with a warning; they never abort
        the load.

        Returns:
            Number of records accepted.
        """
        payloads = payloads or {}
        accepted = 0
        for record in records:
            try:
                item = CatalogItem.from_record(record, dim=self.dim)
            except InvalidRecordError as e:
                record_id = record.get("id") if isinstance(record, dict) else None
                logger.warning(f"Skipping malformed catalog record {record_id!r}: {e}")
                continue
            self.put(item, payloads.get(item.item_id))
            accepted += 1
        return accepted

    # -- reads --------------------------------------------------------

    def get(self, item_id: str) -> Optional[CatalogItem]:
        with self._lock:
            self._check_open()
            return self._items.get(item_id)

    def payload(self, item_id: str) -> Optional[bytes]:
        with self._lock:
            self._check_open()
            return self._payloads.get(item_id)

    def revision(self, item_id: str) -> Optional[int]:
        with self._lock:
            self._check_open()
            return self._revisions.get(item_id)

    def list_items(self, item_type: Optional[str] = None) -> List[CatalogItem]:
        """Return all items (optionally of one type), oldest first."""
        with self._lock:
            self._check_open()
            items = [i for i in self._items.values()
                     if item_type is None or i.item_type == item_type]
        return sorted(items, key=lambda i: (i.date_added, i.item_id))

    def list_pending(self, batch_size: int, cursor: RevisionCursor) -> List[PendingEntry]:
        """
        Return up to batch_size items whose current revision the cursor
        has not processed yet, in revision order.
        """
        if batch_size <= 0:
            return []
        with self._lock:
            self._check_open()
            pending = [
                PendingEntry(self._items[item_id], revision)
                for item_id, revision in self._revisions.items()
                if cursor.revision_of(item_id) != revision
            ]
        pending.sort(key=lambda entry: entry.revision)
        return pending[:batch_size]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            return item_id in self._items

    # -- persistence --------------------------------------------------

    def save(self, directory: str) -> None:
        """Write the catalog to directory (created if missing)."""
        os.makedirs(directory, exist_ok=True)
        with self._lock:
            self._check_open()
            records = []
            for item_id, item in self._items.items():
                record = item.to_record()
                record["revision"] = self._revisions[item_id]
                records.append(record)
            embeddings = {item_id: item.embedding for item_id, item in self._items.items()
                          if item.embedding is not None}
            payloads = {item_id: np.frombuffer(data, dtype=np.uint8)
                        for item_id, data in self._payloads.items()}
            sequence = self._sequence

        with open(os.path.join(directory, CATALOG_FILE), "w", encoding="utf-8") as f:
            json.dump({"schemaVersion": SCHEMA_VERSION, "dim": self.dim,
                       "sequence": sequence, "items": records}, f, indent=2)
        np.savez_compressed(os.path.join(directory, EMBEDDINGS_FILE), **embeddings)
        np.savez_compressed(os.path.join(directory, PAYLOADS_FILE), **payloads)
        logger.info(f"Saved catalog: {len(records)} items, {len(payloads)} payloads to {directory}")

    @classmethod
    def load(cls, directory: str, dim: Optional[int] = None) -> "CatalogStore":
        """
        Load a catalog written by save().

        Malformed records are skipped; revisions are restored so that an
        index cursor saved alongside stays valid.

        Raises:
            FileNotFoundError: If catalog.json is missing.
        """
        with open(os.path.join(directory, CATALOG_FILE), "r", encoding="utf-8") as f:
            data = json.load(f)

        store = cls(dim=dim or int(data.get("dim", EMBEDDING_DIM)))

        embeddings: Dict[str, np.ndarray] = {}
        embeddings_path = os.path.join(directory, EMBEDDINGS_FILE)
        if os.path.exists(embeddings_path):
            with np.load(embeddings_path) as npz:
                embeddings = {k: npz[k] for k in npz.files}

        payloads: Dict[str, bytes] = {}
        payloads_path = os.path.join(directory, PAYLOADS_FILE)
        if os.path.exists(payloads_path):
            with np.load(payloads_path) as npz:
                payloads = {k: npz[k].tobytes() for k in npz.files}

        store._sequence = int(data.get("sequence", 0))
        skipped = 0
        for record in data.get("items", []):
            try:
                item = CatalogItem.from_record(record, embedding=embeddings.get(record.get("id")),
                                               dim=store.dim)
            except (InvalidRecordError, AttributeError) as e:
                logger.warning(f"Skipping malformed catalog record: {e}")
                skipped += 1
                continue
            revision = record.get("revision")
            if isinstance(revision, int) and revision > 0:
                store._items[item.item_id] = item
                store._revisions[item.item_id] = revision
                store._sequence = max(store._sequence, revision)
            else:
                store._sequence += 1
                store._items[item.item_id] = item
                store._revisions[item.item_id] = store._sequence
            if item.item_id in payloads:
                store._payloads[item.item_id] = payloads[item.item_id]

        logger.info(f"Loaded catalog: {len(store)} items ({skipped} skipped) from {directory}")
        return store
