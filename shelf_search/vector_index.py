"""
FAISS vector index over catalog embeddings, maintained lazily.

The index is a derived projection of the catalog store: it never decides
what should be indexed, it only records which item revisions have been
processed (IndexMaintenanceCursor) and holds their vectors. Work is
handed out in small batches through begin_update(); a batch becomes
visible to searches only when IndexUpdater.finish() commits it, and a
batch is applied entirely or not at all.

Vectors are L2-normalized and stored in an inner-product index, so the
raw FAISS score is cosine similarity and cosine distance is 1 - score
(range [0, 2]). Searches take a type filter that is evaluated inside
the FAISS query through an ID selector, so off-category items are never
candidates.
"""

import os
import json
import logging
import threading
from typing import Dict, List, Optional, Set, Tuple

import faiss
import numpy as np

from .catalog_store import CatalogStore, PendingEntry
from .models import CatalogItem, EMBEDDING_DIM, coerce_embedding

logger = logging.getLogger(__name__)

INDEX_FILE = "vector.index"
STATE_FILE = "index_state.json"
DEFAULT_INDEX_NAME = "catalog_embeddings_index"


class IndexUnavailableError(RuntimeError):
    """The vector index was closed or never created."""


class IndexMaintenanceCursor:
    """
    Progress marker: the catalog revision last processed for each item.

    An item whose current revision differs from the recorded one is
    pending. Items whose embedding was rejected are recorded too (as
    skipped) so maintenance quiesces; re-putting the item retries it.
    """

    def __init__(self) -> None:
        self._revisions: Dict[str, int] = {}
        self._skipped: Set[str] = set()

    def revision_of(self, item_id: str) -> Optional[int]:
        return self._revisions.get(item_id)

    def advance(self, item_id: str, revision: int, indexed: bool) -> None:
        current = self._revisions.get(item_id)
        if current is not None and revision < current:
            return
        self._revisions[item_id] = revision
        if indexed:
            self._skipped.discard(item_id)
        else:
            self._skipped.add(item_id)

    def forget(self, item_id: str) -> None:
        self._revisions.pop(item_id, None)
        self._skipped.discard(item_id)

    def is_skipped(self, item_id: str) -> bool:
        return item_id in self._skipped

    @property
    def processed_count(self) -> int:
        return len(self._revisions)

    @property
    def skipped_count(self) -> int:
        return len(self._skipped)

    def to_dict(self) -> dict:
        return {"revisions": dict(self._revisions), "skipped": sorted(self._skipped)}

    @classmethod
    def from_dict(cls, data: dict) -> "IndexMaintenanceCursor":
        cursor = cls()
        cursor._revisions = {str(k): int(v) for k, v in data.get("revisions", {}).items()}
        cursor._skipped = set(data.get("skipped", [])) & set(cursor._revisions)
        return cursor


class IndexUpdater:
    """
    One batch of pending catalog items handed out by begin_update().

    Slots are filled with set_vector() or explicitly skipped; slots left
    untouched are treated as skipped. Nothing is visible to searches
    until finish().
    """

    def __init__(self, index: "VectorIndex", entries: List[PendingEntry]):
        self._index = index
        self._entries = entries
        self._vectors: List[Optional[np.ndarray]] = [None] * len(entries)
        self._done = False

    @property
    def count(self) -> int:
        return len(self._entries)

    def item(self, i: int) -> CatalogItem:
        return self._entries[i].item

    def payload(self, i: int) -> Optional[bytes]:
        """Encoded image bytes for slot i, or None if the store has none."""
        return self._index.store.payload(self._entries[i].item.item_id)

    def set_vector(self, vector: np.ndarray, i: int) -> None:
        """
        Set the embedding for slot i.

        Raises:
            ValueError: If the vector has the wrong dimension, is not
                finite, or is all zeros.
        """
        self._check_active()
        array = coerce_embedding(vector, self._index.dim)
        norm = np.linalg.norm(array)
        if norm == 0:
            raise ValueError("Cannot index a zero vector")
        self._vectors[i] = array / norm

    def skip_vector(self, i: int) -> None:
        self._check_active()
        self._vectors[i] = None

    def finish(self) -> None:
        """Commit the batch atomically."""
        self._check_active()
        self._done = True
        self._index._commit(self._entries, self._vectors)

    def abort(self) -> None:
        """Discard the batch. Its items stay pending."""
        if not self._done:
            self._done = True
            self._index._release()

    def _check_active(self) -> None:
        if self._done:
            raise RuntimeError("Index update already finished or aborted")


class VectorIndex:
    """Cosine-similarity FAISS index kept eventually consistent with a CatalogStore."""

    def __init__(self,
                 store: CatalogStore,
                 dim: int = EMBEDDING_DIM,
                 name: str = DEFAULT_INDEX_NAME):
        if store.dim != dim:
            raise ValueError(f"Index dimension {dim} doesn't match catalog dimension {store.dim}")
        self.store = store
        self.dim = dim
        self.name = name
        self.cursor = IndexMaintenanceCursor()
        self._index: Optional[faiss.Index] = faiss.IndexIDMap2(faiss.IndexFlatIP(dim))
        self._lock = threading.RLock()
        self._labels: Dict[str, int] = {}
        self._item_ids: Dict[int, str] = {}
        self._types: Dict[int, str] = {}
        self._retired: Set[int] = set()
        self._next_label = 0
        self._updating = False

    # -- availability -------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._index is not None

    def close(self) -> None:
        with self._lock:
            self._index = None
        logger.info(f"Vector index '{self.name}' closed")

    def _check_open(self) -> faiss.Index:
        if self._index is None:
            raise IndexUnavailableError(f"Vector index '{self.name}' is not available")
        return self._index

    @property
    def ntotal(self) -> int:
        with self._lock:
            return self._check_open().ntotal

    def __len__(self) -> int:
        """Number of entries visible to searches."""
        with self._lock:
            return len(self._types) - len(self._retired)

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            label = self._labels.get(item_id)  # type: ignore[arg-type]
            return label is not None and label not in self._retired

    # -- maintenance --------------------------------------------------

    def begin_update(self, limit: int) -> Optional[IndexUpdater]:
        """
        Hand out the next batch of at most limit pending items.

        Returns None when the index is up to date. Retired entries are
        purged at that point if no batch commit has done it already.

        Raises:
            IndexUnavailableError: If the index is closed.
            RuntimeError: If another update is still open.
        """
        with self._lock:
            self._check_open()
            if self._updating:
                raise RuntimeError(f"An update of '{self.name}' is already in progress")
            entries = self.store.list_pending(limit, self.cursor)
            if not entries:
                if self._retired:
                    self._apply([], [], [])
                return None
            self._updating = True
        return IndexUpdater(self, entries)

    def retire(self, item_id: str) -> None:
        """
        Hide a deleted item's entry from searches immediately.

        The vector itself is removed by the next commit or the next
        begin_update() that finds no pending work.
        """
        with self._lock:
            self.cursor.forget(item_id)
            label = self._labels.get(item_id)
            if label is not None:
                self._retired.add(label)
                logger.debug(f"Retired index entry for {item_id}")

    def _release(self) -> None:
        with self._lock:
            self._updating = False

    def _commit(self, entries: List[PendingEntry], vectors: List[Optional[np.ndarray]]) -> None:
        try:
            with self._lock:
                self._check_open()
                self._apply(entries, vectors, [e.revision for e in entries])
        finally:
            self._release()

    def _apply(self,
               entries: List[PendingEntry],
               vectors: List[Optional[np.ndarray]],
               revisions: List[int]) -> None:
        """Apply removals and additions for one batch. Caller holds the lock."""
        index = self._check_open()

        stale = set(self._retired)
        for entry in entries:
            old = self._labels.get(entry.item.item_id)
            if old is not None:
                stale.add(old)

        # Deleted while the batch was being embedded.
        removed = {e.item.item_id for e in entries if e.item.item_id not in self.store}

        new_labels: List[int] = []
        new_vectors: List[np.ndarray] = []
        for entry, vector in zip(entries, vectors):
            if vector is None or entry.item.item_id in removed:
                new_labels.append(-1)
                continue
            new_labels.append(self._next_label + len(new_vectors))
            new_vectors.append(vector)

        if stale:
            index.remove_ids(np.array(sorted(stale), dtype=np.int64))
        if new_vectors:
            ids = np.array([label for label in new_labels if label >= 0], dtype=np.int64)
            index.add_with_ids(np.vstack(new_vectors).astype(np.float32), ids)
            self._next_label += len(new_vectors)

        for label in stale:
            item_id = self._item_ids.pop(label, None)
            self._types.pop(label, None)
            if item_id is not None and self._labels.get(item_id) == label:
                del self._labels[item_id]
        self._retired.clear()

        for entry, label, revision in zip(entries, new_labels, revisions):
            item_id = entry.item.item_id
            if item_id in removed:
                self.cursor.forget(item_id)
                continue
            if label >= 0:
                self._labels[item_id] = label
                self._item_ids[label] = item_id
                self._types[label] = entry.item.item_type
            self.cursor.advance(item_id, revision, indexed=label >= 0)

        if entries or stale:
            logger.debug(
                f"Committed batch to '{self.name}': {len(new_vectors)} added, "
                f"{len(entries) - len(new_vectors)} skipped, {len(stale)} removed"
            )

    # -- search -------------------------------------------------------

    def search(self,
               query: np.ndarray,
               k: int,
               item_type: Optional[str] = None) -> List[Tuple[str, float]]:
        """
        Find the k nearest committed entries to query.

        Args:
            query: Query embedding of length dim (normalized here).
            k: Maximum number of results.
            item_type: Only entries of this category are candidates.

        Returns:
            List of (item_id, cosine_distance), nearest first.

        Raises:
            IndexUnavailableError: If the index is closed.
            ValueError: If the query has the wrong dimension or is zero.
        """
        vector = coerce_embedding(query, self.dim)
        norm = np.linalg.norm(vector)
        if norm == 0:
            raise ValueError("Query vector is all zeros")
        vector = (vector / norm).reshape(1, -1)

        with self._lock:
            index = self._check_open()
            labels = np.array(
                [label for label, t in self._types.items()
                 if label not in self._retired and (item_type is None or t == item_type)],
                dtype=np.int64,
            )
            if k <= 0 or labels.size == 0:
                return []

            selector = faiss.IDSelectorBatch(labels.size, faiss.swig_ptr(labels))
            params = faiss.SearchParameters()
            params.sel = selector
            scores, found = index.search(vector, min(k, labels.size), params=params)
            results = [
                (self._item_ids[int(label)], 1.0 - float(score))
                for score, label in zip(scores[0], found[0])
                if label >= 0 and int(label) in self._item_ids
            ]
        return results

    # -- persistence --------------------------------------------------

    def save(self, directory: str) -> None:
        """Persist vectors, label mapping and cursor to directory."""
        os.makedirs(directory, exist_ok=True)
        with self._lock:
            index = self._check_open()
            faiss.write_index(index, os.path.join(directory, INDEX_FILE))
            state = {
                "name": self.name,
                "dim": self.dim,
                "next_label": self._next_label,
                "labels": dict(self._labels),
                "types": {str(label): t for label, t in self._types.items()},
                "retired": sorted(self._retired),
                "cursor": self.cursor.to_dict(),
            }
        with open(os.path.join(directory, STATE_FILE), "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)
        logger.info(f"Saved vector index '{self.name}': {index.ntotal} vectors to {directory}")

    @classmethod
    def load(cls, directory: str, store: CatalogStore) -> "VectorIndex":
        """
        Load an index written by save() and attach it to store.

        Raises:
            FileNotFoundError: If the index files are missing.
            ValueError: If the stored dimension doesn't match the store.
        """
        index_path = os.path.join(directory, INDEX_FILE)
        state_path = os.path.join(directory, STATE_FILE)
        if not os.path.exists(index_path) or not os.path.exists(state_path):
            raise FileNotFoundError(f"Missing vector index files in {directory}")

        with open(state_path, "r", encoding="utf-8") as f:
            state = json.load(f)

        faiss_index = faiss.read_index(index_path)
        if faiss_index.d != store.dim or int(state.get("dim", faiss_index.d)) != store.dim:
            raise ValueError(
                f"Stored index dimension {faiss_index.d} doesn't match catalog dimension {store.dim}"
            )

        vector_index = cls(store, dim=store.dim, name=state.get("name", DEFAULT_INDEX_NAME))
        vector_index._index = faiss_index
        vector_index._labels = {str(k): int(v) for k, v in state.get("labels", {}).items()}
        vector_index._item_ids = {label: item_id for item_id, label in vector_index._labels.items()}
        vector_index._types = {int(k): v for k, v in state.get("types", {}).items()}
        vector_index._retired = set(int(label) for label in state.get("retired", []))
        vector_index._next_label = int(state.get("next_label", 0))
        vector_index.cursor = IndexMaintenanceCursor.from_dict(state.get("cursor", {}))

        # Items deleted while the index was offline.
        for item_id in list(vector_index._labels):
            if item_id not in store:
                vector_index.retire(item_id)

        logger.info(
            f"Loaded vector index '{vector_index.name}': {faiss_index.ntotal} vectors, "
            f"{faiss_index.d}d"
        )
        return vector_index
