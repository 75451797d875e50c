"""
Background maintenance that keeps the vector index in step with the catalog.

A maintenance pass repeatedly asks the index for a small batch of
pending items, embeds each one, commits the batch, and cools down before
asking again, until nothing is pending. Passes run on a single-worker
executor, so there is never more than one pass in flight per index and
batches commit strictly in order.

Triggers: attach() runs a pass immediately; every catalog put/delete
schedules another. Triggers arriving while a pass is queued but not yet
started are folded into it. A trigger arriving while a pass is running
queues one more pass, so every mutation is followed by at least one pass.
"""

import os
import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from .catalog_store import CatalogChange, CatalogUnavailableError
from .embeddings import EmbeddingProvider
from .preprocessing import decode_image
from .vector_index import IndexUnavailableError, IndexUpdater, VectorIndex

logger = logging.getLogger(__name__)

INDEX_BATCH_SIZE = int(os.environ.get("INDEX_BATCH_SIZE", "3"))
INDEX_BATCH_COOLDOWN = float(os.environ.get("INDEX_BATCH_COOLDOWN", "0.1"))


@dataclass(frozen=True)
class MaintenancePolicy:
    """How much work one batch does and how long to rest between batches."""

    batch_size: int = INDEX_BATCH_SIZE
    cooldown: float = INDEX_BATCH_COOLDOWN

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.cooldown < 0:
            raise ValueError(f"cooldown must be >= 0, got {self.cooldown}")


class IndexMaintainer:
    """Keeps a VectorIndex eventually consistent with its CatalogStore."""

    def __init__(self,
                 index: VectorIndex,
                 provider: EmbeddingProvider,
                 policy: Optional[MaintenancePolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.index = index
        self.provider = provider
        self.policy = policy or MaintenancePolicy()
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=1,
                                            thread_name_prefix=f"{index.name}-maintenance")
        self._schedule_lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self._queued: Optional[Future] = None
        self._attached = False

        self.batches_committed = 0
        self.items_indexed = 0
        self.items_skipped = 0

    # -- triggers -----------------------------------------------------

    def attach(self) -> Future:
        """Subscribe to catalog changes and run a pass right away."""
        if not self._attached:
            self.index.store.add_listener(self._on_change)
            self._attached = True
        return self.schedule()

    def detach(self) -> None:
        if self._attached:
            self.index.store.remove_listener(self._on_change)
            self._attached = False

    def _on_change(self, change: CatalogChange) -> None:
        if change.kind == "delete":
            self.index.retire(change.item_id)
        self.schedule()

    def schedule(self) -> Future:
        """
        Request a maintenance pass on the background executor.

        Returns the future of the pass that will cover this request,
        which may be a pass that was already queued.
        """
        with self._schedule_lock:
            if self._queued is not None:
                return self._queued
            future = self._executor.submit(self._run_scheduled)
            self._queued = future
            return future

    def _run_scheduled(self) -> List[int]:
        with self._schedule_lock:
            self._queued = None
        return self.run_until_idle()

    def shutdown(self, wait: bool = True) -> None:
        self.detach()
        self._executor.shutdown(wait=wait)

    # -- passes -------------------------------------------------------

    def run_until_idle(self) -> List[int]:
        """
        Run one maintenance pass: batches until nothing is pending.

        Returns:
            Sizes of the batches committed, in order (e.g. [3, 3, 1]).
            Empty if the index was already up to date or unavailable.
        """
        batches: List[int] = []
        with self._pass_lock:
            while True:
                try:
                    processed = self.process_batch()
                except (IndexUnavailableError, CatalogUnavailableError) as e:
                    logger.error(f"Index maintenance stopped: {e}")
                    break
                except Exception:
                    logger.exception(f"Index maintenance pass on '{self.index.name}' failed")
                    break
                if processed == 0:
                    break
                batches.append(processed)
                self._sleep(self.policy.cooldown)

        if batches:
            logger.info(
                f"Maintenance pass on '{self.index.name}' committed {len(batches)} "
                f"batches ({sum(batches)} items), {len(self.index)} entries searchable"
            )
        return batches

    def process_batch(self) -> int:
        """
        Embed and commit a single batch.

        Returns:
            Number of items in the committed batch, 0 if none pending.

        Raises:
            IndexUnavailableError: If the index is closed.
            CatalogUnavailableError: If the store is closed.
        """
        updater = self.index.begin_update(limit=self.policy.batch_size)
        if updater is None:
            return 0

        logger.debug(f"Processing vector batch {self.batches_committed + 1} ({updater.count} items)")
        try:
            indexed = 0
            for i in range(updater.count):
                vector = self._vector_for(updater, i)
                if vector is None:
                    updater.skip_vector(i)
                    continue
                try:
                    updater.set_vector(vector, i)
                    indexed += 1
                except (TypeError, ValueError) as e:
                    logger.warning(f"Could not index {updater.item(i).item_id}: {e}")
                    updater.skip_vector(i)
            updater.finish()
        except BaseException:
            updater.abort()
            raise

        self.batches_committed += 1
        self.items_indexed += indexed
        self.items_skipped += updater.count - indexed
        return updater.count

    def _vector_for(self, updater: IndexUpdater, i: int) -> Optional[np.ndarray]:
        """Reference embedding for slot i, computing it from the payload if needed."""
        item = updater.item(i)
        if item.embedding is not None:
            return item.embedding

        image = decode_image(updater.payload(i))
        if image is None:
            logger.warning(f"Could not read image payload for {item.item_id} ({item.name})")
            return None

        try:
            vector = self.provider.embed(image)
        except Exception as e:
            logger.warning(f"Embedding provider failed for {item.item_id} ({item.name}): {e}")
            return None

        if vector is None:
            logger.warning(f"Embedding rejected for {item.item_id} ({item.name})")
        return vector
