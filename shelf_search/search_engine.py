"""
Similarity search over the catalog's vector index.

Pipeline for a captured photo:
    1. Embed the photo (a rejected photo ends the search, no query runs)
    2. Cosine nearest-neighbor query restricted to the target category
    3. Resolve hits against the catalog, dropping deleted items
    4. Layered threshold filtering (see result_filter)

The engine fails closed: an unavailable index or store, a malformed
query, or a failed FAISS call all produce an empty result plus a log
entry. There is no fallback to a cheaper matching method.
"""

import os
import logging
from typing import List, Optional

import numpy as np

from .catalog_store import CatalogStore, CatalogUnavailableError
from .embeddings import EmbeddingProvider
from .models import DEFAULT_ITEM_TYPE, SearchHit
from .result_filter import filter_results
from .vector_index import IndexUnavailableError, VectorIndex

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = int(os.environ.get("SEARCH_TOP_K", "5"))
MAX_TOP_K = 10


class SimilaritySearchEngine:
    """
    Nearest-neighbor search over catalog embeddings.

    Constructed explicitly around one index and its store; several
    engines can coexist in one process.
    """

    def __init__(self,
                 index: VectorIndex,
                 provider: Optional[EmbeddingProvider] = None,
                 store: Optional[CatalogStore] = None,
                 default_k: int = DEFAULT_TOP_K,
                 item_type: str = DEFAULT_ITEM_TYPE):
        """
        Args:
            index: Vector index to query.
            provider: Embedding provider for image queries. Only needed
                by search_image() and find_matches_for_image().
            store: Catalog used to resolve hits (defaults to the index's).
            default_k: Results requested when search() gets no k.
            item_type: Default category restriction.
        """
        self.index = index
        self.provider = provider
        self.store = store if store is not None else index.store
        self.default_k = min(max(1, default_k), MAX_TOP_K)
        self.item_type = item_type

    def search(self,
               query: np.ndarray,
               k: Optional[int] = None,
               item_type: Optional[str] = None) -> List[SearchHit]:
        """
        Return up to k catalog items nearest to query, best first.

        Args:
            query: Query embedding; must have the index dimension.
            k: Maximum number of hits (capped at MAX_TOP_K).
            item_type: Category restriction (defaults to the engine's).

        Returns:
            List of SearchHit with similarity = 1 - cosine distance.
            Empty on any failure.
        """
        k = self.default_k if k is None else min(k, MAX_TOP_K)
        item_type = item_type or self.item_type

        try:
            raw = self.index.search(query, k=k, item_type=item_type)
        except IndexUnavailableError as e:
            logger.error(f"Vector search unavailable: {e}")
            return []
        except ValueError as e:
            logger.error(f"Rejected search query: {e}")
            return []
        except RuntimeError as e:
            logger.error(f"Vector search failed, no fallback: {e}")
            return []

        hits: List[SearchHit] = []
        try:
            for item_id, distance in raw:
                item = self.store.get(item_id)
                if item is None:
                    logger.debug(f"Dropping hit for deleted item {item_id}")
                    continue
                hits.append(SearchHit(item=item, similarity=1.0 - distance, distance=distance))
        except CatalogUnavailableError as e:
            logger.error(f"Catalog unavailable while resolving hits: {e}")
            return []

        logger.info(f"Vector search complete: {len(raw)} candidates -> {len(hits)} hits")
        return hits

    def search_image(self,
                     image: np.ndarray,
                     k: Optional[int] = None,
                     item_type: Optional[str] = None) -> List[SearchHit]:
        """Embed a photo and search. A rejected photo yields no hits."""
        embedding = self._embed_query(image)
        if embedding is None:
            return []
        return self.search(embedding, k=k, item_type=item_type)

    def find_matches(self,
                     query: np.ndarray,
                     k: Optional[int] = None,
                     item_type: Optional[str] = None) -> List[SearchHit]:
        """Search and apply the layered result filter."""
        return filter_results(self.search(query, k=k, item_type=item_type))

    def find_matches_for_image(self,
                               image: np.ndarray,
                               k: Optional[int] = None,
                               item_type: Optional[str] = None) -> List[SearchHit]:
        return filter_results(self.search_image(image, k=k, item_type=item_type))

    def _embed_query(self, image: np.ndarray) -> Optional[np.ndarray]:
        if self.provider is None:
            logger.error("No embedding provider configured for image queries")
            return None
        try:
            embedding = self.provider.embed(image)
        except Exception as e:
            logger.error(f"Embedding provider failed on query photo: {e}")
            return None
        if embedding is None:
            logger.info("Query photo rejected by embedding provider (likely poor quality)")
            return None
        logger.debug(f"Generated query embedding ({len(embedding)} dimensions)")
        return embedding
