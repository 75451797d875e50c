"""
Per-photo analysis: similarity matching and pack counting, side by side.

The two analyses are independent computations over the same photo, so
they are forked onto a small thread pool and joined before anything is
reported. Either side may come back empty (or fail) without affecting
the other.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import numpy as np

from .models import AnalysisReport, CountSummary, PackCount, SimilarityMatch
from .search_engine import SimilaritySearchEngine

logger = logging.getLogger(__name__)


class CountingPipeline(ABC):
    """External pack-counting model."""

    @abstractmethod
    def analyze(self, image: np.ndarray) -> Optional[List[PackCount]]:
        """Count packs per type in a shelf photo. None means the analysis failed."""


class AnalysisOrchestrator:
    """Runs similarity search and counting concurrently for one photo."""

    def __init__(self,
                 engine: SimilaritySearchEngine,
                 counter: CountingPipeline,
                 k: int = 5):
        self.engine = engine
        self.counter = counter
        self.k = k
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="analysis")

    def analyze(self, image: np.ndarray) -> AnalysisReport:
        """
        Analyze one photo.

        Returns:
            AnalysisReport with filtered similarity matches (best first)
            and per-type pack counts. Both lists may be empty.
        """
        similarity = self._executor.submit(self._similarity, image)
        counting = self._executor.submit(self._counting, image)

        report = AnalysisReport(matches=similarity.result(), counts=counting.result())

        logger.info(
            f"Analysis complete: {len(report.matches)} similarity matches, "
            f"{len(report.counts)} pack types ({report.total_packs} packs)"
        )
        for match in report.matches:
            logger.debug(f"Match: {match.display_name} - {match.similarity_percent:.1f}%")
        for count in report.counts:
            logger.debug(f"Count: {count.pack_type} - {count.count} packs ({count.confidence_percent:.1f}%)")
        return report

    def _similarity(self, image: np.ndarray) -> List[SimilarityMatch]:
        try:
            hits = self.engine.find_matches_for_image(image, k=self.k)
        except Exception:
            logger.exception("Similarity analysis failed")
            return []
        return [SimilarityMatch.from_hit(hit) for hit in hits]

    def _counting(self, image: np.ndarray) -> List[CountSummary]:
        try:
            results = self.counter.analyze(image)
        except Exception:
            logger.exception("Counting analysis failed")
            return []
        if results is None:
            logger.warning("Counting analysis returned no result")
            return []
        return [CountSummary.from_pack_count(r) for r in results]

    def close(self) -> None:
        self._executor.shutdown(wait=True)
