"""
Layered acceptance thresholds for nearest-neighbor hits.

Raw nearest-neighbor output on noisy shelf photos always returns
something, so hits are accepted only when three independent bars pass:

    1. Absolute floor   - every kept hit has similarity >= MATCH_FLOOR
    2. Best-match gate  - the leader has similarity >= MATCH_BEST_GATE,
                          otherwise the photo is ambiguous and nothing
                          is returned
    3. Relative gap     - every kept hit is >= leader * MATCH_GAP_RATIO

and the survivors are capped at MATCH_MAX_RESULTS. Failing a bar yields
an empty result, never a weaker guess. All comparisons use unrounded
similarities in [0, 1].
"""

import os
import logging
from typing import List, Optional, Sequence

from .models import SearchHit

logger = logging.getLogger(__name__)

MATCH_FLOOR = float(os.environ.get("MATCH_FLOOR", "0.85"))
MATCH_BEST_GATE = float(os.environ.get("MATCH_BEST_GATE", "0.90"))
MATCH_GAP_RATIO = float(os.environ.get("MATCH_GAP_RATIO", "0.9"))
MATCH_MAX_RESULTS = int(os.environ.get("MATCH_MAX_RESULTS", "3"))


def rank_hits(hits: Sequence[SearchHit]) -> List[SearchHit]:
    """Sort by similarity (highest first), item id as tiebreaker."""
    return sorted(hits, key=lambda h: (-h.similarity, h.item.item_id))


def filter_results(hits: Sequence[SearchHit],
                   floor: Optional[float] = None,
                   best_gate: Optional[float] = None,
                   gap_ratio: Optional[float] = None,
                   max_results: Optional[int] = None) -> List[SearchHit]:
    """
    Reduce raw hits to a small, high-confidence result set.

    Args:
        hits: Search hits in any order.
        floor: Minimum similarity for any hit (default MATCH_FLOOR).
        best_gate: Minimum similarity of the best hit (default
            MATCH_BEST_GATE). Inclusive.
        gap_ratio: Kept hits must reach best * gap_ratio (default
            MATCH_GAP_RATIO).
        max_results: Cap on returned hits (default MATCH_MAX_RESULTS).

    Returns:
        Accepted hits, best first. Empty if nothing clears every bar.
    """
    floor = MATCH_FLOOR if floor is None else floor
    best_gate = MATCH_BEST_GATE if best_gate is None else best_gate
    gap_ratio = MATCH_GAP_RATIO if gap_ratio is None else gap_ratio
    max_results = MATCH_MAX_RESULTS if max_results is None else max_results

    if not hits:
        logger.debug("No similarity hits to filter")
        return []

    confident = [h for h in rank_hits(hits) if h.similarity >= floor]
    if not confident:
        logger.info(f"No high-confidence matches (>= {floor:.0%}) among {len(hits)} hits")
        return []

    best = confident[0].similarity
    if best < best_gate:
        logger.info(
            f"Best match ({best * 100:.1f}%) below {best_gate:.0%} threshold - rejecting all results"
        )
        return []

    accepted = [h for h in confident if h.similarity >= best * gap_ratio][:max_results]
    logger.info(
        f"Filtered matches: {len(hits)} -> {len(accepted)} results (best: {best * 100:.1f}%)"
    )
    return accepted
