"""
Typed records shared by the catalog store, vector index and search path.

Catalog records arrive as plain dictionaries (from JSON files or an
ingestion job). They are validated once, at the store boundary, by
CatalogItem.from_record() and carried as dataclasses from there on.
Malformed records raise InvalidRecordError so callers can skip them
individually.
"""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import numpy as np

# Fixed at index creation time. All reference and query embeddings
# must have exactly this many components.
EMBEDDING_DIM = int(os.environ.get("EMBEDDING_DIM", "2048"))

# Category of the reference pack photos in the catalog.
DEFAULT_ITEM_TYPE = os.environ.get("CATALOG_ITEM_TYPE", "beer_photo")

SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = {1}

_REQUIRED_TEXT_FIELDS = ("id", "name", "brand", "packSize")


class InvalidRecordError(ValueError):
    """A catalog record failed schema validation."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidRecordError(f"Invalid dateAdded {value!r}: {e}") from e
    else:
        raise InvalidRecordError(f"dateAdded must be an ISO-8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_embedding(vector: Any, dim: int = EMBEDDING_DIM) -> np.ndarray:
    """
    Convert a sequence of numbers into a flat float32 embedding.

    Raises:
        ValueError: If the vector is not one-dimensional, has the wrong
            length, or contains non-finite values.
    """
    array = np.asarray(vector, dtype=np.float32)
    if array.ndim != 1:
        raise ValueError(f"Embedding must be one-dimensional, got shape {array.shape}")
    if array.shape[0] != dim:
        raise ValueError(f"Embedding dimension {array.shape[0]} doesn't match expected dimension {dim}")
    if not np.all(np.isfinite(array)):
        raise ValueError("Embedding contains NaN or infinite values")
    return array


@dataclass(frozen=True)
class CatalogItem:
    """A reference product pack and its (immutable) reference embedding."""

    name: str
    brand: str
    pack_size: str
    item_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    item_type: str = DEFAULT_ITEM_TYPE
    filename: str = ""
    embedding: Optional[np.ndarray] = field(default=None, compare=False, repr=False)
    date_added: datetime = field(default_factory=_utcnow)

    def to_record(self) -> Dict[str, Any]:
        """Serialize metadata to a dictionary record (embedding excluded)."""
        return {
            "schemaVersion": SCHEMA_VERSION,
            "id": self.item_id,
            "type": self.item_type,
            "filename": self.filename,
            "name": self.name,
            "brand": self.brand,
            "packSize": self.pack_size,
            "dateAdded": self.date_added.isoformat(),
        }

    @classmethod
    def from_record(cls,
                    record: Dict[str, Any],
                    embedding: Any = None,
                    dim: int = EMBEDDING_DIM) -> "CatalogItem":
        """
        Build a CatalogItem from a dictionary record.

        Args:
            record: Dictionary with the keys produced by to_record().
                A missing schemaVersion is read as version 1.
            embedding: Optional reference embedding stored apart from
                the record. An "embedding" key in the record is used
                when this is None.
            dim: Expected embedding dimension.

        Raises:
            InvalidRecordError: If the record is malformed.
        """
        if not isinstance(record, dict):
            raise InvalidRecordError(f"Record must be a dict, got {type(record).__name__}")

        version = record.get("schemaVersion", SCHEMA_VERSION)
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            raise InvalidRecordError(f"Unsupported schemaVersion {version!r}")

        for key in _REQUIRED_TEXT_FIELDS:
            value = record.get(key)
            if not isinstance(value, str) or not value.strip():
                raise InvalidRecordError(f"Field {key!r} must be a non-empty string")

        item_type = record.get("type", DEFAULT_ITEM_TYPE)
        filename = record.get("filename", "")
        if not isinstance(item_type, str) or not item_type:
            raise InvalidRecordError("Field 'type' must be a non-empty string")
        if not isinstance(filename, str):
            raise InvalidRecordError("Field 'filename' must be a string")

        if embedding is None:
            embedding = record.get("embedding")
        vector = None
        if embedding is not None:
            try:
                vector = coerce_embedding(embedding, dim)
            except (TypeError, ValueError) as e:
                raise InvalidRecordError(f"Invalid embedding for {record['id']}: {e}") from e

        date_added = _parse_timestamp(record["dateAdded"]) if "dateAdded" in record else _utcnow()

        return cls(
            item_id=record["id"],
            item_type=item_type,
            filename=filename,
            name=record["name"],
            brand=record["brand"],
            pack_size=record["packSize"],
            embedding=vector,
            date_added=date_added,
        )


@dataclass(frozen=True)
class SearchHit:
    """One nearest-neighbor candidate. Never persisted."""

    item: CatalogItem
    similarity: float
    distance: float


@dataclass(frozen=True)
class PackCount:
    """Counting pipeline output for one pack type. Confidence is in [0, 1]."""

    pack_type: str
    brand: str
    count: int
    confidence: float


@dataclass(frozen=True)
class SimilarityMatch:
    identity: str
    display_name: str
    similarity_percent: float

    @classmethod
    def from_hit(cls, hit: SearchHit) -> "SimilarityMatch":
        return cls(
            identity=hit.item.item_id,
            display_name=hit.item.name,
            similarity_percent=round(hit.similarity * 100, 1),
        )


@dataclass(frozen=True)
class CountSummary:
    pack_type: str
    brand: str
    count: int
    confidence_percent: float

    @classmethod
    def from_pack_count(cls, result: PackCount) -> "CountSummary":
        return cls(
            pack_type=result.pack_type,
            brand=result.brand,
            count=int(result.count),
            confidence_percent=round(result.confidence * 100, 1),
        )


@dataclass
class AnalysisReport:
    """Joined outcome of similarity matching and pack counting for one photo."""

    matches: List[SimilarityMatch] = field(default_factory=list)
    counts: List[CountSummary] = field(default_factory=list)

    @property
    def total_packs(self) -> int:
        return sum(c.count for c in self.counts)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "matches": [
                {
                    "identity": m.identity,
                    "display_name": m.display_name,
                    "similarity_percent": m.similarity_percent,
                }
                for m in self.matches
            ],
            "counts": [
                {
                    "type": c.pack_type,
                    "brand": c.brand,
                    "count": c.count,
                    "confidence_percent": c.confidence_percent,
                }
                for c in self.counts
            ],
            "total_packs": self.total_packs,
        }
