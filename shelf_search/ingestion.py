"""
Catalog ingestion from a directory of reference pack photos.

Each photo becomes a CatalogItem whose reference embedding is computed
once, here, and stored with the item together with the encoded photo.
The vector index picks new items up asynchronously through the index
maintainer; ingestion never touches the index directly.

Metadata may come from a JSON list with one entry per photo:
    {"filename": "...", "name": "...", "brand": "...", "packSize": "..."}
Without metadata, the directory is scanned and names are derived from
file names.
"""

import os
import json
import logging
from typing import Optional

from .catalog_store import CatalogStore
from .embeddings import EmbeddingProvider
from .models import CatalogItem, DEFAULT_ITEM_TYPE
from .preprocessing import read_image_file

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.webp'}


def _display_name(filename: str) -> str:
    stem = os.path.splitext(os.path.basename(filename))[0]
    return stem.replace("_", " ").replace("-", " ").strip().title() or filename


def ingest_directory(image_dir: str,
                     store: CatalogStore,
                     provider: EmbeddingProvider,
                     metadata_path: Optional[str] = None,
                     item_type: str = DEFAULT_ITEM_TYPE) -> dict:
    """
    Add every reference photo in image_dir to the catalog.

    Args:
        image_dir: Directory containing reference photos.
        store: Catalog to write items into.
        provider: Embedding provider for the reference embeddings.
        metadata_path: Optional JSON metadata file (must have a
            'filename' field per entry). If not provided, scans image_dir.
        item_type: Category assigned to the new items.

    Returns:
        Dict with 'success', 'processed', 'errors', 'skipped' counts.
    """
    if metadata_path and os.path.exists(metadata_path):
        with open(metadata_path, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
        entries = [e for e in metadata if isinstance(e, dict) and e.get('filename')]
    else:
        entries = [
            {"filename": f}
            for f in sorted(os.listdir(image_dir))
            if os.path.splitext(f)[1].lower() in SUPPORTED_EXTENSIONS
        ]

    processed = 0
    errors = 0
    skipped = 0

    logger.info(f"Ingesting {len(entries)} reference photos from {image_dir}")

    for i, entry in enumerate(entries):
        filename = entry["filename"]
        filepath = os.path.join(image_dir, filename)
        if not os.path.exists(filepath):
            logger.warning(f"Listed photo not found: {filename}")
            skipped += 1
            continue

        image = read_image_file(filepath)
        if image is None:
            logger.warning(f"Could not read: {filename}")
            errors += 1
            continue

        try:
            embedding = provider.embed(image)
        except Exception as e:
            logger.warning(f"Embedding failed for {filename}: {e}")
            errors += 1
            continue
        if embedding is None:
            logger.warning(f"Embedding rejected for {filename}")
            errors += 1
            continue

        with open(filepath, 'rb') as f:
            payload = f.read()

        try:
            item = CatalogItem(
                filename=filename,
                name=entry.get("name") or _display_name(filename),
                brand=entry.get("brand") or "Unknown",
                pack_size=entry.get("packSize") or entry.get("pack_size") or "Unknown",
                item_type=item_type,
                embedding=embedding,
            )
            store.put(item, payload)
        except ValueError as e:
            logger.warning(f"Failed to store {filename}: {e}")
            errors += 1
            continue

        processed += 1
        if (i + 1) % 100 == 0:
            logger.info(f"Ingested {i + 1}/{len(entries)} photos")

    logger.info(f"Ingestion done: {processed} items, {errors} errors, {skipped} missing")

    return {
        "success": processed > 0,
        "processed": processed,
        "errors": errors,
        "skipped": skipped,
    }


def reset_catalog(store: CatalogStore, item_type: str = DEFAULT_ITEM_TYPE) -> int:
    """Delete every item of item_type. Returns the number deleted."""
    deleted = sum(1 for item in store.list_items(item_type) if store.delete(item.item_id))
    logger.info(f"Deleted {deleted} '{item_type}' items from the catalog")
    return deleted
