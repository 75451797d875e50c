"""
Command line entry point.

    shelf-search ingest IMAGE_DIR --catalog DIR [--metadata FILE]
    shelf-search index --catalog DIR
    shelf-search search IMAGE --catalog DIR [--k N] [--raw]
"""

import os
import argparse
import logging
from typing import List, Optional

from .catalog_store import CatalogStore
from .embeddings import HistogramEmbeddingProvider
from .ingestion import ingest_directory
from .maintainer import IndexMaintainer, MaintenancePolicy
from .preprocessing import read_image_file
from .result_filter import filter_results
from .search_engine import SimilaritySearchEngine
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

INDEX_SUBDIR = "index"


def _open_catalog(directory: str) -> CatalogStore:
    if os.path.exists(os.path.join(directory, "catalog.json")):
        return CatalogStore.load(directory)
    return CatalogStore()


def _open_index(directory: str, store: CatalogStore) -> VectorIndex:
    index_dir = os.path.join(directory, INDEX_SUBDIR)
    try:
        return VectorIndex.load(index_dir, store)
    except FileNotFoundError:
        logger.info(f"No saved index in {index_dir}, creating a new one")
        return VectorIndex(store, dim=store.dim)


def _refresh_index(directory: str, store: CatalogStore, batch_size: int) -> VectorIndex:
    index = _open_index(directory, store)
    maintainer = IndexMaintainer(index, HistogramEmbeddingProvider(),
                                 MaintenancePolicy(batch_size=batch_size, cooldown=0.0))
    try:
        batches = maintainer.run_until_idle()
    finally:
        maintainer.shutdown()
    if batches:
        index.save(os.path.join(directory, INDEX_SUBDIR))
    return index


def cmd_ingest(args: argparse.Namespace) -> int:
    store = _open_catalog(args.catalog)
    summary = ingest_directory(args.image_dir, store, HistogramEmbeddingProvider(),
                               metadata_path=args.metadata)
    store.save(args.catalog)
    print(f"Ingested {summary['processed']} photos ({summary['errors']} errors, "
          f"{summary['skipped']} missing) into {args.catalog}")
    return 0 if summary["success"] else 1


def cmd_index(args: argparse.Namespace) -> int:
    store = _open_catalog(args.catalog)
    index = _refresh_index(args.catalog, store, args.batch_size)
    print(f"Index up to date: {len(index)} searchable entries, "
          f"{index.cursor.skipped_count} skipped items")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    image = read_image_file(args.image)
    if image is None:
        print(f"Could not read image: {args.image}")
        return 1

    store = _open_catalog(args.catalog)
    index = _refresh_index(args.catalog, store, args.batch_size)
    engine = SimilaritySearchEngine(index, provider=HistogramEmbeddingProvider())

    hits = engine.search_image(image, k=args.k)
    if not args.raw:
        hits = filter_results(hits)

    if not hits:
        print("No matches found")
        return 0
    for rank, hit in enumerate(hits, start=1):
        print(f"{rank}. {hit.item.name} ({hit.item.brand}, {hit.item.pack_size}) "
              f"- {hit.similarity * 100:.1f}% [{hit.item.item_id}]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shelf-search",
                                     description="Match shelf photos against a product pack catalog")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Add reference photos to the catalog")
    ingest.add_argument("image_dir", help="Directory containing reference photos")
    ingest.add_argument("--catalog", required=True, help="Catalog directory")
    ingest.add_argument("--metadata", help="JSON metadata file with one entry per photo")
    ingest.set_defaults(func=cmd_ingest)

    index = sub.add_parser("index", help="Bring the vector index up to date")
    index.add_argument("--catalog", required=True, help="Catalog directory")
    index.add_argument("--batch-size", type=int, default=MaintenancePolicy().batch_size)
    index.set_defaults(func=cmd_index)

    search = sub.add_parser("search", help="Find catalog items similar to a photo")
    search.add_argument("image", help="Query photo")
    search.add_argument("--catalog", required=True, help="Catalog directory")
    search.add_argument("--k", type=int, default=5, help="Number of neighbors to retrieve")
    search.add_argument("--raw", action="store_true", help="Show unfiltered nearest neighbors")
    search.add_argument("--batch-size", type=int, default=MaintenancePolicy().batch_size)
    search.set_defaults(func=cmd_search)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
