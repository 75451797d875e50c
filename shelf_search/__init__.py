"""
shelf_search - Embedding-backed product pack search for shelf photos.

Keeps a FAISS cosine index lazily in step with a product catalog, and
matches shelf photos against it with layered confidence thresholds.
Pack counting runs alongside through a pluggable counting pipeline.

Modules:
    models          Catalog records, hits and report types
    preprocessing   Image decoding, normalization and quality metrics
    embeddings      Embedding provider contract + HSV histogram provider
    catalog_store   Catalog system of record with change notifications
    vector_index    FAISS index, maintenance cursor and batch updater
    maintainer      Background batched index maintenance
    search_engine   SimilaritySearchEngine
    result_filter   Layered threshold filtering of hits
    orchestrator    Concurrent similarity + counting analysis
    ingestion       Catalog ingestion from a photo directory
    cli             Command line entry point
"""

__version__ = "1.0.0"
