"""Vector store — ChromaDB collections and embedding similarity search."""

import logging
from typing import Sequence

import chromadb
from chromadb.utils import embedding_functions

from vocllm.config import RetrievalConfig
from vocllm.models import Chunk

logger = logging.getLogger(__name__)

# Loaded embedding models, keyed by model name.
_embedding_fn_cache: dict[str, object] = {}


def get_client(config: RetrievalConfig | None = None) -> chromadb.PersistentClient:
    """Open the persistent ChromaDB client holding the retrieval index.

    Args:
        config: Retrieval settings; only ``db_path`` is used. Defaults
            apply when omitted.

    Returns:
        A PersistentClient rooted at ``db_path``.
    """
    cfg = config or RetrievalConfig()
    return chromadb.PersistentClient(path=cfg.db_path)


def get_embedding_function(
    model_name: str = "all-MiniLM-L6-v2",
) -> embedding_functions.SentenceTransformerEmbeddingFunction:
    """Return a SentenceTransformer embedding function, loading each model once."""
    if model_name not in _embedding_fn_cache:
        _embedding_fn_cache[model_name] = (
            embedding_functions.SentenceTransformerEmbeddingFunction(
                model_name=model_name,
            )
        )
    return _embedding_fn_cache[model_name]  # type: ignore[return-value]


def get_or_create_collection(
    client: chromadb.PersistentClient,
    config: RetrievalConfig | None = None,
    embedding_function=None,
) -> chromadb.Collection:
    """Get or create the passage collection, using cosine distance.

    Args:
        client: An active ChromaDB client.
        config: Retrieval settings (collection name, embedding model).
        embedding_function: Overrides the SentenceTransformer model named
            in ``config``.
    """
    cfg = config or RetrievalConfig()
    ef = embedding_function or get_embedding_function(cfg.embedding_model)
    return client.get_or_create_collection(
        name=cfg.collection_name,
        embedding_function=ef,
        metadata={"hnsw:space": "cosine"},
    )


def add_chunks(
    collection: chromadb.Collection,
    chunks: list[Chunk],
    batch_size: int = 100,
) -> int:
    """Upsert chunks in batches and return how many were written.

    IDs are derived from each chunk's source and index, so ingesting the
    same file again replaces its chunks instead of duplicating them.
    """
    if not chunks:
        return 0

    ids = [
        f"{c.metadata.get('source', 'document')}#{c.metadata.get('chunk_index', i)}"
        for i, c in enumerate(chunks)
    ]
    for start in range(0, len(chunks), batch_size):
        end = start + batch_size
        collection.upsert(
            documents=[c.text for c in chunks[start:end]],
            metadatas=[c.metadata for c in chunks[start:end]],
            ids=ids[start:end],
        )

    logger.info("Stored %d chunks in the vector store.", len(chunks))
    return len(chunks)


def search(
    collection: chromadb.Collection,
    query_embedding: Sequence[float],
    n_results: int = 4,
) -> dict:
    """Nearest-neighbour query by embedding.

    Returns:
        Raw ChromaDB result dict with ``documents``, ``metadatas`` and
        ``distances`` keys, one inner list for the single query.
    """
    return collection.query(
        query_embeddings=[list(query_embedding)],
        n_results=n_results,
        include=["documents", "metadatas", "distances"],
    )


def reset_collection(
    client: chromadb.PersistentClient,
    config: RetrievalConfig | None = None,
    embedding_function=None,
) -> chromadb.Collection:
    """Delete and recreate the collection."""
    cfg = config or RetrievalConfig()
    existing = {getattr(c, "name", c) for c in client.list_collections()}
    if cfg.collection_name in existing:
        client.delete_collection(cfg.collection_name)
    return get_or_create_collection(client, cfg, embedding_function)
