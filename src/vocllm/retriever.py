"""Retriever — fetches context passages relevant to the current user turn."""

import logging
import re
from typing import Callable, Protocol, Sequence

from vocllm import vector_store as vs
from vocllm.config import RetrievalConfig
from vocllm.errors import RetrievalError
from vocllm.models import RetrievedPassage

logger = logging.getLogger(__name__)

_OVERLAP_THRESHOLD = 0.8


class Retriever(Protocol):
    def retrieve(self, query: str, k: int) -> list[RetrievedPassage]:
        """Return up to ``k`` passages, best first."""
        ...


def _parse_results(results: dict) -> list[RetrievedPassage]:
    """Convert a raw ChromaDB result into passages.

    Cosine distances become similarity scores (``1 - distance``).
    """
    documents = (results.get("documents") or [[]])[0]
    metadatas = (results.get("metadatas") or [[]])[0]
    distances = (results.get("distances") or [[]])[0]

    return [
        RetrievedPassage(
            text=doc,
            score=round(1 - dist, 4),
            source=(meta or {}).get("source", "unknown"),
        )
        for doc, meta, dist in zip(documents, metadatas, distances)
    ]


def _preprocess_query(query: str) -> str:
    """Collapse whitespace and strip trailing punctuation before embedding."""
    text = re.sub(r"\s+", " ", query).strip()
    return text.rstrip("?.!,;:").strip()


def _text_overlap(a: str, b: str) -> float:
    """Return the fraction of the shorter text contained in the longer."""
    short, long = (a, b) if len(a) <= len(b) else (b, a)
    if not short:
        return 0.0
    return len(short) / len(long) if short in long else 0.0


def rank_passages(passages: Sequence[RetrievedPassage]) -> list[RetrievedPassage]:
    """Order by score descending, ties broken by source, dropping near-duplicates.

    Overlapping chunk windows often return the same text twice; a passage
    mostly contained in a better-ranked one is removed.

    Args:
        passages: Passages as returned by the vector store.

    Returns:
        The deduplicated passages, best first.
    """
    ordered = sorted(passages, key=lambda p: (-p.score, p.source))
    unique: list[RetrievedPassage] = []
    for passage in ordered:
        if not any(
            _text_overlap(passage.text, u.text) >= _OVERLAP_THRESHOLD for u in unique
        ):
            unique.append(passage)
    return unique


class ChromaRetriever:
    """Similarity search over a ChromaDB collection.

    The collection is only read, so one retriever can be shared by
    several sessions.
    """

    def __init__(
        self,
        collection,
        embed: Callable[[list[str]], Sequence[Sequence[float]]],
        min_relevance: float = 0.0,
    ) -> None:
        self._collection = collection
        self._embed = embed
        self.min_relevance = min_relevance

    @classmethod
    def from_config(cls, config: RetrievalConfig) -> "ChromaRetriever":
        """Open the configured collection.

        Raises:
            RetrievalError: If the store or embedding model cannot be opened.
        """
        try:
            embed = vs.get_embedding_function(config.embedding_model)
            client = vs.get_client(config)
            collection = vs.get_or_create_collection(client, config, embed)
        except Exception as exc:
            raise RetrievalError(f"Cannot open vector store {config.db_path}: {exc}") from exc
        return cls(collection, embed, config.min_relevance)

    def retrieve(self, query: str, k: int) -> list[RetrievedPassage]:
        """Return up to ``k`` passages ranked by similarity.

        An empty index yields an empty list.

        Args:
            query: The user's message.
            k: Maximum number of passages.

        Returns:
            Passages above ``min_relevance``, best first.

        Raises:
            RetrievalError: If embedding or the store query fails.
        """
        search_query = _preprocess_query(query) or query
        try:
            if self._collection.count() == 0:
                return []
            embedding = self._embed([search_query])[0]
            results = vs.search(
                self._collection, embedding, n_results=min(k, self._collection.count())
            )
        except Exception as exc:
            raise RetrievalError(f"Vector store query failed: {exc}") from exc

        passages = [p for p in _parse_results(results) if p.score >= self.min_relevance]
        ranked = rank_passages(passages)[:k]
        logger.debug("Retrieved %d passages for %r", len(ranked), search_query[:80])
        return ranked
