"""Document ingestion — builds the retrieval index from a folder of files."""

import logging
import re
from pathlib import Path
from typing import Callable

import markdown
from pypdf import PdfReader

from vocllm import vector_store as vs
from vocllm.config import ChunkConfig, RetrievalConfig
from vocllm.models import Chunk, Document

logger = logging.getLogger(__name__)

# Break points tried from the end of a window, most preferred first.
_BREAKS = ("\n\n", ". ", "! ", "? ", "\n")


def _read_pdf(path: Path) -> str:
    reader = PdfReader(str(path))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


def _read_markdown(path: Path) -> str:
    html = markdown.markdown(path.read_text(encoding="utf-8"))
    return re.sub(r"<[^>]+>", "", html)


READERS: dict[str, Callable[[Path], str]] = {
    ".txt": lambda path: path.read_text(encoding="utf-8"),
    ".md": _read_markdown,
    ".pdf": _read_pdf,
}


def load_documents(folder: str | Path) -> list[Document]:
    """Read every supported file in ``folder``, sorted by name.

    Empty and unreadable files are skipped with a log message.

    Raises:
        FileNotFoundError: If the folder does not exist.
        NotADirectoryError: If the path is not a directory.
    """
    folder = Path(folder)
    if not folder.exists():
        raise FileNotFoundError(f"Folder not found: {folder}")
    if not folder.is_dir():
        raise NotADirectoryError(f"Not a directory: {folder}")

    documents: list[Document] = []
    for path in sorted(p for p in folder.iterdir() if p.is_file()):
        reader = READERS.get(path.suffix.lower())
        if reader is None:
            continue
        try:
            content = reader(path)
        except Exception:
            logger.exception("Failed to read %s", path.name)
            continue
        if not content.strip():
            logger.warning("Skipping empty file: %s", path.name)
            continue
        documents.append(
            Document(content=content, metadata={"source": path.name, "file_type": path.suffix.lower()})
        )
    return documents


def split_text(text: str, size: int = 500, overlap: int = 100) -> list[str]:
    """Cut ``text`` into windows of at most ``size`` characters.

    A window ends at the last paragraph or sentence break in its second
    half when there is one. Consecutive windows share ``overlap`` characters.
    """
    text = text.strip()
    if not text:
        return []
    if len(text) <= size:
        return [text]

    pieces: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        if end < len(text):
            for brk in _BREAKS:
                pos = text.rfind(brk, start, end)
                if pos > start + size // 2:
                    end = pos + len(brk)
                    break
        piece = text[start:end].strip()
        if piece:
            pieces.append(piece)
        if end >= len(text):
            break
        start = max(end - overlap, start + 1)
    return pieces


def chunk_documents(documents: list[Document], config: ChunkConfig | None = None) -> list[Chunk]:
    cfg = config or ChunkConfig()
    chunks: list[Chunk] = []
    for doc in documents:
        pieces = split_text(doc.content, cfg.size, cfg.overlap)
        chunks.extend(
            Chunk(text=piece, metadata={**doc.metadata, "chunk_index": i, "total_chunks": len(pieces)})
            for i, piece in enumerate(pieces)
        )
    return chunks


def ingest_folder(
    folder: str | Path,
    retrieval: RetrievalConfig | None = None,
    chunking: ChunkConfig | None = None,
    embedding_function=None,
) -> int:
    """Replace the retrieval index with the chunks of ``folder``.

    Returns:
        Number of chunks stored; 0 when the folder has no supported files.
    """
    rcfg = retrieval or RetrievalConfig()
    documents = load_documents(folder)
    if not documents:
        logger.warning("No supported documents found in %s", folder)
        return 0
    chunks = chunk_documents(documents, chunking)
    logger.info("Split %d documents into %d chunks", len(documents), len(chunks))
    client = vs.get_client(rcfg)
    collection = vs.reset_collection(client, rcfg, embedding_function)
    return vs.add_chunks(collection, chunks, rcfg.batch_size)
