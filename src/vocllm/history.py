"""Chat history — append-only record of committed turns, with JSON persistence."""

import json
import logging
from pathlib import Path
from typing import Iterator, overload

from vocllm.models import ChatTurn, RetrievedPassage, Role

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


class ChatHistory:
    """Ordered, append-only sequence of :class:`ChatTurn`.

    The only way to remove turns is :meth:`clear`, used by a session reset.
    """

    def __init__(self, turns: list[ChatTurn] | None = None) -> None:
        self._turns: list[ChatTurn] = list(turns or [])

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ChatTurn]:
        return iter(self._turns)

    @overload
    def __getitem__(self, index: int) -> ChatTurn: ...

    @overload
    def __getitem__(self, index: slice) -> list[ChatTurn]: ...

    def __getitem__(self, index):
        return self._turns[index]

    @property
    def turns(self) -> tuple[ChatTurn, ...]:
        return tuple(self._turns)

    def append(self, *turns: ChatTurn) -> None:
        """Commit one or more turns in a single step."""
        self._turns.extend(turns)

    def clear(self) -> None:
        self._turns.clear()

    def to_dict(self) -> dict:
        return {
            "version": _FORMAT_VERSION,
            "turns": [
                {
                    "role": turn.role.value,
                    "content": turn.content,
                    "passages": [
                        {"text": p.text, "score": p.score, "source": p.source}
                        for p in turn.passages
                    ],
                }
                for turn in self._turns
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatHistory":
        turns = [
            ChatTurn(
                role=Role(item["role"]),
                content=item["content"],
                passages=tuple(
                    RetrievedPassage(text=p["text"], score=p["score"], source=p["source"])
                    for p in item.get("passages", [])
                ),
            )
            for item in data.get("turns", [])
        ]
        return cls(turns)

    def save(self, path: str | Path) -> None:
        """Write the history as versioned JSON.

        Args:
            path: Destination file. Missing parent folders are created.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        logger.info("Saved %d turns to %s", len(self), path)

    @classmethod
    def load(cls, path: str | Path) -> "ChatHistory":
        """Load a history file.

        A missing file yields an empty history. An unreadable or malformed
        file is logged and also yields an empty history.

        Args:
            path: File written by :meth:`save`.

        Returns:
            The loaded history.
        """
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            history = cls.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable history file %s: %s", path, exc)
            return cls()
        logger.info("Loaded %d turns from %s", len(history), path)
        return history
