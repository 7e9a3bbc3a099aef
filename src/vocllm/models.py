"""Domain models for the chat engine."""

import enum
from dataclasses import dataclass, field


class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class RetrievedPassage:
    """A single retrieved context passage with its similarity score."""

    text: str
    score: float
    source: str


@dataclass(frozen=True)
class ChatTurn:
    """One committed message of the conversation."""

    role: Role
    content: str
    passages: tuple[RetrievedPassage, ...] = ()


class GenerationOutcome(str, enum.Enum):
    COMPLETED = "completed"
    STOPPED_ON_SEQUENCE = "stopped_on_sequence"
    REACHED_MAX_TOKENS = "reached_max_tokens"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationMetrics:
    """Performance metrics captured during generation."""

    duration_s: float
    tokens_generated: int
    tokens_per_second: float


@dataclass(frozen=True)
class GenerationResult:
    """Terminal state of one assistant turn.

    ``pending_tokens`` are tokens that were sampled and emitted but never
    fed back through the runtime, so they are not in the KV cache yet.
    """

    outcome: GenerationOutcome
    text: str = ""
    reason: str | None = None
    tokens: tuple[int, ...] = ()
    pending_tokens: tuple[int, ...] = ()
    metrics: GenerationMetrics | None = None

    @property
    def committable(self) -> bool:
        return self.outcome in (
            GenerationOutcome.COMPLETED,
            GenerationOutcome.STOPPED_ON_SEQUENCE,
            GenerationOutcome.REACHED_MAX_TOKENS,
        )


@dataclass(frozen=True)
class Document:
    """A loaded document with its text content and metadata."""

    content: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Chunk:
    """A text chunk produced from a document."""

    text: str
    metadata: dict = field(default_factory=dict)
