"""Chat session — multi-turn conversation over one model runtime.

A session owns its history and its slice of the KV cache. Each call to
:meth:`ChatSession.submit_turn` returns a :class:`TurnStream`; iterating it
runs retrieval, prompt building and generation, and on normal completion
commits the user turn and the assistant reply to history together.
Cancelled or failed turns leave history untouched; the cache positions
they added are dropped before the next turn starts.
"""

import enum
import logging
import threading
import uuid
from typing import Iterator

from vocllm.config import AppConfig, DEFAULT_SYSTEM_PROMPT, SamplingConfig
from vocllm.engine import CancellationToken, Generation, GenerationEngine
from vocllm.errors import (
    CacheConsistencyError,
    RetrievalError,
    SessionBusyError,
    TemplateOverflowError,
    VocllmError,
)
from vocllm.history import ChatHistory
from vocllm.kv_cache import KVCacheManager
from vocllm.models import (
    ChatTurn,
    GenerationOutcome,
    GenerationResult,
    RetrievedPassage,
    Role,
)
from vocllm.retriever import Retriever
from vocllm.runtime import ModelRuntime
from vocllm.sampler import Sampler
from vocllm.speech import SpeechOutput
from vocllm.template import CHATML, TEMPLATES, ChatTemplate, PromptBuilder
from vocllm.tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_USER_INPUT = "awaiting_user_input"
    RETRIEVING = "retrieving"
    GENERATING = "generating"


class TurnStream:
    """Lazy stream of reply fragments for one user turn.

    ``result`` is set once the stream is exhausted or closed. ``warnings``
    collects degradations (failed retrieval, failed speech) that did not
    stop the turn.
    """

    def __init__(
        self,
        session: "ChatSession",
        text: str,
        cancel: CancellationToken,
        sampling: SamplingConfig,
    ) -> None:
        self.cancel_token = cancel
        self.warnings: list[str] = []
        self.passages: tuple[RetrievedPassage, ...] = ()
        self.result: GenerationResult | None = None
        self._iterator = session._run_turn(self, text, sampling)

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        return next(self._iterator)

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def close(self) -> None:
        self._iterator.close()

    def collect(self) -> GenerationResult:
        """Drain the stream and return its result."""
        for _ in self:
            pass
        if self.result is None:
            raise VocllmError("turn ended without a result")
        return self.result


class ChatSession:
    """Stateful conversation: history, cache lifecycle and turn boundaries."""

    def __init__(
        self,
        runtime: ModelRuntime,
        tokenizer: TokenizerAdapter,
        *,
        template: ChatTemplate = CHATML,
        sampling: SamplingConfig | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        retriever: Retriever | None = None,
        retrieval_k: int = 4,
        speech: SpeechOutput | None = None,
        history: ChatHistory | None = None,
        keep_history: bool = True,
        token_limit: int | None = None,
        cache: KVCacheManager | None = None,
        session_id: str | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.runtime = runtime
        self.tokenizer = tokenizer
        self.template = template
        self.sampling = sampling or SamplingConfig()
        self.history = history if history is not None else ChatHistory()
        self.cache = cache or KVCacheManager(runtime.spec)
        self.retriever = retriever
        self.retrieval_k = retrieval_k
        self.speech = speech
        self.keep_history = keep_history
        self.state = SessionState.IDLE

        stop_ids = []
        if template.stop_token is not None:
            stop_id = tokenizer.token_id(template.stop_token)
            if stop_id is not None:
                stop_ids.append(stop_id)
        logger.debug("Using seed: %s", self.sampling.seed)
        self.engine = GenerationEngine(
            runtime, self.cache, Sampler(self.sampling.seed), tokenizer, stop_ids
        )
        spec = runtime.spec
        self.builder = PromptBuilder(
            tokenizer,
            template,
            self.cache,
            self.id,
            system_prompt,
            spec.context_length,
            bos_token_id=spec.bos_token_id if spec.add_bos else None,
            token_limit=token_limit,
        )

        self._lock = threading.Lock()
        self._active: TurnStream | None = None
        self._reset_requested = False
        self._window_start = 0
        self._committed_length = 0
        self._pending_tokens: tuple[int, ...] = ()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        runtime: ModelRuntime,
        tokenizer: TokenizerAdapter,
        *,
        retriever: Retriever | None = None,
        speech: SpeechOutput | None = None,
        history: ChatHistory | None = None,
    ) -> "ChatSession":
        """Create a session from the application settings.

        Args:
            config: Application settings; the template, system prompt,
                sampling, retrieval depth and history options are read.
            runtime: Loaded model runtime.
            tokenizer: Tokenizer matching the model.
            retriever: Optional passage source for retrieval-augmented turns.
            speech: Optional speech output for committed replies.
            history: Conversation to resume, if any.

        Returns:
            A new idle session.
        """
        return cls(
            runtime,
            tokenizer,
            template=TEMPLATES[config.model.template],
            sampling=config.sampling,
            system_prompt=config.model.system_prompt,
            retriever=retriever,
            retrieval_k=config.retrieval.top_k,
            speech=speech,
            history=history,
            keep_history=not config.history.disabled,
            token_limit=config.history.token_limit,
        )

    def submit_turn(
        self,
        text: str,
        *,
        cancel: CancellationToken | None = None,
        sampling: SamplingConfig | None = None,
    ) -> TurnStream:
        """Start a user turn; iterate the returned stream to generate the reply.

        Args:
            text: The user's message.
            cancel: Token used to stop the turn early.
            sampling: Overrides the session's sampling settings for this turn.

        Returns:
            A lazy stream of reply fragments. Nothing runs until it is iterated.

        Raises (while iterating):
            SessionBusyError: If another turn of this session is in progress.
            CacheConsistencyError: After resetting the session.
        """
        return TurnStream(self, text, cancel or CancellationToken(), sampling or self.sampling)

    def reset(self) -> None:
        """Clear history and cache together.

        While a turn is generating, the turn is cancelled and the reset is
        applied when it unwinds.
        """
        if self._lock.acquire(blocking=False):
            try:
                self._reset_locked()
            finally:
                self._lock.release()
        else:
            self._reset_requested = True
            if self._active is not None:
                self._active.cancel()

    def _reset_locked(self) -> None:
        self.history.clear()
        self.cache.reset(self.id)
        self._window_start = 0
        self._committed_length = 0
        self._pending_tokens = ()
        self._reset_requested = False
        logger.debug("Session %s reset", self.id)

    def _retrieve(self, stream: TurnStream, text: str) -> list[RetrievedPassage]:
        if self.retriever is None:
            return []
        self.state = SessionState.RETRIEVING
        try:
            return self.retriever.retrieve(text, self.retrieval_k)
        except RetrievalError as exc:
            logger.warning("Retrieval failed, answering without context: %s", exc)
            stream.warnings.append(f"retrieval unavailable: {exc}")
            return []

    def _speak(self, stream: TurnStream, text: str) -> None:
        if self.speech is None or not text.strip():
            return
        try:
            self.speech.speak(text)
        except Exception as exc:
            logger.warning("Speech synthesis failed: %s", exc)
            stream.warnings.append(f"speech unavailable: {exc}")

    def _run_turn(
        self, stream: TurnStream, text: str, sampling: SamplingConfig
    ) -> Iterator[str]:
        if not self._lock.acquire(blocking=False):
            raise SessionBusyError(f"session {self.id} is already generating")
        self._active = stream
        generation: Generation | None = None
        try:
            self.state = SessionState.AWAITING_USER_INPUT
            if not self.keep_history:
                self._reset_locked()
            if self.cache.length(self.id) > self._committed_length:
                self.cache.truncate(self.id, self._committed_length)

            passages = self._retrieve(stream, text)
            self.state = SessionState.GENERATING
            try:
                plan = self.builder.plan(
                    self.history.turns,
                    passages,
                    text,
                    window_start=self._window_start,
                    pending_tokens=self._pending_tokens,
                    reserve=sampling.max_new_tokens,
                )
            except TemplateOverflowError as exc:
                logger.error("Turn does not fit in the context window: %s", exc)
                stream.result = GenerationResult(GenerationOutcome.FAILED, reason=str(exc))
                return
            stream.passages = plan.passages
            if plan.start < self.cache.length(self.id):
                self.cache.truncate(self.id, plan.start)

            generation = self.engine.generate(
                self.id,
                plan.tokens,
                sampling,
                stream.cancel_token,
                self.template.stop_sequences,
            )
            reply_start = plan.start + len(plan.tokens)
            yield from generation
            result = generation.result

            if result is not None and result.committable and not self._reset_requested:
                self.history.append(
                    ChatTurn(role=Role.USER, content=text, passages=plan.passages),
                    ChatTurn(role=Role.ASSISTANT, content=result.text),
                )
                self._window_start = plan.window_start
                if result.outcome is GenerationOutcome.STOPPED_ON_SEQUENCE:
                    # The cache holds the stop text; keep only the prompt and
                    # re-feed the committed reply with the next turn.
                    self.cache.truncate(self.id, reply_start)
                    self._committed_length = reply_start
                    self._pending_tokens = tuple(self.tokenizer.encode(result.text))
                else:
                    self._committed_length = self.cache.length(self.id)
                    self._pending_tokens = result.pending_tokens
                stream.result = result
                self._speak(stream, result.text)
            else:
                if plan.start < self._committed_length:
                    # The cache was rebuilt for this turn, so the committed
                    # prefix is gone too.
                    self._committed_length = 0
                    self._pending_tokens = ()
                stream.result = result
        except CacheConsistencyError:
            logger.error("KV cache out of sync; resetting session %s", self.id)
            self._reset_locked()
            raise
        finally:
            if stream.result is None and generation is not None:
                stream.result = generation.result
            if self._reset_requested:
                self._reset_locked()
            self._active = None
            self.state = SessionState.IDLE
            self._lock.release()
