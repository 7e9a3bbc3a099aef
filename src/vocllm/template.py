"""Chat templates and the incremental prompt builder."""

import logging
from dataclasses import dataclass
from typing import Sequence

from vocllm.errors import TemplateOverflowError
from vocllm.kv_cache import KVCacheManager
from vocllm.models import ChatTurn, RetrievedPassage, Role
from vocllm.tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)

_CONTEXT_PREAMBLE = "Use the following context when answering the next message.\n\n"


@dataclass(frozen=True)
class ChatTemplate:
    """Role-tagged chat format expected by a model family.

    ``turn_format`` receives ``role`` (lowercase), ``ROLE`` (uppercase) and
    ``content``. ``end_of_turn`` is the suffix that closes a turn after its
    content, used to seal an assistant reply that was generated in place.
    """

    name: str
    version: int
    turn_format: str
    generation_lead: str
    end_of_turn: str
    stop_token: str | None = None
    stop_sequences: tuple[str, ...] = ()

    def format_turn(self, role: Role, content: str) -> str:
        return self.turn_format.format(
            role=role.value, ROLE=role.value.upper(), content=content
        )


CHATML = ChatTemplate(
    name="chatml",
    version=1,
    turn_format="<|im_start|>{role}\n{content}<|im_end|>\n",
    generation_lead="<|im_start|>assistant\n",
    end_of_turn="<|im_end|>\n",
    stop_token="<|im_end|>",
)

IMESSENGER = ChatTemplate(
    name="imessenger",
    version=1,
    turn_format="{ROLE}: {content}\n",
    generation_lead="ASSISTANT: ",
    end_of_turn="\n",
    stop_sequences=("\nUSER:",),
)

TEMPLATES: dict[str, ChatTemplate] = {t.name: t for t in (CHATML, IMESSENGER)}


def build_context_string(passages: Sequence[RetrievedPassage]) -> str:
    """Format retrieved passages as ``[source]: text`` blocks."""
    return "\n\n".join(f"[{p.source}]: {p.text}" for p in passages)


@dataclass(frozen=True)
class PromptPlan:
    """What to prefill for the next turn.

    ``start`` is the cache position the tokens begin at; anything cached
    beyond it must be dropped first. ``window_start`` is the index of the
    first history turn represented in the cache after the prefill.
    """

    tokens: list[int]
    start: int
    window_start: int
    passages: tuple[RetrievedPassage, ...]


class PromptBuilder:
    """Assembles the token segment fed to the runtime for one turn.

    When the cache already holds the conversation, only the delta is
    tokenized: the seal of the previous assistant reply, the optional
    context turn, the new user turn and the generation lead.
    """

    def __init__(
        self,
        tokenizer: TokenizerAdapter,
        template: ChatTemplate,
        cache: KVCacheManager,
        session: str,
        system_prompt: str,
        context_length: int,
        bos_token_id: int | None = None,
        token_limit: int | None = None,
    ) -> None:
        self.tokenizer = tokenizer
        self.template = template
        self._cache = cache
        self._session = session
        self.system_prompt = system_prompt
        self.context_length = context_length
        self._bos_token_id = bos_token_id
        self._token_limit = token_limit

    def _render_turn(self, turn: ChatTurn) -> str:
        text = ""
        if turn.passages:
            text += self.template.format_turn(
                Role.SYSTEM, _CONTEXT_PREAMBLE + build_context_string(turn.passages)
            )
        return text + self.template.format_turn(turn.role, turn.content)

    def _preamble(self) -> list[int]:
        tokens = [self._bos_token_id] if self._bos_token_id is not None else []
        return tokens + self.tokenizer.encode(
            self.template.format_turn(Role.SYSTEM, self.system_prompt)
        )

    def build(
        self,
        history: Sequence[ChatTurn],
        passages: Sequence[RetrievedPassage],
        new_user_turn: str,
        *,
        window_start: int = 0,
        pending_tokens: Sequence[int] = (),
        reserve: int = 0,
        cached_length: int | None = None,
    ) -> list[int]:
        """Return the incremental token sequence for ``new_user_turn``.

        Args:
            history: Committed turns of the conversation.
            passages: Retrieved context for the new turn.
            new_user_turn: The user's message.
            window_start: First history turn to render when the cache is empty.
            pending_tokens: Tokens of the last reply that were emitted but
                never consumed by the runtime.
            reserve: Positions to keep free for the reply.
            cached_length: Overrides the cache length read from the manager.

        Raises:
            TemplateOverflowError: If cache + segment + reserve exceeds the
                context length.
        """
        cached = self._cache.length(self._session) if cached_length is None else cached_length

        if cached == 0:
            tokens = self._preamble()
            rendered = "".join(self._render_turn(t) for t in history[window_start:])
            if rendered:
                tokens += self.tokenizer.encode(rendered)
        else:
            tokens = list(pending_tokens)
            if history and history[-1].role is Role.ASSISTANT:
                tokens += self.tokenizer.encode(self.template.end_of_turn)

        segment = self._render_turn(
            ChatTurn(role=Role.USER, content=new_user_turn, passages=tuple(passages))
        )
        tokens += self.tokenizer.encode(segment + self.template.generation_lead)

        required = cached + len(tokens) + reserve
        if required > self.context_length:
            raise TemplateOverflowError(required, self.context_length)
        return tokens

    def _budget_window(self, history: Sequence[ChatTurn], window_start: int) -> int:
        """Oldest turn index whose suffix fits in the rough history budget."""
        if self._token_limit is None:
            return window_start
        used = 0
        for index in range(len(history) - 1, window_start - 1, -1):
            used += len(self.tokenizer.encode(self._render_turn(history[index])))
            if used > self._token_limit:
                return index + 1
        return window_start

    @staticmethod
    def _user_boundary(history: Sequence[ChatTurn], index: int) -> int:
        while index < len(history) and history[index].role is not Role.USER:
            index += 1
        return index

    def plan(
        self,
        history: Sequence[ChatTurn],
        passages: Sequence[RetrievedPassage],
        new_user_turn: str,
        *,
        window_start: int = 0,
        pending_tokens: Sequence[int] = (),
        reserve: int = 0,
    ) -> PromptPlan:
        """Build the next prompt, applying the overflow policy.

        Tries the incremental segment first. On overflow, the prompt is
        rebuilt from an empty cache, dropping whole turns oldest-first and
        finally the retrieved passages.

        Raises:
            TemplateOverflowError: If not even the system prompt and the
                new turn fit.
        """
        cached = self._cache.length(self._session)
        if cached == 0:
            window_start = self._user_boundary(
                history, self._budget_window(history, window_start)
            )
        try:
            tokens = self.build(
                history,
                passages,
                new_user_turn,
                window_start=window_start,
                pending_tokens=pending_tokens,
                reserve=reserve,
            )
            return PromptPlan(tokens, cached, window_start, tuple(passages))
        except TemplateOverflowError as exc:
            if cached == 0 and window_start >= len(history) and not passages:
                raise
            logger.warning("Prompt overflow (%s); evicting oldest turns", exc)
            last_error = exc

        for candidate_passages in (tuple(passages), ()):
            start = window_start
            while True:
                start = self._user_boundary(history, start)
                try:
                    tokens = self.build(
                        history,
                        candidate_passages,
                        new_user_turn,
                        window_start=start,
                        reserve=reserve,
                        cached_length=0,
                    )
                    return PromptPlan(tokens, 0, start, candidate_passages)
                except TemplateOverflowError as exc:
                    last_error = exc
                if start >= len(history):
                    break
                start += 1
            if not passages:
                break
        raise last_error
