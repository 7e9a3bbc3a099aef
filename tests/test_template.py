"""Tests for chat templates and the prompt builder."""

import numpy as np
import pytest

from vocllm.errors import TemplateOverflowError
from vocllm.models import ChatTurn, RetrievedPassage, Role
from vocllm.template import (
    CHATML,
    IMESSENGER,
    TEMPLATES,
    PromptBuilder,
    build_context_string,
)

SYSTEM = "You are a helpful assistant."


def _fill(cache, n: int, session: str = "s") -> None:
    spec = cache.spec
    block = np.zeros((n, spec.n_kv_heads, spec.head_dim), dtype=np.float32)
    start = cache.length(session)
    cache.extend(session, start, [1] * n, [block] * spec.n_layers, [block] * spec.n_layers)


def _exchanges(n: int) -> list[ChatTurn]:
    turns = []
    for i in range(n):
        turns.append(ChatTurn(role=Role.USER, content=f"Question number {i}?"))
        turns.append(ChatTurn(role=Role.ASSISTANT, content=f"The answer is {i}."))
    return turns


@pytest.fixture
def builder(tokenizer, cache) -> PromptBuilder:
    return PromptBuilder(tokenizer, CHATML, cache, "s", SYSTEM, context_length=10_000)


def _text(tokenizer, tokens) -> str:
    return tokenizer.decode(tokens, skip_special_tokens=False)


class TestTemplates:
    def test_registry(self) -> None:
        assert TEMPLATES == {"chatml": CHATML, "imessenger": IMESSENGER}

    def test_chatml_turn(self) -> None:
        assert CHATML.format_turn(Role.USER, "hi") == "<|im_start|>user\nhi<|im_end|>\n"

    def test_imessenger_turn(self) -> None:
        assert IMESSENGER.format_turn(Role.ASSISTANT, "hello") == "ASSISTANT: hello\n"

    def test_build_context_string(self, sample_passages) -> None:
        assert build_context_string(sample_passages) == (
            "[python.txt]: Python was created by Guido van Rossum.\n\n"
            "[fox.txt]: The fox is quick and brown."
        )


class TestBuildFromEmptyCache:
    def test_renders_system_history_and_new_turn(self, builder, tokenizer) -> None:
        history = _exchanges(1)
        text = _text(tokenizer, builder.build(history, [], "What is 2+2?"))
        assert text == (
            f"<|im_start|>system\n{SYSTEM}<|im_end|>\n"
            "<|im_start|>user\nQuestion number 0?<|im_end|>\n"
            "<|im_start|>assistant\nThe answer is 0.<|im_end|>\n"
            "<|im_start|>user\nWhat is 2+2?<|im_end|>\n"
            "<|im_start|>assistant\n"
        )

    def test_window_start_skips_older_turns(self, builder, tokenizer) -> None:
        text = _text(tokenizer, builder.build(_exchanges(2), [], "next", window_start=2))
        assert "Question number 0" not in text
        assert "Question number 1" in text

    def test_prepends_bos(self, tokenizer, cache) -> None:
        bos = tokenizer.token_id("<s>")
        builder = PromptBuilder(tokenizer, CHATML, cache, "s", SYSTEM, 10_000, bos_token_id=bos)
        assert builder.build([], [], "hi")[0] == bos

    def test_passages_become_a_context_turn(self, builder, tokenizer, sample_passages) -> None:
        text = _text(tokenizer, builder.build([], sample_passages, "Who made Python?"))
        assert (
            "<|im_start|>system\nUse the following context when answering the next message."
            "\n\n[python.txt]: Python was created by Guido van Rossum." in text
        )
        assert text.index("[fox.txt]") < text.index("<|im_start|>user\nWho made Python?")

    def test_history_passages_are_replayed(self, builder, tokenizer, sample_passages) -> None:
        history = [
            ChatTurn(role=Role.USER, content="Who?", passages=tuple(sample_passages)),
            ChatTurn(role=Role.ASSISTANT, content="Guido."),
        ]
        assert "[python.txt]" in _text(tokenizer, builder.build(history, [], "Thanks"))

    def test_imessenger_format(self, tokenizer, cache) -> None:
        builder = PromptBuilder(tokenizer, IMESSENGER, cache, "s", SYSTEM, 10_000)
        text = _text(tokenizer, builder.build([], [], "hello"))
        assert text == f"SYSTEM: {SYSTEM}\nUSER: hello\nASSISTANT: "


class TestIncrementalBuild:
    def test_only_delta_when_cache_is_populated(self, builder, tokenizer, cache) -> None:
        _fill(cache, 40)
        text = _text(tokenizer, builder.build(_exchanges(3), [], "again"))
        assert text == (
            "<|im_end|>\n<|im_start|>user\nagain<|im_end|>\n<|im_start|>assistant\n"
        )

    def test_delta_length_independent_of_history_size(self, builder) -> None:
        short = builder.build(_exchanges(1), [], "again", cached_length=50)
        long = builder.build(_exchanges(40), [], "again", cached_length=50)
        assert len(short) == len(long)

    def test_pending_tokens_lead_the_delta(self, builder) -> None:
        tokens = builder.build(_exchanges(1), [], "again", pending_tokens=[7, 8], cached_length=10)
        assert tokens[:2] == [7, 8]

    def test_no_seal_after_user_turn(self, builder, tokenizer) -> None:
        history = [ChatTurn(role=Role.USER, content="dangling")]
        text = _text(tokenizer, builder.build(history, [], "again", cached_length=10))
        assert text.startswith("<|im_start|>user\nagain")


class TestOverflow:
    def test_raises_with_required_and_limit(self, tokenizer, cache) -> None:
        builder = PromptBuilder(tokenizer, CHATML, cache, "s", SYSTEM, context_length=5)
        with pytest.raises(TemplateOverflowError) as excinfo:
            builder.build([], [], "hello")
        assert excinfo.value.limit == 5
        assert excinfo.value.required > 5

    def test_reserve_counts_toward_limit(self, builder) -> None:
        size = len(builder.build([], [], "hello"))
        builder.context_length = size + 10
        builder.build([], [], "hello", reserve=10)
        with pytest.raises(TemplateOverflowError):
            builder.build([], [], "hello", reserve=11)


class TestPlan:
    def test_incremental_plan_keeps_cache(self, builder, cache) -> None:
        _fill(cache, 30)
        plan = builder.plan(_exchanges(2), [], "again", window_start=0)
        assert plan.start == 30
        assert plan.window_start == 0

    def test_evicts_oldest_exchange_on_overflow(self, builder, cache, tokenizer) -> None:
        history = _exchanges(3)
        full = len(builder.build(history, [], "next", cached_length=0))
        trimmed = len(builder.build(history, [], "next", window_start=2, cached_length=0))
        assert trimmed < full
        builder.context_length = trimmed
        _fill(cache, trimmed)

        plan = builder.plan(history, [], "next")
        assert plan.start == 0
        assert plan.window_start == 2
        assert history[plan.window_start].role is Role.USER
        assert "Question number 0" not in _text(tokenizer, plan.tokens)

    def test_drops_passages_last(self, builder, sample_passages) -> None:
        builder.context_length = len(builder.build([], [], "hi"))
        plan = builder.plan([], sample_passages, "hi")
        assert plan.passages == ()

    def test_keeps_passages_when_they_fit(self, builder, sample_passages) -> None:
        plan = builder.plan([], sample_passages, "hi")
        assert plan.passages == tuple(sample_passages)

    def test_raises_when_nothing_fits(self, builder) -> None:
        builder.context_length = 3
        with pytest.raises(TemplateOverflowError):
            builder.plan(_exchanges(2), [], "hi")

    def test_raises_when_cached_conversation_cannot_be_rebuilt(self, builder, cache) -> None:
        _fill(cache, 30)
        builder.context_length = 3
        with pytest.raises(TemplateOverflowError) as excinfo:
            builder.plan(_exchanges(2), [], "hi", window_start=0)
        assert excinfo.value.limit == 3

    def test_history_budget_moves_window(self, tokenizer, cache) -> None:
        history = _exchanges(3)
        builder = PromptBuilder(tokenizer, CHATML, cache, "s", SYSTEM, 10_000, token_limit=1)
        assert builder.plan(history, [], "hi").window_start == len(history)

    def test_generous_budget_keeps_everything(self, tokenizer, cache) -> None:
        builder = PromptBuilder(tokenizer, CHATML, cache, "s", SYSTEM, 10_000, token_limit=10_000)
        assert builder.plan(_exchanges(3), [], "hi").window_start == 0


def test_passages_are_passed_through_unchanged() -> None:
    passage = RetrievedPassage(text="a", score=0.5, source="x")
    assert build_context_string([passage]) == "[x]: a"
