"""Generation engine — the per-turn prefill/decode loop.

A :class:`Generation` is a lazy iterator of text fragments for one
assistant turn. Prefill runs the whole prompt segment through the runtime
in one pass; each decode step samples a token, streams its text, and feeds
it back as a single-position forward pass. Once the iterator is exhausted,
``Generation.result`` tells why it stopped.
"""

import logging
import threading
import time
from collections import deque
from typing import Iterable, Iterator, Sequence

import numpy as np

from vocllm.config import SamplingConfig
from vocllm.errors import CacheConsistencyError, VocllmError
from vocllm.kv_cache import KVCacheManager
from vocllm.models import GenerationMetrics, GenerationOutcome, GenerationResult
from vocllm.runtime import ModelRuntime
from vocllm.sampler import Sampler
from vocllm.tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, optionally with a deadline.

    The engine polls it at the start of every decode iteration; a forward
    pass already in flight always completes.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self.timed_out = False

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.timed_out = True
            self._event.set()
            return True
        return False


def _held_suffix(text: str, stop_sequences: Sequence[str]) -> int:
    """Length of the longest tail of ``text`` that could start a stop sequence."""
    longest = 0
    for stop in stop_sequences:
        for n in range(min(len(stop) - 1, len(text)), longest, -1):
            if text.endswith(stop[:n]):
                longest = n
                break
    return longest


class Generation:
    """Iterator over the text fragments of one assistant turn."""

    def __init__(
        self,
        engine: "GenerationEngine",
        session: str,
        prompt_tokens: Sequence[int],
        config: SamplingConfig,
        cancel: CancellationToken,
        stop_sequences: Sequence[str],
    ) -> None:
        self._engine = engine
        self._session = session
        self._prompt_tokens = list(prompt_tokens)
        self._config = config
        self.cancel_token = cancel
        self._stop_sequences = tuple(stop_sequences)
        self.result: GenerationResult | None = None
        self._iterator = self._run()

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        return next(self._iterator)

    def close(self) -> None:
        self._iterator.close()

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def _run(self) -> Iterator[str]:
        engine = self._engine
        config = self._config
        started = time.perf_counter()
        decoder = engine.tokenizer.decoder()
        emitted: list[int] = []
        pending: list[int] = []
        text = ""
        yielded = 0
        outcome: GenerationOutcome | None = None
        reason: str | None = None
        try:
            if self.cancel_token.cancelled:
                outcome = GenerationOutcome.CANCELLED
                return
            logits = engine.consume(self._session, self._prompt_tokens)
            recent: deque[int] = deque(
                engine.cache.get(self._session).tokens[-config.repeat_last_n :]
                if config.repeat_last_n
                else (),
                maxlen=config.repeat_last_n or None,
            )

            while True:
                if self.cancel_token.cancelled:
                    outcome = GenerationOutcome.CANCELLED
                    break
                if len(emitted) >= config.max_new_tokens:
                    outcome = GenerationOutcome.REACHED_MAX_TOKENS
                    break

                token = engine.sampler.sample(logits, config, list(recent))
                if token in engine.stop_token_ids:
                    outcome = GenerationOutcome.COMPLETED
                    break
                emitted.append(token)
                pending = [token]
                if config.repeat_last_n:
                    recent.append(token)

                text += decoder.push(token)
                stop_at = self._find_stop(text, yielded)
                if stop_at is not None:
                    if stop_at > yielded:
                        yield text[yielded:stop_at]
                    text, yielded = text[:stop_at], stop_at
                    outcome = GenerationOutcome.STOPPED_ON_SEQUENCE
                    break
                safe = len(text) - _held_suffix(text, self._stop_sequences)
                if safe > yielded:
                    yield text[yielded:safe]
                    yielded = safe

                if len(emitted) >= config.max_new_tokens:
                    outcome = GenerationOutcome.REACHED_MAX_TOKENS
                    break
                logits = engine.consume(self._session, [token])
                pending = []

            if outcome in (GenerationOutcome.COMPLETED, GenerationOutcome.REACHED_MAX_TOKENS):
                text += decoder.flush()
                stop_at = self._find_stop(text, yielded)
                if stop_at is not None:
                    text = text[:stop_at]
                    outcome = GenerationOutcome.STOPPED_ON_SEQUENCE
                if len(text) > yielded:
                    yield text[yielded:]
                    yielded = len(text)
        except CacheConsistencyError as exc:
            outcome, reason = GenerationOutcome.FAILED, str(exc)
            raise
        except VocllmError as exc:
            logger.error("Generation failed: %s", exc)
            outcome, reason = GenerationOutcome.FAILED, str(exc)
        except Exception as exc:
            logger.exception("Model runtime failed during generation")
            outcome, reason = GenerationOutcome.FAILED, f"{type(exc).__name__}: {exc}"
        except GeneratorExit:
            outcome = GenerationOutcome.CANCELLED
            raise
        finally:
            if outcome is None:
                outcome = GenerationOutcome.FAILED
                reason = reason or "generation aborted"
            if outcome is GenerationOutcome.CANCELLED and self.cancel_token.timed_out:
                reason = "timeout"
            elapsed = time.perf_counter() - started
            metrics = GenerationMetrics(
                duration_s=elapsed,
                tokens_generated=len(emitted),
                tokens_per_second=len(emitted) / elapsed if elapsed > 0 else 0.0,
            )
            self.result = GenerationResult(
                outcome=outcome,
                text=text,
                reason=reason,
                tokens=tuple(emitted),
                pending_tokens=tuple(pending),
                metrics=metrics,
            )
            logger.debug(
                "Generated %d tokens in %.2fs [%.1f t/s], outcome=%s",
                metrics.tokens_generated,
                metrics.duration_s,
                metrics.tokens_per_second,
                outcome.value,
            )

    def _find_stop(self, text: str, yielded: int) -> int | None:
        """Index of the earliest stop sequence not yet streamed, if any."""
        best: int | None = None
        for stop in self._stop_sequences:
            index = text.find(stop, max(0, yielded - len(stop) + 1))
            if index != -1 and (best is None or index < best):
                best = index
        return best


class GenerationEngine:
    """Drives runtime, cache and sampler for one session at a time."""

    def __init__(
        self,
        runtime: ModelRuntime,
        cache: KVCacheManager,
        sampler: Sampler,
        tokenizer: TokenizerAdapter,
        stop_token_ids: Iterable[int] = (),
    ) -> None:
        self.runtime = runtime
        self.cache = cache
        self.sampler = sampler
        self.tokenizer = tokenizer
        stops = set(stop_token_ids)
        if runtime.spec.eos_token_id is not None:
            stops.add(runtime.spec.eos_token_id)
        self.stop_token_ids = frozenset(stops)

    def consume(self, session: str, tokens: Sequence[int]) -> np.ndarray:
        """Run ``tokens`` through the runtime and append them to the cache."""
        state = self.cache.get(session)
        start = state.length
        output = self.runtime.forward(tokens, state)
        self.cache.extend(session, start, tokens, output.keys, output.values)
        return output.logits

    def generate(
        self,
        session: str,
        prompt_tokens: Sequence[int],
        config: SamplingConfig,
        cancel: CancellationToken | None = None,
        extra_stop_sequences: Sequence[str] = (),
    ) -> Generation:
        logger.debug(
            "Prefilling %d tokens on top of %d cached",
            len(prompt_tokens),
            self.cache.length(session),
        )
        return Generation(
            self,
            session,
            prompt_tokens,
            config,
            cancel or CancellationToken(),
            tuple(config.stop_sequences) + tuple(extra_stop_sequences),
        )
