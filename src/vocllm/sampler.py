"""Sampler — turns a logit vector into the next token id."""

import logging
from typing import Sequence

import numpy as np

from vocllm.config import SamplingConfig
from vocllm.errors import SamplerExhaustedError

logger = logging.getLogger(__name__)


def apply_repetition_penalty(
    logits: np.ndarray, penalty: float, recent_tokens: Sequence[int]
) -> np.ndarray:
    """Down-weight every token present in ``recent_tokens``.

    Positive logits are divided by ``penalty`` and negative ones multiplied
    by it, so a penalty above 1 always lowers the token's probability.
    Each token is penalized once however often it repeats.

    Args:
        logits: Scores over the vocabulary; never modified in place.
        penalty: Penalty factor, 1.0 disables it.
        recent_tokens: Token ids to penalize.

    Returns:
        The penalized scores, or ``logits`` itself when nothing applies.
    """
    if penalty == 1.0 or not len(recent_tokens):
        return logits
    out = logits.copy()
    ids = np.unique(np.asarray(recent_tokens, dtype=np.int64))
    ids = ids[(ids >= 0) & (ids < out.shape[0])]
    picked = out[ids]
    out[ids] = np.where(picked > 0, picked / penalty, picked * penalty)
    return out


class Sampler:
    """Seeded token sampler.

    The random generator is owned by the instance, so two samplers created
    with the same seed and fed the same inputs produce the same tokens.
    """

    def __init__(self, seed: int | None = None) -> None:
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def reseed(self, seed: int | None) -> None:
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def sample(
        self,
        logits: np.ndarray,
        config: SamplingConfig,
        recent_tokens: Sequence[int] = (),
    ) -> int:
        """Pick the next token.

        Steps: repetition penalty, temperature (0 means greedy argmax),
        top-k, top-p, then a draw from the renormalized distribution.

        Args:
            logits: Raw scores over the vocabulary for the next position.
            config: Temperature, top-k/top-p and penalty settings.
            recent_tokens: Tokens already in the context, oldest first.
                Only the last ``repeat_last_n`` are penalized.

        Returns:
            The chosen token id.

        Raises:
            SamplerExhaustedError: If no finite candidate is left.
        """
        scores = np.asarray(logits, dtype=np.float64)
        window = recent_tokens[-config.repeat_last_n :] if config.repeat_last_n else ()
        scores = apply_repetition_penalty(scores, config.repetition_penalty, window)

        finite = np.isfinite(scores)
        if not finite.any():
            raise SamplerExhaustedError("no finite logits to sample from")

        if config.temperature == 0.0:
            return int(np.argmax(np.where(finite, scores, -np.inf)))

        scores = np.where(finite, scores / config.temperature, -np.inf)
        # Stable sort on negated scores: ties keep the lower token id first.
        order = np.argsort(-scores, kind="stable")
        order = order[np.isfinite(scores[order])]

        if config.top_k is not None:
            order = order[: config.top_k]

        candidate = scores[order]
        probs = np.exp(candidate - candidate.max())
        probs /= probs.sum()

        if config.top_p is not None and config.top_p < 1.0:
            cumulative = np.cumsum(probs)
            cutoff = int(np.searchsorted(cumulative, config.top_p)) + 1
            order, probs = order[:cutoff], probs[:cutoff]
            probs = probs / probs.sum()

        if order.size == 0 or not np.isfinite(probs).all():
            raise SamplerExhaustedError("sampling filters removed every candidate")

        return int(order[self._rng.choice(order.size, p=probs)])
