"""KV cache manager — owns per-session key/value buffers.

Each session has one :class:`CacheState` holding a pre-allocated
``[capacity, n_kv_heads, head_dim]`` buffer per layer for keys and values.
Buffers double in capacity when full so growth is amortized rather than
per-token. The manager also keeps the token ids behind every cached
position; ``length`` is always the number of tokens the runtime consumed.
"""

import logging
import threading
from typing import Sequence

import numpy as np

from vocllm.errors import CacheConsistencyError
from vocllm.runtime import ModelSpec

logger = logging.getLogger(__name__)

_INITIAL_CAPACITY = 256


class CacheState:
    """Cached keys/values for one session."""

    def __init__(self, spec: ModelSpec, capacity: int) -> None:
        shape = (capacity, spec.n_kv_heads, spec.head_dim)
        self._keys = [np.zeros(shape, dtype=np.float32) for _ in range(spec.n_layers)]
        self._values = [np.zeros(shape, dtype=np.float32) for _ in range(spec.n_layers)]
        self._tokens: list[int] = []
        self.capacity = capacity

    @property
    def length(self) -> int:
        return len(self._tokens)

    @property
    def tokens(self) -> tuple[int, ...]:
        return tuple(self._tokens)

    def layer(self, index: int) -> tuple[np.ndarray, np.ndarray]:
        """Read-only views of the cached keys and values of one layer."""
        k = self._keys[index][: self.length]
        v = self._values[index][: self.length]
        k.flags.writeable = False
        v.flags.writeable = False
        return k, v

    def _grow(self, needed: int, limit: int) -> None:
        capacity = min(max(needed, self.capacity * 2), limit)
        for buffers in (self._keys, self._values):
            for i, old in enumerate(buffers):
                new = np.zeros((capacity, *old.shape[1:]), dtype=old.dtype)
                new[: self.length] = old[: self.length]
                buffers[i] = new
        logger.debug("Grew KV cache from %d to %d positions", self.capacity, capacity)
        self.capacity = capacity

    def _append(
        self,
        tokens: Sequence[int],
        keys: Sequence[np.ndarray],
        values: Sequence[np.ndarray],
        limit: int,
    ) -> None:
        start, end = self.length, self.length + len(tokens)
        if end > self.capacity:
            self._grow(end, limit)
        for i, (k, v) in enumerate(zip(keys, values)):
            self._keys[i][start:end] = k
            self._values[i][start:end] = v
        self._tokens.extend(tokens)

    def _truncate(self, length: int) -> None:
        del self._tokens[length:]


class KVCacheManager:
    """Per-session cache store.

    ``extend`` and ``reset`` are a critical section per session: a second
    caller entering while the first is still inside is a programming error
    and raises :class:`CacheConsistencyError` instead of blocking.
    """

    def __init__(self, spec: ModelSpec, initial_capacity: int = _INITIAL_CAPACITY) -> None:
        self.spec = spec
        self._initial_capacity = min(initial_capacity, spec.context_length)
        self._states: dict[str, CacheState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, session: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(session, threading.Lock())

    def get(self, session: str) -> CacheState:
        """Return the session's state, creating an empty one on first use."""
        with self._registry_lock:
            state = self._states.get(session)
            if state is None:
                state = CacheState(self.spec, self._initial_capacity)
                self._states[session] = state
            return state

    def length(self, session: str) -> int:
        state = self._states.get(session)
        return state.length if state is not None else 0

    def extend(
        self,
        session: str,
        start: int,
        new_tokens: Sequence[int],
        keys: Sequence[np.ndarray],
        values: Sequence[np.ndarray],
    ) -> CacheState:
        """Append the runtime's keys/values for ``new_tokens``.

        Args:
            session: Session identifier.
            start: Cache position of ``new_tokens[0]``; must equal the
                current length.
            new_tokens: Token ids the runtime just consumed.
            keys: One ``[len(new_tokens), n_kv_heads, head_dim]`` array per layer.
            values: Same shape as ``keys``.

        Raises:
            CacheConsistencyError: On a gap or overlap, mismatched shapes,
                context overflow, or concurrent use of the session.
        """
        lock = self._lock_for(session)
        if not lock.acquire(blocking=False):
            raise CacheConsistencyError(f"concurrent cache mutation on session {session}")
        try:
            state = self.get(session)
            if start != state.length:
                raise CacheConsistencyError(
                    f"extend at position {start} but cache holds {state.length}"
                )
            if len(keys) != self.spec.n_layers or len(values) != self.spec.n_layers:
                raise CacheConsistencyError("keys/values do not cover every layer")
            n = len(new_tokens)
            for k, v in zip(keys, values):
                if k.shape[0] != n or v.shape[0] != n:
                    raise CacheConsistencyError(
                        f"{n} tokens but {k.shape[0]} cached positions supplied"
                    )
            if state.length + n > self.spec.context_length:
                raise CacheConsistencyError(
                    f"cache would exceed the context length {self.spec.context_length}"
                )
            state._append(new_tokens, keys, values, self.spec.context_length)
            return state
        finally:
            lock.release()

    def truncate(self, session: str, length: int) -> None:
        """Forget every cached position from ``length`` onwards.

        Buffer capacity is kept, so refilling after a truncate does not
        reallocate.

        Args:
            session: Session whose cache is truncated.
            length: New cache length, at most the current one.

        Raises:
            CacheConsistencyError: If ``length`` is out of range or another
                thread is mutating the same session.
        """
        lock = self._lock_for(session)
        if not lock.acquire(blocking=False):
            raise CacheConsistencyError(f"concurrent cache mutation on session {session}")
        try:
            state = self.get(session)
            if not 0 <= length <= state.length:
                raise CacheConsistencyError(
                    f"cannot truncate {state.length} cached positions to {length}"
                )
            state._truncate(length)
        finally:
            lock.release()

    def reset(self, session: str) -> None:
        """Discard all cached state of the session."""
        lock = self._lock_for(session)
        if not lock.acquire(blocking=False):
            raise CacheConsistencyError(f"concurrent cache mutation on session {session}")
        try:
            with self._registry_lock:
                self._states.pop(session, None)
        finally:
            lock.release()
