"""Model runtime — produces next-token logits from token ids plus cache state.

The engine only depends on the :class:`ModelRuntime` protocol. The concrete
:class:`GGUFRuntime` reads llama-family GGUF checkpoints with the ``gguf``
library, dequantizes the weights once at load time and runs the decoder in
NumPy.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Sequence

import numpy as np
from gguf import GGUFReader, GGUFValueType
from gguf.quants import dequantize

from vocllm.errors import ModelLoadError

if TYPE_CHECKING:
    from vocllm.kv_cache import CacheState

logger = logging.getLogger(__name__)

# Architectures whose GGUF export keeps the HF rotary layout (rotate halves).
_NEOX_ROPE_ARCHS = frozenset({"qwen2", "qwen2moe", "qwen3", "phi3", "stablelm", "gptneox"})


@dataclass(frozen=True)
class ModelSpec:
    """Static shape information the cache manager and prompt builder need."""

    architecture: str
    n_layers: int
    n_heads: int
    n_kv_heads: int
    head_dim: int
    vocab_size: int
    context_length: int
    bos_token_id: int | None = None
    eos_token_id: int | None = None
    add_bos: bool = False


@dataclass(frozen=True)
class ForwardOutput:
    """Result of one forward pass.

    ``keys``/``values`` hold one ``[T, n_kv_heads, head_dim]`` array per layer
    for the T positions that were just processed.
    """

    logits: np.ndarray
    keys: list[np.ndarray]
    values: list[np.ndarray]


class ModelRuntime(Protocol):
    spec: ModelSpec

    def forward(self, tokens: Sequence[int], cache: "CacheState") -> ForwardOutput:
        """Run ``tokens`` on top of ``cache`` and return logits for the last position.

        Must not mutate ``cache``.
        """
        ...


def _field_value(reader: GGUFReader, key: str, default=None):
    field = reader.fields.get(key)
    if field is None or not field.data:
        return default
    part = field.parts[field.data[0]]
    if field.types and field.types[0] == GGUFValueType.STRING:
        return bytes(part).decode("utf-8")
    return part.tolist()[0]


@dataclass
class _Layer:
    attn_norm: np.ndarray
    wq: np.ndarray
    wk: np.ndarray
    wv: np.ndarray
    wo: np.ndarray
    ffn_norm: np.ndarray
    w_gate: np.ndarray
    w_up: np.ndarray
    w_down: np.ndarray
    bq: np.ndarray | None = None
    bk: np.ndarray | None = None
    bv: np.ndarray | None = None
    q_norm: np.ndarray | None = None
    k_norm: np.ndarray | None = None


class GGUFRuntime:
    """NumPy llama-family decoder over dequantized GGUF weights."""

    def __init__(
        self,
        spec: ModelSpec,
        weights: dict[str, np.ndarray],
        rope_freq_base: float = 10000.0,
        rms_norm_eps: float = 1e-5,
    ) -> None:
        self.spec = spec
        self._eps = rms_norm_eps
        self._neox = spec.architecture in _NEOX_ROPE_ARCHS
        self._embedding = weights["token_embd.weight"]
        self._output_norm = weights["output_norm.weight"]
        self._output = weights.get("output.weight", self._embedding)
        self._layers = [self._layer(weights, i) for i in range(spec.n_layers)]
        self._inv_freq = 1.0 / (
            rope_freq_base
            ** (np.arange(0, spec.head_dim, 2, dtype=np.float32) / spec.head_dim)
        )

    @staticmethod
    def _layer(weights: dict[str, np.ndarray], i: int) -> _Layer:
        p = f"blk.{i}"
        try:
            return _Layer(
                attn_norm=weights[f"{p}.attn_norm.weight"],
                wq=weights[f"{p}.attn_q.weight"],
                wk=weights[f"{p}.attn_k.weight"],
                wv=weights[f"{p}.attn_v.weight"],
                wo=weights[f"{p}.attn_output.weight"],
                ffn_norm=weights[f"{p}.ffn_norm.weight"],
                w_gate=weights[f"{p}.ffn_gate.weight"],
                w_up=weights[f"{p}.ffn_up.weight"],
                w_down=weights[f"{p}.ffn_down.weight"],
                bq=weights.get(f"{p}.attn_q.bias"),
                bk=weights.get(f"{p}.attn_k.bias"),
                bv=weights.get(f"{p}.attn_v.bias"),
                q_norm=weights.get(f"{p}.attn_q_norm.weight"),
                k_norm=weights.get(f"{p}.attn_k_norm.weight"),
            )
        except KeyError as exc:
            raise ModelLoadError(f"Missing tensor {exc.args[0]}") from exc

    def _rms_norm(self, x: np.ndarray, w: np.ndarray) -> np.ndarray:
        variance = np.mean(x * x, axis=-1, keepdims=True)
        return x / np.sqrt(variance + self._eps) * w

    def _rope(self, x: np.ndarray, positions: np.ndarray) -> np.ndarray:
        # x: [T, H, D]
        freqs = np.outer(positions, self._inv_freq)[:, None, :]
        cos, sin = np.cos(freqs), np.sin(freqs)
        if self._neox:
            half = x.shape[-1] // 2
            x1, x2 = x[..., :half], x[..., half:]
            return np.concatenate((x1 * cos - x2 * sin, x1 * sin + x2 * cos), axis=-1)
        x1, x2 = x[..., 0::2], x[..., 1::2]
        out = np.empty_like(x)
        out[..., 0::2] = x1 * cos - x2 * sin
        out[..., 1::2] = x1 * sin + x2 * cos
        return out

    def forward(self, tokens: Sequence[int], cache: "CacheState") -> ForwardOutput:
        spec = self.spec
        n_new = len(tokens)
        start = cache.length
        positions = np.arange(start, start + n_new, dtype=np.float32)
        n_rep = spec.n_heads // spec.n_kv_heads
        scale = 1.0 / np.sqrt(spec.head_dim)
        # Causal mask over [cached | new] keys for each new query position.
        mask = np.triu(np.full((n_new, n_new), -np.inf, dtype=np.float32), k=1)

        x = self._embedding[np.asarray(tokens, dtype=np.int64)]
        new_keys: list[np.ndarray] = []
        new_values: list[np.ndarray] = []

        for i, layer in enumerate(self._layers):
            h = self._rms_norm(x, layer.attn_norm)
            q = h @ layer.wq.T
            k = h @ layer.wk.T
            v = h @ layer.wv.T
            if layer.bq is not None:
                q, k, v = q + layer.bq, k + layer.bk, v + layer.bv

            q = q.reshape(n_new, spec.n_heads, spec.head_dim)
            k = k.reshape(n_new, spec.n_kv_heads, spec.head_dim)
            v = v.reshape(n_new, spec.n_kv_heads, spec.head_dim)
            if layer.q_norm is not None:
                q = self._rms_norm(q, layer.q_norm)
                k = self._rms_norm(k, layer.k_norm)
            q = self._rope(q, positions)
            k = self._rope(k, positions)
            new_keys.append(k)
            new_values.append(v)

            past_k, past_v = cache.layer(i)
            keys = np.concatenate((past_k, k), axis=0)
            values = np.concatenate((past_v, v), axis=0)
            if n_rep > 1:
                keys = np.repeat(keys, n_rep, axis=1)
                values = np.repeat(values, n_rep, axis=1)

            scores = np.einsum("qhd,khd->hqk", q, keys) * scale
            scores[..., start:] += mask
            scores -= scores.max(axis=-1, keepdims=True)
            probs = np.exp(scores)
            probs /= probs.sum(axis=-1, keepdims=True)
            attn = np.einsum("hqk,khd->qhd", probs, values).reshape(n_new, -1)
            x = x + attn @ layer.wo.T

            h = self._rms_norm(x, layer.ffn_norm)
            gate = h @ layer.w_gate.T
            up = h @ layer.w_up.T
            silu = gate / (1.0 + np.exp(-gate))
            x = x + (silu * up) @ layer.w_down.T

        last = self._rms_norm(x[-1], self._output_norm)
        logits = last @ self._output.T
        return ForwardOutput(logits=logits.astype(np.float32), keys=new_keys, values=new_values)


def load_runtime(
    path: str | Path,
    eos_token_id: int | None = None,
    context_length: int | None = None,
) -> GGUFRuntime:
    """Load a GGUF checkpoint into a :class:`GGUFRuntime`.

    Args:
        path: GGUF file to read.
        eos_token_id: Used when the file metadata defines no EOS token.
        context_length: Overrides the context length from the metadata.

    Raises:
        ModelLoadError: If the file cannot be read, a tensor type cannot be
            dequantized, or no EOS token can be determined.
    """
    path = Path(path)
    if not path.is_file():
        raise ModelLoadError(f"Model file not found: {path}")

    load_start = time.perf_counter()
    try:
        reader = GGUFReader(str(path))
    except Exception as exc:
        raise ModelLoadError(f"Failed to read GGUF file {path}: {exc}") from exc

    arch = _field_value(reader, "general.architecture", "llama")
    n_layers = _field_value(reader, f"{arch}.block_count")
    n_embd = _field_value(reader, f"{arch}.embedding_length")
    n_heads = _field_value(reader, f"{arch}.attention.head_count")
    if n_layers is None or n_embd is None or n_heads is None:
        raise ModelLoadError(f"GGUF file {path} lacks {arch} shape metadata")
    n_kv_heads = _field_value(reader, f"{arch}.attention.head_count_kv", n_heads)
    head_dim = _field_value(reader, f"{arch}.attention.key_length", n_embd // n_heads)

    meta_eos = _field_value(reader, "tokenizer.ggml.eos_token_id")
    eos = meta_eos if meta_eos is not None else eos_token_id
    if eos is None:
        raise ModelLoadError(
            "GGUF does not define an EOS token and none was supplied"
        )

    weights: dict[str, np.ndarray] = {}
    total_bytes = 0
    for tensor in reader.tensors:
        try:
            data = dequantize(tensor.data, tensor.tensor_type)
        except NotImplementedError as exc:
            raise ModelLoadError(
                f"Unsupported quantization {tensor.tensor_type.name} for {tensor.name}"
            ) from exc
        weights[tensor.name] = np.array(data, dtype=np.float32)
        total_bytes += int(tensor.n_bytes)

    if "token_embd.weight" not in weights or "output_norm.weight" not in weights:
        raise ModelLoadError(f"GGUF file {path} is missing embedding or output tensors")
    vocab_size = weights.get("output.weight", weights["token_embd.weight"]).shape[0]

    spec = ModelSpec(
        architecture=arch,
        n_layers=int(n_layers),
        n_heads=int(n_heads),
        n_kv_heads=int(n_kv_heads),
        head_dim=int(head_dim),
        vocab_size=int(vocab_size),
        context_length=int(
            context_length or _field_value(reader, f"{arch}.context_length", 2048)
        ),
        bos_token_id=_field_value(reader, "tokenizer.ggml.bos_token_id"),
        eos_token_id=int(eos),
        add_bos=bool(_field_value(reader, "tokenizer.ggml.add_bos_token", False)),
    )
    runtime = GGUFRuntime(
        spec,
        weights,
        rope_freq_base=float(_field_value(reader, f"{arch}.rope.freq_base", 10000.0)),
        rms_norm_eps=float(
            _field_value(reader, f"{arch}.attention.layer_norm_rms_epsilon", 1e-5)
        ),
    )
    logger.info(
        "Loaded model %s [%s, %d layers, %d tensors, %d bytes] in %.1fs",
        path,
        arch,
        spec.n_layers,
        len(reader.tensors),
        total_bytes,
        time.perf_counter() - load_start,
    )
    return runtime
