"""Shared fixtures for the test suite."""

import re
import zlib
from typing import Sequence

import numpy as np
import pytest
from chromadb.api.types import Documents, EmbeddingFunction, Embeddings
from tokenizers import Tokenizer, decoders, models, pre_tokenizers, trainers

from vocllm.config import RetrievalConfig, SamplingConfig
from vocllm.kv_cache import CacheState, KVCacheManager
from vocllm.models import Chunk, RetrievedPassage
from vocllm.runtime import ForwardOutput, ModelSpec
from vocllm.session import ChatSession
from vocllm.tokenizer import TokenizerAdapter

SPECIAL_TOKENS = ["<s>", "</s>", "<|im_start|>", "<|im_end|>"]

CORPUS = [
    "What is 2+2? The answer is 4.",
    "Python is a high-level programming language.",
    "It was created by Guido van Rossum.",
    "The quick brown fox jumps over the lazy dog.\n",
    "system\nYou are a helpful assistant.\n",
    "user\nHello there!\nassistant\nHi! How can I help you today?\n",
    "Use the following context when answering the next message.",
    "USER: hello\nASSISTANT: hi\n",
] * 20


@pytest.fixture(scope="session")
def hf_tokenizer() -> Tokenizer:
    tok = Tokenizer(models.BPE())
    tok.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tok.decoder = decoders.ByteLevel()
    trainer = trainers.BpeTrainer(
        vocab_size=400,
        special_tokens=SPECIAL_TOKENS,
        initial_alphabet=pre_tokenizers.ByteLevel.alphabet(),
        show_progress=False,
    )
    tok.train_from_iterator(CORPUS, trainer=trainer)
    return tok


@pytest.fixture
def tokenizer(hf_tokenizer: Tokenizer) -> TokenizerAdapter:
    return TokenizerAdapter(hf_tokenizer)


class ScriptedRuntime:
    """Fake runtime whose logits pick the next id from ``script``.

    Each forward call pops one scripted token; once the script runs out
    it predicts EOS. Cached keys/values hold the absolute position of each
    token so tests can check what the cache manager stored.
    """

    def __init__(self, vocab_size: int, eos_token_id: int, context_length: int = 512) -> None:
        self.spec = ModelSpec(
            architecture="scripted",
            n_layers=2,
            n_heads=2,
            n_kv_heads=1,
            head_dim=2,
            vocab_size=vocab_size,
            context_length=context_length,
            eos_token_id=eos_token_id,
        )
        self.script: list[int] = []
        self.calls: list[tuple[int, list[int]]] = []
        self.on_forward = None

    def forward(self, tokens: Sequence[int], cache: CacheState) -> ForwardOutput:
        self.calls.append((cache.length, list(tokens)))
        if self.on_forward is not None:
            self.on_forward(len(self.calls))
        n = len(tokens)
        positions = np.arange(cache.length, cache.length + n, dtype=np.float32)
        block = np.broadcast_to(positions[:, None, None], (n, 1, 2)).copy()
        keys = [block.copy() for _ in range(self.spec.n_layers)]
        values = [-block for _ in range(self.spec.n_layers)]
        nxt = self.script.pop(0) if self.script else self.spec.eos_token_id
        logits = np.full(self.spec.vocab_size, -10.0, dtype=np.float32)
        logits[nxt] = 10.0
        return ForwardOutput(logits=logits, keys=keys, values=values)


@pytest.fixture
def runtime(tokenizer: TokenizerAdapter) -> ScriptedRuntime:
    return ScriptedRuntime(tokenizer.vocab_size, tokenizer.token_id("</s>"))


@pytest.fixture
def cache(runtime: ScriptedRuntime) -> KVCacheManager:
    return KVCacheManager(runtime.spec, initial_capacity=4)


@pytest.fixture
def greedy() -> SamplingConfig:
    return SamplingConfig(temperature=0.0, repetition_penalty=1.0, max_new_tokens=32)


@pytest.fixture
def make_session(runtime: ScriptedRuntime, tokenizer: TokenizerAdapter, greedy: SamplingConfig):
    def factory(**kwargs) -> ChatSession:
        kwargs.setdefault("sampling", greedy)
        kwargs.setdefault("system_prompt", "You are a helpful assistant.")
        return ChatSession(runtime, tokenizer, **kwargs)

    return factory


@pytest.fixture
def sample_passages() -> list[RetrievedPassage]:
    return [
        RetrievedPassage(text="Python was created by Guido van Rossum.", score=0.9, source="python.txt"),
        RetrievedPassage(text="The fox is quick and brown.", score=0.7, source="fox.txt"),
    ]


class HashEmbedding(EmbeddingFunction[Documents]):
    """Bag-of-words embedding hashed into a small vector; no model download."""

    DIM = 64

    def __init__(self) -> None:
        pass

    def __call__(self, input: Documents) -> Embeddings:
        return [self._vector(text) for text in input]

    @classmethod
    def _vector(cls, text: str) -> np.ndarray:
        vec = np.zeros(cls.DIM, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            vec[zlib.crc32(word.encode()) % cls.DIM] += 1.0
        norm = np.linalg.norm(vec)
        if norm == 0:
            vec[0] = 1.0
            return vec
        return vec / norm

    @staticmethod
    def name() -> str:
        return "hash-embedding"

    def get_config(self) -> dict:
        return {}

    @staticmethod
    def build_from_config(config: dict) -> "HashEmbedding":
        return HashEmbedding()


@pytest.fixture
def embedding_function() -> HashEmbedding:
    return HashEmbedding()


@pytest.fixture
def retrieval_config(tmp_path) -> RetrievalConfig:
    return RetrievalConfig(db_path=str(tmp_path / "chroma"), collection_name="test_collection")


@pytest.fixture
def sample_chunks() -> list[Chunk]:
    return [
        Chunk(
            text="Python is a programming language.",
            metadata={"source": "test.txt", "chunk_index": 0, "total_chunks": 2},
        ),
        Chunk(
            text="It supports multiple paradigms.",
            metadata={"source": "test.txt", "chunk_index": 1, "total_chunks": 2},
        ),
    ]
