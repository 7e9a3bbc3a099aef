"""Centralized configuration for the chat engine."""

import json
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are a professional interactive AI assistant.\n"
    "Your job is to answer any queries and perform any actions required of "
    "you to the best of your ability.\n"
    "You may optionally be provided with additional context which must be "
    "incorporated into your answer.\n"
    "Your answers must be concise and correct."
)


def _parse_string_list(v: object) -> object:
    """Accept a JSON array string or comma-separated string from env vars."""
    if isinstance(v, str):
        try:
            parsed = json.loads(v)
        except (json.JSONDecodeError, ValueError):
            parsed = [item.strip() for item in v.split(",") if item.strip()]
        if not isinstance(parsed, list):
            return [str(parsed)]
        return [str(item) for item in parsed]
    return v


class SamplingConfig(BaseSettings):
    """Token sampling parameters for one turn."""

    model_config = SettingsConfigDict(env_prefix="SAMPLING_", frozen=True)

    temperature: float = Field(default=0.7, ge=0.0)
    top_k: int | None = Field(default=None, ge=1)
    top_p: float | None = Field(default=None, gt=0.0, le=1.0)
    repetition_penalty: float = Field(default=1.1, gt=0.0)
    repeat_last_n: int = Field(default=64, ge=0)
    max_new_tokens: int = Field(default=512, gt=0)
    stop_sequences: list[str] = Field(default_factory=list)
    seed: int = 42

    @field_validator("stop_sequences", mode="before")
    @classmethod
    def _parse_stop_sequences(cls, v: object) -> object:
        return _parse_string_list(v)

    @field_validator("stop_sequences")
    @classmethod
    def _reject_empty_stop_sequences(cls, v: list[str]) -> list[str]:
        if any(not s for s in v):
            raise ValueError("stop sequences must be non-empty strings")
        return v


class ModelConfig(BaseSettings):
    """Model file, tokenizer and chat format settings."""

    model_config = SettingsConfigDict(env_prefix="MODEL_", frozen=True)

    path: str = ""
    tokenizer_path: str | None = None
    eos_token_id: int | None = Field(default=None, ge=0)
    context_length: int | None = Field(default=None, gt=0)
    template: Literal["chatml", "imessenger"] = "chatml"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class HistoryConfig(BaseSettings):
    """Chat history retention and persistence."""

    model_config = SettingsConfigDict(env_prefix="HISTORY_", frozen=True)

    file: str | None = None
    incognito: bool = False
    disabled: bool = False
    token_limit: int = Field(default=4096, gt=0)


class RetrievalConfig(BaseSettings):
    """ChromaDB retrieval settings."""

    model_config = SettingsConfigDict(env_prefix="RAG_", frozen=True)

    enabled: bool = False
    db_path: str = "./chroma_db"
    collection_name: str = "vocllm_documents"
    embedding_model: str = "all-MiniLM-L6-v2"
    top_k: int = Field(default=4, gt=0)
    min_relevance: float = Field(default=0.3, ge=0.0, le=1.0)
    batch_size: int = Field(default=100, gt=0)


class ChunkConfig(BaseSettings):
    """How ingested documents are cut into retrievable passages.

    Each passage may be injected into the prompt whole, so ``size`` bounds
    the context one retrieved passage can take.
    """

    model_config = SettingsConfigDict(env_prefix="CHUNK_", frozen=True)

    size: int = Field(default=500, gt=0, description="Passage length in characters.")
    overlap: int = Field(
        default=100, ge=0, description="Characters shared by consecutive passages."
    )

    @model_validator(mode="after")
    def _passages_advance(self) -> "ChunkConfig":
        # A window that overlaps itself entirely never moves forward.
        if self.overlap >= self.size:
            raise ValueError(
                f"chunk overlap {self.overlap} leaves no new text in passages of {self.size} characters"
            )
        return self


class SpeechConfig(BaseSettings):
    """Speech synthesis option, in the form ``"<provider>/<voice>"``."""

    model_config = SettingsConfigDict(env_prefix="TTS_", frozen=True)

    option: str | None = None


class AppConfig(BaseSettings):
    """Top-level application configuration."""

    model_config = SettingsConfigDict(frozen=True)

    stream: bool = True
    model: ModelConfig = Field(default_factory=ModelConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    chunk: ChunkConfig = Field(default_factory=ChunkConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
