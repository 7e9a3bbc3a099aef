"""Error taxonomy for the chat engine."""


class VocllmError(Exception):
    """Base class for all errors raised by vocllm."""


class ModelLoadError(VocllmError):
    """The model or tokenizer could not be loaded. Fatal at startup."""


class CacheConsistencyError(VocllmError):
    """The KV cache no longer matches the tokens consumed by the runtime.

    Fatal to the session: the owner must reset history and cache.
    """


class TemplateOverflowError(VocllmError):
    """The assembled prompt does not fit in the model's context window."""

    def __init__(self, required: int, limit: int) -> None:
        super().__init__(f"prompt needs {required} positions, context holds {limit}")
        self.required = required
        self.limit = limit


class SamplerExhaustedError(VocllmError):
    """No candidate token survived filtering."""


class RetrievalError(VocllmError):
    """The vector store query failed."""


class SessionBusyError(VocllmError):
    """A turn is already being generated for this session."""
