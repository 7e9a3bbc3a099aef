"""Speech output — reads finalized assistant replies aloud."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Iterator, Protocol

import pyttsx3

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

# "sapi" is what the voice option was called on Windows, where pyttsx3 drives SAPI5.
_PROVIDERS = ("pyttsx3", "sapi")


class SpeechOutput(Protocol):
    def synthesize(self, text: str) -> Iterator[bytes]:
        """Render ``text`` to audio and stream the encoded bytes."""
        ...

    def speak(self, text: str) -> None:
        """Play ``text`` on the default audio device, blocking until done."""
        ...


class Pyttsx3Speech:
    """Offline text-to-speech through the platform engine pyttsx3 wraps."""

    def __init__(self, voice: str | None = None, rate: int | None = None) -> None:
        self._engine = pyttsx3.init()
        if voice:
            self._select_voice(voice)
        if rate:
            self._engine.setProperty("rate", rate)

    def _select_voice(self, voice: str) -> None:
        wanted = voice.lower()
        for candidate in self._engine.getProperty("voices"):
            if wanted in (candidate.id or "").lower() or wanted in (candidate.name or "").lower():
                self._engine.setProperty("voice", candidate.id)
                logger.debug("Using voice %s", candidate.name)
                return
        logger.warning("Voice %r not found; using the default voice", voice)

    def synthesize(self, text: str) -> Iterator[bytes]:
        fd, name = tempfile.mkstemp(suffix=".wav")
        os.close(fd)
        path = Path(name)
        try:
            self._engine.save_to_file(text, str(path))
            self._engine.runAndWait()
            with path.open("rb") as audio:
                while chunk := audio.read(_CHUNK_SIZE):
                    yield chunk
        finally:
            path.unlink(missing_ok=True)

    def speak(self, text: str) -> None:
        self._engine.say(text)
        self._engine.runAndWait()


def create_speech_output(option: str | None) -> SpeechOutput | None:
    """Build the speech output named by ``"<provider>/<voice>"``.

    Returns ``None`` when ``option`` is empty.

    Raises:
        ValueError: If the provider is not supported.
    """
    if not option:
        return None
    provider, _, voice = option.partition("/")
    if provider.lower() not in _PROVIDERS:
        raise ValueError(f"Unsupported speech provider {provider!r}")
    return Pyttsx3Speech(voice=voice or None)
