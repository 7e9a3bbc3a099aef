"""CLI interface for the chat engine."""

import argparse
import contextlib
import logging
import signal
import sys
from pathlib import Path

from vocllm.config import (
    DEFAULT_SYSTEM_PROMPT,
    AppConfig,
    HistoryConfig,
    ModelConfig,
    RetrievalConfig,
    SamplingConfig,
    SpeechConfig,
)
from vocllm.engine import CancellationToken
from vocllm.errors import ModelLoadError, RetrievalError, VocllmError
from vocllm.history import ChatHistory
from vocllm.ingest import ingest_folder
from vocllm.models import GenerationOutcome, GenerationResult
from vocllm.retriever import ChromaRetriever
from vocllm.runtime import load_runtime
from vocllm.session import ChatSession, TurnStream
from vocllm.speech import create_speech_output
from vocllm.tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)

_EXIT_WORDS = ("quit", "exit", "q")


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _read_system_prompt(path: str | None) -> str:
    """Read the system prompt file, falling back to the default prompt."""
    if not path:
        return DEFAULT_SYSTEM_PROMPT
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to read system prompt from %s: %s", path, exc)
        return DEFAULT_SYSTEM_PROMPT


def build_config(args: argparse.Namespace) -> AppConfig:
    """Translate parsed arguments into an :class:`AppConfig`."""
    single = args.command == "single"
    history_file = args.history_file
    if history_file is None and args.model:
        history_file = f"{Path(args.model).stem}.history.json"
    return AppConfig(
        stream=not args.no_stream,
        model=ModelConfig(
            path=args.model or "",
            tokenizer_path=args.tokenizer,
            eos_token_id=args.eos_token,
            context_length=args.context_length,
            template=args.template,
            system_prompt=_read_system_prompt(args.sysprompt),
        ),
        sampling=SamplingConfig(
            temperature=args.temperature,
            top_k=args.top_k,
            top_p=args.top_p,
            repetition_penalty=args.repeat_penalty,
            repeat_last_n=args.repeat_last_n,
            max_new_tokens=args.max_new_tokens,
            stop_sequences=args.stop or [],
            seed=args.seed,
        ),
        history=HistoryConfig(
            file=None if single else history_file,
            incognito=args.incognito or single,
            disabled=args.disable_history or single,
            token_limit=args.history_count,
        ),
        retrieval=RetrievalConfig(
            enabled=args.rag, db_path=args.rag_db, collection_name=args.collection
        ),
        speech=SpeechConfig(option=args.tts),
    )


def load_session(config: AppConfig, history: ChatHistory | None = None) -> ChatSession:
    """Load the model, tokenizer and optional collaborators into a session.

    Raises:
        ModelLoadError: If the model or tokenizer cannot be loaded.
    """
    if not config.model.path:
        raise ModelLoadError("No model path given")
    tokenizer_path = config.model.tokenizer_path or str(
        Path(config.model.path).parent / "tokenizer.json"
    )
    tokenizer = TokenizerAdapter.from_file(tokenizer_path)
    runtime = load_runtime(
        config.model.path,
        eos_token_id=config.model.eos_token_id,
        context_length=config.model.context_length,
    )

    retriever = None
    if config.retrieval.enabled:
        try:
            retriever = ChromaRetriever.from_config(config.retrieval)
        except RetrievalError as exc:
            logger.warning("Retrieval disabled: %s", exc)

    speech = None
    try:
        speech = create_speech_output(config.speech.option)
    except Exception as exc:
        logger.warning("Speech output disabled: %s", exc)

    return ChatSession.from_config(
        config, runtime, tokenizer, retriever=retriever, speech=speech, history=history
    )


@contextlib.contextmanager
def _cancel_on_interrupt(stream: TurnStream):
    """Route Ctrl-C to the stream's cancellation flag while a turn runs."""
    previous = signal.signal(signal.SIGINT, lambda signum, frame: stream.cancel())
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def run_turn(session: ChatSession, prompt: str, config: AppConfig, timeout: float | None = None) -> GenerationResult:
    """Generate one reply and print it to stdout."""
    stream = session.submit_turn(prompt, cancel=CancellationToken(timeout))
    with _cancel_on_interrupt(stream):
        for fragment in stream:
            if config.stream:
                print(fragment, end="", flush=True)
    result = stream.result
    if result is None:
        raise VocllmError("turn ended without a result")
    if not config.stream and result.committable:
        print(result.text, end="")
    print()

    for warning in stream.warnings:
        print(f"[warning] {warning}", file=sys.stderr)
    if result.outcome is GenerationOutcome.CANCELLED:
        print(f"[cancelled{': ' + result.reason if result.reason else ''}]", file=sys.stderr)
    elif result.outcome is GenerationOutcome.FAILED:
        print(f"[error] {result.reason}", file=sys.stderr)
    return result


def repl(session: ChatSession, config: AppConfig, timeout: float | None = None) -> None:
    """Interactive loop: read a prompt, stream the reply, repeat.

    ``/reset`` clears the conversation. Exits on 'quit', 'exit', 'q',
    EOF or Ctrl-C at the prompt.
    """
    print("Type your message (or 'quit' to exit, '/reset' to start over):\n")
    while True:
        try:
            prompt = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not prompt:
            continue
        if prompt.lower() in _EXIT_WORDS:
            print("Goodbye!")
            break
        if prompt == "/reset":
            session.reset()
            print("Conversation reset.\n")
            continue

        print("Assistant: ", end="", flush=True)
        run_turn(session, prompt, config, timeout)
        print()


def ingest(folder: str, config: AppConfig | None = None) -> None:
    """Build the retrieval index from the documents in ``folder``."""
    cfg = config or AppConfig()
    print(f"Loading documents from: {folder}")
    added = ingest_folder(folder, cfg.retrieval, cfg.chunk)
    if not added:
        print("No supported documents found (.txt, .pdf, .md)")
        return
    print(f"Ingestion complete! ({added} chunks stored)")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vocllm",
        description="Chat with local quantized LLMs, with optional retrieval and speech.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("-m", "--model", help="Path to the GGUF model file")
    parser.add_argument(
        "-T", "--tokenizer", help="tokenizer.json path (default: next to the model)"
    )
    parser.add_argument(
        "-t", "--template", choices=["chatml", "imessenger"], default="chatml"
    )
    parser.add_argument("--sysprompt", help="File holding the system prompt")
    parser.add_argument("--eos-token", type=int, help="EOS token id if the GGUF has none")
    parser.add_argument("--context-length", type=int, help="Override the model context length")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--temperature", type=float, default=0.7)
    parser.add_argument("--top-k", type=int)
    parser.add_argument("--top-p", type=float)
    parser.add_argument("--repeat-penalty", type=float, default=1.1)
    parser.add_argument("--repeat-last-n", type=int, default=64)
    parser.add_argument("--max-new-tokens", type=int, default=512)
    parser.add_argument(
        "--stop", action="append", help="Stop sequence (repeatable)"
    )
    parser.add_argument("--timeout", type=float, help="Cancel a reply after N seconds")
    parser.add_argument("-n", "--no-stream", action="store_true", help="Print replies only when complete")
    parser.add_argument("--history-file", help="JSON file to load and save chat history")
    parser.add_argument("--history-count", type=int, default=4096, help="Rough token budget for history")
    parser.add_argument("-i", "--incognito", action="store_true", help="Do not save chat history")
    parser.add_argument("--disable-history", action="store_true", help="Answer every prompt without history")
    parser.add_argument("--tts", help='Speech option "<provider>/<voice>", e.g. "pyttsx3/zira"')
    parser.add_argument("--rag", action="store_true", help="Augment prompts with retrieved documents")
    parser.add_argument("--rag-db", default="./chroma_db", help="ChromaDB directory")
    parser.add_argument("--collection", default="vocllm_documents", help="ChromaDB collection name")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("repl", help="Start an interactive chat")
    single_p = subparsers.add_parser("single", help="Answer one prompt and exit")
    single_p.add_argument("prompt", help="The user prompt")
    ingest_p = subparsers.add_parser("ingest", help="Index documents for retrieval")
    ingest_p.add_argument("--folder", default="./documents", help="Documents folder path")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point — parse arguments and dispatch to a command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    if args.command == "ingest":
        ingest(args.folder, config)
        return

    history = None
    if config.history.file and not config.history.disabled:
        history = ChatHistory.load(config.history.file)

    try:
        session = load_session(config, history)
    except ModelLoadError as exc:
        logger.error("Failed to load model: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.command == "single":
            result = run_turn(session, args.prompt, config, args.timeout)
            if result.outcome is GenerationOutcome.FAILED:
                sys.exit(1)
        else:
            repl(session, config, args.timeout)
    except VocllmError as exc:
        logger.exception("Unrecoverable runtime error")
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        if config.history.file and not config.history.incognito and not config.history.disabled:
            session.history.save(config.history.file)


if __name__ == "__main__":
    main()
