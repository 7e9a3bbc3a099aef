"""Tests for the cli module."""

import logging
from unittest.mock import MagicMock, patch

import pytest

from vocllm.cli import (
    _build_parser,
    _read_system_prompt,
    _setup_logging,
    build_config,
    ingest,
    load_session,
    main,
    repl,
    run_turn,
)
from vocllm.config import DEFAULT_SYSTEM_PROMPT, AppConfig, RetrievalConfig, SpeechConfig
from vocllm.engine import CancellationToken
from vocllm.errors import ModelLoadError, RetrievalError, VocllmError
from vocllm.models import GenerationOutcome


def _config(argv: list[str]) -> AppConfig:
    return build_config(_build_parser().parse_args(argv))


class TestSetupLogging:
    def test_default_level_is_warning(self) -> None:
        with patch("vocllm.cli.logging.basicConfig") as mock_basic:
            _setup_logging()
            assert mock_basic.call_args[1]["level"] == logging.WARNING

    def test_verbose_sets_debug(self) -> None:
        with patch("vocllm.cli.logging.basicConfig") as mock_basic:
            _setup_logging(verbose=True)
            assert mock_basic.call_args[1]["level"] == logging.DEBUG


class TestReadSystemPrompt:
    def test_no_path_uses_default(self) -> None:
        assert _read_system_prompt(None) == DEFAULT_SYSTEM_PROMPT

    def test_reads_file(self, tmp_path) -> None:
        path = tmp_path / "prompt.txt"
        path.write_text("Be terse.", encoding="utf-8")
        assert _read_system_prompt(str(path)) == "Be terse."

    def test_missing_file_falls_back(self, tmp_path) -> None:
        assert _read_system_prompt(str(tmp_path / "missing.txt")) == DEFAULT_SYSTEM_PROMPT


class TestBuildConfig:
    def test_sampling_options(self) -> None:
        cfg = _config(
            ["-m", "m.gguf", "--temperature", "0", "--top-k", "40", "--top-p", "0.9",
             "--seed", "1", "--stop", "\n", "--stop", "User:", "repl"]
        )
        assert cfg.sampling.temperature == 0.0
        assert cfg.sampling.top_k == 40
        assert cfg.sampling.top_p == 0.9
        assert cfg.sampling.seed == 1
        assert cfg.sampling.stop_sequences == ["\n", "User:"]

    def test_default_history_file_follows_model_name(self) -> None:
        cfg = _config(["-m", "/models/tiny-chat.gguf", "repl"])
        assert cfg.history.file == "tiny-chat.history.json"
        assert cfg.history.incognito is False

    def test_single_never_keeps_history(self) -> None:
        cfg = _config(["-m", "m.gguf", "single", "hello"])
        assert cfg.history.file is None
        assert cfg.history.incognito is True
        assert cfg.history.disabled is True

    def test_model_options(self, tmp_path) -> None:
        prompt = tmp_path / "sys.txt"
        prompt.write_text("Custom.", encoding="utf-8")
        cfg = _config(
            ["-m", "m.gguf", "-t", "imessenger", "--sysprompt", str(prompt),
             "--eos-token", "2", "--context-length", "1024", "-n", "repl"]
        )
        assert cfg.model.template == "imessenger"
        assert cfg.model.system_prompt == "Custom."
        assert cfg.model.eos_token_id == 2
        assert cfg.model.context_length == 1024
        assert cfg.stream is False

    def test_rag_and_tts(self) -> None:
        cfg = _config(["-m", "m.gguf", "--rag", "--rag-db", "/tmp/db", "--tts", "pyttsx3/zira", "repl"])
        assert cfg.retrieval.enabled is True
        assert cfg.retrieval.db_path == "/tmp/db"
        assert cfg.speech.option == "pyttsx3/zira"


class TestLoadSession:
    def test_requires_model_path(self) -> None:
        with pytest.raises(ModelLoadError):
            load_session(AppConfig())

    @patch("vocllm.cli.ChatSession.from_config")
    @patch("vocllm.cli.load_runtime")
    @patch("vocllm.cli.TokenizerAdapter.from_file")
    def test_tokenizer_defaults_to_model_folder(self, mock_tok, mock_load, mock_session) -> None:
        cfg = _config(["-m", "/models/tiny.gguf", "repl"])
        load_session(cfg)
        mock_tok.assert_called_once_with("/models/tokenizer.json")
        mock_load.assert_called_once_with("/models/tiny.gguf", eos_token_id=None, context_length=None)
        assert mock_session.call_args[1]["retriever"] is None
        assert mock_session.call_args[1]["speech"] is None

    @patch("vocllm.cli.ChatSession.from_config")
    @patch("vocllm.cli.load_runtime")
    @patch("vocllm.cli.TokenizerAdapter.from_file")
    @patch("vocllm.cli.ChromaRetriever.from_config", side_effect=RetrievalError("no db"))
    def test_retrieval_failure_disables_rag(self, _retr, _tok, _load, mock_session, caplog) -> None:
        cfg = AppConfig(retrieval=RetrievalConfig(enabled=True)).model_copy(
            update={"model": _config(["-m", "m.gguf", "repl"]).model}
        )
        load_session(cfg)
        assert mock_session.call_args[1]["retriever"] is None
        assert "Retrieval disabled" in caplog.text

    @patch("vocllm.cli.ChatSession.from_config")
    @patch("vocllm.cli.load_runtime")
    @patch("vocllm.cli.TokenizerAdapter.from_file")
    @patch("vocllm.cli.create_speech_output", side_effect=RuntimeError("no audio"))
    def test_speech_failure_disables_speech(self, _speech, _tok, _load, mock_session) -> None:
        cfg = _config(["-m", "m.gguf", "repl"]).model_copy(
            update={"speech": SpeechConfig(option="pyttsx3")}
        )
        load_session(cfg)
        assert mock_session.call_args[1]["speech"] is None

    @patch("vocllm.cli.load_runtime", side_effect=ModelLoadError("bad file"))
    @patch("vocllm.cli.TokenizerAdapter.from_file")
    def test_runtime_error_propagates(self, _tok, _load) -> None:
        with pytest.raises(ModelLoadError):
            load_session(_config(["-m", "m.gguf", "repl"]))


class TestRunTurn:
    def test_streams_reply(self, make_session, runtime, tokenizer, capsys) -> None:
        runtime.script = tokenizer.encode("The answer is 4.")
        result = run_turn(make_session(), "What is 2+2?", AppConfig())
        assert result.outcome is GenerationOutcome.COMPLETED
        assert capsys.readouterr().out == "The answer is 4.\n"

    def test_no_stream_prints_once(self, make_session, runtime, tokenizer, capsys) -> None:
        runtime.script = tokenizer.encode("The answer is 4.")
        run_turn(make_session(), "What is 2+2?", AppConfig(stream=False))
        assert capsys.readouterr().out == "The answer is 4.\n"

    def test_timeout_reports_cancellation(self, make_session, capsys) -> None:
        result = run_turn(make_session(), "What is 2+2?", AppConfig(), timeout=0)
        assert result.outcome is GenerationOutcome.CANCELLED
        assert "[cancelled: timeout]" in capsys.readouterr().err

    def test_warnings_go_to_stderr(self, make_session, runtime, tokenizer, capsys) -> None:
        retriever = MagicMock()
        retriever.retrieve.side_effect = RetrievalError("index offline")
        runtime.script = tokenizer.encode("ok")
        run_turn(make_session(retriever=retriever), "hi", AppConfig())
        assert "[warning] retrieval unavailable: index offline" in capsys.readouterr().err

    def test_uses_cancellation_token(self) -> None:
        session = MagicMock()
        stream = session.submit_turn.return_value
        stream.__iter__.return_value = iter([])
        stream.warnings = []
        stream.result.outcome = GenerationOutcome.COMPLETED
        run_turn(session, "hi", AppConfig(), timeout=5)
        assert isinstance(session.submit_turn.call_args[1]["cancel"], CancellationToken)

    def test_missing_result_raises(self) -> None:
        session = MagicMock()
        stream = session.submit_turn.return_value
        stream.__iter__.return_value = iter([])
        stream.result = None
        with pytest.raises(VocllmError, match="without a result"):
            run_turn(session, "hi", AppConfig())


class TestRepl:
    @patch("vocllm.cli.run_turn")
    @patch("builtins.input", side_effect=["", "hello", "/reset", "quit"])
    def test_dispatches_commands(self, _input, mock_run, capsys) -> None:
        session = MagicMock()
        cfg = AppConfig()
        repl(session, cfg, timeout=3)
        mock_run.assert_called_once_with(session, "hello", cfg, 3)
        session.reset.assert_called_once()
        out = capsys.readouterr().out
        assert "Conversation reset." in out
        assert "Goodbye!" in out

    @patch("builtins.input", side_effect=EOFError)
    def test_eof_exits(self, _input, capsys) -> None:
        repl(MagicMock(), AppConfig())
        assert "Goodbye!" in capsys.readouterr().out


class TestIngest:
    @patch("vocllm.cli.ingest_folder", return_value=3)
    def test_reports_chunks(self, mock_ingest, capsys) -> None:
        cfg = AppConfig()
        ingest("/some/folder", cfg)
        mock_ingest.assert_called_once_with("/some/folder", cfg.retrieval, cfg.chunk)
        assert "3 chunks stored" in capsys.readouterr().out

    @patch("vocllm.cli.ingest_folder", return_value=0)
    def test_no_documents_found(self, _ingest, capsys) -> None:
        ingest("/empty/folder")
        assert "No supported documents found" in capsys.readouterr().out


class TestMain:
    def test_no_command_prints_help(self, capsys) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 1

    @patch("vocllm.cli.ingest")
    def test_ingest_command(self, mock_ingest) -> None:
        main(["ingest", "--folder", "/docs"])
        assert mock_ingest.call_args[0][0] == "/docs"

    @patch("vocllm.cli.load_session", side_effect=ModelLoadError("missing"))
    def test_model_load_error_exits(self, _load, capsys) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(["-m", "missing.gguf", "single", "hi"])
        assert excinfo.value.code == 1
        assert "Error: missing" in capsys.readouterr().err

    def test_single_prints_reply(self, make_session, runtime, tokenizer, capsys) -> None:
        runtime.script = tokenizer.encode("The answer is 4.")
        with patch("vocllm.cli.load_session", return_value=make_session()):
            main(["-m", "m.gguf", "single", "What is 2+2?"])
        assert "The answer is 4." in capsys.readouterr().out

    def test_single_failure_exits_nonzero(self, make_session) -> None:
        session = make_session()
        failed = MagicMock(outcome=GenerationOutcome.FAILED)
        with patch("vocllm.cli.load_session", return_value=session), patch(
            "vocllm.cli.run_turn", return_value=failed
        ):
            with pytest.raises(SystemExit) as excinfo:
                main(["-m", "m.gguf", "single", "hi"])
        assert excinfo.value.code == 1

    def test_repl_saves_history(self, make_session, runtime, tokenizer, tmp_path) -> None:
        history_file = tmp_path / "chat.json"
        session = make_session()
        runtime.script = tokenizer.encode("Hi!")
        with patch("vocllm.cli.load_session", return_value=session), patch(
            "builtins.input", side_effect=["Hello", "quit"]
        ):
            main(["-m", "m.gguf", "--history-file", str(history_file), "repl"])
        assert history_file.exists()
        assert "Hello" in history_file.read_text(encoding="utf-8")

    def test_incognito_does_not_save(self, make_session, runtime, tokenizer, tmp_path) -> None:
        history_file = tmp_path / "chat.json"
        runtime.script = tokenizer.encode("Hi!")
        with patch("vocllm.cli.load_session", return_value=make_session()), patch(
            "builtins.input", side_effect=["Hello", "quit"]
        ):
            main(["-m", "m.gguf", "-i", "--history-file", str(history_file), "repl"])
        assert not history_file.exists()

    def test_existing_history_is_loaded(self, make_session, tmp_path) -> None:
        history_file = tmp_path / "chat.json"
        history_file.write_text(
            '{"version": 1, "turns": [{"role": "user", "content": "earlier"}]}', encoding="utf-8"
        )
        with patch("vocllm.cli.load_session", return_value=make_session()) as mock_load, patch(
            "builtins.input", side_effect=["quit"]
        ):
            main(["-m", "m.gguf", "--history-file", str(history_file), "repl"])
        history = mock_load.call_args[0][1]
        assert [t.content for t in history] == ["earlier"]
