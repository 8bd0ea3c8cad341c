"""Unit tests for cli/council.py Click commands.

Covers:
- 'council trend': convergence analysis output
- 'council synthesize': thread loading and decision output
- 'council escalations': listing and resolving the review queue
- build_orchestrator wiring for persistence on and off
"""

import asyncio
import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from cli.council import build_orchestrator, council
from deliberation.fallback import FallbackSynthesizer
from deliberation.orchestrator import RoundOrchestrator
from deliberation.prompt_builder import PromptBuilder
from models.config import Config
from persistence.escalation import (NullEscalationService,
                                    StorageEscalationService)
from persistence.event_sink import NullEventSink, StorageEventSink
from persistence.examples import ExampleRepository, StaticExampleSource
from persistence.storage import CouncilStorage
from tests.conftest import MockGateway, ScriptedMeasurer, make_thread

# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def cli_runner():
    """Create Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_data(tmp_path):
    return {
        "version": "1.0",
        "adapters": {"local": {"type": "ollama", "base_url": "http://localhost:11434"}},
        "council": {
            "members": [
                {"id": "a", "provider": "local", "model": "llama3"},
                {"id": "b", "provider": "local", "model": "mistral", "weight": 0.5},
            ]
        },
        "similarity": {"backend": "term_frequency"},
        "persistence": {"enabled": True, "db_path": str(tmp_path / "council.db")},
        "logging": {"level": "WARNING"},
    }


@pytest.fixture
def config_file(tmp_path, config_data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config_data))
    return path


@pytest.fixture
def thread_file(tmp_path):
    path = tmp_path / "thread.json"
    thread = make_thread(
        {"a": "Use PostgreSQL for the orders service.", "b": "PostgreSQL fits the orders service."}
    )
    path.write_text(thread.model_dump_json())
    return path


# ============================================================================
# trend
# ============================================================================


class TestTrendCommand:
    """Tests for 'council trend'."""

    def test_converging_history(self, cli_runner):
        result = cli_runner.invoke(council, ["trend", "0.5", "0.6", "0.7", "-t", "0.9"])

        assert result.exit_code == 0
        output = json.loads(result.output)
        assert output["direction"] == "converging"
        assert output["deadlock_risk"] == "low"
        assert output["deadlocked"] is False
        assert output["velocity"] == pytest.approx(0.1)

    def test_flat_history_is_deadlocked(self, cli_runner):
        result = cli_runner.invoke(council, ["trend", "0.6", "0.6", "0.6"])

        assert result.exit_code == 0
        output = json.loads(result.output)
        assert output["deadlocked"] is True
        assert output["deadlock_risk"] == "high"
        assert output["predicted_rounds"] is None

    def test_requires_values(self, cli_runner):
        result = cli_runner.invoke(council, ["trend"])
        assert result.exit_code != 0


# ============================================================================
# synthesize
# ============================================================================


class TestSynthesizeCommand:
    """Tests for 'council synthesize'."""

    def _orchestrator(self, config_path):
        from models.config import load_config

        config = load_config(str(config_path))
        orchestrator = RoundOrchestrator(
            gateway=MockGateway(),
            measurer=ScriptedMeasurer([0.9]),
            prompt_builder=PromptBuilder(),
            fallback=FallbackSynthesizer(),
            members=config.council.members,
        )
        return orchestrator, None

    def test_round_zero_consensus(self, cli_runner, config_file, thread_file):
        with patch("cli.council.build_orchestrator", return_value=self._orchestrator(config_file)):
            result = cli_runner.invoke(
                council,
                [
                    "synthesize",
                    "--thread",
                    str(thread_file),
                    "--query",
                    "Which database?",
                    "--config",
                    str(config_file),
                ],
            )

        assert result.exit_code == 0, result.output
        decision = json.loads(result.output)
        assert decision["synthesis_strategy"] == "iterative-consensus"
        assert decision["confidence"] == "high"
        assert decision["contributing_members"] == ["a", "b"]
        assert decision["iterative_consensus_metadata"]["total_rounds"] == 0

    def test_empty_thread_exits_with_error(self, cli_runner, config_file, tmp_path):
        empty = tmp_path / "empty.json"
        empty.write_text('{"rounds": []}')

        with patch("cli.council.build_orchestrator", return_value=self._orchestrator(config_file)):
            result = cli_runner.invoke(
                council,
                ["synthesize", "--thread", str(empty), "-q", "Which database?", "--config", str(config_file)],
            )

        assert result.exit_code == 1
        assert "Round 0" in result.output

    def test_invalid_thread_file(self, cli_runner, config_file, tmp_path):
        broken = tmp_path / "broken.json"
        broken.write_text('{"rounds": "nope"}')

        result = cli_runner.invoke(
            council,
            ["synthesize", "--thread", str(broken), "-q", "Which database?", "--config", str(config_file)],
        )

        assert result.exit_code == 1
        assert "Invalid thread file" in result.output

    def test_missing_config(self, cli_runner, thread_file, tmp_path):
        result = cli_runner.invoke(
            council,
            [
                "synthesize",
                "--thread",
                str(thread_file),
                "-q",
                "Which database?",
                "--config",
                str(tmp_path / "missing.yaml"),
            ],
        )

        assert result.exit_code == 1
        assert "Error loading config" in result.output


# ============================================================================
# escalations
# ============================================================================


class TestEscalationsCommand:
    """Tests for 'council escalations'."""

    def _queue(self, db_path, request_id):
        storage = CouncilStorage(db_path)
        try:
            asyncio.run(
                StorageEscalationService(storage).queue_escalation(request_id, "Deadlock detected")
            )
            return storage.list_escalations("pending")[-1]["id"]
        finally:
            storage.close()

    def test_empty_queue(self, cli_runner, config_file):
        result = cli_runner.invoke(council, ["escalations", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "No pending escalations." in result.output

    def test_lists_pending(self, cli_runner, config_file, config_data):
        escalation_id = self._queue(config_data["persistence"]["db_path"], "req-42")

        result = cli_runner.invoke(council, ["escalations", "--config", str(config_file)])

        assert result.exit_code == 0
        assert escalation_id in result.output
        assert "req-42" in result.output
        assert "Deadlock detected" in result.output

    def test_resolve(self, cli_runner, config_file, config_data):
        escalation_id = self._queue(config_data["persistence"]["db_path"], "req-42")

        result = cli_runner.invoke(
            council,
            [
                "escalations",
                "--config",
                str(config_file),
                "--resolve",
                escalation_id,
                "--reviewer",
                "dana",
                "--note",
                "Chose PostgreSQL",
            ],
        )

        assert result.exit_code == 0
        assert f"Resolved escalation {escalation_id}" in result.output
        listing = cli_runner.invoke(council, ["escalations", "--config", str(config_file)])
        assert "No pending escalations." in listing.output

    def test_resolve_requires_reviewer(self, cli_runner, config_file):
        result = cli_runner.invoke(
            council, ["escalations", "--config", str(config_file), "--resolve", "abc"]
        )
        assert result.exit_code == 1
        assert "--reviewer is required" in result.output

    def test_resolve_unknown_id(self, cli_runner, config_file):
        result = cli_runner.invoke(
            council,
            ["escalations", "--config", str(config_file), "--resolve", "abc", "--reviewer", "dana"],
        )
        assert result.exit_code == 1
        assert "Escalation not found: abc" in result.output

    def test_requires_persistence(self, cli_runner, tmp_path, config_data):
        config_data["persistence"]["enabled"] = False
        path = tmp_path / "no-db.yaml"
        path.write_text(yaml.safe_dump(config_data))

        result = cli_runner.invoke(council, ["escalations", "--config", str(path)])

        assert result.exit_code == 1
        assert "require persistence" in result.output


# ============================================================================
# build_orchestrator
# ============================================================================


class TestBuildOrchestrator:
    """Tests for wiring from configuration."""

    def test_with_persistence(self, config_data):
        orchestrator, storage = build_orchestrator(Config(**config_data))
        try:
            assert isinstance(storage, CouncilStorage)
            assert isinstance(orchestrator.event_sink, StorageEventSink)
            assert isinstance(orchestrator.escalation, StorageEscalationService)
            assert isinstance(orchestrator.example_source, ExampleRepository)
            assert set(orchestrator.members) == {"a", "b"}
            assert orchestrator.fallback.weights == {"a": 1.0, "b": 0.5}
        finally:
            storage.close()

    def test_without_persistence(self, config_data):
        config_data["persistence"]["enabled"] = False

        orchestrator, storage = build_orchestrator(Config(**config_data))

        assert storage is None
        assert isinstance(orchestrator.event_sink, NullEventSink)
        assert isinstance(orchestrator.escalation, NullEscalationService)
        assert isinstance(orchestrator.example_source, StaticExampleSource)
