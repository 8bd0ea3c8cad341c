"""End-to-end negotiation scenarios.

These run the orchestrator with real collaborators (ProviderPool routing,
term-frequency SimilarityMeasurer, in-memory CouncilStorage with the storage
event sink, escalation queue and example repository). Only the provider
calls are scripted.
"""
import pytest

from adapters.pool import ProviderPool
from deliberation.fallback import FallbackSynthesizer
from deliberation.orchestrator import (DEADLOCK_DETECTED, INSUFFICIENT_MEMBERS,
                                       RoundOrchestrator)
from deliberation.prompt_builder import PromptBuilder
from deliberation.similarity import SimilarityMeasurer
from models.schema import CouncilMember
from persistence.escalation import StorageEscalationService
from persistence.event_sink import StorageEventSink
from persistence.examples import ExampleRepository
from tests.conftest import MockGateway, ScriptedMeasurer, make_thread

AGREED = "CORE_ANSWER: Use PostgreSQL for relational data and strong consistency."


def build(storage, providers, members, measurer=None):
    return RoundOrchestrator(
        gateway=ProviderPool(providers),
        measurer=measurer or SimilarityMeasurer(),
        prompt_builder=PromptBuilder(),
        fallback=FallbackSynthesizer(),
        members=members,
        example_source=ExampleRepository(storage),
        event_sink=StorageEventSink(storage),
        escalation=StorageEscalationService(storage),
    )


class TestConvergingCouncil:
    """Council that moves to a shared answer after one reconsideration."""

    @pytest.mark.asyncio
    async def test_consensus_is_persisted(
        self, members, request_, round0_thread, consensus_config, memory_storage
    ):
        gateway = MockGateway(
            {
                "alpha": f"{AGREED}\nEXPLANATION: Mature and well supported.\nAGREE_WITH: NONE",
                "beta": f"{AGREED}\nAGREE_WITH: alpha",
                "gamma": f"{AGREED}\nAGREE_WITH: alpha",
            }
        )
        config = consensus_config.model_copy(update={"example_count": 1})
        orchestrator = build(memory_storage, {"mock": gateway}, members)

        decision = await orchestrator.synthesize(request_, round0_thread, config)
        await orchestrator.drain()
        meta = decision.iterative_consensus_metadata

        assert meta.consensus_achieved is True
        assert meta.total_rounds == 1
        assert meta.similarity_progression[0] < config.agreement_threshold
        assert meta.similarity_progression[1] == 1.0
        assert decision.confidence == "high"
        assert "PostgreSQL" in decision.content

        prompt = gateway.calls_for("beta")[0]
        assert "HOW SIMILAR DISAGREEMENTS WERE RESOLVED:" in prompt
        assert "PostgreSQL recommendation" in prompt
        assert "[gamma]: SQLite is enough for a small app with a single server." in prompt

        assert [r["round_number"] for r in memory_storage.get_rounds("req-1")] == [0, 1]
        responses = memory_storage.get_responses("req-1", round_number=1)
        assert {r["council_member_id"]: r["agrees_with_member_id"] for r in responses} == {
            "alpha": None,
            "beta": "alpha",
            "gamma": "alpha",
        }
        stored = memory_storage.get_decision("req-1")
        assert stored.synthesis_strategy == "iterative-consensus"
        assert stored.iterative_consensus_metadata == meta


    @pytest.mark.asyncio
    async def test_steady_climb_reaches_threshold(
        self, members, request_, round0_thread, consensus_config, memory_storage
    ):
        """Starting at 0.75 and gaining 0.06 per round crosses 0.85 in round 2."""
        gateway = MockGateway()
        orchestrator = build(
            memory_storage, {"mock": gateway}, members, measurer=ScriptedMeasurer([0.75, 0.81, 0.87])
        )

        decision = await orchestrator.synthesize(request_, round0_thread, consensus_config)
        await orchestrator.drain()
        meta = decision.iterative_consensus_metadata

        assert meta.consensus_achieved is True
        assert 0 <= meta.total_rounds <= consensus_config.max_rounds
        assert meta.total_rounds == 2
        assert gateway.call_count == 6
        assert decision.confidence == "medium"
        assert [r.round_number for r in round0_thread.rounds] == [0, 1, 2]
        assert [r["round_number"] for r in memory_storage.get_rounds("req-1")] == [0, 1, 2]


class TestStuckCouncil:
    """Members who never move from their Round 0 answers."""

    @pytest.mark.asyncio
    async def test_deadlock_escalates_and_falls_back(
        self, members, request_, round0_thread, consensus_config, memory_storage
    ):
        positions = {e.council_member_id: e.content for e in round0_thread.rounds[0].exchanges}
        gateway = MockGateway(positions)
        config = consensus_config.model_copy(
            update={"max_rounds": 3, "human_escalation_enabled": True}
        )
        orchestrator = build(memory_storage, {"mock": gateway}, members)

        decision = await orchestrator.synthesize(request_, round0_thread, config)
        await orchestrator.drain()
        meta = decision.iterative_consensus_metadata

        assert meta.fallback_reason == DEADLOCK_DETECTED
        assert meta.human_escalation_triggered is True
        assert len(set(meta.similarity_progression)) == 1
        assert len(round0_thread.rounds) == 4

        expected = FallbackSynthesizer().synthesize(request_, round0_thread, config.fallback_strategy)
        assert decision.content == expected.content

        pending = memory_storage.list_escalations("pending")
        assert len(pending) == 1
        assert pending[0]["request_id"] == "req-1"
        assert pending[0]["reason"].startswith("Deadlock detected after 2 rounds")

    @pytest.mark.asyncio
    async def test_frozen_similarity_hits_round_limit(
        self, members, request_, round0_thread, consensus_config, memory_storage
    ):
        config = consensus_config.model_copy(update={"max_rounds": 2})
        orchestrator = build(
            memory_storage, {"mock": MockGateway()}, members, measurer=ScriptedMeasurer([0.6])
        )

        decision = await orchestrator.synthesize(request_, round0_thread, config)
        await orchestrator.drain()

        assert decision.iterative_consensus_metadata.total_rounds == 2
        assert decision.iterative_consensus_metadata.consensus_achieved is False
        assert decision.agreement_level <= 1.0
        assert memory_storage.get_decision("req-1").content == decision.content


class TestProviderFailures:
    """Failures routed through the provider pool."""

    @pytest.mark.asyncio
    async def test_broken_provider_member_is_dropped(
        self, request_, round0_thread, consensus_config, memory_storage
    ):
        members = [
            CouncilMember(id="alpha", provider="steady", model="a", timeout=5),
            CouncilMember(id="beta", provider="steady", model="b", timeout=5),
            CouncilMember(id="gamma", provider="broken", model="c", timeout=5),
        ]
        steady = MockGateway({"alpha": AGREED, "beta": f"{AGREED}\nAGREE_WITH: alpha"})
        broken = MockGateway({"gamma": None})
        orchestrator = build(memory_storage, {"steady": steady, "broken": broken}, members)

        decision = await orchestrator.synthesize(request_, round0_thread, consensus_config)
        await orchestrator.drain()

        assert decision.iterative_consensus_metadata.consensus_achieved is True
        assert decision.contributing_members == ["alpha", "beta"]
        assert broken.call_count == 1
        assert orchestrator.gateway.get_provider_health("broken").status == "degraded"
        assert orchestrator.gateway.get_provider_health("steady").status == "healthy"

    @pytest.mark.asyncio
    async def test_unconfigured_provider_leaves_too_few_members(
        self, request_, round0_thread, consensus_config, memory_storage
    ):
        members = [
            CouncilMember(id="alpha", provider="steady", model="a", timeout=5),
            CouncilMember(id="beta", provider="nowhere", model="b", timeout=5),
            CouncilMember(id="gamma", provider="nowhere", model="c", timeout=5),
        ]
        orchestrator = build(memory_storage, {"steady": MockGateway()}, members)

        decision = await orchestrator.synthesize(request_, round0_thread, consensus_config)
        await orchestrator.drain()

        assert decision.iterative_consensus_metadata.fallback_reason == INSUFFICIENT_MEMBERS
        assert decision.iterative_consensus_metadata.total_rounds == 1
        # The aborted round is still recorded in the thread
        assert [e.council_member_id for e in round0_thread.rounds[1].exchanges] == ["alpha"]


class TestRoundZero:
    """Round 0 agreement needs no provider calls at all."""

    @pytest.mark.asyncio
    async def test_identical_round_zero(
        self, members, request_, consensus_config, memory_storage
    ):
        thread = make_thread({m.id: "Use PostgreSQL." for m in members})
        gateway = MockGateway()
        orchestrator = build(memory_storage, {"mock": gateway}, members)

        decision = await orchestrator.synthesize(request_, thread, consensus_config)
        await orchestrator.drain()

        assert gateway.call_count == 0
        assert decision.agreement_level == 1.0
        assert decision.iterative_consensus_metadata.total_rounds == 0
        assert decision.iterative_consensus_metadata.quality_score == pytest.approx(1.0)
        assert [r["round_number"] for r in memory_storage.get_rounds("req-1")] == [0]
