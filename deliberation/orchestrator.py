"""Round orchestrator driving council negotiation toward consensus."""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from adapters.base import ProviderGateway
from deliberation.convergence import ConvergenceDetector
from deliberation.fallback import FallbackSynthesizer
from deliberation.prompt_builder import PromptBuilder, sanitize_query
from deliberation.similarity import AGREE_WITH_PATTERN, SimilarityMeasurer
from models.config import IterativeConsensusConfig
from models.schema import (Confidence, ConsensusDecision, CouncilMember,
                           DeliberationThread, Exchange,
                           IterativeConsensusMetadata, NegotiationExample,
                           Round, SimilarityResult, UserRequest)
from persistence.escalation import EscalationService, NullEscalationService
from persistence.event_sink import EventSink, NullEventSink
from persistence.examples import ExampleSource

logger = logging.getLogger(__name__)

INSUFFICIENT_MEMBERS = "Insufficient active members"
DEADLOCK_DETECTED = "Deadlock detected"
MAX_ROUNDS_REACHED = "Maximum rounds reached"

MIN_QUALITY_LENGTH = 100
MAX_QUALITY_LENGTH = 2000


@dataclass
class NegotiationState:
    """Everything one synthesize() call mutates. Never shared between calls."""

    request: UserRequest
    thread: DeliberationThread
    config: IterativeConsensusConfig
    rng: random.Random
    active: List[CouncilMember]
    history: List[float] = field(default_factory=list)
    last_content: Dict[str, str] = field(default_factory=dict)
    examples: List[NegotiationExample] = field(default_factory=list)
    current: List[Exchange] = field(default_factory=list)
    similarity: Optional[SimilarityResult] = None
    rounds_executed: int = 0
    deadlock_detected: bool = False
    escalated: bool = False
    prompt_failed: bool = False

    @property
    def active_ids(self) -> Set[str]:
        return {member.id for member in self.active}

    def drop(self, member_id: str) -> None:
        self.active = [m for m in self.active if m.id != member_id]


def confidence_for(similarity: float) -> Confidence:
    if similarity >= 0.9:
        return "high"
    if similarity >= 0.7:
        return "medium"
    return "low"


def quality_score(final_similarity: float, total_rounds: int) -> float:
    """Blend of final agreement and how quickly it was reached."""
    efficiency = 0.3 / total_rounds if total_rounds > 0 else 0.3
    return max(0.0, min(1.0, 0.7 * final_similarity + efficiency))


def response_quality(content: str) -> float:
    length = len(content)
    if length < MIN_QUALITY_LENGTH:
        return length / MIN_QUALITY_LENGTH
    if length > MAX_QUALITY_LENGTH:
        return MAX_QUALITY_LENGTH / length
    return 1.0


def select_representative(exchanges: Sequence[Exchange]) -> Exchange:
    """Exchange whose length best fits the quality band; first one wins ties."""
    best = exchanges[0]
    best_score = response_quality(best.content)
    for exchange in exchanges[1:]:
        score = response_quality(exchange.content)
        if score > best_score:
            best, best_score = exchange, score
    return best


def parse_references(content: str, member_id: str, known_ids: Set[str]) -> List[str]:
    """Member ids named by an AGREE_WITH line, excluding the author."""
    match = AGREE_WITH_PATTERN.search(content)
    if not match:
        return []
    target = match.group(1).strip(".,;:[]()\"'")
    if target == member_id or target not in known_ids:
        return []
    return [target]


class RoundOrchestrator:
    """
    Runs negotiation rounds over a deliberation thread until the council
    agrees, stalls, or runs out of rounds.

    Round 0 (the members' independent answers) must already be in the
    thread. Each further round shows every active member the others'
    current positions and asks it to reconsider; the average pairwise
    similarity of the answers is tracked round by round. When agreement is
    not reached the collected answers are handed to the FallbackSynthesizer.

    The orchestrator holds collaborators only. All per-call state lives in
    a NegotiationState, so one instance can serve concurrent requests.

    Example:
        orchestrator = RoundOrchestrator(
            gateway=pool,
            measurer=SimilarityMeasurer(),
            prompt_builder=PromptBuilder(),
            fallback=FallbackSynthesizer(),
            members=config.council.members,
        )
        decision = await orchestrator.synthesize(request, thread, config.consensus)
        await orchestrator.drain()
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        measurer: SimilarityMeasurer,
        prompt_builder: PromptBuilder,
        fallback: FallbackSynthesizer,
        members: Sequence[CouncilMember],
        detector: Optional[ConvergenceDetector] = None,
        example_source: Optional[ExampleSource] = None,
        event_sink: Optional[EventSink] = None,
        escalation: Optional[EscalationService] = None,
        rng: Optional[random.Random] = None,
    ):
        self.gateway = gateway
        self.measurer = measurer
        self.prompt_builder = prompt_builder
        self.fallback = fallback
        self.members = {member.id: member for member in members}
        self.detector = detector or ConvergenceDetector()
        self.example_source = example_source
        self.event_sink = event_sink or NullEventSink()
        self.escalation = escalation or NullEscalationService()
        self.rng = rng
        self._background: Set[asyncio.Task] = set()

    async def synthesize(
        self,
        request: UserRequest,
        thread: DeliberationThread,
        config: IterativeConsensusConfig,
    ) -> ConsensusDecision:
        """
        Negotiate toward a single answer for ``request``.

        Negotiation rounds are appended to ``thread`` as they complete.

        Args:
            request: The user query being answered
            thread: Deliberation record holding at least Round 0
            config: Negotiation settings for this call (not mutated)

        Returns:
            ConsensusDecision with iterative consensus metadata attached

        Raises:
            ValueError: If the thread has no Round 0 responses
            RuntimeError: If fallback synthesis fails
        """
        if not thread.rounds or not thread.rounds[0].exchanges:
            raise ValueError(
                f"Request {request.id}: thread must contain Round 0 with at least one response"
            )

        start = time.monotonic()
        state = self._new_state(request, thread, config)
        logger.info(
            f"Starting negotiation for request {request.id}: "
            f"{len(state.active)} active members, max_rounds={config.max_rounds}, "
            f"mode={config.negotiation_mode}"
        )

        try:
            await self._complete_round(state, state.current)

            if len(state.active) < 2:
                return self._fallback(state, INSUFFICIENT_MEMBERS)

            if state.history[-1] >= config.agreement_threshold:
                logger.info(
                    f"Consensus at round 0 for request {request.id} "
                    f"(similarity {state.history[-1]:.3f})"
                )
                return self._consensus(state)

            state.examples = await self._load_examples(state)

            for round_number in range(1, config.max_rounds + 1):
                exchanges = await self._run_round(state)
                state.rounds_executed = round_number

                if len(state.active) < 2:
                    thread.append_round(
                        Round(round_number=len(thread.rounds), exchanges=exchanges)
                    )
                    # Logged without statistics; its answers still feed the fallback
                    self._spawn(
                        self.event_sink.log_round(
                            request.id, len(thread.rounds) - 1, exchanges,
                            similarity=None, trend=None,
                        ),
                        f"round {len(thread.rounds) - 1} of request {request.id}",
                    )
                    logger.warning(
                        f"Round {round_number}: only {len(state.active)} active member(s) left, "
                        "aborting negotiation"
                    )
                    return self._fallback(state, INSUFFICIENT_MEMBERS)

                await self._complete_round(state, exchanges, append=True)
                similarity = state.history[-1]

                logger.info(
                    f"Round {round_number}: similarity {similarity:.3f} "
                    f"(threshold {config.agreement_threshold:.2f})"
                )

                if (
                    config.early_termination_enabled
                    and similarity >= config.early_termination_threshold
                ):
                    logger.info(f"Early termination at round {round_number}")
                    return self._consensus(state)

                if similarity >= config.agreement_threshold:
                    logger.info(f"Consensus reached at round {round_number}")
                    return self._consensus(state)

                if self.detector.is_deadlocked(state.history):
                    state.deadlock_detected = True
                    logger.info(f"Deadlock detected at round {round_number}")
                    if config.human_escalation_enabled and not state.escalated:
                        state.escalated = True
                        self._spawn(
                            self.escalation.queue_escalation(
                                request.id,
                                f"Deadlock detected after {round_number} rounds "
                                f"(similarity {similarity:.2f})",
                            ),
                            f"escalation for request {request.id}",
                        )

            if self.detector.is_deadlocked(state.history):
                return self._fallback(state, DEADLOCK_DETECTED)
            return self._fallback(state, MAX_ROUNDS_REACHED)
        finally:
            thread.total_duration += time.monotonic() - start

    async def drain(self) -> None:
        """Wait for outstanding background logging and escalation tasks."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Round mechanics
    # ------------------------------------------------------------------

    def _new_state(
        self,
        request: UserRequest,
        thread: DeliberationThread,
        config: IterativeConsensusConfig,
    ) -> NegotiationState:
        latest = thread.rounds[-1]
        responded = {e.council_member_id for e in latest.exchanges}
        active = [m for m in self.members.values() if m.id in responded]

        unknown = responded - set(self.members)
        if unknown:
            logger.warning(
                f"Responses from unconfigured members are kept for synthesis only: "
                f"{', '.join(sorted(unknown))}"
            )

        state = NegotiationState(
            request=request,
            thread=thread,
            config=config,
            rng=self.rng or random.Random(config.randomization_seed),
            active=active,
        )
        state.current = [e for e in latest.exchanges if e.council_member_id in state.active_ids]
        for exchange in state.current:
            state.last_content[exchange.council_member_id] = exchange.content
        return state

    async def _complete_round(
        self, state: NegotiationState, exchanges: List[Exchange], append: bool = False
    ) -> None:
        """Record a round's exchanges and similarity, then log it in the background."""
        if append:
            state.thread.append_round(
                Round(round_number=len(state.thread.rounds), exchanges=exchanges)
            )
        state.current = exchanges
        for exchange in exchanges:
            state.last_content[exchange.council_member_id] = exchange.content

        similarity = await self._measure(state, exchanges)
        state.history.append(similarity)

        trend = self.detector.analyze_trend(state.history, state.config.agreement_threshold)
        stats = state.similarity or SimilarityResult(
            matrix=[],
            average_similarity=similarity,
            min_similarity=similarity,
            max_similarity=similarity,
        )
        round_number = len(state.thread.rounds) - 1
        self._spawn(
            self.event_sink.log_round(
                state.request.id, round_number, exchanges, similarity=stats, trend=trend
            ),
            f"round {round_number} of request {state.request.id}",
        )

    async def _measure(self, state: NegotiationState, exchanges: List[Exchange]) -> float:
        """Average pairwise similarity; the previous value is reused on failure."""
        if state.prompt_failed:
            previous = state.history[-1] if state.history else 0.0
            logger.warning(
                f"Round answered without a negotiation prompt, reusing similarity {previous:.3f}"
            )
            state.similarity = None
            return previous

        contents = [e.content.strip() for e in exchanges]
        if len(set(contents)) <= 1:
            state.similarity = None
            return 1.0

        try:
            result = await self.measurer.similarity_matrix(
                [e.council_member_id for e in exchanges],
                [e.content for e in exchanges],
                state.config.embedding_model,
            )
        except Exception as e:
            previous = state.history[-1] if state.history else 0.0
            logger.warning(
                f"Similarity computation failed, reusing {previous:.3f}: {e}", exc_info=True
            )
            state.similarity = None
            return previous

        state.similarity = result
        return result.average_similarity

    async def _load_examples(self, state: NegotiationState) -> List[NegotiationExample]:
        if self.example_source is None or state.config.example_count <= 0:
            return []
        try:
            return await self.example_source.get_relevant_examples(
                state.request.query, state.config.example_count
            )
        except Exception as e:
            logger.warning(f"Could not load negotiation examples: {e}")
            return []

    async def _run_round(self, state: NegotiationState) -> List[Exchange]:
        """Query every active member once. Failed members leave the active set."""
        state.prompt_failed = False
        disagreements, agreements = self._round_context(state)
        timeouts = {
            m.id: min(m.timeout, state.config.per_round_timeout) for m in state.active
        }
        collected: Dict[str, Exchange] = {}

        if state.config.negotiation_mode == "sequential":
            order = list(state.active)
            state.rng.shuffle(order)
            for member in order:
                prior = self._merge(state.current, collected)
                prompt = self._build_prompt(state, member, prior, disagreements, agreements)
                exchange = await self._call_member(state, member, prompt, timeouts[member.id])
                if exchange is not None:
                    collected[member.id] = exchange
        else:
            members = list(state.active)
            prompts = [
                self._build_prompt(state, m, state.current, disagreements, agreements)
                for m in members
            ]
            results = await asyncio.gather(
                *[
                    self._call_member(state, m, p, timeouts[m.id])
                    for m, p in zip(members, prompts)
                ]
            )
            for member, exchange in zip(members, results):
                if exchange is not None:
                    collected[member.id] = exchange

        for member in list(state.active):
            if member.id not in collected:
                state.drop(member.id)

        # Member order, not call order
        return [collected[m.id] for m in state.active]

    @staticmethod
    def _merge(previous: List[Exchange], collected: Dict[str, Exchange]) -> List[Exchange]:
        merged = [collected.get(e.council_member_id, e) for e in previous]
        seen = {e.council_member_id for e in previous}
        merged.extend(e for member_id, e in collected.items() if member_id not in seen)
        return merged

    def _round_context(self, state: NegotiationState):
        if state.similarity is None:
            return [], []
        try:
            matrix = state.similarity.matrix
            return (
                self.prompt_builder.identify_disagreements(state.current, matrix),
                self.prompt_builder.extract_agreements(
                    state.current, matrix, state.config.agreement_threshold
                ),
            )
        except Exception as e:
            logger.warning(f"Could not analyse previous round positions: {e}")
            return [], []

    def _build_prompt(
        self,
        state: NegotiationState,
        member: CouncilMember,
        prior: List[Exchange],
        disagreements: List[str],
        agreements: list,
    ) -> str:
        try:
            return self.prompt_builder.build(
                prior,
                state.last_content.get(member.id),
                state.examples,
                state.request.query,
                disagreements=disagreements,
                agreements=agreements,
            )
        except Exception as e:
            logger.warning(
                f"Prompt building failed for {member.id}, sending the bare query: {e}",
                exc_info=True,
            )
            state.prompt_failed = True
            return sanitize_query(state.request.query)

    async def _call_member(
        self,
        state: NegotiationState,
        member: CouncilMember,
        prompt: str,
        timeout: float,
    ) -> Optional[Exchange]:
        try:
            response = await asyncio.wait_for(
                self.gateway.send_request(member, prompt), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Member {member.id} timed out after {timeout:.1f}s, dropping")
            return None
        except Exception as e:
            logger.error(f"Member {member.id} raised unexpectedly, dropping: {e}", exc_info=True)
            return None

        if not response.success:
            code = response.error.code if response.error else "UNKNOWN_ERROR"
            logger.warning(f"Member {member.id} failed with {code}, dropping")
            return None

        return Exchange(
            council_member_id=member.id,
            content=response.content,
            references_to=parse_references(response.content, member.id, set(self.members)),
            token_usage=response.token_usage,
        )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _consensus(self, state: NegotiationState) -> ConsensusDecision:
        similarity = state.history[-1]
        representative = select_representative(state.current)

        decision = ConsensusDecision(
            content=representative.content,
            confidence=confidence_for(similarity),
            agreement_level=max(0.0, min(1.0, similarity)),
            synthesis_strategy="iterative-consensus",
            contributing_members=[m.id for m in state.active],
            iterative_consensus_metadata=IterativeConsensusMetadata(
                consensus_achieved=True,
                total_rounds=state.rounds_executed,
                fallback_used=False,
                similarity_progression=list(state.history),
                deadlock_detected=state.deadlock_detected,
                human_escalation_triggered=state.escalated,
                quality_score=quality_score(similarity, state.rounds_executed),
            ),
        )
        self._log_decision(state, decision)
        return decision

    def _fallback(self, state: NegotiationState, reason: str) -> ConsensusDecision:
        logger.info(
            f"Falling back to {state.config.fallback_strategy} for request "
            f"{state.request.id}: {reason}"
        )
        synthesized = self.fallback.synthesize(
            state.request, state.thread, state.config.fallback_strategy
        )
        final_similarity = state.history[-1] if state.history else 0.0

        decision = synthesized.model_copy(
            update={
                "iterative_consensus_metadata": IterativeConsensusMetadata(
                    consensus_achieved=False,
                    total_rounds=state.rounds_executed,
                    fallback_used=True,
                    fallback_reason=reason,
                    similarity_progression=list(state.history),
                    deadlock_detected=state.deadlock_detected or reason == DEADLOCK_DETECTED,
                    human_escalation_triggered=state.escalated,
                    quality_score=quality_score(final_similarity, state.rounds_executed),
                )
            }
        )
        self._log_decision(state, decision)
        return decision

    def _log_decision(self, state: NegotiationState, decision: ConsensusDecision) -> None:
        self._spawn(
            self.event_sink.log_decision(state.request.id, decision),
            f"decision for request {state.request.id}",
        )

    def _spawn(self, coro, description: str) -> None:
        """Run ``coro`` detached; its failure is logged, never raised."""
        task = asyncio.create_task(self._guarded(coro, description))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _guarded(coro, description: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"Background task failed ({description}): {e}")
