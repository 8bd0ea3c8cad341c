"""CLI commands for running and inspecting council negotiations.

Wraps the RoundOrchestrator for one-off runs from a saved deliberation
thread, the convergence analysis for ad-hoc similarity histories, and the
human escalation queue.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from pydantic import ValidationError

from adapters import create_pool
from deliberation.convergence import ConvergenceDetector
from deliberation.fallback import FallbackSynthesizer
from deliberation.orchestrator import RoundOrchestrator
from deliberation.prompt_builder import PromptBuilder
from deliberation.similarity import SimilarityMeasurer
from models.config import Config, load_config
from models.schema import DeliberationThread, UserRequest
from persistence.escalation import NullEscalationService, StorageEscalationService
from persistence.event_sink import NullEventSink, StorageEventSink
from persistence.examples import ExampleRepository, StaticExampleSource
from persistence.storage import CouncilStorage

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Log to stderr, and to ``log_file`` when given."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level), format=LOG_FORMAT, handlers=handlers, force=True
    )


def build_orchestrator(config: Config) -> Tuple[RoundOrchestrator, Optional[CouncilStorage]]:
    """
    Wire a RoundOrchestrator from configuration.

    Returns the orchestrator and the storage it writes to (None when
    persistence is disabled). The caller owns the storage and should close it.
    """
    measurer = SimilarityMeasurer.from_config(
        config.similarity, default_model=config.consensus.embedding_model
    )
    members = config.council.members

    storage = None
    if config.persistence.enabled:
        storage = CouncilStorage(config.persistence.db_path)
        event_sink = StorageEventSink(storage)
        escalation = StorageEscalationService(
            storage, rate_limit=config.escalation.rate_limit_per_hour
        )
        example_source = ExampleRepository(storage)
    else:
        event_sink = NullEventSink()
        escalation = NullEscalationService()
        example_source = StaticExampleSource()

    orchestrator = RoundOrchestrator(
        gateway=create_pool(config.adapters),
        measurer=measurer,
        prompt_builder=PromptBuilder(config.consensus.prompt_template),
        fallback=FallbackSynthesizer({m.id: m.weight for m in members}),
        members=members,
        example_source=example_source,
        event_sink=event_sink,
        escalation=escalation,
    )
    return orchestrator, storage


def _load(config_path: str) -> Config:
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValidationError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)
    configure_logging(config.logging.level, config.logging.log_file)
    return config


@click.group()
def council():
    """Council consensus commands."""
    pass


@council.command()
@click.option(
    "--thread",
    "thread_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file holding the deliberation thread (Round 0 at least)",
)
@click.option("--query", "-q", required=True, help="The user question being answered")
@click.option("--config", "config_path", default="config.yaml", help="Path to config file")
def synthesize(thread_path: str, query: str, config_path: str) -> None:
    """Negotiate a consensus answer from a saved thread.

    Example:
        council synthesize --thread round0.json --query "Which database?"
    """
    config = _load(config_path)

    try:
        thread = DeliberationThread.model_validate_json(Path(thread_path).read_text())
    except ValidationError as e:
        click.echo(f"Invalid thread file: {e}", err=True)
        sys.exit(1)

    orchestrator, storage = build_orchestrator(config)
    request = UserRequest(query=query)

    async def _run():
        try:
            return await orchestrator.synthesize(request, thread, config.consensus)
        finally:
            await orchestrator.drain()

    try:
        decision = asyncio.run(_run())
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        if storage:
            storage.close()

    click.echo(decision.model_dump_json(indent=2))


@council.command()
@click.argument("values", nargs=-1, type=float, required=True)
@click.option(
    "--threshold",
    "-t",
    default=0.8,
    type=float,
    help="Consensus level used to predict remaining rounds",
)
def trend(values: Tuple[float, ...], threshold: float) -> None:
    """Analyse a similarity history.

    Example:
        council trend 0.62 0.70 0.74
    """
    detector = ConvergenceDetector()
    history = list(values)
    analysis = detector.analyze_trend(history, threshold)

    output = analysis.model_dump()
    output["deadlocked"] = detector.is_deadlocked(history)
    # json has no infinity literal
    if output["predicted_rounds"] == float("inf"):
        output["predicted_rounds"] = None
    click.echo(json.dumps(output, indent=2))


@council.command()
@click.option("--config", "config_path", default="config.yaml", help="Path to config file")
@click.option("--resolve", "escalation_id", default=None, help="Escalation id to resolve")
@click.option("--reviewer", default=None, help="Name of the reviewer resolving it")
@click.option("--note", default="", help="Resolution note")
def escalations(
    config_path: str, escalation_id: Optional[str], reviewer: Optional[str], note: str
) -> None:
    """List pending escalations, or resolve one.

    Example:
        council escalations --resolve 3f2a... --reviewer alice --note "Picked option B"
    """
    config = _load(config_path)
    if not config.persistence.enabled:
        click.echo("Escalations require persistence to be enabled.", err=True)
        sys.exit(1)

    storage = CouncilStorage(config.persistence.db_path)
    service = StorageEscalationService(
        storage, rate_limit=config.escalation.rate_limit_per_hour
    )

    try:
        if escalation_id:
            if not reviewer:
                click.echo("--reviewer is required with --resolve", err=True)
                sys.exit(1)
            try:
                asyncio.run(service.resolve_escalation(escalation_id, reviewer, note))
            except KeyError as e:
                click.echo(f"Error: {e.args[0]}", err=True)
                sys.exit(1)
            click.echo(f"Resolved escalation {escalation_id}")
            return

        pending = asyncio.run(service.get_pending_escalations())
        if not pending:
            click.echo("No pending escalations.")
            return
        for item in pending:
            click.echo(
                f"{item['id']}  {item['created_at']:%Y-%m-%d %H:%M}  "
                f"{item['request_id']}  {item['reason']}"
            )
    finally:
        storage.close()


def main():
    council()


if __name__ == "__main__":
    main()
