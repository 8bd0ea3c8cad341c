"""Configuration loading and validation."""
import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models.schema import CouncilMember, FallbackStrategy, NegotiationMode

# Pattern: ${VAR_NAME}
_ENV_PATTERN = r"\$\{([^}]+)\}"


def _resolve_env(value: str, field_name: str, optional: bool) -> Optional[str]:
    """Substitute ${VAR} references, returning None for missing optional values."""
    missing = False

    def replacer(match):
        nonlocal missing
        env_var = match.group(1)
        resolved = os.getenv(env_var)
        if resolved is None:
            if optional:
                missing = True
                return ""
            raise ValueError(
                f"Environment variable '{env_var}' is not set. "
                f"Required for {field_name} configuration."
            )
        return resolved

    result = re.sub(_ENV_PATTERN, replacer, value)
    if missing:
        return None
    return result


class HTTPAdapterConfig(BaseModel):
    """Configuration for HTTP-based provider adapter."""

    type: Literal["openrouter", "ollama", "openai"]
    base_url: str
    api_key: Optional[str] = None
    headers: Optional[dict[str, str]] = None
    timeout: int = 60

    @field_validator("api_key", "base_url")
    @classmethod
    def resolve_env_vars(cls, v: Optional[str], info) -> Optional[str]:
        """Resolve ${ENV_VAR} references in string fields.

        A missing variable in api_key degrades to None so the adapter can still
        be constructed (requests will then fail with an auth error). A missing
        variable in base_url is a configuration error.
        """
        if v is None:
            return v
        return _resolve_env(v, info.field_name, optional=info.field_name == "api_key")


class IterativeConsensusConfig(BaseModel):
    """Per-call negotiation settings. Never mutated by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    max_rounds: int = Field(default=5, ge=1, le=10)
    agreement_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    early_termination_enabled: bool = True
    early_termination_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    negotiation_mode: NegotiationMode = "parallel"
    per_round_timeout: float = Field(
        default=30.0, gt=0, description="Upper bound in seconds for each member call"
    )
    fallback_strategy: FallbackStrategy = "consensus-extraction"
    human_escalation_enabled: bool = False
    example_count: int = Field(default=2, ge=0, le=10)
    randomization_seed: Optional[int] = None
    embedding_model: str = "text-embedding-3-large"
    prompt_template: Optional[str] = Field(
        default=None,
        description=(
            "Optional template with {{query}}, {{responses}}, {{examples}} and "
            "{{own_position}} placeholders"
        ),
    )


class CouncilConfig(BaseModel):
    """Council membership."""

    members: list[CouncilMember] = Field(..., min_length=1)

    @field_validator("members")
    @classmethod
    def unique_member_ids(cls, v: list[CouncilMember]) -> list[CouncilMember]:
        """Reject duplicate member ids."""
        ids = [m.id for m in v]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate council member ids: {', '.join(duplicates)}")
        return v


class SimilarityConfig(BaseModel):
    """Similarity measurement backend configuration."""

    backend: Literal["embedding", "sentence_transformer", "term_frequency"] = "embedding"
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    timeout: int = Field(default=30, ge=1, le=300)
    failure_threshold: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Consecutive upstream failures before switching to term-frequency",
    )
    cache_size: int = Field(default=500, ge=10, le=10000)
    sentence_transformer_model: str = "all-MiniLM-L6-v2"

    @field_validator("api_key", "base_url")
    @classmethod
    def resolve_env_vars(cls, v: Optional[str], info) -> Optional[str]:
        """Resolve ${ENV_VAR} references (missing api key degrades to None)."""
        if v is None:
            return v
        return _resolve_env(v, info.field_name, optional=info.field_name == "api_key")


class PersistenceConfig(BaseModel):
    """SQLite persistence for rounds, decisions, escalations and examples."""

    enabled: bool = Field(True, description="Persist rounds and decisions")
    db_path: str = Field("council.db", description="Path to SQLite database")

    @field_validator("db_path")
    @classmethod
    def resolve_db_path(cls, v: str) -> str:
        """
        Resolve db_path to an absolute path relative to the project root.

        Examples:
            "council.db" → "/path/to/project/council.db"
            "/tmp/foo.db" → "/tmp/foo.db" (unchanged)
            "${DATA_DIR}/council.db" → "/var/data/council.db"
            ":memory:" → ":memory:" (unchanged)
        """
        if v == ":memory:":
            return v

        path = Path(_resolve_env(v, "db_path", optional=False))
        if not path.is_absolute():
            # This file is at: project_root/models/config.py
            project_root = Path(__file__).parent.parent
            path = (project_root / path).resolve()
        return str(path)


class EscalationConfig(BaseModel):
    """Human escalation queue settings."""

    rate_limit_per_hour: int = Field(default=5, ge=1, le=1000)


class LoggingConfig(BaseModel):
    """Logging setup used by the CLI entry point."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Optional[str] = None


class Config(BaseModel):
    """Root configuration model."""

    version: str
    adapters: dict[str, HTTPAdapterConfig]
    council: CouncilConfig
    consensus: IterativeConsensusConfig = Field(default_factory=IterativeConsensusConfig)
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def members_reference_known_adapters(self) -> "Config":
        """Every council member must name a configured adapter."""
        unknown = [
            m.id for m in self.council.members if m.provider not in self.adapters
        ]
        if unknown:
            raise ValueError(
                f"Council members reference unknown adapters: {', '.join(unknown)}. "
                f"Configured adapters: {', '.join(self.adapters) or 'none'}"
            )
        return self


def load_config(path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file (default: config.yaml)

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValidationError: If config is invalid
    """
    # Load environment variables from .env file (if it exists)
    load_dotenv()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f)

    return Config(**data)
