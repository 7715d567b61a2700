from __future__ import annotations

from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env once at module import; every BaseSettings subclass sees the env vars
load_dotenv()


class DatabaseSettings(BaseSettings):
    """SQLite graph store settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: Path = Path("data/graphmem.db")
    echo: bool = False
    busy_timeout_s: float = Field(5.0, gt=0)


class CompletionSettings(BaseSettings):
    """Chat completion endpoint settings. Env vars prefixed with COMPLETION_.

    Any OpenAI-compatible endpoint works (OpenAI, OpenRouter, Ollama).
    """

    model_config = SettingsConfigDict(env_prefix="COMPLETION_")

    api_key: str  # required
    base_url: str | None = None
    classifier_model: str = "gpt-4o-mini"
    agent_model: str = "gpt-4o-mini"
    timeout_s: float = 60.0
    max_retries: int = Field(3, ge=0)
    base_delay_s: float = 1.0
    classifier_temperature: float = 0.1
    retry_temperature: float = 0.3

    @field_validator("classifier_temperature", "retry_temperature")
    @classmethod
    def _validate_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError(f"temperature must be in [0.0, 2.0], got {v}")
        return v


class EmbeddingSettings(BaseSettings):
    """Embedding endpoint settings. Env vars prefixed with EMBEDDING_."""

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_")

    api_key: str = ""  # empty = reuse COMPLETION_API_KEY
    base_url: str | None = None
    model: str = "text-embedding-3-small"
    dimensions: int | None = None
    batch_size: int = Field(128, gt=0)
    timeout_s: float = 30.0


class RetrievalSettings(BaseSettings):
    """Retrieval pipeline tuning. Env vars prefixed with RETRIEVAL_.

    The numeric defaults are operational constants observed to work well,
    not proven optima. Override per deployment.
    """

    model_config = SettingsConfigDict(env_prefix="RETRIEVAL_")

    # Per-section caps applied by the assembler
    max_entities: int = 15
    max_relationships_per_entity: int = 8
    max_facts: int = 30
    max_instructions: int = 15
    max_events: int = 15
    max_plans: int = 10

    # Safety net #1: instruction pre-fetch with template dedup
    instruction_prefetch_multiplier: int = 10
    template_max_per_group: int = 2
    template_max_words: int = 15
    # Safety net #2: broad embedding fallback
    broad_search_top_k: int = 20
    # Safety net #3: global instruction auto-inject
    global_scope_threshold: float = 0.8
    global_cosine_floor: float = 0.15
    global_score_floor: float = 0.6

    # Ranking
    instruction_tie_band: float = 0.05
    default_score: float = 0.5
    # Scope assumed for instructions stored without one, in the tie-break
    default_scope: float = 0.5

    # Tool loop
    max_tool_iterations: int = Field(8, gt=0, le=50)
    max_consecutive_errors: int = 3
    max_result_chars: int = 4000
    entity_search_top_k: int = 5
    tool_loop_timeout_s: float = 30.0

    # Follow-up path
    followup_min_score: float = 0.25
    followup_broad_top_k: int = 10

    planner_temperature: float = 0.2
    curation_temperature: float = 0.0
    timeout_s: float = 60.0

    @model_validator(mode="after")
    def _validate(self) -> Self:
        for name in (
            "global_scope_threshold",
            "global_cosine_floor",
            "global_score_floor",
            "instruction_tie_band",
            "default_score",
            "default_scope",
            "followup_min_score",
        ):
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be in [0.0, 1.0], got {value}")
        if self.template_max_per_group < 1:
            raise ValueError(
                f"template_max_per_group must be >= 1, got {self.template_max_per_group}"
            )
        return self


class StorageSettings(BaseSettings):
    """Storage pipeline settings. Env vars prefixed with STORAGE_."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    reconcile_threshold: float = 0.45
    reconcile_top_k: int = 10
    force_store_match_chars: int = Field(30, gt=0)
    max_tool_iterations: int = Field(8, gt=0, le=50)
    tool_loop_timeout_s: float = 60.0
    timeout_s: float = 90.0

    @field_validator("reconcile_threshold")
    @classmethod
    def _validate_threshold(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError(f"STORAGE_RECONCILE_THRESHOLD must be in [0.0, 1.0], got {v}")
        return v


class MemorySettings(BaseSettings):
    """Conversation state and trace settings. Env vars prefixed with MEMORY_."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_")

    state_path: Path = Path("data/conversation_state.json")
    max_turns: int = Field(5, gt=0)
    summary_max_chars: int = 400
    summary_max_lines: int = 3
    debug_dir: Path | None = None  # unset = no trace files


class LoggingSettings(BaseSettings):
    """Logging settings. Env vars prefixed with LOG_."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    json_output: bool = True
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed} (got '{v}')")
        return v.upper()


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    completion: CompletionSettings = Field(default_factory=CompletionSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on missing required fields."""
    return Settings()
