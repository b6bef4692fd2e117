"""Configuration management using Pydantic for validation."""

from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_PROVIDERS = ("openai", "anthropic")


class LLMConfig(BaseSettings):
    """LLM configuration."""

    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4.1-mini"
    temperature: float = 0.3
    max_tokens: int = 4000
    timeout: int = 60
    retry_attempts: int = 3
    malformed_retries: int = 1
    backoff_base_seconds: float = 1.0
    max_backoff_seconds: float = 8.0
    base_url: str | None = None

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Temperature must be between 0 and 1")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retry_attempts must be at least 1")
        return v


class ChunkingConfig(BaseSettings):
    """Chunking and input validation configuration."""

    default_chunk_size: int = 5000
    min_chunk_size: int = 100
    max_chunk_size: int = 50_000
    max_text_length: int = 100_000

    @field_validator("default_chunk_size", "min_chunk_size", "max_chunk_size", "max_text_length")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Chunking sizes must be positive")
        return v


class ExtractionConfig(BaseSettings):
    """Entity extraction configuration."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    prompts_path: Optional[str] = None  # None uses the packaged prompts.yaml
    max_entities_per_chunk: int = 50
    default_confidence: float = 70.0
    context_max_length: int = 300
    max_extra_attributes: int = 20


class ModelRate(BaseModel):
    """Per-1K-token prices for one model."""

    input_per_1k: float
    output_per_1k: float

    def input_rate(self) -> Decimal:
        return Decimal(str(self.input_per_1k))

    def output_rate(self) -> Decimal:
        return Decimal(str(self.output_per_1k))


class PricingConfig(BaseSettings):
    """Token pricing and pre-flight estimation constants."""

    models: Dict[str, ModelRate] = Field(
        default_factory=lambda: {
            "gpt-4": ModelRate(input_per_1k=0.03, output_per_1k=0.06),
            "gpt-4o": ModelRate(input_per_1k=0.0025, output_per_1k=0.01),
            "gpt-4.1-mini": ModelRate(input_per_1k=0.0004, output_per_1k=0.0016),
            "claude-3-5-sonnet-20241022": ModelRate(input_per_1k=0.003, output_per_1k=0.015),
        }
    )
    default_rate: ModelRate = Field(
        default_factory=lambda: ModelRate(input_per_1k=0.03, output_per_1k=0.06)
    )
    chars_per_token: int = 4
    prompt_overhead_tokens: int = 500
    response_allowance_tokens: int = 2000
    input_token_share: float = 0.7
    entities_per_chunk: int = 15
    seconds_per_chunk: int = 5

    @field_validator("input_token_share")
    @classmethod
    def validate_share(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("input_token_share must be between 0 and 1")
        return v

    def rate_for(self, model: str | None) -> ModelRate:
        """Return the rate for a model, falling back to the default rate."""
        if model and model in self.models:
            return self.models[model]
        return self.default_rate

    def cost_for(self, model: str | None, prompt_tokens: int, completion_tokens: int) -> Decimal:
        """Price actual provider usage in USD."""
        rate = self.rate_for(model)
        cost = (Decimal(prompt_tokens) / 1000) * rate.input_rate() + (
            Decimal(completion_tokens) / 1000
        ) * rate.output_rate()
        return cost.quantize(Decimal("0.000001"))


class DuplicateDetectionConfig(BaseSettings):
    """Duplicate detection configuration (scores on a 0-100 scale)."""

    exact_score: float = 100.0
    fuzzy_threshold: float = 85.0
    alias_score: float = 95.0
    semantic_threshold: float = 80.0
    max_matches_per_candidate: int = 5
    match_across_types: bool = False
    enable_semantic_matching: bool = False
    fuzzy_weights: Dict[str, float] = Field(
        default_factory=lambda: {"levenshtein": 0.4, "indel": 0.3, "jaro_winkler": 0.3}
    )
    auto_flag_similarity: float = 90.0
    auto_flag_confidence: float = 80.0
    rules_file: Optional[str] = None

    @field_validator(
        "exact_score",
        "fuzzy_threshold",
        "alias_score",
        "semantic_threshold",
        "auto_flag_similarity",
        "auto_flag_confidence",
    )
    @classmethod
    def validate_score(cls, v: float) -> float:
        if not 0 <= v <= 100:
            raise ValueError("Scores and thresholds must be between 0 and 100")
        return v

    @field_validator("fuzzy_weights")
    @classmethod
    def validate_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        expected = {"levenshtein", "indel", "jaro_winkler"}
        if set(v) != expected:
            raise ValueError(f"fuzzy_weights must define exactly {sorted(expected)}")
        if abs(sum(v.values()) - 1.0) > 1e-6:
            raise ValueError("fuzzy_weights must sum to 1.0")
        return v


class CurationConfig(BaseSettings):
    """Review and materialization configuration."""

    enable_audit_trail: bool = True
    audit_path: str = "logs/curation_audit.jsonl"
    default_per_page: int = 25
    max_per_page: int = 100


class PipelineConfig(BaseSettings):
    """Pipeline configuration."""

    max_workers: int = 3
    persist_retries: int = 1
    heartbeat_seconds: float = 15.0

    @field_validator("max_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_workers must be at least 1")
        return v


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "text"] = "text"
    file: str | None = "logs/saga_extraction.log"
    rotation: str = "10 MB"
    retention: int = 3
    compression: str = "zip"


class DatabaseConfig(BaseSettings):
    """Database configuration from environment variables."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    database_url: str = Field(default="sqlite:///data/saga_extraction.db")
    sql_echo: bool = Field(default=False)

    # Embedding (semantic duplicate matching)
    embedding_model: str = Field(default="BAAI/bge-small-en-v1.5")
    embedding_dimension: int = Field(default=384)
    embedding_batch_size: int = Field(default=32)


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    # Configuration sections
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    duplicates: DuplicateDetectionConfig = Field(default_factory=DuplicateDetectionConfig)
    curation: CurationConfig = Field(default_factory=CurationConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Environment variables
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win).

        This is used to apply environment-derived overrides on top of YAML defaults.
        """
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            yaml.YAMLError: If YAML file is invalid
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        # Nested BaseSettings do not pick up plain env vars (e.g. DATABASE_URL) through
        # the parent model, so DatabaseConfig overrides are computed separately.
        env_overrides = cls().model_dump(exclude_defaults=True)

        db_env_overrides = DatabaseConfig().model_dump(exclude_defaults=True)
        if db_env_overrides:
            env_overrides["database"] = cls._deep_merge_dict(
                (
                    yaml_config.get("database", {})
                    if isinstance(yaml_config.get("database", {}), dict)
                    else {}
                ),
                db_env_overrides,
            )

        merged = cls._deep_merge_dict(yaml_config, env_overrides)

        return cls(**merged)

    def api_key_for(self, provider: str) -> str | None:
        """Return the configured API key for a provider, if any."""
        if provider == "openai":
            return self.openai_api_key or None
        if provider == "anthropic":
            return self.anthropic_api_key or None
        return None

    def validate_config(self) -> None:
        """Validate cross-section settings.

        Raises:
            ValueError: If configuration is invalid
        """
        chunking = self.chunking
        if chunking.min_chunk_size > chunking.max_chunk_size:
            raise ValueError(
                f"min_chunk_size ({chunking.min_chunk_size}) exceeds "
                f"max_chunk_size ({chunking.max_chunk_size})"
            )
        if not chunking.min_chunk_size <= chunking.default_chunk_size <= chunking.max_chunk_size:
            raise ValueError(
                f"default_chunk_size {chunking.default_chunk_size} outside "
                f"[{chunking.min_chunk_size}, {chunking.max_chunk_size}]"
            )

        if self.duplicates.alias_score > self.duplicates.exact_score:
            raise ValueError("alias_score must not exceed exact_score")

        provider = self.extraction.llm.provider
        if not self.api_key_for(provider):
            # Provider SDKs also read their own env vars, so this is not fatal.
            logger.warning("No API key configured for provider {}", provider)


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        Loaded and validated Config instance
    """
    config = Config.from_yaml(yaml_path)
    config.validate_config()
    return config
