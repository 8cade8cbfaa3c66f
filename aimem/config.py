"""
Engine Configuration

Configuration dataclasses for aimem: store, validation, embeddings, scoring,
token budget, token cache, context selection and metrics retention.
Includes load_config() for reading a JSON config file with silent fallback
to compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from aimem.errors import ConfigError


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        if isinstance(typ, tuple):
            expected = "|".join(t.__name__ for t in typ)
        else:
            expected = typ.__name__
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


BackendName = Literal["auto", "sqlite", "native-sqlite", "memory"]
VALID_BACKENDS: set = {"auto", "sqlite", "native-sqlite", "memory"}


@dataclass
class StoreConfig:
    """Storage layer configuration."""
    db_path: str = ".aimem/memory.db"
    backend: BackendName = "auto"
    wal_mode: bool = True
    default_limit: int = 50
    max_limit: int = 1000
    auto_recover: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.backend not in VALID_BACKENDS:
            errors.append(f"store.backend: unknown backend {self.backend!r}")
        _check_range(errors, "store.default_limit",
                     self.default_limit, 1, 1000, int)
        _check_range(errors, "store.max_limit",
                     self.max_limit, 1, 100000, int)
        if not errors and self.default_limit > self.max_limit:
            errors.append("store.default_limit: exceeds store.max_limit")
        return errors


@dataclass
class ValidationConfig:
    """Entry validation limits."""
    max_content_bytes: int = 1_000_000
    max_tag_length: int = 100
    batch_size: int = 100

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "validation.max_content_bytes",
                     self.max_content_bytes, 1, 100_000_000, int)
        _check_range(errors, "validation.max_tag_length",
                     self.max_tag_length, 16, 1000, int)
        _check_range(errors, "validation.batch_size",
                     self.batch_size, 1, 100000, int)
        return errors


@dataclass
class EmbeddingConfig:
    """Embedding model configuration."""
    enabled: bool = True
    model_name: str = "all-MiniLM-L6-v2"
    dimensions: int = 384
    batch_size: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "embedding.dimensions",
                     self.dimensions, 8, 8192, int)
        if not errors and self.dimensions % 8:
            errors.append("embedding.dimensions: must be a multiple of 8")
        _check_range(errors, "embedding.batch_size",
                     self.batch_size, 1, 1024, int)
        return errors


def _default_priorities() -> Dict[str, float]:
    return {
        "BRIEF": 1.5,
        "PATTERN": 1.4,
        "CONTEXT": 1.3,
        "DECISION": 1.2,
        "RESEARCH_REPORT": 1.1,
        "PLAN_REPORT": 1.1,
        "EXECUTION_REPORT": 1.1,
        "PROGRESS": 1.0,
    }


@dataclass
class ScoringConfig:
    """Relevance scoring configuration."""
    priorities: Dict[str, float] = field(default_factory=_default_priorities)
    recency_grace_days: float = 7.0
    recency_half_life_days: float = 30.0
    recency_floor: float = 0.05
    invalid_timestamp_score: float = 0.1
    exact_match_score: float = 1.0
    substring_match_score: float = 0.8
    default_threshold: float = 0.1
    default_top_n: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name, value in self.priorities.items():
            _check_range(errors, f"scoring.priorities.{name}",
                         value, 0.0, 10.0, (int, float))
        _check_range(errors, "scoring.recency_grace_days",
                     self.recency_grace_days, 0.0, 3650.0, (int, float))
        _check_range(errors, "scoring.recency_half_life_days",
                     self.recency_half_life_days, 0.1, 3650.0, (int, float))
        _check_range(errors, "scoring.recency_floor",
                     self.recency_floor, 0.0, 1.0, (int, float))
        _check_range(errors, "scoring.invalid_timestamp_score",
                     self.invalid_timestamp_score, 0.0, 1.0, (int, float))
        _check_range(errors, "scoring.default_threshold",
                     self.default_threshold, 0.0, 10.0, (int, float))
        _check_range(errors, "scoring.default_top_n",
                     self.default_top_n, 1, 10000, int)
        return errors


@dataclass
class BudgetConfig:
    """Context window budget configuration."""
    context_window: int = 200_000
    output_reserve: float = 0.20
    healthy_remaining: int = 50_000
    warning_remaining: int = 10_000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "budget.context_window",
                     self.context_window, 1000, 10_000_000, int)
        _check_range(errors, "budget.output_reserve",
                     self.output_reserve, 0.0, 0.9, float)
        _check_range(errors, "budget.healthy_remaining",
                     self.healthy_remaining, 0, 10_000_000, int)
        _check_range(errors, "budget.warning_remaining",
                     self.warning_remaining, 0, 10_000_000, int)
        if not errors and self.warning_remaining > self.healthy_remaining:
            errors.append("budget.warning_remaining: exceeds budget.healthy_remaining")
        return errors


@dataclass
class TokenCacheConfig:
    """Token count cache configuration."""
    max_size: int = 100
    ttl_seconds: float = 300.0
    model: str = "claude-sonnet-4-5"
    metrics_buffer_size: int = 100

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "tokens.max_size", self.max_size, 1, 100000, int)
        _check_range(errors, "tokens.ttl_seconds",
                     self.ttl_seconds, 0.0, 86400.0, (int, float))
        _check_range(errors, "tokens.metrics_buffer_size",
                     self.metrics_buffer_size, 1, 100000, int)
        return errors


@dataclass
class SelectorConfig:
    """Context selection and formatting configuration."""
    chars_per_token: int = 4
    min_truncation_tokens: int = 16
    truncation_marker: str = "\n\n[... truncated]"
    title_length: int = 60

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "selector.chars_per_token",
                     self.chars_per_token, 1, 16, int)
        _check_range(errors, "selector.min_truncation_tokens",
                     self.min_truncation_tokens, 1, 100000, int)
        _check_range(errors, "selector.title_length",
                     self.title_length, 10, 1000, int)
        return errors


@dataclass
class MetricsConfig:
    """Telemetry retention configuration."""
    retention_days: int = 30
    summary_cache_seconds: float = 30.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "metrics.retention_days",
                     self.retention_days, 1, 3650, int)
        _check_range(errors, "metrics.summary_cache_seconds",
                     self.summary_cache_seconds, 0.0, 3600.0, (int, float))
        return errors


@dataclass
class MemoryConfig:
    """Top-level aimem configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    tokens: TokenCacheConfig = field(default_factory=TokenCacheConfig)
    selector: SelectorConfig = field(default_factory=SelectorConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "validation" in d:
            kwargs["validation"] = ValidationConfig(**d["validation"])
        if "embedding" in d:
            kwargs["embedding"] = EmbeddingConfig(**d["embedding"])
        if "scoring" in d:
            scoring = dict(d["scoring"])
            if "priorities" in scoring:
                # Partial tables override the defaults key by key
                merged = _default_priorities()
                merged.update(scoring["priorities"])
                scoring["priorities"] = merged
            kwargs["scoring"] = ScoringConfig(**scoring)
        if "budget" in d:
            kwargs["budget"] = BudgetConfig(**d["budget"])
        if "tokens" in d:
            kwargs["tokens"] = TokenCacheConfig(**d["tokens"])
        if "selector" in d:
            kwargs["selector"] = SelectorConfig(**d["selector"])
        if "metrics" in d:
            kwargs["metrics"] = MetricsConfig(**d["metrics"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.validation.validate())
        errors.extend(self.embedding.validate())
        errors.extend(self.scoring.validate())
        errors.extend(self.budget.validate())
        errors.extend(self.tokens.validate())
        errors.extend(self.selector.validate())
        errors.extend(self.metrics.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> MemoryConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ConfigError on invalid config values.

    Returns:
        MemoryConfig with values from file or defaults.

    Raises:
        ConfigError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemoryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = MemoryConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ConfigError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
