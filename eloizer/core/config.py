"""Configuration for the ELOIZER analyzer.

Two layers:
  - ``Settings``: process-wide defaults from ``ELOIZER_*`` environment
    variables (or a ``.env`` file).
  - ``AnalysisConfig``: the per-run rule-set configuration record handed
    to ``analyze``.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from eloizer.core.errors import ConfigurationError
from eloizer.core.types import RuleCategory, Severity


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ELOIZER_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "ELOIZER"
    app_env: Literal["development", "ci", "production"] = "development"
    log_level: str = "WARNING"
    no_color: bool = False

    # ── Analysis ─────────────────────────────────────────────────────────
    parallel: bool = True
    max_workers: int = Field(default=4, ge=1, le=64)
    helper_depth: int = Field(default=4, ge=0, le=16)
    ast_suffix: str = ".ast.json"
    include_categories: str = "solana,anchor,general"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()


class AnalysisConfig(BaseModel):
    """Rule-set configuration for one ``analyze`` call.

    A rule is active only if it has a category in ``include_categories``,
    its id is not in ``ignore_rule_ids`` and its severity is not in
    ``ignore_severities``.
    """

    model_config = ConfigDict(frozen=True)

    include_categories: frozenset[RuleCategory] = frozenset(RuleCategory)
    ignore_rule_ids: frozenset[str] = frozenset()
    ignore_severities: frozenset[Severity] = frozenset()
    custom_rule_templates_dir: Path | None = None
    parallel: bool | None = None
    max_workers: int | None = Field(default=None, ge=1, le=64)

    @field_validator("include_categories", mode="before")
    @classmethod
    def _parse_categories(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [v for v in value.split(",") if v.strip()]
        return frozenset(RuleCategory.parse(v) for v in value)

    @field_validator("ignore_severities", mode="before")
    @classmethod
    def _parse_severities(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [v for v in value.split(",") if v.strip()]
        return frozenset(Severity.parse(v) for v in value)

    @field_validator("ignore_rule_ids", mode="before")
    @classmethod
    def _parse_rule_ids(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(str(v).strip() for v in value if str(v).strip())


def load_config(value: AnalysisConfig | Mapping[str, Any] | None) -> AnalysisConfig:
    """Normalize caller input into an ``AnalysisConfig``.

    Raises:
        ConfigurationError: unknown category or severity names, or any
            other invalid option.
    """
    if value is None:
        return AnalysisConfig()
    if isinstance(value, AnalysisConfig):
        return value
    try:
        return AnalysisConfig.model_validate(dict(value))
    except ValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid analysis configuration: {messages}") from exc
