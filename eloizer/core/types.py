"""Shared enums and types used across the analyzer."""

from __future__ import annotations

import enum
from types import MappingProxyType
from typing import Annotated, Any, Mapping

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer


# ── Enums ────────────────────────────────────────────────────────────────────


class Severity(str, enum.Enum):
    """Finding severity. Closed and ordered: High is the most severe."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, value: "str | Severity") -> "Severity":
        """Case-insensitive lookup. ``info`` is accepted as an alias."""
        if isinstance(value, Severity):
            return value
        key = str(value).strip().lower()
        if key == "info":
            key = "informational"
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown severity: {value!r}") from None


_SEVERITY_RANK = {
    Severity.HIGH: 0,
    Severity.MEDIUM: 1,
    Severity.LOW: 2,
    Severity.INFORMATIONAL: 3,
}


class RuleCategory(str, enum.Enum):
    """Rule families. A rule belongs to one or more of these."""

    SOLANA = "solana"
    ANCHOR = "anchor"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: "str | RuleCategory") -> "RuleCategory":
        if isinstance(value, RuleCategory):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown rule category: {value!r}") from None


class DiagnosticKind(str, enum.Enum):
    """Non-finding events recorded in a report."""

    BUILD_FAILURE = "build_failure"
    RULE_FAILURE = "rule_failure"
    CANCELLED = "cancelled"


# ── Read-only mappings ───────────────────────────────────────────────────────


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


# String-keyed mapping held as a read-only proxy (nested lists become
# tuples) and dumped as a plain dict.
FrozenMap = Annotated[Mapping[str, Any], AfterValidator(_freeze), PlainSerializer(_thaw)]


def empty_map() -> Mapping[str, Any]:
    return MappingProxyType({})


# ── Shared Schemas ───────────────────────────────────────────────────────────


class Location(BaseModel):
    """Code location of a finding."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    start_line: int
    end_line: int
    start_col: int | None = None
    end_col: int | None = None
    snippet: str = ""

    def overlaps(self, other: "Location") -> bool:
        return (
            self.file_path == other.file_path
            and self.start_line <= other.end_line
            and other.start_line <= self.end_line
        )


class Finding(BaseModel):
    """One reported issue instance, produced by a rule."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    title: str
    severity: Severity
    location: Location
    message: str
    recommendation: str = ""
    related_locations: tuple[Location, ...] = ()
    metadata: FrozenMap = Field(default_factory=empty_map)

    @property
    def file(self) -> str:
        return self.location.file_path

    @property
    def line_range(self) -> tuple[int, int]:
        return self.location.start_line, self.location.end_line

    def sort_key(self) -> tuple[int, str, int, str, int, str]:
        return (
            self.severity.rank,
            self.location.file_path,
            self.location.start_line,
            self.rule_id,
            self.location.end_line,
            self.message,
        )


class Diagnostic(BaseModel):
    """A build or rule failure, or a cancellation marker."""

    model_config = ConfigDict(frozen=True)

    kind: DiagnosticKind
    subject: str
    message: str
    line: int | None = None


class AnalysisReport(BaseModel):
    """Aggregated output for one run."""

    model_config = ConfigDict(frozen=True)

    findings: tuple[Finding, ...] = ()
    analyzed_files: tuple[str, ...] = ()
    build_failure_count: int = 0
    diagnostics: tuple[Diagnostic, ...] = ()
    counts_by_severity: dict[str, int] = Field(default_factory=dict)
    rules_run: tuple[str, ...] = ()
    partial: bool = False

    @property
    def build_failures(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == DiagnosticKind.BUILD_FAILURE]

    @property
    def rule_failures(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == DiagnosticKind.RULE_FAILURE]

    def findings_for(self, rule_id: str) -> list[Finding]:
        return [f for f in self.findings if f.rule_id == rule_id]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
