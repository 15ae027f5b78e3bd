"""Error taxonomy for the analyzer.

``BuildError`` and ``RuleEvaluationError`` are recovered locally by the
pipeline and recorded as diagnostics. ``ConfigurationError`` is raised to
the caller before any analysis begins.
"""

from __future__ import annotations

from eloizer.core.raw import Span


class EloizerError(Exception):
    """Base class for all analyzer errors."""


class BuildError(EloizerError):
    """A syntax tree is structurally inconsistent and cannot be modeled."""

    def __init__(self, file: str, message: str, span: Span | None = None) -> None:
        self.file = file
        self.message = message
        self.span = span
        where = f"{file}:{span.start_line}" if span and span.start_line else file
        super().__init__(f"{where}: {message}")


class RuleEvaluationError(EloizerError):
    """A rule matcher raised while evaluating."""

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        self.rule_id = rule_id
        self.cause = cause
        super().__init__(f"Rule {rule_id} failed: {type(cause).__name__}: {cause}")


class ConfigurationError(EloizerError):
    """Caller supplied an invalid configuration or rule set."""
