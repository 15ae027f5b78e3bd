"""Rule records, the built-in rule catalog and YAML rule templates."""

from eloizer.rules.base import Match, Rule, rule
from eloizer.rules.registry import RuleRegistry, registry

__all__ = ["Match", "Rule", "RuleRegistry", "registry", "rule"]
