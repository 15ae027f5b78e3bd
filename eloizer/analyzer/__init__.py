"""Rule evaluation, finding aggregation and the public ``analyze`` entry point."""

from eloizer.analyzer.pipeline import CancellationToken, analyze, list_rules, rule_info

__all__ = ["CancellationToken", "analyze", "list_rules", "rule_info"]
