"""Rule registry — discovers the built-in rule catalog."""

from __future__ import annotations

import importlib
import logging
import pkgutil

from eloizer.core.errors import ConfigurationError
from eloizer.core.types import RuleCategory, Severity
from eloizer.rules.base import Rule

logger = logging.getLogger(__name__)


def _catalog_order(r: Rule) -> tuple[int, str]:
    return r.severity.rank, r.id


class RuleRegistry:
    """Registry for every built-in rule.

    Discovers ``Rule`` records from the ``catalog`` package and provides
    methods to list, filter and look them up.
    """

    def __init__(self) -> None:
        self._rules: dict[str, Rule] = {}
        self._loaded = False

    def discover(self) -> None:
        """Auto-discover all rules from the catalog package."""
        if self._loaded:
            return

        import eloizer.rules.catalog as catalog_pkg

        for _finder, module_name, _is_pkg in pkgutil.walk_packages(
            catalog_pkg.__path__,
            prefix=catalog_pkg.__name__ + ".",
        ):
            module = importlib.import_module(module_name)
            for attr_name in dir(module):
                attr = getattr(module, attr_name)
                if not isinstance(attr, Rule):
                    continue
                existing = self._rules.get(attr.id)
                if existing is not None and existing is not attr:
                    raise ConfigurationError(f"Duplicate built-in rule id: {attr.id}")
                self._rules[attr.id] = attr

        logger.debug("Discovered %d built-in rules", len(self._rules))
        self._loaded = True

    def get_all(self) -> list[Rule]:
        """Return all rules, most severe first, then by id."""
        self.discover()
        return sorted(self._rules.values(), key=_catalog_order)

    def get_by_id(self, rule_id: str) -> Rule | None:
        """Case-insensitive lookup."""
        self.discover()
        key = rule_id.strip().lower()
        for rid, r in self._rules.items():
            if rid.lower() == key:
                return r
        return None

    def get_by_category(self, category: RuleCategory | str) -> list[Rule]:
        category = RuleCategory.parse(category)
        return [r for r in self.get_all() if category in r.categories]

    def get_by_severity(self, severity: Severity | str) -> list[Rule]:
        severity = Severity.parse(severity)
        return [r for r in self.get_all() if r.severity == severity]

    def count(self) -> int:
        self.discover()
        return len(self._rules)

    def ids(self) -> set[str]:
        self.discover()
        return set(self._rules)


# Global registry singleton
registry = RuleRegistry()
