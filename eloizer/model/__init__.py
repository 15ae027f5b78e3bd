"""Semantic model of Solana / Anchor programs.

Build phase (``SemanticModelBuilder``, one per unit, parallel) and resolve
phase (``CrossReferenceResolver``, once per run, after every build).
"""

from eloizer.model.builder import SemanticModelBuilder, build_program_model  # noqa: F401
from eloizer.model.resolver import (  # noqa: F401
    AnalysisContext,
    CrossReferenceResolver,
    SeedEntry,
    resolve_models,
)

__all__ = [
    "AnalysisContext",
    "CrossReferenceResolver",
    "SeedEntry",
    "SemanticModelBuilder",
    "build_program_model",
    "resolve_models",
]
