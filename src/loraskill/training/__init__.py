from __future__ import annotations

from .compiler import (
    AdapterCompiler,
    CompilationMetadata,
    CompilerConfig,
    ErrorRecord,
    SolutionRecord,
    TrainingPair,
    prepare_training_pairs,
    skill_id_for,
)

__all__ = [
    "AdapterCompiler",
    "CompilationMetadata",
    "CompilerConfig",
    "ErrorRecord",
    "SolutionRecord",
    "TrainingPair",
    "prepare_training_pairs",
    "skill_id_for",
]
