from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import numpy as np

from ..adapters.store import AdapterStore
from ..adapters.types import DEFAULT_BASE_MODEL, LoRAAdapter, iso_timestamp
from ..logging import get_logger

logger = get_logger(__name__)

DEFAULT_RANK = 8
DEFAULT_ALPHA = 16.0

_SLUG_RE = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class SolutionRecord:
    error_id: str
    solution: str
    confidence: float


@dataclass(frozen=True)
class ErrorRecord:
    error_id: str
    description: str
    context: str


@dataclass(frozen=True)
class CompilationMetadata:
    skill_name: str
    description: str = ""
    base_model: str = ""
    rank: int | None = None
    alpha: float | None = None


@dataclass(frozen=True)
class TrainingPair:
    input: str
    output: str
    confidence: float


@dataclass(frozen=True)
class CompilerConfig:
    input_dim: int = 1024
    output_dim: int = 1024
    learning_rate: float = 0.001
    update_window: int = 100
    init_scale: float = 0.02
    seed: int | None = None

    @classmethod
    def from_settings(cls, settings: dict) -> "CompilerConfig":
        cfg = settings.get("compiler", {}) or {}
        seed = cfg.get("seed")
        return cls(
            input_dim=int(cfg.get("input_dim", 1024) or 1024),
            output_dim=int(cfg.get("output_dim", 1024) or 1024),
            learning_rate=float(cfg.get("learning_rate", 0.001)),
            update_window=int(cfg.get("update_window", 100)),
            init_scale=float(cfg.get("init_scale", 0.02)),
            seed=int(seed) if seed is not None else None,
        )


def _field(record: Any, snake: str, camel: str) -> Any:
    if isinstance(record, Mapping):
        if snake in record:
            return record[snake]
        return record[camel]
    return getattr(record, snake)


def _as_solution(record: SolutionRecord | Mapping[str, Any]) -> SolutionRecord:
    if isinstance(record, SolutionRecord):
        return record
    return SolutionRecord(
        error_id=str(_field(record, "error_id", "errorId")),
        solution=str(_field(record, "solution", "solution")),
        confidence=float(_field(record, "confidence", "confidence")),
    )


def _as_error(record: ErrorRecord | Mapping[str, Any]) -> ErrorRecord:
    if isinstance(record, ErrorRecord):
        return record
    return ErrorRecord(
        error_id=str(_field(record, "error_id", "errorId")),
        description=str(_field(record, "description", "description")),
        context=str(_field(record, "context", "context")),
    )


def _as_metadata(metadata: CompilationMetadata | Mapping[str, Any]) -> CompilationMetadata:
    if isinstance(metadata, CompilationMetadata):
        return metadata
    return CompilationMetadata(
        skill_name=str(metadata.get("skill_name") or metadata.get("skillName") or ""),
        description=str(metadata.get("description") or ""),
        base_model=str(metadata.get("base_model") or metadata.get("baseModel") or ""),
        rank=metadata.get("rank"),
        alpha=metadata.get("alpha"),
    )


def prepare_training_pairs(
    solutions: Iterable[SolutionRecord | Mapping[str, Any]],
    errors: Iterable[ErrorRecord | Mapping[str, Any]],
) -> list[TrainingPair]:
    """Pair each solution with the first error sharing its id; drop the rest."""
    by_id: dict[str, ErrorRecord] = {}
    for raw in errors:
        err = _as_error(raw)
        by_id.setdefault(err.error_id, err)
    pairs: list[TrainingPair] = []
    for raw in solutions:
        sol = _as_solution(raw)
        err = by_id.get(sol.error_id)
        if err is None:
            continue
        pairs.append(TrainingPair(input=f"{err.description} {err.context}", output=sol.solution, confidence=sol.confidence))
    return pairs


def skill_id_for(skill_name: str, now_ms: int | None = None) -> str:
    ms = int(now_ms) if now_ms is not None else int(time.time() * 1000)
    return f"skill-{_SLUG_RE.sub('-', skill_name.lower())}-{ms}"


class AdapterCompiler:
    """Turns solution/error pairs into a fresh LoRA adapter.

    The update rule is a confidence-weighted perturbation of the leading
    ``update_window`` elements of each factor, not gradient descent. All
    randomness is drawn from ``rng`` so a seeded compiler is reproducible.
    """

    def __init__(
        self,
        store: AdapterStore | None = None,
        *,
        config: CompilerConfig | None = None,
        rng: np.random.Generator | None = None,
    ):
        self.store = store
        self.config = config or CompilerConfig()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)

    def _init_weights(self, size: int) -> np.ndarray:
        return ((self.rng.random(size) - 0.5) * self.config.init_scale).astype(np.float32)

    def _apply_pair(self, pair: TrainingPair, weights: np.ndarray) -> None:
        n = min(int(self.config.update_window), int(weights.size))
        gradient = (self.rng.random(n) - 0.5) * float(pair.confidence)
        weights[:n] += (self.config.learning_rate * gradient).astype(np.float32)

    def train(self, pairs: list[TrainingPair], rank: int) -> tuple[np.ndarray, np.ndarray]:
        weights_a = self._init_weights(rank * int(self.config.input_dim))
        weights_b = self._init_weights(int(self.config.output_dim) * rank)
        for pair in pairs:
            self._apply_pair(pair, weights_a)
            self._apply_pair(pair, weights_b)
        return weights_a, weights_b

    def compile(
        self,
        solutions: Iterable[SolutionRecord | Mapping[str, Any]],
        errors: Iterable[ErrorRecord | Mapping[str, Any]],
        metadata: CompilationMetadata | Mapping[str, Any],
    ) -> LoRAAdapter:
        solutions = list(solutions)
        errors = list(errors)
        meta = _as_metadata(metadata)
        compilation_id = f"lora-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
        logger.info("adapter_compile_start compilation_id=%s skill_name=%s", compilation_id, meta.skill_name)

        try:
            pairs = prepare_training_pairs(solutions, errors)
            rank = int(meta.rank or DEFAULT_RANK)
            alpha = float(meta.alpha or DEFAULT_ALPHA)
            weights_a, weights_b = self.train(pairs, rank)
            adapter = LoRAAdapter(
                skill_id=skill_id_for(meta.skill_name),
                skill_name=meta.skill_name,
                description=meta.description,
                base_model_compatibility=meta.base_model or DEFAULT_BASE_MODEL,
                version=1,
                rank=rank,
                alpha=alpha,
                weights_a=weights_a,
                weights_b=weights_b,
                additional_metadata={
                    "compilationId": compilation_id,
                    "timestamp": iso_timestamp(),
                    "solutionCount": str(len(solutions)),
                    "errorCount": str(len(errors)),
                    "pairCount": str(len(pairs)),
                },
            )
        except Exception:
            logger.exception("adapter_compile_failed compilation_id=%s", compilation_id)
            raise

        if self.store is not None:
            adapter = self.store.insert_unique(adapter)
        logger.info("adapter_compiled skill_id=%s pairs=%d", adapter.skill_id, len(pairs))
        return adapter
