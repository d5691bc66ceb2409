from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

import numpy as np

DEFAULT_BASE_MODEL = "CodeT5-base"


def as_weight_vector(values: Iterable[float] | np.ndarray) -> np.ndarray:
    """Return a read-only 1-D float32 copy of ``values``."""
    arr = np.array(values, dtype=np.float32, copy=True).reshape(-1)
    arr.flags.writeable = False
    return arr


def iso_timestamp(ts: datetime | None = None) -> str:
    ts = ts or datetime.now().astimezone()
    return ts.isoformat()


@dataclass(frozen=True, eq=False)
class LoRAAdapter:
    """One skill: two low-rank factors plus their scaling parameters.

    ``weights_a`` and ``weights_b`` are flat float32 vectors. Their lengths are
    independent of each other and of ``rank``; composition aligns by index.
    Instances are immutable and every transformation builds a new adapter.
    """

    skill_id: str
    skill_name: str
    description: str
    base_model_compatibility: str
    version: int
    rank: int
    alpha: float
    weights_a: np.ndarray
    weights_b: np.ndarray
    additional_metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.skill_id:
            raise ValueError("skill_id_missing")
        if int(self.rank) <= 0:
            raise ValueError(f"rank must be > 0, got {self.rank}")
        if not float(self.alpha) > 0:
            raise ValueError(f"alpha must be > 0, got {self.alpha}")
        if not 0 <= int(self.version) <= 0xFFFFFFFF:
            raise ValueError(f"version out of uint32 range: {self.version}")
        object.__setattr__(self, "version", int(self.version))
        object.__setattr__(self, "rank", int(self.rank))
        object.__setattr__(self, "alpha", float(self.alpha))
        object.__setattr__(self, "weights_a", as_weight_vector(self.weights_a))
        object.__setattr__(self, "weights_b", as_weight_vector(self.weights_b))
        meta = {str(k): str(v) for k, v in (self.additional_metadata or {}).items()}
        object.__setattr__(self, "additional_metadata", meta)

    @property
    def capabilities(self) -> list[str]:
        raw = self.additional_metadata.get("capabilities") or ""
        return [c for c in raw.split(",") if c]

    @property
    def is_composed(self) -> bool:
        return bool(self.additional_metadata.get("compositionType"))

    @property
    def source_ids(self) -> list[str]:
        raw = self.additional_metadata.get("sourceAdapters") or ""
        return [s for s in raw.split(",") if s]

    def replace(self, **changes: Any) -> "LoRAAdapter":
        return dataclasses.replace(self, **changes)

    def summary(self) -> dict[str, Any]:
        return {
            "skill_id": self.skill_id,
            "skill_name": self.skill_name,
            "version": self.version,
            "rank": self.rank,
            "alpha": self.alpha,
            "weights_a": int(self.weights_a.size),
            "weights_b": int(self.weights_b.size),
        }


@dataclass(frozen=True)
class SkillChain:
    chain_id: str
    skills: tuple[LoRAAdapter, ...]
    merged_adapter: LoRAAdapter
    consensus_score: float = 1.0
    last_updated: datetime = field(default_factory=lambda: datetime.now().astimezone())
