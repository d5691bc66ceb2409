from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, Sequence

import numpy as np

from .types import LoRAAdapter, iso_timestamp

STRATEGIES = ("merge", "chain", "parallel")


def composed_id(strategy: str, now_ms: int | None = None) -> str:
    ms = int(now_ms) if now_ms is not None else int(time.time() * 1000)
    return f"composed_{strategy}_{ms}"


def _now_ms(now: datetime | None) -> int | None:
    return int(now.timestamp() * 1000) if now is not None else None


def _max_len(vectors: Sequence[np.ndarray]) -> int:
    return max(int(v.size) for v in vectors)


def _mean_by_index(vectors: Sequence[np.ndarray]) -> np.ndarray:
    # Index i is averaged only over the vectors long enough to hold it.
    size = _max_len(vectors)
    total = np.zeros(size, dtype=np.float64)
    count = np.zeros(size, dtype=np.int64)
    for vec in vectors:
        n = int(vec.size)
        total[:n] += vec
        count[:n] += 1
    out = np.zeros(size, dtype=np.float64)
    np.divide(total, count, out=out, where=count > 0)
    return out.astype(np.float32)


def _chain_vector(vectors: Sequence[np.ndarray]) -> np.ndarray:
    acc = np.array(vectors[0], dtype=np.float64)
    for i, vec in enumerate(vectors[1:], start=1):
        n = min(int(acc.size), int(vec.size))
        acc[:n] += vec[:n].astype(np.float64) * (1.0 / (i + 1))
    return acc.astype(np.float32)


def _weighted_sum(vectors: Sequence[np.ndarray], shares: Sequence[float]) -> np.ndarray:
    acc = np.zeros(_max_len(vectors), dtype=np.float64)
    for vec, share in zip(vectors, shares):
        acc[: vec.size] += vec.astype(np.float64) * share
    return acc.astype(np.float32)


def alpha_shares(adapters: Sequence[LoRAAdapter]) -> list[float]:
    """Per-adapter weights used by parallel composition; they sum to 1."""
    total = float(sum(a.alpha for a in adapters))
    return [float(a.alpha) / total for a in adapters]


def _lineage(strategy: str, adapters: Sequence[LoRAAdapter], now: datetime | None) -> dict[str, str]:
    return {
        "compositionType": strategy,
        "sourceAdapters": ",".join(a.skill_id for a in adapters),
        "timestamp": iso_timestamp(now),
    }


def merge_adapters(
    adapters: Sequence[LoRAAdapter], *, skill_id: str | None = None, now: datetime | None = None
) -> LoRAAdapter:
    return LoRAAdapter(
        skill_id=skill_id or composed_id("merge", _now_ms(now)),
        skill_name="Merged: " + " + ".join(a.skill_name for a in adapters),
        description=f"Merged composition of {len(adapters)} adapters",
        base_model_compatibility=adapters[0].base_model_compatibility,
        version=1,
        rank=max(a.rank for a in adapters),
        alpha=sum(a.alpha for a in adapters) / len(adapters),
        weights_a=_mean_by_index([a.weights_a for a in adapters]),
        weights_b=_mean_by_index([a.weights_b for a in adapters]),
        additional_metadata=_lineage("merge", adapters, now),
    )


def chain_adapters(
    adapters: Sequence[LoRAAdapter], *, skill_id: str | None = None, now: datetime | None = None
) -> LoRAAdapter:
    first = adapters[0]
    return LoRAAdapter(
        skill_id=skill_id or composed_id("chain", _now_ms(now)),
        skill_name="Chained: " + " -> ".join(a.skill_name for a in adapters),
        description=f"Sequential chain of {len(adapters)} adapters",
        base_model_compatibility=first.base_model_compatibility,
        version=1,
        rank=first.rank,
        alpha=first.alpha,
        weights_a=_chain_vector([a.weights_a for a in adapters]),
        weights_b=_chain_vector([a.weights_b for a in adapters]),
        additional_metadata=_lineage("chain", adapters, now),
    )


def parallel_adapters(
    adapters: Sequence[LoRAAdapter], *, skill_id: str | None = None, now: datetime | None = None
) -> LoRAAdapter:
    shares = alpha_shares(adapters)
    return LoRAAdapter(
        skill_id=skill_id or composed_id("parallel", _now_ms(now)),
        skill_name="Parallel: " + " || ".join(a.skill_name for a in adapters),
        description=f"Parallel composition of {len(adapters)} adapters",
        base_model_compatibility=adapters[0].base_model_compatibility,
        version=1,
        rank=max(a.rank for a in adapters),
        alpha=sum(a.alpha for a in adapters) / len(adapters),
        weights_a=_weighted_sum([a.weights_a for a in adapters], shares),
        weights_b=_weighted_sum([a.weights_b for a in adapters], shares),
        additional_metadata=_lineage("parallel", adapters, now),
    )


_COMPOSERS: dict[str, Callable[..., LoRAAdapter]] = {
    "merge": merge_adapters,
    "chain": chain_adapters,
    "parallel": parallel_adapters,
}


def compose_adapters(
    adapters: Sequence[LoRAAdapter],
    strategy: str = "merge",
    *,
    skill_id: str | None = None,
    now: datetime | None = None,
) -> LoRAAdapter:
    """Combine adapters into a new one. A single adapter is returned as-is."""
    adapters = list(adapters)
    if not adapters:
        raise ValueError("No adapters provided for composition")
    if len(adapters) == 1:
        return adapters[0]
    composer = _COMPOSERS.get(str(strategy))
    if composer is None:
        raise ValueError(f"Unknown composition strategy: {strategy}")
    return composer(adapters, skill_id=skill_id, now=now)
