from __future__ import annotations

import numpy as np
import pytest

from loraskill.adapters.types import LoRAAdapter


def make_adapter(
    skill_id: str,
    weights_a,
    weights_b,
    *,
    rank: int = 4,
    alpha: float = 8.0,
    name: str | None = None,
    base_model: str = "CodeT5-base",
    metadata: dict[str, str] | None = None,
) -> LoRAAdapter:
    return LoRAAdapter(
        skill_id=skill_id,
        skill_name=name or skill_id,
        description=f"{skill_id} adapter",
        base_model_compatibility=base_model,
        version=1,
        rank=rank,
        alpha=alpha,
        weights_a=np.asarray(weights_a, dtype=np.float32),
        weights_b=np.asarray(weights_b, dtype=np.float32),
        additional_metadata=metadata or {},
    )


@pytest.fixture
def adapter_factory():
    return make_adapter
