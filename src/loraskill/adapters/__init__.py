from __future__ import annotations

from .codec import HEADER, decode_adapter, encode_adapter, pack_float32, read_container, unpack_float32, write_container
from .compose import STRATEGIES, alpha_shares, chain_adapters, compose_adapters, merge_adapters, parallel_adapters
from .store import AdapterStore
from .types import LoRAAdapter, SkillChain

__all__ = [
    "HEADER",
    "STRATEGIES",
    "AdapterStore",
    "LoRAAdapter",
    "SkillChain",
    "alpha_shares",
    "chain_adapters",
    "compose_adapters",
    "decode_adapter",
    "encode_adapter",
    "merge_adapters",
    "pack_float32",
    "parallel_adapters",
    "read_container",
    "unpack_float32",
    "write_container",
]
