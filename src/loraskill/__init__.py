"""Skills as LoRA adapters.

Adapters are compiled from solution/error pairs, composed (merge, chain,
parallel), shipped in a fixed binary container, and resolved from runtime
errors through a discovery service and a router service.
"""

from __future__ import annotations

from .adapters import AdapterStore, LoRAAdapter, compose_adapters, decode_adapter, encode_adapter
from .errors import DiscoveryError, FormatError, NotFoundError, ServiceError, TransportError
from .lifecycle import SkillDiscoveryResult, SkillInvocationResult, SkillLifecycleManager
from .training import AdapterCompiler

__version__ = "0.1.0"

__all__ = [
    "AdapterCompiler",
    "AdapterStore",
    "DiscoveryError",
    "FormatError",
    "LoRAAdapter",
    "NotFoundError",
    "ServiceError",
    "SkillDiscoveryResult",
    "SkillInvocationResult",
    "SkillLifecycleManager",
    "TransportError",
    "compose_adapters",
    "decode_adapter",
    "encode_adapter",
]
