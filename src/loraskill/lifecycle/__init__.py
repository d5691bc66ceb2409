from __future__ import annotations

from .client import DiscoveryClient, RouterClient
from .context import ErrorContext, build_error_context
from .manager import (
    AgentConfig,
    DiscoveryPolicy,
    LifecycleOutcome,
    LifecycleState,
    SkillDiscoveryResult,
    SkillInvocationResult,
    SkillLifecycleManager,
)
from .metrics import LifecycleMetrics

__all__ = [
    "AgentConfig",
    "DiscoveryClient",
    "DiscoveryPolicy",
    "ErrorContext",
    "LifecycleMetrics",
    "LifecycleOutcome",
    "LifecycleState",
    "RouterClient",
    "SkillDiscoveryResult",
    "SkillInvocationResult",
    "SkillLifecycleManager",
    "build_error_context",
]
