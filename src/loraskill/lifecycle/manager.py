from __future__ import annotations

import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

import requests

from ..adapters.store import AdapterStore
from ..adapters.types import LoRAAdapter
from ..adapters.wire import adapter_from_wire, looks_like_adapter
from ..errors import DiscoveryError, TransportError
from ..logging import get_logger
from .client import DiscoveryClient, ErrorNodeSubmissionResponse, RouterClient
from .context import ErrorContext, build_error_context
from .metrics import LifecycleMetrics

logger = get_logger(__name__)

# Substrings that mark a discovery failure as a transport problem the caller
# must see, kept alongside the typed TransportError for existing integrations.
TRANSPORT_MARKERS = ("Network error", "Invalid JSON", "fetch")


class LifecycleState(str, Enum):
    RECEIVED = "RECEIVED"
    CONTEXT_BUILT = "CONTEXT_BUILT"
    DISCOVERING = "DISCOVERING"
    SKILL_FOUND = "SKILL_FOUND"
    ERROR_SUBMITTED = "ERROR_SUBMITTED"
    INVOKING = "INVOKING"
    INVOKED = "INVOKED"


@dataclass(frozen=True)
class AgentConfig:
    agent_id: str
    agent_version: str
    base_model_id: str
    discovery_endpoint: str
    router_endpoint: str
    timeout_s: float = 60.0
    api_key: str | None = None
    wallet_address: str | None = None

    @classmethod
    def from_settings(cls, settings: dict) -> "AgentConfig":
        cfg = settings.get("agent", {}) or {}
        api_key = cfg.get("api_key") or os.getenv("LORASKILL_API_KEY")
        wallet = cfg.get("wallet_address")
        return cls(
            agent_id=str(cfg.get("agent_id") or "agent"),
            agent_version=str(cfg.get("agent_version") or "0.0.0"),
            base_model_id=str(cfg.get("base_model_id") or "CodeT5-base"),
            discovery_endpoint=str(cfg.get("discovery_endpoint") or "http://127.0.0.1:8080"),
            router_endpoint=str(cfg.get("router_endpoint") or "http://127.0.0.1:8090"),
            timeout_s=float(cfg.get("timeout_s", 60.0) or 60.0),
            api_key=str(api_key) if api_key else None,
            wallet_address=str(wallet) if wallet else None,
        )


@dataclass(frozen=True)
class DiscoveryPolicy:
    max_results: int = 5
    similarity_threshold: float = 0.7
    bounty_amount: int = 1_000_000
    priority: str = "MEDIUM"

    @classmethod
    def from_settings(cls, settings: dict) -> "DiscoveryPolicy":
        cfg = settings.get("discovery", {}) or {}
        return cls(
            max_results=int(cfg.get("max_results", 5) or 5),
            similarity_threshold=float(cfg.get("similarity_threshold", 0.7)),
            bounty_amount=int(cfg.get("bounty_amount", 1_000_000)),
            priority=str(cfg.get("priority") or "MEDIUM").upper(),
        )


@dataclass(frozen=True)
class SkillDiscoveryResult:
    skill_found: bool
    skill_uri: str | None = None
    skill_node_id: str | None = None
    cluster_id: str | None = None
    confidence: float | None = None
    error_node_id: str | None = None

    def __post_init__(self) -> None:
        if self.skill_found and not self.skill_uri:
            raise ValueError("skill_found requires skill_uri")


@dataclass(frozen=True)
class SkillInvocationResult:
    success: bool
    skill_data: Any = None
    error_message: str | None = None
    invocation_id: str | None = None
    adapter: LoRAAdapter | None = None


@dataclass(frozen=True)
class LifecycleOutcome:
    discovery: SkillDiscoveryResult
    invocation: SkillInvocationResult | None = None
    states: tuple[LifecycleState, ...] = field(default_factory=tuple)


def is_transport_failure(exc: BaseException) -> bool:
    if isinstance(exc, TransportError):
        return True
    text = str(exc)
    return any(marker in text for marker in TRANSPORT_MARKERS)


def _invocation_id() -> str:
    return f"inv_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SkillLifecycleManager:
    """Resolves a runtime failure to a skill: context, discovery, invocation.

    Network calls are the only blocking points. Nothing is retried; callers
    that want retries wrap these methods.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        policy: DiscoveryPolicy | None = None,
        store: AdapterStore | None = None,
        metrics: LifecycleMetrics | None = None,
        discovery: DiscoveryClient | None = None,
        router: RouterClient | None = None,
        session: requests.Session | None = None,
    ):
        self.config = config
        self.policy = policy or DiscoveryPolicy()
        self.store = store
        self.metrics = metrics or LifecycleMetrics()
        if store is not None:
            self.metrics.track_inventory(store.__len__)
        self.discovery = discovery or DiscoveryClient(
            config.discovery_endpoint, timeout_s=config.timeout_s, api_key=config.api_key, session=session
        )
        self.router = router or RouterClient(
            config.router_endpoint, timeout_s=config.timeout_s, api_key=config.api_key, session=session
        )

    @classmethod
    def from_settings(
        cls,
        settings: dict,
        *,
        store: AdapterStore | None = None,
        session: requests.Session | None = None,
    ) -> "SkillLifecycleManager":
        return cls(
            AgentConfig.from_settings(settings),
            policy=DiscoveryPolicy.from_settings(settings),
            store=store,
            session=session,
        )

    def _enter(self, states: list[LifecycleState], state: LifecycleState) -> None:
        states.append(state)
        logger.debug("lifecycle_state agent_id=%s state=%s", self.config.agent_id, state.value)

    def build_context(
        self, error: BaseException, task_description: str, additional_context: Mapping[str, Any] | None = None
    ) -> ErrorContext:
        return build_error_context(
            error,
            agent_id=self.config.agent_id,
            agent_version=self.config.agent_version,
            base_model_id=self.config.base_model_id,
            task_description=task_description,
            additional_context=additional_context,
        )

    def handle_error(
        self,
        error: BaseException,
        task_description: str,
        additional_context: Mapping[str, Any] | None = None,
    ) -> SkillDiscoveryResult:
        return self._handle_error(error, task_description, additional_context, [])

    def _handle_error(
        self,
        error: BaseException,
        task_description: str,
        additional_context: Mapping[str, Any] | None,
        states: list[LifecycleState],
    ) -> SkillDiscoveryResult:
        self._enter(states, LifecycleState.RECEIVED)
        logger.info(
            "handle_error agent_id=%s error_type=%s task=%s",
            self.config.agent_id,
            type(error).__name__,
            task_description,
        )
        try:
            context = self.build_context(error, task_description, additional_context)
            self._enter(states, LifecycleState.CONTEXT_BUILT)
            self._enter(states, LifecycleState.DISCOVERING)
            result = self.discover_skill_for_error(context)
        except Exception as exc:
            logger.error("handle_error_failed agent_id=%s error=%s", self.config.agent_id, exc)
            if is_transport_failure(exc):
                raise
            self.metrics.observe_discovery("failed")
            return SkillDiscoveryResult(skill_found=False, confidence=0.0)

        self._enter(states, LifecycleState.SKILL_FOUND if result.skill_found else LifecycleState.ERROR_SUBMITTED)
        logger.info(
            "handle_error_done agent_id=%s skill_found=%s skill_uri=%s",
            self.config.agent_id,
            result.skill_found,
            result.skill_uri,
        )
        return result

    def discover_skill_for_error(self, context: ErrorContext) -> SkillDiscoveryResult:
        body = {
            "errorContext": context.to_wire(),
            "maxResults": int(self.policy.max_results),
            "similarityThreshold": float(self.policy.similarity_threshold),
        }
        response = self.discovery.query(body)

        if response.status == "QUERY_SUCCESS" and response.skill_node_result is not None:
            node = response.skill_node_result
            self.metrics.observe_discovery("found")
            return SkillDiscoveryResult(
                skill_found=True,
                skill_uri=node.skill_uri,
                skill_node_id=node.skill_node_id,
                cluster_id=node.cluster_id,
                confidence=node.confidence,
            )
        if response.status == "QUERY_NO_MATCH":
            submission = self.submit_error_node(context)
            if submission.status != "SUBMISSION_SUCCESS":
                raise DiscoveryError(f"Failed to submit error node: {submission.error_message}")
            self.metrics.observe_discovery("submitted")
            return SkillDiscoveryResult(
                skill_found=False,
                error_node_id=submission.error_node_id,
                cluster_id=submission.cluster_id,
            )
        raise DiscoveryError(f"Discovery query failed: {response.error_message}")

    def submit_error_node(self, context: ErrorContext) -> ErrorNodeSubmissionResponse:
        body = {
            "errorContext": context.to_wire(),
            "bountyAmount": int(self.policy.bounty_amount),
            "priority": self.policy.priority,
        }
        submission = self.discovery.submit(body)
        self.metrics.observe_submission()
        logger.info("error_node_submitted status=%s error_node_id=%s", submission.status, submission.error_node_id)
        return submission

    def invoke_skill(
        self,
        skill_uri: str,
        nrn_token: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> SkillInvocationResult:
        invocation_id = _invocation_id()
        logger.info(
            "invoke_skill agent_id=%s skill_uri=%s invocation_id=%s has_token=%s",
            self.config.agent_id,
            skill_uri,
            invocation_id,
            bool(nrn_token),
        )
        body = {
            "invocation_id": invocation_id,
            "agent_id": self.config.agent_id,
            "skill_uri": skill_uri,
            "nrn_token": nrn_token,
            "parameters": dict(parameters or {}),
            "priority": "normal",
            "timestamp": int(time.time() * 1000),
        }
        try:
            response = self.router.invoke(body)
            success = response.status == "SUCCESS"
            adapter = None
            if success and self.store is not None and looks_like_adapter(response.skill_data):
                adapter = self.store.set(adapter_from_wire(response.skill_data))
            result = SkillInvocationResult(
                success=success,
                skill_data=response.skill_data,
                error_message=response.error_message,
                invocation_id=response.invocation_id or invocation_id,
                adapter=adapter,
            )
        except Exception as exc:
            logger.error("invoke_skill_failed skill_uri=%s invocation_id=%s error=%s", skill_uri, invocation_id, exc)
            result = SkillInvocationResult(success=False, error_message=str(exc), invocation_id=invocation_id)

        self.metrics.observe_invocation(success=result.success)
        logger.info("invoke_skill_done skill_uri=%s success=%s", skill_uri, result.success)
        return result

    def handle_error_and_invoke_skill(
        self,
        error: BaseException,
        task_description: str,
        nrn_token: str,
        additional_context: Mapping[str, Any] | None = None,
    ) -> LifecycleOutcome:
        states: list[LifecycleState] = []
        discovery = self._handle_error(error, task_description, additional_context, states)
        if not discovery.skill_found or not discovery.skill_uri:
            logger.info("no_skill_found agent_id=%s error_node_id=%s", self.config.agent_id, discovery.error_node_id)
            return LifecycleOutcome(discovery=discovery, states=tuple(states))

        parameters = (additional_context or {}).get("parameters")
        self._enter(states, LifecycleState.INVOKING)
        invocation = self.invoke_skill(
            discovery.skill_uri,
            nrn_token,
            parameters if isinstance(parameters, Mapping) else None,
        )
        self._enter(states, LifecycleState.INVOKED)
        return LifecycleOutcome(discovery=discovery, invocation=invocation, states=tuple(states))
