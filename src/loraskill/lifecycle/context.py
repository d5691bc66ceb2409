from __future__ import annotations

import hashlib
import json
import platform
import sys
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

import numpy as np

from ..logging import get_logger

logger = get_logger(__name__)

SENSITIVE_FIELDS = ("password", "token", "key", "secret", "credential")


@dataclass(frozen=True)
class ErrorContext:
    """Structured record of one runtime failure, sent to the discovery service."""

    error_type: str
    message: str
    agent_id: str
    agent_version: str
    base_model_id: str
    task_description: str
    timestamp: datetime
    additional_context: dict[str, Any] = field(default_factory=dict)
    os: str = ""
    architecture: str = ""
    runtime_environment: str = "python"
    stack_trace: str = ""
    source_code_snippet: str = ""
    input_data_hash: str = ""
    skill_invoked_id: str = ""
    agent_state_hash: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "agentVersion": self.agent_version,
            "baseModelId": self.base_model_id,
            "os": self.os,
            "architecture": self.architecture,
            "runtimeEnvironment": self.runtime_environment,
            "errorType": self.error_type,
            "errorMessage": self.message,
            "stackTrace": self.stack_trace,
            "sourceCodeSnippet": self.source_code_snippet,
            "taskDescription": self.task_description,
            "inputDataHash": self.input_data_hash,
            "skillInvokedId": self.skill_invoked_id,
            "agentStateHash": self.agent_state_hash,
            "timestamp": self.timestamp.isoformat(),
            "additionalContext": self.additional_context,
        }


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, bytes, Mapping, list, tuple)):
        return len(value) == 0
    return False


def hash_payload(value: Any) -> str:
    """sha256 of ``value`` as text or sorted JSON; "" when empty or unhashable."""
    if _is_empty(value):
        return ""
    if isinstance(value, str):
        text = value
    else:
        if isinstance(value, np.ndarray):
            value = value.tolist()
        try:
            text = json.dumps(value, sort_keys=True, default=str)
        except (TypeError, ValueError):
            logger.warning("context_hash_failed type=%s", type(value).__name__)
            return ""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def sanitize_context(context: Mapping[str, Any] | None) -> dict[str, Any]:
    if not context:
        return {}
    return {str(k): v for k, v in context.items() if str(k) not in SENSITIVE_FIELDS}


def _json_safe(value: Any) -> Any:
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return str(value)


def source_snippet(stack_trace: str) -> str:
    lines = [line for line in (stack_trace or "").splitlines() if line.strip()]
    for line in lines:
        if ".py\"" in line or ".py:" in line:
            return line.strip()
    return lines[1].strip() if len(lines) > 1 else ""


def build_error_context(
    error: BaseException,
    *,
    agent_id: str,
    agent_version: str,
    base_model_id: str,
    task_description: str,
    additional_context: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> ErrorContext:
    extra = dict(additional_context or {})
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    ctx = ErrorContext(
        error_type=type(error).__name__,
        message=str(error),
        agent_id=agent_id,
        agent_version=agent_version,
        base_model_id=base_model_id,
        task_description=task_description,
        timestamp=now or datetime.now().astimezone(),
        additional_context=_json_safe(sanitize_context(extra)),
        os=sys.platform,
        architecture=platform.machine(),
        runtime_environment=f"python-{platform.python_version()}",
        stack_trace=stack,
        source_code_snippet=source_snippet(stack),
        input_data_hash=hash_payload(extra.get("inputData")),
        skill_invoked_id=str(extra.get("skillInvokedId") or ""),
        agent_state_hash=hash_payload(extra.get("agentState")),
    )
    logger.info("error_context_built agent_id=%s error_type=%s", agent_id, ctx.error_type)
    return ctx
