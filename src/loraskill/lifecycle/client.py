from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

import requests

from ..errors import DiscoveryError, ServiceError, TransportError
from ..logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SkillNodeResult:
    skill_uri: str
    skill_node_id: str = ""
    cluster_id: str = ""
    confidence: float = 0.0
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Any) -> "SkillNodeResult":
        if not isinstance(data, dict) or not isinstance(data.get("skillUri"), str):
            raise DiscoveryError("Malformed discovery response: skillNodeResult.skillUri missing")
        metadata = data.get("metadata")
        return cls(
            skill_uri=data["skillUri"],
            skill_node_id=str(data.get("skillNodeId") or ""),
            cluster_id=str(data.get("clusterId") or ""),
            confidence=float(data.get("confidence") or 0.0),
            metadata={str(k): str(v) for k, v in metadata.items()} if isinstance(metadata, dict) else {},
        )


@dataclass(frozen=True)
class ErrorClusterQueryResponse:
    status: str
    skill_node_result: SkillNodeResult | None = None
    error_message: str | None = None
    similar_clusters: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ErrorClusterQueryResponse":
        status = _status(data, DiscoveryError)
        raw_result = data.get("skillNodeResult") if status == "QUERY_SUCCESS" else None
        clusters = data.get("similarClusters") or []
        return cls(
            status=status,
            skill_node_result=SkillNodeResult.from_json(raw_result) if raw_result is not None else None,
            error_message=data.get("errorMessage"),
            similar_clusters=[c for c in clusters if isinstance(c, dict)] if isinstance(clusters, list) else [],
        )


@dataclass(frozen=True)
class ErrorNodeSubmissionResponse:
    status: str
    error_node_id: str | None = None
    cluster_id: str | None = None
    error_message: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ErrorNodeSubmissionResponse":
        return cls(
            status=_status(data, DiscoveryError),
            error_node_id=data.get("errorNodeId"),
            cluster_id=data.get("clusterId"),
            error_message=data.get("errorMessage"),
        )


@dataclass(frozen=True)
class RouterInvocationResponse:
    status: str
    invocation_id: str | None = None
    skill_data: Any = None
    error_message: str | None = None
    execution_time: float | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "RouterInvocationResponse":
        elapsed = data.get("execution_time")
        return cls(
            status=_status(data),
            invocation_id=data.get("invocation_id"),
            skill_data=data.get("skill_data"),
            error_message=data.get("error_message"),
            execution_time=float(elapsed) if isinstance(elapsed, (int, float)) else None,
        )


def _status(data: dict[str, Any], error: type[ServiceError] = ServiceError) -> str:
    # Well-formed JSON with the wrong shape is a service failure, not a transport one.
    status = data.get("status")
    if not isinstance(status, str) or not status:
        raise error("Malformed response: status field missing")
    return status


class JsonServiceClient:
    """POSTs JSON bodies and returns decoded JSON objects.

    Transport failures surface as ``TransportError`` (message starts with
    "Network error" or "Invalid JSON"); non-2xx answers as ``ServiceError``.
    There is no retry; the timeout is the only policy applied here.
    """

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 60.0,
        api_key: str | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = str(base_url)
        self.timeout_s = float(timeout_s)
        self.api_key = api_key
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = self.api_key or os.environ.get("LORASKILL_API_KEY")
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def _url(self, path: str) -> str:
        return self.base_url.rstrip("/") + str(path)

    def post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._url(path)
        try:
            resp = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout_s)
        except requests.RequestException as exc:
            logger.error("%s_request_failed url=%s error=%s", self.service_name, url, exc)
            raise TransportError(f"Network error: {exc}") from exc
        if not 200 <= int(resp.status_code) < 300:
            raise ServiceError(f"{self.service_name} request failed: {resp.status_code} {resp.reason or ''}".strip())
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportError(f"Invalid JSON from {self.service_name}: {exc}") from exc
        if not isinstance(data, dict):
            raise TransportError(f"Invalid JSON from {self.service_name}: expected an object")
        return data


class DiscoveryClient(JsonServiceClient):
    service_name = "discovery"

    def query(self, body: dict[str, Any]) -> ErrorClusterQueryResponse:
        data = self.post_json("/api/error-clusters/query", body)
        return ErrorClusterQueryResponse.from_json(data)

    def submit(self, body: dict[str, Any]) -> ErrorNodeSubmissionResponse:
        data = self.post_json("/api/error-nodes/submit", body)
        return ErrorNodeSubmissionResponse.from_json(data)


class RouterClient(JsonServiceClient):
    service_name = "router"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["X-Skill-Engine"] = "wasm"
        return headers

    def invoke(self, body: dict[str, Any]) -> RouterInvocationResponse:
        data = self.post_json("/wasm/invoke", body)
        return RouterInvocationResponse.from_json(data)
