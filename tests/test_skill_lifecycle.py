from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import numpy as np
import pytest
import requests

from loraskill.adapters.store import AdapterStore
from loraskill.adapters.wire import adapter_to_wire
from loraskill.errors import DiscoveryError, TransportError
from loraskill.lifecycle.client import ErrorClusterQueryResponse, SkillNodeResult
from loraskill.lifecycle.manager import AgentConfig, LifecycleState, SkillLifecycleManager
from loraskill.training.compiler import AdapterCompiler, CompilerConfig


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, *, text: str | None = None):
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Server Error"
        self._payload = payload
        self._text = text

    def json(self):
        if self._text is not None:
            return json.loads(self._text)
        return self._payload


class FakeSession:
    """Routes POSTs by URL suffix to queued responses (or exceptions)."""

    def __init__(self, routes: dict[str, list]):
        self.routes = {k: list(v) for k, v in routes.items()}
        self.calls: list[tuple[str, dict, dict]] = []

    def post(self, url, json=None, headers=None, timeout=None):  # noqa: A002
        self.calls.append((url, json, headers or {}))
        for suffix, queue in self.routes.items():
            if url.endswith(suffix):
                item = queue.pop(0)
                if isinstance(item, BaseException):
                    raise item
                return item
        raise AssertionError(f"unexpected url {url}")

    def paths(self) -> list[str]:
        return [url.split("://", 1)[1].split("/", 1)[1] for url, _, _ in self.calls]


QUERY = "/api/error-clusters/query"
SUBMIT = "/api/error-nodes/submit"
INVOKE = "/wasm/invoke"


def _config() -> AgentConfig:
    return AgentConfig(
        agent_id="agent-1",
        agent_version="1.2.3",
        base_model_id="CodeT5-base",
        discovery_endpoint="http://graph.test/",
        router_endpoint="http://router.test",
        timeout_s=5.0,
    )


def _manager(session: FakeSession, store: AdapterStore | None = None) -> SkillLifecycleManager:
    return SkillLifecycleManager(_config(), session=session, store=store)


def _boom() -> ValueError:
    try:
        raise ValueError("division went sideways")
    except ValueError as exc:
        return exc


def test_skill_found_on_query_success() -> None:
    session = FakeSession(
        {
            QUERY: [
                FakeResponse(
                    payload={
                        "status": "QUERY_SUCCESS",
                        "skillNodeResult": {"skillUri": "uri://x", "skillNodeId": "n1", "clusterId": "c1", "confidence": 0.93},
                    }
                )
            ]
        }
    )
    result = _manager(session).handle_error(_boom(), "compute totals", {"token": "secret", "inputData": [1, 2]})

    assert result.skill_found is True
    assert result.skill_uri == "uri://x"
    assert result.skill_node_id == "n1"
    assert result.confidence == pytest.approx(0.93)

    url, body, headers = session.calls[0]
    assert url == "http://graph.test/api/error-clusters/query"
    assert body["maxResults"] == 5
    assert body["similarityThreshold"] == 0.7
    ctx = body["errorContext"]
    assert ctx["errorType"] == "ValueError"
    assert ctx["errorMessage"] == "division went sideways"
    assert ctx["agentId"] == "agent-1"
    assert ctx["taskDescription"] == "compute totals"
    assert "token" not in ctx["additionalContext"]
    assert len(ctx["inputDataHash"]) == 64
    assert headers["Content-Type"] == "application/json"


def test_no_match_submits_error_node() -> None:
    session = FakeSession(
        {
            QUERY: [FakeResponse(payload={"status": "QUERY_NO_MATCH"})],
            SUBMIT: [FakeResponse(payload={"status": "SUBMISSION_SUCCESS", "errorNodeId": "e1", "clusterId": "c9"})],
        }
    )
    manager = _manager(session)
    result = manager.handle_error(_boom(), "task")

    assert result.skill_found is False
    assert result.error_node_id == "e1"
    assert result.cluster_id == "c9"
    submit_body = session.calls[1][1]
    assert submit_body["bountyAmount"] == 1_000_000
    assert submit_body["priority"] == "MEDIUM"
    assert manager.metrics.submissions_total == 1


def test_failed_submission_becomes_negative_result() -> None:
    session = FakeSession(
        {
            QUERY: [FakeResponse(payload={"status": "QUERY_NO_MATCH"})],
            SUBMIT: [FakeResponse(payload={"status": "SUBMISSION_DUPLICATE", "errorMessage": "dup"})],
        }
    )
    result = _manager(session).handle_error(_boom(), "task")
    assert result.skill_found is False
    assert result.confidence == 0.0
    assert result.error_node_id is None


def test_query_failed_status_is_swallowed() -> None:
    session = FakeSession({QUERY: [FakeResponse(payload={"status": "QUERY_FAILED", "errorMessage": "index offline"})]})
    result = _manager(session).handle_error(_boom(), "task")
    assert result.skill_found is False
    assert result.confidence == 0.0


def test_http_error_from_discovery_is_swallowed() -> None:
    session = FakeSession({QUERY: [FakeResponse(status_code=503, payload={})]})
    result = _manager(session).handle_error(_boom(), "task")
    assert result.skill_found is False


def test_network_error_propagates() -> None:
    session = FakeSession({QUERY: [requests.ConnectionError("connection refused")]})
    with pytest.raises(TransportError, match="Network error"):
        _manager(session).handle_error(_boom(), "task")


def test_invalid_json_propagates() -> None:
    session = FakeSession({QUERY: [FakeResponse(text="<html>")]})
    with pytest.raises(TransportError, match="Invalid JSON"):
        _manager(session).handle_error(_boom(), "task")


def test_message_markers_propagate_even_when_untyped() -> None:
    manager = _manager(FakeSession({}))

    def _raise(_ctx):
        raise RuntimeError("failed to fetch cluster index")

    manager.discover_skill_for_error = _raise  # type: ignore[assignment]
    with pytest.raises(RuntimeError, match="fetch"):
        manager.handle_error(_boom(), "task")


def test_invoke_success_stores_returned_adapter(adapter_factory) -> None:
    adapter = adapter_factory("skill-remote", np.arange(4), [1.0], rank=2, alpha=2.0)
    session = FakeSession(
        {
            INVOKE: [
                FakeResponse(
                    payload={
                        "status": "SUCCESS",
                        "invocation_id": "inv_from_router",
                        "skill_data": adapter_to_wire(adapter, json_safe=True),
                    }
                )
            ]
        }
    )
    store = AdapterStore()
    result = _manager(session, store).invoke_skill("uri://x", "nrn-token", {"n": 1})

    assert result.success is True
    assert result.invocation_id == "inv_from_router"
    assert result.adapter is not None
    assert store.get("skill-remote") is result.adapter
    np.testing.assert_array_equal(result.adapter.weights_a, [0.0, 1.0, 2.0, 3.0])

    url, body, headers = session.calls[0]
    assert url == "http://router.test/wasm/invoke"
    assert body["skill_uri"] == "uri://x"
    assert body["nrn_token"] == "nrn-token"
    assert body["agent_id"] == "agent-1"
    assert body["parameters"] == {"n": 1}
    assert body["priority"] == "normal"
    assert body["invocation_id"].startswith("inv_")
    assert isinstance(body["timestamp"], int)


def test_invoke_failure_status_does_not_raise() -> None:
    session = FakeSession({INVOKE: [FakeResponse(payload={"status": "FAILURE", "error_message": "no credits", "invocation_id": "i"})]})
    result = _manager(session).invoke_skill("uri://x", "tok")
    assert result.success is False
    assert result.error_message == "no credits"


def test_invoke_http_error_resolves_to_failure() -> None:
    session = FakeSession({INVOKE: [FakeResponse(status_code=500, payload={})]})
    result = _manager(session).invoke_skill("uri://x", "tok")
    assert result.success is False
    assert "500" in (result.error_message or "")
    assert result.invocation_id is not None and result.invocation_id.startswith("inv_")


def test_end_to_end_invokes_found_skill() -> None:
    session = FakeSession(
        {
            QUERY: [FakeResponse(payload={"status": "QUERY_SUCCESS", "skillNodeResult": {"skillUri": "uri://fix"}})],
            INVOKE: [FakeResponse(payload={"status": "SUCCESS", "skill_data": {"patched": True}, "invocation_id": "i1"})],
        }
    )
    outcome = _manager(session).handle_error_and_invoke_skill(_boom(), "task", "tok", {"parameters": {"retry": "yes"}})

    assert outcome.discovery.skill_uri == "uri://fix"
    assert outcome.invocation is not None and outcome.invocation.success
    assert outcome.invocation.skill_data == {"patched": True}
    assert session.calls[1][1]["parameters"] == {"retry": "yes"}
    assert outcome.states == (
        LifecycleState.RECEIVED,
        LifecycleState.CONTEXT_BUILT,
        LifecycleState.DISCOVERING,
        LifecycleState.SKILL_FOUND,
        LifecycleState.INVOKING,
        LifecycleState.INVOKED,
    )


def test_end_to_end_skips_invocation_without_skill() -> None:
    session = FakeSession(
        {
            QUERY: [FakeResponse(payload={"status": "QUERY_NO_MATCH"})],
            SUBMIT: [FakeResponse(payload={"status": "SUBMISSION_SUCCESS", "errorNodeId": "e7"})],
        }
    )
    outcome = _manager(session).handle_error_and_invoke_skill(_boom(), "task", "tok")

    assert outcome.invocation is None
    assert outcome.discovery.error_node_id == "e7"
    assert session.paths() == [QUERY.lstrip("/"), SUBMIT.lstrip("/")]
    assert outcome.states[-1] is LifecycleState.ERROR_SUBMITTED


def test_metrics_render_outcomes() -> None:
    session = FakeSession(
        {
            QUERY: [FakeResponse(payload={"status": "QUERY_SUCCESS", "skillNodeResult": {"skillUri": "uri://m"}})],
            INVOKE: [FakeResponse(payload={"status": "FAILURE"})],
        }
    )
    manager = _manager(session)
    manager.handle_error_and_invoke_skill(_boom(), "task", "tok")
    text = manager.metrics.render_prometheus()
    assert 'skill_discoveries_total{outcome="found"} 1' in text
    assert 'skill_invocations_total{outcome="failure"} 1' in text


class _DiscoveryHandler(BaseHTTPRequestHandler):
    bodies: list[dict] = []

    def log_message(self, format, *args):  # noqa: N802
        return

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        _DiscoveryHandler.bodies.append(json.loads(self.rfile.read(length) or b"{}"))
        body = json.dumps({"status": "QUERY_SUCCESS", "skillNodeResult": {"skillUri": "uri://live"}}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


def test_discovery_over_real_http() -> None:
    server = ThreadingHTTPServer(("127.0.0.1", 0), _DiscoveryHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        base = f"http://127.0.0.1:{server.server_address[1]}"
        cfg = AgentConfig(
            agent_id="live",
            agent_version="1",
            base_model_id="m",
            discovery_endpoint=base,
            router_endpoint=base,
            timeout_s=5.0,
        )
        result = SkillLifecycleManager(cfg).handle_error(_boom(), "live task")
    finally:
        server.shutdown()
        server.server_close()

    assert result.skill_uri == "uri://live"
    assert _DiscoveryHandler.bodies[-1]["errorContext"]["agentId"] == "live"


def test_array_input_data_still_reaches_discovery() -> None:
    session = FakeSession(
        {QUERY: [FakeResponse(payload={"status": "QUERY_SUCCESS", "skillNodeResult": {"skillUri": "uri://arr"}})]}
    )
    result = _manager(session).handle_error(_boom(), "t", {"inputData": np.array([1.0, 2.0]), "agentState": np.zeros(3)})

    assert len(session.calls) == 1
    assert result.skill_uri == "uri://arr"
    ctx = session.calls[0][1]["errorContext"]
    assert len(ctx["inputDataHash"]) == 64
    assert len(ctx["agentStateHash"]) == 64


@pytest.mark.parametrize(
    "payload",
    [
        {"error": "maintenance"},
        {"status": "QUERY_SUCCESS", "skillNodeResult": {"skillNodeId": "n1"}},
        {"status": "QUERY_SUCCESS"},
    ],
)
def test_malformed_discovery_body_becomes_negative_result(payload) -> None:
    session = FakeSession({QUERY: [FakeResponse(payload=payload)]})
    manager = _manager(session)
    result = manager.handle_error(_boom(), "task")
    assert result.skill_found is False
    assert result.confidence == 0.0
    assert manager.metrics.discoveries_total == {"failed": 1}


def test_no_match_ignores_partial_skill_node_result() -> None:
    session = FakeSession(
        {
            QUERY: [FakeResponse(payload={"status": "QUERY_NO_MATCH", "skillNodeResult": {}})],
            SUBMIT: [FakeResponse(payload={"status": "SUBMISSION_SUCCESS", "errorNodeId": "e2"})],
        }
    )
    result = _manager(session).handle_error(_boom(), "task")
    assert result.skill_found is False
    assert result.error_node_id == "e2"


def test_stored_adapter_gauge_follows_store(adapter_factory) -> None:
    store = AdapterStore()
    manager = _manager(FakeSession({}), store)
    assert "lora_adapters_stored 0\n" in manager.metrics.render_prometheus()

    AdapterCompiler(store, config=CompilerConfig(input_dim=8, output_dim=8, seed=0)).compile([], [], {"skillName": "G"})
    store.set(adapter_factory("extra", [1.0], [1.0]))
    assert "lora_adapters_stored 2\n" in manager.metrics.render_prometheus()

    store.remove("extra")
    assert "lora_adapters_stored 1\n" in manager.metrics.render_prometheus()


def test_skill_node_result_tolerates_non_mapping_metadata() -> None:
    node = SkillNodeResult.from_json({"skillUri": "uri://m", "metadata": ["not", "a", "map"]})
    assert node.metadata == {}
    assert SkillNodeResult.from_json({"skillUri": "uri://m", "metadata": {"lang": 3}}).metadata == {"lang": "3"}

    parsed = ErrorClusterQueryResponse.from_json({"status": "QUERY_NO_MATCH", "skillNodeResult": {}})
    assert parsed.skill_node_result is None
    with pytest.raises(DiscoveryError):
        ErrorClusterQueryResponse.from_json({"error": "x"})
