import httpx
import pytest

from conftest import FakeResolver
from flowpod.config import FlowEngineKind
from flowpod.service.egress import EgressGuard
from flowpod.service.engine import (
    FLOWS_STARTED,
    FLOWS_STOPPED,
    SYSTEM_USER,
    EngineEvents,
    LocalFlowEngine,
    create_engine,
    graph_revision,
)
from flowpod.service.errors import DeployError, NotFoundError
from flowpod.service.outbound import OutboundHttpClient
from flowpod.storage.ephemeral import EphemeralStore
from flowpod.storage.models import EphemeralState


class TestEngineEvents:
    def test_handlers_receive_payload(self):
        events = EngineEvents()
        seen = []
        events.on(FLOWS_STARTED, seen.append)
        events.emit(FLOWS_STARTED, {"id": "a"})
        assert seen == [{"id": "a"}]

    def test_off_unsubscribes(self):
        events = EngineEvents()
        seen = []
        events.on(FLOWS_STARTED, seen.append)
        events.off(FLOWS_STARTED, seen.append)
        events.emit(FLOWS_STARTED, {"id": "a"})
        assert seen == []

    def test_failing_handler_does_not_stop_others(self):
        events = EngineEvents()
        seen = []

        def broken(info):
            raise RuntimeError("boom")

        events.on(FLOWS_STARTED, broken)
        events.on(FLOWS_STARTED, seen.append)
        events.emit(FLOWS_STARTED, {"id": "a"})
        assert seen == [{"id": "a"}]


class TestLocalFlowEngine:
    async def test_lifecycle(self):
        engine = LocalFlowEngine(EphemeralStore())
        assert engine.ready is False
        await engine.start()
        assert engine.ready is True
        await engine.stop()
        assert engine.ready is False

    async def test_deploy_replaces_graph(self):
        engine = LocalFlowEngine(EphemeralStore())
        assert await engine.deploy([{"id": "a"}, {"id": "b"}], user="u1") == 2
        assert await engine.deploy([{"id": "c"}], user="u2") == 1
        assert engine.deployed_graph == [{"id": "c"}]
        assert engine.deployed_by == "u2"

    @pytest.mark.parametrize(
        "graph",
        [
            {"id": "a"},
            ["not-a-node"],
            [{"type": "inject"}],
            [{"id": ""}],
            [{"id": "a"}, {"id": "a"}],
        ],
    )
    async def test_invalid_graph_keeps_previous_deployment(self, graph):
        engine = LocalFlowEngine(EphemeralStore())
        await engine.deploy([{"id": "keep"}], user="u1")
        with pytest.raises(DeployError):
            await engine.deploy(graph, user="u1")
        assert engine.deployed_graph == [{"id": "keep"}]
        assert engine.deployed_by == "u1"

    async def test_deploy_does_not_emit_start_events(self):
        engine = LocalFlowEngine(EphemeralStore())
        seen = []
        engine.events.on(FLOWS_STARTED, seen.append)
        await engine.deploy([{"id": "a"}], user="u1")
        assert seen == []

    def test_starts_as_system_user(self):
        assert LocalFlowEngine(EphemeralStore()).deployed_by == SYSTEM_USER


def test_graph_revision_is_order_sensitive_and_key_stable():
    a = graph_revision([{"id": "a", "type": "x"}, {"id": "b"}])
    assert a == graph_revision([{"type": "x", "id": "a"}, {"id": "b"}])
    assert a != graph_revision([{"id": "b"}, {"id": "a", "type": "x"}])
    assert len(a) == 16


def test_create_engine():
    store = EphemeralStore()
    assert isinstance(create_engine("local", store), LocalFlowEngine)
    assert isinstance(create_engine(FlowEngineKind.LOCAL, store), LocalFlowEngine)
    with pytest.raises(ValueError):
        create_engine("remote", store)


def _run_engine(handler, credentials=None):
    store = EphemeralStore()
    store.replace(EphemeralState.build([], credentials=credentials or {}))
    guard = EgressGuard(resolver=FakeResolver(v4={"api.example.com": ["93.184.216.34"]}))

    def outbound_factory():
        return OutboundHttpClient(guard, transport=httpx.MockTransport(handler))

    return LocalFlowEngine(store, outbound_factory=outbound_factory)


class TestFlowRun:
    async def test_run_calls_http_nodes_and_emits_lifecycle(self):
        seen = []

        def handler(request):
            seen.append((request.method, str(request.url), request.headers.get("Authorization")))
            return httpx.Response(201)

        engine = _run_engine(handler, credentials={"call": {"password": "tenant-token"}})
        await engine.deploy(
            [
                {"id": "tab", "type": "tab"},
                {"id": "start", "type": "inject", "z": "tab"},
                {
                    "id": "call",
                    "type": "http request",
                    "z": "tab",
                    "method": "POST",
                    "url": "https://api.example.com/hook",
                    "authType": "bearer",
                    "payload": {"a": 1},
                },
                {"id": "elsewhere", "type": "http request", "z": "other", "url": "https://api.example.com/"},
            ],
            user="u1",
        )
        events = []
        engine.events.on(FLOWS_STARTED, lambda info: events.append(("started", info)))
        engine.events.on(FLOWS_STOPPED, lambda info: events.append(("stopped", info)))

        result = await engine.run("tab")

        assert result == {"flowId": "tab", "nodes": [{"id": "call", "statusCode": 201}]}
        assert seen == [("POST", "https://api.example.com/hook", "Bearer tenant-token")]
        assert events == [
            ("started", {"config": {"id": "tab"}}),
            ("stopped", {"config": {"id": "tab"}}),
        ]

    async def test_blocked_node_reported_without_aborting_flow(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200)

        engine = _run_engine(handler)
        await engine.deploy(
            [
                {"id": "meta", "type": "http request", "z": "tab", "url": "http://169.254.169.254/latest/meta-data"},
                {"id": "nourl", "type": "http request", "z": "tab"},
                {"id": "ok", "type": "http request", "z": "tab", "url": "https://api.example.com/"},
            ],
            user="u1",
        )

        result = await engine.run("tab")

        meta, nourl, ok = result["nodes"]
        assert meta["error"]["blocked"] is True
        assert meta["error"]["code"] == "ssrf_blocked"
        assert meta["error"]["reason"] == "private_address"
        assert nourl["error"]["blocked"] is False
        assert ok == {"id": "ok", "statusCode": 200}
        assert seen == ["https://api.example.com/"]

    async def test_stopped_event_emitted_when_node_raises(self):
        def handler(request):
            raise RuntimeError("transport exploded")

        engine = _run_engine(handler)
        await engine.deploy(
            [{"id": "call", "type": "http request", "z": "tab", "url": "https://api.example.com/"}],
            user="u1",
        )
        stopped = []
        engine.events.on(FLOWS_STOPPED, stopped.append)
        with pytest.raises(RuntimeError):
            await engine.run("tab")
        assert stopped == [{"config": {"id": "tab"}}]

    async def test_unknown_flow_is_not_found(self):
        engine = _run_engine(lambda request: httpx.Response(200))
        await engine.deploy([{"id": "a", "z": "tab"}], user="u1")
        with pytest.raises(NotFoundError) as exc_info:
            await engine.run("missing")
        assert exc_info.value.status_code == 404
        assert exc_info.value.detail == {"flowId": "missing"}
