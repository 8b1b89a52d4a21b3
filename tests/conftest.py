import asyncio
import inspect
import os
import socket
import sys
from pathlib import Path

# Set defaults before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("POD_NAME", "pod-test-0")
os.environ.setdefault("POD_SECRET", "test-pod-secret-do-not-use")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from flowpod.service.runtime import reset_runtime_for_tests  # noqa: E402

POD_SECRET = os.environ["POD_SECRET"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeResolver:
    """Resolver answering from a fixed table, keyed by (hostname, family)."""

    def __init__(self, v4=None, v6=None, delay=0.0):
        self.v4 = v4 or {}
        self.v6 = v6 or {}
        self.delay = delay
        self.calls = []

    async def resolve(self, hostname, family):
        self.calls.append((hostname, family))
        if self.delay:
            await asyncio.sleep(self.delay)
        table = self.v4 if family == socket.AF_INET else self.v6
        answer = table.get(hostname)
        if isinstance(answer, Exception):
            raise answer
        return list(answer or [])


class FakeBridge:
    """Stand-in for GatewayBridge that records lifecycle calls."""

    instances = []

    def __init__(self, gateway_url, tenant_id, pod_secret, *, fail=False):
        self.gateway_url = gateway_url
        self.tenant_id = tenant_id
        self.pod_secret = pod_secret
        self.fail = fail
        self.started = False
        self.closed = False
        FakeBridge.instances.append(self)

    async def start(self):
        from flowpod.service.errors import BridgeInitError

        if self.fail:
            raise BridgeInitError("gateway unreachable")
        self.started = True
        return self

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_bridges():
    FakeBridge.instances = []
    yield FakeBridge.instances
    FakeBridge.instances = []


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
