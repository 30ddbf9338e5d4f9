from __future__ import annotations

import prometheus_client

prometheus_client.REGISTRY._names_to_collectors.clear()
prometheus_client.REGISTRY._collector_to_names.clear()

import pytest

from wagateway.tests.fakes import BackendRecorder, FakeClientFactory


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def recorder() -> BackendRecorder:
    return BackendRecorder()


@pytest.fixture
def factory() -> FakeClientFactory:
    return FakeClientFactory()
