from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from pikcel_server import PikcelServer
from pikcel_client.models import ClientConfig
from pikcel_client.pikcel_client import PikcelAIClient

BASE_URL_TEMPLATE = "http://localhost:{}"
API_KEY = "test-api-key"
WEBHOOK_SECRET = "whsec_test"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[Tuple[PikcelServer, int], None]:
    """Start and yield a mock PikcelAI server on a random port."""
    port = unused_tcp_port_factory()
    server_instance = PikcelServer(completion_time=0.2)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config(server) -> ClientConfig:
    """Client configuration pointing at the mock server with fast retries."""
    _, port = server
    return ClientConfig(
        api_url=BASE_URL_TEMPLATE.format(port),
        api_key=API_KEY,
        webhook_secret=WEBHOOK_SECRET,
        timeout=2.0,
        max_retries=3,
        retry_delay=0.01,
    )


@pytest_asyncio.fixture
async def client(config) -> AsyncGenerator[PikcelAIClient, None]:
    async with PikcelAIClient(config) as client_instance:
        yield client_instance


class FakeClock:
    """Monotonic clock stand-in advanced by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
