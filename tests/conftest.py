import httpx
import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport

from phantom_inference.services.inference.ollama_client import OllamaClient
from tests.mocks import fake_ollama


@pytest.fixture(autouse=True)
def _reset_fake_ollama():
    """Fresh model registry for every test."""
    fake_ollama.reset_state()
    yield
    structlog.reset_defaults()


@pytest_asyncio.fixture
async def http_client():
    """httpx client routed in-process to the fake Ollama app."""
    client = httpx.AsyncClient(transport=ASGITransport(app=fake_ollama.app))
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def ollama_client(http_client):
    client = OllamaClient(base_url=fake_ollama.BASE_URL, default_model="llava:13b", http_client=http_client)
    yield client
    await client.close()
