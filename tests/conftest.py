import pytest
from fastapi.testclient import TestClient

from termchat.config import AppConfig, ServerConfig, StorageConfig
from termchat.conversation.storage import ConversationStore
from termchat.llm import registry
from termchat.llm.base import ChatResult, LLMProvider
from termchat.main import create_app

OPENAI_CHUNKS = [
    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":" world"}}]}\n\n',
    b"data: [DONE]\n\n",
]


class FakeStream:
    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False

    async def aiter_bytes(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self):
        self.closed = True


class FakeProvider(LLMProvider):
    def __init__(self, name, reply="Hi from the fake", chunks=None, error=None):
        super().__init__()
        self.name = name
        self.models = registry.provider_models(name)
        self.reply = reply
        self.chunks = OPENAI_CHUNKS if chunks is None else chunks
        self.error = error
        self.stream_error = None
        self.calls = []

    async def chat(self, messages, model, temperature, stream=False):
        self.calls.append(
            {"messages": messages, "model": model, "temperature": temperature, "stream": stream}
        )
        if self.error is not None:
            raise self.error
        if stream:
            return ChatResult(model=model, provider=self.name, stream=FakeStream(self.chunks, self.stream_error))
        return ChatResult(
            model=model,
            provider=self.name,
            content=self.reply,
            usage={"total_tokens": 7},
            duration=3,
        )


@pytest.fixture
def config(tmp_path):
    return AppConfig(storage=StorageConfig(data_dir=str(tmp_path / "data")))


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "data")


@pytest.fixture
def providers():
    return {
        registry.LOCAL: FakeProvider(registry.LOCAL),
        registry.MINITOOL: FakeProvider(registry.MINITOOL, reply="Scraped answer"),
    }


@pytest.fixture
def app(config, store, providers):
    return create_app(config=config, store=store, providers=providers)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_client(tmp_path, store, providers):
    """Build a client around a customised server config."""
    clients = []

    def _make(**server_overrides):
        cfg = AppConfig(
            storage=StorageConfig(data_dir=str(tmp_path / "data")),
            server=ServerConfig(**server_overrides),
        )
        c = TestClient(create_app(config=cfg, store=store, providers=providers))
        c.__enter__()
        clients.append(c)
        return c

    yield _make
    for c in clients:
        c.__exit__(None, None, None)
