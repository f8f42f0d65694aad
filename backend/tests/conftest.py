import asyncio
import json

import fakeredis
import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from chatwidget import models
from chatwidget.database import Base
from chatwidget.feed import LiveFeed
from chatwidget.remote import RemoteFunctions
from chatwidget.session.bridge import HostBridge
from chatwidget.session.identity import ExternalIdentity, TokenStore
from chatwidget.session.machine import ChatWidget
from chatwidget.store import DataStore
from chatwidget.uploads import AttachmentStore

API_KEY = "widget-key"
RESOLVER_URL = "http://functions.test/resolve-chat-visitor"
ASSIGN_URL = "http://functions.test/assign-chat-room"


async def wait_for(predicate, timeout: float = 2.0):
    """Poll until `predicate()` is truthy; feed delivery happens on listener tasks."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class RemoteStub:
    """Canned answers for the resolver and the assignment probe; None answers with a 500."""

    def __init__(self):
        self.resolve = None
        self.assign = {"assigned": False}
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        name = "resolve" if str(request.url) == RESOLVER_URL else "assign"
        self.calls.append((name, body))
        answer = getattr(self, name)
        if answer is None:
            return httpx.Response(500, json={"error": "unavailable"})
        return httpx.Response(200, json=answer)

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)


class Frame:
    """Collects what the engine sends to the frame."""

    def __init__(self):
        self.events = []
        self.tokens = []

    async def send(self, event):
        self.events.append(event)

    async def persist(self, token):
        self.tokens.append(token)

    def of_type(self, type_):
        return [e for e in self.events if e.type == type_]

    def last(self, type_):
        found = self.of_type(type_)
        return found[-1] if found else None

    @property
    def state(self):
        return self.last("state")


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'chat.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
def feed(redis_client):
    return LiveFeed(redis_client, poll_timeout=0.01)


@pytest.fixture
def store(session_factory, feed):
    return DataStore(session_factory, feed)


@pytest.fixture
def remote_stub():
    return RemoteStub()


@pytest_asyncio.fixture
async def remote(remote_stub):
    client = httpx.AsyncClient(transport=httpx.MockTransport(remote_stub.handler))
    yield RemoteFunctions(client, RESOLVER_URL, ASSIGN_URL)
    await client.aclose()


@pytest.fixture
def uploads(tmp_path):
    return AttachmentStore(str(tmp_path / "media"), "/media", max_size=1024)


@pytest.fixture
def settings(session_factory):
    """Writes the tenant settings row for API_KEY."""
    def write(**fields):
        with session_factory() as db:
            db.add(models.WidgetSettings(api_key=API_KEY, **fields))
            db.commit()
    return write


@pytest_asyncio.fixture
async def make_widget(store, feed, remote, uploads):
    created = []

    def make(visitor_token=None, external=None, is_open=True, typing_timeout=0.2):
        frame = Frame()
        widget = ChatWidget(
            API_KEY,
            store=store,
            feed=feed,
            remote=remote,
            uploads=uploads,
            bridge=HostBridge(frame.send, is_open=is_open),
            tokens=TokenStore(visitor_token, frame.persist),
            external=external or ExternalIdentity(api_key=API_KEY),
            page_size=5,
            typing_throttle=2,
            typing_timeout=typing_timeout,
        )
        created.append(widget)
        return widget, frame

    yield make
    for widget in created:
        await widget.close()
