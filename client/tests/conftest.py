"""Shared test fixtures for the photochat client tests.

The REST side is a small FastAPI app mounted into ``httpx.AsyncClient``
through ``httpx.ASGITransport``; it records every call it serves. The
real-time side is a FakeTransport that records emitted frames and lets a
test play the server by pushing inbound events.
"""
import asyncio
import base64
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from photochat.auth.storage import MemoryCredentialStore
from photochat.config import AppConfig, ChatSettings
from photochat.context import ChatContext


def make_token(claims: Dict[str, Any]) -> str:
    """Build an unsigned JWT-shaped token carrying *claims*."""

    def segment(obj: Dict[str, Any]) -> str:
        raw = json.dumps(obj).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{segment({'alg': 'none', 'typ': 'JWT'})}.{segment(claims)}.sig"


ALICE = {"_id": "u1", "name": "Alice", "email": "alice@example.com"}
BOB = {"_id": "u2", "name": "Bob", "email": "bob@example.com"}
ALICE_TOKEN = make_token({"id": "u1"})


# =============================================================================
# Fake REST backend
# =============================================================================


class FakeBackend:
    """In-memory chat server speaking the /v1 REST endpoints."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, Dict[str, str], Any]] = []
        self.users: List[Dict[str, Any]] = [ALICE, BOB]
        self.conversations: List[Dict[str, Any]] = []
        # conversation id -> messages, newest first
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.valid_tokens = {ALICE_TOKEN}
        self.refresh_tokens = {"refresh-u1": "u1"}
        self.list_shape = "chats"
        self.fail_status: Optional[int] = None
        # When set, GET /v1/chats waits on it before answering.
        self.list_gate: Optional[asyncio.Event] = None
        self.app = self._build_app()

    def calls_to(self, method: str, path: str) -> List[Tuple[str, str, Dict[str, str], Any]]:
        return [c for c in self.calls if c[0] == method and c[1] == path]

    def seed_messages(self, conversation_id: str, count: int, sender: Any = "u2") -> None:
        self.messages[conversation_id] = [
            {
                "_id": f"m{i}",
                "chat": conversation_id,
                "sender": sender,
                "text": f"message {i}",
                "createdAt": f"2024-05-01T12:{i // 60:02d}:{i % 60:02d}Z",
                "readBy": [],
            }
            for i in range(count, 0, -1)
        ]

    def _user(self, identity: str) -> Dict[str, Any]:
        return next((u for u in self.users if u["_id"] == identity), {"_id": identity})

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        backend = self

        async def record(request: Request) -> Optional[JSONResponse]:
            body = None
            raw = await request.body()
            if raw:
                body = json.loads(raw)
            backend.calls.append(
                (request.method, request.url.path, dict(request.query_params), body)
            )
            if backend.fail_status is not None:
                return JSONResponse({"message": "boom"}, status_code=backend.fail_status)
            return None

        def bearer(request: Request) -> str:
            return request.headers.get("authorization", "").removeprefix("Bearer ")

        def authorized(request: Request) -> bool:
            return bearer(request) in backend.valid_tokens

        def unauthorized() -> JSONResponse:
            return JSONResponse({"message": "Unauthorized"}, status_code=401)

        @app.get("/v1/chats")
        async def list_chats(request: Request):
            failed = await record(request)
            if failed is not None:
                return failed
            if not authorized(request):
                return unauthorized()
            if backend.list_gate is not None:
                await backend.list_gate.wait()
            chats = backend.conversations
            if backend.list_shape == "bare":
                return chats
            if backend.list_shape == "junk":
                return {"unexpected": True}
            return {backend.list_shape: chats}

        @app.post("/v1/chats")
        async def create_chat(request: Request):
            failed = await record(request)
            if failed is not None:
                return failed
            if not authorized(request):
                return unauthorized()
            wanted = set((await request.json())["participants"])
            for chat in backend.conversations:
                if {p["_id"] for p in chat["participants"]} == wanted:
                    return chat
            chat = {
                "_id": f"c{len(backend.conversations) + 1}",
                "participants": [backend._user(i) for i in sorted(wanted)],
                "lastMessage": None,
            }
            backend.conversations.append(chat)
            return chat

        @app.get("/v1/chats/{chat_id}/messages")
        async def chat_messages(chat_id: str, request: Request, page: int = 1, limit: int = 20):
            failed = await record(request)
            if failed is not None:
                return failed
            if not authorized(request):
                return unauthorized()
            if chat_id not in backend.messages and all(
                c["_id"] != chat_id for c in backend.conversations
            ):
                return JSONResponse({"message": "Chat not found"}, status_code=404)
            records = backend.messages.get(chat_id, [])
            start = (page - 1) * limit
            return {"messages": records[start:start + limit]}

        @app.get("/v1/users")
        async def find_users(request: Request, email: str = ""):
            failed = await record(request)
            if failed is not None:
                return failed
            if not authorized(request):
                return unauthorized()
            return [u for u in backend.users if u.get("email") == email]

        @app.put("/v1/users/refresh_token")
        async def refresh_token(request: Request):
            failed = await record(request)
            if failed is not None:
                return failed
            user = backend.refresh_tokens.get(bearer(request))
            if user is None:
                return unauthorized()
            access = make_token({"id": user, "rotated": True})
            backend.valid_tokens.add(access)
            return {"accessToken": access, "refreshToken": f"refresh-{user}-2"}

        return app


# =============================================================================
# Fake real-time transport
# =============================================================================


class FakeTransport:
    """Stands in for WebSocketTransport; the test drives the server side."""

    def __init__(self, url: str, token: str, on_event) -> None:
        self.url = url
        self.token = token
        self.on_event = on_event
        self.emitted: List[Tuple[str, Any]] = []
        self.connected = False
        self.running = False
        self.closed = False

    def open(self) -> None:
        self.running = True

    async def close(self) -> None:
        self.running = False
        self.connected = False
        self.closed = True

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))

    def sent(self, event: str) -> List[Any]:
        return [data for name, data in self.emitted if name == event]

    async def server_connect(self) -> None:
        self.connected = True
        await self.on_event("connect", None)

    async def server_disconnect(self) -> None:
        self.connected = False
        await self.on_event("disconnect", None)

    async def push(self, event: str, data: Any = None) -> None:
        await self.on_event(event, data)


class TransportRecorder:
    """Transport factory that remembers every transport it built."""

    def __init__(self) -> None:
        self.built: List[FakeTransport] = []

    def __call__(self, url: str, token: str, on_event) -> FakeTransport:
        transport = FakeTransport(url, token, on_event)
        self.built.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.built[-1]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store():
    """Signed-in as Alice (u1)."""
    return MemoryCredentialStore(
        {
            "accessToken": ALICE_TOKEN,
            "refreshToken": "refresh-u1",
            "user": ALICE,
        }
    )


@pytest.fixture
def transports():
    return TransportRecorder()


@pytest.fixture
def config():
    return AppConfig(
        chat=ChatSettings(typing_timeout_seconds=0.05, remote_typing_ttl_seconds=0.05)
    )


@pytest_asyncio.fixture
async def http_client(backend):
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=backend.app),
        base_url="http://testserver",
    )
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def context(config, store, http_client, transports):
    ctx = ChatContext(config, store, http_client=http_client, transport_factory=transports)
    yield ctx
    await ctx.close()


@pytest.fixture
def eventually():
    """Poll an async-updated condition instead of sleeping a fixed time."""

    async def wait(predicate, timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return wait
