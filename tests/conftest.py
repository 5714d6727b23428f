"""
Shared fixtures: a scriptable fake session client and tmp_path backed
settings and database.
"""

import asyncio
from pathlib import Path
from typing import List, Optional

import pytest

from support_panel.application import MessageRouter, SessionManager
from support_panel.domain.events import (
    AckEvent,
    EventKind,
    InboundMessage,
    QrEvent,
    SessionState,
    StatusEvent,
)
from support_panel.infrastructure.config import (
    ReconnectSettings,
    RoutingSettings,
    SessionSettings,
    Settings,
    WebSettings,
)
from support_panel.infrastructure.followup import FollowUpService
from support_panel.infrastructure.persistence import ConversationLogger, Database
from support_panel.infrastructure.whatsapp import SessionClient


class FakeSessionClient(SessionClient):
    """In-memory session client; tests drive it by emitting events."""

    def __init__(self, agent_id, credential_dir, connect_delay=0.0, fail=False):
        super().__init__(agent_id, credential_dir)
        self.connect_delay = connect_delay
        self.fail = fail
        self.connected = False
        self.closed = False
        self.logged_out = False
        self.sent = []
        self.media = []
        self._phone = None

    @property
    def phone_number(self) -> Optional[str]:
        return self._phone

    async def connect(self):
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail:
            raise RuntimeError("browser could not start")
        self.connected = True

    async def close(self):
        self.closed = True

    async def logout(self):
        self.logged_out = True
        self.closed = True

    async def send_text(self, address, text):
        self.sent.append((address, text))
        return f"MSG{len(self.sent)}"

    async def send_media(self, address, path, caption="", mime_type=None):
        self.media.append((address, Path(path).name, Path(path).read_bytes(), caption, mime_type))
        return f"MEDIA{len(self.media)}"

    # ── Test drivers ───────────────────────────────────────────────

    async def emit_qr(self, payload):
        await self._emit(EventKind.QR, QrEvent(payload))

    async def emit_status(self, state, reason=None, phone=None):
        if phone:
            self._phone = phone
        await self._emit(EventKind.STATUS, StatusEvent(state, reason=reason, phone_number=phone))

    async def emit_logged_in(self, phone="5511999887766"):
        await self.emit_status(SessionState.LOGGED_IN, phone=phone)

    async def emit_message(self, message: InboundMessage):
        await self._emit(EventKind.MESSAGE, message)

    async def emit_ack(self, message_id, ack):
        await self._emit(EventKind.ACK, AckEvent(message_id=message_id, ack=ack))


class FakeClientFactory:
    def __init__(self):
        self.clients: List[FakeSessionClient] = []
        self.connect_delay = 0.0
        self.fail = False

    def __call__(self, agent_id, credential_dir):
        client = FakeSessionClient(agent_id, credential_dir, self.connect_delay, self.fail)
        self.clients.append(client)
        return client

    def for_agent(self, agent_id) -> List[FakeSessionClient]:
        return [c for c in self.clients if c.agent_id == agent_id]


def make_settings(tmp_path: Path, **reconnect) -> Settings:
    reconnect_values = dict(
        base_delay_ms=10,
        max_delay_ms=40,
        jitter_ratio=0.0,
        window_seconds=60.0,
        max_starts_per_window=10,
    )
    reconnect_values.update(reconnect)
    return Settings(
        session=SessionSettings(
            sessions_dir=tmp_path / "sessions",
            headless=True,
            qr_timeout_seconds=300.0,
            poll_interval_seconds=0.01,
            logout_restart_delay_seconds=0.01,
        ),
        reconnect=ReconnectSettings(**reconnect_values),
        routing=RoutingSettings(allow_groups=False),
        web=WebSettings(host="127.0.0.1", port=8000, log_level="info", restore_on_startup=False),
        database_file=tmp_path / "panel.db",
    )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "panel.db"))
    database.init()
    return database


@pytest.fixture
def conversation_log(db):
    return ConversationLogger(db)


@pytest.fixture
def follow_ups(db):
    return FollowUpService(db)


@pytest.fixture
def router(db, conversation_log, follow_ups):
    return MessageRouter(db, conversation_log, follow_ups, RoutingSettings(allow_groups=False))


@pytest.fixture
def factory():
    return FakeClientFactory()


@pytest.fixture
def manager(db, factory, settings, router, conversation_log):
    return SessionManager(db, factory, settings, router=router, conversation_log=conversation_log)


@pytest.fixture
def settings_factory(tmp_path):
    """Build settings with overridden reconnect values."""
    return lambda **reconnect: make_settings(tmp_path, **reconnect)
