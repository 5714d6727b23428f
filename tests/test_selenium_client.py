"""
SeleniumSessionClient behavior with the Chrome driver replaced by a stub.
"""

from collections import OrderedDict

import pytest

from support_panel.domain.events import DisconnectReason, EventKind, SessionState
from support_panel.infrastructure.whatsapp.whatsapp_client import (
    SeleniumSessionClient,
    remember,
)

pytestmark = pytest.mark.asyncio


class StubWebDriver:
    def __init__(self, alive_error=None):
        self.alive_error = alive_error
        self.opened = 0
        self.quit_calls = 0

    def open(self):
        self.opened += 1

    def is_alive(self):
        if self.alive_error is not None:
            raise self.alive_error
        return True

    def quit(self):
        self.quit_calls += 1


@pytest.fixture
def make_client(settings):
    def build(web):
        client = SeleniumSessionClient(7, settings.session.sessions_dir / "user_7", settings.session)
        client._web = web
        return client
    return build


async def test_poll_loop_reports_driver_connection_loss(make_client):
    web = StubWebDriver(alive_error=ConnectionRefusedError("chromedriver gone"))
    client = make_client(web)
    events = []

    async def on_status(event):
        events.append(event)

    client.subscribe(EventKind.STATUS, on_status)

    await client._poll_loop()

    assert [(e.state, e.reason) for e in events] == [
        (SessionState.SESSION_CLOSED, DisconnectReason.CONNECTION_CLOSED)
    ]
    assert web.quit_calls == 1


async def test_connect_after_close_quits_browser(make_client):
    web = StubWebDriver()
    client = make_client(web)

    await client.close()
    await client.connect()

    assert web.opened == 1
    assert web.quit_calls == 2
    assert client._poll_task is None


async def test_remember_evicts_oldest():
    store = OrderedDict()
    for key in ("a", "b", "c"):
        remember(store, key, limit=2)
    remember(store, "b", 4, limit=2)

    assert list(store.items()) == [("c", None), ("b", 4)]
