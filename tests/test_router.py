import pytest

from support_panel.application import MessageRouter
from support_panel.domain import InboundMessage, MessageKind, MessageStatus
from support_panel.domain.events import AckEvent
from support_panel.infrastructure.config import RoutingSettings

pytestmark = pytest.mark.asyncio


def inbound(remote="5551@s.whatsapp.net", text="Hola", **kwargs):
    kwargs.setdefault("message_id", "IN1")
    return InboundMessage(remote_address=remote, text=text, **kwargs)


def client_logs(db, contact_id):
    return db.find_all("conversation_logs", "contact_id = ? AND role = 'client'", (contact_id,))


async def test_first_agent_claims_contact(router, db):
    routed = await router.handle_message(1, inbound(push_name="Maria"))

    assert routed.contact_id == "5551"
    assert routed.agent_id == 1
    assert routed.display_name == "Maria"
    assert db.get_assignment("5551").agent_id == 1

    dropped = await router.handle_message(2, inbound(message_id="IN2", text="Sigo aqui"))

    assert dropped is None
    assert db.get_assignment("5551").agent_id == 1
    logs = client_logs(db, "5551")
    assert [row["message"] for row in logs] == ["Hola"]
    assert logs[0]["agent_id"] == 1


async def test_same_agent_touches_assignment(router, db):
    await router.handle_message(1, inbound())
    first = db.get_assignment("5551").last_message_at

    await router.handle_message(1, inbound(message_id="IN2", text="Otra vez"))

    assignment = db.get_assignment("5551")
    assert assignment.agent_id == 1
    assert assignment.last_message_at >= first
    assert len(db.find_all("assignments")) == 1
    assert len(client_logs(db, "5551")) == 2


async def test_self_sent_is_dropped(router, db):
    assert await router.handle_message(1, inbound(from_me=True)) is None
    assert db.find_all("assignments") == []


@pytest.mark.parametrize("remote", [
    "120363@g.us",
    "status@broadcast",
    "1234@broadcast",
    "1203@newsletter",
    "something@lid",
])
async def test_non_individual_addresses_are_dropped(router, db, remote):
    assert await router.handle_message(1, inbound(remote=remote)) is None
    assert db.find_all("assignments") == []
    assert db.find_all("conversation_logs") == []


async def test_groups_accepted_when_enabled(db, conversation_log):
    router = MessageRouter(db, conversation_log, settings=RoutingSettings(allow_groups=True))

    routed = await router.handle_message(
        1, inbound(remote="120363@g.us", group_name="Ventas", push_name="Ana")
    )

    assert routed.is_group is True
    assignment = db.get_assignment("120363")
    assert assignment.is_group is True
    assert assignment.group_name == "Ventas"
    assert await router.handle_message(1, inbound(remote="status@broadcast")) is None


async def test_empty_message_leaves_no_trace(router, db):
    assert await router.handle_message(1, inbound(text="   ")) is None
    assert await router.handle_message(1, inbound(kind=MessageKind.UNKNOWN, text="")) is None

    assert db.find_all("assignments") == []
    assert db.find_all("conversation_logs") == []


async def test_display_name_fallback(router):
    routed = await router.handle_message(1, inbound(profile_name="Maria Lopez"))
    assert routed.display_name == "Maria Lopez"

    routed = await router.handle_message(1, inbound(remote="5552@c.us"))
    assert routed.display_name == "5552"


async def test_media_messages_use_caption_or_placeholder(router, db):
    routed = await router.handle_message(
        1, inbound(kind=MessageKind.IMAGE, text="", caption="Mi recibo")
    )
    assert routed.text == "Mi recibo"

    routed = await router.handle_message(1, inbound(kind=MessageKind.AUDIO, text="", message_id="IN2"))
    assert routed.text == "[audio]"


async def test_reply_cancels_follow_up(router, follow_ups, db):
    follow_ups.start_follow_up("5551", "5551@s.whatsapp.net")

    await router.handle_message(1, inbound())

    assert not follow_ups.has_active_follow_up("5551")
    assert db.find_all("follow_ups") == []


async def test_routing_errors_do_not_escape(db, conversation_log):
    class BrokenGateway:
        def get_assignment(self, contact_id):
            raise RuntimeError("database is locked")

    router = MessageRouter(BrokenGateway(), conversation_log)

    assert await router.handle_message(1, inbound()) is None


async def test_ack_updates_outbound_status(router, db, conversation_log):
    conversation_log.log("support", "Hola!", "5551", agent_id=1, message_id="OUT1")

    def status():
        return db.find_one("conversation_logs", "message_id = ?", ("OUT1",))["status"]

    assert await router.handle_ack(1, AckEvent("OUT1", 3)) == MessageStatus.DELIVERED
    assert status() == "delivered"

    assert await router.handle_ack(1, AckEvent("OUT1", 1)) is None
    assert status() == "delivered"

    assert await router.handle_ack(1, AckEvent("OUT1", 4)) == MessageStatus.READ
    assert status() == "read"


async def test_contact_owned_by_agent_a_scenario(manager, factory, db):
    await manager.start_instance(1, "Ana")
    await manager.start_instance(2, "Bruno")
    await factory.for_agent(1)[0].emit_logged_in("5511000000001")
    await factory.for_agent(2)[0].emit_logged_in("5511000000002")

    await factory.for_agent(1)[0].emit_message(inbound(message_id="A1"))
    await factory.for_agent(2)[0].emit_message(inbound(message_id="B1", text="Hola otra vez"))

    assert db.get_assignment("5551").agent_id == 1
    assert [row["agent_id"] for row in client_logs(db, "5551")] == [1]
    assert [a.contact_id for a in db.get_assignments_for_agent(2)] == []


async def test_ack_through_session_events(manager, factory, db):
    await manager.start_instance(1, "Ana")
    client = factory.clients[0]
    await client.emit_logged_in()
    message_id = await manager.send_message(1, "5551", "Hola")

    await client.emit_ack(message_id, 4)

    assert db.find_one("conversation_logs", "message_id = ?", (message_id,))["status"] == "read"
