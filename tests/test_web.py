import pytest
from fastapi.testclient import TestClient

from support_panel.domain import ClientAssignment, InstanceStatus
from support_panel.web.app import create_app


@pytest.fixture
def api(settings, factory):
    with TestClient(create_app(settings, factory)) as client:
        yield client


def connect(api, agent_id):
    api.app.state.manager.get_instance(agent_id).status = InstanceStatus.CONNECTED


def test_start_and_list_instances(api, factory):
    response = api.post("/api/instances/7/start", json={"display_name": "Maria"})
    assert response.status_code == 200
    body = response.json()
    assert body["agent_id"] == 7
    assert body["display_name"] == "Maria"
    assert body["status"] == "disconnected"
    assert "client" not in body

    instances = api.get("/api/instances").json()["instances"]
    assert [i["agent_id"] for i in instances] == [7]
    assert api.get("/api/instances/7").json()["display_name"] == "Maria"
    assert len(factory.clients) == 1


def test_start_without_body(api):
    assert api.post("/api/instances/3/start").status_code == 200


def test_unknown_instance(api):
    assert api.get("/api/instances/99").status_code == 404
    assert api.post("/api/instances/99/logout").status_code == 404
    assert api.post("/api/instances/99/stop").json() == {"stopped": False}


def test_start_failure_is_500(api, factory):
    factory.fail = True
    response = api.post("/api/instances/7/start")
    assert response.status_code == 500
    assert api.get("/api/instances").json()["instances"] == []


def test_rate_limited_start_is_429(settings_factory, factory):
    with TestClient(create_app(settings_factory(max_starts_per_window=1), factory)) as api:
        assert api.post("/api/instances/1/start").status_code == 200
        assert api.post("/api/instances/2/start").status_code == 429


def test_send_message(api, factory):
    payload = {"contact_id": "5551", "text": "Hola!"}
    assert api.post("/api/instances/7/messages", json=payload).status_code == 404

    api.post("/api/instances/7/start")
    assert api.post("/api/instances/7/messages", json=payload).status_code == 409

    connect(api, 7)
    response = api.post("/api/instances/7/messages", json=payload)
    assert response.status_code == 200
    assert response.json() == {"sent": True, "message_id": "MSG1"}
    assert factory.clients[0].sent == [("5551@s.whatsapp.net", "Hola!")]

    messages = api.get("/api/contacts/5551/messages").json()["messages"]
    assert [m["message"] for m in messages] == ["Hola!"]


def test_send_empty_message_is_rejected(api):
    api.post("/api/instances/7/start")
    connect(api, 7)
    response = api.post("/api/instances/7/messages", json={"contact_id": "5551", "text": "  "})
    assert response.status_code == 400


def test_send_media_upload(api, factory):
    api.post("/api/instances/7/start")
    connect(api, 7)

    response = api.post(
        "/api/instances/7/media",
        data={"contact_id": "5551", "caption": "Recibo"},
        files={"file": ("recibo.pdf", b"%PDF-1.4", "application/pdf")},
    )

    assert response.status_code == 200
    assert factory.clients[0].media == [
        ("5551@s.whatsapp.net", "recibo.pdf", b"%PDF-1.4", "Recibo", "application/pdf")
    ]


def test_stop_and_logout(api, factory):
    api.post("/api/instances/7/start")
    assert api.post("/api/instances/7/logout").json() == {"logged_out": True}
    assert factory.clients[0].logged_out

    assert api.post("/api/instances/7/stop").json() == {"stopped": True}
    assert api.get("/api/instances/7").status_code == 404


def test_agent_contacts_and_modes(api):
    db = api.app.state.db
    db.create_assignment(ClientAssignment("5551", 7))

    assert api.post("/api/contacts/5551/mode", json={"mode": "human"}).json() == {
        "contact_id": "5551",
        "mode": "human",
    }

    contacts = api.get("/api/agents/7/contacts").json()["contacts"]
    assert contacts[0]["contact_id"] == "5551"
    assert contacts[0]["mode"] == "human"
    assert api.get("/api/agents/8/contacts").json() == {"contacts": []}
