"""
FastAPI Web Application - Support Panel API
============================================

JSON endpoints used by the dashboard to manage agent sessions, send
messages and read contact assignments.

The SessionManager is built once in the lifespan and kept on app.state;
endpoints never create sessions on their own.
"""

import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..application import (
    CredentialStoreError,
    InstanceNotAvailableError,
    InstanceNotConnectedError,
    MessageRouter,
    SessionCreationError,
    SessionError,
    SessionManager,
)
from ..domain.models import ConversationMode
from ..infrastructure.config import Settings, get_settings
from ..infrastructure.followup import FollowUpService
from ..infrastructure.persistence import ConversationLogger, init_database
from ..infrastructure.whatsapp import SeleniumSessionClientFactory, SessionClientFactory

logger = logging.getLogger(__name__)


# ── Request bodies ─────────────────────────────────────────────────

class StartRequest(BaseModel):
    display_name: str = ""


class SendMessageRequest(BaseModel):
    contact_id: str
    text: str
    is_group: bool = False


class ContactModeRequest(BaseModel):
    mode: ConversationMode
    activated_by: str = "support"


ERROR_STATUS = {
    InstanceNotAvailableError: 404,
    InstanceNotConnectedError: 409,
    SessionCreationError: 500,
    CredentialStoreError: 500,
}


def create_app(
    settings: Optional[Settings] = None,
    client_factory: Optional[SessionClientFactory] = None,
) -> FastAPI:
    """Build the API. Tests pass their own settings and client factory."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for issue in settings.validate():
            logger.warning(issue)

        settings.session.sessions_dir.mkdir(parents=True, exist_ok=True)
        db = init_database(str(settings.database_file))
        conversation_log = ConversationLogger(db)
        follow_ups = FollowUpService(db)
        follow_ups.load()

        router = MessageRouter(db, conversation_log, follow_ups, settings.routing)
        manager = SessionManager(
            db,
            client_factory or SeleniumSessionClientFactory(settings.session),
            settings,
            router=router,
            conversation_log=conversation_log,
        )

        app.state.db = db
        app.state.manager = manager
        app.state.conversation_log = conversation_log
        app.state.follow_ups = follow_ups
        logger.info("Database ready")

        if settings.web.restore_on_startup:
            agents = [(row["agent_id"], row.get("display_name") or "") for row in db.find_all("instances")]
            await manager.restore_instances(agents)

        yield

        await manager.shutdown()

    app = FastAPI(
        title="Support Panel",
        description="Multi-agent WhatsApp support sessions",
        lifespan=lifespan,
    )

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError):
        status_code = ERROR_STATUS.get(type(exc), 500)
        if status_code >= 500:
            logger.error(f"{request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    # ── Instances ──────────────────────────────────────────────────

    @app.get("/api/instances")
    async def list_instances(request: Request):
        manager: SessionManager = request.app.state.manager
        return {"instances": [i.to_dict() for i in manager.list_instances()]}

    @app.get("/api/instances/{agent_id}")
    async def get_instance(agent_id: int, request: Request):
        manager: SessionManager = request.app.state.manager
        instance = manager.get_instance(agent_id)
        if instance is None:
            raise HTTPException(status_code=404, detail=f"No instance for agent {agent_id}")
        return instance.to_dict()

    @app.post("/api/instances/{agent_id}/start")
    async def start_instance(agent_id: int, request: Request, body: Optional[StartRequest] = None):
        manager: SessionManager = request.app.state.manager
        display_name = body.display_name if body else ""
        instance = await manager.start_instance(agent_id, display_name)
        if instance is None:
            raise HTTPException(status_code=429, detail="Too many session starts, try again in a minute")
        return instance.to_dict()

    @app.post("/api/instances/{agent_id}/stop")
    async def stop_instance(agent_id: int, request: Request):
        manager: SessionManager = request.app.state.manager
        return {"stopped": await manager.stop_instance(agent_id)}

    @app.post("/api/instances/{agent_id}/logout")
    async def logout_instance(agent_id: int, request: Request):
        manager: SessionManager = request.app.state.manager
        if not await manager.logout_instance(agent_id):
            raise HTTPException(status_code=404, detail=f"No instance for agent {agent_id}")
        return {"logged_out": True}

    # ── Sending ────────────────────────────────────────────────────

    @app.post("/api/instances/{agent_id}/messages")
    async def send_message(agent_id: int, body: SendMessageRequest, request: Request):
        manager: SessionManager = request.app.state.manager
        if not body.text.strip():
            raise HTTPException(status_code=400, detail="Message text is empty")
        message_id = await manager.send_message(agent_id, body.contact_id, body.text, body.is_group)
        return {"sent": True, "message_id": message_id}

    @app.post("/api/instances/{agent_id}/media")
    async def send_media(
        agent_id: int,
        request: Request,
        contact_id: str = Form(...),
        caption: str = Form(""),
        is_group: bool = Form(False),
        file: UploadFile = File(...),
    ):
        manager: SessionManager = request.app.state.manager
        # Fail before writing the upload to disk
        manager.require_connected(agent_id)

        with tempfile.TemporaryDirectory(prefix="support_panel_") as tmp:
            path = Path(tmp) / Path(file.filename or "upload").name
            with path.open("wb") as out:
                shutil.copyfileobj(file.file, out)
            message_id = await manager.send_media(
                agent_id, contact_id, path, caption, file.content_type, is_group
            )
        return {"sent": True, "message_id": message_id}

    # ── Contacts ───────────────────────────────────────────────────

    @app.get("/api/agents/{agent_id}/contacts")
    async def agent_contacts(agent_id: int, request: Request):
        db = request.app.state.db
        contacts = []
        for assignment in db.get_assignments_for_agent(agent_id):
            entry = assignment.to_dict()
            entry["mode"] = db.get_contact_mode(assignment.contact_id).value
            contacts.append(entry)
        return {"contacts": contacts}

    @app.get("/api/contacts/{contact_id}/messages")
    async def contact_messages(contact_id: str, request: Request, limit: int = 200):
        conversation_log: ConversationLogger = request.app.state.conversation_log
        return {"messages": conversation_log.get_logs_for_contact(contact_id, limit)}

    @app.post("/api/contacts/{contact_id}/mode")
    async def set_contact_mode(contact_id: str, body: ContactModeRequest, request: Request):
        db = request.app.state.db
        db.set_contact_mode(contact_id, body.mode, body.activated_by)
        return {"contact_id": contact_id, "mode": body.mode.value}

    return app


app = create_app()
