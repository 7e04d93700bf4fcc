from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response

from agents.controller import DialogueController
from agents.oracle import IntentOracle
from api.utils import HealthOut, InboundMessage, ReplyOut
from common.config_loader import Settings, load_settings
from common.logging_config import configure_logging
from db.session import Database

logger = logging.getLogger("sales-ledger")


# ---------------------------
# App factory
# ---------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    oracle: Optional[IntentOracle] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database.from_settings(settings)
        await db.init()
        app.state.database = db
        app.state.controller = DialogueController.from_settings(db, settings, oracle=oracle)
        yield
        await db.dispose()

    app = FastAPI(lifespan=lifespan, title="Sales Chat Ledger API", version="0.1.0")

    @app.post("/messages", response_model=ReplyOut)
    async def post_message(body: InboundMessage, request: Request):
        sender = body.sender.strip()
        if not sender:
            raise HTTPException(400, "sender must not be blank")
        controller: DialogueController = request.app.state.controller
        reply = await controller.handle_inbound_message(sender, body.text)
        return ReplyOut(reply=reply)

    @app.get("/health", response_model=HealthOut)
    async def health(request: Request, response: Response):
        ok = await request.app.state.database.ping()
        if not ok:
            response.status_code = 503
        return HealthOut(status="ok" if ok else "degraded", database=request.app.state.database.backend)

    return app
