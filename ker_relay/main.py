"""
FastAPI relay for key exchange notifications.

This server:
- Registers session ids bound to the public key they were derived from
- Relays opaque encrypted notifications to connected sessions via WebSocket
  (does NOT store or queue notifications: delivery is best effort)
- Reports how many live connections each notification reached
"""

import os
import logging
from typing import Dict, Optional, Set
from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Depends, Header
from pydantic import BaseModel

from ker_crypto.identity import IdentityManager
from .database import Database
from .auth import create_access_token, verify_token, Token


logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./relay.db"


# Pydantic models for API
class SessionRegister(BaseModel):
    session_id: str
    public_key: str


class NotifyRequest(BaseModel):
    recipient_session_id: str
    notification_type: str
    encrypted_body: str


class NotifyResponse(BaseModel):
    accepted: bool
    delivered_count: int


# WebSocket connection manager
class ConnectionManager:
    """Manages active WebSocket connections, several per session"""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    def add(self, session_id: str, websocket: WebSocket):
        """Store an authenticated WebSocket connection"""
        self.active_connections.setdefault(session_id, set()).add(websocket)

    def disconnect(self, session_id: str, websocket: WebSocket):
        """Remove a WebSocket connection"""
        sockets = self.active_connections.get(session_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.active_connections[session_id]

    async def push(self, session_id: str, message: dict) -> int:
        """
        Push a message to every connection of a session.

        Returns:
            Number of connections the message was written to
        """
        delivered = 0
        for websocket in list(self.active_connections.get(session_id, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.info("Dropping dead connection for %s: %s", session_id, e)
                self.disconnect(session_id, websocket)
        return delivered

    def is_online(self, session_id: str) -> bool:
        """Check if a session has at least one live connection"""
        return bool(self.active_connections.get(session_id))


def create_app(database_url: Optional[str] = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        database_url: SQLAlchemy URL (KER_RELAY_DATABASE_URL or a local SQLite file if None)
    """
    db = Database(database_url or os.environ.get("KER_RELAY_DATABASE_URL", DEFAULT_DATABASE_URL))
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Relay database initialized")
        yield
        await db.close()
        logger.info("Relay shutting down")

    app = FastAPI(
        title="Key Exchange Relay",
        description="Best-effort push relay for encrypted key exchange notifications",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db
    app.state.manager = manager

    async def current_session(authorization: Optional[str] = Header(None)) -> str:
        """Resolve the bearer token to the calling session id"""
        token = None
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
        session_id = verify_token(token)
        if not session_id:
            raise HTTPException(status_code=401, detail="Invalid or missing token")
        return session_id

    @app.post("/api/sessions", response_model=Token)
    async def register(data: SessionRegister):
        """
        Register a session id.

        The relay recomputes the session id from the public key, so nobody
        can claim an id they do not hold the key for.
        """
        if not IdentityManager.validate_session_id(data.session_id):
            raise HTTPException(status_code=422, detail="Malformed session id")
        try:
            public_key = bytes.fromhex(data.public_key)
        except ValueError:
            raise HTTPException(status_code=422, detail="Public key must be hex")
        if not IdentityManager.matches_public_key(data.session_id, public_key):
            raise HTTPException(status_code=400, detail="Session id does not match public key")

        registered = await db.register_session(data.session_id, public_key.hex())
        if registered is None:
            raise HTTPException(status_code=409, detail="Session id registered to another key")

        return Token(
            access_token=create_access_token(data.session_id),
            token_type="bearer",
            session_id=data.session_id
        )

    @app.post("/api/notify", response_model=NotifyResponse)
    async def notify(data: NotifyRequest, sender: str = Depends(current_session)):
        """
        Relay one notification.

        delivered_count is 0 when the recipient is unknown or offline; that
        is not an error.
        """
        if not IdentityManager.validate_session_id(data.recipient_session_id):
            raise HTTPException(status_code=422, detail="Malformed recipient session id")

        registered = await db.get_session(data.recipient_session_id)
        if registered is None or not registered.is_active:
            logger.info("Notification for unregistered session %s", data.recipient_session_id)
            return NotifyResponse(accepted=True, delivered_count=0)

        delivered = await manager.push(data.recipient_session_id, {
            "type": "push",
            "recipient_session_id": data.recipient_session_id,
            "notification_type": data.notification_type,
            "encrypted_body": data.encrypted_body,
        })
        logger.debug("Relayed %s from %s to %s (%d connections)",
                     data.notification_type, sender, data.recipient_session_id, delivered)
        return NotifyResponse(accepted=True, delivered_count=delivered)

    @app.get("/api/sessions/{session_id}")
    async def session_status(session_id: str):
        """Registration and presence of a session id"""
        registered = await db.get_session(session_id)
        return {
            "session_id": session_id,
            "registered": registered is not None and registered.is_active,
            "online": manager.is_online(session_id),
        }

    @app.delete("/api/sessions/me")
    async def unregister(session_id: str = Depends(current_session)):
        """Stop relaying to the calling session"""
        await db.deactivate_session(session_id)
        return {"session_id": session_id, "registered": False}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for receiving pushes.

        Protocol:
        1. Client sends: {"type": "auth", "token": "jwt_token"}
        2. Server verifies and responds: {"type": "auth_success", "session_id": "..."}
        3. Server pushes: {"type": "push", "recipient_session_id": ..., "notification_type": ..., "encrypted_body": ...}
        4. Client may send {"type": "ping"}; server answers {"type": "pong"}
        """
        session_id = None

        try:
            await websocket.accept()

            auth_data = await websocket.receive_json()
            if auth_data.get("type") != "auth":
                await websocket.send_json({"type": "error", "message": "Authentication required"})
                await websocket.close()
                return

            session_id = verify_token(auth_data.get("token"))
            if not session_id:
                await websocket.send_json({"type": "error", "message": "Invalid token"})
                await websocket.close()
                return

            manager.add(session_id, websocket)
            await websocket.send_json({"type": "auth_success", "session_id": session_id})

            while True:
                data = await websocket.receive_json()
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.warning("WebSocket error: %s", e)
        finally:
            if session_id:
                manager.disconnect(session_id, websocket)

    return app


app = create_app()


def run():
    """Serve the relay with uvicorn"""
    import uvicorn
    from ker_client.config import configure_logging

    configure_logging(os.environ.get("KER_LOG_LEVEL", "INFO"))
    uvicorn.run(
        app,
        host=os.environ.get("KER_RELAY_HOST", "0.0.0.0"),
        port=int(os.environ.get("KER_RELAY_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
