"""
Trashcan Relay — Broadcast Channel

Fans relay events out to every connected WebSocket session. Each session owns a
bounded outbound queue drained by its own writer task, so a slow browser never
stalls the relay and every session sees events in relay order.
"""
import asyncio
import json
import time
from typing import Any, Optional
from uuid import uuid4

from log import get_logger
import metrics

logger = get_logger()


class Session:
    """One live client connection."""

    def __init__(self, websocket, max_queue_size: int = 256):
        self.id = uuid4().hex[:12]
        self.websocket = websocket
        self.connected_at = time.time()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._writer: Optional[asyncio.Task] = None

    def enqueue(self, event: str, data: Any) -> bool:
        try:
            self.queue.put_nowait({"event": event, "data": data})
            return True
        except asyncio.QueueFull:
            metrics.broadcast_drops.inc()
            logger.warning("session.queue_full", session=self.id, event=event)
            return False

    def start(self):
        self._writer = asyncio.create_task(self._write_loop(), name=f"session-{self.id}")

    async def stop(self):
        if self._writer and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._writer = None

    async def _write_loop(self):
        while True:
            message = await self.queue.get()
            try:
                await self.websocket.send_text(json.dumps(message, default=str))
            except Exception as e:
                # Socket is gone; the receive side unregisters the session.
                logger.info("session.send_failed", session=self.id, error=str(e))
                return


class BroadcastChannel:
    def __init__(self, max_sessions: int = 64, session_queue_size: int = 256):
        self.max_sessions = max_sessions
        self.session_queue_size = session_queue_size
        self._sessions: dict[str, Session] = {}

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def register(self, websocket) -> Optional[Session]:
        """Add a session, or return None when the session limit is reached."""
        if len(self._sessions) >= self.max_sessions:
            logger.warning("session.rejected", reason="max_sessions", limit=self.max_sessions)
            return None
        session = Session(websocket, self.session_queue_size)
        self._sessions[session.id] = session
        session.start()
        metrics.active_sessions.set(len(self._sessions))
        logger.info("session.connected", session=session.id, sessions=len(self._sessions))
        return session

    async def unregister(self, session: Session):
        if self._sessions.pop(session.id, None) is None:
            return
        await session.stop()
        metrics.active_sessions.set(len(self._sessions))
        logger.info("session.disconnected", session=session.id, sessions=len(self._sessions))

    def broadcast(self, event: str, data: Any) -> int:
        """Queue `event` for every session; returns how many accepted it."""
        delivered = 0
        for session in list(self._sessions.values()):
            if session.enqueue(event, data):
                delivered += 1
        return delivered

    def send(self, session: Session, event: str, data: Any) -> bool:
        """Session-local delivery (errors and acknowledgements)."""
        return session.enqueue(event, data)

    async def close(self):
        for session in list(self._sessions.values()):
            await self.unregister(session)
