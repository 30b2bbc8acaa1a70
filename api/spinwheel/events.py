"""
Live push to connected dashboards.

Two scopes exist: ``public`` sockets belong to players and only feed the
presence tracker; ``admin`` sockets receive KPI snapshots and domain events
(``spin:new``, ``code:new``, ``user:login`` ...). Every message is a JSON
object ``{"event": name, "data": payload}``.

Delivery is best-effort: nothing here raises into the code that publishes.
"""
import asyncio
import logging
from typing import Dict, Optional, Protocol, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .presence import PresenceTracker
from .schemas import KpiSnapshot
from .stats import compute_kpis

logger = logging.getLogger(__name__)

PUBLIC = "public"
ADMIN = "admin"
SCOPES = (PUBLIC, ADMIN)

# seconds a single socket may take to accept a message before it is dropped
SEND_TIMEOUT = 5.0


class Publisher(Protocol):
    def publish(self, scope: str, event: str, payload=None) -> None: ...

    def broadcast_kpis(self, db: Optional[Session] = None) -> Optional[KpiSnapshot]: ...


class EventHub:
    """WebSocket fan-out, callable from request threads and from the event loop."""

    def __init__(self, presence: PresenceTracker, session_factory=None, send_timeout: float = SEND_TIMEOUT):
        self.presence = presence
        self.session_factory = session_factory
        self.send_timeout = send_timeout
        self._connections: Dict[str, Set[WebSocket]] = {scope: set() for scope in SCOPES}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._send_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def connect(self, websocket: WebSocket, scope: str) -> None:
        await websocket.accept()
        self._connections[scope].add(websocket)
        logger.debug("Socket joined %s (%d open)", scope, len(self._connections[scope]))

    def disconnect(self, websocket: WebSocket, scope: str) -> None:
        self._connections[scope].discard(websocket)

    def subscribers(self, scope: str) -> int:
        return len(self._connections.get(scope, ()))

    def publish(self, scope: str, event: str, payload=None) -> None:
        if scope not in self._connections:
            raise ValueError(f"Unknown scope: {scope}")
        if not self._connections[scope]:
            return
        if self._loop is None or self._loop.is_closed():
            logger.warning("Dropping %s: event loop not available", event)
            return

        message = {"event": event, "data": jsonable_encoder(payload)}
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            task = self._loop.create_task(self._deliver(scope, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            future = asyncio.run_coroutine_threadsafe(self._deliver(scope, message), self._loop)
            future.add_done_callback(self._log_failure)

    async def send(self, websocket: WebSocket, event: str, payload=None) -> None:
        """Send to a single socket, e.g. the initial snapshot for a new dashboard."""
        await websocket.send_json({"event": event, "data": jsonable_encoder(payload)})

    async def _deliver(self, scope: str, message: dict) -> None:
        # one delivery at a time keeps events in publish order
        async with self._send_lock:
            sockets = list(self._connections[scope])
            results = await asyncio.gather(
                *(asyncio.wait_for(ws.send_json(message), self.send_timeout) for ws in sockets),
                return_exceptions=True,
            )
            for websocket, result in zip(sockets, results):
                if isinstance(result, asyncio.TimeoutError):
                    logger.warning("Dropping stalled %s socket after %.1fs", scope, self.send_timeout)
                    self._connections[scope].discard(websocket)
                elif isinstance(result, Exception):
                    logger.warning("Dropping %s socket after failed send: %s", scope, result)
                    self._connections[scope].discard(websocket)

    @staticmethod
    def _log_failure(future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Event delivery failed: %s", exc)

    def snapshot(self, db: Optional[Session] = None) -> KpiSnapshot:
        if db is not None:
            return compute_kpis(db, self.presence)
        with self.session_factory() as own:
            return compute_kpis(own, self.presence)

    def broadcast_kpis(self, db: Optional[Session] = None) -> Optional[KpiSnapshot]:
        """Recompute the dashboard counters and push them to every admin socket."""
        if not self._connections[ADMIN]:
            return None
        try:
            stats = self.snapshot(db)
        except Exception:
            logger.exception("Error computing KPIs")
            return None
        self.publish(ADMIN, "kpi:update", stats.model_dump(by_alias=True))
        logger.debug("Broadcasted KPI update: %s", stats)
        return stats

    async def refresh_kpis(self) -> None:
        await run_in_threadpool(self.broadcast_kpis)
