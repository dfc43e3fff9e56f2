"""
WebSocket connection manager for real-time session state updates

ARCHITECTURE NOTE: Non-blocking broadcast design
- Each connection has a dedicated send queue and sender task
- Broadcasts never await a client; messages are queued per-client
- A full queue drops the message for that client (logged)
"""
from fastapi import WebSocket, WebSocketDisconnect
from typing import Set, Dict, Optional
import asyncio
import json
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

SEND_QUEUE_SIZE = 1000


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionManager:
    """
    Manages WebSocket connections and broadcasts messages to all connected clients.

    Clients are notified when:
    - A session changes state (idle → starting → running ...)
    - A schedule fires or fails to dispatch
    """

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self.connection_metadata: Dict[WebSocket, dict] = {}
        self.send_queues: Dict[WebSocket, asyncio.Queue] = {}
        self.sender_tasks: Dict[WebSocket, asyncio.Task] = {}

    async def connect(self, websocket: WebSocket, client_id: Optional[str] = None):
        """
        Accept a WebSocket connection and start its sender task

        Args:
            websocket: FastAPI WebSocket connection
            client_id: Optional client identifier
        """
        await websocket.accept()
        self.active_connections.add(websocket)
        self.connection_metadata[websocket] = {
            'client_id': client_id or f"client-{id(websocket)}",
            'connected_at': _now_iso()
        }
        self.send_queues[websocket] = asyncio.Queue(maxsize=SEND_QUEUE_SIZE)
        self.sender_tasks[websocket] = asyncio.create_task(self._sender_loop(websocket))

        logger.info(f"✅ WebSocket client connected (ID: {self.connection_metadata[websocket]['client_id']}). Total connections: {len(self.active_connections)}")

        await websocket.send_json({
            "type": "connection",
            "status": "connected",
            "message": "Connected to stream orchestrator"
        })

    def disconnect(self, websocket: WebSocket):
        client_id = self.connection_metadata.get(websocket, {}).get('client_id')

        task = self.sender_tasks.pop(websocket, None)
        if task:
            task.cancel()

        self.active_connections.discard(websocket)
        self.connection_metadata.pop(websocket, None)
        self.send_queues.pop(websocket, None)

        logger.info(f"🔌 WebSocket client disconnected (ID: {client_id}). Total connections: {len(self.active_connections)}")

    async def _sender_loop(self, websocket: WebSocket):
        """Drain one connection's queue; exits when the socket dies or the task is cancelled"""
        queue = self.send_queues[websocket]
        try:
            while True:
                message = await queue.get()
                try:
                    await websocket.send_text(message)
                except Exception as e:
                    logger.warning(f"Failed to send to client: {e}")
                    break
        except asyncio.CancelledError:
            pass

    async def broadcast(self, message: dict):
        """
        Queue a message for every connected client.

        Message format:
        {
            "type": "session_state" | "schedule_fired" | "error",
            "data": {...},
            "timestamp": "<ISO-8601 UTC>"
        }
        """
        if not self.active_connections:
            logger.debug(f"No active connections to broadcast message type: {message.get('type')}")
            return

        message.setdefault('timestamp', _now_iso())
        json_message = json.dumps(message)

        dropped = 0
        for connection in list(self.active_connections):
            queue = self.send_queues.get(connection)
            if queue is None:
                continue
            try:
                queue.put_nowait(json_message)
            except asyncio.QueueFull:
                dropped += 1

        if dropped:
            logger.warning(f"Dropped {message.get('type')} message for {dropped} client(s) with full queues")

    async def send_session_state(self, session_id: str, new_state: str, timestamp: str):
        """
        Broadcast a session state change

        Args:
            session_id: UUID of the session
            new_state: New session status (idle, starting, running, stopping, failed)
            timestamp: ISO-8601 time the change was committed
        """
        await self.broadcast({
            "type": "session_state",
            "data": {
                "session_id": session_id,
                "new_state": new_state,
                "timestamp": timestamp,
            }
        })

    async def send_schedule_fired(self, schedule_id: str, session_id: str, action: str, fired_at: str):
        await self.broadcast({
            "type": "schedule_fired",
            "data": {
                "schedule_id": schedule_id,
                "session_id": session_id,
                "action": action,
                "fired_at": fired_at,
            }
        })

    async def send_error(self, error_type: str, error_message: str, context: Optional[dict] = None):
        """
        Broadcast error notification

        Args:
            error_type: Type of error (e.g., "schedule_dispatch_failed")
            error_message: Human-readable error message
            context: Optional ids (session_id, schedule_id)
        """
        await self.broadcast({
            "type": "error",
            "data": {
                "error_type": error_type,
                "error_message": error_message,
                "context": context or {}
            }
        })


async def websocket_endpoint(websocket: WebSocket, manager: ConnectionManager):
    """
    WebSocket endpoint handler

    Keeps the connection open and answers keepalive pings.
    """
    await manager.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from client: {data}")
                continue

            if message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                logger.debug(f"Ignoring client message type: {message.get('type')}")

    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected normally")
    finally:
        manager.disconnect(websocket)
