"""In-memory server-sent-event fan-out, one queue per open stream."""
import asyncio
import json
from typing import Union

import structlog
from structlog.contextvars import get_contextvars

logger = structlog.get_logger(__name__)


class ConnectionManager:
    def __init__(self):
        # a user may hold several streams (e.g. two browser tabs)
        self.active_connections: dict[int, list[asyncio.Queue]] = {}

    async def connect(self, user_id: int) -> asyncio.Queue:
        """Registers a new stream for the user and returns its queue."""
        queue = asyncio.Queue()
        self.active_connections.setdefault(user_id, []).append(queue)
        logger.info(
            "SSE connection established",
            user_id=user_id,
            streams=len(self.active_connections[user_id]),
        )
        return queue

    def disconnect(self, user_id: int, queue: asyncio.Queue):
        """Drops one stream; the user's other streams stay open."""
        queues = self.active_connections.get(user_id)
        if not queues or queue not in queues:
            return
        queues.remove(queue)
        if not queues:
            del self.active_connections[user_id]
        logger.info("SSE connection closed", user_id=user_id, streams=len(queues))

    def is_connected(self, user_id: int) -> bool:
        return bool(self.active_connections.get(user_id))

    async def send_personal_message(
        self, message: Union[str, dict], user_id: int, event: str = "message"
    ) -> None:
        queues = self.active_connections.get(user_id)
        if not queues:
            logger.debug("No SSE listener for user", user_id=user_id, sse_event=event)
            return

        if isinstance(message, dict):
            # correlate with the request that produced the event
            if "request_id" not in message:
                req_id = get_contextvars().get("request_id")
                if req_id:
                    message["request_id"] = req_id
            data = json.dumps(message, default=str)
        else:
            data = message
        for queue in list(queues):
            await queue.put({"event": event, "data": data})
        logger.info("Sent SSE event", sse_event=event, user_id=user_id, streams=len(queues))


manager = ConnectionManager()
