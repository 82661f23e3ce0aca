from collections import defaultdict, deque
from enum import Enum
from typing import Any, Deque, Dict, Set

from fastapi import WebSocket

from matchstake.helpers import utcnow
from matchstake.logging_config import get_logger

logger = get_logger(__name__)


class PlayerEvent(str, Enum):
    PAYMENT_SUCCESS = "payment-success"
    PAYMENT_FAILED = "payment-failed"
    BOTH_PAYMENTS_COMPLETED = "both-payments-completed"
    MATCH_REFUNDED = "matchRefunded"
    MATCH_SETTLED = "match-settled"
    CHALLENGE_EXPIRED = "challenge-expired"


class NotificationHub:
    """
    Pushes named player events to every WebSocket a user has open.

    Delivery is best effort: a player with no open socket simply misses the event, and a
    broken socket is dropped without affecting the caller. The most recent events are kept
    in memory for diagnostics.
    """

    def __init__(self, history_size: int = 200):
        self._connections: Dict[int, Set[WebSocket]] = defaultdict(set)
        self.history: Deque[dict] = deque(maxlen=history_size)

    async def connect(self, user_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[user_id].add(websocket)
        logger.info("Player connected user_id=%s sockets=%s", user_id, len(self._connections[user_id]))

    def disconnect(self, user_id: int, websocket: WebSocket) -> None:
        sockets = self._connections.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._connections[user_id]

    async def emit(self, user_id: int, event: PlayerEvent, data: dict[str, Any]) -> int:
        message = {"event": event.value, "data": {**data, "timestamp": utcnow().isoformat()}}
        self.history.append({"userId": user_id, **message})
        delivered = 0
        for websocket in list(self._connections.get(user_id, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning("Dropping broken socket user_id=%s error=%s", user_id, exc)
                self.disconnect(user_id, websocket)
        logger.info("Emitted %s to user_id=%s sockets=%s", event.value, user_id, delivered)
        return delivered

    def connected_users(self) -> int:
        return len(self._connections)
