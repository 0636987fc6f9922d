# realtime.py — Board change notifications
# Per-board channels. Mutations publish; websocket connections and
# in-process listeners subscribe. Publishing never raises into the caller.
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger("taskboard.realtime")

Listener = Callable[[Dict[str, Any]], Awaitable[None]]

# Message types clients invalidate on
TASKS_CHANGED = "tasks.changed"
COLUMNS_CHANGED = "columns.changed"
CATEGORIES_CHANGED = "categories.changed"
BOARD_CHANGED = "board.changed"


def change_message(
    change_type: str, board_id: str, action: str, entity_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "type": change_type,
        "board_id": board_id,
        "entity_id": entity_id,
        "action": action,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class BoardChannelManager:
    """Manages change listeners per board"""

    def __init__(self):
        self._channels: Dict[str, List[Listener]] = {}  # board_id -> listeners

    def subscribe(self, board_id: str, listener: Listener) -> None:
        self._channels.setdefault(board_id, []).append(listener)

    def unsubscribe(self, board_id: str, listener: Listener) -> None:
        listeners = self._channels.get(board_id)
        if not listeners:
            return
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            del self._channels[board_id]

    async def publish(self, board_id: str, message: Dict[str, Any]) -> int:
        """Deliver ``message`` to every listener of ``board_id``.

        Listeners that fail are dropped. Returns how many received it.
        """
        delivered = 0
        failed = []
        for listener in list(self._channels.get(board_id, [])):
            try:
                await listener(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping board listener on {board_id[:8]}: {e}")
                failed.append(listener)
        for listener in failed:
            self.unsubscribe(board_id, listener)
        return delivered

    def listener_count(self, board_id: str) -> int:
        return len(self._channels.get(board_id, []))

    def get_stats(self) -> dict:
        return {
            "boards": len(self._channels),
            "listeners": sum(len(v) for v in self._channels.values()),
        }


# Global channel manager
notifier = BoardChannelManager()
