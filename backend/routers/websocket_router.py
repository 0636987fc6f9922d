# routers/websocket_router.py — Live board change feed over WebSocket
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import resolve_token_user
from board_graph import BoardGraph, EntityNotFound
from database import get_db_session
from realtime import notifier

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("taskboard.ws")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.websocket("/ws/boards/{board_id}")
async def board_feed(
    websocket: WebSocket,
    board_id: str,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db_session),
):
    """Push ``*.changed`` messages for one board to its owner and members"""
    try:
        user = await resolve_token_user(token, db)
        graph = BoardGraph(db)
        board = await graph.get_board(board_id)
        role = await graph.get_access(board, user.id)
    except HTTPException:
        await websocket.close(code=4001, reason="Authentication failed")
        return
    except EntityNotFound:
        await websocket.close(code=4004, reason="Board not found")
        return
    finally:
        await db.close()

    if role is None:
        await websocket.close(code=4003, reason="No access to this board")
        return

    await websocket.accept()

    async def forward(message: dict) -> None:
        await websocket.send_json(message)

    notifier.subscribe(board_id, forward)
    logger.info(f"WS connected: user={user.id[:8]} board={board_id[:8]}")

    await websocket.send_json({
        "type": "connected",
        "board_id": board_id,
        "user_id": user.id,
        "timestamp": _now(),
    })

    try:
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error on board {board_id[:8]}: {e}")
    finally:
        notifier.unsubscribe(board_id, forward)
        logger.info(f"WS disconnected: user={user.id[:8]} board={board_id[:8]}")


@router.get("/ws/stats")
async def websocket_stats():
    return notifier.get_stats()
