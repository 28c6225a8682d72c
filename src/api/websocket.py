"""WebSocket endpoint for real-time queue updates"""

import json

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from src.api.services import ServiceContainer
from src.matching.errors import MatchingError


async def _handle_action(services: ServiceContainer, user_id: str, message: dict) -> dict:
    """Run one client action and build the reply"""
    action = message.get("action")
    engine = services.engine

    if action == "ping":
        return {"type": "pong"}

    if action == "join_queue":
        request = {**message.get("request", {}), "user_id": user_id}
        status = await engine.add_to_queue(request)
        return {"type": "queue_status", "data": status.model_dump(mode="json")}

    if action == "leave_queue":
        await engine.remove_from_queue(user_id)
        return {"type": "queue_left_ack", "data": {"user_id": user_id}}

    if action == "get_queue_status":
        status = await engine.get_status(user_id)
        return {
            "type": "queue_status",
            "data": status.model_dump(mode="json") if status else None,
        }

    if action == "get_queue_stats":
        stats = await engine.get_queue_stats()
        return {"type": "queue_stats", "data": stats.model_dump(mode="json")}

    if action == "find_match":
        request = {**message.get("request", {}), "user_id": user_id}
        match = await engine.find_match(request)
        return {
            "type": "match_result",
            "data": match.model_dump(mode="json") if match else None,
        }

    return {"type": "error", "message": f"Unknown action: {action}"}


async def queue_websocket_endpoint(websocket: WebSocket, user_id: str, services: ServiceContainer):
    """
    WebSocket endpoint for queue participation

    Protocol:
        Client -> Server:
            {"action": "join_queue", "request": {...}} - Join (or re-join) the queue
            {"action": "leave_queue"} - Leave the queue
            {"action": "get_queue_status"} - Current position and wait
            {"action": "get_queue_stats"} - Queue-wide statistics
            {"action": "find_match", "request": {...}} - Try to match now
            {"action": "ping"} - Keepalive

        Server -> Client:
            {"type": "welcome", ...} - Connection accepted
            {"type": "queue_status" | "queue_stats" | "match_result", "data": ...} - Replies
            {"type": "queue_joined" | "queue_left" | "queue_position_update" |
             "match_found" | "queue_stats_update" | "queue_rebalanced", ...} - Pushed events
            {"type": "error", "message": "...", "details": {...}} - Error message
    """
    notifier = services.notifier
    await websocket.accept()
    notifier.bind(user_id, websocket)

    await notifier.notify_user(user_id, {
        "type": "welcome",
        "message": "Connected to the matching queue",
        "user_id": user_id,
    })

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await notifier.notify_user(user_id, {"type": "error", "message": "Invalid JSON format"})
                continue

            if not isinstance(message, dict) or not message.get("action"):
                await notifier.notify_user(user_id, {"type": "error", "message": "Missing 'action' field"})
                continue

            try:
                reply = await _handle_action(services, user_id, message)
            except MatchingError as e:
                reply = {"type": "error", "message": e.message, "details": e.details}

            await notifier.notify_user(user_id, reply)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally: user_id={user_id}")
        notifier.unbind(user_id, websocket)

    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}")
        notifier.unbind(user_id, websocket)
        try:
            await websocket.close()
        except RuntimeError:
            pass
