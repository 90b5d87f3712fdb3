"""WebSocket endpoint streaming a chat session's events and accepting turn commands."""

from __future__ import annotations

import asyncio
import contextlib
import json

from fastapi import APIRouter, Depends, HTTPException, WebSocket
from starlette.websockets import WebSocketDisconnect

from services.chat.session_registry import SessionRegistry
from services.chat.ws_session import ChatSocketHandler

router = APIRouter()


def _require_session_registry(websocket: WebSocket) -> SessionRegistry:
	registry = getattr(websocket.app.state, "session_registry", None)
	if registry is None:
		raise HTTPException(status_code=500, detail="Session registry unavailable")
	return registry


@router.websocket("/ws/sessions/{session_id}")
async def chat_socket(websocket: WebSocket, session_id: str, registry: SessionRegistry = Depends(_require_session_registry)):
	"""Relay live events for one session and run the commands the client sends."""
	await websocket.accept()
	controller = await registry.get(session_id)
	handler = ChatSocketHandler(controller, websocket.app.state.attachment_processor)

	queue = controller.events.subscribe()
	await handler.send_snapshot(websocket)
	forwarder = asyncio.create_task(handler.forward_events(websocket, queue))
	try:
		while True:
			try:
				raw = await websocket.receive_text()
			except (WebSocketDisconnect, RuntimeError):
				break
			except Exception:
				await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid websocket frame"}))
				continue
			try:
				payload = json.loads(raw)
			except Exception:
				await websocket.send_text(json.dumps({"type": "error", "detail": "Payload must be JSON"}))
				continue
			if not isinstance(payload, dict):
				await websocket.send_text(json.dumps({"type": "error", "detail": "Payload must be a JSON object"}))
				continue
			await handler.handle(websocket, payload)
	finally:
		controller.events.unsubscribe(queue)
		forwarder.cancel()
		with contextlib.suppress(asyncio.CancelledError):
			await forwarder
		if registry.peek(session_id) is controller:
			registry.release(session_id)
	try:
		await websocket.close()
	except Exception:
		pass
