"""Dispatch chat websocket commands and forward session events to the client."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from services.chat import events as ev
from services.chat.attachments import AttachmentProcessor
from services.chat.events import ChatEvent
from services.chat.render_buffer import RenderBuffer, RenderUpdate
from services.chat.session_controller import SessionController

logger = logging.getLogger(__name__)


class ChatSocketHandler:
	"""Route websocket messages for a single chat session."""

	def __init__(self, controller: SessionController, processor: AttachmentProcessor) -> None:
		self.controller = controller
		self.processor = processor
		self.renderer = RenderBuffer()
		self._render_text = ""

	async def handle(self, websocket: WebSocket, payload: Dict[str, Any]) -> None:
		"""Process a single inbound websocket payload."""
		request_id = payload.get("request_id")
		try:
			result = self.dispatch(payload)
			result["request_id"] = request_id
			await self._send(websocket, result)
		except KeyError as exc:
			await self._send_error(websocket, request_id, str(exc).strip("'\""))
		except Exception as exc:
			await self._send_error(websocket, request_id, str(exc))

	def dispatch(self, payload: Dict[str, Any]) -> Dict[str, Any]:
		message_type = payload.get("type")
		controller = self.controller
		if message_type == "message.send":
			attachments = [
				self.processor.from_base64(item.get("name") or "attachment", item.get("data") or "")
				for item in payload.get("attachments") or []
			]
			handle = controller.send(payload.get("text") or "", attachments)
		elif message_type == "message.edit":
			handle = controller.edit_user_message(payload["message_id"], payload.get("text") or "")
		elif message_type == "message.regenerate":
			handle = controller.regenerate(payload["message_id"])
		elif message_type == "message.delete":
			removed = controller.delete_message(payload["message_id"])
			return {"type": "message.delete.ack", "removed_ids": removed, "initialized": controller.initialized}
		elif message_type == "generation.stop":
			return {"type": "generation.stop.ack", "stopped": controller.stop()}
		elif message_type == "settings.update":
			settings = controller.update_settings(
				reasoning_enabled=payload.get("reasoning_enabled"),
				web_search_mode=payload.get("web_search_mode"),
			)
			return {"type": "settings.update.ack", "settings": settings.to_dict()}
		else:
			raise ValueError("Unsupported message type.")
		return {"type": f"{message_type}.ack", "stream_id": handle.id, "assistant_message_id": handle.message_id}

	async def send_snapshot(self, websocket: WebSocket) -> None:
		await self._send(websocket, {"type": "session.snapshot", **self.controller.snapshot()})

	async def forward_events(self, websocket: WebSocket, queue: asyncio.Queue) -> None:
		"""Relay controller events, plus their rendered form, until the socket goes away."""
		while True:
			event: ChatEvent = await queue.get()
			try:
				await self._send(websocket, event.to_dict())
				if event.type == ev.SESSION_DELETED:
					await websocket.close(code=1000)
					return
				for frame in self.render_frames(event):
					await self._send(websocket, frame)
			except (WebSocketDisconnect, RuntimeError):
				logger.debug("Socket for session %s closed while forwarding events", self.controller.session_id)
				return

	def render_frames(self, event: ChatEvent) -> List[Dict[str, Any]]:
		"""Feed one event through the render buffer and describe what changed."""
		payload = event.payload
		update: Optional[RenderUpdate] = None
		if event.type == ev.MESSAGE_APPENDED:
			message = payload["message"]
			self._render_text = message["text"]
			update = self.renderer.update(
				message["id"], message["text"], streaming=message["sender"] == "assistant"
			)
		elif event.type == ev.MESSAGE_CHUNK:
			update = self.renderer.update(payload["message_id"], self._streamed_text(payload))
		elif event.type == ev.MESSAGE_FINALIZED:
			if payload["message_id"] == self.renderer.message_id:
				self._render_text = payload["text"]
			update = self.renderer.update(payload["message_id"], payload["text"], finalized=True)
		if update is None:
			return []

		frames = []
		if update.new_units or update.reset:
			frames.append({
				"type": "render.units",
				"message_id": update.message_id,
				"reset": update.reset,
				"units": [unit.to_dict() for unit in update.new_units],
			})
		if update.final is not None:
			frames.append({"type": "render.final", "message_id": update.message_id, "nodes": update.final})
		return frames

	def _streamed_text(self, payload: Dict[str, Any]) -> str:
		"""Current text of a streaming message, read from the log so a late subscriber sees all of it."""
		try:
			message = self.controller.get_message(payload["message_id"])
		except KeyError:
			message = None
		if message is not None and not message.cancelled:
			self._render_text = message.text
		else:
			if payload["message_id"] != self.renderer.message_id:
				self._render_text = ""
			self._render_text += payload["fragment"]
		return self._render_text

	async def _send_error(self, websocket: WebSocket, request_id: Any, detail: str) -> None:
		await self._send(websocket, {"type": "error", "request_id": request_id, "detail": detail})

	async def _send(self, websocket: WebSocket, payload: Dict[str, Any]) -> None:
		await websocket.send_text(json.dumps(payload))
