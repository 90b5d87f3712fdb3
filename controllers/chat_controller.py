"""Request-level helpers for chat sessions and their turns."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request

from services.chat.attachments import AttachmentProcessor
from services.chat.prompts import SystemPromptLoader
from services.chat.session_controller import SessionClosed
from services.chat.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def _registry(request: Request) -> SessionRegistry:
	registry = getattr(request.app.state, "session_registry", None)
	if registry is None:
		raise HTTPException(status_code=500, detail="Session registry unavailable")
	return registry


async def _existing(request: Request, session_id: str):
	controller = await _registry(request).get_existing(session_id)
	if controller is None:
		raise HTTPException(status_code=404, detail="Chat not found")
	return controller


def _stream_result(controller, handle) -> Dict[str, Any]:
	return {
		"session_id": controller.session_id,
		"stream_id": handle.id,
		"assistant_message_id": handle.message_id,
		"messages": [m.to_dict() for m in controller.messages],
	}


async def list_sessions(request: Request) -> List[Dict[str, Any]]:
	"""Return stored sessions, newest first."""
	summaries = await _registry(request).dal.list_sessions()
	return [summary.to_dict() for summary in summaries]


async def start_session(request: Request) -> Dict[str, Any]:
	"""Create a new empty session and return its id."""
	controller = _registry(request).create()
	return {"session_id": controller.session_id}


async def get_session(request: Request, session_id: str) -> Dict[str, Any]:
	"""Return messages and settings; an unknown id reads as an empty session."""
	registry = _registry(request)
	controller = registry.peek(session_id)
	if controller is not None:
		return controller.snapshot()
	record = await registry.load(session_id)
	return {
		"id": session_id,
		"messages": [m.to_dict() for m in record.messages],
		"settings": record.settings.to_dict(),
		"generating": False,
		"streaming_message_id": None,
	}


async def delete_session(request: Request, session_id: str) -> Dict[str, Any]:
	if not await _registry(request).discard(session_id):
		raise HTTPException(status_code=404, detail="Chat not found")
	logger.info("Deleted session %s", session_id)
	return {"session_id": session_id, "deleted": True}


async def clear_sessions(request: Request) -> Dict[str, Any]:
	deleted = await _registry(request).discard_all()
	logger.info("Cleared %d stored sessions", deleted)
	return {"deleted_count": deleted}


async def send_message(
	request: Request,
	session_id: str,
	text: str,
	attachments: Optional[List[Dict[str, str]]] = None,
) -> Dict[str, Any]:
	"""Append a user prompt and start streaming the reply."""
	controller = await _registry(request).get(session_id)
	processor: AttachmentProcessor = request.app.state.attachment_processor
	try:
		files = [processor.from_base64(item.get("name") or "attachment", item.get("data") or "") for item in attachments or []]
		handle = controller.send(text, files)
	except SessionClosed as exc:
		raise HTTPException(status_code=409, detail=str(exc)) from exc
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	return _stream_result(controller, handle)


async def edit_message(request: Request, session_id: str, message_id: str, text: str) -> Dict[str, Any]:
	controller = await _existing(request, session_id)
	try:
		handle = controller.edit_user_message(message_id, text)
	except KeyError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc
	except SessionClosed as exc:
		raise HTTPException(status_code=409, detail=str(exc)) from exc
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	return _stream_result(controller, handle)


async def regenerate_message(request: Request, session_id: str, message_id: str) -> Dict[str, Any]:
	controller = await _existing(request, session_id)
	try:
		handle = controller.regenerate(message_id)
	except KeyError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc
	except SessionClosed as exc:
		raise HTTPException(status_code=409, detail=str(exc)) from exc
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	return _stream_result(controller, handle)


async def delete_message(request: Request, session_id: str, message_id: str) -> Dict[str, Any]:
	controller = await _existing(request, session_id)
	try:
		removed = controller.delete_message(message_id)
	except SessionClosed as exc:
		raise HTTPException(status_code=409, detail=str(exc)) from exc
	except KeyError as exc:
		raise HTTPException(status_code=404, detail=str(exc)) from exc
	return {
		"session_id": session_id,
		"removed_ids": removed,
		"initialized": controller.initialized,
		"message_count": len(controller.messages),
	}


async def stop_generation(request: Request, session_id: str) -> Dict[str, Any]:
	"""Stop the live generation, if there is one; a session that is not loaded has nothing to stop."""
	controller = _registry(request).peek(session_id)
	stopped = controller.stop() if controller is not None else False
	return {"session_id": session_id, "stopped": stopped}


async def update_settings(
	request: Request,
	session_id: str,
	reasoning_enabled: Optional[bool],
	web_search_mode: Optional[str],
) -> Dict[str, Any]:
	controller = await _registry(request).get(session_id)
	try:
		settings = controller.update_settings(reasoning_enabled=reasoning_enabled, web_search_mode=web_search_mode)
	except SessionClosed as exc:
		raise HTTPException(status_code=409, detail=str(exc)) from exc
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc
	return {"session_id": session_id, "settings": settings.to_dict()}


async def get_system_prompt(request: Request) -> Dict[str, Any]:
	loader: SystemPromptLoader = request.app.state.prompt_loader
	try:
		prompt = await loader.read()
	except OSError as exc:
		logger.error(f"Failed to read system prompt from {loader.path}: {exc}")
		raise HTTPException(status_code=500, detail="Failed to load system prompt. Check server logs.") from exc
	return {"system_prompt": prompt}
