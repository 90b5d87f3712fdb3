"""FastAPI routes for chat sessions and their turns."""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from controllers.chat_controller import (
	clear_sessions,
	delete_message,
	delete_session,
	edit_message,
	get_session,
	get_system_prompt,
	list_sessions,
	regenerate_message,
	send_message,
	start_session,
	stop_generation,
	update_settings,
)

router = APIRouter(prefix="/sessions")
prompt_router = APIRouter()


class AttachmentPayload(BaseModel):
	name: str = "attachment"
	data: str


class SendPayload(BaseModel):
	text: str = ""
	attachments: List[AttachmentPayload] = Field(default_factory=list)


class EditPayload(BaseModel):
	text: str


class SettingsPayload(BaseModel):
	reasoning_enabled: Optional[bool] = None
	web_search_mode: Optional[str] = None


@router.get("")
async def list_sessions_route(request: Request):
	try:
		return await list_sessions(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("")
async def start_session_route(request: Request):
	try:
		return await start_session(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.delete("")
async def clear_sessions_route(request: Request):
	try:
		return await clear_sessions(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/{session_id}")
async def get_session_route(request: Request, session_id: str):
	try:
		return await get_session(request, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.delete("/{session_id}")
async def delete_session_route(request: Request, session_id: str):
	try:
		return await delete_session(request, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{session_id}/messages")
async def send_message_route(request: Request, session_id: str, payload: SendPayload):
	try:
		attachments = [item.model_dump() for item in payload.attachments]
		return await send_message(request, session_id, payload.text, attachments)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.put("/{session_id}/messages/{message_id}")
async def edit_message_route(request: Request, session_id: str, message_id: str, payload: EditPayload):
	try:
		return await edit_message(request, session_id, message_id, payload.text)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{session_id}/messages/{message_id}/regenerate")
async def regenerate_message_route(request: Request, session_id: str, message_id: str):
	try:
		return await regenerate_message(request, session_id, message_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.delete("/{session_id}/messages/{message_id}")
async def delete_message_route(request: Request, session_id: str, message_id: str):
	try:
		return await delete_message(request, session_id, message_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{session_id}/stop")
async def stop_generation_route(request: Request, session_id: str):
	try:
		return await stop_generation(request, session_id)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.put("/{session_id}/settings")
async def update_settings_route(request: Request, session_id: str, payload: SettingsPayload):
	try:
		return await update_settings(request, session_id, payload.reasoning_enabled, payload.web_search_mode)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@prompt_router.get("/system-prompt")
async def system_prompt_route(request: Request):
	return await get_system_prompt(request)
