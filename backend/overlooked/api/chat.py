"""FastAPI endpoints for conversations and messages."""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, File, Query, UploadFile, status

from overlooked.domain.chat.schemas import (
	ConversationListResponse,
	ConversationResponse,
	JoinCityRequest,
	JoinLabelRequest,
	MessageListResponse,
	MessageResponse,
	SendTextRequest,
	StartDirectRequest,
)
from overlooked.infra.auth import AuthenticatedUser, get_current_user
from overlooked.infra.errors import InvalidRequest
from overlooked.services import Services, get_services

router = APIRouter(prefix="/chat", tags=["chat"])

MAX_ATTACHMENT_BYTES = 25 * 1024 * 1024


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> ConversationListResponse:
	view = await services.chat.list_conversations(auth_user.id)
	return ConversationListResponse.model_validate({"items": view.snapshot()})


@router.post("/conversations/direct", response_model=ConversationResponse)
async def start_direct_endpoint(
	payload: StartDirectRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> ConversationResponse:
	conversation = await services.chat.start_direct_conversation(auth_user.id, payload.peer_id)
	return ConversationResponse.from_model(conversation)


@router.post("/groups/city", response_model=ConversationResponse)
async def join_city_group_endpoint(
	payload: JoinCityRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> ConversationResponse:
	conversation = await services.chat.join_city_group(auth_user.id, payload.city_id)
	return ConversationResponse.from_model(conversation)


@router.post("/groups/label", response_model=ConversationResponse)
async def join_label_group_endpoint(
	payload: JoinLabelRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> ConversationResponse:
	conversation = await services.chat.join_labelled_group(auth_user.id, payload.label)
	return ConversationResponse.from_model(conversation)


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> ConversationResponse:
	conversation = await services.chat.get_conversation(auth_user.id, conversation_id)
	return ConversationResponse.from_model(conversation)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> MessageListResponse:
	messages = await services.chat.list_messages(auth_user.id, conversation_id)
	return MessageListResponse(items=[MessageResponse.from_model(message) for message in messages])


@router.post(
	"/conversations/{conversation_id}/messages",
	response_model=MessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def send_message_endpoint(
	conversation_id: str,
	payload: SendTextRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> MessageResponse:
	message = await services.chat.send_text(auth_user.id, conversation_id, payload.content)
	if message is None:
		raise InvalidRequest("empty_message")
	return MessageResponse.from_model(message)


@router.post(
	"/conversations/{conversation_id}/attachments",
	response_model=MessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def send_attachment_endpoint(
	conversation_id: str,
	file: UploadFile = File(...),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> MessageResponse:
	content = await file.read()
	if len(content) > MAX_ATTACHMENT_BYTES:
		raise InvalidRequest("attachment_too_large")
	message = await services.chat.send_attachment(
		auth_user.id,
		conversation_id,
		file.filename or "file",
		file.content_type,
		content,
	)
	return MessageResponse.from_model(message)


@router.post("/conversations/{conversation_id}/typing", status_code=status.HTTP_202_ACCEPTED)
async def typing_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Dict[str, bool]:
	return {"sent": await services.chat.signal_typing(auth_user.id, conversation_id)}


@router.get("/conversations/{conversation_id}/members")
async def members_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
	members = await services.chat.members(auth_user.id, conversation_id)
	return [member.to_dict() for member in members]


@router.post("/conversations/{conversation_id}/hide", status_code=status.HTTP_204_NO_CONTENT)
async def hide_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> None:
	await services.chat.hide_conversation(auth_user.id, conversation_id)


@router.delete("/conversations/{conversation_id}/hide", status_code=status.HTTP_204_NO_CONTENT)
async def unhide_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> None:
	await services.chat.unhide_conversation(auth_user.id, conversation_id)


@router.get("/users/search")
async def search_users_endpoint(
	q: str = Query(default="", max_length=80),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
	profiles = await services.chat.search_users(auth_user.id, q)
	return [profile.to_dict() for profile in profiles]
