"""Pydantic schemas for the chat HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from overlooked.domain.chat.models import Conversation, Message


class StartDirectRequest(BaseModel):
	peer_id: str = Field(..., min_length=1, description="User to chat with")


class JoinCityRequest(BaseModel):
	city_id: Any = Field(..., description="City whose group chat to join")


class JoinLabelRequest(BaseModel):
	label: str = Field(..., min_length=1, max_length=120)


class SendTextRequest(BaseModel):
	content: str = Field(..., max_length=4000)


class ConversationResponse(BaseModel):
	id: str
	participant_ids: List[str]
	is_group: bool
	is_city_group: bool
	city_id: Optional[Any] = None
	label: Optional[str] = None
	last_message_content: Optional[str] = None
	last_message_sent_at: Optional[datetime] = None
	created_at: Optional[datetime] = None

	@classmethod
	def from_model(cls, conversation: Conversation) -> "ConversationResponse":
		return cls(
			id=conversation.id,
			participant_ids=list(conversation.participant_ids),
			is_group=conversation.is_group,
			is_city_group=conversation.is_city_group,
			city_id=conversation.city_id,
			label=conversation.label,
			last_message_content=conversation.last_message_content,
			last_message_sent_at=conversation.last_message_sent_at,
			created_at=conversation.created_at,
		)


class MessageResponse(BaseModel):
	id: str
	conversation_id: str
	sender_id: str
	content: str
	message_type: str
	sent_at: Optional[datetime] = None
	image_url: Optional[str] = None
	file_name: Optional[str] = None

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(**message.to_dict())


class MessageListResponse(BaseModel):
	items: List[MessageResponse]


class ConversationSummaryResponse(BaseModel):
	id: str
	title: str
	avatar_url: Optional[str] = None
	flag_uri: Optional[str] = None
	last_message: str
	last_message_time: Optional[datetime] = None
	is_typing: bool = False
	peer: Optional[dict[str, Any]] = None
	conversation: dict[str, Any]


class ConversationListResponse(BaseModel):
	items: List[ConversationSummaryResponse]
