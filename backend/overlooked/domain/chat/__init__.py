"""Chat domain exports."""

from .conversations import ConversationListView
from .room import ConversationRoom, RoomState
from .service import ChatService

__all__ = [
	"ChatService",
	"ConversationListView",
	"ConversationRoom",
	"RoomState",
]
