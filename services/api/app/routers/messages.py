"""
Messaging endpoints (all require a bearer token):

  POST /messages                                        — send a message
  GET  /messages/conversations                          — caller's conversations
  POST /messages/conversation                           — find-or-create with receiverId
  GET  /messages/conversation/{id}                      — messages, oldest first
  POST /messages/conversation/{id}/read                 — mark incoming as read
  POST /messages/conversation/{id}/message/{mid}/pin    — toggle pin (one per conversation)
  POST /messages/message/{id}/delete                    — hide for the caller only
  POST /messages/message/{id}/react                     — toggle an emoji reaction
"""
import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import AuthContext, get_auth_context
from app.database import get_db
from app.realtime.broadcaster import Broadcaster, get_broadcaster
from app.realtime.presence import PresenceTracker, get_presence
from app.schemas import (
    ConversationOut,
    CreateConversationRequest,
    DeleteMessageResponse,
    MarkReadResponse,
    MessageOut,
    PinResponse,
    ReactionResponse,
    ReactRequest,
    SendMessageRequest,
)
from app.services.messaging_service import MessagingService
from app.stores.conversation_store import ConversationStore

logger = logging.getLogger(__name__)
router = APIRouter()


def get_messaging_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    presence: PresenceTracker = Depends(get_presence),
) -> MessagingService:
    return MessagingService(
        ConversationStore(db),
        broadcaster,
        presence,
        metrics=getattr(request.app.state, "metrics", None),
        pending=request.app.state.background_emits,
    )


@router.post("", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    body: SendMessageRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.send_message(
        auth.user_id,
        body.conversation_id,
        body.content,
        product=body.product,
        event=body.event,
        is_ai_response=body.is_ai_response,
    )


@router.get("/conversations", response_model=list[ConversationOut])
async def list_conversations(
    auth: AuthContext = Depends(get_auth_context),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.list_conversations(auth.user_id)


@router.post("/conversation", response_model=ConversationOut, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    body: CreateConversationRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.create_conversation(auth.user_id, body.receiver_id)


@router.get("/conversation/{conversation_id}", response_model=list[MessageOut])
async def list_messages(
    conversation_id: str,
    auth: AuthContext = Depends(get_auth_context),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.list_messages(auth.user_id, conversation_id)


@router.post("/conversation/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_read(
    conversation_id: str,
    auth: AuthContext = Depends(get_auth_context),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.mark_read(auth.user_id, conversation_id)


@router.post(
    "/conversation/{conversation_id}/message/{message_id}/pin",
    response_model=PinResponse,
)
async def pin_message(
    conversation_id: str,
    message_id: str,
    auth: AuthContext = Depends(get_auth_context),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.pin_message(auth.user_id, conversation_id, message_id)


@router.post("/message/{message_id}/delete", response_model=DeleteMessageResponse)
async def delete_message(
    message_id: str,
    auth: AuthContext = Depends(get_auth_context),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.delete_message(auth.user_id, message_id)


@router.post("/message/{message_id}/react", response_model=ReactionResponse)
async def react_to_message(
    message_id: str,
    body: ReactRequest,
    auth: AuthContext = Depends(get_auth_context),
    service: MessagingService = Depends(get_messaging_service),
):
    return await service.react_to_message(auth.user_id, message_id, body.emoji)
