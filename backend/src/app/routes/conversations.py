from typing import List

from fastapi import APIRouter, Depends, Response

from ..schemas.conversations import Conversation, ConversationMetadata, MessageOut
from ...services.auth import UserIdentity, require_user
from ...services.errors import NotFoundError
from ...services.store_factory import StoreFactory, get_store_factory


router = APIRouter()


@router.get("/api/conversations", response_model=List[ConversationMetadata])
async def list_conversations(
    user: UserIdentity = Depends(require_user),
    store_factory: StoreFactory = Depends(get_store_factory),
):
    """List the caller's conversations, most recently active first."""
    async with store_factory() as store:
        conversations = await store.list_conversations(user.user_id)
    return [c.to_dict() for c in conversations]


@router.get("/api/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: str,
    user: UserIdentity = Depends(require_user),
    store_factory: StoreFactory = Depends(get_store_factory),
):
    """Get a specific conversation with all its messages."""
    async with store_factory() as store:
        conversation = await store.find_owned(conversation_id, user.user_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        messages = await store.list_messages(conversation_id)
    payload = conversation.to_dict()
    payload["message_count"] = len(messages)
    payload["messages"] = [m.to_dict() for m in messages]
    return payload


@router.get("/api/conversations/{conversation_id}/messages", response_model=List[MessageOut])
async def list_messages(
    conversation_id: str,
    user: UserIdentity = Depends(require_user),
    store_factory: StoreFactory = Depends(get_store_factory),
):
    async with store_factory() as store:
        if await store.find_owned(conversation_id, user.user_id) is None:
            raise NotFoundError("Conversation not found")
        messages = await store.list_messages(conversation_id)
    return [m.to_dict() for m in messages]


@router.delete("/api/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: str,
    user: UserIdentity = Depends(require_user),
    store_factory: StoreFactory = Depends(get_store_factory),
):
    async with store_factory() as store:
        if await store.find_owned(conversation_id, user.user_id) is None:
            raise NotFoundError("Conversation not found")
        await store.delete(conversation_id)
    return Response(status_code=204)
