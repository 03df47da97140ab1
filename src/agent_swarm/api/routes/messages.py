"""Message endpoints: read agent messages and answer questions."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ...models import AgentMessage, MessageResponse
from .status import get_context

router = APIRouter()


class RespondRequest(BaseModel):
    """Request body for answering a message."""
    response: str


class MessageWithResponse(BaseModel):
    """A message and its answer, if any."""
    message: AgentMessage
    response: Optional[MessageResponse] = None


@router.get("/messages/pending", response_model=list[AgentMessage])
def get_pending_messages(request: Request) -> list[AgentMessage]:
    """Messages that still wait for an operator answer, oldest first."""
    return get_context(request).messages.pending_messages()


@router.get("/messages", response_model=list[AgentMessage])
def get_recent_messages(
    request: Request,
    limit: int = Query(default=10, ge=1, le=500),
) -> list[AgentMessage]:
    return get_context(request).messages.recent_messages(limit)


@router.get("/messages/{message_id}", response_model=MessageWithResponse)
def get_message(request: Request, message_id: str) -> MessageWithResponse:
    bus = get_context(request).messages
    message = bus.get_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail=f"Message {message_id} not found")
    return MessageWithResponse(message=message, response=bus.get_response(message_id))


@router.post("/messages/{message_id}/respond", response_model=MessageResponse)
def respond_to_message(request: Request, message_id: str, body: RespondRequest) -> MessageResponse:
    """Answer a message. Each message can be answered once."""
    bus = get_context(request).messages
    if bus.get_message(message_id) is None:
        raise HTTPException(status_code=404, detail=f"Message {message_id} not found")
    if not bus.respond(message_id, body.response):
        raise HTTPException(status_code=409, detail=f"Message {message_id} was already answered")
    return bus.get_response(message_id)
