"""
Chat API Endpoint.

Handles conversational messages for Ask Eve Assist. Every message goes
through the conversation flow engine, which runs safety analysis first.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from app.core.conversation.engine import ConversationFlowResult, get_flow_engine
from app.core.conversation.store import get_conversation_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])


class ChatRequest(BaseModel):
    """Chat message request."""

    message: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="User's message",
        examples=["What are the symptoms of ovarian cancer?"],
    )
    conversation_id: Optional[str] = Field(
        default=None,
        description="Existing conversation ID for continuity",
        examples=["550e8400-e29b-41d4-a716-446655440000"],
    )
    user_id: Optional[str] = Field(
        default=None,
        description="User identifier (defaults to the conversation ID)",
    )


class ChatResponse(BaseModel):
    """Chat response."""

    message: str = Field(
        ...,
        description="Assistant's reply",
    )
    conversation_id: str = Field(
        ...,
        description="Conversation ID for continuing the conversation",
    )
    topic: str = Field(
        ...,
        description="Current conversation topic",
    )
    stage: str = Field(
        ...,
        description="Current stage within the topic",
    )
    suggested_actions: list[str] = Field(
        default_factory=list,
        description="Quick replies to offer the user",
    )
    attachments: list[dict] = Field(
        default_factory=list,
        description="Support resources, emergency contacts and disclaimers",
    )
    escalation_triggered: bool = Field(
        default=False,
        description="Whether an escalation was raised on this turn",
    )
    conversation_ended: bool = Field(
        default=False,
        description="Whether the conversation has ended",
    )
    processing_time_ms: Optional[float] = Field(
        default=None,
        description="Processing time in milliseconds",
    )


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


@router.post(
    "",
    response_model=ChatResponse,
    status_code=status.HTTP_200_OK,
    summary="Send a chat message",
    description="Send a message to Ask Eve Assist and get a response.",
    responses={
        200: {"description": "Successful response"},
        422: {"model": ErrorResponse, "description": "Invalid request"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def chat(request: ChatRequest) -> ChatResponse:
    """
    Process a chat message.

    - Runs the safety analyzer before any topic routing
    - Routes to a topic handler (or crisis support)
    - Raises escalations to the nurse team in the background

    The conversation_id should be preserved across requests to keep
    conversation context.
    """
    try:
        engine = get_flow_engine()
        result: ConversationFlowResult = await engine.handle_message(
            conversation_id=request.conversation_id,
            message=request.message,
            user_id=request.user_id,
        )
    except Exception as e:
        logger.exception(f"Error processing chat message: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process message",
        )

    state = result.new_state
    return ChatResponse(
        message=result.response.text,
        conversation_id=state.conversation_id,
        topic=state.current_topic.value,
        stage=state.current_stage.value,
        suggested_actions=result.response.suggested_actions,
        attachments=result.response.attachments,
        escalation_triggered=result.escalation_triggered,
        conversation_ended=result.conversation_ended,
        processing_time_ms=result.processing_time_ms,
    )


@router.get(
    "/conversation/{conversation_id}",
    response_model=dict,
    summary="Get conversation state",
    description="Retrieve the current position of a conversation.",
    responses={
        200: {"description": "Conversation state"},
        404: {"model": ErrorResponse, "description": "Conversation not found"},
    },
)
async def get_conversation(conversation_id: str) -> dict:
    """Get conversation position (no message content)."""
    state = await get_conversation_store().get(conversation_id)

    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )

    return {
        "conversation_id": state.conversation_id,
        "topic": state.current_topic.value,
        "stage": state.current_stage.value,
        "consent_status": state.consent_status.value,
        "message_count": state.message_count,
        "visited_topics": state.visited_topics,
        "last_activity": state.last_activity.isoformat(),
    }
