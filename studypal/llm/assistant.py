from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from loguru import logger
from pydantic import BaseModel, Field

from core.config import AssistantConfig
from llm.base import BaseLLM
from llm.prompts import (
    FALLBACK_RESPONSE,
    VOICE_REPLY_ADDENDUM,
    build_system_prompt,
    build_user_prompt,
)
from llm.topic_filter import StudyTopicFilter


class RequestType(str, Enum):
    EXPLANATION = "explanation"
    STUDY_TIP = "study_tip"
    MOTIVATION = "motivation"
    SCHEDULE_HELP = "schedule_help"
    GENERAL = "general"


class StudyContext(BaseModel):
    subject: Optional[str] = None
    current_task: Optional[str] = None
    study_minutes: int = 0
    focus_score: int = 0


class AssistantReply(BaseModel):
    response: str
    type: RequestType = RequestType.GENERAL
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    filtered: bool = False


class StudyAssistant:
    """Study-only chat assistant used as the voice conversation's brain."""

    def __init__(
        self,
        llm: BaseLLM,
        config: Optional[AssistantConfig] = None,
        topic_filter: Optional[StudyTopicFilter] = None,
        context_provider: Optional[Callable[[], StudyContext]] = None,
    ):
        self.llm = llm
        self.config = config or AssistantConfig()
        self.topic_filter = topic_filter
        self.context_provider = context_provider

    async def ask(
        self,
        message: str,
        request_type: RequestType = RequestType.GENERAL,
        context: Optional[StudyContext] = None,
        voice: bool = False,
    ) -> AssistantReply:
        if self.topic_filter is not None:
            result = await self.topic_filter.check_input(message)
            if result.blocked:
                return AssistantReply(
                    response=result.redirect_response,
                    type=RequestType.GENERAL,
                    filtered=True,
                )

        context = context or StudyContext()
        system_prompt = build_system_prompt(
            request_type=request_type.value,
            subject=context.subject,
            study_minutes=context.study_minutes,
            focus_score=context.focus_score,
        )
        if context.current_task:
            system_prompt += f"\nThe user is currently working on: {context.current_task}."
        if voice:
            system_prompt += VOICE_REPLY_ADDENDUM

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": build_user_prompt(message, request_type.value)},
        ]
        text = await self.llm.complete(
            messages,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        logger.info("[Assistant] {} reply: {} chars", request_type.value, len(text))
        return AssistantReply(response=text or FALLBACK_RESPONSE, type=request_type)

    async def respond(self, message: str) -> str:
        """Conversation callback for the voice pipeline."""
        context = self.context_provider() if self.context_provider else None
        reply = await self.ask(message, context=context, voice=True)
        return reply.response
