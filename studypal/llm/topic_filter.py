from dataclasses import dataclass

from loguru import logger

from llm.base import BaseLLM
from llm.prompts import OFF_TOPIC_RESPONSE, TOPIC_FILTER_PROMPT


@dataclass
class FilterResult:
    blocked: bool = False
    redirect_response: str = ""


class StudyTopicFilter:
    """Keeps the assistant on study topics.

    Asks the LLM for a one-word YES/NO classification of the user's
    message. If the classification itself fails, the message is allowed.
    """

    def __init__(self, llm: BaseLLM):
        self.llm = llm

    async def check_input(self, text: str) -> FilterResult:
        messages = [
            {"role": "system", "content": TOPIC_FILTER_PROMPT},
            {"role": "user", "content": text},
        ]
        try:
            verdict = await self.llm.complete(messages, max_tokens=10, temperature=0.1)
        except Exception as e:
            logger.error("Topic filter error: {}. Allowing message.", e)
            return FilterResult(blocked=False)

        if verdict.strip().upper() == "YES":
            return FilterResult(blocked=False)

        logger.info("Topic filter blocked off-topic message: '{}'", text[:80])
        return FilterResult(blocked=True, redirect_response=OFF_TOPIC_RESPONSE)
