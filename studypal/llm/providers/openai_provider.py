from loguru import logger

from llm.base import BaseLLM


class OpenAIProvider(BaseLLM):
    """OpenAI chat completions provider."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        self.api_key = api_key
        self.model = model
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

    def update_api_key(self, api_key: str):
        if api_key != self.api_key:
            self.api_key = api_key
            self._client = None

    async def complete(
        self,
        messages: list[dict],
        max_tokens: int = 500,
        temperature: float = 0.7,
    ) -> str:
        if not self.api_key:
            raise RuntimeError("OpenAI API key not configured")

        self._ensure_client()
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        content = response.choices[0].message.content if response.choices else None
        logger.debug("OpenAI reply ({}): {} chars", self.model, len(content or ""))
        return (content or "").strip()

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None
