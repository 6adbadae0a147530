"""Persona commentary generation backed by the OpenAI chat API."""

from typing import Protocol

import structlog
from openai import AsyncOpenAI

from entitlements.config import CommentaryConfig

logger = structlog.get_logger(__name__)

DEFAULT_PERSONA = "an honest best friend"


class CommentaryGenerator(Protocol):
    """Turns conversation text into persona-flavoured commentary."""

    async def generate(self, *, text: str, persona: str, context: str | None = None) -> str:
        """Return commentary for `text` in the voice of `persona`."""


def get_openai_client(api_key: str) -> AsyncOpenAI:
    """Create the AsyncOpenAI client used for commentary."""
    if not api_key:
        raise ValueError("OpenAI API key is required")
    return AsyncOpenAI(api_key=api_key)


class OpenAICommentaryGenerator:
    """Calls chat completions with a persona system prompt."""

    def __init__(self, client: AsyncOpenAI, config: CommentaryConfig | None = None) -> None:
        self.client = client
        self.config = config or CommentaryConfig()

    @staticmethod
    def build_messages(*, text: str, persona: str, context: str | None = None) -> list[dict[str, str]]:
        system = (
            f"You are {persona or DEFAULT_PERSONA}. Read the conversation the user shares "
            "and give candid, specific commentary on what is going on and how to reply."
        )
        user = text if not context else f"Context: {context}\n\nConversation:\n{text}"
        return [{"role": "system", "content": system}, {"role": "user", "content": user}]

    async def generate(self, *, text: str, persona: str, context: str | None = None) -> str:
        response = await self.client.chat.completions.create(
            model=self.config.model,
            messages=self.build_messages(text=text, persona=persona, context=context),
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        content = response.choices[0].message.content or ""
        logger.info("commentary_generated", model=self.config.model, chars=len(content))
        return content.strip()
