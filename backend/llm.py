"""
Language-model capability.

Agents never construct model clients themselves. They receive a LanguageModel
(generate / generate_stream / generate_structured / embed / read_image) so
the orchestrator can be built with Gemini in production and scripted fakes in
tests.
"""

import logging
from typing import Any, AsyncIterator, Optional, Protocol, TypeVar

from langchain_core.language_models import LanguageModelInput
from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI, GoogleGenerativeAIEmbeddings
from pydantic import BaseModel

from config import Settings
from prompts import VISION_PROMPT

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class LanguageModel(Protocol):
    async def generate(
        self, prompt: LanguageModelInput, *, temperature: float, model: Optional[str] = None
    ) -> str: ...

    def generate_stream(
        self, prompt: LanguageModelInput, *, temperature: float, model: Optional[str] = None
    ) -> AsyncIterator[str]: ...

    async def generate_structured(
        self,
        prompt: LanguageModelInput,
        schema: type[SchemaT],
        *,
        temperature: float,
        model: Optional[str] = None,
    ) -> SchemaT: ...

    async def embed(self, text: str) -> list[float]: ...

    async def read_image(self, image_base64: str, content_type: str) -> str: ...


class GeminiLanguageModel:
    """LanguageModel backed by Google Gemini through langchain-google-genai."""

    def __init__(self, config: Settings):
        self.config = config
        self._models: dict[tuple[str, float], ChatGoogleGenerativeAI] = {}
        self._embeddings = GoogleGenerativeAIEmbeddings(
            model=config.embedding_model,
            google_api_key=config.google_api_key,
        )

    def _chat_model(self, model: Optional[str], temperature: float) -> ChatGoogleGenerativeAI:
        name = model or self.config.chat_model
        key = (name, temperature)
        if key not in self._models:
            self._models[key] = ChatGoogleGenerativeAI(
                model=name,
                google_api_key=self.config.google_api_key,
                temperature=temperature,
            )
        return self._models[key]

    async def generate(
        self, prompt: LanguageModelInput, *, temperature: float, model: Optional[str] = None
    ) -> str:
        result = await self._chat_model(model, temperature).ainvoke(prompt)
        return _content_text(result.content)

    async def generate_stream(
        self, prompt: LanguageModelInput, *, temperature: float, model: Optional[str] = None
    ) -> AsyncIterator[str]:
        async for chunk in self._chat_model(model, temperature).astream(prompt):
            text = _content_text(chunk.content)
            if text:
                yield text

    async def generate_structured(
        self,
        prompt: LanguageModelInput,
        schema: type[SchemaT],
        *,
        temperature: float,
        model: Optional[str] = None,
    ) -> SchemaT:
        """Parse the reply into `schema`. Raises ValueError when the model returns nothing usable."""
        structured_llm = self._chat_model(model, temperature).with_structured_output(schema)
        result = await structured_llm.ainvoke(prompt)
        if result is None:
            raise ValueError(f"Model returned no {schema.__name__}")
        return result

    async def embed(self, text: str) -> list[float]:
        return await self._embeddings.aembed_query(text)

    async def read_image(self, image_base64: str, content_type: str) -> str:
        message = HumanMessage(
            content=[
                {"type": "text", "text": VISION_PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:{content_type};base64,{image_base64}"}},
            ]
        )
        result = await self._chat_model(self.config.vision_model, 0).ainvoke([message])
        return _content_text(result.content).strip()


def _content_text(content: Any) -> str:
    # Gemini may return a list of content parts instead of a plain string
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return str(content or "")


