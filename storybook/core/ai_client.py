from google import genai
from google.genai import types
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional

from storybook.config import Config
from storybook.core.cache import cache_key
from storybook.core.errors import ImageGenerationError, MalformedResponseError
from storybook.core.models import GeneratedImage, ReferenceImage
from storybook.core.observability import Observability

logger = logging.getLogger(__name__)


@dataclass
class ImageSession:
    """
    A conversation with the image model. Every call made through the same
    session is sent as a new turn of one chat so the model keeps the style
    and characters of the previous turns in context.
    """
    project_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    message_index: int = 0
    closed: bool = False
    chat: Any = field(default=None, repr=False)


def _extract_image(response) -> Optional[types.Blob]:
    for part in response.parts or []:
        if getattr(part, "inline_data", None) and part.inline_data.data:
            return part.inline_data
    return None


def _image_config(aspect_ratio: str) -> types.GenerateContentConfig:
    return types.GenerateContentConfig(
        response_modalities=['TEXT', 'IMAGE'],
        image_config=types.ImageConfig(
            aspect_ratio=aspect_ratio,
        ),
    )


class GenAIImageClient:
    def __init__(self, observability: Optional[Observability] = None, model_id: Optional[str] = None):
        self.client = genai.Client(api_key=Config.GEMINI_API_KEY)
        self.model_id = model_id or Config.IMAGE_MODEL_NAME
        self.observability = observability or Observability()

    def create_session(self, project_id: str) -> ImageSession:
        session = ImageSession(project_id=project_id)
        session.chat = self.client.aio.chats.create(model=self.model_id)
        logger.debug(f"Session created: {session.id} (project {project_id})")
        return session

    def close_session(self, session: ImageSession):
        session.closed = True
        session.chat = None
        logger.debug(f"Session closed: {session.id}")

    def get_message_index(self, session: ImageSession) -> int:
        return session.message_index

    async def generate_with_references(
        self,
        session: ImageSession,
        prompt: str,
        references: Optional[List[ReferenceImage]] = None,
        aspect_ratio: str = "3:4",
    ) -> GeneratedImage:
        """
        Generates an image as the next turn of the session.

        Args:
            session: Open session returned by create_session.
            prompt: Full prompt including any reference instructions.
            references: Images sent alongside the prompt, each preceded by its label.
            aspect_ratio: Aspect ratio of the requested image.
        """
        if session.closed:
            raise RuntimeError(f"Session {session.id} is closed")
        references = references or []

        contents: List[Any] = [prompt]
        for ref in references:
            contents.append(f"[{ref.type.value}] {ref.label}")
            contents.append(types.Part.from_bytes(data=ref.data, mime_type=ref.mime_type))

        logger.info(f"Generating image with model {self.model_id}. Refs: {len(references)}")
        start = time.monotonic()
        try:
            response = await session.chat.send_message(contents, config=_image_config(aspect_ratio))
        except Exception as e:
            logger.error(f"Error generating image: {e}")
            raise

        blob = _extract_image(response)
        if blob is None:
            raise ImageGenerationError("Gemini generation returned no images.")

        session.message_index += 1
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Image generated ({len(blob.data) // 1024} KB, {elapsed_ms} ms)")
        return GeneratedImage(
            data=blob.data,
            mime_type=blob.mime_type or "image/png",
            model=self.model_id,
            aspect_ratio=aspect_ratio,
            generation_time_ms=elapsed_ms,
        )

    async def generate_image(self, prompt: str, aspect_ratio: str = "3:4", skip_cache: bool = False) -> GeneratedImage:
        """Reference-free, session-free generation. Results are cached by prompt."""
        key = cache_key(self.model_id, prompt, aspect_ratio)
        if not skip_cache:
            cached = self.observability.get_image_cache(key)
            if cached:
                self.observability.record_event("image_cache_hit", key=key)
                return GeneratedImage(data=cached, model=self.model_id, aspect_ratio=aspect_ratio, cached=True)

        logger.info(f"Generating image with model {self.model_id}. Refs: 0")
        start = time.monotonic()
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_id,
                contents=prompt,
                config=_image_config(aspect_ratio),
            )
        except Exception as e:
            logger.error(f"Error generating image: {e}")
            raise

        blob = _extract_image(response)
        if blob is None:
            raise ImageGenerationError("Gemini generation returned no images.")

        self.observability.set_image_cache(key, blob.data)
        return GeneratedImage(
            data=blob.data,
            mime_type=blob.mime_type or "image/png",
            model=self.model_id,
            aspect_ratio=aspect_ratio,
            generation_time_ms=int((time.monotonic() - start) * 1000),
        )


def strip_code_fences(text: str) -> str:
    clean = text.strip()
    if clean.startswith("```json"):
        clean = clean[7:]
    elif clean.startswith("```"):
        clean = clean[3:]
    if clean.endswith("```"):
        clean = clean[:-3]
    return clean.strip()


class GenAITextClient:
    JSON_INSTRUCTION = (
        "IMPORTANT: You must respond with valid JSON only. "
        "No markdown code blocks, no explanations, just the raw JSON object."
    )

    def __init__(self, observability: Optional[Observability] = None, model_id: Optional[str] = None):
        self.client = genai.Client(api_key=Config.GEMINI_API_KEY)
        self.model_id = model_id or Config.TEXT_MODEL_NAME
        self.observability = observability or Observability()

    async def generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4096,
        temperature: Optional[float] = None,
        skip_cache: bool = False,
    ) -> str:
        key = cache_key(self.model_id, system_prompt, user_prompt)
        if not skip_cache:
            cached = self.observability.get_text_cache(key)
            if cached is not None:
                self.observability.record_event("text_cache_hit", key=key)
                return cached

        config_args = {"system_instruction": system_prompt, "max_output_tokens": max_tokens}
        if temperature is not None:
            config_args["temperature"] = temperature

        logger.info(f"Sending text request ({len(user_prompt)} chars) to {self.model_id}")
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_id,
                contents=user_prompt,
                config=config_args,
            )
        except Exception as e:
            logger.error(f"Error generating text: {e}")
            raise

        text = response.text or ""
        self.observability.set_text_cache(key, text)
        return text

    async def generate_structured(self, system_prompt: str, user_prompt: str, **kwargs) -> Any:
        """Returns the parsed JSON answer. Never guesses at a broken payload."""
        text = await self.generate_text(f"{system_prompt}\n\n{self.JSON_INSTRUCTION}", user_prompt, **kwargs)
        clean_text = strip_code_fences(text)
        try:
            return json.loads(clean_text)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(clean_text, e) from e
