
import pytest
from unittest.mock import AsyncMock, MagicMock
from google.genai import types

from storybook.core.ai_client import GenAIImageClient, GenAITextClient, strip_code_fences
from storybook.core.cache import FileCache, cache_key
from storybook.core.errors import ImageGenerationError, MalformedResponseError
from storybook.core.models import ReferenceImage, ReferenceType
from storybook.core.observability import Observability


def image_response(data=b"fake_image_bytes", mime_type="image/png"):
    response = MagicMock()
    part = MagicMock()
    part.inline_data.data = data
    part.inline_data.mime_type = mime_type
    response.parts = [part]
    return response


@pytest.fixture
def cache_observability(tmp_path):
    return Observability(FileCache(tmp_path / "cache"))


@pytest.fixture
def image_client(mock_genai_client, cache_observability):
    return GenAIImageClient(cache_observability, model_id="image-model")


@pytest.fixture
def text_client(mock_genai_client, cache_observability):
    return GenAITextClient(cache_observability, model_id="text-model")


class TestGenAIImageClient:
    def test_create_session_opens_chat(self, image_client, mock_genai_client):
        mock_instance = mock_genai_client.return_value
        session = image_client.create_session("proj-1")

        assert session.project_id == "proj-1"
        assert session.message_index == 0
        assert session.chat is mock_instance.aio.chats.create.return_value
        mock_instance.aio.chats.create.assert_called_once_with(model="image-model")

    def test_close_session(self, image_client):
        session = image_client.create_session("proj-1")
        image_client.close_session(session)

        assert session.closed is True
        assert session.chat is None

    @pytest.mark.asyncio
    async def test_generate_with_references(self, image_client):
        session = image_client.create_session("proj-1")
        session.chat = MagicMock()
        session.chat.send_message = AsyncMock(return_value=image_response())
        refs = [
            ReferenceImage(type=ReferenceType.STYLE, label="Front cover", data=b"cover"),
            ReferenceImage(type=ReferenceType.PREVIOUS_PAGE, label="Page 1", data=b"p1"),
        ]

        result = await image_client.generate_with_references(session, "prompt", refs, aspect_ratio="3:4")

        assert result.data == b"fake_image_bytes"
        assert result.model == "image-model"
        assert result.aspect_ratio == "3:4"
        assert image_client.get_message_index(session) == 1

        args, kwargs = session.chat.send_message.call_args
        contents = args[0]
        assert contents[0] == "prompt"
        assert contents[1] == "[style] Front cover"
        assert isinstance(contents[2], types.Part)
        assert contents[3] == "[previous-page] Page 1"
        assert len(contents) == 5
        assert kwargs["config"].image_config.aspect_ratio == "3:4"

    @pytest.mark.asyncio
    async def test_message_index_grows_per_turn(self, image_client):
        session = image_client.create_session("proj-1")
        session.chat = MagicMock()
        session.chat.send_message = AsyncMock(return_value=image_response())

        for _ in range(3):
            await image_client.generate_with_references(session, "prompt")
        assert image_client.get_message_index(session) == 3

    @pytest.mark.asyncio
    async def test_closed_session_rejected(self, image_client):
        session = image_client.create_session("proj-1")
        image_client.close_session(session)

        with pytest.raises(RuntimeError, match="closed"):
            await image_client.generate_with_references(session, "prompt")

    @pytest.mark.asyncio
    async def test_no_image_returned(self, image_client):
        session = image_client.create_session("proj-1")
        session.chat = MagicMock()
        response = MagicMock()
        response.parts = []
        session.chat.send_message = AsyncMock(return_value=response)

        with pytest.raises(ImageGenerationError, match="no images"):
            await image_client.generate_with_references(session, "prompt")
        assert session.message_index == 0

    @pytest.mark.asyncio
    async def test_provider_exception_propagates(self, image_client):
        session = image_client.create_session("proj-1")
        session.chat = MagicMock()
        session.chat.send_message = AsyncMock(side_effect=Exception("Gen Error"))

        with pytest.raises(Exception, match="Gen Error"):
            await image_client.generate_with_references(session, "prompt")

    @pytest.mark.asyncio
    async def test_generate_image_caches_result(self, image_client, mock_genai_client, cache_observability):
        mock_instance = mock_genai_client.return_value
        mock_instance.aio.models.generate_content = AsyncMock(return_value=image_response(b"fresh"))

        first = await image_client.generate_image("a cat", aspect_ratio="1:1")
        second = await image_client.generate_image("a cat", aspect_ratio="1:1")

        assert first.data == b"fresh"
        assert first.cached is False
        assert second.data == b"fresh"
        assert second.cached is True
        mock_instance.aio.models.generate_content.assert_awaited_once()
        assert len(cache_observability.events_named("image_cache_hit")) == 1

    @pytest.mark.asyncio
    async def test_generate_image_skip_cache(self, image_client, mock_genai_client, cache_observability):
        mock_instance = mock_genai_client.return_value
        mock_instance.aio.models.generate_content = AsyncMock(return_value=image_response(b"new"))
        cache_observability.set_image_cache(cache_key("image-model", "a cat", "1:1"), b"old")

        result = await image_client.generate_image("a cat", aspect_ratio="1:1", skip_cache=True)

        assert result.data == b"new"
        mock_instance.aio.models.generate_content.assert_awaited_once()


class TestGenAITextClient:
    @pytest.mark.asyncio
    async def test_generate_text(self, text_client, mock_genai_client):
        mock_instance = mock_genai_client.return_value
        mock_response = MagicMock()
        mock_response.text = "Generated text"
        mock_instance.aio.models.generate_content = AsyncMock(return_value=mock_response)

        text = await text_client.generate_text("system", "prompt")

        assert text == "Generated text"
        args, kwargs = mock_instance.aio.models.generate_content.call_args
        assert kwargs["model"] == "text-model"
        assert kwargs["config"]["system_instruction"] == "system"

    @pytest.mark.asyncio
    async def test_generate_text_uses_cache(self, text_client, mock_genai_client):
        mock_instance = mock_genai_client.return_value
        mock_response = MagicMock()
        mock_response.text = "Cached later"
        mock_instance.aio.models.generate_content = AsyncMock(return_value=mock_response)

        await text_client.generate_text("system", "prompt")
        again = await text_client.generate_text("system", "prompt")

        assert again == "Cached later"
        mock_instance.aio.models.generate_content.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_generate_structured_strips_fences(self, text_client):
        text_client.generate_text = AsyncMock(return_value='```json\n{"title": "Luna"}\n```')

        data = await text_client.generate_structured("system", "prompt")

        assert data == {"title": "Luna"}
        system_prompt = text_client.generate_text.call_args.args[0]
        assert "valid JSON only" in system_prompt

    @pytest.mark.asyncio
    async def test_generate_structured_malformed(self, text_client):
        raw = "Sure! Here is your outline: {title: Luna" + "x" * 1000
        text_client.generate_text = AsyncMock(return_value=raw)

        with pytest.raises(MalformedResponseError) as exc_info:
            await text_client.generate_structured("system", "prompt")

        assert exc_info.value.raw_text == raw
        assert "Sure! Here is your outline" in str(exc_info.value)
        assert raw not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_generate_text_exception(self, text_client, mock_genai_client):
        mock_instance = mock_genai_client.return_value
        mock_instance.aio.models.generate_content = AsyncMock(side_effect=Exception("API Error"))

        with pytest.raises(Exception, match="API Error"):
            await text_client.generate_text("system", "prompt")


def test_strip_code_fences():
    assert strip_code_fences("```json\n[1]\n```") == "[1]"
    assert strip_code_fences("```\n{}\n```") == "{}"
    assert strip_code_fences("  {}  ") == "{}"
