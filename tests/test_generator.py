# test_generator.py
from io import BytesIO
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from viewforge import generator as generator_module
from viewforge.errors import GenerationError
from viewforge.features import parse_features
from viewforge.generator import GeminiImageGenerator, GenerationOptions, is_capacity_error
from viewforge.retry import fixed_delay


class CapacityError(Exception):
    def __init__(self, message, code=None, status=None):
        super().__init__(message)
        self.code = code
        self.status = status


def png_bytes():
    buf = BytesIO()
    Image.new("RGB", (4, 4), (20, 40, 80)).save(buf, format="PNG")
    return buf.getvalue()


def image_response(data):
    part = SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type="image/png"))
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


def fake_client(side_effect):
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(side_effect=side_effect)
    return client


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(generator_module, "exponential_backoff", lambda base: fixed_delay(0))


class TestCapacityClassifier:
    def test_http_codes(self):
        assert is_capacity_error(CapacityError("overloaded", code=503))
        assert is_capacity_error(CapacityError("quota", code=429))
        assert not is_capacity_error(CapacityError("bad request", code=400))

    def test_status_strings(self):
        assert is_capacity_error(CapacityError("x", status="unavailable"))
        assert is_capacity_error(Exception("RESOURCE_EXHAUSTED: quota exceeded"))
        assert not is_capacity_error(ValueError("invalid prompt"))


class TestGeminiImageGenerator:
    async def test_falls_back_to_secondary_model_on_capacity_error(self):
        client = fake_client([CapacityError("model overloaded", code=503), image_response(png_bytes())])
        gen = GeminiImageGenerator(client=client, primary_model="primary", fallback_model="fallback")

        result = await gen.generate("A mug", view="front", options=GenerationOptions(retry_budget=3))

        assert result.model == "fallback"
        assert result.url.startswith("data:image/png;base64,")
        models = [call.kwargs["model"] for call in client.aio.models.generate_content.call_args_list]
        assert models == ["primary", "fallback"]

    async def test_no_fallback_when_disabled(self):
        client = fake_client([CapacityError("overloaded", code=503), image_response(png_bytes())])
        gen = GeminiImageGenerator(client=client, primary_model="primary", fallback_model="fallback")

        result = await gen.generate(
            "A mug", view="front", options=GenerationOptions(retry_budget=3, fallback_enabled=False)
        )

        assert result.model == "primary"

    async def test_non_retryable_error_fails_immediately(self):
        client = fake_client(ValueError("prompt blocked"))
        gen = GeminiImageGenerator(client=client, primary_model="primary", fallback_model="fallback")

        with pytest.raises(GenerationError, match="Failed to generate side view"):
            await gen.generate("A mug", view="side", options=GenerationOptions(retry_budget=5))
        assert client.aio.models.generate_content.await_count == 1

    async def test_response_without_image_is_retried_until_budget(self):
        empty = SimpleNamespace(candidates=[])
        client = fake_client([empty, empty])
        gen = GeminiImageGenerator(client=client, primary_model="primary", fallback_model="fallback")

        with pytest.raises(GenerationError):
            await gen.generate("A mug", view="back", options=GenerationOptions(retry_budget=2))
        assert client.aio.models.generate_content.await_count == 2


class TestParseFeatures:
    def test_camel_case_payload(self):
        features = parse_features({
            "colors": [{"hex": "#000000", "name": "black", "usage": "body"}, "silver"],
            "dimensions": {"width": "30cm", "height": "45cm"},
            "materials": ["nylon"],
            "keyElements": ["roll-top closure"],
            "description": "A black roll-top backpack",
        })

        assert [c.name for c in features.colors] == ["black", "silver"]
        assert features.estimated_dimensions.width == "30cm"
        assert features.estimated_dimensions.depth is None
        assert features.key_elements == ["roll-top closure"]

    def test_missing_keys_get_defaults(self):
        features = parse_features({})

        assert features.colors == []
        assert features.estimated_dimensions.height == "unknown"
        assert features.description == ""
