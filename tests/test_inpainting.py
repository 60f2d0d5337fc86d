import asyncio
import base64
import json
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from PIL import Image

from conftest import png_bytes
from printprep.cancellation import CancellationToken
from printprep.config import Settings
from printprep.errors import AIProviderError
from printprep.inpainting import (
    AIInpaintingClient,
    FillProvider,
    GradioOutpaintProvider,
    HttpInpaintProvider,
    OpenAIInpaintProvider,
    build_inpainting_client,
)
from printprep.utils import calculate_constrained_dimensions, image_to_data_uri


class FakeProvider(FillProvider):
    def __init__(self, name, color=(0, 255, 0), delay=0.0, error=None,
                 configured=True, calls=None):
        self.name = name
        self.color = color
        self.delay = delay
        self.error = error
        self.configured = configured
        self.calls = calls if calls is not None else []

    def is_configured(self):
        return self.configured

    async def fill(self, image, mask, prompt=None):
        self.calls.append(self.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Image.new("RGB", image.size, self.color)


@pytest.fixture
def request_images():
    return Image.new("RGB", (40, 20), "white"), Image.new("L", (40, 20), 0)


@pytest.mark.asyncio
async def test_first_successful_provider_wins(request_images):
    calls = []
    client = AIInpaintingClient([
        FakeProvider("broken", error=AIProviderError("boom"), calls=calls),
        FakeProvider("good", color=(1, 2, 3), calls=calls),
        FakeProvider("unused", calls=calls),
    ])

    result = await client.request_fill(*request_images)

    assert result.getpixel((0, 0)) == (1, 2, 3)
    assert calls == ["broken", "good"]


@pytest.mark.asyncio
async def test_all_failures_return_none(request_images):
    client = AIInpaintingClient([
        FakeProvider("a", error=AIProviderError("down")),
        FakeProvider("b", error=RuntimeError("unexpected")),
    ])

    assert await client.request_fill(*request_images) is None


def test_unconfigured_providers_are_skipped():
    client = AIInpaintingClient([FakeProvider("off", configured=False)])

    assert client.providers == []
    assert not client.configured


@pytest.mark.asyncio
async def test_slow_provider_times_out_and_next_is_tried(request_images):
    calls = []
    client = AIInpaintingClient(
        [FakeProvider("slow", delay=5, calls=calls),
         FakeProvider("fast", color=(9, 9, 9), calls=calls)],
        timeout=0.2,
    )

    started = time.monotonic()
    result = await client.request_fill(*request_images)
    elapsed = time.monotonic() - started

    assert result.getpixel((0, 0)) == (9, 9, 9)
    assert calls == ["slow", "fast"]
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_timeout_returns_none_close_to_the_limit(request_images):
    client = AIInpaintingClient([FakeProvider("slow", delay=5)], timeout=0.3)

    started = time.monotonic()
    result = await client.request_fill(*request_images)
    elapsed = time.monotonic() - started

    assert result is None
    assert 0.29 <= elapsed < 0.8


@pytest.mark.asyncio
async def test_cancelled_token_skips_providers(request_images):
    calls = []
    client = AIInpaintingClient([FakeProvider("p", calls=calls)])
    token = CancellationToken()
    token.cancel("user")

    assert await client.request_fill(*request_images, token=token) is None
    assert calls == []


@pytest.mark.asyncio
async def test_cancellation_aborts_in_flight_request(request_images):
    calls = []
    client = AIInpaintingClient(
        [FakeProvider("slow", delay=5, calls=calls),
         FakeProvider("next", calls=calls)],
        timeout=10,
    )
    token = CancellationToken(poll_interval=0.01)
    asyncio.get_running_loop().call_later(0.1, token.cancel, "user")

    started = time.monotonic()
    result = await client.request_fill(*request_images, token=token)

    assert result is None
    assert time.monotonic() - started < 1.0
    assert calls == ["slow"]


def test_build_client_follows_configured_order():
    settings = Settings(inpaint_url="https://inpaint.example/fill",
                        openai_api_key="sk-test",
                        provider_order=("openai", "http", "unknown"))

    client = build_inpainting_client(settings)

    assert [p.name for p in client.providers] == ["openai", "http"]
    assert client.configured
    assert not client.outpaint_configured


def test_build_client_without_credentials_is_unconfigured():
    client = build_inpainting_client(Settings())

    assert not client.configured


@pytest.mark.asyncio
async def test_http_provider_speaks_json_protocol(request_images):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        result = image_to_data_uri(Image.new("RGB", (40, 20), (5, 6, 7)))
        return httpx.Response(200, json={"success": True, "resultImage": result})

    provider = HttpInpaintProvider("https://inpaint.example/fill", token="secret",
                                   transport=httpx.MockTransport(handler))

    result = await provider.fill(*request_images, prompt="grass")

    assert result.convert("RGB").getpixel((0, 0)) == (5, 6, 7)
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["prompt"] == "grass"
    assert seen["body"]["image"].startswith("data:image/png;base64,")
    assert seen["body"]["mask"].startswith("data:image/png;base64,")


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, text="server error"),
    httpx.Response(200, json={"success": False, "error": "model loading"}),
    httpx.Response(200, json={"success": True}),
    httpx.Response(200, text="not json"),
])
async def test_http_provider_failures_raise_provider_error(request_images, response):
    provider = HttpInpaintProvider(
        "https://inpaint.example/fill",
        transport=httpx.MockTransport(lambda request: response),
    )

    with pytest.raises(AIProviderError):
        await provider.fill(*request_images)


@pytest.mark.asyncio
async def test_openai_provider_crops_square_result_back(request_images):
    square = Image.new("RGB", (512, 512), (200, 100, 50))
    b64 = base64.b64encode(png_bytes(square)).decode("ascii")
    fake_client = SimpleNamespace(images=SimpleNamespace(edit=AsyncMock(
        return_value=SimpleNamespace(data=[SimpleNamespace(b64_json=b64)])
    )))
    provider = OpenAIInpaintProvider(None, client=fake_client)

    result = await provider.fill(*request_images, prompt=None)

    assert provider.is_configured()
    assert result.size == (40, 20)
    kwargs = fake_client.images.edit.await_args.kwargs
    assert kwargs["size"] == "512x512"
    assert kwargs["response_format"] == "b64_json"


def test_constrained_dimensions_keep_ratio_within_space_limits():
    width, height = calculate_constrained_dimensions(1052 / 698)

    assert 720 <= width <= 1536 and 720 <= height <= 1536
    assert abs(width / height - 1052 / 698) <= 0.01


@pytest.mark.asyncio
async def test_gradio_outpaint_resizes_result_to_canvas(monkeypatch, tmp_path):
    provider = GradioOutpaintProvider("owner/space")
    seen = {}

    def fake_predict(image_path, width, height, content_percentage, prompt):
        seen.update(width=width, height=height, percent=content_percentage,
                    prompt=prompt)
        result_path = tmp_path / "extended.png"
        Image.new("RGB", (width, height), (0, 0, 255)).save(result_path)
        return str(result_path)

    monkeypatch.setattr(provider, "_predict", fake_predict)
    client = AIInpaintingClient([], outpaint_provider=provider)

    result = await client.request_outpaint(
        Image.new("RGBA", (1004, 650), "red"), 1052, 698, prompt=None
    )

    assert result.size == (1052, 698)
    assert result.getpixel((0, 0)) == (0, 0, 255, 255)
    assert seen["percent"] == 95
    assert seen["prompt"] == "seamless continuation"


@pytest.mark.asyncio
async def test_gradio_outpaint_failure_returns_none(monkeypatch):
    provider = GradioOutpaintProvider("owner/space")

    def broken_predict(*args):
        raise ConnectionError("space is sleeping")

    monkeypatch.setattr(provider, "_predict", broken_predict)
    client = AIInpaintingClient([], outpaint_provider=provider)

    assert await client.request_outpaint(
        Image.new("RGBA", (100, 50)), 120, 70
    ) is None


def test_http_provider_uses_configured_ai_timeout():
    settings = Settings(inpaint_url="https://inpaint.example/fill", ai_timeout=22.0)

    provider = build_inpainting_client(settings).providers[0]

    assert provider.name == "http"
    assert provider.timeout == 22.0


@pytest.mark.asyncio
async def test_http_provider_applies_timeout_to_requests(request_images):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["timeout"] = request.extensions["timeout"]
        result = image_to_data_uri(Image.new("RGB", (40, 20)))
        return httpx.Response(200, json={"success": True, "result": result})

    provider = HttpInpaintProvider("https://inpaint.example/fill", timeout=22.0,
                                   transport=httpx.MockTransport(handler))

    await provider.fill(*request_images)

    assert seen["timeout"]["read"] == 22.0
    assert seen["timeout"]["connect"] == 22.0
