"""
AI fill providers and the client that chains them.

Every provider speaks one capability: given a context image and a mask
(black = preserve, white = fill) return the filled image, or raise
`AIProviderError`. `AIInpaintingClient` tries the configured providers in
priority order with a hard per-call timeout and turns every failure into
`None`, so callers can always fall back to the deterministic fill.
"""
import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Awaitable

import httpx
from gradio_client import Client, handle_file
from openai import AsyncOpenAI, OpenAIError
from PIL import Image

from printprep.cancellation import CancellationToken, Checkpoint
from printprep.config import Settings
from printprep.errors import AIProviderError, AIProviderTimeout
from printprep.utils import (
    calculate_constrained_dimensions,
    decode_image,
    encode_image,
    image_to_data_uri,
)

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "seamless continuation"


class FillProvider(ABC):
    """Capability interface shared by all inpainting providers."""

    name = "provider"

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    async def fill(
        self,
        image: Image.Image,
        mask: Image.Image,
        prompt: str | None = None
    ) -> Image.Image:
        ...


class HttpInpaintProvider(FillProvider):
    """
    Inpainting endpoint speaking the JSON provider protocol.

    Request:  {"image": data-uri, "mask": data-uri, "prompt": str | null}
    Response: {"success": bool, "resultImage" | "result": data-uri, "error": str}
    """

    name = "http"

    def __init__(
        self,
        url: str | None,
        token: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.url)

    async def fill(self, image, mask, prompt=None):
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {
            "image": image_to_data_uri(image),
            "mask": image_to_data_uri(mask),
            "prompt": prompt,
        }

        try:
            async with httpx.AsyncClient(transport=self._transport,
                                         timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload,
                                             headers=headers)
        except httpx.HTTPError as exc:
            raise AIProviderError(f"request failed: {exc}",
                                  provider=self.name) from exc

        if response.status_code >= 400:
            raise AIProviderError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                provider=self.name,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise AIProviderError("malformed response: not JSON",
                                  provider=self.name) from exc
        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            raise AIProviderError(error or "provider reported failure",
                                  provider=self.name)

        result = data.get("resultImage") or data.get("result")
        if not result:
            raise AIProviderError("malformed response: no result image",
                                  provider=self.name)
        try:
            return decode_image(result)
        except (OSError, ValueError) as exc:
            raise AIProviderError(f"malformed result image: {exc}",
                                  provider=self.name) from exc


class OpenAIInpaintProvider(FillProvider):
    """OpenAI image edits. The API wants square PNGs and a transparent mask."""

    name = "openai"
    edit_size = 512

    def __init__(
        self,
        api_key: str | None,
        model: str = "dall-e-2",
        client: AsyncOpenAI | None = None
    ):
        self.api_key = api_key
        self.model = model
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.api_key or self._client)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    def _to_square(
        self,
        image: Image.Image,
        mask: Image.Image
    ) -> tuple[Image.Image, Image.Image, tuple[int, int, int, int]]:
        side = max(image.size)
        left = (side - image.width) // 2
        top = (side - image.height) // 2
        box = (left, top, left + image.width, top + image.height)

        square = Image.new("RGB", (side, side), (255, 255, 255))
        square.paste(image.convert("RGB"), (left, top))

        # Transparent pixels mark the region OpenAI should edit.
        alpha = Image.new("L", (side, side), 255)
        alpha.paste(mask.convert("L").point(lambda v: 0 if v > 127 else 255),
                    (left, top))
        square_mask = square.convert("RGBA")
        square_mask.putalpha(alpha)

        size = (self.edit_size, self.edit_size)
        return (square.resize(size, Image.LANCZOS),
                square_mask.resize(size, Image.NEAREST), box)

    async def fill(self, image, mask, prompt=None):
        square, square_mask, box = self._to_square(image, mask)
        side = max(image.size)
        try:
            response = await self._get_client().images.edit(
                model=self.model,
                image=("image.png", encode_image(square, "PNG"), "image/png"),
                mask=("mask.png", encode_image(square_mask, "PNG"), "image/png"),
                prompt=prompt or DEFAULT_PROMPT,
                n=1,
                size=f"{self.edit_size}x{self.edit_size}",
                response_format="b64_json",
            )
        except OpenAIError as exc:
            raise AIProviderError(f"OpenAI edit failed: {exc}",
                                  provider=self.name) from exc

        if not response.data or not response.data[0].b64_json:
            raise AIProviderError("malformed response: no image data",
                                  provider=self.name)
        try:
            result = decode_image(response.data[0].b64_json)
        except (OSError, ValueError) as exc:
            raise AIProviderError(f"malformed result image: {exc}",
                                  provider=self.name) from exc
        return result.resize((side, side), Image.LANCZOS).crop(box)


class GradioOutpaintProvider:
    """
    Whole-canvas extension through the diffusers image outpaint Gradio space.

    The space only accepts sizes within [720, 1536] px, so the request is
    made at the closest constrained size with the canvas ratio and the
    result is resized back to the canvas.
    """

    name = "gradio-outpaint"

    def __init__(self, space: str | None, hf_token: str | None = None,
                 num_inference_steps: int = 8, overlap_percentage: int = 10):
        self.space = space
        self.hf_token = hf_token
        self.num_inference_steps = num_inference_steps
        self.overlap_percentage = overlap_percentage

    def is_configured(self) -> bool:
        return bool(self.space)

    def _predict(self, image_path: str, width: int, height: int,
                 content_percentage: int, prompt: str) -> str:
        client = (Client(self.space, hf_token=self.hf_token)
                  if self.hf_token else Client(self.space))
        result = client.predict(
            image=handle_file(image_path),
            width=width,
            height=height,
            overlap_percentage=self.overlap_percentage,
            num_inference_steps=self.num_inference_steps,
            resize_option="Custom",
            custom_resize_percentage=content_percentage,
            prompt_input=prompt,
            alignment="Middle",
            overlap_left=True,
            overlap_right=True,
            overlap_top=True,
            overlap_bottom=True,
            api_name="/infer"
        )
        # The space returns (mask preview, extended image)
        return result[1]

    async def outpaint(
        self,
        content: Image.Image,
        canvas_width: int,
        canvas_height: int,
        prompt: str | None = None
    ) -> Image.Image:
        try:
            width, height = calculate_constrained_dimensions(
                canvas_width / canvas_height
            )
        except ValueError as exc:
            raise AIProviderError(str(exc), provider=self.name) from exc
        content_percentage = max(
            1, min(100, round(100 * content.width / canvas_width))
        )

        with tempfile.NamedTemporaryFile(suffix=".png", delete=False) as tmp:
            content.convert("RGB").save(tmp, format="PNG")
            tmp_path = tmp.name
        try:
            result_path = await asyncio.to_thread(
                self._predict, tmp_path, width, height,
                content_percentage, prompt or DEFAULT_PROMPT,
            )
            with Image.open(result_path) as extended:
                return extended.convert("RGBA").resize(
                    (canvas_width, canvas_height), Image.LANCZOS
                )
        except AIProviderError:
            raise
        except Exception as exc:
            raise AIProviderError(f"outpaint failed: {exc}",
                                  provider=self.name) from exc
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)


class _AttemptCancelled(Exception):
    pass


class AIInpaintingClient:
    """Ordered provider chain with per-call timeouts and cancellation."""

    def __init__(
        self,
        providers: list[FillProvider],
        timeout: float = 15.0,
        outpaint_provider: GradioOutpaintProvider | None = None
    ):
        self.providers = [p for p in providers if p.is_configured()]
        self.timeout = timeout
        self.outpaint_provider = (
            outpaint_provider
            if outpaint_provider is not None and outpaint_provider.is_configured()
            else None
        )

    @property
    def configured(self) -> bool:
        return bool(self.providers)

    @property
    def outpaint_configured(self) -> bool:
        return self.outpaint_provider is not None

    async def _attempt(
        self,
        name: str,
        call: Awaitable[Image.Image],
        token: CancellationToken | None
    ) -> Image.Image:
        task = asyncio.ensure_future(call)
        waiters = {task}
        cancel_waiter = None
        if token is not None:
            cancel_waiter = asyncio.ensure_future(token.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if task in done:
            return task.result()
        if cancel_waiter is not None and cancel_waiter in done:
            raise _AttemptCancelled()
        raise AIProviderTimeout(f"no answer within {self.timeout}s",
                                provider=name)

    async def request_fill(
        self,
        context_image: Image.Image,
        mask: Image.Image,
        prompt: str | None = None,
        token: CancellationToken | None = None
    ) -> Image.Image | None:
        """Filled image from the first provider that succeeds, else None."""
        failures = []
        for provider in self.providers:
            if token is not None and token.check() is Checkpoint.CANCELLED:
                logger.info("AI fill skipped: run cancelled")
                return None
            try:
                result = await self._attempt(
                    provider.name,
                    provider.fill(context_image, mask, prompt),
                    token,
                )
            except _AttemptCancelled:
                logger.info(f"AI fill via {provider.name} aborted: run cancelled")
                return None
            except AIProviderError as exc:
                logger.warning(f"AI fill via {provider.name} failed: {exc}")
                failures.append(f"{provider.name}: {exc}")
                continue
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    f"AI fill via {provider.name} raised "
                    f"{type(exc).__name__}: {exc}"
                )
                failures.append(f"{provider.name}: {type(exc).__name__}: {exc}")
                continue

            logger.info(f"AI fill via {provider.name} succeeded")
            return result

        if failures:
            logger.warning(f"All AI fill providers failed: {'; '.join(failures)}")
        return None

    async def request_outpaint(
        self,
        content: Image.Image,
        canvas_width: int,
        canvas_height: int,
        prompt: str | None = None,
        token: CancellationToken | None = None
    ) -> Image.Image | None:
        """Whole-canvas extension from the outpaint provider, else None."""
        provider = self.outpaint_provider
        if provider is None:
            return None
        if token is not None and token.check() is Checkpoint.CANCELLED:
            return None
        try:
            return await self._attempt(
                provider.name,
                provider.outpaint(content, canvas_width, canvas_height, prompt),
                token,
            )
        except _AttemptCancelled:
            logger.info("AI outpaint aborted: run cancelled")
        except AIProviderError as exc:
            logger.warning(f"AI outpaint via {provider.name} failed: {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                f"AI outpaint via {provider.name} raised "
                f"{type(exc).__name__}: {exc}"
            )
        return None


def build_inpainting_client(settings: Settings) -> AIInpaintingClient:
    """Assemble the provider chain in the configured priority order."""
    providers = []
    for name in settings.provider_order:
        if name == "http":
            providers.append(HttpInpaintProvider(settings.inpaint_url,
                                                 settings.inpaint_token,
                                                 timeout=settings.ai_timeout))
        elif name == "openai":
            providers.append(OpenAIInpaintProvider(settings.openai_api_key,
                                                   settings.openai_model))
        else:
            logger.warning(f"Unknown AI fill provider in order: {name}")

    outpaint = None
    if settings.outpaint_configured:
        outpaint = GradioOutpaintProvider(settings.outpaint_space,
                                          settings.outpaint_token)
    return AIInpaintingClient(providers, timeout=settings.ai_timeout,
                              outpaint_provider=outpaint)
