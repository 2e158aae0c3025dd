from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

import httpx

from storyreel.errors import GenerationError

TEXT_TO_IMAGE = "text-to-image"
IMAGE_TO_VIDEO = "image-to-video"


@dataclass
class GeneratedImage:
    url: str


@dataclass
class GenerationResult:
    images: List[GeneratedImage] = field(default_factory=list)
    videos: List[str] = field(default_factory=list)
    description: Optional[str] = None


class GenerationProvider(Protocol):
    def generate(
        self,
        prompt: str,
        mode: str = TEXT_TO_IMAGE,
        aspect_ratio: str | None = None,
        reference_images: List[str] | None = None,
    ) -> GenerationResult: ...


class FalClient:
    def __init__(
        self,
        api_key: str | None,
        text_to_image_model: str = "fal-ai/nano-banana",
        image_to_video_model: str = "fal-ai/kling-video/v2.5-turbo/standard/image-to-video",
        base_url: str = "https://fal.run",
        timeout: float = 180.0,
        transport: httpx.BaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.text_to_image_model = text_to_image_model
        self.image_to_video_model = image_to_video_model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.log = logger or logging.getLogger(__name__)

    def enabled(self) -> bool:
        return bool(self.api_key)

    def generate(
        self,
        prompt: str,
        mode: str = TEXT_TO_IMAGE,
        aspect_ratio: str | None = None,
        reference_images: List[str] | None = None,
    ) -> GenerationResult:
        if not self.enabled():
            raise GenerationError("fal client is not configured")
        if not prompt or not prompt.strip():
            raise GenerationError("prompt is empty")
        model, payload = self._build_request(prompt.strip(), mode, aspect_ratio, reference_images or [])
        body = self._post(model, payload)
        return self._parse_result(body)

    def _build_request(
        self,
        prompt: str,
        mode: str,
        aspect_ratio: str | None,
        reference_images: List[str],
    ) -> tuple[str, dict[str, Any]]:
        if mode == TEXT_TO_IMAGE:
            payload: dict[str, Any] = {"prompt": prompt, "num_images": 1, "output_format": "png"}
            if aspect_ratio:
                payload["aspect_ratio"] = aspect_ratio
            model = self.text_to_image_model
            if reference_images:
                model = f"{model}/edit"
                payload["image_urls"] = reference_images
            return model, payload
        if mode == IMAGE_TO_VIDEO:
            if not reference_images:
                raise GenerationError("image-to-video requires a reference image")
            return self.image_to_video_model, {"prompt": prompt, "image_url": reference_images[0]}
        raise GenerationError(f"unsupported generation mode: {mode}")

    def _post(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{model}"
        headers = {"Authorization": f"Key {self.api_key}"}
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = client.post(url, headers=headers, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code if exc.response is not None else None
                body = exc.response.text if exc.response is not None else ""
                self.log.error(
                    "fal HTTP error",
                    extra={"status": status, "body": body[:2000], "model": model},
                )
                raise GenerationError(f"fal HTTP {status}: {body[:500]}") from exc
            except httpx.HTTPError as exc:
                self.log.error("fal request failed", extra={"error": str(exc), "model": model})
                raise GenerationError(f"fal request failed: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise GenerationError("fal returned a non-JSON response") from exc

    def _parse_result(self, body: dict[str, Any]) -> GenerationResult:
        images = [
            GeneratedImage(url=item["url"])
            for item in body.get("images") or []
            if isinstance(item, dict) and item.get("url")
        ]
        videos: List[str] = []
        video = body.get("video")
        if isinstance(video, dict) and video.get("url"):
            videos.append(video["url"])
        return GenerationResult(images=images, videos=videos, description=body.get("description"))
