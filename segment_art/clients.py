"""Async clients for the segmentation, inpainting and prompt-parsing services."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from PIL import Image, UnidentifiedImageError

from segment_art.errors import CollaboratorError, DecodeError
from segment_art.io import decode_mask
from segment_art.mask_ops import BoundingBox, bounding_box
from segment_art.ratelimit import RateLimiter
from segment_art.settings import Settings, get_settings
from segment_art.state import DetectedRegion

logger = logging.getLogger(__name__)

FACE = "face"
LANDSCAPE = "landscape"

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay retries, only for errors classified as retryable."""

    max_attempts: int = 3
    delay: float = 1.0

    def should_retry(self, error: CollaboratorError, attempt: int) -> bool:
        return error.retryable and attempt < self.max_attempts


def classify_error(status_code: Optional[int], message: str = "") -> str:
    """Sort a failed call into ``CollaboratorError.reason`` buckets.

    The service's error text wins over the status code.
    """
    text = (message or "").lower()
    if "loading" in text:
        return "model_loading"
    if "rate limit" in text:
        return "rate_limit"
    if "quota" in text or "billing" in text:
        return "quota"
    if "content_policy" in text:
        return "policy"
    if (
        "unauthorized" in text
        or "invalid token" in text
        or "invalid credentials" in text
        or ("invalid" in text and "key" in text)
    ):
        return "auth"
    if status_code == 503:
        return "model_loading"
    if status_code == 429:
        return "rate_limit"
    if status_code == 402:
        return "quota"
    if status_code in (401, 403):
        return "auth"
    return "unknown"


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err.get("code") or err)
        if err:
            return str(err)
    return response.text


def _image_size(data: bytes) -> Optional[Tuple[int, int]]:
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError):
        return None


class _ServiceClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float,
        limiter: Optional[RateLimiter] = None,
        retry: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )
        self._transport = transport
        self._timeout = timeout
        self._limiter = limiter
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    async def close(self) -> None:
        """Close the underlying HTTP client."""

        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._limiter is not None:
            await self._limiter.acquire()
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise CollaboratorError(f"Request to {url} timed out", reason="network") from exc
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"Request to {url} failed: {exc}", reason="network") from exc
        if response.is_error:
            text = _error_text(response)
            raise CollaboratorError(
                f"{url} returned {response.status_code}: {text}",
                reason=classify_error(response.status_code, text),
                status_code=response.status_code,
            )
        return response

    async def _call(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        attempt = 1
        while True:
            try:
                return await self._send(method, url, **kwargs)
            except CollaboratorError as exc:
                if not self._retry.should_retry(exc, attempt):
                    raise
                logger.warning(
                    "%s (%s), retrying in %.1fs [attempt %d/%d]",
                    exc, exc.reason, self._retry.delay, attempt, self._retry.max_attempts,
                )
                await self._sleep(self._retry.delay)
                attempt += 1


@dataclass
class SegmentationResult:
    regions: List[DetectedRegion] = field(default_factory=list)
    image_type: str = LANDSCAPE


class SegmentationClient(_ServiceClient):
    """Object detection, face parsing and panoptic segmentation endpoints."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        super().__init__(
            s.hf_base_url,
            s.hf_api_key,
            s.request_timeout,
            limiter=limiter,
            retry=RetryPolicy(s.max_retries, s.retry_delay),
            transport=transport,
            sleep=sleep,
        )

    def _require_key(self) -> None:
        if not self._settings.has_hf_key:
            raise CollaboratorError("Hugging Face API key is not configured", reason="auth")

    async def _post_image(self, model: str, image: bytes, retry: bool = True) -> Any:
        send = self._call if retry else self._send
        response = await send(
            "POST",
            f"/{model}",
            content=image,
            headers={"Content-Type": "application/octet-stream"},
        )
        try:
            return response.json()
        except ValueError as exc:
            raise CollaboratorError(f"{model} returned a non-JSON body", reason="unknown") from exc

    async def detect_objects(self, image: bytes, retry: bool = True) -> List[Dict[str, Any]]:
        self._require_key()
        payload = await self._post_image(self._settings.object_detection_model, image, retry=retry)
        if not isinstance(payload, list):
            raise CollaboratorError("Invalid response format from object detection", reason="unknown")
        return [
            {
                "label": item.get("label") or "unknown",
                "score": float(item.get("score") or 0.0),
                "box": BoundingBox.from_dict(item.get("box") or {}),
            }
            for item in payload
            if isinstance(item, dict)
        ]

    def _normalised_area(self, box: BoundingBox, size: Optional[Tuple[int, int]]) -> float:
        # Detectors report pixel boxes; fractions are used as-is.
        if size and max(box.xmax, box.ymax) > 1.0:
            w, h = size
            return box.area / float(max(1, w) * max(1, h))
        return box.area

    async def classify_image(self, image: bytes) -> str:
        """``face`` when the largest confident person box covers enough of the image."""
        s = self._settings
        if not s.has_hf_key:
            logger.warning("No Hugging Face key, defaulting to %s mode", LANDSCAPE)
            return LANDSCAPE

        detections: Optional[List[Dict[str, Any]]] = None
        for attempt in range(1, 3):
            try:
                detections = await self.detect_objects(image, retry=False)
                break
            except CollaboratorError as exc:
                if exc.reason == "model_loading" and attempt < 2:
                    await self._sleep(s.retry_delay)
                    continue
                logger.warning("Image type detection failed (%s), defaulting to %s", exc, LANDSCAPE)
                return LANDSCAPE
        if not detections:
            return LANDSCAPE

        people = [d for d in detections if d["label"] == "person" and d["score"] > s.person_score_threshold]
        if not people:
            return LANDSCAPE
        size = _image_size(image)
        area = max(self._normalised_area(d["box"], size) for d in people)
        logger.debug("Largest person covers %.1f%% of the image", area * 100.0)
        return FACE if area > s.face_area_threshold else LANDSCAPE

    def _regions(self, payload: Any, min_score: Optional[float]) -> List[DetectedRegion]:
        if not isinstance(payload, list):
            raise CollaboratorError("Invalid response format from segmentation", reason="unknown")
        regions: List[DetectedRegion] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            label = item.get("label") or "unknown"
            score = item.get("score")
            if min_score is not None and score is not None and float(score) < min_score:
                continue
            mask = item.get("mask")
            if not mask:
                logger.warning("No mask for region %r", label)
                continue
            try:
                bounds = bounding_box(decode_mask(mask))
            except DecodeError as exc:
                logger.warning("Dropping region %r: %s", label, exc)
                continue
            regions.append(
                DetectedRegion(
                    label=label,
                    mask=mask,
                    bounds=bounds,
                    score=float(score) if score is not None else None,
                )
            )
        return regions

    async def segment_face(self, image: bytes) -> List[DetectedRegion]:
        self._require_key()
        payload = await self._post_image(self._settings.face_parsing_model, image)
        return self._regions(payload, min_score=None)

    async def segment_panoptic(self, image: bytes) -> List[DetectedRegion]:
        self._require_key()
        payload = await self._post_image(self._settings.panoptic_model, image)
        return self._regions(payload, min_score=self._settings.panoptic_score_threshold)

    async def segment(self, image: bytes) -> SegmentationResult:
        image_type = await self.classify_image(image)
        if image_type == FACE:
            regions = await self.segment_face(image)
        else:
            regions = await self.segment_panoptic(image)
        logger.info("Segmentation found %d regions (%s mode)", len(regions), image_type)
        return SegmentationResult(regions=regions, image_type=image_type)


class InpaintingClient(_ServiceClient):
    """Image edit endpoint: square opaque PNG plus mask in, generated PNG out."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        super().__init__(
            s.openai_base_url,
            s.openai_api_key,
            s.request_timeout,
            limiter=limiter,
            retry=RetryPolicy(s.max_retries, s.retry_delay),
            transport=transport,
            sleep=sleep,
        )

    async def inpaint(self, image_png: bytes, mask_png: bytes, prompt: str, size: int) -> bytes:
        if not self._settings.has_openai_key:
            raise CollaboratorError("OpenAI API key is not configured", reason="auth")
        files = [
            ("image", ("image.png", image_png, "image/png")),
            ("mask", ("mask.png", mask_png, "image/png")),
        ]
        data = {"prompt": prompt, "n": "1", "size": f"{size}x{size}"}
        response = await self._call("POST", "/images/edits", data=data, files=files)
        try:
            entries = response.json().get("data") or []
        except (ValueError, AttributeError) as exc:
            raise CollaboratorError("Invalid response from the image edit endpoint", reason="unknown") from exc
        if not entries or not isinstance(entries[0], dict):
            raise CollaboratorError("Image edit response contains no image", reason="unknown")

        primary = entries[0]
        if primary.get("b64_json"):
            try:
                return base64.b64decode(primary["b64_json"])
            except ValueError as exc:
                raise CollaboratorError("Image edit returned malformed base64", reason="unknown") from exc
        url = primary.get("url")
        if not url:
            raise CollaboratorError("Image edit response contains no image", reason="unknown")
        return await self._download(url)

    async def _download(self, url: str) -> bytes:
        # The result host is not the API host, so no bearer token is sent.
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as plain:
            try:
                response = await plain.get(url)
            except httpx.HTTPError as exc:
                raise CollaboratorError(f"Downloading the inpainting result failed: {exc}", reason="network") from exc
        if response.is_error:
            raise CollaboratorError(
                f"Downloading the inpainting result returned {response.status_code}",
                reason="network",
                status_code=response.status_code,
            )
        return response.content


class PromptParserClient(_ServiceClient):
    """Turns a free-text request into region labels; never raises."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        super().__init__(
            s.openai_base_url,
            s.openai_api_key,
            s.request_timeout,
            limiter=limiter,
            retry=RetryPolicy(max_attempts=1),
            transport=transport,
        )

    @staticmethod
    def _system_prompt(available_labels: Sequence[str]) -> str:
        return (
            "You map requests about an image to segmentation labels.\n"
            f"Available labels: {', '.join(available_labels)}\n"
            "Common mappings: eyes -> l_eye, r_eye; brows -> l_brow, r_brow; ears -> l_ear, r_ear; "
            "lips or mouth -> mouth, u_lip, l_lip; face -> every facial part; head -> face plus hair.\n"
            'Reply with JSON only: {"labels": [...], "confidence": "high" | "medium" | "low"}'
        )

    async def parse(self, prompt: str, available_labels: Sequence[str]) -> Tuple[List[str], str]:
        if not self._settings.has_openai_key:
            logger.info("Prompt parser unavailable, using keyword matching")
            return [], "fallback"
        payload = {
            "model": self._settings.prompt_model,
            "messages": [
                {"role": "system", "content": self._system_prompt(available_labels)},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.3,
            "max_tokens": 200,
            "response_format": {"type": "json_object"},
        }
        try:
            response = await self._call("POST", "/chat/completions", json=payload)
            content = response.json()["choices"][0]["message"]["content"]
            result = json.loads(content)
        except CollaboratorError as exc:
            logger.warning("Prompt parser failed (%s), using keyword matching", exc.reason)
            return [], "fallback"
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Prompt parser returned an unexpected payload: %s", exc)
            return [], "fallback"

        labels = result.get("labels") if isinstance(result, dict) else None
        if not isinstance(labels, list):
            return [], "fallback"
        allowed = set(available_labels)
        valid = [l for l in labels if isinstance(l, str) and l in allowed]
        return valid, str(result.get("confidence") or "medium")
