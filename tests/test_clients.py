from __future__ import annotations

import base64
import json
import unittest

import httpx
import numpy as np

from segment_art.clients import (
    FACE,
    LANDSCAPE,
    InpaintingClient,
    PromptParserClient,
    SegmentationClient,
    classify_error,
)
from segment_art.errors import CollaboratorError
from segment_art.io import encode_png, encode_png_base64
from segment_art.ratelimit import RateLimiter
from segment_art.settings import Settings

SETTINGS = Settings(
    hf_api_key="hf_test",
    hf_base_url="https://hf.test/models",
    openai_api_key="sk-test",
    openai_base_url="https://oa.test/v1",
)
NO_KEYS = Settings(hf_base_url="https://hf.test/models", openai_base_url="https://oa.test/v1")


def _png(w: int = 100, h: int = 100) -> bytes:
    return encode_png(np.full((h, w, 4), 200, dtype=np.uint8))


class _Recorder:
    """MockTransport handler that replays canned responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class _Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ClassifyErrorTests(unittest.TestCase):
    def test_text_then_status(self) -> None:
        cases = [
            (500, "Model facebook/detr is currently loading", "model_loading"),
            (500, "Rate limit reached for requests", "rate_limit"),
            (400, "You exceeded your current quota", "quota"),
            (400, "Your request was rejected: content_policy_violation", "policy"),
            (400, "Invalid API key provided", "auth"),
            (503, "", "model_loading"),
            (429, "", "rate_limit"),
            (402, "", "quota"),
            (401, "", "auth"),
            (403, "", "auth"),
            (500, "boom", "unknown"),
            (None, "", "unknown"),
        ]
        for status, text, expected in cases:
            with self.subTest(status=status, text=text):
                self.assertEqual(classify_error(status, text), expected)


class SegmentationClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, handler, settings=SETTINGS) -> SegmentationClient:
        self.sleeper = _Sleeper()
        client = SegmentationClient(settings, transport=httpx.MockTransport(handler), sleep=self.sleeper)
        self.addAsyncCleanup(client.close)
        return client

    async def test_model_loading_is_retried_with_fixed_delay(self) -> None:
        handler = _Recorder(httpx.Response(503, json={"error": "Model is currently loading"}))
        client = self._client(handler)
        with self.assertRaises(CollaboratorError) as ctx:
            await client.segment_face(_png())
        self.assertEqual(ctx.exception.reason, "model_loading")
        self.assertEqual(len(handler.requests), 3)
        self.assertEqual(self.sleeper.delays, [1.0, 1.0])

    async def test_auth_errors_are_not_retried(self) -> None:
        handler = _Recorder(httpx.Response(401, json={"error": "Invalid credentials in Authorization header"}))
        client = self._client(handler)
        with self.assertRaises(CollaboratorError) as ctx:
            await client.segment_panoptic(_png())
        self.assertEqual(ctx.exception.reason, "auth")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(len(handler.requests), 1)
        self.assertEqual(self.sleeper.delays, [])

    async def test_request_carries_key_and_raw_bytes(self) -> None:
        handler = _Recorder(httpx.Response(200, json=[]))
        client = self._client(handler)
        payload = _png()
        await client.segment_face(payload)
        request = handler.requests[0]
        self.assertEqual(request.url.path, "/models/jonathandinu/face-parsing")
        self.assertEqual(request.headers["Authorization"], "Bearer hf_test")
        self.assertEqual(request.headers["Content-Type"], "application/octet-stream")
        self.assertEqual(request.content, payload)

    async def test_classify_large_person_as_face(self) -> None:
        detections = [
            {"label": "person", "score": 0.95, "box": {"xmin": 10, "ymin": 10, "xmax": 80, "ymax": 90}},
            {"label": "dog", "score": 0.99, "box": {"xmin": 0, "ymin": 0, "xmax": 100, "ymax": 100}},
        ]
        client = self._client(_Recorder(httpx.Response(200, json=detections)))
        self.assertEqual(await client.classify_image(_png()), FACE)

    async def test_classify_small_or_unsure_person_as_landscape(self) -> None:
        detections = [
            {"label": "person", "score": 0.95, "box": {"xmin": 0, "ymin": 0, "xmax": 30, "ymax": 30}},
            {"label": "person", "score": 0.5, "box": {"xmin": 0, "ymin": 0, "xmax": 100, "ymax": 100}},
        ]
        client = self._client(_Recorder(httpx.Response(200, json=detections)))
        self.assertEqual(await client.classify_image(_png()), LANDSCAPE)

    async def test_classify_without_key_skips_the_network(self) -> None:
        handler = _Recorder(httpx.Response(200, json=[]))
        client = self._client(handler, settings=NO_KEYS)
        self.assertEqual(await client.classify_image(_png()), LANDSCAPE)
        self.assertEqual(handler.requests, [])

    async def test_classify_gives_up_after_two_loading_attempts(self) -> None:
        handler = _Recorder(httpx.Response(503, json={"error": "Model is currently loading"}))
        client = self._client(handler)
        self.assertEqual(await client.classify_image(_png()), LANDSCAPE)
        self.assertEqual(len(handler.requests), 2)
        self.assertEqual(self.sleeper.delays, [1.0])

    async def test_panoptic_filters_scores_and_missing_masks(self) -> None:
        mask = np.zeros((10, 10), dtype=np.uint8)
        mask[2:5, 4:8] = 255
        payload = [
            {"label": "sky", "score": 0.9, "mask": encode_png_base64(mask)},
            {"label": "tree", "score": 0.3, "mask": encode_png_base64(mask)},
            {"label": "road", "score": 0.8},
            {"label": "wall", "score": 0.7, "mask": "not an image"},
        ]
        client = self._client(_Recorder(httpx.Response(200, json=payload)))
        regions = await client.segment_panoptic(_png())
        self.assertEqual([r.label for r in regions], ["sky"])
        bounds = regions[0].bounds
        self.assertAlmostEqual(bounds.xmin, 0.4)
        self.assertAlmostEqual(bounds.ymin, 0.2)
        self.assertAlmostEqual(bounds.xmax, 0.7)
        self.assertAlmostEqual(bounds.ymax, 0.4)

    async def test_segment_dispatches_on_image_type(self) -> None:
        mask = encode_png_base64(np.full((4, 4), 255, dtype=np.uint8))

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("detr-resnet-50"):
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[{"label": "sky", "score": 0.9, "mask": mask}])

        client = self._client(handler)
        result = await client.segment(_png())
        self.assertEqual(result.image_type, LANDSCAPE)
        self.assertEqual([r.label for r in result.regions], ["sky"])

    async def test_missing_key_is_an_auth_error(self) -> None:
        client = self._client(_Recorder(httpx.Response(200, json=[])), settings=NO_KEYS)
        with self.assertRaises(CollaboratorError) as ctx:
            await client.segment_face(_png())
        self.assertEqual(ctx.exception.reason, "auth")


class InpaintingClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, handler, settings=SETTINGS) -> InpaintingClient:
        client = InpaintingClient(settings, transport=httpx.MockTransport(handler), sleep=_Sleeper())
        self.addAsyncCleanup(client.close)
        return client

    async def test_base64_result(self) -> None:
        generated = _png(256, 256)
        handler = _Recorder(
            httpx.Response(200, json={"data": [{"b64_json": base64.b64encode(generated).decode("ascii")}]})
        )
        client = self._client(handler)
        out = await client.inpaint(b"image-bytes", b"mask-bytes", "green grass", 256)
        self.assertEqual(out, generated)

        request = handler.requests[0]
        self.assertEqual(request.url.path, "/v1/images/edits")
        self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
        self.assertIn(b"256x256", request.content)
        self.assertIn(b"green grass", request.content)
        self.assertIn(b"mask-bytes", request.content)

    async def test_url_result_is_downloaded_without_the_key(self) -> None:
        generated = _png(512, 512)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "cdn.test":
                self.assertNotIn("Authorization", request.headers)
                return httpx.Response(200, content=generated)
            return httpx.Response(200, json={"data": [{"url": "https://cdn.test/result.png"}]})

        client = self._client(handler)
        self.assertEqual(await client.inpaint(b"i", b"m", "sky", 512), generated)

    async def test_quota_error_surfaces(self) -> None:
        handler = _Recorder(httpx.Response(400, json={"error": {"message": "Billing hard limit has been reached"}}))
        client = self._client(handler)
        with self.assertRaises(CollaboratorError) as ctx:
            await client.inpaint(b"i", b"m", "sky", 256)
        self.assertEqual(ctx.exception.reason, "quota")
        self.assertEqual(len(handler.requests), 1)

    async def test_empty_response_is_an_error(self) -> None:
        client = self._client(_Recorder(httpx.Response(200, json={"data": []})))
        with self.assertRaises(CollaboratorError):
            await client.inpaint(b"i", b"m", "sky", 256)


class PromptParserClientTests(unittest.IsolatedAsyncioTestCase):
    LABELS = ["skin", "l_eye", "r_eye", "nose"]

    def _client(self, handler, settings=SETTINGS) -> PromptParserClient:
        client = PromptParserClient(settings, transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.close)
        return client

    async def test_without_key_falls_back(self) -> None:
        handler = _Recorder(httpx.Response(200, json={}))
        client = self._client(handler, settings=NO_KEYS)
        self.assertEqual(await client.parse("the eyes", self.LABELS), ([], "fallback"))
        self.assertEqual(handler.requests, [])

    async def test_service_error_falls_back_without_retry(self) -> None:
        handler = _Recorder(httpx.Response(500, json={"error": "boom"}))
        client = self._client(handler)
        self.assertEqual(await client.parse("the eyes", self.LABELS), ([], "fallback"))
        self.assertEqual(len(handler.requests), 1)

    async def test_labels_are_filtered_to_known_ones(self) -> None:
        content = json.dumps({"labels": ["l_eye", "r_eye", "eyelash"], "confidence": "high"})
        handler = _Recorder(httpx.Response(200, json={"choices": [{"message": {"content": content}}]}))
        client = self._client(handler)
        self.assertEqual(await client.parse("the eyes", self.LABELS), (["l_eye", "r_eye"], "high"))

        body = json.loads(handler.requests[0].content)
        self.assertEqual(body["response_format"], {"type": "json_object"})
        self.assertEqual(body["messages"][1]["content"], "the eyes")

    async def test_malformed_content_falls_back(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "eyes, probably"}}]}))
        client = self._client(handler)
        self.assertEqual(await client.parse("the eyes", self.LABELS), ([], "fallback"))


class RateLimiterTests(unittest.IsolatedAsyncioTestCase):
    async def test_acquire_waits_for_the_oldest_slot(self) -> None:
        now = [0.0]
        delays = []

        async def sleep(delay: float) -> None:
            delays.append(delay)
            now[0] += delay

        limiter = RateLimiter(max_requests=2, window=10.0, clock=lambda: now[0], sleep=sleep)
        await limiter.acquire()
        await limiter.acquire()
        self.assertEqual(limiter.in_window, 2)
        self.assertFalse(limiter.try_acquire())
        await limiter.acquire()
        self.assertEqual(delays, [10.0])
        self.assertEqual(now[0], 10.0)
        self.assertEqual(limiter.in_window, 1)

    async def test_release_returns_a_slot(self) -> None:
        limiter = RateLimiter(max_requests=1, window=5.0, clock=lambda: 0.0)
        self.assertTrue(limiter.try_acquire())
        self.assertEqual(limiter.wait_time(), 5.0)
        limiter.release()
        self.assertTrue(limiter.try_acquire())

    def test_rejects_zero_capacity(self) -> None:
        with self.assertRaises(ValueError):
            RateLimiter(max_requests=0)


if __name__ == "__main__":
    unittest.main()
