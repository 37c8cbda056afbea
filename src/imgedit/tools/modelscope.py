"""Async client for the ModelScope inference API.

Wraps: vision chat completions (OCR, description, object location) and the
asynchronous image generation/edit jobs, which are submitted once and then
polled by :class:`~imgedit.tasks.TaskPoller` until they reach a terminal state.

Unlike the fail-open tool clients, every method here raises: transport
failures as :class:`TransportError`, remote-reported failures as
:class:`RemoteTaskError`.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from ..tasks import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT, TaskPoller, TaskResult
from .errors import ConfigurationError, RemoteTaskError, TransportError, is_retryable_status

DEFAULT_API_ROOT = "https://api-inference.modelscope.cn"
DEFAULT_VISION_MODEL = "Qwen/Qwen3-VL-8B-Instruct"
DEFAULT_GENERATION_MODEL = "Tongyi-MAI/Z-Image-Turbo"
DEFAULT_EDIT_MODEL = "Qwen/Qwen-Image-Edit-2511"

OCR_PROMPT = (
    "Recognize and extract all text in this image, keeping the original layout and "
    "structure. Output only the recognized text, without any explanation."
)
_DESCRIBE_PROMPT = (
    "Analyse this image and reply in JSON with the following fields:\n"
    "1. name: a short name for the image (at most 10 words, naming the main subject)\n"
    "2. description: a detailed description (main objects, scene, colors, mood)\n\n"
)
_DESCRIBE_SUFFIX = (
    "Return only the JSON, with no other text. Example:\n"
    '{"name": "campus anime scene", "description": "This is a ..."}'
)
_LOCATE_PROMPT = (
    "Locate every instance of \"{name}\" in this image. Reply with a JSON array where each "
    'element is {{"label": "{name}", "bbox_2d": [x1, y1, x2, y2]}} using coordinates '
    "normalized to 0-999. Return only the JSON."
)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def build_description_prompt(focus: str | None = None) -> str:
    if focus and focus.strip():
        return f"{_DESCRIBE_PROMPT}Pay special attention to: {focus.strip()}\n\n{_DESCRIBE_SUFFIX}"
    return f"{_DESCRIBE_PROMPT}{_DESCRIBE_SUFFIX}"


@dataclass(frozen=True)
class BoundingBox:
    x1: float
    y1: float
    x2: float
    y2: float


@dataclass(frozen=True)
class GenerateImageOptions:
    prompt: str
    negative_prompt: str | None = None
    size: str | None = None
    steps: int | None = None


def parse_bounding_boxes(raw: str) -> list[BoundingBox]:
    """Parse the vision model's box list, skipping malformed entries."""
    text = raw.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []
    boxes: list[BoundingBox] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        coords = item.get("bbox_2d", item.get("bbox"))
        if not isinstance(coords, list) or len(coords) != 4:
            continue
        try:
            x1, y1, x2, y2 = (float(c) for c in coords)
        except (TypeError, ValueError):
            continue
        boxes.append(BoundingBox(x1, y1, x2, y2))
    return boxes


class ModelScopeClient:
    """Async client for ModelScope's OpenAI-compatible and async-job endpoints.

    Parameters
    ----------
    api_key:
        Bearer token. A blank key raises :class:`ConfigurationError` on the
        first call, not at construction.
    transport:
        Optional httpx transport, used by tests to stub the service.
    sleep / clock:
        Passed through to the :class:`TaskPoller`.
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_root: str = DEFAULT_API_ROOT,
        vision_model: str = DEFAULT_VISION_MODEL,
        generation_model: str = DEFAULT_GENERATION_MODEL,
        edit_model: str = DEFAULT_EDIT_MODEL,
        timeout: float = 60.0,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        task_timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_root = api_root.rstrip("/")
        self.vision_model = vision_model
        self.generation_model = generation_model
        self.edit_model = edit_model
        self.timeout = timeout
        self.transport = transport
        self.log = logger or logging.getLogger("imgedit.modelscope")
        self.poller = TaskPoller(
            self.task_status,
            poll_interval=poll_interval,
            timeout=task_timeout,
            sleep=sleep,
            clock=clock,
            logger=self.log.getChild("tasks"),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        if not self.api_key or not self.api_key.strip():
            raise ConfigurationError("missing MODELSCOPE_API_KEY")
        headers = {"Authorization": f"Bearer {self.api_key.strip()}"}
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        request_headers = self._headers(headers)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method, f"{self.api_root}{path}", headers=request_headers, **kwargs
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            body = exc.response.text[:300]
            raise TransportError(
                f"ModelScope request failed: HTTP {status} on {path}: {body}",
                status_code=status,
                retryable=is_retryable_status(status),
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"ModelScope network error on {path}: {exc}", retryable=True) from exc
        except ValueError as exc:
            raise TransportError(f"ModelScope returned invalid JSON on {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise TransportError(f"ModelScope returned unexpected payload on {path}")
        return payload

    # ------------------------------------------------------------------
    # Vision chat completions
    # ------------------------------------------------------------------

    async def _vision_chat(self, prompt: str, image_url: str) -> str:
        payload = await self._request(
            "POST",
            "/v1/chat/completions",
            json={
                "model": self.vision_model,
                "messages": [{"role": "user", "content": [
                    {"type": "text",      "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ]}],
                "stream": False,
            },
        )
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            raise RemoteTaskError(str(error.get("code") or ""), str(error["message"]))
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str):
            raise RemoteTaskError("empty_response", "no message content returned")
        return content.strip()

    async def extract_text(self, image_url: str) -> str:
        """OCR *image_url* and return the recognized text."""
        return await self._vision_chat(OCR_PROMPT, image_url)

    async def describe_image(self, image_url: str, focus: str | None = None) -> tuple[str, str]:
        """Return ``(name, description)`` for *image_url*.

        When the reply is not the requested JSON, the raw reply becomes the
        description under the name ``fetched-image``.
        """
        raw = await self._vision_chat(build_description_prompt(focus), image_url)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            name = str(parsed.get("name") or "").strip()
            description = str(parsed.get("description") or "").strip()
            if name and description:
                return name, description
        return "fetched-image", raw

    async def locate_object(self, image_url: str, object_name: str) -> list[BoundingBox]:
        raw = await self._vision_chat(_LOCATE_PROMPT.format(name=object_name), image_url)
        return parse_bounding_boxes(raw)

    # ------------------------------------------------------------------
    # Async image jobs
    # ------------------------------------------------------------------

    async def _submit(self, body: dict[str, Any]) -> str:
        self.log.debug("submitting image job: %s", json.dumps(body, ensure_ascii=False))
        payload = await self._request(
            "POST",
            "/v1/images/generations",
            headers={"X-ModelScope-Async-Mode": "true"},
            json=body,
        )
        task_id = payload.get("task_id")
        if not task_id:
            raise RemoteTaskError("missing_task_id", f"no task_id in response: {payload}")
        self.log.info("submitted %s job, task_id=%s", body.get("model"), task_id)
        return str(task_id)

    async def task_status(self, task_id: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"/v1/tasks/{task_id}",
            headers={"X-ModelScope-Task-Type": "image_generation"},
        )

    async def poll_task(self, task_id: str) -> TaskResult:
        return await self.poller.poll(task_id)

    async def submit_generation(self, options: GenerateImageOptions) -> str:
        body: dict[str, Any] = {"model": self.generation_model, "prompt": options.prompt}
        if options.negative_prompt and options.negative_prompt.strip():
            body["negative_prompt"] = options.negative_prompt
        if options.size:
            body["size"] = options.size
        if options.steps is not None:
            body["steps"] = options.steps
        return await self._submit(body)

    async def submit_edit(
        self,
        image_url: str,
        prompt: str,
        size: str | None = None,
        steps: int | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "model": self.edit_model,
            "image_url": [image_url],
            "prompt": prompt,
        }
        if size:
            body["size"] = size
        if steps is not None:
            body["steps"] = steps
        return await self._submit(body)

    async def generate_image(self, options: GenerateImageOptions) -> TaskResult:
        task_id = await self.submit_generation(options)
        return await self.poll_task(task_id)

    async def edit_image(
        self,
        image_url: str,
        prompt: str,
        size: str | None = None,
        steps: int | None = None,
    ) -> TaskResult:
        task_id = await self.submit_edit(image_url, prompt, size, steps)
        return await self.poll_task(task_id)
