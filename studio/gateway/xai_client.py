"""xAI upstream client — single request/response round trips.

Every call returns an UpstreamResult (ok, status, data) instead of raising
on HTTP errors: classifying failures is the Dispatcher's and the Polling
Engine's job. Only network-level failures raise (TransportError).

Endpoints:
  - POST /v1/videos/generations, /v1/videos/edits   → {"request_id": ...}
  - GET  /v1/videos/{request_id}                     → 202 while working
  - POST /v1/images/generations, /v1/images/edits
  - GET  /v1/models                                  → credential health check
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

from studio.core.config import settings
from studio.core.exceptions import TransportError
from studio.gateway.types import UpstreamResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.x.ai"

VIDEO_GENERATE_PATH = "/v1/videos/generations"
VIDEO_EDIT_PATH = "/v1/videos/edits"
IMAGE_GENERATE_PATH = "/v1/images/generations"
IMAGE_EDIT_PATH = "/v1/images/edits"
MODELS_PATH = "/v1/models"


def normalize_base_url(value: str | None) -> str:
    """Strip trailing slashes and a pasted ``/v1`` suffix (paths already carry it)."""
    trimmed = (value or "").rstrip("/")
    if not trimmed:
        return DEFAULT_BASE_URL
    if trimmed.endswith("/v1"):
        return trimmed[:-3]
    return trimmed


def parse_body(text: str) -> Any:
    """None for an empty body, parsed JSON when parseable, else the raw text."""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class XaiClient:
    """Thin async client for the xAI REST API.

    The httpx client is created lazily and shared by every call; pass
    ``http_client`` to inject a preconfigured one (tests use MockTransport).
    """

    def __init__(
        self,
        base_url: str | None = None,
        default_api_key: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = normalize_base_url(base_url if base_url is not None else settings.xai_base_url)
        self.default_api_key = default_api_key if default_api_key is not None else settings.xai_api_key
        self.timeout = timeout or settings.xai_timeout_seconds
        self._client = http_client
        self._own_client = http_client is None

    @property
    def has_default_key(self) -> bool:
        return bool(self.default_api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._own_client:
            await self._client.aclose()
            self._client = None

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: dict | None = None,
        api_key: str | None = None,
    ) -> UpstreamResult:
        key = (api_key or "").strip() or self.default_api_key
        if not key:
            raise TransportError("Missing xAI API key. Set XAI_API_KEY or add a key to the pool.")

        url = f"{self.base_url}{path if path.startswith('/') else '/' + path}"
        headers = {
            "Authorization": f"Bearer {key}",
            "Accept": "application/json",
        }

        try:
            resp = await self._get_client().request(method, url, json=payload, headers=headers)
            text = resp.text
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout after {self.timeout}s calling {path}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"xAI request failed: {e}") from e

        logger.debug("%s %s → %d", method, path, resp.status_code)
        return UpstreamResult(ok=resp.is_success, status=resp.status_code, data=parse_body(text))

    async def submit(self, endpoint: str, payload: dict, credential: str | None) -> UpstreamResult:
        return await self.request_json("POST", endpoint, payload=payload, api_key=credential)

    async def query_status(self, request_id: str, credential: str | None) -> UpstreamResult:
        return await self.request_json("GET", f"/v1/videos/{quote(request_id, safe='')}", api_key=credential)

    async def check_credential(self, credential: str) -> UpstreamResult:
        return await self.request_json("GET", MODELS_PATH, api_key=credential)
