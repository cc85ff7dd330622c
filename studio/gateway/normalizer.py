"""Response Normalizer — classifies arbitrary upstream JSON.

The upstream schema is not fixed across endpoints and API versions, so every
function here inspects the payload heuristically:
  - State token: first non-empty of status / state / phase / stage
  - Error message: error (string) / message / error.message / error.detail
  - Video URL: priority top-level fields, then a bounded deep scan
  - Image URLs: data URIs, http(s) URLs and base64 blobs, scored and deduplicated

All functions are pure: no mutation, no I/O, identical output for identical
input. Deep scans are depth-limited and keep an identity-keyed visited set so
cyclic or heavily shared structures are walked once.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)
_DATA_IMAGE_URI = re.compile(r"^data:image/", re.IGNORECASE)
_DATA_URI_PREFIX = re.compile(r"^data:.*;base64,")
_BASE64 = re.compile(r"^[a-z0-9+/=]+$", re.IGNORECASE)
_IMAGE_EXTENSION = re.compile(r"\.(png|jpe?g|webp|gif)(\?|$)", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

STATE_FIELDS = ("status", "state", "phase", "stage")
VIDEO_URL_FIELDS = ("url", "video_url", "output_url", "download_url", "signed_url")

FAILURE_STATES = frozenset({"failed", "error", "errored", "canceled", "cancelled"})
SUCCESS_STATES = frozenset({"succeeded", "success", "completed", "complete", "done", "ready"})

VIDEO_SCAN_MAX_DEPTH = 5
IMAGE_SCAN_MAX_DEPTH = 6
MIN_BASE64_LENGTH = 200


# ---------------------------------------------------------------------------
# State & error extraction
# ---------------------------------------------------------------------------


def normalize_state(value: str) -> str:
    return value.strip().lower()


def is_failure_state(state: str | None) -> bool:
    return bool(state) and normalize_state(state) in FAILURE_STATES


def is_success_state(state: str | None) -> bool:
    return bool(state) and normalize_state(state) in SUCCESS_STATES


def extract_state(payload: Any) -> str | None:
    """Return the first non-empty state token, trimmed, or None."""
    if not isinstance(payload, dict):
        return None
    for name in STATE_FIELDS:
        candidate = payload.get(name)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def extract_error_message(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        return error

    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        return message

    if isinstance(error, dict):
        for name in ("message", "detail"):
            nested = error.get(name)
            if isinstance(nested, str) and nested.strip():
                return nested

    return None


def stringify_error(value: Any) -> str:
    """Render any error value as a single human-readable string."""
    if value is None or value == "" or value is False:
        return "Unknown error"
    if isinstance(value, str):
        return value
    if isinstance(value, BaseException):
        return str(value) or type(value).__name__
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def describe_upstream_error(data: Any, status_code: int) -> str:
    """Message for a failed upstream response: the extracted message when there is one."""
    message = extract_error_message(data)
    if message:
        return message
    if data is None or data == "":
        return f"Upstream request failed with HTTP {status_code}"
    return stringify_error(data)


# ---------------------------------------------------------------------------
# Video URL extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _UrlCandidate:
    key_hint: str
    url: str


def _http_url(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    url = value.strip()
    return url if _HTTP_URL.match(url) else None


def _collect_video_urls(payload: Any) -> list[_UrlCandidate]:
    candidates: list[_UrlCandidate] = []
    seen: set[int] = set()

    def add(key_hint: str, value: Any) -> None:
        url = _http_url(value)
        if url:
            candidates.append(_UrlCandidate(key_hint, url))

    def walk(value: Any, key_hint: str, depth: int) -> None:
        if depth > VIDEO_SCAN_MAX_DEPTH or not value:
            return
        if isinstance(value, str):
            add(key_hint, value)
            return
        if not isinstance(value, (dict, list)):
            return
        if id(value) in seen:
            return
        seen.add(id(value))

        if isinstance(value, list):
            for item in value:
                walk(item, key_hint, depth + 1)
            return

        for key, child in value.items():
            next_hint = key if "url" in str(key).lower() else key_hint
            if isinstance(child, str):
                add(next_hint, child)
            else:
                walk(child, next_hint, depth + 1)

    if isinstance(payload, dict):
        for name in VIDEO_URL_FIELDS:
            add(name, payload.get(name))

    walk(payload, "", 0)
    return candidates


def _pick_video_url(candidates: list[_UrlCandidate]) -> str | None:
    if not candidates:
        return None
    for name in VIDEO_URL_FIELDS:
        for candidate in candidates:
            if candidate.key_hint == name:
                return candidate.url
    for candidate in candidates:
        if ".mp4" in candidate.url.lower():
            return candidate.url
    return candidates[0].url


def extract_video_url(payload: Any) -> str | None:
    """Find the result video URL in a status payload.

    Candidates are gathered from the priority top-level fields first, then
    from a deep scan tagging each URL with its nearest ``*url*`` key. URLs
    with a still-image extension only win when nothing else was found, so a
    thumbnail under ``url`` never shadows the video itself.
    """
    candidates = _collect_video_urls(payload)
    videos = [c for c in candidates if not _IMAGE_EXTENSION.search(c.url)]
    return _pick_video_url(videos or candidates)


# ---------------------------------------------------------------------------
# Image URL extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _ImageCandidate:
    key_hint: str
    value: str
    from_base64: bool = False  # a bare base64 blob wrapped into a data URI


def _image_candidate(key_hint: str, value: Any) -> _ImageCandidate | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    if _DATA_IMAGE_URI.match(trimmed) or _HTTP_URL.match(trimmed):
        return _ImageCandidate(key_hint, trimmed)

    hint = key_hint.lower()
    if "b64" in hint or "base64" in hint:
        cleaned = _DATA_URI_PREFIX.sub("", trimmed)
        if _BASE64.match(cleaned) and len(cleaned) > MIN_BASE64_LENGTH:
            return _ImageCandidate(key_hint, f"data:image/png;base64,{cleaned}", from_base64=True)

    return None


def _score_image(candidate: _ImageCandidate) -> int:
    hint = candidate.key_hint.lower()
    score = 0
    if not candidate.from_base64 and candidate.value.startswith("data:image/"):
        score += 3
    if _IMAGE_EXTENSION.search(candidate.value):
        score += 4
    if "b64" in hint or "base64" in hint:
        score += 2
    if "image" in hint:
        score += 1
    if hint == "url":
        score += 1
    return score


def extract_image_urls(payload: Any) -> list[str]:
    """Collect every displayable image in a generation payload, best first.

    The caller truncates to the number of images it keeps.
    """
    candidates: list[_ImageCandidate] = []
    seen: set[int] = set()

    def add(key_hint: str, value: Any) -> None:
        candidate = _image_candidate(key_hint, value)
        if candidate:
            candidates.append(candidate)

    def walk(value: Any, key_hint: str, depth: int) -> None:
        if depth > IMAGE_SCAN_MAX_DEPTH or not value:
            return
        if isinstance(value, str):
            add(key_hint, value)
            return
        if not isinstance(value, (dict, list)):
            return
        if id(value) in seen:
            return
        seen.add(id(value))

        if isinstance(value, list):
            for item in value:
                walk(item, key_hint, depth + 1)
            return

        for key, child in value.items():
            add(str(key), child)
            walk(child, str(key), depth + 1)

    # Known container shapes
    if isinstance(payload, dict):
        add("url", payload.get("url"))
        for container in ("data", "images"):
            items = payload.get(container)
            if not isinstance(items, list):
                continue
            for item in items:
                if isinstance(item, dict):
                    add("url", item.get("url"))
                    add("b64_json", item.get("b64_json"))
                elif container == "images":
                    add("image", item)

    walk(payload, "", 0)

    # sorted() is stable, so equal scores keep discovery order
    ranked = sorted(candidates, key=_score_image, reverse=True)
    unique: list[str] = []
    seen_values: set[str] = set()
    for candidate in ranked:
        if candidate.value in seen_values:
            continue
        seen_values.add(candidate.value)
        unique.append(candidate.value)
    return unique


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


def extract_model_ids(payload: Any) -> list[str]:
    """Model ids from a ``/v1/models`` listing (``{"data": [{"id": ...}]}``)."""
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        return []
    ids: list[str] = []
    for item in payload["data"]:
        if isinstance(item, dict):
            model_id = item.get("id")
            if isinstance(model_id, str) and model_id:
                ids.append(model_id)
    return ids


def normalize_image_source(value: str) -> str:
    """Accept an http(s) URL, a data URI, or raw base64 as an image edit source."""
    trimmed = value.strip()
    if not trimmed:
        return trimmed
    if _HTTP_URL.match(trimmed) or _DATA_IMAGE_URI.match(trimmed):
        return trimmed

    compact = _WHITESPACE.sub("", trimmed)
    if _BASE64.match(compact) and len(compact) > MIN_BASE64_LENGTH:
        return f"data:image/png;base64,{compact}"

    return trimmed


def is_http_url(value: str) -> bool:
    return bool(_HTTP_URL.match(value))


def mask_key(value: str) -> str:
    trimmed = value.strip()
    if len(trimmed) <= 10:
        return "••••••••"
    return f"{trimmed[:4]}…{trimmed[-4:]}"
