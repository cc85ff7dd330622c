"""HTTP API tests — routes, status codes and error mapping, with xAI mocked."""

import json

import pytest
from httpx import AsyncClient

from studio.gateway.types import JobStatus, UpstreamResult
from studio.services.studio_service import StudioService

SECRET = "xai-abcdefghijklmnop-wxyz"


# ======================================================================
# Keys
# ======================================================================


@pytest.mark.asyncio
async def test_add_key_returns_masked_preview(client: AsyncClient):
    """The secret is write-only: responses carry only a masked preview."""
    response = await client.post("/api/v1/keys", json={"key": SECRET, "label": "main"})

    assert response.status_code == 201
    data = response.json()
    assert data["label"] == "main"
    assert data["key_preview"] == "xai-…wxyz"
    assert data["enabled"] is True
    assert data["health"] == "unknown"
    assert "key" not in data
    assert SECRET not in response.text


@pytest.mark.asyncio
async def test_add_duplicate_key_rejected(client: AsyncClient):
    await client.post("/api/v1/keys", json={"key": SECRET})

    response = await client.post("/api/v1/keys", json={"key": f"  {SECRET}  "})

    assert response.status_code == 400
    assert "already in the pool" in response.json()["detail"]


@pytest.mark.asyncio
async def test_list_keys_newest_first(client: AsyncClient):
    await client.post("/api/v1/keys", json={"key": "xai-first-key-000001", "label": "first"})
    await client.post("/api/v1/keys", json={"key": "xai-second-key-00002", "label": "second"})

    response = await client.get("/api/v1/keys")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["cursor"] == 0
    assert [item["label"] for item in data["items"]] == ["second", "first"]


@pytest.mark.asyncio
async def test_bulk_import_counts_skipped(client: AsyncClient):
    await client.post("/api/v1/keys", json={"key": "xai-existing-key-0001"})

    response = await client.post(
        "/api/v1/keys/bulk",
        json={"text": "alpha|xai-alpha-key-00001\nxai-existing-key-0001\n\nxai-gamma-key-00003\n"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["created"] == 2
    assert data["skipped"] == 1
    assert {item["label"] for item in data["items"]} == {"alpha", "xai-…0003"}


@pytest.mark.asyncio
async def test_toggle_and_remove_key(client: AsyncClient, studio: StudioService):
    key_id = (await client.post("/api/v1/keys", json={"key": SECRET})).json()["id"]

    toggled = await client.post(f"/api/v1/keys/{key_id}/toggle")
    assert toggled.status_code == 200
    assert toggled.json()["enabled"] is False

    removed = await client.delete(f"/api/v1/keys/{key_id}")
    assert removed.status_code == 200
    assert removed.json() == {"message": "API key removed"}
    assert len(studio.pool) == 0


@pytest.mark.asyncio
async def test_unknown_key_404(client: AsyncClient):
    response = await client.post("/api/v1/keys/nope/toggle")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_check_key(client: AsyncClient, upstream):
    """A credential check records health and model capabilities."""
    key_id = (await client.post("/api/v1/keys", json={"key": SECRET})).json()["id"]
    upstream.add("GET", "/v1/models", json={"data": [{"id": "grok-imagine-video"}, {"id": "grok-imagine-image"}]})

    response = await client.post(f"/api/v1/keys/{key_id}/check")

    assert response.status_code == 200
    data = response.json()
    assert data["health"] == "ok"
    assert data["has_video_model"] is True
    assert data["has_image_model"] is True
    assert data["last_checked_at"] is not None


@pytest.mark.asyncio
async def test_check_key_removed_mid_check_404(client: AsyncClient, studio: StudioService):
    """A key deleted while its check is in flight answers 404, not a server error."""
    key_id = (await client.post("/api/v1/keys", json={"key": SECRET})).json()["id"]

    async def check_credential(credential: str) -> UpstreamResult:
        studio.remove_key(key_id)
        return UpstreamResult(ok=True, status=200, data={"data": []})

    studio.health.check_credential = check_credential

    response = await client.post(f"/api/v1/keys/{key_id}/check")

    assert response.status_code == 404
    assert (await client.get("/api/v1/keys")).json()["total"] == 0


@pytest.mark.asyncio
async def test_check_all_keys(client: AsyncClient, upstream):
    await client.post("/api/v1/keys", json={"key": "xai-first-key-000001"})
    await client.post("/api/v1/keys", json={"key": "xai-second-key-00002"})
    upstream.add("GET", "/v1/models", status=401, json={"error": "Incorrect API key"})

    response = await client.post("/api/v1/keys/check")

    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["health"] for item in items] == ["invalid", "invalid"]
    assert items[0]["last_error"] == "Incorrect API key"
    assert len(upstream.calls("GET", "/v1/models")) == 2


# ======================================================================
# Videos
# ======================================================================


@pytest.mark.asyncio
async def test_start_video_without_keys_409(client: AsyncClient, upstream):
    response = await client.post("/api/v1/videos", json={"prompt": "a cat"})

    assert response.status_code == 409
    assert "No usable credential" in response.json()["detail"]
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_start_stop_resume_video(client: AsyncClient, upstream):
    """Submitted jobs become active; stop and resume move them between states."""
    await client.post("/api/v1/keys", json={"key": SECRET})
    upstream.add("POST", "/v1/videos/generations", json={"request_id": "req-1"})
    upstream.add("GET", "/v1/videos/req-1", status=202)

    response = await client.post(
        "/api/v1/videos",
        json={"prompt": "a cat surfing", "duration": 6, "aspect_ratio": "16:9", "image": {"url": "https://img/a.png"}},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["request_id"] == "req-1"
    assert data["status"] == "processing"
    assert data["active"] is True
    assert data["inputs"]["duration"] == 6
    assert data["inputs"]["image_url"] == "https://img/a.png"

    stopped = await client.post("/api/v1/videos/req-1/stop")
    assert stopped.status_code == 200
    assert stopped.json()["status"] == "stopped"

    # Only processing jobs can be stopped
    again = await client.post("/api/v1/videos/req-1/stop")
    assert again.status_code == 400

    resumed = await client.post("/api/v1/videos/req-1/resume")
    assert resumed.status_code == 200
    assert resumed.json()["status"] == "processing"

    listing = (await client.get("/api/v1/videos")).json()
    assert listing["total"] == 1
    assert listing["active_request_id"] == "req-1"

    cleared = await client.delete("/api/v1/videos")
    assert cleared.json() == {"cleared": 1}
    assert (await client.get("/api/v1/videos")).json()["active_request_id"] is None


@pytest.mark.asyncio
async def test_refresh_video_settles_job(client: AsyncClient, studio: StudioService, upstream):
    await client.post("/api/v1/keys", json={"key": SECRET})
    upstream.add("POST", "/v1/videos/generations", json={"request_id": "req-1"})
    upstream.add("GET", "/v1/videos/req-1", status=202)
    await client.post("/api/v1/videos", json={"prompt": "a cat"})
    await client.post("/api/v1/videos/req-1/stop")
    upstream.routes.pop(("GET", "/v1/videos/req-1"))
    upstream.add("GET", "/v1/videos/req-1", json={"status": "done", "video": {"url": "https://cdn/v.mp4"}})

    response = await client.post("/api/v1/videos/req-1/refresh")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["video_url"] == "https://cdn/v.mp4"
    assert studio.get_video("req-1").status == JobStatus.READY


@pytest.mark.asyncio
async def test_upstream_auth_failure_surfaces_status(client: AsyncClient, studio: StudioService, upstream):
    await client.post("/api/v1/keys", json={"key": SECRET})
    upstream.add("POST", "/v1/videos/generations", status=401, json={"error": "Incorrect API key"})

    response = await client.post("/api/v1/videos", json={"prompt": "a cat"})

    assert response.status_code == 401
    assert response.json() == {"detail": "Incorrect API key"}
    assert studio.list_videos() == ()
    assert studio.list_keys()[0].health.value == "invalid"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"prompt": "a cat", "duration": 20},
        {"prompt": "a cat", "resolution": "4k"},
        {"prompt": "   "},
        {"prompt": "make it night", "mode": "edit"},
    ],
)
async def test_start_video_validation(client: AsyncClient, upstream, payload):
    await client.post("/api/v1/keys", json={"key": SECRET})

    response = await client.post("/api/v1/videos", json=payload)

    assert response.status_code == 422
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_unknown_video_404(client: AsyncClient):
    assert (await client.get("/api/v1/videos/missing")).status_code == 404
    assert (await client.post("/api/v1/videos/missing/refresh")).status_code == 404


# ======================================================================
# Images
# ======================================================================


@pytest.mark.asyncio
async def test_generate_image(client: AsyncClient, upstream):
    await client.post("/api/v1/keys", json={"key": SECRET})
    upstream.add("POST", "/v1/images/generations", json={"data": [{"url": "https://img/1.png"}]})

    response = await client.post("/api/v1/images/generations", json={"prompt": "a fox", "aspect_ratio": "1:1"})

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "ready"
    assert data["images"] == ["https://img/1.png"]
    assert data["inputs"]["aspect_ratio"] == "1:1"

    listing = (await client.get("/api/v1/images")).json()
    assert listing["total"] == 1
    assert (await client.delete("/api/v1/images")).json() == {"cleared": 1}


@pytest.mark.asyncio
async def test_edit_image_from_url(client: AsyncClient, upstream):
    await client.post("/api/v1/keys", json={"key": SECRET})
    upstream.add("POST", "/v1/images/edits", json={"data": [{"url": "https://img/edited.png"}]})

    response = await client.post(
        "/api/v1/images/edits",
        json={"prompt": "add a hat", "image": {"url": "https://img/source.png"}},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["mode"] == "edit"
    assert data["inputs"]["image_source"] == "https://img/source.png"
    assert data["images"] == ["https://img/edited.png"]


@pytest.mark.asyncio
async def test_edit_image_requires_image(client: AsyncClient):
    response = await client.post("/api/v1/images/edits", json={"prompt": "add a hat"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_edit_uploaded_image(client: AsyncClient, upstream):
    """A multipart upload is forwarded as a data URI and remembered by file name."""
    await client.post("/api/v1/keys", json={"key": SECRET})
    upstream.add("POST", "/v1/images/edits", json={"data": [{"url": "https://img/edited.png"}]})

    response = await client.post(
        "/api/v1/images/edits/upload",
        data={"prompt": "add a hat", "response_format": "url"},
        files={"image": ("cat.png", b"\x89PNG\r\n\x1a\nfake", "image/png")},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["inputs"]["image_source"] == "upload:cat.png"
    assert data["images"] == ["https://img/edited.png"]

    sent = json.loads(upstream.calls("POST", "/v1/images/edits")[0].content)
    assert sent["image_url"].startswith("data:image/png;base64,")
    assert sent["image"] == {"url": sent["image_url"]}
    assert sent["response_format"] == "url"


@pytest.mark.asyncio
async def test_edit_uploaded_image_validation(client: AsyncClient, upstream):
    await client.post("/api/v1/keys", json={"key": SECRET})

    empty = await client.post(
        "/api/v1/images/edits/upload",
        data={"prompt": "add a hat"},
        files={"image": ("cat.png", b"", "image/png")},
    )
    no_prompt = await client.post(
        "/api/v1/images/edits/upload",
        data={"prompt": "  "},
        files={"image": ("cat.png", b"fake", "image/png")},
    )

    assert empty.status_code == 400
    assert no_prompt.status_code == 400
    assert upstream.requests == []


# ======================================================================
# Health / metrics
# ======================================================================


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    await client.post("/api/v1/keys", json={"key": SECRET})

    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "keys": 1, "active_request_id": None, "default_key": False}


@pytest.mark.asyncio
async def test_metrics_exposed(client: AsyncClient):
    await client.get("/api/v1/videos")

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
