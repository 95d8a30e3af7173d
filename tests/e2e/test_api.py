import io
import json
from unittest.mock import AsyncMock

import pytest
from PIL import Image

from src.main import FORM_OPERATIONS, app
from src.api.dependencies import get_provider_builder, get_provider_factory, get_tile_job_enqueuer


@pytest.fixture
def stored_objects(memory_provider):
    app.dependency_overrides[get_provider_factory] = lambda: (lambda ref: memory_provider)
    app.dependency_overrides[get_provider_builder] = lambda: (lambda kind, **kwargs: memory_provider)
    return memory_provider.objects


@pytest.fixture
def enqueue():
    mock = AsyncMock()
    app.dependency_overrides[get_tile_job_enqueuer] = lambda: mock
    return mock


@pytest.mark.asyncio
async def test_root_reports_versions(client):
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert set(data) == {"name", "version", "pillow"}


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["uptime"] >= 0
    assert data["cpus"] >= 1
    assert data["threads"] >= 1
    assert "completedGCCycles" in data
    assert "maxResidentMemory" in data


@pytest.mark.asyncio
async def test_resize_multipart_upload(client, png_bytes):
    response = await client.post(
        "/api/v1/images/resize?width=32&height=24",
        files={"file": ("photo.png", png_bytes, "image/png")},
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert int(response.headers["content-length"]) == len(response.content)
    assert Image.open(io.BytesIO(response.content)).size == (32, 24)


@pytest.mark.asyncio
async def test_flip_raw_body(client, jpeg_bytes):
    response = await client.post(
        "/api/v1/images/flip",
        content=jpeg_bytes,
        headers={"Content-Type": "image/jpeg"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"


@pytest.mark.asyncio
async def test_auto_type_negotiates_and_varies(client, png_bytes):
    response = await client.post(
        "/api/v1/images/resize?width=16&type=auto",
        content=png_bytes,
        headers={"Accept": "image/webp,image/*;q=0.8"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/webp"
    assert response.headers["vary"] == "Accept"


@pytest.mark.asyncio
async def test_auto_type_failure_still_varies(client, png_bytes):
    response = await client.post(
        "/api/v1/images/resize?type=auto",
        content=png_bytes,
        headers={"Accept": "image/png"},
    )
    assert response.status_code == 400
    assert response.headers["vary"] == "Accept"
    assert response.json()["error"].startswith("Error while processing the image")


@pytest.mark.asyncio
async def test_missing_source(client):
    response = await client.post("/api/v1/images/resize?width=10")
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == 400
    assert "missing or invalid params" in body["error"]


@pytest.mark.asyncio
async def test_unsupported_media_type(client):
    response = await client.post("/api/v1/images/resize?width=10", content=b"definitely not an image")
    assert response.status_code == 415


@pytest.mark.asyncio
async def test_invalid_output_type(client, png_bytes):
    response = await client.post("/api/v1/images/convert?type=psd", content=png_bytes)
    assert response.status_code == 400
    assert response.json()["details"]["type"] == "psd"


@pytest.mark.asyncio
async def test_invalid_parameters(client, png_bytes):
    response = await client.post("/api/v1/images/resize?width=-5", content=png_bytes)
    assert response.status_code == 400
    assert response.json()["error"].startswith("Error while processing parameters")


@pytest.mark.asyncio
async def test_unknown_operation(client, png_bytes):
    response = await client.post("/api/v1/images/sharpen", content=png_bytes)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_remote_source_stored_back(client, stored_objects, png_bytes):
    stored_objects[("photos", "2024/cat.png")] = png_bytes

    response = await client.get(
        "/api/v1/images/thumbnail",
        params={"width": 16, "azurecontainer": "photos", "azureblobkey": "2024/cat.png"},
    )

    assert response.status_code == 200
    assert response.content == b""
    assert ("photos", "2024/cat_thumbnail.png") in stored_objects


@pytest.mark.asyncio
async def test_remote_source_not_found(client, stored_objects):
    response = await client.get(
        "/api/v1/images/resize",
        params={"width": 16, "azurecontainer": "photos", "azureblobkey": "missing.png"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_info_endpoint(client, png_bytes):
    response = await client.post("/api/v1/images/info", content=png_bytes)
    assert response.status_code == 200
    assert response.json()["width"] == 64


@pytest.mark.asyncio
async def test_tiles_rejects_other_methods(client):
    response = await client.get("/api/v1/tiles")
    assert response.status_code == 405
    assert response.headers["allow"] == "POST"


@pytest.mark.asyncio
async def test_tiles_rejects_malformed_body(client):
    response = await client.post(
        "/api/v1/tiles", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 406


@pytest.mark.asyncio
async def test_tiles_rejects_missing_image_key(client):
    response = await client.post("/api/v1/tiles", json={"container": "src"})
    assert response.status_code == 406


@pytest.mark.asyncio
async def test_tiles_rejects_unknown_provider(client, stored_objects, enqueue):
    response = await client.post(
        "/api/v1/tiles", json={"provider": "gcs", "imageKey": "photo.tiff", "container": "src"}
    )
    assert response.status_code == 400
    enqueue.assert_not_awaited()


@pytest.mark.asyncio
async def test_tiles_stages_marker_and_enqueues(client, stored_objects, enqueue):
    response = await client.post(
        "/api/v1/tiles", json={"imageKey": "photo.tiff", "container": "src"}
    )

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert body["marker"] == "src/photo.txt"
    assert stored_objects[("src", "photo.txt")] == b"pending"

    payload, job_id = enqueue.await_args.args
    assert payload["imageKey"] == "photo.tiff"
    assert payload["tempContainer"] == "src"
    assert job_id == body["job_id"]


@pytest.mark.asyncio
async def test_dzsave_alias(client, stored_objects, enqueue):
    response = await client.post(
        "/api/v1/dzsave", json={"imageKey": "a/photo.tiff", "container": "src", "tempContainer": "tmp"}
    )
    assert response.status_code == 202
    assert response.json()["marker"] == "tmp/a/photo.txt"


@pytest.mark.asyncio
async def test_tiles_dispatch_failure_records_error(client, stored_objects, enqueue):
    enqueue.side_effect = ConnectionError("broker unreachable")

    response = await client.post("/api/v1/tiles", json={"imageKey": "photo.tiff", "container": "src"})

    assert response.status_code == 503
    assert "broker unreachable" in stored_objects[("src", "photo.txt")].decode()


@pytest.mark.asyncio
async def test_metrics_endpoint(client, png_bytes):
    await client.post("/api/v1/images/flip", content=png_bytes)
    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert b"imagery_transforms_total" in response.content


SVG_RECT = (
    b'<svg xmlns="http://www.w3.org/2000/svg" width="40" height="20">'
    b'<rect width="40" height="20" fill="#0000ff"/></svg>'
)


@pytest.mark.asyncio
async def test_svg_input_is_rasterised(client):
    response = await client.post(
        "/api/v1/images/resize?width=10",
        content=SVG_RECT,
        headers={"Content-Type": "image/svg+xml"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    img = Image.open(io.BytesIO(response.content))
    assert img.size == (10, 5)
    assert img.convert("RGB").getpixel((5, 2))[2] > 200


@pytest.mark.asyncio
async def test_svg_info_reports_vector_type(client):
    response = await client.post("/api/v1/images/info", content=SVG_RECT)
    assert response.status_code == 200
    data = response.json()
    assert (data["width"], data["height"], data["type"]) == (40, 20, "svg")


@pytest.mark.asyncio
async def test_svg_overlay_watermark(client, stored_objects, image_factory):
    stored_objects[("photos", "base.png")] = image_factory("PNG", size=(64, 48), color=(200, 30, 30))
    stored_objects[("photos", "logo.svg")] = SVG_RECT

    response = await client.get(
        "/api/v1/images/watermarkimage",
        params={
            "image": "logo.svg",
            "opacity": 1,
            "azurecontainer": "photos",
            "azureblobkey": "base.png",
            "azureoutputkey": "marked.png",
        },
    )

    assert response.status_code == 200
    marked = Image.open(io.BytesIO(stored_objects[("photos", "marked.png")])).convert("RGB")
    r, g, b = marked.getpixel((32, 24))
    assert b > 200 and r < 50
    assert marked.getpixel((2, 2))[0] > 150


@pytest.mark.asyncio
async def test_pipeline_crop_then_convert(client, png_bytes):
    operations = json.dumps([
        {"operation": "crop", "params": {"width": 30, "height": 20}},
        {"operation": "convert", "params": {"type": "webp"}},
    ])
    response = await client.post(
        "/api/v1/images/pipeline",
        params={"operations": operations},
        content=png_bytes,
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/webp"
    assert Image.open(io.BytesIO(response.content)).size == (30, 20)


@pytest.mark.asyncio
async def test_pipeline_rejects_malformed_operations(client, png_bytes):
    response = await client.post(
        "/api/v1/images/pipeline",
        params={"operations": "[{not json"},
        content=png_bytes,
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_upload_form_lists_every_operation(client):
    response = await client.get("/form")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert response.text.count("<form ") == len(FORM_OPERATIONS)
    assert 'action="/api/v1/images/pipeline?operations=' in response.text
    assert 'enctype="multipart/form-data"' in response.text
