import json

import httpx
import pytest

from conftest import API, DELIVERY
from portraitbook.errors import UpstreamGatewayError
from portraitbook.gateway import ReplicateGateway
from portraitbook.outputs import ImageRef


async def no_sleep(_seconds):
    return None


def scripted_gateway(responses, seen=None, **kwargs):
    """Gateway whose transport answers from a list, in order."""
    queue = list(responses)

    def handler(request):
        if seen is not None:
            seen.append(request)
        return queue.pop(0)

    return ReplicateGateway(api_token="t", api_base=API, transport=httpx.MockTransport(handler), sleep=no_sleep, **kwargs)


def prediction(status, output=None, error=None):
    return {"id": "p1", "status": status, "output": output, "error": error, "urls": {"get": f"{API}/predictions/p1"}}


@pytest.mark.parametrize(
    "model_ref, path, version",
    [
        ("tester/kid:v1", "/v1/predictions", "v1"),
        ("tester/kid", "/v1/models/tester/kid/predictions", None),
        ("abcdef", "/v1/predictions", "abcdef"),
    ],
)
@pytest.mark.anyio
async def test_prediction_routes(model_ref, path, version):
    seen = []
    gateway = scripted_gateway([httpx.Response(201, json=prediction("succeeded", "out"))], seen)
    assert await gateway.run(model_ref, {"prompt": "x"}) == "out"
    assert seen[0].url.path == path
    assert seen[0].headers["Authorization"] == "Bearer t"
    body = json.loads(seen[0].content)
    assert body.get("version") == version
    assert body["input"] == {"prompt": "x"}


@pytest.mark.anyio
async def test_run_polls_through_transient_errors():
    gateway = scripted_gateway([
        httpx.Response(201, json=prediction("starting")),
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, json=prediction("processing")),
        httpx.Response(200, json=prediction("succeeded", [f"{DELIVERY}/x.png"])),
    ])
    assert await gateway.run("tester/kid:v1", {}) == [f"{DELIVERY}/x.png"]


@pytest.mark.anyio
async def test_run_raises_on_client_error_while_polling():
    gateway = scripted_gateway([
        httpx.Response(201, json=prediction("starting")),
        httpx.Response(401, text="unauthorized"),
    ])
    with pytest.raises(UpstreamGatewayError) as info:
        await gateway.run("tester/kid:v1", {})
    assert info.value.status_code_upstream == 401


@pytest.mark.anyio
async def test_run_raises_on_failed_prediction():
    gateway = scripted_gateway([httpx.Response(201, json=prediction("failed", error="CUDA out of memory"))])
    with pytest.raises(UpstreamGatewayError, match="CUDA out of memory"):
        await gateway.run("tester/kid:v1", {})


@pytest.mark.anyio
async def test_run_times_out():
    responses = [httpx.Response(201, json=prediction("starting"))]
    responses += [httpx.Response(200, json=prediction("processing")) for _ in range(5)]
    gateway = scripted_gateway(responses, poll_interval=1.0, max_wait_seconds=3.0)
    with pytest.raises(UpstreamGatewayError, match="timed out"):
        await gateway.run("tester/kid:v1", {})


@pytest.mark.anyio
async def test_error_status_carries_body():
    gateway = scripted_gateway([httpx.Response(422, text='{"detail": "bad input"}')])
    with pytest.raises(UpstreamGatewayError) as info:
        await gateway.create_model("tester", "kid", "d", "private", "cpu")
    assert info.value.status_code_upstream == 422
    assert "bad input" in info.value.body
    assert "Replicate API error (422)" in info.value.message


@pytest.mark.anyio
async def test_get_model_missing_is_none():
    gateway = scripted_gateway([httpx.Response(404, text="not found")])
    assert await gateway.get_model("tester", "nope") is None


@pytest.mark.anyio
async def test_resolve_image_ref_uploads_inline_bytes(gateway, fake_replicate):
    url = await gateway.resolve_image_ref(ImageRef(data=b"\x89PNG-mask"), filename="mask.png")
    assert url == f"{API}/files/file-1"
    assert b"\x89PNG-mask" in fake_replicate.files["file-1"]
    assert await gateway.resolve_image_ref(ImageRef(url=f"{DELIVERY}/a.png")) == f"{DELIVERY}/a.png"


@pytest.mark.anyio
async def test_fetch_bytes_reports_status():
    gateway = scripted_gateway([httpx.Response(403, text="denied")])
    with pytest.raises(UpstreamGatewayError) as info:
        await gateway.fetch_bytes(f"{DELIVERY}/a.png")
    assert info.value.status_code_upstream == 403


@pytest.mark.anyio
async def test_run_keeps_polling_through_empty_status_bodies():
    responses = [httpx.Response(201, json=prediction("starting"))]
    responses += [httpx.Response(200) for _ in range(6)]
    responses.append(httpx.Response(200, json=prediction("succeeded", "out")))
    gateway = scripted_gateway(responses)
    assert await gateway.run("tester/kid:v1", {}) == "out"


@pytest.mark.anyio
async def test_fetch_image_uses_content_type():
    gateway = scripted_gateway([httpx.Response(200, content=b"jpegdata", headers={"content-type": "image/jpeg; charset=binary"})])
    assert await gateway.fetch_image(f"{DELIVERY}/scene") == ("image/jpeg", b"jpegdata")


@pytest.mark.parametrize(
    "url, mime",
    [
        (f"{DELIVERY}/scene.jpg", "image/jpeg"),
        (f"{DELIVERY}/scene.jpeg?sig=abc", "image/jpeg"),
        (f"{DELIVERY}/scene", "image/png"),
    ],
)
@pytest.mark.anyio
async def test_fetch_image_without_content_type_guesses_from_url(url, mime):
    gateway = scripted_gateway([httpx.Response(200, content=b"data", headers={"content-type": "application/octet-stream"})])
    assert await gateway.fetch_image(url) == (mime, b"data")
