"""Shared fixtures: a fake gateway served over httpx.MockTransport, a fake prompt synthesizer."""
import io
import json
import os
import re
import zipfile
from typing import Any, Dict, List, Optional

os.environ.setdefault("REPLICATE_API_TOKEN", "test-token")
os.environ.setdefault("REPLICATE_OWNER", "tester")
os.environ.setdefault("GEMINI_API_KEY", "test-gemini")

import httpx  # noqa: E402
import pytest  # noqa: E402
from PIL import Image  # noqa: E402

from portraitbook.config import load_settings  # noqa: E402
from portraitbook.gateway import ReplicateGateway  # noqa: E402
from portraitbook.pdfio import encode_data_url  # noqa: E402
from portraitbook.prompts import SynthesizedPrompt  # noqa: E402
from portraitbook.records import InMemoryRecordStore  # noqa: E402
from portraitbook.training import TrainingJobManager  # noqa: E402

API = "https://api.replicate.com/v1"
DELIVERY = "https://replicate.delivery/pbxt"


def png_bytes(size=(40, 30), color=(255, 0, 0, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, "PNG")
    return buf.getvalue()


def zip_bytes(entries: Dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


class FakeReplicate:
    """Just enough of the Replicate HTTP API, kept in memory."""

    def __init__(self):
        self.models: Dict[str, dict] = {}
        self.trainings: Dict[str, dict] = {}
        self.predictions: Dict[str, dict] = {}
        self.files: Dict[str, bytes] = {}
        # model ref (version id or owner/name) -> output value
        self.outputs: Dict[str, Any] = {}
        self.prediction_inputs: List[dict] = []
        self.create_model_calls = 0
        self.fail_training_status = False
        self.pending_polls = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def gateway(self) -> ReplicateGateway:
        return ReplicateGateway(api_token="test-token", api_base=API, poll_interval=0, transport=self.transport())

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        path = request.url.path.replace("/v1/", "", 1).strip("/")
        method = request.method

        if url.startswith(DELIVERY):
            return httpx.Response(200, content=png_bytes((20, 40), (0, 0, 255, 255)))

        if method == "POST" and path == "files":
            file_id = f"file-{len(self.files) + 1}"
            self.files[file_id] = request.content
            return httpx.Response(201, json={"id": file_id, "urls": {"get": f"{API}/files/{file_id}"}})
        if method == "GET" and path.startswith("files/"):
            return httpx.Response(200, content=png_bytes())

        if method == "POST" and path == "models":
            body = json.loads(request.content)
            self.create_model_calls += 1
            key = f"{body['owner']}/{body['name']}"
            self.models[key] = body
            return httpx.Response(201, json=body)
        m = re.fullmatch(r"models/([^/]+)/([^/]+)", path)
        if method == "GET" and m:
            key = f"{m.group(1)}/{m.group(2)}"
            if key not in self.models:
                return httpx.Response(404, text='{"detail": "Not found"}')
            return httpx.Response(200, json=self.models[key])

        if method == "POST" and path.endswith("/trainings"):
            body = json.loads(request.content)
            training_id = f"tr-{len(self.trainings) + 1}"
            training = {
                "id": training_id,
                "status": "starting",
                "destination": body["destination"],
                "input": body["input"],
                "error": None,
                "output": None,
            }
            self.trainings[training_id] = training
            return httpx.Response(201, json=training)
        m = re.fullmatch(r"trainings/([^/]+)", path)
        if method == "GET" and m:
            if self.fail_training_status:
                return httpx.Response(503, text="unavailable")
            training = self.trainings.get(m.group(1))
            if training is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, json=training)

        m = re.fullmatch(r"models/([^/]+)/([^/]+)/predictions", path)
        if method == "POST" and (path == "predictions" or m):
            body = json.loads(request.content)
            ref = body.get("version") or f"{m.group(1)}/{m.group(2)}"
            self.prediction_inputs.append({"ref": ref, "input": body["input"]})
            prediction_id = f"pred-{len(self.predictions) + 1}"
            prediction = {
                "id": prediction_id,
                "status": "processing" if self.pending_polls else "succeeded",
                "output": None if self.pending_polls else self.outputs.get(ref),
                "error": None,
                "urls": {"get": f"{API}/predictions/{prediction_id}"},
                "_ref": ref,
                "_polls": self.pending_polls,
            }
            self.predictions[prediction_id] = prediction
            return httpx.Response(201, json=prediction)
        m = re.fullmatch(r"predictions/([^/]+)", path)
        if method == "GET" and m:
            prediction = self.predictions[m.group(1)]
            prediction["_polls"] -= 1
            if prediction["_polls"] <= 0:
                prediction["status"] = "succeeded"
                prediction["output"] = self.outputs.get(prediction["_ref"])
            return httpx.Response(200, json=prediction)

        return httpx.Response(404, text=f"unhandled {method} {path}")


class FakeSynthesizer:
    def __init__(self, prompt: str = "a photo of TOK_ABC123 waving", rationale: Optional[str] = "matches the pose"):
        self.prompt = prompt
        self.rationale = rationale
        self.calls: List[dict] = []

    async def synthesize(self, scene_text, scene_image, trigger_word, story_context=None, guidance=None, mime_type="image/png"):
        self.calls.append({"scene_text": scene_text, "trigger_word": trigger_word, "mime_type": mime_type})
        return SynthesizedPrompt(prompt=self.prompt, rationale=self.rationale)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_replicate() -> FakeReplicate:
    return FakeReplicate()


@pytest.fixture
def gateway(fake_replicate) -> ReplicateGateway:
    return fake_replicate.gateway()


@pytest.fixture
def settings():
    return load_settings()


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def manager(gateway, record_store) -> TrainingJobManager:
    return TrainingJobManager(
        gateway=gateway,
        store=record_store,
        owner="tester",
        trainer_model="ostris/flux-dev-lora-trainer",
        trainer_version="abc123",
        trigger_word_prefix="STORYCHAR",
    )


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def scene_data_url() -> str:
    return encode_data_url(png_bytes((100, 80), (255, 255, 255, 255)))
