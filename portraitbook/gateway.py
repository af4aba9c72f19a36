# portraitbook/gateway.py
"""
Remote model gateway (Replicate HTTP API).

Covers the handful of endpoints the app needs:
  - POST /files                               -> durable URL for uploaded bytes
  - GET/POST /models                          -> destination model lookup / creation
  - POST /models/{trainer}/versions/{v}/trainings, GET /trainings/{id}
  - POST /predictions (or /models/{o}/{n}/predictions), then poll until terminal

Every non-2xx answer becomes UpstreamGatewayError carrying status and body.
"""
import asyncio
import logging
import mimetypes
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from portraitbook.config import Settings, require
from portraitbook.errors import UpstreamGatewayError
from portraitbook.outputs import ImageRef

logger = logging.getLogger(__name__)

TERMINAL_PREDICTION_STATUSES = ("succeeded", "failed", "canceled")

USER_AGENT = "portraitbook/1.0 (compatible; Python; FastAPI)"


class ReplicateGateway:
    def __init__(
        self,
        api_token: str,
        api_base: str = "https://api.replicate.com/v1",
        timeout: float = 120.0,
        max_wait_seconds: float = 300.0,
        poll_interval: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_token = api_token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.max_wait_seconds = max_wait_seconds
        self.poll_interval = poll_interval
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ReplicateGateway":
        return cls(
            api_token=require(settings.replicate_api_token, "REPLICATE_API_TOKEN"),
            api_base=settings.replicate_api_base,
            timeout=settings.gateway_timeout_seconds,
            max_wait_seconds=settings.prediction_max_wait_seconds,
            **kwargs,
        )

    # ---------- plumbing ----------
    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self._transport)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.api_base}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = self._url(path)
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        async with self._client() as client:
            try:
                r = await client.request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                logger.warning("Failed to reach gateway %s %s: %s", method, url, e)
                raise UpstreamGatewayError(f"Failed to reach Replicate: {e}") from e

        if r.status_code >= 400:
            detail = r.text or ""
            logger.error("Gateway %s %s returned %s: %s", method, url, r.status_code, detail[:800])
            raise UpstreamGatewayError(
                f"Replicate API error ({r.status_code}): {detail}",
                status_code_upstream=r.status_code,
                body=detail,
            )
        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamGatewayError(f"Invalid JSON from Replicate: {e}", status_code_upstream=r.status_code) from e

    # ---------- files ----------
    async def upload_file(self, data: bytes, filename: str = "data.zip", content_type: str = "application/zip") -> str:
        resp = await self._request("POST", "files", files={"content": (filename, data, content_type)})
        url = ((resp or {}).get("urls") or {}).get("get")
        if not url:
            raise UpstreamGatewayError("Replicate file upload returned no URL")
        logger.info("Uploaded %s (%d bytes) -> %s", filename, len(data), url)
        return url

    async def resolve_image_ref(self, ref: ImageRef, filename: str = "image.png") -> str:
        """Stable URL for an ImageRef, uploading inline bytes first."""
        if ref.needs_upload:
            return await self.upload_file(ref.data, filename=filename, content_type="image/png")
        return ref.url

    async def _download(self, url: str) -> httpx.Response:
        headers = self._headers() if url.startswith(self.api_base) else {}
        async with self._client() as client:
            try:
                r = await client.get(url, headers=headers)
                r.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise UpstreamGatewayError(
                    f"Failed downloading {url}: {e.response.status_code}",
                    status_code_upstream=e.response.status_code,
                    body=e.response.text,
                ) from e
            except httpx.HTTPError as e:
                raise UpstreamGatewayError(f"Failed downloading {url}: {e}") from e
            return r

    async def fetch_bytes(self, url: str) -> bytes:
        return (await self._download(url)).content

    async def fetch_image(self, url: str) -> Tuple[str, bytes]:
        """(mime, bytes); mime from Content-Type, else guessed from the URL, else PNG."""
        r = await self._download(url)
        mime = r.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if not mime.startswith("image/"):
            guessed, _ = mimetypes.guess_type(httpx.URL(url).path)
            mime = guessed if guessed and guessed.startswith("image/") else "image/png"
        return mime, r.content

    # ---------- models / trainings ----------
    async def get_model(self, owner: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._request("GET", f"models/{owner}/{name}")
        except UpstreamGatewayError as e:
            if e.status_code_upstream == 404:
                return None
            raise

    async def create_model(self, owner: str, name: str, description: str, visibility: str, hardware: str) -> Dict[str, Any]:
        logger.info("Creating destination model %s/%s", owner, name)
        return await self._request(
            "POST",
            "models",
            json={
                "owner": owner,
                "name": name,
                "description": description,
                "visibility": visibility,
                "hardware": hardware,
            },
        )

    async def start_training(self, trainer_model: str, trainer_version: str, destination: str, training_input: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"models/{trainer_model}/versions/{trainer_version}/trainings",
            json={"destination": destination, "input": training_input},
        )

    async def get_training(self, training_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"trainings/{training_id}")

    # ---------- predictions ----------
    def _prediction_route(self, model_ref: str, model_input: Dict[str, Any]):
        """owner/name:version and bare version ids go to /predictions; owner/name to the model route."""
        if ":" in model_ref:
            return "predictions", {"version": model_ref.split(":", 1)[1], "input": model_input}
        if "/" in model_ref:
            return f"models/{model_ref}/predictions", {"input": model_input}
        return "predictions", {"version": model_ref, "input": model_input}

    async def run(self, model_ref: str, model_input: Dict[str, Any]) -> Any:
        """Create a prediction and wait for it; returns the raw `output` field."""
        path, body = self._prediction_route(model_ref, model_input)
        prediction = await self._request("POST", path, json=body) or {}
        prediction_id = prediction.get("id", "")
        logger.info("[%s] prediction started on %s", prediction_id, model_ref)

        status_url = (prediction.get("urls") or {}).get("get") or f"predictions/{prediction_id}"
        waited = 0.0
        attempt = 0
        while prediction.get("status") not in TERMINAL_PREDICTION_STATUSES:
            if waited >= self.max_wait_seconds:
                logger.error("[%s] prediction did not complete within %s seconds", prediction_id, self.max_wait_seconds)
                raise UpstreamGatewayError(f"Prediction {prediction_id} timed out")
            await self._sleep(self.poll_interval)
            waited += self.poll_interval
            attempt += 1
            try:
                prediction = await self._request("GET", status_url) or {}
            except UpstreamGatewayError as e:
                # transient poll error -> log and keep waiting
                if e.status_code_upstream is not None and e.status_code_upstream < 500:
                    raise
                logger.warning("[%s] poll attempt %d failed: %s", prediction_id, attempt, e)
                continue
            if attempt % 5 == 0:
                logger.info("[%s] still %s (attempt %d)", prediction_id, prediction.get("status"), attempt)

        status = prediction.get("status")
        if status != "succeeded":
            error = prediction.get("error") or status
            logger.error("[%s] prediction %s: %s", prediction_id, status, error)
            raise UpstreamGatewayError(f"Prediction {prediction_id} {status}: {error}")
        return prediction.get("output")
