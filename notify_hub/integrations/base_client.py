import hashlib
import logging
import os
import time

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from notify_hub.core.logging import _redact


class DeliveryError(Exception):
    """A provider refused or failed a send. ``permanent`` marks 4xx answers."""

    def __init__(self, message: str, status_code: int | None = None, permanent: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.permanent = permanent


def is_retryable_exception(exception: BaseException) -> bool:
    """Retry only on network trouble and 5xx answers."""
    if isinstance(exception, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        return 500 <= exception.response.status_code < 600
    return False


LOG_SAMPLE_RATE = float(os.getenv("LOG_SAMPLE_RATE", "1.0"))
LOG_BODY_MAX = int(os.getenv("LOG_BODY_MAX", "2000"))
PROVIDER_TRIES = int(os.getenv("PROVIDER_TRIES", "3"))


class BaseApiClient:
    def __init__(self, base_url: str, timeout: float = 15.0):
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._logger = logging.getLogger("http")

    def _maybe_hash(self, body: str) -> str:
        return hashlib.sha256(body.encode("utf-8", "ignore")).hexdigest()[:16]

    async def _send_logged(self, method: str, url: str, **kwargs) -> httpx.Response:
        t0 = time.perf_counter()
        req_body = kwargs.get("content") or kwargs.get("data") or (kwargs.get("json") and str(_redact(kwargs["json"]))) or ""
        headers = _redact(dict(kwargs.get("headers") or {}))
        self._logger.debug("HTTP %s %s", method, url,
                           extra={"extra": {"method": method, "url": url, "headers": headers,
                                            "body_preview": str(req_body)[:LOG_BODY_MAX]}})
        try:
            response: httpx.Response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            dt = round((time.perf_counter() - t0) * 1000)
            self._logger.error("HTTP FAIL %s %s: %s", method, url, repr(e),
                               extra={"extra": {"method": method, "url": url, "elapsed_ms": dt}})
            raise

        dt = round((time.perf_counter() - t0) * 1000)
        body_text = response.text or ""
        body_hash = self._maybe_hash(body_text)
        if LOG_SAMPLE_RATE >= 1.0:
            body_preview = body_text[:LOG_BODY_MAX]
        else:
            body_preview = f"[sampled hash:{body_hash}]"
        self._logger.info("HTTP %s %s -> %d in %dms", method, url, response.status_code, dt,
                          extra={"extra": {"method": method, "url": url, "status_code": response.status_code,
                                           "elapsed_ms": dt, "response_preview": body_preview,
                                           "response_hash": body_hash}})
        response.raise_for_status()
        return response

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(PROVIDER_TRIES),
        retry=retry_if_exception(is_retryable_exception),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs):
        response = await self._send_logged(method, url, **kwargs)
        return self._parse_response(response)

    async def _request_or_raise(self, method: str, url: str, **kwargs):
        """Provider call that surfaces every failure as DeliveryError."""
        try:
            return await self._request(method, url, **kwargs)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = (e.response.text or "")[:300]
            raise DeliveryError(f"http_{status}{': ' + detail if detail else ''}", status_code=status,
                                permanent=400 <= status < 500 and status != 429) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"network_error: {e!r}") from e

    def _parse_response(self, response: httpx.Response):
        if response.status_code == 204 or not response.content:
            return {}
        content_type = response.headers.get("content-type", "").lower()
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                return {}
        return {}

    async def close(self):
        await self.client.aclose()
