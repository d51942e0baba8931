import base64
import time
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

import httpx
from loguru import logger

from common.config import EXTRACTION_MAX_RETRIES, EXTRACTION_TIMEOUT, EXTRACTION_WEBHOOK_URL
from common.errors import ExtractionError


class ExtractionService(Protocol):
    """Turns an image into the postal addresses printed on it."""

    def extract(self, data: bytes, media_type: str) -> List[str]:
        ...


class WebhookExtractionClient:
    """
    ExtractionService backed by an HTTP webhook.

    The webhook receives the image as base64 JSON and answers with either a bare
    JSON array of addresses or an object carrying `addresses` / `data`.
    Rate limiting (429) and empty answers are retried with a short backoff.
    """

    SOURCE = "route_planner_app"

    def __init__(
        self,
        url: str = EXTRACTION_WEBHOOK_URL,
        timeout: float = EXTRACTION_TIMEOUT,
        max_retries: int = EXTRACTION_MAX_RETRIES,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ):
        self.url = url
        self.max_retries = max_retries
        self._client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    def extract(self, data: bytes, media_type: str) -> List[str]:
        body = {
            "image": {
                "data": base64.b64encode(data).decode("ascii"),
                "mimeType": media_type,
            },
            "metadata": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "source": self.SOURCE,
            },
        }

        retry_count = 0
        while True:
            try:
                response = self._client.post(self.url, json=body)
            except httpx.TimeoutException as e:
                raise ExtractionError("timeout", "Request timeout: Webhook took too long to respond") from e
            except httpx.TransportError as e:
                raise ExtractionError("network", "Network error: Could not connect to webhook") from e

            if response.status_code == 429 and retry_count < self.max_retries:
                delay = 2 ** retry_count
                logger.warning(f"Webhook rate limited, retrying in {delay}s")
                self._sleep(delay)
                retry_count += 1
                continue

            if not response.is_success:
                raise ExtractionError(
                    "http", f"Webhook request failed: {response.status_code} {response.reason_phrase}"
                )

            try:
                result = response.json()
            except ValueError as e:
                raise ExtractionError("format", "Webhook returned invalid JSON") from e

            addresses = self._normalize(result)
            if not addresses and retry_count < self.max_retries:
                # empty answers are often transient on the webhook side
                logger.debug("Webhook returned no addresses, asking again")
                self._sleep(1)
                retry_count += 1
                continue
            return addresses

    @staticmethod
    def _normalize(result: Any) -> List[str]:
        if isinstance(result, list):
            return [item for item in result if isinstance(item, str) and item.strip()]

        if isinstance(result, dict):
            if result.get("success") is False:
                raise ExtractionError(
                    "service", result.get("error") or result.get("message") or "Unknown error from webhook"
                )

            if isinstance(result.get("addresses"), list):
                addresses = result["addresses"]
            elif isinstance(result.get("data"), list):
                addresses = result["data"]
            else:
                raise ExtractionError("format", "Unexpected response format from webhook")

            if not all(isinstance(item, str) for item in addresses):
                raise ExtractionError("format", "Invalid address format in response")
            return [addr for addr in addresses if addr.strip()]

        raise ExtractionError("format", "Unexpected response format from webhook")

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
