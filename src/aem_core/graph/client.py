"""Async Graph API client for the AEM conversion endpoints."""
import asyncio
import logging
import random
from typing import Any, Optional

import aiohttp
from pydantic import BaseModel, Field

from .exceptions import GraphApiError, GraphResponseError


CONVERSION_CONFIGS_EDGE = "aem_conversion_configs"
CONVERSIONS_EDGE = "aem_conversions"


class GraphRequest(BaseModel):
    """A single Graph API call, built before it is started."""

    graph_path: str = Field(..., description="Path below the API version, e.g. 123/aem_conversions")
    parameters: dict[str, Any] = Field(default_factory=dict)
    http_method: str = Field("GET", description="GET|POST")


class GraphClient:
    """Async client for the Graph API.

    Transient failures (429/5xx/network) are retried with exponential
    backoff only when the caller asks for it.
    """

    GRAPH_HOST = "https://graph.facebook.com"

    MAX_RETRY_ATTEMPTS = 4
    RETRY_BASE_DELAY = 0.5  # seconds
    RETRY_MULTIPLIER = 2.0
    RETRY_MAX_DELAY = 30.0  # seconds
    RETRY_JITTER_MS = 250  # milliseconds

    def __init__(
        self,
        access_token: str,
        api_version: str,
        session: aiohttp.ClientSession,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize Graph client.

        Args:
            access_token: App or client token (never logged)
            api_version: e.g., "v12.0"
            session: Injected aiohttp ClientSession
            logger: Optional logger instance
        """
        self._access_token = access_token
        self.api_version = api_version
        self.session = session
        self.logger = logger or logging.getLogger(__name__)

    def url_for(self, graph_path: str) -> str:
        return f"{self.GRAPH_HOST}/{self.api_version}/{graph_path.lstrip('/')}"

    def _redact(self, text: str) -> str:
        if not text or not self._access_token:
            return text
        return text.replace(self._access_token, "[REDACTED]")

    async def start(self, request: GraphRequest, retry: bool = False) -> dict:
        """Execute a Graph request.

        Args:
            request: Request to send
            retry: Whether to retry on transient errors

        Returns:
            Parsed JSON response body

        Raises:
            GraphApiError: On HTTP/network failure
            GraphResponseError: If the body carries a root-level error
        """
        url = self.url_for(request.graph_path)
        params = {**request.parameters, "access_token": self._access_token}
        method = request.http_method.upper()

        attempt = 0
        while True:
            attempt += 1

            try:
                timeout = aiohttp.ClientTimeout(total=60, connect=10)
                if method == "POST":
                    call = self.session.post(url, data=params, timeout=timeout)
                else:
                    call = self.session.get(url, params=params, timeout=timeout)

                async with call as resp:
                    if resp.status == 429 or 500 <= resp.status < 600:
                        response_text = await resp.text()
                        if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                            raise GraphApiError(
                                f"HTTP {resp.status} after {attempt} attempts: "
                                f"{self._redact(response_text[:200])}",
                                status=resp.status,
                            )

                        delay = self._calculate_backoff(attempt)
                        self.logger.warning(
                            "HTTP %s on %s, backoff=%.2fs, attempt=%s",
                            resp.status,
                            request.graph_path,
                            delay,
                            attempt,
                        )
                        await asyncio.sleep(delay)
                        continue

                    if 400 <= resp.status < 500:
                        response_text = await resp.text()
                        raise GraphApiError(
                            f"HTTP {resp.status} (non-retryable): "
                            f"{self._redact(response_text[:500])}",
                            status=resp.status,
                        )

                    try:
                        json_data = await resp.json()
                    except ValueError as e:
                        raise GraphApiError(
                            f"Malformed JSON response from {request.graph_path}: {e}",
                            status=resp.status,
                        ) from e

                    if isinstance(json_data, dict) and json_data.get("error"):
                        raise GraphResponseError(json_data["error"])

                    return json_data if isinstance(json_data, dict) else {"data": json_data}

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                    raise GraphApiError(
                        f"Network error after {attempt} attempts: {self._redact(str(e))}"
                    ) from e

                delay = self._calculate_backoff(attempt)
                self.logger.warning(
                    "Network error on %s: %s, backoff=%.2fs, attempt=%s",
                    request.graph_path,
                    self._redact(str(e)),
                    delay,
                    attempt,
                )
                await asyncio.sleep(delay)
                continue

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff with jitter.

        Args:
            attempt: Current retry attempt number (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.RETRY_BASE_DELAY * (self.RETRY_MULTIPLIER ** (attempt - 1)),
            self.RETRY_MAX_DELAY,
        )
        jitter = random.uniform(0, self.RETRY_JITTER_MS / 1000.0)
        return delay + jitter
