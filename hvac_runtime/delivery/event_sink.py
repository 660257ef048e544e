"""
Outbound event delivery over HTTP
"""

import asyncio
from typing import Dict, Any, Optional

import aiohttp
import structlog

from hvac_runtime.core.config import settings
from hvac_runtime.engine.errors import DeliveryError

logger = structlog.get_logger(__name__)

# Client errors a retry cannot fix
NON_RETRYABLE = frozenset({400, 401, 403, 404, 409, 413, 422})


class HttpEventSink:
    """Posts event payloads to the ingest endpoint with exponential backoff.

    deliver() returns True on a 2xx response and False once all attempts are
    exhausted. A payload the consumer rejects outright raises DeliveryError
    without retrying. Events carry unique ids, so a retry that reaches the
    consumer twice is safe.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        retries: int = None,
        retry_delay: float = None,
        timeout: int = None,
        session: aiohttp.ClientSession = None,
    ):
        self.url = url if url is not None else settings.core_ingest_url
        self.retries = max(1, retries if retries is not None else settings.delivery_retries)
        self.retry_delay = retry_delay if retry_delay is not None else settings.delivery_retry_delay_seconds
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.delivery_timeout)
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    @property
    def endpoint(self) -> str:
        return f"{self.url.rstrip('/')}/ingest/v1/events"

    async def deliver(self, payload: Dict[str, Any], label: str = "event") -> bool:
        if not self.url:
            logger.warning("Event sink URL not configured, event dropped", label=label,
                           device_id=payload.get("device_id"))
            return False
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True

        for attempt in range(self.retries):
            try:
                async with self.session.post(self.endpoint, json=payload) as response:
                    if 200 <= response.status < 300:
                        logger.info("Event delivered", label=label, device_id=payload.get("device_id"),
                                    event_id=payload.get("event_id"), event_type=payload.get("event_type"))
                        return True
                    body = await response.text()
                    error = f"HTTP {response.status}: {body[:200]}"
                    if response.status in NON_RETRYABLE:
                        logger.error("Event rejected by consumer", label=label, device_id=payload.get("device_id"),
                                     event_id=payload.get("event_id"), error=error)
                        raise DeliveryError(f"{label} rejected: {error}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                error = str(e) or e.__class__.__name__

            if attempt == self.retries - 1:
                logger.error("Event delivery failed", label=label, device_id=payload.get("device_id"),
                             attempts=self.retries, error=error)
                return False

            delay = self.retry_delay * (2 ** attempt)
            logger.warning("Event delivery attempt failed, retrying", label=label,
                           device_id=payload.get("device_id"), attempt=attempt + 1,
                           retry_in=delay, error=error)
            await asyncio.sleep(delay)
        return False
