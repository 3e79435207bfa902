import logging
import time
from typing import Optional

import httpx

from library_app.config import settings

logger = logging.getLogger(__name__)


class BackendHTTPClient:
    """Pooled HTTP client shared by every call to the hosted backend."""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None, timeout: Optional[float] = None):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )
        total = timeout if timeout is not None else settings.http_timeout
        timeout_config = httpx.Timeout(
            timeout=total,
            connect=min(5.0, total),
        )
        self._client = httpx.Client(
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            transport=transport,
        )

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        logger.debug("%s %s", method, url)
        return self._client.request(method, url, **kwargs)

    def get_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5, **kwargs) -> httpx.Response:
        """GET with exponential backoff on transport errors; the last error propagates."""
        for attempt in range(retries):
            try:
                return self.request("GET", url, **kwargs)
            except httpx.TransportError as e:
                if attempt >= retries - 1:
                    raise
                wait_time = backoff * (2 ** attempt)
                logger.warning("GET %s failed (%s), retrying in %.1fs", url, e, wait_time)
                time.sleep(wait_time)
        raise RuntimeError("retries must be at least 1")

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


_global_client: Optional[BackendHTTPClient] = None


def get_http_client() -> BackendHTTPClient:
    """Return the process-wide HTTP client, creating it on first use."""
    global _global_client
    if _global_client is None:
        _global_client = BackendHTTPClient()
    return _global_client


def cleanup_http_client() -> None:
    global _global_client
    if _global_client:
        _global_client.close()
        _global_client = None
