import httpx
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class HTTPClient:
    """Pooled HTTP clients shared by the remote store (sync) and the metadata service (async)."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None,
                 async_transport: Optional[httpx.AsyncBaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        self.timeout = httpx.Timeout(
            timeout=timeout,
            connect=min(5.0, timeout),
        )

        self._sync_client = httpx.Client(
            limits=limits,
            timeout=self.timeout,
            follow_redirects=True,
            transport=transport,
        )
        self._limits = limits
        self._async_transport = async_transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def sync(self) -> httpx.Client:
        return self._sync_client

    @property
    def async_client(self) -> httpx.AsyncClient:
        # Created lazily so it binds to the event loop that first uses it.
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                limits=self._limits,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._async_transport,
            )
        return self._client

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return self._sync_client.request(method, url, **kwargs)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.async_client.get(url, **kwargs)

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def close(self):
        self._sync_client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        self.close()


# Global HTTP client instance
_global_client: Optional[HTTPClient] = None


def get_http_client() -> HTTPClient:
    """Return the process-wide HTTP client, creating it on first use."""
    global _global_client
    if _global_client is None:
        _global_client = HTTPClient()
    return _global_client


async def cleanup_http_client():
    """Close the process-wide HTTP client."""
    global _global_client
    if _global_client:
        await _global_client.aclose()
        _global_client.close()
        _global_client = None
