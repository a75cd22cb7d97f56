"""
Connectivity probe.

Advisory reachability check: HEAD a short list of independent, highly
available endpoints and report whether any of them answered. The data path
never depends on it; callers use it to decide when to drain and what status
to show.
"""

import logging
from collections.abc import Sequence

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TARGETS = (
    "https://www.google.com",
    "https://www.cloudflare.com",
    "https://httpbin.org/status/200",
)


class ConnectivityProbe:
    """Reachability check over several targets, tried in order."""

    def __init__(
        self,
        targets: Sequence[str] = DEFAULT_TARGETS,
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize probe.

        Args:
            targets: URLs to HEAD, in order
            timeout: Per-target timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        if not targets:
            raise ValueError("at least one probe target is required")
        self.targets = tuple(targets)
        self.timeout = timeout
        self._transport = transport
        self.last_result: bool | None = None

    async def _check(self, client: httpx.AsyncClient, url: str) -> bool:
        try:
            response = await client.head(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug(f"Connectivity probe to {url} failed: {e}")
            return False
        return response.is_success

    async def is_online(self) -> bool:
        """
        True on the first target that answers with a 2xx status.

        Never raises; all targets failing or timing out means offline.
        """
        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            for url in self.targets:
                if await self._check(client, url):
                    self.last_result = True
                    return True

        logger.info("Connectivity probe: all targets unreachable")
        self.last_result = False
        return False


__all__ = ["ConnectivityProbe", "DEFAULT_TARGETS"]
