"""Library for downloading manifests over HTTP."""

import logging

import httpx

from .exceptions import FetchException

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ManifestFetcher",
]

_TIMEOUT = 60.0


class ManifestFetcher:
    """Downloads raw manifest files.

    Anything but a 200 response is an error, redirects are followed.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = _TIMEOUT,
    ) -> None:
        """Initialize ManifestFetcher.

        Args:
            transport: Optional transport, used to serve responses in tests.
            timeout: Seconds to wait for the download.
        """
        self._transport = transport
        self._timeout = timeout

    async def fetch(self, url: str) -> bytes:
        """Return the body of the document at `url`."""
        _LOGGER.debug("Fetching manifest %s", url)
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self._timeout,
            follow_redirects=True,
        ) as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as err:
                raise FetchException(url, str(err) or type(err).__name__) from err
        if response.status_code != httpx.codes.OK:
            raise FetchException(
                url, f"unexpected status code {response.status_code}"
            )
        return response.content
