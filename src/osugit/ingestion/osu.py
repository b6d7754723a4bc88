"""
osu! Catalog Connector - beatmapset search and .osu downloads for osugit.

Fetches:
- Beatmapsets listed under a rank status (search endpoint)
- Raw .osu difficulty files, streamed chunk by chunk

Every request carries a bearer token from the shared CredentialCache.
A 401 is NOT retried: the cached credential is invalidated and the call fails,
so the next poll cycle starts with a fresh exchange.
"""

from typing import AsyncIterator, Dict, List

import httpx
from pydantic import ValidationError

from osugit.errors import UpstreamError
from osugit.ingestion.base import BaseCatalog, BeatmapSearch, ChangedRecord, RankStatus
from osugit.ingestion.credentials import CredentialCache
from osugit.utils.log import get_logger

log = get_logger(__name__)


class OsuCatalogClient(BaseCatalog):
    """
    Authenticated access to the osu! API v2 search endpoint and the .osu file host.
    """

    BASE_URL = "https://osu.ppy.sh/api/v2"
    DOWNLOAD_URL = "https://osu.ppy.sh/osu/{file_id}"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: CredentialCache,
        base_url: str = BASE_URL,
        download_url: str = DOWNLOAD_URL,
    ):
        self.http_client = http_client
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.download_url = download_url

    async def _headers(self) -> Dict[str, str]:
        """Bearer auth header from the shared credential cache."""
        credential = await self.credentials.get_credential()
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Accept": "application/json",
        }

    def _check_unauthorized(self, status: int, url: str):
        if status == 401:
            log.warning("upstream_unauthorized", url=url)
            self.credentials.invalidate()

    # =========================================================================
    # SEARCH
    # =========================================================================

    async def search(self, status: RankStatus = RankStatus.PENDING) -> List[ChangedRecord]:
        """
        Lists beatmapsets under the given rank status.

        Raises:
            AuthError: no credential could be obtained
            UpstreamError: non-success status, transport failure or malformed body
        """
        url = f"{self.base_url}/beatmapsets/search"
        headers = await self._headers()

        try:
            response = await self.http_client.get(url, params={"s": status.value}, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamError(None, str(e), url) from e

        log.debug("search_response", status=response.status_code, rank_status=status.value)

        if not response.is_success:
            self._check_unauthorized(response.status_code, url)
            raise UpstreamError(response.status_code, response.text, url)

        try:
            search = BeatmapSearch.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UpstreamError(response.status_code, f"malformed search body: {e}", url) from e

        return [ChangedRecord.from_beatmapset(b) for b in search.beatmapsets]

    # =========================================================================
    # DOWNLOADS
    # =========================================================================

    async def download_file(self, file_id: int) -> AsyncIterator[bytes]:
        """
        Streams one .osu file.

        Raises:
            UpstreamError: before the first chunk on non-success status, or mid-stream
                           if the connection drops
        """
        url = self.download_url.format(file_id=file_id)
        headers = await self._headers()

        try:
            async with self.http_client.stream("GET", url, headers=headers) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    self._check_unauthorized(response.status_code, url)
                    raise UpstreamError(response.status_code, body, url)

                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise UpstreamError(None, str(e), url) from e
