from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union, runtime_checkable

import httpx

from zksig.cid.addresser import ContentIdentifier
from zksig.cid.car import identify_blob, pack_car
from zksig.config import Settings
from zksig.errors import InvalidInput, NotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)

CAR_CONTENT_TYPE = "application/vnd.ipld.car"

CidLike = Union[str, ContentIdentifier]


# ----------------------------
# Capability
# ----------------------------

@runtime_checkable
class BlobStore(Protocol):
    # pin/fetch may be sync or async; callers await whichever they get.
    def pin(self, data: bytes, name: str) -> Any: ...
    def fetch(self, cid: CidLike) -> Any: ...


def _as_cid(cid: CidLike) -> ContentIdentifier:
    if isinstance(cid, ContentIdentifier):
        return cid
    return ContentIdentifier.parse(cid)


# ----------------------------
# In-memory store
# ----------------------------

class InMemoryBlobStore:
    """
    Blob store backed by a dict.

    Blobs are keyed by the root CID the HTTP store would upload them under (the
    raw-leaf CIDv1 for anything up to one chunk). Names are kept for inspection only.
    """
    def __init__(self):
        self._blobs: dict[ContentIdentifier, bytes] = {}
        self.names: dict[ContentIdentifier, str] = {}

    def pin(self, data: bytes, name: str) -> ContentIdentifier:
        cid = identify_blob(data)
        self._blobs[cid] = bytes(data)
        self.names[cid] = name
        logger.debug("pinned %d bytes as %s (%s)", len(data), cid, name)
        return cid

    def fetch(self, cid: CidLike) -> bytes:
        key = _as_cid(cid)
        if key not in self._blobs:
            raise NotFound(str(key))
        return self._blobs[key]

    def __contains__(self, cid: CidLike) -> bool:
        return _as_cid(cid) in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


# ----------------------------
# HTTP store (upload endpoint + IPFS gateway)
# ----------------------------

@dataclass
class StoreCallReport:
    ok: bool
    status_code: int
    elapsed_ms: int
    request: dict[str, Any]


class HttpBlobStore:
    """
    Pins through an upload endpoint and fetches through an IPFS gateway.

    Upload:
      POST <upload_url>, multipart field "file" (filename=name) holding the blob
      packed as a CARv1; the returned CID is the root computed locally. A "cid"
      in the JSON reply, when present, is only compared against it.
    Fetch:
      GET <gateway_url>/ipfs/<cid>

    Errors:
      - 404 on fetch -> NotFound
      - transport errors, timeouts, other non-2xx -> UpstreamUnavailable
    """
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or Settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self.settings.timeout_s,
            follow_redirects=True,
        )
        self.last_report: Optional[StoreCallReport] = None

    async def __aenter__(self) -> "HttpBlobStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        if self.settings.upload_token:
            return {"Authorization": f"Bearer {self.settings.upload_token}"}
        return {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        req_summary = {"method": method, "url": url}
        t0 = time.time()
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            elapsed_ms = int((time.time() - t0) * 1000)
            self.last_report = StoreCallReport(False, 0, elapsed_ms, req_summary)
            raise UpstreamUnavailable(f"Request error: {type(e).__name__}: {e}") from e

        elapsed_ms = int((time.time() - t0) * 1000)
        self.last_report = StoreCallReport(resp.is_success, resp.status_code, elapsed_ms, req_summary)
        logger.debug("%s %s -> %d in %dms", method, url, resp.status_code, elapsed_ms)
        return resp

    async def pin(self, data: bytes, name: str) -> ContentIdentifier:
        if not isinstance(data, (bytes, bytearray)):
            raise InvalidInput("blob must be bytes")

        root, car = pack_car(bytes(data))
        resp = await self._request(
            "POST",
            self.settings.upload_url,
            headers=self._auth_headers() or None,
            files={"file": (name, car, CAR_CONTENT_TYPE)},
        )
        if not resp.is_success:
            raise UpstreamUnavailable(
                f"Unable to pin file to IPFS (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )

        self._cross_check(resp, root)
        logger.debug("pinned %d bytes as %s (%s)", len(data), root, name)
        return root

    def _cross_check(self, resp: httpx.Response, root: ContentIdentifier) -> None:
        try:
            body = resp.json()
        except ValueError:
            return
        reported = body.get("cid") if isinstance(body, dict) else None
        if not isinstance(reported, str):
            return
        try:
            ok = ContentIdentifier.parse(reported) == root
        except InvalidInput:
            ok = False
        if not ok:
            logger.warning("upload endpoint reported cid %r, packed root is %s", reported, root)

    async def fetch(self, cid: CidLike) -> bytes:
        key = str(_as_cid(cid))
        url = f"{self.settings.gateway_url.rstrip('/')}/ipfs/{key}"

        resp = await self._request("GET", url)
        if resp.status_code == 404:
            raise NotFound(key)
        if not resp.is_success:
            raise UpstreamUnavailable(
                f"Could not fetch {key} from IPFS (HTTP {resp.status_code})",
                status_code=resp.status_code,
            )
        return resp.content
