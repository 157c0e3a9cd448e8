"""HTTP client for the upstream PNR status source."""
import logging
import re
from typing import Any, Optional
import httpx

from pnr_tracker.config import config
from pnr_tracker.errors import UpstreamPermanent, UpstreamTransient
from pnr_tracker.fetch.endpoints import get_status_url
from pnr_tracker.models import StatusSnapshot

logger = logging.getLogger(__name__)

EXPIRED_STATUS = "EXPIRED"

_WHITESPACE = re.compile(r"\s+")


def is_retryable_status(response: httpx.Response) -> bool:
    """Check if status code is retryable."""
    return response.status_code in (429, 500, 502, 503, 504)


def normalize_status(raw: str) -> str:
    """Canonical status text: trimmed, single-spaced, upper-case."""
    return _WHITESPACE.sub(" ", raw.strip()).upper()


class UpstreamStatusClient:
    """Performs one status lookup per call. Retries are the caller's job."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = config.UPSTREAM_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or config.UPSTREAM_URL
        limits = httpx.Limits(
            max_connections=config.UPSTREAM_CONCURRENCY * 2,
            max_keepalive_connections=config.UPSTREAM_CONCURRENCY,
        )
        self.client = httpx.AsyncClient(
            http2=transport is None,
            timeout=timeout,
            limits=limits,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def fetch_status(self, pnr: str) -> StatusSnapshot:
        """Fetch the current status for one PNR."""
        url = get_status_url(pnr, self.base_url)
        try:
            response = await self.client.get(url)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            logger.warning(f"Network error for PNR {pnr}: {e}")
            raise UpstreamTransient(f"network error: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamTransient(f"transport error: {e}") from e

        if is_retryable_status(response):
            raise UpstreamTransient(f"HTTP {response.status_code}", status_code=response.status_code)
        if response.status_code in (404, 410):
            raise UpstreamPermanent(f"PNR {pnr} not found upstream", status=EXPIRED_STATUS)
        if response.status_code >= 500:
            raise UpstreamTransient(f"HTTP {response.status_code}", status_code=response.status_code)
        if response.status_code != 200:
            raise UpstreamPermanent(f"Unexpected HTTP {response.status_code} for PNR {pnr}")

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamPermanent(f"Malformed response for PNR {pnr}: {e}") from e
        return parse_status_payload(pnr, payload)


def parse_status_payload(pnr: str, payload: Any) -> StatusSnapshot:
    """Turn the upstream JSON body into a snapshot, or raise UpstreamPermanent."""
    if not isinstance(payload, dict):
        raise UpstreamPermanent(f"Malformed response for PNR {pnr}: expected an object")

    if payload.get("error") in ("not_found", "expired", "flushed"):
        raise UpstreamPermanent(f"PNR {pnr} reported {payload['error']}", status=EXPIRED_STATUS)

    raw_status = payload.get("status")
    if not isinstance(raw_status, str) or not raw_status.strip():
        raise UpstreamPermanent(f"Malformed response for PNR {pnr}: missing status")

    returned_pnr = str(payload.get("pnr", pnr))
    if returned_pnr != pnr:
        raise UpstreamPermanent(f"Upstream answered for PNR {returned_pnr} instead of {pnr}")

    return StatusSnapshot(
        pnr=pnr,
        status=normalize_status(raw_status),
        finalized=bool(payload.get("flushed") or payload.get("journey_completed")),
        origin=payload.get("from") or None,
        destination=payload.get("to") or None,
        travel_date=payload.get("date") or None,
    )
