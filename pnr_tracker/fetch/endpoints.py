"""URL builders for the upstream status source."""
from pnr_tracker.config import config


def get_status_url(pnr: str, base_url: str | None = None) -> str:
    """Get the status lookup URL for a PNR."""
    base = (base_url or config.UPSTREAM_URL).rstrip("/")
    return f"{base}/{pnr}"
