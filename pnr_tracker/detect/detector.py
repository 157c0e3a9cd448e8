"""Change detection between the stored status and a fresh snapshot."""
import logging
import re
from typing import Optional

from pnr_tracker.models import ChangeCategory, StatusSnapshot, Transition, TransitionKind

logger = logging.getLogger(__name__)

_WAITLIST = re.compile(r"(?:WL|WAITLIST|RLWL|PQWL|GNWL)[\s/]*(\d+)", re.IGNORECASE)

# Statuses are normalized upstream, so keyword matching is on upper-case text
_CANCELLED = ("CAN", "CANCEL")
_CHART_PREPARED = ("CHART PREPARED", "CHART PREP")
_CONFIRMED = ("CNF", "CONFIRM")


def waitlist_position(status: str) -> int:
    """Waitlist number in a status like 'WL/12' or 'GNWL 5', 0 if none."""
    match = _WAITLIST.search(status)
    return int(match.group(1)) if match else 0


def categorize(status: str, finalized: bool = False) -> ChangeCategory:
    """Which notification category a new status falls into."""
    if finalized:
        return ChangeCategory.EXPIRED
    text = status.upper()
    if any(keyword in text for keyword in _CANCELLED):
        return ChangeCategory.CANCELLATION
    if any(keyword in text for keyword in _CHART_PREPARED):
        return ChangeCategory.CHART_PREPARED
    if any(keyword in text for keyword in _CONFIRMED):
        return ChangeCategory.CONFIRMATION
    return ChangeCategory.WAITLIST_MOVEMENT


class ChangeDetector:
    """Classifies a fresh snapshot against the previous status.

    Comparison is exact: the upstream client already normalizes formatting,
    so any difference in text is a real change.
    """

    def detect(self, previous: Optional[str], fresh: StatusSnapshot) -> Transition:
        if fresh.finalized:
            kind = TransitionKind.FINALIZED
        elif previous is None:
            kind = TransitionKind.FIRST_SEEN
        elif previous == fresh.status:
            kind = TransitionKind.UNCHANGED
        else:
            kind = TransitionKind.UPDATED

        category = None
        if kind is not TransitionKind.UNCHANGED:
            category = categorize(fresh.status, finalized=fresh.finalized)
            logger.debug(f"PNR {fresh.pnr}: {kind.value} {previous!r} -> {fresh.status!r} ({category.value})")

        return Transition(
            kind=kind,
            pnr=fresh.pnr,
            old_status=previous,
            new_status=fresh.status,
            category=category,
            snapshot=fresh,
        )
