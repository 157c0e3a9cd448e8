"""PNR format validation."""
from pnr_tracker.errors import InvalidRecordId

PNR_LENGTH = 10


def validate_pnr(pnr: str) -> str:
    """Return the PNR if it is exactly 10 ASCII digits, raise otherwise."""
    if not isinstance(pnr, str):
        raise InvalidRecordId("Invalid PNR: PNR must be a string")
    if len(pnr) != PNR_LENGTH:
        raise InvalidRecordId(f"Invalid PNR: PNR must be exactly {PNR_LENGTH} digits")
    # str.isdigit() accepts non-ASCII digits
    if not all("0" <= char <= "9" for char in pnr):
        raise InvalidRecordId("Invalid PNR: PNR must contain only digits")
    return pnr


def is_valid_pnr(pnr: str) -> bool:
    """Check PNR format without raising."""
    try:
        validate_pnr(pnr)
    except InvalidRecordId:
        return False
    return True
