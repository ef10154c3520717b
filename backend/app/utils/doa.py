"""DOA (dead-on-arrival) number rules shared by the store and the shipping client."""

DOA_MAX_LENGTH = 20


def normalize_doa(doa_number: str | None) -> str | None:
    """Trim and cap at 20 characters; empty means "clear"."""
    value = str(doa_number or "").strip()[:DOA_MAX_LENGTH].strip()
    return value or None
