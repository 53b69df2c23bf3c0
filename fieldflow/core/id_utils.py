import shortuuid

REFERENCE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"


def generate_reference(prefix: str, length: int = 8) -> str:
    """Human-friendly reference such as ``TSK-7QK2M9XA`` (no 0/O or 1/I)."""
    token = shortuuid.ShortUUID(alphabet=REFERENCE_ALPHABET).random(length=length)
    return f"{prefix}-{token}"
