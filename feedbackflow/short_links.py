"""Short codes for public dispute-resolution links."""
import secrets
import string
from datetime import datetime, timedelta, timezone

from .errors import ValidationError

ALLOWED_CHARS = string.digits + string.ascii_lowercase + string.ascii_uppercase
CODE_LENGTH = 7

# Attempts before giving up on finding an unused code
MAX_GENERATION_ATTEMPTS = 10

# Link lifetime bounds: one minute to one year
MIN_DURATION_SECONDS = 60
MAX_DURATION_SECONDS = 31536000


def generate_short_code() -> str:
    """Generate a random 7-character code from ``[0-9a-zA-Z]``.

    62**7 (about 3.5 trillion) combinations make collisions unlikely, but
    callers still check uniqueness against unexpired codes.
    """
    return "".join(secrets.choice(ALLOWED_CHARS) for _ in range(CODE_LENGTH))


def validate_short_code(code: str) -> bool:
    """Check that ``code`` is exactly 7 allowed characters."""
    return len(code) == CODE_LENGTH and all(char in ALLOWED_CHARS for char in code)


def check_duration(
    duration_seconds: int,
    min_seconds: int = MIN_DURATION_SECONDS,
    max_seconds: int = MAX_DURATION_SECONDS,
) -> None:
    """Raise ``ValidationError`` unless the link lifetime is within bounds."""
    if not min_seconds <= duration_seconds <= max_seconds:
        raise ValidationError(
            f"Link duration must be between {min_seconds} and {max_seconds} seconds",
            fields=["duration_seconds"],
        )


def expiry_from_now(duration_seconds: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=duration_seconds)
