"""
Utility functions for the WhatsApp inbox service.
"""

import hmac
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_NON_DIGITS = re.compile(r"\D")


def utc_now_iso() -> str:
    """Current server time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def parse_unix_timestamp(value: str) -> str:
    """
    Convert a provider timestamp (Unix seconds, sent as a string) to ISO-8601 UTC.

    Raises:
        ValueError: if the value is not an integer number of seconds, or is
            outside the range the platform can represent
    """
    seconds = int(str(value).strip())
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime(ISO_FORMAT)
    except (OverflowError, OSError) as e:
        raise ValueError(f"timestamp out of range: {seconds}") from e


def normalize_phone_number(raw: str, default_country_code: str) -> str:
    """
    Reduce a phone number to the digits-only form the Cloud API expects.

    All non-digit characters are stripped. A bare 10-digit national number
    gets the default calling code prefixed; anything else is assumed to
    already carry its country code.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == 10:
        digits = default_country_code + digits
    return digits


def display_phone_number(digits: str) -> str:
    """Human-readable form of a digits-only WhatsApp id."""
    return "+" + digits


def verify_hub_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify the X-Hub-Signature-256 header Meta sends with webhook deliveries.

    Args:
        body: Raw request body bytes
        signature: Header value, "sha256=<hex digest>"
        secret: Meta app secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith("sha256="):
        logger.warning("Missing or malformed X-Hub-Signature-256 header")
        return False

    expected_signature = "sha256=" + hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"Hub signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
