"""
Utility functions for the chat client: channel addressing, document paths
and challenge code digests.
"""

import hmac
import re
import hashlib
import logging

logger = logging.getLogger(__name__)

CHANNEL_SEPARATOR = "_"


def canonicalize(id_a: str, id_b: str) -> str:
    """
    Derive the channel id for a two-party conversation.

    The ids are sorted before joining, so either participant computes the
    same channel without any handshake.
    """
    first, second = sorted((id_a, id_b))
    return f"{first}{CHANNEL_SEPARATOR}{second}"


# =============================================================================
# Document Paths
# =============================================================================

def profile_path(app_id: str, uid: str) -> str:
    return f"apps/{app_id}/users/{uid}/profile"


def directory_collection(app_id: str) -> str:
    return f"apps/{app_id}/directory"


def directory_entry_path(app_id: str, uid: str) -> str:
    return f"{directory_collection(app_id)}/{uid}"


def channel_messages_collection(app_id: str, channel_id: str) -> str:
    return f"apps/{app_id}/channels/{channel_id}/messages"


def split_path(path: str) -> tuple:
    """Split a document path into (collection path, document id)."""
    collection, _, doc_id = path.strip("/").rpartition("/")
    if not collection or not doc_id:
        raise ValueError(f"Invalid document path: {path!r}")
    return collection, doc_id


# =============================================================================
# Input Helpers
# =============================================================================

def strip_phone_formatting(value: str) -> str:
    """Drop the spaces, dashes and parentheses users type inside numbers."""
    return "".join(ch for ch in value if ch not in " -()\t")


def code_digest(code: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of a challenge code."""
    return hmac.new(
        secret.encode("utf-8"),
        code.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def verify_code(code: str, expected_digest: str, secret: str) -> bool:
    """
    Verify a submitted code against the stored digest.

    Args:
        code: Code typed by the user
        expected_digest: Hex digest stored when the code was issued
        secret: CHALLENGE_SECRET

    Returns:
        True if the code matches, False otherwise
    """
    logger.debug("Verifying challenge code")

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(code_digest(code, secret), expected_digest)
    logger.info(f"Challenge code verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def is_ascii_digits(value: str) -> bool:
    """True for a non-empty string of 0-9 only; str.isdigit() also accepts other scripts."""
    return re.fullmatch(r"[0-9]+", value) is not None
