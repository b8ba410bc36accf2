"""
Fingerprint Utility
===================
Stable identity keys for issues and fix attempts.

Issue Identity Key:
    kind + component + message (first 200 chars)
    Identifies the same defect across detection passes. Never random,
    never time-based, so retry counters and history survive restarts.

Fix Fingerprint:
    issue identity key + hash of the text the fix introduces
    Identifies the exact same fix being proposed again.
"""
import hashlib

_MESSAGE_PREFIX = 200


def issue_identity_key(kind: str, component: str, message: str) -> str:
    """
    Generate a stable identity key for an issue.

    Parameters
    ----------
    kind : str
        Issue variant tag (runtime, functional, ...).
    component : str
        Component tag the issue was attributed to.
    message : str
        Detector message. Only the first 200 characters participate.

    Returns
    -------
    str
        16 hex characters of a sha256 digest.
    """
    normalized = " ".join((message or "").split())[:_MESSAGE_PREFIX]
    raw = f"{kind}:{component}:{normalized}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def fix_fingerprint(issue_key: str, fix_kind: str, payload: str) -> str:
    """Fingerprint a candidate fix for repeat detection."""
    payload_hash = hashlib.sha256((payload or "").encode("utf-8")).hexdigest()[:16]
    combined = f"{issue_key}:{fix_kind}:{payload_hash}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


def sha256_file(path: str, chunk_size: int = 65536) -> str:
    """Return the hex sha256 of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()
