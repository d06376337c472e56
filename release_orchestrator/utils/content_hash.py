"""
Content Hash Utility
====================
Deterministic digests for artifact blobs and descriptor content.

Rules:
    - SHA-256 over raw bytes, full 64 hex chars (artifacts are addressed by it).
    - Text is hashed as UTF-8.
    - Same content always produces the same digest.
"""
import hashlib


def compute_digest(data: bytes) -> str:
    """Return the sha256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def compute_text_digest(text: str) -> str:
    """Short (16 hex) digest of text, used in logs to compare descriptor versions."""
    if not text:
        return ""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
