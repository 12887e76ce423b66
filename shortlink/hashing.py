"""Privacy-preserving hashing of visitor addresses."""

import hashlib

_SALT = "makemeshort_salt"


def hash_ip(ip: str) -> str:
    """Return the salted SHA-256 of an IP address as lowercase hex."""
    return hashlib.sha256(f"{ip}{_SALT}".encode()).hexdigest()