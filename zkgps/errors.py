"""
Error kinds for the zkGPS core.

Two failure modes are kept apart:
- Caller bugs (bad precision, malformed geohash, out-of-range coordinates)
  raise InvalidArgument.
- Verification failures (expired, mismatched, stale, bad signature) are
  returned as False by the verify_* functions and never raised.
"""

from __future__ import annotations


class ZkGpsError(Exception):
    """Base class for all zkGPS errors."""
    pass


class InvalidArgument(ZkGpsError, ValueError):
    """Raised when a caller passes an argument outside the protocol's domain."""
    pass


class InsecureEnvironment(ZkGpsError, RuntimeError):
    """
    Raised when no cryptographically secure provider is available.

    The insecure test providers are only returned when the caller opts in
    explicitly (allow_insecure=True).
    """
    pass
