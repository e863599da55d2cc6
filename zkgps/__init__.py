"""
zkGPS - Privacy-preserving location commitments and proximity proofs.

Protocol Version: zkgps/v1
Proof Semantics: trusted assertions (see zkgps.proofs)
"""

__version__ = "0.1.0"
__protocol__ = "zkgps/v1"

# Wire protocol versions this library can read
SUPPORTED_PROTOCOLS = [
    "zkgps/v1",
]

# Message envelope version stamped on transport messages
MESSAGE_VERSION = 1
