from __future__ import annotations

import hmac
import logging
from typing import Optional, Protocol

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_der_private_key,
)

from zkgps.errors import InsecureEnvironment, InvalidArgument
from zkgps.hashing import HashProvider, InsecureTestHashProvider, generate_salt
from zkgps.models import KeyPair

logger = logging.getLogger(__name__)

P256_SCALAR_BYTES = 32


class SignatureProvider(Protocol):
    """Asymmetric signing capability used by commitments and proofs."""

    def generate_keypair(self) -> KeyPair:
        ...

    def sign(self, message: str, private_key: str) -> str:
        ...

    def verify(self, message: str, signature: str, public_key: str) -> bool:
        """True iff the signature is valid. Never raises on malformed input."""
        ...


class EcdsaP256SignatureProvider:
    """
    Production signature provider: ECDSA over P-256 with SHA-256.

    Encodings (hex):
    - private key: PKCS8 DER
    - public key: X9.62 uncompressed point (65 bytes)
    - signature: raw r||s (64 bytes)
    """

    name = "ecdsa-p256-sha256"

    def __init__(self) -> None:
        try:
            ec.derive_private_key(1, ec.SECP256R1())
        except UnsupportedAlgorithm as e:
            raise InsecureEnvironment("ECDSA P-256 unavailable from crypto backend") from e

    def generate_keypair(self) -> KeyPair:
        priv = ec.generate_private_key(ec.SECP256R1())
        priv_der = priv.private_bytes(Encoding.DER, PrivateFormat.PKCS8, NoEncryption())
        pub_raw = priv.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
        return KeyPair(public_key=pub_raw.hex(), private_key=priv_der.hex())

    def _load_private(self, private_key: str) -> ec.EllipticCurvePrivateKey:
        try:
            priv = load_der_private_key(bytes.fromhex(private_key), password=None)
        except (ValueError, UnsupportedAlgorithm) as e:
            raise InvalidArgument("Private key is not hex-encoded PKCS8 DER") from e
        if not isinstance(priv, ec.EllipticCurvePrivateKey) or priv.curve.name != "secp256r1":
            raise InvalidArgument("Not a P-256 private key")
        return priv

    def sign(self, message: str, private_key: str) -> str:
        priv = self._load_private(private_key)
        der = priv.sign(message.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return (r.to_bytes(P256_SCALAR_BYTES, "big") + s.to_bytes(P256_SCALAR_BYTES, "big")).hex()

    def verify(self, message: str, signature: str, public_key: str) -> bool:
        try:
            raw = bytes.fromhex(signature)
            if len(raw) != 2 * P256_SCALAR_BYTES:
                return False
            r = int.from_bytes(raw[:P256_SCALAR_BYTES], "big")
            s = int.from_bytes(raw[P256_SCALAR_BYTES:], "big")
            pub = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256R1(), bytes.fromhex(public_key)
            )
            pub.verify(encode_dss_signature(r, s), message.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
            return True
        except (InvalidSignature, ValueError):
            return False


class InsecureTestSignatureProvider:
    """
    Keyed-hash stand-in for signatures.

    TEST ONLY. Anyone holding the public key can forge a signature.
    Never returned unless a caller opts in explicitly.
    """

    name = "insecure-test"

    def __init__(self, hasher: Optional[HashProvider] = None) -> None:
        self.hasher = hasher or InsecureTestHashProvider()

    def generate_keypair(self) -> KeyPair:
        private_key = generate_salt(32)
        return KeyPair(public_key=self.hasher.digest(private_key), private_key=private_key)

    def sign(self, message: str, private_key: str) -> str:
        return self.hasher.digest(f"{message}|{self.hasher.digest(private_key)}")

    def verify(self, message: str, signature: str, public_key: str) -> bool:
        expected = self.hasher.digest(f"{message}|{public_key}")
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def load_signature_provider(allow_insecure: bool = False) -> SignatureProvider:
    """
    Return the production signature provider.

    Raises:
        InsecureEnvironment: If ECDSA P-256 is unavailable and allow_insecure is False
    """
    try:
        return EcdsaP256SignatureProvider()
    except InsecureEnvironment:
        if not allow_insecure:
            raise
        logger.warning("Secure signatures unavailable; using InsecureTestSignatureProvider (allow_insecure=True)")
        return InsecureTestSignatureProvider()
