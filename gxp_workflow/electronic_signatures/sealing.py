"""
Cryptographic sealing of signature records.

Each stored signature carries a content hash and an ECDSA signature over its
canonical fields, so a row edited outside the application no longer verifies.
"""

import base64
import hashlib
import json
import logging
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..config import SignatureAlgorithmType

logger = logging.getLogger(__name__)


class SignatureSealer:
    """Signs and verifies the canonical content of signature records."""

    def __init__(
        self,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
        algorithm: SignatureAlgorithmType = SignatureAlgorithmType.ECDSA_SHA256,
    ):
        self.algorithm = SignatureAlgorithmType(algorithm)
        if private_key is None:
            logger.warning(
                "No signing key configured, generating ephemeral key pair"
            )
            private_key = ec.generate_private_key(ec.SECP256R1())
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.key_fingerprint = self._get_key_fingerprint()

    @classmethod
    def from_pem_file(
        cls,
        path: str,
        algorithm: SignatureAlgorithmType = SignatureAlgorithmType.ECDSA_SHA256,
        password: Optional[bytes] = None,
    ) -> "SignatureSealer":
        with open(path, "rb") as fh:
            key = serialization.load_pem_private_key(fh.read(), password=password)
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ValueError(f"{path} does not contain an EC private key")
        return cls(private_key=key, algorithm=algorithm)

    def _hash_algorithm(self) -> hashes.HashAlgorithm:
        if self.algorithm == SignatureAlgorithmType.ECDSA_SHA512:
            return hashes.SHA512()
        return hashes.SHA256()

    def _get_key_fingerprint(self) -> str:
        """Calculate public key fingerprint."""
        public_bytes = self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return hashlib.sha256(public_bytes).hexdigest()

    @staticmethod
    def canonical_bytes(content: Dict[str, Any]) -> bytes:
        return json.dumps(content, sort_keys=True, default=str).encode("utf-8")

    def content_hash(self, content: Dict[str, Any]) -> str:
        return hashlib.sha256(self.canonical_bytes(content)).hexdigest()

    def seal(self, content: Dict[str, Any]) -> Tuple[str, str]:
        """Return ``(content_hash, base64 signature)`` for the content."""
        data = self.canonical_bytes(content)
        signature = self.private_key.sign(data, ec.ECDSA(self._hash_algorithm()))
        return (
            hashlib.sha256(data).hexdigest(),
            base64.b64encode(signature).decode("utf-8"),
        )

    def verify(
        self, content: Dict[str, Any], content_hash: str, signature_value: str
    ) -> bool:
        """True when both the hash and the ECDSA signature match."""
        data = self.canonical_bytes(content)
        if hashlib.sha256(data).hexdigest() != content_hash:
            return False
        try:
            self.public_key.verify(
                base64.b64decode(signature_value),
                data,
                ec.ECDSA(self._hash_algorithm()),
            )
        except InvalidSignature:
            return False
        return True
