"""
Electronic signatures module for GxP compliance.

Implements 21 CFR Part 11 signatures with:
- Password re-authentication at the moment of signing
- A versioned, scope-keyed vocabulary of signature meanings
- ECDSA sealing of each stored signature record
- Audit trail integration, including refused change attempts
"""

from .models import ElectronicSignatureDB, SignatureRecord, SignatureVerification
from .sealing import SignatureSealer
from .service import ElectronicSignatureService
from .vocabulary import DEFAULT_VOCABULARY, MeaningVocabulary

__all__ = [
    "DEFAULT_VOCABULARY",
    "ElectronicSignatureDB",
    "ElectronicSignatureService",
    "MeaningVocabulary",
    "SignatureRecord",
    "SignatureSealer",
    "SignatureVerification",
]
