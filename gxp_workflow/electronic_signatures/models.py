"""Signature table and the records handed back to callers."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, Index, String, Text, UniqueConstraint

from ..db import Base, insert_only


@insert_only
class ElectronicSignatureDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for electronic signatures."""

    __tablename__ = "electronic_signatures"

    id = Column(String(50), primary_key=True)
    scope = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    signed_by_id = Column(String(100), nullable=False, index=True)
    meaning = Column(String(500), nullable=False)
    comment = Column(Text, nullable=True)
    signed_at = Column(DateTime, nullable=False)

    vocabulary_version = Column(String(50), nullable=False)
    content_hash = Column(String(128), nullable=False)
    signature_value = Column(Text, nullable=False)
    algorithm = Column(String(10), nullable=False)
    key_fingerprint = Column(String(128), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "scope",
            "entity_type",
            "entity_id",
            "signed_by_id",
            name="uq_esignature_scope_entity_signer",
        ),
        Index("idx_esignature_entity", entity_type, entity_id),
    )

    def sealed_content(self) -> Dict[str, Any]:
        """The fields covered by the cryptographic seal."""
        return {
            "id": self.id,
            "scope": self.scope,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "signed_by_id": self.signed_by_id,
            "meaning": self.meaning,
            "comment": self.comment,
            "signed_at": self.signed_at.isoformat(),
            "vocabulary_version": self.vocabulary_version,
        }


@dataclass
class SignatureRecord:
    """Read-only view of a stored signature."""

    id: str
    scope: str
    entity_type: str
    entity_id: str
    signed_by_id: str
    meaning: str
    comment: Optional[str]
    signed_at: datetime
    vocabulary_version: str
    algorithm: str
    key_fingerprint: str
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None

    @classmethod
    def from_db(
        cls, row: ElectronicSignatureDB, signer: Optional[Any] = None
    ) -> "SignatureRecord":
        return cls(
            id=row.id,
            scope=row.scope,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            signed_by_id=row.signed_by_id,
            meaning=row.meaning,
            comment=row.comment,
            signed_at=row.signed_at,
            vocabulary_version=row.vocabulary_version,
            algorithm=row.algorithm,
            key_fingerprint=row.key_fingerprint,
            signer_name=getattr(signer, "name", None),
            signer_email=getattr(signer, "email", None),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "scope": self.scope,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "signer": {
                "id": self.signed_by_id,
                "name": self.signer_name,
                "email": self.signer_email,
            },
            "meaning": self.meaning,
            "comment": self.comment,
            "signed_at": self.signed_at.isoformat(),
            "vocabulary_version": self.vocabulary_version,
            "algorithm": self.algorithm,
            "key_fingerprint": self.key_fingerprint,
        }


@dataclass
class SignatureVerification:
    """Result of looking up a signature for verification."""

    signature: SignatureRecord
    signer_active: bool
    seal_valid: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature.to_dict(),
            "signer_active": self.signer_active,
            "seal_valid": self.seal_valid,
        }
