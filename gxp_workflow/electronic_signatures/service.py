"""
Electronic signature service.

Implements 21 CFR Part 11 signatures bound to a case or step:
- re-authentication of the signer on every signature
- meanings drawn from a versioned, scope-keyed vocabulary
- one signature per (scope, entity, signer)
- sealed, insert-only records whose change attempts are audited
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..access_control import User, UserDirectory
from ..audit_trail import AuditAction, AuditTrail
from ..config import WorkflowConfig
from ..db import Database, utcnow
from ..exceptions import (
    AuthenticationFailed,
    DuplicateSignature,
    InvalidSignatureMeaning,
    NotFound,
    SignatureImmutable,
)
from .models import ElectronicSignatureDB, SignatureRecord, SignatureVerification
from .sealing import SignatureSealer
from .vocabulary import DEFAULT_VOCABULARY, MeaningVocabulary

logger = logging.getLogger(__name__)


class ElectronicSignatureService:
    """Creates, verifies and guards electronic signatures."""

    def __init__(
        self,
        db: Database,
        audit: AuditTrail,
        users: UserDirectory,
        vocabulary: MeaningVocabulary = DEFAULT_VOCABULARY,
        sealer: Optional[SignatureSealer] = None,
    ):
        self.db = db
        self.audit = audit
        self.users = users
        self.vocabulary = vocabulary
        self.sealer = sealer or SignatureSealer()

    @classmethod
    def from_config(
        cls,
        config: WorkflowConfig,
        db: Database,
        audit: AuditTrail,
        users: UserDirectory,
    ) -> "ElectronicSignatureService":
        vocabulary = (
            MeaningVocabulary.from_yaml(config.signature_vocabulary_path)
            if config.signature_vocabulary_path
            else DEFAULT_VOCABULARY
        )
        if config.signature_key_path:
            sealer = SignatureSealer.from_pem_file(
                config.signature_key_path, config.signature_algorithm
            )
        else:
            sealer = SignatureSealer(algorithm=config.signature_algorithm)
        return cls(db, audit, users, vocabulary=vocabulary, sealer=sealer)

    @contextmanager
    def _session(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
        else:
            with self.db.transaction() as own:
                yield own

    # Vocabulary

    def list_scopes(self) -> List[str]:
        return self.vocabulary.list_scopes()

    def list_meanings(self, scope: str) -> List[str]:
        """Controlled meanings for a signature scope."""
        if not self.vocabulary.has_scope(scope):
            raise NotFound("Signature scope", scope)
        return self.vocabulary.list_meanings(scope)

    # Re-authentication

    def _authenticate(
        self,
        session: Session,
        user_id: str,
        password: str,
        context: Dict[str, Any],
    ) -> User:
        row = self.users.find(session, user_id)
        if row is None or not self.users.check_password(session, user_id, password):
            reason = "Invalid credentials"
        elif not row.is_active:
            reason = "User account is inactive"
        else:
            return User.from_db(row)

        logger.warning("Signature re-authentication failed for %s: %s", user_id, reason)
        self.audit.record_security_event(
            user_id=user_id,
            action=AuditAction.ESIGNATURE_AUTH_FAILED,
            entity_type=context.get("entity_type"),
            entity_id=context.get("entity_id"),
            details=context,
            error_message=reason,
        )
        raise AuthenticationFailed(user_id, reason)

    def verify_password(
        self, user_id: str, password: str, session: Optional[Session] = None
    ) -> User:
        """Re-authenticate without signing; failures are audited."""
        with self._session(session) as s:
            return self._authenticate(s, user_id, password, {"purpose": "verify-password"})

    # Signing

    def sign(
        self,
        user_id: str,
        password: str,
        scope: str,
        entity_type: str,
        entity_id: Any,
        meaning: str,
        comment: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> SignatureRecord:
        """
        Create an electronic signature.

        When ``session`` is given the signature and its audit entry join the
        caller's transaction; otherwise they are committed on their own.

        Raises:
            AuthenticationFailed: password mismatch or inactive signer
            NotFound: unknown scope
            InvalidSignatureMeaning: meaning not in the scope's vocabulary
            DuplicateSignature: signer already signed this entity for scope
        """
        entity_id = str(entity_id)
        with self._session(session) as s:
            signer = self._authenticate(
                s,
                user_id,
                password,
                {
                    "purpose": "sign",
                    "scope": scope,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                },
            )

            if not self.vocabulary.has_scope(scope):
                raise NotFound("Signature scope", scope)
            if not self.vocabulary.is_valid(scope, meaning):
                raise InvalidSignatureMeaning(
                    scope, meaning, self.vocabulary.list_meanings(scope)
                )

            if self._find_existing(s, scope, entity_type, entity_id, user_id):
                raise DuplicateSignature(scope, entity_type, entity_id, user_id)

            row = ElectronicSignatureDB(
                id=str(uuid.uuid4()),
                scope=scope,
                entity_type=entity_type,
                entity_id=entity_id,
                signed_by_id=user_id,
                meaning=meaning,
                comment=comment,
                signed_at=utcnow(),
                vocabulary_version=self.vocabulary.version,
                algorithm=self.sealer.algorithm.value,
                key_fingerprint=self.sealer.key_fingerprint,
            )
            row.content_hash, row.signature_value = self.sealer.seal(
                row.sealed_content()
            )
            s.add(row)
            try:
                s.flush()
            except IntegrityError as exc:
                raise DuplicateSignature(scope, entity_type, entity_id, user_id) from exc

            self.audit.record(
                s,
                user_id=user_id,
                action=AuditAction.ESIGNATURE_CREATED,
                entity_type=entity_type,
                entity_id=entity_id,
                new_values={
                    "signature_id": row.id,
                    "scope": scope,
                    "meaning": meaning,
                    "comment": comment,
                },
                timestamp=row.signed_at,
            )
            logger.info(
                "Signature %s created by %s on %s %s (%s)",
                row.id,
                user_id,
                entity_type,
                entity_id,
                scope,
            )
            return SignatureRecord.from_db(row, signer)

    def _find_existing(
        self,
        session: Session,
        scope: str,
        entity_type: str,
        entity_id: str,
        user_id: str,
    ) -> Optional[ElectronicSignatureDB]:
        return session.scalars(
            select(ElectronicSignatureDB).where(
                and_(
                    ElectronicSignatureDB.scope == scope,
                    ElectronicSignatureDB.entity_type == entity_type,
                    ElectronicSignatureDB.entity_id == entity_id,
                    ElectronicSignatureDB.signed_by_id == user_id,
                )
            )
        ).first()

    # Lookup

    def get(self, signature_id: str, session: Optional[Session] = None) -> SignatureRecord:
        with self._session(session) as s:
            row = s.get(ElectronicSignatureDB, signature_id)
            if row is None:
                raise NotFound("Electronic signature", signature_id)
            return SignatureRecord.from_db(row, self.users.find(s, row.signed_by_id))

    def verify(self, signature_id: str) -> SignatureVerification:
        """Signature details, signer status and seal check. Read-only."""
        with self.db.reader() as s:
            row = s.get(ElectronicSignatureDB, signature_id)
            if row is None:
                raise NotFound("Electronic signature", signature_id)
            signer = self.users.find(s, row.signed_by_id)
            seal_valid = self.sealer.verify(
                row.sealed_content(), row.content_hash, row.signature_value
            )
            if not seal_valid:
                logger.error("Seal of signature %s does not verify", signature_id)
            return SignatureVerification(
                signature=SignatureRecord.from_db(row, signer),
                signer_active=bool(signer is not None and signer.is_active),
                seal_valid=seal_valid,
            )

    def list_for_entity(self, entity_type: str, entity_id: Any) -> List[SignatureRecord]:
        with self.db.reader() as s:
            rows = s.scalars(
                select(ElectronicSignatureDB)
                .where(
                    and_(
                        ElectronicSignatureDB.entity_type == entity_type,
                        ElectronicSignatureDB.entity_id == str(entity_id),
                    )
                )
                .order_by(ElectronicSignatureDB.signed_at)
            ).all()
            return [
                SignatureRecord.from_db(row, self.users.find(s, row.signed_by_id))
                for row in rows
            ]

    def list_for_user(self, user_id: str) -> List[SignatureRecord]:
        with self.db.reader() as s:
            signer = self.users.find(s, user_id)
            rows = s.scalars(
                select(ElectronicSignatureDB)
                .where(ElectronicSignatureDB.signed_by_id == user_id)
                .order_by(ElectronicSignatureDB.signed_at.desc())
            ).all()
            return [SignatureRecord.from_db(row, signer) for row in rows]

    # Immutability traps

    def block_modification(
        self,
        signature_id: str,
        user_id: str,
        attempted_changes: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Audit an update attempt and refuse it."""
        self._block(
            signature_id,
            user_id,
            AuditAction.ESIGNATURE_MODIFICATION_BLOCKED,
            "modify",
            attempted_changes,
        )

    def block_deletion(self, signature_id: str, user_id: str) -> None:
        """Audit a delete attempt and refuse it."""
        self._block(
            signature_id,
            user_id,
            AuditAction.ESIGNATURE_DELETION_BLOCKED,
            "delete",
            None,
        )

    def _block(
        self,
        signature_id: str,
        user_id: str,
        action: AuditAction,
        operation: str,
        attempted_changes: Optional[Dict[str, Any]],
    ) -> None:
        logger.warning(
            "Blocked attempt by %s to %s electronic signature %s",
            user_id,
            operation,
            signature_id,
        )
        self.audit.record_security_event(
            user_id=user_id,
            action=action,
            entity_type="ElectronicSignature",
            entity_id=signature_id,
            details={
                "operation": operation,
                "attempted_changes": attempted_changes,
                "blocked_at": utcnow().isoformat(),
            },
            error_message="Electronic signatures are immutable",
        )
        raise SignatureImmutable(signature_id, operation)
