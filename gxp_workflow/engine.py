"""Wiring of the storage, signature and workflow services."""

import logging
from typing import List, Optional

from .access_control import UserDirectory
from .audit_trail import AuditTrail
from .cases import BatchRecordSteps, build_adapters
from .config import WorkflowConfig, get_config
from .db import Database
from .electronic_signatures import ElectronicSignatureService
from .workflow.actions import AdapterRegistry
from .workflow.executor import TransitionExecutor
from .workflow.notifications import LoggingNotificationSink, NotificationSink, NullNotificationSink

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    One set of services sharing a database.

    Example:
        >>> engine = WorkflowEngine.from_config(
        ...     WorkflowConfig(database_url="sqlite:///workflow.db")
        ... )
        >>> engine.db.create_all()
        >>> engine.add_user("qc1", "qc1@example.com", "QC Manager", "secret", ["QC Manager"])
    """

    def __init__(
        self,
        config: WorkflowConfig,
        db: Database,
        users: UserDirectory,
        audit: AuditTrail,
        signatures: ElectronicSignatureService,
        adapters: AdapterRegistry,
        notifier: NotificationSink,
    ):
        self.config = config
        self.db = db
        self.users = users
        self.audit = audit
        self.signatures = signatures
        self.adapters = adapters
        self.executor = TransitionExecutor(
            db,
            audit,
            users,
            signatures,
            adapters,
            role_policy=config.get_role_policy(),
            notifier=notifier,
        )
        self.steps = BatchRecordSteps(self.executor)

    @classmethod
    def from_config(
        cls,
        config: Optional[WorkflowConfig] = None,
        notifier: Optional[NotificationSink] = None,
        db: Optional[Database] = None,
    ) -> "WorkflowEngine":
        config = config or get_config()
        db = db or Database.from_config(config)
        users = UserDirectory(config.password_hash_scheme)
        audit = AuditTrail(db, application=config.application_name)
        signatures = ElectronicSignatureService.from_config(config, db, audit, users)
        if notifier is None:
            notifier = (
                LoggingNotificationSink()
                if config.notifications_enabled
                else NullNotificationSink()
            )
        logger.info(
            "Workflow engine ready (%s, vocabulary %s)",
            config.environment,
            signatures.vocabulary.version,
        )
        return cls(config, db, users, audit, signatures, build_adapters(), notifier)

    def add_user(self, user_id: str, email: str, name: str, password: str, roles: List[str]) -> None:
        """Register a user with a hashed password."""
        with self.db.transaction() as session:
            self.users.add_user(session, user_id, email, name, password, roles)
