"""Tests for the user directory: password hashes and role checks."""

import pytest
from sqlalchemy.exc import IntegrityError

from gxp_workflow.access_control import User, UserDB, UserDirectory
from gxp_workflow.exceptions import NotFound, PermissionDenied


class TestUser:
    """Test User class functionality."""

    def test_roles(self):
        user = User(id="qa", email="qa@example.com", name="Sam Quality", roles=["QA", "QP"])

        assert user.has_role("QA")
        assert not user.has_role("Admin")
        assert user.has_any_role(["Admin", "QP"])
        assert not user.has_any_role([])


class TestUserDirectory:
    """Test storing users and checking credentials."""

    def test_password_is_hashed(self, engine, password):
        with engine.db.reader() as session:
            row = session.get(UserDB, "qa")

        assert row.password_hash != password
        assert row.password_hash.startswith("$pbkdf2-sha256$")

    def test_check_password(self, engine, password):
        with engine.db.reader() as session:
            assert engine.users.check_password(session, "qa", password)
            assert not engine.users.check_password(session, "qa", "wrong")
            assert not engine.users.check_password(session, "qa", "")
            assert not engine.users.check_password(session, "nobody", password)

    def test_get(self, engine):
        with engine.db.reader() as session:
            user = engine.users.get(session, "qp")

            with pytest.raises(NotFound) as exc_info:
                engine.users.get(session, "nobody")

        assert user.name == "Pat Person"
        assert user.roles == ["QP"]
        assert exc_info.value.details["entity_type"] == "User"

    def test_duplicate_email(self, engine, password):
        with pytest.raises(IntegrityError):
            engine.add_user("qa2", "qa@example.com", "Second QA", password, ["QA"])

    def test_other_scheme(self):
        directory = UserDirectory(password_scheme="sha512_crypt")

        assert directory.hash_password("pw").startswith("$6$")


class TestRequireRoles:
    """Test role checks for case actions."""

    def test_role_held(self, engine):
        user = User(id="qa", email="qa@example.com", name="Sam", roles=["QA"])

        engine.users.require_roles(user, ["QA", "QP"], "close")

    def test_role_missing(self, engine):
        user = User(id="operator", email="op@example.com", name="Olu", roles=["Production Operator"])

        with pytest.raises(PermissionDenied) as exc_info:
            engine.users.require_roles(user, ["QA", "QP"], "close")

        assert exc_info.value.details["required_roles"] == ["QA", "QP"]

    def test_inactive_user_denied(self, engine):
        user = User(id="inactive", email="x@example.com", name="Former", roles=["QA"], is_active=False)

        with pytest.raises(PermissionDenied):
            engine.users.require_roles(user, ["QA"], "close")
