"""
Tests for workflow configuration.
"""

import json

import pytest
from pydantic import ValidationError

from gxp_workflow import config as config_module
from gxp_workflow.config import (
    SignatureAlgorithmType,
    WorkflowConfig,
    configure,
    get_config,
    set_config,
)


@pytest.fixture(autouse=True)
def reset_global_config(monkeypatch):
    """Isolate the process-wide configuration."""
    monkeypatch.setattr(config_module, "_config", None)
    for name in ("GXP_DATABASE_URL", "GXP_ENVIRONMENT", "GXP_APPROVER_ROLES"):
        monkeypatch.delenv(name, raising=False)


class TestWorkflowConfig:
    """Test WorkflowConfig defaults and validation."""

    def test_defaults(self):
        config = WorkflowConfig()

        assert config.environment == "production"
        assert config.signature_algorithm == SignatureAlgorithmType.ECDSA_SHA256
        assert config.password_hash_scheme == "pbkdf2_sha256"
        assert config.notifications_enabled is True
        assert "QP" in config.approver_roles
        assert "QC Analyst" in config.investigator_roles

    def test_environment_validation(self):
        assert WorkflowConfig(environment="Staging").environment == "staging"

        with pytest.raises(ValidationError):
            WorkflowConfig(environment="test")

    def test_log_level_validation(self):
        assert WorkflowConfig(log_level="debug").log_level == "DEBUG"

        with pytest.raises(ValidationError):
            WorkflowConfig(log_level="chatty")

    def test_hash_scheme_validation(self):
        with pytest.raises(ValidationError):
            WorkflowConfig(password_hash_scheme="md5_crypt")

    def test_approver_roles_required(self):
        with pytest.raises(ValidationError):
            WorkflowConfig(approver_roles=[])

    def test_role_policy(self):
        config = WorkflowConfig(approver_roles=["QA"], investigator_roles=["QA", "QC Analyst"])

        assert config.get_role_policy() == {
            "approver": ["QA"],
            "investigator": ["QA", "QC Analyst"],
        }


class TestConfigSources:
    """Test loading from the environment and from files."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("GXP_DATABASE_URL", "postgresql+psycopg2://qa@db/gmp")
        monkeypatch.setenv("GXP_ENVIRONMENT", "validation")
        monkeypatch.setenv("GXP_NOTIFICATIONS_ENABLED", "false")
        monkeypatch.setenv("GXP_APPROVER_ROLES", "QA, QP")
        monkeypatch.setenv("GXP_SIGNATURE_ALGORITHM", "ES512")

        config = WorkflowConfig.from_env()

        assert config.database_url == "postgresql+psycopg2://qa@db/gmp"
        assert config.environment == "validation"
        assert config.notifications_enabled is False
        assert config.approver_roles == ["QA", "QP"]
        assert config.signature_algorithm == SignatureAlgorithmType.ECDSA_SHA512

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "workflow.yaml"
        path.write_text(
            "application_name: Plant 4 QMS\n"
            "environment: staging\n"
            "investigator_roles:\n"
            "  - QC Analyst\n",
            encoding="utf-8",
        )

        config = WorkflowConfig.from_file(path)

        assert config.application_name == "Plant 4 QMS"
        assert config.investigator_roles == ["QC Analyst"]

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps({"database_echo": True}), encoding="utf-8")

        assert WorkflowConfig.from_file(path).database_echo is True

    def test_file_must_hold_mapping(self, tmp_path):
        path = tmp_path / "workflow.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")

        with pytest.raises(ValueError):
            WorkflowConfig.from_file(path)

    def test_to_dict_is_json_ready(self):
        data = WorkflowConfig().to_dict()

        assert data["signature_algorithm"] == "ES256"
        json.dumps(data)


class TestGlobalConfig:
    """Test the process-wide configuration helpers."""

    def test_get_config_reads_environment(self, monkeypatch):
        monkeypatch.setenv("GXP_ENVIRONMENT", "development")

        assert get_config().environment == "development"
        assert get_config() is get_config()

    def test_set_and_configure(self):
        set_config(WorkflowConfig(application_name="Site A", environment="staging"))

        updated = configure(log_level="warning")

        assert updated.application_name == "Site A"
        assert updated.log_level == "WARNING"
        assert get_config() is updated
