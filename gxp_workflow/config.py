"""
Configuration module for the GxP case workflow engine.

Provides centralized configuration for storage, electronic signatures,
notifications and role policies.
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union, get_args, get_origin

import yaml
from pydantic import BaseModel, Field, field_validator


class SignatureAlgorithmType(str, Enum):
    """Algorithms used to seal signature records."""

    ECDSA_SHA256 = "ES256"
    ECDSA_SHA512 = "ES512"


class WorkflowConfig(BaseModel):
    """Central configuration for the workflow engine.

    Configuration sources, in order of precedence:
        1. Programmatic settings
        2. Environment variables (GXP_ prefix)
        3. Configuration files (JSON or YAML)
        4. Default values

    Example:
        >>> config = WorkflowConfig(
        ...     database_url="postgresql+psycopg://qa@db/gmp",
        ...     approver_roles=["QA", "QC Manager"],
        ... )

        >>> os.environ["GXP_DATABASE_URL"] = "sqlite:///workflow.db"
        >>> config = WorkflowConfig.from_env()

    Note:
        Role lists and the signature vocabulary have regulatory implications
        and should only be changed under change control.
    """

    # General settings
    application_name: str = Field(
        "GxP Case Workflow", description="Name of the application for audit trails"
    )
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )
    log_level: str = Field("INFO", description="Root log level for the CLI and API")

    # Storage settings
    database_url: str = Field(
        "sqlite:///./gxp_workflow.db", description="SQLAlchemy database URL"
    )
    database_echo: bool = Field(False, description="Echo SQL statements")

    # Electronic signature settings
    signature_vocabulary_path: Optional[str] = Field(
        None, description="YAML file holding the signature meaning vocabulary"
    )
    signature_algorithm: SignatureAlgorithmType = Field(
        SignatureAlgorithmType.ECDSA_SHA256,
        description="Algorithm used to seal signature records",
    )
    signature_key_path: Optional[str] = Field(
        None, description="PEM private key used to seal signatures"
    )
    password_hash_scheme: str = Field(
        "pbkdf2_sha256", description="passlib scheme for stored credentials"
    )

    # Workflow settings
    notifications_enabled: bool = Field(
        True, description="Emit post-commit notification events"
    )
    approver_roles: List[str] = Field(
        default_factory=lambda: ["Admin", "QA", "QC Manager", "QP"],
        description="Roles allowed to approve, sign off and close cases",
    )
    investigator_roles: List[str] = Field(
        default_factory=lambda: [
            "Admin",
            "QA",
            "QC Manager",
            "QC Analyst",
            "Production Manager",
            "Production Operator",
        ],
        description="Roles allowed to perform investigation and execution work",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "validation"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is known to the logging module."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("password_hash_scheme")
    @classmethod
    def validate_hash_scheme(cls, v: str) -> str:
        """Only schemes suitable for password storage are accepted."""
        allowed = {"pbkdf2_sha256", "pbkdf2_sha512", "sha512_crypt", "argon2", "bcrypt"}
        if v not in allowed:
            raise ValueError(f"Password hash scheme must be one of: {sorted(allowed)}")
        return v

    @field_validator("approver_roles")
    @classmethod
    def validate_approver_roles(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one approver role is required")
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_env(cls, prefix: str = "GXP_") -> "WorkflowConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]

            field_type = field_info.annotation
            if get_origin(field_type) is Union:
                args = get_args(field_type)
                field_type = next((arg for arg in args if arg is not type(None)), str)

            if field_type == bool:
                config_dict[field_name] = value.lower() in ("true", "1", "yes", "on")
            elif get_origin(field_type) is list:
                config_dict[field_name] = [
                    item.strip() for item in value.split(",") if item.strip()
                ]
            else:
                # pydantic coerces ints and enums from strings
                config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "WorkflowConfig":
        """Load configuration from a JSON or YAML file."""
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        return cls.model_validate(data)

    def get_role_policy(self) -> Dict[str, List[str]]:
        """Get the role lists used by case-type actions."""
        return {
            "approver": list(self.approver_roles),
            "investigator": list(self.investigator_roles),
        }


# Global configuration instance
_config: Optional[WorkflowConfig] = None


def get_config() -> WorkflowConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        _config = WorkflowConfig.from_env()

    return _config


def set_config(config: WorkflowConfig) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> WorkflowConfig:
    """
    Configure the workflow engine with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    current = get_config().model_dump()
    current.update(kwargs)
    _config = WorkflowConfig.model_validate(current)
    return _config
