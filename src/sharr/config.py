"""
Configuration management for SHARR.

This module provides centralized configuration management using Pydantic
settings with validation. All configuration is loaded from environment
variables (or a ``.env`` file) with explicit validation and clear error
messages for missing or invalid values.

Environment Variables:
    AWS_REGION: Default AWS region for remediation clients (required)
    REMEDIATION_ROLE_ARN: Role assumed in member accounts; may contain
        ``{account_id}`` (required)
    TICKET_SECRET_ARN: Secrets Manager secret holding ticketing credentials
    TICKETING_SYSTEM: none, jira or servicenow (default: none)
    TICKETING_INSTANCE_URI: Jira Cloud or ServiceNow instance URI
    JIRA_PROJECT_KEY: Jira project for created issues (default: SEC)
    SERVICENOW_TABLE: ServiceNow table for created records (default: incident)
    TICKETED_CONTROLS: Controls that raise a ticket, as a JSON list or a
        comma-separated list (default: none)
    TICKETING_REQUESTS_PER_MINUTE: Client-side ticketing rate limit (default: 60)
    SOLUTION_ID: Solution identifier label (default: SO0111)
    SOLUTION_VERSION: Solution version label (default: v0.1.0)
    SOLUTION_TMN: Solution trademark name label
    AUDIT_DB_PATH: SQLite audit database path (default: ./sharr.db)
    MAX_CONCURRENT_WORKERS: Max parallel finding dispatch (default: 3)
    LOG_LEVEL: Logging level (default: INFO)
    STATE_RETENTION_DAYS: Days to keep audit records (default: 30)

Usage:
    from sharr.config import get_settings

    settings = get_settings()
    props = settings.playbook_properties()
"""

import json
from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from sharr.errors import ConfigurationError
from sharr.models import PlaybookProperties

TICKETING_SYSTEMS = ("none", "jira", "servicenow")


class Settings(BaseSettings):
    """
    SHARR configuration settings.

    Attributes:
        aws_region: Default AWS region (required)
        remediation_role_arn: Remediation role ARN template (required)
        ticket_secret_arn: Ticketing credential secret
        ticketing_system: Ticketing backend name
        ticketing_instance_uri: Ticketing instance URI
        jira_project_key: Jira project key
        servicenow_table: ServiceNow table name
        ticketed_controls: Control ids whose executions raise a ticket
        ticketing_requests_per_minute: Client-side ticketing rate limit
        solution_id: Solution identifier label
        solution_version: Solution version label
        solution_tmn: Solution trademark name label
        audit_db_path: Path to SQLite audit database
        max_concurrent_workers: Maximum parallel finding dispatch
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        state_retention_days: Days to retain audit records
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # AWS Configuration
    aws_region: str = Field(
        ...,
        description="Default AWS region for remediation clients",
    )
    remediation_role_arn: str = Field(
        ...,
        description="IAM role assumed in the finding's account",
    )

    # Ticketing Configuration
    ticket_secret_arn: str | None = Field(
        default=None,
        description="Secrets Manager secret with Username and Password",
    )
    ticketing_system: str = Field(
        default="none",
        description="Ticketing backend: none, jira or servicenow",
    )
    ticketing_instance_uri: str | None = Field(
        default=None,
        description="Ticketing instance URI",
    )
    jira_project_key: str = Field(
        default="SEC",
        description="Jira project key for created issues",
    )
    servicenow_table: str = Field(
        default="incident",
        description="ServiceNow table for created records",
    )
    ticketed_controls: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Controls whose executions raise a ticket",
    )
    ticketing_requests_per_minute: int = Field(
        default=60,
        ge=1,
        description="Client-side ticketing rate limit",
    )

    # Solution labels
    solution_id: str = Field(default="SO0111")
    solution_version: str = Field(default="v0.1.0")
    solution_tmn: str = Field(default="automated-security-response-on-aws")

    # Service Configuration
    audit_db_path: str = Field(
        default="./sharr.db",
        description="Path to SQLite audit database",
    )
    max_concurrent_workers: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum concurrent finding dispatch",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    state_retention_days: int = Field(
        default=30,
        ge=1,
        description="Days to retain audit records",
    )

    @field_validator("aws_region")
    @classmethod
    def validate_aws_region(cls, v: str) -> str:
        """
        Validate AWS region format.

        Raises:
            ConfigurationError: If region is invalid
        """
        if not v or not v.strip():
            raise ConfigurationError(
                "AWS_REGION is required but not set",
                config_key="AWS_REGION",
                reason="Region is empty or missing",
            )
        if not v.count("-") >= 2:
            raise ConfigurationError(
                f"AWS_REGION '{v}' does not appear to be a valid AWS region",
                config_key="AWS_REGION",
                reason="Region format is invalid (expected format: us-east-1)",
            )
        return v.strip()

    @field_validator("remediation_role_arn")
    @classmethod
    def validate_remediation_role_arn(cls, v: str) -> str:
        """
        Validate the remediation role is an IAM role ARN.

        Raises:
            ConfigurationError: If the value is not a role ARN
        """
        v = v.strip() if v else ""
        if not v.startswith("arn:") or ":role/" not in v:
            raise ConfigurationError(
                f"REMEDIATION_ROLE_ARN '{v}' is not an IAM role ARN",
                config_key="REMEDIATION_ROLE_ARN",
                reason="Expected arn:<partition>:iam::<account>:role/<name>",
            )
        return v

    @field_validator("ticketing_system")
    @classmethod
    def validate_ticketing_system(cls, v: str) -> str:
        """
        Validate the ticketing backend name.

        Raises:
            ConfigurationError: If the backend is unknown
        """
        v_lower = v.strip().lower()
        if v_lower not in TICKETING_SYSTEMS:
            raise ConfigurationError(
                f"TICKETING_SYSTEM '{v}' is not valid. Must be one of: {', '.join(TICKETING_SYSTEMS)}",
                config_key="TICKETING_SYSTEM",
                reason=f"Invalid ticketing system: {v}",
            )
        return v_lower

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Validate log level is recognized.

        Raises:
            ConfigurationError: If log level is invalid
        """
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ConfigurationError(
                f"LOG_LEVEL '{v}' is not valid. Must be one of: {', '.join(sorted(valid_levels))}",
                config_key="LOG_LEVEL",
                reason=f"Invalid log level: {v}",
            )
        return v_upper

    @field_validator("ticketed_controls", mode="before")
    @classmethod
    def parse_ticketed_controls(cls, v: Any) -> list[str]:
        """
        Parse ticketed controls from a JSON list or a comma-separated string.

        Raises:
            ConfigurationError: If the value is neither
        """
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return [str(item).strip() for item in v if str(item).strip()]
        if not isinstance(v, str):
            raise ConfigurationError(
                "TICKETED_CONTROLS must be a list of control ids",
                config_key="TICKETED_CONTROLS",
                reason=f"Unsupported type {type(v).__name__}",
            )

        text = v.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as e:
                raise ConfigurationError(
                    f"TICKETED_CONTROLS is not valid JSON: {e}",
                    config_key="TICKETED_CONTROLS",
                    reason=str(e),
                ) from e
            if not isinstance(parsed, list):
                raise ConfigurationError(
                    "TICKETED_CONTROLS must be a JSON list",
                    config_key="TICKETED_CONTROLS",
                    reason="Parsed JSON is not a list",
                )
            return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in text.split(",") if item.strip()]

    def validate_ticketing(self) -> None:
        """
        Validate that an enabled ticketing backend is fully configured.

        Raises:
            ConfigurationError: If the instance URI or secret is missing
        """
        if self.ticketing_system == "none":
            return
        if not self.ticketing_instance_uri:
            raise ConfigurationError(
                f"TICKETING_INSTANCE_URI is required for {self.ticketing_system}",
                config_key="TICKETING_INSTANCE_URI",
                reason="Instance URI is empty or missing",
            )
        if not self.ticket_secret_arn:
            raise ConfigurationError(
                f"TICKET_SECRET_ARN is required for {self.ticketing_system}",
                config_key="TICKET_SECRET_ARN",
                reason="Secret reference is empty or missing",
            )

    def playbook_properties(self) -> PlaybookProperties:
        """Build the properties every runbook in this process is bound to."""
        return PlaybookProperties(
            remediation_role_arn=self.remediation_role_arn,
            secret_reference=self.ticket_secret_arn,
            solution_metadata={
                "solutionId": self.solution_id,
                "solutionVersion": self.solution_version,
                "solutionTMN": self.solution_tmn,
            },
        )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache so settings are loaded only once per process.

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    try:
        settings = Settings()
        settings.validate_ticketing()
        return settings
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load configuration: {e}",
            reason=str(e),
        ) from e
