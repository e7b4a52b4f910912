"""
Unit tests for configuration module.

Tests cover Settings validation, environment variable parsing,
ticketing configuration and playbook property construction.
"""

import pytest
from _pytest.monkeypatch import MonkeyPatch

from sharr.config import Settings, get_settings
from sharr.errors import ConfigurationError


class TestSettingsValidation:
    """Tests for Settings validation."""

    def test_settings_from_env_vars(
        self,
        mock_env_vars: dict[str, str],
    ) -> None:
        """Test that Settings loads from environment variables."""
        # Fixture used for side effects
        _ = mock_env_vars

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.aws_region == "us-east-1"
        assert settings.remediation_role_arn.endswith(":role/SO0111-Remediation")
        assert settings.ticketing_system == "none"
        assert settings.max_concurrent_workers == 2
        assert settings.log_level == "DEBUG"
        assert settings.ticketed_controls == []

    def test_empty_aws_region_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that an empty AWS_REGION raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("AWS_REGION", "")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert exc_info.value.config_key == "AWS_REGION"

    def test_invalid_aws_region_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that invalid AWS_REGION raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("AWS_REGION", "invalid")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert "AWS_REGION" in str(exc_info.value)

    def test_invalid_role_arn_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that a non-role ARN is rejected."""
        _ = mock_env_vars
        monkeypatch.setenv("REMEDIATION_ROLE_ARN", "arn:aws:iam::111111111111:user/admin")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert exc_info.value.config_key == "REMEDIATION_ROLE_ARN"

    def test_invalid_ticketing_system_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that unknown ticketing backends are rejected."""
        _ = mock_env_vars
        monkeypatch.setenv("TICKETING_SYSTEM", "remedy")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert "TICKETING_SYSTEM" in str(exc_info.value)

    def test_ticketing_system_is_normalized(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that the backend name is case-insensitive."""
        _ = mock_env_vars
        monkeypatch.setenv("TICKETING_SYSTEM", " Jira ")

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.ticketing_system == "jira"

    def test_invalid_log_level_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that invalid LOG_LEVEL raises error."""
        _ = mock_env_vars
        monkeypatch.setenv("LOG_LEVEL", "INVALID")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert "LOG_LEVEL" in str(exc_info.value)


class TestTicketedControls:
    """Tests for TICKETED_CONTROLS parsing."""

    @pytest.mark.parametrize(
        "raw",
        [
            "EC2.19,S3.8",
            " EC2.19 , S3.8 ,",
            '["EC2.19", "S3.8"]',
        ],
    )
    def test_parse_ticketed_controls(
        self,
        raw: str,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test comma-separated and JSON list forms."""
        _ = mock_env_vars
        monkeypatch.setenv("TICKETED_CONTROLS", raw)

        settings = Settings()  # pyright: ignore[reportCallIssue]

        assert settings.ticketed_controls == ["EC2.19", "S3.8"]

    def test_invalid_json_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that malformed JSON is a configuration error."""
        _ = mock_env_vars
        monkeypatch.setenv("TICKETED_CONTROLS", '["EC2.19"')

        with pytest.raises(ConfigurationError) as exc_info:
            _ = Settings()  # pyright: ignore[reportCallIssue]

        assert exc_info.value.config_key == "TICKETED_CONTROLS"


class TestTicketingValidation:
    """Tests for validate_ticketing."""

    def test_disabled_ticketing_needs_nothing(self, mock_settings: Settings) -> None:
        """Test that ticketing 'none' passes without URI or secret."""
        mock_settings.validate_ticketing()

    def test_jira_without_uri_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that an enabled backend requires an instance URI."""
        _ = mock_env_vars
        monkeypatch.setenv("TICKETING_SYSTEM", "jira")
        monkeypatch.setenv("TICKET_SECRET_ARN", "arn:aws:secretsmanager:us-east-1:111111111111:secret:jira")

        settings = Settings()  # pyright: ignore[reportCallIssue]

        with pytest.raises(ConfigurationError) as exc_info:
            settings.validate_ticketing()

        assert exc_info.value.config_key == "TICKETING_INSTANCE_URI"

    def test_servicenow_without_secret_raises(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that an enabled backend requires a credential secret."""
        _ = mock_env_vars
        monkeypatch.setenv("TICKETING_SYSTEM", "servicenow")
        monkeypatch.setenv("TICKETING_INSTANCE_URI", "https://example.service-now.com")

        settings = Settings()  # pyright: ignore[reportCallIssue]

        with pytest.raises(ConfigurationError) as exc_info:
            settings.validate_ticketing()

        assert exc_info.value.config_key == "TICKET_SECRET_ARN"


class TestPlaybookProperties:
    """Tests for playbook_properties."""

    def test_properties_carry_role_secret_and_labels(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that settings map onto playbook properties."""
        _ = mock_env_vars
        monkeypatch.setenv("TICKET_SECRET_ARN", "arn:aws:secretsmanager:us-east-1:111111111111:secret:jira")
        monkeypatch.setenv("SOLUTION_VERSION", "v2.1.0")

        props = Settings().playbook_properties()  # pyright: ignore[reportCallIssue]

        assert props.role_arn_for("222222222222") == "arn:aws:iam::222222222222:role/SO0111-Remediation"
        assert props.secret_reference == "arn:aws:secretsmanager:us-east-1:111111111111:secret:jira"
        assert props.solution_metadata == {
            "solutionId": "SO0111",
            "solutionVersion": "v2.1.0",
            "solutionTMN": "automated-security-response-on-aws",
        }


class TestGetSettings:
    """Tests for the cached settings accessor."""

    def test_get_settings_is_cached(self, mock_env_vars: dict[str, str]) -> None:
        """Test that get_settings returns the same instance."""
        _ = mock_env_vars

        assert get_settings() is get_settings()
        get_settings.cache_clear()

    def test_get_settings_validates_ticketing(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that incomplete ticketing configuration fails at load time."""
        _ = mock_env_vars
        monkeypatch.setenv("TICKETING_SYSTEM", "jira")

        with pytest.raises(ConfigurationError):
            _ = get_settings()

        get_settings.cache_clear()

    def test_get_settings_wraps_other_errors(
        self,
        mock_env_vars: dict[str, str],
        monkeypatch: MonkeyPatch,
    ) -> None:
        """Test that pydantic validation errors become ConfigurationError."""
        _ = mock_env_vars
        monkeypatch.setenv("MAX_CONCURRENT_WORKERS", "50")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = get_settings()

        assert "Failed to load configuration" in str(exc_info.value)
        get_settings.cache_clear()
