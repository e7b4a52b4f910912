"""
Ticketing bridge for remediation results that need human follow-up.

After a runbook marked ``requires_ticket`` finishes, the dispatcher hands
its ExecutionResult and Finding to a Notifier, which files a ticket and
returns the ticket reference. Ticketing failures raise NotifyError; they
never change the remediation outcome.

Credentials are resolved from AWS Secrets Manager at call time and are
only ever passed to the HTTP client. They are not cached, logged or
persisted.

Supported systems:
    - Jira Cloud (``https://<site>.atlassian.net``), issue key returned
    - ServiceNow (``https://<instance>.service-now.com``), incident number returned

Usage:
    from sharr.notifier import JiraTicketNotifier, SecretsManagerResolver

    notifier = JiraTicketNotifier(
        instance_uri="https://example.atlassian.net",
        project_key="SEC",
        secret_reference="arn:aws:secretsmanager:us-east-1:111111111111:secret:jira",
        secret_resolver=SecretsManagerResolver(region="us-east-1"),
    )
    ticket = notifier.notify(result, finding)
"""

import json
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, ClassVar, cast, override

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from sharr import __version__
from sharr.errors import ConfigurationError, NotifyError
from sharr.logging_config import get_logger, log_with_context
from sharr.models import ExecutionResult, Finding, OverallStatus
from sharr.rate_limiter import RateLimitConfig, TokenBucketRateLimiter

logger = get_logger(__name__)

REQUIRED_SECRET_KEYS: tuple[str, ...] = ("Username", "Password")

_TRANSIENT_AWS_CODES = frozenset(
    {
        "ThrottlingException",
        "InternalServiceError",
        "InternalServiceErrorException",
        "ServiceUnavailable",
    }
)


class Notifier(ABC):
    """Bridge raising a human-facing artifact for an execution."""

    @abstractmethod
    def notify(self, result: ExecutionResult, finding: Finding) -> str:
        """
        File a ticket for an execution result.

        Args:
            result: Completed execution result
            finding: Finding the execution acted on

        Returns:
            Ticket reference in the target system

        Raises:
            NotifyError: If the ticket could not be created
        """


class SecretsManagerResolver:
    """
    Resolves a secret reference to the ticketing credential.

    The secret value must be a JSON object containing the required keys.
    """

    def __init__(
        self,
        client: Any = None,
        region: str | None = None,
        required_keys: Sequence[str] = REQUIRED_SECRET_KEYS,
    ) -> None:
        self._client: Any = client or boto3.client("secretsmanager", region_name=region)
        self.required_keys: tuple[str, ...] = tuple(required_keys)

    def resolve(self, secret_reference: str) -> dict[str, str]:
        """
        Fetch and validate the secret.

        Raises:
            NotifyError: If the secret cannot be read or lacks required keys
        """
        try:
            response: dict[str, Any] = self._client.get_secret_value(SecretId=secret_reference)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            log_with_context(
                logger,
                "error",
                "Failed to read ticketing secret",
                error_code=code,
            )
            raise NotifyError(
                f"Unable to read ticketing secret: {code or e}",
                reason="secret",
                retryable=code in _TRANSIENT_AWS_CODES,
            ) from e
        except BotoCoreError as e:
            raise NotifyError(
                f"Unable to reach Secrets Manager: {e}",
                reason="network",
                retryable=True,
            ) from e

        secret_string = response.get("SecretString")
        if not secret_string:
            raise NotifyError("Ticketing secret has no string value", reason="secret")

        try:
            parsed: object = json.loads(secret_string)
        except json.JSONDecodeError as e:
            raise NotifyError("Ticketing secret is not valid JSON", reason="secret") from e

        if not isinstance(parsed, dict):
            raise NotifyError("Ticketing secret must be a JSON object", reason="secret")

        values = cast(dict[str, object], parsed)
        missing = [key for key in self.required_keys if not values.get(key)]
        if missing:
            raise NotifyError(
                f"Ticketing secret is missing keys: {', '.join(missing)}",
                reason="secret",
            )
        return {key: str(value) for key, value in values.items()}


class OrganizationsAccountNamer:
    """
    Looks up account names through AWS Organizations.

    The account list is fetched once and cached. Lookup failures are logged
    and leave tickets without an account name.
    """

    def __init__(self, client: Any = None) -> None:
        self._client: Any = client or boto3.client("organizations")
        self._names: dict[str, str] | None = None
        self._lock: threading.Lock = threading.Lock()

    def name_for(self, account_id: str) -> str | None:
        with self._lock:
            if self._names is None:
                self._names = self._load()
            return self._names.get(account_id)

    def _load(self) -> dict[str, str]:
        names: dict[str, str] = {}
        try:
            paginator = self._client.get_paginator("list_accounts")
            for page in paginator.paginate():
                for account in page.get("Accounts", []):
                    names[str(account["Id"])] = str(account.get("Name", ""))
        except (ClientError, BotoCoreError) as e:
            log_with_context(
                logger,
                "warning",
                "Unable to list organization accounts",
                error=str(e),
            )
        return names


class TicketNotifier(Notifier):
    """
    Shared HTTP plumbing for ticketing systems.

    Subclasses provide the endpoint, payload and reference extraction.

    Attributes:
        instance_uri: Base URI of the ticketing instance
        timeout: HTTP timeout in seconds
    """

    SYSTEM: ClassVar[str] = "ticketing"
    URI_PATTERN: ClassVar[str] = r"^https://.+$"

    def __init__(
        self,
        instance_uri: str,
        secret_reference: str | None,
        secret_resolver: SecretsManagerResolver,
        session: requests.Session | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        account_namer: OrganizationsAccountNamer | None = None,
        timeout: float = 15.0,
    ) -> None:
        instance_uri = instance_uri.rstrip("/")
        if not re.fullmatch(self.URI_PATTERN, instance_uri):
            raise ConfigurationError(
                f"{self.SYSTEM} instance URI '{instance_uri}' does not match {self.URI_PATTERN}",
                config_key="TICKETING_INSTANCE_URI",
                reason="URI pattern mismatch",
            )
        if not secret_reference:
            raise ConfigurationError(
                f"{self.SYSTEM} notifier requires a secret reference",
                config_key="TICKET_SECRET_ARN",
                reason="secret reference is empty",
            )

        self.instance_uri: str = instance_uri
        self.timeout: float = timeout
        self._secret_reference: str = secret_reference
        self._resolver: SecretsManagerResolver = secret_resolver
        self._limiter: TokenBucketRateLimiter = rate_limiter or TokenBucketRateLimiter(
            RateLimitConfig(requests_per_minute=60, burst_size=5)
        )
        self._account_namer: OrganizationsAccountNamer | None = account_namer
        self.session: requests.Session = session or requests.Session()
        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": f"SHARR/{__version__}",
            }
        )

    @override
    def notify(self, result: ExecutionResult, finding: Finding) -> str:
        if not self._limiter.acquire(timeout=self.timeout):
            raise NotifyError(
                f"{self.SYSTEM} client rate limit exceeded",
                reason="rate_limit",
                retryable=True,
            )

        credentials = self._resolver.resolve(self._secret_reference)
        url, payload = self._build_request(result, finding)

        try:
            response = self.session.post(
                url,
                json=payload,
                auth=(credentials["Username"], credentials["Password"]),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            raise self._http_error(status_code) from e
        except requests.RequestException as e:
            log_with_context(
                logger,
                "error",
                "Ticketing network error",
                system=self.SYSTEM,
                error=type(e).__name__,
            )
            raise NotifyError(
                f"{self.SYSTEM} request failed: {type(e).__name__}",
                reason="network",
                retryable=True,
            ) from e

        try:
            body: object = response.json()
        except ValueError as e:
            raise NotifyError(f"{self.SYSTEM} returned a non-JSON response", reason="http") from e
        if not isinstance(body, dict):
            raise NotifyError(
                f"{self.SYSTEM} returned a {type(body).__name__} instead of a JSON object",
                status_code=response.status_code,
                reason="http",
            )

        reference = self._extract_reference(cast(dict[str, Any], body))
        if not reference:
            raise NotifyError(f"{self.SYSTEM} response did not include a ticket reference", reason="http")

        log_with_context(
            logger,
            "info",
            "Created ticket",
            system=self.SYSTEM,
            ticket_reference=reference,
            control_id=finding.control_id,
            resource_id=finding.resource_id,
        )
        return reference

    def _http_error(self, status_code: int | None) -> NotifyError:
        log_with_context(
            logger,
            "error",
            "Ticketing request rejected",
            system=self.SYSTEM,
            status_code=status_code,
        )
        if status_code in (401, 403):
            return NotifyError(
                f"{self.SYSTEM} rejected the credentials",
                status_code=status_code,
                reason="auth",
            )
        if status_code == 429:
            return NotifyError(
                f"{self.SYSTEM} rate limit exceeded",
                status_code=status_code,
                reason="rate_limit",
                retryable=True,
            )
        return NotifyError(
            f"{self.SYSTEM} request failed with status {status_code}",
            status_code=status_code,
            reason="http",
            retryable=status_code is None or status_code >= 500,
        )

    def summary(self, result: ExecutionResult, finding: Finding) -> str:
        return (
            f"SHARR {finding.standard_id} {finding.control_id}: "
            f"{result.overall_status.value} for {finding.resource_id}"
        )

    def description(self, result: ExecutionResult, finding: Finding) -> str:
        account = finding.account_id
        if self._account_namer is not None:
            name = self._account_namer.name_for(finding.account_id)
            if name:
                account = f"{finding.account_id} ({name})"

        lines = [
            f"Standard: {finding.standard_id}",
            f"Control: {finding.control_id}",
            f"Resource: {finding.resource_id}",
            f"Account: {account}",
            f"Region: {finding.region or 'unknown'}",
            f"Execution: {result.execution_id}",
            f"Outcome: {result.overall_status.value}",
        ]
        if result.error:
            lines.append(f"Error: {result.error}")
        lines.append("")
        lines.append("Steps:")
        for step in result.step_results:
            line = f"- {step.name} [{step.kind.value}] {step.status.value}"
            if step.attempt > 1:
                line += f" (attempt {step.attempt})"
            if step.error:
                line += f": {step.error}"
            lines.append(line)
        return "\n".join(lines)

    @abstractmethod
    def _build_request(self, result: ExecutionResult, finding: Finding) -> tuple[str, dict[str, Any]]:
        """Return the endpoint URL and JSON payload."""

    @abstractmethod
    def _extract_reference(self, body: dict[str, Any]) -> str | None:
        """Pull the ticket reference out of the response body."""


class JiraTicketNotifier(TicketNotifier):
    """Creates Jira Cloud issues through the REST API v2."""

    SYSTEM: ClassVar[str] = "Jira"
    URI_PATTERN: ClassVar[str] = r"^https://.+\.atlassian\.net$"
    ISSUE_ENDPOINT: ClassVar[str] = "/rest/api/2/issue"

    def __init__(
        self,
        instance_uri: str,
        project_key: str,
        secret_reference: str | None,
        secret_resolver: SecretsManagerResolver,
        issue_type: str = "Task",
        **kwargs: Any,
    ) -> None:
        super().__init__(instance_uri, secret_reference, secret_resolver, **kwargs)
        if not project_key:
            raise ConfigurationError(
                "Jira notifier requires a project key",
                config_key="JIRA_PROJECT_KEY",
                reason="project key is empty",
            )
        self.project_key: str = project_key
        self.issue_type: str = issue_type

    @override
    def _build_request(self, result: ExecutionResult, finding: Finding) -> tuple[str, dict[str, Any]]:
        payload = {
            "fields": {
                "project": {"key": self.project_key},
                "summary": self.summary(result, finding),
                "description": self.description(result, finding),
                "issuetype": {"name": self.issue_type},
                "labels": ["sharr", finding.standard_id, finding.control_id],
            }
        }
        return f"{self.instance_uri}{self.ISSUE_ENDPOINT}", payload

    @override
    def _extract_reference(self, body: dict[str, Any]) -> str | None:
        key = body.get("key")
        return str(key) if key else None


class ServiceNowTicketNotifier(TicketNotifier):
    """Creates ServiceNow records through the Table API."""

    SYSTEM: ClassVar[str] = "ServiceNow"
    URI_PATTERN: ClassVar[str] = r"^https://.+\.service-now\.com$"

    def __init__(
        self,
        instance_uri: str,
        secret_reference: str | None,
        secret_resolver: SecretsManagerResolver,
        table: str = "incident",
        **kwargs: Any,
    ) -> None:
        super().__init__(instance_uri, secret_reference, secret_resolver, **kwargs)
        self.table: str = table

    @override
    def _build_request(self, result: ExecutionResult, finding: Finding) -> tuple[str, dict[str, Any]]:
        failed = result.overall_status is OverallStatus.FAILED
        payload = {
            "short_description": self.summary(result, finding),
            "description": self.description(result, finding),
            "category": "security",
            "impact": "2" if failed else "3",
            "urgency": "2" if failed else "3",
        }
        return f"{self.instance_uri}/api/now/table/{self.table}", payload

    @override
    def _extract_reference(self, body: dict[str, Any]) -> str | None:
        record = body.get("result")
        if isinstance(record, dict):
            number = cast(dict[str, Any], record).get("number")
            return str(number) if number else None
        return None
