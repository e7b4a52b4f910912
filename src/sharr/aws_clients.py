"""
AWS client access for remediation steps.

Remediation actions run with the remediation role named in the playbook
properties, assumed in the account that owns the finding's resource.
Errors from botocore are translated into RemediationApiError so the
runbook engine can tell throttling (retry) from authorization problems or
missing resources (fatal).

Usage:
    from sharr.aws_clients import AssumeRoleClientProvider, call_aws

    clients = AssumeRoleClientProvider(props)
    ec2 = clients.client("ec2", finding.account_id, finding.region)
    rules = call_aws(ec2, "describe_security_group_rules", Filters=[...])
"""

import threading
from datetime import UTC, datetime, timedelta
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sharr.errors import RemediationApiError
from sharr.logging_config import get_logger, log_with_context
from sharr.models import PlaybookProperties

logger = get_logger(__name__)

RETRYABLE_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "SlowDown",
        "RequestTimeout",
        "RequestTimeoutException",
        "InternalError",
        "InternalFailure",
        "ServiceUnavailable",
        "Unavailable",
    }
)

# Refresh assumed-role credentials this long before they expire
_CREDENTIAL_REFRESH_MARGIN = timedelta(minutes=2)


def classify_client_error(error: ClientError, operation: str) -> RemediationApiError:
    """
    Convert a botocore ClientError into a RemediationApiError.

    Args:
        error: Error raised by a boto3 client call
        operation: Name of the API operation

    Returns:
        RemediationApiError, retryable for throttling and service faults
    """
    details: dict[str, Any] = error.response.get("Error", {})
    code = str(details.get("Code", "Unknown"))
    message = str(details.get("Message", error))
    return RemediationApiError(
        f"{operation} failed: {code}: {message}",
        error_code=code,
        operation=operation,
        retryable=code in RETRYABLE_ERROR_CODES,
    )


def call_aws(client: Any, operation: str, **kwargs: Any) -> dict[str, Any]:
    """
    Invoke a boto3 client operation with error translation.

    Raises:
        RemediationApiError: If the call fails
    """
    try:
        response: dict[str, Any] = getattr(client, operation)(**kwargs)
        return response
    except ClientError as e:
        error = classify_client_error(e, operation)
        log_with_context(
            logger,
            "warning",
            "AWS call failed",
            operation=operation,
            error_code=error.error_code,
            retryable=error.retryable,
        )
        raise error from e
    except BotoCoreError as e:
        log_with_context(
            logger,
            "warning",
            "AWS endpoint unreachable",
            operation=operation,
            error=str(e),
        )
        raise RemediationApiError(
            f"{operation} failed: {e}",
            operation=operation,
            retryable=True,
        ) from e


class AssumeRoleClientProvider:
    """
    Builds boto3 clients under the remediation role of the finding's account.

    Assumed-role credentials are cached per role ARN until shortly before
    they expire.

    Attributes:
        props: Playbook properties carrying the remediation role ARN
        session_name: STS role session name
        default_region: Region used when the finding has none
    """

    def __init__(
        self,
        props: PlaybookProperties,
        session: boto3.Session | None = None,
        session_name: str = "SHARR-Remediation",
        default_region: str | None = None,
    ) -> None:
        self.props: PlaybookProperties = props
        self.session_name: str = session_name
        self.default_region: str | None = default_region
        self._session: boto3.Session = session or boto3.Session()
        self._credentials: dict[str, dict[str, Any]] = {}
        self._lock: threading.Lock = threading.Lock()

    def client(self, service: str, account_id: str, region: str | None = None) -> Any:
        """Return a client for ``service`` in the given account and region."""
        role_arn = self.props.role_arn_for(account_id)
        credentials = self._assume(role_arn)
        return self._session.client(
            service,
            region_name=region or self.default_region,
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
        )

    def _assume(self, role_arn: str) -> dict[str, Any]:
        with self._lock:
            cached = self._credentials.get(role_arn)
            if cached is not None and not self._expiring(cached):
                return cached

            sts = self._session.client("sts")
            response = call_aws(
                sts,
                "assume_role",
                RoleArn=role_arn,
                RoleSessionName=self.session_name,
            )
            credentials: dict[str, Any] = response["Credentials"]
            self._credentials[role_arn] = credentials

            log_with_context(
                logger,
                "info",
                "Assumed remediation role",
                role_arn=role_arn,
            )
            return credentials

    @staticmethod
    def _expiring(credentials: dict[str, Any]) -> bool:
        expiration = credentials.get("Expiration")
        if not isinstance(expiration, datetime):
            return True
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=UTC)
        return expiration - _CREDENTIAL_REFRESH_MARGIN <= datetime.now(UTC)
