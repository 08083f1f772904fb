"""AWS session creation and operator identity."""

import getpass
import logging
import os
import socket
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from infra_state.core.config import BackendConfig
from infra_state.core.exceptions import AuthenticationError


logger = logging.getLogger(__name__)


def default_holder() -> str:
    """Identity recorded in lock records when none is given: user@host:pid."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


class SessionFactory:
    """Builds boto3 sessions for the state backend.

    Uses the ambient credential chain, or assumes ``role_arn`` through STS
    when the backend config names one. Assumed-role credentials are cached
    until five minutes before they expire.
    """

    def __init__(self, backend: BackendConfig):
        self.backend = backend
        self._cached_credentials: Optional[Dict[str, Any]] = None
        self._credentials_expiry: Optional[datetime] = None

    def get_session(self) -> boto3.Session:
        """Get an authenticated session in the backend's region.

        Raises:
            AuthenticationError: If role assumption fails.
        """
        if not self.backend.role_arn:
            return boto3.Session(region_name=self.backend.region)

        credentials = self._get_credentials(self.backend.role_arn)
        return boto3.Session(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
            region_name=self.backend.region
        )

    def get_caller_identity(self) -> Dict[str, Any]:
        """Get the caller identity of the session in use.

        Raises:
            AuthenticationError: If unable to get caller identity.
        """
        try:
            sts_client = self.get_session().client('sts')
            return sts_client.get_caller_identity()
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Failed to get caller identity: {e}")

    def _get_credentials(self, role_arn: str) -> Dict[str, Any]:
        if self._cached_credentials and self._credentials_expiry:
            if datetime.utcnow() < (self._credentials_expiry - timedelta(minutes=5)):
                logger.debug("Using cached AWS credentials")
                return self._cached_credentials

        try:
            logger.info(f"Assuming IAM role: {role_arn}")
            sts_client = boto3.client('sts', region_name=self.backend.region)
            response = sts_client.assume_role(
                RoleArn=role_arn,
                RoleSessionName='infra-state-session',
                DurationSeconds=3600
            )

            credentials = response['Credentials']
            self._cached_credentials = credentials
            self._credentials_expiry = credentials['Expiration'].replace(tzinfo=None)

            logger.info("Successfully assumed IAM role")
            return credentials

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))

            if error_code == 'AccessDenied':
                raise AuthenticationError(
                    f"Access denied when assuming role {role_arn}. "
                    "Check that the role exists and that its trust policy allows your identity."
                )
            raise AuthenticationError(
                f"Failed to assume IAM role {role_arn}: {error_code} - {error_message}"
            )

        except NoCredentialsError:
            raise AuthenticationError(
                "No AWS credentials found. Configure them with `aws configure`, "
                "AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY, an instance profile, or `aws sso login`."
            )

        except BotoCoreError as e:
            raise AuthenticationError(f"AWS configuration error: {e}")

    def clear_cached_credentials(self) -> None:
        """Clear any cached credentials to force fresh authentication."""
        self._cached_credentials = None
        self._credentials_expiry = None
        logger.debug("Cleared cached AWS credentials")
