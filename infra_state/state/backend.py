"""
Bootstrap and wiring of the S3 + DynamoDB state backend.
"""
from dataclasses import dataclass
from typing import Optional
import logging

import boto3
from botocore.exceptions import ClientError

from .lock_table import DynamoDBLockTable, LOCK_KEY
from .object_store import S3ObjectStore
from ..auth.session import SessionFactory
from ..core.config import BackendConfig
from ..core.exceptions import ServiceError


logger = logging.getLogger(__name__)


@dataclass
class BackendStatus:
    """Health of the backend resources."""
    bucket_exists: bool
    versioning_enabled: bool
    encryption_enabled: bool
    table_exists: bool

    @property
    def ready(self) -> bool:
        return self.bucket_exists and self.versioning_enabled and self.table_exists


class StateBackend:
    """Creates and checks the bucket and lock table, and builds their clients."""

    def __init__(self, session: boto3.Session, config: BackendConfig):
        """Initialize the backend.

        Args:
            session: Authenticated boto3 session
            config: Backend configuration
        """
        self.session = session
        self.config = config
        self._s3 = None
        self._dynamodb = None

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = self.session.client('s3', region_name=self.config.region)
        return self._s3

    @property
    def dynamodb(self):
        if self._dynamodb is None:
            self._dynamodb = self.session.client('dynamodb', region_name=self.config.region)
        return self._dynamodb

    def object_store(self) -> S3ObjectStore:
        return S3ObjectStore(
            self.session,
            self.config.bucket,
            key_prefix=self.config.key_prefix,
            region=self.config.region,
            encrypt=self.config.encrypt,
            kms_key_id=self.config.kms_key_id,
        )

    def lock_table(self) -> DynamoDBLockTable:
        return DynamoDBLockTable(self.session, self.config.lock_table, region=self.config.region)

    def bootstrap(self, wait: bool = True) -> BackendStatus:
        """Create the bucket and lock table if missing. Safe to run repeatedly.

        The bucket gets versioning, default encryption and a full public
        access block. The table uses on-demand billing with ``LockID`` as
        its only key.

        Args:
            wait: Block until the table is ACTIVE

        Returns:
            Backend status after bootstrapping

        Raises:
            ServiceError: If any AWS call fails
        """
        self._ensure_bucket()
        self._ensure_table(wait)
        return self.check()

    def check(self) -> BackendStatus:
        """Inspect the backend resources without changing anything."""
        bucket_exists = True
        versioning_enabled = False
        encryption_enabled = False

        try:
            self.s3.head_bucket(Bucket=self.config.bucket)
        except ClientError as e:
            if _error_code(e) not in ('404', 'NoSuchBucket', 'NotFound'):
                raise ServiceError(f"Failed to inspect bucket {self.config.bucket}: {e}", details=str(e))
            bucket_exists = False

        if bucket_exists:
            try:
                versioning = self.s3.get_bucket_versioning(Bucket=self.config.bucket)
                versioning_enabled = versioning.get('Status') == 'Enabled'
                encryption = self.s3.get_bucket_encryption(Bucket=self.config.bucket)
                rules = encryption.get('ServerSideEncryptionConfiguration', {}).get('Rules', [])
                encryption_enabled = bool(rules)
            except ClientError as e:
                if _error_code(e) != 'ServerSideEncryptionConfigurationNotFoundError':
                    raise ServiceError(f"Failed to inspect bucket {self.config.bucket}: {e}", details=str(e))

        return BackendStatus(
            bucket_exists=bucket_exists,
            versioning_enabled=versioning_enabled,
            encryption_enabled=encryption_enabled,
            table_exists=self._table_exists(),
        )

    def _ensure_bucket(self) -> None:
        bucket = self.config.bucket
        try:
            if self.config.region == 'us-east-1':
                self.s3.create_bucket(Bucket=bucket)
            else:
                self.s3.create_bucket(
                    Bucket=bucket,
                    CreateBucketConfiguration={'LocationConstraint': self.config.region}
                )
            logger.info(f"Created state bucket {bucket}")
        except ClientError as e:
            if _error_code(e) != 'BucketAlreadyOwnedByYou':
                raise ServiceError(f"Failed to create bucket {bucket}: {e}", details=str(e))
            logger.info(f"State bucket {bucket} already exists")

        if self.config.kms_key_id:
            default_encryption = {
                'SSEAlgorithm': 'aws:kms',
                'KMSMasterKeyID': self.config.kms_key_id,
            }
        else:
            default_encryption = {'SSEAlgorithm': 'AES256'}

        try:
            self.s3.put_bucket_versioning(
                Bucket=bucket,
                VersioningConfiguration={'Status': 'Enabled'}
            )
            self.s3.put_bucket_encryption(
                Bucket=bucket,
                ServerSideEncryptionConfiguration={
                    'Rules': [{'ApplyServerSideEncryptionByDefault': default_encryption}]
                }
            )
            self.s3.put_public_access_block(
                Bucket=bucket,
                PublicAccessBlockConfiguration={
                    'BlockPublicAcls': True,
                    'IgnorePublicAcls': True,
                    'BlockPublicPolicy': True,
                    'RestrictPublicBuckets': True,
                }
            )
        except ClientError as e:
            raise ServiceError(f"Failed to configure bucket {bucket}: {e}", details=str(e))

    def _ensure_table(self, wait: bool) -> None:
        table = self.config.lock_table
        try:
            self.dynamodb.create_table(
                TableName=table,
                AttributeDefinitions=[{'AttributeName': LOCK_KEY, 'AttributeType': 'S'}],
                KeySchema=[{'AttributeName': LOCK_KEY, 'KeyType': 'HASH'}],
                BillingMode='PAY_PER_REQUEST',
            )
            logger.info(f"Created lock table {table}")
        except ClientError as e:
            if _error_code(e) != 'ResourceInUseException':
                raise ServiceError(f"Failed to create lock table {table}: {e}", details=str(e))
            logger.info(f"Lock table {table} already exists")

        if wait:
            waiter = self.dynamodb.get_waiter('table_exists')
            waiter.wait(TableName=table, WaiterConfig={'Delay': 2, 'MaxAttempts': 30})

    def _table_exists(self) -> bool:
        try:
            response = self.dynamodb.describe_table(TableName=self.config.lock_table)
        except ClientError as e:
            if _error_code(e) == 'ResourceNotFoundException':
                return False
            raise ServiceError(f"Failed to inspect lock table {self.config.lock_table}: {e}", details=str(e))
        return response['Table'].get('TableStatus') in ('ACTIVE', 'UPDATING')


def backend_from_config(config: BackendConfig, session: Optional[boto3.Session] = None) -> StateBackend:
    """Build a StateBackend, creating a session through SessionFactory if none is given."""
    if session is None:
        session = SessionFactory(config).get_session()
    return StateBackend(session, config)


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')
