"""
Lock table clients providing mutual exclusion per state identifier.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

import boto3
from botocore.exceptions import ClientError

from .models import LockRecord
from ..core.exceptions import LockedError, LockNotHeldError, ServiceError


logger = logging.getLogger(__name__)

# Attribute names match the layout Terraform's S3 backend expects.
LOCK_KEY = 'LockID'


class BaseLockTable(ABC):
    """Abstract lock table: atomic conditional create, conditional delete."""

    @abstractmethod
    def acquire(
        self,
        lock_id: str,
        holder: str,
        operation: Optional[str] = None,
        info: Optional[str] = None,
    ) -> LockRecord:
        """Atomically create the lock record for ``lock_id``.

        Raises:
            LockedError: If a record already exists for ``lock_id``
        """
        pass

    @abstractmethod
    def release(self, lock_id: str, holder: str) -> None:
        """Delete the lock record, only if ``holder`` owns it.

        Raises:
            LockNotHeldError: If there is no record or another holder owns it
        """
        pass

    @abstractmethod
    def get_lock(self, lock_id: str) -> Optional[LockRecord]:
        """Return the current lock record, or None when unlocked."""
        pass

    @abstractmethod
    def force_release(self, lock_id: str) -> Optional[LockRecord]:
        """Delete the lock record regardless of holder.

        Operator-only recovery for abandoned locks; nothing in the
        coordination cycle calls this.

        Returns:
            The record that was removed, or None if there was none
        """
        pass


class DynamoDBLockTable(BaseLockTable):
    """Lock table backed by a DynamoDB table with a ``LockID`` hash key."""

    def __init__(self, session: boto3.Session, table_name: str, region: Optional[str] = None):
        """Initialize the lock table client.

        Args:
            session: Authenticated boto3 session
            table_name: DynamoDB table name
            region: AWS region, defaults to the session's region
        """
        self.session = session
        self.table_name = table_name
        self.region = region or session.region_name
        self._client = None

    @property
    def client(self):
        """Lazy-loaded DynamoDB client."""
        if self._client is None:
            self._client = self.session.client('dynamodb', region_name=self.region)
        return self._client

    def acquire(
        self,
        lock_id: str,
        holder: str,
        operation: Optional[str] = None,
        info: Optional[str] = None,
    ) -> LockRecord:
        record = LockRecord(
            lock_id=lock_id,
            holder=holder,
            acquired_at=datetime.now(timezone.utc),
            operation=operation,
            info=info,
        )
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item=self._to_item(record),
                ConditionExpression='attribute_not_exists(#lock_id)',
                ExpressionAttributeNames={'#lock_id': LOCK_KEY},
            )
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                current = self.get_lock(lock_id)
                logger.warning(
                    f"Lock {lock_id} requested by {holder} is held by "
                    f"{current.holder if current else 'unknown'}"
                )
                raise LockedError(lock_id, holder, current)
            self._handle_aws_error(e, 'acquire', lock_id)

        logger.info(f"Acquired lock {lock_id} for {holder}")
        return record

    def release(self, lock_id: str, holder: str) -> None:
        try:
            self.client.delete_item(
                TableName=self.table_name,
                Key={LOCK_KEY: {'S': lock_id}},
                ConditionExpression='attribute_exists(#lock_id) AND #holder = :holder',
                ExpressionAttributeNames={'#lock_id': LOCK_KEY, '#holder': 'Holder'},
                ExpressionAttributeValues={':holder': {'S': holder}},
            )
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                raise LockNotHeldError(lock_id, holder, self.get_lock(lock_id))
            self._handle_aws_error(e, 'release', lock_id)

        logger.info(f"Released lock {lock_id} held by {holder}")

    def get_lock(self, lock_id: str) -> Optional[LockRecord]:
        try:
            response = self.client.get_item(
                TableName=self.table_name,
                Key={LOCK_KEY: {'S': lock_id}},
                ConsistentRead=True,
            )
        except ClientError as e:
            self._handle_aws_error(e, 'get', lock_id)

        item = response.get('Item')
        if not item:
            return None
        return self._from_item(item)

    def force_release(self, lock_id: str) -> Optional[LockRecord]:
        try:
            response = self.client.delete_item(
                TableName=self.table_name,
                Key={LOCK_KEY: {'S': lock_id}},
                ReturnValues='ALL_OLD',
            )
        except ClientError as e:
            self._handle_aws_error(e, 'force release', lock_id)

        old = response.get('Attributes')
        if not old:
            logger.info(f"Force release of {lock_id}: no lock was held")
            return None

        record = self._from_item(old)
        logger.warning(f"Force released lock {lock_id} held by {record.holder}")
        return record

    def _to_item(self, record: LockRecord) -> Dict[str, Any]:
        item = {
            LOCK_KEY: {'S': record.lock_id},
            'Holder': {'S': record.holder},
            'AcquiredAt': {'S': record.acquired_at.isoformat()},
        }
        if record.operation:
            item['Operation'] = {'S': record.operation}
        if record.info:
            item['Info'] = {'S': record.info}
        return item

    def _from_item(self, item: Dict[str, Any]) -> LockRecord:
        acquired_at = item.get('AcquiredAt', {}).get('S')
        return LockRecord(
            lock_id=item[LOCK_KEY]['S'],
            holder=item.get('Holder', {}).get('S', 'unknown'),
            acquired_at=datetime.fromisoformat(acquired_at) if acquired_at else None,
            operation=item.get('Operation', {}).get('S'),
            info=item.get('Info', {}).get('S'),
        )

    def _handle_aws_error(self, error: Exception, operation: str, lock_id: str) -> None:
        """Wrap an unexpected AWS error in ServiceError.

        Raises:
            ServiceError: Always
        """
        raise ServiceError(
            f"DynamoDB lock {operation} failed for {lock_id} in table {self.table_name}: {error}",
            details=str(error)
        )


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')
