"""
Object store clients holding versioned, encrypted state snapshots.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
import logging

import boto3
from botocore.exceptions import ClientError

from .models import StateSnapshot, StateVersion
from ..core.exceptions import ConflictError, ServiceError, StateNotFoundError


logger = logging.getLogger(__name__)

SERIAL_METADATA_KEY = 'state-serial'
STATE_ID_METADATA_KEY = 'state-id'
STATE_FILE_NAME = 'terraform.tfstate'

_NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound', 'NoSuchVersion'}
_PRECONDITION_CODES = {'412', 'PreconditionFailed', 'ConditionalRequestConflict'}


class BaseObjectStore(ABC):
    """Abstract object store with optimistic-concurrency writes."""

    @abstractmethod
    def read_latest(self, state_id: str) -> StateSnapshot:
        """Read the newest snapshot.

        Raises:
            StateNotFoundError: If nothing has been written for ``state_id``
        """
        pass

    @abstractmethod
    def write_if_version_matches(
        self,
        state_id: str,
        payload: bytes,
        expected_version: Optional[int],
    ) -> StateSnapshot:
        """Replace the snapshot if the stored version equals ``expected_version``.

        ``expected_version=None`` means the snapshot must not exist yet.

        Raises:
            ConflictError: If the stored version differs
        """
        pass

    @abstractmethod
    def list_versions(self, state_id: str) -> List[StateVersion]:
        """List retained versions, newest first."""
        pass

    @abstractmethod
    def read_version(self, state_id: str, version_id: str) -> StateSnapshot:
        """Read one retained version.

        Raises:
            StateNotFoundError: If the version does not exist
        """
        pass

    @abstractmethod
    def delete_state(self, state_id: str) -> int:
        """Remove the snapshot and all retained versions. Returns versions removed."""
        pass


class S3ObjectStore(BaseObjectStore):
    """Object store backed by a versioned S3 bucket.

    The snapshot serial lives in object metadata so a version check needs
    only a HEAD request. Writes also carry S3 conditional headers so a
    concurrent writer between the check and the PUT is still rejected.
    """

    def __init__(
        self,
        session: boto3.Session,
        bucket: str,
        key_prefix: str = "",
        region: Optional[str] = None,
        encrypt: bool = True,
        kms_key_id: Optional[str] = None,
    ):
        """Initialize the object store client.

        Args:
            session: Authenticated boto3 session
            bucket: Bucket holding the snapshots
            key_prefix: Optional prefix placed before every state key
            region: AWS region, defaults to the session's region
            encrypt: Request server-side encryption on every write
            kms_key_id: Use aws:kms with this key instead of AES256
        """
        self.session = session
        self.bucket = bucket
        self.key_prefix = key_prefix.strip('/')
        self.region = region or session.region_name
        self.encrypt = encrypt
        self.kms_key_id = kms_key_id
        self._client = None

    @property
    def client(self):
        """Lazy-loaded S3 client."""
        if self._client is None:
            self._client = self.session.client('s3', region_name=self.region)
        return self._client

    def state_key(self, state_id: str) -> str:
        """Object key for a state identifier, e.g. ``prefix/infra-1/terraform.tfstate``."""
        key = f"{state_id}/{STATE_FILE_NAME}"
        return f"{self.key_prefix}/{key}" if self.key_prefix else key

    def read_latest(self, state_id: str) -> StateSnapshot:
        key = self.state_key(state_id)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise StateNotFoundError(state_id)
            self._handle_aws_error(e, 'read', key)

        snapshot = self._snapshot_from_response(state_id, response)
        logger.debug(f"Read {key} at version {snapshot.version}")
        return snapshot

    def write_if_version_matches(
        self,
        state_id: str,
        payload: bytes,
        expected_version: Optional[int],
    ) -> StateSnapshot:
        key = self.state_key(state_id)
        current = self._head(key)

        if expected_version is None:
            if current is not None:
                raise ConflictError(state_id, expected_version, current[0])
            conditions = {'IfNoneMatch': '*'}
        else:
            if current is None:
                raise ConflictError(state_id, expected_version, None)
            if current[0] != expected_version:
                raise ConflictError(state_id, expected_version, current[0])
            conditions = {'IfMatch': current[1]}

        new_version = (expected_version or 0) + 1
        request = {
            'Bucket': self.bucket,
            'Key': key,
            'Body': payload,
            'ContentType': 'application/json',
            'Metadata': {
                SERIAL_METADATA_KEY: str(new_version),
                STATE_ID_METADATA_KEY: state_id,
            },
        }
        request.update(self._encryption_args())
        request.update(conditions)

        try:
            response = self.client.put_object(**request)
        except ClientError as e:
            if _error_code(e) in _PRECONDITION_CODES:
                # Another writer replaced the object between HEAD and PUT
                latest = self._head(key)
                sent = current[1] if current is not None else 'IfNoneMatch=*'
                stored = latest[1] if latest is not None else 'none'
                raise ConflictError(
                    state_id,
                    expected_version,
                    latest[0] if latest else None,
                    details=f"S3 rejected the conditional PUT: sent ETag {sent}, stored ETag {stored} ({e})"
                )
            self._handle_aws_error(e, 'write', key)

        logger.info(f"Wrote {key} version {new_version} (previous: {expected_version})")
        return StateSnapshot(
            state_id=state_id,
            version=new_version,
            payload=payload,
            encrypted=bool(response.get('ServerSideEncryption')) or self.encrypt,
            version_id=response.get('VersionId'),
            etag=response.get('ETag'),
        )

    def list_versions(self, state_id: str) -> List[StateVersion]:
        key = self.state_key(state_id)
        versions = []
        try:
            paginator = self.client.get_paginator('list_object_versions')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=key):
                for entry in page.get('Versions', []):
                    if entry['Key'] != key:
                        continue
                    head = self.client.head_object(
                        Bucket=self.bucket, Key=key, VersionId=entry['VersionId']
                    )
                    versions.append(StateVersion(
                        version_id=entry['VersionId'],
                        version=_serial(head.get('Metadata', {})),
                        last_modified=entry['LastModified'],
                        is_latest=entry.get('IsLatest', False),
                        size=entry.get('Size', 0),
                    ))
        except ClientError as e:
            self._handle_aws_error(e, 'list versions', key)

        versions.sort(
            key=lambda v: (v.last_modified, v.version if v.version is not None else -1),
            reverse=True
        )
        return versions

    def read_version(self, state_id: str, version_id: str) -> StateSnapshot:
        key = self.state_key(state_id)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key, VersionId=version_id)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES or _error_code(e) == 'InvalidArgument':
                raise StateNotFoundError(state_id, version_id)
            self._handle_aws_error(e, 'read version', key)

        return self._snapshot_from_response(state_id, response)

    def delete_state(self, state_id: str) -> int:
        key = self.state_key(state_id)
        objects = []
        try:
            paginator = self.client.get_paginator('list_object_versions')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=key):
                for entry in page.get('Versions', []) + page.get('DeleteMarkers', []):
                    if entry['Key'] == key:
                        objects.append({'Key': key, 'VersionId': entry['VersionId']})

            # delete_objects accepts at most 1000 keys per request
            for start in range(0, len(objects), 1000):
                self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={'Objects': objects[start:start + 1000], 'Quiet': True}
                )
        except ClientError as e:
            self._handle_aws_error(e, 'delete', key)

        logger.warning(f"Deleted {len(objects)} versions of {key}")
        return len(objects)

    def _head(self, key: str) -> Optional[Tuple[int, str]]:
        """Return (serial, etag) of the latest object, or None if absent.

        An object without serial metadata counts as version 0.
        """
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            self._handle_aws_error(e, 'head', key)
        return _serial(response.get('Metadata', {})) or 0, response['ETag']

    def _encryption_args(self) -> Dict[str, Any]:
        if not self.encrypt:
            return {}
        if self.kms_key_id:
            return {'ServerSideEncryption': 'aws:kms', 'SSEKMSKeyId': self.kms_key_id}
        return {'ServerSideEncryption': 'AES256'}

    def _snapshot_from_response(self, state_id: str, response: Dict[str, Any]) -> StateSnapshot:
        payload = response['Body'].read()
        return StateSnapshot(
            state_id=state_id,
            version=_serial(response.get('Metadata', {})) or 0,
            payload=payload,
            encrypted=bool(response.get('ServerSideEncryption')),
            version_id=response.get('VersionId'),
            etag=response.get('ETag'),
            last_modified=response.get('LastModified'),
        )

    def _handle_aws_error(self, error: Exception, operation: str, key: str) -> None:
        """Wrap an unexpected AWS error in ServiceError.

        Raises:
            ServiceError: Always
        """
        raise ServiceError(
            f"S3 {operation} failed for s3://{self.bucket}/{key}: {error}",
            details=str(error)
        )


def _serial(metadata: Dict[str, str]) -> Optional[int]:
    value = metadata.get(SERIAL_METADATA_KEY)
    try:
        return int(value) if value is not None else None
    except ValueError:
        logger.warning(f"Ignoring malformed serial metadata: {value!r}")
        return None


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')
