"""Tests for bootstrapping the bucket and lock table."""

import boto3
from moto import mock_aws

from infra_state.core.config import BackendConfig
from infra_state.state.backend import StateBackend


def test_bootstrap_configures_bucket_and_table(backend):
    status = backend.check()

    assert status.ready
    assert status.bucket_exists
    assert status.versioning_enabled
    assert status.encryption_enabled
    assert status.table_exists

    s3 = boto3.client('s3', region_name='us-east-1')
    public_access = s3.get_public_access_block(Bucket='test-state-bucket')
    assert public_access['PublicAccessBlockConfiguration']['BlockPublicAcls']

    dynamodb = boto3.client('dynamodb', region_name='us-east-1')
    table = dynamodb.describe_table(TableName='test-state-locks')['Table']
    assert table['KeySchema'] == [{'AttributeName': 'LockID', 'KeyType': 'HASH'}]


def test_bootstrap_is_repeatable(backend):
    assert backend.bootstrap().ready


@mock_aws
def test_check_before_bootstrap():
    config = BackendConfig(bucket='missing-bucket', lock_table='missing-table')
    status = StateBackend(boto3.Session(region_name='us-east-1'), config).check()

    assert not status.bucket_exists
    assert not status.table_exists
    assert not status.ready


@mock_aws
def test_bootstrap_outside_us_east_1():
    config = BackendConfig(bucket='eu-state-bucket', lock_table='eu-locks', region='eu-west-1')
    backend = StateBackend(boto3.Session(region_name='eu-west-1'), config)

    assert backend.bootstrap().ready
    location = boto3.client('s3', region_name='eu-west-1').get_bucket_location(Bucket='eu-state-bucket')
    assert location['LocationConstraint'] == 'eu-west-1'


@mock_aws
def test_clients_share_backend_settings():
    config = BackendConfig(bucket='state-bucket', lock_table='locks', key_prefix='team', kms_key_id='alias/state')
    backend = StateBackend(boto3.Session(region_name='us-east-1'), config)

    store = backend.object_store()
    assert store.bucket == 'state-bucket'
    assert store.state_key('infra-1') == 'team/infra-1/terraform.tfstate'
    assert store.kms_key_id == 'alias/state'
    assert backend.lock_table().table_name == 'locks'
