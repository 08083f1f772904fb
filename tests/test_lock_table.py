"""Tests for the DynamoDB lock table."""

from concurrent.futures import ThreadPoolExecutor

import boto3
import pytest
from hypothesis import given, settings, strategies as st
from moto import mock_aws

from infra_state.core.exceptions import LockedError, LockNotHeldError

from conftest import make_backend


class TestAcquireRelease:
    """Scenarios for acquire and release."""

    def test_second_operator_is_locked_out_until_release(self, lock_table):
        """A holds infra-1, B is refused, A releases, B succeeds."""
        lock_table.acquire('infra-1', 'A')

        with pytest.raises(LockedError) as exc_info:
            lock_table.acquire('infra-1', 'B')
        assert exc_info.value.lock_id == 'infra-1'
        assert exc_info.value.holder == 'B'
        assert exc_info.value.current.holder == 'A'

        lock_table.release('infra-1', 'A')
        record = lock_table.acquire('infra-1', 'B')

        assert record.holder == 'B'
        assert lock_table.get_lock('infra-1').holder == 'B'

    def test_holder_cannot_acquire_twice(self, lock_table):
        lock_table.acquire('infra-1', 'A')
        with pytest.raises(LockedError):
            lock_table.acquire('infra-1', 'A')

    def test_release_by_non_holder_keeps_lock(self, lock_table):
        lock_table.acquire('infra-1', 'A')

        with pytest.raises(LockNotHeldError) as exc_info:
            lock_table.release('infra-1', 'B')

        assert exc_info.value.current.holder == 'A'
        assert lock_table.get_lock('infra-1').holder == 'A'

    def test_release_without_lock(self, lock_table):
        with pytest.raises(LockNotHeldError) as exc_info:
            lock_table.release('infra-1', 'A')
        assert exc_info.value.current is None

    def test_release_twice_fails(self, lock_table):
        lock_table.acquire('infra-1', 'A')
        lock_table.release('infra-1', 'A')
        with pytest.raises(LockNotHeldError):
            lock_table.release('infra-1', 'A')

    def test_different_ids_are_independent(self, lock_table):
        lock_table.acquire('infra-1', 'A')
        lock_table.acquire('infra-2', 'B')

        assert lock_table.get_lock('infra-1').holder == 'A'
        assert lock_table.get_lock('infra-2').holder == 'B'

    def test_record_carries_operation_and_info(self, lock_table):
        lock_table.acquire('infra-1', 'A', operation='apply', info='deploy v2')

        record = lock_table.get_lock('infra-1')
        assert record.lock_id == 'infra-1'
        assert record.operation == 'apply'
        assert record.info == 'deploy v2'
        assert record.acquired_at is not None

    def test_unlocked_id_has_no_record(self, lock_table):
        assert lock_table.get_lock('never-locked') is None


class TestForceRelease:
    """Manual recovery of abandoned locks."""

    def test_force_release_removes_any_holder(self, lock_table):
        lock_table.acquire('infra-1', 'crashed-operator')

        removed = lock_table.force_release('infra-1')

        assert removed.holder == 'crashed-operator'
        assert lock_table.get_lock('infra-1') is None
        lock_table.acquire('infra-1', 'B')

    def test_force_release_without_lock(self, lock_table):
        assert lock_table.force_release('infra-1') is None


def test_concurrent_acquires_have_one_winner(lock_table):
    """Holders racing on the same lock id: exactly one gets it."""
    holders = [f"holder-{i}" for i in range(8)]
    lock_table.get_lock('infra-1')

    def try_acquire(holder):
        try:
            lock_table.acquire('infra-1', holder)
            return holder
        except LockedError:
            return None

    with ThreadPoolExecutor(max_workers=len(holders)) as executor:
        results = list(executor.map(try_acquire, holders))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert lock_table.get_lock('infra-1').holder == winners[0]


def test_items_use_lock_id_key(backend):
    """Records keep the LockID key layout other tools expect."""
    backend.lock_table().acquire('infra-1', 'A')

    client = boto3.client('dynamodb', region_name='us-east-1')
    item = client.get_item(TableName='test-state-locks', Key={'LockID': {'S': 'infra-1'}})['Item']

    assert item['Holder']['S'] == 'A'


operations = st.lists(
    st.tuples(st.sampled_from(['acquire', 'release']), st.sampled_from(['A', 'B', 'C'])),
    min_size=1,
    max_size=15,
)


class TestMutualExclusionProperty:
    """Property-based tests for lock ownership."""

    @settings(max_examples=25, deadline=None)
    @given(ops=operations)
    @mock_aws
    def test_at_most_one_holder(self, ops):
        """
        For any sequence of acquire/release calls on one lock id, an acquire
        succeeds only when nobody holds the lock, and a release succeeds only
        for the current holder.
        """
        lock_table = make_backend().lock_table()
        holder = None

        for op, who in ops:
            if op == 'acquire':
                if holder is None:
                    lock_table.acquire('infra-1', who)
                    holder = who
                else:
                    with pytest.raises(LockedError):
                        lock_table.acquire('infra-1', who)
            else:
                if holder == who:
                    lock_table.release('infra-1', who)
                    holder = None
                else:
                    with pytest.raises(LockNotHeldError):
                        lock_table.release('infra-1', who)

            current = lock_table.get_lock('infra-1')
            assert (current.holder if current else None) == holder
