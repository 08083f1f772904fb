"""
infra-state - Shared, lockable infrastructure state on AWS.

Keeps one encrypted, versioned state snapshot per state identifier in S3 and
guards every mutation with a DynamoDB lock record, so several operators can
change the same infrastructure without corrupting each other's work.
"""

__version__ = "1.0.0"

from infra_state.core.exceptions import InfraStateError

__all__ = ["InfraStateError"]
