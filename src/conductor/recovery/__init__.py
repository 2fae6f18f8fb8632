"""Failure recovery for conductor.

This package provides:
- Error classification into transient/retriable/fatal/conflict
- A pure recovery policy with backoff strategies
- A per-agent circuit breaker
- A checkpoint store for rollback
"""

from .checkpoints import Checkpoint, CheckpointMetadata, CheckpointStore
from .circuit import CircuitBreaker, CircuitBreakerState
from .classifier import (
    CLASSIFICATION_RULES,
    ClassificationRule,
    ErrorCategory,
    ErrorClassification,
    ErrorClassifier,
    ErrorType,
    RecoveryAction,
    Severity,
    classify_error,
)
from .policy import (
    DEFAULT_RETRY_CONFIGS,
    BackoffStrategy,
    RecoveryDecision,
    RecoveryPolicyEngine,
    RetryAttempt,
    RetryConfig,
    RetryHistory,
    compute_delay,
)

__all__ = [
    # Classifier
    "CLASSIFICATION_RULES",
    "ClassificationRule",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorClassifier",
    "ErrorType",
    "RecoveryAction",
    "Severity",
    "classify_error",
    # Policy
    "DEFAULT_RETRY_CONFIGS",
    "BackoffStrategy",
    "RecoveryDecision",
    "RecoveryPolicyEngine",
    "RetryAttempt",
    "RetryConfig",
    "RetryHistory",
    "compute_delay",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerState",
    # Checkpoints
    "Checkpoint",
    "CheckpointMetadata",
    "CheckpointStore",
]
