from .alerts import AlertMonitor
from .circuit import CircuitBreaker
from .classifier import STRATEGY_TABLE, ErrorClassifier, RecoveryPolicy, classify_exception, classify_status
from .retry import Backoff, RecoveryEngine, RecoveryOutcome, RecoveryStats

__all__ = [
    "AlertMonitor",
    "Backoff",
    "CircuitBreaker",
    "ErrorClassifier",
    "RecoveryEngine",
    "RecoveryOutcome",
    "RecoveryPolicy",
    "RecoveryStats",
    "STRATEGY_TABLE",
    "classify_exception",
    "classify_status",
]
