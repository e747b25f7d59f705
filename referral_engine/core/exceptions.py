"""
Core exceptions shared by the engine components.

Business outcomes (capacity, blocks, budget) are returned as typed results;
only the conditions below are raised.
"""


class ReferralEngineError(Exception):
    """Base exception for referral engine errors"""
    pass


class LockTimeoutError(ReferralEngineError):
    """Raised when a per-usage lock could not be acquired in time.

    Transient: the caller should retry the evaluation.
    """

    def __init__(self, key: str, wait_timeout: float):
        super().__init__(f"Could not acquire lock '{key}' within {wait_timeout}s")
        self.key = key
        self.wait_timeout = wait_timeout


class DataInconsistencyError(ReferralEngineError):
    """Raised on data that should never exist (fatal, not retried).

    Examples: pathway required but missing, corrupt task fact data.
    """
    pass
