from typing import Optional


class ScanError(Exception):
    """base class for every error raised by the scanning engine"""


class ConfigurationError(ScanError):
    """missing or invalid target identity, mode or setting"""


class TargetNotFoundError(ScanError):
    pass


class RecoverableFetchError(ScanError):
    """a commit source call that may succeed when retried"""


class TransientFetchError(RecoverableFetchError):
    pass


class RateLimitedError(RecoverableFetchError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CorruptPersistedState(ScanError):
    """
    A persisted scan record could not be trusted.

    Never repaired automatically, the record has to be reset explicitly.
    """

    def __init__(self, target_id: str, mode: str, reason: str):
        super().__init__(
            f"Persisted state for {target_id} ({mode}) is corrupt: {reason}. "
            f"Reset the scan to start over."
        )
        self.target_id = target_id
        self.mode = mode
        self.reason = reason


class PersistFailure(ScanError):
    pass


class TriageUnavailable(ScanError):
    pass


class ScanInProgressError(ScanError):
    def __init__(self, target_id: str, mode: str):
        super().__init__(f"A {mode} scan is already running for {target_id}")
        self.target_id = target_id
        self.mode = mode
