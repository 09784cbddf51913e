"""
Standardised error handling for VoiceQC.
"""

from voiceqc.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class NoActiveCredentialError(JobError):
    """The key pool has no active credential for the requested provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(ErrorCode.NO_ACTIVE_CREDENTIAL,
                         f"No active {provider} API keys available")


class TransientProviderError(JobError):
    """Network, rate-limit, auth or 5xx failure. The next backend may succeed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(ErrorCode.PROVIDER_TRANSIENT, message)


class PermanentProviderError(JobError):
    """The request itself is unacceptable; retrying elsewhere will not help."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(ErrorCode.PROVIDER_PERMANENT, message)


class PersistenceError(JobError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.PERSISTENCE, message)


class JobCancelledError(JobError):
    def __init__(self, message: str = "Processing stopped"):
        super().__init__(ErrorCode.JOB_CANCELLED, message)

