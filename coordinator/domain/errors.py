from datetime import datetime
from typing import Optional


class CoordinatorError(Exception):
    """Base exception for coordinator errors."""
    pass

class AuthenticationError(CoordinatorError):
    """Bad, missing or expired signature. Always rejected, never retried."""
    pass

class ValidationError(CoordinatorError):
    """Malformed payload. Rejected, never retried."""
    pass

class TransientError(CoordinatorError):
    """Store or external API hiccup. Retryable with backoff."""
    pass

class PermanentError(CoordinatorError):
    """Business-rule rejection inside a handler. Terminal, no retry."""
    pass

class ConfigurationError(CoordinatorError):
    pass

class RateLimitExceeded(CoordinatorError):
    def __init__(self, retry_after_seconds: int, reset_at: Optional[datetime] = None):
        super().__init__(f"Rate limit exceeded, retry after {retry_after_seconds}s")
        self.retry_after_seconds = retry_after_seconds
        self.reset_at = reset_at

class JobNotFoundError(CoordinatorError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id

class InvalidJobStateError(CoordinatorError):
    def __init__(self, current_state, target_state):
        super().__init__(f"Cannot transition from {current_state} to {target_state}")
        self.current_state = current_state
        self.target_state = target_state
