"""
Exception types raised by the orchestration engine and the ad platform client.
"""


class OrchestratorError(Exception):
    """Base class for engine errors."""


# ── Precondition errors (abort the run before any goal is processed) ──

class PreconditionError(OrchestratorError):
    pass


class UserNotFound(PreconditionError):
    def __init__(self, user_id):
        super().__init__(f"User {user_id} not found or inactive")
        self.user_id = user_id


class MissingCredential(PreconditionError):
    def __init__(self, user_id):
        super().__init__(f"No ad platform credential for user {user_id}")
        self.user_id = user_id


# ── Concurrency ──────────────────────────────────────────────────────

class AlreadyRunning(OrchestratorError):
    def __init__(self, user_id, run_id=None):
        super().__init__(f"An orchestration run is already in progress for user {user_id}")
        self.user_id = user_id
        self.run_id = run_id


# ── Ad platform ──────────────────────────────────────────────────────

class AdPlatformError(OrchestratorError):
    """A platform call failed and will not be retried (or retries ran out)."""

    def __init__(self, message: str, status_code: int | None = None, code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class TransientPlatformError(AdPlatformError):
    """Timeouts, 5xx and throttling responses. Retried by the client."""


class CredentialExpired(AdPlatformError):
    """The stored access token is expired or revoked."""
