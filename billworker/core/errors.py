"""
Error taxonomy for a worker run.

Attempt-level errors are recovered by the whole-attempt login retry loop.
Invoice errors mean both bill surfaces and every locator strategy were
exhausted, so they end the run.
"""

from typing import List, Optional


class WorkerError(Exception):
    """Base class for every failure surfaced by the worker."""


class InputInvalid(WorkerError):
    """Missing or inconsistent run input. Never retried."""


# ==================== Login ====================

class LoginAttemptError(WorkerError):
    """A failure that ends the current login attempt only."""


class FormNotFound(LoginAttemptError):
    """Credential inputs (or the submit control) never appeared."""


class ChallengeKeyNotFound(LoginAttemptError):
    """No reCAPTCHA site key in a sub-frame URL or a DOM attribute."""


class LoginRejected(LoginAttemptError):
    """The portal showed an error banner after submission."""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.banner = message
        self.recoverable = recoverable

    def __str__(self) -> str:
        kind = "bot rejection" if self.recoverable else "rejected"
        return f"Login failed ({kind}): {self.banner}"


class LoginValidationFailed(LoginAttemptError):
    """None of the post-login success signals were observed."""

    def __init__(self, message: str, evidence=None):
        super().__init__(message)
        self.evidence = evidence


class LoginFailed(WorkerError):
    """Every login attempt failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Login failed after {attempts} attempt(s){detail}")


# ==================== CAPTCHA ====================

class SolverError(WorkerError):
    """The solving service reported a non-zero errorId."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class SolverTimeout(SolverError):
    """The poll budget ran out before the task became ready."""


# ==================== Invoices ====================

class InvoiceError(WorkerError):
    """Fatal failure of the invoice discovery & download workflow."""


class InstallationNotFound(InvoiceError):
    pass


class BillNotFound(InvoiceError):
    pass


class DownloadButtonNotFound(InvoiceError):

    def __init__(self, reference_month: str, missing: List[int]):
        self.missing = list(missing)
        indexes = ", ".join(str(i) for i in self.missing)
        super().__init__(
            f"Download button not found for {reference_month} match(es): {indexes}"
        )


class DownloadTimeout(InvoiceError):
    pass


class InvalidDownloadFormat(InvoiceError):
    """Downloaded content is not a PDF and no PDF link could be resolved."""
