"""Error taxonomy and classification for reconciliation failures.

Every failure is classified exactly once, right before it is surfaced:

- SQL execution errors come from the target database driver. They are
  user-actionable and surfaced verbatim, never wrapped as transient.
- Fatal errors (malformed spec, conflicting plans) need a spec change or an
  external action. They are never requeued automatically.
- Everything else is transient and requeued after a short delay.
"""

from __future__ import annotations

from .config import DEFAULT_TRANSIENT_REQUEUE_SECONDS

# Fragment the engine prints when a statement fails on the target database
SQL_ERROR_MARKERS: tuple[str, ...] = (
    "sql/migrate: execute: executing statement",
    "executing statement",
)


class ReconcileError(Exception):
    """Base class for errors raised while reconciling a resource."""

    pass


class TransientError(ReconcileError):
    """A failure expected to resolve on retry.

    Wraps the original error; its message is the original message so status
    conditions never show the wrapper.
    """

    def __init__(self, cause: BaseException, after: float = DEFAULT_TRANSIENT_REQUEUE_SECONDS):
        super().__init__(str(cause))
        self.cause = cause
        self.after = after


class FatalError(ReconcileError):
    """A failure that requires user action; never requeued."""

    pass


class SpecError(FatalError):
    """Raised when the resource spec is malformed or incomplete."""

    pass


class MultiplePlansError(FatalError):
    """Raised when more than one pending plan exists for the same target."""

    def __init__(self, plan_urls: list[str]):
        super().__init__(f"multiple schema plans found: {', '.join(plan_urls)}")
        self.plan_urls = plan_urls


class StepFailed(ReconcileError):
    """Raised by a reconciliation step to fail the pass with a stable reason.

    Attributes:
        reason: Reason code written to the Ready condition.
        cause: Underlying error.
    """

    def __init__(self, reason: str, cause: BaseException):
        super().__init__(str(cause))
        self.reason = reason
        self.cause = cause


def transient(err: BaseException, after: float = DEFAULT_TRANSIENT_REQUEUE_SECONDS) -> TransientError:
    """Wrap an error as transient (idempotent)."""
    if isinstance(err, TransientError):
        return err
    return TransientError(err, after=after)


def is_transient(err: BaseException | None) -> bool:
    """Check if an error is transient."""
    return isinstance(err, TransientError)


def is_sql_error(err: BaseException | None) -> bool:
    """Check if an error originates from executing SQL on the target database."""
    if err is None:
        return False
    text = str(err)
    return any(marker in text for marker in SQL_ERROR_MARKERS)


def classify(err: BaseException, after: float = DEFAULT_TRANSIENT_REQUEUE_SECONDS) -> BaseException:
    """Classify an error as transient, fatal, or SQL-origin.

    Args:
        err: Error about to be surfaced.
        after: Requeue delay used when the error is wrapped as transient.

    Returns:
        The error itself when it is SQL-origin, fatal or already transient;
        otherwise the error wrapped in TransientError.
    """
    if isinstance(err, StepFailed):
        err = err.cause
    if isinstance(err, (TransientError, FatalError)) or is_sql_error(err):
        return err
    return transient(err, after=after)
