"""
errors.py — AppError base class and error code registry.

Every error returned by the ledger API or raised by the engine must use a code
defined here. Do not raise strings or generic exceptions from service code.

  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Never conflate 401 (unauthenticated) with 403 (unauthorized).
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
# These are the string values sent in the API response and reported by the
# sync layer. Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_AMOUNT_PRECISION   = "INVALID_AMOUNT_PRECISION"
    INVALID_SPLIT_TYPE         = "INVALID_SPLIT_TYPE"
    DUPLICATE_SPLIT_USER       = "DUPLICATE_SPLIT_USER"
    UNKNOWN_ACTION_TYPE        = "UNKNOWN_ACTION_TYPE"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    EXPENSE_NOT_FOUND          = "EXPENSE_NOT_FOUND"
    # The balance a settlement refers to no longer exists (settled elsewhere).
    BALANCE_NOT_FOUND          = "BALANCE_NOT_FOUND"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    # A concurrent writer updated the same pairwise balance row first.
    BALANCE_CONFLICT           = "BALANCE_CONFLICT"

    # ── Business Rule Violations (422) ────────────────────────────────────
    SPLIT_SUM_MISMATCH         = "SPLIT_SUM_MISMATCH"
    SELF_DEBT                  = "SELF_DEBT"
    EXPENSE_DELETED            = "EXPENSE_DELETED"
    # Settlement amount exceeds the known outstanding debt. Rejected, never
    # clamped or flipped into the opposite direction.
    OVER_SETTLEMENT            = "OVER_SETTLEMENT"

    # ── Auth Errors ────────────────────────────────────────────────────────
    # 401 = we do not know who you are (unauthenticated)
    # 403 = we know who you are, but you are not allowed
    NOT_AUTHENTICATED          = "NOT_AUTHENTICATED"      # 401
    TOKEN_MISSING              = "TOKEN_MISSING"          # 401
    TOKEN_INVALID              = "TOKEN_INVALID"          # 401
    TOKEN_EXPIRED              = "TOKEN_EXPIRED"          # 401
    FORBIDDEN                  = "FORBIDDEN"              # 403

    # ── Offline replay ─────────────────────────────────────────────────────
    # Never returned over HTTP. Attached to dropped actions in SyncReport.
    REPLAY_FAILED              = "REPLAY_FAILED"

    # ── System Errors (500) ────────────────────────────────────────────────
    # Conservation check failed. A programming defect, not a runtime condition.
    INVARIANT_VIOLATION        = "INVARIANT_VIOLATION"
    INTERNAL_ERROR             = "INTERNAL_ERROR"


def invariant_violation(message: str) -> AppError:
    """Builds the 500 raised when a money-conservation check fails."""
    return AppError(ErrorCode.INVARIANT_VIOLATION, message, 500)
