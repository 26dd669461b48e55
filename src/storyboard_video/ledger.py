"""Token balance ledger.

Every balance change runs inside one locked write transaction that reads the
current balance, checks it, writes the new value and appends exactly one
``balance_records`` row. Callers get a ``LedgerResult`` back instead of an
exception so HTTP handlers and the poller can react without crashing.
"""

import logging
import sqlite3
from datetime import datetime, timezone

from storyboard_video.db import get_user, locked_transaction
from storyboard_video.schemas import LedgerResult

logger = logging.getLogger(__name__)

CREDIT_TYPES = {"recharge", "refund", "invite", "redeem"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LedgerError(RuntimeError):
    code = "ledger_error"


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"


class UserNotFound(LedgerError):
    code = "user_not_found"


class InvalidAmount(LedgerError):
    code = "invalid_amount"


class InvalidEntryType(LedgerError):
    code = "invalid_type"


def _apply(
    user_id: str,
    delta: int,
    entry_type: str,
    description: str,
    related_id: str | None,
    once: bool = False,
) -> tuple[int, bool]:
    with locked_transaction() as conn:
        row = conn.execute("SELECT balance FROM users WHERE id=?", (user_id,)).fetchone()
        if not row:
            raise UserNotFound(f"user {user_id} not found")

        current = int(row["balance"])
        if once and related_id is not None:
            booked = conn.execute(
                "SELECT 1 FROM balance_records WHERE user_id=? AND type=? AND related_id=? LIMIT 1",
                (user_id, entry_type, related_id),
            ).fetchone()
            if booked:
                return current, False

        if delta < 0 and current < -delta:
            raise InsufficientBalance(f"balance {current} is less than {-delta}")

        new_balance = current + delta
        ts = _now()
        conn.execute("UPDATE users SET balance=?, updated_at=? WHERE id=?", (new_balance, ts, user_id))
        conn.execute(
            """
            INSERT INTO balance_records (user_id, type, amount, balance, description, related_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, entry_type, delta, new_balance, description, related_id, ts),
        )
    return new_balance, True


def _run(
    user_id: str,
    delta: int,
    entry_type: str,
    description: str,
    related_id: str | None,
    once: bool = False,
) -> LedgerResult:
    try:
        balance, applied = _apply(user_id, delta, entry_type, description, related_id, once=once)
    except LedgerError as exc:
        logger.warning("ledger %s rejected for user=%s amount=%s: %s", entry_type, user_id, delta, exc)
        return LedgerResult(success=False, error=str(exc), error_code=exc.code)
    except sqlite3.Error as exc:
        logger.warning("ledger %s rolled back for user=%s amount=%s: %s", entry_type, user_id, delta, exc)
        return LedgerResult(success=False, error=str(exc), error_code="transaction_failed")

    if not applied:
        logger.info("ledger %s for related_id=%s already booked, skipped", entry_type, related_id)
        return LedgerResult(success=True, balance=balance, applied=False)

    logger.info("ledger %s user=%s amount=%s balance=%s related_id=%s", entry_type, user_id, delta, balance, related_id)
    return LedgerResult(success=True, balance=balance)


def _rejected(exc: LedgerError) -> LedgerResult:
    return LedgerResult(success=False, error=str(exc), error_code=exc.code)


def _validate_amount(amount: int) -> LedgerResult | None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        return _rejected(InvalidAmount(f"amount must be a positive integer, got {amount!r}"))
    return None


def debit(user_id: str, amount: int, description: str, related_id: str | None = None) -> LedgerResult:
    """Consume ``amount`` tokens. Fails without side effects if the balance is short."""
    invalid = _validate_amount(amount)
    if invalid:
        return invalid
    return _run(user_id, -amount, "consume", description, related_id)


def credit(
    user_id: str,
    amount: int,
    description: str,
    related_id: str | None = None,
    entry_type: str = "refund",
) -> LedgerResult:
    if entry_type not in CREDIT_TYPES:
        return _rejected(InvalidEntryType(f"unsupported credit type: {entry_type}"))
    invalid = _validate_amount(amount)
    if invalid:
        return invalid
    return _run(user_id, amount, entry_type, description, related_id)


def refund_once(user_id: str, amount: int, description: str, related_id: str) -> LedgerResult:
    """Refund a job at most once per ``related_id``.

    A repeat call finds the earlier refund record under the same lock and
    returns ``applied=False`` without touching the balance.
    """
    invalid = _validate_amount(amount)
    if invalid:
        return invalid
    return _run(user_id, amount, "refund", description, related_id, once=True)


def check_balance(user_id: str, amount: int) -> bool:
    user = get_user(user_id)
    return bool(user) and int(user["balance"]) >= amount
