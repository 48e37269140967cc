"""
Transaction Limit Checks

Daily, monthly and per-transaction ceilings evaluated immediately before every
debit. Windows are relative to the time of the check, so a scheduled debit is
checked when it runs, not when it was scheduled.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .accounts import Account
from .async_storage import AtomicUnit
from .config import PaymentsConfig
from .currency import Money
from .exceptions import LimitExceededError
from .logging_config import get_logger, log_action
from .transactions import TransactionRecorder, TransactionType


@dataclass(frozen=True)
class LimitCheckResult:
    allowed: bool
    reason: Optional[str] = None
    limit_type: Optional[str] = None  # daily, monthly or global
    threshold: Optional[Decimal] = None


ALLOWED = LimitCheckResult(allowed=True)


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


class LimitChecker:
    """
    Read-only limit evaluation against recorded debits
    """

    def __init__(self, recorder: TransactionRecorder, config: PaymentsConfig):
        self.recorder = recorder
        self.config = config
        self.logger = get_logger("payments.limits")

    async def _debit_total(self, account: Account, since: datetime, now: datetime,
                           unit: Optional[AtomicUnit]) -> Money:
        total = Money.zero(account.currency)
        for transaction in await self.recorder.find_debits_since(account.id, since, now, unit=unit):
            total = total + transaction.amount
        return total

    async def check_limits(
        self,
        account: Account,
        amount: Money,
        transaction_type: TransactionType,
        now: Optional[datetime] = None,
        unit: Optional[AtomicUnit] = None
    ) -> LimitCheckResult:
        """
        Evaluate daily, monthly and global ceilings for a prospective debit

        Daily covers local midnight to now, monthly the 1st of the month to now,
        both over completed and pending debits from this account.
        """
        if not transaction_type.is_debit:
            return ALLOWED

        now = now or datetime.now(timezone.utc)

        daily_total = await self._debit_total(account, start_of_day(now), now, unit)
        if daily_total + amount > account.daily_transaction_limit:
            threshold = account.daily_transaction_limit.amount
            return LimitCheckResult(
                allowed=False,
                reason=(f"Daily transaction limit of {account.daily_transaction_limit.to_string()} exceeded: "
                        f"{daily_total.to_string()} already debited today"),
                limit_type="daily",
                threshold=threshold
            )

        monthly_total = await self._debit_total(account, start_of_month(now), now, unit)
        if monthly_total + amount > account.monthly_transaction_limit:
            return LimitCheckResult(
                allowed=False,
                reason=(f"Monthly transaction limit of {account.monthly_transaction_limit.to_string()} exceeded: "
                        f"{monthly_total.to_string()} already debited this month"),
                limit_type="monthly",
                threshold=account.monthly_transaction_limit.amount
            )

        max_amount = self.config.max_transaction_amount
        if amount.amount > max_amount:
            return LimitCheckResult(
                allowed=False,
                reason=f"Amount exceeds maximum transaction amount of {max_amount}",
                limit_type="global",
                threshold=max_amount
            )

        return ALLOWED

    async def enforce_limits(
        self,
        account: Account,
        amount: Money,
        transaction_type: TransactionType,
        now: Optional[datetime] = None,
        unit: Optional[AtomicUnit] = None
    ) -> None:
        """Raise LimitExceededError when check_limits rejects the debit"""
        result = await self.check_limits(account, amount, transaction_type, now, unit)
        if result.allowed:
            return

        log_action(
            self.logger, "warning", f"Limit exceeded for account {account.id}",
            user_id=account.owner_id, action="check_limits", resource=f"account:{account.id}",
            extra={
                "limit_type": result.limit_type,
                "threshold": str(result.threshold),
                "amount": amount.to_string()
            }
        )
        raise LimitExceededError(result.limit_type, result.threshold, result.reason)
