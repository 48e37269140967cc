"""
Account Management Module

Account records held by the ledger store. Balances are only ever changed by the
transfer executor inside an atomic unit of work; this module opens accounts,
reads them, and applies administrative status changes.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import secrets
import uuid

from .async_storage import AsyncStorageInterface, AtomicUnit
from .audit import AuditTrail, AuditEventType
from .config import PaymentsConfig
from .currency import Money, Currency
from .exceptions import RecordNotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageRecord

ACCOUNTS_TABLE = "accounts"


class AccountType(Enum):
    """Retail account products"""
    CHECKING = "checking"
    SAVINGS = "savings"
    BUSINESS = "business"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"      # Normal operation
    INACTIVE = "inactive"  # Closed or dormant
    FROZEN = "frozen"      # Temporarily suspended


@dataclass
class Account(StorageRecord):
    """
    Bank account with balance and transaction ceilings
    """
    account_number: str
    owner_id: str
    account_type: AccountType
    currency: Currency
    balance: Money
    daily_transaction_limit: Money
    monthly_transaction_limit: Money
    status: AccountStatus = AccountStatus.ACTIVE

    def __post_init__(self):
        for name in ('balance', 'daily_transaction_limit', 'monthly_transaction_limit'):
            if getattr(self, name).currency != self.currency:
                raise ValueError(f"{name} currency must match account currency")

        if self.balance.is_negative():
            raise ValueError("Account balance cannot be negative")

    @property
    def is_active(self) -> bool:
        """Check if account can be debited or credited"""
        return self.status == AccountStatus.ACTIVE


def account_to_dict(account: Account) -> Dict:
    """Convert Account to dictionary for storage"""
    result = account.to_dict()
    result['account_type'] = account.account_type.value
    result['currency'] = account.currency.code
    result['status'] = account.status.value
    result['balance'] = str(account.balance.amount)
    result['daily_transaction_limit'] = str(account.daily_transaction_limit.amount)
    result['monthly_transaction_limit'] = str(account.monthly_transaction_limit.amount)
    return result


def account_from_dict(data: Dict) -> Account:
    """Convert dictionary to Account"""
    currency = Currency[data['currency']]

    return Account(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        account_number=data['account_number'],
        owner_id=data['owner_id'],
        account_type=AccountType(data['account_type']),
        currency=currency,
        balance=Money(Decimal(data['balance']), currency),
        daily_transaction_limit=Money(Decimal(data['daily_transaction_limit']), currency),
        monthly_transaction_limit=Money(Decimal(data['monthly_transaction_limit']), currency),
        status=AccountStatus(data['status'])
    )


class AccountStore:
    """
    Ledger store view of account records
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        audit_trail: AuditTrail,
        config: PaymentsConfig
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config
        self.table_name = ACCOUNTS_TABLE
        self.logger = get_logger("payments.accounts")

    async def create_account(
        self,
        owner_id: str,
        account_type: AccountType = AccountType.CHECKING,
        currency: Optional[Currency] = None,
        opening_balance: Optional[Decimal] = None,
        daily_transaction_limit: Optional[Decimal] = None,
        monthly_transaction_limit: Optional[Decimal] = None,
        account_number: Optional[str] = None
    ) -> Account:
        """
        Open a new account

        Args:
            owner_id: ID of account owner
            account_type: Checking, savings or business
            currency: Account currency (configured default if not provided)
            opening_balance: Initial balance, zero if not provided
            daily_transaction_limit: Daily debit ceiling (configured default if not provided)
            monthly_transaction_limit: Monthly debit ceiling (configured default if not provided)
            account_number: Specific account number (generated if not provided)

        Returns:
            Created Account object
        """
        currency = currency or Currency.from_code(self.config.default_currency)
        now = datetime.now(timezone.utc)

        if daily_transaction_limit is None:
            daily_transaction_limit = self.config.max_daily_transaction_limit
        if monthly_transaction_limit is None:
            monthly_transaction_limit = self.config.max_monthly_transaction_limit

        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=account_number or self._generate_account_number(account_type),
            owner_id=owner_id,
            account_type=account_type,
            currency=currency,
            balance=Money(opening_balance or Decimal('0'), currency),
            daily_transaction_limit=Money(daily_transaction_limit, currency),
            monthly_transaction_limit=Money(monthly_transaction_limit, currency)
        )

        await self.storage.save(self.table_name, account.id, account_to_dict(account))

        log_action(
            self.logger, "info", f"Account opened: {account.account_number}",
            user_id=owner_id, action="create_account", resource=f"account:{account.id}",
            extra={"account_type": account_type.value, "currency": currency.code}
        )

        await self.audit_trail.try_log_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "account_number": account.account_number,
                "owner_id": owner_id,
                "account_type": account_type.value,
                "opening_balance": account.balance.to_string()
            },
            user_id=owner_id
        )

        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = await self.storage.load(self.table_name, account_id)
        if account_dict:
            return account_from_dict(account_dict)
        return None

    async def require_account(self, account_id: str) -> Account:
        """Get account by ID, raising if it does not exist"""
        account = await self.get_account(account_id)
        if account is None:
            raise RecordNotFoundError("account", account_id)
        return account

    async def get_owner_accounts(self, owner_id: str) -> List[Account]:
        """Get all accounts belonging to an owner"""
        records = await self.storage.find(self.table_name, {"owner_id": owner_id})
        return [account_from_dict(data) for data in records]

    async def set_status(self, account_id: str, status: AccountStatus, reason: str) -> Account:
        """
        Administrative status change (freeze, close, reactivate)

        Runs as an atomic unit locking the account so it cannot interleave with
        an in-flight transfer.
        """
        async with self.storage.atomic([(self.table_name, account_id)]) as unit:
            account = await self.load_in_unit(unit, account_id)
            old_status = account.status
            account.status = status
            account.updated_at = datetime.now(timezone.utc)
            await self.save_in_unit(unit, account)

        log_action(
            self.logger, "info", f"Account {account_id} status {old_status.value} -> {status.value}",
            action="set_account_status", resource=f"account:{account_id}",
            extra={"reason": reason}
        )

        await self.audit_trail.try_log_event(
            event_type=AuditEventType.ACCOUNT_STATUS_CHANGED,
            entity_type="account",
            entity_id=account_id,
            metadata={
                "old_status": old_status.value,
                "new_status": status.value,
                "reason": reason
            }
        )

        return account

    async def load_in_unit(self, unit: AtomicUnit, account_id: str) -> Account:
        """Read an account inside an atomic unit"""
        data = await unit.load(self.table_name, account_id)
        if data is None:
            raise RecordNotFoundError("account", account_id)
        return account_from_dict(data)

    async def save_in_unit(self, unit: AtomicUnit, account: Account) -> None:
        """Stage an account write inside an atomic unit"""
        await unit.save(self.table_name, account.id, account_to_dict(account))

    def _generate_account_number(self, account_type: AccountType) -> str:
        """Generate a unique account number"""
        prefix_map = {
            AccountType.CHECKING: "CHK",
            AccountType.SAVINGS: "SAV",
            AccountType.BUSINESS: "BUS"
        }
        timestamp = int(datetime.now(timezone.utc).timestamp())
        return f"{prefix_map[account_type]}{timestamp}{secrets.randbelow(10000):04d}"
