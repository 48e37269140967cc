"""
Money-Movement Core

Composition root: builds every component from one configuration object and
one storage backend, passing collaborators in explicitly.
"""

from typing import Callable, List, Optional

from .accounts import AccountStore
from .async_storage import AsyncStorageInterface, AsyncPostgreSQLStorage, create_async_storage
from .audit import AuditTrail
from .config import PaymentsConfig
from .limits import LimitChecker
from .logging_config import get_logger
from .notifications import NotificationDispatcher, Notifier, LogNotifier
from .scheduler import ScheduleRunner
from .scheduling import ScheduleManager
from .transactions import TransactionRecorder
from .transfers import TransferExecutor
from .verification import VerificationService

logger = get_logger("payments.core")


class PaymentsCore:
    """
    Complete money-movement core wired over a single storage backend
    """

    def __init__(
        self,
        config: PaymentsConfig,
        storage: Optional[AsyncStorageInterface] = None,
        notifiers: Optional[List[Notifier]] = None,
        code_generator: Optional[Callable[[int], str]] = None
    ):
        self.config = config
        self.storage = storage or create_async_storage(config)

        self.audit_trail = AuditTrail(self.storage, enabled=config.enable_audit_logging)
        self.notifier = NotificationDispatcher(notifiers if notifiers is not None else [LogNotifier()])

        self.accounts = AccountStore(self.storage, self.audit_trail, config)
        self.recorder = TransactionRecorder(self.storage)
        self.limit_checker = LimitChecker(self.recorder, config)
        self.executor = TransferExecutor(
            self.storage, self.accounts, self.recorder, self.limit_checker,
            self.notifier, self.audit_trail, config
        )
        self.verification = VerificationService(
            self.storage, self.accounts, self.recorder, self.limit_checker, self.executor,
            self.notifier, self.audit_trail, config, code_generator=code_generator
        )
        self.schedules = ScheduleManager(self.storage, self.accounts, self.audit_trail, config)
        self.scheduler = ScheduleRunner(
            self.storage, self.schedules, self.executor, self.notifier, self.audit_trail, config
        )

    async def start(self) -> None:
        """Open backend connections"""
        if isinstance(self.storage, AsyncPostgreSQLStorage):
            await self.storage.initialize()
        logger.info(f"Payments core started with {type(self.storage).__name__}")

    async def close(self) -> None:
        await self.storage.close()
        for notifier in self.notifier.notifiers:
            close = getattr(notifier, "close", None)
            if close:
                await close()
