from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo
import structlog

from config import Settings, get_settings
from errors import ErrorKind, PointServiceError
from locks import KeyedLock
from models import Balance, HistoryRecord, TransactionType
from repositories import BalanceRepository, HistoryRepository

# Configure structured logging
logger = structlog.get_logger()


class PointService:
    """Point balances and their ledger.

    ``charge`` and ``use`` run their read-check-write-append cycle inside the
    user's critical section on ``key_lock``. Reads take no lock and return
    point-in-time snapshots that may miss an in-flight write.
    """

    def __init__(
        self,
        balance_repo: BalanceRepository,
        history_repo: HistoryRepository,
        key_lock: KeyedLock,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.balance_repo = balance_repo
        self.history_repo = history_repo
        self.key_lock = key_lock
        self.min_charge_amount = settings.min_charge_amount
        self.min_use_amount = settings.min_use_amount
        self.max_balance = settings.max_balance
        self.max_representable_amount = settings.max_representable_amount
        self.tz = ZoneInfo(settings.timezone)

    def get_balance(self, user_id: int) -> Balance:
        """Current balance of a user, zero if the user never transacted."""
        self._validate_user_id(user_id)
        return self.balance_repo.read_by_id(user_id)

    def get_history(self, user_id: int) -> List[HistoryRecord]:
        """Charge/use records of a user, oldest first."""
        self._validate_user_id(user_id)
        return self.history_repo.read_all_by_user_id(user_id)

    def charge(self, user_id: int, amount: int) -> Balance:
        self._validate_user_id(user_id)
        self._validate_amount(user_id, amount, self.min_charge_amount)

        logger.info("Processing charge", user_id=user_id, amount=amount)
        return self.key_lock.run_exclusive(user_id, self._charge, user_id, amount)

    def use(self, user_id: int, amount: int) -> Balance:
        self._validate_user_id(user_id)
        self._validate_amount(user_id, amount, self.min_use_amount)

        logger.info("Processing use", user_id=user_id, amount=amount)
        return self.key_lock.run_exclusive(user_id, self._use, user_id, amount)

    def _charge(self, user_id: int, amount: int) -> Balance:
        current = self.balance_repo.read_by_id(user_id)
        new_amount = current.amount + amount

        if new_amount > self.max_representable_amount:
            logger.warning(
                "Charge would overflow balance",
                user_id=user_id,
                current_balance=current.amount,
                requested_amount=amount,
            )
            raise PointServiceError(
                ErrorKind.ARITHMETIC_OVERFLOW,
                "Charge would overflow the balance",
                {"current": current.amount, "amount": amount},
            )

        if self.max_balance is not None and new_amount > self.max_balance:
            logger.warning(
                "Charge exceeds balance ceiling",
                user_id=user_id,
                current_balance=current.amount,
                requested_amount=amount,
                max_balance=self.max_balance,
            )
            raise PointServiceError(
                ErrorKind.BALANCE_CEILING_EXCEEDED,
                f"Balance cannot exceed {self.max_balance}",
                {"current": current.amount, "amount": amount, "max_balance": self.max_balance},
            )

        return self._commit(current, new_amount, amount, TransactionType.CHARGE)

    def _use(self, user_id: int, amount: int) -> Balance:
        current = self.balance_repo.read_by_id(user_id)

        if current.amount < amount:
            logger.warning(
                "Insufficient balance for use",
                user_id=user_id,
                current_balance=current.amount,
                requested_amount=amount,
            )
            raise PointServiceError(
                ErrorKind.INSUFFICIENT_BALANCE,
                "Insufficient balance",
                {"current": current.amount, "amount": amount},
            )

        return self._commit(current, current.amount - amount, amount, TransactionType.USE)

    def _commit(
        self, current: Balance, new_amount: int, amount: int, type: TransactionType
    ) -> Balance:
        # Caller holds the user's lock.
        updated = self.balance_repo.upsert(current.userId, new_amount)
        try:
            record = self.history_repo.append(current.userId, amount, type, datetime.now(self.tz))
        except Exception:
            logger.error(
                "History append failed, restoring balance",
                user_id=current.userId,
                type=type.value,
                restored_balance=current.amount,
                exc_info=True,
            )
            self.balance_repo.upsert(current.userId, current.amount)
            raise

        logger.debug(
            "Balance updated",
            user_id=current.userId,
            type=type.value,
            old_balance=current.amount,
            new_balance=new_amount,
        )
        logger.info(
            "Transaction committed",
            user_id=current.userId,
            history_id=record.id,
            type=type.value,
            amount=amount,
            new_balance=updated.amount,
        )
        return updated

    def _validate_user_id(self, user_id: int) -> None:
        if not _is_int(user_id) or user_id <= 0:
            logger.warning("Invalid user id", user_id=user_id)
            raise PointServiceError(
                ErrorKind.INVALID_IDENTIFIER,
                "User id must be a positive integer",
                {"user_id": user_id},
            )

    def _validate_amount(self, user_id: int, amount: int, minimum: Optional[int]) -> None:
        if not _is_int(amount) or amount <= 0:
            logger.warning("Invalid amount", user_id=user_id, amount=amount)
            raise PointServiceError(
                ErrorKind.INVALID_AMOUNT,
                "Amount must be a positive integer",
                {"amount": amount},
            )
        if minimum is not None and amount < minimum:
            logger.warning("Amount below minimum", user_id=user_id, amount=amount, minimum=minimum)
            raise PointServiceError(
                ErrorKind.AMOUNT_TOO_SMALL,
                f"Amount must be at least {minimum}",
                {"amount": amount, "minimum": minimum},
            )


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# Factory function for dependency injection
def get_point_service(
    balance_repo: BalanceRepository,
    history_repo: HistoryRepository,
    key_lock: KeyedLock,
) -> PointService:
    return PointService(balance_repo, history_repo, key_lock)
