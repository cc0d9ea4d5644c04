from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo
import itertools
import threading
import time

from config import get_settings
from locks import KeyedLock
from models import Balance, HistoryRecord, TransactionType


class BalanceRepository(ABC):
    @abstractmethod
    def read_by_id(self, user_id: int) -> Balance:
        """Get user balance. Returns a zero balance if the user has none stored."""
        pass

    @abstractmethod
    def upsert(self, user_id: int, amount: int) -> Balance:
        """Store a new balance stamped with the current time."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Get number of users with a stored balance."""
        pass


class HistoryRepository(ABC):
    @abstractmethod
    def append(
        self, user_id: int, amount: int, type: TransactionType, timestamp: datetime
    ) -> HistoryRecord:
        """Append one immutable history record."""
        pass

    @abstractmethod
    def read_all_by_user_id(self, user_id: int) -> List[HistoryRecord]:
        """Get a user's records, oldest first. Empty list if none exist."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Get total number of stored records."""
        pass


class InMemoryBalanceRepository(BalanceRepository):
    """Dict-backed balance store.

    ``latency`` (seconds) is slept on every access to simulate I/O and widen
    race windows in tests.
    """

    def __init__(self, latency: float = 0.0, tz: Optional[tzinfo] = None):
        self.balances: Dict[int, Balance] = {}
        self.latency = latency
        self.tz = tz

    def read_by_id(self, user_id: int) -> Balance:
        self._throttle()
        balance = self.balances.get(user_id)
        if balance is None:
            return Balance(userId=user_id, amount=0, updatedAt=datetime.now(self.tz))
        return balance

    def upsert(self, user_id: int, amount: int) -> Balance:
        self._throttle()
        balance = Balance(userId=user_id, amount=amount, updatedAt=datetime.now(self.tz))
        self.balances[user_id] = balance
        return balance

    def count(self) -> int:
        return len(self.balances)

    def _throttle(self) -> None:
        if self.latency:
            time.sleep(self.latency)


class InMemoryHistoryRepository(HistoryRepository):
    def __init__(self, latency: float = 0.0):
        self.records: Dict[int, List[HistoryRecord]] = {}
        self.latency = latency
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def append(
        self, user_id: int, amount: int, type: TransactionType, timestamp: datetime
    ) -> HistoryRecord:
        if self.latency:
            time.sleep(self.latency)
        with self._id_lock:
            record_id = next(self._ids)
        record = HistoryRecord(
            id=record_id, userId=user_id, amount=amount, type=type, timestamp=timestamp
        )
        self.records.setdefault(user_id, []).append(record)
        return record

    def read_all_by_user_id(self, user_id: int) -> List[HistoryRecord]:
        return list(self.records.get(user_id, []))

    def count(self) -> int:
        return sum(len(records) for records in list(self.records.values()))


def _build_balance_repository() -> InMemoryBalanceRepository:
    return InMemoryBalanceRepository(tz=ZoneInfo(get_settings().timezone))


# Singleton instances, swapped out by reset_repositories()
_balance_repo = _build_balance_repository()
_history_repo = InMemoryHistoryRepository()
_key_lock = KeyedLock()


def get_balance_repository() -> BalanceRepository:
    return _balance_repo


def get_history_repository() -> HistoryRepository:
    return _history_repo


def get_key_lock() -> KeyedLock:
    return _key_lock


# For tests
def reset_repositories():
    """Reset stores and the lock table to an empty state (for testing only)."""
    global _balance_repo, _history_repo, _key_lock
    _balance_repo = _build_balance_repository()
    _history_repo = InMemoryHistoryRepository()
    _key_lock = KeyedLock()
