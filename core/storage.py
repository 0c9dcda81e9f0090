"""
Storage interface for jobs, ledger entries and user balances, plus an
in-memory implementation.

Every balance change is paired with its ledger row inside a single call so
implementations can make the check-and-adjust atomic per user.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from core.errors import JobNotFoundError
from core.models import CreditTransaction, User, VideoJob, VideoStatus, utcnow


class Storage(ABC):
    """Persistence contract used by the ledger and the pipeline"""

    # ── Users ────────────────────────────────────────────────────────

    @abstractmethod
    async def create_user(self, user: User) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def list_users(self) -> List[User]: ...

    # ── Video jobs ───────────────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: VideoJob) -> VideoJob: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[VideoJob]: ...

    @abstractmethod
    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[VideoStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[VideoJob]:
        """Newest first"""

    @abstractmethod
    async def count_jobs(self, user_id: Optional[str] = None,
                         status: Optional[VideoStatus] = None) -> int: ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields) -> VideoJob:
        """Apply field updates; raises JobNotFoundError for unknown ids"""

    # ── Ledger ───────────────────────────────────────────────────────

    @abstractmethod
    async def record_transaction(self, transaction: CreditTransaction,
                                 require_funds: bool) -> Optional[CreditTransaction]:
        """Insert the row and apply its amount to the user's balance atomically.

        Returns None without side effects when the user does not exist or,
        with require_funds, when the balance would drop below zero.
        """

    @abstractmethod
    async def amend_transaction(self, transaction_id: str,
                                **fields) -> Optional[CreditTransaction]:
        """Rewrite a row in place; a changed amount moves the balance by the
        difference, refused (None) if that would make it negative."""

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]: ...

    @abstractmethod
    async def list_transactions(self, user_id: str, limit: Optional[int] = None,
                                offset: int = 0) -> List[CreditTransaction]:
        """Newest first"""

    @abstractmethod
    async def count_transactions(self, user_id: str) -> int: ...

    @abstractmethod
    async def list_transactions_by_reference(self, reference_id: str) -> List[CreditTransaction]:
        """Oldest first"""

    async def find_latest_by_reference(self, reference_id: str,
                                       reference_type: str) -> Optional[CreditTransaction]:
        matches = [
            tx for tx in await self.list_transactions_by_reference(reference_id)
            if tx.reference_type == reference_type
        ]
        return matches[-1] if matches else None

    async def close(self) -> None:
        return None


def _page(items: list, limit: Optional[int], offset: int) -> list:
    end = None if limit is None else offset + limit
    return items[offset:end]


class MemoryStorage(Storage):
    """Process-local storage.

    Each method runs without awaiting, so under asyncio every balance
    check-and-adjust is a single uninterrupted step.
    """

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._jobs: Dict[str, VideoJob] = {}
        self._transactions: Dict[str, CreditTransaction] = {}
        self._sequence: Dict[str, int] = {}

    def _tick(self, key: str) -> None:
        self._sequence[key] = len(self._sequence)

    async def create_user(self, user: User) -> User:
        self._users[user.id] = user.model_copy(deep=True)
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def list_users(self) -> List[User]:
        return [u.model_copy(deep=True) for u in self._users.values()]

    async def create_job(self, job: VideoJob) -> VideoJob:
        self._jobs[job.id] = job.model_copy(deep=True)
        self._tick(job.id)
        return job

    async def get_job(self, job_id: str) -> Optional[VideoJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def _filter_jobs(self, user_id: Optional[str], status: Optional[VideoStatus]) -> List[VideoJob]:
        jobs = [
            job for job in self._jobs.values()
            if (user_id is None or job.user_id == user_id)
            and (status is None or job.status == status)
        ]
        jobs.sort(key=lambda j: (j.created_at, self._sequence[j.id]), reverse=True)
        return jobs

    async def list_jobs(self, user_id=None, status=None, limit=None, offset=0) -> List[VideoJob]:
        jobs = _page(self._filter_jobs(user_id, status), limit, offset)
        return [j.model_copy(deep=True) for j in jobs]

    async def count_jobs(self, user_id=None, status=None) -> int:
        return len(self._filter_jobs(user_id, status))

    async def update_job(self, job_id: str, **fields) -> VideoJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Video job not found: {job_id}")
        fields['updated_at'] = utcnow()
        updated = job.model_copy(update=fields, deep=True)
        self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def record_transaction(self, transaction, require_funds) -> Optional[CreditTransaction]:
        user = self._users.get(transaction.user_id)
        if user is None:
            return None
        new_balance = user.credits + transaction.amount
        if require_funds and new_balance < 0:
            return None
        user.credits = new_balance
        self._transactions[transaction.id] = transaction.model_copy(deep=True)
        self._tick(transaction.id)
        return transaction

    async def amend_transaction(self, transaction_id: str, **fields) -> Optional[CreditTransaction]:
        current = self._transactions.get(transaction_id)
        if current is None:
            return None
        user = self._users.get(current.user_id)
        if user is None:
            return None
        delta = fields.get('amount', current.amount) - current.amount
        if user.credits + delta < 0:
            return None
        updated = CreditTransaction.model_validate({**current.model_dump(), **fields})
        user.credits += delta
        self._transactions[transaction_id] = updated
        return updated.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        tx = self._transactions.get(transaction_id)
        return tx.model_copy(deep=True) if tx else None

    def _ordered_transactions(self) -> List[CreditTransaction]:
        return sorted(self._transactions.values(),
                      key=lambda t: (t.created_at, self._sequence[t.id]))

    async def list_transactions(self, user_id, limit=None, offset=0) -> List[CreditTransaction]:
        txs = [t for t in reversed(self._ordered_transactions()) if t.user_id == user_id]
        return [t.model_copy(deep=True) for t in _page(txs, limit, offset)]

    async def count_transactions(self, user_id: str) -> int:
        return sum(1 for t in self._transactions.values() if t.user_id == user_id)

    async def list_transactions_by_reference(self, reference_id: str) -> List[CreditTransaction]:
        return [t.model_copy(deep=True) for t in self._ordered_transactions()
                if t.reference_id == reference_id]


def page_bounds(limit: Optional[int], offset: Optional[int], max_limit: int) -> Tuple[int, int]:
    """Clamp client pagination to [1, max_limit] and a non-negative offset"""
    safe_limit = max_limit if not limit or limit < 1 else min(limit, max_limit)
    safe_offset = max(offset or 0, 0)
    return safe_limit, safe_offset
