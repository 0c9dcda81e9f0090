"""
Credit ledger

Every balance change is an append-only transaction row written together with
the balance update. The only in-place rewrite is finalizing a submission
estimate once the real token usage is known.
"""

import hmac
import math
from typing import List, Optional, Tuple

import structlog
from pydantic import BaseModel

from config import CreditConfig
from core.models import CreditTransaction, TransactionStatus, TransactionType
from core.storage import Storage, page_bounds

logger = structlog.get_logger(__name__)


class AdminResult(BaseModel):
    """Outcome of an administrative grant or deduct"""
    success: bool
    message: str
    affected: int = 0


class CreditLedger:
    """Spend, refund and administer user credits"""

    def __init__(self, storage: Storage, settings: CreditConfig):
        self.storage = storage
        self.settings = settings

    def calculate_cost(self, tokens_used: int) -> int:
        """Credits charged for a processed video.

        clamp(base + ceil(tokens / tokens_per_credit), min, max); with the
        defaults that is clamp(2 + ceil(tokens / 500), 3, 10).
        """
        s = self.settings
        raw = s.base_service_cost + math.ceil(max(tokens_used, 0) / s.tokens_per_credit)
        return max(s.min_credits, min(raw, s.max_credits))

    async def get_balance(self, user_id: str) -> Optional[int]:
        user = await self.storage.get_user(user_id)
        return user.credits if user else None

    async def spend(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        tokens_used: Optional[int] = None,
        video_id: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED
    ) -> Optional[CreditTransaction]:
        """Deduct credits; None when the user is unknown or cannot afford it"""
        transaction = CreditTransaction(
            user_id=user_id,
            type=TransactionType.SPEND,
            amount=-amount,
            status=status,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            tokens_used=tokens_used,
            video_id=video_id,
        )
        recorded = await self.storage.record_transaction(transaction, require_funds=True)
        if recorded is None:
            logger.warning("Spend refused", user_id=user_id, amount=amount,
                           reference_id=reference_id)
            return None

        logger.info("Credits spent", user_id=user_id, amount=amount,
                    reference_id=reference_id, reference_type=reference_type)
        return recorded

    async def refund(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        video_id: Optional[str] = None
    ) -> Optional[CreditTransaction]:
        transaction = CreditTransaction(
            user_id=user_id,
            type=TransactionType.REFUND,
            amount=amount,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            video_id=video_id,
        )
        recorded = await self.storage.record_transaction(transaction, require_funds=False)
        if recorded is None:
            logger.warning("Refund failed, unknown user", user_id=user_id, amount=amount)
            return None

        logger.info("Credits refunded", user_id=user_id, amount=amount,
                    reference_id=reference_id, reference_type=reference_type)
        return recorded

    async def amend(self, transaction_id: str, amount: Optional[int] = None,
                    **fields) -> Optional[CreditTransaction]:
        """Rewrite a transaction in place, moving the balance by any amount delta.

        Returns None when the row is missing or the extra charge is not covered.
        """
        if amount is not None:
            fields['amount'] = amount
        amended = await self.storage.amend_transaction(transaction_id, **fields)
        if amended is None:
            logger.warning("Transaction amend refused", transaction_id=transaction_id,
                           amount=amount)
            return None
        logger.info("Transaction amended", transaction_id=transaction_id,
                    amount=amended.amount, status=amended.status.value)
        return amended

    async def get_history(self, user_id: str, limit: Optional[int] = 50,
                          offset: Optional[int] = 0) -> Tuple[List[CreditTransaction], int]:
        limit, offset = page_bounds(limit, offset, self.settings.max_history_limit)
        transactions = await self.storage.list_transactions(user_id, limit=limit, offset=offset)
        total = await self.storage.count_transactions(user_id)
        return transactions, total

    # ── Administration ───────────────────────────────────────────────

    def _check_admin(self, admin_secret: Optional[str], amount: int) -> Optional[str]:
        expected = self.settings.admin_secret
        if not expected or not admin_secret:
            return "Invalid admin credentials"
        if not hmac.compare_digest(admin_secret.encode('utf-8'), expected.encode('utf-8')):
            return "Invalid admin credentials"
        low, high = self.settings.min_admin_amount, self.settings.max_admin_amount
        if not isinstance(amount, int) or amount < low or amount > high:
            return f"Amount must be between {low} and {high}"
        return None

    async def _target_users(self, user_id: Optional[str]) -> List[str]:
        if user_id is not None:
            user = await self.storage.get_user(user_id)
            return [user.id] if user else []
        return [u.id for u in await self.storage.list_users()]

    async def grant(self, admin_secret: Optional[str], amount: int, description: str,
                    user_id: Optional[str] = None) -> AdminResult:
        """Add credits to one user, or to every user when user_id is None"""
        error = self._check_admin(admin_secret, amount)
        if error:
            logger.warning("Admin grant rejected", reason=error)
            return AdminResult(success=False, message=error)

        targets = await self._target_users(user_id)
        if not targets:
            return AdminResult(success=False, message="User not found")

        affected = 0
        for target in targets:
            transaction = CreditTransaction(
                user_id=target,
                type=TransactionType.ADMIN_GRANT,
                amount=amount,
                description=description,
            )
            if await self.storage.record_transaction(transaction, require_funds=False):
                affected += 1

        logger.info("Admin grant applied", amount=amount, affected=affected,
                    all_users=user_id is None)
        return AdminResult(
            success=affected > 0,
            message=f"Granted {amount} credits to {affected} user(s)",
            affected=affected,
        )

    async def deduct(self, admin_secret: Optional[str], amount: int, description: str,
                     user_id: Optional[str] = None) -> AdminResult:
        """Remove credits; users who cannot cover the amount are skipped"""
        error = self._check_admin(admin_secret, amount)
        if error:
            logger.warning("Admin deduct rejected", reason=error)
            return AdminResult(success=False, message=error)

        targets = await self._target_users(user_id)
        if not targets:
            return AdminResult(success=False, message="User not found")

        affected = 0
        for target in targets:
            transaction = CreditTransaction(
                user_id=target,
                type=TransactionType.ADMIN_DEDUCT,
                amount=-amount,
                description=description,
            )
            if await self.storage.record_transaction(transaction, require_funds=True):
                affected += 1

        skipped = len(targets) - affected
        logger.info("Admin deduct applied", amount=amount, affected=affected, skipped=skipped)
        if affected == 0:
            return AdminResult(success=False,
                               message="Insufficient credits for the requested deduction")
        return AdminResult(
            success=True,
            message=f"Deducted {amount} credits from {affected} user(s)",
            affected=affected,
        )
