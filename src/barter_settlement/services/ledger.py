"""Valor Ledger - the only code allowed to move Valor.

Every movement goes through ``transfer``: one or two single-row atomic
UPDATEs on users (never read-modify-write) plus exactly one journal row in
valor_transactions, all inside the caller's transaction. A debit that
would take a balance below zero is refused by the UPDATE's WHERE clause and
surfaces as InsufficientBalanceError.

Escrow release is claimed through the swap's ``escrow_state`` column
(held -> released | refunded) with a conditional UPDATE, so it happens at
most once no matter how many workers race for it. A failed claim is an
integrity breach, never something to quietly fix up.

Journal conventions (used by reconcile_user):
    spendable += net_amount of entries *to* the user of a credit type
    spendable -= amount     of entries *from* the user of a debit type
    locked    += deposit_lock entries, -= deposit_release entries
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from barter_settlement.domain.enums import EscrowState, TransactionType
from barter_settlement.domain.exceptions import (
    EscrowIntegrityError,
    InsufficientBalanceError,
    LedgerIntegrityError,
    UserNotFoundError,
)
from barter_settlement.domain.fees import community_pool_share
from barter_settlement.infrastructure.database.orm_models import SwapRequest, ValorTransaction
from barter_settlement.infrastructure.database.repositories import (
    SwapRepository,
    SystemStatsRepository,
    TransactionRepository,
    UserRepository,
    mirror_update,
)
from barter_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from barter_settlement.domain.fees import FeeBreakdown

logger = get_logger(__name__)

SPENDABLE_CREDIT_TYPES = frozenset(
    {
        TransactionType.GRANT,
        TransactionType.SWAP_COMPLETED,
        TransactionType.AUTO_COMPLETE_RELEASE,
        TransactionType.ESCROW_REFUND,
        TransactionType.DEPOSIT_RELEASE,
        TransactionType.COMPENSATION,
    }
)
SPENDABLE_DEBIT_TYPES = frozenset({TransactionType.ESCROW_HOLD, TransactionType.DEPOSIT_LOCK})
SETTLEMENT_TYPES = frozenset(
    {TransactionType.SWAP_COMPLETED, TransactionType.AUTO_COMPLETE_RELEASE}
)


class ValorLedger:
    """Balance mutations and their journal, bound to one session."""

    def __init__(
        self,
        session: AsyncSession,
        community_pool_rate: Decimal = Decimal("0.5"),
    ) -> None:
        self._users = UserRepository(session)
        self._swaps = SwapRepository(session)
        self._txns = TransactionRepository(session)
        self._stats = SystemStatsRepository(session)
        self._community_pool_rate = community_pool_rate

    # ------------------------------------------------------------------
    # Primitive
    # ------------------------------------------------------------------

    async def transfer(
        self,
        *,
        txn_type: TransactionType,
        amount: int,
        debit_user: uuid.UUID | None = None,
        credit_user: uuid.UUID | None = None,
        fee: int = 0,
        debit_locked: bool = False,
        credit_locked: bool = False,
        swap_id: uuid.UUID | None = None,
        description: str = "",
        fee_breakdown: dict | None = None,
    ) -> ValorTransaction:
        """Move ``amount`` from one balance to another and journal it.

        ``None`` on either side means escrow or the platform. The credited
        side receives ``amount - fee``.
        """
        if amount <= 0:
            raise ValueError(f"transfer amount must be positive, got {amount}")
        if not 0 <= fee <= amount:
            raise ValueError(f"fee {fee} outside [0, {amount}]")

        if debit_user is not None:
            if debit_locked:
                ok = await self._users.adjust_balance(debit_user, 0, locked_delta=-amount)
            else:
                ok = await self._users.adjust_balance(debit_user, -amount)
            if not ok:
                await self._raise_debit_failure(debit_user, amount, locked=debit_locked)

        net = amount - fee
        if credit_user is not None and net > 0:
            if credit_locked:
                ok = await self._users.adjust_balance(credit_user, 0, locked_delta=net)
            else:
                ok = await self._users.adjust_balance(credit_user, net)
            if not ok:
                raise UserNotFoundError(str(credit_user))

        txn = await self._txns.record(
            ValorTransaction(
                from_user_id=debit_user,
                to_user_id=credit_user,
                amount=amount,
                fee=fee,
                net_amount=net,
                type=txn_type.value,
                swap_request_id=swap_id,
                description=description,
                fee_breakdown=fee_breakdown,
            )
        )
        logger.debug(
            "ledger.transfer",
            type=txn_type.value,
            amount=amount,
            fee=fee,
            debit=str(debit_user) if debit_user else None,
            credit=str(credit_user) if credit_user else None,
            swap_id=str(swap_id) if swap_id else None,
        )
        return txn

    async def _raise_debit_failure(self, user_id: uuid.UUID, amount: int, *, locked: bool) -> None:
        user = await self._users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(str(user_id))
        available = user.locked_valor if locked else user.valor_balance
        raise InsufficientBalanceError(str(user_id), amount, available)

    # ------------------------------------------------------------------
    # Grants & compensation (platform funds)
    # ------------------------------------------------------------------

    async def grant(self, user_id: uuid.UUID, amount: int, description: str = "") -> ValorTransaction:
        return await self.transfer(
            txn_type=TransactionType.GRANT,
            amount=amount,
            credit_user=user_id,
            description=description or "Valor grant",
        )

    async def pay_compensation(
        self,
        user_id: uuid.UUID,
        amount: int,
        swap_id: uuid.UUID | None,
        description: str = "",
    ) -> ValorTransaction:
        """Credit ``user_id`` from platform funds. Never touches the swap's escrow."""
        txn = await self.transfer(
            txn_type=TransactionType.COMPENSATION,
            amount=amount,
            credit_user=user_id,
            swap_id=swap_id,
            description=description or "Dispute compensation",
        )
        await self._stats.increment(total_compensation_paid=amount)
        logger.info(
            "ledger.compensation_paid",
            user_id=str(user_id),
            amount=amount,
            swap_id=str(swap_id) if swap_id else None,
        )
        return txn

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    async def hold_escrow(self, swap: SwapRequest) -> ValorTransaction | None:
        """Debit the requester into the swap's escrow. Swap must be NONE -> HELD."""
        if not swap.pending_valor_amount:
            return None
        claimed = await self._swaps.conditional_update(
            swap.id,
            {"escrow_state": EscrowState.HELD.value},
            SwapRequest.escrow_state == EscrowState.NONE.value,
        )
        if not claimed:
            raise EscrowIntegrityError(str(swap.id), EscrowState.NONE, swap.escrow_state)
        txn = await self.transfer(
            txn_type=TransactionType.ESCROW_HOLD,
            amount=swap.pending_valor_amount,
            debit_user=swap.requester_id,
            swap_id=swap.id,
            description="Valor held in escrow for swap offer",
        )
        mirror_update(swap, {"escrow_state": EscrowState.HELD.value})
        return txn

    async def adjust_escrow(self, swap: SwapRequest, new_amount: int) -> ValorTransaction | None:
        """Re-balance a held escrow to ``new_amount`` after a price change.

        A raise debits the requester for the difference (escrow_hold); a cut
        returns the difference (escrow_refund). The swap's amount is claimed
        with a conditional UPDATE so two concurrent agreements cannot both
        move Valor.
        """
        if new_amount <= 0:
            raise ValueError(f"escrow amount must be positive, got {new_amount}")
        old_amount = swap.pending_valor_amount or 0
        if new_amount == old_amount:
            return None
        claimed = await self._swaps.conditional_update(
            swap.id,
            {"pending_valor_amount": new_amount},
            SwapRequest.escrow_state == EscrowState.HELD.value,
            SwapRequest.pending_valor_amount == old_amount,
        )
        if not claimed:
            current = await self._swaps.get_by_id(swap.id)
            found = current.escrow_state if current else "missing"
            raise EscrowIntegrityError(str(swap.id), EscrowState.HELD, found)

        delta = new_amount - old_amount
        if delta > 0:
            txn = await self.transfer(
                txn_type=TransactionType.ESCROW_HOLD,
                amount=delta,
                debit_user=swap.requester_id,
                swap_id=swap.id,
                description="Escrow topped up to the agreed price",
            )
        else:
            txn = await self.transfer(
                txn_type=TransactionType.ESCROW_REFUND,
                amount=-delta,
                credit_user=swap.requester_id,
                swap_id=swap.id,
                description="Escrow reduced to the agreed price",
            )
        mirror_update(swap, {"pending_valor_amount": new_amount})
        logger.info(
            "ledger.escrow_adjusted",
            swap_id=str(swap.id),
            old=old_amount,
            new=new_amount,
        )
        return txn

    async def _claim_escrow(self, swap: SwapRequest, target: EscrowState) -> None:
        claimed = await self._swaps.conditional_update(
            swap.id,
            {"escrow_state": target.value},
            SwapRequest.escrow_state == EscrowState.HELD.value,
        )
        if not claimed:
            current = await self._swaps.get_by_id(swap.id)
            found = current.escrow_state if current else "missing"
            logger.error(
                "ledger.escrow_claim_failed",
                swap_id=str(swap.id),
                target=target.value,
                found=found,
            )
            raise EscrowIntegrityError(str(swap.id), EscrowState.HELD, found)
        mirror_update(swap, {"escrow_state": target.value})

    async def settle_escrow(
        self,
        swap: SwapRequest,
        breakdown: FeeBreakdown,
        txn_type: TransactionType = TransactionType.SWAP_COMPLETED,
    ) -> ValorTransaction | None:
        """Release the escrow to the owner net of the fee. Exclusive with refund."""
        if swap.escrow_state == EscrowState.NONE.value:
            return None
        if txn_type not in SETTLEMENT_TYPES:
            raise ValueError(f"{txn_type} is not a settlement type")
        if breakdown.amount != swap.pending_valor_amount:
            raise ValueError("fee breakdown was computed for a different amount")

        await self._claim_escrow(swap, EscrowState.RELEASED)
        txn = await self.transfer(
            txn_type=txn_type,
            amount=breakdown.amount,
            fee=breakdown.total,
            credit_user=swap.owner_id,
            swap_id=swap.id,
            description="Swap settled: escrow released to owner",
            fee_breakdown=breakdown.to_dict(),
        )
        if breakdown.total:
            await self._stats.increment(
                total_fees_collected=breakdown.total,
                community_pool_valor=community_pool_share(
                    breakdown.total, self._community_pool_rate
                ),
            )
        return txn

    async def refund_escrow(
        self,
        swap: SwapRequest,
        description: str = "Escrow refunded to requester",
    ) -> ValorTransaction | None:
        """Return the full escrow to the requester, zero fee. Exclusive with settle."""
        if swap.escrow_state == EscrowState.NONE.value:
            return None
        await self._claim_escrow(swap, EscrowState.REFUNDED)
        return await self.transfer(
            txn_type=TransactionType.ESCROW_REFUND,
            amount=swap.pending_valor_amount,
            credit_user=swap.requester_id,
            swap_id=swap.id,
            description=description,
        )

    # ------------------------------------------------------------------
    # Owner deposit
    # ------------------------------------------------------------------

    async def lock_deposit(self, swap: SwapRequest, amount: int) -> ValorTransaction | None:
        """Move the owner's stake from spendable to locked and pin it on the swap."""
        if amount <= 0:
            return None
        claimed = await self._swaps.conditional_update(
            swap.id,
            {"owner_deposit": amount, "owner_deposit_locked": True},
            SwapRequest.owner_deposit_locked.is_(False),
        )
        if not claimed:
            raise EscrowIntegrityError(str(swap.id), "deposit unlocked", "deposit locked")
        txn = await self.transfer(
            txn_type=TransactionType.DEPOSIT_LOCK,
            amount=amount,
            debit_user=swap.owner_id,
            credit_user=swap.owner_id,
            credit_locked=True,
            swap_id=swap.id,
            description="Owner deposit locked",
        )
        mirror_update(swap, {"owner_deposit": amount, "owner_deposit_locked": True})
        return txn

    async def release_deposit(self, swap: SwapRequest) -> ValorTransaction | None:
        """Unlock the stored deposit back to spendable, at most once."""
        if swap.owner_deposit <= 0:
            return None
        claimed = await self._swaps.conditional_update(
            swap.id,
            {"owner_deposit_locked": False},
            SwapRequest.owner_deposit_locked.is_(True),
        )
        if not claimed:
            return None
        mirror_update(swap, {"owner_deposit_locked": False})
        return await self.transfer(
            txn_type=TransactionType.DEPOSIT_RELEASE,
            amount=swap.owner_deposit,
            debit_user=swap.owner_id,
            debit_locked=True,
            credit_user=swap.owner_id,
            swap_id=swap.id,
            description="Owner deposit released",
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def reconcile_user(self, user_id: uuid.UUID) -> tuple[int, int]:
        """Re-derive a user's balances from the journal and compare.

        Returns (spendable, locked). Raises LedgerIntegrityError on mismatch.
        """
        user = await self._users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(str(user_id))

        credit_types = [t.value for t in SPENDABLE_CREDIT_TYPES]
        debit_types = [t.value for t in SPENDABLE_DEBIT_TYPES]
        spendable = await self._txns.sum_credits(user_id, credit_types) - (
            await self._txns.sum_debits(user_id, debit_types)
        )
        locked = await self._txns.sum_credits(
            user_id, [TransactionType.DEPOSIT_LOCK.value]
        ) - await self._txns.sum_debits(user_id, [TransactionType.DEPOSIT_RELEASE.value])

        if spendable != user.valor_balance:
            raise LedgerIntegrityError(str(user_id), user.valor_balance, spendable)
        if locked != user.locked_valor:
            raise LedgerIntegrityError(str(user_id), user.locked_valor, locked)
        return spendable, locked

    async def escrow_outstanding(self, swap_id: uuid.UUID) -> int:
        """Valor still sitting in a swap's escrow according to the journal."""
        held = await self._txns.sum_for_swap(swap_id, [TransactionType.ESCROW_HOLD.value])
        released = await self._txns.sum_for_swap(
            swap_id,
            [t.value for t in SETTLEMENT_TYPES] + [TransactionType.ESCROW_REFUND.value],
        )
        return held - released
