from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional
from uuid import uuid4

from ..db.base import BaseDBManager
from ..models.base import PaginatedResult
from ..models.billing import BillingAccount
from ..models.ledger import CreditLedgerEntry, LedgerReason, LedgerSource


logger = logging.getLogger(__name__)


class CreditLedger:
    """
    Append-only credit ledger that writes to the database and mirrors to a file.

    DB writes happen inside the caller's transaction. The file mirror is
    append-only, line-delimited JSON for easier ingestion by log aggregators,
    and is written by the caller once the transaction has committed so that
    rolled-back entries never reach it.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def append(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        return await self._db.add_credit_ledger_entry(entry)

    async def record_rollover(
        self, account: BillingAccount, carry_over: int
    ) -> List[CreditLedgerEntry]:
        """
        Write the entries for a billing period rollover.

        `account` must already hold the post-rollover balances. The reset
        entry and the carry-over entry share a transaction id.
        """
        if account.id is None:
            raise ValueError("account must be persisted before writing ledger entries")

        transaction_id = uuid4().hex
        entries = [
            await self.append(
                CreditLedgerEntry(
                    user_id=account.user_id,
                    billing_account_id=account.id,
                    amount=0,
                    reason=LedgerReason.MONTHLY_RESET,
                    source=LedgerSource.SYSTEM,
                    transaction_id=transaction_id,
                    description=f"Billing period reset ({account.plan_key.value})",
                    monthly_credits_used_after=account.monthly_credits_used,
                    addon_credits_balance_after=account.addon_credits_balance,
                )
            )
        ]
        if carry_over > 0:
            entries.append(
                await self.append(
                    CreditLedgerEntry(
                        user_id=account.user_id,
                        billing_account_id=account.id,
                        amount=carry_over,
                        reason=LedgerReason.MANUAL_ADJUSTMENT,
                        source=LedgerSource.ADDON,
                        transaction_id=transaction_id,
                        description="Unused monthly credits carried over on upgrade",
                        monthly_credits_used_after=account.monthly_credits_used,
                        addon_credits_balance_after=account.addon_credits_balance,
                    )
                )
            )
        return entries

    async def record_addon_purchase(
        self,
        account: BillingAccount,
        amount: int,
        idempotency_key: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
    ) -> CreditLedgerEntry:
        """
        Write the add-on purchase entry. `account` holds the balances from
        before the purchase; the entry records them with `amount` applied.
        """
        if account.id is None:
            raise ValueError("account must be persisted before writing ledger entries")
        return await self.append(
            CreditLedgerEntry(
                user_id=account.user_id,
                billing_account_id=account.id,
                amount=amount,
                reason=LedgerReason.ADDON_PURCHASE,
                source=LedgerSource.ADDON,
                idempotency_key=idempotency_key,
                transaction_id=uuid4().hex,
                description=(
                    f"Add-on purchase (checkout {checkout_session_id})"
                    if checkout_session_id
                    else "Add-on purchase"
                ),
                monthly_credits_used_after=account.monthly_credits_used,
                addon_credits_balance_after=account.addon_credits_balance + amount,
            )
        )

    async def find_by_idempotency_key(self, idempotency_key: str) -> Optional[CreditLedgerEntry]:
        return await self._db.get_credit_ledger_entry_by_idempotency_key(idempotency_key)

    async def history(self, user_id: str, limit: int = 50, offset: int = 0) -> PaginatedResult:
        return await self._db.get_credit_ledger_entries(user_id, limit=limit, offset=offset)

    def mirror(self, entries: Iterable[CreditLedgerEntry]) -> None:
        if self._file_path is None:
            return
        lines = [json.dumps(e.serialize_for_db(), default=str) for e in entries]
        if not lines:
            return
        # The database is the source of truth; a failed mirror is only logged.
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as exc:
            logger.warning(
                "Could not mirror %d credit ledger entries to %s: %s",
                len(lines),
                self._file_path,
                exc,
            )
