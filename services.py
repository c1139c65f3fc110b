from decimal import Decimal
from typing import Iterable, Optional

import structlog

from models import Account, TransactionRecord, TransactionState, TransactionType
from repositories import AccountRepository, TransactionIndex

# Configure structured logging
logger = structlog.get_logger()


class LedgerService:
    """Replays transaction records against the account table.

    Records are applied strictly in input order. A record whose
    preconditions fail is skipped without touching any account or
    transaction state; nothing is retried and nothing is raised.
    """

    def __init__(self, account_repo: AccountRepository, index: TransactionIndex):
        self.account_repo = account_repo
        self.index = index
        self.records_applied = 0
        self.records_skipped = 0

    async def process(self, transactions: Iterable[TransactionRecord]) -> None:
        """Consume ``transactions`` to completion, one record at a time."""
        logger.info("Processing transaction stream")

        for record in transactions:
            async with self.account_repo.lock:
                applied = await self._apply(record)

            if applied:
                self.records_applied += 1
            else:
                self.records_skipped += 1

        logger.info(
            "Transaction stream processed",
            records_applied=self.records_applied,
            records_skipped=self.records_skipped,
        )

    async def _apply(self, record: TransactionRecord) -> bool:
        # Any reference to a client opens its account, even if the record is then skipped.
        account = await self.account_repo.get_or_create_account(record.client)

        if record.type == TransactionType.deposit:
            return await self._process_deposit(account, record)
        if record.type == TransactionType.withdrawal:
            return await self._process_withdrawal(account, record)
        if record.type == TransactionType.dispute:
            return await self._process_dispute(account, record)
        if record.type == TransactionType.resolve:
            return await self._process_resolve(account, record)
        if record.type == TransactionType.chargeback:
            return await self._process_chargeback(account, record)

        return self._skip(record, "unknown transaction type")

    async def _process_deposit(self, account: Account, record: TransactionRecord) -> bool:
        if not await self._claim_root(record):
            return False

        account.total += record.amount
        await self.index.set_state(record.tx, TransactionState.processed)

        logger.debug(
            "Deposit applied",
            client=record.client,
            tx=record.tx,
            amount=str(record.amount),
            total=str(account.total),
        )
        return True

    async def _process_withdrawal(self, account: Account, record: TransactionRecord) -> bool:
        if not await self._claim_root(record):
            return False

        if not account.locked and account.available >= record.amount:
            account.total -= record.amount
            logger.debug(
                "Withdrawal applied",
                client=record.client,
                tx=record.tx,
                amount=str(record.amount),
                total=str(account.total),
            )
        else:
            logger.debug(
                "Withdrawal declined",
                client=record.client,
                tx=record.tx,
                amount=str(record.amount),
                available=str(account.available),
                locked=account.locked,
            )

        # A declined withdrawal is still handled and never retried.
        await self.index.set_state(record.tx, TransactionState.processed)
        return True

    async def _process_dispute(self, account: Account, record: TransactionRecord) -> bool:
        target = await self._find_target(record, TransactionState.processed)
        if target is None:
            return False

        amount = self._disputed_amount(target)
        if amount is not None:
            account.held += amount
        await self.index.set_state(target.tx, TransactionState.disputed)

        self._log_transition(record, account, TransactionState.disputed)
        return True

    async def _process_resolve(self, account: Account, record: TransactionRecord) -> bool:
        target = await self._find_target(record, TransactionState.disputed)
        if target is None:
            return False

        amount = self._disputed_amount(target)
        if amount is not None:
            account.held -= amount
        await self.index.set_state(target.tx, TransactionState.processed)

        self._log_transition(record, account, TransactionState.processed)
        return True

    async def _process_chargeback(self, account: Account, record: TransactionRecord) -> bool:
        target = await self._find_target(record, TransactionState.disputed)
        if target is None:
            return False

        amount = self._disputed_amount(target)
        if amount is not None:
            account.held -= amount
            account.total -= amount
            account.locked = True
        await self.index.set_state(target.tx, TransactionState.charged_back)

        self._log_transition(record, account, TransactionState.charged_back)
        return True

    async def _claim_root(self, record: TransactionRecord) -> bool:
        """Register a root transaction, refusing ids that were already handled."""
        state = await self.index.get_state(record.tx)
        if state != TransactionState.needs_processing:
            return self._skip(record, "transaction id already processed", state=state.value)

        await self.index.register(record)
        return True

    async def _find_target(
        self, record: TransactionRecord, expected: TransactionState
    ) -> Optional[TransactionRecord]:
        """Root transaction a control operation refers to, if its preconditions hold."""
        target = await self.index.lookup(record.tx)

        if target is None:
            self._skip(record, "referenced transaction not found")
            return None

        if target.client != record.client:
            self._skip(record, "referenced transaction belongs to another client", owner=target.client)
            return None

        if target.state != expected:
            self._skip(
                record,
                "referenced transaction in wrong state",
                state=target.state.value,
                expected=expected.value,
            )
            return None

        return target

    @staticmethod
    def _disputed_amount(target: TransactionRecord) -> Optional[Decimal]:
        # Only deposits move funds; withdrawal roots just change state.
        # TODO: decide with the ledger owners whether disputes on withdrawals should be refused outright.
        if target.type == TransactionType.deposit:
            return target.amount
        return None

    @staticmethod
    def _skip(record: TransactionRecord, reason: str, **context) -> bool:
        logger.debug(
            "Transaction skipped",
            reason=reason,
            type=record.type.value,
            client=record.client,
            tx=record.tx,
            **context,
        )
        return False

    @staticmethod
    def _log_transition(record: TransactionRecord, account: Account, state: TransactionState) -> None:
        logger.debug(
            "Transaction state changed",
            type=record.type.value,
            client=record.client,
            tx=record.tx,
            state=state.value,
            held=str(account.held),
            total=str(account.total),
            locked=account.locked,
        )


# Factory function for dependency injection
def get_ledger_service(
    account_repo: AccountRepository,
    index: TransactionIndex
) -> LedgerService:
    return LedgerService(account_repo, index)
