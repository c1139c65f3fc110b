from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import asyncio

from models import Account, TransactionRecord, TransactionState


class AccountRepository(ABC):
    """Account table.

    Writers hold ``lock`` for the whole read-modify-write of one record.
    The read methods take the same lock and hand out snapshots, so a reader
    never sees ``held`` moved without the matching ``total`` change.
    """

    lock: asyncio.Lock

    @abstractmethod
    async def get_or_create_account(self, client_id: int) -> Account:
        """Return the live account, creating it zeroed on first reference. Caller holds ``lock``."""
        pass

    @abstractmethod
    async def get_account(self, client_id: int) -> Optional[Account]:
        """Snapshot of one account. Returns None if the client was never referenced."""
        pass

    @abstractmethod
    async def list_accounts(self) -> List[Account]:
        """Snapshot of every account, ordered by client id."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass


class TransactionIndex(ABC):
    """Lookup of root transactions and their lifecycle state."""

    @abstractmethod
    async def register(self, record: TransactionRecord) -> None:
        """Offer a root transaction body for later lookups. May be a no-op."""
        pass

    @abstractmethod
    async def lookup(self, tx_id: int) -> Optional[TransactionRecord]:
        """Root transaction with its current state attached, or None if never seen."""
        pass

    @abstractmethod
    async def get_state(self, tx_id: int) -> TransactionState:
        """Current state, ``needs_processing`` for unknown ids."""
        pass

    @abstractmethod
    async def set_state(self, tx_id: int, state: TransactionState) -> None:
        """Overwrite the recorded state. Unknown ids are the caller's concern."""
        pass

    @abstractmethod
    async def count(self) -> int:
        """Number of transactions with a recorded state."""
        pass


class InMemoryAccountRepository(AccountRepository):
    def __init__(self):
        self.accounts: Dict[int, Account] = {}
        self.lock = asyncio.Lock()

    async def get_or_create_account(self, client_id: int) -> Account:
        account = self.accounts.get(client_id)
        if account is None:
            account = Account(client=client_id)
            self.accounts[client_id] = account
        return account

    async def get_account(self, client_id: int) -> Optional[Account]:
        async with self.lock:
            account = self.accounts.get(client_id)
            return account.snapshot() if account is not None else None

    async def list_accounts(self) -> List[Account]:
        async with self.lock:
            return [self.accounts[client_id].snapshot() for client_id in sorted(self.accounts)]

    async def get_accounts_count(self) -> int:
        return len(self.accounts)


class InMemoryTransactionIndex(TransactionIndex):
    """Keeps every root body in memory. The first body registered for an id wins."""

    def __init__(self):
        self.transactions: Dict[int, TransactionRecord] = {}
        self.states: Dict[int, TransactionState] = {}
        self.lock = asyncio.Lock()

    async def register(self, record: TransactionRecord) -> None:
        if not record.is_root:
            return
        async with self.lock:
            self.transactions.setdefault(record.tx, record)

    async def lookup(self, tx_id: int) -> Optional[TransactionRecord]:
        async with self.lock:
            record = self.transactions.get(tx_id)
            if record is None:
                return None
            state = self.states.get(tx_id, TransactionState.needs_processing)
            return record.model_copy(update={"state": state})

    async def get_state(self, tx_id: int) -> TransactionState:
        async with self.lock:
            return self.states.get(tx_id, TransactionState.needs_processing)

    async def set_state(self, tx_id: int, state: TransactionState) -> None:
        async with self.lock:
            self.states[tx_id] = state

    async def count(self) -> int:
        return len(self.states)


# Process-wide ledger shared by the HTTP endpoints
_account_repo = InMemoryAccountRepository()
_transaction_index = InMemoryTransactionIndex()


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_transaction_index() -> TransactionIndex:
    return _transaction_index


# For tests
def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _account_repo, _transaction_index
    _account_repo = InMemoryAccountRepository()
    _transaction_index = InMemoryTransactionIndex()
