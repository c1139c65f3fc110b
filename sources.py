"""Transaction sources and account output backed by delimited text.

Rows look like ``type,client,tx,amount``. Whitespace around every field is
ignored, the type is case-insensitive and control operations may leave the
amount column empty or drop it entirely. The account table is written back
as ``client,available,held,total,locked`` with four-place amounts.
"""
import asyncio
import csv
from typing import Dict, Iterable, Iterator, Optional, TextIO, Tuple

from pydantic import ValidationError
import structlog

from models import Account, TransactionRecord, TransactionState, format_amount
from repositories import TransactionIndex

logger = structlog.get_logger()

REQUIRED_COLUMNS = ("type", "client", "tx")
OUTPUT_COLUMNS = ["client", "available", "held", "total", "locked"]


class TransactionParseError(Exception):
    """A row could not be turned into a transaction record."""

    def __init__(self, line: int, message: str):
        super().__init__(f"line {line}: {message}")
        self.line = line
        self.message = message


def _iter_rows(stream: TextIO) -> Iterator[Tuple[int, Dict[str, str]]]:
    reader = csv.reader(stream)
    header = next(reader, None)
    if header is None:
        return
    columns = [name.strip().lower() for name in header]
    missing = [name for name in REQUIRED_COLUMNS if name not in columns]
    if missing:
        raise TransactionParseError(reader.line_num, f"header is missing columns: {', '.join(missing)}")

    for fields in reader:
        if not any(field.strip() for field in fields):
            continue
        yield reader.line_num, dict(zip(columns, fields))


def parse_row(row: Dict[str, Optional[str]], line: int) -> TransactionRecord:
    """Validate a single row. Raises TransactionParseError."""
    normalized = {key: (value or "").strip() for key, value in row.items()}
    try:
        return TransactionRecord(
            type=normalized["type"],
            client=normalized["client"],
            tx=normalized["tx"],
            amount=normalized.get("amount") or None,
        )
    except KeyError as e:
        raise TransactionParseError(line, f"missing field {e.args[0]!r}") from e
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'row'}: {error['msg']}"
            for error in e.errors()
        )
        raise TransactionParseError(line, errors) from e


def read_transactions(stream: TextIO) -> Iterator[TransactionRecord]:
    """Lazily yield records in input order. The first malformed row raises."""
    for line, row in _iter_rows(stream):
        yield parse_row(row, line)


def iter_csv_file(path: str) -> Iterator[TransactionRecord]:
    """Lazily yield the records of a CSV file, keeping one row in memory at a time."""
    with open(path, "r", newline="") as f:
        yield from read_transactions(f)


class CsvRescanTransactionIndex(TransactionIndex):
    """Index that finds root bodies by scanning the source file again.

    Only the state map is held in memory; each lookup is a full pass over
    the file.
    """

    def __init__(self, path: str):
        self.path = path
        self.states: Dict[int, TransactionState] = {}
        self.lock = asyncio.Lock()

    def _find_root(self, tx_id: int) -> Optional[TransactionRecord]:
        with open(self.path, "r", newline="") as f:
            for line, row in _iter_rows(f):
                try:
                    record = parse_row(row, line)
                except TransactionParseError:
                    continue
                if record.tx == tx_id and record.is_root:
                    return record
        return None

    async def register(self, record: TransactionRecord) -> None:
        # Bodies are re-read from the file on demand.
        return None

    async def lookup(self, tx_id: int) -> Optional[TransactionRecord]:
        record = await asyncio.to_thread(self._find_root, tx_id)
        if record is None:
            logger.debug("Rescan found no root transaction", tx=tx_id, path=self.path)
            return None
        state = await self.get_state(tx_id)
        return record.model_copy(update={"state": state})

    async def get_state(self, tx_id: int) -> TransactionState:
        async with self.lock:
            return self.states.get(tx_id, TransactionState.needs_processing)

    async def set_state(self, tx_id: int, state: TransactionState) -> None:
        async with self.lock:
            self.states[tx_id] = state

    async def count(self) -> int:
        return len(self.states)


def write_accounts(accounts: Iterable[Account], out: TextIO) -> None:
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(OUTPUT_COLUMNS)
    for account in accounts:
        writer.writerow([
            account.client,
            format_amount(account.available),
            format_amount(account.held),
            format_amount(account.total),
            str(account.locked).lower(),
        ])
