"""Command-line entry point: replay a CSV ledger and print the account table.

Usage:
    ledger-engine transactions.csv > accounts.csv
    ledger-engine transactions.csv --index rescan
"""
import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from config import get_settings
from log_config import configure_logging
from models import Account
from repositories import InMemoryAccountRepository, InMemoryTransactionIndex, TransactionIndex
from services import LedgerService
from sources import CsvRescanTransactionIndex, TransactionParseError, iter_csv_file, write_accounts

logger = structlog.get_logger()


def build_index(backend: str, path: str) -> TransactionIndex:
    if backend == "rescan":
        return CsvRescanTransactionIndex(path)
    return InMemoryTransactionIndex()


async def run(path: str, backend: str) -> List[Account]:
    account_repo = InMemoryAccountRepository()
    service = LedgerService(account_repo, build_index(backend, path))
    await service.process(iter_csv_file(path))
    return await account_repo.list_accounts()


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="ledger-engine",
        description="Replay a transaction CSV and print the resulting client accounts as CSV",
    )
    parser.add_argument("file", help="Input CSV with columns type,client,tx,amount")
    parser.add_argument(
        "--index",
        choices=["memory", "rescan"],
        default=settings.index_backend,
        help="Keep root transactions in memory, or re-scan the file on every lookup",
    )
    parser.add_argument("--log-level", dest="log_level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    if args.log_level:
        settings = settings.model_copy(update={"log_level": args.log_level})
    configure_logging(settings)

    try:
        accounts = asyncio.run(run(args.file, args.index))
    except FileNotFoundError:
        print(f"error: no such file: {args.file}", file=sys.stderr)
        return 1
    except TransactionParseError as e:
        logger.error("Malformed input", path=args.file, line=e.line, error=e.message)
        print(f"error: {args.file}: {e}", file=sys.stderr)
        return 2

    write_accounts(accounts, sys.stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
