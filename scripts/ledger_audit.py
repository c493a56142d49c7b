#!/usr/bin/env python3
"""
ledger_audit.py - Replay allowance ledgers and compare them with stored balances.

Usage examples:
  python scripts/ledger_audit.py
  python scripts/ledger_audit.py --account-id 42
  python scripts/ledger_audit.py --env-file /path/to/.env --json
  python scripts/ledger_audit.py --json --json-out /tmp/ledger-audit.json

Flags:
  --env-file PATH
    Load environment variables from PATH before connecting.
  --account-id N
    Verify a single account instead of every account.
  --include-deleted
    Also verify soft-deleted child accounts.
  --json
    Output results as JSON.
  --json-out PATH
    Write JSON output to PATH (requires --json).

Exit status is 1 when any account's ledger disagrees with its balance.
"""
import argparse
import json
import os
import sys
import textwrap
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from dotenv import load_dotenv
from tabulate import tabulate

BACKEND_DIR = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.append(str(BACKEND_DIR))

from app.db import GetSessionFactory  # noqa: E402
from app.modules.allowance.models import Account  # noqa: E402
from app.modules.allowance.services.ledger_service import Ledger, LedgerVerification  # noqa: E402

HEADERS = ["AccountId", "Kind", "Stored", "Replayed", "Entries", "Consistent", "FirstBadEntry"]


def LoadEnvFile(EnvPath: Optional[str]) -> None:
    if not EnvPath:
        return
    if not os.path.exists(EnvPath):
        raise RuntimeError(f"Env file not found: {EnvPath}")
    load_dotenv(dotenv_path=EnvPath)


def JsonifyValue(Value: object) -> object:
    if isinstance(Value, datetime):
        return Value.isoformat()
    if isinstance(Value, Decimal):
        return str(Value)
    return str(Value)


def WriteJson(Payload: object, OutputPath: Optional[str]) -> None:
    Text = json.dumps(Payload, indent=2, default=JsonifyValue)
    if OutputPath:
        with open(OutputPath, "w", encoding="utf-8") as Handle:
            Handle.write(Text + "\n")
    else:
        print(Text)


def PrintTable(Headers: List[str], Rows: Sequence[Sequence[object]]) -> None:
    # Keep balances as written; numeric parsing would drop trailing cents.
    print(tabulate(Rows, headers=Headers, tablefmt="github", disable_numparse=True))


def AuditAccounts(Db, AccountId: Optional[int] = None, IncludeDeleted: bool = False) -> List[tuple]:
    Query = Db.query(Account)
    if AccountId is not None:
        Query = Query.filter(Account.Id == AccountId)
    if not IncludeDeleted:
        Query = Query.filter(Account.IsDeleted == False)
    Accounts = Query.order_by(Account.Id.asc()).all()
    if AccountId is not None and not Accounts:
        raise RuntimeError(f"Account not found: {AccountId}")

    LedgerReader = Ledger(Db)
    return [(Item, LedgerReader.VerifyAccount(Item)) for Item in Accounts]


def BuildJsonResult(Item: Account, Result: LedgerVerification) -> Dict[str, object]:
    return {
        "AccountId": Result.AccountId,
        "Kind": Item.Kind,
        "StoredBalance": Result.StoredBalance,
        "ReplayedBalance": Result.ReplayedBalance,
        "EntryCount": Result.EntryCount,
        "IsConsistent": Result.IsConsistent,
        "FirstInconsistentEntryId": Result.FirstInconsistentEntryId,
    }


def ParseArgs(Argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    Parser = argparse.ArgumentParser(description="Replay allowance ledgers against stored balances.")
    Parser.add_argument("--env-file", help="Path to .env file.")
    Parser.add_argument("--account-id", type=int, help="Verify a single account.")
    Parser.add_argument("--include-deleted", action="store_true", help="Include soft-deleted accounts.")
    Parser.add_argument("--json", action="store_true", help="Output results as JSON.")
    Parser.add_argument("--json-out", help="Write JSON output to file path.")
    Args = Parser.parse_args(Argv)

    if Args.json_out and not Args.json:
        Parser.error("--json-out requires --json.")
    return Args


def Main(Argv: Optional[Sequence[str]] = None) -> int:
    Args = ParseArgs(Argv)

    try:
        LoadEnvFile(Args.env_file)
        Db = GetSessionFactory()()
        try:
            Results = AuditAccounts(Db, Args.account_id, Args.include_deleted)
        finally:
            Db.close()
    except KeyboardInterrupt:
        return 0
    except Exception as Ex:
        print("\nError:")
        print(textwrap.indent(str(Ex), "  "))
        return 1

    if Args.json:
        WriteJson([BuildJsonResult(Item, Result) for Item, Result in Results], Args.json_out)
    else:
        Rows = [
            [
                Result.AccountId,
                Item.Kind,
                Result.StoredBalance,
                Result.ReplayedBalance,
                Result.EntryCount,
                "yes" if Result.IsConsistent else "NO",
                Result.FirstInconsistentEntryId or "",
            ]
            for Item, Result in Results
        ]
        PrintTable(HEADERS, Rows)

    return 0 if all(Result.IsConsistent for _, Result in Results) else 1


if __name__ == "__main__":
    raise SystemExit(Main())
