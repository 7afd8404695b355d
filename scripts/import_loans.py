#!/usr/bin/env python3
"""Import loan documents (NDJSON, optionally gzipped) into the mortgage table.

Each line is one loan in the legacy camelCase shape::

    {"id": "...", "collateralToken": "0x...", "collateralAmount": 12.5,
     "collateralUsdPriceAtLoan": 1.02, "loanDueAt": 1767225600,
     "repaymentStatus": "PENDING"}

Idempotent: documents whose id already exists are skipped.

Usage:
    python scripts/import_loans.py --db-url sqlite:///./mortgages.db loans.ndjson.gz
"""
from __future__ import annotations

import argparse
import gzip
import json
import sys
from pathlib import Path
from typing import Iterable, Tuple

from pydantic import ValidationError
from sqlmodel import Session

from autosell.db import init_db, make_engine
from autosell.models import MortgageDocument
from autosell.store import LoanStore


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Import loan documents from NDJSON exports")
    ap.add_argument("--db-url", default="sqlite:///./mortgages.db", help="SQLAlchemy database URL")
    ap.add_argument("files", nargs="+", help="NDJSON(.gz) files to import")
    return ap.parse_args()


def read_ndjson(path: Path) -> Iterable[Tuple[int, str]]:
    opener = gzip.open if path.suffix == ".gz" else open  # type: ignore[arg-type]
    with opener(path, "rt") as fh:
        for lineno, line in enumerate(fh, start=1):
            if line.strip():
                yield lineno, line


def import_file(store: LoanStore, path: Path) -> Tuple[int, int, int]:
    created = skipped = invalid = 0
    for lineno, line in read_ndjson(path):
        try:
            doc = MortgageDocument.model_validate(json.loads(line))
            row = doc.to_row()
        except ValidationError as exc:
            print(f"[skip] {path}:{lineno} invalid document: {exc.errors()[0]['msg']}", file=sys.stderr)
            invalid += 1
            continue
        except ValueError as exc:
            # malformed JSON or an unparsable loanDueAt
            print(f"[skip] {path}:{lineno} invalid document: {exc}", file=sys.stderr)
            invalid += 1
            continue
        if doc.id and store.get(doc.id) is not None:
            skipped += 1
            continue
        store.create(row)
        created += 1
    return created, skipped, invalid


def main() -> None:  # pragma: no cover
    args = parse_args()
    engine = make_engine(args.db_url)
    init_db(engine)
    store = LoanStore(lambda: Session(engine))

    total = 0
    for name in args.files:
        created, skipped, invalid = import_file(store, Path(name))
        total += created
        print(f"[import] {name}: {created} created, {skipped} existing, {invalid} invalid")
    print(f"\nImported {total} loans ✅")


if __name__ == "__main__":
    main()
