#!/usr/bin/env python3
"""
Xeno CRM Data Importer
Loads customers or orders from a JSON, CSV or XLSX file into the database.

Features:
- Duplicate customer emails are skipped, never overwritten
- Invalid rows are skipped and logged, the rest still import
- Dry-run mode
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

KINDS = ['customers', 'orders']
READERS = {
    '.json': pd.read_json,
    '.csv': pd.read_csv,
    '.xlsx': pd.read_excel,
}


def load_records(path: Path) -> List[Dict[str, Any]]:
    """Read a file into a list of row dicts. Missing cells come back as NaN."""
    reader = READERS.get(path.suffix.lower())
    if reader is None:
        raise ValueError(f"Unsupported file type '{path.suffix}'. Use one of: {', '.join(READERS)}")

    df = reader(path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    return df.to_dict(orient='records')


def run_import(kind: str, path: Path, dry_run: bool = False) -> int:
    """Import one file. Returns a process exit code."""
    if not path.exists():
        logging.error(f"File not found: {path}")
        return 1

    try:
        records = load_records(path)
    except ValueError as e:
        logging.error(f"Failed to read {path}: {e}")
        return 1

    logging.info(f"Read {len(records)} {kind} rows from {path}")

    if dry_run:
        from xenocrm.engine.ingest import customer_from_record, order_from_record

        build = customer_from_record if kind == 'customers' else order_from_record
        valid = 0
        for record in records:
            try:
                build(record)
                valid += 1
            except (TypeError, ValueError) as e:
                logging.warning(f"[DRY-RUN] invalid row: {e}")
        logging.info(f"[DRY-RUN] {valid} valid, {len(records) - valid} invalid")
        return 0

    from xenocrm.engine import ingest

    if kind == 'customers':
        result = ingest.import_customers(records)
        logging.info(f"Customers inserted: {result['inserted']}, skipped: {result['skipped']} "
                     f"({len(result['duplicates'])} duplicates, {result['invalid']} invalid)")
    else:
        result = ingest.import_orders(records)
        logging.info(f"Orders inserted: {result['inserted']}, invalid skipped: {result['invalid']}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Import customers or orders into Xeno CRM")
    parser.add_argument('kind', choices=KINDS, help="What the file contains")
    parser.add_argument('path', type=Path, help="JSON, CSV or XLSX file")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help="Validate rows without writing to database"
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help="Logging level (default: INFO)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    sys.exit(run_import(args.kind, args.path, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
