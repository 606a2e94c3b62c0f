#!/usr/bin/env python3
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire every pending quote whose expiry time has passed.")
    parser.add_argument("--db-path", type=str, default="", help="SQLite file to sweep. Defaults to BROKER_DB_PATH.")
    parser.add_argument("--json-out", type=str, default="", help="Optional output path for the expired quote list.")
    args = parser.parse_args()

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    if args.db_path:
        os.environ["BROKER_DB_PATH"] = args.db_path

    # The module-level broker reads BROKER_DB_PATH at import time.
    from servicebroker.services.broker import broker  # noqa: E402

    expired = broker.quotes.expire_due()
    print(f"Expired quotes: {len(expired)} (db={broker.db.db_path})")
    for quote in expired:
        print(f"  - {quote.id}: request={quote.request_id} provider={quote.provider_id} expires_at={quote.expires_at}")

    if args.json_out:
        payload: List[Dict[str, Any]] = [quote.model_dump(mode="json") for quote in expired]
        output_path = Path(args.json_out)
        output_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
