#!/usr/bin/env python3
"""
Long-running outbox worker.

Drains terminal outbox events for every merchant (or a given subset) with
`pos_processor.process_events`, looping until stopped.
"""

import argparse
import sys
import time
import traceback

import psycopg
from psycopg.rows import dict_row

from .pos_processor import process_events, DB_URL_DEFAULT, MAX_ATTEMPTS_DEFAULT, _json_log


def list_merchant_ids(db_url: str) -> list[str]:
    # Only merchants with something due; needs a role that bypasses RLS on the outbox join.
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT t.merchant_id
                FROM pos_events_outbox o
                JOIN pos_terminals t ON t.id = o.terminal_id
                WHERE o.status = 'pending'
                   OR (o.status = 'failed' AND (o.next_attempt_at IS NULL OR o.next_attempt_at <= now()))
                ORDER BY t.merchant_id
                """
            )
            return [str(r["merchant_id"]) for r in cur.fetchall()]


def run_pass(db_url: str, merchant_ids: list[str], limit: int, max_attempts: int) -> int:
    total = 0
    for mid in merchant_ids:
        try:
            processed = process_events(db_url, mid, limit, max_attempts=max_attempts)
        except Exception as ex:
            # One merchant's broken outbox must not stop the others.
            _json_log("error", "worker.outbox.error", merchant_id=mid, error=str(ex))
            traceback.print_exc(file=sys.stderr)
            continue
        if processed:
            _json_log("info", "worker.outbox.pass", merchant_id=mid, processed=processed)
        total += processed
    return total


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--limit", type=int, default=200)
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--sleep", type=float, default=1.0)
    parser.add_argument("--merchants", nargs="*", help="Optional list of merchant UUIDs to process")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    while True:
        try:
            merchant_ids = args.merchants or list_merchant_ids(args.db)
        except Exception as ex:
            _json_log("error", "worker.merchants.error", error=str(ex))
            merchant_ids = []
        did_work = run_pass(args.db, merchant_ids, args.limit, args.max_attempts) > 0
        if args.once:
            break
        # Loop again straight away while there is work; otherwise back off.
        time.sleep(0 if did_work else args.sleep)


if __name__ == "__main__":
    main()
