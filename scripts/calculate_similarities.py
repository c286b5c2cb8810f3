#!/usr/bin/env python3
import argparse
import json

from backend.app.config import settings
from backend.app.db import connect, init_db
from backend.app.logging_setup import setup_logging
from backend.recommender.models import SimilarityKind
from backend.recommender.similarity import calculate_similarities
from backend.recommender.store import SQLiteStore


def main():
    ap = argparse.ArgumentParser(description="Recompute the product similarity table (run daily, e.g. from cron)")
    ap.add_argument(
        "--kind",
        action="append",
        choices=[k.value for k in SimilarityKind],
        help="Similarity kind to recompute; repeat for several. Default: all",
    )
    args = ap.parse_args()

    setup_logging(settings.log_level)

    conn = connect()
    init_db(conn)
    try:
        kinds = [SimilarityKind(k) for k in args.kind] if args.kind else None
        written = calculate_similarities(SQLiteStore(conn), kinds)
    finally:
        conn.close()

    print(json.dumps({"calculated": written, "total": sum(written.values())}, indent=2))


if __name__ == "__main__":
    main()
