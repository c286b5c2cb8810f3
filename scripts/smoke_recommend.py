#!/usr/bin/env python3
import argparse
import json

from backend.app.db import connect
from backend.recommender.engine import build_engine
from backend.recommender.models import RecommendationOptions, StrategyKind
from backend.recommender.store import SQLiteStore


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--user-id", default=None)
    ap.add_argument("--product-id", default=None)
    ap.add_argument("--strategy", default=None, choices=[k.value for k in StrategyKind])
    ap.add_argument("--limit", type=int, default=5)
    ap.add_argument("--include-out-of-stock", action="store_true")
    args = ap.parse_args()

    conn = connect()
    engine = build_engine(SQLiteStore(conn))

    recs = engine.recommendations.get_recommendations(
        RecommendationOptions(
            user_id=args.user_id,
            product_id=args.product_id,
            strategy=StrategyKind(args.strategy) if args.strategy else None,
            limit=args.limit,
            include_out_of_stock=args.include_out_of_stock,
        )
    )

    results = []
    for r in recs:
        name = r.product.name if r.product else f"product_{r.product_id}"
        results.append({
            "product_id": r.product_id,
            "name": name,
            "score": round(r.normalized_score, 4),
            "strategy": r.strategy.value,
            "reason": r.reason,
        })
    conn.close()

    print(json.dumps({"user_id": args.user_id, "product_id": args.product_id, "top": results}, indent=2))


if __name__ == "__main__":
    main()
