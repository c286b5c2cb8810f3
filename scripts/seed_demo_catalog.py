#!/usr/bin/env python3
import argparse
import random
import sqlite3
import time

from backend.app.db import connect, init_db

CATEGORIES = {
    "fruits": ["apple", "mango", "banana", "guava", "lychee", "papaya"],
    "vegetables": ["potato", "onion", "tomato", "spinach", "eggplant"],
    "dairy": ["milk", "yogurt", "butter", "cheese", "ghee"],
    "snacks": ["chips", "biscuits", "chanachur", "cookies", "nuts"],
    "beverages": ["tea", "coffee", "juice", "soda", "lassi"],
}

ACTIONS = ["VIEW"] * 7 + ["ADD_TO_CART"] * 2 + ["PURCHASE"]

DAY = 24 * 3600


def seed_products(conn: sqlite3.Connection, rng: random.Random, now: int) -> list[str]:
    rows = []
    for category, names in CATEGORIES.items():
        for i, name in enumerate(names):
            pid = f"{category[:3]}-{i + 1:03d}"
            price = round(rng.uniform(20, 500), 2)
            # roughly a third of the catalog is on sale
            sale_price = round(price * rng.uniform(0.6, 0.95), 2) if rng.random() < 0.33 else None
            rows.append((
                pid,
                f"Fresh {name}",
                f"{name} from the local {category} section",
                category,
                ",".join([category, name]),
                price,
                sale_price,
                round(rng.uniform(2.5, 5.0), 1),
                rng.randint(0, 250),
                0 if rng.random() < 0.1 else 1,
                now - rng.randint(0, 90) * DAY,
            ))

    conn.executemany(
        """
        INSERT INTO products(
          id, name, description, category, tags, price, sale_price, rating, review_count, in_stock, created_at
        )
        VALUES(?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          price = excluded.price,
          sale_price = excluded.sale_price,
          rating = excluded.rating,
          review_count = excluded.review_count,
          in_stock = excluded.in_stock
        """,
        rows,
    )
    return [r[0] for r in rows]


def seed_events(
    conn: sqlite3.Connection,
    rng: random.Random,
    product_ids: list[str],
    num_users: int,
    num_events: int,
    now: int,
) -> None:
    rows = []
    for _ in range(num_events):
        user_id = f"user-{rng.randint(1, num_users)}"
        rows.append((
            user_id,
            rng.choice(product_ids),
            rng.choice(ACTIONS),
            now - rng.randint(0, 30 * DAY),
            f"sess-{rng.randint(1, num_users * 3)}",
            rng.choice(["web", "mobile"]),
        ))

    conn.executemany(
        """
        INSERT INTO interaction_events(user_id, product_id, action, ts, session_id, device_type)
        VALUES(?,?,?,?,?,?)
        """,
        rows,
    )


def seed_carts(conn: sqlite3.Connection, rng: random.Random, product_ids: list[str], num_users: int, now: int) -> None:
    rows = []
    for u in range(1, num_users + 1):
        if rng.random() < 0.3:
            for pid in rng.sample(product_ids, k=rng.randint(1, 3)):
                rows.append((f"user-{u}", pid, 1, now - rng.randint(0, 5 * DAY)))
    conn.executemany(
        "INSERT INTO cart_items(user_id, product_id, quantity, added_at) VALUES(?,?,?,?)",
        rows,
    )


def clear_tables(conn: sqlite3.Connection) -> None:
    # delete child tables first (due to foreign keys)
    conn.execute("DELETE FROM stored_recommendations;")
    conn.execute("DELETE FROM product_similarities;")
    conn.execute("DELETE FROM preference_profiles;")
    conn.execute("DELETE FROM interaction_events;")
    conn.execute("DELETE FROM cart_items;")
    conn.execute("DELETE FROM products;")


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--users", type=int, default=50)
    ap.add_argument("--events", type=int, default=2000)
    ap.add_argument("--seed", type=int, default=42)
    ap.add_argument("--reset", action="store_true", help="Clear tables before seeding")
    args = ap.parse_args()

    rng = random.Random(args.seed)
    now = int(time.time())

    conn = connect()
    init_db(conn)

    if args.reset:
        clear_tables(conn)

    product_ids = seed_products(conn, rng, now)
    seed_events(conn, rng, product_ids, args.users, args.events, now)
    seed_carts(conn, rng, product_ids, args.users, now)

    conn.commit()
    conn.close()
    print(f"Seeding complete: {len(product_ids)} products, {args.events} events.")

if __name__ == "__main__":
    main()
