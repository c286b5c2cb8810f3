SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- catalog and cart are owned by the storefront; the engine only reads them

CREATE TABLE IF NOT EXISTS products (
  id           TEXT PRIMARY KEY,
  name         TEXT NOT NULL,
  description  TEXT NOT NULL DEFAULT '',
  category     TEXT NOT NULL DEFAULT '',
  tags         TEXT NOT NULL DEFAULT '',      -- comma separated
  price        REAL NOT NULL,
  sale_price   REAL,                          -- NULL when not discounted
  rating       REAL NOT NULL DEFAULT 0,       -- 0..5
  review_count INTEGER NOT NULL DEFAULT 0,
  in_stock     INTEGER NOT NULL DEFAULT 1,
  created_at   INTEGER NOT NULL               -- unix timestamp
);

CREATE INDEX IF NOT EXISTS idx_products_category ON products(category);
CREATE INDEX IF NOT EXISTS idx_products_created_at ON products(created_at);

CREATE TABLE IF NOT EXISTS cart_items (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id    TEXT NOT NULL,
  product_id TEXT NOT NULL,
  quantity   INTEGER NOT NULL DEFAULT 1,
  added_at   INTEGER NOT NULL,
  FOREIGN KEY (product_id) REFERENCES products(id)
);

CREATE INDEX IF NOT EXISTS idx_cart_items_user_id ON cart_items(user_id);

-- append-only interaction log

CREATE TABLE IF NOT EXISTS interaction_events (
  id            INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id       TEXT NOT NULL,
  product_id    TEXT NOT NULL,
  action        TEXT NOT NULL,               -- 'VIEW' | 'ADD_TO_CART' | 'PURCHASE'
  ts            INTEGER NOT NULL,            -- unix timestamp
  session_id    TEXT,
  device_type   TEXT,
  source        TEXT,
  duration_ms   INTEGER,
  metadata_json TEXT                         -- JSON object, never read by scoring
);

CREATE INDEX IF NOT EXISTS idx_events_user_ts ON interaction_events(user_id, ts);
CREATE INDEX IF NOT EXISTS idx_events_product_action ON interaction_events(product_id, action);
CREATE INDEX IF NOT EXISTS idx_events_ts ON interaction_events(ts);

-- derived per-user cache, rebuilt from interaction_events

CREATE TABLE IF NOT EXISTS preference_profiles (
  user_id                   TEXT PRIMARY KEY,
  preferred_categories_json TEXT NOT NULL,   -- JSON array, most frequent first
  price_min                 REAL,
  price_max                 REAL,
  shopping_style            TEXT NOT NULL,
  updated_at                INTEGER NOT NULL
);

-- written by the similarity batch job

CREATE TABLE IF NOT EXISTS product_similarities (
  product_id         TEXT NOT NULL,
  similar_product_id TEXT NOT NULL,
  score              REAL NOT NULL,           -- 0..1
  kind               TEXT NOT NULL,           -- 'CATEGORY' | 'CO_VIEW' | 'CO_PURCHASE' | 'CONTENT_BASED'
  updated_at         INTEGER NOT NULL,
  PRIMARY KEY (product_id, similar_product_id, kind)
);

CREATE INDEX IF NOT EXISTS idx_similarities_product_score
ON product_similarities(product_id, score);

-- recommendation batches and their shown/clicked/purchased outcome

CREATE TABLE IF NOT EXISTS stored_recommendations (
  id           INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id      TEXT NOT NULL,
  product_id   TEXT NOT NULL,
  strategy     TEXT NOT NULL,
  score        REAL NOT NULL,
  reason       TEXT NOT NULL,
  context_json TEXT,
  batch_key    INTEGER NOT NULL,             -- created_at // batch window
  created_at   INTEGER NOT NULL,
  expires_at   INTEGER NOT NULL,
  is_shown     INTEGER NOT NULL DEFAULT 0,
  shown_at     INTEGER,
  is_clicked   INTEGER NOT NULL DEFAULT 0,
  clicked_at   INTEGER,
  is_purchased INTEGER NOT NULL DEFAULT 0,
  purchased_at INTEGER,
  UNIQUE (user_id, product_id, strategy, batch_key)
);

CREATE INDEX IF NOT EXISTS idx_stored_recs_user_product
ON stored_recommendations(user_id, product_id);

CREATE INDEX IF NOT EXISTS idx_stored_recs_created_at
ON stored_recommendations(created_at);
"""
