"""
SQLite persistence for the marketplace.

The ``Database`` handle is created once by the application lifespan and is
passed explicitly to every service, so tests can point the whole stack at a
throwaway file. Each operation opens its own connection; conditional writes
(``UPDATE ... WHERE <expected state>``) give per-order atomicity and
``transaction()`` wraps multi-row writes in ``BEGIN IMMEDIATE``.
"""

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import Request

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/marketplace.db")


# ── Schema ────────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS users (
    id              VARCHAR(64)  PRIMARY KEY,
    name            VARCHAR(128),
    role            VARCHAR(16)  NOT NULL DEFAULT 'buyer',
    fcm_token       TEXT,
    fcm_tokens      TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS stores (
    id              VARCHAR(64)  PRIMARY KEY,
    owner_id        VARCHAR(64),
    name            VARCHAR(128) NOT NULL,
    address         TEXT,
    commission_rate DECIMAL(5,2) NOT NULL DEFAULT 0,
    active          INTEGER      DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS products (
    id              VARCHAR(64)  PRIMARY KEY,
    store_id        VARCHAR(64)  NOT NULL REFERENCES stores(id),
    name            VARCHAR(256) NOT NULL,
    price           DECIMAL(12,2) NOT NULL,
    active          INTEGER      DEFAULT 1
);

CREATE TABLE IF NOT EXISTS orders (
    id                      VARCHAR(32)  PRIMARY KEY,
    buyer_id                VARCHAR(64)  NOT NULL,
    store_id                VARCHAR(64)  NOT NULL REFERENCES stores(id),
    store_owner_id          VARCHAR(64),
    courier_id              VARCHAR(64),
    courier_name            VARCHAR(128),
    customer_name           VARCHAR(128),
    customer_phone          VARCHAR(64),
    shipping_info           TEXT,
    customer_coords         TEXT,
    items                   TEXT         NOT NULL,
    subtotal                DECIMAL(12,2) NOT NULL,
    service_fee             DECIMAL(12,2) NOT NULL,
    delivery_fee            DECIMAL(12,2) NOT NULL,
    total                   DECIMAL(12,2) NOT NULL,
    price_verified          INTEGER      DEFAULT 1,
    status                  VARCHAR(32)  NOT NULL,
    payment_status          VARCHAR(16)  NOT NULL DEFAULT 'unpaid',
    payment_method          VARCHAR(32)  DEFAULT 'mercadopago',
    gateway_payment_id      VARCHAR(64),
    ready_for_pickup        INTEGER      DEFAULT 0,
    store_payout_status     VARCHAR(16)  NOT NULL DEFAULT 'pending',
    delivery_payout_status  VARCHAR(16)  NOT NULL DEFAULT 'pending',
    created_at              DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at              DATETIME,
    paid_at                 DATETIME,
    taken_at                DATETIME,
    delivered_at            DATETIME,
    store_payout_at         DATETIME,
    delivery_payout_at      DATETIME
);

CREATE TABLE IF NOT EXISTS withdrawals (
    id                  VARCHAR(32)  PRIMARY KEY,
    requester_id        VARCHAR(64)  NOT NULL,
    requester_name      VARCHAR(128),
    role                VARCHAR(16)  NOT NULL,
    amount              DECIMAL(12,2) NOT NULL,
    destination_account TEXT         NOT NULL,
    status              VARCHAR(16)  NOT NULL DEFAULT 'pending',
    rejection_reason    TEXT,
    processed_by        VARCHAR(64),
    created_at          DATETIME     NOT NULL DEFAULT (datetime('now')),
    processed_at        DATETIME
);

CREATE TABLE IF NOT EXISTS notifications (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL,
    title           VARCHAR(256) NOT NULL,
    body            TEXT,
    type            VARCHAR(32),
    order_id        VARCHAR(32),
    read            INTEGER      DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_orders_status
    ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_store_status
    ON orders(store_id, status);
CREATE INDEX IF NOT EXISTS idx_orders_courier_status
    ON orders(courier_id, status);
CREATE INDEX IF NOT EXISTS idx_orders_buyer
    ON orders(buyer_id);
CREATE INDEX IF NOT EXISTS idx_products_store
    ON products(store_id);
CREATE INDEX IF NOT EXISTS idx_stores_owner
    ON stores(owner_id);
CREATE INDEX IF NOT EXISTS idx_withdrawals_requester
    ON withdrawals(requester_id, status);
CREATE INDEX IF NOT EXISTS idx_notifications_user
    ON notifications(user_id, created_at);
"""


class Database:
    """Connection factory bound to one SQLite file."""

    def __init__(self, path: str | None = None):
        self.path = path or DB_PATH

    def connect(self) -> sqlite3.Connection:
        """Open a connection with WAL journaling and foreign keys enabled."""
        conn = sqlite3.connect(self.path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def transaction(self):
        """
        Yield a connection inside ``BEGIN IMMEDIATE``.

        Commits when the block exits normally, rolls back on any exception.
        The immediate lock serialises concurrent writers for the whole
        read-check-write sequence.
        """
        conn = self.connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create the data directory, tables and indexes."""
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        conn = self.connect()
        try:
            conn.executescript(_CREATE_TABLES)
            conn.executescript(_CREATE_INDEXES)
            conn.commit()
        finally:
            conn.close()


def get_database(request: Request) -> Database:
    """FastAPI dependency: the ``Database`` attached by the lifespan."""
    return request.app.state.db
