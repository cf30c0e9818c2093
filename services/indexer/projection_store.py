from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

LOGGER = logging.getLogger('assetchain.store')

SCHEMA_STATEMENTS = (
    '''
    CREATE TABLE IF NOT EXISTS users (
      address TEXT PRIMARY KEY,
      is_whitelisted BOOLEAN NOT NULL DEFAULT FALSE,
      is_blacklisted BOOLEAN NOT NULL DEFAULT FALSE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS asset_prices (
      symbol TEXT PRIMARY KEY,
      price NUMERIC(78, 0) NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS balances (
      address TEXT NOT NULL,
      symbol TEXT NOT NULL,
      balance NUMERIC(78, 0) NOT NULL,
      PRIMARY KEY (address, symbol)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS trades (
      id BIGSERIAL PRIMARY KEY,
      buyer TEXT,
      seller TEXT,
      amount NUMERIC(78, 0) NOT NULL,
      price NUMERIC(78, 0),
      timestamp BIGINT NOT NULL,
      tx_hash TEXT,
      log_index INTEGER
    )
    ''',
    'CREATE INDEX IF NOT EXISTS trades_timestamp_idx ON trades (timestamp DESC)',
    '''
    CREATE TABLE IF NOT EXISTS nfts (
      token_id NUMERIC(78, 0) PRIMARY KEY,
      owner TEXT,
      token_uri TEXT,
      seller TEXT,
      listing_price NUMERIC(78, 0),
      is_listed BOOLEAN NOT NULL DEFAULT FALSE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS contract_owners (
      contract_address TEXT PRIMARY KEY,
      owner TEXT NOT NULL
    )
    '''
)


class StoreWriteError(RuntimeError):
    """A single projection write could not be persisted."""


class ProjectionStore:
    """Postgres-backed read model.

    Every write is keyed by natural identity so replaying an event leaves the
    row unchanged; trades are the one append-only exception.
    """

    def __init__(self, pool: Any) -> None:
        self.pool = pool

    @classmethod
    def connect(cls, dsn: str, max_connections: int = 8) -> 'ProjectionStore':
        pool = ThreadedConnectionPool(1, max_connections, dsn=dsn)
        store = cls(pool)
        store.ensure_schema()
        return store

    def close(self) -> None:
        self.pool.closeall()

    def ensure_schema(self) -> None:
        conn = self.pool.getconn()
        try:
            with conn:
                with conn.cursor() as cur:
                    for statement in SCHEMA_STATEMENTS:
                        cur.execute(statement)
        finally:
            self.pool.putconn(conn)
        LOGGER.info('projection schema ready tables=users,asset_prices,balances,trades,nfts,contract_owners')

    @contextmanager
    def _cursor(self, operation: str) -> Iterator[Any]:
        try:
            conn = self.pool.getconn()
        except psycopg2.Error as exc:
            raise StoreWriteError(f'{operation} could not acquire a connection: {exc}') from exc
        try:
            with conn:
                with conn.cursor() as cur:
                    yield cur
        except psycopg2.Error as exc:
            raise StoreWriteError(f'{operation} failed: {exc}') from exc
        finally:
            self.pool.putconn(conn)

    def set_whitelisted(self, address: str, whitelisted: bool) -> None:
        with self._cursor('set_whitelisted') as cur:
            if whitelisted:
                cur.execute(
                    '''
                    INSERT INTO users (address, is_whitelisted)
                    VALUES (%s, TRUE)
                    ON CONFLICT (address) DO UPDATE SET is_whitelisted = TRUE
                    ''',
                    (address,)
                )
            else:
                cur.execute('UPDATE users SET is_whitelisted = FALSE WHERE address = %s', (address,))

    def set_blacklisted(self, address: str, blacklisted: bool) -> None:
        with self._cursor('set_blacklisted') as cur:
            if blacklisted:
                cur.execute(
                    '''
                    INSERT INTO users (address, is_blacklisted)
                    VALUES (%s, TRUE)
                    ON CONFLICT (address) DO UPDATE SET is_blacklisted = TRUE
                    ''',
                    (address,)
                )
            else:
                cur.execute('UPDATE users SET is_blacklisted = FALSE WHERE address = %s', (address,))

    def upsert_balance(self, address: str, symbol: str, balance: int) -> None:
        with self._cursor('upsert_balance') as cur:
            cur.execute(
                '''
                INSERT INTO balances (address, symbol, balance)
                VALUES (%s, %s, %s)
                ON CONFLICT (address, symbol) DO UPDATE SET balance = EXCLUDED.balance
                ''',
                (address, symbol, int(balance))
            )

    def upsert_price(self, symbol: str, price: int) -> None:
        with self._cursor('upsert_price') as cur:
            cur.execute(
                '''
                INSERT INTO asset_prices (symbol, price)
                VALUES (%s, %s)
                ON CONFLICT (symbol) DO UPDATE SET price = EXCLUDED.price
                ''',
                (symbol, int(price))
            )

    def append_trade(
        self,
        *,
        amount: int,
        timestamp_ms: int,
        buyer: str | None = None,
        seller: str | None = None,
        price: int | None = None,
        tx_hash: str | None = None,
        log_index: int | None = None
    ) -> None:
        # No unique key: a redelivered purchase/sale is recorded twice.
        with self._cursor('append_trade') as cur:
            cur.execute(
                '''
                INSERT INTO trades (buyer, seller, amount, price, timestamp, tx_hash, log_index)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ''',
                (buyer, seller, int(amount), price, timestamp_ms, tx_hash, log_index)
            )

    def upsert_nft(
        self,
        *,
        token_id: int,
        owner: str | None,
        token_uri: str | None,
        seller: str | None,
        listing_price: int | None,
        is_listed: bool
    ) -> None:
        with self._cursor('upsert_nft') as cur:
            cur.execute(
                '''
                INSERT INTO nfts (token_id, owner, token_uri, seller, listing_price, is_listed)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (token_id) DO UPDATE SET
                  owner = EXCLUDED.owner,
                  token_uri = EXCLUDED.token_uri,
                  seller = EXCLUDED.seller,
                  listing_price = EXCLUDED.listing_price,
                  is_listed = EXCLUDED.is_listed
                ''',
                (int(token_id), owner, token_uri, seller, listing_price, is_listed)
            )

    def upsert_contract_owner(self, contract_address: str, owner: str) -> None:
        with self._cursor('upsert_contract_owner') as cur:
            cur.execute(
                '''
                INSERT INTO contract_owners (contract_address, owner)
                VALUES (%s, %s)
                ON CONFLICT (contract_address) DO UPDATE SET owner = EXCLUDED.owner
                ''',
                (contract_address, owner)
            )
