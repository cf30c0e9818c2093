import unittest
from unittest.mock import MagicMock

import psycopg2
import psycopg2.pool

from services.indexer.projection_store import SCHEMA_STATEMENTS, ProjectionStore, StoreWriteError


def _normalize(sql: str) -> str:
    return ' '.join(sql.split())


class ProjectionStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.pool = MagicMock()
        self.conn = self.pool.getconn.return_value
        self.cursor = self.conn.cursor.return_value.__enter__.return_value
        self.store = ProjectionStore(self.pool)

    def executed(self) -> list[tuple[str, tuple]]:
        return [(_normalize(c.args[0]), c.args[1] if len(c.args) > 1 else ()) for c in self.cursor.execute.call_args_list]

    def test_ensure_schema_creates_all_tables(self) -> None:
        self.store.ensure_schema()

        statements = [sql for sql, _ in self.executed()]
        self.assertEqual(len(statements), len(SCHEMA_STATEMENTS))
        for table in ('users', 'asset_prices', 'balances', 'trades', 'nfts', 'contract_owners'):
            self.assertTrue(any(f'CREATE TABLE IF NOT EXISTS {table} ' in sql for sql in statements), table)
        self.pool.putconn.assert_called_once_with(self.conn)

    def test_whitelist_upsert_keeps_blacklist_flag(self) -> None:
        self.store.set_whitelisted('0xabc', True)

        sql, params = self.executed()[0]
        self.assertIn('ON CONFLICT (address) DO UPDATE SET is_whitelisted = TRUE', sql)
        self.assertNotIn('is_blacklisted', sql)
        self.assertEqual(params, ('0xabc',))

    def test_whitelist_removal_is_plain_update(self) -> None:
        self.store.set_whitelisted('0xabc', False)

        sql, params = self.executed()[0]
        self.assertEqual(sql, 'UPDATE users SET is_whitelisted = FALSE WHERE address = %s')
        self.assertEqual(params, ('0xabc',))

    def test_balance_upsert_overwrites_by_key(self) -> None:
        self.store.upsert_balance('0xabc', 'GLD', 60)

        sql, params = self.executed()[0]
        self.assertIn('ON CONFLICT (address, symbol) DO UPDATE SET balance = EXCLUDED.balance', sql)
        self.assertEqual(params, ('0xabc', 'GLD', 60))

    def test_trade_insert_has_no_conflict_clause(self) -> None:
        self.store.append_trade(buyer='0xabc', amount=7, timestamp_ms=1700000000000, tx_hash='0x01', log_index=3)

        sql, params = self.executed()[0]
        self.assertNotIn('ON CONFLICT', sql)
        self.assertEqual(params, ('0xabc', None, 7, None, 1700000000000, '0x01', 3))

    def test_database_error_becomes_store_write_error(self) -> None:
        self.cursor.execute.side_effect = psycopg2.OperationalError('server closed the connection')

        with self.assertRaises(StoreWriteError):
            self.store.upsert_price('GLD', 10**16)
        self.pool.putconn.assert_called_once_with(self.conn)

    def test_pool_exhaustion_becomes_store_write_error(self) -> None:
        self.pool.getconn.side_effect = psycopg2.pool.PoolError('connection pool exhausted')

        with self.assertRaises(StoreWriteError):
            self.store.upsert_contract_owner('0xabc', '0xdef')
