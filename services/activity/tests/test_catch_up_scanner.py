import threading
import unittest
from unittest.mock import MagicMock

from services.activity.scanner import ActivityEvent, ActivityFeed, CatchUpScanner, merge_activity
from services.common.abi import PRICE_UPDATED, TOKEN_PURCHASED, TOKEN_SOLD, TRANSFER, ZERO_ADDRESS
from services.common.chain import ChainUnavailable
from services.common.tests.fakes import FakeChain
from services.common.tests.log_factory import ADDR_DEX, ADDR_ORACLE, ADDR_TOKEN, ALICE, BOB, make_log


def _tx(n: int) -> str:
    return '0x' + f'{n:064x}'


def _event(event_id: str, timestamp: int) -> ActivityEvent:
    return ActivityEvent(
        id=event_id,
        type='transfer',
        from_address=ALICE,
        to_address=BOB,
        amount='1',
        timestamp=timestamp,
        tx_hash=event_id.split('-')[0]
    )


class CatchUpScannerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.chain = FakeChain(head=1000)
        self.scanner = CatchUpScanner(self.chain, ADDR_TOKEN, ADDR_DEX, clock=lambda: 1700000999.0)

    def test_first_scan_looks_back_and_later_scans_resume(self) -> None:
        self.assertEqual(self.scanner.block_range(0, 1000), (500, 1000))
        self.assertEqual(self.scanner.block_range(0, 200), (0, 200))
        self.assertEqual(self.scanner.block_range(1000, 1010), (1001, 1010))

    def test_no_new_blocks_keeps_watermark(self) -> None:
        events, last_block = self.scanner.scan(1000)

        self.assertEqual(events, [])
        self.assertEqual(last_block, 1000)
        self.assertEqual(self.chain.log_queries, [])

    def test_classifies_transfers_and_excludes_dex_legs(self) -> None:
        self.chain.timestamps = {900: 1700000000}
        self.chain.logs = [
            make_log(TRANSFER, ADDR_TOKEN, {'from': ZERO_ADDRESS, 'to': ALICE, 'value': 10**20},
                     block_number=900, tx_hash=_tx(1)),
            make_log(TRANSFER, ADDR_TOKEN, {'from': ALICE, 'to': BOB, 'value': 4 * 10**19},
                     block_number=900, tx_hash=_tx(2)),
            make_log(TRANSFER, ADDR_TOKEN, {'from': ADDR_DEX, 'to': ALICE, 'value': 5 * 10**18},
                     block_number=900, tx_hash=_tx(3)),
            make_log(TOKEN_PURCHASED, ADDR_DEX, {'buyer': ALICE, 'amount': 5 * 10**18},
                     block_number=900, tx_hash=_tx(3), log_index=1),
            make_log(TOKEN_SOLD, ADDR_DEX, {'seller': BOB, 'amount': 10**18},
                     block_number=900, tx_hash=_tx(4))
        ]

        events, last_block = self.scanner.scan(0)

        self.assertEqual(last_block, 1000)
        by_id = {event.id: event for event in events}
        self.assertEqual(len(events), 4)
        self.assertEqual(by_id[_tx(1) + '-0'].type, 'mint')
        self.assertEqual(by_id[_tx(1) + '-0'].amount, '100')
        self.assertEqual(by_id[_tx(2) + '-0'].type, 'transfer')
        self.assertEqual(by_id[_tx(3) + '-1'].type, 'buy')
        self.assertEqual(by_id[_tx(3) + '-1'].to_address, ADDR_DEX)
        self.assertEqual(by_id[_tx(4) + '-0'].type, 'sell')
        self.assertEqual(by_id[_tx(4) + '-0'].from_address, BOB)
        self.assertNotIn(_tx(3) + '-0', by_id)
        self.assertTrue(all(event.timestamp == 1700000000000 for event in events))

    def test_ignores_other_contracts_and_topics(self) -> None:
        self.chain.logs = [
            make_log(TRANSFER, ADDR_ORACLE, {'from': ALICE, 'to': BOB, 'value': 1}, block_number=900),
            make_log(PRICE_UPDATED, ADDR_TOKEN, {'symbol': 'GLD', 'price': 1}, block_number=900)
        ]

        events, _ = self.scanner.scan(0)

        self.assertEqual(events, [])

    def test_block_timestamp_read_once_per_block(self) -> None:
        self.chain.timestamps = {700: 1700000000, 701: 1700000012}
        self.chain.logs = [
            make_log(TRANSFER, ADDR_TOKEN, {'from': ALICE, 'to': BOB, 'value': 1},
                     block_number=700, tx_hash=_tx(1)),
            make_log(TOKEN_PURCHASED, ADDR_DEX, {'buyer': ALICE, 'amount': 1},
                     block_number=700, tx_hash=_tx(2)),
            make_log(TOKEN_SOLD, ADDR_DEX, {'seller': ALICE, 'amount': 1},
                     block_number=701, tx_hash=_tx(3))
        ]

        events, _ = self.scanner.scan(0)

        self.assertEqual(len(events), 3)
        self.assertEqual(sorted(self.chain.timestamp_queries), [700, 701])

    def test_missing_block_falls_back_to_clock(self) -> None:
        self.chain.logs = [make_log(TRANSFER, ADDR_TOKEN, {'from': ALICE, 'to': BOB, 'value': 1}, block_number=900)]

        events, _ = self.scanner.scan(0)

        self.assertEqual(events[0].timestamp, 1700000999000)

    def test_node_failure_propagates(self) -> None:
        self.chain.fail_logs = True

        with self.assertRaises(ChainUnavailable):
            self.scanner.scan(0)


class MergeActivityTests(unittest.TestCase):
    def test_overlapping_results_are_deduplicated(self) -> None:
        window = merge_activity([], [_event('T-1', 1), _event('T-2', 2), _event('T-3', 3)])
        window = merge_activity(window, [_event('T-3', 3), _event('T-4', 4)])

        self.assertEqual([event.id for event in window], ['T-4', 'T-3', 'T-2', 'T-1'])

    def test_window_is_bounded_and_newest_first(self) -> None:
        window = merge_activity([], [_event(f'T-{n}', n) for n in range(30)])

        self.assertEqual(len(window), 20)
        self.assertEqual(window[0].id, 'T-29')
        self.assertEqual(window[-1].id, 'T-10')

    def test_wire_shape_uses_client_field_names(self) -> None:
        payload = _event('T-1', 5).to_dict()

        self.assertEqual(
            set(payload),
            {'id', 'type', 'from', 'to', 'amount', 'timestamp', 'txHash'}
        )
        self.assertEqual(payload['from'], ALICE)


class ActivityFeedTests(unittest.TestCase):
    def setUp(self) -> None:
        self.chain = FakeChain(head=1000)
        self.chain.timestamps = {900: 1700000000, 1005: 1700000060}
        self.feed = ActivityFeed(CatchUpScanner(self.chain, ADDR_TOKEN, ADDR_DEX))

    def test_refresh_advances_watermark_and_fills_window(self) -> None:
        self.chain.logs = [
            make_log(TRANSFER, ADDR_TOKEN, {'from': ALICE, 'to': BOB, 'value': 1}, block_number=900, tx_hash=_tx(1))
        ]

        self.assertTrue(self.feed.refresh())
        self.assertTrue(self.feed.connected)
        self.assertEqual(self.feed.last_consumed_block, 1000)

        self.chain.head = 1010
        self.chain.logs.append(
            make_log(TRANSFER, ADDR_TOKEN, {'from': BOB, 'to': ALICE, 'value': 1}, block_number=1005, tx_hash=_tx(2))
        )
        self.feed.refresh()

        self.assertEqual(self.chain.log_queries[-1], (1001, 1010))
        self.assertEqual([event.id for event in self.feed.window], [_tx(2) + '-0', _tx(1) + '-0'])

    def test_failed_scan_keeps_watermark_and_window(self) -> None:
        self.chain.logs = [
            make_log(TRANSFER, ADDR_TOKEN, {'from': ALICE, 'to': BOB, 'value': 1}, block_number=900, tx_hash=_tx(1))
        ]
        self.feed.refresh()
        window = list(self.feed.window)

        self.chain.head = 1050
        self.chain.fail_logs = True

        self.assertFalse(self.feed.refresh())
        self.assertFalse(self.feed.connected)
        self.assertEqual(self.feed.last_consumed_block, 1000)
        self.assertEqual(self.feed.window, window)

    def test_refresh_skipped_while_a_scan_is_in_flight(self) -> None:
        entered = threading.Event()
        release = threading.Event()
        scanner = MagicMock(spec=CatchUpScanner)

        def slow_scan(last_block):
            entered.set()
            release.wait(2)
            return [], 1000

        scanner.scan.side_effect = slow_scan
        feed = ActivityFeed(scanner)
        worker = threading.Thread(target=feed.refresh)
        worker.start()
        entered.wait(2)

        self.assertFalse(feed.refresh())

        release.set()
        worker.join(2)
        self.assertEqual(scanner.scan.call_count, 1)
        self.assertEqual(feed.last_consumed_block, 1000)

    def test_overlapping_scans_yield_one_entry_per_log(self) -> None:
        self.chain.timestamps = {950: 1700000000}
        self.chain.logs = [
            make_log(TRANSFER, ADDR_TOKEN, {'from': ALICE, 'to': BOB, 'value': 1},
                     block_number=950, tx_hash=_tx(7), log_index=3)
        ]
        scanner = CatchUpScanner(self.chain, ADDR_TOKEN, ADDR_DEX)

        first, _ = scanner.scan(0)
        second, _ = scanner.scan(0)
        window = merge_activity(merge_activity([], first), second)

        self.assertEqual([event.id for event in window], [_tx(7) + '-3'])
