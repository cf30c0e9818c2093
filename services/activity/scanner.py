from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Callable, Iterable

from web3 import Web3

from services.common.abi import DEX, TOKEN, TOKEN_PURCHASED, TOKEN_SOLD, TRANSFER, ZERO_ADDRESS
from services.common.chain import ChainClient, ChainUnavailable, format_ether
from services.common.events import DecodeError, DecodedEvent, decode_log

LOGGER = logging.getLogger('assetchain.scanner')

DEFAULT_LOOKBACK_BLOCKS = 500
DEFAULT_WINDOW_SIZE = 20


@dataclass(frozen=True)
class ActivityEvent:
    id: str
    type: str
    from_address: str
    to_address: str
    amount: str
    timestamp: int
    tx_hash: str

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload['from'] = payload.pop('from_address')
        payload['to'] = payload.pop('to_address')
        payload['txHash'] = payload.pop('tx_hash')
        return payload


def merge_activity(
    window: Iterable[ActivityEvent],
    new_events: Iterable[ActivityEvent],
    limit: int = DEFAULT_WINDOW_SIZE
) -> list[ActivityEvent]:
    """Merge freshly scanned events into a bounded, newest-first window."""
    unique: dict[str, ActivityEvent] = {}
    for event in [*new_events, *window]:
        unique.setdefault(event.id, event)
    merged = sorted(unique.values(), key=lambda event: event.timestamp, reverse=True)
    return merged[:limit]


class CatchUpScanner:
    """Reads the activity logs added since a block watermark.

    Holds no state between calls: the caller owns the watermark and passes it
    back on the next scan.
    """

    def __init__(
        self,
        chain: ChainClient,
        token_address: str,
        dex_address: str,
        *,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS,
        clock: Callable[[], float] = time.time
    ) -> None:
        self.chain = chain
        self.token_address = Web3.to_checksum_address(token_address)
        self.dex_address = Web3.to_checksum_address(dex_address)
        self.lookback_blocks = lookback_blocks
        self.clock = clock

    def block_range(self, last_consumed_block: int, head: int) -> tuple[int, int]:
        if last_consumed_block == 0:
            return max(0, head - self.lookback_blocks), head
        return last_consumed_block + 1, head

    def scan(self, last_consumed_block: int) -> tuple[list[ActivityEvent], int]:
        head = self.chain.block_number()
        from_block, to_block = self.block_range(last_consumed_block, head)
        if from_block > to_block:
            return [], last_consumed_block

        with ThreadPoolExecutor(max_workers=3, thread_name_prefix='activity-scan') as pool:
            transfers = pool.submit(self._fetch, self.token_address, TOKEN, TRANSFER.topic, from_block, to_block)
            purchases = pool.submit(self._fetch, self.dex_address, DEX, TOKEN_PURCHASED.topic, from_block, to_block)
            sales = pool.submit(self._fetch, self.dex_address, DEX, TOKEN_SOLD.topic, from_block, to_block)
            transfer_events = transfers.result()
            purchase_events = purchases.result()
            sale_events = sales.result()

        timestamps = self._block_timestamps(
            {event.block_number for event in (*transfer_events, *purchase_events, *sale_events)}
        )

        activity: list[ActivityEvent] = []
        for event in transfer_events:
            sender, receiver = event.args['from'], event.args['to']
            if self.dex_address in (sender, receiver):
                continue
            kind = 'mint' if sender.lower() == ZERO_ADDRESS else 'transfer'
            activity.append(self._activity(event, kind, sender, receiver, event.args['value'], timestamps))

        for event in purchase_events:
            activity.append(
                self._activity(event, 'buy', event.args['buyer'], self.dex_address, event.args['amount'], timestamps)
            )

        for event in sale_events:
            activity.append(
                self._activity(event, 'sell', event.args['seller'], self.dex_address, event.args['amount'], timestamps)
            )

        LOGGER.debug(
            'scanned from_block=%s to_block=%s transfers=%s buys=%s sells=%s kept=%s',
            from_block,
            to_block,
            len(transfer_events),
            len(purchase_events),
            len(sale_events),
            len(activity)
        )
        return activity, to_block

    def _fetch(self, address: str, kind: str, topic: str, from_block: int, to_block: int) -> list[DecodedEvent]:
        logs = self.chain.get_logs(address=address, from_block=from_block, to_block=to_block, topics=[topic])
        events: list[DecodedEvent] = []
        for raw_log in logs:
            try:
                events.append(decode_log(raw_log, kind))
            except DecodeError as exc:
                LOGGER.warning('skipping undecodable log kind=%s tx=%s: %s', kind, raw_log.get('transactionHash'), exc)
        return events

    def _block_timestamps(self, block_numbers: set[int]) -> dict[int, int]:
        timestamps: dict[int, int] = {}
        for block_number in sorted(block_numbers):
            seconds = self.chain.block_timestamp(block_number)
            if seconds is not None:
                timestamps[block_number] = seconds * 1000
        return timestamps

    def _activity(
        self,
        event: DecodedEvent,
        kind: str,
        sender: str,
        receiver: str,
        raw_amount: int,
        timestamps: dict[int, int]
    ) -> ActivityEvent:
        timestamp = timestamps.get(event.block_number)
        if timestamp is None:
            timestamp = int(self.clock() * 1000)
        return ActivityEvent(
            id=event.event_id,
            type=kind,
            from_address=sender,
            to_address=receiver,
            amount=format_ether(raw_amount),
            timestamp=timestamp,
            tx_hash=event.tx_hash
        )


class ActivityFeed:
    """A client's bounded recent-activity view kept current by repeated scans."""

    def __init__(self, scanner: CatchUpScanner, window_size: int = DEFAULT_WINDOW_SIZE) -> None:
        self.scanner = scanner
        self.window_size = window_size
        self.window: list[ActivityEvent] = []
        self.last_consumed_block = 0
        self.connected = False
        self._in_flight = threading.Lock()

    def refresh(self) -> bool:
        if not self._in_flight.acquire(blocking=False):
            LOGGER.debug('scan already in flight; skipping refresh')
            return False
        try:
            try:
                new_events, last_block = self.scanner.scan(self.last_consumed_block)
            except ChainUnavailable as exc:
                self.connected = False
                LOGGER.warning('activity feed disconnected watermark=%s: %s', self.last_consumed_block, exc)
                return False

            if new_events:
                self.window = merge_activity(self.window, new_events, self.window_size)
            self.last_consumed_block = max(self.last_consumed_block, last_block)
            self.connected = True
            return True
        finally:
            self._in_flight.release()
