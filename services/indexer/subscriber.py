from __future__ import annotations

import logging
import queue
import threading
from enum import Enum
from typing import Any, Mapping

from prometheus_client import Counter
from web3 import Web3

from services.common.chain import ChainClient, ChainUnavailable, ContractReverted
from services.common.contracts import ContractSet
from services.common.events import DecodeError, EventDecoder
from services.indexer.projection_store import ProjectionStore, StoreWriteError
from services.indexer.projector import Projector

LOGGER = logging.getLogger('assetchain.subscriber')

EVENTS_APPLIED_TOTAL = Counter(
    'assetchain_events_applied_total',
    'Chain events applied to the projection store',
    ['event']
)
EVENTS_DROPPED_TOTAL = Counter(
    'assetchain_events_dropped_total',
    'Chain events dropped without effect',
    ['reason']
)
SUBSCRIBER_STARTS_TOTAL = Counter(
    'assetchain_subscriber_starts_total',
    'Live subscribers started in this process'
)

_STOP = object()


class SubscriberState(str, Enum):
    UNINITIALIZED = 'uninitialized'
    LISTENING = 'listening'
    FAILED = 'failed'


class LiveSubscriber:
    """Feeds each watched contract's logs to its own single-threaded consumer.

    A poller pulls logs for the whole contract set over consecutive block
    ranges and routes every log, in chain order, onto the bounded queue of the
    contract that emitted it. One worker thread per contract drains its queue,
    so handlers for the same contract never overlap while different contracts
    progress independently. A full queue blocks the poller.
    """

    def __init__(
        self,
        contracts: ContractSet,
        chain: ChainClient,
        store: ProjectionStore,
        *,
        poll_interval_seconds: float = 2,
        backfill_blocks: int = 500,
        max_block_range: int = 1000,
        queue_size: int = 1000,
        projector: Projector | None = None
    ) -> None:
        self.contracts = contracts
        self.chain = chain
        self.decoder = EventDecoder(contracts)
        self.projector = projector or Projector(contracts, chain, store)
        self.poll_interval_seconds = poll_interval_seconds
        self.backfill_blocks = max(0, backfill_blocks)
        self.max_block_range = max(1, max_block_range)

        self.state = SubscriberState.UNINITIALIZED
        self.next_block: int | None = None

        self._queues: dict[str, queue.Queue] = {
            address: queue.Queue(maxsize=queue_size) for address in contracts.addresses()
        }
        self._threads: list[threading.Thread] = []
        self._latch = threading.Lock()
        self._stopping = threading.Event()

    def start(self, background_polling: bool = True) -> bool:
        with self._latch:
            if self.state is not SubscriberState.UNINITIALIZED:
                LOGGER.info('subscriber already started state=%s; ignoring start', self.state.value)
                return False
            self.state = SubscriberState.LISTENING

        kinds = self.contracts.by_address()
        for address, pending in self._queues.items():
            worker = threading.Thread(
                target=self._consume,
                args=(pending,),
                name=f'subscriber-{kinds[address]}',
                daemon=True
            )
            worker.start()
            self._threads.append(worker)

        if background_polling:
            poller = threading.Thread(target=self._poll_loop, name='subscriber-poller', daemon=True)
            poller.start()
            self._threads.append(poller)

        SUBSCRIBER_STARTS_TOTAL.inc()
        LOGGER.info(
            'subscriber listening contracts=%s backfill_blocks=%s poll_interval=%s',
            ','.join(f'{kind}={address}' for address, kind in kinds.items()),
            self.backfill_blocks,
            self.poll_interval_seconds
        )
        return True

    def deliver(self, raw_log: Mapping[str, Any]) -> bool:
        if self.state is not SubscriberState.LISTENING:
            return False
        try:
            address = Web3.to_checksum_address(raw_log.get('address', ''))
        except (TypeError, ValueError):
            return False
        pending = self._queues.get(address)
        if pending is None:
            return False
        pending.put(raw_log)
        return True

    def poll_once(self) -> int:
        head = self.chain.block_number()
        if self.next_block is None:
            self.next_block = max(0, head - self.backfill_blocks)
            LOGGER.info('initial backfill from_block=%s head=%s', self.next_block, head)

        if self.next_block > head:
            return 0

        from_block = self.next_block
        to_block = min(head, from_block + self.max_block_range - 1)
        logs = self.chain.get_logs(
            address=self.contracts.addresses(),
            from_block=from_block,
            to_block=to_block
        )
        ordered = sorted(logs, key=lambda log: (int(log['blockNumber']), int(log['logIndex'])))

        delivered = 0
        for raw_log in ordered:
            if self.deliver(raw_log):
                delivered += 1

        self.next_block = to_block + 1
        if delivered:
            LOGGER.info('routed logs count=%s from_block=%s to_block=%s', delivered, from_block, to_block)
        return delivered

    def handle(self, raw_log: Mapping[str, Any]) -> None:
        try:
            event = self.decoder.decode(raw_log)
        except DecodeError as exc:
            EVENTS_DROPPED_TOTAL.labels(reason='decode').inc()
            LOGGER.warning('dropping undecodable log address=%s: %s', raw_log.get('address'), exc)
            return
        except Exception:
            EVENTS_DROPPED_TOTAL.labels(reason='unexpected').inc()
            LOGGER.exception('dropping log address=%s after unexpected decode failure', raw_log.get('address'))
            return
        if event is None:
            return

        try:
            self.projector.apply(event)
        except StoreWriteError as exc:
            EVENTS_DROPPED_TOTAL.labels(reason='store').inc()
            LOGGER.error('dropping event=%s id=%s store write failed: %s', event.name, event.event_id, exc)
        except ChainUnavailable as exc:
            EVENTS_DROPPED_TOTAL.labels(reason='chain').inc()
            LOGGER.error('dropping event=%s id=%s ground truth read failed: %s', event.name, event.event_id, exc)
        except ContractReverted as exc:
            EVENTS_DROPPED_TOTAL.labels(reason='revert').inc()
            LOGGER.error('dropping event=%s id=%s contract read reverted: %s', event.name, event.event_id, exc)
        except Exception:
            EVENTS_DROPPED_TOTAL.labels(reason='unexpected').inc()
            LOGGER.exception('dropping event=%s id=%s after unexpected failure', event.name, event.event_id)
        else:
            EVENTS_APPLIED_TOTAL.labels(event=event.name).inc()

    def join(self) -> None:
        for pending in self._queues.values():
            pending.join()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        if self.state is SubscriberState.UNINITIALIZED:
            return
        for pending in self._queues.values():
            pending.put(_STOP)
        for thread in self._threads:
            thread.join(timeout)

    def _consume(self, pending: queue.Queue) -> None:
        while True:
            raw_log = pending.get()
            try:
                if raw_log is _STOP:
                    return
                self.handle(raw_log)
            finally:
                pending.task_done()

    def _poll_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.poll_once()
            except ChainUnavailable as exc:
                LOGGER.warning('poll failed next_block=%s; retrying: %s', self.next_block, exc)
            except Exception:
                LOGGER.exception('poller crashed; subscriber failed')
                self.state = SubscriberState.FAILED
                return
            self._stopping.wait(self.poll_interval_seconds)
