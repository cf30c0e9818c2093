from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass

from services.activity.scanner import DEFAULT_LOOKBACK_BLOCKS, ActivityFeed, CatchUpScanner
from services.common.chain import ChainClient

LOGGER = logging.getLogger('assetchain.feed')


@dataclass
class Settings:
    rpc_url: str
    rpc_timeout_seconds: float
    token_address: str
    dex_address: str
    poll_interval_seconds: float
    lookback_blocks: int


def _settings_from_env() -> Settings:
    return Settings(
        rpc_url=os.getenv('RPC_URL', 'http://127.0.0.1:8545'),
        rpc_timeout_seconds=float(os.getenv('RPC_TIMEOUT_SECONDS', '10')),
        token_address=os.getenv('ACTIVITY_TOKEN_ADDRESS', '').strip(),
        dex_address=os.getenv('ACTIVITY_DEX_ADDRESS', '').strip(),
        poll_interval_seconds=float(os.getenv('ACTIVITY_POLL_INTERVAL_SECONDS', '5')),
        lookback_blocks=int(os.getenv('ACTIVITY_LOOKBACK_BLOCKS', str(DEFAULT_LOOKBACK_BLOCKS)))
    )


def main() -> None:
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    settings = _settings_from_env()
    chain = ChainClient(settings.rpc_url, timeout_seconds=settings.rpc_timeout_seconds)
    scanner = CatchUpScanner(
        chain,
        settings.token_address,
        settings.dex_address,
        lookback_blocks=settings.lookback_blocks
    )
    feed = ActivityFeed(scanner)

    while True:
        previous_ids = {event.id for event in feed.window}
        feed.refresh()
        for event in feed.window:
            if event.id not in previous_ids:
                LOGGER.info(
                    'activity type=%s from=%s to=%s amount=%s tx=%s',
                    event.type,
                    event.from_address,
                    event.to_address,
                    event.amount,
                    event.tx_hash
                )
        LOGGER.debug(
            'feed status connected=%s watermark=%s window=%s',
            feed.connected,
            feed.last_consumed_block,
            len(feed.window)
        )
        time.sleep(max(1.0, settings.poll_interval_seconds))


if __name__ == '__main__':
    main()
