from __future__ import annotations

import logging
import time
from typing import Callable

from web3 import Web3

from services.common.abi import (
    COMPLIANCE,
    DEX,
    NFT,
    NFT_READ_ABI,
    ORACLE,
    TOKEN,
    TOKEN_READ_ABI,
    ZERO_ADDRESS
)
from services.common.chain import ChainClient, ContractReverted
from services.common.contracts import ContractSet
from services.common.events import DecodedEvent
from services.indexer.projection_store import ProjectionStore

LOGGER = logging.getLogger('assetchain.projector')


def _is_zero(address: str) -> bool:
    return str(address).lower() == ZERO_ADDRESS


class Projector:
    """Folds decoded events into the projection store.

    Balances and NFT state are always re-read from the chain when an event
    touches them, so the stored value is the chain's value at read time
    whatever order or number of times the events arrive in.
    """

    def __init__(
        self,
        contracts: ContractSet,
        chain: ChainClient,
        store: ProjectionStore,
        clock: Callable[[], float] = time.time
    ) -> None:
        self.contracts = contracts
        self.chain = chain
        self.store = store
        self.clock = clock
        self._handlers: dict[tuple[str, str], Callable[[DecodedEvent], None]] = {
            (COMPLIANCE, 'AddedToWhitelist'): self._added_to_whitelist,
            (COMPLIANCE, 'RemovedFromWhitelist'): self._removed_from_whitelist,
            (COMPLIANCE, 'AddedToBlacklist'): self._added_to_blacklist,
            (COMPLIANCE, 'RemovedFromBlacklist'): self._removed_from_blacklist,
            (TOKEN, 'Transfer'): self._token_transfer,
            (ORACLE, 'PriceUpdated'): self._price_updated,
            (DEX, 'TokenPurchased'): self._token_purchased,
            (DEX, 'TokenSold'): self._token_sold,
            (NFT, 'Transfer'): self._nft_changed,
            (NFT, 'NFTMinted'): self._nft_changed,
            (NFT, 'NFTListed'): self._nft_changed,
            (NFT, 'NFTSold'): self._nft_changed,
            (NFT, 'NFTCancelled'): self._nft_changed
        }

    def apply(self, event: DecodedEvent) -> bool:
        if event.name == 'OwnershipTransferred':
            self._ownership_transferred(event)
            return True

        handler = self._handlers.get((event.contract, event.name))
        if handler is None:
            LOGGER.debug('no projection for event=%s contract=%s', event.name, event.contract)
            return False
        handler(event)
        return True

    def _added_to_whitelist(self, event: DecodedEvent) -> None:
        account = event.args['account']
        self.store.set_whitelisted(account, True)
        LOGGER.info('whitelisted account=%s block=%s', account, event.block_number)

    def _removed_from_whitelist(self, event: DecodedEvent) -> None:
        account = event.args['account']
        self.store.set_whitelisted(account, False)
        LOGGER.info('removed from whitelist account=%s block=%s', account, event.block_number)

    def _added_to_blacklist(self, event: DecodedEvent) -> None:
        account = event.args['account']
        self.store.set_blacklisted(account, True)
        LOGGER.info('blacklisted account=%s block=%s', account, event.block_number)

    def _removed_from_blacklist(self, event: DecodedEvent) -> None:
        account = event.args['account']
        self.store.set_blacklisted(account, False)
        LOGGER.info('removed from blacklist account=%s block=%s', account, event.block_number)

    def _token_transfer(self, event: DecodedEvent) -> None:
        token = self.contracts.token
        symbol = self.chain.call(token, TOKEN_READ_ABI, 'symbol')

        for holder in (event.args['from'], event.args['to']):
            if _is_zero(holder):
                continue
            balance = int(self.chain.call(token, TOKEN_READ_ABI, 'balanceOf', holder))
            self.store.upsert_balance(holder, symbol, balance)
            LOGGER.info('balance reconciled address=%s symbol=%s balance=%s', holder, symbol, balance)

    def _price_updated(self, event: DecodedEvent) -> None:
        symbol = event.args['symbol']
        price = int(event.args['price'])
        self.store.upsert_price(symbol, price)
        LOGGER.info('price updated symbol=%s price=%s', symbol, price)

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _token_purchased(self, event: DecodedEvent) -> None:
        self.store.append_trade(
            buyer=event.args['buyer'],
            amount=int(event.args['amount']),
            timestamp_ms=self._now_ms(),
            tx_hash=event.tx_hash,
            log_index=event.log_index
        )
        LOGGER.info('trade recorded side=buy buyer=%s amount=%s', event.args['buyer'], event.args['amount'])

    def _token_sold(self, event: DecodedEvent) -> None:
        self.store.append_trade(
            seller=event.args['seller'],
            amount=int(event.args['amount']),
            timestamp_ms=self._now_ms(),
            tx_hash=event.tx_hash,
            log_index=event.log_index
        )
        LOGGER.info('trade recorded side=sell seller=%s amount=%s', event.args['seller'], event.args['amount'])

    def _nft_changed(self, event: DecodedEvent) -> None:
        nft = self.contracts.nft
        if nft is None:
            return
        token_id = int(event.args['tokenId'])
        if event.name == 'Transfer' and _is_zero(event.args['to']):
            self._nft_burned(token_id)
            return

        try:
            owner = Web3.to_checksum_address(self.chain.call(nft, NFT_READ_ABI, 'ownerOf', token_id))
        except ContractReverted:
            # ownerOf reverts for burned tokens
            self._nft_burned(token_id)
            return
        token_uri = self.chain.call(nft, NFT_READ_ABI, 'tokenURI', token_id)
        seller, price, is_active = self.chain.call(nft, NFT_READ_ABI, 'getListing', token_id)

        listed = bool(is_active)
        self.store.upsert_nft(
            token_id=token_id,
            owner=owner,
            token_uri=token_uri,
            seller=None if _is_zero(seller) else Web3.to_checksum_address(seller),
            listing_price=int(price) if listed else None,
            is_listed=listed
        )
        LOGGER.info('nft reconciled token_id=%s owner=%s listed=%s event=%s', token_id, owner, listed, event.name)

    def _nft_burned(self, token_id: int) -> None:
        self.store.upsert_nft(
            token_id=token_id,
            owner=None,
            token_uri=None,
            seller=None,
            listing_price=None,
            is_listed=False
        )
        LOGGER.info('nft burned token_id=%s', token_id)

    def _ownership_transferred(self, event: DecodedEvent) -> None:
        new_owner = event.args['newOwner']
        self.store.upsert_contract_owner(event.address, new_owner)
        LOGGER.info('contract owner updated contract=%s owner=%s', event.address, new_owner)
