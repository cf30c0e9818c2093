from __future__ import annotations

from dataclasses import dataclass

from web3 import Web3

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'

COMPLIANCE = 'compliance'
TOKEN = 'token'
ORACLE = 'oracle'
DEX = 'dex'
NFT = 'nft'


@dataclass(frozen=True)
class EventParam:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventAbi:
    name: str
    params: tuple[EventParam, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic(self) -> str:
        return hex_prefixed(Web3.keccak(text=self.signature))

    @property
    def indexed(self) -> tuple[EventParam, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def unindexed(self) -> tuple[EventParam, ...]:
        return tuple(p for p in self.params if not p.indexed)


def hex_prefixed(value) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw.lower()
    return f'0x{raw}'.lower()


def _account_event(name: str) -> EventAbi:
    return EventAbi(name, (EventParam('account', 'address', True),))


OWNERSHIP_TRANSFERRED = EventAbi(
    'OwnershipTransferred',
    (EventParam('previousOwner', 'address', True), EventParam('newOwner', 'address', True))
)

ADDED_TO_WHITELIST = _account_event('AddedToWhitelist')
REMOVED_FROM_WHITELIST = _account_event('RemovedFromWhitelist')
ADDED_TO_BLACKLIST = _account_event('AddedToBlacklist')
REMOVED_FROM_BLACKLIST = _account_event('RemovedFromBlacklist')

TRANSFER = EventAbi(
    'Transfer',
    (
        EventParam('from', 'address', True),
        EventParam('to', 'address', True),
        EventParam('value', 'uint256')
    )
)

PRICE_UPDATED = EventAbi('PriceUpdated', (EventParam('symbol', 'string'), EventParam('price', 'uint256')))

TOKEN_PURCHASED = EventAbi(
    'TokenPurchased',
    (EventParam('buyer', 'address', True), EventParam('amount', 'uint256'))
)
TOKEN_SOLD = EventAbi(
    'TokenSold',
    (EventParam('seller', 'address', True), EventParam('amount', 'uint256'))
)

# ERC-721 Transfer shares topic0 with the ERC-20 one; only the tokenId is indexed here.
NFT_TRANSFER = EventAbi(
    'Transfer',
    (
        EventParam('from', 'address', True),
        EventParam('to', 'address', True),
        EventParam('tokenId', 'uint256', True)
    )
)
NFT_MINTED = EventAbi(
    'NFTMinted',
    (
        EventParam('tokenId', 'uint256', True),
        EventParam('to', 'address', True),
        EventParam('uri', 'string')
    )
)
NFT_LISTED = EventAbi(
    'NFTListed',
    (
        EventParam('tokenId', 'uint256', True),
        EventParam('seller', 'address', True),
        EventParam('price', 'uint256')
    )
)
NFT_SOLD = EventAbi(
    'NFTSold',
    (
        EventParam('tokenId', 'uint256', True),
        EventParam('buyer', 'address', True),
        EventParam('price', 'uint256')
    )
)
NFT_CANCELLED = EventAbi('NFTCancelled', (EventParam('tokenId', 'uint256', True),))

EVENTS_BY_KIND: dict[str, tuple[EventAbi, ...]] = {
    COMPLIANCE: (
        ADDED_TO_WHITELIST,
        REMOVED_FROM_WHITELIST,
        ADDED_TO_BLACKLIST,
        REMOVED_FROM_BLACKLIST,
        OWNERSHIP_TRANSFERRED
    ),
    TOKEN: (TRANSFER, OWNERSHIP_TRANSFERRED),
    ORACLE: (PRICE_UPDATED, OWNERSHIP_TRANSFERRED),
    DEX: (TOKEN_PURCHASED, TOKEN_SOLD, OWNERSHIP_TRANSFERRED),
    NFT: (NFT_TRANSFER, NFT_MINTED, NFT_LISTED, NFT_SOLD, NFT_CANCELLED, OWNERSHIP_TRANSFERRED)
}

TOKEN_READ_ABI = [
    {
        'inputs': [{'internalType': 'address', 'name': 'account', 'type': 'address'}],
        'name': 'balanceOf',
        'outputs': [{'internalType': 'uint256', 'name': '', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function'
    },
    {
        'inputs': [],
        'name': 'symbol',
        'outputs': [{'internalType': 'string', 'name': '', 'type': 'string'}],
        'stateMutability': 'view',
        'type': 'function'
    }
]

ORACLE_READ_ABI = [
    {
        'inputs': [{'internalType': 'string', 'name': 'symbol', 'type': 'string'}],
        'name': 'getPrice',
        'outputs': [{'internalType': 'uint256', 'name': '', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function'
    }
]

NFT_READ_ABI = [
    {
        'inputs': [{'internalType': 'uint256', 'name': 'tokenId', 'type': 'uint256'}],
        'name': 'ownerOf',
        'outputs': [{'internalType': 'address', 'name': '', 'type': 'address'}],
        'stateMutability': 'view',
        'type': 'function'
    },
    {
        'inputs': [{'internalType': 'uint256', 'name': 'tokenId', 'type': 'uint256'}],
        'name': 'tokenURI',
        'outputs': [{'internalType': 'string', 'name': '', 'type': 'string'}],
        'stateMutability': 'view',
        'type': 'function'
    },
    {
        'inputs': [{'internalType': 'uint256', 'name': 'tokenId', 'type': 'uint256'}],
        'name': 'getListing',
        'outputs': [
            {'internalType': 'address', 'name': 'seller', 'type': 'address'},
            {'internalType': 'uint256', 'name': 'price', 'type': 'uint256'},
            {'internalType': 'bool', 'name': 'isActive', 'type': 'bool'}
        ],
        'stateMutability': 'view',
        'type': 'function'
    }
]
