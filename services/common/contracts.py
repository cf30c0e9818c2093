from __future__ import annotations

from dataclasses import dataclass

from web3 import Web3

from services.common.abi import COMPLIANCE, DEX, NFT, ORACLE, TOKEN


def normalize_address(value: str | None) -> str | None:
    candidate = str(value or '').strip()
    if not candidate or not Web3.is_address(candidate):
        return None
    return Web3.to_checksum_address(candidate)


@dataclass(frozen=True)
class ContractSet:
    """The contract addresses a subscriber is bound to.

    Built once at bootstrap and never mutated; a new address set means a new
    subscriber.
    """

    compliance: str
    token: str
    oracle: str
    dex: str
    nft: str | None = None

    @classmethod
    def from_addresses(
        cls,
        *,
        compliance: str,
        token: str,
        oracle: str,
        dex: str,
        nft: str | None = None
    ) -> 'ContractSet':
        required = {'compliance': compliance, 'token': token, 'oracle': oracle, 'dex': dex}
        normalized: dict[str, str] = {}
        for name, value in required.items():
            address = normalize_address(value)
            if address is None:
                raise ValueError(f'invalid {name} address: {value!r}')
            normalized[name] = address

        nft_address = None
        if nft:
            nft_address = normalize_address(nft)
            if nft_address is None:
                raise ValueError(f'invalid nft address: {nft!r}')

        return cls(nft=nft_address, **normalized)

    def by_address(self) -> dict[str, str]:
        kinds = {
            self.compliance: COMPLIANCE,
            self.token: TOKEN,
            self.oracle: ORACLE,
            self.dex: DEX
        }
        if self.nft:
            kinds[self.nft] = NFT
        return kinds

    def addresses(self) -> list[str]:
        return list(self.by_address())
