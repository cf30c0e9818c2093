from __future__ import annotations

from decimal import Decimal, localcontext
from typing import Any, Sequence

from web3 import Web3
from web3.exceptions import BlockNotFound, ContractLogicError


class ChainUnavailable(RuntimeError):
    """An RPC call to the node failed or timed out."""


class ContractReverted(ValueError):
    """The node answered but the contract call reverted."""


def format_ether(raw_amount: int) -> str:
    with localcontext() as ctx:
        ctx.prec = 78
        amount = Decimal(int(raw_amount)) / (Decimal(10) ** 18)
        return format(amount.normalize(), 'f')


class ChainClient:
    """Thin wrapper over a web3 HTTP provider.

    Every call is bounded by the provider's request timeout. Transport
    failures and timeouts surface as ``ChainUnavailable``; a reverted contract
    call surfaces as ``ContractReverted`` and a missing block reads as ``None``.
    """

    def __init__(self, rpc_url: str, timeout_seconds: float = 10, web3: Web3 | None = None) -> None:
        self.rpc_url = rpc_url
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': timeout_seconds}))

    def block_number(self) -> int:
        try:
            return int(self.web3.eth.block_number)
        except Exception as exc:
            raise ChainUnavailable(f'block_number failed rpc={self.rpc_url}: {exc}') from exc

    def get_logs(
        self,
        *,
        address: str | Sequence[str],
        from_block: int,
        to_block: int,
        topics: list[Any] | None = None
    ) -> list[Any]:
        if isinstance(address, str):
            address_filter: str | list[str] = Web3.to_checksum_address(address)
        else:
            address_filter = [Web3.to_checksum_address(x) for x in address]

        params: dict[str, Any] = {
            'fromBlock': from_block,
            'toBlock': to_block,
            'address': address_filter
        }
        if topics:
            params['topics'] = topics

        try:
            return list(self.web3.eth.get_logs(params))
        except Exception as exc:
            raise ChainUnavailable(
                f'get_logs failed from_block={from_block} to_block={to_block}: {exc}'
            ) from exc

    def block_timestamp(self, block_number: int) -> int | None:
        try:
            block = self.web3.eth.get_block(block_number)
        except BlockNotFound:
            return None
        except Exception as exc:
            raise ChainUnavailable(f'get_block failed block={block_number}: {exc}') from exc
        if block is None:
            return None
        return int(block['timestamp'])

    def call(self, address: str, abi: list[dict], function: str, *args: Any) -> Any:
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        try:
            return getattr(contract.functions, function)(*args).call()
        except ContractLogicError as exc:
            raise ContractReverted(f'{function} reverted address={address}: {exc}') from exc
        except Exception as exc:
            raise ChainUnavailable(f'{function} call failed address={address}: {exc}') from exc
