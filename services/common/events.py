from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from services.common.abi import EVENTS_BY_KIND, EventAbi, hex_prefixed
from services.common.contracts import ContractSet


class DecodeError(ValueError):
    """A log from a watched contract could not be mapped to a known event."""


@dataclass(frozen=True)
class DecodedEvent:
    name: str
    contract: str
    address: str
    args: Mapping[str, Any] = field(hash=False)
    block_number: int
    tx_hash: str
    log_index: int

    @property
    def event_id(self) -> str:
        return f'{self.tx_hash}-{self.log_index}'


_TOPIC_INDEX: dict[str, dict[str, EventAbi]] = {
    kind: {event.topic: event for event in events}
    for kind, events in EVENTS_BY_KIND.items()
}


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes(HexBytes(value))


def _normalize_value(abi_type: str, value: Any) -> Any:
    if abi_type == 'address':
        return Web3.to_checksum_address(value)
    return value


def decode_log(raw_log: Mapping[str, Any], kind: str) -> DecodedEvent:
    """Decode a log emitted by a contract of the given kind.

    Raises ``DecodeError`` when topic0 is not part of that contract's ABI or
    when topics/data do not match the event's parameter layout.
    """
    topics = list(raw_log.get('topics') or [])
    if not topics:
        raise DecodeError(f'log without topics kind={kind}')

    topic0 = hex_prefixed(topics[0])
    event = _TOPIC_INDEX.get(kind, {}).get(topic0)
    if event is None:
        raise DecodeError(f'unrecognized topic kind={kind} topic0={topic0}')

    indexed = event.indexed
    if len(topics) - 1 != len(indexed):
        raise DecodeError(
            f'{event.name} expects {len(indexed)} indexed topics, got {len(topics) - 1}'
        )

    args: dict[str, Any] = {}
    try:
        for param, topic in zip(indexed, topics[1:]):
            (value,) = decode([param.type], _as_bytes(topic))
            args[param.name] = _normalize_value(param.type, value)

        unindexed = event.unindexed
        if unindexed:
            values = decode([p.type for p in unindexed], _as_bytes(raw_log.get('data') or b''))
            for param, value in zip(unindexed, values):
                args[param.name] = _normalize_value(param.type, value)
    except (DecodingError, ValueError, TypeError) as exc:
        raise DecodeError(f'{event.name} payload could not be decoded: {exc}') from exc

    return DecodedEvent(
        name=event.name,
        contract=kind,
        address=Web3.to_checksum_address(raw_log['address']),
        args=args,
        block_number=int(raw_log.get('blockNumber') or 0),
        tx_hash=hex_prefixed(raw_log.get('transactionHash') or ''),
        log_index=int(raw_log.get('logIndex') or 0)
    )


class EventDecoder:
    def __init__(self, contracts: ContractSet) -> None:
        self.contracts = contracts
        self._kinds = contracts.by_address()

    def kind_of(self, address: str) -> str | None:
        try:
            return self._kinds.get(Web3.to_checksum_address(address))
        except (TypeError, ValueError):
            return None

    def decode(self, raw_log: Mapping[str, Any]) -> DecodedEvent | None:
        kind = self.kind_of(raw_log.get('address', ''))
        if kind is None:
            return None
        return decode_log(raw_log, kind)
