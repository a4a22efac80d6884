#!/usr/bin/env python3
"""
Typed event layer for the Arbitrum bridge, inbox, gateway, rollup and
ArbRetryableTx contracts.

Every event kind maps to a fixed signature, so its topic hash and data layout
are known up front. Raw web3 logs are decoded into frozen dataclasses; a log
that cannot be decoded raises MalformedResponseError.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from eth_abi import decode
from hexbytes import HexBytes
from web3 import Web3

from block_scanner import BlockRange, MalformedResponseError
from rpc_failover import EVMProviderPool


# MessageTypes.sol: L1MessageType_submitRetryableTx
SUBMIT_RETRYABLE_MESSAGE_KIND = 9

# ArbRetryableTx submitRetryable(bytes32 requestId, ...) selector on the child chain
SUBMIT_RETRYABLE_SELECTOR = '0xc9f95d32'
REQUEST_ID_HEX_LENGTH = 64

DEPOSIT_SEQUENCE_NUMBER_TOPIC_INDEX = 3


class EventKind(Enum):
    MESSAGE_DELIVERED = (
        "MessageDelivered(uint256,bytes32,address,uint8,address,bytes32,uint256,uint64)",
        ("address", "uint8", "address", "bytes32", "uint256", "uint64"),
    )
    INBOX_MESSAGE_DELIVERED = (
        "InboxMessageDelivered(uint256,bytes)",
        ("bytes",),
    )
    DEPOSIT_INITIATED = (
        "DepositInitiated(address,address,address,uint256,uint256)",
        ("address", "uint256"),
    )
    SEQUENCER_BATCH_DELIVERED = (
        "SequencerBatchDelivered(uint256,bytes32,bytes32,bytes32,uint256,(uint64,uint64,uint64,uint64),uint8)",
        ("bytes32", "uint256", "(uint64,uint64,uint64,uint64)", "uint8"),
    )
    NODE_CREATED = (
        "NodeCreated(uint64,bytes32,bytes32,bytes32,"
        "(((bytes32[2],uint64[2]),uint8),((bytes32[2],uint64[2]),uint8),uint64),"
        "bytes32,bytes32,uint256)",
        (
            "bytes32",
            "(((bytes32[2],uint64[2]),uint8),((bytes32[2],uint64[2]),uint8),uint64)",
            "bytes32",
            "bytes32",
            "uint256",
        ),
    )
    REDEEM_SCHEDULED = (
        "RedeemScheduled(bytes32,bytes32,uint64,uint64,address,uint256,uint256)",
        ("uint64", "address", "uint256", "uint256"),
    )

    def __init__(self, signature: str, data_types: Tuple[str, ...]):
        self.signature = signature
        self.data_types = data_types

    @property
    def topic(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature))


def to_hex(value: Union[bytes, str, None]) -> str:
    """Normalise HexBytes/bytes/hex strings to a lowercase 0x-prefixed string"""
    if value is None:
        return '0x'
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    value = str(value).lower()
    return value if value.startswith('0x') else '0x' + value


def to_bytes(value: Union[bytes, str]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes(HexBytes(value))


def topic_to_int(topic: Union[bytes, str]) -> int:
    return int.from_bytes(to_bytes(topic), 'big')


def topic_to_address(topic: Union[bytes, str]) -> str:
    return Web3.to_checksum_address(to_bytes(topic)[-20:])


def _decode_data(kind: EventKind, log: Dict[str, Any], indexed_count: int) -> Tuple[Any, ...]:
    try:
        topics = log['topics']
        if len(topics) < indexed_count + 1:
            raise ValueError(f"expected {indexed_count + 1} topics, got {len(topics)}")
        if to_hex(topics[0]) != kind.topic:
            raise ValueError(f"topic0 {to_hex(topics[0])} does not match {kind.signature}")
        return decode(list(kind.data_types), to_bytes(log['data']))
    except MalformedResponseError:
        raise
    except Exception as e:
        raise MalformedResponseError(f"Failed to decode {kind.name} log: {e}") from e


@dataclass(frozen=True)
class MessageDeliveredEvent:
    message_index: int
    inbox: str
    kind: int
    sender: str
    message_data_hash: str
    base_fee_l1: int
    timestamp: int
    transaction_hash: str
    block_number: int
    address: Optional[str] = None


@dataclass(frozen=True)
class InboxMessageDeliveredEvent:
    message_num: int
    data: bytes
    transaction_hash: str
    block_number: int


@dataclass(frozen=True)
class DepositInitiatedEvent:
    token: str
    from_address: str
    to_address: str
    sequence_number: int
    sequence_number_topic: str
    amount: int
    transaction_hash: str
    block_number: int


@dataclass(frozen=True)
class SequencerBatchDeliveredEvent:
    batch_sequence_number: int
    transaction_hash: str
    block_number: int


@dataclass(frozen=True)
class NodeCreatedEvent:
    node_num: int
    transaction_hash: str
    block_number: int


@dataclass(frozen=True)
class RedeemScheduledEvent:
    ticket_id: str
    retry_tx_hash: str
    sequence_num: int
    transaction_hash: str
    block_number: int


def decode_message_delivered(log: Dict[str, Any]) -> MessageDeliveredEvent:
    inbox, kind, sender, data_hash, base_fee, timestamp = _decode_data(EventKind.MESSAGE_DELIVERED, log, 2)
    address = log.get('address')
    return MessageDeliveredEvent(
        message_index=topic_to_int(log['topics'][1]),
        inbox=Web3.to_checksum_address(inbox),
        kind=int(kind),
        sender=Web3.to_checksum_address(sender),
        message_data_hash=to_hex(data_hash),
        base_fee_l1=int(base_fee),
        timestamp=int(timestamp),
        transaction_hash=to_hex(log['transactionHash']),
        block_number=int(log['blockNumber']),
        address=Web3.to_checksum_address(address) if address else None,
    )


def decode_inbox_message_delivered(log: Dict[str, Any]) -> InboxMessageDeliveredEvent:
    (data,) = _decode_data(EventKind.INBOX_MESSAGE_DELIVERED, log, 1)
    return InboxMessageDeliveredEvent(
        message_num=topic_to_int(log['topics'][1]),
        data=bytes(data),
        transaction_hash=to_hex(log['transactionHash']),
        block_number=int(log['blockNumber']),
    )


def decode_deposit_initiated(log: Dict[str, Any]) -> DepositInitiatedEvent:
    token, amount = _decode_data(EventKind.DEPOSIT_INITIATED, log, 3)
    topics = log['topics']
    return DepositInitiatedEvent(
        token=Web3.to_checksum_address(token),
        from_address=topic_to_address(topics[1]),
        to_address=topic_to_address(topics[2]),
        sequence_number=topic_to_int(topics[DEPOSIT_SEQUENCE_NUMBER_TOPIC_INDEX]),
        sequence_number_topic=to_hex(topics[DEPOSIT_SEQUENCE_NUMBER_TOPIC_INDEX]),
        amount=int(amount),
        transaction_hash=to_hex(log['transactionHash']),
        block_number=int(log['blockNumber']),
    )


def decode_sequencer_batch_delivered(log: Dict[str, Any]) -> SequencerBatchDeliveredEvent:
    _decode_data(EventKind.SEQUENCER_BATCH_DELIVERED, log, 3)
    return SequencerBatchDeliveredEvent(
        batch_sequence_number=topic_to_int(log['topics'][1]),
        transaction_hash=to_hex(log['transactionHash']),
        block_number=int(log['blockNumber']),
    )


def decode_node_created(log: Dict[str, Any]) -> NodeCreatedEvent:
    _decode_data(EventKind.NODE_CREATED, log, 3)
    return NodeCreatedEvent(
        node_num=topic_to_int(log['topics'][1]),
        transaction_hash=to_hex(log['transactionHash']),
        block_number=int(log['blockNumber']),
    )


def decode_redeem_scheduled(log: Dict[str, Any]) -> RedeemScheduledEvent:
    _decode_data(EventKind.REDEEM_SCHEDULED, log, 3)
    topics = log['topics']
    return RedeemScheduledEvent(
        ticket_id=to_hex(topics[1]),
        retry_tx_hash=to_hex(topics[2]),
        sequence_num=topic_to_int(topics[3]),
        transaction_hash=to_hex(log['transactionHash']),
        block_number=int(log['blockNumber']),
    )


DECODERS: Dict[EventKind, Callable[[Dict[str, Any]], Any]] = {
    EventKind.MESSAGE_DELIVERED: decode_message_delivered,
    EventKind.INBOX_MESSAGE_DELIVERED: decode_inbox_message_delivered,
    EventKind.DEPOSIT_INITIATED: decode_deposit_initiated,
    EventKind.SEQUENCER_BATCH_DELIVERED: decode_sequencer_batch_delivered,
    EventKind.NODE_CREATED: decode_node_created,
    EventKind.REDEEM_SCHEDULED: decode_redeem_scheduled,
}


def logs_of_kind(logs: Sequence[Dict[str, Any]], kind: EventKind, address: Optional[str] = None) -> List[Any]:
    """Decode the logs of a receipt that match ``kind`` (and ``address`` when given)"""
    decoder = DECODERS[kind]
    matching = []
    for log in logs:
        topics = log.get('topics') or []
        if not topics or to_hex(topics[0]) != kind.topic:
            continue
        if address is not None and to_hex(log.get('address')) != address.lower():
            continue
        matching.append(decoder(log))
    return matching


def make_log_fetcher(
    pool: EVMProviderPool,
    address: str,
    kind: EventKind,
    extra_topics: Optional[List[Optional[str]]] = None,
) -> Callable[[BlockRange], List[Any]]:
    """Build a scanner fetch function returning decoded events of ``kind`` for a sub-range"""
    checksum_address = Web3.to_checksum_address(address)
    decoder = DECODERS[kind]

    def fetch(block_range: BlockRange) -> List[Any]:
        filter_params = {
            "fromBlock": block_range.from_block,
            "toBlock": block_range.to_block,
            "address": checksum_address,
            "topics": [kind.topic] + list(extra_topics or []),
        }
        logs = pool.with_web3(lambda w3: w3.eth.get_logs(filter_params))
        return [decoder(log) for log in logs]

    return fetch


def extract_request_id(calldata: Union[bytes, str]) -> str:
    """Request id carried by a submitRetryable call.

    The hex calldata is split on the literal selector and the following 32
    bytes (64 hex characters) are returned with a 0x prefix. This matches
    topic 3 (sequence number) of the gateway's DepositInitiated log.
    """
    calldata_hex = to_hex(calldata)
    parts = calldata_hex.split(SUBMIT_RETRYABLE_SELECTOR)
    if len(parts) < 2:
        raise MalformedResponseError(f"Calldata does not contain selector {SUBMIT_RETRYABLE_SELECTOR}")
    return '0x' + parts[1][:REQUEST_ID_HEX_LENGTH]
