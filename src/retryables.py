#!/usr/bin/env python3
"""
Parent-to-child retryable messages

Derives the retryable tickets created by a parent chain transaction and
queries their lifecycle on the child chain through the ArbRetryableTx and
ArbGasInfo precompiles.

Ticket ids are content-addressed: keccak256(0x69 || rlp(fields)) over the
same fields the child chain uses for its ArbitrumSubmitRetryableTx, so the
same parent transaction always yields the same ids.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import rlp
from eth_abi import decode
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from block_scanner import BlockRange, MalformedResponseError, scan_range
from events import (
    EventKind,
    SUBMIT_RETRYABLE_MESSAGE_KIND,
    logs_of_kind,
    make_log_fetcher,
    to_bytes,
    to_hex,
)
from models import RetryableStatus
from rpc_failover import EVMProviderPool

logger = logging.getLogger(__name__)


ARB_RETRYABLE_TX_ADDRESS = '0x000000000000000000000000000000000000006E'
ARB_GAS_INFO_ADDRESS = '0x000000000000000000000000000000000000006C'
ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
SUBMIT_RETRYABLE_TX_TYPE = 0x69

# the inbox message body starts with nine packed uint256 words followed by the call data
RETRYABLE_HEADER_WORDS = 9
DEFAULT_CHILD_CHUNK_SIZE = 50_000

ARB_RETRYABLE_TX_ABI = [
    {
        "inputs": [{"internalType": "bytes32", "name": "ticketId", "type": "bytes32"}],
        "name": "getTimeout",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "bytes32", "name": "ticketId", "type": "bytes32"}],
        "name": "redeem",
        "outputs": [{"internalType": "bytes32", "name": "", "type": "bytes32"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

ARB_GAS_INFO_ABI = [
    {
        "inputs": [],
        "name": "getPricesInWei",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"} for _ in range(6)],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class RetryableMessageData:
    dest_address: str
    l2_call_value: int
    l1_value: int
    max_submission_fee: int
    excess_fee_refund_address: str
    call_value_refund_address: str
    gas_limit: int
    max_fee_per_gas: int
    data: bytes


def _word_to_address(word: int) -> str:
    return Web3.to_checksum_address((word % (1 << 160)).to_bytes(20, 'big'))


def parse_retryable_message_data(raw: bytes) -> RetryableMessageData:
    """Parse the InboxMessageDelivered body of a submit-retryable message"""
    header_length = RETRYABLE_HEADER_WORDS * 32
    if len(raw) < header_length:
        raise MalformedResponseError(
            f"Retryable message data too short: {len(raw)} bytes, expected at least {header_length}"
        )

    words = decode(['uint256'] * RETRYABLE_HEADER_WORDS, raw[:header_length])
    data_length = words[8]
    if data_length > len(raw) - header_length:
        raise MalformedResponseError(f"Retryable call data length {data_length} exceeds message size")

    return RetryableMessageData(
        dest_address=_word_to_address(words[0]),
        l2_call_value=words[1],
        l1_value=words[2],
        max_submission_fee=words[3],
        excess_fee_refund_address=_word_to_address(words[4]),
        call_value_refund_address=_word_to_address(words[5]),
        gas_limit=words[6],
        max_fee_per_gas=words[7],
        data=raw[len(raw) - data_length:] if data_length else b'',
    )


def _format_number(value: int) -> bytes:
    # minimal big-endian bytes, zero encodes as empty
    if value == 0:
        return b''
    return value.to_bytes((value.bit_length() + 7) // 8, 'big')


def encode_submit_retryable_tx(
    child_chain_id: int,
    from_address: str,
    message_number: int,
    parent_base_fee: int,
    message_data: RetryableMessageData,
) -> bytes:
    """Typed ArbitrumSubmitRetryableTx the child chain creates for this message.

    ``from_address`` is the MessageDelivered sender, which the inbox has
    already aliased for contract callers.
    """
    dest = message_data.dest_address
    fields = [
        _format_number(child_chain_id),
        message_number.to_bytes(32, 'big'),
        to_bytes(from_address),
        _format_number(parent_base_fee),
        _format_number(message_data.l1_value),
        _format_number(message_data.max_fee_per_gas),
        _format_number(message_data.gas_limit),
        b'' if dest.lower() == ZERO_ADDRESS else to_bytes(dest),
        _format_number(message_data.l2_call_value),
        to_bytes(message_data.call_value_refund_address),
        _format_number(message_data.max_submission_fee),
        to_bytes(message_data.excess_fee_refund_address),
        message_data.data,
    ]
    return bytes([SUBMIT_RETRYABLE_TX_TYPE]) + rlp.encode(fields)


def calculate_retryable_id(
    child_chain_id: int,
    from_address: str,
    message_number: int,
    parent_base_fee: int,
    message_data: RetryableMessageData,
) -> str:
    encoded = encode_submit_retryable_tx(child_chain_id, from_address, message_number, parent_base_fee, message_data)
    return Web3.to_hex(Web3.keccak(encoded))


class ParentToChildMessage:
    """A retryable ticket created by a parent chain transaction"""

    def __init__(
        self,
        child_pool: EVMProviderPool,
        child_chain_id: int,
        sender: str,
        message_number: int,
        parent_base_fee: int,
        message_data: RetryableMessageData,
        source_transaction_hash: str,
        child_chunk_size: int = DEFAULT_CHILD_CHUNK_SIZE,
    ):
        self.child_pool = child_pool
        self.child_chain_id = child_chain_id
        self.sender = sender
        self.message_number = message_number
        self.parent_base_fee = parent_base_fee
        self.message_data = message_data
        self.source_transaction_hash = source_transaction_hash
        self.child_chunk_size = child_chunk_size
        self.retryable_creation_id = calculate_retryable_id(
            child_chain_id,
            sender,
            message_number,
            parent_base_fee,
            message_data,
        )

    def _get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return self.child_pool.with_web3(lambda w3: w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None

    def get_creation_receipt(self) -> Optional[Dict[str, Any]]:
        return self._get_receipt(self.retryable_creation_id)

    def get_timeout(self) -> Optional[int]:
        """Ticket timeout, or None once the ticket has been deleted (redeemed or expired)"""
        ticket_id = to_bytes(self.retryable_creation_id)
        try:
            return self.child_pool.with_contract_call(
                ARB_RETRYABLE_TX_ADDRESS,
                ARB_RETRYABLE_TX_ABI,
                lambda contract: contract.functions.getTimeout(ticket_id).call(),
            )
        except ContractLogicError:
            return None

    def _retry_succeeded(self, retry_tx_hash: str) -> bool:
        receipt = self._get_receipt(retry_tx_hash)
        return receipt is not None and receipt.get('status') == 1

    def _auto_redeem_succeeded(self, creation_receipt: Dict[str, Any]) -> bool:
        scheduled = logs_of_kind(
            creation_receipt.get('logs', []), EventKind.REDEEM_SCHEDULED, address=ARB_RETRYABLE_TX_ADDRESS
        )
        return any(self._retry_succeeded(event.retry_tx_hash) for event in scheduled)

    def _manual_redeem_succeeded(self, from_block: int) -> bool:
        latest_block = self.child_pool.block_number()
        fetch = make_log_fetcher(
            self.child_pool,
            ARB_RETRYABLE_TX_ADDRESS,
            EventKind.REDEEM_SCHEDULED,
            extra_topics=[self.retryable_creation_id],
        )
        scheduled = scan_range(BlockRange(from_block, latest_block), self.child_chunk_size, fetch)
        return any(self._retry_succeeded(event.retry_tx_hash) for event in scheduled)

    def status(self, now: Optional[int] = None) -> RetryableStatus:
        """Point-in-time status of the ticket on the child chain"""
        creation_receipt = self.get_creation_receipt()
        if creation_receipt is None:
            return RetryableStatus.NOT_YET_CREATED

        if creation_receipt.get('status') == 0:
            return RetryableStatus.CREATION_FAILED

        if self._auto_redeem_succeeded(creation_receipt):
            return RetryableStatus.REDEEMED

        timeout = self.get_timeout()
        if timeout is None:
            if self._manual_redeem_succeeded(int(creation_receipt['blockNumber'])):
                return RetryableStatus.REDEEMED
            return RetryableStatus.EXPIRED

        now = int(time.time()) if now is None else now
        if timeout < now:
            return RetryableStatus.EXPIRED

        return RetryableStatus.FUNDS_DEPOSITED


def get_parent_to_child_messages(
    receipt: Dict[str, Any],
    bridge_address: str,
    child_pool: EVMProviderPool,
    child_chain_id: int,
    child_chunk_size: int = DEFAULT_CHILD_CHUNK_SIZE,
    inbox_address: Optional[str] = None,
) -> List[ParentToChildMessage]:
    """Retryable tickets created by a parent chain transaction receipt, in log order.

    With ``inbox_address`` only messages enqueued by that inbox are returned.
    """
    logs = receipt.get('logs', [])
    delivered = [
        event
        for event in logs_of_kind(logs, EventKind.MESSAGE_DELIVERED, address=bridge_address)
        if event.kind == SUBMIT_RETRYABLE_MESSAGE_KIND
        and (inbox_address is None or event.inbox.lower() == inbox_address.lower())
    ]
    if not delivered:
        return []

    inbox_messages = {
        event.message_num: event for event in logs_of_kind(logs, EventKind.INBOX_MESSAGE_DELIVERED)
    }

    messages = []
    for event in delivered:
        inbox_message = inbox_messages.get(event.message_index)
        if inbox_message is None:
            raise MalformedResponseError(
                f"No InboxMessageDelivered for message {event.message_index} in {to_hex(receipt.get('transactionHash'))}"
            )
        messages.append(
            ParentToChildMessage(
                child_pool=child_pool,
                child_chain_id=child_chain_id,
                sender=event.sender,
                message_number=event.message_index,
                parent_base_fee=event.base_fee_l1,
                message_data=parse_retryable_message_data(inbox_message.data),
                source_transaction_hash=event.transaction_hash,
                child_chunk_size=child_chunk_size,
            )
        )
    return messages


def get_gas_info(
    child_pool: EVMProviderPool,
    ticket_id: str,
    creation_block_number: Optional[int],
) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    """Child chain gas price now, gas price at the creation block, and redeem gas estimate.

    Each value is None when the corresponding call fails; historical state is
    often unavailable on non-archive nodes.
    """
    def prices(block_identifier):
        return child_pool.with_contract_call(
            ARB_GAS_INFO_ADDRESS,
            ARB_GAS_INFO_ABI,
            lambda contract: contract.functions.getPricesInWei().call(block_identifier=block_identifier),
        )

    gas_price_now = None
    try:
        gas_price_now = int(prices('latest')[5])
    except Exception as e:
        logger.warning(f"Failed to fetch current child gas price: {e}")

    gas_price_at_creation = None
    if creation_block_number is not None:
        try:
            gas_price_at_creation = int(prices(creation_block_number)[5])
        except Exception as e:
            logger.warning(f"Failed to fetch child gas price at block {creation_block_number}: {e}")

    redeem_estimate = None
    ticket_bytes = to_bytes(ticket_id)
    try:
        redeem_estimate = int(
            child_pool.with_contract_call(
                ARB_RETRYABLE_TX_ADDRESS,
                ARB_RETRYABLE_TX_ABI,
                lambda contract: contract.functions.redeem(ticket_bytes).estimate_gas(),
            )
        )
    except Exception as e:
        logger.debug(f"Redeem gas estimate reverted for {ticket_id}: {e}")

    return gas_price_now, gas_price_at_creation, redeem_estimate
