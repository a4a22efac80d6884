#!/usr/bin/env python3
"""
Cross-Chain Event Correlator

Finds the retryable tickets created on the parent chain within a block range
and reports their status on the child chain:

1. bridge ``MessageDelivered`` logs, kind 9 only (submit retryable)
2. gateway ``DepositInitiated`` logs, for token enrichment only
3. one receipt lookup per unique parent transaction, in discovery order
4. one status query per retryable message
5. for unredeemed tickets (when alerting): creation time, gas data and the
   token deposit matched by request id
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from web3.exceptions import TransactionNotFound

from block_scanner import BlockRange, MalformedResponseError, scan_range
from chains import get_max_log_block_range
from events import (
    DepositInitiatedEvent,
    EventKind,
    MessageDeliveredEvent,
    SUBMIT_RETRYABLE_MESSAGE_KIND,
    extract_request_id,
    make_log_fetcher,
    to_hex,
)
from models import ChainDescriptor, CrossChainMessage, RetryableStatus, TokenDepositData
from retryables import ParentToChildMessage, get_gas_info, get_parent_to_child_messages
from rpc_failover import EVMProviderPool

logger = logging.getLogger(__name__)


ERC20_METADATA_ABI = [
    {
        "inputs": [],
        "name": "symbol",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class CrossChainCorrelator:
    """Correlate parent chain retryable submissions with their child chain tickets"""

    def __init__(
        self,
        chain: ChainDescriptor,
        parent_pool: EVMProviderPool,
        child_pool: EVMProviderPool,
        enable_alerting: bool = False,
        chunk_size: Optional[int] = None,
        max_workers: int = 1,
        requests_per_second: Optional[float] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.chain = chain
        self.parent_pool = parent_pool
        self.child_pool = child_pool
        self.enable_alerting = enable_alerting
        self.chunk_size = chunk_size or get_max_log_block_range(chain)
        self.max_workers = max_workers
        self.requests_per_second = requests_per_second
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.clock = clock

    def _scan(self, block_range: BlockRange, fetch) -> List[Any]:
        return scan_range(
            block_range,
            self.chunk_size,
            fetch,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_workers=self.max_workers,
            requests_per_second=self.requests_per_second,
        )

    def scan_message_delivered(self, block_range: BlockRange) -> List[MessageDeliveredEvent]:
        fetch = make_log_fetcher(self.parent_pool, self.chain.bridge, EventKind.MESSAGE_DELIVERED)
        events = self._scan(block_range, fetch)
        return [event for event in events if event.kind == SUBMIT_RETRYABLE_MESSAGE_KIND]

    def scan_deposit_initiated(self, block_range: BlockRange) -> List[DepositInitiatedEvent]:
        """Deposits across all configured gateways. A failing gateway is logged and skipped."""
        deposits: List[DepositInitiatedEvent] = []
        for gateway in self.chain.token_gateways:
            fetch = make_log_fetcher(self.parent_pool, gateway, EventKind.DEPOSIT_INITIATED)
            try:
                deposits.extend(self._scan(block_range, fetch))
            except Exception as e:
                logger.warning(f"[{self.chain.name}] Failed to fetch DepositInitiated logs for gateway {gateway}: {e}")
        return deposits

    def correlate(self, block_range: BlockRange, now: Optional[int] = None) -> List[CrossChainMessage]:
        """All retryable messages created in ``block_range``, in discovery order"""
        if block_range.is_empty:
            return []

        delivered = self.scan_message_delivered(block_range)
        if not delivered:
            return []

        deposits = self.scan_deposit_initiated(block_range)

        # dict keeps first-seen order
        unique_tx_hashes = list(dict.fromkeys(event.transaction_hash for event in delivered))
        logger.debug(
            f"[{self.chain.name}] {len(delivered)} retryable submissions in {len(unique_tx_hashes)} transactions"
        )

        now = int(self.clock()) if now is None else now
        results: List[CrossChainMessage] = []
        for tx_hash in unique_tx_hashes:
            results.extend(self._process_parent_transaction(tx_hash, deposits, now))
        return results

    def _process_parent_transaction(
        self,
        tx_hash: str,
        deposits: List[DepositInitiatedEvent],
        now: int,
    ) -> List[CrossChainMessage]:
        receipt = self.parent_pool.with_web3(lambda w3: w3.eth.get_transaction_receipt(tx_hash))
        retryables = get_parent_to_child_messages(
            receipt, self.chain.bridge, self.child_pool, self.chain.chain_id, inbox_address=self.chain.inbox
        )

        messages = []
        for retryable in retryables:
            status = retryable.status(now=now)
            message = CrossChainMessage(
                source_transaction_hash=to_hex(tx_hash),
                ticket_id=retryable.retryable_creation_id,
                status=status,
                sender=receipt.get('from') or retryable.sender,
                destination_address=retryable.message_data.dest_address,
                call_value=retryable.message_data.l2_call_value,
                gas_fee_cap=retryable.message_data.max_fee_per_gas,
                gas_limit=retryable.message_data.gas_limit,
                lifetime_seconds=self.chain.retryable_lifetime_seconds,
            )
            if status != RetryableStatus.REDEEMED and self.enable_alerting:
                self._enrich(message, retryable, receipt, deposits)
            messages.append(message)
        return messages

    def _get_child_transaction(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.child_pool.with_web3(lambda w3: w3.eth.get_transaction(ticket_id))
        except TransactionNotFound:
            return None

    def _enrich(
        self,
        message: CrossChainMessage,
        retryable: ParentToChildMessage,
        parent_receipt: Dict[str, Any],
        deposits: List[DepositInitiatedEvent],
    ) -> None:
        child_tx = self._get_child_transaction(message.ticket_id)
        child_receipt = retryable.get_creation_receipt()

        if child_receipt is not None:
            block_number = int(child_receipt['blockNumber'])
            block = self.child_pool.with_web3(lambda w3: w3.eth.get_block(block_number))
            message.creation_block_number = block_number
            message.creation_timestamp = int(block['timestamp'])
        else:
            # ticket not created yet, age it from the parent block that submitted it
            parent_block_number = int(parent_receipt['blockNumber'])
            block = self.parent_pool.with_web3(lambda w3: w3.eth.get_block(parent_block_number))
            message.creation_timestamp = int(block['timestamp'])

        if child_tx is not None:
            message.gas_fee_cap = int(child_tx.get('maxFeePerGas') or message.gas_fee_cap)
            message.gas_limit = int(child_tx.get('gas', message.gas_limit))

        (
            message.gas_price_now,
            message.gas_price_at_creation,
            message.redeem_gas_estimate,
        ) = get_gas_info(self.child_pool, message.ticket_id, message.creation_block_number)

        if child_tx is not None and deposits:
            message.token_deposit = self._match_token_deposit(message, child_tx, deposits)

    def _match_token_deposit(
        self,
        message: CrossChainMessage,
        child_tx: Dict[str, Any],
        deposits: List[DepositInitiatedEvent],
    ) -> Optional[TokenDepositData]:
        try:
            request_id = extract_request_id(child_tx.get('input', b''))
        except (MalformedResponseError, ValueError) as e:
            logger.warning(f"[{self.chain.name}] Could not extract request id for {message.ticket_id}: {e}")
            return None

        deposit = next((d for d in deposits if d.sequence_number_topic == request_id), None)
        if deposit is None:
            return None

        try:
            symbol, decimals = self.parent_pool.with_web3(
                lambda w3: self._read_token_metadata(w3, deposit.token)
            )
        except Exception as e:
            logger.warning(f"[{self.chain.name}] Failed to fetch token data for {deposit.token}: {e}")
            return None

        return TokenDepositData(
            ticket_id=message.ticket_id,
            token_address=deposit.token,
            token_amount=deposit.amount,
            sender=message.sender,
            token_symbol=symbol,
            token_decimals=decimals,
        )

    @staticmethod
    def _read_token_metadata(w3, token_address: str):
        erc20 = w3.eth.contract(address=token_address, abi=ERC20_METADATA_ABI)
        return erc20.functions.symbol().call(), int(erc20.functions.decimals().call())
