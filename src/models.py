#!/usr/bin/env python3
"""
Shared data types for the Orbit chain monitors.

Chain descriptors are built once from configuration and never mutated.
Messages, decisions and alert records are recomputed on every run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import List, Optional, Tuple


SEVEN_DAYS_IN_SECONDS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class ChainDescriptor:
    chain_id: int
    parent_chain_id: int
    name: str
    rpc_url: str
    parent_rpc_url: str
    explorer_url: str
    parent_explorer_url: str
    bridge: str
    inbox: str
    rollup: str
    sequencer_inbox: str
    token_gateways: Tuple[str, ...] = ()
    confirm_period_blocks: int = 45818
    retryable_lifetime_seconds: int = SEVEN_DAYS_IN_SECONDS
    batch_poster: Optional[str] = None
    fallback_rpc_urls: Tuple[str, ...] = ()
    parent_fallback_rpc_urls: Tuple[str, ...] = ()

    @property
    def child_rpc_urls(self) -> List[str]:
        return [self.rpc_url, *self.fallback_rpc_urls]

    @property
    def parent_rpc_urls(self) -> List[str]:
        return [self.parent_rpc_url, *self.parent_fallback_rpc_urls]


class RetryableStatus(IntEnum):
    """Lifecycle of a parent-to-child retryable ticket on the child chain"""

    NOT_YET_CREATED = 1
    CREATION_FAILED = 2
    FUNDS_DEPOSITED = 3
    REDEEMED = 4
    EXPIRED = 5


@dataclass(frozen=True)
class TokenDepositData:
    ticket_id: str
    token_address: str
    token_amount: Optional[int]
    sender: str
    token_symbol: Optional[str] = None
    token_decimals: Optional[int] = None


@dataclass
class CrossChainMessage:
    source_transaction_hash: str
    ticket_id: str
    status: RetryableStatus
    sender: str
    destination_address: str
    call_value: int
    gas_fee_cap: int
    gas_limit: int
    creation_timestamp: Optional[int] = None
    creation_block_number: Optional[int] = None
    token_deposit: Optional[TokenDepositData] = None
    gas_price_at_creation: Optional[int] = None
    gas_price_now: Optional[int] = None
    redeem_gas_estimate: Optional[int] = None
    lifetime_seconds: int = SEVEN_DAYS_IN_SECONDS

    @property
    def timeout_timestamp(self) -> Optional[int]:
        if self.creation_timestamp is None:
            return None
        return self.creation_timestamp + self.lifetime_seconds


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    CRITICAL = "CRITICAL"


class AlertAction(str, Enum):
    SUPPRESS = "suppress"
    WARN = "warn"


@dataclass(frozen=True)
class AlertDecision:
    action: AlertAction
    severity: Severity = Severity.INFO
    reason: str = ""

    @property
    def suppressed(self) -> bool:
        return self.action == AlertAction.SUPPRESS


@dataclass
class AlertRecord:
    chain_name: str
    severity: Severity
    reasons: List[str] = field(default_factory=list)
    timestamp_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # retryable ticket alerts carry the message they were raised for
    ticket: Optional[CrossChainMessage] = None
