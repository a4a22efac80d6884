#!/usr/bin/env python3
"""
Ticket, batch poster and assertion classification

Pure functions turning statuses, timestamps and block counts into alert
decisions. Nothing here talks to an RPC endpoint; the monitors gather the
inputs and act on the result.
"""

from typing import Iterable, List, Optional, Sequence

from models import (
    AlertAction,
    AlertDecision,
    AlertRecord,
    CrossChainMessage,
    RetryableStatus,
    Severity,
)


# retryable tickets
NOT_YET_CREATED_GRACE_SECONDS = 2 * 60 * 60
EXPIRED_REPORTING_PERIOD_SECONDS = 2 * 24 * 60 * 60
CRITICAL_SOON_TO_EXPIRE_SECONDS = 2 * 24 * 60 * 60
ACTIONABLE_STATUSES = frozenset({RetryableStatus.NOT_YET_CREATED, RetryableStatus.FUNDS_DEPOSITED})

# batch poster
BATCH_POSTING_TIMEBOUNDS_FALLBACK = 12 * 60 * 60
BATCH_POSTING_TIMEBOUNDS_BUFFER = 9 * 60 * 60
MIN_BATCH_POSTING_TIMEBOUNDS = 60 * 60
MAX_TIMEBOUNDS_SECONDS = 24 * 60 * 60
DAYS_OF_BALANCE_LEFT = 3
MAX_LOGS_FOR_BALANCE_ESTIMATE = 50
STATIC_MINIMUM_BALANCE_WEI = 10 ** 17  # 0.1 ETH
SEQUENCER_MINER_ADDRESS = '0xa4b000000000000000000073657175656e636572'

# assertions
VALIDATOR_AFK_BLOCKS = 45818
MAX_ASSERTION_WINDOW_SECONDS = 7 * 24 * 60 * 60
ASSERTION_SAFETY_BUFFER_SECONDS = 4 * 24 * 60 * 60
MIN_ASSERTION_WINDOW_SECONDS = 24 * 60 * 60


def suppress(reason: str) -> AlertDecision:
    return AlertDecision(action=AlertAction.SUPPRESS, severity=Severity.INFO, reason=reason)


def warn(reason: str, severity: Severity = Severity.WARN) -> AlertDecision:
    return AlertDecision(action=AlertAction.WARN, severity=severity, reason=reason)


def format_hours(seconds: float) -> str:
    hours = seconds / 60 / 60
    return f"{hours:g}"


# ----------------------------------------------------------------------
# Retryable tickets
# ----------------------------------------------------------------------

def classify_ticket(message: CrossChainMessage, now: int) -> AlertDecision:
    """Decide whether an unredeemed ticket is worth reporting.

    Rules are applied in order and the first match wins:
      - not yet created and younger than 2 hours: suppress
      - expired more than 2 days ago: suppress
      - anything else: warn, CRITICAL when an actionable ticket has less
        than 2 days left before its timeout
    """
    status = message.status
    creation = message.creation_timestamp
    timeout = message.timeout_timestamp

    if status == RetryableStatus.REDEEMED:
        return suppress("ticket redeemed")

    if (
        status == RetryableStatus.NOT_YET_CREATED
        and creation is not None
        and now - creation < NOT_YET_CREATED_GRACE_SECONDS
    ):
        return suppress("ticket created less than 2 hours ago")

    if (
        status == RetryableStatus.EXPIRED
        and timeout is not None
        and now - timeout > EXPIRED_REPORTING_PERIOD_SECONDS
    ):
        return suppress("ticket expired more than 2 days ago")

    if (
        status in ACTIONABLE_STATUSES
        and timeout is not None
        and timeout - now < CRITICAL_SOON_TO_EXPIRE_SECONDS
    ):
        return warn(f"ticket {status.name} expires in less than 2 days", Severity.CRITICAL)

    return warn(f"ticket {status.name}")


# ----------------------------------------------------------------------
# Batch poster
# ----------------------------------------------------------------------

def batch_posting_time_bounds(
    delay_blocks: Optional[int],
    delay_seconds: Optional[int],
    parent_block_time: float,
) -> float:
    """Expected maximum interval between batches, in seconds.

    x = min(delay_blocks * parent_block_time, delay_seconds), or 12h when the
    sequencer inbox max time variation could not be read; the result is
    min(0.5 * x, max(1h, x - 9h)).
    """
    if delay_blocks is None or delay_seconds is None:
        bounds = BATCH_POSTING_TIMEBOUNDS_FALLBACK
    else:
        bounds = min(delay_blocks * parent_block_time, delay_seconds)

    return min(0.5 * bounds, max(MIN_BATCH_POSTING_TIMEBOUNDS, bounds - BATCH_POSTING_TIMEBOUNDS_BUFFER))


def time_bounds_expected_message(time_bounds: float) -> str:
    return f"At least 1 batch is expected to be posted every {format_hours(time_bounds)} hours."


def classify_batch_poster(
    backlog_blocks: int,
    seconds_since_last_batch: int,
    time_bounds: float,
) -> AlertDecision:
    if backlog_blocks > 0 and seconds_since_last_batch > time_bounds:
        hours, remainder = divmod(int(seconds_since_last_batch), 60 * 60)
        return warn(
            f"Last batch was posted {hours} hours and {remainder // 60} mins ago, "
            f"and there's a backlog of {backlog_blocks} blocks in the chain. "
            f"{time_bounds_expected_message(time_bounds)}"
        )
    return suppress("batch posting within time bounds")


def is_user_transaction_block(block) -> bool:
    miner = block.get('miner')
    return isinstance(miner, str) and miner.lower() == SEQUENCER_MINER_ADDRESS


def classify_no_recent_batch(
    latest_block: int,
    safe_block: int,
    user_transactions_pending: bool,
    time_bounds: float,
) -> AlertDecision:
    """Decision when no batch was posted in the last 24 hours"""
    if latest_block - safe_block > 0 and user_transactions_pending:
        return warn(
            f"No batch has been posted in the last {format_hours(MAX_TIMEBOUNDS_SECONDS)} hours, "
            f"and last block number ({latest_block}) is greater than the last safe block number "
            f"({safe_block}). {time_bounds_expected_message(time_bounds)}"
        )
    return suppress(
        f"No user activity in the last {format_hours(MAX_TIMEBOUNDS_SECONDS)} hours, "
        "and hence no batch has been posted."
    )


def minimum_expected_balance(batch_costs_wei: Sequence[int], batches_in_window: int) -> int:
    """Balance the batch poster needs to keep posting for DAYS_OF_BALANCE_LEFT days.

    ``batch_costs_wei`` holds the cost of recent batch transactions, oldest
    first; only the most recent 50 are averaged. The average times the number
    of batches posted in the 24 hour window is the daily spend. Without any
    batch history the static 0.1 ETH threshold applies.
    """
    recent_costs = list(batch_costs_wei)[-MAX_LOGS_FOR_BALANCE_ESTIMATE:]
    if batches_in_window <= 0 or not recent_costs:
        return STATIC_MINIMUM_BALANCE_WEI

    average_cost = sum(recent_costs) // len(recent_costs)
    daily_spend = average_cost * batches_in_window
    return DAYS_OF_BALANCE_LEFT * daily_spend


def classify_balance(
    batch_poster: str,
    current_balance_wei: int,
    minimum_balance_wei: int,
    address_prefix: str = '',
) -> AlertDecision:
    if current_balance_wei < minimum_balance_wei:
        return warn(
            f"Low Batch poster balance (<{address_prefix}{batch_poster}|{batch_poster}>): "
            f"{format_ether(current_balance_wei)} ETH "
            f"(Expected balance: {format_ether(minimum_balance_wei)} ETH)"
        )
    return suppress("batch poster balance is sufficient")


def format_ether(wei: int) -> str:
    whole, fraction = divmod(int(wei), 10 ** 18)
    if fraction == 0:
        return f"{whole}.0"
    return f"{whole}.{str(fraction).rjust(18, '0').rstrip('0')}"


# ----------------------------------------------------------------------
# Assertions
# ----------------------------------------------------------------------

def assertion_search_window_seconds(confirm_period_blocks: int, parent_block_time: float) -> float:
    seconds = (confirm_period_blocks + VALIDATOR_AFK_BLOCKS) * parent_block_time
    seconds = min(seconds, MAX_ASSERTION_WINDOW_SECONDS)
    return max(seconds - ASSERTION_SAFETY_BUFFER_SECONDS, MIN_ASSERTION_WINDOW_SECONDS)


def assertion_search_window(confirm_period_blocks: int, parent_block_time: float) -> int:
    """Number of parent chain blocks to search for NodeCreated events"""
    seconds = assertion_search_window_seconds(confirm_period_blocks, parent_block_time)
    return int(seconds // parent_block_time)


def classify_assertions(
    chain_name: str,
    node_created_count: int,
    window_days: float,
    safe_block_number: Optional[int] = None,
    safe_block_in_range: Optional[bool] = None,
    safe_block_time: Optional[str] = None,
) -> AlertDecision:
    duration = "in the last 1 day" if window_days == 1 else f"in the last {window_days:g} days"
    if node_created_count > 0:
        return suppress(f"Found {node_created_count} assertion creation event(s) on {chain_name} {duration}.")

    reason = f"No assertion creation events found on {chain_name} {duration}."
    if safe_block_number is not None:
        reason += (
            f" Latest batch {'was' if safe_block_in_range else 'was not'} posted within this duration, "
            f"at {safe_block_time} (block {safe_block_number})"
        )
    return warn(reason)


# ----------------------------------------------------------------------
# Alert records
# ----------------------------------------------------------------------

def build_alert_record(
    chain_name: str,
    reasons: Iterable[str],
    severity: Severity = Severity.WARN,
    ticket: Optional[CrossChainMessage] = None,
) -> AlertRecord:
    cleaned: List[str] = [reason for reason in reasons if reason and reason.strip()]
    return AlertRecord(chain_name=chain_name, severity=severity, reasons=cleaned, ticket=ticket)
