"""Tests for ticket, batch poster and assertion classification."""

import pytest

from classifier import (
    STATIC_MINIMUM_BALANCE_WEI,
    assertion_search_window,
    assertion_search_window_seconds,
    batch_posting_time_bounds,
    build_alert_record,
    classify_assertions,
    classify_balance,
    classify_batch_poster,
    classify_no_recent_batch,
    classify_ticket,
    format_ether,
    is_user_transaction_block,
    minimum_expected_balance,
)
from models import (
    AlertAction,
    CrossChainMessage,
    RetryableStatus,
    SEVEN_DAYS_IN_SECONDS,
    Severity,
)


NOW = 1_700_000_000
HOUR = 60 * 60
DAY = 24 * HOUR


def ticket(status, creation_timestamp=None):
    return CrossChainMessage(
        source_transaction_hash="0x" + "aa" * 32,
        ticket_id="0x" + "bb" * 32,
        status=status,
        sender="0x1111111111111111111111111111111111111111",
        destination_address="0x3333333333333333333333333333333333333333",
        call_value=0,
        gas_fee_cap=100_000_000,
        gas_limit=300_000,
        creation_timestamp=creation_timestamp,
    )


class TestClassifyTicket:
    """Tests for classify_ticket."""

    def test_redeemed_is_suppressed(self):
        assert classify_ticket(ticket(RetryableStatus.REDEEMED, NOW), NOW).suppressed

    def test_grace_period_boundary(self):
        """Test that a not-yet-created ticket is quiet for strictly less than 2 hours."""
        young = ticket(RetryableStatus.NOT_YET_CREATED, NOW - 2 * HOUR + 1)
        old = ticket(RetryableStatus.NOT_YET_CREATED, NOW - 2 * HOUR - 1)
        exact = ticket(RetryableStatus.NOT_YET_CREATED, NOW - 2 * HOUR)

        assert classify_ticket(young, NOW).action == AlertAction.SUPPRESS
        assert classify_ticket(old, NOW).action == AlertAction.WARN
        assert classify_ticket(old, NOW).severity == Severity.WARN
        assert classify_ticket(exact, NOW).action == AlertAction.WARN

    def test_long_expired_is_suppressed(self):
        creation = NOW - SEVEN_DAYS_IN_SECONDS - 2 * DAY - 1
        assert classify_ticket(ticket(RetryableStatus.EXPIRED, creation), NOW).suppressed

    def test_recently_expired_warns(self):
        creation = NOW - SEVEN_DAYS_IN_SECONDS - 2 * DAY
        decision = classify_ticket(ticket(RetryableStatus.EXPIRED, creation), NOW)

        assert decision.action == AlertAction.WARN
        assert decision.severity == Severity.WARN

    def test_expired_without_timestamp_warns(self):
        assert classify_ticket(ticket(RetryableStatus.EXPIRED), NOW).action == AlertAction.WARN

    def test_soon_to_expire_is_critical(self):
        creation = NOW - SEVEN_DAYS_IN_SECONDS + DAY
        decision = classify_ticket(ticket(RetryableStatus.FUNDS_DEPOSITED, creation), NOW)

        assert decision.action == AlertAction.WARN
        assert decision.severity == Severity.CRITICAL

    def test_plenty_of_time_left_is_not_critical(self):
        creation = NOW - 3 * DAY
        decision = classify_ticket(ticket(RetryableStatus.FUNDS_DEPOSITED, creation), NOW)

        assert decision.severity == Severity.WARN

    def test_creation_failed_is_never_critical(self):
        creation = NOW - SEVEN_DAYS_IN_SECONDS + HOUR
        decision = classify_ticket(ticket(RetryableStatus.CREATION_FAILED, creation), NOW)

        assert decision.action == AlertAction.WARN
        assert decision.severity == Severity.WARN


class TestBatchPostingTimeBounds:
    """Tests for batch_posting_time_bounds."""

    @pytest.mark.parametrize(
        "delay_blocks,delay_seconds,block_time,expected",
        [
            (5760, 86400, 12, 34560),
            (None, None, 12, 10800),
            (300, 3600, 12, 1800),
            (100, 86400, 12, 600),
        ],
    )
    def test_bounds(self, delay_blocks, delay_seconds, block_time, expected):
        assert batch_posting_time_bounds(delay_blocks, delay_seconds, block_time) == expected


class TestBatchPosterDecisions:
    """Tests for batch poster classification."""

    def test_backlog_and_stale_batch_warns(self):
        decision = classify_batch_poster(42, 3 * HOUR + 5 * 60 + 30, 3 * HOUR)

        assert decision.action == AlertAction.WARN
        assert "Last batch was posted 3 hours and 5 mins ago" in decision.reason
        assert "backlog of 42 blocks" in decision.reason
        assert "every 3 hours" in decision.reason

    def test_backlog_within_bounds_is_fine(self):
        assert classify_batch_poster(42, HOUR, 3 * HOUR).suppressed

    def test_stale_batch_without_backlog_is_fine(self):
        assert classify_batch_poster(0, 10 * HOUR, 3 * HOUR).suppressed

    def test_no_recent_batch_with_user_activity(self):
        decision = classify_no_recent_batch(500, 400, True, 3 * HOUR)

        assert decision.action == AlertAction.WARN
        assert "(500)" in decision.reason
        assert "(400)" in decision.reason

    def test_no_recent_batch_without_user_activity(self):
        decision = classify_no_recent_batch(500, 400, False, 3 * HOUR)

        assert decision.suppressed
        assert "No user activity" in decision.reason

    def test_sequencer_blocks_are_user_transactions(self):
        assert is_user_transaction_block({"miner": "0xA4B000000000000000000073657175656E636572"})
        assert not is_user_transaction_block({"miner": "0x" + "00" * 20})
        assert not is_user_transaction_block({})


class TestBalance:
    """Tests for the batch poster balance rules."""

    def test_static_minimum_without_history(self):
        assert minimum_expected_balance([], 0) == STATIC_MINIMUM_BALANCE_WEI
        assert STATIC_MINIMUM_BALANCE_WEI == 10 ** 17

    def test_only_recent_costs_are_averaged(self):
        costs = [1] * 10 + [100] * 50

        assert minimum_expected_balance(costs, 4) == 3 * 4 * 100

    def test_low_balance_warns(self):
        decision = classify_balance("0xabc", 10 ** 16, 10 ** 17, "https://etherscan.io/address/")

        assert decision.action == AlertAction.WARN
        assert decision.reason == (
            "Low Batch poster balance (<https://etherscan.io/address/0xabc|0xabc>): "
            "0.01 ETH (Expected balance: 0.1 ETH)"
        )

    def test_sufficient_balance(self):
        assert classify_balance("0xabc", 10 ** 17, 10 ** 17).suppressed

    @pytest.mark.parametrize(
        "wei,expected",
        [(10 ** 17, "0.1"), (0, "0.0"), (10 ** 18, "1.0"), (1_500_000_000_000_000_001, "1.500000000000000001")],
    )
    def test_format_ether(self, wei, expected):
        assert format_ether(wei) == expected


class TestAssertionWindow:
    """Tests for the assertion search window."""

    @pytest.mark.parametrize(
        "confirm_period_blocks,block_time,expected_blocks",
        [(45818, 12, 21600), (0, 12, 17018), (45818, 0.25, 345600)],
    )
    def test_window_blocks(self, confirm_period_blocks, block_time, expected_blocks):
        assert assertion_search_window(confirm_period_blocks, block_time) == expected_blocks

    def test_window_is_capped_and_floored(self):
        assert assertion_search_window_seconds(10 ** 9, 12) == 3 * DAY
        assert assertion_search_window_seconds(0, 0.25) == DAY


class TestClassifyAssertions:
    """Tests for classify_assertions."""

    def test_events_found(self):
        decision = classify_assertions("Xai", 3, 2.36)

        assert decision.suppressed
        assert "Found 3 assertion creation event(s) on Xai in the last 2.36 days." == decision.reason

    def test_no_events_warns(self):
        decision = classify_assertions("Xai", 0, 1)

        assert decision.action == AlertAction.WARN
        assert decision.reason == "No assertion creation events found on Xai in the last 1 day."

    def test_safe_block_details_are_appended(self):
        decision = classify_assertions(
            "Xai", 0, 3, safe_block_number=123, safe_block_in_range=False, safe_block_time="then"
        )

        assert decision.reason.endswith("Latest batch was not posted within this duration, at then (block 123)")


class TestAlertRecords:
    """Tests for alert record helpers."""

    def test_blank_reasons_are_dropped(self):
        record = build_alert_record("Xai", ["first", "", "   ", "second"])

        assert record.reasons == ["first", "second"]
        assert record.severity == Severity.WARN
        assert record.timestamp_utc.tzinfo is not None
