"""Tests for the typed event layer."""

import pytest
from hexbytes import HexBytes
from web3 import Web3

from block_scanner import BlockRange, MalformedResponseError
from conftest import (
    BRIDGE,
    GATEWAY,
    INBOX,
    SENDER,
    deposit_initiated_log,
    inbox_message_delivered_log,
    message_delivered_log,
)
from events import (
    EventKind,
    decode_deposit_initiated,
    decode_inbox_message_delivered,
    decode_message_delivered,
    extract_request_id,
    logs_of_kind,
    make_log_fetcher,
    to_hex,
)


class TestDecoders:
    """Tests for raw log decoding."""

    def test_message_delivered(self):
        event = decode_message_delivered(message_delivered_log(42, kind=9, base_fee=77))

        assert event.message_index == 42
        assert event.kind == 9
        assert event.inbox.lower() == INBOX
        assert event.sender.lower() == SENDER
        assert event.base_fee_l1 == 77
        assert event.timestamp == 1_700_000_000
        assert event.transaction_hash == "0x" + "aa" * 32
        assert event.block_number == 100

    def test_inbox_message_delivered(self):
        event = decode_inbox_message_delivered(inbox_message_delivered_log(42, b"\x01\x02\x03"))

        assert event.message_num == 42
        assert event.data == b"\x01\x02\x03"

    def test_deposit_initiated_keeps_sequence_topic(self):
        event = decode_deposit_initiated(deposit_initiated_log(0xABCDEF, amount=123))

        assert event.sequence_number == 0xABCDEF
        assert event.sequence_number_topic == "0x" + "00" * 29 + "abcdef"
        assert event.amount == 123

    def test_wrong_topic_is_malformed(self):
        log = message_delivered_log(1)
        log["topics"][0] = HexBytes(EventKind.NODE_CREATED.topic)

        with pytest.raises(MalformedResponseError):
            decode_message_delivered(log)

    def test_truncated_data_is_malformed(self):
        log = message_delivered_log(1)
        log["data"] = HexBytes(b"\x00" * 10)

        with pytest.raises(MalformedResponseError):
            decode_message_delivered(log)

    def test_missing_topics_is_malformed(self):
        log = deposit_initiated_log(1)
        log["topics"] = log["topics"][:2]

        with pytest.raises(MalformedResponseError):
            decode_deposit_initiated(log)


class TestLogsOfKind:
    """Tests for filtering receipt logs."""

    def test_filters_by_topic_and_address(self):
        logs = [
            message_delivered_log(1),
            inbox_message_delivered_log(1, b""),
            message_delivered_log(2, address=GATEWAY),
        ]

        events = logs_of_kind(logs, EventKind.MESSAGE_DELIVERED, address=BRIDGE)

        assert [event.message_index for event in events] == [1]

    def test_without_address_matches_any_emitter(self):
        logs = [message_delivered_log(1), message_delivered_log(2, address=GATEWAY)]

        assert len(logs_of_kind(logs, EventKind.MESSAGE_DELIVERED)) == 2


class TestLogFetcher:
    """Tests for make_log_fetcher."""

    def test_builds_filter_and_decodes(self, pool, w3):
        w3.eth.get_logs.return_value = [message_delivered_log(5)]

        fetch = make_log_fetcher(pool, BRIDGE.lower(), EventKind.MESSAGE_DELIVERED)
        events = fetch(BlockRange(10, 20))

        params = w3.eth.get_logs.call_args.args[0]
        assert params["fromBlock"] == 10
        assert params["toBlock"] == 20
        assert params["address"] == Web3.to_checksum_address(BRIDGE)
        assert params["topics"] == [EventKind.MESSAGE_DELIVERED.topic]
        assert events[0].message_index == 5

    def test_extra_topics_are_appended(self, pool, w3):
        w3.eth.get_logs.return_value = []
        ticket = "0x" + "12" * 32

        fetch = make_log_fetcher(pool, BRIDGE, EventKind.REDEEM_SCHEDULED, extra_topics=[ticket])
        fetch(BlockRange(1, 1))

        assert w3.eth.get_logs.call_args.args[0]["topics"] == [EventKind.REDEEM_SCHEDULED.topic, ticket]


class TestExtractRequestId:
    """Tests for the submitRetryable request id extraction."""

    def test_takes_32_bytes_after_selector(self):
        request_id = "ab" * 32
        calldata = "0xc9f95d32" + request_id + "00" * 64

        assert extract_request_id(calldata) == "0x" + request_id

    def test_accepts_bytes(self):
        calldata = bytes.fromhex("c9f95d32" + "01" * 32 + "ff" * 32)

        assert extract_request_id(calldata) == "0x" + "01" * 32

    def test_matches_deposit_sequence_topic(self):
        deposit = decode_deposit_initiated(deposit_initiated_log(987654321))
        calldata = "0xc9f95d32" + deposit.sequence_number_topic[2:] + "00" * 32

        assert extract_request_id(calldata) == deposit.sequence_number_topic

    def test_missing_selector(self):
        with pytest.raises(MalformedResponseError):
            extract_request_id("0xdeadbeef" + "00" * 32)


def test_to_hex_normalises():
    assert to_hex(HexBytes(b"\xab")) == "0xab"
    assert to_hex("ABCD") == "0xabcd"
    assert to_hex("0xABCD") == "0xabcd"
