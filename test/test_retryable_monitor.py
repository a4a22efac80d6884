"""Tests for the retryable ticket monitor and its CLI."""

import itertools
from dataclasses import replace
from unittest.mock import ANY, MagicMock, patch

import pytest
from web3 import Web3

from block_scanner import BlockRange
from classifier import build_alert_record
from conftest import (
    BRIDGE,
    SENDER,
    inbox_message_delivered_log,
    message_delivered_log,
    retryable_data,
    tx_hash,
)
from models import CrossChainMessage, RetryableStatus, Severity
from retryable_monitor import (
    ChainRunResult,
    RetryableMonitor,
    RpcUnavailableError,
    main,
    parse_args,
)
from retryables import calculate_retryable_id, parse_retryable_message_data


NOW = 1_700_000_000


def unredeemed(status=RetryableStatus.FUNDS_DEPOSITED, tx="0x" + "aa" * 32):
    return CrossChainMessage(
        source_transaction_hash=tx,
        ticket_id="0x" + "bb" * 32,
        status=status,
        sender="0x1111111111111111111111111111111111111111",
        destination_address="0x3333333333333333333333333333333333333333",
        call_value=0,
        gas_fee_cap=100_000_000,
        gas_limit=300_000,
    )


def make_monitor(chain, enable_alerting=False, clock=lambda: NOW, sleep=None):
    parent_pool = MagicMock()
    monitor = RetryableMonitor(
        chain,
        enable_alerting=enable_alerting,
        parent_pool=parent_pool,
        child_pool=MagicMock(),
        clock=clock,
        sleep=sleep or MagicMock(),
    )
    monitor.correlator = MagicMock()
    monitor.correlator.correlate.return_value = []
    return monitor, parent_pool


class TestResolveRange:
    """Tests for RetryableMonitor.resolve_range."""

    def test_defaults_to_last_14_days(self, chain):
        monitor, parent_pool = make_monitor(chain)
        parent_pool.block_number.return_value = 10_000_000

        # 14 days of 0.25s Arbitrum blocks
        assert monitor.resolve_range(0, 0) == BlockRange(10_000_000 - 4_838_400, 10_000_000)

    def test_window_is_floored_at_genesis(self, chain):
        monitor, parent_pool = make_monitor(chain)
        parent_pool.block_number.return_value = 1000

        assert monitor.resolve_range(0, 0) == BlockRange(0, 1000)

    def test_explicit_range_is_kept(self, chain):
        monitor, parent_pool = make_monitor(chain)

        assert monitor.resolve_range(10, 20) == BlockRange(10, 20)
        parent_pool.block_number.assert_not_called()

    def test_unreachable_parent(self, chain):
        monitor, parent_pool = make_monitor(chain)
        parent_pool.block_number.side_effect = ConnectionError("down")

        with pytest.raises(RpcUnavailableError):
            monitor.resolve_range(10, 0)


class TestRunOnce:
    """Tests for RetryableMonitor.run_once."""

    def test_unredeemed_ticket_is_reported(self, chain):
        monitor, _ = make_monitor(chain, enable_alerting=True)
        monitor.correlator.correlate.return_value = [
            unredeemed(),
            unredeemed(status=RetryableStatus.REDEEMED),
        ]

        result = monitor.run_once(10, 20)

        monitor.correlator.correlate.assert_called_once_with(BlockRange(10, 20), now=NOW)
        assert len(result.messages) == 2
        assert len(result.alerts) == 1
        record = result.alerts[0]
        assert record.chain_name == "Xai Mainnet"
        assert record.severity == Severity.WARN
        assert record.reasons == ["ticket FUNDS_DEPOSITED: 0x" + "bb" * 32]
        assert record.ticket is result.messages[0]
        assert result.last_block == 20

    def test_suppressed_ticket_is_not_reported(self, chain):
        monitor, _ = make_monitor(chain, enable_alerting=True)
        young = unredeemed(status=RetryableStatus.NOT_YET_CREATED)
        young.creation_timestamp = NOW - 60
        monitor.correlator.correlate.return_value = [young]

        assert monitor.run_once(10, 20).alerts == []

    def test_nothing_is_reported_without_alerting(self, chain):
        monitor, _ = make_monitor(chain)
        monitor.correlator.correlate.return_value = [unredeemed()]

        assert monitor.run_once(10, 20).alerts == []


class TestRunContinuous:
    """Tests for RetryableMonitor.run_continuous."""

    def test_follows_chain_head_until_duration_elapses(self, chain):
        ticks = itertools.count(start=0, step=50)
        sleep = MagicMock()
        monitor, parent_pool = make_monitor(chain, clock=lambda: next(ticks), sleep=sleep)
        parent_pool.block_number.return_value = 25

        result = monitor.run_continuous(10, 20, duration_seconds=180)

        ranges = [c.args[0] for c in monitor.correlator.correlate.call_args_list]
        assert ranges == [BlockRange(10, 20), BlockRange(21, 25)]
        assert result.last_block == 25
        # caught up with the head on the second pass
        sleep.assert_called_once_with(1)


class TestCli:
    """Tests for the retryable monitor entry point."""

    def test_parse_args(self):
        args = parse_args(["--fromBlock", "5", "--toBlock", "9", "--enableAlerting", "--maxWorkers", "4"])

        assert (args.from_block, args.to_block) == (5, 9)
        assert args.enable_alerting is True
        assert args.max_workers == 4
        assert args.continuous is False
        assert args.log_file == "logfile.log"

    def test_missing_config_exits_with_error(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        with patch("retryable_monitor.setup_logging"):
            assert main(["--configPath", "missing.json"]) == 1

    def test_no_events_succeeds_without_slack(self, chain):
        with patch("retryable_monitor.setup_logging"), \
                patch("retryable_monitor.ConfigManager") as config, \
                patch("retryable_monitor.RetryableMonitor") as monitor_cls, \
                patch("retryable_monitor.SlackReporter") as reporter_cls:
            config.return_value.get_chains.return_value = [chain]
            monitor_cls.return_value.run_once.return_value = ChainRunResult(chain_name=chain.name)

            assert main([]) == 0

        monitor_cls.return_value.run_once.assert_called_once_with(0, 0)
        reporter_cls.assert_not_called()

    def test_single_chain_without_rpc_fails(self, chain):
        with patch("retryable_monitor.setup_logging"), \
                patch("retryable_monitor.ConfigManager") as config, \
                patch("retryable_monitor.RetryableMonitor") as monitor_cls:
            config.return_value.get_chains.return_value = [chain]
            monitor_cls.return_value.run_once.side_effect = RpcUnavailableError("down")

            assert main([]) == 1

    def test_failed_chain_does_not_stop_the_others(self, chain):
        healthy = replace(chain, name="Healthy")
        broken = replace(chain, name="Broken")
        ticket_record = build_alert_record("Healthy", ["ticket FUNDS_DEPOSITED"], ticket=unredeemed())

        def build_monitor(target, **kwargs):
            monitor = MagicMock()
            monitor.result = ChainRunResult(chain_name=target.name)
            if target.name == "Broken":
                monitor.run_once.side_effect = RpcUnavailableError("down")
            else:
                monitor.run_once.return_value = ChainRunResult(chain_name=target.name, alerts=[ticket_record])
            return monitor

        with patch("retryable_monitor.setup_logging"), \
                patch("retryable_monitor.ConfigManager") as config, \
                patch("retryable_monitor.RetryableMonitor", side_effect=build_monitor), \
                patch("retryable_monitor.SlackReporter") as reporter_cls, \
                patch("retryable_monitor.format_ticket_report", return_value="ticket report") as format_report:
            config.return_value.get_chains.return_value = [healthy, broken]

            assert main(["--enableAlerting"]) == 0

        format_report.assert_called_once_with(healthy, ticket_record, price_cache=ANY)

        sent = [c.args[0] for c in reporter_cls.return_value.report.call_args_list]
        assert sent == [
            "ticket report",
            "Retryable monitor - Error processing chain [Broken]: unable to read latest block",
        ]

    def test_from_block_help_mentions_window_without_alerting(self, monkeypatch, capsys):
        monkeypatch.setenv("COLUMNS", "300")

        with pytest.raises(SystemExit):
            parse_args(["--help"])

        assert "0 = 14 days ago, with or without --enableAlerting" in capsys.readouterr().out


def make_pool(w3):
    pool = MagicMock()
    pool.with_web3.side_effect = lambda fn: fn(w3)
    return pool


class TestTicketAlertRecords:
    """Tests for the alert records raised while checking a block range."""

    def test_submit_retryable_delivery_raises_record_for_its_ticket(self, chain):
        """Test that one kind 9 delivery from tx 0xAA yields one warn-level record naming its ticket id."""
        parent_w3, child_w3 = MagicMock(), MagicMock()
        bridge = Web3.to_checksum_address(BRIDGE)
        parent_w3.eth.get_logs.side_effect = lambda params: (
            [message_delivered_log(7)] if params["address"] == bridge else []
        )
        parent_w3.eth.get_transaction_receipt.return_value = {
            "transactionHash": tx_hash(0xAA),
            "from": SENDER,
            "blockNumber": 100,
            "logs": [message_delivered_log(7), inbox_message_delivered_log(7, retryable_data())],
        }
        child_w3.eth.get_transaction.return_value = {"input": "0x", "gas": 300_000}
        child_w3.eth.get_block.return_value = {"timestamp": NOW - 3 * 24 * 60 * 60}

        monitor = RetryableMonitor(
            chain,
            enable_alerting=True,
            parent_pool=make_pool(parent_w3),
            child_pool=make_pool(child_w3),
            clock=lambda: NOW,
        )

        with patch("retryables.ParentToChildMessage.status", return_value=RetryableStatus.FUNDS_DEPOSITED), \
                patch("retryables.ParentToChildMessage.get_creation_receipt", return_value={"blockNumber": 250}), \
                patch("correlator.get_gas_info", return_value=(None, None, None)):
            result = monitor.run_once(90, 110)

        ticket_id = calculate_retryable_id(
            660279, SENDER, 7, 10, parse_retryable_message_data(retryable_data())
        )
        assert len(result.alerts) == 1
        record = result.alerts[0]
        assert record.severity == Severity.WARN
        assert record.reasons == [f"ticket FUNDS_DEPOSITED: {ticket_id}"]
        assert record.ticket.ticket_id == ticket_id
        assert record.ticket.source_transaction_hash == "0x" + "aa" * 32
