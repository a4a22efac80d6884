#!/usr/bin/env python3
"""
Retryable Ticket Monitor

Scans the parent chain bridge of every configured Orbit chain for retryable
ticket submissions and checks each ticket on the child chain. Tickets that
were not redeemed are classified and, with --enableAlerting, reported to
Slack.

Without --fromBlock/--toBlock the last 14 days of parent chain blocks are
scanned, whether or not alerting is enabled. --continuous keeps following
the chain head for up to 180 seconds.
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from block_scanner import BlockRange
from chains import blocks_for_duration, get_explorer_url_prefixes, run_for_chains
from classifier import build_alert_record, classify_ticket
from config_manager import ConfigError, ConfigManager, DEFAULT_CONFIG_PATH
from correlator import CrossChainCorrelator
from logger_utils import log_result, setup_logging
from models import AlertRecord, ChainDescriptor, CrossChainMessage, RetryableStatus, SEVEN_DAYS_IN_SECONDS
from rpc_failover import EVMProviderPool
from slack_reporter import PriceCache, RETRYABLE_SLACK_ENV, SlackReporter, format_ticket_report


logger = logging.getLogger(__name__)


DEFAULT_LOG_FILE = "logfile.log"
DEFAULT_LOOKBACK_SECONDS = 2 * SEVEN_DAYS_IN_SECONDS
CONTINUOUS_MODE_DURATION_SECONDS = 180
CONTINUOUS_POLL_DELAY_SECONDS = 1
SEPARATOR = "-" * 58


class RpcUnavailableError(RuntimeError):
    """The parent chain head could not be read"""


@dataclass
class ChainRunResult:
    chain_name: str
    messages: List[CrossChainMessage] = field(default_factory=list)
    alerts: List[AlertRecord] = field(default_factory=list)
    last_block: Optional[int] = None
    error: Optional[str] = None


class RetryableMonitor:
    """Find and classify the retryable tickets of one child chain"""

    def __init__(
        self,
        chain: ChainDescriptor,
        enable_alerting: bool = False,
        parent_pool: Optional[EVMProviderPool] = None,
        child_pool: Optional[EVMProviderPool] = None,
        chunk_size: Optional[int] = None,
        max_workers: int = 1,
        requests_per_second: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.chain = chain
        self.enable_alerting = enable_alerting
        self.parent_pool = parent_pool or EVMProviderPool(chain.parent_rpc_urls)
        self.child_pool = child_pool or EVMProviderPool(chain.child_rpc_urls)
        self.clock = clock
        self.sleep = sleep
        self.correlator = CrossChainCorrelator(
            chain,
            self.parent_pool,
            self.child_pool,
            enable_alerting=enable_alerting,
            chunk_size=chunk_size,
            max_workers=max_workers,
            requests_per_second=requests_per_second,
            clock=clock,
        )
        self.prefixes = get_explorer_url_prefixes(chain)
        self.result = ChainRunResult(chain_name=chain.name)

    def _latest_parent_block(self) -> int:
        try:
            return self.parent_pool.block_number()
        except Exception as e:
            raise RpcUnavailableError(f"Error getting the latest block: {e}") from e

    def resolve_range(self, from_block: int, to_block: int) -> BlockRange:
        """Apply the CLI defaults: 0 means latest block / 14 day window"""
        if to_block == 0:
            to_block = self._latest_parent_block()

        if from_block == 0:
            window_blocks = blocks_for_duration(self.chain, DEFAULT_LOOKBACK_SECONDS)
            from_block = max(0, to_block - window_blocks)
            log_result(
                logger,
                self.chain.name,
                f"Limiting block-range to last 14 days [{from_block} to {to_block}]",
            )

        return BlockRange(from_block, to_block)

    def check_range(self, block_range: BlockRange) -> int:
        """Correlate one range, log every ticket and queue alerts. Returns the last block checked."""
        now = int(self.clock())
        messages = self.correlator.correlate(block_range, now=now)
        self.result.messages.extend(messages)
        self._log_and_classify(messages, now)
        self.result.last_block = block_range.to_block
        return block_range.to_block

    def _log_and_classify(self, messages: List[CrossChainMessage], now: int) -> None:
        by_transaction: Dict[str, List[CrossChainMessage]] = {}
        for message in messages:
            by_transaction.setdefault(message.source_transaction_hash, []).append(message)

        for tx_hash, tx_messages in by_transaction.items():
            count = len(tx_messages)
            log_result(
                logger,
                self.chain.name,
                f"{count} retryable{'' if count == 1 else 's'} found for {self.chain.name} chain. "
                f"Checking their status:\n\nParentChainTxHash: {self.prefixes['PARENT_CHAIN_TX_PREFIX']}{tx_hash}",
            )
            logger.info(SEPARATOR)

            for index, message in enumerate(tx_messages, start=1):
                if message.status != RetryableStatus.REDEEMED and self.enable_alerting:
                    self._queue_alert(message, now)

                log_result(
                    logger,
                    self.chain.name,
                    f"{index}. {message.status.name}:\n"
                    f"ChildChainTxHash: {self.prefixes['CHILD_CHAIN_TX_PREFIX']}{message.ticket_id}",
                )
                logger.info(SEPARATOR)

    def _queue_alert(self, message: CrossChainMessage, now: int) -> None:
        decision = classify_ticket(message, now)
        if decision.suppressed:
            logger.debug(f"[{self.chain.name}] Not reporting {message.ticket_id}: {decision.reason}")
            return
        record = build_alert_record(
            self.chain.name, [f"{decision.reason}: {message.ticket_id}"], decision.severity, ticket=message
        )
        self.result.alerts.append(record)

    def run_once(self, from_block: int = 0, to_block: int = 0) -> ChainRunResult:
        logger.info("One-off mode activated.")
        self.check_range(self.resolve_range(from_block, to_block))
        if not self.result.messages:
            logger.info(f"No retryables found for {self.chain.name}")
            logger.info(SEPARATOR)
        return self.result

    def run_continuous(
        self,
        from_block: int = 0,
        to_block: int = 0,
        duration_seconds: int = CONTINUOUS_MODE_DURATION_SECONDS,
    ) -> ChainRunResult:
        logger.info("Continuous mode activated.")
        start_time = self.clock()
        block_range = self.resolve_range(from_block, to_block)

        while True:
            last_block_checked = self.check_range(block_range)
            logger.info(f"Check completed for block: {last_block_checked}")

            latest_block = self._latest_parent_block()
            block_range = BlockRange(last_block_checked + 1, latest_block)
            logger.info(f"Continuing from block: {block_range.from_block}")

            if last_block_checked >= latest_block:
                self.sleep(CONTINUOUS_POLL_DELAY_SECONDS)

            if self.clock() - start_time >= duration_seconds:
                break

        return self.result


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Monitor retryable tickets of Orbit chains")
    parser.add_argument(
        "--fromBlock",
        dest="from_block",
        type=int,
        default=0,
        help="First parent block (0 = 14 days ago, with or without --enableAlerting)",
    )
    parser.add_argument("--toBlock", dest="to_block", type=int, default=0, help="Last parent block (0 = latest)")
    parser.add_argument("--continuous", action="store_true", help="Keep following the chain head for 180 seconds")
    parser.add_argument("--configPath", dest="config_path", type=str, default=DEFAULT_CONFIG_PATH, help="Path to the config file")
    parser.add_argument("--enableAlerting", dest="enable_alerting", action="store_true", help="Report unredeemed tickets to Slack")
    parser.add_argument("--concurrent", action="store_true", help="Process chains concurrently")
    parser.add_argument("--maxWorkers", dest="max_workers", type=int, default=1, help="Parallel log fetches per chain")
    parser.add_argument(
        "--requestsPerSecond",
        dest="requests_per_second",
        type=float,
        default=None,
        help="Rate limit for parallel log fetches",
    )
    parser.add_argument("--logFile", dest="log_file", type=str, default=DEFAULT_LOG_FILE, help="Append result lines to this file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable colored logs")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(verbose=args.verbose, no_color=args.no_color, log_file=args.log_file)

    try:
        chains = ConfigManager(args.config_path).get_chains()
    except ConfigError as e:
        logger.error(f"❌ {e}")
        return 1

    logger.info(
        ">>>>>> Processing child chains: "
        + ", ".join(f"{chain.name} (chainID {chain.chain_id})" for chain in chains)
    )

    single_chain = len(chains) == 1

    def process(chain: ChainDescriptor) -> ChainRunResult:
        logger.info(SEPARATOR)
        logger.info(f"Running for Chain: {chain.name}")
        logger.info(SEPARATOR)
        monitor = RetryableMonitor(
            chain,
            enable_alerting=args.enable_alerting,
            max_workers=args.max_workers,
            requests_per_second=args.requests_per_second,
        )
        try:
            if args.continuous:
                return monitor.run_continuous(args.from_block, args.to_block)
            return monitor.run_once(args.from_block, args.to_block)
        except RpcUnavailableError:
            if single_chain:
                raise
            error = f"Retryable monitor - Error processing chain [{chain.name}]: unable to read latest block"
        except Exception as e:
            error = f"Retryable monitor - Error processing chain [{chain.name}]: {e}"
        logger.error(error)
        monitor.result.error = error
        return monitor.result

    try:
        results = run_for_chains(chains, process, concurrent=args.concurrent)
    except RpcUnavailableError as e:
        logger.error(f"❌ {e}")
        return 1

    if args.enable_alerting:
        reporter = SlackReporter(*RETRYABLE_SLACK_ENV)
        # results are in config order
        for chain, result in zip(chains, results):
            price_cache = PriceCache()
            for record in result.alerts:
                reporter.report(format_ticket_report(chain, record, price_cache=price_cache))
            if result.error:
                reporter.report(result.error)

    return 0


if __name__ == "__main__":
    sys.exit(main())
