#!/usr/bin/env python3
"""
Assertion Monitor

Searches the rollup contract of every configured Orbit chain for NodeCreated
events over a window derived from the confirm period, and alerts when no
assertion was created in that window.
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from block_scanner import BlockRange, scan_range
from chains import SECONDS_PER_DAY, get_parent_chain_block_time, run_for_chains
from classifier import (
    assertion_search_window,
    assertion_search_window_seconds,
    build_alert_record,
    classify_assertions,
)
from config_manager import ConfigError, ConfigManager, DEFAULT_CONFIG_PATH
from events import EventKind, NodeCreatedEvent, make_log_fetcher
from logger_utils import setup_logging
from models import AlertRecord, ChainDescriptor
from rpc_failover import EVMProviderPool
from slack_reporter import ASSERTION_SLACK_ENV, SlackReporter, timestamp_to_date


logger = logging.getLogger(__name__)


NODE_CREATED_CHUNK_SIZE = 800


@dataclass
class AssertionResult:
    chain_name: str
    alert: Optional[AlertRecord] = None
    error: Optional[str] = None


class AssertionMonitor:
    """NodeCreated liveness check for one child chain"""

    def __init__(
        self,
        chain: ChainDescriptor,
        parent_pool: Optional[EVMProviderPool] = None,
        child_pool: Optional[EVMProviderPool] = None,
        chunk_size: int = NODE_CREATED_CHUNK_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.chain = chain
        self.parent_pool = parent_pool or EVMProviderPool(chain.parent_rpc_urls)
        self.child_pool = child_pool or EVMProviderPool(chain.child_rpc_urls)
        self.chunk_size = chunk_size
        self.clock = clock
        self.parent_block_time = get_parent_chain_block_time(chain)

    def search_range(self) -> BlockRange:
        latest_block = self.parent_pool.block_number()
        window_blocks = assertion_search_window(self.chain.confirm_period_blocks, self.parent_block_time)
        return BlockRange(max(0, latest_block - window_blocks), latest_block)

    def fetch_node_created(self, block_range: BlockRange) -> List[NodeCreatedEvent]:
        fetch = make_log_fetcher(self.parent_pool, self.chain.rollup, EventKind.NODE_CREATED)
        return scan_range(block_range, self.chunk_size, fetch)

    def run(self) -> Optional[AlertRecord]:
        """Alert record, or None when assertions were found"""
        block_range = self.search_range()
        events = self.fetch_node_created(block_range)

        window_seconds = assertion_search_window_seconds(self.chain.confirm_period_blocks, self.parent_block_time)
        window_days = round(window_seconds / SECONDS_PER_DAY, 2)

        safe_block = self.child_pool.with_web3(lambda w3: w3.eth.get_block('safe'))
        safe_timestamp = int(safe_block['timestamp'])
        safe_in_range = safe_timestamp >= int(self.clock()) - window_seconds

        decision = classify_assertions(
            self.chain.name,
            len(events),
            window_days,
            safe_block_number=int(safe_block['number']),
            safe_block_in_range=safe_in_range,
            safe_block_time=timestamp_to_date(safe_timestamp),
        )
        if decision.suppressed:
            logger.info(decision.reason)
            return None

        logger.warning(f"No assertion creation events found on {self.chain.name}")
        return build_alert_record(self.chain.name, [decision.reason], decision.severity)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Monitor rollup assertions of Orbit chains")
    parser.add_argument("--configPath", dest="config_path", type=str, default=DEFAULT_CONFIG_PATH, help="Path to the config file")
    parser.add_argument("--enableAlerting", dest="enable_alerting", action="store_true", help="Report alerts to Slack")
    parser.add_argument("--concurrent", action="store_true", help="Process chains concurrently")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable colored logs")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(verbose=args.verbose, no_color=args.no_color)

    try:
        chains = ConfigManager(args.config_path).get_chains()
    except ConfigError as e:
        logger.error(f"❌ {e}")
        return 1

    def process(chain: ChainDescriptor) -> AssertionResult:
        logger.info(f"Checking for assertion creation events on {chain.name}...")
        try:
            return AssertionResult(chain_name=chain.name, alert=AssertionMonitor(chain).run())
        except Exception as e:
            error = f"Error processing chain data for assertion monitoring [{chain.name}]: {e}"
            logger.error(error)
            return AssertionResult(chain_name=chain.name, error=error)

    results = run_for_chains(chains, process, concurrent=args.concurrent)

    reporter = SlackReporter(*ASSERTION_SLACK_ENV) if args.enable_alerting else None
    if reporter:
        for result in results:
            if result.error:
                reporter.report(result.error)

    alerts = [result.alert for result in results if result.alert]
    if alerts:
        alert_message = "Assertion Creation Alert Summary:\n" + "\n".join(
            f"- {reason}" for record in alerts for reason in record.reasons
        )
        logger.error(alert_message)
        if reporter:
            reporter.report(alert_message)
    else:
        logger.info("No alerts generated for any chains.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
