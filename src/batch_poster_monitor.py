#!/usr/bin/env python3
"""
Batch Poster Monitor

For every configured Orbit chain, checks the parent chain SequencerInbox for
batches posted in the last 24 hours and raises an alert when:
- the child chain has a backlog and the last batch is older than the
  expected posting interval derived from maxTimeVariation
- no batch was posted at all while unposted blocks hold user transactions
- the batch poster balance would not cover 3 days of posting
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from block_scanner import BlockRange, scan_range
from chains import (
    ETHEREUM_CHAIN_IDS,
    ETHEREUM_MAX_LOG_BLOCK_RANGE,
    blocks_for_duration,
    get_explorer_url_prefixes,
    get_parent_chain_block_time_for_batch_posting,
    run_for_chains,
)
from classifier import (
    MAX_LOGS_FOR_BALANCE_ESTIMATE,
    MAX_TIMEBOUNDS_SECONDS,
    batch_posting_time_bounds,
    build_alert_record,
    classify_balance,
    classify_batch_poster,
    classify_no_recent_batch,
    is_user_transaction_block,
    minimum_expected_balance,
    time_bounds_expected_message,
)
from config_manager import ConfigError, ConfigManager, DEFAULT_CONFIG_PATH
from events import EventKind, SequencerBatchDeliveredEvent, make_log_fetcher
from logger_utils import setup_logging
from models import AlertRecord, ChainDescriptor
from rpc_failover import EVMProviderPool
from slack_reporter import BATCH_POSTER_SLACK_ENV, SlackReporter, format_alert_record


logger = logging.getLogger(__name__)


# non-Ethereum parents accept much larger eth_getLogs ranges
BATCH_LOG_BLOCK_RANGE = 500_000

SEQUENCER_INBOX_ABI = [
    {
        "inputs": [],
        "name": "maxTimeVariation",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"} for _ in range(4)],
        "stateMutability": "view",
        "type": "function",
    },
]

BRIDGE_ABI = [
    {
        "inputs": [],
        "name": "sequencerReportedSubMessageCount",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass
class BatchPosterResult:
    chain_name: str
    alert: Optional[AlertRecord] = None
    error: Optional[str] = None


class BatchPosterMonitor:
    """Batch posting liveness and balance checks for one child chain"""

    def __init__(
        self,
        chain: ChainDescriptor,
        parent_pool: Optional[EVMProviderPool] = None,
        child_pool: Optional[EVMProviderPool] = None,
        chunk_size: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.chain = chain
        self.parent_pool = parent_pool or EVMProviderPool(chain.parent_rpc_urls)
        self.child_pool = child_pool or EVMProviderPool(chain.child_rpc_urls)
        if chunk_size is None:
            chunk_size = (
                ETHEREUM_MAX_LOG_BLOCK_RANGE if chain.parent_chain_id in ETHEREUM_CHAIN_IDS else BATCH_LOG_BLOCK_RANGE
            )
        self.chunk_size = chunk_size
        self.clock = clock
        self.prefixes = get_explorer_url_prefixes(chain)

    def fetch_batch_logs(self) -> List[SequencerBatchDeliveredEvent]:
        """SequencerBatchDelivered events of the last 24 hours, oldest first"""
        latest_block = self.parent_pool.block_number()
        window_blocks = blocks_for_duration(self.chain, MAX_TIMEBOUNDS_SECONDS)
        block_range = BlockRange(max(0, latest_block - window_blocks), latest_block)
        fetch = make_log_fetcher(self.parent_pool, self.chain.sequencer_inbox, EventKind.SEQUENCER_BATCH_DELIVERED)
        return scan_range(block_range, self.chunk_size, fetch)

    def get_time_bounds(self) -> float:
        delay_blocks = delay_seconds = None
        try:
            max_time_variation = self.parent_pool.with_contract_call(
                self.chain.sequencer_inbox,
                SEQUENCER_INBOX_ABI,
                lambda contract: contract.functions.maxTimeVariation().call(),
            )
            delay_blocks = int(max_time_variation[0])
            delay_seconds = int(max_time_variation[2])
        except Exception as e:
            logger.warning(f"[{self.chain.name}] Could not read maxTimeVariation, using fallback: {e}")

        return batch_posting_time_bounds(
            delay_blocks, delay_seconds, get_parent_chain_block_time_for_batch_posting(self.chain)
        )

    def get_batch_poster(self, logs: List[SequencerBatchDeliveredEvent]) -> Optional[str]:
        if self.chain.batch_poster:
            return self.chain.batch_poster
        if not logs:
            return None
        tx_hash = logs[0].transaction_hash
        tx = self.parent_pool.with_web3(lambda w3: w3.eth.get_transaction(tx_hash))
        return tx['from']

    def check_balance(self, logs: List[SequencerBatchDeliveredEvent]) -> Optional[str]:
        """Low balance alert text, or None when the balance covers the expected spend"""
        try:
            batch_poster = self.get_batch_poster(logs)
        except Exception as e:
            logger.warning(f"[{self.chain.name}] Failed to find batch poster: {e}")
            batch_poster = None
        if batch_poster is None:
            return "Batch poster information not found"

        batch_costs = []
        if logs:
            gas_price = self.parent_pool.with_web3(lambda w3: w3.eth.gas_price)
            for log in logs[-MAX_LOGS_FOR_BALANCE_ESTIMATE:]:
                receipt = self.parent_pool.with_web3(
                    lambda w3: w3.eth.get_transaction_receipt(log.transaction_hash)
                )
                batch_costs.append(int(receipt['gasUsed']) * int(gas_price))

        minimum_balance = minimum_expected_balance(batch_costs, len(logs))
        current_balance = self.parent_pool.with_web3(lambda w3: w3.eth.get_balance(batch_poster))
        logger.debug(
            f"[{self.chain.name}] batch logs: {len(logs)}, balance: {current_balance}, "
            f"minimum expected: {minimum_balance}"
        )

        decision = classify_balance(
            batch_poster, int(current_balance), minimum_balance, self.prefixes['PARENT_CHAIN_ADDRESS_PREFIX']
        )
        return None if decision.suppressed else decision.reason

    def pending_blocks_contain_user_transactions(self, from_block: int, to_block: int) -> bool:
        for block_number in range(from_block, to_block + 1):
            block = self.child_pool.with_web3(lambda w3: w3.eth.get_block(block_number))
            if is_user_transaction_block(block):
                return True
        return False

    def run(self) -> Optional[AlertRecord]:
        """Check the chain and return an alert record, or None when all is well"""
        reasons: List[str] = []

        logs = self.fetch_batch_logs()

        low_balance = self.check_balance(logs)
        if low_balance:
            reasons.append(low_balance)

        time_bounds = self.get_time_bounds()
        latest_child_block = self.child_pool.block_number()

        if not logs:
            safe_block = self.child_pool.with_web3(lambda w3: w3.eth.get_block('safe'))
            safe_number = int(safe_block['number'])
            # blocks after the safe head have not been posted yet
            user_transactions_pending = self.pending_blocks_contain_user_transactions(
                safe_number + 1, latest_child_block
            )
            decision = classify_no_recent_batch(
                latest_child_block, safe_number, user_transactions_pending, time_bounds
            )
            if decision.suppressed:
                logger.info(f"**********\nBatch poster summary of [{self.chain.name}]")
                logger.info(decision.reason)
            else:
                reasons.append(decision.reason)
        else:
            last_log = logs[-1]
            last_batch_block = self.parent_pool.with_web3(lambda w3: w3.eth.get_block(last_log.block_number))
            seconds_since_last_batch = int(self.clock()) - int(last_batch_block['timestamp'])
            last_block_reported = int(
                self.parent_pool.with_contract_call(
                    self.chain.bridge,
                    BRIDGE_ABI,
                    lambda contract: contract.functions.sequencerReportedSubMessageCount().call(),
                )
            )
            backlog = latest_child_block - last_block_reported

            decision = classify_batch_poster(backlog, seconds_since_last_batch, time_bounds)
            if not decision.suppressed:
                reasons.append(decision.reason)
            elif not reasons:
                self._log_summary(
                    latest_child_block,
                    last_block_reported,
                    last_log.block_number,
                    seconds_since_last_batch,
                    backlog,
                    time_bounds,
                )

        if not reasons:
            return None

        # liveness findings before the balance warning
        reasons.reverse()
        sequencer_inbox = self.chain.sequencer_inbox
        reasons.append(
            f"SequencerInbox located at <{self.prefixes['PARENT_CHAIN_ADDRESS_PREFIX']}{sequencer_inbox}|"
            f"{sequencer_inbox}> on [chain id {self.chain.parent_chain_id}]"
        )
        record = build_alert_record(self.chain.name, reasons)
        logger.warning(f"Alert on {self.chain.name}:\n{format_alert_record(record)}")
        return record

    def _log_summary(
        self,
        latest_child_block: int,
        last_block_reported: int,
        last_batch_parent_block: int,
        seconds_ago: int,
        backlog: int,
        time_bounds: float,
    ) -> None:
        hours, remainder = divmod(seconds_ago, 60 * 60)
        minutes, seconds = divmod(remainder, 60)
        logger.info("**********")
        logger.info(f"Batch poster summary of [{self.chain.name}]")
        logger.info(f"Latest block number on [{self.chain.name}] is {latest_child_block}.")
        logger.info(
            f"Latest [{self.chain.name}] block included on [Parent chain id: {self.chain.parent_chain_id}, "
            f"block-number {last_batch_parent_block}] is {last_block_reported} => "
            f"{hours} hours, {minutes} minutes, {seconds} seconds ago."
        )
        logger.info(f"Batch poster backlog is {backlog} blocks.")
        logger.info(time_bounds_expected_message(time_bounds))
        logger.info("**********")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Monitor batch posting of Orbit chains")
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

    logger.info(">>>>>> Processing chains: " + ", ".join(f"{chain.name} (chainID {chain.chain_id})" for chain in chains))

    def process(chain: ChainDescriptor) -> BatchPosterResult:
        logger.info(f">>>>> Processing chain: {chain.name}")
        try:
            return BatchPosterResult(chain_name=chain.name, alert=BatchPosterMonitor(chain).run())
        except Exception as e:
            error = f"Batch Posting alert on [{chain.name}]:\nError processing chain: {e}"
            logger.error(error)
            return BatchPosterResult(chain_name=chain.name, error=error)

    results = run_for_chains(chains, process, concurrent=args.concurrent)

    if args.enable_alerting:
        reporter = SlackReporter(*BATCH_POSTER_SLACK_ENV)
        for result in results:
            if result.error:
                reporter.report(result.error)

        alerts = [format_alert_record(result.alert) for result in results if result.alert]
        if alerts:
            separator = "\n--------------------------------------\n"
            reporter.report(f"Batch poster monitor summary \n\n{separator.join(alerts)}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
