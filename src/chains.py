#!/usr/bin/env python3
"""
Parent chain constants and explorer helpers shared by all monitors.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, TypeVar

from models import ChainDescriptor

T = TypeVar("T")


# block times are in seconds
ETHEREUM_BLOCK_TIME = 12
BASE_BLOCK_TIME = 2
ARB_MINIMUM_BLOCK_TIME_IN_SECONDS = 0.25

ETHEREUM_CHAIN_IDS = {1, 11155111, 17000}  # mainnet, sepolia, holesky
BASE_CHAIN_IDS = {8453, 84532}
ARBITRUM_CHAIN_IDS = {42161, 42170, 421614}  # one, nova, sepolia

SECONDS_PER_DAY = 24 * 60 * 60

# eth_getLogs ranges accepted by public providers
ETHEREUM_MAX_LOG_BLOCK_RANGE = 500
DEFAULT_MAX_LOG_BLOCK_RANGE = 5_000


def get_parent_chain_block_time(chain: ChainDescriptor) -> float:
    """Block time of the parent chain in seconds, used to convert durations into parent block counts"""
    parent_chain_id = chain.parent_chain_id

    if parent_chain_id in ETHEREUM_CHAIN_IDS:
        return ETHEREUM_BLOCK_TIME

    if parent_chain_id in BASE_CHAIN_IDS:
        return BASE_BLOCK_TIME

    # arbitrum parents and anything unknown use the standard arbitrum block time
    return ARB_MINIMUM_BLOCK_TIME_IN_SECONDS


def get_parent_chain_block_time_for_batch_posting(chain: ChainDescriptor) -> float:
    # SequencerInbox delay blocks on arbitrum parents are counted in L1 block numbers
    if chain.parent_chain_id in BASE_CHAIN_IDS:
        return BASE_BLOCK_TIME
    return ETHEREUM_BLOCK_TIME


def get_max_log_block_range(chain: ChainDescriptor) -> int:
    if chain.parent_chain_id in ETHEREUM_CHAIN_IDS:
        return ETHEREUM_MAX_LOG_BLOCK_RANGE
    return DEFAULT_MAX_LOG_BLOCK_RANGE


def blocks_for_duration(chain: ChainDescriptor, seconds: float) -> int:
    """Number of parent chain blocks covering ``seconds``"""
    return int(seconds // get_parent_chain_block_time(chain))


def run_for_chains(
    chains: List[ChainDescriptor],
    process: Callable[[ChainDescriptor], T],
    concurrent: bool = False,
) -> List[T]:
    """Run ``process`` for every chain and return the results in config order.

    Chains run one after another unless ``concurrent`` is set, in which case
    each chain gets its own worker thread. ``process`` must not share mutable
    state between chains; callers aggregate the returned results afterwards.
    """
    if not concurrent or len(chains) <= 1:
        return [process(chain) for chain in chains]

    # executor.map preserves input order
    with ThreadPoolExecutor(max_workers=len(chains)) as executor:
        return list(executor.map(process, chains))


def get_explorer_url_prefixes(chain: ChainDescriptor) -> Dict[str, str]:
    parent = chain.parent_explorer_url.rstrip('/')
    child = chain.explorer_url.rstrip('/')
    return {
        'PARENT_CHAIN_TX_PREFIX': f"{parent}/tx/",
        'PARENT_CHAIN_ADDRESS_PREFIX': f"{parent}/address/",
        'CHILD_CHAIN_TX_PREFIX': f"{child}/tx/",
        'CHILD_CHAIN_ADDRESS_PREFIX': f"{child}/address/",
    }
