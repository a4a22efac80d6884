"""Shared fixtures for the monitor tests."""

import os
import sys
from unittest.mock import MagicMock

import pytest
from eth_abi import encode
from hexbytes import HexBytes

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from events import EventKind  # noqa: E402
from models import ChainDescriptor  # noqa: E402


BRIDGE = "0x7dd8a76bdaebe3bbbacd7aa87f1d4fda1e60f94f"
INBOX = "0xae21fda3de92de2fdaf606233b2863782ba046f9"
SENDER = "0x1111111111111111111111111111111111111111"
GATEWAY = "0x2222222222222222222222222222222222222222"


@pytest.fixture
def chain():
    return ChainDescriptor(
        chain_id=660279,
        parent_chain_id=42161,
        name="Xai Mainnet",
        rpc_url="https://xai-chain.net/rpc",
        parent_rpc_url="https://arb1.arbitrum.io/rpc",
        explorer_url="https://explorer.xai-chain.net/",
        parent_explorer_url="https://arbiscan.io",
        bridge=BRIDGE,
        inbox=INBOX,
        rollup="0xc47dacfbaa80bd9d8112f4e8069482c2a3221336",
        sequencer_inbox="0x995a9d3ca121d48d21087ede20bc8acb2398c8b1",
        token_gateways=(GATEWAY,),
    )


@pytest.fixture
def w3():
    return MagicMock()


@pytest.fixture
def pool(w3):
    """Provider pool whose callbacks run against a mocked Web3 instance"""
    provider_pool = MagicMock()
    provider_pool.with_web3.side_effect = lambda fn: fn(w3)
    return provider_pool


def tx_hash(byte: int) -> HexBytes:
    return HexBytes(bytes([byte]) * 32)


def message_delivered_log(message_index, kind=9, tx=0xAA, block_number=100, sender=SENDER, base_fee=10, address=BRIDGE):
    return {
        "address": address,
        "topics": [
            HexBytes(EventKind.MESSAGE_DELIVERED.topic),
            HexBytes(encode(["uint256"], [message_index])),
            HexBytes(b"\x00" * 32),
        ],
        "data": HexBytes(
            encode(
                ["address", "uint8", "address", "bytes32", "uint256", "uint64"],
                [INBOX, kind, sender, b"\x33" * 32, base_fee, 1_700_000_000],
            )
        ),
        "transactionHash": tx_hash(tx),
        "blockNumber": block_number,
    }


def retryable_data(
    dest="0x3333333333333333333333333333333333333333",
    l2_call_value=10 ** 18,
    l1_value=2 * 10 ** 18,
    max_submission_fee=1000,
    excess_fee_refund_address=SENDER,
    call_value_refund_address=SENDER,
    gas_limit=300_000,
    max_fee_per_gas=100_000_000,
    calldata=b"",
) -> bytes:
    words = [
        int(dest, 16),
        l2_call_value,
        l1_value,
        max_submission_fee,
        int(excess_fee_refund_address, 16),
        int(call_value_refund_address, 16),
        gas_limit,
        max_fee_per_gas,
        len(calldata),
    ]
    return encode(["uint256"] * 9, words) + calldata


def inbox_message_delivered_log(message_num, data: bytes, tx=0xAA, block_number=100):
    return {
        "address": INBOX,
        "topics": [
            HexBytes(EventKind.INBOX_MESSAGE_DELIVERED.topic),
            HexBytes(encode(["uint256"], [message_num])),
        ],
        "data": HexBytes(encode(["bytes"], [data])),
        "transactionHash": tx_hash(tx),
        "blockNumber": block_number,
    }


def deposit_initiated_log(sequence_number, token="0x4444444444444444444444444444444444444444", amount=5_000_000, tx=0xAA):
    return {
        "address": GATEWAY,
        "topics": [
            HexBytes(EventKind.DEPOSIT_INITIATED.topic),
            HexBytes(encode(["address"], [SENDER])),
            HexBytes(encode(["address"], [SENDER])),
            HexBytes(encode(["uint256"], [sequence_number])),
        ],
        "data": HexBytes(encode(["address", "uint256"], [token, amount])),
        "transactionHash": tx_hash(tx),
        "blockNumber": 100,
    }
