#!/usr/bin/env python3
"""
Slack Reporter

Formats monitor results and delivers them to Slack via chat.postMessage.

Delivery is gated on the runtime environment (``ENVIRONMENT``, falling back
to ``NODE_ENV``):
- DEV: nothing is posted
- CI: the literal message "success" is not posted

Every message is sanitized before posting so values of sensitive environment
variables (RPC URLs, API keys) never leave the process.
"""

import logging
import os
import time
from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional

import pytz
import requests
from web3 import Web3

from chains import get_explorer_url_prefixes
from models import (
    AlertRecord,
    ChainDescriptor,
    CrossChainMessage,
    RetryableStatus,
    Severity,
)

logger = logging.getLogger(__name__)


SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
SENSITIVE_KEY_CONTENT = ['NEXT', 'API', 'KEY', 'MONITOR', 'INFURA', 'RPC']

RETRYABLE_SLACK_ENV = ("RETRYABLE_MONITORING_SLACK_TOKEN", "RETRYABLE_MONITORING_SLACK_CHANNEL")
BATCH_POSTER_SLACK_ENV = ("BATCH_POSTER_MONITORING_SLACK_TOKEN", "BATCH_POSTER_MONITORING_SLACK_CHANNEL")
ASSERTION_SLACK_ENV = ("ASSERTION_MONITORING_SLACK_TOKEN", "ASSERTION_MONITORING_SLACK_CHANNEL")

COINGECKO_ETH_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd"
COINGECKO_TOKEN_PRICE_URL = (
    "https://api.coingecko.com/api/v3/simple/token_price/ethereum"
    "?contract_addresses={address}&vs_currencies=usd"
)

REPORT_SEPARATOR = "\n================================================================="


def get_environment(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    environ = os.environ if environ is None else environ
    return environ.get('ENVIRONMENT') or environ.get('NODE_ENV')


def sanitize_slack_message(message: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Replace values of sensitive environment variables with ***"""
    environ = os.environ if environ is None else environ
    sanitized = message
    for key, value in environ.items():
        if not any(content in key for content in SENSITIVE_KEY_CONTENT):
            continue
        if value is None or not str(value).strip():
            continue
        sanitized = sanitized.replace(str(value).strip(), '***')
    return sanitized


class SlackReporter:
    """Posts messages to one Slack channel configured through environment variables"""

    def __init__(
        self,
        token_env_key: str,
        channel_env_key: str,
        environ: Optional[Mapping[str, str]] = None,
        timeout: int = 10,
    ):
        self.token_env_key = token_env_key
        self.channel_env_key = channel_env_key
        self.environ = os.environ if environ is None else environ
        self.timeout = timeout

    def should_suppress(self, message: str) -> bool:
        environment = get_environment(self.environ)
        if environment == 'DEV':
            return True
        if environment == 'CI' and message == 'success':
            return True
        return False

    def report(self, message: str) -> bool:
        """Post ``message``; returns True only when Slack accepted it. Never raises."""
        if self.should_suppress(message):
            logger.debug(f"Slack delivery suppressed in {get_environment(self.environ)} environment")
            return False

        token = self.environ.get(self.token_env_key)
        channel = self.environ.get(self.channel_env_key)
        if not token:
            logger.error(f"Slack token is required ({self.token_env_key} not set)")
            return False
        if not channel:
            logger.error(f"Slack channel is required ({self.channel_env_key} not set)")
            return False

        text = sanitize_slack_message(message, self.environ)
        logger.info(f">>> Posting message to Slack -> {text}")

        try:
            response = requests.post(
                SLACK_POST_MESSAGE_URL,
                headers={"Authorization": f"Bearer {token}"},
                json={"channel": channel, "text": text, "unfurl_links": False},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
            if not body.get('ok'):
                logger.error(f"Slack rejected message: {body.get('error', 'unknown error')}")
                return False
            logger.info("Sent Slack alert")
            return True
        except Exception as e:
            logger.error(f"Failed to send Slack alert: {e}")
            return False


class PriceCache:
    """USD prices for ETH and parent chain tokens, fetched once per run"""

    def __init__(self, timeout: int = 10):
        self.timeout = timeout
        self._eth_price: Optional[float] = None
        self._token_prices: Dict[str, Optional[float]] = {}

    def get_eth_price(self) -> Optional[float]:
        if self._eth_price is not None:
            return self._eth_price
        try:
            response = requests.get(COINGECKO_ETH_PRICE_URL, timeout=self.timeout)
            response.raise_for_status()
            self._eth_price = float(response.json()['ethereum']['usd'])
        except Exception as e:
            logger.warning(f"Failed to fetch ETH price: {e}")
            return None
        return self._eth_price

    def get_token_price(self, token_address: str) -> Optional[float]:
        key = token_address.lower()
        if key in self._token_prices:
            return self._token_prices[key]
        try:
            response = requests.get(COINGECKO_TOKEN_PRICE_URL.format(address=key), timeout=self.timeout)
            response.raise_for_status()
            entry = response.json().get(key)
        except Exception as e:
            logger.warning(f"Failed to fetch token price for {token_address}: {e}")
            return None
        price = float(entry['usd']) if entry and 'usd' in entry else None
        self._token_prices[key] = price
        return price


# ----------------------------------------------------------------------
# Formatting
# ----------------------------------------------------------------------

_utc_tz = pytz.timezone('UTC')
_eastern_tz = pytz.timezone('US/Eastern')


def timestamp_to_date(timestamp: int) -> str:
    """Render a unix timestamp in UTC with the Eastern time alongside"""
    dt_utc = datetime.fromtimestamp(timestamp, tz=_utc_tz)
    dt_et = dt_utc.astimezone(_eastern_tz)
    return f"{dt_utc.strftime('%a, %d %b %Y %H:%M:%S %Z')} ({dt_et.strftime('%Y-%m-%d %H:%M:%S %Z')})"


def get_time_difference(timestamp: int, now: int) -> str:
    """Distance between ``timestamp`` and ``now``, in either direction"""
    difference = abs(timestamp - now)
    days, remainder = divmod(difference, 24 * 60 * 60)
    hours, remainder = divmod(remainder, 60 * 60)
    minutes, seconds = divmod(remainder, 60)

    if days > 0:
        return f"{days}days : {hours}h : {minutes}min : {seconds}s"
    if hours > 0:
        return f"{hours}h : {minutes}min : {seconds}s"
    if minutes > 0:
        return f"{minutes}min : {seconds}s"
    return f"{seconds}s"


def _format_gwei(value: Optional[int]) -> str:
    if value is None:
        return "unable to fetch"
    return f"{Web3.from_wei(value, 'gwei')} gwei"


def _format_usd(amount: Decimal, price: Optional[float]) -> str:
    if price is None:
        return ""
    return f" (${float(amount) * price:.2f})"


def format_prefix(chain: ChainDescriptor, message: CrossChainMessage, severity: Severity) -> str:
    prefixes = {
        RetryableStatus.FUNDS_DEPOSITED: "Redeem failed for ticket:",
        RetryableStatus.EXPIRED: "Retryable ticket expired:",
        RetryableStatus.NOT_YET_CREATED: "Retryable ticket hasn't been scheduled:",
        RetryableStatus.CREATION_FAILED: "Retryable ticket creation failed:",
    }
    text = prefixes.get(message.status, "Found retryable ticket in unrecognized state:")
    prefix = f"*[{chain.name}] {text}*"

    if severity == Severity.CRITICAL:
        prefix = f"🆘📣 {prefix} 📣🆘"
    return prefix


def format_ticket_report(
    chain: ChainDescriptor,
    record: AlertRecord,
    price_cache: Optional[PriceCache] = None,
    now: Optional[int] = None,
) -> str:
    """Human readable Slack report for an alert record raised on one retryable ticket"""
    message = record.ticket
    if message is None:
        raise ValueError(f"Alert record for {record.chain_name} carries no retryable ticket")
    now = int(time.time()) if now is None else now
    prefixes = get_explorer_url_prefixes(chain)
    parent_tx = prefixes['PARENT_CHAIN_TX_PREFIX']
    parent_address = prefixes['PARENT_CHAIN_ADDRESS_PREFIX']
    child_tx = prefixes['CHILD_CHAIN_TX_PREFIX']
    child_address = prefixes['CHILD_CHAIN_ADDRESS_PREFIX']

    lines = [format_prefix(chain, message, record.severity)]

    deposit = message.token_deposit
    if deposit is not None:
        lines.append(f"\t *Deposit initiated by:* <{parent_address}{deposit.sender}|{deposit.sender}>")
    else:
        lines.append(f"\t *Retryable sender:* <{parent_address}{message.sender}|{message.sender}>")

    lines.append(
        f"\t *Destination:* <{child_address}{message.destination_address}|{message.destination_address}>"
    )
    lines.append(
        f"\t *Parent Chain TX:* <{parent_tx}{message.source_transaction_hash}|{message.source_transaction_hash}>"
    )
    lines.append(f"\t *Child Chain TX:* <{child_tx}{message.ticket_id}|{message.ticket_id}>")

    eth_amount = Web3.from_wei(message.call_value, 'ether')
    eth_price = price_cache.get_eth_price() if price_cache else None
    lines.append(f"\t *Child chain callvalue:* {eth_amount} ETH{_format_usd(eth_amount, eth_price)}")

    if deposit is None or deposit.token_amount is None:
        lines.append("\t *Tokens deposited:* -")
    else:
        decimals = deposit.token_decimals or 0
        amount = Decimal(deposit.token_amount) / (Decimal(10) ** decimals)
        token_price = price_cache.get_token_price(deposit.token_address) if price_cache else None
        lines.append(
            f"\t *Tokens deposited:* {amount} {deposit.token_symbol or ''}"
            f"{_format_usd(amount, token_price)} ({deposit.token_address})"
        )

    lines.append("\t *Gas params:* ")
    lines.append(f"\t\t gas price provided: {_format_gwei(message.gas_fee_cap)}")
    lines.append(f"\t\t gas price at ticket creation block: {_format_gwei(message.gas_price_at_creation)}")
    lines.append(f"\t\t gas price now: {_format_gwei(message.gas_price_now)}")
    lines.append(f"\t\t gas limit provided: {message.gas_limit}")
    if message.redeem_gas_estimate is not None:
        lines.append(f"\t\t redeem gas estimate: {message.redeem_gas_estimate}")
    else:
        lines.append("\t\t redeem gas estimate: estimateGas call reverted")

    if message.creation_timestamp is not None:
        lines.append(f"\t *Created at:* {timestamp_to_date(message.creation_timestamp)}")

    timeout = message.timeout_timestamp
    if timeout is not None:
        expired = message.status == RetryableStatus.EXPIRED or timeout < now
        label = "Expired" if expired else "Expires"
        expiration = f"\t *{label} at:* {timestamp_to_date(timeout)}"
        if message.status in (RetryableStatus.FUNDS_DEPOSITED, RetryableStatus.NOT_YET_CREATED):
            direction = "ago" if timeout < now else "from now"
            expiration += f" (that's {get_time_difference(timeout, now)} {direction})"
        lines.append(expiration)

    return "\n".join(lines) + REPORT_SEPARATOR


def format_alert_record(record: AlertRecord) -> str:
    """``[chain]:`` followed by one bullet per reason"""
    marker = "🆘 " if record.severity == Severity.CRITICAL else ""
    reasons = "\n• ".join(record.reasons)
    return f"{marker}[{record.chain_name}]:\n• {reasons}"
