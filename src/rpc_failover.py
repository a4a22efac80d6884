#!/usr/bin/env python3
from typing import List, Callable, Any, Optional, TypeVar, Union
import time
from web3 import Web3


T = TypeVar("T")


class EVMProviderPool:
    """Sticky failover over one or more JSON-RPC endpoints of the same chain"""

    def __init__(self, urls: Union[str, List[str]], request_timeout_s: int = 15, preference_reset_minutes: int = 60):
        if isinstance(urls, str):
            urls = [urls]
        if not urls:
            raise ValueError("EVMProviderPool requires at least one URL")
        self.urls = urls
        self.request_timeout_s = request_timeout_s
        self.preference_reset_sec = max(1, int(preference_reset_minutes) * 60)
        self._last_reset_ts = 0.0
        self._sticky_index: Optional[int] = None
        self._clients = {}

    def _should_reset_preferences(self) -> bool:
        now = time.time()
        if self._last_reset_ts == 0.0:
            self._last_reset_ts = now
            return False
        return (now - self._last_reset_ts) >= self.preference_reset_sec

    def _maybe_reset_preferences(self) -> None:
        if self._should_reset_preferences():
            self._last_reset_ts = time.time()
            self._sticky_index = None

    def _build_web3(self, index: int) -> Web3:
        if index not in self._clients:
            self._clients[index] = Web3(
                Web3.HTTPProvider(self.urls[index], request_kwargs={"timeout": self.request_timeout_s})
            )
        return self._clients[index]

    def with_web3(self, fn: Callable[[Web3], T]) -> T:
        """Run ``fn`` against the preferred endpoint, falling back to the others on failure.

        Errors from the last endpoint tried are re-raised unchanged so callers
        can tell a missing transaction from an unreachable node.
        """
        self._maybe_reset_preferences()

        last_error: Optional[Exception] = None

        # 1) Try sticky provider first if available
        if self._sticky_index is not None:
            try:
                return fn(self._build_web3(self._sticky_index))
            except Exception as e:
                if len(self.urls) == 1:
                    raise
                last_error = e
                self._sticky_index = None

        # 2) Scan from beginning to pick the most preferred working provider
        for i in range(len(self.urls)):
            try:
                result = fn(self._build_web3(i))
                self._sticky_index = i
                return result
            except Exception as e:
                last_error = e
                continue

        raise last_error

    def with_contract_call(self, address: str, abi: Any, fn_builder: Callable[[Any], Any]):
        return self.with_web3(
            lambda w3: fn_builder(w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi))
        )

    def block_number(self) -> int:
        return self.with_web3(lambda w3: w3.eth.block_number)
