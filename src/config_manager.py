#!/usr/bin/env python3
"""
Configuration Manager for the Orbit chain monitors

Loads the ``childChains`` configuration with:
1. Environment variable substitution (${VAR} patterns)
2. Strict validation of addresses, URLs and required fields
3. Immutable ChainDescriptor objects for the monitors
"""

import os
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from models import ChainDescriptor, SEVEN_DAYS_IN_SECONDS

# look for .env file in the current working directory
load_dotenv()

DEFAULT_CONFIG_PATH = "config.json"

ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

REQUIRED_ETH_BRIDGE_FIELDS = ['bridge', 'inbox', 'rollup', 'sequencerInbox']
TOKEN_GATEWAY_FIELDS = ['parentErc20Gateway', 'parentCustomGateway', 'parentWethGateway']


class ConfigError(ValueError):
    """Raised when the configuration file is missing, malformed or invalid"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        if self.errors:
            message = f"{message}:\n  - " + "\n  - ".join(self.errors)
        super().__init__(message)


def is_valid_address(value: Any) -> bool:
    return isinstance(value, str) and ADDRESS_PATTERN.match(value) is not None


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def is_valid_url_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(is_valid_url(url) for url in value)


class ConfigManager:
    """Loads and validates the monitored child chains"""

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self._config_data = None
        self._chains: List[ChainDescriptor] = []
        self._load_config()
        self._load_chains()

    def _load_config(self):
        """Load configuration from JSON file"""
        config_path = Path(os.getcwd()) / self.config_file

        try:
            with open(config_path, 'r') as f:
                content = f.read()
        except FileNotFoundError:
            raise ConfigError(f"Config file {config_path} not found")
        except OSError as e:
            raise ConfigError(f"Error reading config file {config_path}: {e}")

        # substitute environment variables
        content = self._substitute_env_vars(content)
        try:
            self._config_data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in config file {config_path}: {e}")

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute ${VAR} patterns with environment variables"""
        def replace_var(match):
            var_name = match.group(1)
            env_value = os.getenv(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable {var_name} is not set")
            return env_value

        # pattern to match ${VAR_NAME}
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)\}'
        return re.sub(pattern, replace_var, content)

    def _load_chains(self):
        """Validate every child chain and build descriptors"""
        if not isinstance(self._config_data, dict):
            raise ConfigError("Config file must contain a JSON object")

        child_chains = self._config_data.get('childChains')
        if not isinstance(child_chains, list) or not child_chains:
            raise ConfigError("Child chains not found in the config file")

        errors = []
        for index, chain_config in enumerate(child_chains):
            result = self.validate_chain(chain_config)
            for error in result['errors']:
                errors.append(f"childChains[{index}]: {error}")

        if errors:
            raise ConfigError("Invalid configuration", errors)

        self._chains = [self._build_descriptor(chain_config) for chain_config in child_chains]

    @staticmethod
    def validate_chain(config: Any) -> Dict[str, Any]:
        """Validate a single child chain entry and return validation results"""
        if not isinstance(config, dict):
            return {"valid": False, "errors": ["Chain entry must be an object"]}

        errors = []

        for int_field in ['chainId', 'parentChainId', 'confirmPeriodBlocks']:
            value = config.get(int_field)
            if value is None:
                errors.append(f"Missing required field: {int_field}")
            elif not isinstance(value, int) or isinstance(value, bool) or value < 0:
                errors.append(f"{int_field} must be a non-negative integer")

        name = config.get('name')
        if not isinstance(name, str) or not name.strip():
            errors.append("Missing required field: name")

        # child RPC: orbitRpcUrls (list) or orbitRpcUrl / rpcUrl (string)
        child_urls = config.get('orbitRpcUrls')
        if child_urls is not None:
            if not is_valid_url_list(child_urls):
                errors.append("orbitRpcUrls must be a non-empty list of HTTP/HTTPS URLs")
        elif config.get('orbitRpcUrl') is None and config.get('rpcUrl') is None:
            errors.append("Missing required field: orbitRpcUrl, rpcUrl or orbitRpcUrls")

        # parent RPC: parentRpcUrls (list) or parentRpcUrl (string)
        parent_urls = config.get('parentRpcUrls')
        if parent_urls is not None:
            if not is_valid_url_list(parent_urls):
                errors.append("parentRpcUrls must be a non-empty list of HTTP/HTTPS URLs")
        elif 'parentRpcUrl' not in config:
            errors.append("Missing required field: parentRpcUrl or parentRpcUrls")

        for url_field in ['orbitRpcUrl', 'rpcUrl', 'parentRpcUrl', 'explorerUrl', 'parentExplorerUrl']:
            if url_field not in config:
                if url_field in ('explorerUrl', 'parentExplorerUrl'):
                    errors.append(f"Missing required field: {url_field}")
                continue
            if not is_valid_url(config[url_field]):
                errors.append(f"{url_field} must be a valid HTTP/HTTPS URL")

        eth_bridge = config.get('ethBridge')
        if not isinstance(eth_bridge, dict):
            errors.append("Missing required field: ethBridge")
        else:
            for bridge_field in REQUIRED_ETH_BRIDGE_FIELDS:
                if bridge_field not in eth_bridge:
                    errors.append(f"Missing required field: ethBridge.{bridge_field}")
                elif not is_valid_address(eth_bridge[bridge_field]):
                    errors.append(f"ethBridge.{bridge_field} must be a valid Ethereum address (0x...)")

        token_bridge = config.get('tokenBridge')
        if token_bridge is not None:
            if not isinstance(token_bridge, dict):
                errors.append("tokenBridge must be an object")
            else:
                for gateway_field, address in token_bridge.items():
                    if not is_valid_address(address):
                        errors.append(f"tokenBridge.{gateway_field} must be a valid Ethereum address (0x...)")

        batch_poster = config.get('batchPoster')
        if batch_poster is not None and not is_valid_address(batch_poster):
            errors.append("batchPoster must be a valid Ethereum address (0x...)")

        lifetime = config.get('retryableLifetimeSeconds')
        if lifetime is not None and (not isinstance(lifetime, int) or isinstance(lifetime, bool) or lifetime <= 0):
            errors.append("retryableLifetimeSeconds must be a positive integer")

        return {
            "valid": len(errors) == 0,
            "errors": errors,
        }

    @staticmethod
    def _build_descriptor(config: Dict[str, Any]) -> ChainDescriptor:
        eth_bridge = config['ethBridge']
        token_bridge = config.get('tokenBridge') or {}
        gateways = tuple(
            token_bridge[gateway_field]
            for gateway_field in TOKEN_GATEWAY_FIELDS
            if token_bridge.get(gateway_field)
        )
        child_urls = config.get('orbitRpcUrls') or [config.get('orbitRpcUrl') or config['rpcUrl']]
        parent_urls = config.get('parentRpcUrls') or [config['parentRpcUrl']]

        return ChainDescriptor(
            chain_id=config['chainId'],
            parent_chain_id=config['parentChainId'],
            name=config['name'],
            rpc_url=child_urls[0],
            parent_rpc_url=parent_urls[0],
            explorer_url=config['explorerUrl'],
            parent_explorer_url=config['parentExplorerUrl'],
            bridge=eth_bridge['bridge'],
            inbox=eth_bridge['inbox'],
            rollup=eth_bridge['rollup'],
            sequencer_inbox=eth_bridge['sequencerInbox'],
            token_gateways=gateways,
            confirm_period_blocks=config['confirmPeriodBlocks'],
            retryable_lifetime_seconds=config.get('retryableLifetimeSeconds', SEVEN_DAYS_IN_SECONDS),
            batch_poster=config.get('batchPoster'),
            fallback_rpc_urls=tuple(child_urls[1:]),
            parent_fallback_rpc_urls=tuple(parent_urls[1:]),
        )

    def get_chains(self) -> List[ChainDescriptor]:
        """Get all configured child chains"""
        return list(self._chains)

    def get_chain(self, name: str) -> ChainDescriptor:
        """Get a child chain by name"""
        for chain in self._chains:
            if chain.name == name:
                return chain
        available = [chain.name for chain in self._chains]
        raise ConfigError(f"Chain '{name}' not found. Available: {available}")
