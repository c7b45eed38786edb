"""
Configuration for Thunder Portal SDK.

Every setting can be overridden from the environment; defaults target a
local regtest node and a local Ethereum dev chain.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .core import (
    HTLC_TIMEOUT_BTC_BLOCKS, HTLC_TIMEOUT_ETH_SECONDS,
    BTC_FIXED_FEE_SATS, CONFIRMATION_TIMEOUT_MS,
    validate_timeout_ordering,
)
from .errors import ConfigurationError, ValidationError


@dataclass
class BTCConfig:
    """Bitcoin node and HTLC micro-API configuration."""
    network: str = "regtest"            # regtest, signet, testnet, mainnet
    rpc_url: str = "http://localhost:18443"
    rpc_user: str = ""
    rpc_password: str = ""
    wallet_name: str = "test_wallet"
    api_url: str = "http://localhost:3000/v1"
    api_key: str = ""
    fee_sats: int = BTC_FIXED_FEE_SATS
    auto_mine: bool = False             # Mine a block after funding (regtest only)
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "BTCConfig":
        return cls(
            network=os.environ.get("BITCOIN_NETWORK", "regtest"),
            rpc_url=os.environ.get("BITCOIN_RPC_URL", "http://localhost:18443"),
            rpc_user=os.environ.get("BITCOIN_RPC_USER", ""),
            rpc_password=os.environ.get("BITCOIN_RPC_PASSWORD", ""),
            wallet_name=os.environ.get("BITCOIN_WALLET", "test_wallet"),
            api_url=os.environ.get("BITCOIN_API_URL", "http://localhost:3000/v1"),
            api_key=os.environ.get("API_KEY", ""),
            auto_mine=os.environ.get("BITCOIN_AUTO_MINE", "").lower() in ("1", "true", "yes"),
        )


@dataclass
class EVMConfig:
    """Ethereum chain configuration."""
    rpc_url: str = "http://localhost:8545"
    chain_id: int = 31337
    private_key: str = ""               # Resolver signer
    factory_address: str = ""
    lop_address: str = ""               # Limit Order Protocol (optional)
    gas_create_escrow: int = 2_000_000
    gas_fund_escrow: int = 300_000
    gas_claim: int = 150_000
    gas_refund: int = 100_000
    receipt_timeout: int = 120

    @classmethod
    def from_env(cls) -> "EVMConfig":
        return cls(
            rpc_url=os.environ.get("ETHEREUM_RPC", "http://localhost:8545"),
            chain_id=int(os.environ.get("ETHEREUM_CHAIN_ID", "31337")),
            private_key=os.environ.get("RESOLVER_PRIVATE_KEY", ""),
            factory_address=os.environ.get("FACTORY_ADDRESS", ""),
            lop_address=os.environ.get("LIMIT_ORDER_PROTOCOL_ADDRESS", ""),
        )


@dataclass
class CoordinatorConfig:
    """Swap coordinator configuration."""
    btc_timeout_blocks: int = HTLC_TIMEOUT_BTC_BLOCKS
    eth_timeout_seconds: int = HTLC_TIMEOUT_ETH_SECONDS
    btc_confirmations: int = 1
    confirmation_timeout_ms: int = CONFIRMATION_TIMEOUT_MS
    claimer_pubkey: str = ""            # Bitcoin claim-path pubkey (hex)
    max_attempts: int = 2               # First call + one retry for transient errors

    def validate(self) -> "CoordinatorConfig":
        try:
            validate_timeout_ordering(self.btc_timeout_blocks, self.eth_timeout_seconds)
        except ValidationError as e:
            raise ConfigurationError(str(e))
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        return self

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        return cls(
            btc_timeout_blocks=int(os.environ.get("BTC_TIMEOUT_BLOCKS", HTLC_TIMEOUT_BTC_BLOCKS)),
            eth_timeout_seconds=int(os.environ.get("ETH_TIMEOUT_SECONDS", HTLC_TIMEOUT_ETH_SECONDS)),
            btc_confirmations=int(os.environ.get("BTC_CONFIRMATIONS", "1")),
            claimer_pubkey=os.environ.get("BTC_CLAIMER_PUBKEY", ""),
        ).validate()


@dataclass
class RelayerConfig:
    """Relayer polling configuration."""
    poll_interval: float = 5.0          # seconds
    max_monitor_seconds: float = 600.0  # 10 minutes
    confirmations: int = 1
    max_finished: int = 500             # finished watches kept for status queries

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        return cls(
            poll_interval=float(os.environ.get("RELAYER_POLL_INTERVAL", "5")),
            max_monitor_seconds=float(os.environ.get("RELAYER_MAX_MONITOR_SECONDS", "600")),
            max_finished=int(os.environ.get("RELAYER_MAX_FINISHED", "500")),
        )


@dataclass
class PortalConfig:
    """Top-level configuration used by server.py."""
    btc: BTCConfig = field(default_factory=BTCConfig)
    evm: EVMConfig = field(default_factory=EVMConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    relayer: RelayerConfig = field(default_factory=RelayerConfig)
    data_dir: Path = Path("~/.thunder-portal/reports")
    port: int = 3002

    @classmethod
    def from_env(cls) -> "PortalConfig":
        return cls(
            btc=BTCConfig.from_env(),
            evm=EVMConfig.from_env(),
            coordinator=CoordinatorConfig.from_env(),
            relayer=RelayerConfig.from_env(),
            data_dir=Path(os.path.expanduser(
                os.environ.get("PORTAL_DATA_DIR", "~/.thunder-portal/reports")
            )),
            port=int(os.environ.get("PORT", "3002")),
        )
