"""
Core types and interfaces for Thunder Portal SDK.
"""

import hashlib
import secrets
import time
from enum import Enum
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Optional, Dict, Any

from eth_utils import keccak

from .errors import RandomnessError, ValidationError


class SwapState(Enum):
    """Coordinator lifecycle states."""
    INITIATED = "initiated"
    BITCOIN_HTLC_CREATED = "bitcoin_htlc_created"
    BITCOIN_FUNDED = "bitcoin_funded"
    ETHEREUM_ESCROW_CREATED = "ethereum_escrow_created"
    ETHEREUM_FUNDED = "ethereum_funded"
    PREIMAGE_REVEALED = "preimage_revealed"   # Ethereum escrow claimed
    BOTH_CLAIMED = "both_claimed"             # Terminal: COMPLETED
    TIMEOUT_REFUNDED = "timeout_refunded"     # Terminal
    ERROR = "error"                           # Terminal


TERMINAL_STATES = frozenset({
    SwapState.BOTH_CLAIMED,
    SwapState.TIMEOUT_REFUNDED,
    SwapState.ERROR,
})


class OverallStatus(Enum):
    """Status derived from both legs."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    ERROR = "ERROR"


class ChainStatus(Enum):
    """Status of one leg as observed on its chain."""
    PENDING = "PENDING"
    CREATED = "CREATED"
    FUNDED = "FUNDED"
    CLAIMED = "CLAIMED"
    REFUNDED = "REFUNDED"
    ERROR = "ERROR"


class SwapMode(Enum):
    """Coordinator flow variant."""
    SIMPLE = "simple"
    LIMIT_ORDER = "lop"
    PARTIAL = "partial"


_STATE_TO_OVERALL = {
    SwapState.INITIATED: OverallStatus.PENDING,
    SwapState.BITCOIN_HTLC_CREATED: OverallStatus.PENDING,
    SwapState.BITCOIN_FUNDED: OverallStatus.PENDING,
    SwapState.ETHEREUM_ESCROW_CREATED: OverallStatus.PENDING,
    SwapState.ETHEREUM_FUNDED: OverallStatus.ACTIVE,
    SwapState.PREIMAGE_REVEALED: OverallStatus.ACTIVE,
    SwapState.BOTH_CLAIMED: OverallStatus.COMPLETED,
    SwapState.TIMEOUT_REFUNDED: OverallStatus.REFUNDED,
    SwapState.ERROR: OverallStatus.ERROR,
}


@dataclass
class Commitment:
    """Preimage / hashlock pair for a simple swap."""
    preimage: bytes
    hashlock: bytes

    @property
    def preimage_hex(self) -> str:
        return self.preimage.hex()

    @property
    def hashlock_hex(self) -> str:
        return self.hashlock.hex()


@dataclass
class BitcoinLeg:
    """Bitcoin HTLC side of a swap."""
    htlc_address: Optional[str] = None
    redeem_script: Optional[str] = None
    hashlock: Optional[str] = None
    timelock: Optional[int] = None      # Absolute block height
    funding_txid: Optional[str] = None
    claim_txid: Optional[str] = None
    refund_txid: Optional[str] = None
    status: str = ChainStatus.PENDING.value


@dataclass
class EthereumLeg:
    """Ethereum escrow side of a swap."""
    escrow_address: Optional[str] = None
    order_hash: Optional[str] = None
    hashlock: Optional[str] = None
    timeout: Optional[int] = None       # Unix timestamp
    funding_txid: Optional[str] = None
    claim_txid: Optional[str] = None
    refund_txid: Optional[str] = None
    status: str = ChainStatus.PENDING.value


@dataclass
class SwapRecord:
    """
    One swap as persisted by the record store.

    The preimage is never part of the record until it has been revealed
    on-chain (``revealed_preimage``).
    """
    swap_id: str
    order_id: str
    preimage_hash: str
    bitcoin_amount: Decimal
    ethereum_amount: Decimal
    user_address: str = ""
    mode: str = SwapMode.SIMPLE.value
    state: SwapState = SwapState.INITIATED
    bitcoin: BitcoinLeg = field(default_factory=BitcoinLeg)
    ethereum: EthereumLeg = field(default_factory=EthereumLeg)
    revealed_preimage: Optional[str] = None
    lop_txid: Optional[str] = None
    lop_fill_txid: Optional[str] = None

    created_at: int = 0
    updated_at: int = 0
    completed_at: Optional[int] = None

    error: Optional[str] = None
    details: Optional[str] = None

    @property
    def overall_status(self) -> OverallStatus:
        return _STATE_TO_OVERALL[self.state]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swap_id": self.swap_id,
            "order_id": self.order_id,
            "preimage_hash": self.preimage_hash,
            "bitcoin_amount": str(self.bitcoin_amount),
            "ethereum_amount": str(self.ethereum_amount),
            "user_address": self.user_address,
            "mode": self.mode,
            "state": self.state.value,
            "overall_status": self.overall_status.value,
            "bitcoin": asdict(self.bitcoin),
            "ethereum": asdict(self.ethereum),
            "revealed_preimage": self.revealed_preimage,
            "lop_txid": self.lop_txid,
            "lop_fill_txid": self.lop_fill_txid,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapRecord":
        """Rebuild a record from its persisted form. Raises on malformed input."""
        try:
            return cls(
                swap_id=data["swap_id"],
                order_id=data["order_id"],
                preimage_hash=data["preimage_hash"],
                bitcoin_amount=Decimal(str(data["bitcoin_amount"])),
                ethereum_amount=Decimal(str(data["ethereum_amount"])),
                user_address=data.get("user_address", ""),
                mode=data.get("mode", SwapMode.SIMPLE.value),
                state=SwapState(data.get("state", SwapState.INITIATED.value)),
                bitcoin=BitcoinLeg(**data.get("bitcoin", {})),
                ethereum=EthereumLeg(**data.get("ethereum", {})),
                revealed_preimage=data.get("revealed_preimage"),
                lop_txid=data.get("lop_txid"),
                lop_fill_txid=data.get("lop_fill_txid"),
                created_at=data.get("created_at", 0),
                updated_at=data.get("updated_at", 0),
                completed_at=data.get("completed_at"),
                error=data.get("error"),
                details=data.get("details"),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise ValidationError(f"Malformed swap record: {e}")


# =============================================================================
# HTLC Utilities
# =============================================================================

def random_bytes(n: int = 32) -> bytes:
    """Bytes from the OS CSPRNG. Never falls back to a weaker source."""
    try:
        return secrets.token_bytes(n)
    except (NotImplementedError, OSError) as e:
        raise RandomnessError(f"Secure randomness unavailable: {e}")


def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    """Keccak-256, used for Ethereum order hashes only."""
    return keccak(data)


def order_hash_for(label: str) -> str:
    """Ethereum order hash for an order id (or ``<orderId>-<resolver>``)."""
    return "0x" + keccak256(label.encode("utf-8")).hex()


def generate_simple_commitment() -> Commitment:
    """Generate a 32-byte preimage and its SHA256 hashlock."""
    preimage = random_bytes(32)
    return Commitment(preimage=preimage, hashlock=sha256(preimage))


def generate_secret() -> tuple[str, str]:
    """
    Generate a random secret and its SHA256 hashlock.

    Returns:
        (secret_hex, hashlock_hex)
    """
    commitment = generate_simple_commitment()
    return commitment.preimage_hex, commitment.hashlock_hex


def strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def verify_preimage(preimage_hex: str, hashlock_hex: str) -> bool:
    """
    Verify that SHA256(preimage) == hashlock.

    Args:
        preimage_hex: 32-byte preimage as hex string
        hashlock_hex: Expected SHA256 hash as hex string

    Returns:
        True if valid
    """
    try:
        preimage = bytes.fromhex(strip_0x(preimage_hex))
        expected = bytes.fromhex(strip_0x(hashlock_hex))
        return sha256(preimage) == expected
    except (ValueError, TypeError, AttributeError):
        return False


def sats_to_btc(sats: int) -> Decimal:
    """Convert satoshis to BTC."""
    return Decimal(sats) / SATS_PER_BTC


def btc_to_sats(btc) -> int:
    """Convert BTC to satoshis."""
    return int(Decimal(str(btc)) * SATS_PER_BTC)


def now_ms() -> int:
    return int(time.time() * 1000)


def make_swap_id(order_id: str) -> str:
    """Swap ids follow ``swap_<millis>_<orderId>``."""
    return f"swap_{now_ms()}_{order_id}"


# =============================================================================
# Constants
# =============================================================================

SATS_PER_BTC = Decimal(100_000_000)
WEI_PER_ETH = Decimal(10) ** 18

BTC_BLOCK_SECONDS = 600

# Default HTLC timeouts
HTLC_TIMEOUT_BTC_BLOCKS = 144       # ~24 hours (10 min blocks)
HTLC_TIMEOUT_ETH_SECONDS = 3600     # 1 hour

# Fixed funding fee for the Bitcoin HTLC
BTC_FIXED_FEE_SATS = 1000

# Confirmation polling
CONFIRMATION_POLL_SECONDS = 5
CONFIRMATION_TIMEOUT_MS = 300_000

# Partial fills
CHUNK_COUNT = 100                   # 1% each
TOTAL_SECRETS = CHUNK_COUNT + 1     # + full-fill secret
FULL_FILL_INDEX = CHUNK_COUNT

# Recommendation windows (seconds)
ETH_TIMEOUT_WARNING_SECONDS = 3600
BTC_TIMEOUT_WARNING_SECONDS = 7200


def validate_timeout_ordering(btc_timeout_blocks: int, eth_timeout_seconds: int) -> bool:
    """
    Bitcoin refund must open strictly after Ethereum's.

    The party claiming Bitcoin second has to still be inside its window
    after the Ethereum preimage is public.

    Returns True if valid, raises ValidationError if not.
    """
    if btc_timeout_blocks <= 0 or eth_timeout_seconds <= 0:
        raise ValidationError(
            f"Timeouts must be positive: T_btc={btc_timeout_blocks} blocks, "
            f"T_eth={eth_timeout_seconds}s"
        )
    btc_s = btc_timeout_blocks * BTC_BLOCK_SECONDS
    if not btc_s > eth_timeout_seconds:
        raise ValidationError(
            f"Timeout ordering violated: T_btc={btc_s}s, T_eth={eth_timeout_seconds}s "
            f"(must be T_btc > T_eth)"
        )
    return True
