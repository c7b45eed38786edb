"""
Bitcoin HTLC implementation for Thunder Portal SDK.

HTLC scripts are built by the HTLC micro-API; this module calls it, checks
what it returns, and funds/monitors the resulting address through the
node wallet.

HTLC Script Structure (P2WSH, BIP-199):
    OP_IF
        OP_SHA256 <hashlock> OP_EQUALVERIFY
        <recipient_pubkey> OP_CHECKSIG
    OP_ELSE
        <timelock> OP_CHECKLOCKTIMEVERIFY OP_DROP
        <refund_pubkey> OP_CHECKSIG
    OP_ENDIF

To claim (with preimage):
    <signature> <preimage> OP_TRUE

To refund (after timeout):
    <signature> OP_FALSE
"""

import asyncio
import struct
import time
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, List

import httpx

from ..core import (
    sha256, strip_0x, btc_to_sats, sats_to_btc,
    ChainStatus, CONFIRMATION_POLL_SECONDS, CONFIRMATION_TIMEOUT_MS,
)
from ..chains.btc import BTCClient
from ..errors import ScriptError, RpcError, InsufficientFundsError, ConfirmationTimeout

log = logging.getLogger(__name__)


# Bitcoin Script opcodes
OP_0 = 0x00
OP_TRUE = 0x51
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xac
OP_CHECKLOCKTIMEVERIFY = 0xb1
OP_SHA256 = 0xa8

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_HRP = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}

# Max relative timeout accepted by the micro-API (~1 year)
MAX_TIMEOUT_BLOCKS = 52_560


def push_data(data: bytes) -> bytes:
    """Create push data opcode for Bitcoin script."""
    length = len(data)
    if length < 0x4c:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([0x4c, length]) + data
    elif length <= 0xffff:
        return bytes([0x4d]) + struct.pack('<H', length) + data
    return bytes([0x4e]) + struct.pack('<I', length) + data


def push_int(n: int) -> bytes:
    """Push a non-negative integer (script number encoding)."""
    if n == 0:
        return bytes([OP_0])
    if 1 <= n <= 16:
        return bytes([0x50 + n])
    result = []
    while n:
        result.append(n & 0xff)
        n >>= 8
    if result[-1] & 0x80:
        result.append(0x00)
    return push_data(bytes(result))


def _check_hashlock(hashlock: str) -> bytes:
    try:
        raw = bytes.fromhex(strip_0x(hashlock))
    except (ValueError, TypeError, AttributeError):
        raise ScriptError(f"Hashlock is not hex: {hashlock!r}")
    if len(raw) != 32:
        raise ScriptError(f"Hashlock must be 32 bytes, got {len(raw)}")
    return raw


def _check_pubkey(pubkey: str, name: str = "pubkey") -> bytes:
    try:
        raw = bytes.fromhex(strip_0x(pubkey))
    except (ValueError, TypeError, AttributeError):
        raise ScriptError(f"{name} is not hex")
    if len(raw) != 33 or raw[0] not in (0x02, 0x03):
        raise ScriptError(f"{name} must be a 33-byte compressed public key")
    return raw


def _check_timeout(timeout_blocks: int):
    if not isinstance(timeout_blocks, int) or not 0 < timeout_blocks <= MAX_TIMEOUT_BLOCKS:
        raise ScriptError(f"timeout_blocks out of range: {timeout_blocks}")


def create_htlc_script(hashlock: str, recipient_pubkey: str,
                       refund_pubkey: str, timelock: int) -> bytes:
    """
    Create HTLC redeem script.

    Args:
        hashlock: SHA256 hash (hex)
        recipient_pubkey: Compressed pubkey for claim path (hex)
        refund_pubkey: Compressed pubkey for refund path (hex)
        timelock: Absolute block height

    Returns:
        Redeem script bytes
    """
    hashlock_bytes = _check_hashlock(hashlock)
    recipient_bytes = _check_pubkey(recipient_pubkey, "recipient_pubkey")
    refund_bytes = _check_pubkey(refund_pubkey, "refund_pubkey")
    if timelock <= 0:
        raise ScriptError(f"Invalid timelock: {timelock}")

    script = bytes([OP_IF, OP_SHA256])
    script += push_data(hashlock_bytes)
    script += bytes([OP_EQUALVERIFY])
    script += push_data(recipient_bytes)
    script += bytes([OP_CHECKSIG, OP_ELSE])
    script += push_int(timelock)
    script += bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])
    script += push_data(refund_bytes)
    script += bytes([OP_CHECKSIG, OP_ENDIF])
    return script


def extract_hashlock(script: bytes) -> Optional[str]:
    """Return the hashlock (hex) pushed after OP_SHA256, or None."""
    marker = bytes([OP_SHA256, 32])
    pos = script.find(marker)
    if pos < 0 or len(script) < pos + 2 + 32:
        return None
    return script[pos + 2:pos + 34].hex()


def _bech32_polymod(values) -> int:
    gen = [0x3b6a57b2, 0x26508e6d, 0x1ea119fa, 0x3d4233dd, 0x2a1462b3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1ffffff) << 5) ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def _convertbits(data: bytes, frombits: int, tobits: int) -> List[int]:
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    for value in data:
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if bits:
        ret.append((acc << (tobits - bits)) & maxv)
    return ret


def script_to_p2wsh_address(script: bytes, network: str = "regtest") -> str:
    """Bech32 P2WSH address for a redeem script (witness v0)."""
    hrp = BECH32_HRP.get(network, "tb")
    data = [0] + _convertbits(sha256(script), 8, 5)
    expanded = [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]
    polymod = _bech32_polymod(expanded + data + [0] * 6) ^ 1
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(BECH32_CHARSET[d] for d in data + checksum)


@dataclass
class HTLCInfo:
    """HTLC as returned by the micro-API."""
    htlc_address: str
    redeem_script: str
    hashlock: str
    timeout_blocks: int
    timelock: Optional[int] = None           # Absolute height, when known
    script_hash: Optional[str] = None
    estimated_timeout_timestamp: Optional[int] = None


class BTCHtlc:
    """
    Bitcoin HTLC manager.

    Script construction and claim/refund signing are done by the HTLC
    micro-API; funding and monitoring go through the node wallet.
    """

    poll_interval = CONFIRMATION_POLL_SECONDS

    def __init__(self, client: BTCClient, http: Optional[httpx.AsyncClient] = None):
        self.client = client
        self.config = client.config
        self._http = http

    def _api(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.config.timeout)
        return self._http

    async def close(self):
        if self._http and not self._http.is_closed:
            await self._http.aclose()
        await self.client.close()

    async def _post(self, path: str, body: Dict) -> Dict:
        url = f"{self.config.api_url.rstrip('/')}{path}"
        headers = {"X-API-Key": self.config.api_key}
        try:
            response = await self._api().post(url, json=body, headers=headers)
        except httpx.TransportError as e:
            log.error(f"HTLC service unreachable: {path} -> {e}")
            raise RpcError(str(e) or type(e).__name__, method=path, transient=True)

        try:
            data = response.json()
        except ValueError:
            data = {"message": response.text}

        if response.status_code >= 400:
            message = data.get("message") or data.get("error") or f"HTTP {response.status_code}"
            raise RpcError(str(message), method=path, transient=response.status_code >= 500)
        return data

    # =========================================================================
    # HTLC Creation
    # =========================================================================

    async def create_htlc(self, hashlock: str, claimer_pubkey: str,
                          timeout_blocks: int) -> HTLCInfo:
        """
        Create an HTLC through the micro-API.

        Inputs are validated before the request. The returned redeem script
        must embed the requested hashlock.
        """
        hashlock_hex = _check_hashlock(hashlock).hex()
        _check_pubkey(claimer_pubkey, "claimer_pubkey")
        _check_timeout(timeout_blocks)

        data = await self._post("/htlc/create", {
            "preimage_hash": hashlock_hex,
            "user_public_key": strip_0x(claimer_pubkey),
            "timeout_blocks": timeout_blocks,
        })

        address = data.get("htlc_address")
        if not address:
            raise RpcError("Response has no htlc_address", method="/htlc/create")

        redeem_script = data.get("htlc_script") or data.get("redeem_script") or ""
        if redeem_script:
            try:
                embedded = extract_hashlock(bytes.fromhex(redeem_script))
            except ValueError:
                raise ScriptError("HTLC service returned a non-hex script")
            if embedded != hashlock_hex:
                raise ScriptError(
                    f"HTLC script hashlock {embedded} does not match {hashlock_hex}"
                )

        height = await self.client.get_block_count()

        info = HTLCInfo(
            htlc_address=address,
            redeem_script=redeem_script,
            hashlock=hashlock_hex,
            timeout_blocks=timeout_blocks,
            timelock=height + timeout_blocks,
            script_hash=data.get("script_hash"),
            estimated_timeout_timestamp=data.get("estimated_timeout_timestamp"),
        )
        log.info(f"Created HTLC: {address}, timelock={info.timelock}")
        return info

    # =========================================================================
    # Funding
    # =========================================================================

    async def fund_htlc(self, htlc_address: str, amount_btc) -> Dict:
        """
        Fund an HTLC address from the wallet.

        Spends the smallest confirmed UTXO that covers amount + fee and
        returns change to a fresh wallet address.
        """
        amount_sats = btc_to_sats(amount_btc)
        fee_sats = self.config.fee_sats
        needed = amount_sats + fee_sats

        utxos = await self.client.list_unspent(1)
        candidates = [u for u in utxos if btc_to_sats(u["amount"]) >= needed]
        if not candidates:
            total = sum(btc_to_sats(u["amount"]) for u in utxos)
            raise InsufficientFundsError(
                f"No confirmed UTXO covers {needed} sats",
                details=f"{len(utxos)} UTXOs, {total} sats total",
            )
        utxo = min(candidates, key=lambda u: btc_to_sats(u["amount"]))

        inputs = [{"txid": utxo["txid"], "vout": utxo["vout"]}]
        outputs = {htlc_address: f"{sats_to_btc(amount_sats):.8f}"}
        change_sats = btc_to_sats(utxo["amount"]) - needed
        if change_sats > 0:
            change_address = await self.client.get_new_address("change")
            outputs[change_address] = f"{sats_to_btc(change_sats):.8f}"

        raw_tx = await self.client.create_raw_transaction(inputs, outputs)
        signed = await self.client.sign_raw_transaction(raw_tx)
        if not signed or not signed.get("complete"):
            raise RpcError("Wallet could not fully sign funding tx",
                           method="signrawtransactionwithwallet")

        txid = await self.client.send_raw_transaction(signed["hex"])
        log.info(f"Funded HTLC {htlc_address} with {amount_sats} sats, txid={txid}")

        if self.config.auto_mine:
            miner = await self.client.get_new_address("mining")
            await self.client.generate_to_address(1, miner)

        return {"txid": txid, "hex": signed["hex"], "funded": True}

    async def check_funding(self, htlc_address: str) -> Dict:
        """Unspent outputs currently locked in the HTLC."""
        utxos = await self.client.list_unspent(0, 9999999, [htlc_address])
        amount = sum((Decimal(str(u["amount"])) for u in utxos), Decimal(0))
        return {"funded": bool(utxos), "amount": amount, "utxos": utxos}

    # =========================================================================
    # Claim / Refund
    # =========================================================================

    async def claim_htlc(self, order_id: str, preimage_hex: str) -> Dict:
        """Claim the HTLC for an order by revealing the preimage."""
        data = await self._post("/htlc/claim", {
            "order_id": order_id,
            "preimage": strip_0x(preimage_hex),
        })
        txid = data.get("transaction_id") or data.get("txid")
        if not txid:
            raise RpcError("Claim response has no transaction id", method="/htlc/claim")
        log.info(f"Claimed HTLC for {order_id}: {txid}")
        return {"txid": txid, "status": data.get("status")}

    async def refund_htlc(self, order_id: str) -> Dict:
        """Refund the HTLC for an order after its timelock."""
        data = await self._post("/htlc/refund", {"order_id": order_id})
        txid = data.get("transaction_id") or data.get("txid")
        if not txid:
            raise RpcError("Refund response has no transaction id", method="/htlc/refund")
        log.info(f"Refunded HTLC for {order_id}: {txid}")
        return {"txid": txid, "status": data.get("status")}

    # =========================================================================
    # Monitoring
    # =========================================================================

    async def get_block_count(self) -> int:
        return await self.client.get_block_count()

    async def get_confirmations(self, txid: str) -> int:
        """Confirmations of `txid`; 0 while unknown to the node."""
        try:
            tx = await self.client.get_raw_transaction(txid, True)
        except RpcError as e:
            if e.transient:
                raise
            return 0
        return (tx or {}).get("confirmations", 0) or 0

    async def wait_for_confirmations(self, txid: str, confirmations: int = 1,
                                     timeout_ms: int = CONFIRMATION_TIMEOUT_MS) -> int:
        """
        Poll until `txid` has `confirmations`.

        Raises ConfirmationTimeout after `timeout_ms`.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        while time.monotonic() < deadline:
            try:
                tx = await self.client.get_raw_transaction(txid, True)
                seen = (tx or {}).get("confirmations", 0) or 0
                if seen >= confirmations:
                    return seen
            except RpcError as e:
                log.debug(f"Transaction {txid} not found yet: {e}")
            await asyncio.sleep(self.poll_interval)

        raise ConfirmationTimeout(
            f"Timeout waiting for {confirmations} confirmations on {txid}",
            details=f"timeout_ms={timeout_ms}",
        )

    async def get_transactions(self, address: str) -> List[Dict]:
        """Wallet transactions touching `address` (watch-only import first)."""
        try:
            await self.client.import_address(address, "", False)
        except RpcError as e:
            log.debug(f"importaddress {address}: {e}")
        txs = await self.client.list_transactions(100, 0, True)
        return [tx for tx in txs if tx.get("address") == address]

    async def get_htlc_status(self, htlc_address: str, hashlock: Optional[str] = None) -> Dict:
        """
        Status of an HTLC address from balance and spend history.

        A spend whose input carries the preimage (a witness item hashing to
        `hashlock`, or any 32-byte item / long scriptSig when the hashlock is
        unknown) is a claim; any other spend is a refund.
        """
        balance = await self.client.get_balance_for_address(htlc_address)
        transactions = await self.get_transactions(htlc_address)

        status = ChainStatus.PENDING.value
        claim_tx = None
        refund_tx = None
        preimage = None

        if balance > 0:
            status = ChainStatus.FUNDED.value
        elif transactions:
            status = ChainStatus.FUNDED.value
            spend = next((tx for tx in transactions if tx.get("category") == "send"), None)
            if spend:
                details = await self.client.get_transaction(spend["txid"])
                preimage = _find_preimage(details, hashlock)
                if preimage is not None:
                    status = ChainStatus.CLAIMED.value
                    claim_tx = spend["txid"]
                else:
                    status = ChainStatus.REFUNDED.value
                    refund_tx = spend["txid"]

        return {
            "address": htlc_address,
            "balance": balance,
            "status": status,
            "transactions": transactions,
            "claimTx": claim_tx,
            "refundTx": refund_tx,
            "preimage": preimage,
        }


def _find_preimage(tx: Dict, hashlock: Optional[str]) -> Optional[str]:
    """Preimage revealed by a spending tx, or None for a refund spend."""
    decoded = (tx or {}).get("decoded") or tx or {}
    vin = decoded.get("vin") or []
    if not vin:
        return None
    first = vin[0]
    expected = strip_0x(hashlock).lower() if hashlock else None

    for item in first.get("txinwitness") or []:
        if len(item) != 64:
            continue
        if expected is None or sha256(bytes.fromhex(item)).hex() == expected:
            return item

    script_sig = (first.get("scriptSig") or {}).get("hex", "")
    if expected is None and len(script_sig) > 200:
        return ""
    return None
