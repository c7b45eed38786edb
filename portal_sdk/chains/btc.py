"""
Bitcoin RPC Client for Thunder Portal SDK.

Talks JSON-RPC over HTTP (Basic Auth) to Bitcoin Core on
regtest/signet/testnet/mainnet.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional, Dict, Any, List

import httpx

from ..config import BTCConfig
from ..errors import RpcError

log = logging.getLogger(__name__)

# Methods that must be routed to /wallet/<name>
WALLET_METHODS = frozenset({
    "listunspent",
    "sendrawtransaction",
    "getnewaddress",
    "getbalance",
    "listwallets",
    "listtransactions",
    "importaddress",
    "gettransaction",
    "signrawtransactionwithwallet",
})


class BTCClient:
    """
    Bitcoin JSON-RPC client.

    Transport failures raise RpcError(transient=True); errors reported by the
    node raise RpcError(transient=False).
    """

    def __init__(self, config: BTCConfig, http: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http = http
        self._owns_http = http is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self.config.timeout,
                auth=(self.config.rpc_user, self.config.rpc_password),
            )
            self._owns_http = True
        return self._http

    async def close(self):
        if self._owns_http and self._http and not self._http.is_closed:
            await self._http.aclose()

    def _url_for(self, method: str) -> str:
        base = self.config.rpc_url.rstrip("/")
        if method in WALLET_METHODS and self.config.wallet_name:
            return f"{base}/wallet/{self.config.wallet_name}"
        return base

    async def _call(self, method: str, *params) -> Any:
        """Execute a JSON-RPC call."""
        payload = {
            "jsonrpc": "2.0",
            "id": uuid.uuid4().hex[:8],
            "method": method,
            "params": list(params),
        }

        try:
            response = await self._client().post(self._url_for(method), json=payload)
        except httpx.TransportError as e:
            log.error(f"BTC RPC unreachable: {method} -> {e}")
            raise RpcError(str(e) or type(e).__name__, method=method, transient=True)

        try:
            data = response.json(parse_float=Decimal)
        except ValueError:
            raise RpcError(f"HTTP {response.status_code}: non-JSON response",
                           method=method, transient=response.status_code >= 500)

        error = data.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            log.error(f"BTC RPC error: {method} -> {message}")
            raise RpcError(message, method=method)

        return data.get("result")

    # =========================================================================
    # Wallet Operations
    # =========================================================================

    async def get_new_address(self, label: str = "") -> str:
        """Generate new address."""
        if label:
            return await self._call("getnewaddress", label)
        return await self._call("getnewaddress")

    async def get_balance(self) -> Decimal:
        """Get wallet balance."""
        return Decimal(str(await self._call("getbalance") or 0))

    async def import_address(self, address: str, label: str = "", rescan: bool = False):
        """Import an address as watch-only."""
        return await self._call("importaddress", address, label, rescan)

    async def list_transactions(self, count: int = 100, skip: int = 0,
                                include_watchonly: bool = True) -> List[Dict]:
        return await self._call("listtransactions", "*", count, skip, include_watchonly) or []

    # =========================================================================
    # Balance & UTXOs
    # =========================================================================

    async def list_unspent(self, min_conf: int = 0, max_conf: int = 9999999,
                           addresses: List[str] = None) -> List[Dict]:
        """List unspent outputs."""
        return await self._call("listunspent", min_conf, max_conf, addresses or []) or []

    async def get_balance_for_address(self, address: str) -> Decimal:
        """Sum of unspent outputs for one address."""
        utxos = await self.list_unspent(0, 9999999, [address])
        return sum((Decimal(str(u["amount"])) for u in utxos), Decimal(0))

    # =========================================================================
    # Transaction Operations
    # =========================================================================

    async def get_transaction(self, txid: str) -> Dict:
        """Get wallet transaction details."""
        return await self._call("gettransaction", txid, True)

    async def get_raw_transaction(self, txid: str, verbose: bool = True) -> Dict:
        """Get raw transaction with details."""
        return await self._call("getrawtransaction", txid, verbose)

    async def send_raw_transaction(self, hex_tx: str) -> str:
        """Broadcast raw transaction."""
        return await self._call("sendrawtransaction", hex_tx)

    async def create_raw_transaction(self, inputs: List[Dict], outputs: Dict) -> str:
        """Create unsigned raw transaction."""
        return await self._call("createrawtransaction", inputs, outputs)

    async def sign_raw_transaction(self, hex_tx: str) -> Dict:
        """Sign raw transaction with the loaded wallet."""
        return await self._call("signrawtransactionwithwallet", hex_tx)

    # =========================================================================
    # Blockchain Info
    # =========================================================================

    async def get_block_count(self) -> int:
        """Get current block height."""
        return await self._call("getblockcount")

    async def generate_to_address(self, count: int, address: str) -> List[str]:
        """Mine blocks (regtest only)."""
        return await self._call("generatetoaddress", count, address)
