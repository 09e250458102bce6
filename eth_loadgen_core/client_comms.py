# eth_loadgen_core/client_comms.py
"""
Handles communication with an Ethereum client over HTTP JSON-RPC: typed calls,
error mapping and bounded retry of transient transport failures.
"""
import itertools
import logging
import threading
import time
from typing import Any, Callable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import MaxRetryError, NewConnectionError

from . import config as core_config
from .clients.base_client import BlockRef, IEthereumClient
from .config import RetryPolicy
from .exceptions import MalformedResponseError, NetworkError, RpcError
from .tx import Receipt, parse_quantity

logger = logging.getLogger(__name__)


def _never_reached_node(exc: requests.exceptions.RequestException) -> bool:
    """True when the request provably did not leave this process."""
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return True
    if isinstance(exc, requests.exceptions.ConnectionError) and exc.args:
        reason = exc.args[0]
        if isinstance(reason, MaxRetryError):
            reason = reason.reason
        return isinstance(reason, NewConnectionError)
    return False


class EthereumClient(IEthereumClient):
    """
    Thread-safe JSON-RPC client for one endpoint. A single requests.Session
    provides the connection pool shared by all virtual users.
    """
    def __init__(self,
                 rpc_url: str = core_config.DEFAULT_TARGET_URL,
                 timeout: float = core_config.DEFAULT_RPC_TIMEOUT_SECONDS,
                 retry_policy: Optional[RetryPolicy] = None,
                 pool_maxsize: int = core_config.DEFAULT_POOL_MAXSIZE,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep
                ):
        """
        Initializes the EthereumClient.

        :param rpc_url: The URL of the Ethereum client's JSON-RPC endpoint.
        :param timeout: Per-request timeout in seconds.
        :param retry_policy: Backoff applied to NetworkError only.
        :param pool_maxsize: Connections kept open to the endpoint; size it to the VU count.
        :param session: Optional pre-built session (tests, custom auth).
        :param sleep: Sleep function used between retries.
        """
        super().__init__(rpc_url)
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._request_ids = itertools.count(1)
        self._id_lock = threading.Lock()

        if session is None:
            session = requests.Session()
            # Retries are handled here, not by urllib3, so every attempt is logged and counted.
            adapter = HTTPAdapter(pool_connections=1, pool_maxsize=pool_maxsize, max_retries=0)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._request_ids)

    def _post_once(self, method: str, params: List[Any]) -> Any:
        """One HTTP round trip. Returns the 'result' member."""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._next_id(),
        }
        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} to {self.rpc_url} failed: {e}",
                               maybe_delivered=not _never_reached_node(e))

        if response.status_code >= 500:
            raise NetworkError(f"{method} got HTTP {response.status_code} from {self.rpc_url}")

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{method} returned non-JSON body (HTTP {response.status_code}): {response.text[:200]!r}") from e

        if not isinstance(body, dict):
            raise MalformedResponseError(f"{method} returned {type(body).__name__}, expected an object")

        error = body.get('error')
        if error is not None:
            if not isinstance(error, dict):
                raise MalformedResponseError(f"{method} returned a malformed error member: {error!r}")
            raise RpcError(error.get('code'), str(error.get('message', '')), error.get('data'))

        if response.status_code >= 400:
            raise MalformedResponseError(f"{method} got HTTP {response.status_code} without an RPC error")
        if 'result' not in body:
            raise MalformedResponseError(f"{method} response has neither 'result' nor 'error'")
        return body['result']

    def _make_rpc_request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        JSON-RPC call with exponential backoff on NetworkError. RpcError and
        MalformedResponseError are raised immediately.

        The final NetworkError has maybe_delivered=True if any attempt may
        have reached the node, not just the last one.
        """
        params = params or []
        attempt = 1
        maybe_delivered = False
        while True:
            try:
                return self._post_once(method, params)
            except NetworkError as e:
                maybe_delivered = maybe_delivered or e.maybe_delivered
                if attempt >= self.retry_policy.max_attempts:
                    logger.error("%s failed after %d attempt(s): %s", method, attempt, e)
                    if maybe_delivered == e.maybe_delivered:
                        raise
                    raise NetworkError(f"{e} (an earlier attempt may have been delivered)",
                                       maybe_delivered=True) from e
                delay = self.retry_policy.delay_for(attempt)
                logger.warning("%s attempt %d/%d failed (%s); retrying in %.2fs",
                               method, attempt, self.retry_policy.max_attempts, e, delay)
                self._sleep(delay)
                attempt += 1

    # --- Typed calls ---

    def get_balance(self, address: str, block_ref: BlockRef = "latest") -> int:
        result = self._make_rpc_request("eth_getBalance", [address, self.format_block_ref(block_ref)])
        return parse_quantity(result, "balance")

    def get_nonce(self, address: str, block_ref: BlockRef = "pending") -> int:
        result = self._make_rpc_request("eth_getTransactionCount", [address, self.format_block_ref(block_ref)])
        return parse_quantity(result, "nonce")

    def gas_price(self) -> int:
        return parse_quantity(self._make_rpc_request("eth_gasPrice"), "gasPrice")

    def block_number(self) -> int:
        return parse_quantity(self._make_rpc_request("eth_blockNumber"), "blockNumber")

    def chain_id(self) -> int:
        return parse_quantity(self._make_rpc_request("eth_chainId"), "chainId")

    def send_raw_transaction(self, raw_tx_hex: str) -> str:
        result = self._make_rpc_request("eth_sendRawTransaction", [raw_tx_hex])
        if not isinstance(result, str) or not result.startswith("0x") or len(result) != 66:
            raise MalformedResponseError(f"eth_sendRawTransaction returned {result!r}, expected a 32-byte hash")
        return result

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        result = self._make_rpc_request("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None # not mined yet
        return Receipt.from_rpc(result)

    def call_custom_rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        return self._make_rpc_request(method, params)

    def close(self) -> None:
        self.session.close()

    def __repr__(self) -> str:
        return f"EthereumClient(rpc_url='{self.rpc_url}', timeout={self.timeout}, retry={self.retry_policy!r})"
