import abc
from typing import Any, List, Optional, Union

from eth_loadgen_core.tx import Receipt

BlockRef = Union[int, str] # block number or tag ('latest', 'pending', ...)


class IEthereumClient(abc.ABC):
    """
    Abstract Base Class for the typed RPC gateway every other component talks to.
    Implementations must be safe to share between threads.

    Every call raises NetworkError on connection/timeout failures (after the
    implementation's retry budget), RpcError on a JSON-RPC error object and
    MalformedResponseError when the response cannot be decoded.
    """

    def __init__(self, rpc_url: str):
        self.rpc_url = rpc_url

    @abc.abstractmethod
    def get_balance(self, address: str, block_ref: BlockRef = "latest") -> int:
        """Balance of an address in wei (eth_getBalance)."""
        pass

    @abc.abstractmethod
    def get_nonce(self, address: str, block_ref: BlockRef = "pending") -> int:
        """Transaction count of an address (eth_getTransactionCount)."""
        pass

    @abc.abstractmethod
    def gas_price(self) -> int:
        """Current gas price in wei (eth_gasPrice)."""
        pass

    @abc.abstractmethod
    def block_number(self) -> int:
        """Number of the most recent block (eth_blockNumber)."""
        pass

    @abc.abstractmethod
    def chain_id(self) -> int:
        """Chain id used for EIP-155 signing (eth_chainId)."""
        pass

    @abc.abstractmethod
    def send_raw_transaction(self, raw_tx_hex: str) -> str:
        """
        Submits a signed transaction (eth_sendRawTransaction).
        Returns the transaction hash as a 0x-prefixed hex string.
        """
        pass

    @abc.abstractmethod
    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Receipt of a mined transaction, or None while it is not mined yet."""
        pass

    @abc.abstractmethod
    def call_custom_rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Calls an arbitrary JSON-RPC method and returns its 'result', with the
        same error mapping as the typed calls.
        """
        pass

    def close(self) -> None:
        """Releases pooled connections. No-op by default."""
        pass

    @staticmethod
    def format_block_ref(block_ref: BlockRef) -> str:
        """Encodes a block number as a hex quantity; tags pass through."""
        if isinstance(block_ref, bool):
            raise TypeError("block_ref must be an int or a tag string")
        if isinstance(block_ref, int):
            return hex(block_ref)
        return block_ref
