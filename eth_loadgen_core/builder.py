# eth_loadgen_core/builder.py
"""
Turns a TransferSpec plus a leased nonce into a validated UnsignedTransaction.
Pure: no I/O and no shared state.
"""
from typing import Any, Optional

from eth_utils import is_hex_address
from web3 import Web3

from . import config as core_config
from .exceptions import InvalidAddressError, InvalidAmountError
from .tx import TransferSpec, UnsignedTransaction


def _check_uint256(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(f"{field} must be an integer, got {value!r}")
    if value < 0 or value > core_config.MAX_UINT256:
        raise InvalidAmountError(f"{field} out of range: {value}")
    return value


class TransactionBuilder:
    """Builds legacy value transfers with per-run defaults for gas limit and chain id."""

    def __init__(self,
                 default_gas_limit: int = core_config.DEFAULT_GAS_LIMIT,
                 default_chain_id: Optional[int] = core_config.DEFAULT_CHAIN_ID
                ):
        self.default_gas_limit = default_gas_limit
        self.default_chain_id = default_chain_id

    def build(self, spec: TransferSpec, nonce: int,
              network_gas_price: Optional[int] = None) -> UnsignedTransaction:
        """
        Validates every field and returns an immutable transaction.

        Args:
            spec: What to send. A fixed spec.gas_price wins over network_gas_price.
            nonce: The leased nonce.
            network_gas_price: The node's current gas price, used when spec.gas_price is None.

        Raises:
            InvalidAddressError: the recipient is not 0x + 40 hex characters.
            InvalidAmountError: a numeric field is missing, not an int, or out of range.
        """
        recipient = spec.recipient
        if not isinstance(recipient, str) or not recipient.startswith("0x") or not is_hex_address(recipient):
            raise InvalidAddressError(f"Invalid recipient address: {recipient!r}")

        value = _check_uint256(spec.value, "value")
        nonce = _check_uint256(nonce, "nonce")

        gas_price = spec.gas_price if spec.gas_price is not None else network_gas_price
        if gas_price is None:
            raise InvalidAmountError("No gas price available: none configured and none read from the node")
        gas_price = _check_uint256(gas_price, "gas price")

        gas_limit = spec.gas_limit if spec.gas_limit is not None else self.default_gas_limit
        if gas_limit is not None:
            gas_limit = _check_uint256(gas_limit, "gas limit")
            if gas_limit == 0:
                raise InvalidAmountError("gas limit must be greater than 0")

        chain_id = spec.chain_id if spec.chain_id is not None else self.default_chain_id
        if chain_id is not None:
            chain_id = _check_uint256(chain_id, "chain id")
            if chain_id == 0:
                raise InvalidAmountError("chain id must be positive")

        return UnsignedTransaction(
            recipient=Web3.to_checksum_address(recipient),
            value=value,
            gas_price=gas_price,
            nonce=nonce,
            gas_limit=gas_limit,
            chain_id=chain_id,
        )
