"""
Defines the basic data structures for transactions, submissions and receipts.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from web3.types import TxParams

from .exceptions import MalformedResponseError
from .nonce_allocator import LeaseOutcome


def parse_quantity(raw: Any, field: str = "quantity") -> int:
    """Decodes a JSON-RPC hex quantity ('0x1a') into an int."""
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if not isinstance(raw, str) or not raw.startswith(("0x", "0X")):
        raise MalformedResponseError(f"Expected hex {field}, got {raw!r}")
    try:
        return int(raw, 16)
    except ValueError:
        raise MalformedResponseError(f"Expected hex {field}, got {raw!r}")


@dataclass(frozen=True)
class TransferSpec:
    """
    What a single iteration wants to send. gas_price=None means
    "use the node's current gas price".
    """
    recipient: str
    value: int
    gas_price: Optional[int] = None
    gas_limit: Optional[int] = None
    chain_id: Optional[int] = None


@dataclass(frozen=True)
class UnsignedTransaction:
    """A validated legacy transfer, ready to be signed. Build it with TransactionBuilder."""
    recipient: str
    value: int
    gas_price: int
    nonce: int
    gas_limit: Optional[int] = None
    chain_id: Optional[int] = None

    def to_tx_params(self) -> TxParams:
        """Parameters in the shape eth_account's sign_transaction expects."""
        params: TxParams = {
            'to': self.recipient,
            'value': self.value,
            'gasPrice': self.gas_price,
            'nonce': self.nonce,
        }
        if self.gas_limit is not None:
            params['gas'] = self.gas_limit
        if self.chain_id is not None:
            params['chainId'] = self.chain_id # EIP-155 replay protection
        return params

    def __repr__(self) -> str:
        return (f"UnsignedTransaction(to='{self.recipient[:10]}...', nonce={self.nonce}, "
                f"value={self.value}, gasPrice={self.gas_price}, gas={self.gas_limit}, "
                f"chainId={self.chain_id})")


class ReceiptStatus(str, Enum):
    INCLUDED = "included"
    FAILED = "failed"


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_hash: str
    block_number: int
    status: ReceiptStatus
    gas_used: int

    @classmethod
    def from_rpc(cls, raw: Dict[str, Any]) -> 'Receipt':
        """Decodes an eth_getTransactionReceipt result object."""
        if not isinstance(raw, dict):
            raise MalformedResponseError(f"Receipt must be an object, got {type(raw).__name__}")
        try:
            block_hash = raw['blockHash']
            tx_hash = raw['transactionHash']
            block_number = parse_quantity(raw['blockNumber'], 'blockNumber')
            gas_used = parse_quantity(raw['gasUsed'], 'gasUsed')
        except KeyError as e:
            raise MalformedResponseError(f"Receipt is missing field {e}")

        # Pre-Byzantium receipts carry 'root' instead of 'status'; treat them as included.
        status_raw = raw.get('status')
        status = ReceiptStatus.INCLUDED
        if status_raw is not None and parse_quantity(status_raw, 'status') == 0:
            status = ReceiptStatus.FAILED

        return cls(
            tx_hash=tx_hash,
            block_hash=block_hash,
            block_number=block_number,
            status=status,
            gas_used=gas_used,
        )


class SubmissionStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    AMBIGUOUS = "ambiguous" # sent, acknowledgment unknown


@dataclass(frozen=True)
class SubmissionResult:
    """
    Outcome of one eth_sendRawTransaction attempt. tx_hash is set whenever the
    transaction was signed, so ambiguous submissions can still be reconciled.
    """
    status: SubmissionStatus
    lease_outcome: LeaseOutcome
    tx_hash: Optional[str] = None
    failure_kind: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def accepted(self) -> bool:
        return self.status is SubmissionStatus.ACCEPTED

    @property
    def ambiguous(self) -> bool:
        return self.status is SubmissionStatus.AMBIGUOUS

    def __repr__(self) -> str:
        return (f"SubmissionResult(status={self.status.value}, lease_outcome={self.lease_outcome.value}, "
                f"hash='{self.tx_hash}', kind={self.failure_kind}, error={self.error!r})")
