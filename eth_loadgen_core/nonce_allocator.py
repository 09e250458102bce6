"""
Hands out nonces for sender accounts shared by many concurrent virtual users.

Each account gets its own lock, counter and retry queue, so accounts never
contend with each other. No network I/O happens while an account lock is held:
the only RPC call (seeding the counter in initialize) runs under a separate
per-address init lock that lease and release never touch.
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

from eth_utils import is_hex_address, to_checksum_address

from .exceptions import AllocatorStateError, InvalidAddressError

if TYPE_CHECKING:
    from .clients.base_client import IEthereumClient

logger = logging.getLogger(__name__)


class LeaseOutcome(str, Enum):
    CONFIRMED = "confirmed"                   # node acknowledged the transaction
    REJECTED_RETRYABLE = "rejected-retryable" # value goes back to the retry queue
    REJECTED_TERMINAL = "rejected-terminal"   # value is burned


@dataclass(frozen=True)
class NonceLease:
    """An exclusive claim on one nonce value for one account, pending resolution."""
    address: str
    nonce: int
    lease_id: int


class _AccountNonceState:
    __slots__ = ('lock', 'next_nonce', 'retry_queue', 'outstanding', 'burned', 'issued', 'retired')

    def __init__(self, next_nonce: int):
        self.lock = threading.Lock()
        self.next_nonce = next_nonce
        self.retry_queue: Deque[int] = deque()
        self.outstanding: Dict[int, NonceLease] = {}
        self.burned: List[int] = []
        self.issued = 0
        self.retired = False # set by reset; the registry no longer points here


def normalize_address(address: str) -> str:
    """Checksums an address so lookups are case-insensitive."""
    if not isinstance(address, str) or not is_hex_address(address):
        raise InvalidAddressError(f"Not a valid address: {address!r}")
    return to_checksum_address(address)


class NonceAllocator:
    """
    Sole writer of every managed account's nonce counter.

    Retry-queue values are always dispensed before the live counter advances,
    oldest-queued first.
    """
    def __init__(self, client: 'IEthereumClient', block_ref: str = "pending"):
        """
        :param client: RPC client used once per account to read the on-chain nonce.
        :param block_ref: Block tag for eth_getTransactionCount. 'pending' counts
                          transactions already sitting in the node's pool.
        """
        self._client = client
        self._block_ref = block_ref
        self._registry_lock = threading.Lock()
        self._accounts: Dict[str, _AccountNonceState] = {}
        self._init_locks: Dict[str, threading.Lock] = {}

    def _state_for(self, address: str) -> Optional[_AccountNonceState]:
        with self._registry_lock:
            return self._accounts.get(address)

    def _require_state(self, address: str) -> _AccountNonceState:
        state = self._state_for(address)
        if state is None:
            raise AllocatorStateError(f"Account {address} was never initialized")
        return state

    def _init_lock_for(self, address: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._init_locks.get(address)
            if lock is None:
                lock = threading.Lock()
                self._init_locks[address] = lock
            return lock

    def initialize(self, address: str) -> int:
        """
        Seeds the counter for an account from the chain and returns it.
        Idempotent: an already-initialized account returns its current counter
        without touching the network, even with concurrent callers.
        """
        key = normalize_address(address)
        state = self._state_for(key)
        if state is not None:
            with state.lock:
                return state.next_nonce

        with self._init_lock_for(key):
            state = self._state_for(key)
            if state is not None:
                with state.lock:
                    return state.next_nonce

            onchain_nonce = self._client.get_nonce(key, self._block_ref)
            with self._registry_lock:
                self._accounts[key] = _AccountNonceState(onchain_nonce)

        logger.info("Seeded nonce counter for %s at %d", key, onchain_nonce)
        return onchain_nonce

    def is_initialized(self, address: str) -> bool:
        return self._state_for(normalize_address(address)) is not None

    def lease(self, address: str) -> NonceLease:
        """Atomically claims the next nonce for an account."""
        key = normalize_address(address)
        while True:
            state = self._require_state(key)
            with state.lock:
                if state.retired:
                    continue # reset raced us; look the account up again
                from_retry_queue = bool(state.retry_queue)
                if from_retry_queue:
                    nonce = state.retry_queue.popleft()
                else:
                    nonce = state.next_nonce
                    state.next_nonce += 1
                state.issued += 1
                lease = NonceLease(address=key, nonce=nonce, lease_id=state.issued)
                state.outstanding[lease.lease_id] = lease
                break

        logger.debug("lease address=%s nonce=%d lease_id=%d reused=%s",
                     key, nonce, lease.lease_id, from_retry_queue)
        return lease

    def release(self, lease: NonceLease, outcome: LeaseOutcome) -> None:
        """
        Resolves a lease. Confirmed values stay consumed, retryable values go to
        the back of the retry queue, terminal values are burned for good.

        :raises AllocatorStateError: on a second release, a lease this allocator
                                     never issued, or an unknown outcome.
        """
        if not isinstance(outcome, LeaseOutcome):
            raise AllocatorStateError(f"Unknown lease outcome {outcome!r}")

        state = self._require_state(lease.address)
        with state.lock:
            owned = state.outstanding.get(lease.lease_id)
            if owned != lease:
                raise AllocatorStateError(
                    f"Lease {lease} is not outstanding (already released or foreign)")
            del state.outstanding[lease.lease_id]

            if outcome is LeaseOutcome.REJECTED_RETRYABLE:
                state.retry_queue.append(lease.nonce)
            elif outcome is LeaseOutcome.REJECTED_TERMINAL:
                state.burned.append(lease.nonce)

        if outcome is LeaseOutcome.REJECTED_TERMINAL:
            logger.warning("Burned nonce %d for %s (lease_id=%d); the account now has a gap at this nonce",
                           lease.nonce, lease.address, lease.lease_id)
        else:
            logger.debug("release address=%s nonce=%d lease_id=%d outcome=%s",
                         lease.address, lease.nonce, lease.lease_id, outcome.value)

    def outstanding(self, address: str) -> List[NonceLease]:
        """Leases issued for an account and not yet released, lowest nonce first."""
        state = self._require_state(normalize_address(address))
        with state.lock:
            leases = list(state.outstanding.values())
        return sorted(leases, key=lambda l: l.nonce)

    def reset(self, address: str) -> None:
        """
        Forgets an account so the next initialize re-reads the nonce from chain.
        Only allowed when no lease is outstanding.
        """
        key = normalize_address(address)
        state = self._require_state(key)
        with state.lock:
            if state.outstanding:
                raise AllocatorStateError(
                    f"Cannot reset {key}: {len(state.outstanding)} lease(s) outstanding")
            state.retired = True
            with self._registry_lock:
                self._accounts.pop(key, None)
        logger.info("Reset nonce state for %s", key)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Point-in-time view of every account's bookkeeping, for audits and logs."""
        with self._registry_lock:
            accounts = list(self._accounts.items())

        view: Dict[str, Dict[str, Any]] = {}
        for address, state in accounts:
            with state.lock:
                view[address] = {
                    'next_nonce': state.next_nonce,
                    'retry_queue': list(state.retry_queue),
                    'burned': list(state.burned),
                    'outstanding': sorted(l.nonce for l in state.outstanding.values()),
                }
        return view
