# eth_loadgen_core/driver.py
"""
Runs the load: one ScenarioDriver per virtual user (VU), each looping
lease -> build -> submit -> (optional) wait for receipt -> release, and a
LoadTestRunner that fans the VUs out over a thread pool and one or more
sender accounts.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from . import config as core_config
from .accounts import Account, AccountManager
from .builder import TransactionBuilder
from .client_comms import EthereumClient
from .clients.base_client import IEthereumClient
from .config import LoadTestConfig
from .exceptions import (AllocatorStateError, ConfigurationError, LoadGenError, MalformedResponseError,
                         ReceiptTimeoutError, SigningError, ValidationError)
from .nonce_allocator import LeaseOutcome, NonceAllocator, NonceLease
from .receipts import ReceiptPoller
from .stats import summarize
from .submitter import ErrorClassifier, TransactionSubmitter
from .tx import SubmissionStatus, TransferSpec, parse_quantity

logger = logging.getLogger(__name__)


class IterationOutcome(str, Enum):
    ACCEPTED = "accepted"     # node acknowledged, receipt not awaited
    MINED = "mined"           # receipt obtained
    PENDING = "pending"       # acknowledged, no receipt within the timeout
    REJECTED = "rejected"     # node refused the transaction
    AMBIGUOUS = "ambiguous"   # sent, acknowledgment unknown
    FAILED = "failed"         # never left the process
    CANCELLED = "cancelled"   # stop requested before submission


SUCCESSFUL_OUTCOMES = (IterationOutcome.ACCEPTED, IterationOutcome.MINED, IterationOutcome.PENDING)

_SUBMISSION_TO_OUTCOME = {
    SubmissionStatus.ACCEPTED: IterationOutcome.ACCEPTED,
    SubmissionStatus.REJECTED: IterationOutcome.REJECTED,
    SubmissionStatus.AMBIGUOUS: IterationOutcome.AMBIGUOUS,
}


@dataclass
class IterationResult:
    vu: int
    iteration: int
    sender: str
    nonce: int
    outcome: IterationOutcome = IterationOutcome.FAILED
    gas_price: Optional[int] = None
    balance: Optional[int] = None
    tx_hash: Optional[str] = None
    failure_kind: Optional[str] = None
    error: Optional[str] = None
    receipt_block: Optional[int] = None
    receipt_status: Optional[str] = None
    gas_used: Optional[int] = None
    started_at: float = 0.0
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        row = dict(self.__dict__)
        row['outcome'] = self.outcome.value
        return row


class ScenarioDriver:
    """
    One virtual user. Owns no nonce state: every nonce comes from the shared
    allocator and is released exactly once per iteration.
    """
    def __init__(self,
                 vu_id: int,
                 sender: Account,
                 allocator: NonceAllocator,
                 client: IEthereumClient,
                 builder: TransactionBuilder,
                 submitter: TransactionSubmitter,
                 receipt_poller: ReceiptPoller,
                 spec: TransferSpec,
                 wait_for_receipt: bool = core_config.DEFAULT_WAIT_FOR_RECEIPT,
                 poll_interval: float = core_config.DEFAULT_RECEIPT_POLL_INTERVAL_SECONDS,
                 receipt_timeout: float = core_config.DEFAULT_RECEIPT_TIMEOUT_SECONDS,
                 stop_event: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.monotonic
                ):
        if not sender.can_sign:
            raise ConfigurationError(f"Sender {sender.address} has no signing key")
        self.vu_id = vu_id
        self.sender = sender
        self.allocator = allocator
        self.client = client
        self.builder = builder
        self.submitter = submitter
        self.receipt_poller = receipt_poller
        self.spec = spec
        self.wait_for_receipt = wait_for_receipt
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self.next_nonce_hint: Optional[int] = None
        self.results: List[IterationResult] = []

    def _finish(self, result: IterationResult, t0: float) -> IterationResult:
        result.duration = self._clock() - t0
        log = logger.info if result.outcome in SUCCESSFUL_OUTCOMES else logger.warning
        log("vu=%d iteration=%d sender=%s nonce=%d gas_price=%s balance=%s outcome=%s tx_hash=%s error=%s",
            result.vu, result.iteration, result.sender, result.nonce, result.gas_price,
            result.balance, result.outcome.value, result.tx_hash, result.error)
        self.next_nonce_hint = result.nonce + 1
        self.results.append(result)
        return result

    def _fail_before_send(self, lease: NonceLease, result: IterationResult, t0: float,
                          outcome: IterationOutcome, kind: str, error: Any) -> IterationResult:
        self.allocator.release(lease, LeaseOutcome.REJECTED_RETRYABLE)
        result.outcome = outcome
        result.failure_kind = kind
        result.error = str(error) if error is not None else None
        return self._finish(result, t0)

    def run_iteration(self, iteration: int) -> IterationResult:
        """
        Runs one lease/build/submit cycle.

        :raises AllocatorStateError: the nonce bookkeeping is broken; the run must stop.
        """
        t0 = self._clock()
        address = self.sender.address
        lease = self.allocator.lease(address)
        result = IterationResult(vu=self.vu_id, iteration=iteration, sender=address,
                                 nonce=lease.nonce, started_at=time.time())

        network_gas_price = None
        if self.spec.gas_price is None:
            try:
                network_gas_price = self.client.gas_price()
            except LoadGenError as e:
                return self._fail_before_send(lease, result, t0, IterationOutcome.FAILED, "gas-price", e)
        result.gas_price = self.spec.gas_price if self.spec.gas_price is not None else network_gas_price

        try:
            result.balance = self.client.get_balance(address, self.client.block_number())
        except LoadGenError as e:
            logger.debug("Balance lookup for %s failed: %s", address, e)

        try:
            tx = self.builder.build(self.spec, lease.nonce, network_gas_price)
        except ValidationError as e:
            return self._fail_before_send(lease, result, t0, IterationOutcome.FAILED, "validation", e)

        if self.stop_event.is_set():
            return self._fail_before_send(lease, result, t0, IterationOutcome.CANCELLED, None, None)

        try:
            submission = self.submitter.submit(tx, self.sender.signing_key)
        except SigningError as e:
            return self._fail_before_send(lease, result, t0, IterationOutcome.FAILED, "signing", e)
        except BaseException:
            self.allocator.release(lease, LeaseOutcome.REJECTED_TERMINAL)
            logger.error("Submission of nonce %d for %s interrupted without a known acknowledgment; "
                         "reconcile manually", lease.nonce, address)
            raise
        self.allocator.release(lease, submission.lease_outcome)

        result.outcome = _SUBMISSION_TO_OUTCOME[submission.status]
        result.tx_hash = submission.tx_hash
        if submission.status is not SubmissionStatus.ACCEPTED:
            result.failure_kind = submission.failure_kind
            result.error = str(submission.error) if submission.error is not None else None

        if submission.accepted and self.wait_for_receipt:
            try:
                receipt = self.receipt_poller.wait_for_receipt(
                    submission.tx_hash, self.poll_interval, self.receipt_timeout)
            except ReceiptTimeoutError as e:
                result.outcome = IterationOutcome.PENDING
                result.error = str(e)
            except LoadGenError as e:
                result.outcome = IterationOutcome.PENDING
                result.error = f"receipt lookup failed: {e}"
            else:
                result.outcome = IterationOutcome.MINED
                result.receipt_block = receipt.block_number
                result.receipt_status = receipt.status.value
                result.gas_used = receipt.gas_used

        return self._finish(result, t0)

    def run(self, iterations: Optional[int] = None, duration: Optional[float] = None) -> List[IterationResult]:
        """
        Loops until the iteration count is reached, the duration has elapsed or
        the stop event is set, whichever comes first. With neither limit the
        loop only ends on the stop event.
        """
        start = self._clock()
        iteration = 0
        while not self.stop_event.is_set():
            if iterations is not None and iteration >= iterations:
                break
            if duration is not None and self._clock() - start >= duration:
                break
            self.run_iteration(iteration)
            iteration += 1
        return self.results


class LoadTestRunner:
    """
    Runs `vus` ScenarioDrivers in parallel, all sharing a single client,
    allocator, builder and submitter. VUs are spread over the sender accounts
    round-robin, so several VUs may lease nonces from the same sender.
    """
    def __init__(self, config: LoadTestConfig,
                 client: Optional[IEthereumClient] = None,
                 senders: Optional[List[Account]] = None,
                 receipt_poller: Optional[ReceiptPoller] = None):
        self.config = config.validate()
        self.client = client or EthereumClient(
            rpc_url=config.url,
            timeout=config.rpc_timeout,
            retry_policy=config.retry,
            pool_maxsize=max(config.vus, core_config.DEFAULT_POOL_MAXSIZE),
        )
        self.senders: List[Account] = list(senders) if senders else self._load_senders(config)
        self.allocator = NonceAllocator(self.client)
        self.submitter = TransactionSubmitter(self.client, ErrorClassifier.from_config(config.error_rules))
        self.receipt_poller = receipt_poller or ReceiptPoller(self.client)
        self.spec = TransferSpec(recipient=config.target, value=config.value, gas_price=config.gas_price)
        self.builder: Optional[TransactionBuilder] = None
        self.stop_event = threading.Event()
        self.results: List[IterationResult] = []
        self._results_lock = threading.Lock()
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    @staticmethod
    def _load_senders(config: LoadTestConfig) -> List[Account]:
        """The credential's account first, then the signing accounts from the key files."""
        manager = AccountManager()
        if config.credential:
            manager.add(Account.from_key(config.credential))
        if config.key_files:
            for account in AccountManager.from_key_files(config.key_files, config.max_accounts):
                manager.add(account)
        senders = [account for account in manager if account.can_sign][:config.max_accounts]
        if not senders:
            raise ConfigurationError(f"No usable sender accounts in {config.key_files}")
        return senders

    @property
    def sender(self) -> Account:
        """The first sender."""
        return self.senders[0]

    def sender_for(self, vu_id: int) -> Account:
        return self.senders[vu_id % len(self.senders)]

    def setup(self) -> Dict[str, int]:
        """
        Resolves the chain id and seeds every sender's nonce.
        Returns the starting nonce per sender address.
        """
        chain_id = self.config.chain_id
        if chain_id is None:
            chain_id = self.client.chain_id()
        self.builder = TransactionBuilder(default_gas_limit=self.config.gas_limit, default_chain_id=chain_id)
        start_nonces = {}
        for sender in self.senders:
            start_nonces[sender.address] = self.allocator.initialize(sender.address)
            logger.info("Sender %s starts at nonce %d", sender.address, start_nonces[sender.address])
        logger.info("Setup complete: %d sender(s) chain_id=%d target=%s",
                    len(self.senders), chain_id, self.config.target)
        return start_nonces

    def _new_driver(self, vu_id: int) -> ScenarioDriver:
        return ScenarioDriver(
            vu_id=vu_id,
            sender=self.sender_for(vu_id),
            allocator=self.allocator,
            client=self.client,
            builder=self.builder,
            submitter=self.submitter,
            receipt_poller=self.receipt_poller,
            spec=self.spec,
            wait_for_receipt=self.config.wait_for_receipt,
            poll_interval=self.config.poll_interval,
            receipt_timeout=self.config.receipt_timeout,
            stop_event=self.stop_event,
        )

    def _run_vu(self, vu_id: int) -> None:
        driver = self._new_driver(vu_id)
        try:
            driver.run(iterations=self.config.iterations, duration=self.config.duration)
        finally:
            with self._results_lock:
                self.results.extend(driver.results)

    def run(self) -> List[IterationResult]:
        """
        Runs all VUs to completion. An exception in the calling thread
        (KeyboardInterrupt included) sets the stop event before the pool
        shuts down, so VUs cancel their remaining iterations.

        :raises AllocatorStateError: re-raised after every VU has stopped.
        """
        if self.builder is None:
            self.setup()

        logger.info("Starting %d VU(s) over %d sender(s): iterations=%s duration=%s wait_for_receipt=%s",
                    self.config.vus, len(self.senders), self.config.iterations, self.config.duration,
                    self.config.wait_for_receipt)
        self.started_at = time.time()
        fatal: Optional[AllocatorStateError] = None
        with ThreadPoolExecutor(max_workers=self.config.vus, thread_name_prefix="vu") as pool:
            try:
                futures = {pool.submit(self._run_vu, vu_id): vu_id for vu_id in range(self.config.vus)}
                for future in as_completed(futures):
                    vu_id = futures[future]
                    try:
                        future.result()
                    except AllocatorStateError as e:
                        logger.critical("VU %d hit a nonce bookkeeping error, stopping all VUs: %s", vu_id, e)
                        self.stop()
                        fatal = fatal or e
                    except Exception:
                        logger.exception("VU %d stopped unexpectedly", vu_id)
            except BaseException:
                logger.warning("Run interrupted, stopping all VUs")
                self.stop()
                raise
            finally:
                self.finished_at = time.time()

        if fatal is not None:
            raise fatal
        logger.info("Run finished: %d iteration(s) in %.2fs", len(self.results),
                    self.finished_at - self.started_at)
        return self.results

    def stop(self) -> None:
        self.stop_event.set()

    def fetch_block_headers(self) -> Dict[int, Dict[str, int]]:
        """
        Timestamp and gas figures for every block a result was mined in, and
        its parent. Blocks that cannot be read are left out.
        """
        mined = {r.receipt_block for r in self.results if r.receipt_block is not None}
        headers: Dict[int, Dict[str, int]] = {}
        for number in sorted(mined | {n - 1 for n in mined if n > 0}):
            try:
                raw = self.client.call_custom_rpc("eth_getBlockByNumber", [hex(number), False])
                if not isinstance(raw, dict):
                    raise MalformedResponseError(f"block {number} returned {raw!r}")
                headers[number] = {
                    'timestamp': parse_quantity(raw.get('timestamp'), 'timestamp'),
                    'gas_used': parse_quantity(raw.get('gasUsed'), 'gasUsed'),
                    'gas_limit': parse_quantity(raw.get('gasLimit'), 'gasLimit'),
                }
            except LoadGenError as e:
                logger.warning("Could not read block %d: %s", number, e)
        return headers

    def summary(self) -> Dict[str, Any]:
        elapsed = None
        if self.started_at is not None and self.finished_at is not None:
            elapsed = self.finished_at - self.started_at
        headers = self.fetch_block_headers() if self.config.wait_for_receipt else None
        return summarize(self.results, elapsed_seconds=elapsed, block_headers=headers)

    def close(self) -> None:
        self.client.close()
