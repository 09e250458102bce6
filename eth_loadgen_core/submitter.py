# eth_loadgen_core/submitter.py
"""
Signs transactions, sends them through the RPC client and classifies the
node's answer into a SubmissionResult and a nonce lease outcome.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple

from eth_account import Account as EthAccount
from web3 import Web3

from .clients.base_client import IEthereumClient
from .exceptions import (ConfigurationError, MalformedResponseError, NetworkError,
                         RpcError, SigningError)
from .nonce_allocator import LeaseOutcome
from .tx import SubmissionResult, SubmissionStatus, UnsignedTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationRule:
    """
    Maps an RPC error to a failure kind and lease outcome. pattern is a regex
    searched in the lower-cased error message; code, if set, must match exactly.
    """
    kind: str
    pattern: str
    outcome: LeaseOutcome
    code: Optional[int] = None
    _regex: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        try:
            object.__setattr__(self, '_regex', re.compile(self.pattern))
        except re.error as e:
            raise ConfigurationError(f"Bad pattern for rule '{self.kind}': {e}")

    def matches(self, error: RpcError) -> bool:
        if self.code is not None and error.code != self.code:
            return False
        return self._regex.search((error.message or "").lower()) is not None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> 'ClassificationRule':
        """{'kind': ..., 'pattern': ..., 'outcome': 'rejected-retryable', 'code': -32000}"""
        try:
            kind = raw['kind']
            pattern = raw['pattern']
            outcome = LeaseOutcome(raw['outcome'])
        except KeyError as e:
            raise ConfigurationError(f"Error rule is missing {e}: {dict(raw)!r}")
        except ValueError:
            raise ConfigurationError(f"Unknown outcome in error rule: {raw.get('outcome')!r}")
        code = raw.get('code')
        if code is not None and (isinstance(code, bool) or not isinstance(code, int)):
            raise ConfigurationError(f"Error rule code must be an integer, got {code!r}")
        return cls(kind=kind, pattern=pattern, outcome=outcome, code=code)


DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    # Same bytes sent twice (e.g. transport retry): the node already holds it.
    ClassificationRule("already-known", r"already known|known transaction", LeaseOutcome.CONFIRMED),
    ClassificationRule("nonce-too-low", r"nonce too low", LeaseOutcome.REJECTED_RETRYABLE),
    ClassificationRule("nonce-too-high", r"nonce too high", LeaseOutcome.REJECTED_RETRYABLE),
    ClassificationRule("underpriced", r"underpriced", LeaseOutcome.REJECTED_RETRYABLE),
    ClassificationRule("insufficient-funds", r"insufficient funds", LeaseOutcome.REJECTED_TERMINAL),
)

UNKNOWN_RPC_KIND = "rpc-error"


class ErrorClassifier:
    """Ordered rule table; the first matching rule wins."""

    def __init__(self, rules: Iterable[ClassificationRule] = DEFAULT_RULES,
                 fallback: LeaseOutcome = LeaseOutcome.REJECTED_TERMINAL):
        self.rules: List[ClassificationRule] = list(rules)
        self.fallback = fallback

    @classmethod
    def from_config(cls, extra_rules: Optional[List[Dict[str, Any]]] = None) -> 'ErrorClassifier':
        """Configured rules are consulted before the built-in ones."""
        extra = [ClassificationRule.from_dict(r) for r in (extra_rules or [])]
        return cls(rules=extra + list(DEFAULT_RULES))

    def classify(self, error: RpcError) -> Tuple[str, LeaseOutcome]:
        for rule in self.rules:
            if rule.matches(error):
                return rule.kind, rule.outcome
        return UNKNOWN_RPC_KIND, self.fallback


class TransactionSubmitter:
    """Signs and submits one transaction per call."""

    def __init__(self, client: IEthereumClient, classifier: Optional[ErrorClassifier] = None):
        self.client = client
        self.classifier = classifier or ErrorClassifier()

    @staticmethod
    def sign(tx: UnsignedTransaction, signing_key: Any) -> Tuple[str, str]:
        """
        Signs a legacy transaction (EIP-155 when tx.chain_id is set).
        Returns (tx_hash, raw_tx_hex), both 0x-prefixed.
        """
        try:
            signed = EthAccount.sign_transaction(tx.to_tx_params(), signing_key)
        except Exception as e:
            raise SigningError(f"Could not sign transaction with nonce {tx.nonce}: {e}") from e
        return Web3.to_hex(signed.hash), Web3.to_hex(signed.raw_transaction)

    def submit(self, tx: UnsignedTransaction, signing_key: Any) -> SubmissionResult:
        """
        Sends the transaction exactly once (the client's transport retry
        re-sends the same signed bytes) and classifies the result.

        :raises SigningError: before any network call if the key is unusable.
        """
        local_hash, raw_tx_hex = self.sign(tx, signing_key)

        try:
            node_hash = self.client.send_raw_transaction(raw_tx_hex)
        except RpcError as e:
            kind, outcome = self.classifier.classify(e)
            if outcome is LeaseOutcome.CONFIRMED:
                logger.debug("Node already knows %s (nonce %d); treating as accepted", local_hash, tx.nonce)
                return SubmissionResult(SubmissionStatus.ACCEPTED, outcome, tx_hash=local_hash,
                                        failure_kind=kind, error=e)
            return SubmissionResult(SubmissionStatus.REJECTED, outcome, tx_hash=local_hash,
                                    failure_kind=kind, error=e)
        except NetworkError as e:
            if not e.maybe_delivered:
                return SubmissionResult(SubmissionStatus.REJECTED, LeaseOutcome.REJECTED_RETRYABLE,
                                        tx_hash=local_hash, failure_kind="network", error=e)
            logger.error("Ambiguous submission of %s (nonce %d): %s; reconcile manually",
                         local_hash, tx.nonce, e)
            return SubmissionResult(SubmissionStatus.AMBIGUOUS, LeaseOutcome.REJECTED_TERMINAL,
                                    tx_hash=local_hash, failure_kind="network", error=e)
        except MalformedResponseError as e:
            logger.error("Ambiguous submission of %s (nonce %d): %s; reconcile manually",
                         local_hash, tx.nonce, e)
            return SubmissionResult(SubmissionStatus.AMBIGUOUS, LeaseOutcome.REJECTED_TERMINAL,
                                    tx_hash=local_hash, failure_kind="malformed-response", error=e)

        if node_hash.lower() != local_hash.lower():
            logger.warning("Node returned hash %s for locally signed %s", node_hash, local_hash)
        return SubmissionResult(SubmissionStatus.ACCEPTED, LeaseOutcome.CONFIRMED, tx_hash=node_hash)
