# eth_loadgen_core/__init__.py

# Key classes are exposed here for users of the library.
# Scenarios may still import directly from modules.
from .accounts import Account, AccountManager
from .builder import TransactionBuilder
from .client_comms import EthereumClient
from .config import LoadTestConfig, RetryPolicy
from .driver import IterationOutcome, IterationResult, LoadTestRunner, ScenarioDriver
from .nonce_allocator import LeaseOutcome, NonceAllocator, NonceLease
from .receipts import ReceiptPoller
from .submitter import ClassificationRule, ErrorClassifier, TransactionSubmitter
from .tx import Receipt, SubmissionResult, TransferSpec, UnsignedTransaction
