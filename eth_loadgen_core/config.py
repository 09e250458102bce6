# eth_loadgen_core/config.py
"""
Default configuration values for the Ethereum load generator, and the
LoadTestConfig object that scenarios build from a mapping or the environment.
"""
import os
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

# --- Client Communication ---
DEFAULT_TARGET_URL: str = "http://127.0.0.1:8545" # Default RPC endpoint for the Ethereum client
DEFAULT_CHAIN_ID: Optional[int] = None # None means ask the node via eth_chainId
DEFAULT_GAS_LIMIT: int = 21000   # Default gas limit for simple transfers
DEFAULT_RPC_TIMEOUT_SECONDS: float = 10.0
DEFAULT_POOL_MAXSIZE: int = 10   # HTTP connections kept per host

# --- Transport Retry (NetworkError only) ---
DEFAULT_RETRY_MAX_ATTEMPTS: int = 5
DEFAULT_RETRY_BASE_DELAY_SECONDS: float = 0.25
DEFAULT_RETRY_MULTIPLIER: float = 2.0
DEFAULT_RETRY_MAX_DELAY_SECONDS: float = 5.0

# --- Transfer Parameters ---
DEFAULT_RECIPIENT_ADDRESS: str = "0xDEADBEEFDEADBEEFDEADBEEFDEADBEEFDEADBEEF"
DEFAULT_VALUE_WEI: int = 10 ** 14 # 0.0001 ether
MAX_UINT256: int = 2 ** 256 - 1

# --- Receipt Polling ---
DEFAULT_WAIT_FOR_RECEIPT: bool = False
DEFAULT_RECEIPT_TIMEOUT_SECONDS: float = 30.0
DEFAULT_RECEIPT_POLL_INTERVAL_SECONDS: float = 1.0

# --- Load Shape ---
DEFAULT_VUS: int = 1
DEFAULT_ITERATIONS_PER_VU: int = 10

# --- Account Management ---
DEFAULT_KEY_FILE: str = './keys.csv' # CSV with 'pub_key' and 'priv_key' columns
MAX_ACCOUNTS_TO_LOAD: int = 100      # Safety limit for the number of accounts to load

# --- Logging ---
LOG_LEVEL: str = "INFO"
LOG_TO_FILE: bool = False
LOG_FILE_PATH: str = "loadgen.log"


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _optional_int(raw: Any, name: str) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    try:
        return int(raw, 0) if isinstance(raw, str) else int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _optional_float(raw: Any, name: str) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


class RetryPolicy:
    """
    Exponential backoff for transient transport failures.
    The n-th retry sleeps base_delay * multiplier**(n-1), capped at max_delay.
    """
    def __init__(self,
                 max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS,
                 base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
                 multiplier: float = DEFAULT_RETRY_MULTIPLIER,
                 max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
                ):
        if max_attempts < 1:
            raise ConfigurationError("retry max_attempts must be at least 1")
        if base_delay < 0 or max_delay < 0 or multiplier < 1:
            raise ConfigurationError("retry delays must be non-negative and multiplier >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay

    def delay_for(self, retry_number: int) -> float:
        """Sleep before the given retry (1-based)."""
        return min(self.base_delay * (self.multiplier ** (retry_number - 1)), self.max_delay)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> 'RetryPolicy':
        raw = raw or {}
        return cls(
            max_attempts=_int_or_default(raw.get('maxAttempts'), 'retry.maxAttempts', DEFAULT_RETRY_MAX_ATTEMPTS),
            base_delay=_float_or_default(raw.get('baseDelay'), 'retry.baseDelay', DEFAULT_RETRY_BASE_DELAY_SECONDS),
            multiplier=_float_or_default(raw.get('multiplier'), 'retry.multiplier', DEFAULT_RETRY_MULTIPLIER),
            max_delay=_float_or_default(raw.get('maxDelay'), 'retry.maxDelay', DEFAULT_RETRY_MAX_DELAY_SECONDS),
        )

    def __repr__(self) -> str:
        return (f"RetryPolicy(max_attempts={self.max_attempts}, base_delay={self.base_delay}, "
                f"multiplier={self.multiplier}, max_delay={self.max_delay})")


def _float_or_default(raw: Any, name: str, default: float) -> float:
    value = _optional_float(raw, name)
    return default if value is None else value


def _int_or_default(raw: Any, name: str, default: int) -> int:
    value = _optional_int(raw, name)
    return default if value is None else value


def _path_list(raw: Any, name: str) -> List[str]:
    """Accepts a list of paths or a comma-separated string."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        return [p.strip() for p in raw.split(",") if p.strip()]
    if isinstance(raw, (list, tuple)) and all(isinstance(p, str) for p in raw):
        return list(raw)
    raise ConfigurationError(f"{name} must be a list of paths or a comma-separated string, got {raw!r}")


class LoadTestConfig:
    """
    Everything a scenario needs to run: endpoint, credential, transfer
    parameters, transaction defaults, load shape and polling budgets.
    """
    def __init__(self,
                 url: str = DEFAULT_TARGET_URL,
                 credential: Optional[str] = None,
                 target: str = DEFAULT_RECIPIENT_ADDRESS,
                 value: int = DEFAULT_VALUE_WEI,
                 gas_price: Optional[int] = None,
                 gas_limit: int = DEFAULT_GAS_LIMIT,
                 chain_id: Optional[int] = DEFAULT_CHAIN_ID,
                 wait_for_receipt: bool = DEFAULT_WAIT_FOR_RECEIPT,
                 vus: int = DEFAULT_VUS,
                 iterations: Optional[int] = DEFAULT_ITERATIONS_PER_VU,
                 duration: Optional[float] = None,
                 receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
                 poll_interval: float = DEFAULT_RECEIPT_POLL_INTERVAL_SECONDS,
                 rpc_timeout: float = DEFAULT_RPC_TIMEOUT_SECONDS,
                 retry: Optional[RetryPolicy] = None,
                 error_rules: Optional[List[Dict[str, Any]]] = None,
                 key_files: Optional[List[str]] = None,
                 max_accounts: int = MAX_ACCOUNTS_TO_LOAD
                ):
        self.url = url
        self.credential = credential
        self.target = target
        self.value = value
        self.gas_price = gas_price
        self.gas_limit = gas_limit
        self.chain_id = chain_id
        self.wait_for_receipt = wait_for_receipt
        self.vus = vus
        self.iterations = iterations
        self.duration = duration
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.rpc_timeout = rpc_timeout
        self.retry = retry or RetryPolicy()
        self.error_rules: List[Dict[str, Any]] = list(error_rules or [])
        self.key_files: List[str] = list(key_files or [])
        self.max_accounts = max_accounts

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> 'LoadTestConfig':
        """
        Builds a config from the recognized options:
        {url, credential, defaults: {gasPrice, gasLimit, chainId}, target, value,
         waitForReceipt, vus, iterations, duration, receiptTimeout, pollInterval,
         rpcTimeout, retry: {...}, errorRules: [...], keyFiles: [...], maxAccounts}

        keyFiles adds the signing accounts found in those CSV files as senders;
        VUs are assigned to senders round-robin.
        """
        defaults = raw.get('defaults') or {}
        if not isinstance(defaults, Mapping):
            raise ConfigurationError("'defaults' must be a mapping")

        iterations = _optional_int(raw.get('iterations'), 'iterations')
        duration = _optional_float(raw.get('duration'), 'duration')
        if iterations is None and duration is None:
            iterations = DEFAULT_ITERATIONS_PER_VU

        value = _optional_int(raw.get('value'), 'value')
        gas_limit = _optional_int(defaults.get('gasLimit'), 'defaults.gasLimit')
        vus = _optional_int(raw.get('vus'), 'vus')
        max_accounts = _optional_int(raw.get('maxAccounts'), 'maxAccounts')

        return cls(
            url=raw.get('url') or DEFAULT_TARGET_URL,
            credential=raw.get('credential'),
            target=raw.get('target') or DEFAULT_RECIPIENT_ADDRESS,
            value=DEFAULT_VALUE_WEI if value is None else value,
            gas_price=_optional_int(defaults.get('gasPrice'), 'defaults.gasPrice'),
            gas_limit=DEFAULT_GAS_LIMIT if gas_limit is None else gas_limit,
            chain_id=_optional_int(defaults.get('chainId'), 'defaults.chainId'),
            wait_for_receipt=_parse_bool(raw.get('waitForReceipt', DEFAULT_WAIT_FOR_RECEIPT)),
            vus=DEFAULT_VUS if vus is None else vus,
            iterations=iterations,
            duration=duration,
            receipt_timeout=_float_or_default(raw.get('receiptTimeout'), 'receiptTimeout',
                                              DEFAULT_RECEIPT_TIMEOUT_SECONDS),
            poll_interval=_float_or_default(raw.get('pollInterval'), 'pollInterval',
                                            DEFAULT_RECEIPT_POLL_INTERVAL_SECONDS),
            rpc_timeout=_float_or_default(raw.get('rpcTimeout'), 'rpcTimeout', DEFAULT_RPC_TIMEOUT_SECONDS),
            retry=RetryPolicy.from_dict(raw.get('retry')),
            error_rules=raw.get('errorRules'),
            key_files=_path_list(raw.get('keyFiles'), 'keyFiles'),
            max_accounts=MAX_ACCOUNTS_TO_LOAD if max_accounts is None else max_accounts,
        )

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> 'LoadTestConfig':
        """Builds a config from environment variables, loading a .env file first if present."""
        load_dotenv(dotenv_path)
        raw: Dict[str, Any] = {
            'url': os.getenv('RPC_URL'),
            'credential': os.getenv('PRIVATE_KEY'),
            'target': os.getenv('TARGET_ADDRESS'),
            'value': os.getenv('VALUE_WEI'),
            'defaults': {
                'gasPrice': os.getenv('GAS_PRICE'),
                'gasLimit': os.getenv('GAS_LIMIT'),
                'chainId': os.getenv('CHAIN_ID'),
            },
            'waitForReceipt': os.getenv('WAIT_FOR_RECEIPT', 'false'),
            'vus': os.getenv('VUS'),
            'iterations': os.getenv('ITERATIONS'),
            'duration': os.getenv('DURATION'),
            'keyFiles': os.getenv('KEY_FILES'),
            'maxAccounts': os.getenv('MAX_ACCOUNTS'),
        }
        return cls.from_dict(raw)

    def validate(self) -> 'LoadTestConfig':
        """Raises ConfigurationError on the first invalid setting; returns self otherwise."""
        if not self.url:
            raise ConfigurationError("no RPC url provided")
        if not self.credential and not self.key_files:
            raise ConfigurationError("no credential or key files provided")
        if self.max_accounts < 1:
            raise ConfigurationError("maxAccounts must be greater than 0")
        if self.vus < 1:
            raise ConfigurationError("vus must be greater than 0")
        if self.iterations is None and self.duration is None:
            raise ConfigurationError("either iterations or duration must be set")
        if self.iterations is not None and self.iterations < 1:
            raise ConfigurationError("iterations must be greater than 0")
        if self.duration is not None and self.duration <= 0:
            raise ConfigurationError("duration must be greater than 0")
        if self.receipt_timeout <= 0 or self.poll_interval <= 0 or self.rpc_timeout <= 0:
            raise ConfigurationError("timeouts and poll interval must be greater than 0")
        if self.value < 0:
            raise ConfigurationError("value must not be negative")
        if self.gas_limit < 1:
            raise ConfigurationError("gas limit must be greater than 0")
        return self

    def __repr__(self) -> str:
        # keep the credential out of logs
        return (f"LoadTestConfig(url='{self.url}', target='{self.target}', value={self.value}, "
                f"gas_price={self.gas_price}, gas_limit={self.gas_limit}, chain_id={self.chain_id}, "
                f"vus={self.vus}, iterations={self.iterations}, duration={self.duration}, "
                f"wait_for_receipt={self.wait_for_receipt})")
