"""
Sender accounts for load generation: an address plus, optionally, the key
that signs for it. Nonce counters live in the NonceAllocator, not here.
"""
import logging
from typing import Dict, Iterator, List, Optional

import pandas as pd
from eth_account import Account as EthAccount
from eth_account.signers.local import LocalAccount

from . import config as core_config
from .exceptions import ConfigurationError, InvalidAddressError
from .nonce_allocator import normalize_address

logger = logging.getLogger(__name__)


class Account:
    """A checksummed address with an optional eth_account signer."""

    def __init__(self, address: str, signer: Optional[LocalAccount] = None):
        self.address = normalize_address(address)
        self.signer = signer

    @classmethod
    def from_key(cls, private_key: str) -> 'Account':
        """Derives the address from a hex private key (with or without 0x)."""
        try:
            signer = EthAccount.from_key(private_key)
        except Exception as e:
            # the key itself must never end up in the message
            raise ConfigurationError(f"Invalid private key: {type(e).__name__}") from e
        return cls(signer.address, signer)

    @classmethod
    def watch_only(cls, address: str) -> 'Account':
        return cls(address)

    @property
    def can_sign(self) -> bool:
        return self.signer is not None

    @property
    def signing_key(self):
        if self.signer is None:
            raise ConfigurationError(f"Account {self.address} has no signing key")
        return self.signer.key

    def __eq__(self, other) -> bool:
        return isinstance(other, Account) and self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def __repr__(self) -> str:
        return f"Account(address='{self.address}', can_sign={self.can_sign})"


class AccountManager:
    """
    Holds the accounts a run may send from, keyed by checksummed address
    so lookups are case-insensitive.
    """
    def __init__(self, accounts: Optional[List[Account]] = None):
        self._accounts: Dict[str, Account] = {}
        for account in accounts or []:
            self.add(account)

    @classmethod
    def from_key_files(cls,
                       key_file_paths: Optional[List[str]] = None,
                       max_accounts_to_load: int = core_config.MAX_ACCOUNTS_TO_LOAD
                      ) -> 'AccountManager':
        """
        Loads accounts from CSV files with 'pub_key' and 'priv_key' columns.

        :param key_file_paths: CSV files to read in order. Defaults to core_config.DEFAULT_KEY_FILE.
        :param max_accounts_to_load: Maximum number of unique accounts to load.
        """
        if key_file_paths is None:
            key_file_paths = [core_config.DEFAULT_KEY_FILE]

        manager = cls()
        logger.info("Loading up to %d accounts from %s", max_accounts_to_load, key_file_paths)
        for file_path in key_file_paths:
            if len(manager) >= max_accounts_to_load:
                break
            try:
                key_data_frame = pd.read_csv(file_path, dtype=str)
            except FileNotFoundError:
                logger.warning("Key file not found: %s", file_path)
                continue
            except pd.errors.EmptyDataError:
                logger.warning("Key file is empty: %s", file_path)
                continue

            if 'pub_key' not in key_data_frame.columns or 'priv_key' not in key_data_frame.columns:
                logger.warning("Skipping %s: expected 'pub_key' and 'priv_key' columns, got %s",
                               file_path, list(key_data_frame.columns))
                continue

            for row_number, row_data in key_data_frame.iterrows():
                if len(manager) >= max_accounts_to_load:
                    break
                pub_key, priv_key = row_data['pub_key'], row_data['priv_key']
                if pd.isna(pub_key) or pd.isna(priv_key):
                    logger.warning("Skipping row %s in %s: missing 'pub_key' or 'priv_key'", row_number, file_path)
                    continue
                try:
                    account = Account.from_key(priv_key.strip())
                except ConfigurationError as e:
                    logger.warning("Skipping row %s in %s: %s", row_number, file_path, e)
                    continue
                if account.address.lower() != pub_key.strip().lower():
                    logger.warning("Skipping row %s in %s: key does not belong to %s",
                                   row_number, file_path, pub_key)
                    continue
                if account.address not in manager:
                    manager.add(account)

        if not len(manager):
            logger.error("No accounts were loaded from %s", key_file_paths)
        else:
            logger.info("Loaded %d accounts", len(manager))
        return manager

    def add(self, account: Account) -> None:
        existing = self._accounts.get(account.address)
        if existing is not None and existing.can_sign and not account.can_sign:
            return # never downgrade a signing account to watch-only
        self._accounts[account.address] = account

    def get(self, address: str) -> Optional[Account]:
        try:
            key = normalize_address(address)
        except InvalidAddressError:
            return None
        return self._accounts.get(key)

    @property
    def addresses(self) -> List[str]:
        """Managed addresses in insertion order."""
        return list(self._accounts)

    def __contains__(self, address: str) -> bool:
        return self.get(address) is not None

    def __len__(self) -> int:
        return len(self._accounts)

    def __iter__(self) -> Iterator[Account]:
        return iter(list(self._accounts.values()))
