import pytest
from eth_account import Account as EthAccount

from eth_loadgen_core.accounts import Account, AccountManager
from eth_loadgen_core.exceptions import ConfigurationError

KEY_A = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
KEY_B = "0x" + "11" * 32
ADDR_A = EthAccount.from_key(KEY_A).address
ADDR_B = EthAccount.from_key(KEY_B).address


def write_keys(path, rows):
    lines = ["pub_key,priv_key"] + [f"{pub},{priv}" for pub, priv in rows]
    path.write_text("\n".join(lines) + "\n")
    return str(path)


class TestAccount:
    def test_from_key(self):
        account = Account.from_key(KEY_A)
        assert account.address == ADDR_A
        assert account.can_sign
        assert account.signing_key == EthAccount.from_key(KEY_A).key

    def test_from_key_without_prefix(self):
        assert Account.from_key(KEY_A[2:]).address == ADDR_A

    def test_invalid_key_does_not_leak(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Account.from_key("0xnotakey")
        assert "notakey" not in str(exc_info.value)

    def test_watch_only(self):
        account = Account.watch_only(ADDR_A.lower())
        assert account.address == ADDR_A
        assert not account.can_sign
        with pytest.raises(ConfigurationError):
            account.signing_key

    def test_equality_is_by_address(self):
        assert Account.from_key(KEY_A) == Account.watch_only(ADDR_A.lower())


class TestAccountManager:
    def test_lookup_is_case_insensitive(self):
        manager = AccountManager([Account.from_key(KEY_A)])
        assert manager.get(ADDR_A.lower()).address == ADDR_A
        assert ADDR_A.upper().replace("0X", "0x") in manager
        assert manager.get("0xnope") is None

    def test_watch_only_does_not_replace_signer(self):
        manager = AccountManager([Account.from_key(KEY_A)])
        manager.add(Account.watch_only(ADDR_A))
        assert manager.get(ADDR_A).can_sign

    def test_from_key_files(self, tmp_path):
        first = write_keys(tmp_path / "a.csv", [(ADDR_A, KEY_A)])
        second = write_keys(tmp_path / "b.csv", [(ADDR_A.lower(), KEY_A), (ADDR_B, KEY_B)])

        manager = AccountManager.from_key_files([first, second])

        assert manager.addresses == [ADDR_A, ADDR_B]
        assert all(account.can_sign for account in manager)

    def test_limit_is_enforced(self, tmp_path):
        path = write_keys(tmp_path / "keys.csv", [(ADDR_A, KEY_A), (ADDR_B, KEY_B)])
        assert len(AccountManager.from_key_files([path], max_accounts_to_load=1)) == 1

    def test_malformed_rows_are_skipped(self, tmp_path):
        path = write_keys(tmp_path / "keys.csv", [
            (ADDR_A, "0xbad"),       # unusable key
            (ADDR_A, KEY_B),         # key for another address
            (ADDR_B, ""),            # missing key
            (ADDR_B, KEY_B),
        ])
        assert AccountManager.from_key_files([path]).addresses == [ADDR_B]

    def test_missing_and_empty_files(self, tmp_path, caplog):
        empty = tmp_path / "empty.csv"
        empty.write_text("")
        manager = AccountManager.from_key_files([str(tmp_path / "missing.csv"), str(empty)])
        assert len(manager) == 0
        assert "Key file not found" in caplog.text

    def test_wrong_columns(self, tmp_path):
        path = tmp_path / "keys.csv"
        path.write_text("address,key\n0x1,0x2\n")
        assert len(AccountManager.from_key_files([str(path)])) == 0
