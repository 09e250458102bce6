import pytest

from eth_loadgen_core.exceptions import MalformedResponseError
from eth_loadgen_core.tx import Receipt, ReceiptStatus, parse_quantity

RAW_RECEIPT = {
    'transactionHash': "0x" + "11" * 32,
    'blockHash': "0x" + "22" * 32,
    'blockNumber': "0x10",
    'gasUsed': "0x5208",
    'status': "0x1",
}


class TestParseQuantity:
    @pytest.mark.parametrize("raw,expected", [("0x0", 0), ("0x1A", 26), ("0X10", 16), (7, 7)])
    def test_valid(self, raw, expected):
        assert parse_quantity(raw) == expected

    @pytest.mark.parametrize("raw", ["12", "0xzz", None, True, 1.5])
    def test_invalid(self, raw):
        with pytest.raises(MalformedResponseError):
            parse_quantity(raw)


class TestReceipt:
    def test_included(self):
        receipt = Receipt.from_rpc(RAW_RECEIPT)
        assert receipt.status is ReceiptStatus.INCLUDED
        assert (receipt.block_number, receipt.gas_used) == (16, 21000)

    def test_pre_byzantium_receipt_without_status(self):
        raw = {k: v for k, v in RAW_RECEIPT.items() if k != 'status'}
        assert Receipt.from_rpc(raw).status is ReceiptStatus.INCLUDED

    def test_missing_field(self):
        raw = {k: v for k, v in RAW_RECEIPT.items() if k != 'blockHash'}
        with pytest.raises(MalformedResponseError):
            Receipt.from_rpc(raw)

    def test_not_an_object(self):
        with pytest.raises(MalformedResponseError):
            Receipt.from_rpc(["0x1"])
