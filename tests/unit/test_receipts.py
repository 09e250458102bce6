import pytest
from unittest.mock import Mock

from eth_loadgen_core.clients.base_client import IEthereumClient
from eth_loadgen_core.exceptions import NetworkError, ReceiptTimeoutError, RpcError
from eth_loadgen_core.receipts import ReceiptPoller
from eth_loadgen_core.tx import Receipt, ReceiptStatus

TX_HASH = "0x" + "aa" * 32


class FakeClock:
    """Monotonic clock that only moves when sleep is called."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_client():
    return Mock(spec=IEthereumClient)


@pytest.fixture
def poller(mock_client, clock):
    return ReceiptPoller(mock_client, clock=clock, sleep=clock.sleep)


def make_receipt():
    return Receipt(tx_hash=TX_HASH, block_hash="0x" + "bb" * 32, block_number=12,
                   status=ReceiptStatus.INCLUDED, gas_used=21000)


class TestReceiptPoller:
    def test_returns_receipt_once_mined(self, poller, mock_client, clock):
        mock_client.get_receipt.side_effect = [None, None, make_receipt()]

        receipt = poller.wait_for_receipt(TX_HASH, poll_interval=1.0, timeout=30.0)

        assert receipt.block_number == 12
        assert mock_client.get_receipt.call_count == 3
        assert clock.sleeps == [1.0, 1.0]

    def test_times_out_after_budget(self, poller, mock_client, clock):
        mock_client.get_receipt.return_value = None

        with pytest.raises(ReceiptTimeoutError) as exc_info:
            poller.wait_for_receipt(TX_HASH, poll_interval=1.0, timeout=30.0)

        assert exc_info.value.tx_hash == TX_HASH
        assert isinstance(exc_info.value, TimeoutError)
        assert clock.now - 1000.0 == pytest.approx(30.0)
        assert mock_client.get_receipt.call_count == 31

    def test_interval_not_below_timeout_is_halved(self, poller, mock_client, clock):
        mock_client.get_receipt.return_value = None

        with pytest.raises(ReceiptTimeoutError):
            poller.wait_for_receipt(TX_HASH, poll_interval=10.0, timeout=4.0)

        assert clock.sleeps == [2.0, 2.0]

    def test_network_errors_do_not_stop_polling(self, poller, mock_client):
        mock_client.get_receipt.side_effect = [NetworkError("blip"), make_receipt()]
        assert poller.wait_for_receipt(TX_HASH, poll_interval=0.5, timeout=5.0).tx_hash == TX_HASH

    def test_rpc_error_propagates(self, poller, mock_client):
        mock_client.get_receipt.side_effect = RpcError(-32601, "method not found")
        with pytest.raises(RpcError):
            poller.wait_for_receipt(TX_HASH, poll_interval=0.5, timeout=5.0)

    def test_last_sleep_is_clipped_to_deadline(self, poller, mock_client, clock):
        mock_client.get_receipt.return_value = None
        with pytest.raises(ReceiptTimeoutError):
            poller.wait_for_receipt(TX_HASH, poll_interval=2.0, timeout=5.0)
        assert clock.sleeps == [2.0, 2.0, 1.0]

    @pytest.mark.parametrize("poll_interval,timeout", [(0.0, 5.0), (-1.0, 5.0), (1.0, 0.0)])
    def test_invalid_budget_is_rejected_before_polling(self, poller, mock_client, poll_interval, timeout):
        with pytest.raises(ValueError):
            poller.wait_for_receipt(TX_HASH, poll_interval=poll_interval, timeout=timeout)
        mock_client.get_receipt.assert_not_called()
