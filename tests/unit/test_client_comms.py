import pytest
import requests
from unittest.mock import Mock
from urllib3.exceptions import MaxRetryError, NewConnectionError

from eth_loadgen_core.client_comms import EthereumClient
from eth_loadgen_core.config import RetryPolicy
from eth_loadgen_core.exceptions import MalformedResponseError, NetworkError, RpcError
from eth_loadgen_core.tx import ReceiptStatus

URL = "http://node.test:8545"
ADDRESS = "0x" + "ab" * 20
TX_HASH = "0x" + "11" * 32


def rpc_ok(result, request_id=1):
    return {'json': {'jsonrpc': '2.0', 'id': request_id, 'result': result}}


@pytest.fixture
def fake_sleep():
    return Mock()


@pytest.fixture
def client(fake_sleep):
    policy = RetryPolicy(max_attempts=3, base_delay=0.1, multiplier=2.0, max_delay=1.0)
    return EthereumClient(rpc_url=URL, timeout=2.0, retry_policy=policy, sleep=fake_sleep)


class TestTypedCalls:
    def test_get_nonce_payload_and_decoding(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok("0x1a"))

        assert client.get_nonce(ADDRESS) == 26
        body = requests_mock.last_request.json()
        assert body['method'] == "eth_getTransactionCount"
        assert body['params'] == [ADDRESS, "pending"]
        assert body['jsonrpc'] == "2.0"

    def test_block_number_ref_is_hex_encoded(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok("0xde0b6b3a7640000"))

        assert client.get_balance(ADDRESS, 255) == 10 ** 18
        assert requests_mock.last_request.json()['params'] == [ADDRESS, "0xff"]

    def test_gas_price_block_number_chain_id(self, client, requests_mock):
        requests_mock.post(URL, [rpc_ok("0x3b9aca00"), rpc_ok("0x10"), rpc_ok("0x64")])

        assert client.gas_price() == 10 ** 9
        assert client.block_number() == 16
        assert client.chain_id() == 100
        methods = [r.json()['method'] for r in requests_mock.request_history]
        assert methods == ["eth_gasPrice", "eth_blockNumber", "eth_chainId"]

    def test_request_ids_are_unique(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok("0x1"))
        for _ in range(5):
            client.block_number()
        ids = [r.json()['id'] for r in requests_mock.request_history]
        assert len(set(ids)) == 5

    def test_send_raw_transaction_returns_hash(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok(TX_HASH))
        assert client.send_raw_transaction("0xf86b") == TX_HASH
        assert requests_mock.last_request.json()['params'] == ["0xf86b"]

    def test_send_raw_transaction_rejects_bad_hash(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok("0x1234"))
        with pytest.raises(MalformedResponseError):
            client.send_raw_transaction("0xf86b")

    def test_get_receipt_not_mined(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok(None))
        assert client.get_receipt(TX_HASH) is None

    def test_get_receipt_decodes(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok({
            'transactionHash': TX_HASH,
            'blockHash': "0x" + "22" * 32,
            'blockNumber': "0x2a",
            'gasUsed': "0x5208",
            'status': "0x0",
        }))
        receipt = client.get_receipt(TX_HASH)
        assert receipt.block_number == 42
        assert receipt.gas_used == 21000
        assert receipt.status is ReceiptStatus.FAILED

    def test_call_custom_rpc_returns_raw_result(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok({'pending': {}, 'queued': {}}))
        assert client.call_custom_rpc("txpool_content") == {'pending': {}, 'queued': {}}
        assert requests_mock.last_request.json()['params'] == []


class TestErrorMapping:
    def test_rpc_error_is_not_retried(self, client, requests_mock, fake_sleep):
        requests_mock.post(URL, json={'jsonrpc': '2.0', 'id': 1,
                                      'error': {'code': -32000, 'message': 'nonce too low'}})
        with pytest.raises(RpcError) as exc_info:
            client.send_raw_transaction("0xf86b")

        assert exc_info.value.code == -32000
        assert exc_info.value.message == "nonce too low"
        assert requests_mock.call_count == 1
        fake_sleep.assert_not_called()

    def test_http_5xx_is_retried_with_backoff(self, client, requests_mock, fake_sleep):
        requests_mock.post(URL, status_code=503, text="unavailable")
        with pytest.raises(NetworkError) as exc_info:
            client.block_number()

        assert exc_info.value.maybe_delivered is True
        assert requests_mock.call_count == 3
        assert [c.args[0] for c in fake_sleep.call_args_list] == pytest.approx([0.1, 0.2])

    def test_recovers_after_transient_failure(self, client, requests_mock, fake_sleep):
        requests_mock.post(URL, [{'status_code': 502, 'text': 'bad gateway'}, rpc_ok("0x7")])
        assert client.block_number() == 7
        assert fake_sleep.call_count == 1

    def test_connect_timeout_was_never_delivered(self, client, requests_mock):
        requests_mock.post(URL, exc=requests.exceptions.ConnectTimeout)
        with pytest.raises(NetworkError) as exc_info:
            client.send_raw_transaction("0xf86b")
        assert exc_info.value.maybe_delivered is False

    def test_connection_refused_was_never_delivered(self, client, requests_mock):
        refused = MaxRetryError(None, "/", reason=NewConnectionError(None, "Connection refused"))
        requests_mock.post(URL, exc=requests.exceptions.ConnectionError(refused))
        with pytest.raises(NetworkError) as exc_info:
            client.block_number()
        assert exc_info.value.maybe_delivered is False

    def test_read_timeout_may_have_been_delivered(self, client, requests_mock):
        requests_mock.post(URL, exc=requests.exceptions.ReadTimeout)
        with pytest.raises(NetworkError) as exc_info:
            client.send_raw_transaction("0xf86b")
        assert exc_info.value.maybe_delivered is True

    def test_earlier_delivery_survives_later_connect_failure(self, client, requests_mock):
        requests_mock.post(URL, [{'exc': requests.exceptions.ReadTimeout},
                                 {'exc': requests.exceptions.ConnectTimeout},
                                 {'exc': requests.exceptions.ConnectTimeout}])
        with pytest.raises(NetworkError) as exc_info:
            client.send_raw_transaction("0xf86b")
        assert requests_mock.call_count == 3
        assert exc_info.value.maybe_delivered is True

    def test_all_attempts_undelivered(self, client, requests_mock):
        requests_mock.post(URL, exc=requests.exceptions.ConnectTimeout)
        with pytest.raises(NetworkError) as exc_info:
            client.send_raw_transaction("0xf86b")
        assert requests_mock.call_count == 3
        assert exc_info.value.maybe_delivered is False

    def test_non_json_body(self, client, requests_mock, fake_sleep):
        requests_mock.post(URL, text="<html>oops</html>")
        with pytest.raises(MalformedResponseError):
            client.block_number()
        assert requests_mock.call_count == 1
        fake_sleep.assert_not_called()

    def test_missing_result(self, client, requests_mock):
        requests_mock.post(URL, json={'jsonrpc': '2.0', 'id': 1})
        with pytest.raises(MalformedResponseError):
            client.block_number()

    def test_non_hex_quantity(self, client, requests_mock):
        requests_mock.post(URL, **rpc_ok("twelve"))
        with pytest.raises(MalformedResponseError):
            client.gas_price()

    def test_http_4xx_without_rpc_error(self, client, requests_mock):
        requests_mock.post(URL, status_code=404, json={'detail': 'not found'})
        with pytest.raises(MalformedResponseError):
            client.block_number()


def test_retry_policy_delays_are_capped():
    policy = RetryPolicy(max_attempts=10, base_delay=0.5, multiplier=3.0, max_delay=2.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.5, 2.0, 2.0]
