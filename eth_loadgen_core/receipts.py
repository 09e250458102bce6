# eth_loadgen_core/receipts.py
import logging
import time
from typing import Callable

from . import config as core_config
from .clients.base_client import IEthereumClient
from .exceptions import NetworkError, ReceiptTimeoutError
from .tx import Receipt

logger = logging.getLogger(__name__)


class ReceiptPoller:
    """
    Blocks the calling thread until a transaction is mined or the timeout
    expires. Clock and sleep are injectable so tests never wait.
    """
    def __init__(self, client: IEthereumClient,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self._clock = clock
        self._sleep = sleep

    def wait_for_receipt(self, tx_hash: str,
                         poll_interval: float = core_config.DEFAULT_RECEIPT_POLL_INTERVAL_SECONDS,
                         timeout: float = core_config.DEFAULT_RECEIPT_TIMEOUT_SECONDS) -> Receipt:
        """
        Polls eth_getTransactionReceipt every poll_interval seconds.

        :raises ReceiptTimeoutError: nothing mined within timeout. The
            transaction is unknown, not failed.
        :raises RpcError: the node rejected the receipt query itself.
        """
        if timeout <= 0:
            raise ValueError("timeout must be greater than 0")
        if poll_interval <= 0:
            raise ValueError("poll interval must be greater than 0")
        if poll_interval >= timeout:
            poll_interval = timeout / 2

        deadline = self._clock() + timeout
        attempts = 0
        while True:
            attempts += 1
            try:
                receipt = self.client.get_receipt(tx_hash)
            except NetworkError as e:
                logger.warning("Receipt poll %d for %s failed: %s", attempts, tx_hash, e)
                receipt = None

            if receipt is not None:
                logger.debug("Receipt for %s in block %d after %d poll(s), status=%s",
                             tx_hash, receipt.block_number, attempts, receipt.status.value)
                return receipt

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ReceiptTimeoutError(tx_hash, timeout)
            self._sleep(min(poll_interval, remaining))
