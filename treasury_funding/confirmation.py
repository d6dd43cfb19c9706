"""Transaction confirmation monitoring.

- Wait for a broadcast transaction to be included and read back its receipt

- A wait that runs out of wall clock time does not mean the transaction failed:
  it raises :py:class:`~treasury_funding.gateway.errors.TransactionStalled`
  and the caller must check the same hash again later instead of re-sending
"""

import datetime
import logging
import time
from typing import Callable

from hexbytes import HexBytes

from treasury_funding.gateway.errors import TransactionStalled
from treasury_funding.utils import native_datetime_utc_now

logger = logging.getLogger(__name__)


#: Receipt reader, returns ``None`` while the transaction is not yet included
ReceiptReader = Callable[[HexBytes], dict | None]


def wait_transaction_to_complete(
    read_receipt: ReceiptReader,
    tx_hash: HexBytes | str,
    max_timeout=datetime.timedelta(minutes=5),
    poll_delay=datetime.timedelta(seconds=1),
    chain_name: str = "",
) -> dict:
    """Watch one transaction until a receipt appears.

    Use simple poll loop. The function checks at least once, even with zero timeout,
    so an already confirmed transaction is picked up on resume.

    Example:

    .. code-block:: python

        tx_hash = client.send(call)
        receipt = wait_transaction_to_complete(client.get_receipt, tx_hash)
        assert receipt["status"] == 1

    :param read_receipt:
        Function that reads a receipt or returns ``None``.

    :param tx_hash:
        Transaction hash

    :param max_timeout:
        How long to wait before giving up.

    :param poll_delay:
        Sleep between receipt reads.

    :raise TransactionStalled:
        No receipt within ``max_timeout``.

    :return:
        Transaction receipt
    """

    assert isinstance(poll_delay, datetime.timedelta)
    assert isinstance(max_timeout, datetime.timedelta)

    tx_hash = HexBytes(tx_hash)
    started_at = native_datetime_utc_now()
    attempt = 0

    # Bump our verbosiveness levels for the last minute of wait
    verbose_after = started_at + max(max_timeout - datetime.timedelta(minutes=1), datetime.timedelta(0))

    while True:
        attempt += 1
        receipt = read_receipt(tx_hash)
        if receipt is not None:
            logger.info(
                "Confirmed tx %s on %s in block %s, status %s",
                tx_hash.to_0x_hex(),
                chain_name,
                receipt["blockNumber"],
                receipt["status"],
            )
            return receipt

        now = native_datetime_utc_now()
        if now >= started_at + max_timeout:
            raise TransactionStalled(
                f"Transaction {tx_hash.to_0x_hex()} on {chain_name} not confirmed after {max_timeout} ({attempt} receipt checks). It may still confirm later.",
                tx_hash=tx_hash.to_0x_hex(),
            )

        log_level = logging.WARNING if now > verbose_after else logging.DEBUG
        logger.log(log_level, "Still waiting for tx %s on %s, attempt %d", tx_hash.to_0x_hex(), chain_name, attempt)
        time.sleep(poll_delay.total_seconds())
