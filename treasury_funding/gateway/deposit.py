"""Deposits into the Gateway unified balance.

One :py:class:`DepositMonitor` per source chain:

1. :py:meth:`DepositMonitor.start_deposit` approves USDC and calls ``deposit(token, value)`` on ``GatewayWallet``
2. :py:meth:`DepositMonitor.poll_finality` counts confirmations until the chain's
   required confirmation count is reached

After finality the Gateway service credits the unified balance. We do not keep
our own ledger of that balance, only enough state to resume polling after a restart.

Example:

.. code-block:: python

    monitor = DepositMonitor(client, store=SQLiteJobStore(Path("gateway.sqlite")))
    record = monitor.start_deposit(wallet.address, 5 * 10**6)
    record = monitor.wait_for_finality(record)
    assert record.status == DepositStatus.finalized
"""

import dataclasses
import datetime
import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from eth_typing import HexAddress
from tqdm_loggable.auto import tqdm
from web3 import Web3

from treasury_funding.gateway.client import ChainClient, ContractCall
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.errors import ConfigurationError, DepositReverted, InsufficientBalance, InvalidAmount, TransactionReverted
from treasury_funding.gateway.store import JobStore
from treasury_funding.utils import format_usdc, from_unix_timestamp, native_datetime_utc_now, to_unix_timestamp

logger = logging.getLogger(__name__)


class DepositStatus(enum.Enum):
    """Where a deposit is in its way to the unified balance."""

    #: Deposit transaction broadcast, receipt not yet seen
    submitted = "submitted"

    #: Receipt seen, confirmations not yet counted
    included = "included"

    #: Counting confirmations
    waiting_finality = "waiting_finality"

    #: Enough confirmations, the unified balance will be credited
    finalized = "finalized"

    #: Deposit transaction reverted
    failed = "failed"


@dataclass(slots=True, frozen=True)
class DepositRecord:
    """One deposit on one chain.

    Records are immutable. :py:class:`DepositMonitor` produces a new record
    on every status change with :py:func:`dataclasses.replace`.
    """

    #: Chain short name
    chain: str

    #: Depositor address
    depositor: HexAddress

    #: Raw USDC amount
    amount: int

    #: ``deposit()`` transaction hash
    tx_hash: str

    #: ``approve()`` transaction hash
    approve_tx_hash: str | None = None

    #: Signed ``deposit()`` payload, broadcast again on resume if the node lost it
    raw_transaction: str | None = None

    #: Inclusion block, ``None`` until the receipt is seen
    block_number: int | None = None

    status: DepositStatus = DepositStatus.submitted

    #: Confirmations observed on the last poll
    confirmations: int = 0

    #: Confirmations needed to finalise
    required_confirmations: int = 0

    #: Revert reason if failed
    failure_reason: str | None = None

    created_at: datetime.datetime | None = None

    updated_at: datetime.datetime | None = None

    def __repr__(self):
        return f"<Deposit {self.chain} {format_usdc(self.amount)} USDC {self.status.value} {self.confirmations}/{self.required_confirmations}>"

    def is_final(self) -> bool:
        return self.status in (DepositStatus.finalized, DepositStatus.failed)

    def to_dict(self) -> dict:
        """Serialise for :py:class:`~treasury_funding.gateway.store.JobStore`."""
        return {
            "chain": self.chain,
            "depositor": self.depositor,
            "amount": str(self.amount),
            "tx_hash": self.tx_hash,
            "approve_tx_hash": self.approve_tx_hash,
            "raw_transaction": self.raw_transaction,
            "block_number": self.block_number,
            "status": self.status.value,
            "confirmations": self.confirmations,
            "required_confirmations": self.required_confirmations,
            "failure_reason": self.failure_reason,
            "created_at": to_unix_timestamp(self.created_at) if self.created_at else None,
            "updated_at": to_unix_timestamp(self.updated_at) if self.updated_at else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "DepositRecord":
        return DepositRecord(
            chain=data["chain"],
            depositor=data["depositor"],
            amount=int(data["amount"]),
            tx_hash=data["tx_hash"],
            approve_tx_hash=data.get("approve_tx_hash"),
            raw_transaction=data.get("raw_transaction"),
            block_number=data.get("block_number"),
            status=DepositStatus(data["status"]),
            confirmations=data.get("confirmations", 0),
            required_confirmations=data.get("required_confirmations", 0),
            failure_reason=data.get("failure_reason"),
            created_at=from_unix_timestamp(data["created_at"]) if data.get("created_at") else None,
            updated_at=from_unix_timestamp(data["updated_at"]) if data.get("updated_at") else None,
        )


class DepositMonitor:
    """Deposit to GatewayWallet and track finality on one chain."""

    def __init__(
        self,
        client: ChainClient,
        store: JobStore | None = None,
        config: GatewayConfig | None = None,
    ):
        """
        :param client:
            Source chain client. Transactions are sent from its wallet.

        :param store:
            Where deposit records are persisted. Optional.

        :param config:
            Wait and poll settings.
        """
        self.client = client
        self.profile = client.profile
        self.store = store
        self.config = config or GatewayConfig()

    def __repr__(self):
        return f"<DepositMonitor {self.profile.name}>"

    def _save(self, record: DepositRecord):
        if self.store is not None:
            self.store.save_deposit(record.chain, record.depositor, record.to_dict())

    def start_deposit(self, depositor: HexAddress | str, amount: int) -> DepositRecord:
        """Approve and deposit USDC to GatewayWallet.

        The deposit transaction is signed first and persisted as ``submitted``
        before it is broadcast, so a crash or a lost RPC answer can be resumed
        with :py:meth:`resume` without a second deposit.

        :param depositor:
            Must be the address of the client's wallet.

        :param amount:
            Raw USDC amount, 6 decimals.

        :raise InvalidAmount:
            Amount is not a positive integer.

        :raise InsufficientBalance:
            Depositor has less USDC than ``amount``.

        :raise DepositReverted:
            Approve or deposit reverted.

        :return:
            Record with status ``included`` and the inclusion block number
        """
        if type(amount) != int or amount <= 0:
            raise InvalidAmount(f"Deposit amount must be a positive integer in raw units, got {amount!r}")

        self.profile.validate_contracts()
        depositor = Web3.to_checksum_address(depositor)

        if depositor != Web3.to_checksum_address(self.client.address):
            raise ConfigurationError(f"Depositor {depositor} is not the sending wallet {self.client.address} on {self.profile.name}")

        balance = self.client.get_token_balance(depositor)
        if balance < amount:
            raise InsufficientBalance(
                f"{depositor} has {format_usdc(balance)} USDC on {self.profile.display_name}, needs {format_usdc(amount)}",
                balance=balance,
                required=amount,
            )

        logger.info(
            "Depositing %s USDC from %s to GatewayWallet on %s, wallet balance %s USDC",
            format_usdc(amount),
            depositor,
            self.profile.display_name,
            format_usdc(balance),
        )

        try:
            approve_hash = self.client.send(
                ContractCall(self.profile.token_address, "ERC20.json", "approve", (self.profile.wallet_address, amount)),
            )
            self.client.confirm_success(approve_hash, self.config.receipt_timeout, self.config.receipt_poll_delay)

            signed = self.client.sign(
                ContractCall(self.profile.wallet_address, "gateway/GatewayWallet.json", "deposit", (self.profile.token_address, amount)),
            )
        except TransactionReverted as e:
            raise DepositReverted(e.reason, tx_hash=e.tx_hash) from e

        now = native_datetime_utc_now()
        record = DepositRecord(
            chain=self.profile.name,
            depositor=depositor,
            amount=amount,
            tx_hash=signed.tx_hash.to_0x_hex(),
            approve_tx_hash=approve_hash.to_0x_hex(),
            raw_transaction=signed.raw_transaction.to_0x_hex(),
            status=DepositStatus.submitted,
            required_confirmations=self.profile.required_confirmations,
            created_at=now,
            updated_at=now,
        )
        self._save(record)

        try:
            self.client.ensure_broadcast(signed.tx_hash, signed.raw_transaction)
            receipt = self.client.confirm_success(signed.tx_hash, self.config.receipt_timeout, self.config.receipt_poll_delay)
        except TransactionReverted as e:
            self._save(dataclasses.replace(record, status=DepositStatus.failed, failure_reason=e.reason, updated_at=native_datetime_utc_now()))
            raise DepositReverted(e.reason, tx_hash=e.tx_hash) from e

        record = dataclasses.replace(
            record,
            status=DepositStatus.included,
            block_number=receipt["blockNumber"],
            updated_at=native_datetime_utc_now(),
        )
        self._save(record)
        logger.info("Deposit included on %s in block %d: %s", self.profile.name, record.block_number, self.profile.get_tx_link(record.tx_hash))
        return record

    def poll_finality(self, record: DepositRecord) -> DepositRecord:
        """Check confirmations of a deposit once.

        Only reads the chain. Calling this twice with no new blocks returns an equal record.

        :return:
            Updated record. ``confirmations`` tells the progress while ``waiting_finality``.
        """
        assert record.chain == self.profile.name, f"{record} does not belong to {self}"

        if record.is_final():
            return record

        updated = record

        if updated.block_number is None:
            receipt = self.client.get_receipt(Web3.to_bytes(hexstr=record.tx_hash))
            if receipt is None:
                logger.debug("Deposit %s on %s not yet included", record.tx_hash, self.profile.name)
                return record

            if receipt["status"] == 0:
                reason = self.client.fetch_revert_reason(Web3.to_bytes(hexstr=record.tx_hash))
                logger.error("Deposit %s on %s reverted: %s", record.tx_hash, self.profile.name, reason)
                updated = dataclasses.replace(updated, status=DepositStatus.failed, failure_reason=reason, updated_at=native_datetime_utc_now())
                self._save(updated)
                return updated

            updated = dataclasses.replace(updated, status=DepositStatus.included, block_number=receipt["blockNumber"])

        current_block = self.client.get_block_number()
        confirmations = max(0, current_block - updated.block_number)
        required = self.profile.required_confirmations

        if confirmations >= required:
            status = DepositStatus.finalized
        else:
            status = DepositStatus.waiting_finality

        if status == record.status and confirmations == record.confirmations and updated.block_number == record.block_number:
            return record

        updated = dataclasses.replace(
            updated,
            status=status,
            confirmations=confirmations,
            required_confirmations=required,
            updated_at=native_datetime_utc_now(),
        )
        self._save(updated)

        if status == DepositStatus.finalized:
            logger.info("Deposit %s on %s finalized after %d confirmations", record.tx_hash, self.profile.name, confirmations)
        else:
            logger.info("Deposit on %s has %d/%d confirmations", self.profile.name, confirmations, required)

        return updated

    def wait_for_finality(self, record: DepositRecord, max_polls: int | None = None) -> DepositRecord:
        """Poll until the deposit is finalized or failed.

        :param max_polls:
            Give up after this many polls and return the last record. ``None`` waits forever.
        """
        polls = 0
        while True:
            record = self.poll_finality(record)
            polls += 1
            if record.is_final():
                return record
            if max_polls is not None and polls >= max_polls:
                return record
            time.sleep(self.config.finality_poll_interval.total_seconds())

    def resume(self, depositor: HexAddress | str) -> DepositRecord | None:
        """Load the latest deposit of a depositor on this chain and poll it once.

        A deposit still ``submitted`` is broadcast again with the recorded payload
        in case the node never got it. Nothing new is signed.

        :return:
            ``None`` if no deposit has been recorded.
        """
        assert self.store is not None, "resume() needs a store"
        data = self.store.load_deposit(self.profile.name, Web3.to_checksum_address(depositor))
        if data is None:
            return None
        record = DepositRecord.from_dict(data)
        logger.info("Resuming %s", record)
        if record.status == DepositStatus.submitted:
            try:
                self.client.ensure_broadcast(record.tx_hash, record.raw_transaction)
            except TransactionReverted as e:
                failed = dataclasses.replace(record, status=DepositStatus.failed, failure_reason=e.reason, updated_at=native_datetime_utc_now())
                self._save(failed)
                raise DepositReverted(e.reason, tx_hash=e.tx_hash) from e
        return self.poll_finality(record)


def watch_deposits_parallel(
    deposits: list[tuple[DepositMonitor, DepositRecord]],
    max_workers: int | None = None,
    max_polls: int | None = None,
    progress: bool = True,
) -> list[DepositRecord]:
    """Wait for deposits on several chains at once.

    Each chain is polled on its own thread. The progress bar advances
    with confirmations, summed over all chains.

    If one chain fails, the other watchers stop at their next poll
    and the error is raised.

    :param deposits:
        Pairs of (monitor, record) to watch.

    :param max_workers:
        Thread pool size, defaults to one thread per deposit.

    :param max_polls:
        Per deposit poll budget, see :py:meth:`DepositMonitor.wait_for_finality`.

    :param progress:
        Show a ``tqdm`` progress bar.

    :return:
        Updated records in the same order as ``deposits``.
    """
    if not deposits:
        return []

    if max_workers is None:
        max_workers = len(deposits)

    total = sum(max(record.required_confirmations, monitor.profile.required_confirmations) for monitor, record in deposits)
    observed = [record.confirmations for _, record in deposits]
    lock = threading.Lock()
    stop = threading.Event()

    progress_bar = tqdm(
        total=total,
        desc="Deposit finality",
        unit="block",
        disable=not progress,
    )

    def _update(idx: int, record: DepositRecord):
        with lock:
            capped = min(record.confirmations, max(record.required_confirmations, 0))
            advance = capped - observed[idx]
            if advance > 0:
                progress_bar.update(advance)
                observed[idx] = capped
            progress_bar.set_postfix_str(f"{record.chain}:{record.status.value}")

    def _watch(idx: int, monitor: DepositMonitor, record: DepositRecord) -> DepositRecord:
        threading.current_thread().name = f"deposit-{monitor.profile.name}"
        polls = 0
        while True:
            record = monitor.poll_finality(record)
            _update(idx, record)
            polls += 1
            if record.is_final() or (max_polls is not None and polls >= max_polls) or stop.is_set():
                return record
            stop.wait(monitor.config.finality_poll_interval.total_seconds())

    logger.info("Watching %d deposits on %s", len(deposits), ", ".join(m.profile.name for m, _ in deposits))

    results: dict[int, DepositRecord] = {}
    try:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="deposit-watch") as executor:
            futures = {executor.submit(_watch, idx, monitor, record): idx for idx, (monitor, record) in enumerate(deposits)}
            try:
                for future in as_completed(futures):
                    idx = futures[future]
                    results[idx] = future.result()
            except Exception:
                stop.set()
                for future in futures:
                    future.cancel()
                raise
    finally:
        progress_bar.close()

    return [results[i] for i in range(len(deposits))]
