"""Treasury funding state machine.

One :py:class:`TransferJob` moves ``amount`` of the depositor's unified balance
into the treasury vault on the destination chain:

.. code-block:: text

    pending -> intent_signed -> attestation_pending -> attested -> minted -> treasury_funded -> complete

Any non-terminal state can move to ``failed``.

- The job is persisted after every transition and before every irreversible action,
  so :py:meth:`TransferCoordinator.resume` continues from the last completed step
- A signed intent is submitted to the Gateway API at most once
- Mint and treasury transactions are signed once and recorded before they are
  broadcast; on resume the recorded transaction is checked or broadcast again,
  never replaced by a new one
- Resumable failures, like a stalled transaction or an attestation poll timeout,
  leave the job in its state with ``stalled`` set. Permanent failures move it to ``failed``.

Example:

.. code-block:: python

    coordinator = TransferCoordinator(
        registry=registry,
        clients={"arc": arc_client},
        signer=HotWalletSigner(wallet),
        attestation_client=AttestationClient(config),
        treasury_address=os.environ["TREASURY_CONTRACT_ADDRESS"],
        store=SQLiteJobStore(Path("gateway.sqlite")),
        config=config,
    )
    job = coordinator.create_job("sepolia", "arc", wallet.address, 5 * 10**6)
    job = coordinator.run_job(job)
    print(job.status)
"""

import datetime
import enum
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable

import requests
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from treasury_funding.gateway.attestation import Attestation, AttestationClient
from treasury_funding.gateway.client import ChainClient, SignedCall
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.errors import (
    AttestationServiceError,
    GatewayError,
    InvalidAmount,
    SubmissionOutcomeUnknown,
    TreasuryUnreachable,
    UnknownChain,
)
from treasury_funding.gateway.intent import IntentBuilder
from treasury_funding.gateway.mint import MintExecutor
from treasury_funding.gateway.registry import ChainRegistry
from treasury_funding.gateway.signing import SignedIntent, Signer, sign_intent
from treasury_funding.gateway.store import InMemoryJobStore, JobStore
from treasury_funding.gateway.treasury import TreasuryForwarder
from treasury_funding.utils import format_usdc, from_unix_timestamp, native_datetime_utc_now, to_unix_timestamp

logger = logging.getLogger(__name__)


class JobStatus(enum.Enum):
    """Transfer job lifecycle, in order."""

    pending = "pending"
    intent_signed = "intent_signed"
    attestation_pending = "attestation_pending"
    attested = "attested"
    minted = "minted"
    treasury_funded = "treasury_funded"
    complete = "complete"
    failed = "failed"


#: Forward order of the non-failed states
STATUS_ORDER = [
    JobStatus.pending,
    JobStatus.intent_signed,
    JobStatus.attestation_pending,
    JobStatus.attested,
    JobStatus.minted,
    JobStatus.treasury_funded,
    JobStatus.complete,
]

#: No more transitions out of these
TERMINAL_STATUSES = {JobStatus.complete, JobStatus.failed}


def _encode_time(value: datetime.datetime | None) -> float | None:
    return to_unix_timestamp(value) if value is not None else None


def _decode_time(value: float | None) -> datetime.datetime | None:
    return from_unix_timestamp(value) if value is not None else None


@dataclass(slots=True)
class TransferJob:
    """One treasury funding run and everything it has produced so far."""

    job_id: str
    source_chain: str
    destination_chain: str
    depositor: HexAddress
    recipient: HexAddress

    #: Raw USDC amount
    amount: int

    #: Fee cap, raw USDC
    max_fee: int

    status: JobStatus = JobStatus.pending

    signed_intent: SignedIntent | None = None

    #: Set and persisted right before the intent is sent to the Gateway API
    submission_started: bool = False

    transfer_id: str | None = None

    attestation: Attestation | None = None

    mint_tx_hash: str | None = None

    treasury_approve_tx_hash: str | None = None

    treasury_tx_hash: str | None = None

    #: Signed payloads of the transactions above by hash, recorded before broadcast
    raw_transactions: dict[str, str] = field(default_factory=dict)

    #: Exception class name of the failure
    error_type: str | None = None

    failure_reason: str | None = None

    #: Status the job was in when it failed
    failed_at: JobStatus | None = None

    #: Last resumable error
    last_error: str | None = None

    #: Waiting on a resumable error, call resume()
    stalled: bool = False

    created_at: datetime.datetime | None = None

    updated_at: datetime.datetime | None = None

    #: List of (status, timestamp) transitions
    history: list[dict] = field(default_factory=list)

    def __repr__(self):
        stalled = " stalled" if self.stalled else ""
        return f"<TransferJob {self.job_id[0:8]} {format_usdc(self.amount)} USDC {self.source_chain}->{self.destination_chain} {self.status.value}{stalled}>"

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "source_chain": self.source_chain,
            "destination_chain": self.destination_chain,
            "depositor": self.depositor,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "max_fee": str(self.max_fee),
            "status": self.status.value,
            "signed_intent": self.signed_intent.to_dict() if self.signed_intent else None,
            "submission_started": self.submission_started,
            "transfer_id": self.transfer_id,
            "attestation": self.attestation.to_dict() if self.attestation else None,
            "mint_tx_hash": self.mint_tx_hash,
            "treasury_approve_tx_hash": self.treasury_approve_tx_hash,
            "treasury_tx_hash": self.treasury_tx_hash,
            "raw_transactions": dict(self.raw_transactions),
            "error_type": self.error_type,
            "failure_reason": self.failure_reason,
            "failed_at": self.failed_at.value if self.failed_at else None,
            "last_error": self.last_error,
            "stalled": self.stalled,
            "created_at": _encode_time(self.created_at),
            "updated_at": _encode_time(self.updated_at),
            "history": list(self.history),
        }

    @staticmethod
    def from_dict(data: dict) -> "TransferJob":
        return TransferJob(
            job_id=data["job_id"],
            source_chain=data["source_chain"],
            destination_chain=data["destination_chain"],
            depositor=data["depositor"],
            recipient=data["recipient"],
            amount=int(data["amount"]),
            max_fee=int(data["max_fee"]),
            status=JobStatus(data["status"]),
            signed_intent=SignedIntent.from_dict(data["signed_intent"]) if data.get("signed_intent") else None,
            submission_started=data.get("submission_started", False),
            transfer_id=data.get("transfer_id"),
            attestation=Attestation.from_dict(data["attestation"]) if data.get("attestation") else None,
            mint_tx_hash=data.get("mint_tx_hash"),
            treasury_approve_tx_hash=data.get("treasury_approve_tx_hash"),
            treasury_tx_hash=data.get("treasury_tx_hash"),
            raw_transactions=dict(data.get("raw_transactions", {})),
            error_type=data.get("error_type"),
            failure_reason=data.get("failure_reason"),
            failed_at=JobStatus(data["failed_at"]) if data.get("failed_at") else None,
            last_error=data.get("last_error"),
            stalled=data.get("stalled", False),
            created_at=_decode_time(data.get("created_at")),
            updated_at=_decode_time(data.get("updated_at")),
            history=list(data.get("history", [])),
        )


#: Observer called with the job after every persisted change
JobObserver = Callable[[TransferJob], None]


class TransferCoordinator:
    """Drive transfer jobs through their states.

    Jobs are independent of each other and may run on separate threads.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        clients: dict[str, ChainClient],
        signer: Signer,
        attestation_client: AttestationClient,
        treasury_address: HexAddress | str,
        store: JobStore | None = None,
        config: GatewayConfig | None = None,
        check_unified_balance: bool = False,
    ):
        """
        :param registry:
            Chain profiles

        :param clients:
            Chain clients by chain name. Destination chains must have one.

        :param signer:
            Signs burn intents for the depositor

        :param attestation_client:
            Gateway API client

        :param treasury_address:
            Treasury vault on the destination chain

        :param store:
            Where jobs are persisted. Defaults to memory only.

        :param config:
            Fee cap, poll and wait settings

        :param check_unified_balance:
            Read the unified balance before signing and warn if it looks too small
        """
        self.registry = registry
        self.clients = clients
        self.signer = signer
        self.attestation_client = attestation_client
        self.treasury_address = treasury_address
        self.store = store or InMemoryJobStore()
        self.config = config or GatewayConfig()
        self.intent_builder = IntentBuilder(registry, self.config)
        self.check_unified_balance = check_unified_balance
        self.observers: list[JobObserver] = []
        self._observer_lock = threading.Lock()

        self.step_handlers: dict[JobStatus, Callable[[TransferJob], None]] = {
            JobStatus.pending: self._sign_intent,
            JobStatus.intent_signed: self._submit_intent,
            JobStatus.attestation_pending: self._wait_attestation,
            JobStatus.attested: self._mint,
            JobStatus.minted: self._fund_treasury,
            JobStatus.treasury_funded: self._complete,
        }

    def subscribe(self, observer: JobObserver) -> Callable[[], None]:
        """Get notified on job changes.

        :return:
            Function that removes the observer
        """
        with self._observer_lock:
            self.observers.append(observer)

        def unsubscribe():
            with self._observer_lock:
                if observer in self.observers:
                    self.observers.remove(observer)

        return unsubscribe

    def _notify(self, job: TransferJob):
        with self._observer_lock:
            observers = list(self.observers)
        for observer in observers:
            try:
                observer(job)
            except Exception as e:
                # Display callbacks must not break the transfer
                logger.warning("Job observer %s failed: %s", observer, e, exc_info=True)

    def _save(self, job: TransferJob):
        job.updated_at = native_datetime_utc_now()
        self.store.save_job(job.job_id, job.to_dict())
        self._notify(job)

    def _transition(self, job: TransferJob, new_status: JobStatus):
        if new_status != JobStatus.failed:
            current = STATUS_ORDER.index(job.status)
            target = STATUS_ORDER.index(new_status)
            assert target == current + 1, f"Illegal transition {job.status.value} -> {new_status.value} for {job}"
        else:
            assert not job.is_terminal(), f"Cannot fail a finished job {job}"

        old_status = job.status
        job.status = new_status
        job.stalled = False
        job.history.append({"status": new_status.value, "at": to_unix_timestamp(native_datetime_utc_now())})
        self._save(job)
        logger.info("Job %s: %s -> %s", job.job_id, old_status.value, new_status.value)

    def _fail(self, job: TransferJob, error: GatewayError):
        job.failed_at = job.status
        job.error_type = error.__class__.__name__
        job.failure_reason = error.get_reason()
        job.stalled = False
        logger.error("Job %s failed in %s: %s: %s", job.job_id, job.status.value, job.error_type, job.failure_reason)
        self._transition(job, JobStatus.failed)

    def _get_client(self, chain: str) -> ChainClient:
        client = self.clients.get(chain)
        if client is None:
            raise UnknownChain(f"No chain client configured for {chain}")
        return client

    def create_job(
        self,
        source_chain: str,
        destination_chain: str,
        depositor: HexAddress | str,
        amount: int,
        recipient: HexAddress | str | None = None,
        max_fee: int | None = None,
    ) -> TransferJob:
        """Create and persist a new ``pending`` job.

        Configuration problems fail here, before any network call.

        :param recipient:
            Minted USDC receiver, defaults to the depositor who then funds the treasury.

        :raise UnknownChain:
            Either chain not in the registry or no client for the destination.

        :raise InvalidAmount:
            Amount is not a positive integer.
        """
        self.registry.validate_pair(source_chain, destination_chain)
        self._get_client(destination_chain)

        if type(amount) != int or amount <= 0:
            raise InvalidAmount(f"Transfer amount must be a positive integer in raw units, got {amount!r}")

        depositor = Web3.to_checksum_address(depositor)
        now = native_datetime_utc_now()
        job = TransferJob(
            job_id=uuid.uuid4().hex,
            source_chain=source_chain.lower(),
            destination_chain=destination_chain.lower(),
            depositor=depositor,
            recipient=Web3.to_checksum_address(recipient) if recipient else depositor,
            amount=amount,
            max_fee=self.config.max_fee if max_fee is None else max_fee,
            created_at=now,
            history=[{"status": JobStatus.pending.value, "at": to_unix_timestamp(now)}],
        )
        self._save(job)
        logger.info("Created %s", job)
        return job

    def load_job(self, job_id: str) -> TransferJob:
        data = self.store.load_job(job_id)
        if data is None:
            raise KeyError(f"No transfer job {job_id}")
        return TransferJob.from_dict(data)

    def run_job(self, job: TransferJob) -> TransferJob:
        """Advance a job as far as it goes.

        Step failures do not raise. Inspect ``status``, ``stalled`` and ``failure_reason``.

        :return:
            The job in ``complete``, ``failed`` or a stalled state
        """
        while not job.is_terminal():
            handler = self.step_handlers[job.status]
            try:
                handler(job)
            except GatewayError as e:
                if e.resumable:
                    job.stalled = True
                    job.last_error = f"{e.__class__.__name__}: {e.get_reason()}"
                    self._save(job)
                    logger.warning("Job %s stalled in %s: %s. Resume later.", job.job_id, job.status.value, job.last_error)
                else:
                    self._fail(job, e)
                return job
        return job

    def resume(self, job_id: str) -> TransferJob:
        """Load a persisted job and continue it from its recorded state."""
        job = self.load_job(job_id)
        if job.is_terminal():
            logger.info("Job %s already %s", job_id, job.status.value)
            return job
        logger.info("Resuming %s", job)
        job.stalled = False
        return self.run_job(job)

    def list_jobs(self) -> list[TransferJob]:
        return [TransferJob.from_dict(d) for d in self.store.list_jobs()]

    def _log_unified_balance(self, job: TransferJob):
        source = self.registry.get(job.source_chain)
        try:
            balances = self.attestation_client.fetch_unified_balance(job.depositor, [source.domain_id])
        except (AttestationServiceError, requests.RequestException) as e:
            logger.warning("Could not read unified balance of %s: %s", job.depositor, e)
            return
        available = balances.get(source.domain_id, 0)
        logger.info("Unified balance of %s on %s: %s USDC", job.depositor, source.name, format_usdc(available))
        if available < job.amount + job.max_fee:
            logger.warning(
                "Unified balance %s USDC may not cover %s USDC plus max fee %s USDC",
                format_usdc(available),
                format_usdc(job.amount),
                format_usdc(job.max_fee),
            )

    def _sign_intent(self, job: TransferJob):
        if self.check_unified_balance:
            self._log_unified_balance(job)

        intent = self.intent_builder.build(
            job.source_chain,
            job.destination_chain,
            depositor=job.depositor,
            recipient=job.recipient,
            amount=job.amount,
            max_fee=job.max_fee,
            signer=self.signer.address,
        )
        job.signed_intent = sign_intent(self.signer, intent)
        self._transition(job, JobStatus.intent_signed)

    def _submit_intent(self, job: TransferJob):
        assert job.signed_intent is not None, f"{job} has no signed intent"

        if job.submission_started:
            # Crashed between sending and recording the answer
            raise SubmissionOutcomeUnknown(f"Intent of job {job.job_id} may have been submitted already. Check the unified balance before building a new intent.")

        job.submission_started = True
        self._save(job)

        submission = self.attestation_client.submit(job.signed_intent)
        job.transfer_id = submission.transfer_id
        job.attestation = submission.attestation
        self._transition(job, JobStatus.attestation_pending)

    def _wait_attestation(self, job: TransferJob):
        if job.attestation is None:
            assert job.transfer_id, f"{job} has neither transfer id nor attestation"
            job.attestation = self.attestation_client.poll(job.transfer_id)
        self._transition(job, JobStatus.attested)

    def _broadcast_recorded(
        self,
        job: TransferJob,
        hash_field: str,
        sign: Callable[[], SignedCall],
        broadcast: Callable[[HexBytes, HexBytes | None], HexBytes],
    ) -> HexBytes:
        """Sign a transaction once, persist it, then broadcast it.

        On resume the recorded transaction is looked up or broadcast again,
        nothing new is signed.

        :param hash_field:
            :py:class:`TransferJob` attribute that holds the transaction hash
        """
        tx_hash = getattr(job, hash_field)
        if tx_hash is None:
            signed = sign()
            tx_hash = signed.tx_hash.to_0x_hex()
            setattr(job, hash_field, tx_hash)
            job.raw_transactions[tx_hash] = signed.raw_transaction.to_0x_hex()
            self._save(job)
        else:
            logger.info("Job %s: re-checking %s %s", job.job_id, hash_field, tx_hash)

        raw_transaction = job.raw_transactions.get(tx_hash)
        broadcast(HexBytes(tx_hash), HexBytes(raw_transaction) if raw_transaction else None)
        return HexBytes(tx_hash)

    def _mint(self, job: TransferJob):
        assert job.attestation is not None
        minter = MintExecutor(self._get_client(job.destination_chain), self.config)
        tx_hash = self._broadcast_recorded(job, "mint_tx_hash", lambda: minter.sign_mint(job.attestation), minter.broadcast)
        minter.confirm(tx_hash)
        self._transition(job, JobStatus.minted)

    def _fund_treasury(self, job: TransferJob):
        forwarder = TreasuryForwarder(self._get_client(job.destination_chain), self.treasury_address, self.config)

        if job.treasury_approve_tx_hash is None:
            forwarder.check_balance(job.amount)

        approve_hash = self._broadcast_recorded(job, "treasury_approve_tx_hash", lambda: forwarder.sign_approve(job.amount), forwarder.broadcast)
        forwarder.confirm(approve_hash)

        deposit_hash = self._broadcast_recorded(job, "treasury_tx_hash", lambda: forwarder.sign_deposit(job.amount), forwarder.broadcast)
        forwarder.confirm(deposit_hash)
        self._transition(job, JobStatus.treasury_funded)

    def _complete(self, job: TransferJob):
        forwarder = TreasuryForwarder(self._get_client(job.destination_chain), self.treasury_address, self.config)
        try:
            balance = forwarder.fetch_treasury_balance()
            logger.info("Treasury %s total balance now %s USDC", forwarder.treasury_address, format_usdc(balance))
        except TreasuryUnreachable as e:
            logger.warning("Could not read treasury balance: %s", e)
        self._transition(job, JobStatus.complete)


def run_jobs_parallel(
    coordinator: TransferCoordinator,
    job_ids: list[str],
    max_workers: int | None = None,
) -> list[TransferJob]:
    """Resume several jobs on a thread pool.

    :return:
        Jobs in the same order as ``job_ids``
    """
    if not job_ids:
        return []

    results: dict[int, TransferJob] = {}
    with ThreadPoolExecutor(max_workers=max_workers or len(job_ids), thread_name_prefix="transfer-job") as executor:
        futures = {executor.submit(coordinator.resume, job_id): idx for idx, job_id in enumerate(job_ids)}
        for future in as_completed(futures):
            results[futures[future]] = future.result()
    return [results[i] for i in range(len(job_ids))]
