"""Transfer job state machine, end to end against fake chains and a mocked Gateway API."""

import pytest
from hexbytes import HexBytes

from treasury_funding.gateway.coordinator import JobStatus, TransferCoordinator, TransferJob, run_jobs_parallel
from treasury_funding.gateway.errors import ChainUnavailable, InvalidAmount, UnknownChain


class SimulatedCrash(Exception):
    """Process dies in the middle of a step."""


def test_full_transfer(coordinator, arc_client, session, store, wallet):
    """5 USDC from Sepolia unified balance to the Arc treasury."""
    job = coordinator.create_job("sepolia", "arc", wallet.address, 5_000000)
    assert job.status == JobStatus.pending

    job = coordinator.run_job(job)

    assert job.status == JobStatus.complete
    assert not job.stalled
    assert job.transfer_id == "transfer-1"
    assert job.attestation is not None
    assert job.mint_tx_hash and job.treasury_approve_tx_hash and job.treasury_tx_hash
    assert session.post.call_count == 1
    assert session.get.call_count == 1
    assert arc_client.sent_functions() == ["gatewayMint", "approve", "depositToTreasury"]
    assert arc_client.sent[2].args == (5_000000,)
    assert arc_client.treasury_balance == 5_000000
    assert [h["status"] for h in job.history] == [s.value for s in (
        JobStatus.pending,
        JobStatus.intent_signed,
        JobStatus.attestation_pending,
        JobStatus.attested,
        JobStatus.minted,
        JobStatus.treasury_funded,
        JobStatus.complete,
    )]

    stored = TransferJob.from_dict(store.load_job(job.job_id))
    assert stored.status == JobStatus.complete
    assert stored.signed_intent == job.signed_intent
    assert stored.signed_intent.recover_signer() == wallet.address


def test_observer_notified(coordinator, wallet):
    seen = []
    unsubscribe = coordinator.subscribe(lambda job: seen.append(job.status))
    job = coordinator.create_job("sepolia", "arc", wallet.address, 5_000000)
    coordinator.run_job(job)
    unsubscribe()
    assert seen[0] == JobStatus.pending
    assert seen[-1] == JobStatus.complete
    assert JobStatus.attested in seen


def test_broken_observer_does_not_stop_job(coordinator, wallet):
    def broken(job):
        raise RuntimeError("display gone")

    coordinator.subscribe(broken)
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.complete


def test_submit_once_across_crash(coordinator, attestation_client, session, wallet, monkeypatch):
    """A crash after submission does not submit the same intent again on resume."""
    job = coordinator.create_job("sepolia", "arc", wallet.address, 5_000000)

    def crash(*args, **kwargs):
        raise SimulatedCrash()

    monkeypatch.setattr(attestation_client, "poll", crash)
    with pytest.raises(SimulatedCrash):
        coordinator.run_job(job)
    monkeypatch.undo()

    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.complete
    assert session.post.call_count == 1


def test_crash_during_submit_is_not_resubmitted(coordinator, session, wallet):
    """Unknown submission outcome fails the job instead of guessing."""
    job = coordinator.create_job("sepolia", "arc", wallet.address, 5_000000)
    session.post.side_effect = SimulatedCrash()
    with pytest.raises(SimulatedCrash):
        coordinator.run_job(job)

    session.post.side_effect = None
    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.failed
    assert job.error_type == "SubmissionOutcomeUnknown"
    assert job.failed_at == JobStatus.intent_signed
    assert session.post.call_count == 1


def test_attestation_service_422(coordinator, session, wallet, http_response):
    """HTTP 422 on submit fails the job with no polling."""
    session.post.return_value = http_response(422, None, text="insufficient balance")
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.failed
    assert job.error_type == "AttestationServiceError"
    assert "422" in job.failure_reason
    assert session.get.call_count == 0


def test_mint_reverted_expired(coordinator, arc_client, session, wallet):
    """Expired attestation fails the job and is not minted again."""
    arc_client.onchain_reverts["gatewayMint"] = "expired"
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.failed
    assert job.error_type == "MintReverted"
    assert job.failure_reason == "expired"
    assert job.attestation is not None

    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.failed
    assert arc_client.sent_functions() == ["gatewayMint"]
    assert session.post.call_count == 1


def test_second_mint_of_same_attestation_fails(coordinator, arc_client, wallet):
    """Two jobs that get the same attestation back cannot both mint."""
    first = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert first.status == JobStatus.complete

    second = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert second.status == JobStatus.failed
    assert second.error_type == "MintReverted"
    assert arc_client.sent_functions().count("gatewayMint") == 1


def test_mint_stall_resumes_by_hash(coordinator, arc_client, wallet):
    """A stalled mint is re-checked on resume, never re-sent."""
    arc_client.held.add("gatewayMint")
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.attested
    assert job.stalled
    assert job.last_error.startswith("TransactionStalled")
    mint_hash = job.mint_tx_hash

    arc_client.release()
    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.complete
    assert job.mint_tx_hash == mint_hash
    assert arc_client.sent_functions() == ["gatewayMint", "approve", "depositToTreasury"]


def test_attestation_timeout_is_resumable(coordinator, session, wallet, http_response, attestation_body):
    session.get.return_value = http_response(200, {"status": "pending"})
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.attestation_pending
    assert job.stalled
    assert job.last_error.startswith("AttestationTimeout")

    session.get.return_value = http_response(200, attestation_body())
    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.complete
    assert session.post.call_count == 1


def test_treasury_rejected(coordinator, arc_client, wallet):
    arc_client.onchain_reverts["depositToTreasury"] = "paused"
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.failed
    assert job.error_type == "TreasuryRejected"
    assert job.failed_at == JobStatus.minted
    assert job.mint_tx_hash is not None


def test_create_job_validation(coordinator, wallet):
    with pytest.raises(UnknownChain):
        coordinator.create_job("sepolia", "solana", wallet.address, 5_000000)
    with pytest.raises(UnknownChain):
        # No client for Base
        coordinator.create_job("sepolia", "base", wallet.address, 5_000000)
    with pytest.raises(InvalidAmount):
        coordinator.create_job("sepolia", "arc", wallet.address, 0)


def test_run_jobs_parallel(registry, signer, attestation_client, store, config, wallet, arc_client):
    coordinator = TransferCoordinator(
        registry=registry,
        clients={"arc": arc_client},
        signer=signer,
        attestation_client=attestation_client,
        treasury_address="0x1111111111111111111111111111111111111111",
        store=store,
        config=config,
    )
    job = coordinator.create_job("sepolia", "arc", wallet.address, 5_000000)
    results = run_jobs_parallel(coordinator, [job.job_id])
    assert results[0].status == JobStatus.complete
    assert [j.job_id for j in coordinator.list_jobs()] == [job.job_id]


def test_mint_answer_lost_is_not_minted_again(coordinator, arc_client, store, wallet):
    """The node took the mint but the RPC call failed, resume finds the receipt."""
    arc_client.lost_broadcast_answers.add("gatewayMint")
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.attested
    assert job.stalled
    assert job.last_error.startswith("ChainUnavailable")
    mint_hash = job.mint_tx_hash
    assert mint_hash in job.raw_transactions
    assert store.load_job(job.job_id)["mint_tx_hash"] == mint_hash

    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.complete
    assert job.mint_tx_hash == mint_hash
    assert arc_client.sent_functions() == ["gatewayMint", "approve", "depositToTreasury"]
    assert arc_client.treasury_balance == 5_000000


def test_mint_broadcast_dropped_is_rebroadcast(coordinator, arc_client, wallet):
    """The mint never reached the node, resume sends the same signed bytes."""
    arc_client.dropped_broadcasts.add("gatewayMint")
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.attested
    assert job.stalled
    assert arc_client.sent == []
    mint_hash = job.mint_tx_hash

    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.complete
    assert job.mint_tx_hash == mint_hash
    assert arc_client.broadcasts.count(HexBytes(mint_hash)) == 2
    assert arc_client.sent_functions().count("gatewayMint") == 1


def test_mint_refused_by_node(coordinator, arc_client, wallet):
    """Node errors on broadcast fail the job with a typed error."""
    arc_client.refused_broadcasts["gatewayMint"] = "insufficient funds for gas * price + value"
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.failed
    assert job.error_type == "MintReverted"
    assert job.failure_reason == "insufficient funds for gas * price + value"
    assert arc_client.sent == []


def test_treasury_deposit_answer_lost(coordinator, arc_client, wallet):
    arc_client.lost_broadcast_answers.add("depositToTreasury")
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.minted
    assert job.stalled
    deposit_hash = job.treasury_tx_hash
    assert deposit_hash in job.raw_transactions

    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.complete
    assert job.treasury_tx_hash == deposit_hash
    assert arc_client.sent_functions() == ["gatewayMint", "approve", "depositToTreasury"]
    assert arc_client.treasury_balance == 5_000000


def test_treasury_receipt_rpc_failure_is_resumable(coordinator, arc_client, wallet, monkeypatch):
    """Losing the RPC while waiting for the treasury receipt does not fail the job."""
    confirm_success = arc_client.confirm_success

    def flaky_confirm_success(tx_hash, *args, **kwargs):
        if arc_client.signed[bytes(HexBytes(tx_hash))].function_name == "depositToTreasury":
            raise ChainUnavailable("eth_getTransactionReceipt on arc failed after 3 attempts")
        return confirm_success(tx_hash, *args, **kwargs)

    monkeypatch.setattr(arc_client, "confirm_success", flaky_confirm_success)
    job = coordinator.run_job(coordinator.create_job("sepolia", "arc", wallet.address, 5_000000))
    assert job.status == JobStatus.minted
    assert job.stalled
    assert job.last_error.startswith("ChainUnavailable")

    monkeypatch.undo()
    job = coordinator.resume(job.job_id)
    assert job.status == JobStatus.complete
    assert arc_client.sent_functions() == ["gatewayMint", "approve", "depositToTreasury"]
