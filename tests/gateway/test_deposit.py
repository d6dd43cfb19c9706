"""Deposits to GatewayWallet and finality polling."""

from unittest.mock import Mock

import pytest

from treasury_funding.gateway.deposit import DepositMonitor, DepositRecord, DepositStatus, watch_deposits_parallel
from treasury_funding.gateway.errors import ChainUnavailable, DepositReverted, InsufficientBalance, InvalidAmount, TransactionStalled


@pytest.fixture()
def monitor(sepolia_client, store, config) -> DepositMonitor:
    return DepositMonitor(sepolia_client, store=store, config=config)


def test_deposit_finality(monitor, sepolia_client, wallet):
    """Deposit 5 USDC with a 2 block finality requirement."""
    record = monitor.start_deposit(wallet.address, 5_000000)
    assert record.status == DepositStatus.included
    assert record.block_number == 1000
    assert sepolia_client.sent_functions() == ["approve", "deposit"]

    sepolia_client.mine(1)
    record = monitor.poll_finality(record)
    assert record.status == DepositStatus.waiting_finality
    assert record.confirmations == 1

    sepolia_client.mine(1)
    record = monitor.poll_finality(record)
    assert record.status == DepositStatus.finalized
    assert record.confirmations == 2


def test_poll_finality_idempotent(monitor, sepolia_client, wallet):
    """Polling twice without new blocks gives the same record and sends nothing."""
    record = monitor.start_deposit(wallet.address, 5_000000)
    sepolia_client.mine(1)
    first = monitor.poll_finality(record)
    second = monitor.poll_finality(first)
    assert first == second
    assert len(sepolia_client.sent) == 2


def test_deposit_persisted_and_resumed(monitor, sepolia_client, wallet, store, config):
    monitor.start_deposit(wallet.address, 5_000000)
    sepolia_client.mine(5)

    restarted = DepositMonitor(sepolia_client, store=store, config=config)
    record = restarted.resume(wallet.address)
    assert record.status == DepositStatus.finalized
    stored = DepositRecord.from_dict(store.load_deposit("sepolia", wallet.address))
    assert stored.status == DepositStatus.finalized
    assert stored.tx_hash == record.tx_hash
    assert stored.confirmations == 5


def test_deposit_receipt_stall_resumes(monitor, sepolia_client, wallet, store):
    """A stalled deposit is picked up by polling the recorded hash."""
    sepolia_client.held.add("deposit")
    with pytest.raises(TransactionStalled):
        monitor.start_deposit(wallet.address, 5_000000)

    record = DepositRecord.from_dict(store.load_deposit("sepolia", wallet.address))
    assert record.status == DepositStatus.submitted
    assert monitor.poll_finality(record) == record

    sepolia_client.release()
    sepolia_client.mine(2)
    record = monitor.poll_finality(record)
    assert record.status == DepositStatus.finalized
    assert sepolia_client.sent_functions() == ["approve", "deposit"]


def test_insufficient_balance(monitor, wallet, sepolia_client):
    with pytest.raises(InsufficientBalance) as exc_info:
        monitor.start_deposit(wallet.address, 1000 * 10**6)
    assert exc_info.value.balance == 100 * 10**6
    assert sepolia_client.sent == []


@pytest.mark.parametrize("amount", [0, -1, 1.5])
def test_invalid_amount(monitor, wallet, amount):
    with pytest.raises(InvalidAmount):
        monitor.start_deposit(wallet.address, amount)


def test_deposit_revert(monitor, wallet, sepolia_client):
    sepolia_client.onchain_reverts["deposit"] = "paused"
    with pytest.raises(DepositReverted) as exc_info:
        monitor.start_deposit(wallet.address, 5_000000)
    assert exc_info.value.reason == "paused"


def test_watch_deposits_parallel(monitor, sepolia_client, wallet):
    record = monitor.start_deposit(wallet.address, 5_000000)
    sepolia_client.mine(3)
    results = watch_deposits_parallel([(monitor, record)], progress=False)
    assert results[0].status == DepositStatus.finalized


def test_deposit_broadcast_dropped_resumed(monitor, sepolia_client, wallet, store, config):
    """The signed deposit is stored first, resume broadcasts the same transaction."""
    sepolia_client.dropped_broadcasts.add("deposit")
    with pytest.raises(ChainUnavailable):
        monitor.start_deposit(wallet.address, 5_000000)

    stored = DepositRecord.from_dict(store.load_deposit("sepolia", wallet.address))
    assert stored.status == DepositStatus.submitted
    assert stored.raw_transaction
    assert sepolia_client.sent_functions() == ["approve"]

    restarted = DepositMonitor(sepolia_client, store=store, config=config)
    record = restarted.resume(wallet.address)
    assert record.tx_hash == stored.tx_hash
    assert record.status == DepositStatus.waiting_finality
    assert sepolia_client.sent_functions() == ["approve", "deposit"]

    sepolia_client.mine(2)
    assert restarted.poll_finality(record).status == DepositStatus.finalized


def test_deposit_answer_lost_not_sent_twice(monitor, sepolia_client, wallet, store, config):
    sepolia_client.lost_broadcast_answers.add("deposit")
    with pytest.raises(ChainUnavailable):
        monitor.start_deposit(wallet.address, 5_000000)

    sepolia_client.mine(2)
    record = DepositMonitor(sepolia_client, store=store, config=config).resume(wallet.address)
    assert record.status == DepositStatus.finalized
    assert sepolia_client.sent_functions() == ["approve", "deposit"]


def test_deposit_refused_by_node(monitor, sepolia_client, wallet, store):
    sepolia_client.refused_broadcasts["deposit"] = "insufficient funds for gas * price + value"
    with pytest.raises(DepositReverted) as exc_info:
        monitor.start_deposit(wallet.address, 5_000000)
    assert exc_info.value.reason == "insufficient funds for gas * price + value"
    stored = DepositRecord.from_dict(store.load_deposit("sepolia", wallet.address))
    assert stored.status == DepositStatus.failed


def test_watch_deposits_parallel_stops_on_failure(monitor, sepolia_client, wallet, registry, config):
    """One chain failing ends the watch instead of waiting on the others forever."""
    record = monitor.start_deposit(wallet.address, 5_000000)

    broken = Mock(spec=DepositMonitor)
    broken.profile = registry.get("base")
    broken.config = config
    broken.poll_finality.side_effect = ChainUnavailable("eth_blockNumber on base failed after 2 attempts")
    broken_record = DepositRecord(chain="base", depositor=wallet.address, amount=1_000000, tx_hash="0x" + "22" * 32, required_confirmations=32)

    with pytest.raises(ChainUnavailable):
        watch_deposits_parallel([(monitor, record), (broken, broken_record)], progress=False)
