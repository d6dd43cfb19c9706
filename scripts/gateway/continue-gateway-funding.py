"""Continue an interrupted Gateway treasury funding.

- With ``--job`` resume a persisted transfer job from its last completed step
- With ``--deposit-chain`` poll the finality of the last deposit on a chain
- With ``--list`` show all persisted jobs and deposits

Resuming never re-submits a burn intent that reached the Gateway API,
and never signs a second mint or treasury transaction for a step:
the recorded transaction is checked, and broadcast again if the node lost it.

To run:

.. code-block:: shell

    export PRIVATE_KEY=0x...
    export TREASURY_CONTRACT_ADDRESS=0x...
    python scripts/gateway/continue-gateway-funding.py --list
    python scripts/gateway/continue-gateway-funding.py --job 4f0c...
    python scripts/gateway/continue-gateway-funding.py --deposit-chain sepolia

"""

import argparse
import logging
import os
from pathlib import Path

from treasury_funding.gateway.attestation import AttestationClient
from treasury_funding.gateway.client import Web3ChainClient
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.coordinator import TransferCoordinator
from treasury_funding.gateway.deposit import DepositMonitor
from treasury_funding.gateway.registry import create_testnet_registry
from treasury_funding.gateway.signing import HotWalletSigner
from treasury_funding.gateway.store import SQLiteJobStore
from treasury_funding.hotwallet import HotWallet
from treasury_funding.utils import format_usdc, setup_console_logging

logger = logging.getLogger(__name__)


DEFAULT_STATE_FILE = Path("~/.treasury-funding/gateway.sqlite").expanduser()


def parse_args():
    parser = argparse.ArgumentParser(description="Continue an interrupted Gateway treasury funding.")
    parser.add_argument("--job", type=str, required=False, help="Transfer job id to resume")
    parser.add_argument("--deposit-chain", type=str, required=False, help="Poll the last deposit on this chain")
    parser.add_argument("--list", action="store_true", help="List persisted jobs and deposits")
    parser.add_argument("--treasury", type=str, default=os.environ.get("TREASURY_CONTRACT_ADDRESS"), help="Treasury vault address, defaults to TREASURY_CONTRACT_ADDRESS")
    parser.add_argument("--state-file", type=Path, default=DEFAULT_STATE_FILE, help="SQLite file for the persisted job state")
    parser.add_argument("--simplified-logging", action="store_true", help="Use simplified output without timestamps")
    return parser.parse_args()


def list_state(store: SQLiteJobStore):
    for job in store.list_jobs():
        logger.info(
            "Job %s %s USDC %s -> %s: %s%s",
            job["job_id"],
            format_usdc(int(job["amount"])),
            job["source_chain"],
            job["destination_chain"],
            job["status"],
            " (stalled)" if job.get("stalled") else "",
        )
    for deposit in store.list_deposits():
        logger.info(
            "Deposit %s USDC on %s: %s, %d/%d confirmations, tx %s",
            format_usdc(int(deposit["amount"])),
            deposit["chain"],
            deposit["status"],
            deposit["confirmations"],
            deposit["required_confirmations"],
            deposit["tx_hash"],
        )


def main():
    args = parse_args()
    setup_console_logging(simplified_logging=args.simplified_logging)

    store = SQLiteJobStore(args.state_file)

    if args.list:
        list_state(store)
        return

    private_key = os.environ.get("PRIVATE_KEY")
    assert private_key, "PRIVATE_KEY environment variable missing"
    wallet = HotWallet.from_private_key(private_key)
    config = GatewayConfig.from_env()
    registry = create_testnet_registry()

    if args.deposit_chain:
        profile = registry.get(args.deposit_chain)
        monitor = DepositMonitor(Web3ChainClient.create(profile, wallet, config.rpc_retry), store=store, config=config)
        record = monitor.resume(wallet.address)
        if record is None:
            logger.info("No deposit recorded on %s for %s", profile.name, wallet.address)
            return
        record = monitor.wait_for_finality(record)
        logger.info("Deposit now %s", record)
        return

    assert args.job, "Give --job, --deposit-chain or --list"
    assert args.treasury, "Give --treasury or set TREASURY_CONTRACT_ADDRESS"

    data = store.load_job(args.job)
    assert data is not None, f"No job {args.job} in {args.state_file}"
    destination = registry.get(data["destination_chain"])

    coordinator = TransferCoordinator(
        registry=registry,
        clients={destination.name: Web3ChainClient.create(destination, wallet, config.rpc_retry)},
        signer=HotWalletSigner(wallet),
        attestation_client=AttestationClient(config),
        treasury_address=args.treasury,
        store=store,
        config=config,
    )

    job = coordinator.resume(args.job)
    logger.info("Job is now %s", job)
    if job.failure_reason:
        logger.error("Failure: %s: %s", job.error_type, job.failure_reason)
        if job.attestation and not job.mint_tx_hash:
            logger.error("Attestation for transfer %s is stored in the job and can be minted manually", job.attestation.transfer_id)


if __name__ == "__main__":
    main()
