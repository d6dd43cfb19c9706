"""Fund the treasury vault through Circle Gateway.

- Deposit USDC to GatewayWallet on the source chain and wait for finality
- Sign a burn intent for the unified balance and get an attestation from the Gateway API
- Mint on the destination chain and deposit the minted USDC to the treasury vault

Every step is persisted. If the script is interrupted, continue with
``scripts/gateway/continue-gateway-funding.py``.

You need testnet USDC on the source chain (https://faucet.circle.com)
and gas on both chains. On Arc, USDC is the gas token.

To run:

.. code-block:: shell

    export PRIVATE_KEY=0x...
    export TREASURY_CONTRACT_ADDRESS=0x...
    export JSON_RPC_SEPOLIA=...
    python scripts/gateway/fund-treasury-via-gateway.py \
        --source sepolia \
        --destination arc \
        --amount 5.00

"""

import argparse
import logging
import os
from decimal import Decimal
from pathlib import Path

from treasury_funding.gateway.attestation import AttestationClient
from treasury_funding.gateway.client import Web3ChainClient
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.constants import USDC_DECIMALS
from treasury_funding.gateway.coordinator import JobStatus, TransferCoordinator
from treasury_funding.gateway.deposit import DepositMonitor, DepositStatus
from treasury_funding.gateway.registry import create_testnet_registry
from treasury_funding.gateway.signing import HotWalletSigner
from treasury_funding.gateway.store import SQLiteJobStore
from treasury_funding.hotwallet import HotWallet
from treasury_funding.utils import format_usdc, setup_console_logging

logger = logging.getLogger(__name__)


#: Default location of the persisted job state
DEFAULT_STATE_FILE = Path("~/.treasury-funding/gateway.sqlite").expanduser()


def parse_args():
    parser = argparse.ArgumentParser(description="Fund the treasury vault with USDC through Circle Gateway.")
    parser.add_argument("--source", type=str, default="sepolia", help="Source chain name, e.g. sepolia")
    parser.add_argument("--destination", type=str, default="arc", help="Destination chain name, e.g. arc")
    parser.add_argument("--amount", type=str, required=True, help="USDC amount, e.g. 5.00")
    parser.add_argument("--treasury", type=str, default=os.environ.get("TREASURY_CONTRACT_ADDRESS"), help="Treasury vault address, defaults to TREASURY_CONTRACT_ADDRESS")
    parser.add_argument("--skip-deposit", action="store_true", help="Use the existing unified balance, do not deposit first")
    parser.add_argument("--state-file", type=Path, default=DEFAULT_STATE_FILE, help="SQLite file for the persisted job state")
    parser.add_argument("--log-file", type=Path, required=False, help="Also write log output to this file")
    parser.add_argument("--simplified-logging", action="store_true", help="Use simplified output without timestamps")
    return parser.parse_args()


def main():
    args = parse_args()
    setup_console_logging(simplified_logging=args.simplified_logging, log_file=args.log_file)

    private_key = os.environ.get("PRIVATE_KEY")
    assert private_key, "PRIVATE_KEY environment variable missing"
    assert args.treasury, "Give --treasury or set TREASURY_CONTRACT_ADDRESS"

    amount = int(Decimal(args.amount) * 10**USDC_DECIMALS)

    config = GatewayConfig.from_env()
    registry = create_testnet_registry()
    source, destination = registry.validate_pair(args.source, args.destination)

    wallet = HotWallet.from_private_key(private_key)
    source_client = Web3ChainClient.create(source, wallet, config.rpc_retry)
    destination_client = Web3ChainClient.create(destination, wallet, config.rpc_retry)
    store = SQLiteJobStore(args.state_file)

    logger.info("Wallet: %s", wallet.address)
    logger.info("Treasury: %s", args.treasury)
    logger.info("Amount: %s USDC, %s -> %s", format_usdc(amount), source.display_name, destination.display_name)

    if not args.skip_deposit:
        monitor = DepositMonitor(source_client, store=store, config=config)
        record = monitor.start_deposit(wallet.address, amount + config.max_fee)
        logger.info("Waiting for %d confirmations on %s, this may take a while", source.required_confirmations, source.display_name)
        record = monitor.wait_for_finality(record)
        if record.status != DepositStatus.finalized:
            logger.error("Deposit did not finalize: %s", record)
            return

    attestation_client = AttestationClient(config)
    coordinator = TransferCoordinator(
        registry=registry,
        clients={destination.name: destination_client},
        signer=HotWalletSigner(wallet),
        attestation_client=attestation_client,
        treasury_address=args.treasury,
        store=store,
        config=config,
        check_unified_balance=True,
    )

    job = coordinator.create_job(source.name, destination.name, wallet.address, amount)
    logger.info("Created job %s", job.job_id)
    job = coordinator.run_job(job)

    if job.status == JobStatus.complete:
        logger.info("Treasury funded: %s", destination.get_tx_link(job.treasury_tx_hash))
    elif job.status == JobStatus.failed:
        logger.error("Job %s failed: %s: %s", job.job_id, job.error_type, job.failure_reason)
    else:
        logger.warning("Job %s stalled in %s: %s", job.job_id, job.status.value, job.last_error)
        logger.warning("Continue with: python scripts/gateway/continue-gateway-funding.py --job %s", job.job_id)


if __name__ == "__main__":
    main()
