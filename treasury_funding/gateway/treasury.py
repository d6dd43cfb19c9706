"""Deposit minted USDC into the treasury vault.

The vault pulls the tokens with ``transferFrom``, so every deposit is
``approve(treasury, amount)`` followed by ``depositToTreasury(amount)``.
Pot budgets and approval rules live in the vault contract and are
only read here.
"""

import datetime
import logging

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from treasury_funding.abi import ZERO_ADDRESS
from treasury_funding.gateway.client import ChainClient, ContractCall, SignedCall
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.errors import (
    ChainUnavailable,
    InsufficientBalance,
    InvalidAmount,
    MissingContractAddress,
    TransactionReverted,
    TreasuryRejected,
    TreasuryUnreachable,
)
from treasury_funding.utils import format_usdc

logger = logging.getLogger(__name__)

#: Bundled treasury vault ABI
TREASURY_ABI = "treasury/TreasuryVault.json"


class TreasuryForwarder:
    """Approve and deposit USDC into the treasury on the destination chain.

    Neither step is retried: a revert for an amount reverts the same way again.
    """

    def __init__(self, client: ChainClient, treasury_address: HexAddress | str, config: GatewayConfig | None = None):
        """
        :raise MissingContractAddress:
            Treasury address is not set.
        """
        if not treasury_address or treasury_address.lower() == ZERO_ADDRESS:
            raise MissingContractAddress("Treasury contract address not configured")
        self.client = client
        self.profile = client.profile
        self.treasury_address = Web3.to_checksum_address(treasury_address)
        self.config = config or GatewayConfig()

    def __repr__(self):
        return f"<TreasuryForwarder {self.treasury_address} on {self.profile.name}>"

    def _sign(self, call: ContractCall) -> SignedCall:
        try:
            return self.client.sign(call)
        except TransactionReverted as e:
            raise TreasuryRejected(e.reason, tx_hash=e.tx_hash) from e
        except ChainUnavailable as e:
            raise TreasuryUnreachable(str(e)) from e

    def sign_approve(self, amount: int) -> SignedCall:
        """Sign ``approve(treasury, amount)``."""
        return self._sign(ContractCall(self.profile.token_address, "ERC20.json", "approve", (self.treasury_address, amount)))

    def sign_deposit(self, amount: int) -> SignedCall:
        """Sign ``depositToTreasury(amount)``."""
        return self._sign(ContractCall(self.treasury_address, TREASURY_ABI, "depositToTreasury", (amount,)))

    def broadcast(self, tx_hash: HexBytes | str, raw_transaction: HexBytes | str | None) -> HexBytes:
        """Get a signed approve or deposit onto the chain, or find it there already.

        :raise TreasuryRejected:
            The node refused the transaction.

        :raise ChainUnavailable:
            No answer from the node. The transaction may have been accepted,
            resume later with the same transaction.
        """
        try:
            return self.client.ensure_broadcast(tx_hash, raw_transaction)
        except TransactionReverted as e:
            raise TreasuryRejected(e.reason, tx_hash=e.tx_hash) from e

    def confirm(self, tx_hash: HexBytes | str, timeout: datetime.timedelta | None = None) -> dict:
        """Wait for an approve or deposit transaction.

        Losing the RPC connection while waiting leaves the transaction pending,
        so :py:class:`ChainUnavailable` is passed on as is and the wait can be resumed.

        :raise TreasuryRejected:
            Receipt status is 0.

        :raise TransactionStalled:
            No receipt within the timeout.
        """
        try:
            return self.client.confirm_success(tx_hash, timeout or self.config.receipt_timeout, self.config.receipt_poll_delay)
        except TransactionReverted as e:
            raise TreasuryRejected(e.reason, tx_hash=e.tx_hash) from e

    def check_balance(self, amount: int):
        """Check the wallet holds enough USDC to deposit.

        :raise InsufficientBalance:
            Wallet holds less than ``amount``.
        """
        balance = self.client.get_token_balance(self.client.address)
        if balance < amount:
            raise InsufficientBalance(
                f"{self.client.address} has {format_usdc(balance)} USDC on {self.profile.display_name}, treasury deposit needs {format_usdc(amount)}",
                balance=balance,
                required=amount,
            )
        logger.info("Wallet holds %s USDC on %s, depositing %s", format_usdc(balance), self.profile.name, format_usdc(amount))

    def deposit(self, amount: int) -> HexBytes:
        """Approve then deposit, waiting for both.

        :raise InvalidAmount:
            Amount is not positive.

        :raise TreasuryRejected:
            Approve or deposit reverted.

        :raise TreasuryUnreachable:
            RPC failed before anything was broadcast.

        :return:
            ``depositToTreasury()`` transaction hash
        """
        if type(amount) != int or amount <= 0:
            raise InvalidAmount(f"Treasury deposit must be a positive integer in raw units, got {amount!r}")

        approve = self.sign_approve(amount)
        self.confirm(self.broadcast(approve.tx_hash, approve.raw_transaction))
        deposit = self.sign_deposit(amount)
        deposit_hash = self.broadcast(deposit.tx_hash, deposit.raw_transaction)
        self.confirm(deposit_hash)
        logger.info("Treasury funded with %s USDC: %s", format_usdc(amount), self.profile.get_tx_link(deposit_hash.to_0x_hex()))
        return deposit_hash

    def fetch_treasury_balance(self) -> int:
        """Read ``getTotalBalance()`` of the vault.

        :raise TreasuryUnreachable:
            RPC failed.
        """
        try:
            return self.client.call(ContractCall(self.treasury_address, TREASURY_ABI, "getTotalBalance"))
        except ChainUnavailable as e:
            raise TreasuryUnreachable(str(e)) from e
