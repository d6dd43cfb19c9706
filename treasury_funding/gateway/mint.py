"""Redeem an attestation on the destination chain.

``GatewayMinter.gatewayMint(attestationPayload, signature)`` mints the transferred
USDC to the recipient. An attestation can be minted once. A second attempt reverts,
and a revert is final for that attestation: recovery needs a new burn intent.
"""

import datetime
import logging

from hexbytes import HexBytes

from treasury_funding.gateway.attestation import Attestation
from treasury_funding.gateway.client import ChainClient, ContractCall, SignedCall
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.errors import MintReverted, TransactionReverted
from treasury_funding.utils import format_usdc

logger = logging.getLogger(__name__)


class MintExecutor:
    """Call ``gatewayMint()`` on one destination chain."""

    def __init__(self, client: ChainClient, config: GatewayConfig | None = None):
        self.client = client
        self.profile = client.profile
        self.config = config or GatewayConfig()

    def __repr__(self):
        return f"<MintExecutor {self.profile.name}>"

    def sign_mint(self, attestation: Attestation) -> SignedCall:
        """Sign the mint transaction without broadcasting it.

        The caller records the hash and raw transaction before :py:meth:`broadcast`,
        so a crash can never lead to a second mint transaction.

        :raise MintReverted:
            The call reverts already in gas estimation or the node refuses it.
        """
        self.profile.validate_contracts()

        native_balance = self.client.get_native_balance(self.client.address)
        logger.info(
            "Minting %s on %s, gas balance of %s is %d",
            attestation,
            self.profile.display_name,
            self.client.address,
            native_balance,
        )
        if native_balance == 0:
            logger.warning("%s has no gas on %s, the mint will likely fail", self.client.address, self.profile.name)

        call = ContractCall(
            self.profile.minter_address,
            "gateway/GatewayMinter.json",
            "gatewayMint",
            (attestation.attestation, attestation.signature),
        )
        try:
            return self.client.sign(call)
        except TransactionReverted as e:
            raise MintReverted(e.reason, tx_hash=e.tx_hash) from e

    def broadcast(self, tx_hash: HexBytes | str, raw_transaction: HexBytes | str | None) -> HexBytes:
        """Get a signed mint onto the chain, or find it there already.

        :raise MintReverted:
            The node refused the transaction.

        :raise ChainUnavailable:
            No answer from the node, resume later with the same transaction.
        """
        try:
            return self.client.ensure_broadcast(tx_hash, raw_transaction)
        except TransactionReverted as e:
            raise MintReverted(e.reason, tx_hash=e.tx_hash) from e

    def send_mint(self, attestation: Attestation) -> HexBytes:
        """Sign and broadcast the mint transaction without waiting."""
        signed = self.sign_mint(attestation)
        return self.broadcast(signed.tx_hash, signed.raw_transaction)

    def confirm(self, tx_hash: HexBytes | str, timeout: datetime.timedelta | None = None) -> dict:
        """Wait for a mint transaction and check it succeeded.

        Safe to call again for the same hash after a stall.

        :raise MintReverted:
            Receipt status is 0.

        :raise TransactionStalled:
            No receipt within the timeout.
        """
        try:
            receipt = self.client.confirm_success(tx_hash, timeout or self.config.receipt_timeout, self.config.receipt_poll_delay)
        except TransactionReverted as e:
            raise MintReverted(e.reason, tx_hash=e.tx_hash) from e

        balance = self.client.get_token_balance(self.client.address)
        logger.info("Mint confirmed on %s, wallet now holds %s USDC", self.profile.name, format_usdc(balance, self.profile.token_decimals))
        return receipt

    def mint(self, attestation: Attestation) -> HexBytes:
        """Broadcast and confirm a mint.

        :return:
            Mint transaction hash
        """
        tx_hash = self.send_mint(attestation)
        self.confirm(tx_hash)
        return tx_hash
