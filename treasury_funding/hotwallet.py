"""Hot wallet for signing transactions and EIP-712 messages.

- Create local wallets from a private key

- Sign contract calls with manually managed nonces, one counter per chain

- Sign EIP-712 typed data, used for Gateway burn intents
"""

import logging
import secrets
import threading
from typing import NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract.contract import ContractFunction

logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """Signed Gateway deposit, mint or treasury transaction, ready to broadcast."""

    #: Payload for ``eth_sendRawTransaction``
    raw_transaction: HexBytes

    #: Known before broadcast, persisted by the job so a resume can look it up
    hash: HexBytes

    nonce: int

    chain_id: int

    #: Sender, the depositor hot wallet
    address: str

    #: The unsigned transaction dict, logged when a broadcast fails
    source: Optional[dict] = None

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} chain:{self.chain_id} nonce:{self.nonce}>"


class HotWallet:
    """Hot wallet for signing transactions on several chains.

    - A hot wallet maintains an plain text private key of an Ethereum address in the process memory
      using :py:class:`eth_account.signers.local.LocalAccount`

    - Nonces are tracked per chain id, because the same depositor sends
      transactions on the source chains and on the destination chain

    - Nonce allocation is guarded by a lock, so chain workers on different threads
      can share the wallet

    Example:

    .. code-block:: python

        wallet = HotWallet.from_private_key(os.environ["PRIVATE_KEY"])
        wallet.sync_nonce(web3)
        bound_func = usdc.functions.approve(GATEWAY_WALLET_ADDRESS, 5 * 10**6)
        signed_tx = wallet.sign_bound_call_with_new_nonce(bound_func)
        tx_hash = web3.eth.send_raw_transaction(signed_tx.raw_transaction)
    """

    def __init__(self, account: LocalAccount):
        """Create a hot wallet from a local account."""
        self.account = account
        self.current_nonces: dict[int, int] = {}
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        """Ethereum address of the wallet."""
        return self.account.address

    def sync_nonce(self, web3: Web3, force=False):
        """Initialise the nonce for the chain of ``web3`` from the on-chain data.

        :param force:
            Take the node's pending nonce even if it is behind our counter.
            Used after the node refused a transaction, so its nonce is not left as a gap.
        """
        chain_id = web3.eth.chain_id
        new_nonce = web3.eth.get_transaction_count(self.account.address, "pending")
        with self._lock:
            current = self.current_nonces.get(chain_id)
            if current is not None and new_nonce < current and not force:
                logger.warning(
                    "Nonce sync failed on chain %d, read onchain nonce %d that is older than our current nonce %d. Keeping ours.",
                    chain_id,
                    new_nonce,
                    current,
                )
                return
            self.current_nonces[chain_id] = new_nonce
        logger.info("Synced nonce for %s on chain %d to %d", self.account.address, chain_id, new_nonce)

    def allocate_nonce(self, chain_id: int) -> int:
        """Get the next free nonce on a chain and increase the counter."""
        with self._lock:
            assert chain_id in self.current_nonces, f"Nonce is not yet synced from chain {chain_id}: {self}"
            nonce = self.current_nonces[chain_id]
            self.current_nonces[chain_id] = nonce + 1
        return nonce

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransactionWithNonce:
        """Signs a transaction and allocates a nonce for it.

        :param tx:
            Ethereum transaction data as a dict, must contain ``chainId``.
            This is modified in-place to include nonce.
        """
        assert type(tx) == dict
        assert "nonce" not in tx
        assert "chainId" in tx, f"chainId missing: {tx}"
        tx["nonce"] = self.allocate_nonce(tx["chainId"])
        _signed = self.account.sign_transaction(tx)
        return SignedTransactionWithNonce(
            raw_transaction=HexBytes(_signed.raw_transaction),
            hash=HexBytes(_signed.hash),
            nonce=tx["nonce"],
            chain_id=tx["chainId"],
            address=self.address,
            source=tx,
        )

    def sign_bound_call_with_new_nonce(
        self,
        func: ContractFunction,
        tx_params: dict | None = None,
    ) -> SignedTransactionWithNonce:
        """Signs a bound Web3 Contract call.

        Gas limit and fee fields are filled in by web3.py unless given in ``tx_params``.

        Example:

        .. code-block:: python

            bound_func = minter.functions.gatewayMint(attestation, signature)
            signed_tx = hot_wallet.sign_bound_call_with_new_nonce(bound_func)
            web3.eth.send_raw_transaction(signed_tx.raw_transaction)

        :param func:
            Web3 contract function that has its arguments bound

        :param tx_params:
            Transaction parameters like `gas`

        :return:
            A signed transaction with debugging details like used nonce.
        """
        assert isinstance(func, ContractFunction), f"Got: {type(func)}"
        tx_params = dict(tx_params or {})
        tx_params["from"] = self.address
        if "chainId" not in tx_params:
            tx_params["chainId"] = func.w3.eth.chain_id
        tx = func.build_transaction(tx_params)
        # build_transaction() may add a stale nonce
        tx.pop("nonce", None)
        return self.sign_transaction_with_new_nonce(tx)

    def sign_typed_data(self, typed_data: dict) -> HexBytes:
        """Sign an EIP-712 message.

        :param typed_data:
            Full message with ``types``, ``domain``, ``primaryType`` and ``message`` keys.

        :return:
            65 bytes signature
        """
        signed = self.account.sign_typed_data(full_message=typed_data)
        return HexBytes(signed.signature)

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a private key that is passed in as a hex string.

        :param key: 0x prefixed hex string
        :return: Ready to go hot wallet account
        """
        assert type(key) == str, f"Expected private key as string, got {type(key)}"
        assert key.startswith("0x"), f"This system assumes private keys are prefixed with 0x, your key starts with {key[0:8]}... Please add 0x prefix to your private key hex string"
        account = Account.from_key(key)
        return HotWallet(account)

    @staticmethod
    def create_for_testing() -> "HotWallet":
        """Random key, not funded anywhere."""
        return HotWallet.from_private_key("0x" + secrets.token_hex(32))
