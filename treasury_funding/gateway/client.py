"""Per-chain JSON-RPC adapter.

:py:class:`ChainClient` is the only place that talks to a chain. The gateway steps
describe what to do as :py:class:`ContractCall` values, and the client reads,
signs, broadcasts and waits.

- :py:class:`Web3ChainClient` is the production implementation on top of web3.py
  and :py:class:`~treasury_funding.hotwallet.HotWallet`
- Tests substitute an in-process fake

Sending is two steps, :py:meth:`ChainClient.sign` and :py:meth:`ChainClient.broadcast`.
The transaction hash is known after signing, so callers persist the hash and the
raw transaction before anything reaches the node. A resumed job then re-checks
or re-broadcasts the very same transaction with :py:meth:`ChainClient.ensure_broadcast`
and never signs a second one.

A client is safe to share between jobs on the same chain. Signing and broadcasting
is serialised with a lock so nonces stay in order.
"""

import abc
import datetime
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

import requests
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import HTTPProvider, Web3
from web3.contract.contract import ContractFunction
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware

from treasury_funding.abi import get_deployed_contract
from treasury_funding.confirmation import wait_transaction_to_complete
from treasury_funding.gateway.config import RPCRetryConfig
from treasury_funding.gateway.errors import ChainUnavailable, TransactionReverted
from treasury_funding.gateway.registry import ChainProfile
from treasury_funding.hotwallet import HotWallet

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Errors worth retrying on a JSON-RPC connection
RETRYABLE_RPC_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.HTTPError,
)


@dataclass(slots=True, frozen=True)
class ContractCall:
    """A contract function call described as data.

    Example:

    .. code-block:: python

        call = ContractCall(profile.token_address, "ERC20.json", "approve", (spender, amount))
    """

    #: Contract address
    address: HexAddress

    #: Bundled ABI file name, see :py:mod:`treasury_funding.abi`
    abi_file: str

    #: Contract function name
    function_name: str

    #: Positional arguments
    args: tuple = field(default_factory=tuple)

    #: Gas limit, estimated when ``None``
    gas: int | None = None

    def __repr__(self):
        args = ", ".join(str(a) if not isinstance(a, bytes) else f"<{len(a)} bytes>" for a in self.args)
        return f"<{self.function_name}({args}) at {self.address}>"


@dataclass(slots=True, frozen=True)
class SignedCall:
    """A contract call signed with a nonce, not yet broadcast."""

    call: ContractCall

    #: Hash the transaction will have on chain
    tx_hash: HexBytes

    #: Payload for ``eth_sendRawTransaction``, broadcasting it again is harmless
    raw_transaction: HexBytes

    nonce: int

    def __repr__(self):
        return f"<Signed {self.call} nonce:{self.nonce} hash:{self.tx_hash.to_0x_hex()}>"


def parse_revert_reason(e: Exception) -> str:
    """Get a clean revert reason or node error message out of a web3.py exception."""
    rpc_response = getattr(e, "rpc_response", None)
    if isinstance(rpc_response, dict) and isinstance(rpc_response.get("error"), dict):
        message = rpc_response["error"].get("message")
    else:
        message = None
    message = message or getattr(e, "message", None) or (e.args[0] if e.args else str(e))
    message = str(message)
    for prefix in ("execution reverted: ", "execution reverted:"):
        if message.startswith(prefix):
            return message[len(prefix) :].strip()
    return message


class ChainClient(abc.ABC):
    """Read and write one chain.

    Subclasses implement the raw JSON-RPC operations.
    Receipt waiting and revert checks are shared.
    """

    #: Network this client talks to
    profile: ChainProfile

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.profile.name}>"

    @property
    def address(self) -> HexAddress:
        """The account this client sends transactions from."""
        raise NotImplementedError()

    @abc.abstractmethod
    def get_block_number(self) -> int:
        """Current block height."""

    @abc.abstractmethod
    def get_token_balance(self, owner: HexAddress | str) -> int:
        """USDC balance of ``owner`` in raw units."""

    @abc.abstractmethod
    def get_native_balance(self, owner: HexAddress | str) -> int:
        """Gas token balance of ``owner`` in raw units."""

    @abc.abstractmethod
    def call(self, call: ContractCall) -> Any:
        """Perform a read-only ``eth_call``."""

    @abc.abstractmethod
    def sign(self, call: ContractCall) -> SignedCall:
        """Estimate gas, allocate a nonce and sign a contract call.

        Nothing reaches the node's mempool.

        :raise TransactionReverted:
            The call reverts in gas estimation or the node refuses it,
            e.g. for insufficient gas funds.
        """

    @abc.abstractmethod
    def broadcast(self, tx_hash: HexBytes, raw_transaction: HexBytes) -> HexBytes:
        """Send a signed transaction to the node.

        A transaction the node already knows is not an error.

        :raise TransactionReverted:
            The node refused the transaction, e.g. nonce too low or no gas funds.

        :raise ChainUnavailable:
            No answer from the node. The transaction may or may not have been accepted.

        :return:
            Transaction hash
        """

    def send(self, call: ContractCall) -> HexBytes:
        """Sign and broadcast a contract call.

        Only for transactions that can be repeated safely after a crash.
        Irreversible steps use :py:meth:`sign` and persist the result first.

        :return:
            Transaction hash
        """
        signed = self.sign(call)
        return self.broadcast(signed.tx_hash, signed.raw_transaction)

    def ensure_broadcast(self, tx_hash: HexBytes | str, raw_transaction: HexBytes | str | None) -> HexBytes:
        """Make sure a recorded transaction has reached the chain, without signing anything new.

        - Already included: nothing is sent
        - Otherwise the same raw bytes are broadcast again

        :param raw_transaction:
            Signed payload. If unknown, only the receipt is checked.

        :raise TransactionReverted:
            The node refused the payload and the transaction is not on chain.
        """
        tx_hash = HexBytes(tx_hash)
        if self.get_receipt(tx_hash) is not None:
            logger.info("Transaction %s already included on %s", tx_hash.to_0x_hex(), self.profile.name)
            return tx_hash

        if raw_transaction is None:
            return tx_hash

        try:
            return self.broadcast(tx_hash, HexBytes(raw_transaction))
        except TransactionReverted:
            # Nonce too low also when our own transaction was included meanwhile
            if self.get_receipt(tx_hash) is not None:
                return tx_hash
            raise

    @abc.abstractmethod
    def get_receipt(self, tx_hash: HexBytes) -> dict | None:
        """Transaction receipt or ``None`` if not included yet."""

    @abc.abstractmethod
    def fetch_revert_reason(self, tx_hash: HexBytes) -> str:
        """Replay a failed transaction to get its revert reason."""

    def wait_for_receipt(
        self,
        tx_hash: HexBytes | str,
        timeout: datetime.timedelta,
        poll_delay: datetime.timedelta = datetime.timedelta(seconds=1),
    ) -> dict:
        """Wait for a receipt.

        :raise TransactionStalled:
            If the transaction does not confirm within ``timeout``.
        """
        return wait_transaction_to_complete(
            self.get_receipt,
            tx_hash,
            max_timeout=timeout,
            poll_delay=poll_delay,
            chain_name=self.profile.name,
        )

    def confirm_success(
        self,
        tx_hash: HexBytes | str,
        timeout: datetime.timedelta,
        poll_delay: datetime.timedelta = datetime.timedelta(seconds=1),
    ) -> dict:
        """Wait for a receipt and check the transaction did not revert.

        :raise TransactionReverted:
            Receipt status is 0.

        :raise TransactionStalled:
            If the transaction does not confirm within ``timeout``.
        """
        tx_hash = HexBytes(tx_hash)
        receipt = self.wait_for_receipt(tx_hash, timeout, poll_delay)
        if receipt["status"] == 0:
            reason = self.fetch_revert_reason(tx_hash)
            logger.error("Transaction %s reverted on %s: %s", self.profile.get_tx_link(tx_hash.to_0x_hex()), self.profile.name, reason)
            raise TransactionReverted(reason, tx_hash=tx_hash.to_0x_hex())
        return receipt


class Web3ChainClient(ChainClient):
    """Chain client on top of web3.py HTTP provider and a hot wallet.

    Example:

    .. code-block:: python

        wallet = HotWallet.from_private_key(os.environ["PRIVATE_KEY"])
        client = Web3ChainClient.create(registry.get("sepolia"), wallet)
        print(client.get_block_number())
    """

    def __init__(
        self,
        profile: ChainProfile,
        web3: Web3,
        wallet: HotWallet | None = None,
        retry_config: RPCRetryConfig | None = None,
    ):
        self.profile = profile
        self.web3 = web3
        self.wallet = wallet
        self.retry_config = retry_config or RPCRetryConfig()
        self._send_lock = threading.Lock()

    @classmethod
    def create(
        cls,
        profile: ChainProfile,
        wallet: HotWallet | None = None,
        retry_config: RPCRetryConfig | None = None,
        request_timeout: float = 30.0,
    ) -> "Web3ChainClient":
        """Connect to the primary RPC of a chain profile."""
        web3 = Web3(HTTPProvider(profile.rpc_url, request_kwargs={"timeout": request_timeout}))
        # Polygon and Avalanche style extraData in block headers
        web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        logger.info("Connecting %s to %s", profile.display_name, profile.rpc_url)
        return cls(profile, web3, wallet, retry_config)

    @property
    def address(self) -> HexAddress:
        assert self.wallet is not None, f"{self} is read-only, no wallet given"
        return self.wallet.address

    def _retry(self, description: str, func: Callable[[], T]) -> T:
        """Call ``func`` with exponential backoff on connection errors.

        :raise ChainUnavailable:
            When the retry budget is used up.
        """
        config = self.retry_config
        delay = config.initial_delay
        last_error = None

        for attempt in range(1, config.max_retries + 1):
            try:
                return func()
            except RETRYABLE_RPC_EXCEPTIONS as e:
                last_error = e
                if attempt < config.max_retries:
                    logger.warning(
                        "%s on %s failed, attempt %d/%d: %s. Retrying in %.1fs",
                        description,
                        self.profile.name,
                        attempt,
                        config.max_retries,
                        e,
                        delay,
                    )
                    time.sleep(delay)
                    delay = min(delay * config.backoff_multiplier, config.max_delay)

        raise ChainUnavailable(f"{description} on {self.profile.name} failed after {config.max_retries} attempts: {last_error}") from last_error

    def _bind(self, call: ContractCall) -> ContractFunction:
        contract = get_deployed_contract(self.web3, call.abi_file, call.address)
        return contract.functions[call.function_name](*call.args)

    def get_block_number(self) -> int:
        return self._retry("eth_blockNumber", lambda: self.web3.eth.block_number)

    def get_token_balance(self, owner: HexAddress | str) -> int:
        call = ContractCall(self.profile.token_address, "ERC20.json", "balanceOf", (Web3.to_checksum_address(owner),))
        return self.call(call)

    def get_native_balance(self, owner: HexAddress | str) -> int:
        return self._retry("eth_getBalance", lambda: self.web3.eth.get_balance(Web3.to_checksum_address(owner)))

    def call(self, call: ContractCall) -> Any:
        bound_func = self._bind(call)
        return self._retry(f"eth_call {call.function_name}", bound_func.call)

    def sign(self, call: ContractCall) -> SignedCall:
        assert self.wallet is not None, f"{self} cannot send transactions without a wallet"
        chain_id = self.profile.chain_id

        with self._send_lock:
            if chain_id not in self.wallet.current_nonces:
                self._retry("eth_getTransactionCount", lambda: self.wallet.sync_nonce(self.web3))

            bound_func = self._bind(call)
            tx_params = {"chainId": chain_id}
            if call.gas is not None:
                tx_params["gas"] = call.gas

            # The nonce is allocated only after build_transaction() succeeds
            try:
                signed_tx = self._retry(
                    f"build {call.function_name}",
                    lambda: self.wallet.sign_bound_call_with_new_nonce(bound_func, tx_params),
                )
            except ContractLogicError as e:
                reason = parse_revert_reason(e)
                logger.error("%s would revert on %s: %s", call, self.profile.name, reason)
                raise TransactionReverted(reason) from e
            except Web3RPCError as e:
                reason = parse_revert_reason(e)
                logger.error("Node refused to build %s on %s: %s", call, self.profile.name, reason)
                raise TransactionReverted(reason) from e

        signed = SignedCall(call=call, tx_hash=HexBytes(signed_tx.hash), raw_transaction=HexBytes(signed_tx.raw_transaction), nonce=signed_tx.nonce)
        logger.info("Signed %s on %s", signed, self.profile.name)
        return signed

    def broadcast(self, tx_hash: HexBytes, raw_transaction: HexBytes) -> HexBytes:
        tx_hash = HexBytes(tx_hash)

        def _broadcast():
            try:
                return self.web3.eth.send_raw_transaction(raw_transaction)
            except Web3RPCError as e:
                if "already known" in str(e).lower():
                    return tx_hash
                raise

        with self._send_lock:
            try:
                result = self._retry(f"broadcast {tx_hash.to_0x_hex()}", _broadcast)
            except Web3RPCError as e:
                reason = parse_revert_reason(e)
                logger.error("Node refused transaction %s on %s: %s", tx_hash.to_0x_hex(), self.profile.name, reason)
                if self.wallet is not None:
                    # Give the refused nonce back
                    self._retry("eth_getTransactionCount", lambda: self.wallet.sync_nonce(self.web3, force=True))
                raise TransactionReverted(reason, tx_hash=tx_hash.to_0x_hex()) from e

        result = HexBytes(result)
        logger.info("Broadcasted %s on %s", self.profile.get_tx_link(result.to_0x_hex()), self.profile.name)
        return result

    def get_receipt(self, tx_hash: HexBytes) -> dict | None:
        def _read():
            try:
                return self.web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return self._retry("eth_getTransactionReceipt", _read)

    def fetch_revert_reason(self, tx_hash: HexBytes, unknown_error_message="<could not extract the revert reason>") -> str:
        """Replay the transaction against the state of the block before it.

        Needs a node with enough state history. Falls back to the current state.
        """
        tx = self._retry("eth_getTransactionByHash", lambda: self.web3.eth.get_transaction(tx_hash))

        replay_tx = {
            "to": tx["to"],
            "from": tx["from"],
            "value": tx["value"],
            "data": tx["input"],
            "gas": tx["gas"],
        }

        for block_identifier in (tx["blockNumber"] - 1, "latest"):
            try:
                self.web3.eth.call(replay_tx, block_identifier)
            except ContractLogicError as e:
                return parse_revert_reason(e)
            except (Web3RPCError, ValueError) as e:
                logger.debug("Could not replay %s at %s: %s", tx_hash.hex(), block_identifier, e)

        logger.warning("Could not extract revert reason for %s on %s", tx_hash.hex(), self.profile.name)
        return unknown_error_message
