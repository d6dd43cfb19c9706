"""Gateway transfer error taxonomy.

Errors fall into three groups:

- Configuration errors, raised before any network call
- Resumable errors, the job stays in its current state and can be re-entered
- Permanent errors, the job is marked ``failed``

:py:class:`~treasury_funding.gateway.coordinator.TransferCoordinator` uses
:py:attr:`GatewayError.resumable` to decide which one applies.
"""


class GatewayError(Exception):
    """Base class for all treasury funding failures."""

    #: Can the failing step be re-entered later without rebuilding the job
    resumable = False

    def get_reason(self) -> str:
        """Human readable reason stored in the job record."""
        return str(self)


class ConfigurationError(GatewayError):
    """Bad chain or contract configuration."""


class UnknownChain(ConfigurationError):
    """Chain name or domain id not in the registry."""


class DuplicateDomain(ConfigurationError):
    """Two chain profiles share a domain id."""


class MissingContractAddress(ConfigurationError):
    """A contract address needed for the operation is not configured."""


class InvalidAmount(GatewayError, ValueError):
    """Amount must be a positive integer in raw token units."""


class InsufficientBalance(GatewayError):
    """Depositor holds less tokens than it tries to move."""

    def __init__(self, message: str, balance: int, required: int):
        super().__init__(message)
        self.balance = balance
        self.required = required


class ChainUnavailable(GatewayError):
    """JSON-RPC calls kept failing after the retry budget was used."""

    resumable = True


class TransactionStalled(GatewayError):
    """Transaction was broadcast but no receipt appeared in time.

    The transaction may still confirm. Re-check the same hash, never sign a replacement.
    """

    resumable = True

    def __init__(self, message: str, tx_hash: str):
        super().__init__(message)
        self.tx_hash = tx_hash


class TransactionReverted(GatewayError):
    """A transaction was included but reverted."""

    def __init__(self, reason: str, tx_hash: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash

    def get_reason(self) -> str:
        return self.reason


class DepositReverted(TransactionReverted):
    """Approve or deposit to GatewayWallet reverted."""


class MintReverted(TransactionReverted):
    """``gatewayMint()`` reverted.

    Typical causes are an expired intent, an attestation that was already
    consumed, or missing gas funds. The attestation must not be retried.
    """


class TreasuryRejected(TransactionReverted):
    """Treasury vault reverted the approve or ``depositToTreasury()`` call."""


class TreasuryUnreachable(GatewayError):
    """Treasury calls failed on the RPC or contract level before inclusion."""


class AttestationServiceError(GatewayError):
    """Gateway API answered with a non-success HTTP status."""

    def __init__(self, code: int, body: str):
        super().__init__(f"Gateway API error {code}: {body}")
        self.code = code
        self.body = body


class AttestationRejected(GatewayError):
    """Gateway API reported a terminal non-success status for the transfer."""

    def __init__(self, transfer_id: str, status: str):
        super().__init__(f"Transfer {transfer_id} rejected with status {status}")
        self.transfer_id = transfer_id
        self.status = status


class AttestationTimeout(GatewayError):
    """Attestation did not become ready within the poll attempt budget."""

    resumable = True


class SubmissionOutcomeUnknown(GatewayError):
    """Intent may have reached the Gateway API but the answer was never recorded.

    Raised on resume when a submission was started but not completed. The
    intent is never re-sent automatically; an operator must inspect the
    unified balance before building a new intent.
    """
