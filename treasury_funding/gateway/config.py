"""Gateway transfer configuration.

Tunables that belong to the attestation service or to the operator,
not to the protocol. Production defaults are read from environment variables
with :py:meth:`GatewayConfig.from_env`; tests should use
:py:meth:`GatewayConfig.create_test_config`.

Example:

.. code-block:: python

    config = GatewayConfig.from_env()
    attestation_client = AttestationClient(config)
"""

import datetime
import os
from dataclasses import dataclass, field
from decimal import Decimal

from treasury_funding.gateway.constants import DEFAULT_MAX_FEE, GATEWAY_API_TESTNET_URL, USDC_DECIMALS


@dataclass(slots=True)
class RPCRetryConfig:
    """Retry policy for JSON-RPC reads and transaction broadcasts.

    When the budget is used up the call fails with
    :py:class:`~treasury_funding.gateway.errors.ChainUnavailable`.
    """

    #: Maximum attempts per call
    max_retries: int = 5

    #: Initial delay in seconds between retries (grows with backoff)
    initial_delay: float = 1.0

    #: Maximum delay cap in seconds for exponential backoff
    max_delay: float = 15.0

    #: Multiplier applied to delay after each failed attempt
    backoff_multiplier: float = 2.0

    @classmethod
    def create_test_config(cls) -> "RPCRetryConfig":
        return cls(max_retries=2, initial_delay=0, max_delay=0, backoff_multiplier=1.0)


@dataclass(slots=True)
class GatewayConfig:
    """Attestation service and transaction wait configuration."""

    #: Gateway API base URL
    api_base_url: str = GATEWAY_API_TESTNET_URL

    #: Maximum fee we accept, in raw USDC units.
    #:
    #: The Gateway API rejects intents below its current minimum,
    #: which has been observed to be 2.01 USDC.
    max_fee: int = DEFAULT_MAX_FEE

    #: Seconds between attestation status checks
    poll_interval: float = 2.0

    #: Attestation status checks before giving up
    max_poll_attempts: int = 60

    #: HTTP request timeout in seconds
    http_timeout: float = 30.0

    #: How long to wait for a transaction receipt before reporting a stall
    receipt_timeout: datetime.timedelta = datetime.timedelta(minutes=5)

    #: Delay between receipt polls
    receipt_poll_delay: datetime.timedelta = datetime.timedelta(seconds=1)

    #: Delay between source chain finality checks
    finality_poll_interval: datetime.timedelta = datetime.timedelta(seconds=30)

    #: JSON-RPC retry policy
    rpc_retry: RPCRetryConfig = field(default_factory=RPCRetryConfig)

    def __post_init__(self):
        assert self.max_fee >= 0, f"max_fee must not be negative: {self.max_fee}"
        assert self.max_poll_attempts > 0, f"max_poll_attempts must be positive: {self.max_poll_attempts}"

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Read overrides from environment variables.

        - ``GATEWAY_API_URL``
        - ``GATEWAY_MAX_FEE`` as human readable USDC, e.g. ``2.01``
        - ``GATEWAY_POLL_INTERVAL`` seconds
        - ``GATEWAY_MAX_POLL_ATTEMPTS``
        - ``GATEWAY_RECEIPT_TIMEOUT`` seconds
        """
        config = cls()

        if api_url := os.environ.get("GATEWAY_API_URL"):
            config.api_base_url = api_url.rstrip("/")

        if max_fee := os.environ.get("GATEWAY_MAX_FEE"):
            config.max_fee = int(Decimal(max_fee) * 10**USDC_DECIMALS)

        if poll_interval := os.environ.get("GATEWAY_POLL_INTERVAL"):
            config.poll_interval = float(poll_interval)

        if max_poll_attempts := os.environ.get("GATEWAY_MAX_POLL_ATTEMPTS"):
            config.max_poll_attempts = int(max_poll_attempts)

        if receipt_timeout := os.environ.get("GATEWAY_RECEIPT_TIMEOUT"):
            config.receipt_timeout = datetime.timedelta(seconds=float(receipt_timeout))

        return config

    @classmethod
    def create_test_config(cls) -> "GatewayConfig":
        """No waiting between polls, small budgets."""
        return cls(
            api_base_url="https://gateway-api.test",
            poll_interval=0,
            max_poll_attempts=5,
            http_timeout=1.0,
            receipt_timeout=datetime.timedelta(seconds=0),
            receipt_poll_delay=datetime.timedelta(seconds=0),
            finality_poll_interval=datetime.timedelta(seconds=0),
            rpc_retry=RPCRetryConfig.create_test_config(),
        )
