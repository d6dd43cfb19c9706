"""Circle Gateway API client.

Submit signed burn intents and wait for the attestation that
``GatewayMinter.gatewayMint()`` accepts on the destination chain.

- ``POST /v1/transfer`` with ``[{burnIntent, signature}]``, integers as strings
- ``GET /v1/transfer/{transferId}`` for the status of a submitted transfer
- ``POST /v1/balances`` for the unified balance per domain

A signed intent must reach the API at most once. :py:meth:`AttestationClient.submit`
never retries, and a network failure in the middle of the request raises
:py:class:`~treasury_funding.gateway.errors.SubmissionOutcomeUnknown` instead of
guessing.

Example:

.. code-block:: python

    client = AttestationClient(GatewayConfig.from_env())
    submission = client.submit(signed_intent)
    attestation = client.poll(submission)
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable

import requests
from eth_typing import HexAddress
from hexbytes import HexBytes

from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.constants import USDC_DECIMALS
from treasury_funding.gateway.errors import (
    AttestationRejected,
    AttestationServiceError,
    AttestationTimeout,
    SubmissionOutcomeUnknown,
)
from treasury_funding.gateway.signing import SignedIntent

logger = logging.getLogger(__name__)

#: HTTP 404, transfer id not known to the service
HTTP_NOT_FOUND = 404

#: Transfer statuses after which no attestation will appear
TERMINAL_FAILURE_STATUSES = {"failed", "rejected", "expired", "cancelled", "not_found"}


@dataclass(slots=True, frozen=True)
class Attestation:
    """Notarised burn intent, redeemable once on the destination chain."""

    #: Opaque attestation payload for ``gatewayMint()``
    attestation: bytes

    #: Gateway operator signature for ``gatewayMint()``
    signature: bytes

    #: Gateway transfer id
    transfer_id: str | None = None

    #: Fee charged, as reported by the API
    fee: str | None = None

    #: Destination block after which the attestation cannot be minted
    expiration_block: int | None = None

    def __repr__(self):
        return f"<Attestation transfer:{self.transfer_id} fee:{self.fee} expires:{self.expiration_block}>"

    def to_dict(self) -> dict:
        return {
            "attestation": "0x" + self.attestation.hex(),
            "signature": "0x" + self.signature.hex(),
            "transfer_id": self.transfer_id,
            "fee": self.fee,
            "expiration_block": str(self.expiration_block) if self.expiration_block is not None else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "Attestation":
        return Attestation(
            attestation=bytes(HexBytes(data["attestation"])),
            signature=bytes(HexBytes(data["signature"])),
            transfer_id=data.get("transfer_id"),
            fee=data.get("fee"),
            expiration_block=int(data["expiration_block"]) if data.get("expiration_block") is not None else None,
        )


@dataclass(slots=True, frozen=True)
class AttestationPending:
    """Transfer known, attestation not ready yet."""

    transfer_id: str
    status: str


@dataclass(slots=True, frozen=True)
class AttestationRejection:
    """Terminal non-success status for a transfer."""

    transfer_id: str
    status: str


#: Outcome of one status check
AttestationStatus = Attestation | AttestationPending | AttestationRejection


@dataclass(slots=True, frozen=True)
class AttestationSubmission:
    """Accepted ``POST /v1/transfer``."""

    #: Id to poll with
    transfer_id: str | None

    #: Set if the API returned the attestation directly
    attestation: Attestation | None = None

    #: Decoded response body for diagnostics
    response: dict = field(default_factory=dict)


def _read_json(response: requests.Response) -> dict | list:
    """Decode the JSON body of a 2xx answer.

    :raise AttestationServiceError:
        Body is not a JSON object or array.
    """
    try:
        data = response.json()
    except ValueError as e:
        raise AttestationServiceError(response.status_code, f"Invalid JSON in response: {response.text[0:200]}") from e
    if not isinstance(data, (dict, list)):
        raise AttestationServiceError(response.status_code, f"Unexpected response: {response.text[0:200]}")
    return data


def _parse_fee(fees) -> str | None:
    if fees is None:
        return None
    if isinstance(fees, dict):
        total = fees.get("total", fees.get("amount"))
        return str(total) if total is not None else None
    return str(fees)


def _parse_attestation(data: dict, transfer_id: str | None) -> Attestation | None:
    """Build an attestation if the response carries one."""
    attestation_hex = data.get("attestation")
    signature_hex = data.get("signature")
    if not attestation_hex or not signature_hex or attestation_hex == "PENDING":
        return None
    expiration = data.get("expirationBlock")
    return Attestation(
        attestation=bytes(HexBytes(attestation_hex)),
        signature=bytes(HexBytes(signature_hex)),
        transfer_id=data.get("transferId", transfer_id),
        fee=_parse_fee(data.get("fees")),
        expiration_block=int(expiration) if expiration is not None else None,
    )


class AttestationClient:
    """Talk to the Gateway API."""

    def __init__(self, config: GatewayConfig | None = None, session: requests.Session | None = None):
        """
        :param config:
            API URL, timeouts and poll budget.

        :param session:
            HTTP session. Tests pass a mock.
        """
        self.config = config or GatewayConfig()
        self.session = session or requests.Session()

    def __repr__(self):
        return f"<AttestationClient {self.config.api_base_url}>"

    def _url(self, path: str) -> str:
        return f"{self.config.api_base_url.rstrip('/')}{path}"

    def submit(self, signed_intent: SignedIntent) -> AttestationSubmission:
        """Send one signed intent to the Gateway API.

        Exactly one HTTP request. Not retried.

        :raise AttestationServiceError:
            Non-2xx answer, e.g. 400 malformed intent or 422 insufficient balance,
            or a 2xx answer that cannot be read.

        :raise SubmissionOutcomeUnknown:
            Connection dropped, we do not know if the service got the intent.
        """
        url = self._url("/v1/transfer")
        body = [signed_intent.as_request_item()]

        logger.info("Submitting %s to %s", signed_intent.intent, url)

        try:
            response = self.session.post(url, json=body, timeout=self.config.http_timeout)
        except requests.RequestException as e:
            raise SubmissionOutcomeUnknown(f"Gateway API request failed, the intent may or may not have been accepted: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error("Gateway API rejected the intent with HTTP %d: %s", response.status_code, response.text)
            raise AttestationServiceError(response.status_code, response.text)

        data = _read_json(response)
        if isinstance(data, list):
            if len(data) != 1 or not isinstance(data[0], dict):
                raise AttestationServiceError(response.status_code, f"Expected one transfer in the response, got {response.text[0:200]}")
            data = data[0]

        transfer_id = data.get("transferId")
        attestation = _parse_attestation(data, transfer_id)

        if transfer_id is None and attestation is None:
            raise AttestationServiceError(response.status_code, f"No transferId or attestation in response: {response.text}")

        logger.info("Gateway API accepted the intent, transfer id %s, attestation ready: %s", transfer_id, attestation is not None)
        return AttestationSubmission(transfer_id=transfer_id, attestation=attestation, response=data)

    def check_status(self, transfer_id: str) -> AttestationStatus:
        """One-shot status check.

        :raise AttestationServiceError:
            Non-2xx answer other than 404, or a body that is not a status object.

        :raise requests.RequestException:
            Network error.
        """
        response = self.session.get(self._url(f"/v1/transfer/{transfer_id}"), timeout=self.config.http_timeout)

        if response.status_code == HTTP_NOT_FOUND:
            return AttestationRejection(transfer_id, "not_found")

        if not 200 <= response.status_code < 300:
            raise AttestationServiceError(response.status_code, response.text)

        data = _read_json(response)
        if not isinstance(data, dict):
            raise AttestationServiceError(response.status_code, f"Unexpected status response: {response.text[0:200]}")

        attestation = _parse_attestation(data, transfer_id)
        if attestation is not None:
            return attestation

        status = str(data.get("status", "pending")).lower()
        if status in TERMINAL_FAILURE_STATUSES:
            return AttestationRejection(transfer_id, status)

        return AttestationPending(transfer_id, status)

    def poll(
        self,
        submission: AttestationSubmission | str,
        on_attempt: Callable[[int, str], None] | None = None,
    ) -> Attestation:
        """Wait until the attestation is ready.

        Server errors, unreadable answers and network errors use up an attempt and polling continues.

        :param submission:
            Result of :py:meth:`submit` or a transfer id.

        :param on_attempt:
            Called with (attempt number, last status) after every check.

        :raise AttestationRejected:
            Terminal failure status or unknown transfer id.

        :raise AttestationTimeout:
            No attestation within :py:attr:`GatewayConfig.max_poll_attempts`.
        """
        if isinstance(submission, AttestationSubmission):
            if submission.attestation is not None:
                return submission.attestation
            transfer_id = submission.transfer_id
        else:
            transfer_id = submission

        assert transfer_id, "Cannot poll without a transfer id"

        max_attempts = self.config.max_poll_attempts
        status = "unknown"

        for attempt in range(1, max_attempts + 1):
            try:
                result = self.check_status(transfer_id)
            except AttestationServiceError as e:
                if 400 <= e.code < 500:
                    raise
                status = f"http_{e.code}"
                logger.warning("Gateway API error %d while polling %s, attempt %d/%d", e.code, transfer_id, attempt, max_attempts)
                result = None
            except requests.RequestException as e:
                status = "network_error"
                logger.warning("Network error while polling %s, attempt %d/%d: %s", transfer_id, attempt, max_attempts, e)
                result = None

            if isinstance(result, Attestation):
                logger.info("Attestation ready for transfer %s after %d checks", transfer_id, attempt)
                return result

            if isinstance(result, AttestationRejection):
                logger.error("Transfer %s ended with status %s", transfer_id, result.status)
                raise AttestationRejected(transfer_id, result.status)

            if isinstance(result, AttestationPending):
                status = result.status

            if on_attempt is not None:
                on_attempt(attempt, status)

            log_level = logging.INFO if attempt == 1 else logging.DEBUG
            logger.log(log_level, "Transfer %s status %s, attempt %d/%d", transfer_id, status, attempt, max_attempts)

            if attempt < max_attempts:
                time.sleep(self.config.poll_interval)

        raise AttestationTimeout(f"Attestation for transfer {transfer_id} not ready after {max_attempts} attempts, last status {status}")

    def fetch_unified_balance(self, depositor: HexAddress | str, domains: list[int]) -> dict[int, int]:
        """Read the unified balance share per source domain.

        :return:
            Map of domain id to raw USDC amount
        """
        body = {
            "token": "USDC",
            "sources": [{"domain": domain, "depositor": depositor} for domain in domains],
        }
        response = self.session.post(self._url("/v1/balances"), json=body, timeout=self.config.http_timeout)
        if not 200 <= response.status_code < 300:
            raise AttestationServiceError(response.status_code, response.text)

        result = {}
        data = _read_json(response)
        entries = data.get("balances", []) if isinstance(data, dict) else data
        for entry in entries:
            balance = Decimal(str(entry.get("balance", "0")))
            result[int(entry["domain"])] = int(balance * 10**USDC_DECIMALS)
        return result
