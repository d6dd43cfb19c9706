"""Gateway API client with a mocked HTTP session."""

from unittest.mock import Mock

import pytest
import requests

from treasury_funding.gateway.attestation import (
    Attestation,
    AttestationClient,
    AttestationPending,
    AttestationRejection,
    AttestationSubmission,
)
from treasury_funding.gateway.errors import AttestationRejected, AttestationServiceError, AttestationTimeout, SubmissionOutcomeUnknown
from treasury_funding.gateway.intent import IntentBuilder
from treasury_funding.gateway.signing import sign_intent


@pytest.fixture()
def signed_intent(registry, config, signer, wallet):
    intent = IntentBuilder(registry, config).build("sepolia", "arc", wallet.address, wallet.address, 5_000000)
    return sign_intent(signer, intent)


def test_submit_body(attestation_client, session, signed_intent):
    """Intent is posted as a one element list with string integers."""
    submission = attestation_client.submit(signed_intent)
    assert submission.transfer_id == "transfer-1"
    assert submission.attestation is None

    session.post.assert_called_once()
    url = session.post.call_args.args[0]
    body = session.post.call_args.kwargs["json"]
    assert url == "https://gateway-api.test/v1/transfer"
    assert len(body) == 1
    assert body[0]["burnIntent"]["spec"]["value"] == "5000000"
    assert body[0]["burnIntent"]["maxFee"] == "2010000"
    assert body[0]["signature"] == "0x" + signed_intent.signature.hex()


def test_submit_returns_attestation(attestation_client, session, signed_intent, http_response, attestation_body):
    """Attestation in the submit response needs no polling."""
    session.post.return_value = http_response(200, attestation_body("transfer-9"))
    submission = attestation_client.submit(signed_intent)
    attestation = attestation_client.poll(submission)
    assert attestation.transfer_id == "transfer-9"
    assert attestation.fee == "2.000005"
    assert attestation.expiration_block == 9000000
    assert len(attestation.signature) == 65
    session.get.assert_not_called()


def test_submit_422(attestation_client, session, signed_intent, http_response):
    session.post.return_value = http_response(422, None, text="insufficient balance")
    with pytest.raises(AttestationServiceError) as exc_info:
        attestation_client.submit(signed_intent)
    assert exc_info.value.code == 422
    assert exc_info.value.body == "insufficient balance"
    assert session.post.call_count == 1


def test_submit_connection_lost(attestation_client, session, signed_intent):
    session.post.side_effect = requests.exceptions.ConnectionError("reset")
    with pytest.raises(SubmissionOutcomeUnknown):
        attestation_client.submit(signed_intent)
    assert session.post.call_count == 1


def test_poll_pending_then_ready(attestation_client, session, http_response, attestation_body):
    session.get.side_effect = [
        http_response(200, {"transferId": "transfer-1", "status": "pending"}),
        http_response(503, None, text="unavailable"),
        http_response(200, attestation_body()),
    ]
    attempts = []
    attestation = attestation_client.poll("transfer-1", on_attempt=lambda attempt, status: attempts.append((attempt, status)))
    assert isinstance(attestation, Attestation)
    assert attempts == [(1, "pending"), (2, "http_503")]
    assert session.get.call_args.args[0] == "https://gateway-api.test/v1/transfer/transfer-1"


def test_poll_timeout(attestation_client, session, config, http_response):
    session.get.return_value = http_response(200, {"transferId": "transfer-1", "status": "pending"})
    with pytest.raises(AttestationTimeout):
        attestation_client.poll(AttestationSubmission(transfer_id="transfer-1"))
    assert session.get.call_count == config.max_poll_attempts


def test_poll_not_found(attestation_client, session, http_response):
    session.get.return_value = http_response(404, None, text="not found")
    with pytest.raises(AttestationRejected) as exc_info:
        attestation_client.poll("transfer-1")
    assert exc_info.value.status == "not_found"
    assert session.get.call_count == 1


def test_poll_client_error_not_retried(attestation_client, session, http_response):
    session.get.return_value = http_response(400, None, text="bad id")
    with pytest.raises(AttestationServiceError):
        attestation_client.poll("transfer-1")
    assert session.get.call_count == 1


def test_check_status_outcomes(attestation_client, session, http_response):
    session.get.return_value = http_response(200, {"status": "pending"})
    assert attestation_client.check_status("t") == AttestationPending("t", "pending")

    session.get.return_value = http_response(200, {"status": "expired"})
    assert attestation_client.check_status("t") == AttestationRejection("t", "expired")


def test_fetch_unified_balance(config, wallet, http_response):
    session = Mock(spec=requests.Session)
    session.post.return_value = http_response(
        200,
        {
            "token": "USDC",
            "balances": [
                {"domain": 0, "depositor": wallet.address, "balance": "12.5"},
                {"domain": 6, "depositor": wallet.address, "balance": "0"},
            ],
        },
    )
    client = AttestationClient(config, session=session)
    assert client.fetch_unified_balance(wallet.address, [0, 6]) == {0: 12_500000, 6: 0}
    body = session.post.call_args.kwargs["json"]
    assert body == {"token": "USDC", "sources": [{"domain": 0, "depositor": wallet.address}, {"domain": 6, "depositor": wallet.address}]}


def html_response(http_response):
    response = http_response(200, None, text="<html>Bad gateway</html>")
    response.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
    return response


def test_submit_unreadable_body(attestation_client, session, signed_intent, http_response):
    """A 2xx answer that is not JSON is a typed service error, not a crash."""
    session.post.return_value = html_response(http_response)
    with pytest.raises(AttestationServiceError) as exc_info:
        attestation_client.submit(signed_intent)
    assert exc_info.value.code == 200
    assert "Invalid JSON" in exc_info.value.body
    assert session.post.call_count == 1


def test_submit_unexpected_list(attestation_client, session, signed_intent, http_response):
    session.post.return_value = http_response(200, ["transfer-1", "transfer-2"])
    with pytest.raises(AttestationServiceError):
        attestation_client.submit(signed_intent)


def test_poll_unreadable_body_uses_attempt(attestation_client, session, http_response, attestation_body):
    session.get.side_effect = [html_response(http_response), http_response(200, attestation_body())]
    statuses = []
    attestation = attestation_client.poll("transfer-1", on_attempt=lambda attempt, status: statuses.append(status))
    assert attestation.transfer_id == "transfer-1"
    assert statuses == ["http_200"]
    assert session.get.call_count == 2
