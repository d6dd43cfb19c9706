"""Burn intent signing.

Key custody is outside of this package. Anything with ``sign(typed_data) -> bytes``
can sign burn intents, e.g. a hardware wallet bridge. :py:class:`HotWalletSigner`
covers the common case of a private key in an environment variable.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_typing import HexAddress
from hexbytes import HexBytes

from treasury_funding.gateway.intent import BurnIntent, build_typed_data
from treasury_funding.hotwallet import HotWallet

logger = logging.getLogger(__name__)


class Signer(Protocol):
    """EIP-712 signing capability."""

    #: Address whose key produces the signatures
    address: HexAddress

    def sign(self, typed_data: dict) -> bytes:
        """Sign a full EIP-712 message.

        :return:
            65 bytes r, s, v signature
        """


class HotWalletSigner:
    """Sign with a :py:class:`~treasury_funding.hotwallet.HotWallet` key."""

    def __init__(self, wallet: HotWallet):
        self.wallet = wallet

    def __repr__(self):
        return f"<HotWalletSigner {self.address}>"

    @property
    def address(self) -> HexAddress:
        return self.wallet.address

    def sign(self, typed_data: dict) -> bytes:
        return bytes(self.wallet.sign_typed_data(typed_data))


@dataclass(slots=True, frozen=True)
class SignedIntent:
    """Burn intent with its signature.

    Must be submitted to the Gateway API at most once.
    """

    intent: BurnIntent

    signature: bytes

    def __repr__(self):
        return f"<SignedIntent {self.intent} sig:{self.signature.hex()[0:10]}>"

    def as_request_item(self) -> dict:
        """One element of the ``POST /v1/transfer`` body."""
        return {
            "burnIntent": self.intent.as_json_friendly_dict(),
            "signature": "0x" + self.signature.hex(),
        }

    def to_dict(self) -> dict:
        return self.as_request_item()

    @staticmethod
    def from_dict(data: dict) -> "SignedIntent":
        return SignedIntent(
            intent=BurnIntent.from_dict(data["burnIntent"]),
            signature=bytes(HexBytes(data["signature"])),
        )

    def recover_signer(self) -> HexAddress:
        """Recover the address that signed this intent."""
        signable = encode_typed_data(full_message=build_typed_data(self.intent))
        return Account.recover_message(signable, signature=self.signature)


def sign_intent(signer: Signer, intent: BurnIntent) -> SignedIntent:
    """Sign a burn intent.

    :raise AssertionError:
        The signature does not recover to the intent's ``sourceSigner``.
    """
    signature = bytes(signer.sign(build_typed_data(intent)))
    assert len(signature) == 65, f"Expected 65 bytes signature, got {len(signature)}"
    signed = SignedIntent(intent=intent, signature=signature)
    recovered = signed.recover_signer()
    expected = signed.intent.spec.source_signer[12:]
    assert bytes(HexBytes(recovered)) == expected, f"Signature recovers to {recovered}, intent expects 0x{expected.hex()}"
    logger.info("Signed %s by %s", intent, recovered)
    return signed
