"""ABI loading from the bundled contract interface files.

Provides functions to load ABI files and construct :py:class:`web3.contract.Contract` types
for the Gateway wallet, Gateway minter, USDC and treasury vault contracts.
The results are cached for the speedup.

Bundled files live in ``treasury_funding/abi/``:

- ``ERC20.json``
- ``gateway/GatewayWallet.json``
- ``gateway/GatewayMinter.json``
- ``treasury/TreasuryVault.json``
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Type, Union

from eth_typing import HexAddress
from web3 import Web3
from web3.contract.contract import Contract

# How big are our ABI and contract caches
_CACHE_SIZE = 64

#: Ethereum 0x0000000000000000000000000000000000000000 address
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#: 32 zero bytes, used for unrestricted ``destinationCaller``
ZERO_BYTES32 = b"\x00" * 32


@lru_cache(maxsize=_CACHE_SIZE)
def get_abi_by_filename(fname: str | Path) -> dict:
    """Reads a embedded ABI file and returns it.

    Example::

        abi = get_abi_by_filename("gateway/GatewayMinter.json")

    Loaded ABI files are cache in in-process memory to speed up future loading.

    :param fname:
        Path relative to the bundled ``abi`` folder, or an absolute path.

    :return:
        Full contract interface as a dict with ``abi`` key.
    """
    fname = Path(fname)
    if fname.is_absolute():
        abi_path = fname
    else:
        here = Path(__file__).resolve().parent
        abi_path = here / "abi" / fname

    with open(abi_path, "rt", encoding="utf-8") as f:
        abi = json.load(f)
    return abi


@lru_cache(maxsize=_CACHE_SIZE)
def get_contract(web3: Web3, fname: str | Path) -> Type[Contract]:
    """Get Contract proxy class from ABI JSON file.

    - ABI file can be a solc compiling artifact or Etherscan copy-pasted ABI list.

    Any results are cached. Web3 connection is part of the cache key.

    :return:
        Contract proxy class
    """
    contract_interface = get_abi_by_filename(fname)

    if type(contract_interface) == list:
        # Etherscan
        abi = contract_interface
    else:
        abi = contract_interface["abi"]

    return web3.eth.contract(abi=abi)


def get_deployed_contract(
    web3: Web3,
    fname: str | Path,
    address: Union[HexAddress, str],
) -> Contract:
    """Get a Contract proxy object for a contract deployed at a specific address.

    Example:

    .. code-block:: python

        minter = get_deployed_contract(web3, "gateway/GatewayMinter.json", profile.minter_address)
        bound_func = minter.functions.gatewayMint(attestation, signature)

    :param web3:
        Web3 instance

    :param fname:
        Bundled ABI file name

    :param address:
        Ethereum address of the deployed contract

    :return:
        `web3.contract.Contract` proxy
    """
    assert isinstance(web3, Web3), f"Got {type(web3)} instead of Web3"
    assert address, f"get_deployed_contract() address was None"

    address = Web3.to_checksum_address(address)
    Contract = get_contract(web3, fname)
    return Contract(address)


def encode_address_bytes32(address: HexAddress | str) -> bytes:
    """Convert an EVM address to the 32-byte form used in Gateway transfer specs.

    Gateway uses bytes32 for addresses to support non-EVM chains.
    For EVM chains, the address is left-padded with zeros to 32 bytes.

    :param address:
        Ethereum address (0x-prefixed hex string)

    :return:
        32-byte representation of the address
    """
    address = Web3.to_checksum_address(address)
    return bytes.fromhex(address[2:].lower().zfill(64))


def decode_address_bytes32(value: bytes) -> HexAddress:
    """Reverse :py:func:`encode_address_bytes32`."""
    assert len(value) == 32, f"Expected 32 bytes, got {len(value)}"
    assert value[:12] == b"\x00" * 12, f"Not a left-padded EVM address: {value.hex()}"
    return Web3.to_checksum_address(value[12:])
