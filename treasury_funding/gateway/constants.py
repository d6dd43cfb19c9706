"""Circle Gateway constants.

Gateway gives a depositor a *unified USDC balance* across chains:

1. Source chain: approve USDC and call ``deposit(token, value)`` on ``GatewayWallet``
2. After source chain finality the deposit is credited to the unified balance
3. Sign an EIP-712 ``BurnIntent`` and submit it to the Gateway API
4. Destination chain: call ``gatewayMint(attestation, signature)`` on ``GatewayMinter``

Gateway contracts share the same address across all supported testnets.

- `Gateway documentation <https://developers.circle.com/gateway>`_
"""

from eth_typing import HexAddress, HexStr

#: GatewayWallet, receives deposits and holds the unified balance.
#: Same address on all testnets.
GATEWAY_WALLET_ADDRESS: HexAddress = HexAddress(HexStr("0x0077777d7EBA4688BDeF3E311b846F25870A19B9"))

#: GatewayMinter, mints on the destination chain against an attestation.
#: Same address on all testnets.
GATEWAY_MINTER_ADDRESS: HexAddress = HexAddress(HexStr("0x0022222ABE238Cc2C7Bb1f21003F0a260052475B"))

#: Gateway API base URL (testnet)
GATEWAY_API_TESTNET_URL = "https://gateway-api-testnet.circle.com"

#: Gateway API base URL (mainnet)
GATEWAY_API_MAINNET_URL = "https://gateway-api.circle.com"

#: Gateway domain ids, not EVM chain ids
DOMAIN_ETHEREUM = 0
DOMAIN_AVALANCHE = 1
DOMAIN_ARBITRUM = 3
DOMAIN_BASE = 6
DOMAIN_POLYGON = 7
DOMAIN_ARC = 26

#: EIP-712 domain name verified by GatewayWallet and GatewayMinter
EIP712_DOMAIN_NAME = "GatewayWallet"

#: EIP-712 domain version
EIP712_DOMAIN_VERSION = "1"

#: TransferSpec layout version
TRANSFER_SPEC_VERSION = 1

#: ``maxBlockHeight`` meaning "never expires"
MAX_BLOCK_HEIGHT = 2**256 - 1

#: Minimum fee the Gateway API accepted at the time of writing, 2.01 USDC in raw units.
#:
#: See :py:attr:`treasury_funding.gateway.config.GatewayConfig.max_fee`.
DEFAULT_MAX_FEE = 2_010_000

#: USDC decimals on every supported chain
USDC_DECIMALS = 6

#: Confirmations the reference deployment waited on source chains
DEFAULT_SOURCE_CONFIRMATIONS = 32
