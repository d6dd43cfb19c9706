"""Circle Gateway treasury funding.

Deposit USDC into the Gateway unified balance on source chains, then move it
to the treasury vault on the destination chain with a signed burn intent.

- :py:mod:`treasury_funding.gateway.registry`: supported chains
- :py:mod:`treasury_funding.gateway.deposit`: deposits and finality
- :py:mod:`treasury_funding.gateway.coordinator`: the transfer state machine

`Gateway documentation <https://developers.circle.com/gateway>`_.
"""
