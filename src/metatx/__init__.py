"""
MetaTx Gateway - Signed Meta-Transaction Admission and Execution

Lets a user who only holds an EVM-style secp256k1 key authorize actions on a
Substrate-style ledger. Requests are signed off-chain as EIP-712 typed data,
then admitted and executed by the gateway.

Main Components:
- Typed data hashing (EIP-712 domain separator and SubstrateCall digest)
- Signature recovery and identity binding
- Nonce sequencing with requires/provides ordering tags
- Fee coordination and priority scoring
- Admission/execution pipeline
"""

__version__ = "0.1.0"
__author__ = "MetaTx Development Team"

__all__ = []
