"""
MetaTx Core Module

Core functionality for the meta-transaction gateway including:
- Typed data hashing and signature recovery
- Account binding and SS58 addressing
- Nonce, fee and priority handling
- The admission/execution pipeline and its collaborator interfaces
"""

__all__ = []
