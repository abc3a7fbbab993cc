"""
MetaTx Gateway - Account Nonce Sequencing

Prevents replay by tracking the next expected nonce per account and derives
the requires/provides tags a transaction pool uses to order pipelined
requests from the same account.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from threading import RLock
from typing import Dict, Optional

from metatx.core.account_binding import AccountId
from metatx.core.codec import encode_bytes, encode_str, encode_u64
from metatx.core.exceptions import FutureNonceError, MalformedNonceError, StaleNonceError
from metatx.core.interfaces import NonceStore
from metatx.core.weights import U64_MAX

logger = logging.getLogger(__name__)

DEFAULT_TAG_PREFIX = "AccountAbstraction"


class InMemoryNonceStore:
    """Process-local nonce map guarded by a re-entrant lock."""

    def __init__(self, initial: Optional[Dict[AccountId, int]] = None) -> None:
        self.nonces: Dict[AccountId, int] = dict(initial or {})
        self.lock = RLock()

    def get(self, account: AccountId) -> int:
        with self.lock:
            return self.nonces.get(account, 0)

    def compare_and_set(self, account: AccountId, expected: int, new: int) -> bool:
        with self.lock:
            if self.nonces.get(account, 0) != expected:
                return False
            self.nonces[account] = new
            return True

    def set(self, account: AccountId, value: int) -> None:
        with self.lock:
            self.nonces[account] = value


class JsonFileNonceStore(InMemoryNonceStore):
    """
    Nonce map persisted to ``nonces.json`` after every change.

    Keys are stored as 0x-prefixed account hex.
    """

    def __init__(self, data_dir: str) -> None:
        super().__init__()
        self.data_dir = data_dir
        os.makedirs(data_dir, exist_ok=True)
        self.nonce_file = os.path.join(data_dir, "nonces.json")
        self._load_nonces()

    def _load_nonces(self) -> None:
        """Load nonces from file"""
        if not os.path.exists(self.nonce_file):
            return
        try:
            with open(self.nonce_file, "r") as f:
                raw = json.load(f)
            self.nonces = {AccountId.from_hex(key): int(value) for key, value in raw.items()}
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(
                "Failed to load nonces from %s: %s - starting fresh",
                self.nonce_file,
                type(e).__name__,
                extra={"event": "nonce.load_failed", "error": str(e)},
            )
            self.nonces = {}

    def _save_nonces(self) -> None:
        """Save nonces to file"""
        payload = {account.hex(): value for account, value in self.nonces.items()}
        tmp_path = self.nonce_file + ".tmp"
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.nonce_file)

    def compare_and_set(self, account: AccountId, expected: int, new: int) -> bool:
        with self.lock:
            if not super().compare_and_set(account, expected, new):
                return False
            self._save_nonces()
            return True

    def set(self, account: AccountId, value: int) -> None:
        with self.lock:
            super().set(account, value)
            self._save_nonces()


@dataclass(frozen=True)
class NonceCheck:
    """Ordering tags for an accepted nonce."""

    nonce: int
    provides: bytes
    requires: Optional[bytes] = None
    advanced: bool = False

    @property
    def is_future(self) -> bool:
        return self.requires is not None


def ensure_valid_nonce(nonce: int) -> int:
    """
    Check that a nonce fits in an unsigned 64-bit integer.

    Raises:
        MalformedNonceError: If the nonce is not an integer in [0, 2**64)
    """
    if isinstance(nonce, bool) or not isinstance(nonce, int):
        raise MalformedNonceError(f"Nonce must be an integer, got {type(nonce).__name__}")
    if nonce < 0 or nonce > U64_MAX:
        raise MalformedNonceError(f"Nonce out of u64 range: {nonce}", nonce=nonce)
    return nonce


class NonceSequencer:
    """
    Enforce strictly ordered, one-time nonces per account.

    - ``nonce < counter``: stale, rejected permanently
    - ``nonce == counter``: accepted, counter advanced by one
    - ``nonce > counter``: accepted speculatively, requires ``nonce - 1``
    """

    def __init__(self, store: NonceStore, tag_prefix: str = DEFAULT_TAG_PREFIX) -> None:
        self.store = store
        self.tag_prefix = tag_prefix

    def tag(self, account: AccountId, nonce: int) -> bytes:
        """Pool tag for (account, nonce), prefixed the way a Substrate pool prefixes tags."""
        return encode_str(self.tag_prefix) + encode_bytes(account.raw + encode_u64(nonce))

    def current(self, account: AccountId) -> int:
        return self.store.get(account)

    def _classify(self, account: AccountId, nonce: int, counter: int) -> NonceCheck:
        if nonce < counter:
            logger.info(
                "Stale nonce %d for %s (expected %d)",
                nonce,
                account.hex(),
                counter,
                extra={"event": "nonce.stale", "account": account.hex()},
            )
            raise StaleNonceError(
                "Nonce already used",
                account=account.hex(),
                nonce=nonce,
                expected=counter,
            )
        requires = self.tag(account, nonce - 1) if nonce > counter else None
        return NonceCheck(nonce=nonce, provides=self.tag(account, nonce), requires=requires)

    def peek(self, account: AccountId, nonce: int) -> NonceCheck:
        """Classify a nonce without mutating the counter."""
        ensure_valid_nonce(nonce)
        return self._classify(account, nonce, self.store.get(account))

    def check(self, account: AccountId, nonce: int) -> NonceCheck:
        """
        Classify a nonce and advance the counter when it is the next expected one.

        Args:
            account: Caller account
            nonce: Request nonce

        Returns:
            NonceCheck with provides/requires tags

        Raises:
            StaleNonceError: If the nonce was already consumed
            MalformedNonceError: If the nonce is not a u64
        """
        ensure_valid_nonce(nonce)
        while True:
            counter = self.store.get(account)
            result = self._classify(account, nonce, counter)
            if result.requires is not None:
                logger.debug(
                    "Future nonce %d for %s (counter %d)",
                    nonce,
                    account.hex(),
                    counter,
                    extra={"event": "nonce.future", "account": account.hex()},
                )
                return result
            # A concurrent check for the same nonce may win the race; re-read and reclassify
            if self.store.compare_and_set(account, counter, counter + 1):
                logger.debug(
                    "Nonce advanced to %d for %s",
                    counter + 1,
                    account.hex(),
                    extra={"event": "nonce.advanced", "account": account.hex()},
                )
                return NonceCheck(
                    nonce=nonce,
                    provides=result.provides,
                    requires=None,
                    advanced=True,
                )

    def commit(self, account: AccountId, nonce: int) -> None:
        """
        Strictly consume ``nonce``; it must equal the current counter.

        Raises:
            StaleNonceError: If the nonce is behind the counter
            FutureNonceError: If the nonce is ahead of the counter
        """
        ensure_valid_nonce(nonce)
        while True:
            counter = self.store.get(account)
            if nonce > counter:
                raise FutureNonceError(
                    "Nonce is ahead of the account counter",
                    account=account.hex(),
                    nonce=nonce,
                    expected=counter,
                )
            if nonce < counter:
                raise StaleNonceError(
                    "Nonce already used",
                    account=account.hex(),
                    nonce=nonce,
                    expected=counter,
                )
            if self.store.compare_and_set(account, counter, counter + 1):
                logger.debug(
                    "Nonce committed, advanced to %d for %s",
                    counter + 1,
                    account.hex(),
                    extra={"event": "nonce.advanced", "account": account.hex()},
                )
                return

