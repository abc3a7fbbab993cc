"""
Meta-transaction admission and execution pipeline.

A request signed off-chain by an EVM wallet goes through two phases:

Admission (run by any validator, possibly many times):
    Received -> HashComputed -> SignatureRecovered -> IdentityVerified ->
    NonceChecked -> ActionDecoded -> ServiceFeeCharged -> FeeEstimated -> Admitted

Execution (run once, when the request is included):
    Admitted -> IdentityVerified -> ActionDecoded -> FeeWithdrawn ->
    ActionDispatched -> ActualFeeComputed -> FeeCorrected -> Finalized

In COMMIT_ON_CHECK mode admission advances the nonce and charges the service
fee. In DRY_RUN mode admission is side-effect free and execution commits both.
Effects committed before a rejection are never rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ecdsa import VerifyingKey

from metatx.core.account_binding import AccountId, bind_claimed_account
from metatx.core.action_registry import ReferenceActionRegistry, allow_list
from metatx.core.codec import TrailingZeroInput
from metatx.core.config import AdmissionMode, GatewayConfig
from metatx.core.crypto_utils import SIGNATURE_LENGTH, recover_public_key
from metatx.core.events import ActionOutcome, EventRecorder
from metatx.core.exceptions import (
    DecodeError,
    GatewayError,
    InvalidSignatureError,
    PaymentError,
)
from metatx.core.fee_coordinator import FeeCoordinator, FeeQuote
from metatx.core.fee_policy import LinearFeePolicy
from metatx.core.interfaces import (
    ActionRegistry,
    BalanceLedger,
    BlockCapacity,
    CallerOrigin,
    DispatchOutcome,
    EventSink,
    FeePolicy,
    NonceStore,
    StaticBlockCapacity,
)
from metatx.core.ledger import InMemoryBalanceLedger
from metatx.core.logging_config import RequestContext
from metatx.core.nonce_tracker import (
    InMemoryNonceStore,
    JsonFileNonceStore,
    NonceCheck,
    NonceSequencer,
    ensure_valid_nonce,
)
from metatx.core.priority import compute_priority
from metatx.core.typed_signing import signing_digest
from metatx.core.weights import U128_MAX, DispatchClass, DispatchInfo, Weight

logger = logging.getLogger(__name__)


class RequestStage(Enum):
    RECEIVED = "received"
    HASH_COMPUTED = "hash_computed"
    SIGNATURE_RECOVERED = "signature_recovered"
    IDENTITY_VERIFIED = "identity_verified"
    NONCE_CHECKED = "nonce_checked"
    ACTION_DECODED = "action_decoded"
    SERVICE_FEE_CHARGED = "service_fee_charged"
    FEE_ESTIMATED = "fee_estimated"
    ADMITTED = "admitted"
    FEE_WITHDRAWN = "fee_withdrawn"
    ACTION_DISPATCHED = "action_dispatched"
    ACTUAL_FEE_COMPUTED = "actual_fee_computed"
    FEE_CORRECTED = "fee_corrected"
    FINALIZED = "finalized"


def _parse_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    raise TypeError(f"Expected hex string or bytes, got {type(value).__name__}")


def _parse_int(value: Any, field_name: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise ValueError(f"{field_name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class MetaTransactionRequest:
    """A signed meta-transaction. Immutable once received."""

    who: AccountId
    call_data: bytes
    nonce: int
    signature: bytes
    tip: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetaTransactionRequest":
        """
        Build a request from its JSON form.

        ``who`` may be 0x-hex or SS58; byte fields are hex strings.

        Raises:
            DecodeError: If a field is missing or malformed
        """
        try:
            who = data["who"]
            if not isinstance(who, (AccountId, str)):
                raise TypeError(f"who must be a hex or SS58 string, got {type(who).__name__}")
            return cls(
                who=who if isinstance(who, AccountId) else AccountId.parse(who),
                call_data=_parse_bytes(data.get("call_data", b"")),
                nonce=_parse_int(data["nonce"], "nonce"),
                signature=_parse_bytes(data["signature"]),
                tip=None if data.get("tip") is None else _parse_int(data["tip"], "tip"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed request: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "who": self.who.hex(),
            "call_data": "0x" + self.call_data.hex(),
            "nonce": self.nonce,
            "signature": "0x" + self.signature.hex(),
            "tip": self.tip,
        }

    @property
    def effective_tip(self) -> int:
        return self.tip or 0


@dataclass(frozen=True)
class ValidTransaction:
    """Validity handed to the transaction pool."""

    priority: int
    provides: Tuple[bytes, ...]
    requires: Tuple[bytes, ...] = ()
    longevity: int = 5
    propagate: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority,
            "requires": ["0x" + tag.hex() for tag in self.requires],
            "provides": ["0x" + tag.hex() for tag in self.provides],
            "longevity": self.longevity,
            "propagate": self.propagate,
        }


@dataclass(frozen=True)
class PendingIntent:
    """Side effects deferred to execution by a dry-run admission."""

    account: AccountId
    nonce: int
    service_fee: int


@dataclass
class AdmissionResult:
    account: AccountId
    nonce: int
    validity: ValidTransaction
    fee_quote: FeeQuote
    stage: RequestStage = RequestStage.ADMITTED
    pending_intent: Optional[PendingIntent] = None

    @property
    def requires(self) -> Optional[bytes]:
        return self.validity.requires[0] if self.validity.requires else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account.hex(),
            "nonce": self.nonce,
            "stage": self.stage.value,
            "validity": self.validity.to_dict(),
            "fee_quote": self.fee_quote.to_dict(),
            "pending": self.pending_intent is not None,
        }


@dataclass
class ExecutionReceipt:
    account: AccountId
    nonce: int
    outcome: DispatchOutcome
    fee_quote: FeeQuote
    stage: RequestStage = RequestStage.FINALIZED
    events: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account.hex(),
            "nonce": self.nonce,
            "stage": self.stage.value,
            "outcome": self.outcome.to_dict(),
            "fee_quote": self.fee_quote.to_dict(),
        }


@dataclass
class _Progress:
    stage: RequestStage


@dataclass
class _DecodedAction:
    action: Any
    length: int
    info: DispatchInfo


class MetaTransactionGateway:
    """Validates and executes signed meta-transactions."""

    def __init__(
        self,
        config: GatewayConfig,
        ledger: BalanceLedger,
        fee_policy: FeePolicy,
        registry: ActionRegistry,
        capacity: BlockCapacity,
        nonce_store: NonceStore,
        events: EventSink,
    ) -> None:
        self.config = config
        self.domain = config.typed_data_domain()
        self.ss58_prefix = config.account.ss58_prefix
        self.mode = config.admission_mode
        self.ledger = ledger
        self.registry = registry
        self.capacity = capacity
        self.events = events
        self.nonces = NonceSequencer(nonce_store, tag_prefix=config.pool.tag_prefix)
        self.fees = FeeCoordinator(ledger, fee_policy, events, config.fees.service_fee)
        self.call_filter = allow_list(config.limits.allowed_calls)

    # ==================== Shared steps ====================

    def signing_digest(self, request: MetaTransactionRequest) -> bytes:
        return signing_digest(
            self.domain, request.who, request.call_data, request.nonce, self.ss58_prefix
        )

    def _check_shape(self, request: MetaTransactionRequest) -> int:
        """Validate request field bounds and return the effective tip."""
        if len(request.signature) != SIGNATURE_LENGTH:
            raise InvalidSignatureError(
                f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(request.signature)}"
            )
        limit = self.config.limits.max_call_data_length
        if len(request.call_data) > limit:
            raise DecodeError(
                f"Call data exceeds {limit} bytes",
                details={"length": len(request.call_data), "limit": limit},
            )
        ensure_valid_nonce(request.nonce)
        tip = request.effective_tip
        if isinstance(tip, bool) or not isinstance(tip, int) or tip < 0 or tip > U128_MAX:
            raise PaymentError("Tip out of range", details={"tip": tip})
        return tip

    def _recover_signer(self, request: MetaTransactionRequest, digest: bytes) -> VerifyingKey:
        public_key = recover_public_key(request.signature, digest)
        if public_key is None:
            raise InvalidSignatureError(
                "Signature does not recover to a public key",
                details={"digest": digest.hex()},
            )
        return public_key

    def decode_action(self, call_data: bytes) -> _DecodedAction:
        """
        Decode embedded action bytes, tolerating trailing bytes.

        Raises:
            DecodeError: If the bytes are not a known action
        """
        try:
            action = self.registry.decode(TrailingZeroInput(call_data))
            info = self.registry.dispatch_info(action)
            length = self.registry.encoded_size(action)
        except DecodeError:
            raise
        except (ValueError, KeyError, IndexError, TypeError, OverflowError) as exc:
            raise DecodeError(f"Undecodable action: {exc}") from exc
        return _DecodedAction(action=action, length=length, info=info)

    def call_weight(self, request: MetaTransactionRequest) -> Tuple[Weight, DispatchClass]:
        """Weight and class the gateway call declares for ``request``."""
        try:
            decoded = self.decode_action(request.call_data)
        except DecodeError:
            return Weight.zero(), DispatchClass.NORMAL
        return Weight.zero().saturating_add(decoded.info.weight), decoded.info.dispatch_class

    def _validity(self, nonce_check: NonceCheck, decoded: _DecodedAction, tip: int) -> ValidTransaction:
        priority = compute_priority(
            decoded.info.weight,
            decoded.length,
            tip,
            self.capacity,
            decoded.info.dispatch_class,
        )
        requires = (nonce_check.requires,) if nonce_check.requires is not None else ()
        return ValidTransaction(
            priority=priority,
            provides=(nonce_check.provides,),
            requires=requires,
            longevity=self.config.pool.longevity,
            propagate=self.config.pool.propagate,
        )

    def _reject(self, exc: GatewayError, stage: RequestStage, phase: str) -> None:
        if exc.stage is None:
            exc.stage = stage.value
        logger.info(
            "%s rejected at %s: %s",
            phase.capitalize(),
            exc.stage,
            exc.message,
            extra={"event": f"gateway.{phase}_rejected", "error": exc.code, "stage": exc.stage},
        )

    # ==================== Admission ====================

    def validate(self, request: MetaTransactionRequest) -> AdmissionResult:
        """
        Run the admission check.

        Returns:
            AdmissionResult with priority and ordering tags

        Raises:
            GatewayError: Subclass describing why the request was rejected
        """
        progress = _Progress(RequestStage.RECEIVED)
        try:
            tip = self._check_shape(request)
            digest = self.signing_digest(request)
            progress.stage = RequestStage.HASH_COMPUTED
            with RequestContext(digest.hex()[:16]):
                public_key = self._recover_signer(request, digest)
                progress.stage = RequestStage.SIGNATURE_RECOVERED
                who = bind_claimed_account(request.who, public_key)
                progress.stage = RequestStage.IDENTITY_VERIFIED

                if self.mode is AdmissionMode.DRY_RUN:
                    nonce_check = self.nonces.peek(who, request.nonce)
                else:
                    nonce_check = self.nonces.check(who, request.nonce)
                progress.stage = RequestStage.NONCE_CHECKED

                decoded = self.decode_action(request.call_data)
                progress.stage = RequestStage.ACTION_DECODED

                pending = None
                reserve = 0
                if self.mode is AdmissionMode.DRY_RUN:
                    pending = PendingIntent(
                        account=who, nonce=request.nonce, service_fee=self.fees.service_fee
                    )
                    # The service fee is deferred, so the balance must cover it too
                    reserve = self.fees.service_fee
                else:
                    self.fees.charge_service_fee(who)
                    progress.stage = RequestStage.SERVICE_FEE_CHARGED

                estimated_fee = self.fees.estimate(decoded.length, decoded.info, tip)
                self.fees.ensure_affordable(who, estimated_fee + reserve)
                progress.stage = RequestStage.FEE_ESTIMATED

                result = AdmissionResult(
                    account=who,
                    nonce=request.nonce,
                    validity=self._validity(nonce_check, decoded, tip),
                    fee_quote=FeeQuote(estimated_fee=estimated_fee, tip=tip),
                    pending_intent=pending,
                )
                logger.info(
                    "Admitted nonce %d for %s with priority %d",
                    request.nonce,
                    who.hex(),
                    result.validity.priority,
                    extra={
                        "event": "gateway.admitted",
                        "account": who.hex(),
                        "nonce": request.nonce,
                        "priority": result.validity.priority,
                        "future": nonce_check.is_future,
                        "mode": self.mode.value,
                    },
                )
                return result
        except GatewayError as exc:
            self._reject(exc, progress.stage, "admission")
            raise

    # ==================== Execution ====================

    def execute(self, request: MetaTransactionRequest) -> ExecutionReceipt:
        """
        Execute an admitted request once.

        Dispatch failures are reported in the receipt's outcome; only pipeline
        failures (signature, identity, decoding, payment) raise.
        """
        stage = RequestStage.ADMITTED
        try:
            tip = self._check_shape(request)
            digest = self.signing_digest(request)
            with RequestContext(digest.hex()[:16]):
                public_key = self._recover_signer(request, digest)
                who = bind_claimed_account(request.who, public_key)
                stage = RequestStage.IDENTITY_VERIFIED

                if self.mode is AdmissionMode.DRY_RUN:
                    self.nonces.commit(who, request.nonce)
                    self.fees.charge_service_fee(who)

                decoded = self.decode_action(request.call_data)
                stage = RequestStage.ACTION_DECODED
                estimated_fee = self.fees.estimate(decoded.length, decoded.info, tip)
                already_withdrawn = self.fees.withdraw(who, decoded.info, estimated_fee, tip)
                stage = RequestStage.FEE_WITHDRAWN

                origin = CallerOrigin(who=who, call_filter=self.call_filter)
                outcome = self._dispatch(decoded.action, origin)
                stage = RequestStage.ACTION_DISPATCHED
                self.events.deposit_event(ActionOutcome(who=who, result=outcome))

                actual_fee = self.fees.actual_fee(decoded.length, decoded.info, outcome.post_info, tip)
                stage = RequestStage.ACTUAL_FEE_COMPUTED
                self.fees.settle(who, decoded.info, outcome.post_info, actual_fee, tip, already_withdrawn)
                stage = RequestStage.FEE_CORRECTED

                logger.info(
                    "Executed nonce %d for %s (success=%s, fee=%d)",
                    request.nonce,
                    who.hex(),
                    outcome.success,
                    actual_fee,
                    extra={
                        "event": "gateway.executed",
                        "account": who.hex(),
                        "nonce": request.nonce,
                        "success": outcome.success,
                        "actual_fee": actual_fee,
                    },
                )
                return ExecutionReceipt(
                    account=who,
                    nonce=request.nonce,
                    outcome=outcome,
                    fee_quote=FeeQuote(estimated_fee=estimated_fee, tip=tip, actual_fee=actual_fee),
                    events=list(outcome.events),
                )
        except GatewayError as exc:
            self._reject(exc, stage, "execution")
            raise

    def _dispatch(self, action: Any, origin: CallerOrigin) -> DispatchOutcome:
        try:
            return self.registry.dispatch(action, origin)
        except GatewayError:
            raise
        except Exception as exc:
            # Action errors are reported in the outcome
            logger.warning(
                "Action dispatch raised %s",
                type(exc).__name__,
                exc_info=True,
                extra={"event": "gateway.dispatch_failed", "account": origin.who.hex()},
            )
            return DispatchOutcome(success=False, error=f"{type(exc).__name__}: {exc}")


def build_reference_gateway(
    config: Optional[GatewayConfig] = None,
    ledger: Optional[InMemoryBalanceLedger] = None,
    events: Optional[EventSink] = None,
) -> MetaTransactionGateway:
    """
    Assemble a gateway backed by the in-memory reference collaborators.

    The nonce map is persisted to ``storage.nonce_dir`` when configured.
    """
    config = config or GatewayConfig()
    ledger = ledger or InMemoryBalanceLedger(existential_deposit=config.fees.existential_deposit)
    fee_policy = LinearFeePolicy(
        ledger=ledger,
        base_fee=config.fees.base_fee,
        length_fee=config.fees.length_fee,
        weight_fee=config.fees.weight_fee,
        proof_fee=config.fees.proof_fee,
    )
    if config.storage.nonce_dir:
        nonce_store: NonceStore = JsonFileNonceStore(config.storage.nonce_dir)
    else:
        nonce_store = InMemoryNonceStore()
    capacity = StaticBlockCapacity(
        max_weight=Weight.from_parts(config.limits.max_block_ref_time, config.limits.max_block_proof_size),
        max_length=config.limits.max_block_length,
    )
    return MetaTransactionGateway(
        config=config,
        ledger=ledger,
        fee_policy=fee_policy,
        registry=ReferenceActionRegistry(ledger),
        capacity=capacity,
        nonce_store=nonce_store,
        events=events if events is not None else EventRecorder(),
    )
