"""
End-to-end tests for meta-transaction admission and execution.
"""

import logging
import threading

import pytest

from metatx.core.action_registry import NOOP_WEIGHT, Remark, Transfer
from metatx.core.config import AdmissionMode, GatewayConfig
from metatx.core.events import ActionOutcome, ServiceFeePaid, TransactionFeePaid
from metatx.core.exceptions import (
    AccountMismatchError,
    DecodeError,
    FutureNonceError,
    InvalidSignatureError,
    PaymentError,
    StaleNonceError,
)
from metatx.core.gateway import MetaTransactionRequest, RequestStage
from metatx.core.weights import DispatchClass, Weight

# Noop weighs (10_000, 0) and encodes to one byte; the default block fits 5 MiB of them
NOOP_MAX_TX = 5 * 1024 * 1024


class TestAdmission:
    """Test the admission check in commit-on-check mode"""

    def test_admits_next_nonce(self, gateway, ledger, recorder, alice, sign_request):
        request = sign_request(gateway, 0, tip=3)

        result = gateway.validate(request)

        assert result.account == alice
        assert result.stage is RequestStage.ADMITTED
        assert result.requires is None
        assert result.validity.provides == (gateway.nonces.tag(alice, 0),)
        assert result.validity.priority == 4 * NOOP_MAX_TX
        assert result.validity.longevity == 5
        assert result.validity.propagate is True
        assert result.fee_quote.estimated_fee == 1 + 1 + 3
        assert result.pending_intent is None
        assert gateway.nonces.current(alice) == 1
        assert ledger.free_balance(alice) == 990
        assert recorder.events == [ServiceFeePaid(who=alice, fee=10)]

    def test_replay_is_stale(self, gateway, ledger, alice, sign_request):
        request = sign_request(gateway, 0)
        gateway.validate(request)

        with pytest.raises(StaleNonceError) as exc_info:
            gateway.validate(request)

        assert exc_info.value.pool_reason == "Stale"
        assert exc_info.value.stage == RequestStage.IDENTITY_VERIFIED.value
        assert ledger.free_balance(alice) == 990
        assert gateway.nonces.current(alice) == 1

    def test_future_nonce_requires_predecessor(self, gateway, ledger, alice, sign_request):
        result = gateway.validate(sign_request(gateway, 2))

        assert result.requires == gateway.nonces.tag(alice, 1)
        assert result.validity.provides == (gateway.nonces.tag(alice, 2),)
        assert gateway.nonces.current(alice) == 0
        assert ledger.free_balance(alice) == 990

    def test_claimed_account_must_match_signer(self, gateway, ledger, recorder, alice, bob, sign_request):
        request = sign_request(gateway, 0, who=bob)

        with pytest.raises(AccountMismatchError) as exc_info:
            gateway.validate(request)

        assert exc_info.value.pool_reason == "BadSigner"
        assert ledger.free_balance(alice) == 1_000
        assert gateway.nonces.current(alice) == 0
        assert gateway.nonces.current(bob) == 0
        assert len(recorder) == 0

    def test_signature_over_other_fields_is_rejected(self, gateway, alice, sign_request):
        signed = sign_request(gateway, 0)
        tampered = MetaTransactionRequest(
            who=signed.who, call_data=signed.call_data, nonce=1, signature=signed.signature
        )

        with pytest.raises((AccountMismatchError, InvalidSignatureError)):
            gateway.validate(tampered)
        assert gateway.nonces.current(alice) == 0

    def test_short_signature(self, gateway, alice):
        request = MetaTransactionRequest(who=alice, call_data=b"\x00", nonce=0, signature=b"\x01" * 64)

        with pytest.raises(InvalidSignatureError) as exc_info:
            gateway.validate(request)

        assert exc_info.value.pool_reason == "BadProof"
        assert exc_info.value.stage == RequestStage.RECEIVED.value

    def test_bad_recovery_byte(self, gateway, sign_request):
        signed = sign_request(gateway, 0)
        bad = MetaTransactionRequest(
            who=signed.who, call_data=signed.call_data, nonce=0, signature=signed.signature[:64] + b"\x05"
        )
        with pytest.raises(InvalidSignatureError):
            gateway.validate(bad)

    def test_oversized_call_data(self, gateway, alice, sign_request):
        request = sign_request(gateway, 0, call_data=b"\x00" * 2049)

        with pytest.raises(DecodeError):
            gateway.validate(request)
        assert gateway.nonces.current(alice) == 0

    def test_unknown_action_consumes_nonce_but_not_fee(self, gateway, ledger, alice, sign_request):
        request = sign_request(gateway, 0, call_data=b"\x7f")

        with pytest.raises(DecodeError) as exc_info:
            gateway.validate(request)

        assert exc_info.value.pool_reason == "Call"
        assert exc_info.value.stage == RequestStage.NONCE_CHECKED.value
        assert gateway.nonces.current(alice) == 1
        assert ledger.free_balance(alice) == 1_000

    @pytest.mark.parametrize(
        "call_data",
        [b"\x01\xff" + b"\xff" * 67, b"\x01\xfe\xff\xff\xff"],
    )
    def test_oversized_remark_length_is_a_decode_error(self, gateway, ledger, alice, sign_request, call_data):
        request = sign_request(gateway, 0, call_data=call_data)

        with pytest.raises(DecodeError) as exc_info:
            gateway.validate(request)

        assert exc_info.value.stage == RequestStage.NONCE_CHECKED.value
        assert ledger.free_balance(alice) == 1_000

    def test_trailing_bytes_are_ignored(self, gateway, sign_request):
        result = gateway.validate(sign_request(gateway, 0, call_data=b"\x00\xde\xad"))
        assert result.fee_quote.estimated_fee == 2
        assert result.validity.priority == NOOP_MAX_TX

    def test_empty_call_data_is_a_noop(self, gateway, sign_request):
        result = gateway.validate(sign_request(gateway, 0, call_data=b""))
        assert result.fee_quote.estimated_fee == 2

    def test_cannot_pay_service_fee(self, gateway_config, alice, build_gateway, sign_request):
        gateway, ledger, recorder = build_gateway(gateway_config, balance=5)

        with pytest.raises(PaymentError) as exc_info:
            gateway.validate(sign_request(gateway, 0))

        assert exc_info.value.pool_reason == "Payment"
        assert ledger.free_balance(alice) == 5
        assert len(recorder) == 0

    def test_service_fee_kept_when_transaction_fee_unaffordable(
        self, gateway_config, alice, build_gateway, sign_request
    ):
        gateway, ledger, recorder = build_gateway(gateway_config, balance=12)

        with pytest.raises(PaymentError) as exc_info:
            gateway.validate(sign_request(gateway, 0))

        assert exc_info.value.stage == RequestStage.SERVICE_FEE_CHARGED.value
        assert ledger.free_balance(alice) == 2
        assert gateway.nonces.current(alice) == 1
        assert recorder.of_type(ServiceFeePaid) == [ServiceFeePaid(who=alice, fee=10)]

    def test_negative_tip(self, gateway, sign_request):
        with pytest.raises(PaymentError):
            gateway.validate(sign_request(gateway, 0, tip=-1))

    def test_higher_tip_ranks_higher(self, gateway, sign_request):
        low = gateway.validate(sign_request(gateway, 0, tip=1))
        high = gateway.validate(sign_request(gateway, 1, tip=2))
        assert high.validity.priority > low.validity.priority

    def test_concurrent_admission_consumes_nonce_once(self, gateway, ledger, alice, sign_request):
        request = sign_request(gateway, 0)
        outcomes = []
        lock = threading.Lock()

        def worker():
            try:
                gateway.validate(request)
                result = "ok"
            except StaleNonceError:
                result = "stale"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert gateway.nonces.current(alice) == 1
        assert ledger.free_balance(alice) == 990

    def test_admission_is_logged(self, gateway, sign_request, caplog):
        caplog.set_level(logging.INFO, logger="metatx")
        gateway.validate(sign_request(gateway, 0))
        assert any(getattr(r, "event", None) == "gateway.admitted" for r in caplog.records)


class TestExecution:
    """Test execution and fee settlement"""

    def test_execute_settles_fee_once(self, gateway, ledger, recorder, alice, sign_request):
        request = sign_request(gateway, 0, tip=3)
        gateway.validate(request)

        receipt = gateway.execute(request)

        assert receipt.stage is RequestStage.FINALIZED
        assert receipt.outcome.success
        assert receipt.fee_quote.actual_fee == 5
        assert ledger.free_balance(alice) == 985
        assert recorder.of_type(TransactionFeePaid) == [TransactionFeePaid(who=alice, actual_fee=5, tip=3)]
        assert len(recorder.of_type(ServiceFeePaid)) == 1
        assert len(recorder.of_type(ActionOutcome)) == 1

    def test_unused_weight_is_refunded(self, alice, bob, build_gateway, sign_request):
        config = GatewayConfig.from_dict({"fees": {"weight_fee": 1}})
        gateway, ledger, recorder = build_gateway(config, balance=1_000_000, extra={bob: 500})
        request = sign_request(gateway, 0, call_data=Transfer(bob, 1_000).encode())

        admission = gateway.validate(request)
        receipt = gateway.execute(request)

        assert admission.fee_quote.estimated_fee == 1 + 49 + 300_000
        assert receipt.fee_quote.actual_fee == 1 + 49 + 200_000
        assert ledger.free_balance(bob) == 1_500
        assert ledger.free_balance(alice) == 1_000_000 - 10 - 1_000 - 200_050
        assert recorder.of_type(TransactionFeePaid)[0].actual_fee == 200_050

    def test_failed_action_still_pays(self, alice, bob, build_gateway, sign_request):
        config = GatewayConfig.from_dict({"fees": {"weight_fee": 1}})
        gateway, ledger, recorder = build_gateway(config, balance=1_000_000, extra={bob: 500})
        request = sign_request(gateway, 0, call_data=Transfer(bob, 10_000_000).encode())
        gateway.validate(request)

        receipt = gateway.execute(request)

        assert not receipt.outcome.success
        assert receipt.outcome.error == "InsufficientBalanceError"
        assert ledger.free_balance(bob) == 500
        assert ledger.free_balance(alice) == 1_000_000 - 10 - 200_050
        outcome_events = recorder.of_type(ActionOutcome)
        assert len(outcome_events) == 1
        assert not outcome_events[0].result.success
        assert len(recorder.of_type(TransactionFeePaid)) == 1

    def test_filtered_action_is_not_dispatched(self, alice, build_gateway, sign_request):
        config = GatewayConfig.from_dict({"limits": {"allowed_calls": ["noop"]}})
        gateway, ledger, _ = build_gateway(config)
        request = sign_request(gateway, 0, call_data=Remark(b"hi").encode())
        gateway.validate(request)

        receipt = gateway.execute(request)

        assert not receipt.outcome.success
        assert receipt.outcome.error == "CallFiltered"
        assert not gateway.registry.remarks
        assert ledger.free_balance(alice) == 1_000 - 10 - 5

    def test_remark_executes(self, gateway, alice, sign_request):
        request = sign_request(gateway, 0, call_data=Remark(b"hello").encode())
        gateway.validate(request)
        gateway.execute(request)
        assert list(gateway.registry.remarks) == [(alice, b"hello")]

    def test_execute_rejects_mismatched_claim(self, gateway, ledger, recorder, alice, bob_key, sign_request):
        request = sign_request(gateway, 0, who=alice, key=bob_key)
        with pytest.raises(AccountMismatchError):
            gateway.execute(request)
        assert ledger.free_balance(alice) == 1_000
        assert len(recorder) == 0

    def test_execute_unaffordable_fee(self, alice, bob, build_gateway, sign_request):
        config = GatewayConfig.from_dict({"fees": {"weight_fee": 1}})
        gateway, ledger, recorder = build_gateway(config, balance=100)
        request = sign_request(gateway, 0, call_data=Transfer(bob, 1).encode())

        with pytest.raises(PaymentError) as exc_info:
            gateway.execute(request)

        assert exc_info.value.stage == RequestStage.ACTION_DECODED.value
        assert ledger.free_balance(alice) == 100
        assert recorder.of_type(TransactionFeePaid) == []

    def test_call_weight(self, gateway, sign_request):
        request = sign_request(gateway, 0)
        assert gateway.call_weight(request) == (NOOP_WEIGHT, DispatchClass.NORMAL)

        undecodable = sign_request(gateway, 0, call_data=b"\x7f")
        assert gateway.call_weight(undecodable) == (Weight.zero(), DispatchClass.NORMAL)


class TestDryRunMode:
    """Test admission without side effects"""

    @pytest.fixture
    def dry_run(self, build_gateway):
        config = GatewayConfig.from_dict({"pool": {"admission_mode": "dry_run"}})
        return build_gateway(config)

    def test_admission_is_side_effect_free(self, dry_run, alice, sign_request):
        gateway, ledger, recorder = dry_run
        assert gateway.mode is AdmissionMode.DRY_RUN
        request = sign_request(gateway, 0)

        first = gateway.validate(request)
        second = gateway.validate(request)

        assert first.validity == second.validity
        assert first.pending_intent.service_fee == 10
        assert first.pending_intent.nonce == 0
        assert gateway.nonces.current(alice) == 0
        assert ledger.free_balance(alice) == 1_000
        assert len(recorder) == 0

    def test_execution_commits_nonce_and_service_fee(self, dry_run, alice, sign_request):
        gateway, ledger, recorder = dry_run
        request = sign_request(gateway, 0, tip=3)
        gateway.validate(request)

        gateway.execute(request)

        assert gateway.nonces.current(alice) == 1
        assert ledger.free_balance(alice) == 1_000 - 10 - 5
        assert len(recorder.of_type(ServiceFeePaid)) == 1
        assert len(recorder.of_type(TransactionFeePaid)) == 1

        with pytest.raises(StaleNonceError):
            gateway.execute(request)
        assert ledger.free_balance(alice) == 985

    def test_future_nonce_cannot_execute(self, dry_run, alice, sign_request):
        gateway, ledger, _ = dry_run
        request = sign_request(gateway, 1)

        assert gateway.validate(request).requires == gateway.nonces.tag(alice, 0)
        with pytest.raises(FutureNonceError):
            gateway.execute(request)
        assert ledger.free_balance(alice) == 1_000

    def test_affordability_includes_deferred_service_fee(self, build_gateway, sign_request):
        config = GatewayConfig.from_dict({"pool": {"admission_mode": "dry_run"}})
        gateway, _, _ = build_gateway(config, balance=12)

        with pytest.raises(PaymentError):
            gateway.validate(sign_request(gateway, 0))


class TestPersistence:
    """Test nonce persistence across gateway instances"""

    def test_nonce_survives_restart(self, tmp_path, build_gateway, sign_request):
        config = GatewayConfig.from_dict({"storage": {"nonce_dir": str(tmp_path)}})
        gateway, _, _ = build_gateway(config)
        request = sign_request(gateway, 0)
        gateway.validate(request)

        restarted, _, _ = build_gateway(config)
        with pytest.raises(StaleNonceError):
            restarted.validate(request)


class TestRequestSerialization:
    """Test the JSON request form"""

    def test_round_trip(self, gateway, sign_request):
        request = sign_request(gateway, 4, tip=9)
        assert MetaTransactionRequest.from_dict(request.to_dict()) == request

    def test_accepts_ss58_caller(self, gateway, alice, sign_request):
        data = sign_request(gateway, 0).to_dict()
        data["who"] = alice.to_ss58()
        assert MetaTransactionRequest.from_dict(data).who == alice

    @pytest.mark.parametrize(
        "data",
        [
            {"call_data": "0x00", "nonce": 0, "signature": "0x00"},
            {"who": "0x" + "00" * 32, "call_data": "0x00", "nonce": 0},
            {"who": "0x" + "00" * 32, "call_data": "zz", "nonce": 0, "signature": "0x00"},
            {"who": "0x" + "00" * 32, "call_data": "0x00", "nonce": "x", "signature": "0x00"},
            {"who": 123, "call_data": "0x00", "nonce": 0, "signature": "0x00"},
            {"who": None, "call_data": "0x00", "nonce": 0, "signature": "0x00"},
            {"who": ["0x00"], "call_data": "0x00", "nonce": 0, "signature": "0x00"},
            {"who": "0x" + "00" * 32, "call_data": "0x00", "nonce": 1.9, "signature": "0x00"},
            {"who": "0x" + "00" * 32, "call_data": "0x00", "nonce": True, "signature": "0x00"},
            {"who": "0x" + "00" * 32, "call_data": "0x00", "nonce": 0, "signature": "0x00", "tip": 2.5},
            ["not", "a", "mapping"],
        ],
    )
    def test_malformed(self, data):
        with pytest.raises(DecodeError):
            MetaTransactionRequest.from_dict(data)

    def test_decimal_string_integers_accepted(self, gateway, sign_request):
        data = sign_request(gateway, 3, tip=2).to_dict()
        data["nonce"] = "3"
        data["tip"] = "2"
        request = MetaTransactionRequest.from_dict(data)
        assert request.nonce == 3
        assert request.tip == 2

    def test_admission_result_to_dict(self, gateway, sign_request):
        result = gateway.validate(sign_request(gateway, 1))
        d = result.to_dict()
        assert d["stage"] == "admitted"
        assert d["validity"]["requires"] == ["0x" + result.requires.hex()]
        assert d["pending"] is False
