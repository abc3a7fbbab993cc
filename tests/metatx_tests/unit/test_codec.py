import pytest

from metatx.core.account_binding import AccountId
from metatx.core.action_registry import (
    CALL_FILTERED,
    NOOP_WEIGHT,
    REMARK_HISTORY_LIMIT,
    TRANSFER_KEEP_ALIVE_WEIGHT,
    TRANSFER_WEIGHT,
    Noop,
    ReferenceActionRegistry,
    Remark,
    Transfer,
    allow_list,
)
from metatx.core.codec import (
    TrailingZeroInput,
    encode_bytes,
    encode_compact,
    encode_u64,
    encode_u128,
)
from metatx.core.exceptions import DecodeError
from metatx.core.interfaces import CallerOrigin
from metatx.core.ledger import InMemoryBalanceLedger

SENDER = AccountId(b"\x01" * 32)
DEST = AccountId(b"\x02" * 32)


class TestCompact:
    """Test SCALE compact integers"""

    @pytest.mark.parametrize(
        "value,encoded",
        [
            (0, "00"),
            (1, "04"),
            (18, "48"),
            (63, "fc"),
            (64, "0101"),
            (16383, "fdff"),
            (16384, "02000100"),
            (1 << 30, "0300000040"),
        ],
    )
    def test_known_encodings(self, value, encoded):
        assert encode_compact(value).hex() == encoded
        assert TrailingZeroInput(bytes.fromhex(encoded)).read_compact() == value

    def test_rejects_negative(self):
        with pytest.raises(ValueError):
            encode_compact(-1)


class TestTrailingZeroInput:
    """Test the zero-padding reader"""

    def test_reads_past_end_as_zero(self):
        reader = TrailingZeroInput(b"\x01")
        assert reader.read(4) == b"\x01\x00\x00\x00"
        assert reader.remaining == 0
        assert reader.read_u64() == 0

    def test_fixed_width_little_endian(self):
        reader = TrailingZeroInput(encode_u64(258) + encode_u128(7))
        assert reader.read_u64() == 258
        assert reader.read_u128() == 7
        assert reader.offset == 24

    def test_read_vec(self):
        reader = TrailingZeroInput(encode_bytes(b"hello") + b"tail")
        assert reader.read_vec() == b"hello"
        assert reader.remaining == 4

    def test_read_vec_rejects_length_past_input(self):
        reader = TrailingZeroInput(encode_compact(6) + b"hello")
        with pytest.raises(DecodeError) as exc_info:
            reader.read_vec()
        assert exc_info.value.details == {"length": 6, "remaining": 5}

    def test_u64_range_checked(self):
        with pytest.raises(ValueError):
            encode_u64(1 << 64)


class TestReferenceRegistry:
    """Test decoding and dispatch of the reference actions"""

    def setup_method(self):
        self.ledger = InMemoryBalanceLedger(existential_deposit=1)
        self.ledger.set_balance(SENDER, 1_000)
        self.registry = ReferenceActionRegistry(self.ledger)
        self.origin = CallerOrigin(who=SENDER)

    def _decode(self, data: bytes):
        return self.registry.decode(TrailingZeroInput(data))

    def test_encodings_decode_back(self):
        for action in (Noop(), Remark(b"hi"), Transfer(DEST, 42)):
            assert self._decode(action.encode()) == action

    def test_empty_input_decodes_as_noop(self):
        assert self._decode(b"") == Noop()

    def test_trailing_bytes_ignored(self):
        assert self._decode(b"\x00garbage") == Noop()

    def test_truncated_transfer_is_zero_padded(self):
        action = self._decode(b"\x02" + DEST.raw)
        assert action == Transfer(DEST, 0)

    def test_unknown_index(self):
        with pytest.raises(DecodeError) as exc_info:
            self._decode(b"\x7f")
        assert exc_info.value.pool_reason == "Call"

    @pytest.mark.parametrize(
        "data",
        [
            b"\x01\xff" + b"\xff" * 67,
            b"\x01\xfe\xff\xff\xff",
            b"\x01\x10abc",
        ],
    )
    def test_remark_length_prefix_bounded_by_input(self, data):
        with pytest.raises(DecodeError):
            self._decode(data)

    def test_encoded_size_excludes_trailing_bytes(self):
        assert self.registry.encoded_size(self._decode(b"\x00\x00\x00")) == 1

    def test_remark_weight_scales_with_payload(self):
        short = self.registry.dispatch_info(Remark(b"a")).weight
        long = self.registry.dispatch_info(Remark(b"a" * 10)).weight
        assert long.ref_time - short.ref_time == 900

    def test_noop_dispatch(self):
        outcome = self.registry.dispatch(Noop(), self.origin)
        assert outcome.success
        assert outcome.actual_weight is None
        assert self.registry.dispatch_info(Noop()).weight == NOOP_WEIGHT

    def test_remark_dispatch_records(self):
        outcome = self.registry.dispatch(Remark(b"note"), self.origin)
        assert outcome.success
        assert list(self.registry.remarks) == [(SENDER, b"note")]

    def test_remark_history_is_bounded(self):
        for i in range(REMARK_HISTORY_LIMIT + 5):
            self.registry.dispatch(Remark(str(i).encode()), self.origin)
        assert len(self.registry.remarks) == REMARK_HISTORY_LIMIT
        assert self.registry.remarks[-1] == (SENDER, str(REMARK_HISTORY_LIMIT + 4).encode())

    def test_transfer_to_new_account_uses_full_weight(self):
        outcome = self.registry.dispatch(Transfer(DEST, 100), self.origin)
        assert outcome.success
        assert outcome.actual_weight == TRANSFER_WEIGHT
        assert self.ledger.free_balance(DEST) == 100
        assert self.ledger.free_balance(SENDER) == 900

    def test_transfer_to_existing_account_reports_lower_weight(self):
        self.ledger.set_balance(DEST, 5)
        outcome = self.registry.dispatch(Transfer(DEST, 100), self.origin)
        assert outcome.actual_weight == TRANSFER_KEEP_ALIVE_WEIGHT

    def test_failed_transfer_is_an_outcome(self):
        outcome = self.registry.dispatch(Transfer(DEST, 5_000), self.origin)
        assert not outcome.success
        assert outcome.error == "InsufficientBalanceError"
        assert self.ledger.free_balance(SENDER) == 1_000

    def test_filtered_call_is_not_executed(self):
        origin = CallerOrigin(who=SENDER, call_filter=allow_list(["noop"]))
        outcome = self.registry.dispatch(Remark(b"x"), origin)
        assert not outcome.success
        assert outcome.error == CALL_FILTERED
        assert not self.registry.remarks


def test_allow_list_wildcard():
    assert allow_list(["*"])(Transfer(DEST, 1))
    assert allow_list(["transfer"])(Transfer(DEST, 1))
    assert not allow_list([])(Noop())
