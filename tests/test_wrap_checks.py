import pytest
from fractions import Fraction

from plugin_src.plugin.invoices import DecodedInvoice, RouteEstimate
from plugin_src.plugin.lnutil import sha256
from plugin_src.plugin.plugin_config import WrapLimits
from plugin_src.plugin.wrap_checks import (
    check_payment_hash, check_amounts, check_features, check_description_args, resolve_description,
    compute_expiry, compute_cltv_delta, compute_max_fee, check_fee_budget,
    MissingPaymentHash, MissingAmount, AmountTooLow, AmountTooHigh, MissingIncomingAmount, InvalidAmount,
    SybilFeeTooLow, MissingFeatures, UnsupportedFeature, AmbiguousDescription, ExpirationTooSoon,
    CltvTooHigh, CltvTooLow, FeeTooHigh, WrapInputError, WrapPolicyError, DescriptionHashMismatch,
)

# Run the test with the following command:
# pytest tests/test_wrap_checks.py -v

PAYEE = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
NOW = 1_700_000_000_000
MINUTE = 60_000


@pytest.fixture
def limits():
    return WrapLimits()


def make_invoice(**kwargs) -> DecodedInvoice:
    values = dict(
        payment_hash=bytes(32),
        amount_msat=100_000,
        features={9, 15, 17},
        description="outgoing description",
        description_hash=None,
        expires_at=NOW + 10 * MINUTE,
        min_final_cltv_expiry=40,
        payee=PAYEE,
    )
    values.update(kwargs)
    return DecodedInvoice(**values)


def test_payment_hash_missing():
    with pytest.raises(MissingPaymentHash):
        check_payment_hash(make_invoice(payment_hash=None))
    with pytest.raises(MissingPaymentHash):
        check_payment_hash(make_invoice(payment_hash=bytes(16)))
    assert check_payment_hash(make_invoice()) == bytes(32)


def test_outgoing_amount_missing(limits):
    with pytest.raises(MissingAmount):
        check_amounts(None, 150_000, limits)


@pytest.mark.parametrize("outgoing", [1, 500, 899])
def test_outgoing_amount_too_low(limits, outgoing):
    with pytest.raises(AmountTooLow) as exc_info:
        check_amounts(outgoing, 10**12, limits)
    assert exc_info.value.value == outgoing
    assert exc_info.value.threshold == 900


@pytest.mark.parametrize("outgoing", [900_000_001, 10**12])
def test_outgoing_amount_too_high(limits, outgoing):
    with pytest.raises(AmountTooHigh) as exc_info:
        check_amounts(outgoing, 10**13, limits)
    assert exc_info.value.threshold == 900_000_000


def test_outgoing_amount_bounds_are_inclusive(limits):
    assert check_amounts(900, 2000, limits) == 900
    assert check_amounts(900_000_000, 2_000_000_000, limits) == 900_000_000


@pytest.mark.parametrize("incoming", [None, 0])
def test_incoming_amount_missing(limits, incoming):
    with pytest.raises(MissingIncomingAmount):
        check_amounts(100_000, incoming, limits)


@pytest.mark.parametrize("incoming", [-1, 1.5, "150000", True, 2**64])
def test_incoming_amount_invalid(limits, incoming):
    with pytest.raises(InvalidAmount):
        check_amounts(100_000, incoming, limits)


def test_sybil_fee_too_low(limits):
    # threshold is 142857.14...
    with pytest.raises(SybilFeeTooLow) as exc_info:
        check_amounts(100_000, 140_000, limits)
    assert exc_info.value.threshold == Fraction(1_000_000, 7)
    with pytest.raises(SybilFeeTooLow):
        check_amounts(100_000, 142_857, limits)
    assert check_amounts(100_000, 142_858, limits) == 100_000


def test_sybil_fee_exact_equality_is_accepted(limits):
    # 7000 * 10/7 == 10000 exactly
    assert check_amounts(7000, 10_000, limits) == 7000
    with pytest.raises(SybilFeeTooLow):
        check_amounts(7000, 9999, limits)


def test_sybil_fee_mult_override():
    limits = WrapLimits(sybil_fee_mult="2")
    with pytest.raises(SybilFeeTooLow):
        check_amounts(1000, 1999, limits)
    assert check_amounts(1000, 2000, limits) == 1000


def test_features_missing():
    with pytest.raises(MissingFeatures):
        check_features(set())
    with pytest.raises(MissingFeatures):
        check_features(None)


def test_supported_features_pass():
    check_features({8, 9, 14, 15, 16, 17, 25, 48, 49, 149, 151})


@pytest.mark.parametrize("bit", [0, 1, 7, 10, 24, 50, 148, 150, 152, 255])
def test_unsupported_feature(bit):
    with pytest.raises(UnsupportedFeature) as exc_info:
        check_features({9, 15, bit})
    assert exc_info.value.value == bit
    assert str(bit) in str(exc_info.value)


ZAP_REQUEST = '{"kind":9734,"content":"zap"}'
ZAP_REQUEST_HASH = sha256(ZAP_REQUEST).hex()


def test_ambiguous_description():
    with pytest.raises(AmbiguousDescription):
        check_description_args("text", "ab" * 32)
    with pytest.raises(AmbiguousDescription):
        resolve_description(make_invoice(), "text", "ab" * 32)
    with pytest.raises(AmbiguousDescription):
        check_description_args("text", None, ZAP_REQUEST)
    check_description_args("text", None)
    check_description_args(None, "ab" * 32)
    check_description_args(None, ZAP_REQUEST_HASH, ZAP_REQUEST)


def test_empty_description_is_not_given():
    # an empty description doesn't conflict with a hash and doesn't shadow the invoice's description
    check_description_args("", "ab" * 32)
    assert resolve_description(make_invoice(), "", "ab" * 32) == (None, "ab" * 32, None)
    invoice_with_hash = make_invoice(description=None, description_hash="cd" * 32)
    assert resolve_description(invoice_with_hash, "", None) == (None, "cd" * 32, None)
    assert resolve_description(make_invoice(), "", None) == ("outgoing description", None, None)


def test_description_priority():
    invoice_with_hash = make_invoice(description=None, description_hash="cd" * 32)
    assert resolve_description(invoice_with_hash, "ours", None) == ("ours", None, None)
    assert resolve_description(invoice_with_hash, None, "AB" * 32) == (None, "ab" * 32, None)
    assert resolve_description(invoice_with_hash, None, None) == (None, "cd" * 32, None)
    assert resolve_description(make_invoice(), None, None) == ("outgoing description", None, None)


def test_description_empty_fallback():
    assert resolve_description(make_invoice(description=None), None, None) == ("", None, None)


def test_unhashed_description():
    invoice_with_hash = make_invoice(description=None, description_hash=ZAP_REQUEST_HASH)
    # the hash is derived if only the unhashed description is given
    assert resolve_description(invoice_with_hash, None, None, ZAP_REQUEST) == \
           (None, ZAP_REQUEST_HASH, ZAP_REQUEST)
    assert resolve_description(make_invoice(), None, ZAP_REQUEST_HASH.upper(), ZAP_REQUEST) == \
           (None, ZAP_REQUEST_HASH, ZAP_REQUEST)


def test_unhashed_description_mismatch():
    with pytest.raises(DescriptionHashMismatch) as exc_info:
        check_description_args(None, "ab" * 32, ZAP_REQUEST)
    assert exc_info.value.threshold == ZAP_REQUEST_HASH
    assert exc_info.value.code == 1212


def test_expiration_too_soon(limits):
    with pytest.raises(ExpirationTooSoon):
        compute_expiry(NOW + 5 * MINUTE - 1, NOW, limits)
    with pytest.raises(ExpirationTooSoon):
        compute_expiry(NOW - MINUTE, NOW, limits)


def test_expiration_clamped(limits):
    assert compute_expiry(NOW + 15 * MINUTE + 1, NOW, limits) == NOW + 10 * MINUTE
    assert compute_expiry(NOW + 24 * 60 * MINUTE, NOW, limits) == NOW + 10 * MINUTE


@pytest.mark.parametrize("minutes", [5, 7, 10, 15])
def test_expiration_shifted_by_buffer(limits, minutes):
    assert compute_expiry(NOW + minutes * MINUTE, NOW, limits) == NOW + (minutes - 5) * MINUTE


def test_cltv_formula(limits):
    current = 800_000
    estimate = RouteEstimate(routing_fee_msat=0, worst_case_height=current + 40)
    assert compute_cltv_delta(estimate, 40, current, limits) == 40 + 40 + 80


def test_cltv_too_high(limits):
    current = 800_000
    estimate = RouteEstimate(routing_fee_msat=0, worst_case_height=current + 381)
    assert compute_cltv_delta(RouteEstimate(routing_fee_msat=0, worst_case_height=current + 380),
                              40, current, limits) == 500
    with pytest.raises(CltvTooHigh) as exc_info:
        compute_cltv_delta(estimate, 40, current, limits)
    assert exc_info.value.value == 501
    assert exc_info.value.threshold == 500


def test_cltv_too_low(limits):
    # estimate anchored one block below the current height
    current = 800_000
    estimate = RouteEstimate(routing_fee_msat=0, worst_case_height=current - 1)
    with pytest.raises(CltvTooLow) as exc_info:
        compute_cltv_delta(estimate, 40, current, limits)
    assert exc_info.value.value == 119
    assert exc_info.value.threshold == 120
    assert compute_cltv_delta(RouteEstimate(routing_fee_msat=0, worst_case_height=current),
                              40, current, limits) == 120


def test_max_fee_is_rounded_up(limits):
    assert compute_max_fee(150_000, limits) == 3750
    assert compute_max_fee(1001, limits) == 26  # 25.025
    assert compute_max_fee(40, limits) == 1


def test_fee_budget(limits):
    assert check_fee_budget(3750, 150_000, limits) == 3750
    assert check_fee_budget(0, 150_000, limits) == 3750
    with pytest.raises(FeeTooHigh) as exc_info:
        check_fee_budget(3751, 150_000, limits)
    assert exc_info.value.threshold == 3750


def test_error_kinds():
    assert issubclass(SybilFeeTooLow, WrapInputError)
    assert issubclass(ExpirationTooSoon, WrapInputError)
    assert issubclass(FeeTooHigh, WrapPolicyError)
    assert issubclass(CltvTooLow, WrapPolicyError)
    codes = [cls.code for cls in (MissingAmount, AmountTooLow, AmountTooHigh, SybilFeeTooLow,
                                  CltvTooHigh, CltvTooLow, FeeTooHigh)]
    assert len(set(codes)) == len(codes)
