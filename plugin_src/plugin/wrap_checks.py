"""
Validation and arithmetic stages of the invoice wrapper.

Each stage is a plain function: it either returns the value the next stage needs
or raises a WrapInvoiceError subclass describing the violated bound. None of them
talk to the node, so they can be tested with fixed inputs.
"""
import math
from typing import Optional, Tuple, Iterable, Any

from .invoices import DecodedInvoice, RouteEstimate
from .lnutil import unsupported_feature_bits, sha256
from .plugin_config import WrapLimits
from .utils import is_msat_amount


def check_payment_hash(invoice: DecodedInvoice) -> bytes:
    if not invoice.payment_hash:
        raise MissingPaymentHash("Invoice payment hash is missing")
    if len(invoice.payment_hash) != 32:
        raise MissingPaymentHash(f"Invoice payment hash must be 32 bytes, got {len(invoice.payment_hash)}",
                                 value=invoice.payment_hash.hex())
    return invoice.payment_hash


def check_amounts(outgoing_msat: Optional[int], incoming_msat: Any, limits: WrapLimits) -> int:
    """Validates both amounts, returns the outgoing amount"""
    if not outgoing_msat:
        raise MissingAmount("Outgoing invoice is missing amount")
    if outgoing_msat < limits.min_outgoing_msat:
        raise AmountTooLow(f"Invoice amount is too low: {outgoing_msat} < {limits.min_outgoing_msat}",
                           value=outgoing_msat, threshold=limits.min_outgoing_msat)
    if outgoing_msat > limits.max_outgoing_msat:
        raise AmountTooHigh(f"Invoice amount is too high: {outgoing_msat} > {limits.max_outgoing_msat}",
                            value=outgoing_msat, threshold=limits.max_outgoing_msat)

    if incoming_msat is None or incoming_msat == 0:
        raise MissingIncomingAmount("Incoming invoice amount is missing")
    if not is_msat_amount(incoming_msat):
        raise InvalidAmount(f"Incoming amount has to be a positive integer msat amount: {incoming_msat!r}",
                            value=incoming_msat)
    # exact rational comparison, 10/7 has no finite binary representation
    min_incoming = outgoing_msat * limits.sybil_fee_mult
    if min_incoming > incoming_msat:
        raise SybilFeeTooLow(f"Sybil fee is too low: incoming {incoming_msat} < "
                             f"{outgoing_msat} * {limits.sybil_fee_mult} ({float(min_incoming):.2f})",
                             value=incoming_msat, threshold=min_incoming)
    return outgoing_msat


def check_features(features: Optional[Iterable[int]]) -> None:
    if not features:
        raise MissingFeatures("Invoice features are missing")
    unsupported = unsupported_feature_bits(features)
    if unsupported:
        raise UnsupportedFeature(f"Unsupported feature bit: {unsupported[0]}", value=unsupported[0])


def check_description_args(description: Optional[str], description_hash: Optional[str],
                           unhashed_description: Optional[str] = None) -> None:
    """Empty strings count as not given"""
    if description and (description_hash or unhashed_description is not None):
        raise AmbiguousDescription("Only one of description or description_hash is allowed")
    if description_hash and unhashed_description is not None:
        expected = sha256(unhashed_description).hex()
        if expected != description_hash.lower():
            raise DescriptionHashMismatch(f"unhashed_description hashes to {expected}, not {description_hash}",
                                          value=description_hash, threshold=expected)


def resolve_description(invoice: DecodedInvoice, description: Optional[str], description_hash: Optional[str],
                        unhashed_description: Optional[str] = None
                        ) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Returns (description, description_hash, unhashed_description) for the wrapped invoice.
    Exactly one of the first two is set, the third only together with a description_hash.
    Priority: our description, our description hash, the invoice's hash, the invoice's description.
    """
    check_description_args(description, description_hash, unhashed_description)
    if description:
        return description, None, None
    if unhashed_description is not None and not description_hash:
        description_hash = sha256(unhashed_description).hex()
    if description_hash:
        return None, description_hash.lower(), unhashed_description
    if invoice.description_hash:
        return None, invoice.description_hash, None
    # an invoice without description still gets one, an empty description is valid bolt11
    return invoice.description or "", None, None


def compute_expiry(outgoing_expires_at: int, now: int, limits: WrapLimits) -> int:
    """Absolute expiry (msecs) of the incoming invoice. It always expires at least the buffer
    before the outgoing invoice and never later than now + max window - buffer"""
    buffer = limits.incoming_expiration_buffer_msecs
    max_window = limits.max_expiration_incoming_msecs
    if outgoing_expires_at < now + buffer:
        raise ExpirationTooSoon(f"Invoice expiration is too soon: expires in {outgoing_expires_at - now}ms, "
                                f"need at least {buffer}ms",
                                value=outgoing_expires_at, threshold=now + buffer)
    if outgoing_expires_at > now + max_window:
        return now + max_window - buffer
    return outgoing_expires_at - buffer


def compute_cltv_delta(estimate: RouteEstimate, final_cltv_delta: int, current_height: int,
                       limits: WrapLimits) -> int:
    """
    The incoming invoice needs min_settlement_cltv_delta blocks more than the outgoing route in the worst case.
    worst_case_height excludes the final hop's delta, so it's added before converting to a relative delta.
    """
    cltv = (estimate.worst_case_height + final_cltv_delta - current_height) + limits.min_settlement_cltv_delta
    if cltv > limits.max_outgoing_cltv_delta:
        raise CltvTooHigh(f"Estimated outgoing cltv delta is too high: {cltv} > {limits.max_outgoing_cltv_delta}",
                          value=cltv, threshold=limits.max_outgoing_cltv_delta)
    min_cltv = limits.min_settlement_cltv_delta + final_cltv_delta
    if cltv < min_cltv:
        # only reachable if the estimate is anchored below the current height
        raise CltvTooLow(f"Estimated outgoing cltv delta is too low: {cltv} < {min_cltv}",
                         value=cltv, threshold=min_cltv)
    return cltv


def compute_max_fee(incoming_msat: int, limits: WrapLimits) -> int:
    return math.ceil(incoming_msat * limits.max_fee_estimate_percent)


def check_fee_budget(routing_fee_msat: int, incoming_msat: int, limits: WrapLimits) -> int:
    """Returns the fee budget for the outgoing payment"""
    max_fee_msat = compute_max_fee(incoming_msat, limits)
    if routing_fee_msat > max_fee_msat:
        raise FeeTooHigh(f"Estimated fees are too high: {routing_fee_msat} > {max_fee_msat}",
                         value=routing_fee_msat, threshold=max_fee_msat)
    return max_fee_msat


class WrapInvoiceError(Exception):
    """Base class of everything that aborts a wrap. code is used as json-rpc error code"""
    code = 1100

    def __init__(self, message: str, *, value: Any = None, threshold: Any = None):
        super().__init__(message)
        self.message = message
        self.value = value
        self.threshold = threshold

# caller can fix these
class WrapInputError(WrapInvoiceError):
    code = 1200

class MissingAmount(WrapInputError):
    code = 1201

class AmountTooLow(WrapInputError):
    code = 1202

class AmountTooHigh(WrapInputError):
    code = 1203

class MissingIncomingAmount(WrapInputError):
    code = 1204

class InvalidAmount(WrapInputError):
    code = 1205

class SybilFeeTooLow(WrapInputError):
    code = 1206

class MissingFeatures(WrapInputError):
    code = 1207

class UnsupportedFeature(WrapInputError):
    code = 1208

class AmbiguousDescription(WrapInputError):
    code = 1209

class ExpirationTooSoon(WrapInputError):
    code = 1210

class MissingPaymentHash(WrapInputError):
    code = 1211

class DescriptionHashMismatch(WrapInputError):
    code = 1212

# we refuse to take the risk
class WrapPolicyError(WrapInvoiceError):
    code = 1300

class CltvTooHigh(WrapPolicyError):
    code = 1301

class CltvTooLow(WrapPolicyError):
    code = 1302

class FeeTooHigh(WrapPolicyError):
    code = 1303

# node or chain backend failed
class WrapDependencyError(WrapInvoiceError):
    code = 1400

class DecodeError(WrapDependencyError):
    code = 1401

class RouteEstimationFailed(WrapDependencyError):
    code = 1402

class HeightLookupFailed(WrapDependencyError):
    code = 1403

class IssueError(WrapDependencyError):
    code = 1404
