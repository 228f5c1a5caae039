from typing import Optional, FrozenSet, Dict, Any, Tuple, List

import attr

from .lnutil import feature_bits_from_hex, is_valid_node_id, hex_to_bytes, bytes_to_hex, sha256
from .utils import parse_msat

# convention: 'outgoing' = the invoice we are asked to pay, 'incoming' = the hold invoice we create for it


@attr.s(frozen=True, auto_attribs=True, kw_only=True)
class RouteHintHop:
    """One private channel of a bolt11 route hint, fee and cltv are charged by pubkey for forwarding over it"""
    pubkey: str
    short_channel_id: str
    fee_base_msat: int = attr.ib(converter=parse_msat, validator=attr.validators.ge(0))
    fee_proportional_millionths: int = attr.ib(validator=attr.validators.ge(0))
    cltv_expiry_delta: int = attr.ib(validator=attr.validators.ge(0))

    @classmethod
    def from_cln_dict(cls, hop: Dict[str, Any]) -> 'RouteHintHop':
        return cls(pubkey=hop["pubkey"],
                   short_channel_id=hop["short_channel_id"],
                   fee_base_msat=hop["fee_base_msat"],
                   fee_proportional_millionths=hop["fee_proportional_millionths"],
                   cltv_expiry_delta=hop["cltv_expiry_delta"])


def _route_hints_from_cln(routes: Optional[List[List[Dict[str, Any]]]]) -> Tuple[Tuple[RouteHintHop, ...], ...]:
    return tuple(tuple(RouteHintHop.from_cln_dict(hop) for hop in route) for route in routes or () if route)


@attr.s(frozen=True, auto_attribs=True, kw_only=True)
class DecodedInvoice:
    """The parts of a decoded bolt11 invoice the wrapper looks at"""
    payment_hash: Optional[bytes] = attr.ib(converter=hex_to_bytes, repr=bytes_to_hex)
    amount_msat: Optional[int]
    features: FrozenSet[int] = attr.ib(converter=frozenset)
    description: Optional[str] = None
    description_hash: Optional[str] = None
    expires_at: int  # absolute, unix msecs
    min_final_cltv_expiry: int = attr.ib(validator=attr.validators.ge(0))
    payee: str
    # private routes to the payee, needed to estimate fees for payees without public channels
    route_hints: Tuple[Tuple[RouteHintHop, ...], ...] = ()

    @classmethod
    def from_cln_dict(cls, decoded: Dict[str, Any]) -> 'DecodedInvoice':
        """Builds the invoice from the reply of CLN's decode rpc, raises InvalidDecodedInvoice if unusable"""
        if decoded.get("valid") is False:
            raise InvalidDecodedInvoice(f"invoice is invalid: {decoded.get('warning_invalid', 'unknown reason')}")
        if decoded.get("type", "bolt11 invoice") != "bolt11 invoice":
            raise InvalidDecodedInvoice(f"not a bolt11 invoice: {decoded.get('type')}")
        payee = decoded.get("payee")
        if not is_valid_node_id(payee):
            raise InvalidDecodedInvoice(f"invalid payee node id: {payee}")
        try:
            expires_at = int(decoded["created_at"] + decoded.get("expiry", 3600)) * 1000
            return cls(
                payment_hash=decoded.get("payment_hash"),
                amount_msat=parse_msat(decoded.get("amount_msat")),
                features=feature_bits_from_hex(decoded.get("features")),
                description=decoded.get("description"),
                description_hash=decoded.get("description_hash"),
                expires_at=expires_at,
                min_final_cltv_expiry=decoded.get("min_final_cltv_expiry", 18),
                payee=payee,
                route_hints=_route_hints_from_cln(decoded.get("routes")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidDecodedInvoice(f"unexpected decode result: {e!r}") from e


@attr.s(frozen=True, auto_attribs=True, kw_only=True)
class RouteEstimate:
    routing_fee_msat: int = attr.ib(validator=attr.validators.ge(0))
    # absolute height until which the outgoing htlcs could be pending, without the final hop's cltv delta
    worst_case_height: int = attr.ib(validator=attr.validators.ge(0))


@attr.s(frozen=True, auto_attribs=True, kw_only=True)
class WrappedInvoiceSpec:
    """Validated parameters of the incoming hold invoice.
    unhashed_description is the text description_hash commits to, if the caller knows it"""
    payment_hash: bytes = attr.ib(repr=bytes_to_hex)
    amount_msat: int
    expires_at: int  # absolute, unix msecs
    cltv: int
    description: Optional[str] = None
    description_hash: Optional[str] = None
    unhashed_description: Optional[str] = None

    def __attrs_post_init__(self):
        if (self.description is None) == (self.description_hash is None):
            raise ValueError("exactly one of description or description_hash has to be set")
        if self.unhashed_description is not None:
            if self.description_hash is None:
                raise ValueError("unhashed_description requires description_hash")
            if sha256(self.unhashed_description).hex() != self.description_hash.lower():
                raise ValueError("unhashed_description doesn't match description_hash")


@attr.s(frozen=True, auto_attribs=True, kw_only=True)
class HoldInvoice:
    """Hold invoice as returned by the node"""
    bolt11: str
    payment_hash: bytes = attr.ib(converter=hex_to_bytes, repr=bytes_to_hex)
    amount_msat: int
    expires_at: int  # absolute, unix secs as returned by CLN
    cltv: int


@attr.s(frozen=True, auto_attribs=True, kw_only=True)
class WrapResult:
    invoice: HoldInvoice
    max_fee_msat: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "bolt11": self.invoice.bolt11,
            "payment_hash": self.invoice.payment_hash.hex(),
            "amount_msat": self.invoice.amount_msat,
            "expires_at": self.invoice.expires_at,
            "cltv": self.invoice.cltv,
            "max_fee_msat": self.max_fee_msat,
        }


class InvalidDecodedInvoice(Exception):
    pass
