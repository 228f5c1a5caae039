# Copyright (C) 2018 The Electrum developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php
import hashlib
from enum import IntFlag
from typing import Iterable, List, Optional, Set, Union, Sequence, Tuple, TYPE_CHECKING

import electrum_ecc as ecc

if TYPE_CHECKING:
    from .invoices import RouteHintHop


hex_to_bytes = lambda v: v if isinstance(v, bytes) else bytes.fromhex(v) if v is not None else None
bytes_to_hex = lambda v: v.hex() if isinstance(v, bytes) else v


class LnFeatures(IntFlag):
    VAR_ONION_REQ = 1 << 8
    VAR_ONION_OPT = 1 << 9

    PAYMENT_SECRET_REQ = 1 << 14
    PAYMENT_SECRET_OPT = 1 << 15

    BASIC_MPP_REQ = 1 << 16
    BASIC_MPP_OPT = 1 << 17

    OPTION_ROUTE_BLINDING_REQ = 1 << 24
    OPTION_ROUTE_BLINDING_OPT = 1 << 25

    OPTION_PAYMENT_METADATA_REQ = 1 << 48
    OPTION_PAYMENT_METADATA_OPT = 1 << 49

    # Temporary number.
    OPTION_TRAMPOLINE_ROUTING_REQ_ECLAIR = 1 << 148
    OPTION_TRAMPOLINE_ROUTING_OPT_ECLAIR = 1 << 149

    # We use a different bit because Phoenix cannot do end-to-end multi-trampoline routes
    OPTION_TRAMPOLINE_ROUTING_REQ_ELECTRUM = 1 << 150
    OPTION_TRAMPOLINE_ROUTING_OPT_ELECTRUM = 1 << 151

    if hasattr(IntFlag, "_numeric_repr_"):  # python 3.11+
        # avoid base2<->base10 conversion of the large trampoline bits
        _numeric_repr_ = hex

    def __repr__(self):
        return f"<{self._name_}: {hex(self._value_)}>"

    def __str__(self):
        return hex(self._value_)


# features an outgoing invoice may ask for so that we can still pay it.
# only the optional blinded paths bit is accepted, we can't pay to a payee that requires it
SUPPORTED_INVOICE_FEATURES = (
    LnFeatures.VAR_ONION_REQ | LnFeatures.VAR_ONION_OPT
    | LnFeatures.PAYMENT_SECRET_REQ | LnFeatures.PAYMENT_SECRET_OPT
    | LnFeatures.BASIC_MPP_REQ | LnFeatures.BASIC_MPP_OPT
    | LnFeatures.OPTION_ROUTE_BLINDING_OPT
    | LnFeatures.OPTION_PAYMENT_METADATA_REQ | LnFeatures.OPTION_PAYMENT_METADATA_OPT
    | LnFeatures.OPTION_TRAMPOLINE_ROUTING_OPT_ECLAIR
    | LnFeatures.OPTION_TRAMPOLINE_ROUTING_OPT_ELECTRUM
)


def feature_bits_from_hex(features_hex: Optional[str]) -> Set[int]:
    """CLN returns invoice features as a big endian hex bitfield, we want the set bit indices"""
    if not features_hex:
        return set()
    value = int(features_hex, 16)
    return {bit for bit in range(value.bit_length()) if value >> bit & 1}


def unsupported_feature_bits(bits: Iterable[int]) -> List[int]:
    return sorted(bit for bit in bits if not (1 << bit) & SUPPORTED_INVOICE_FEATURES)


def is_valid_node_id(node_id: Union[str, bytes, None]) -> bool:
    """A node id has to be a 33 byte compressed pubkey that lies on the curve"""
    try:
        node_id = hex_to_bytes(node_id)
    except ValueError:
        return False
    if node_id is None or len(node_id) != 33:
        return False
    try:
        ecc.ECPubkey(node_id)
    except ecc.InvalidECPointException:
        return False
    return True


def sha256(x: Union[str, bytes]) -> bytes:
    if isinstance(x, str):
        x = x.encode('utf8')
    return hashlib.sha256(x).digest()


def fee_for_edge_msat(forwarded_amount_msat: int, fee_base_msat: int, fee_proportional_millionths: int) -> int:
    return fee_base_msat \
           + (forwarded_amount_msat * fee_proportional_millionths // 1_000_000)


def route_hint_entry(hint: Sequence['RouteHintHop'], amount_msat: int, final_cltv: int) -> Tuple[int, int]:
    """
    Walks a bolt11 route hint backwards from the payee and returns (amount_msat, cltv) the first
    node of the hint has to receive so that amount_msat arrives at the payee with final_cltv.
    Each hop's fee and cltv delta are charged by hop.pubkey for forwarding to the next node.
    """
    for hop in reversed(hint):
        amount_msat += fee_for_edge_msat(amount_msat, hop.fee_base_msat, hop.fee_proportional_millionths)
        final_cltv += hop.cltv_expiry_delta
    return amount_msat, final_cltv
