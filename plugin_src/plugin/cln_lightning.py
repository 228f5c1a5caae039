import asyncio
from typing import Optional, Callable, Dict, Any, Sequence, Tuple

from pyln.client import RpcError

from .bitcoin_core_rpc import BitcoinCoreRPC, BitcoinCoreRPCError
from .cln_logger import PluginLogger
from .cln_plugin import CLNPlugin
from .invoices import (DecodedInvoice, RouteEstimate, RouteHintHop, WrappedInvoiceSpec, HoldInvoice,
                       InvalidDecodedInvoice)
from .lnutil import route_hint_entry
from .plugin_config import PluginConfig
from .utils import call_blocking_with_timeout, now_msecs, parse_msat
from .wrap_checks import DecodeError, RouteEstimationFailed, HeightLookupFailed, IssueError


class CLNLightning:
    """Node side of the invoice wrapper: decoding, route estimation, chain height and hold invoice creation"""
    ROUTE_RISK_FACTOR = 10

    def __init__(self, *, plugin_instance: CLNPlugin, config: PluginConfig, logger: PluginLogger,
                 chain_backend: Optional[BitcoinCoreRPC] = None, clock: Callable[[], int] = now_msecs):
        self._rpc = plugin_instance.plugin.rpc
        self._config = config
        self._logger = logger
        self._chain_backend = chain_backend  # if None CLN's blockheight is used
        self._clock = clock
        self._logger.debug("CLNLightning initialized")

    async def decode(self, bolt11: str) -> DecodedInvoice:
        try:
            result = await call_blocking_with_timeout(self._rpc.decode, bolt11,
                                                      timeout=self._config.rpc_timeout_secs)
        except RpcError as e:
            raise DecodeError(f"Unable to decode invoice: {e.error.get('message', e)}") from e
        except asyncio.TimeoutError as e:
            raise DecodeError(f"decode rpc timed out after {self._config.rpc_timeout_secs}s") from e
        try:
            return DecodedInvoice.from_cln_dict(result)
        except InvalidDecodedInvoice as e:
            raise DecodeError(f"Unable to decode invoice: {e}") from e

    def _route_estimate(self, destination: str, amount_msat: int, final_cltv: int,
                        route_hints: Sequence[Sequence[RouteHintHop]]) -> RouteEstimate:
        """Blocking, runs in a worker thread. getinfo and getroute are queried together so the
        returned absolute height is anchored to the height the route was computed at.
        Tries a public route to the payee first, then each of the invoice's route hints in order."""
        info = self._rpc.getinfo()
        last_error: Optional[Exception] = None
        for hint in [()] + [tuple(hint) for hint in route_hints]:
            try:
                estimate = self._route_via_hint(info, destination, amount_msat, final_cltv, hint)
            except RpcError as e:
                last_error = e
                continue
            if estimate is not None:
                return estimate
        if last_error is not None:
            raise last_error
        raise RouteEstimationFailed(f"No route found to {destination}")

    def _route_via_hint(self, info: dict, destination: str, amount_msat: int, final_cltv: int,
                        hint: Tuple[RouteHintHop, ...]) -> Optional[RouteEstimate]:
        anchor_height = info["blockheight"]
        own_hops = [i for i, hop in enumerate(hint) if hop.pubkey == info["id"]]
        if own_hops:
            # the hint goes through one of our own channels, only the hops behind it charge us
            hint = hint[own_hops[-1] + 1:]
            entry_node = info["id"]
        else:
            entry_node = hint[0].pubkey if hint else destination
        entry_amount_msat, entry_cltv = route_hint_entry(hint, amount_msat, final_cltv)
        if entry_node == info["id"]:
            # paying ourselves, no public hops
            return RouteEstimate(routing_fee_msat=entry_amount_msat - amount_msat,
                                 worst_case_height=anchor_height + entry_cltv - final_cltv)
        route = self._rpc.getroute(node_id=entry_node,
                                   amount_msat=entry_amount_msat,
                                   riskfactor=self.ROUTE_RISK_FACTOR,
                                   cltv=entry_cltv)["route"]
        if not route:
            return None
        first_hop = route[0]
        routing_fee_msat = parse_msat(first_hop["amount_msat"]) - amount_msat
        # delay of the first hop contains the whole route including the hint hops and our final cltv,
        # remove the final hop part
        return RouteEstimate(routing_fee_msat=routing_fee_msat,
                             worst_case_height=anchor_height + first_hop["delay"] - final_cltv)

    async def estimate_route_fee(self, *, destination: str, amount_msat: int, final_cltv: int,
                                 timeout_secs: int,
                                 route_hints: Sequence[Sequence[RouteHintHop]] = ()) -> RouteEstimate:
        try:
            estimate = await call_blocking_with_timeout(self._route_estimate, destination, amount_msat, final_cltv,
                                                        route_hints, timeout=timeout_secs)
        except RpcError as e:
            raise RouteEstimationFailed(f"Route estimation failed: {e.error.get('message', e)}") from e
        except asyncio.TimeoutError as e:
            raise RouteEstimationFailed(f"Route estimation timed out after {timeout_secs}s") from e
        except (KeyError, TypeError, ValueError) as e:
            raise RouteEstimationFailed(f"Unexpected getroute result: {e!r}") from e
        self._logger.debug(f"estimate_route_fee: {destination} {amount_msat}msat "
                           f"({len(route_hints)} route hints) -> {estimate}")
        return estimate

    async def get_current_height(self, *, timeout_secs: int) -> int:
        if self._chain_backend is not None:
            try:
                return await asyncio.wait_for(self._chain_backend.get_local_height(), timeout=timeout_secs)
            except BitcoinCoreRPCError as e:
                raise HeightLookupFailed(f"Height lookup failed: {e}") from e
            except asyncio.TimeoutError as e:
                raise HeightLookupFailed(f"getblockcount timed out after {timeout_secs}s") from e
        try:
            info = await call_blocking_with_timeout(self._rpc.getinfo, timeout=timeout_secs)
            return int(info["blockheight"])
        except RpcError as e:
            raise HeightLookupFailed(f"Height lookup failed: {e.error.get('message', e)}") from e
        except asyncio.TimeoutError as e:
            raise HeightLookupFailed(f"getinfo timed out after {timeout_secs}s") from e
        except (KeyError, TypeError, ValueError) as e:
            raise HeightLookupFailed(f"Unexpected getinfo result: {e!r}") from e

    def _hold_invoice_params(self, spec: WrappedInvoiceSpec) -> Dict[str, Any]:
        # the hold invoice plugin wants a relative expiry in seconds, round down so we never exceed expires_at
        expiry = (spec.expires_at - self._clock()) // 1000
        if expiry <= 0:
            raise IssueError(f"Wrapped invoice already expired before creation (expires_at={spec.expires_at})",
                             value=expiry)
        params = {
            "payment_hash": spec.payment_hash.hex(),
            "amount_msat": spec.amount_msat,
            "expiry": expiry,
            "cltv": spec.cltv,
        }
        if spec.description_hash is None:
            params["description"] = spec.description
        elif spec.unhashed_description is not None:
            # the hold invoice rpc only takes a description, deschashonly commits to sha256(description)
            params["description"] = spec.unhashed_description
            params["deschashonly"] = True
        else:
            raise IssueError(f"{self._config.hold_invoice_rpc} can't commit to a bare description hash, "
                             f"pass the unhashed_description of {spec.description_hash}",
                             value=spec.description_hash)
        return params

    async def create_hold_invoice(self, spec: WrappedInvoiceSpec) -> HoldInvoice:
        params = self._hold_invoice_params(spec)
        self._logger.debug(f"create_hold_invoice: {self._config.hold_invoice_rpc} {params}")
        try:
            result = await call_blocking_with_timeout(self._rpc.call, self._config.hold_invoice_rpc, params,
                                                      timeout=self._config.rpc_timeout_secs)
        except RpcError as e:
            raise IssueError(f"{self._config.hold_invoice_rpc} rpc failed: {e.error.get('message', e)}") from e
        except asyncio.TimeoutError as e:
            raise IssueError(f"{self._config.hold_invoice_rpc} rpc timed out "
                             f"after {self._config.rpc_timeout_secs}s") from e
        try:
            invoice = HoldInvoice(bolt11=result["bolt11"],
                                  payment_hash=result["payment_hash"],
                                  amount_msat=spec.amount_msat,
                                  expires_at=result["expires_at"],
                                  cltv=spec.cltv)
        except (KeyError, TypeError, ValueError) as e:
            raise IssueError(f"Unexpected {self._config.hold_invoice_rpc} result: {e!r}") from e
        if invoice.payment_hash != spec.payment_hash:
            raise IssueError(f"Node created hold invoice for wrong payment hash {invoice.payment_hash.hex()}",
                             value=invoice.payment_hash.hex(), threshold=spec.payment_hash.hex())
        returned_hash = result.get("description_hash")
        if spec.description_hash is not None and returned_hash is not None \
                and returned_hash.lower() != spec.description_hash.lower():
            raise IssueError(f"Node created hold invoice for wrong description hash {returned_hash}",
                             value=returned_hash, threshold=spec.description_hash)
        return invoice
