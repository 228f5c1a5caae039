import asyncio
from typing import Optional, Callable, Tuple, Any

from .cln_lightning import CLNLightning
from .cln_logger import PluginLogger
from .invoices import DecodedInvoice, RouteEstimate, WrappedInvoiceSpec, WrapResult
from .plugin_config import WrapLimits
from .utils import now_msecs
from .wrap_checks import (check_payment_hash, check_amounts, check_features, check_description_args,
                          resolve_description, compute_expiry, compute_cltv_delta, check_fee_budget,
                          WrapInvoiceError, WrapDependencyError)


class InvoiceWrapper:
    """
    Wraps an outgoing bolt11 invoice into an incoming hold invoice with the same payment hash.

    The wrapper holds no state between calls, every wrap_invoice call runs the whole pipeline:
    decode, validate amounts/features/description, compute expiry, estimate the route and fetch the
    height concurrently, compute the cltv delta, check the fee budget and finally create the hold invoice.
    Any violated bound raises a WrapInvoiceError before the hold invoice is created.
    """

    def __init__(self, *, lnworker: CLNLightning, limits: WrapLimits, logger: PluginLogger,
                 clock: Callable[[], int] = now_msecs):
        self._lnworker = lnworker
        self._limits = limits
        self._logger = logger
        self._clock = clock

    async def wrap_invoice(self, bolt11: str, *, msats: Any,
                           description: Optional[str] = None,
                           description_hash: Optional[str] = None,
                           unhashed_description: Optional[str] = None) -> WrapResult:
        try:
            return await self._wrap(bolt11, msats, description, description_hash, unhashed_description)
        except WrapDependencyError as e:
            self._logger.error(f"wrap_invoice: {type(e).__name__}: {e}")
            raise
        except WrapInvoiceError as e:
            self._logger.warning(f"wrap_invoice rejected: {type(e).__name__}: {e}")
            raise

    async def _wrap(self, bolt11: str, incoming_msat: Any, description: Optional[str],
                    description_hash: Optional[str], unhashed_description: Optional[str]) -> WrapResult:
        check_description_args(description, description_hash, unhashed_description)

        invoice = await self._lnworker.decode(bolt11)
        self._logger.event("decode", payment_hash=invoice.payment_hash.hex() if invoice.payment_hash else None,
                           amount_msat=invoice.amount_msat, expires_at=invoice.expires_at,
                           cltv=invoice.min_final_cltv_expiry)

        payment_hash = check_payment_hash(invoice)
        outgoing_msat = check_amounts(invoice.amount_msat, incoming_msat, self._limits)
        self._logger.event("amount", outgoing_msat=outgoing_msat, incoming_msat=incoming_msat)

        check_features(invoice.features)
        self._logger.event("features", bits=sorted(invoice.features))

        wrapped_description, wrapped_description_hash, wrapped_unhashed = resolve_description(
            invoice, description, description_hash, unhashed_description)
        expires_at = compute_expiry(invoice.expires_at, self._clock(), self._limits)
        self._logger.event("expiry", expires_at=expires_at)

        estimate, current_height = await self._estimate_route_and_height(invoice, outgoing_msat)
        self._logger.event("route", routing_fee_msat=estimate.routing_fee_msat,
                           worst_case_height=estimate.worst_case_height, current_height=current_height)

        cltv = compute_cltv_delta(estimate, invoice.min_final_cltv_expiry, current_height, self._limits)
        self._logger.event("cltv", cltv=cltv)

        max_fee_msat = check_fee_budget(estimate.routing_fee_msat, incoming_msat, self._limits)
        self._logger.event("fee", max_fee_msat=max_fee_msat)

        spec = WrappedInvoiceSpec(payment_hash=payment_hash,
                                  amount_msat=incoming_msat,
                                  expires_at=expires_at,
                                  cltv=cltv,
                                  description=wrapped_description,
                                  description_hash=wrapped_description_hash,
                                  unhashed_description=wrapped_unhashed)
        hold_invoice = await self._lnworker.create_hold_invoice(spec)
        self._logger.debug(f"wrap_invoice: created hold invoice {hold_invoice}, max fee {max_fee_msat}msat")
        return WrapResult(invoice=hold_invoice, max_fee_msat=max_fee_msat)

    async def _estimate_route_and_height(self, invoice: DecodedInvoice,
                                         outgoing_msat: int) -> Tuple[RouteEstimate, int]:
        """Both calls are independent, run them concurrently. If one fails the other one gets cancelled"""
        timeout = self._limits.fee_estimate_timeout_secs
        estimate_task = asyncio.create_task(self._lnworker.estimate_route_fee(
            destination=invoice.payee,
            amount_msat=outgoing_msat,
            final_cltv=invoice.min_final_cltv_expiry,
            route_hints=invoice.route_hints,
            timeout_secs=timeout))
        height_task = asyncio.create_task(self._lnworker.get_current_height(timeout_secs=timeout))
        try:
            estimate, current_height = await asyncio.gather(estimate_task, height_task)
        except BaseException:
            # also reached if the caller cancels us
            for task in (estimate_task, height_task):
                task.cancel()
            await asyncio.gather(estimate_task, height_task, return_exceptions=True)
            raise
        return estimate, current_height
