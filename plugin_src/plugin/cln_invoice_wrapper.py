import asyncio
import concurrent.futures
import traceback
from typing import Optional

from pyln.client import RpcException

from .bitcoin_core_rpc import BitcoinCoreRPC
from .cln_lightning import CLNLightning
from .cln_logger import PluginLogger
from .cln_plugin import CLNPlugin
from .invoice_wrapper import InvoiceWrapper
from .invoices import WrapResult
from .plugin_config import PluginConfig
from .wrap_checks import WrapInvoiceError


class CLNInvoiceWrapper:
    def __init__(
        self,
        plugin_handler: Optional[CLNPlugin] = None,
        logger: Optional[PluginLogger] = None,
        config: Optional[PluginConfig] = None,
        chain_backend: Optional[BitcoinCoreRPC] = None,
        cln_lightning: Optional[CLNLightning] = None,
        invoice_wrapper: Optional[InvoiceWrapper] = None,
    ):
        self.plugin_handler = plugin_handler
        self.logger = logger
        self.config = config
        self.chain_backend = chain_backend
        self.cln_lightning = cln_lightning
        self.invoice_wrapper = invoice_wrapper
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def initialize(self):
        # cln plugin handler
        self.plugin_handler = await CLNPlugin()

        # logging to cln logs
        self.logger = PluginLogger("invoice-wrapper", self.plugin_handler.plugin.log)

        # user config (from .env file or env)
        self.config = PluginConfig.from_cln_and_env(cln_plugin_handler=self.plugin_handler,
                                                    logger=self.logger)

        if self.config.height_source == "bitcoind":
            self.chain_backend = BitcoinCoreRPC(logger=self.logger,
                                                bcore_rpc_credentials=self.config.bcore_rpc_credentials,
                                                timeout_secs=self.config.limits.fee_estimate_timeout_secs)
            await self.chain_backend.init()

        # cln lightning handlers
        self.cln_lightning = CLNLightning(plugin_instance=self.plugin_handler,
                                          config=self.config,
                                          logger=self.logger,
                                          chain_backend=self.chain_backend)

        self.invoice_wrapper = InvoiceWrapper(lnworker=self.cln_lightning,
                                              limits=self.config.limits,
                                              logger=self.logger)

        self._loop = asyncio.get_running_loop()
        self.plugin_handler.set_wrap_handler(self.handle_wrap_request)
        self.logger.info("invoice wrapper ready")

    def handle_wrap_request(self, request, bolt11: str, amount_msat,
                            description: Optional[str] = None, description_hash: Optional[str] = None,
                            unhashed_description: Optional[str] = None) -> None:
        """Called from the pyln thread, runs the wrap on our event loop and answers the rpc request once done"""
        coro = self.invoice_wrapper.wrap_invoice(bolt11, msats=amount_msat,
                                                 description=description,
                                                 description_hash=description_hash,
                                                 unhashed_description=unhashed_description)
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        future.add_done_callback(lambda f: self._reply(request, f))

    def _reply(self, request, future: concurrent.futures.Future) -> None:
        try:
            result: WrapResult = future.result()
        except (concurrent.futures.CancelledError, asyncio.CancelledError):
            self.logger.warning("wrapinvoice was cancelled before it completed")
            request.set_exception(RpcException("wrapinvoice was cancelled, the plugin is shutting down",
                                               code=WrapInvoiceError.code))
            return
        except WrapInvoiceError as e:
            request.set_exception(RpcException(e.message, code=e.code))
            return
        except Exception as e:
            self.logger.error(f"wrapinvoice failed unexpectedly:\n{traceback.format_exc()}")
            request.set_exception(e)
            return
        request.set_result(result.to_json())

    async def run(self):
        if not self.is_initialized:
            await self.initialize()
        try:
            # everything happens in the rpc handler, keep the loop alive as long as the plugin thread runs
            await asyncio.Event().wait()
        finally:
            if self.chain_backend is not None:
                await self.chain_backend.close()

    @property
    def is_initialized(self) -> bool:
        if (self.plugin_handler
            and self.logger
            and self.config
            and self.cln_lightning
            and self.invoice_wrapper
            and self._loop):
            return True
        return False
