import asyncio
from threading import Event
from typing import Callable, Optional

from pyln.client import Plugin


class CLNPlugin:
    """Owns the pyln Plugin, runs its stdin/stdout loop in a thread next to our asyncio loop.
    Awaiting an instance starts the thread and returns once lightningd handed us an rpc connection."""
    def __init__(self, startup_timeout_secs: int = 50):
        self.plugin = Plugin()
        self.startup_timeout_secs = startup_timeout_secs
        self.__wrap_handler: Optional[Callable[..., None]] = None
        self.__handler_ready = Event()
        # methods have to be registered before plugin.run(), the actual handler is set once we are initialized
        self.plugin.add_method("wrapinvoice", self.__wrap_method_handler, background=True)
        self.__thread: Optional[asyncio.Task] = None

    def __await__(self):
        return self.__start().__await__()

    async def __start(self) -> 'CLNPlugin':
        self.__thread = asyncio.create_task(asyncio.to_thread(self.plugin.run))
        try:
            await asyncio.wait_for(self.__rpc_ready(), timeout=self.startup_timeout_secs)
        except asyncio.TimeoutError as e:
            raise PluginStartupError(f"lightningd didn't init the plugin within {self.startup_timeout_secs}s") from e
        return self

    async def __rpc_ready(self) -> None:
        # plugin.rpc is set by pyln once lightningd sent the init message
        while self.plugin.rpc is None:
            if self.__thread.done():
                raise PluginStartupError("pyln plugin thread exited before init")
            await asyncio.sleep(0.5)

    def fetch_cln_configuration(self) -> dict:
        configuration = self.plugin.rpc.listconfigs()
        return configuration.get("configs", configuration)

    def __wrap_method_handler(self, request, bolt11: str, amount_msat: int,
                              description: Optional[str] = None, description_hash: Optional[str] = None,
                              unhashed_description: Optional[str] = None) -> None:
        """wrapinvoice bolt11 amount_msat [description] [description_hash] [unhashed_description]
        Creates a hold invoice paying for the given bolt11 invoice"""
        if not self.__handler_ready.is_set():
            return request.set_exception(Exception("invoice wrapper is still starting up"))
        return self.__wrap_handler(request, bolt11, amount_msat,
                                   description=description, description_hash=description_hash,
                                   unhashed_description=unhashed_description)

    def set_wrap_handler(self, handler: Callable[..., None]) -> None:
        self.__wrap_handler = handler
        self.__handler_ready.set()


class PluginStartupError(Exception):
    pass
