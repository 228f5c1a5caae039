from typing import Optional, Tuple

import attr
from bitcoinrpc import BitcoinRPC, RPCError as BitcoinRPCError
from httpx import Timeout as HttpxTimeout

from .cln_logger import PluginLogger


class BitcoinCoreRPC:
    """Height oracle asking bitcoind directly, for nodes where CLN's blockheight lags behind the chain tip"""
    def __init__(self, *, logger: PluginLogger,
                 bcore_rpc_credentials: Optional['BitcoinRPCCredentials'] = None,
                 bcore_rpc: Optional[BitcoinRPC] = None,
                 timeout_secs: int = 5):
        if bcore_rpc is None and bcore_rpc_credentials is None:
            raise BitcoinCoreRPCError("BitcoinCoreRPC: No Bitcoin Core rpc config found")
        self.iface = bcore_rpc if bcore_rpc is not None else BitcoinRPC.from_config(url=bcore_rpc_credentials.url,
                                                                                    auth=bcore_rpc_credentials.auth)
        self._timeout = HttpxTimeout(timeout_secs)
        self._logger = logger

    async def init(self) -> None:
        """Fails early if bitcoind is unreachable, a height source we can't query would reject every wrap"""
        try:
            info = await self.iface.acall(method="getblockchaininfo", params=[], timeout=self._timeout)
        except Exception as e:
            raise BitcoinCoreRPCError(f"BitcoinCoreRPC: Could not connect to Bitcoin Core: {e}") from e
        if info["blocks"] != info["headers"]:
            self._logger.warning(f"BitcoinCoreRPC: bitcoind is still syncing ({info['blocks']}/{info['headers']}), "
                                 f"wrapped invoices may get a too small cltv")
        self._logger.debug(f"BitcoinCoreRPC: using {info['chain']} bitcoind at height {info['blocks']}")

    async def get_local_height(self) -> int:
        try:
            height = await self.iface.acall(method="getblockcount", params=[], timeout=self._timeout)
        except BitcoinRPCError as e:
            raise BitcoinCoreRPCError(f"BitcoinCoreRPC get_local_height: getblockcount failed: {e}") from e
        except Exception as e:
            raise BitcoinCoreRPCError(f"BitcoinCoreRPC get_local_height: Could not get blockcount: {e}") from e
        if not isinstance(height, int) or height < 0:
            raise BitcoinCoreRPCError(f"BitcoinCoreRPC get_local_height: unexpected blockcount {height!r}")
        return height

    async def close(self) -> None:
        await self.iface.aclose()


@attr.s(frozen=True, auto_attribs=True, kw_only=True)
class BitcoinRPCCredentials:
    """The bitcoind rpc endpoint CLN itself is configured with"""
    host: str = "127.0.0.1"
    port: int = attr.ib(validator=attr.validators.instance_of(int))
    user: str
    password: str = attr.ib(repr=False)

    @classmethod
    def from_cln_config_dict(cls, cln_config: dict) -> "BitcoinRPCCredentials":
        """Raises KeyError if CLN has no explicit rpc port/user/password configured (e.g. cookie auth)"""
        endpoint = dict(port=cln_config["bitcoin-rpcport"]["value_int"],
                        user=cln_config["bitcoin-rpcuser"]["value_str"],
                        password=cln_config["bitcoin-rpcpassword"]["value_str"])
        if "bitcoin-rpcconnect" in cln_config:
            endpoint["host"] = cln_config["bitcoin-rpcconnect"]["value_str"]
        return cls(**endpoint)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def auth(self) -> Tuple[str, str]:
        return self.user, self.password


class BitcoinCoreRPCError(Exception):
    pass
