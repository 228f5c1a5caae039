import os
from fractions import Fraction
from typing import Optional, Callable, Any

import attr
from dotenv import load_dotenv

from .cln_plugin import CLNPlugin
from .cln_logger import PluginLogger
from .bitcoin_core_rpc import BitcoinRPCCredentials
from .utils import parse_fraction


def _positive_int(instance, attribute, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{attribute.name} must be a positive integer, got {value!r}")


def _positive_fraction(instance, attribute, value) -> None:
    if value <= 0:
        raise ValueError(f"{attribute.name} must be positive, got {value}")


@attr.s(frozen=True, auto_attribs=True, kw_only=True)
class WrapLimits:
    """All thresholds the invoice wrapper enforces"""
    min_outgoing_msat: int = attr.ib(default=900, validator=_positive_int)
    max_outgoing_msat: int = attr.ib(default=900_000_000, validator=_positive_int)
    max_expiration_incoming_msecs: int = attr.ib(default=900_000, validator=_positive_int)
    incoming_expiration_buffer_msecs: int = attr.ib(default=300_000, validator=_positive_int)
    max_outgoing_cltv_delta: int = attr.ib(default=500, validator=_positive_int)
    min_settlement_cltv_delta: int = attr.ib(default=80, validator=_positive_int)
    fee_estimate_timeout_secs: int = attr.ib(default=5, validator=_positive_int)
    max_fee_estimate_percent: Fraction = attr.ib(default=Fraction(1, 40), converter=parse_fraction,
                                                 validator=_positive_fraction)
    sybil_fee_mult: Fraction = attr.ib(default=Fraction(10, 7), converter=parse_fraction,
                                       validator=_positive_fraction)

    def __attrs_post_init__(self):
        if self.min_outgoing_msat > self.max_outgoing_msat:
            raise ValueError(f"min_outgoing_msat {self.min_outgoing_msat} > "
                             f"max_outgoing_msat {self.max_outgoing_msat}")
        if self.incoming_expiration_buffer_msecs >= self.max_expiration_incoming_msecs:
            raise ValueError("incoming_expiration_buffer_msecs has to be smaller than "
                             "max_expiration_incoming_msecs")
        if self.min_settlement_cltv_delta >= self.max_outgoing_cltv_delta:
            raise ValueError("min_settlement_cltv_delta has to be smaller than max_outgoing_cltv_delta")
        if self.max_fee_estimate_percent >= 1:
            raise ValueError(f"max_fee_estimate_percent has to be below 1, got {self.max_fee_estimate_percent}")


# env name -> (WrapLimits field, parser)
LIMIT_ENV_VARS = {
    "WRAP_MIN_OUTGOING_MSAT": ("min_outgoing_msat", int),
    "WRAP_MAX_OUTGOING_MSAT": ("max_outgoing_msat", int),
    "WRAP_MAX_EXPIRATION_MSECS": ("max_expiration_incoming_msecs", int),
    "WRAP_EXPIRATION_BUFFER_MSECS": ("incoming_expiration_buffer_msecs", int),
    "WRAP_MAX_CLTV_DELTA": ("max_outgoing_cltv_delta", int),
    "WRAP_MIN_SETTLEMENT_CLTV_DELTA": ("min_settlement_cltv_delta", int),
    "WRAP_FEE_ESTIMATE_TIMEOUT_SECS": ("fee_estimate_timeout_secs", int),
    "WRAP_MAX_FEE_PERCENT": ("max_fee_estimate_percent", parse_fraction),
    "WRAP_SYBIL_FEE_MULT": ("sybil_fee_mult", parse_fraction),
}

HEIGHT_SOURCES = ("cln", "bitcoind")


class PluginConfig:
    """Configuration of the invoice wrapper plugin"""
    def __init__(self, *, cln_configuration: dict, logger: PluginLogger, limits: Optional[WrapLimits] = None):
        self.cln_config: dict = cln_configuration
        self.limits = limits or WrapLimits()
        self.rpc_timeout_secs: int = 30
        self.hold_invoice_rpc: str = "holdinvoice"
        self.height_source: str = "cln"
        self.bcore_rpc_credentials: Optional[BitcoinRPCCredentials] = None
        self.logger = logger

    @classmethod
    def from_cln_and_env(cls, *, cln_plugin_handler: CLNPlugin, logger: PluginLogger) -> 'PluginConfig':
        """Load configuration from .env file or environment variables"""
        load_dotenv()
        return cls.from_env(cln_configuration=cln_plugin_handler.fetch_cln_configuration(), logger=logger,
                            env=os.environ)

    @classmethod
    def from_env(cls, *, cln_configuration: dict, logger: PluginLogger, env) -> 'PluginConfig':
        overrides = {}
        for env_name, (field_name, parser) in LIMIT_ENV_VARS.items():
            if (raw := env.get(env_name)) is not None:
                overrides[field_name] = _parse(env_name, raw, parser)
        try:
            limits = WrapLimits(**overrides)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid wrap limits: {e}") from e
        if not overrides:
            logger.info(f"No WRAP_* limits set in env. Using defaults: {limits}")

        config = PluginConfig(cln_configuration=cln_configuration, logger=logger, limits=limits)

        if log_level := env.get("PLUGIN_LOG_LEVEL"):
            try:
                config.logger.change_level(log_level.strip())
            except ValueError as e:
                raise ConfigError(str(e)) from e

        if rpc_timeout := env.get("RPC_TIMEOUT_SECS"):
            rpc_timeout = _parse("RPC_TIMEOUT_SECS", rpc_timeout, int)
            if not 0 < rpc_timeout <= 600:
                raise ConfigError("Invalid RPC_TIMEOUT_SECS. Use value between 1 and 600")
            config.rpc_timeout_secs = rpc_timeout
        else:
            config.logger.warning(f"No RPC_TIMEOUT_SECS found in env. Using default of {config.rpc_timeout_secs}")

        if hold_invoice_rpc := env.get("HOLD_INVOICE_RPC"):
            config.hold_invoice_rpc = hold_invoice_rpc.strip()

        if height_source := env.get("HEIGHT_SOURCE"):
            height_source = height_source.strip().lower()
            if height_source not in HEIGHT_SOURCES:
                raise ConfigError(f"Invalid HEIGHT_SOURCE {height_source}, use one of {HEIGHT_SOURCES}")
            config.height_source = height_source

        if config.height_source == "bitcoind":
            try:
                config.bcore_rpc_credentials = BitcoinRPCCredentials.from_cln_config_dict(cln_configuration)
            except KeyError as e:
                raise ConfigError(f"HEIGHT_SOURCE=bitcoind but CLN config is missing {e}") from e

        config.logger.debug(f"Loaded configuration: {config}")
        return config

    def __str__(self):
        return f"limits={self.limits}, " \
               f"rpc_timeout_secs={self.rpc_timeout_secs}, " \
               f"hold_invoice_rpc={self.hold_invoice_rpc}, " \
               f"height_source={self.height_source}"


def _parse(env_name: str, raw: str, parser: Callable[[str], Any]) -> Any:
    try:
        return parser(raw.strip())
    except ValueError as e:
        raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from e


class ConfigError(Exception):
    pass
