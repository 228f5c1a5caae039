from datetime import datetime
from typing import Optional, Callable, List, Any


class PluginLogger:
    """Logger class that is compatible with the CLN logging standard (formatting and to stderr)"""
    LEVELS = {
        "DEBUG": 0,
        "INFO": 1,
        "WARNING": 2,
        "ERROR": 3
    }

    def __init__(self, name: str, plugin_log_method: Callable[..., None], level: Optional[str] = "INFO"):
        self.name = name
        self.level = level
        self.logger = plugin_log_method
        self.debug_buffer: List[str] = []  # replayed in higher log level if an error occurs
        self.debug_buffer_size = 15

    def debug(self, msg: str, override: bool = False):
        if self.is_enabled("DEBUG") or override:
            # CLN has its own debug level, this way the plugin can be debugged without flooding the node log
            msg = f"DEBUG: {msg}"
            self.logger(msg, level="info")
        else:
            self.append_to_buffer(msg)

    def info(self, msg: str):
        if self.is_enabled("INFO"):
            self.logger(msg, level="info")

    def warning(self, msg: str):
        if self.is_enabled("WARNING"):
            msg = f"WARNING: {msg}"  # CLN/plugin doesnt support WARN, so we use info
            self.logger(msg, level="info")

    def error(self, msg: str):
        self.replay_debug_buffer()
        msg = f"ERROR: {msg}"  # CLN/plugin doesnt support ERROR, so we use info
        self.logger(msg, level="info")

    def event(self, stage: str, **fields: Any) -> None:
        """Structured debug record for a single pipeline stage, e.g. 'wrap stage=cltv cltv=160'"""
        parts = [f"{key}={value}" for key, value in fields.items()]
        self.debug(" ".join([f"{self.name} stage={stage}"] + parts))

    def change_level(self, level: str):
        level = level.upper()
        if level not in self.LEVELS:
            raise ValueError(f"Invalid log level: {level}")
        self.level = level

    def is_enabled(self, level: str) -> bool:
        """
        Check if the requested log level is equal or higher than the enabled level.
        Log levels hierarchy (from lowest to highest): DEBUG, INFO, WARNING, ERROR
        """
        enabled_level = self.LEVELS.get(self.level, 1)  # default to INFO if invalid level
        requested_level = self.LEVELS.get(level, 1)
        return requested_level >= enabled_level

    def append_to_buffer(self, msg: str) -> None:
        """Append a debug message to the buffer, drop the oldest if the buffer is full"""
        self.debug_buffer.append(f"buffered debug log from {datetime.now().isoformat()}: {msg}")
        if len(self.debug_buffer) > self.debug_buffer_size > 0:
            self.debug_buffer.pop(0)

    def replay_debug_buffer(self) -> None:
        if not self.debug_buffer:
            return
        self.debug("\nReplaying debug log buffer because of critical error:\n", override=True)
        for msg in self.debug_buffer:
            self.debug(msg, override=True)
        self.debug("\n", override=True)
        self.debug_buffer.clear()
