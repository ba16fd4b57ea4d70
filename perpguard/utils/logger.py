"""
Logging system for the perpetual-futures guard.
Provides structured, human-readable logs with file and console output.
"""

import copy
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional


# ANSI color codes for terminal output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    CYAN = "\033[96m"
    WHITE = "\033[97m"
    BOLD = "\033[1m"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.CYAN,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record):
        # Work on a copy so the file handler sees the plain record
        record = copy.copy(record)
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.msg = f"{color}{record.msg}{Colors.RESET}"
        return super().format(record)


class TradingLogger:
    """
    Central logging system.

    Features:
    - Console output with colors
    - Daily log files for general output, trades and errors
    - Structured helpers for trade, risk and reconciliation events
    """

    _instance: Optional['TradingLogger'] = None
    _initialized: bool = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, log_dir: str = "logs", log_level: str = "INFO"):
        if TradingLogger._initialized:
            return

        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.main_logger = self._create_logger("perpguard", log_level)
        self.trade_logger = self._create_logger("perpguard.trades", log_level, "trades")
        self.error_logger = self._create_logger("perpguard.errors", "ERROR", "errors")

        TradingLogger._initialized = True

    def _create_logger(self, name: str, level: str, file_prefix: str = None) -> logging.Logger:
        """Create a configured logger instance."""
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, level.upper()))
        logger.propagate = False
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(ColoredFormatter(
            "%(asctime)s | %(levelname)s | %(message)s",
            datefmt="%H:%M:%S"
        ))
        logger.addHandler(console_handler)

        prefix = file_prefix or "bot"
        log_file = self.log_dir / f"{prefix}_{datetime.now().strftime('%Y%m%d')}.log"

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(file_handler)

        return logger

    def info(self, msg: str, *args, **kwargs):
        """Log info message."""
        self.main_logger.info(msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        """Log debug message."""
        self.main_logger.debug(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        """Log warning message."""
        self.main_logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        """Log error message."""
        self.main_logger.error(msg, *args, **kwargs)
        self.error_logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        """Log critical message."""
        self.main_logger.critical(msg, *args, **kwargs)
        self.error_logger.critical(msg, *args, **kwargs)

    def trade(self, action: str, symbol: str, side: str, quantity: float,
              price: float = None, pnl: float = None, **kwargs):
        """
        Log a trade action with structured format.

        Args:
            action: POSITION_OPENED, POSITION_CLOSED, PARTIAL_CLOSE, STOP_PLACED, ...
            symbol: Base asset symbol (e.g., BTC)
            side: long or short
            quantity: Quantity in exchange units (contracts or base coin)
            price: Execution or trigger price (optional)
            pnl: Realized PnL in quote currency (optional, for closes)
            **kwargs: Additional fields
        """
        parts = [
            f"[{action}]",
            f"symbol={symbol}",
            f"side={side}",
            f"qty={quantity:g}",
        ]

        if price:
            parts.append(f"price={price:.4f}")
        if pnl is not None:
            parts.append(f"pnl={pnl:+.4f}")

        for key, value in kwargs.items():
            parts.append(f"{key}={value}")

        msg = " | ".join(parts)
        self.trade_logger.info(msg)
        self.main_logger.info(msg)

    def risk(self, action: str, reason: str, **kwargs):
        """
        Log risk management actions.

        Args:
            action: ALLOWED, BLOCKED, WARNING, FORCE_CLOSE
            reason: Reason for the action
            **kwargs: Additional context (quantities, thresholds)
        """
        parts = [f"[RISK:{action}]", reason]
        for key, value in kwargs.items():
            parts.append(f"{key}={value}")

        msg = " | ".join(parts)

        if action in ("BLOCKED", "WARNING"):
            self.main_logger.warning(msg)
        elif action == "FORCE_CLOSE":
            self.main_logger.critical(msg)
            self.error_logger.critical(msg)
        else:
            self.main_logger.info(msg)

    def reconcile(self, action: str, symbol: str, **kwargs):
        """
        Log a reconciliation or audit correction.

        Corrections are logged with before/after values so the store history
        can be traced back to a specific pass.
        """
        parts = [f"[SYNC:{action}]", f"symbol={symbol}"]
        for key, value in kwargs.items():
            parts.append(f"{key}={value}")
        msg = " | ".join(parts)
        self.trade_logger.info(msg)
        self.main_logger.warning(msg)

    def panic(self, msg: str):
        """Log panic/emergency actions."""
        self.main_logger.critical(f"{Colors.BOLD}PANIC: {msg}{Colors.RESET}")
        self.error_logger.critical(f"PANIC: {msg}")


# Global logger instance
_logger: Optional[TradingLogger] = None


def get_logger(log_dir: str = "logs", log_level: str = "INFO") -> TradingLogger:
    """Get or create the global logger instance."""
    global _logger
    if _logger is None:
        _logger = TradingLogger(log_dir, log_level)
        _configure_third_party_loggers(log_dir)
    return _logger


def setup_logger(log_dir: str = "logs", log_level: str = "INFO") -> TradingLogger:
    """Initialize the logger with custom settings."""
    global _logger
    TradingLogger._initialized = False
    TradingLogger._instance = None
    _logger = TradingLogger(log_dir, log_level)
    _configure_third_party_loggers(log_dir)
    return _logger


def _configure_third_party_loggers(log_dir: str = "logs"):
    """
    Configure third-party library loggers to reduce noise.

    pybit and ccxt log every retry and HTTP exchange at DEBUG/INFO. Their
    console output is suppressed while the detail is kept in a file.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    exchange_file = log_path / f"exchange_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.FileHandler(exchange_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))

    for name in ("pybit", "ccxt"):
        lib_logger = logging.getLogger(name)
        lib_logger.setLevel(logging.WARNING)
        for handler in list(lib_logger.handlers):
            handler.close()
        lib_logger.handlers.clear()
        lib_logger.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
