"""
Configuration management.
Loads settings from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from ..errors import FatalConfigError
from .strategies import StrategyProfile, load_strategy_profiles


# Exchange names accepted by EXCHANGE_NAME
class ExchangeName:
    BYBIT = "bybit"  # USDT perpetuals, linear settlement
    GATE = "gate"    # contract-unit futures with quanto multiplier, inverse settlement

    ALL = (BYBIT, GATE)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: str, cast):
    value = os.getenv(name, default).strip()
    try:
        return cast(value)
    except ValueError as e:
        raise FatalConfigError(f"{name} must be a number, got '{value}'") from e


@dataclass
class ExchangeConfig:
    """
    Exchange selection and credentials.

    Exactly one exchange is active per process. Credentials are read for the
    selected exchange only; the other pair may be empty.
    """
    name: str = ExchangeName.BYBIT

    bybit_api_key: str = ""
    bybit_api_secret: str = ""
    bybit_use_demo: bool = True
    bybit_recv_window: int = 20000

    gate_api_key: str = ""
    gate_api_secret: str = ""
    gate_use_testnet: bool = False

    # Taker fee per side used to estimate fees when the exchange omits them
    taker_fee_rate: float = 0.0005

    def get_credentials(self) -> tuple:
        """Return (api_key, api_secret) for the selected exchange."""
        if self.name == ExchangeName.GATE:
            return self.gate_api_key, self.gate_api_secret
        return self.bybit_api_key, self.bybit_api_secret

    @property
    def has_credentials(self) -> bool:
        key, secret = self.get_credentials()
        return bool(key and secret)


@dataclass
class RiskConfig:
    """Account-level risk configuration."""
    # Drawdown thresholds, percent of peak balance
    drawdown_warning_percent: float = 20.0
    drawdown_no_new_position_percent: float = 30.0
    drawdown_force_close_percent: float = 50.0

    # Leverage and exposure
    max_leverage: int = 10
    default_leverage: int = 3
    max_positions: int = 5

    # Protective order features
    enable_trailing_stop: bool = True
    enable_partial_take_profit: bool = True

    # "auto" corrects local state to the exchange, "flag" only records mismatches
    reconcile_policy: str = "auto"

    # Hard caps (cannot be overridden by config)
    HARD_MAX_LEVERAGE: int = 25
    HARD_MAX_POSITIONS: int = 20

    def __post_init__(self):
        """Enforce hard caps."""
        self.max_leverage = min(self.max_leverage, self.HARD_MAX_LEVERAGE)
        self.max_positions = min(self.max_positions, self.HARD_MAX_POSITIONS)

    def threshold_errors(self) -> List[str]:
        errors = []
        if not (0 < self.drawdown_warning_percent
                < self.drawdown_no_new_position_percent
                < self.drawdown_force_close_percent <= 100):
            errors.append(
                "Drawdown thresholds must be strictly ascending within (0, 100]: "
                f"warning={self.drawdown_warning_percent}, "
                f"no_new_position={self.drawdown_no_new_position_percent}, "
                f"force_close={self.drawdown_force_close_percent}"
            )
        return errors


@dataclass
class TradingConfig:
    """Trading loop configuration."""
    symbols: List[str] = field(default_factory=lambda: ["BTC", "ETH"])
    strategy: str = "balanced"
    loop_interval_minutes: float = 5.0
    indicator_timeframe: str = "15m"
    # Margin (quote currency) committed per new position when the decision gives none
    default_order_amount: float = 10.0
    strategy_profiles_path: Optional[str] = None


@dataclass
class StoreConfig:
    """Persisted store configuration."""
    db_path: str = "data/perpguard.duckdb"


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_dir: str = "logs"


class Config:
    """
    Central configuration manager.

    Loads configuration from environment variables and provides
    typed access to all settings.
    """

    _instance: Optional['Config'] = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, env_file: str = ".env"):
        if self._initialized:
            return

        # Later files override earlier ones
        for env_name in ["api_keys.env", ".env", env_file]:
            env_path = Path(env_name)
            if env_path.exists():
                load_dotenv(env_path, override=True)

        self.exchange = self._load_exchange_config()
        self.risk = self._load_risk_config()
        self.trading = self._load_trading_config()
        self.store = self._load_store_config()
        self.log = self._load_log_config()
        self._profiles: Optional[Dict[str, StrategyProfile]] = None

        self._initialized = True

    def _load_exchange_config(self) -> ExchangeConfig:
        """Load exchange configuration from environment."""
        return ExchangeConfig(
            name=os.getenv("EXCHANGE_NAME", ExchangeName.BYBIT).strip().lower(),
            bybit_api_key=os.getenv("BYBIT_API_KEY", ""),
            bybit_api_secret=os.getenv("BYBIT_API_SECRET", ""),
            bybit_use_demo=_env_bool("BYBIT_USE_DEMO", "true"),
            bybit_recv_window=_env_number("BYBIT_RECV_WINDOW", "20000", int),
            gate_api_key=os.getenv("GATE_API_KEY", ""),
            gate_api_secret=os.getenv("GATE_API_SECRET", ""),
            gate_use_testnet=_env_bool("GATE_USE_TESTNET", "false"),
            taker_fee_rate=_env_number("TAKER_FEE_RATE", "0.0005", float),
        )

    def _load_risk_config(self) -> RiskConfig:
        """Load risk configuration from environment."""
        return RiskConfig(
            drawdown_warning_percent=_env_number("DRAWDOWN_WARNING_PERCENT", "20", float),
            drawdown_no_new_position_percent=_env_number("DRAWDOWN_NO_NEW_POSITION_PERCENT", "30", float),
            drawdown_force_close_percent=_env_number("DRAWDOWN_FORCE_CLOSE_PERCENT", "50", float),
            max_leverage=_env_number("MAX_LEVERAGE", "10", int),
            default_leverage=_env_number("DEFAULT_LEVERAGE", "3", int),
            max_positions=_env_number("MAX_POSITIONS", "5", int),
            enable_trailing_stop=_env_bool("ENABLE_TRAILING_STOP_LOSS", "true"),
            enable_partial_take_profit=_env_bool("ENABLE_PARTIAL_TAKE_PROFIT", "true"),
            reconcile_policy=os.getenv("RECONCILE_POLICY", "auto").strip().lower(),
        )

    def _load_trading_config(self) -> TradingConfig:
        """Load trading configuration from environment."""
        symbols_str = os.getenv("TRADING_SYMBOLS", "BTC,ETH")
        symbols = [s.strip().upper() for s in symbols_str.split(",") if s.strip()]
        return TradingConfig(
            symbols=symbols,
            strategy=os.getenv("TRADING_STRATEGY", "balanced").strip().lower(),
            loop_interval_minutes=_env_number("TRADING_INTERVAL_MINUTES", "5", float),
            indicator_timeframe=os.getenv("INDICATOR_TIMEFRAME", "15m"),
            default_order_amount=_env_number("DEFAULT_ORDER_AMOUNT", "10", float),
            strategy_profiles_path=os.getenv("STRATEGY_PROFILES_PATH") or None,
        )

    def _load_store_config(self) -> StoreConfig:
        """Load store configuration from environment."""
        return StoreConfig(db_path=os.getenv("DATABASE_PATH", "data/perpguard.duckdb"))

    def _load_log_config(self) -> LogConfig:
        """Load logging configuration from environment."""
        return LogConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=os.getenv("LOG_DIR", "logs"),
        )

    @property
    def profiles(self) -> Dict[str, StrategyProfile]:
        """Strategy profiles, built-ins merged with the optional YAML file."""
        if self._profiles is None:
            self._profiles = load_strategy_profiles(self.trading.strategy_profiles_path)
        return self._profiles

    @property
    def strategy_profile(self) -> StrategyProfile:
        """Profile selected by TRADING_STRATEGY."""
        try:
            return self.profiles[self.trading.strategy]
        except KeyError:
            raise FatalConfigError(
                f"Unknown strategy '{self.trading.strategy}'. "
                f"Available: {', '.join(sorted(self.profiles))}"
            ) from None

    def reload(self, env_file: str = ".env"):
        """Reload configuration from environment."""
        self._initialized = False
        Config._instance = None
        return Config(env_file)

    def validate(self) -> tuple[bool, List[str]]:
        """
        Validate configuration before trading starts.

        Checks:
        - Exchange name and credentials for the selected exchange
        - Drawdown thresholds strictly ascending
        - Leverage and position limits
        - Strategy profile exists and is internally consistent

        Returns:
            Tuple of (is_valid, list of error/warning messages)
        """
        errors = []
        warnings = []

        # === Exchange ===
        if self.exchange.name not in ExchangeName.ALL:
            errors.append(
                f"Unsupported EXCHANGE_NAME '{self.exchange.name}'. "
                f"Supported: {', '.join(ExchangeName.ALL)}"
            )
        elif not self.exchange.has_credentials:
            prefix = self.exchange.name.upper()
            errors.append(
                f"MISSING REQUIRED KEY: {prefix}_API_KEY and {prefix}_API_SECRET are required "
                f"for EXCHANGE_NAME={self.exchange.name}."
            )

        if self.exchange.name == ExchangeName.BYBIT and not self.exchange.bybit_use_demo:
            warnings.append("CAUTION: Bybit LIVE mode - orders affect real funds")

        if not 0 <= self.exchange.taker_fee_rate < 0.01:
            errors.append(f"TAKER_FEE_RATE {self.exchange.taker_fee_rate} is outside [0, 0.01)")

        # === Risk ===
        errors.extend(self.risk.threshold_errors())

        if self.risk.max_leverage < 1:
            errors.append(f"MAX_LEVERAGE must be at least 1, got {self.risk.max_leverage}")
        if self.risk.default_leverage > self.risk.max_leverage:
            errors.append(
                f"Default leverage ({self.risk.default_leverage}) exceeds max leverage ({self.risk.max_leverage})"
            )
        if self.risk.max_positions < 1:
            errors.append(f"MAX_POSITIONS must be at least 1, got {self.risk.max_positions}")
        if self.risk.reconcile_policy not in ("auto", "flag"):
            errors.append(f"RECONCILE_POLICY must be 'auto' or 'flag', got '{self.risk.reconcile_policy}'")

        # === Trading ===
        if not self.trading.symbols:
            errors.append("TRADING_SYMBOLS is empty")
        if self.trading.loop_interval_minutes <= 0:
            errors.append("TRADING_INTERVAL_MINUTES must be positive")

        try:
            profile = self.strategy_profile
        except FatalConfigError as e:
            errors.append(str(e))
        else:
            errors.extend(profile.validate())

        all_messages = errors + [f"[WARN] {w}" for w in warnings]
        return len(errors) == 0, all_messages

    def require_valid(self) -> None:
        """Raise FatalConfigError if validate() reports any error."""
        ok, messages = self.validate()
        if not ok:
            errors = [m for m in messages if not m.startswith("[WARN]")]
            raise FatalConfigError("Invalid configuration: " + "; ".join(errors))

    def summary(self) -> str:
        """Short one-line description of the active configuration."""
        return (
            f"exchange={self.exchange.name} strategy={self.trading.strategy} "
            f"symbols={','.join(self.trading.symbols)} max_leverage={self.risk.max_leverage} "
            f"drawdown={self.risk.drawdown_warning_percent}/"
            f"{self.risk.drawdown_no_new_position_percent}/"
            f"{self.risk.drawdown_force_close_percent}"
        )


def get_config(env_file: str = ".env") -> Config:
    """Get or create the global config instance."""
    return Config(env_file)
