"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas and runs
cross-field sanity checks before the bot starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = "gridtrader"
    mode: Literal["LIVE", "SANDBOX"] = Field(description="LIVE trades real funds; SANDBOX uses the exchange testnet")
    symbols: List[str] = Field(min_length=1, description="Traded markets, e.g. BTC/USDT")

    @field_validator("mode", mode="before")
    @classmethod
    def upper_mode(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("symbols")
    @classmethod
    def check_symbols(cls, v):
        for symbol in v:
            base, sep, quote = symbol.partition("/")
            if not sep or not base or not quote:
                raise ValueError(f"symbol {symbol!r} must look like BASE/QUOTE")
        if len(set(v)) != len(v):
            raise ValueError("symbols must be unique")
        return v


class ExchangeSection(BaseModel):
    id: str = Field(min_length=1, description="ccxt exchange id")
    quote_currency: str = Field(default="USDT", min_length=1)
    timeout_ms: int = Field(default=30000, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    api_key_env: str = "EXCHANGE_API_KEY"
    api_secret_env: str = "EXCHANGE_API_SECRET"


class IndicatorsSection(BaseModel):
    base_url: str = "https://api.taapi.io"
    secret_env: str = "TAAPI_SECRET"
    exchange: str = "binance"
    rate_limit_per_window: int = Field(default=1, ge=1)
    window_seconds: float = Field(default=15, gt=0)
    cache_ttl_seconds: float = Field(default=60, gt=0)
    timeout_seconds: float = Field(default=30, gt=0)


class StateSection(BaseModel):
    path: str = "data/gridtrader.db"
    busy_timeout_seconds: float = Field(default=10.0, gt=0, description="Wait this long on a locked database file")


class LoggingSection(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: str = "logs/gridtrader.log"

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class NotificationsSection(BaseModel):
    enabled: bool = False
    dry_run: bool = False
    bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    chat_id_env: str = "TELEGRAM_CHAT_ID"
    dedupe_seconds: float = Field(default=60, ge=0)
    timeout_seconds: float = Field(default=10, gt=0)


class MonitoringSection(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9090, gt=0, lt=65536)
    metrics_interval_minutes: float = Field(default=60, gt=0)
    notifications: NotificationsSection = Field(default_factory=NotificationsSection)


class LoopSection(BaseModel):
    interval_seconds: float = Field(default=60, ge=1)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection
    exchange: ExchangeSection
    indicators: IndicatorsSection = Field(default_factory=IndicatorsSection)
    state: StateSection = Field(default_factory=StateSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)
    loop: LoopSection = Field(default_factory=LoopSection)


# ===== Policy Schema =====
class GridConfig(BaseModel):
    """DCA grid and exit parameters (fractions)"""
    drop_percent: float = Field(gt=0, lt=1, description="Drop below last entry that triggers a DCA buy")
    drop_percent_high_vol: float = Field(gt=0, lt=1, description="Drop used in high volatility")
    atr_high_vol_threshold: float = Field(default=0.02, gt=0, lt=1, description="ATR/price above this is high volatility")
    max_buys: int = Field(ge=1, le=20, description="Buys per cycle including the initial one")
    profit_target: float = Field(gt=0, lt=1, description="Target above average price")
    trailing_stop_percent: float = Field(gt=0, lt=1, description="Trailing stop distance from the high")
    partial_sell_percent: float = Field(gt=0, le=1, description="Share of remaining quantity sold at target")


class CapitalConfig(BaseModel):
    entry_percent: float = Field(gt=0, le=1, description="Share of total balance per buy")
    max_exposure: float = Field(gt=0, le=1, description="Share of total balance one cycle may hold")
    min_order_value: float = Field(default=10, ge=0, description="Minimum order in quote currency")


class EntryConfig(BaseModel):
    rsi_threshold: float = Field(gt=0, lt=100, description="RSI below this is oversold")
    rsi_recovery: float = Field(gt=0, lt=100, description="RSI above this lifts a crash pause")
    volume_lookback: int = Field(default=20, ge=0, description="Candles in the volume average (0 = off)")


class RiskConfig(BaseModel):
    max_drawdown: float = Field(gt=0, lt=1, description="Drawdown from peak that pauses trading")
    drawdown_warning_ratio: float = Field(default=0.75, gt=0, lt=1, description="Fraction of max drawdown that warns")
    crash_drop_percent: float = Field(gt=0, lt=1, description="Drop inside the window that counts as a crash")
    crash_time_window_minutes: int = Field(gt=0, description="Crash detection window")
    lateral_cycle_count: int = Field(ge=1, description="Low-profit cycles in a row before pausing")
    lateral_profit_threshold: float = Field(ge=0, lt=1, description="Cycles below this profit are low-profit")
    lateral_pause_hours: float = Field(gt=0, description="Lateral pause duration")


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    grid: GridConfig
    capital: CapitalConfig
    entry: EntryConfig
    risk: RiskConfig


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    raw_lines = file_path.read_text().splitlines()
    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))

    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n" + "\n".join(snippet_lines)
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        schema(**load_yaml_file(config_dir / filename))
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path, app: Optional[Dict] = None, policy: Optional[Dict] = None) -> List[str]:
    """
    Cross-field consistency checks that a per-field schema cannot express.

    Detects:
    - Exposure cap smaller than a single entry
    - Profit target inside the trailing distance
    - Crash recovery RSI above the entry threshold
    - Symbols quoted in a different currency than the account
    """
    errors = []
    app = app if app is not None else load_yaml_file(config_dir / "app.yaml")
    policy = policy if policy is not None else load_yaml_file(config_dir / "policy.yaml")

    grid = policy.get("grid", {}) or {}
    capital = policy.get("capital", {}) or {}
    entry = policy.get("entry", {}) or {}

    if capital.get("max_exposure", 0) < capital.get("entry_percent", 0):
        errors.append(
            "CONTRADICTION: capital.max_exposure is below capital.entry_percent "
            "(no cycle could ever open)."
        )

    if grid.get("profit_target", 0) <= grid.get("trailing_stop_percent", 0):
        errors.append(
            "UNSAFE: grid.profit_target <= grid.trailing_stop_percent; the trailing stop "
            "could close the cycle below its average price."
        )

    if grid.get("drop_percent_high_vol", 0) < grid.get("drop_percent", 0):
        errors.append("CONTRADICTION: grid.drop_percent_high_vol is tighter than grid.drop_percent.")

    if entry.get("rsi_recovery", 0) > entry.get("rsi_threshold", 100):
        logger.warning("entry.rsi_recovery is above entry.rsi_threshold; crash pauses will lift late")

    quote = (app.get("exchange", {}) or {}).get("quote_currency", "USDT")
    for symbol in (app.get("app", {}) or {}).get("symbols", []) or []:
        if symbol.partition("/")[2] != quote:
            errors.append(f"MISMATCH: symbol {symbol} is not quoted in exchange.quote_currency ({quote}).")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks only if schema validation passed
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
