from __future__ import annotations
import os
import re
from pathlib import Path
from typing import Dict, Any, Optional, List, Literal, Tuple

import orjson
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from scanner_errors import ConfigError

__version__ = "2.1.0"


class Constants:
    ALERT_COOLDOWN_MS = 3_600_000
    NOTIFICATION_LIMIT = 50
    UPDATE_BATCH_WINDOW_SEC = 0.75
    VALUE_AREA_PCT = 0.70
    VOLUME_PROFILE_RESOLUTION = 100
    PIVOT_LOOKBACK = 5
    RSI_LENGTH = 14
    SMA_LENGTH = 14
    STOCH_LENGTH = 14
    STOCH_K_SMOOTH = 3
    STOCH_D_SMOOTH = 3
    ATR_LENGTH = 14
    MAX_PRICE_CHANGE_PERCENT = 80.0
    CIRCUIT_BREAKER_MAX_WAIT = 300
    DAY_MS = 86_400_000


TIMEFRAMES: Tuple[str, ...] = ("1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "8h", "1d", "3d", "1w")

TIMEFRAME_MINUTES: Dict[str, int] = {
    "1m": 1, "3m": 3, "5m": 5, "15m": 15, "30m": 30, "1h": 60, "2h": 120,
    "4h": 240, "8h": 480, "1d": 1440, "3d": 4320, "1w": 10080,
}

TRAIL_ALERT_TIMEFRAMES = frozenset({"15m", "1h", "4h", "1d"})
SUPERTREND_ALERT_TIMEFRAMES = frozenset({"4h", "1d"})
VWAP_GATED_TIMEFRAMES = frozenset({"15m"})


def clean_symbols(symbols: List[str]) -> List[str]:
    cleaned = []
    for sym in symbols:
        sym = sym.strip().upper()
        if not re.match(r'^[A-Z0-9_]+(\.P)?$', sym):
            raise ValueError(f'Invalid symbol: {sym!r}')
        if sym not in cleaned:
            cleaned.append(sym)
    return cleaned


class TrailingStopSettings(BaseModel):
    data_length: int = 1
    distribution_length: int = 10
    use_heikin_ashi: bool = True

    @field_validator('data_length')
    def validate_data_length(cls, v: int) -> int:
        if v not in (1, 5):
            raise ValueError('data_length must be 1 or 5')
        return v

    @field_validator('distribution_length')
    def validate_distribution_length(cls, v: int) -> int:
        if v not in (10, 100):
            raise ValueError('distribution_length must be 10 or 100')
        return v

    @property
    def min_candles(self) -> int:
        return self.distribution_length + self.data_length + 2


class SupertrendSettings(BaseModel):
    period: int = Field(default=10, ge=1)
    multiplier: float = Field(default=1.0, gt=0)


class HighLowAlgoSettings(BaseModel):
    dist: int = Field(default=30, ge=2)
    buy_threshold_pct: float = Field(default=0.5, ge=0)
    sell_threshold_pct: float = Field(default=0.3, ge=0)
    buy_mode: Literal["Default", "Hammer", "Green Close", "Hammer + Green"] = "Default"
    sell_mode: Literal["Default", "Red Close", "Doji", "Doji + Red Close"] = "Default"
    hammer_wick_ratio: float = Field(default=1.0, ge=0)
    doji_body_ratio: float = Field(default=0.5, ge=0, le=1)
    sl_mode: Literal["None", "Signal Candle Low"] = "Signal Candle Low"
    sl_buffer_pct: float = Field(default=0.5, ge=0)
    intrabar_sl: bool = True


class AccumulationSettings(BaseModel):
    lookback_period: str = "4h"
    buy_ratio_threshold: float = Field(default=0.65, gt=0.5, le=1.0)

    @field_validator('lookback_period')
    def validate_lookback(cls, v: str) -> str:
        v = v.strip().lower()
        if not re.match(r'^\d+h$', v):
            raise ValueError('lookback_period must look like "4h"')
        return v

    def lookback_candles(self, timeframe: str) -> int:
        minutes = TIMEFRAME_MINUTES.get(timeframe)
        if not minutes:
            return 0
        hours = int(self.lookback_period[:-1])
        return max(1, round(hours * 60 / minutes))


class AlertConditions(BaseModel):
    kiwi_bullish_flip: bool = True
    kiwi_bearish_flip: bool = True
    supertrend_buy: bool = False
    supertrend_sell: bool = False
    high_low_algo: bool = False
    accumulation_volume: bool = False
    # 15m trail flips only for symbols trading above the daily VWAP
    require_above_daily_vwap: bool = True


class ProviderProfile(BaseModel):
    name: str
    chunk_size: int = Field(..., ge=1)
    chunk_delay_sec: float = Field(..., ge=0)
    max_requests_per_minute: int = Field(default=1200, ge=1)
    max_parallel: int = Field(default=8, ge=1)


PROVIDER_PROFILES: Dict[str, ProviderProfile] = {
    "binance": ProviderProfile(name="binance", chunk_size=10, chunk_delay_sec=1.0, max_requests_per_minute=1200),
    "mexc": ProviderProfile(name="mexc", chunk_size=2, chunk_delay_sec=2.0, max_requests_per_minute=300, max_parallel=2),
}


class ScannerConfig(BaseModel):
    BOT_NAME: str = "Kiwi Scanner"
    SYMBOLS: List[str] = Field(default=["BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT", "XRPUSDT"], min_length=1)
    TIMEFRAME_SYMBOLS: Dict[str, List[str]] = Field(default_factory=dict, description="per-timeframe symbol lists; SYMBOLS elsewhere")
    TIMEFRAMES: List[str] = Field(default=["15m", "1h", "4h", "1d"], min_length=1)
    PROVIDER: Literal["binance", "mexc"] = "binance"
    PROVIDER_OVERRIDE: Optional[ProviderProfile] = None
    CANDLE_LIMIT: int = Field(default=0, ge=0, description="0 = derive from indicator lookbacks")
    CANDLES_DISPLAYED: int = Field(default=100, ge=10, le=1000)
    LOOP_INTERVAL_SEC: float = Field(default=150.0, ge=5)
    TIMEFRAME_PAUSE_SEC: float = Field(default=0.5, ge=0)
    HTTP_TIMEOUT: int = 15
    FETCH_RETRIES: int = Field(default=3, ge=1, le=10)
    FETCH_BACKOFF: float = 1.5
    TCP_CONN_LIMIT: int = 16
    TCP_CONN_LIMIT_PER_HOST: int = 12
    FETCH_OPEN_INTEREST: bool = True

    STATE_BACKEND: Literal["memory", "file", "jsonbin", "redis"] = "file"
    STATE_FILE: str = "alert_state.json"
    STATE_KEY: str = "kiwi_scanner:alert_states"
    JSONBIN_BIN_ID: Optional[str] = None
    JSONBIN_MASTER_KEY: Optional[str] = None
    JSONBIN_API_BASE: str = "https://api.jsonbin.io/v3"
    REDIS_URL: Optional[str] = None

    DISCORD_WEBHOOK_URL: Optional[str] = None
    SEND_DISCORD_NOTIFICATIONS: bool = False
    DISCORD_RATE_LIMIT_PER_MINUTE: int = Field(default=25, ge=1, le=60)
    DISCORD_BURST_SIZE: int = Field(default=5, ge=1)
    DRY_RUN_MODE: bool = False

    LOG_LEVEL: str = "INFO"
    DEBUG_MODE: bool = False
    MEMORY_LIMIT_BYTES: int = 400_000_000

    TRAILING_STOP: TrailingStopSettings = Field(default_factory=TrailingStopSettings)
    SUPERTREND: SupertrendSettings = Field(default_factory=SupertrendSettings)
    HIGH_LOW_ALGO: HighLowAlgoSettings = Field(default_factory=HighLowAlgoSettings)
    ACCUMULATION: AccumulationSettings = Field(default_factory=AccumulationSettings)
    ALERT_CONDITIONS: AlertConditions = Field(default_factory=AlertConditions)

    @field_validator('SYMBOLS')
    def validate_symbols(cls, v: List[str]) -> List[str]:
        return clean_symbols(v)

    @field_validator('TIMEFRAME_SYMBOLS')
    def validate_timeframe_symbols(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        unknown = [tf for tf in v if tf not in TIMEFRAME_MINUTES]
        if unknown:
            raise ValueError(f'Unknown timeframes in TIMEFRAME_SYMBOLS: {unknown}')
        return {tf: clean_symbols(symbols) for tf, symbols in v.items()}

    @field_validator('TIMEFRAMES')
    def validate_timeframes(cls, v: List[str]) -> List[str]:
        unknown = [tf for tf in v if tf not in TIMEFRAME_MINUTES]
        if unknown:
            raise ValueError(f'Unknown timeframes: {unknown}')
        return sorted(set(v), key=TIMEFRAMES.index)

    @field_validator('LOG_LEVEL')
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError('LOG_LEVEL must be a standard logging level name')
        return v

    @field_validator('DISCORD_WEBHOOK_URL')
    def validate_webhook(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not re.match(r'^https://(discord\.com|discordapp\.com)/api/webhooks/\S+$', v.strip()):
            raise ValueError('DISCORD_WEBHOOK_URL must be a Discord webhook URL')
        return v.strip()

    @model_validator(mode='after')
    def validate_logic(self) -> 'ScannerConfig':
        if self.STATE_BACKEND == "jsonbin" and not (self.JSONBIN_BIN_ID and self.JSONBIN_MASTER_KEY):
            raise ValueError('STATE_BACKEND=jsonbin requires JSONBIN_BIN_ID and JSONBIN_MASTER_KEY')

        if self.STATE_BACKEND == "redis" and not self.REDIS_URL:
            raise ValueError('STATE_BACKEND=redis requires REDIS_URL')

        if self.SEND_DISCORD_NOTIFICATIONS and not self.DISCORD_WEBHOOK_URL:
            raise ValueError('SEND_DISCORD_NOTIFICATIONS requires DISCORD_WEBHOOK_URL')

        extra = sorted(set(self.TIMEFRAME_SYMBOLS) - set(self.TIMEFRAMES), key=TIMEFRAMES.index)
        if extra:
            raise ValueError(f'TIMEFRAME_SYMBOLS names timeframes that are not scanned: {extra}')

        min_needed = max(self.TRAILING_STOP.min_candles, self.SUPERTREND.period + 1, self.HIGH_LOW_ALGO.dist + 1)
        if 0 < self.CANDLE_LIMIT < min_needed:
            raise ValueError(f'CANDLE_LIMIT ({self.CANDLE_LIMIT}) must be >= {min_needed}')

        return self

    def symbols_for(self, timeframe: str) -> List[str]:
        return self.TIMEFRAME_SYMBOLS.get(timeframe, self.SYMBOLS)

    @property
    def provider_profile(self) -> ProviderProfile:
        return self.PROVIDER_OVERRIDE or PROVIDER_PROFILES[self.PROVIDER]


_ENV_OVERRIDES = (
    "DISCORD_WEBHOOK_URL",
    "JSONBIN_BIN_ID",
    "JSONBIN_MASTER_KEY",
    "REDIS_URL",
    "STATE_BACKEND",
    "STATE_FILE",
    "LOG_LEVEL",
    "DEBUG_MODE",
    "DRY_RUN_MODE",
    "SEND_DISCORD_NOTIFICATIONS",
)


def load_config(path: Optional[str] = None) -> ScannerConfig:
    config_file = path or os.getenv("SCANNER_CONFIG_FILE", "scanner_config.json")
    data: Dict[str, Any] = {}
    if Path(config_file).exists():
        try:
            data = orjson.loads(Path(config_file).read_bytes())
        except orjson.JSONDecodeError as exc:
            raise ConfigError(f"Config file {config_file} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_file} must contain a JSON object")

    for key in _ENV_OVERRIDES:
        env_value = os.getenv(key)
        if env_value:
            data[key] = env_value

    symbols_env = os.getenv("SYMBOLS")
    if symbols_env:
        data["SYMBOLS"] = [s for s in symbols_env.split(",") if s.strip()]

    try:
        return ScannerConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Config validation failed: {exc}") from exc
