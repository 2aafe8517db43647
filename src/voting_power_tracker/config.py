import os
from dataclasses import dataclass, field
from typing import Optional, List
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DEFAULT_SEGMENT_NAMES = ["micro", "small", "medium", "large", "whale"]


def _parse_int_list(raw: str) -> List[int]:
    values = [int(part.strip()) for part in raw.split(",") if part.strip()]
    if values != sorted(values) or len(set(values)) != len(values):
        raise ValueError(
            f"SEGMENT_BREAKPOINTS must be strictly ascending, got {raw!r}")
    return values


@dataclass
class Config:
    """Application configuration."""

    # Chain access
    rpc_url: str = "https://eth.llamarpc.com"
    token_address: Optional[str] = None
    etherscan_api_key: Optional[str] = None
    etherscan_base_url: str = "https://api.etherscan.io/api"
    token_decimals: int = 18

    # Tracking settings
    history_cap: int = 1000
    snapshot_retention: int = 100
    read_timeout: float = 5.0  # seconds per upstream read
    read_workers: int = 8
    refresh_interval: float = 900.0  # seconds between scheduled snapshots
    alert_log_cap: int = 1000  # triggered alerts kept in memory
    max_transfers_per_request: int = 1000  # transfer events used to seed history

    # Cache TTLs (seconds)
    power_cache_ttl: int = 300
    analytics_cache_ttl: int = 600
    prediction_cache_ttl: int = 600

    # Prediction settings
    min_history_points: int = 10
    prediction_window: int = 30
    prediction_horizon_days: int = 30  # horizon refreshed after each change
    confidence_floor: float = 0.1

    # Segmentation, breakpoints in whole tokens
    segment_breakpoints: List[int] = field(
        default_factory=lambda: [100, 1000, 10000, 100000])
    segment_names: List[str] = field(
        default_factory=lambda: list(DEFAULT_SEGMENT_NAMES))

    log_level: str = "WARNING"

    def __post_init__(self):
        if self.history_cap < 1:
            raise ValueError("history_cap must be at least 1")
        if self.snapshot_retention < 1:
            raise ValueError("snapshot_retention must be at least 1")
        if self.alert_log_cap < 1:
            raise ValueError("alert_log_cap must be at least 1")
        if self.read_timeout <= 0:
            raise ValueError("read_timeout must be positive")
        if not 0.0 <= self.confidence_floor <= 1.0:
            raise ValueError("confidence_floor must be within [0, 1]")
        if len(self.segment_names) != len(self.segment_breakpoints) + 1:
            raise ValueError(
                "segment_names needs exactly one more entry than segment_breakpoints")

    @property
    def segment_thresholds(self) -> List[int]:
        """Segment breakpoints scaled to token base units."""
        unit = 10 ** self.token_decimals
        return [bp * unit for bp in self.segment_breakpoints]

    @classmethod
    def from_env(cls) -> "Config":
        """Create config from environment variables."""
        names_raw = os.getenv("SEGMENT_NAMES")
        segment_names = ([n.strip() for n in names_raw.split(",") if n.strip()]
                         if names_raw else list(DEFAULT_SEGMENT_NAMES))

        return cls(
            rpc_url=os.getenv("RPC_URL", "https://eth.llamarpc.com"),
            token_address=os.getenv("TOKEN_ADDRESS"),
            etherscan_api_key=os.getenv("ETHERSCAN_API_KEY"),
            etherscan_base_url=os.getenv(
                "ETHERSCAN_BASE_URL", "https://api.etherscan.io/api"),
            token_decimals=int(os.getenv("TOKEN_DECIMALS", "18")),
            history_cap=int(os.getenv("HISTORY_CAP", "1000")),
            snapshot_retention=int(os.getenv("SNAPSHOT_RETENTION", "100")),
            read_timeout=float(os.getenv("READ_TIMEOUT", "5.0")),
            read_workers=int(os.getenv("READ_WORKERS", "8")),
            refresh_interval=float(os.getenv("REFRESH_INTERVAL", "900")),
            alert_log_cap=int(os.getenv("ALERT_LOG_CAP", "1000")),
            max_transfers_per_request=int(
                os.getenv("MAX_TRANSFERS_PER_REQUEST", "1000")),
            power_cache_ttl=int(os.getenv("POWER_CACHE_TTL", "300")),
            analytics_cache_ttl=int(os.getenv("ANALYTICS_CACHE_TTL", "600")),
            prediction_cache_ttl=int(os.getenv("PREDICTION_CACHE_TTL", "600")),
            min_history_points=int(os.getenv("MIN_HISTORY_POINTS", "10")),
            prediction_window=int(os.getenv("PREDICTION_WINDOW", "30")),
            prediction_horizon_days=int(
                os.getenv("PREDICTION_HORIZON_DAYS", "30")),
            confidence_floor=float(os.getenv("CONFIDENCE_FLOOR", "0.1")),
            segment_breakpoints=_parse_int_list(
                os.getenv("SEGMENT_BREAKPOINTS", "100,1000,10000,100000")),
            segment_names=segment_names,
            log_level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        )
