"""
Voting power engine: the context object wiring the store, snapshot builder,
analytics and predictor together.

Build one engine at process start and pass it to whatever needs it. Call
shutdown() (or use it as a context manager) to stop the periodic refresh
loop and the upstream read workers.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from . import concentration
from .cache import Memoizer, SingleFlight, TTLCache
from .config import Config
from .interfaces import BalanceReader, BehaviorSource, BlockSource, Cache, SignalSource
from .models import (
    AddressAnalytics,
    ConcentrationMetrics,
    HolderEntry,
    PopulationForecast,
    PowerHistoryPoint,
    PowerPrediction,
    Segment,
    Snapshot,
    ThresholdAlert,
    TriggeredAlert,
    VotingPowerRecord,
)
from .prediction import TrendPredictor, forecast_population, power_velocity
from .segmentation import SegmentationEngine
from .snapshot import SnapshotBuilder, comparative_ranking
from .store import PowerRecordStore
from .utils import ANALYTICS_KEY, PREDICTIONS_KEY, address_cache_key, normalize_address

logger = logging.getLogger(__name__)


class VotingPowerEngine:
    """Tracks voting power and serves snapshot analytics and forecasts."""

    def __init__(self, reader: BalanceReader, blocks: BlockSource,
                 config: Optional[Config] = None, cache: Optional[Cache] = None,
                 behavior_source: Optional[BehaviorSource] = None,
                 signal_source: Optional[SignalSource] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config or Config()
        self.cache = cache if cache is not None else TTLCache()
        self.clock = clock

        self.single_flight = SingleFlight()
        self.memo = Memoizer(self.cache, self.single_flight)
        self.predictor = TrendPredictor(self.config, signal_source)
        self.store = PowerRecordStore(reader, blocks, self.cache, self.config,
                                      clock=clock, predictor=self.predictor)
        self.snapshots = SnapshotBuilder(self.store, blocks, self.config,
                                         clock=clock, single_flight=self.single_flight)
        self.segmentation = SegmentationEngine(self.config.segment_thresholds,
                                               self.config.segment_names, behavior_source)

        self._snapshot_keys = set()
        self._keys_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._refresh_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def start_tracking(self, address: str) -> VotingPowerRecord:
        return self.store.start_tracking(address)

    def stop_tracking(self, address: str) -> None:
        self.store.stop_tracking(address)

    def get_current_power(self, address: str) -> int:
        return self.store.get_current_power(address)

    def record_change(self, address: str, change_type: str, change_amount: int,
                      tx_hash: Optional[str] = None) -> Optional[PowerHistoryPoint]:
        return self.store.record_change(address, change_type, change_amount, tx_hash)

    def get_history(self, address: str, start: datetime, end: datetime) -> List[PowerHistoryPoint]:
        return self.store.get_history(address, start, end)

    def get_record(self, address: str) -> VotingPowerRecord:
        return self.store.get_record(address)

    def seed_history(self, address: str, points: Iterable[PowerHistoryPoint]) -> int:
        return self.store.seed_history(address, points)

    def get_addresses_by_power(self, limit: int = 100,
                               sort_by: str = "voting_power") -> List[VotingPowerRecord]:
        return self.store.addresses_by_power(limit, sort_by)

    def set_threshold_alert(self, address: str, threshold: int, direction: str,
                            category: str = "custom") -> ThresholdAlert:
        return self.store.set_threshold_alert(address, threshold, direction, category)

    def triggered_alerts(self) -> List[TriggeredAlert]:
        return self.store.triggered_alerts()

    # ------------------------------------------------------------------
    # Snapshots and analytics
    # ------------------------------------------------------------------

    def create_snapshot(self, description: str = "manual") -> Snapshot:
        snapshot = self.snapshots.create_snapshot(description)
        self._invalidate_snapshot_caches()
        return snapshot

    def get_snapshot(self, snapshot_id: Optional[str] = None) -> Snapshot:
        """A retained snapshot by id, or the latest one (built on first use)."""
        if snapshot_id is not None:
            return self.snapshots.get(snapshot_id)
        latest = self.snapshots.latest()
        if latest is None:
            latest = self.create_snapshot("on-demand")
        return latest

    def get_concentration_metrics(self, snapshot_id: Optional[str] = None) -> ConcentrationMetrics:
        snapshot = self.get_snapshot(snapshot_id)
        return self._memoize_for_snapshot(
            f"concentration:{snapshot.id}", lambda: concentration.analyze(snapshot))

    def get_segments(self, snapshot_id: Optional[str] = None) -> List[Segment]:
        snapshot = self.get_snapshot(snapshot_id)
        return self._memoize_for_snapshot(
            f"segments:{snapshot.id}", lambda: self.segmentation.segment(snapshot))

    def get_top_holders(self, limit: int = 10) -> List[HolderEntry]:
        return self.get_snapshot().top_holders(limit)

    def get_forecasts(self) -> List[PopulationForecast]:
        latest = self.get_snapshot()
        return self._memoize_for_snapshot(
            f"forecasts:{latest.id}",
            lambda: forecast_population(self.snapshots.snapshots(), self.config.confidence_floor))

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    def predict(self, address: str, horizon_days: int) -> List[PowerPrediction]:
        """Daily forecast for an address; empty while its history is too short."""
        address = normalize_address(address)
        # Keyed by generation: a result computed before a change can never be
        # served after it, even if it is stored late
        generation = self.store.generation(address)
        key = address_cache_key(PREDICTIONS_KEY, address, horizon_days, generation)
        self.store.register_derived_key(address, key)

        def _compute() -> List[PowerPrediction]:
            record = self.store.get_record(address)
            return self.predictor.predict(record, horizon_days, self.clock())

        return self.memo.get_or_compute(key, self.config.prediction_cache_ttl, _compute)

    def get_address_analytics(self, address: str) -> AddressAnalytics:
        """Ranking against the latest snapshot and recent power velocity."""
        address = normalize_address(address)
        generation = self.store.generation(address)
        snapshot = self.get_snapshot()
        key = address_cache_key(ANALYTICS_KEY, address, generation, snapshot.id)
        self.store.register_derived_key(address, key)

        def _compute() -> AddressAnalytics:
            record = self.store.get_record(address)
            power = record.effective_power
            category = self.segmentation.names[self.segmentation.bucket_index(power)]
            return AddressAnalytics(
                address=address,
                snapshot_id=snapshot.id,
                current_power=power,
                ranking=comparative_ranking(snapshot, address, power, category),
                velocity=power_velocity(list(record.history), power, self.clock()),
            )

        return self.memo.get_or_compute(key, self.config.analytics_cache_ttl, _compute)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_refresh(self, interval: Optional[float] = None) -> None:
        """Start building a snapshot every interval seconds in the background."""
        if self._refresh_thread is not None:
            return  # already running

        interval = interval or self.config.refresh_interval
        self._stop_event.clear()
        self._refresh_thread = threading.Thread(
            target=self._refresh_loop, args=(interval,), name="snapshot-refresh", daemon=True)
        self._refresh_thread.start()
        logger.info(f"Snapshot refresh started every {interval}s")

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._refresh_thread is not None:
            self._refresh_thread.join()
            self._refresh_thread = None
            logger.info("Snapshot refresh stopped")
        self.store.close()

    def __enter__(self) -> "VotingPowerEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _refresh_loop(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            try:
                self.create_snapshot("scheduled")
            except Exception as e:
                logger.error(f"Scheduled snapshot failed: {e}")

    # ------------------------------------------------------------------
    # Snapshot-scoped caching
    # ------------------------------------------------------------------

    def _memoize_for_snapshot(self, key: str, compute):
        with self._keys_lock:
            self._snapshot_keys.add(key)
        return self.memo.get_or_compute(key, self.config.analytics_cache_ttl, compute)

    def _invalidate_snapshot_caches(self) -> None:
        with self._keys_lock:
            keys = sorted(self._snapshot_keys)
            self._snapshot_keys.clear()
        self.memo.invalidate(*keys)
