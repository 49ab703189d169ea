"""
Metrics collection for QuizCache.

Cache components publish counters, gauges and latency observations here.
Each metric name plus tag set forms a bounded time series. Subscribed
sinks receive every recorded value, which is how an external monitoring
system is attached. Process level readings are sampled with psutil.
"""

import asyncio
import json
import statistics
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import psutil

from .logging_config import get_logger

Number = Union[int, float]
Clock = Callable[[], float]

# Latency buckets in seconds, sized for in-process cache operations
DEFAULT_BUCKETS = [0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, float('inf')]


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMER = "timer"


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    BYTES = "bytes"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    PERCENT = "percent"
    RATIO = "ratio"


@dataclass
class MetricValue:
    """One recorded observation."""
    name: str
    value: Number
    metric_type: MetricType
    unit: MetricUnit
    timestamp: float
    tags: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'value': self.value,
            'type': self.metric_type.value,
            'unit': self.unit.value,
            'timestamp': self.timestamp,
            'tags': self.tags,
            'labels': self.labels,
            'metadata': self.metadata
        }


@dataclass
class MetricSeries:
    """Bounded history of one metric name and tag set."""
    name: str
    metric_type: MetricType
    unit: MetricUnit
    tags: Dict[str, str] = field(default_factory=dict)
    values: Deque[MetricValue] = field(default_factory=lambda: deque(maxlen=1000))

    def append(self, value: MetricValue) -> None:
        self.values.append(value)

    def get_latest_value(self) -> Optional[MetricValue]:
        return self.values[-1] if self.values else None

    def window_statistics(self, since: float) -> Dict[str, float]:
        """Statistics over the values recorded at or after ``since``."""
        recent = [value.value for value in self.values if value.timestamp >= since]
        if not recent:
            return {}

        return {
            'count': len(recent),
            'sum': sum(recent),
            'min': min(recent),
            'max': max(recent),
            'mean': statistics.mean(recent),
            'median': statistics.median(recent),
            'std_dev': statistics.stdev(recent) if len(recent) > 1 else 0.0
        }


class _Instrument:
    """Shared state of the named instruments handed out by the collector."""

    metric_type: MetricType

    def __init__(self, collector: 'MetricsCollector', name: str, description: str = "",
                 unit: MetricUnit = MetricUnit.COUNT, tags: Optional[Dict[str, str]] = None):
        self.collector = collector
        self.name = name
        self.description = description
        self.unit = unit
        self.tags = tags or {}
        self._lock = threading.Lock()

    def _publish(self, value: Number, labels: Dict[str, str]) -> None:
        self.collector.record_metric(self.name, value, self.metric_type, self.unit, tags=self.tags, **labels)


class Counter(_Instrument):
    """Monotonic count; every increment publishes the running total."""

    metric_type = MetricType.COUNTER

    def __init__(self, collector: 'MetricsCollector', name: str, description: str = "",
                 tags: Optional[Dict[str, str]] = None):
        super().__init__(collector, name, description, MetricUnit.COUNT, tags)
        self._value: Number = 0

    def increment(self, amount: Number = 1, **labels):
        if amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        with self._lock:
            self._value += amount
            total = self._value
        self._publish(total, labels)

    def get_value(self) -> Number:
        with self._lock:
            return self._value


class Gauge(_Instrument):
    """Point-in-time reading such as cache size or hit rate."""

    metric_type = MetricType.GAUGE

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._value: Number = 0

    def set(self, value: Number, **labels):
        with self._lock:
            self._value = value
        self._publish(value, labels)

    def get_value(self) -> Number:
        with self._lock:
            return self._value


class Histogram(_Instrument):
    """Distribution with cumulative bucket counts."""

    metric_type = MetricType.HISTOGRAM

    def __init__(self, collector: 'MetricsCollector', name: str, description: str = "",
                 unit: MetricUnit = MetricUnit.SECONDS, buckets: Optional[List[float]] = None,
                 tags: Optional[Dict[str, str]] = None):
        super().__init__(collector, name, description, unit, tags)
        self.buckets = sorted(buckets or DEFAULT_BUCKETS)
        self._bucket_counts = dict.fromkeys(self.buckets, 0)
        self._sum: Number = 0
        self._count = 0

    def observe(self, value: Number, **labels):
        with self._lock:
            self._sum += value
            self._count += 1
            for bound in self.buckets:
                if value <= bound:
                    self._bucket_counts[bound] += 1
        self._publish(value, labels)

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count else 0,
                'buckets': dict(self._bucket_counts)
            }


class Timer:
    """Duration histogram named ``<name>_duration``, labelled with the outcome."""

    def __init__(self, collector: 'MetricsCollector', name: str, description: str = "",
                 tags: Optional[Dict[str, str]] = None):
        self.name = name
        self.histogram = Histogram(collector, f"{name}_duration", description, MetricUnit.SECONDS, tags=tags)

    def time(self, **labels) -> 'TimerContext':
        return TimerContext(self, labels)

    def record(self, duration: float, **labels):
        self.histogram.observe(duration, **labels)


class TimerContext:
    """Measures the enclosed block and records it with ``status`` success or error."""

    def __init__(self, timer: Timer, labels: Dict[str, str]):
        self.timer = timer
        self.labels = labels
        self.duration: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self._started
        self.timer.record(self.duration, status='error' if exc_type else 'success', **self.labels)


MetricSink = Callable[[MetricValue], None]


class MetricsCollector:
    """Registry of metric series, instruments and sinks."""

    _instance: Optional['MetricsCollector'] = None
    _instance_lock = threading.Lock()

    def __init__(self, max_series: int = 5000, clock: Optional[Clock] = None):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.max_series = max_series
        self.clock = clock or time.time
        self.metrics: Dict[str, MetricSeries] = {}
        self.instruments: Dict[str, Any] = {}
        self.sinks: List[MetricSink] = []

        self.system_metrics_interval = 30.0
        self.system_metrics_task: Optional[asyncio.Task] = None

        self.stats = {
            'metrics_recorded': 0,
            'metrics_dropped': 0,
            'sink_errors': 0,
            'start_time': self.clock(),
            'last_collection_time': None
        }

    @classmethod
    def get_instance(cls) -> 'MetricsCollector':
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @staticmethod
    def _series_key(name: str, tags: Optional[Dict[str, str]]) -> str:
        return f"{name}:{json.dumps(tags or {}, sort_keys=True, default=str)}"

    def record_metric(
        self,
        name: str,
        value: Number,
        metric_type: MetricType,
        unit: MetricUnit,
        timestamp: Optional[float] = None,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **labels
    ) -> Optional[MetricValue]:
        """Append a value to its series and hand it to every sink.

        Returns None when the value was dropped because the series limit
        has been reached.
        """
        key = self._series_key(name, tags)
        series = self.metrics.get(key)
        if series is None:
            if len(self.metrics) >= self.max_series:
                self.stats['metrics_dropped'] += 1
                return None
            series = self.metrics[key] = MetricSeries(name, metric_type, unit, tags or {})

        metric_value = MetricValue(
            name=name,
            value=value,
            metric_type=metric_type,
            unit=unit,
            timestamp=self.clock() if timestamp is None else timestamp,
            tags=series.tags,
            labels=labels,
            metadata=metadata
        )
        series.append(metric_value)
        self.stats['metrics_recorded'] += 1
        self.stats['last_collection_time'] = metric_value.timestamp

        for sink in list(self.sinks):
            try:
                sink(metric_value)
            except Exception as e:
                self.stats['sink_errors'] += 1
                self.logger.warning(f"Metric sink failed for {name}: {e}", operation="record_metric")

        return metric_value

    def subscribe(self, sink: MetricSink) -> None:
        self.sinks.append(sink)

    def unsubscribe(self, sink: MetricSink) -> bool:
        if sink in self.sinks:
            self.sinks.remove(sink)
            return True
        return False

    def _instrument(self, kind: type, name: str, tags: Optional[Dict[str, str]], factory: Callable[[], Any]):
        key = f"{kind.__name__}|{self._series_key(name, tags)}"
        instrument = self.instruments.get(key)
        if instrument is None:
            instrument = self.instruments[key] = factory()
        return instrument

    def get_counter(self, name: str, description: str = "", tags: Optional[Dict[str, str]] = None) -> Counter:
        return self._instrument(Counter, name, tags, lambda: Counter(self, name, description, tags))

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                  tags: Optional[Dict[str, str]] = None) -> Gauge:
        return self._instrument(Gauge, name, tags, lambda: Gauge(self, name, description, unit, tags))

    def get_histogram(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                      buckets: Optional[List[float]] = None, tags: Optional[Dict[str, str]] = None) -> Histogram:
        return self._instrument(
            Histogram, name, tags, lambda: Histogram(self, name, description, unit, buckets, tags)
        )

    def get_timer(self, name: str, description: str = "", tags: Optional[Dict[str, str]] = None) -> Timer:
        return self._instrument(Timer, name, tags, lambda: Timer(self, name, description, tags))

    def record_cache_snapshot(self, cache_name: str, stats: Dict[str, Any]) -> None:
        """Publish the gauges describing one cache store from its stats dict."""
        tags = {'cache_name': cache_name}
        self.get_gauge('cache.hit_rate', 'Cache hit rate', MetricUnit.RATIO, tags).set(stats['hit_rate'])
        self.get_gauge('cache.size', 'Entries in cache', tags=tags).set(stats['size'])
        self.get_gauge('cache.memory_usage', 'Estimated cache memory', MetricUnit.BYTES, tags).set(
            stats['memory_usage']
        )
        self.get_gauge('cache.evictions', 'Evicted entries', tags=tags).set(stats['evictions'])

    # Process metrics

    def collect_process_metrics(self) -> Dict[str, Number]:
        """Sample the current process with psutil and record the readings."""
        process = psutil.Process()
        with process.oneshot():
            readings = {
                'process_cpu_percent': (process.cpu_percent(), MetricUnit.PERCENT),
                'process_memory_rss_bytes': (process.memory_info().rss, MetricUnit.BYTES),
                'process_threads': (process.num_threads(), MetricUnit.COUNT),
            }

        for name, (value, unit) in readings.items():
            self.record_metric(name, value, MetricType.GAUGE, unit)
        return {name: value for name, (value, _) in readings.items()}

    async def start_system_metrics_collection(self, interval: Optional[float] = None):
        if self.system_metrics_task:
            return

        if interval is not None:
            self.system_metrics_interval = interval
        self.system_metrics_task = asyncio.create_task(self._collect_system_metrics())
        self.logger.info("Started system metrics collection", operation="start_system_metrics")

    async def stop_system_metrics_collection(self):
        if not self.system_metrics_task:
            return

        self.system_metrics_task.cancel()
        try:
            await self.system_metrics_task
        except asyncio.CancelledError:
            pass
        self.system_metrics_task = None
        self.logger.info("Stopped system metrics collection", operation="stop_system_metrics")

    async def _collect_system_metrics(self):
        while True:
            try:
                self.collect_process_metrics()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error collecting system metrics: {e}", operation="collect_system_metrics")

            try:
                await asyncio.sleep(self.system_metrics_interval)
            except asyncio.CancelledError:
                break

    # Queries and export

    def get_metric_series(self, name: str, tags: Optional[Dict[str, str]] = None) -> Optional[MetricSeries]:
        return self.metrics.get(self._series_key(name, tags))

    def find_series(self, name: str) -> List[MetricSeries]:
        """Every series recorded under ``name``, whatever its tags."""
        return [series for series in self.metrics.values() if series.name == name]

    def get_metrics_summary(self, window: float = 300.0) -> Dict[str, Any]:
        """Latest value and windowed statistics of every series.

        Args:
            window: Seconds of history included in the statistics
        """
        since = self.clock() - window
        summary = {
            'total_metrics': len(self.metrics),
            'collection_stats': dict(self.stats),
            'metrics': {}
        }

        for key, series in self.metrics.items():
            latest = series.get_latest_value()
            summary['metrics'][key] = {
                'name': series.name,
                'type': series.metric_type.value,
                'unit': series.unit.value,
                'tags': series.tags,
                'latest_value': latest.value if latest else None,
                'latest_timestamp': latest.timestamp if latest else None,
                'statistics': series.window_statistics(since),
                'value_count': len(series.values)
            }

        return summary

    def export_metrics(self, format_type: str = 'json') -> str:
        """Export metrics as 'json' or 'prometheus' text."""
        if format_type == 'json':
            return json.dumps(self.get_metrics_summary(), default=str, indent=2)
        if format_type == 'prometheus':
            return self._export_prometheus_format()
        raise ValueError(f"Unsupported format: {format_type}")

    def _export_prometheus_format(self) -> str:
        lines = []
        for series in self.metrics.values():
            latest = series.get_latest_value()
            if latest is None:
                continue

            metric_name = series.name.replace('-', '_').replace('.', '_')
            labels = {**series.tags, **latest.labels}
            label_str = ','.join(f'{k}="{v}"' for k, v in labels.items())

            lines.append(f"# HELP {metric_name} {series.name}")
            lines.append(f"# TYPE {metric_name} {series.metric_type.value}")
            lines.append(f"{metric_name}{{{label_str}}} {latest.value}" if label_str else f"{metric_name} {latest.value}")

        return '\n'.join(lines)

    def reset(self) -> None:
        """Drop every recorded series and instrument."""
        self.metrics.clear()
        self.instruments.clear()
        self.stats.update(metrics_recorded=0, metrics_dropped=0, sink_errors=0, last_collection_time=None)


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    return MetricsCollector.get_instance()
