import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class FetchMetrics:
    """Metrics for a single paginated fetch."""
    fetch_id: str
    method: str
    pages_fetched: int = 0
    record_count: int = 0
    retry_count: int = 0
    rate_limit_wait_ms: int = 0
    duration_ms: int = 0
    succeeded: bool = False
    error_type: Optional[str] = None
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    @property
    def records_per_page(self) -> float:
        """Average number of records per fetched page."""
        if self.pages_fetched == 0:
            return 0.0
        return self.record_count / self.pages_fetched

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data['start_time'] = self.start_time.isoformat()
        data['end_time'] = self.end_time.isoformat() if self.end_time else None
        return data


class MetricsCollector:
    """Collects fetch metrics. Safe to share between concurrent fetches."""

    def __init__(self):
        self._lock = threading.Lock()
        self._fetches: Dict[str, FetchMetrics] = {}

    def start_fetch(self, fetch_id: str, method: str) -> None:
        with self._lock:
            self._fetches[fetch_id] = FetchMetrics(fetch_id=fetch_id, method=method)

    def record_page(self, fetch_id: str, record_count: int) -> None:
        with self._lock:
            metrics = self._fetches.get(fetch_id)
            if metrics:
                metrics.pages_fetched += 1
                metrics.record_count += max(0, record_count)

    def record_retry(self, fetch_id: str, wait_ms: int) -> None:
        """Record one rate-limit retry and the time waited before it."""
        with self._lock:
            metrics = self._fetches.get(fetch_id)
            if metrics:
                metrics.retry_count += 1
                metrics.rate_limit_wait_ms += max(0, wait_ms)

    def end_fetch(self, fetch_id: str, record_count: int, error: Optional[BaseException] = None) -> None:
        with self._lock:
            metrics = self._fetches.get(fetch_id)
            if not metrics:
                return
            metrics.end_time = datetime.now()
            metrics.duration_ms = int((metrics.end_time - metrics.start_time).total_seconds() * 1000)
            metrics.succeeded = error is None
            metrics.error_type = type(error).__name__ if error is not None else None
            if error is None:
                metrics.record_count = record_count

    def get_fetch(self, fetch_id: str) -> Optional[FetchMetrics]:
        with self._lock:
            return self._fetches.get(fetch_id)

    def get_fetches(self) -> List[FetchMetrics]:
        with self._lock:
            return list(self._fetches.values())

    def summary(self) -> Dict[str, Any]:
        """Aggregate metrics across all recorded fetches."""
        with self._lock:
            fetches = list(self._fetches.values())
        return {
            'fetches': len(fetches),
            'succeeded': sum(1 for f in fetches if f.succeeded),
            'failed': sum(1 for f in fetches if f.end_time and not f.succeeded),
            'pages_fetched': sum(f.pages_fetched for f in fetches),
            'records': sum(f.record_count for f in fetches if f.succeeded),
            'retry_count': sum(f.retry_count for f in fetches),
            'rate_limit_wait_ms': sum(f.rate_limit_wait_ms for f in fetches),
            'duration_ms': sum(f.duration_ms for f in fetches),
        }

    def reset(self) -> None:
        with self._lock:
            self._fetches.clear()
