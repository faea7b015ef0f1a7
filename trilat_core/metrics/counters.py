"""
Metrics counters and histograms implementation.

Provides thread-safe counters for:
- Message counts (in, accepted, dropped)
- Drop reasons (parse_error, not_registered, insufficient_anchors, etc.)
- Session lifecycle (opened, closed, registrations)
- Solver statistics (attempts, converged, unconverged)
- Histograms (solve iterations, residuals)
"""

import logging
import threading
import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict
import statistics

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Snapshot of counter state at a point in time."""
    
    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]
    
    def total_dropped(self) -> int:
        """Total messages dropped across all reasons."""
        return sum(self.drop_reasons.values())
    
    def drop_rate(self, total_messages: int) -> float:
        """Calculate drop rate as percentage."""
        if total_messages == 0:
            return 0.0
        return (self.total_dropped() / total_messages) * 100.0


class MetricsCollector:
    """
    Thread-safe metrics collection.
    
    Usage:
        collector = MetricsCollector()
        collector.increment('messages_in')
        collector.increment_drop('parse_error')
        collector.record_histogram('solve_residual_m', 0.12)
        
        snapshot = collector.snapshot()
        print(f"Total dropped: {snapshot.total_dropped()}")
    """
    
    # Standard drop reason codes
    DROP_REASONS = {
        'parse_error': 'Malformed or unknown message, discarded',
        'not_registered': 'Report received before identity was confirmed',
        'invalid_distance': 'Non-positive or non-finite distance estimate',
        'insufficient_anchors': 'Less than the minimum number of eligible anchors',
        'unknown_anchor': 'Message or request for an unknown anchor id',
        'outbound_overflow': 'Outbound queue full, frame dropped',
    }
    
    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()
        
        # Initialize standard counters to 0 for consistent reporting
        self._init_standard_counters()
    
    def _init_standard_counters(self):
        """Initialize standard counter keys."""
        standard_counters = [
            'messages_in',
            'reports_accepted',
            'sessions_opened',
            'sessions_closed',
            'registrations',
            'solve_attempts',
            'solve_converged',
            'solve_unconverged',
        ]
        
        with self._lock:
            for counter in standard_counters:
                if counter not in self._counters:
                    self._counters[counter] = 0
            
            for reason in self.DROP_REASONS:
                if reason not in self._drop_reasons:
                    self._drop_reasons[reason] = 0
    
    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter by value.
        
        Args:
            counter_name: Name of counter to increment
            value: Amount to increment (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value
    
    def increment_drop(self, reason: str, value: int = 1):
        """
        Increment drop counter for specific reason.
        
        Args:
            reason: Drop reason code (should be in DROP_REASONS)
            value: Amount to increment (default 1)
        """
        if reason not in self.DROP_REASONS:
            # Unknown reasons are still counted
            logger.warning(f"Unknown drop reason '{reason}'")
        
        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['messages_dropped'] += value
    
    def get_counter(self, counter_name: str) -> int:
        """
        Get current value of a counter.
        
        Args:
            counter_name: Name of counter
            
        Returns:
            Current counter value
        """
        with self._lock:
            return self._counters.get(counter_name, 0)
    
    def get_drop_count(self, reason: str) -> int:
        """Get current drop count for a reason code."""
        with self._lock:
            return self._drop_reasons.get(reason, 0)
    
    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.
        
        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Maximum samples to keep (prevents unbounded growth)
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)
            
            if len(samples) > max_samples:
                # Keep most recent half
                self._histograms[histogram_name] = samples[-max_samples//2:]
    
    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Get statistics for a histogram.
        
        Args:
            histogram_name: Name of histogram
            
        Returns:
            Dict with min, max, mean, median, p95, count
            None if histogram is empty
        """
        with self._lock:
            samples = self._histograms.get(histogram_name, [])
            
            if not samples:
                return None
            
            sorted_samples = sorted(samples)
            count = len(sorted_samples)
            
            return {
                'count': count,
                'min': sorted_samples[0],
                'max': sorted_samples[-1],
                'mean': statistics.mean(sorted_samples),
                'median': statistics.median(sorted_samples),
                'p95': sorted_samples[int(count * 0.95)] if count > 1 else sorted_samples[0],
            }
    
    def snapshot(self) -> CounterSnapshot:
        """
        Get a snapshot of current metrics state.
        
        Returns:
            CounterSnapshot with copies of all metrics
        """
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )
    
    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
            self._start_time = time.time()
        self._init_standard_counters()
    
    def get_uptime(self) -> float:
        """Get uptime in seconds since initialization."""
        return time.time() - self._start_time
    
    def to_dict(self) -> dict:
        """Counters, drop reasons and histogram stats for status reporting."""
        snapshot = self.snapshot()
        return {
            'uptime_s': round(self.get_uptime(), 1),
            'counters': snapshot.counters,
            'drop_reasons': {k: v for k, v in snapshot.drop_reasons.items() if v > 0},
            'drop_rate_pct': round(snapshot.drop_rate(snapshot.counters.get('messages_in', 0)), 2),
            'histograms': {
                name: self.get_histogram_stats(name)
                for name in sorted(snapshot.histograms)
            },
        }
