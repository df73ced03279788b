"""
Bounded, TTL-aware cache of scout research reports keyed by topic similarity.
"""

import threading
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional

from ..models.core import ScoutLogEntry, ScoutReport
from .logging_config import get_logger
from .timestamp_utils import age_seconds, utc_now
from .vector_engine import VocabBuilder, cosine_similarity

logger = get_logger(__name__)


def summarize_report(report: ScoutReport) -> str:
    """One-line summary: first three trends, capped at 200 characters."""
    return ' | '.join(report.market_trends[:3])[:200]


class ScoutCache:
    """Ring buffer of recent scout reports.

    Lookup rebuilds one vocabulary over the query and every live entry's
    topic, so stored entries are compared under the same build as the query.
    All reads and writes hold the instance lock.
    """

    def __init__(self,
                 vocab_builder: VocabBuilder,
                 max_entries: int = 5,
                 ttl_seconds: float = 600,
                 similarity_threshold: float = 0.85):
        self.vocab_builder = vocab_builder
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.similarity_threshold = similarity_threshold
        self._entries: Deque[ScoutLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def lookup(self, topic: str, now: Optional[datetime] = None) -> Optional[ScoutLogEntry]:
        """Return the best fresh entry whose topic similarity exceeds the threshold.

        Args:
            topic: The incoming message text
            now: Reference time for TTL checks (optional, uses current time)

        Returns:
            A matching ScoutLogEntry marked as cached, or None on a miss
        """
        now = now or utc_now()
        with self._lock:
            fresh = [entry for entry in self._entries if age_seconds(entry.timestamp, now) <= self.ttl_seconds]

        if not fresh:
            return None

        vocabulary = self.vocab_builder.build([topic, *(entry.topic for entry in fresh)])
        query_vector = vocabulary.vectorize(topic)

        best: Optional[ScoutLogEntry] = None
        best_score = self.similarity_threshold
        for entry in fresh:
            score = cosine_similarity(query_vector, vocabulary.vectorize(entry.topic))
            if score > best_score:
                best, best_score = entry, score

        if best is None:
            return None

        logger.info(f'Scout cache hit (similarity {best_score:.2f}) for topic: {best.topic[:60]}')
        return ScoutLogEntry(topic=best.topic,
                             vector=best.vector,
                             summary=best.summary,
                             report=best.report,
                             source='cached',
                             timestamp=best.timestamp)

    def add(self, topic: str, report: ScoutReport, now: Optional[datetime] = None) -> ScoutLogEntry:
        """Record a live report; the oldest entry is evicted past max_entries."""
        vocabulary = self.vocab_builder.build([topic])
        entry = ScoutLogEntry(topic=topic,
                              vector=vocabulary.vectorize(topic).tolist(),
                              summary=summarize_report(report),
                              report=report,
                              source='live',
                              timestamp=now or utc_now())
        with self._lock:
            self._entries.append(entry)
        logger.debug(f'Scout cache stored report ({len(self)} entries)')
        return entry

    def entries(self) -> List[ScoutLogEntry]:
        """Snapshot of cached entries, newest first."""
        with self._lock:
            return list(reversed(self._entries))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
