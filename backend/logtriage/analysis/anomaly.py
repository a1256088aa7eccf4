import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import timedelta
from fractions import Fraction
from typing import Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from logtriage.config import Settings, settings as default_settings
from logtriage.errors import DetectionError, UploadNotFound
from logtriage.models import Anomaly, DetectorId, Event
from logtriage.schemas import EventFilter
from logtriage.storage.stores import AnomalyStore, EventStore, UploadStore
from logtriage.utils.normalize import floor_to_bucket

logger = logging.getLogger(__name__)

# per-unit data problems that skip one group instead of failing the run
UNIT_ERRORS = (ValueError, TypeError, ArithmeticError)

@dataclass
class Finding:
    detector: DetectorId
    reason: str
    confidence: float
    event_id: Optional[int] = None

def actor_of(event: Event) -> Optional[str]:
    """User name when present, otherwise the source IP."""
    return event.user_name or event.src_ip or None

def _first(events: Sequence[Event]) -> Optional[Event]:
    if not events:
        return None
    return min(events, key=lambda e: (e.ts is None, e.ts, e.id))

def z_score(x: float, mean: float, stdev: float) -> float:
    if not math.isfinite(stdev) or stdev == 0:
        return 0.0
    return (x - mean) / stdev

def confidence_from_z(z: float, cap: float = 6.0) -> float:
    return max(0.1, round(min(abs(z), cap) / cap, 2))

def percentile_exact(sorted_values: Sequence[int], q: float) -> Fraction:
    """
    Linear-interpolated percentile (same definition as SQL percentile_cont)
    computed with rationals so large byte counts stay exact.
    """
    if not sorted_values:
        raise ValueError("percentile of empty sequence")
    pos = Fraction(str(q)) * (len(sorted_values) - 1)
    lo = math.floor(pos)
    frac = pos - lo
    if lo + 1 >= len(sorted_values):
        return Fraction(sorted_values[lo])
    a, b = sorted_values[lo], sorted_values[lo + 1]
    return Fraction(a) + frac * (b - a)

def _log10_ratio(value: int, threshold: Fraction) -> float:
    threshold = max(threshold, Fraction(1))
    value = max(value, 1)
    return math.log10(value) - (math.log10(threshold.numerator) - math.log10(threshold.denominator))

class AnomalyDetectionEngine:
    """
    Five fixed statistical detectors over one upload's events.
    Every run recomputes from scratch and replaces the upload's anomaly set
    atomically.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def detect(self, events: Sequence[Event]) -> Dict[DetectorId, List[Finding]]:
        """Run all detectors in memory; no database access."""
        return {
            DetectorId.RATE_SPIKE: self.rate_spike(events),
            DetectorId.RARE_DOMAIN: self.rare_domain(events),
            DetectorId.ERROR_RATIO: self.error_ratio(events),
            DetectorId.EGRESS_OUTLIER: self.egress_outlier(events),
            DetectorId.IMPOSSIBLE_TRAVEL: self.impossible_travel(events),
        }

    def run(self, db: Session, upload_id: str) -> Dict[str, int]:
        if UploadStore(db).get(upload_id) is None:
            raise UploadNotFound(upload_id)

        events = EventStore(db).find_many(EventFilter(upload_id=upload_id))
        try:
            findings = self.detect(events)
        except Exception as e:
            logger.exception("Anomaly detection failed for upload %s", upload_id)
            raise DetectionError(f"detector failed: {e}") from e

        anomalies = AnomalyStore(db)
        try:
            anomalies.delete_many(upload_id)
            anomalies.create_batch(
                Anomaly(
                    upload_id=upload_id,
                    detector=f.detector.value,
                    reason_text=f.reason,
                    confidence=f.confidence,
                    event_id=f.event_id,
                )
                for group in findings.values() for f in group
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise DetectionError(f"could not store anomalies: {e}") from e

        counts = {detector.value: len(group) for detector, group in findings.items()}
        logger.info("Anomaly detection for upload %s over %d events: %s", upload_id, len(events), counts)
        return counts

    # D1
    def rate_spike(self, events: Sequence[Event]) -> List[Finding]:
        width = self.config.DETECTION_BUCKET_MINUTES
        buckets = defaultdict(lambda: defaultdict(list))
        for e in events:
            actor = actor_of(e)
            if actor is None or e.ts is None:
                continue
            buckets[actor][floor_to_bucket(e.ts, width)].append(e)

        findings = []
        for actor in sorted(buckets):
            per_bucket = buckets[actor]
            try:
                counts = np.array([len(v) for v in per_bucket.values()], dtype=float)
                mean = float(counts.mean())
                stdev = float(np.sqrt(((counts - mean) ** 2).sum() / max(len(counts) - 1, 1)))
                for bucket in sorted(per_bucket):
                    c = len(per_bucket[bucket])
                    z = z_score(c, mean, stdev)
                    if z > self.config.D1_Z_THRESHOLD:
                        first = _first(per_bucket[bucket])
                        findings.append(Finding(
                            DetectorId.RATE_SPIKE,
                            f"Spike for actor={actor} count={c} vs mean≈{mean:.1f} (z={z:.2f})",
                            confidence_from_z(z),
                            first.id if first else None,
                        ))
            except UNIT_ERRORS as e:
                logger.warning("Rate spike skipped actor %s: %s", actor, e)
        return findings

    # D2
    def rare_domain(self, events: Sequence[Event]) -> List[Finding]:
        total = len(events)
        if total == 0:
            return []
        by_domain = defaultdict(list)
        for e in events:
            if e.domain:
                by_domain[e.domain].append(e)

        threshold = max(1, math.floor(total * self.config.D2_RARE_FRACTION))
        findings = []
        for domain, group in sorted(by_domain.items(), key=lambda kv: (len(kv[1]), kv[0])):
            count = len(group)
            if count > threshold:
                continue
            first = _first(group)
            findings.append(Finding(
                DetectorId.RARE_DOMAIN,
                f"Rare domain {domain} (count={count} of {total})",
                round(min(1.0, 0.6 + 0.1 * (threshold - count + 1)), 2),
                first.id if first else None,
            ))
        return findings

    # D3
    def error_ratio(self, events: Sequence[Event]) -> List[Finding]:
        by_actor = defaultdict(list)
        for e in events:
            actor = actor_of(e)
            if actor is not None:
                by_actor[actor].append(e)

        findings = []
        for actor in sorted(by_actor):
            group = by_actor[actor]
            total = len(group)
            if total < self.config.D3_MIN_EVENTS:
                continue
            errors = sum(1 for e in group if e.status is not None and e.status >= 400)
            ratio = errors / total
            if ratio < self.config.D3_ERROR_RATIO:
                continue
            first = _first(group)
            findings.append(Finding(
                DetectorId.ERROR_RATIO,
                f"High error ratio for actor={actor} ({errors}/{total}={ratio * 100:.0f}%)",
                round(min(1.0, 0.5 + ratio), 2),
                first.id if first else None,
            ))
        findings.sort(key=lambda f: f.confidence, reverse=True)
        return findings

    # D4
    def egress_outlier(self, events: Sequence[Event]) -> List[Finding]:
        with_bytes = [e for e in events if e.bytes_out is not None]
        if not with_bytes:
            return []
        values = sorted(int(e.bytes_out) for e in with_bytes)
        p95 = percentile_exact(values, 0.95)
        p99 = percentile_exact(values, 0.99)
        threshold = max(p99, self.config.D4_P95_MULTIPLIER * p95)

        findings = []
        outliers = [e for e in with_bytes if int(e.bytes_out) > threshold]
        for e in sorted(outliers, key=lambda e: (-int(e.bytes_out), e.id)):
            try:
                conf = min(1.0, max(0.6, 0.6 + _log10_ratio(int(e.bytes_out), threshold)))
            except UNIT_ERRORS as err:
                logger.warning("Egress outlier skipped event %s: %s", e.id, err)
                continue
            findings.append(Finding(
                DetectorId.EGRESS_OUTLIER,
                f"Large bytes_out ~ {e.bytes_out} to {e.domain or e.url or 'unknown'} (threshold {float(threshold):.0f})",
                round(conf, 2),
                e.id,
            ))
        return findings

    # D5
    def impossible_travel(self, events: Sequence[Event]) -> List[Finding]:
        window = timedelta(hours=self.config.D5_TRAVEL_WINDOW_HOURS)
        rows = [e for e in events if actor_of(e) is not None and e.ts is not None and e.country]
        rows.sort(key=lambda e: (actor_of(e), e.ts, e.id))

        findings = []
        for prev, cur in zip(rows, rows[1:]):
            if actor_of(prev) != actor_of(cur) or prev.country == cur.country:
                continue
            delta = cur.ts - prev.ts
            if delta <= window:
                hours = delta.total_seconds() / 3600
                findings.append(Finding(
                    DetectorId.IMPOSSIBLE_TRAVEL,
                    f"User {actor_of(cur)} moved {prev.country}→{cur.country} in ~{hours:.2f}h",
                    0.8,
                    cur.id,
                ))
        return findings

def run_anomaly_detection(db: Session, upload_id: str, config: Optional[Settings] = None) -> Dict[str, int]:
    """Replace an upload's anomalies with a fresh detection run; returns counts per detector."""
    return AnomalyDetectionEngine(config).run(db, upload_id)
