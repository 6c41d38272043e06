"""Per-room, per-hour learned temperature change rates."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
import logging
import math
import statistics
from typing import Any

from .dab import DEFAULT_SETTINGS, DabSettings
from .models import ACTIVE_HVAC_MODES
from .utils import coerce_float, coerce_rate, parse_timestamp

_LOGGER = logging.getLogger(__name__)

HISTORY_VERSION = 1
MAD_SCALE = 1.4826

ACTION_ACCEPT = "accept"
ACTION_CLIP = "clip"
ACTION_REJECT = "reject"

BucketKey = tuple[str, str, int]


@dataclass(frozen=True)
class HourlyRateRecord:
    """One observed rate sample."""

    room_id: str
    hvac_mode: str
    hour: int
    value: float
    observed_at: datetime

    def as_list(self) -> list[Any]:
        return [self.observed_at.isoformat(), self.room_id, self.hvac_mode, self.hour, self.value]

    @classmethod
    def from_list(cls, item: Any) -> HourlyRateRecord | None:
        if not isinstance(item, (list, tuple)) or len(item) != 5:
            return None
        observed_at = parse_timestamp(item[0])
        room_id, hvac_mode = item[1], item[2]
        value = coerce_rate(item[4])
        try:
            hour = int(item[3])
        except (TypeError, ValueError):
            return None
        if (
            observed_at is None
            or not room_id
            or hvac_mode not in ACTIVE_HVAC_MODES
            or not 0 <= hour <= 23
            or not value
        ):
            return None
        return cls(str(room_id), hvac_mode, hour, value, observed_at)


@dataclass(frozen=True)
class EffectiveRateMetadata:
    """How a bucket's effective rate was derived."""

    room_id: str
    hvac_mode: str
    hour: int
    raw_average: float | None
    effective_rate: float
    sample_count: int
    anomaly_flag: bool = False
    carry_forward_used: bool = False
    floor_used: bool = False
    ewma_used: bool = False
    boost_percent: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "hvac_mode": self.hvac_mode,
            "hour": self.hour,
            "rate": round(self.effective_rate, 6),
            "raw_average": round(self.raw_average, 6) if self.raw_average is not None else None,
            "sample_count": self.sample_count,
            "anomaly_flag": self.anomaly_flag,
            "carry_forward_used": self.carry_forward_used,
            "floor_used": self.floor_used,
            "ewma_used": self.ewma_used,
            "boost_percent": self.boost_percent,
        }


@dataclass(frozen=True)
class OutlierAssessment:
    """Verdict on a candidate sample against its bucket."""

    action: str
    value: float
    bound: float | None = None
    center: float | None = None
    scale: float | None = None

    @property
    def anomalous(self) -> bool:
        return self.action != ACTION_ACCEPT


@dataclass(frozen=True)
class AnomalyInfluence:
    """Dampening applied to one flagged sample, decaying over later commits."""

    hvac_mode: str
    observed_at: datetime
    raw_value: float
    bound: float
    action: str
    weight: float = 1.0

    def matches(self, record: HourlyRateRecord) -> bool:
        return (
            record.hvac_mode == self.hvac_mode
            and record.observed_at == self.observed_at
            and record.value == self.raw_value
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "hvac_mode": self.hvac_mode,
            "observed_at": self.observed_at.isoformat(),
            "raw_value": self.raw_value,
            "bound": self.bound,
            "action": self.action,
            "weight": self.weight,
        }


@dataclass(frozen=True)
class EwmaEntry:
    value: float
    updated_at: datetime


def compute_ewma_alpha(half_life_days: float) -> float:
    """Decay factor giving a sample half its weight after ``half_life_days`` updates."""
    if half_life_days <= 0:
        return 1.0
    return 1 - math.pow(2, -1 / half_life_days)


class RateHistoryStore:
    """Owns the sample list and every table derived from it.

    The flat, time-ordered sample list is the source of truth. The
    ``room -> mode -> hour`` index and the per-bucket metadata are rebuilt
    from it and never persisted. The EWMA, anomaly-influence, daily-aggregate
    and adaptive-outcome tables are persisted alongside it through
    :meth:`as_dict` / :meth:`from_dict`.
    """

    def __init__(self, settings: DabSettings = DEFAULT_SETTINGS) -> None:
        self._settings = settings
        self._entries: list[HourlyRateRecord] = []
        self._index: dict[str, dict[str, dict[int, list[HourlyRateRecord]]]] = {}
        self._metadata: dict[BucketKey, EffectiveRateMetadata] = {}
        self._ewma: dict[BucketKey, EwmaEntry] = {}
        self._anomalies: dict[tuple[str, int], AnomalyInfluence] = {}
        self._daily: dict[tuple[str, str], dict[str, dict[str, float]]] = {}
        self._outcomes: dict[tuple[str, str], list[tuple[float, float]]] = {}
        self._purged_before: datetime | None = None

    @property
    def settings(self) -> DabSettings:
        return self._settings

    @settings.setter
    def settings(self, settings: DabSettings) -> None:
        self._settings = settings

    @property
    def entries(self) -> list[HourlyRateRecord]:
        return list(self._entries)

    def rooms(self) -> list[str]:
        return sorted(self._index)

    def get_hourly_rates(self, room_id: str, hvac_mode: str, hour: int) -> list[float]:
        records = self._index.get(room_id, {}).get(hvac_mode, {}).get(hour, [])
        return [record.value for record in records]

    def append(
        self,
        room_id: str,
        hvac_mode: str,
        hour: int,
        sample: float | None,
        observed_at: datetime,
    ) -> bool:
        """Record a sample; return False if it was rejected as malformed."""
        value = coerce_float(sample)
        if not room_id or hvac_mode not in ACTIVE_HVAC_MODES:
            _LOGGER.warning("Rejected rate sample with room=%s mode=%s", room_id, hvac_mode)
            return False
        if not isinstance(hour, int) or isinstance(hour, bool) or not 0 <= hour <= 23:
            _LOGGER.warning("Rejected rate sample for %s with hour=%s", room_id, hour)
            return False
        if value is None or value <= 0:
            _LOGGER.warning("Rejected rate sample for %s/%s: %s", room_id, hvac_mode, sample)
            return False
        if observed_at is None:
            _LOGGER.warning("Rejected rate sample for %s without a timestamp", room_id)
            return False

        assessment = OutlierAssessment(ACTION_ACCEPT, value)
        if self._settings.enable_outlier_rejection:
            assessment = self.assess_outlier(room_id, hvac_mode, hour, value)

        record = HourlyRateRecord(room_id, hvac_mode, hour, value, observed_at)
        self._decay_anomaly(room_id, hour)
        if assessment.anomalous:
            _LOGGER.info(
                "Outlier rate %.4f for %s/%s hour %s (%s toward %.4f)",
                value,
                room_id,
                hvac_mode,
                hour,
                assessment.action,
                assessment.bound,
            )
            previous = self._anomalies.get((room_id, hour))
            self._anomalies[(room_id, hour)] = AnomalyInfluence(
                hvac_mode, observed_at, value, assessment.bound, assessment.action
            )
            if previous and previous.hvac_mode != hvac_mode:
                self._recompute_bucket(room_id, previous.hvac_mode, hour)

        if assessment.action != ACTION_REJECT:
            self._update_ewma((room_id, hvac_mode, hour), assessment.value, observed_at)

        if self._entries and self._entries[-1].observed_at > observed_at:
            self._entries.append(record)
            self._entries.sort(key=lambda item: item.observed_at)
        else:
            self._entries.append(record)

        # Purging rebuilds the index and every bucket's metadata.
        self.purge(observed_at)
        return True

    def assess_outlier(
        self, room_id: str, hvac_mode: str, hour: int, candidate: float
    ) -> OutlierAssessment:
        """Compare a candidate with its bucket using median/MAD.

        Falls back to mean/standard deviation when the MAD is zero. A zero
        spread is floored to a fraction of the mean so a unanimous bucket
        still flags a wildly different candidate.
        """
        settings = self._settings
        values = self.get_hourly_rates(room_id, hvac_mode, hour)
        if len(values) < settings.min_samples_for_outlier:
            return OutlierAssessment(ACTION_ACCEPT, candidate)

        k = settings.outlier_threshold_mad
        center = statistics.median(values)
        mad = statistics.median([abs(value - center) for value in values])
        if mad > 0:
            scale = MAD_SCALE * mad
        else:
            center = statistics.fmean(values)
            scale = statistics.stdev(values) if len(values) > 1 else 0.0
            scale = max(scale, abs(center) * settings.outlier_min_scale_fraction)
        if scale <= 0 or abs(candidate - center) <= k * scale:
            return OutlierAssessment(ACTION_ACCEPT, candidate, center=center, scale=scale)

        bound = center + (k * scale if candidate > center else -k * scale)
        bound = max(bound, settings.min_temp_change_rate)
        if settings.outlier_mode == ACTION_REJECT:
            return OutlierAssessment(ACTION_REJECT, candidate, bound, center, scale)
        return OutlierAssessment(ACTION_CLIP, bound, bound, center, scale)

    def get_effective_rate(self, room_id: str, hvac_mode: str, hour: int) -> float:
        return self.get_effective_rate_info(room_id, hvac_mode, hour).effective_rate

    def get_effective_rate_info(
        self, room_id: str, hvac_mode: str, hour: int
    ) -> EffectiveRateMetadata:
        """Resolve the rate used for a bucket without changing any state."""
        settings = self._settings
        floor = EffectiveRateMetadata(
            room_id, hvac_mode, hour, None, settings.min_temp_change_rate, 0, floor_used=True
        )
        if hvac_mode not in ACTIVE_HVAC_MODES or not 0 <= hour <= 23:
            return floor

        boost = self.adaptive_boost_percent(room_id, hvac_mode)
        key = (room_id, hvac_mode, hour)
        meta = self._metadata.get(key)
        ewma = self._ewma.get(key) if settings.enable_ewma else None
        if ewma is not None:
            return self._boosted(
                replace(
                    meta or EffectiveRateMetadata(room_id, hvac_mode, hour, None, ewma.value, 0),
                    effective_rate=ewma.value,
                    ewma_used=True,
                ),
                boost,
            )
        if meta is not None and meta.sample_count:
            return self._boosted(meta, boost)

        for offset in range(1, 24):
            prior_hour = (hour - offset) % 24
            prior_key = (room_id, hvac_mode, prior_hour)
            prior = self._metadata.get(prior_key)
            prior_ewma = self._ewma.get(prior_key) if settings.enable_ewma else None
            if prior_ewma is None and (prior is None or not prior.sample_count):
                continue
            value = prior_ewma.value if prior_ewma is not None else prior.effective_rate
            return self._boosted(
                EffectiveRateMetadata(
                    room_id, hvac_mode, hour, None, value, 0, carry_forward_used=True
                ),
                boost,
            )

        anchor = self._carry_forward_anchor(room_id, hvac_mode)
        if anchor is not None:
            return self._boosted(
                EffectiveRateMetadata(
                    room_id, hvac_mode, hour, None, anchor.value, 0, carry_forward_used=True
                ),
                boost,
            )
        return floor

    def record_outcome(
        self, room_id: str, hvac_mode: str, predicted: float | None, actual: float | None
    ) -> None:
        """Remember how a seeded rate compared with the rate actually achieved."""
        predicted = coerce_rate(predicted)
        actual = coerce_rate(actual)
        if not predicted or not actual or hvac_mode not in ACTIVE_HVAC_MODES:
            return
        settings = self._settings
        keep = settings.adaptive_lookback_periods + max(
            1, math.ceil(settings.adaptive_max_boost_percent / max(settings.adaptive_boost_percent, 0.1))
        )
        outcomes = self._outcomes.setdefault((room_id, hvac_mode), [])
        outcomes.append((predicted, actual))
        del outcomes[:-keep]

    def adaptive_boost_percent(self, room_id: str, hvac_mode: str) -> float:
        """Boost for rooms that keep beating their predicted rate.

        The first boost step applies once ``adaptive_lookback_periods`` cycles
        in a row exceeded the prediction by ``adaptive_threshold_percent``;
        each further consecutive cycle adds another step up to the cap.
        """
        settings = self._settings
        if not settings.enable_adaptive_boost or settings.adaptive_lookback_periods <= 0:
            return 0.0
        threshold = 1 + settings.adaptive_threshold_percent / 100
        streak = 0
        for predicted, actual in reversed(self._outcomes.get((room_id, hvac_mode), [])):
            if actual > predicted * threshold:
                streak += 1
            else:
                break
        if streak < settings.adaptive_lookback_periods:
            return 0.0
        steps = streak - settings.adaptive_lookback_periods + 1
        return min(settings.adaptive_max_boost_percent, settings.adaptive_boost_percent * steps)

    def purge(self, now: datetime, retention_days: int | None = None) -> int:
        """Drop data older than the retention window; return removed sample count.

        A room/mode that would lose every sample keeps its newest one as a
        carry-forward anchor, outside of any hour bucket.
        """
        days = self._settings.retention_days if retention_days is None else max(0, retention_days)
        cutoff = now - timedelta(days=days)

        live = [record for record in self._entries if record.observed_at >= cutoff]
        live_keys = {(record.room_id, record.hvac_mode) for record in live}
        anchors: dict[tuple[str, str], HourlyRateRecord] = {}
        for record in self._entries:
            key = (record.room_id, record.hvac_mode)
            if key in live_keys:
                continue
            current = anchors.get(key)
            if current is None or record.observed_at >= current.observed_at:
                anchors[key] = record

        kept = sorted([*live, *anchors.values()], key=lambda item: item.observed_at)
        removed = len(self._entries) - len(kept)
        self._entries = kept
        if self._purged_before is None or cutoff > self._purged_before:
            self._purged_before = cutoff

        self._ewma = {
            key: entry for key, entry in self._ewma.items() if entry.updated_at >= cutoff
        }
        self._anomalies = {
            key: entry for key, entry in self._anomalies.items() if entry.observed_at >= cutoff
        }
        cutoff_day = cutoff.date().isoformat()
        for key in list(self._daily):
            days_map = {
                day: stats for day, stats in self._daily[key].items() if day >= cutoff_day
            }
            if days_map:
                self._daily[key] = days_map
            else:
                del self._daily[key]

        if removed:
            _LOGGER.debug("Purged %s rate samples older than %s", removed, cutoff.isoformat())
        self._rebuild()
        return removed

    def aggregate_daily(self, day: date) -> int:
        """Store the average rate per room/mode for ``day``; return rows written."""
        grouped: dict[tuple[str, str], list[float]] = {}
        for record in self._entries:
            if record.observed_at.date() == day:
                grouped.setdefault((record.room_id, record.hvac_mode), []).append(record.value)
        for key, values in grouped.items():
            self._daily.setdefault(key, {})[day.isoformat()] = {
                "average": round(statistics.fmean(values), 6),
                "count": len(values),
            }
        return len(grouped)

    def daily_stats(self, room_id: str, hvac_mode: str) -> dict[str, dict[str, float]]:
        return dict(self._daily.get((room_id, hvac_mode), {}))

    def diagnostics_rows(self) -> list[dict[str, Any]]:
        """Effective rate per hour for every room/mode that has any data."""
        pairs = sorted(
            {(record.room_id, record.hvac_mode) for record in self._entries}
            | {(room_id, mode) for room_id, mode, _ in self._ewma}
        )
        rows: list[dict[str, Any]] = []
        for room_id, hvac_mode in pairs:
            for hour in range(24):
                rows.append(self.get_effective_rate_info(room_id, hvac_mode, hour).as_dict())
        return rows

    def as_dict(self) -> dict[str, Any]:
        ewma: dict[str, dict[str, dict[str, Any]]] = {}
        for (room_id, mode, hour), entry in self._ewma.items():
            ewma.setdefault(room_id, {}).setdefault(mode, {})[str(hour)] = {
                "value": entry.value,
                "updated_at": entry.updated_at.isoformat(),
            }
        anomalies: dict[str, dict[str, Any]] = {}
        for (room_id, hour), entry in self._anomalies.items():
            anomalies.setdefault(room_id, {})[str(hour)] = entry.as_dict()
        daily: dict[str, dict[str, Any]] = {}
        for (room_id, mode), days in self._daily.items():
            daily.setdefault(room_id, {})[mode] = dict(days)
        outcomes: dict[str, dict[str, Any]] = {}
        for (room_id, mode), pairs in self._outcomes.items():
            outcomes.setdefault(room_id, {})[mode] = [list(pair) for pair in pairs]
        return {
            "version": HISTORY_VERSION,
            "entries": [record.as_list() for record in self._entries],
            "purged_before": self._purged_before.isoformat() if self._purged_before else None,
            "ewma": ewma,
            "anomalies": anomalies,
            "daily": daily,
            "outcomes": outcomes,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any] | None, settings: DabSettings = DEFAULT_SETTINGS
    ) -> RateHistoryStore:
        store = cls(settings)
        if not isinstance(data, dict):
            return store

        records = [HourlyRateRecord.from_list(item) for item in data.get("entries") or []]
        skipped = sum(1 for record in records if record is None)
        if skipped:
            _LOGGER.warning("Skipped %s malformed stored rate samples", skipped)
        store._entries = sorted(
            (record for record in records if record is not None),
            key=lambda item: item.observed_at,
        )
        store._purged_before = parse_timestamp(data.get("purged_before"))

        for room_id, modes in _items(data.get("ewma")):
            for mode, hours in _items(modes):
                for hour, entry in _items(hours):
                    key = _bucket_key(room_id, mode, hour)
                    value = coerce_rate((entry or {}).get("value"))
                    updated_at = parse_timestamp((entry or {}).get("updated_at"))
                    if key and value and updated_at:
                        store._ewma[key] = EwmaEntry(value, updated_at)

        for room_id, hours in _items(data.get("anomalies")):
            for hour, entry in _items(hours):
                influence = _anomaly_from_dict(entry)
                key = _bucket_key(room_id, getattr(influence, "hvac_mode", None), hour)
                if influence and key:
                    store._anomalies[(key[0], key[2])] = influence

        for room_id, modes in _items(data.get("daily")):
            for mode, days in _items(modes):
                if mode in ACTIVE_HVAC_MODES and isinstance(days, dict):
                    store._daily[(str(room_id), mode)] = {
                        str(day): stats for day, stats in days.items() if isinstance(stats, dict)
                    }

        for room_id, modes in _items(data.get("outcomes")):
            for mode, pairs in _items(modes):
                for pair in pairs if isinstance(pairs, list) else []:
                    if isinstance(pair, (list, tuple)) and len(pair) == 2:
                        store.record_outcome(str(room_id), mode, pair[0], pair[1])

        store._rebuild()
        return store

    def _is_expired(self, record: HourlyRateRecord) -> bool:
        return self._purged_before is not None and record.observed_at < self._purged_before

    def _carry_forward_anchor(self, room_id: str, hvac_mode: str) -> HourlyRateRecord | None:
        anchor = None
        for record in self._entries:
            if record.room_id == room_id and record.hvac_mode == hvac_mode and self._is_expired(record):
                anchor = record
        return anchor

    def _rebuild(self) -> None:
        self._index = {}
        for record in self._entries:
            if self._is_expired(record):
                continue
            self._index.setdefault(record.room_id, {}).setdefault(record.hvac_mode, {}).setdefault(
                record.hour, []
            ).append(record)
        self._metadata = {}
        for room_id, modes in self._index.items():
            for mode, hours in modes.items():
                for hour in hours:
                    self._recompute_bucket(room_id, mode, hour)

    def _recompute_bucket(self, room_id: str, hvac_mode: str, hour: int) -> None:
        key = (room_id, hvac_mode, hour)
        records = self._index.get(room_id, {}).get(hvac_mode, {}).get(hour, [])
        if not records:
            self._metadata.pop(key, None)
            return

        raw_average = statistics.fmean(record.value for record in records)
        influence = self._anomalies.get((room_id, hour))
        if influence is not None and influence.hvac_mode != hvac_mode:
            influence = None

        total = 0.0
        total_weight = 0.0
        flagged = False
        for record in records:
            weight, value = 1.0, record.value
            if influence is not None and influence.matches(record):
                flagged = True
                if influence.action == ACTION_CLIP:
                    value = influence.weight * influence.bound + (1 - influence.weight) * record.value
                else:
                    weight = 1 - influence.weight
            total += weight * value
            total_weight += weight
        effective = total / total_weight if total_weight > 0 else raw_average

        self._metadata[key] = EffectiveRateMetadata(
            room_id,
            hvac_mode,
            hour,
            raw_average,
            effective,
            len(records),
            anomaly_flag=flagged,
        )

    def _decay_anomaly(self, room_id: str, hour: int) -> None:
        influence = self._anomalies.get((room_id, hour))
        if influence is None:
            return
        step = 1 / max(1, self._settings.anomaly_decay_commits)
        weight = round(influence.weight - step, 6)
        if weight <= 0:
            del self._anomalies[(room_id, hour)]
        else:
            self._anomalies[(room_id, hour)] = replace(influence, weight=weight)
        self._recompute_bucket(room_id, influence.hvac_mode, hour)

    def _update_ewma(self, key: BucketKey, value: float, observed_at: datetime) -> None:
        if not self._settings.enable_ewma:
            return
        alpha = compute_ewma_alpha(self._settings.ewma_half_life_days)
        previous = self._ewma.get(key)
        if previous is None:
            smoothed = value
        else:
            smoothed = alpha * value + (1 - alpha) * previous.value
        self._ewma[key] = EwmaEntry(round(smoothed, 6), observed_at)

    def _boosted(self, meta: EffectiveRateMetadata, boost: float) -> EffectiveRateMetadata:
        if boost <= 0:
            return meta
        return replace(
            meta,
            effective_rate=min(
                meta.effective_rate * (1 + boost / 100), self._settings.max_temp_change_rate
            ),
            boost_percent=boost,
        )


def _items(value: Any) -> list[tuple[Any, Any]]:
    return list(value.items()) if isinstance(value, dict) else []


def _bucket_key(room_id: Any, hvac_mode: Any, hour: Any) -> BucketKey | None:
    try:
        hour_value = int(hour)
    except (TypeError, ValueError):
        return None
    if not room_id or hvac_mode not in ACTIVE_HVAC_MODES or not 0 <= hour_value <= 23:
        return None
    return (str(room_id), hvac_mode, hour_value)


def _anomaly_from_dict(data: Any) -> AnomalyInfluence | None:
    if not isinstance(data, dict):
        return None
    observed_at = parse_timestamp(data.get("observed_at"))
    raw_value = coerce_rate(data.get("raw_value"))
    bound = coerce_rate(data.get("bound"))
    weight = coerce_rate(data.get("weight"))
    action = data.get("action")
    if (
        observed_at is None
        or raw_value is None
        or bound is None
        or weight is None
        or action not in (ACTION_CLIP, ACTION_REJECT)
        or data.get("hvac_mode") not in ACTIVE_HVAC_MODES
    ):
        return None
    return AnomalyInfluence(data["hvac_mode"], observed_at, raw_value, bound, action, min(weight, 1.0))
