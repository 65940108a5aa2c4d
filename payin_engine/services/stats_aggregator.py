"""Selection audit log, realtime statistics and anomaly detection."""

from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import pandas as pd

from payin_engine.core.config import MonitoringSettings
from payin_engine.models.alerts import AlertModel
from payin_engine.models.base import as_utc, normalize_bank_key, utc_now
from payin_engine.models.endpoints import EndpointModel
from payin_engine.models.enums import AlertSeverity, AlertType, AmountTier, GeoMatch, PayinOutcome, TierMatch
from payin_engine.models.payins import PayinRequest
from payin_engine.models.repositories import ReservationRepository, SelectionLogRepository
from payin_engine.models.selection_logs import SelectionLogModel

from .alert_service import AlertService
from .tier_geo_scorer import ScoreResult


logger = logging.getLogger(__name__)

_SELECTION_COLUMNS = ["bank", "amount", "tier_match", "geo_match", "geo_boost"]
_OUTCOME_COLUMNS = ["bank", "amount", "outcome"]


def _success_rate(completed: int, failed: int) -> Optional[float]:
    decided = completed + failed
    if decided == 0:
        return None
    return round(100.0 * completed / decided, 2)


class StatsAggregator:
    """Owns selection logs and every statistic derived from them.

    Realtime figures combine the last hour of selection logs with reservations
    finalized in the same hour.
    """

    def __init__(
        self,
        selection_logs: SelectionLogRepository,
        reservations: ReservationRepository,
        alert_service: AlertService,
        settings: MonitoringSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._logs = selection_logs
        self._reservations = reservations
        self._alerts = alert_service
        self._settings = settings
        self._clock = clock

    def record_selection(
        self,
        payin: PayinRequest,
        endpoint: EndpointModel,
        request_tier: AmountTier,
        result: ScoreResult,
        reservation_id: str,
        candidate_count: int,
        attempts: int,
        fallback_chain: List[str],
    ) -> SelectionLogModel:
        """Append the immutable record of one routing decision."""
        now = self._clock()
        log = SelectionLogModel(
            id="sel_{0}".format(uuid4().hex[:20]),
            endpoint_id=endpoint.document_id,
            upi_id=endpoint.upi_id,
            trader_id=endpoint.trader_id,
            bank_name=endpoint.bank_name,
            reservation_id=reservation_id,
            merchant_id=payin.merchant_id,
            request_id=payin.request_id,
            amount=payin.amount,
            amount_tier=request_tier,
            score=result.score,
            score_breakdown=dict(result.breakdown),
            tier_match=result.tier_match,
            geo_match=result.geo_match,
            geo_boost=result.geo_boost,
            user_city=payin.user_city,
            user_state=payin.user_state,
            endpoint_city=endpoint.bank_city,
            endpoint_state=endpoint.bank_state,
            candidate_count=candidate_count,
            attempts=attempts,
            fallback_chain=list(fallback_chain),
            created_at=now,
            updated_at=now,
        )
        return self._logs.append(log)

    def query_logs(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        bank: Optional[str] = None,
        tier_match: Optional[TierMatch] = None,
        geo_match: Optional[GeoMatch] = None,
        limit: int = 100,
    ) -> List[SelectionLogModel]:
        """Return logs in ``[start, end)`` matching the filters, newest first.

        Naive bounds are read as UTC.
        """
        logs = self._logs.query(start=as_utc(start), end=as_utc(end))
        if bank:
            key = normalize_bank_key(bank)
            logs = [log for log in logs if normalize_bank_key(log.bank_name) == key]
        if tier_match is not None:
            logs = [log for log in logs if log.tier_match == TierMatch(tier_match)]
        if geo_match is not None:
            logs = [log for log in logs if log.geo_match == GeoMatch(geo_match)]
        return logs[: max(0, int(limit))]

    def get_realtime_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        since = now - timedelta(hours=1)
        selections = self._selection_frame(self._logs.query(start=since))
        outcomes = self._outcome_frame(self._reservations.list_finalized_since(since))

        completed = outcomes[outcomes["outcome"] == PayinOutcome.COMPLETED.value]
        failed = outcomes[outcomes["outcome"] == PayinOutcome.FAILED.value]
        expired = outcomes[outcomes["outcome"] == PayinOutcome.EXPIRED.value]

        return {
            "requests_1h": int(len(selections)),
            "success_rate_1h": _success_rate(len(completed), len(failed)),
            "volume_1h": round(float(completed["amount"].sum()), 2),
            "failed_1h": int(len(failed)),
            "expired_1h": int(len(expired)),
            "topBanks": self._top_banks(selections, outcomes),
            "generatedAt": now.isoformat(),
        }

    def get_match_breakdown(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        """Distribution of tier and geo matches, plus the average geo boost."""
        start, end = as_utc(start), as_utc(end)
        window_end = end or self._clock()
        start = start or window_end - timedelta(hours=24)
        # An omitted end leaves the window open.
        frame = self._selection_frame(self._logs.query(start=start, end=end))
        total = int(len(frame))

        def _distribution(column: str, values: List[str]) -> Dict[str, Dict[str, Any]]:
            counts = frame[column].value_counts()
            return {
                value: {
                    "count": int(counts.get(value, 0)),
                    "share": round(100.0 * int(counts.get(value, 0)) / total, 2) if total else 0.0,
                }
                for value in values
            }

        boosted = frame[frame["geo_boost"] > 0]
        return {
            "start": start.isoformat(),
            "end": window_end.isoformat(),
            "total": total,
            "tierMatch": _distribution("tier_match", [TierMatch.EXACT.value, TierMatch.ADJACENT.value]),
            "geoMatch": _distribution("geo_match", [match.value for match in GeoMatch]),
            "averageGeoBoost": round(float(frame["geo_boost"].mean()), 2) if total else 0.0,
            "averageGeoBoostWhenMatched": round(float(boosted["geo_boost"].mean()), 2) if len(boosted) else 0.0,
        }

    def detect_anomalies(self, now: Optional[datetime] = None) -> Optional[AlertModel]:
        """Raise a HIGH_FAILURE_RATE alert when the hourly success rate drops too low."""
        now = now or self._clock()
        outcomes = self._outcome_frame(self._reservations.list_finalized_since(now - timedelta(hours=1)))
        completed = int((outcomes["outcome"] == PayinOutcome.COMPLETED.value).sum())
        failed = int((outcomes["outcome"] == PayinOutcome.FAILED.value).sum())
        if completed + failed < self._settings.anomaly_min_samples:
            return None
        rate = _success_rate(completed, failed)
        if rate is None or rate >= self._settings.anomaly_min_success_rate:
            return None

        latest = self._alerts.latest_of_type(AlertType.HIGH_FAILURE_RATE)
        cooldown = timedelta(minutes=self._settings.anomaly_cooldown_minutes)
        if latest is not None and now - latest.created_at < cooldown:
            logger.debug("High failure rate alert suppressed by cooldown last=%s", latest.created_at.isoformat())
            return None

        return self._alerts.raise_alert(
            AlertType.HIGH_FAILURE_RATE,
            title="Payin success rate dropped to {0:.1f}%".format(rate),
            severity=AlertSeverity.CRITICAL,
            message="{0} completed and {1} failed in the last hour".format(completed, failed),
            data={"success_rate": rate, "completed": completed, "failed": failed},
        )

    # ── Frames ───────────────────────────────────────────────────────────

    @staticmethod
    def _selection_frame(logs: List[SelectionLogModel]) -> pd.DataFrame:
        rows = [
            {
                "bank": log.bank_name,
                "amount": log.amount,
                "tier_match": log.tier_match.value,
                "geo_match": log.geo_match.value,
                "geo_boost": log.geo_boost,
            }
            for log in logs
        ]
        return pd.DataFrame(rows, columns=_SELECTION_COLUMNS)

    @staticmethod
    def _outcome_frame(reservations: list) -> pd.DataFrame:
        rows = [
            {"bank": reservation.bank_name, "amount": reservation.amount, "outcome": reservation.outcome.value}
            for reservation in reservations
            if reservation.outcome is not None
        ]
        return pd.DataFrame(rows, columns=_OUTCOME_COLUMNS)

    def _top_banks(self, selections: pd.DataFrame, outcomes: pd.DataFrame) -> List[Dict[str, Any]]:
        if selections.empty:
            return []
        requests = selections.groupby("bank").size().rename("requests")
        per_bank = requests.to_frame()
        per_bank["completed"] = (
            outcomes[outcomes["outcome"] == PayinOutcome.COMPLETED.value].groupby("bank").size()
        )
        per_bank["failed"] = outcomes[outcomes["outcome"] == PayinOutcome.FAILED.value].groupby("bank").size()
        per_bank["volume"] = (
            outcomes[outcomes["outcome"] == PayinOutcome.COMPLETED.value].groupby("bank")["amount"].sum()
        )
        per_bank = per_bank.fillna(0).reset_index()
        per_bank = per_bank.sort_values(["requests", "bank"], ascending=[False, True]).head(
            self._settings.top_banks_limit
        )
        return [
            {
                "bank": row["bank"],
                "requests": int(row["requests"]),
                "successRate": _success_rate(int(row["completed"]), int(row["failed"])),
                "volume": round(float(row["volume"]), 2),
            }
            for row in per_bank.to_dict(orient="records")
        ]
