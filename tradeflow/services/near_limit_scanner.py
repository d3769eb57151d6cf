"""Scan opted-in users' positions and originate analyses for those near their limits.

A position is near its profit limit when its unrealized P/L (percent) lies in
``[target * (1 - near/100), target]`` and near its loss limit when it lies in
``[-stop, -stop * (1 - near/100)]``.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from ..config import get_settings
from ..core.errors import TradeflowError
from ..db.models import UserSettings
from ..db.session import DatabaseManager
from ..repositories import AnalysisRecordRepository, RebalanceRequestRepository, TradeActionRepository
from ..schemas.portfolio import PositionSnapshot
from ..schemas.trigger import AnalysisTrigger, ApiSettings
from .broker_adapter import BrokerAdapter
from .brokers.factory import create_broker_adapter
from .user_settings import UserSettingsService, api_settings_from_stored
from .workflow import WorkflowCoordinator

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = ("pending", "running")

DEFAULT_PROFIT_TARGET = 25.0
DEFAULT_STOP_LOSS = 10.0
DEFAULT_NEAR_LIMIT_THRESHOLD = 20.0


@dataclass
class ScanResult:
    user_id: str
    status: str  # triggered | failed | skipped | checked | no_positions | error
    ticker: Optional[str] = None
    analysis_id: Optional[str] = None
    near_limit_type: Optional[str] = None
    pl_percent: Optional[float] = None
    reason: Optional[str] = None


@dataclass
class ScanSummary:
    checked_at: datetime = field(default_factory=datetime.utcnow)
    users_checked: int = 0
    positions_checked: int = 0
    analyses_triggered: int = 0
    results: List[ScanResult] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Checked {self.users_checked} user(s), {self.positions_checked} position(s), "
            f"triggered {self.analyses_triggered} analysis(es)"
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["checked_at"] = self.checked_at.isoformat()
        payload["message"] = self.message
        return payload


@dataclass(frozen=True)
class NearLimitBands:
    profit_target: float
    stop_loss: float
    near_limit_threshold: float

    @classmethod
    def for_user(cls, stored: UserSettings) -> "NearLimitBands":
        return cls(
            profit_target=stored.profit_target or DEFAULT_PROFIT_TARGET,
            stop_loss=stored.stop_loss or DEFAULT_STOP_LOSS,
            near_limit_threshold=stored.near_limit_threshold or DEFAULT_NEAR_LIMIT_THRESHOLD,
        )

    @property
    def profit_lower(self) -> float:
        return self.profit_target * (1 - self.near_limit_threshold / 100)

    @property
    def loss_upper(self) -> float:
        return -self.stop_loss * (1 - self.near_limit_threshold / 100)

    def classify(self, pl_percent: float) -> Optional[str]:
        """``"profit"``, ``"loss"`` or None when the P/L is outside both bands."""
        if self.profit_lower <= pl_percent <= self.profit_target:
            return "profit"
        if -self.stop_loss <= pl_percent <= self.loss_upper:
            return "loss"
        return None


class NearLimitScanner:
    def __init__(
        self,
        db: DatabaseManager,
        coordinator: WorkflowCoordinator,
        *,
        user_settings: Optional[UserSettingsService] = None,
        broker_factory: Callable[[Optional[ApiSettings], Optional[UserSettings]], BrokerAdapter] = create_broker_adapter,
        dedupe_window_hours: Optional[float] = None,
    ):
        self.db = db
        self.coordinator = coordinator
        self.user_settings = user_settings or UserSettingsService(db)
        self.broker_factory = broker_factory
        self.dedupe_window_hours = (
            get_settings().near_limit_dedupe_hours if dedupe_window_hours is None else dedupe_window_hours
        )

    async def scan(self) -> ScanSummary:
        summary = ScanSummary()
        users = [u for u in await self.user_settings.list_near_limit_users() if u.has_alpaca_credentials()]
        if not users:
            logger.info("No users with near-limit analysis and brokerage credentials")
            return summary

        for stored in users:
            summary.users_checked += 1
            try:
                await self._scan_user(stored, summary)
            except Exception as e:
                logger.exception("Near-limit scan failed for user", user_id=stored.user_id)
                summary.results.append(ScanResult(user_id=stored.user_id, status="error", reason=str(e)))

        logger.info(
            "Near-limit scan completed",
            users_checked=summary.users_checked,
            positions_checked=summary.positions_checked,
            analyses_triggered=summary.analyses_triggered,
        )
        return summary

    async def _scan_user(self, stored: UserSettings, summary: ScanSummary) -> None:
        user_id = stored.user_id
        since = summary.checked_at - timedelta(hours=self.dedupe_window_hours)

        async with self.db.session_factory() as session:
            running = await AnalysisRecordRepository(session).get_by_user_and_status(user_id, ACTIVE_STATUSES)
            if running:
                summary.results.append(
                    ScanResult(user_id=user_id, status="skipped", reason=f"{len(running)} analysis(es) in progress")
                )
                return
            rebalances = await RebalanceRequestRepository(session).get_by_user_and_status(user_id, ACTIVE_STATUSES)
            if rebalances:
                summary.results.append(
                    ScanResult(user_id=user_id, status="skipped", reason=f"{len(rebalances)} rebalance(s) in progress")
                )
                return

            recent = await AnalysisRecordRepository(session).get_created_since(user_id, since)
            pending_actions = await TradeActionRepository(session).list_pending_by_user(user_id)

        recent_tickers = {r.ticker.upper() for r in recent if r.ticker}
        blocked_tickers: Set[str] = {a.ticker.upper() for a in pending_actions if a.ticker}

        try:
            snapshot = await self.broker_factory(None, stored).fetch_portfolio()
        except TradeflowError as e:
            logger.warning("Portfolio fetch failed during near-limit scan", user_id=user_id, error=e.message)
            summary.results.append(
                ScanResult(user_id=user_id, status="error", reason=f"Portfolio fetch failed: {e.message}")
            )
            return

        blocked_tickers.update(order.symbol.upper() for order in snapshot.open_orders if order.symbol)
        if not snapshot.positions:
            summary.results.append(ScanResult(user_id=user_id, status="no_positions"))
            return

        bands = NearLimitBands.for_user(stored)
        flagged: List[tuple] = []
        for position in snapshot.positions:
            summary.positions_checked += 1
            kind = bands.classify(position.unrealized_pl_percent)
            if kind is None:
                continue
            symbol = position.symbol.upper()
            if symbol in blocked_tickers:
                logger.info("Near-limit position has a pending order", user_id=user_id, ticker=symbol)
                continue
            if symbol in recent_tickers:
                logger.info("Near-limit position analysed recently", user_id=user_id, ticker=symbol)
                continue
            flagged.append((position, kind))

        if not flagged:
            summary.results.append(ScanResult(user_id=user_id, status="checked"))
            return

        for position, kind in flagged:
            result = await self._trigger(stored, position, kind, bands)
            summary.results.append(result)
            if result.status == "triggered":
                summary.analyses_triggered += 1

    async def _trigger(
        self,
        stored: UserSettings,
        position: PositionSnapshot,
        kind: str,
        bands: NearLimitBands,
    ) -> ScanResult:
        ticker = position.symbol.upper()
        pl_percent = round(position.unrealized_pl_percent, 2)
        try:
            trigger = AnalysisTrigger(
                analysis_id=str(uuid.uuid4()),
                ticker=ticker,
                user_id=stored.user_id,
                api_settings=api_settings_from_stored(stored),
                analysis_context={
                    "type": "individual",
                    "near_limit_analysis": True,
                    "position_pl_percent": position.unrealized_pl_percent,
                    "near_limit_type": kind,
                    "profit_target": bands.profit_target,
                    "stop_loss": bands.stop_loss,
                    "near_limit_threshold": bands.near_limit_threshold,
                },
            )
            response = await self.coordinator.start_analysis(trigger)
        except TradeflowError as e:
            logger.warning("Near-limit analysis not started", user_id=stored.user_id, ticker=ticker, error=e.message)
            return ScanResult(
                user_id=stored.user_id,
                status="failed",
                ticker=ticker,
                near_limit_type=kind,
                pl_percent=pl_percent,
                reason=e.message,
            )

        logger.info(
            "Near-limit analysis triggered",
            user_id=stored.user_id,
            ticker=ticker,
            analysis_id=response.analysis_id,
            near_limit_type=kind,
            pl_percent=pl_percent,
        )
        return ScanResult(
            user_id=stored.user_id,
            status="triggered",
            ticker=ticker,
            analysis_id=response.analysis_id,
            near_limit_type=kind,
            pl_percent=pl_percent,
        )
