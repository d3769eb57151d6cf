"""Broker adapter selection from request and stored credentials."""

from __future__ import annotations

from typing import Optional, Tuple

import structlog

from ...config import get_settings
from ...core.errors import ErrorType, PhaseExecutionError
from ...db.models import UserSettings
from ...schemas.trigger import ApiSettings
from ..broker_adapter import BrokerAdapter, SimulatedBroker
from .alpaca_adapter import AlpacaBrokerAdapter

logger = structlog.get_logger(__name__)

_simulated_broker: Optional[SimulatedBroker] = None


def get_simulated_broker() -> SimulatedBroker:
    """Process-wide simulated broker used when ``USE_SIMULATED_BROKER`` is set."""
    global _simulated_broker
    if _simulated_broker is None:
        _simulated_broker = SimulatedBroker()
    return _simulated_broker


def select_alpaca_credentials(
    api_settings: Optional[ApiSettings] = None,
    stored: Optional[UserSettings] = None,
) -> Tuple[str, str, bool]:
    """Pick paper or live keys by ``alpaca_paper_trading`` (default paper).

    Request settings win over stored settings, field by field.

    Raises:
        PhaseExecutionError: ``api_key`` error when the selected mode has no keys
    """

    def pick(field: str):
        value = getattr(api_settings, field, None) if api_settings else None
        if value is None and stored is not None:
            value = getattr(stored, field, None)
        return value

    paper = pick("alpaca_paper_trading")
    paper = True if paper is None else bool(paper)
    prefix = "alpaca_paper" if paper else "alpaca_live"
    api_key = pick(f"{prefix}_api_key")
    secret_key = pick(f"{prefix}_secret_key")

    if not api_key or not secret_key:
        mode = "paper" if paper else "live"
        raise PhaseExecutionError(
            f"Alpaca {mode} trading credentials are not configured",
            error_type=ErrorType.API_KEY,
            details={"paper_trading": paper},
        )
    return api_key, secret_key, paper


def create_broker_adapter(
    api_settings: Optional[ApiSettings] = None,
    stored: Optional[UserSettings] = None,
) -> BrokerAdapter:
    if get_settings().use_simulated_broker:
        return get_simulated_broker()

    api_key, secret_key, paper = select_alpaca_credentials(api_settings, stored)
    logger.debug("Creating Alpaca broker adapter", paper_trading=paper)
    return AlpacaBrokerAdapter(api_key=api_key, secret_key=secret_key, paper_trading=paper)
