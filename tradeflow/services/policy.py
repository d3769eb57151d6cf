"""Builds the immutable ``UserPolicy`` for one decision."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..config import get_settings
from ..db.models import UserSettings
from ..schemas.policy import RiskLevel, UserPolicy
from ..schemas.trigger import ApiSettings


def _first(*values: Optional[Any]) -> Optional[Any]:
    for value in values:
        if value is not None:
            return value
    return None


def build_user_policy(
    total_value: float,
    api_settings: Optional[ApiSettings] = None,
    stored: Optional[UserSettings] = None,
) -> UserPolicy:
    """Merge request overrides, stored user settings and defaults.

    Request ``apiSettings`` win over stored settings. Without an explicit
    default position size, the minimum position in dollars is used.
    An explicit default size also becomes the increment BUY and SELL
    amounts are rounded to.
    """
    settings = get_settings()
    defaults = UserPolicy()

    risk_level = RiskLevel.parse(
        _first(
            api_settings.user_risk_level if api_settings else None,
            stored.user_risk_level if stored else None,
        )
    )

    fields: Dict[str, Any] = {
        "min_position_percent": _first(
            api_settings.rebalance_min_position_size if api_settings else None,
            stored.rebalance_min_position_size if stored else None,
        ),
        "max_position_percent": _first(
            api_settings.max_position_size if api_settings else None,
            stored.rebalance_max_position_size if stored else None,
        ),
        "target_cash_allocation_percent": _first(
            api_settings.target_cash_allocation if api_settings else None,
            stored.target_cash_allocation if stored else None,
            settings.default_target_cash_percent,
        ),
        "profit_target_percent": _first(
            api_settings.profit_target if api_settings else None,
            stored.profit_target if stored else None,
        ),
        "stop_loss_percent": _first(
            api_settings.stop_loss if api_settings else None,
            stored.stop_loss if stored else None,
        ),
        "near_limit_threshold_percent": _first(
            api_settings.near_limit_threshold if api_settings else None,
            stored.near_limit_threshold if stored else None,
        ),
        "near_position_threshold_percent": _first(
            api_settings.near_position_threshold if api_settings else None,
            stored.near_position_threshold if stored else None,
        ),
    }
    values = {key: value for key, value in fields.items() if value is not None}

    min_percent = values.get("min_position_percent", defaults.min_position_percent)
    default_size = _first(
        api_settings.default_position_size_dollars if api_settings else None,
        stored.default_position_size_dollars if stored else None,
    )
    increment = default_size if default_size and default_size > 0 else None
    if default_size is None:
        default_size = min_percent / 100 * max(total_value, 0.0)

    return UserPolicy(
        risk_level=risk_level,
        default_position_size_dollars=default_size,
        position_increment_dollars=increment,
        **values,
    )
