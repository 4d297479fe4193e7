"""Scoring service exports."""

from .conditions import (  # noqa: F401
    RuleCondition,
    SubscriberStats,
    conditions_match,
    parse_conditions,
)
from .engine import (  # noqa: F401
    LedgerRecord,
    PointAward,
    ScoreDrift,
    ScoringEngine,
    subscribers_for_reconciliation,
)
