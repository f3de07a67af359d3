"""
Earn Rules Package

Maps marketplace events (registration, paid orders, reviews, subscription
renewals, referrals) to point grants.
"""

from .rule_engine import (
    RuleEngine,
    Rule,
    Condition,
    ConditionGroup,
    Action,
    PointGrant,
    ConditionOperator,
    LogicalOperator,
    ActionType,
    TriggerEvent,
    build_default_rules,
    build_engine,
)

__all__ = [
    "RuleEngine",
    "Rule",
    "Condition",
    "ConditionGroup",
    "Action",
    "PointGrant",
    "ConditionOperator",
    "LogicalOperator",
    "ActionType",
    "TriggerEvent",
    "build_default_rules",
    "build_engine",
]
