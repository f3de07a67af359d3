import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

if TYPE_CHECKING:
    from loyalty.config import PointsConfig

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"
    EXISTS = "exists"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    AWARD_FIXED = "award_fixed"
    AWARD_RATE = "award_rate"


class TriggerEvent(str, Enum):
    USER_REGISTERED = "user_registered"
    ORDER_PAID = "order_paid"
    REVIEW_POSTED = "review_posted"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    REFERRAL_CONVERTED = "referral_converted"
    MANUAL = "manual"


def resolve(context: Any, field_path: str) -> Any:
    value = context
    for part in field_path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        try:
            return self._apply_operator(resolve(context, self.field), self.value)
        except TypeError:
            # e.g. a missing field compared with greater_than
            return False

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        if op == ConditionOperator.EQUALS: return field_value == compare_value
        if op == ConditionOperator.NOT_EQUALS: return field_value != compare_value
        if op == ConditionOperator.GREATER_THAN: return field_value > compare_value
        if op == ConditionOperator.LESS_THAN: return field_value < compare_value
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL: return field_value >= compare_value
        if op == ConditionOperator.LESS_THAN_OR_EQUAL: return field_value <= compare_value
        if op == ConditionOperator.IN: return field_value in compare_value if compare_value else False
        if op == ConditionOperator.NOT_IN: return field_value not in compare_value if compare_value else True
        if op == ConditionOperator.IS_TRUE: return bool(field_value) is True
        if op == ConditionOperator.IS_FALSE: return bool(field_value) is False
        if op == ConditionOperator.EXISTS: return field_value not in (None, "", [], {})
        return False

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        return cls(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = [cond.evaluate(context) for cond in self.conditions]
        return all(results) if self.operator == LogicalOperator.AND else any(results)

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def from_dict(cls, data: dict) -> "ConditionGroup":
        conditions = []
        for c in data["conditions"]:
            if "operator" in c and "conditions" in c:
                conditions.append(ConditionGroup.from_dict(c))
            else:
                conditions.append(Condition.from_dict(c))
        return cls(operator=LogicalOperator(data["operator"]), conditions=conditions)


def _parse_conditions(data: Optional[dict]) -> Optional[Union[Condition, ConditionGroup]]:
    if not data:
        return None
    if "operator" in data and "conditions" in data:
        return ConditionGroup.from_dict(data)
    return Condition.from_dict(data)


@dataclass(frozen=True)
class PointGrant:
    account_id: str
    amount: int
    reason_code: str
    description: str
    related_order_id: Optional[str] = None
    rule_id: Optional[str] = None


class _TemplateValues(dict):
    def __missing__(self, key):
        return ""


@dataclass
class Action:
    """One way a rule hands out points.

    params:
        points          fixed amount (award_fixed)
        rate            points per currency unit (award_rate)
        amount_field    path of the monetary amount (award_rate)
        account_field   path of the receiving account id
        reason_code     business reason, defaults to the rule id
        description     template, e.g. "Sale of {item_name} on order {order_id}"
        order_field     path of the related order id
        for_each        path of a list; one grant per item, item fields resolve first
        key_field       path whose value is appended to the reason code
    """
    type: ActionType
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "params": self.params}

    @classmethod
    def from_dict(cls, data: dict) -> "Action":
        return cls(type=ActionType(data["type"]), params=data.get("params", {}))


@dataclass
class Rule:
    id: str
    name: str
    trigger: TriggerEvent
    actions: list[Action]
    conditions: Optional[Union[Condition, ConditionGroup]] = None
    description: str = ""
    version: int = 1
    is_active: bool = True
    priority: int = 0
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def evaluate(self, context: dict) -> bool:
        if not self.is_active:
            return False
        if self.conditions is None:
            return True
        return self.conditions.evaluate(context)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "version": self.version, "is_active": self.is_active, "priority": self.priority,
            "trigger": self.trigger.value,
            "conditions": self.conditions.to_dict() if self.conditions else None,
            "actions": [a.to_dict() for a in self.actions], "metadata": self.metadata
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        actions = [Action.from_dict(a) for a in data["actions"]]
        return cls(
            id=data["id"], name=data["name"], description=data.get("description", ""),
            version=data.get("version", 1), is_active=data.get("is_active", True),
            priority=data.get("priority", 0), trigger=TriggerEvent(data["trigger"]),
            conditions=_parse_conditions(data.get("conditions")), actions=actions,
            metadata=data.get("metadata", {})
        )


class RuleEngine:
    def __init__(self):
        self.rules: dict[str, Rule] = {}
        self.action_handlers: dict[ActionType, Callable[[dict, Callable[[str], Any]], int]] = {
            ActionType.AWARD_FIXED: self._fixed_points,
            ActionType.AWARD_RATE: self._rate_points,
        }

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def list_rules(self, trigger: Optional[TriggerEvent] = None) -> list[Rule]:
        rules = list(self.rules.values())
        if trigger:
            rules = [r for r in rules if r.trigger == trigger]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def evaluate(self, trigger: TriggerEvent, context: dict) -> list[Rule]:
        return [rule for rule in self.list_rules(trigger) if rule.evaluate(context)]

    def grants(self, trigger: TriggerEvent, context: dict) -> list[PointGrant]:
        """Point grants owed for an event, in rule priority order."""
        results = []
        for rule in self.evaluate(TriggerEvent(trigger), context):
            for action in rule.actions:
                handler = self.action_handlers.get(action.type)
                if handler is None:
                    continue
                results.extend(self._action_grants(rule, action, handler, context))
        return results

    def _action_grants(self, rule: Rule, action: Action, handler, context: dict) -> list[PointGrant]:
        params = action.params
        for_each = params.get("for_each")
        items = [None] if not for_each else list(resolve(context, for_each) or [])

        grants = []
        for item in items:
            def lookup(path: Optional[str], item=item) -> Any:
                if not path:
                    return None
                if isinstance(item, dict):
                    value = resolve(item, path)
                    if value is not None:
                        return value
                return resolve(context, path)

            account_id = lookup(params.get("account_field"))
            if account_id in (None, ""):
                logger.warning("Rule %s matched but %s is missing from the event", rule.id, params.get("account_field"))
                continue

            amount = handler(params, lookup)
            if amount <= 0:
                continue

            reason_code = params.get("reason_code") or rule.id
            key = lookup(params.get("key_field"))
            if key not in (None, ""):
                reason_code = f"{reason_code}:{key}"

            order_id = lookup(params.get("order_field"))
            related_order_id = str(order_id) if order_id not in (None, "") else None

            values = _TemplateValues(order_id=related_order_id or "", account_id=account_id, points=amount)
            if isinstance(item, dict):
                values.update({f"item_{k}": v for k, v in item.items() if not isinstance(v, (dict, list))})
            template = params.get("description") or rule.name

            grants.append(PointGrant(
                account_id=str(account_id),
                amount=amount,
                reason_code=reason_code,
                description=template.format_map(values),
                related_order_id=related_order_id,
                rule_id=rule.id,
            ))
        return grants

    @staticmethod
    def _fixed_points(params: dict, lookup) -> int:
        return int(params.get("points", 0))

    @staticmethod
    def _rate_points(params: dict, lookup) -> int:
        amount = lookup(params.get("amount_field"))
        if amount is None:
            return 0
        try:
            points = Decimal(str(amount)) * Decimal(str(params.get("rate", 0)))
        except InvalidOperation:
            points = None
        if isinstance(amount, bool) or points is None or not points.is_finite():
            logger.warning("Ignoring non-numeric amount %r in %s", amount, params.get("amount_field"))
            return 0
        return int(points.to_integral_value(rounding=ROUND_FLOOR))


def build_default_rules(config: "PointsConfig") -> list[Rule]:
    """Marketplace earn rules derived from the points configuration."""
    rules = [
        Rule(
            id="registration-buyer", name="Buyer welcome bonus",
            trigger=TriggerEvent.USER_REGISTERED,
            conditions=Condition(field="user.role", operator=ConditionOperator.EQUALS, value="buyer"),
            actions=[Action(type=ActionType.AWARD_FIXED, params={
                "points": config.registration_bonus.buyer, "account_field": "user.id",
                "reason_code": "registration", "description": "Welcome bonus",
            })],
            priority=10
        ),
        Rule(
            id="registration-seller", name="Seller welcome bonus",
            trigger=TriggerEvent.USER_REGISTERED,
            conditions=Condition(field="user.role", operator=ConditionOperator.EQUALS, value="seller"),
            actions=[Action(type=ActionType.AWARD_FIXED, params={
                "points": config.registration_bonus.seller, "account_field": "user.id",
                "reason_code": "registration", "description": "Welcome bonus",
            })],
            priority=10
        ),
        Rule(
            id="purchase", name="Purchase points",
            trigger=TriggerEvent.ORDER_PAID,
            conditions=Condition(field="order.total_price", operator=ConditionOperator.GREATER_THAN, value=0),
            actions=[Action(type=ActionType.AWARD_RATE, params={
                "rate": str(config.earn_rate), "amount_field": "order.total_price",
                "account_field": "order.buyer_id", "order_field": "order.id",
                "reason_code": "purchase", "description": "Purchase on order {order_id}",
            })],
            priority=10
        ),
        Rule(
            id="sale", name="Seller sale points",
            trigger=TriggerEvent.ORDER_PAID,
            conditions=Condition(field="order.items", operator=ConditionOperator.EXISTS),
            actions=[Action(type=ActionType.AWARD_FIXED, params={
                "points": config.seller_points_per_sale, "for_each": "order.items",
                "account_field": "seller_id", "order_field": "order.id", "key_field": "product_id",
                "reason_code": "sale", "description": "Sale of {item_name} on order {order_id}",
            })],
            priority=5
        ),
        Rule(
            id="review", name="Review bonus",
            trigger=TriggerEvent.REVIEW_POSTED,
            actions=[Action(type=ActionType.AWARD_FIXED, params={
                "points": config.review_bonus, "account_field": "review.author_id",
                "order_field": "review.order_id", "key_field": "review.product_id",
                "reason_code": "review", "description": "Review bonus",
            })],
        ),
    ]

    if config.subscription.enabled:
        rules.extend([
            Rule(
                id="subscription-monthly", name="Monthly subscription bonus",
                trigger=TriggerEvent.SUBSCRIPTION_RENEWED,
                actions=[Action(type=ActionType.AWARD_FIXED, params={
                    "points": config.subscription.monthly_bonus, "account_field": "subscription.account_id",
                    "key_field": "subscription.period", "reason_code": "subscription_monthly",
                    "description": "Monthly subscription bonus",
                })],
            ),
            Rule(
                id="referral", name="Referral bonus",
                trigger=TriggerEvent.REFERRAL_CONVERTED,
                actions=[Action(type=ActionType.AWARD_FIXED, params={
                    "points": config.subscription.referral_bonus, "account_field": "referral.referrer_id",
                    "key_field": "referral.referred_id", "reason_code": "referral",
                    "description": "Referral bonus",
                })],
            ),
        ])

    rules.extend(Rule.from_dict(data) for data in config.rules)
    return rules


def build_engine(config: "PointsConfig") -> RuleEngine:
    engine = RuleEngine()
    for rule in build_default_rules(config):
        engine.add_rule(rule)
    return engine
