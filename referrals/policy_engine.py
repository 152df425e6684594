import operator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .models import (
    ReferralAttempt,
    ReferralDecision,
    ReferralFlag,
    ReferralSettings,
    ReferralUsage,
)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        actual = resolve_path(context, self.field)
        if self.operator == ConditionOperator.IS_TRUE:
            return bool(actual)
        if self.operator == ConditionOperator.IS_FALSE:
            return not actual
        compare = COMPARISONS[self.operator]
        # Ordering against a missing value never matches
        if self.operator in ORDERING and (actual is None or self.value is None):
            return False
        return compare(actual, self.value)


def resolve_path(context: dict, path: str) -> Any:
    """Follow a dotted path through nested dicts; None once it leaves them."""
    current: Any = context
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


COMPARISONS = {
    ConditionOperator.EQUALS: operator.eq,
    ConditionOperator.NOT_EQUALS: operator.ne,
    ConditionOperator.GREATER_THAN: operator.gt,
    ConditionOperator.LESS_THAN: operator.lt,
    ConditionOperator.GREATER_THAN_OR_EQUAL: operator.ge,
    ConditionOperator.LESS_THAN_OR_EQUAL: operator.le,
}

ORDERING = frozenset({
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUAL,
    ConditionOperator.LESS_THAN_OR_EQUAL,
})


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = [cond.evaluate(context) for cond in self.conditions]
        return all(results) if self.operator == LogicalOperator.AND else any(results)


@dataclass
class PolicyRule:
    """Raises ``flag`` when ``conditions`` hold for a referral."""
    flag: ReferralFlag
    conditions: Union[Condition, ConditionGroup]
    message: str

    def evaluate(self, context: dict) -> bool:
        return self.conditions.evaluate(context)


def _limit_rule(flag: ReferralFlag, setting: str, usage: str, limit: int, label: str) -> PolicyRule:
    # A limit of 0 means unlimited
    return PolicyRule(
        flag=flag,
        conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
            Condition(field=f"settings.{setting}", operator=ConditionOperator.GREATER_THAN, value=0),
            Condition(field=f"usage.{usage}", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=limit),
        ]),
        message=f"Referrer reached the {label} referral limit of {limit}",
    )


def build_policy_rules(settings: ReferralSettings) -> list[PolicyRule]:
    return [
        PolicyRule(
            flag=ReferralFlag.REFERRALS_DISABLED,
            conditions=Condition(field="settings.is_enabled", operator=ConditionOperator.IS_FALSE),
            message="Referral program is disabled",
        ),
        PolicyRule(
            flag=ReferralFlag.SELF_REFERRAL,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="settings.allow_self_referral", operator=ConditionOperator.IS_FALSE),
                Condition(field="referral.is_self_referral", operator=ConditionOperator.IS_TRUE),
            ]),
            message="Cannot use your own referral code",
        ),
        PolicyRule(
            flag=ReferralFlag.BELOW_MINIMUM_ORDER_VALUE,
            conditions=Condition(
                field="referral.order_value", operator=ConditionOperator.LESS_THAN,
                value=settings.minimum_order_value,
            ),
            message=f"Order value is below the minimum of {settings.minimum_order_value}",
        ),
        PolicyRule(
            flag=ReferralFlag.NOT_FIRST_ORDER,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="settings.require_first_order", operator=ConditionOperator.IS_TRUE),
                Condition(field="referral.is_first_order", operator=ConditionOperator.IS_FALSE),
            ]),
            message="Referral rewards require the referee's first order",
        ),
        _limit_rule(ReferralFlag.DAILY_LIMIT_REACHED, "daily_referral_limit", "today",
                    settings.daily_referral_limit, "daily"),
        _limit_rule(ReferralFlag.MONTHLY_LIMIT_REACHED, "monthly_referral_limit", "this_month",
                    settings.monthly_referral_limit, "monthly"),
        _limit_rule(ReferralFlag.USER_LIMIT_REACHED, "max_referrals_per_user", "total",
                    settings.max_referrals_per_user, "lifetime"),
        PolicyRule(
            flag=ReferralFlag.REFEREE_ALREADY_REFERRED,
            conditions=Condition(field="usage.referee_already_referred", operator=ConditionOperator.IS_TRUE),
            message="Referee has already been referred",
        ),
    ]


class ReferralPolicyEngine:
    """Evaluates a referral against the active settings and usage counters.

    Device and payment-method heuristics are not implemented; only
    identifier, value and limit checks raise flags.
    """

    def evaluate(
        self,
        attempt: ReferralAttempt,
        settings: ReferralSettings,
        usage: Optional[ReferralUsage] = None,
    ) -> ReferralDecision:
        usage = usage or ReferralUsage()
        context = {
            "settings": settings.model_dump(),
            "referral": {
                **attempt.model_dump(),
                "is_self_referral": attempt.referrer_id == attempt.referee_id,
            },
            "usage": usage.model_dump(),
        }
        flags, messages = [], []
        for rule in build_policy_rules(settings):
            if rule.evaluate(context):
                flags.append(rule.flag)
                messages.append(rule.message)
        return ReferralDecision(allowed=not flags, flags=flags, messages=messages)
