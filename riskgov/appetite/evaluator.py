"""Threshold rule evaluation. Pure: no I/O, no state."""

from riskgov.appetite.schemas import Operator

# Tolerance for "=" comparisons on floats
EQUALITY_EPSILON = 1e-4


def evaluate(value: float, operator: Operator | str, threshold: float) -> bool:
    """
    Return True when `value <operator> threshold` holds, i.e. the rule is breached.

    >>> evaluate(5, "<", 10)
    True
    >>> evaluate(10.00001, "=", 10)
    True
    """
    op = Operator(operator)
    if op is Operator.LT:
        return value < threshold
    if op is Operator.LTE:
        return value <= threshold
    if op is Operator.GT:
        return value > threshold
    if op is Operator.GTE:
        return value >= threshold
    return abs(value - threshold) < EQUALITY_EPSILON


def is_tightening(operator: Operator | str, original: float, simulated: float) -> bool:
    """Whether moving the threshold makes the rule easier to breach."""
    op = Operator(operator)
    if op in (Operator.GT, Operator.GTE):
        return simulated < original
    if op in (Operator.LT, Operator.LTE):
        return simulated > original
    return False
