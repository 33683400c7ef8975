from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping


_LOGGER = logging.getLogger("app")

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
}

_CONDITION_TEXT_PATTERN = re.compile(
    r"^\s*(?P<field>[A-Za-z_][\w \-]*?)\s*(?P<op>>=|<=|!=|==|>|<|=)\s*(?P<value>.+?)\s*$"
)


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: str

    def describe(self) -> str:
        return f"{self.field} {self.operator} {self.value}"


def _normalize_key(value: str) -> str:
    return re.sub(r"[\s_\-]+", "", str(value or "")).lower()


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    raw = str(value or "").strip().replace(",", "")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_condition(
    condition_text: str | None = None,
    *,
    condition_type: str | None = None,
    condition_operator: str | None = None,
    condition_value: Any = None,
) -> Condition | None:
    """Build a predicate from a step definition.

    The structured ``conditionType/conditionOperator/conditionValue`` triple wins
    over the free-text form. Text that is not a ``<field> <op> <value>`` expression
    (for example ``"Always required"``) yields ``None``: the step is unconditional.
    """
    structured_field = str(condition_type or "").strip()
    structured_op = str(condition_operator or "").strip()
    structured_value = "" if condition_value is None else str(condition_value).strip()
    if structured_field and structured_op in _OPERATORS and structured_value:
        return Condition(field=structured_field, operator=structured_op, value=structured_value)

    match = _CONDITION_TEXT_PATTERN.match(str(condition_text or ""))
    if not match:
        return None
    return Condition(
        field=match.group("field").strip(),
        operator=match.group("op"),
        value=match.group("value").strip().strip("\"'"),
    )


def lookup_field(request: Mapping[str, Any], field: str) -> tuple[bool, Any]:
    wanted = _normalize_key(field)
    for key, value in request.items():
        if _normalize_key(key) == wanted:
            return True, value
    return False, None


def evaluate_condition(condition: Condition | None, request: Mapping[str, Any]) -> bool:
    if condition is None:
        return True

    found, actual = lookup_field(request, condition.field)
    if not found or actual is None or actual == "":
        _LOGGER.warning(
            "approval_condition_field_missing",
            extra={"condition": condition.describe()},
        )
        return True

    compare = _OPERATORS[condition.operator]
    actual_number = _to_number(actual)
    expected_number = _to_number(condition.value)
    if actual_number is not None and expected_number is not None:
        return bool(compare(actual_number, expected_number))

    if condition.operator in {"=", "==", "!="}:
        return bool(compare(str(actual).strip().lower(), condition.value.lower()))
    return False
