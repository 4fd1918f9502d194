"""Function whitelist and builtin implementations for formula evaluation."""

from __future__ import annotations

import math
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Any, Callable

# ---------------------------------------------------------------------------
# Whitelist: functions the parser accepts, with their arity.
# ``None`` as max means variadic.
# ---------------------------------------------------------------------------

FUNCTION_WHITELIST: dict[str, tuple[int, int | None]] = {
    # Aggregates (accept ranges)
    "SUM": (1, None),
    "MIN": (1, None),
    "MAX": (1, None),
    "AVERAGE": (1, None),
    # Rounding
    "ROUND": (1, 2),
    "ROUNDUP": (1, 2),
    "ROUNDDOWN": (1, 2),
    "INT": (1, 1),
    # Math
    "ABS": (1, 1),
    "SQRT": (1, 1),
    "POWER": (2, 2),
    "MOD": (2, 2),
    "PI": (0, 0),
}

# Functions whose arguments may be row ranges (``#r1.L:#r9.L``).
RANGE_FUNCTIONS = frozenset({"SUM", "MIN", "MAX", "AVERAGE"})

# How a function transforms the dimension of its first argument:
#   "same"  - all arguments share one dimension, result keeps it
#   "first" - result keeps the first argument's dimension
#   "sqrt"  - halves it
#   "power" - multiplies it by the (literal) exponent
#   "none"  - dimensionless
FUNCTION_DIMENSIONS: dict[str, str] = {
    "SUM": "same",
    "MIN": "same",
    "MAX": "same",
    "AVERAGE": "same",
    "ROUND": "first",
    "ROUNDUP": "first",
    "ROUNDDOWN": "first",
    "INT": "first",
    "ABS": "first",
    "MOD": "first",
    "SQRT": "sqrt",
    "POWER": "power",
    "PI": "none",
}


def is_supported(func_name: str) -> bool:
    """Check if a function name is in the evaluation whitelist."""
    return func_name.upper() in FUNCTION_WHITELIST


def arity(func_name: str) -> tuple[int, int | None]:
    return FUNCTION_WHITELIST[func_name.upper()]


# ---------------------------------------------------------------------------
# Builtin implementations - pure Python, no external deps.
# Each takes a list of resolved arguments: floats, or lists of
# ``float | None`` for ranges (None = empty field).  Domain errors raise
# ValueError; the evaluator turns them into InvalidArgument.
# ---------------------------------------------------------------------------


def _coerce_numeric(values: list[Any]) -> list[float]:
    """Flatten range arguments and drop empty fields."""
    result: list[float] = []
    for v in values:
        if isinstance(v, (list, tuple)):
            result.extend(_coerce_numeric(list(v)))
        elif isinstance(v, (int, float)) and not isinstance(v, bool):
            result.append(float(v))
    return result


def _digits(args: list[Any]) -> int:
    if len(args) < 2:
        return 0
    return int(_scalar(args[1], "digits"))


def _scalar(value: Any, what: str) -> float:
    if isinstance(value, (list, tuple)):
        raise ValueError(f"{what}: a range is not allowed here")
    return float(value)


def _quantize(value: float, digits: int, rounding: str) -> float:
    exp = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(value)).quantize(exp, rounding=rounding))


def _builtin_sum(args: list[Any]) -> float:
    return math.fsum(_coerce_numeric(args))


def _builtin_min(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    if not nums:
        return 0.0
    return min(nums)


def _builtin_max(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    if not nums:
        return 0.0
    return max(nums)


def _builtin_average(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    if not nums:
        raise ValueError("AVERAGE: no numeric values")
    return math.fsum(nums) / len(nums)


def _builtin_round(args: list[Any]) -> float:
    # Half away from zero, as in spreadsheets, not Python's banker's rounding.
    return _quantize(_scalar(args[0], "ROUND"), _digits(args), ROUND_HALF_UP)


def _builtin_roundup(args: list[Any]) -> float:
    return _quantize(_scalar(args[0], "ROUNDUP"), _digits(args), ROUND_UP)


def _builtin_rounddown(args: list[Any]) -> float:
    return _quantize(_scalar(args[0], "ROUNDDOWN"), _digits(args), ROUND_DOWN)


def _builtin_int(args: list[Any]) -> float:
    return float(math.floor(_scalar(args[0], "INT")))


def _builtin_abs(args: list[Any]) -> float:
    return abs(_scalar(args[0], "ABS"))


def _builtin_sqrt(args: list[Any]) -> float:
    x = _scalar(args[0], "SQRT")
    if x < 0:
        raise ValueError("SQRT: negative argument")
    return math.sqrt(x)


def _builtin_power(args: list[Any]) -> float:
    base = _scalar(args[0], "POWER")
    exponent = _scalar(args[1], "POWER")
    if base < 0 and not exponent.is_integer():
        raise ValueError("POWER: negative base with fractional exponent")
    if base == 0 and exponent < 0:
        raise ValueError("POWER: zero to a negative power")
    return base ** exponent


def _builtin_mod(args: list[Any]) -> float:
    a = _scalar(args[0], "MOD")
    b = _scalar(args[1], "MOD")
    if b == 0:
        raise ValueError("MOD: division by zero")
    # Result has the sign of the divisor
    return a - b * math.floor(a / b)


def _builtin_pi(args: list[Any]) -> float:
    return math.pi


_BUILTINS: dict[str, Callable[[list[Any]], float]] = {
    "SUM": _builtin_sum,
    "MIN": _builtin_min,
    "MAX": _builtin_max,
    "AVERAGE": _builtin_average,
    "ROUND": _builtin_round,
    "ROUNDUP": _builtin_roundup,
    "ROUNDDOWN": _builtin_rounddown,
    "INT": _builtin_int,
    "ABS": _builtin_abs,
    "SQRT": _builtin_sqrt,
    "POWER": _builtin_power,
    "MOD": _builtin_mod,
    "PI": _builtin_pi,
}


class FunctionRegistry:
    """Registry of callable function implementations, keyed by upper-case name."""

    def __init__(self) -> None:
        self._functions: dict[str, Callable[[list[Any]], float]] = dict(_BUILTINS)

    def get(self, name: str) -> Callable[[list[Any]], float] | None:
        return self._functions.get(name.upper())

    def has(self, name: str) -> bool:
        return name.upper() in self._functions

    @property
    def supported_functions(self) -> frozenset[str]:
        return frozenset(self._functions.keys())
