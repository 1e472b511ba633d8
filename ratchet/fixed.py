"""
Fixed-point helpers shared by the reserve engine and the bond ledger.

Every ratio, power and exponential in the protocol is evaluated with a dedicated
40-digit decimal context so that rounding stays bounded across thousands of epochs.
Arithmetic operators on Decimal use the thread-local context, so public entry points
run inside `precision()` (or are wrapped with `precise`).
"""
from __future__ import annotations
from contextlib import contextmanager
from decimal import (
    Context,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_EVEN,
    localcontext,
)
from functools import wraps
from typing import Callable, Iterator, TypeVar, Union

PRECISION = 40

CONTEXT = Context(
    prec=PRECISION,
    rounding=ROUND_HALF_EVEN,
    Emin=-999999,
    Emax=999999,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)

ZERO = Decimal(0)
ONE = Decimal(1)

Number = Union[Decimal, int, float, str]
F = TypeVar("F", bound=Callable)


def D(value: Number) -> Decimal:
    """Coerce to Decimal; floats go through their shortest repr (1.3 -> Decimal('1.3'))."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a numeric amount")
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


@contextmanager
def precision() -> Iterator[Context]:
    with localcontext(CONTEXT) as ctx:
        yield ctx


def precise(fn: F) -> F:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        with localcontext(CONTEXT):
            return fn(*args, **kwargs)
    return wrapper  # type: ignore[return-value]


def exp(x: Number) -> Decimal:
    return CONTEXT.exp(D(x))


def sqrt(x: Number) -> Decimal:
    return CONTEXT.sqrt(D(x))


def power(base: Number, exponent: Number) -> Decimal:
    b = D(base)
    e = D(exponent)
    if b == ZERO:
        return ZERO if e > ZERO else ONE
    return CONTEXT.power(b, e)


def div(a: Number, b: Number, default: Number = ZERO) -> Decimal:
    """Division that returns `default` for a zero denominator."""
    den = D(b)
    if den == ZERO:
        return D(default)
    return CONTEXT.divide(D(a), den)


def decay_toward(value: Number, target: Number, dt: Number, tau: Number) -> Decimal:
    """Exponential relaxation of `value` toward `target` over `dt` with time constant `tau`."""
    v = D(value)
    t = D(target)
    tau_d = D(tau)
    if tau_d <= ZERO:
        return t
    factor = exp(-CONTEXT.divide(D(dt), tau_d))
    return CONTEXT.add(t, CONTEXT.multiply(CONTEXT.subtract(v, t), factor))


def clamp(x: Number, lo: Number, hi: Number) -> Decimal:
    v = D(x)
    lo_d = D(lo)
    hi_d = D(hi)
    if v < lo_d:
        return lo_d
    if v > hi_d:
        return hi_d
    return v


def floor_int(x: Number) -> int:
    return int(D(x).to_integral_value(rounding=ROUND_FLOOR))


def ceil_int(x: Number) -> int:
    return int(D(x).to_integral_value(rounding=ROUND_CEILING))


def round_int(x: Number) -> int:
    return int(D(x).to_integral_value(rounding=ROUND_HALF_EVEN))


def le_within(a: Number, b: Number, rel_tol: Number) -> bool:
    """a <= b, allowing a relative slack of `rel_tol` on b."""
    a_d = D(a)
    b_d = D(b)
    slack = CONTEXT.multiply(abs(b_d), D(rel_tol))
    return a_d <= CONTEXT.add(b_d, slack)
