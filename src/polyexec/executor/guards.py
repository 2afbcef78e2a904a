"""
Work bounds for sandboxed Python.

CPython holds the GIL for the whole of a single C call.  While sandboxed
code sits in one (a huge integer power, a repetition producing gigabytes,
``sum`` over an endless iterator), neither the sandbox's trace hook nor the
host's event loop gets to run, so the wall-clock race cannot be won.  The
helpers here keep every such call short:

* :class:`ArithmeticGuard` rewrites ``**``, ``*`` and ``<<`` (and their
  augmented forms) into calls that refuse results above a size bound,
* ``pow`` and the ``math``/``operator`` functions that build big integers
  are replaced by checked versions,
* long ranges, the endless ``itertools`` iterators and ``iter(callable,
  sentinel)`` step through Python frames, so the deadline check keeps
  firing while a builtin consumes them.

Limits raise ``OverflowError`` or ``MemoryError`` before any work is done.
"""

from __future__ import annotations

import array
import ast
import collections.abc
import functools
import math
import operator
from typing import Any, Dict

# Largest integer, in bits, that arithmetic in sandboxed code may produce.
MAX_INT_BITS = 1 << 18

# Longest sequence that repetition in sandboxed code may produce.
MAX_SEQUENCE_LENGTH = 1 << 23

# Bound on exponent bits times the square of modulus bits for pow(b, e, m).
MAX_MODPOW_COST = 1 << 36

# Ranges longer than this are iterated one Python step at a time.
LONG_RANGE_LENGTH = 1 << 20

RESERVED_PREFIX = "__sandbox_"

_TARGET = "__sandbox_target__"
_KEY = "__sandbox_key__"
_SLICE = "__sandbox_slice__"

_BINARY_HELPERS = {
    ast.Pow: "__sandbox_pow__",
    ast.Mult: "__sandbox_mul__",
    ast.LShift: "__sandbox_lshift__",
}

_INPLACE_HELPERS = {
    ast.Pow: "__sandbox_ipow__",
    ast.Mult: "__sandbox_imul__",
    ast.LShift: "__sandbox_ilshift__",
}

_REPEATABLE = (collections.abc.Sequence, array.array)


def _check_bits(bits: int, operation: str) -> None:
    if bits > MAX_INT_BITS:
        raise OverflowError(f"{operation} result too large ({bits} bits, limit {MAX_INT_BITS})")


def _check_power(base: Any, exp: Any, mod: Any = None) -> None:
    if not (isinstance(base, int) and isinstance(exp, int)):
        return
    if mod is None:
        if exp > 1 and abs(base) > 1:
            _check_bits(base.bit_length() * exp, "integer power")
    elif isinstance(mod, int):
        if exp.bit_length() * mod.bit_length() ** 2 > MAX_MODPOW_COST:
            raise OverflowError("modular power too expensive")


def _check_product(left: Any, right: Any) -> None:
    if isinstance(left, int) and isinstance(right, int):
        if left and right:
            _check_bits(left.bit_length() + right.bit_length(), "integer product")
        return
    for sequence, count in ((left, right), (right, left)):
        if isinstance(count, int) and count > 1 and isinstance(sequence, _REPEATABLE):
            if len(sequence) * count > MAX_SEQUENCE_LENGTH:
                raise MemoryError(f"repeated sequence too long (limit {MAX_SEQUENCE_LENGTH} items)")


def _check_shift(value: Any, shift: Any) -> None:
    if isinstance(value, int) and isinstance(shift, int) and value and shift > 0:
        _check_bits(value.bit_length() + shift, "integer shift")


def checked_pow(base, exp, mod=None):
    _check_power(base, exp, mod)
    if mod is None:
        return base ** exp
    return pow(base, exp, mod)


def checked_ipow(base, exp):
    _check_power(base, exp)
    return operator.ipow(base, exp)


def checked_mul(left, right):
    _check_product(left, right)
    return left * right


def checked_imul(left, right):
    _check_product(left, right)
    return operator.imul(left, right)


def checked_lshift(value, shift):
    _check_shift(value, shift)
    return value << shift


def checked_ilshift(value, shift):
    _check_shift(value, shift)
    return operator.ilshift(value, shift)


def checked_factorial(n):
    if isinstance(n, int) and n > 1:
        _check_bits(n * n.bit_length(), "math.factorial")
    return math.factorial(n)


def checked_comb(n, k):
    if isinstance(n, int) and isinstance(k, int) and 0 <= k <= n:
        _check_bits(min(k, n - k) * n.bit_length(), "math.comb")
    return math.comb(n, k)


def checked_perm(n, k=None):
    if isinstance(n, int) and (k is None or isinstance(k, int)):
        taken = n if k is None else k
        if 0 <= taken <= n:
            _check_bits(taken * n.bit_length(), "math.perm")
    return math.perm(n, k)


def checked_prod(iterable, *, start=1):
    return functools.reduce(checked_mul, iterable, start)


def checked_lcm(*integers):
    result = 1
    for value in integers:
        _check_product(result, value)
        result = math.lcm(result, value)
    return result


def _step_through(values):
    for value in values:
        yield value


class LongRange(collections.abc.Sequence):
    """A range too long to hand to a builtin in one C call.

    Behaves like the range it wraps, except that iterating it resumes a
    Python generator for every item.
    """

    def __init__(self, inner: range) -> None:
        self._inner = inner

    start = property(lambda self: self._inner.start)
    stop = property(lambda self: self._inner.stop)
    step = property(lambda self: self._inner.step)

    def __len__(self) -> int:
        return len(self._inner)

    def __bool__(self) -> bool:
        return bool(self._inner)

    def __getitem__(self, index):
        item = self._inner[index]
        return guarded_range_of(item) if isinstance(item, range) else item

    def __iter__(self):
        return _step_through(self._inner)

    def __reversed__(self):
        return _step_through(reversed(self._inner))

    def __contains__(self, value) -> bool:
        if isinstance(value, int):
            return value in self._inner
        return any(item == value for item in self)

    def count(self, value) -> int:
        if isinstance(value, int):
            return self._inner.count(value)
        return sum(1 for item in self if item == value)

    def index(self, value) -> int:
        if isinstance(value, int):
            return self._inner.index(value)
        for position, item in enumerate(self):
            if item == value:
                return position
        raise ValueError(f"{value!r} is not in range")

    def __eq__(self, other) -> bool:
        if isinstance(other, LongRange):
            other = other._inner
        return self._inner == other

    def __hash__(self) -> int:
        return hash(self._inner)

    def __repr__(self) -> str:
        return repr(self._inner)


def guarded_range_of(value: range):
    try:
        short = len(value) <= LONG_RANGE_LENGTH
    except OverflowError:
        short = False
    return value if short else LongRange(value)


def guarded_range(*args):
    return guarded_range_of(range(*args))


def _call_until(function, sentinel):
    while True:
        value = function()
        if value == sentinel:
            return
        yield value


def guarded_iter(obj, *sentinel):
    if not sentinel:
        return iter(obj)
    if len(sentinel) > 1:
        raise TypeError(f"iter expected at most 2 arguments, got {len(sentinel) + 1}")
    if not callable(obj):
        raise TypeError("iter(v, w): v must be callable")
    return _call_until(obj, sentinel[0])


def count(start=0, step=1):
    value = start
    while True:
        yield value
        value += step


def cycle(iterable):
    saved = []
    for element in iterable:
        yield element
        saved.append(element)
    while saved:
        for element in saved:
            yield element


def repeat(obj, times=None):
    if times is None:
        while True:
            yield obj
    else:
        for _ in range(times):
            yield obj


BUILTIN_OVERRIDES: Dict[str, Any] = {
    "iter": guarded_iter,
    "pow": checked_pow,
    "range": guarded_range,
}

# Names the rewritten code calls.  User code may not bind them.
HELPERS: Dict[str, Any] = {
    "__sandbox_pow__": checked_pow,
    "__sandbox_mul__": checked_mul,
    "__sandbox_lshift__": checked_lshift,
    "__sandbox_ipow__": checked_ipow,
    "__sandbox_imul__": checked_imul,
    "__sandbox_ilshift__": checked_ilshift,
    _SLICE: slice,
}

MODULE_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "itertools": {"count": count, "cycle": cycle, "repeat": repeat},
    "math": {
        "comb": checked_comb,
        "factorial": checked_factorial,
        "lcm": checked_lcm,
        "perm": checked_perm,
        "prod": checked_prod,
    },
    "operator": {
        "imul": checked_imul,
        "ilshift": checked_ilshift,
        "ipow": checked_ipow,
        "lshift": checked_lshift,
        "mul": checked_mul,
        "pow": checked_pow,
    },
}


def _load(name: str) -> ast.Name:
    return ast.Name(id=name, ctx=ast.Load())


def _store(name: str) -> ast.Name:
    return ast.Name(id=name, ctx=ast.Store())


def _call(helper: str, *args: ast.expr) -> ast.Call:
    return ast.Call(func=_load(helper), args=list(args), keywords=[])


def _as_value(key: ast.expr) -> ast.expr:
    # Slice nodes are only valid directly inside a subscript.
    if isinstance(key, ast.Slice):
        parts = (key.lower, key.upper, key.step)
        return _call(_SLICE, *(part or ast.Constant(value=None) for part in parts))
    if isinstance(key, ast.Tuple):
        return ast.Tuple(elts=[_as_value(elt) for elt in key.elts], ctx=ast.Load())
    return key


class ArithmeticGuard(ast.NodeTransformer):
    """Route size-amplifying operators through the checked helpers."""

    def visit_BinOp(self, node: ast.BinOp) -> ast.AST:
        self.generic_visit(node)
        helper = _BINARY_HELPERS.get(type(node.op))
        if helper is None:
            return node
        return ast.copy_location(_call(helper, node.left, node.right), node)

    def visit_AugAssign(self, node: ast.AugAssign):
        self.generic_visit(node)
        helper = _INPLACE_HELPERS.get(type(node.op))
        if helper is None:
            return node
        target = node.target
        if isinstance(target, ast.Name):
            statements = [
                ast.Assign(targets=[_store(target.id)], value=_call(helper, _load(target.id), node.value)),
            ]
        elif isinstance(target, ast.Attribute):
            # The object is evaluated once, as the augmented form would.
            statements = [
                ast.Assign(targets=[_store(_TARGET)], value=target.value),
                ast.Assign(
                    targets=[ast.Attribute(value=_load(_TARGET), attr=target.attr, ctx=ast.Store())],
                    value=_call(
                        helper,
                        ast.Attribute(value=_load(_TARGET), attr=target.attr, ctx=ast.Load()),
                        node.value,
                    ),
                ),
                ast.Delete(targets=[ast.Name(id=_TARGET, ctx=ast.Del())]),
            ]
        else:
            statements = [
                ast.Assign(
                    targets=[ast.Tuple(elts=[_store(_TARGET), _store(_KEY)], ctx=ast.Store())],
                    value=ast.Tuple(elts=[target.value, _as_value(target.slice)], ctx=ast.Load()),
                ),
                ast.Assign(
                    targets=[ast.Subscript(value=_load(_TARGET), slice=_load(_KEY), ctx=ast.Store())],
                    value=_call(
                        helper,
                        ast.Subscript(value=_load(_TARGET), slice=_load(_KEY), ctx=ast.Load()),
                        node.value,
                    ),
                ),
                ast.Delete(targets=[ast.Name(id=_TARGET, ctx=ast.Del()), ast.Name(id=_KEY, ctx=ast.Del())]),
            ]
        return [ast.copy_location(statement, node) for statement in statements]


def guard_arithmetic(tree: ast.Module) -> ast.Module:
    """Rewrite ``tree`` in place so its arithmetic goes through the checks."""
    tree = ArithmeticGuard().visit(tree)
    return ast.fix_missing_locations(tree)
