"""Tests for the arithmetic rewrite and the bounded helpers."""

from __future__ import annotations

import ast
import itertools
import math
import types

import pytest

from polyexec.executor.guards import (
    HELPERS,
    MAX_INT_BITS,
    MAX_SEQUENCE_LENGTH,
    LongRange,
    checked_comb,
    checked_factorial,
    checked_lcm,
    checked_lshift,
    checked_mul,
    checked_perm,
    checked_pow,
    checked_prod,
    count,
    cycle,
    guard_arithmetic,
    guarded_iter,
    guarded_range,
    repeat,
)


def run_guarded(code):
    namespace = dict(HELPERS)
    exec(compile(guard_arithmetic(ast.parse(code)), "<guarded>", "exec"), namespace)
    return namespace


def test_operators_are_rewritten():
    tree = guard_arithmetic(ast.parse("y = a ** b * c << d\nz = a + b\n"))
    ops = {type(node.op) for node in ast.walk(tree) if isinstance(node, ast.BinOp)}
    assert ops == {ast.Add}
    names = {node.id for node in ast.walk(tree) if isinstance(node, ast.Name)}
    assert {"__sandbox_pow__", "__sandbox_mul__", "__sandbox_lshift__"} <= names


def test_rewritten_code_behaves_the_same():
    namespace = run_guarded(
        "x = 3\n"
        "x **= 2\n"
        "y = [1, 2] * 2\n"
        "z = 1 << 5\n"
        "m = {'k': 2}\n"
        "m['k'] *= 4\n"
        "grid = [[0, 1], [2, 3]]\n"
        "grid[1][1] <<= 2\n"
        "t = [1, 2, 3, 4]\n"
        "t[::2] *= 1\n"
    )
    assert namespace["x"] == 9
    assert namespace["y"] == [1, 2, 1, 2]
    assert namespace["z"] == 32
    assert namespace["m"] == {"k": 8}
    assert namespace["grid"] == [[0, 1], [2, 12]]
    assert namespace["t"] == [1, 2, 3, 4]
    assert "__sandbox_target__" not in namespace
    assert "__sandbox_key__" not in namespace


def test_augmented_attribute_evaluates_object_once():
    namespace = run_guarded(
        "class Box:\n"
        "    v = 2\n"
        "calls = []\n"
        "box = Box()\n"
        "def get():\n"
        "    calls.append(1)\n"
        "    return box\n"
        "get().v **= 3\n"
    )
    assert namespace["box"].v == 8
    assert namespace["calls"] == [1]


def test_integer_limits():
    assert checked_pow(2, 1000) == 2 ** 1000
    assert checked_pow(-1, 10 ** 12) == 1
    assert checked_pow(2, -2) == 0.25
    with pytest.raises(OverflowError, match="integer power"):
        checked_pow(3, MAX_INT_BITS)
    with pytest.raises(OverflowError, match="integer product"):
        checked_mul(1 << MAX_INT_BITS - 1, 1 << 8)
    with pytest.raises(OverflowError, match="integer shift"):
        checked_lshift(1, MAX_INT_BITS)
    assert checked_lshift(0, 10 ** 12) == 0


def test_modular_power_cost():
    assert checked_pow(3, 10 ** 6, 7) == pow(3, 10 ** 6, 7)
    with pytest.raises(OverflowError, match="modular power"):
        checked_pow(3, 1 << 5000, (1 << 5000) + 1)


def test_repetition_limit():
    assert checked_mul("ab", 3) == "ababab"
    assert checked_mul(3, (0,)) == (0, 0, 0)
    with pytest.raises(MemoryError):
        checked_mul("ab", MAX_SEQUENCE_LENGTH)
    with pytest.raises(MemoryError):
        checked_mul(MAX_SEQUENCE_LENGTH + 1, [None])


def test_math_replacements():
    assert checked_factorial(20) == math.factorial(20)
    assert checked_comb(10, 3) == 120
    assert checked_perm(5) == 120
    assert checked_perm(5, 2) == 20
    assert checked_prod([2, 3, 4]) == 24
    assert checked_prod([], start=7) == 7
    assert checked_lcm(4, 6) == 12
    with pytest.raises(OverflowError):
        checked_factorial(10 ** 6)
    with pytest.raises(OverflowError):
        checked_comb(10 ** 6, 5 * 10 ** 5)
    with pytest.raises(OverflowError):
        checked_prod([1 << 200_000, 1 << 200_000])


def test_long_range():
    r = guarded_range(10 ** 12)
    assert isinstance(r, LongRange)
    assert len(r) == 10 ** 12
    assert (r.start, r.stop, r.step) == (0, 10 ** 12, 1)
    assert r[3] == 3
    assert r[-1] == 10 ** 12 - 1
    assert 5 in r and -1 not in r
    assert r.index(7) == 7
    assert r.count(7) == 1
    assert r[2:10:2] == range(2, 10, 2)
    assert next(reversed(r)) == 10 ** 12 - 1
    assert isinstance(iter(r), types.GeneratorType)
    assert r == range(10 ** 12)
    assert repr(r) == "range(0, 1000000000000)"


def test_short_range_is_a_plain_range():
    assert isinstance(guarded_range(10), range)
    assert guarded_range(1, 10, 3) == range(1, 10, 3)


def test_iter_with_sentinel():
    values = iter([3, 2, 1, 0]).__next__
    assert list(guarded_iter(values, 1)) == [3, 2]
    assert list(guarded_iter([1, 2])) == [1, 2]
    with pytest.raises(TypeError):
        guarded_iter([1, 2], 1)
    with pytest.raises(TypeError):
        guarded_iter(int, 1, 2)


def test_endless_iterators():
    assert list(itertools.islice(count(1, 3), 3)) == [1, 4, 7]
    assert list(itertools.islice(count(), 2)) == [0, 1]
    assert list(repeat(0, 3)) == [0, 0, 0]
    assert list(itertools.islice(repeat("x"), 2)) == ["x", "x"]
    assert list(itertools.islice(cycle("ab"), 5)) == ["a", "b", "a", "b", "a"]
    assert list(cycle([])) == []
