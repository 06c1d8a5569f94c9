"""Tests for the expression / code sandbox."""

import pytest

from core.exceptions import SandboxRuntimeError, SecurityViolation
from workflow.sandbox import evaluate, execute, scan_source


# ─── Expressions ───

@pytest.mark.unit
class TestEvaluate:
    def test_condition_on_context(self):
        assert evaluate("context['A'] == 5", {"A": 5}) is True
        assert evaluate("context['A'] == 5", {"A": 6}) is False

    def test_nested_access(self):
        ctx = {"fetch": {"data": {"items": [1, 2, 3]}}}
        assert evaluate("len(context['fetch']['data']['items']) > 2", ctx) is True

    def test_arithmetic_and_builtins(self):
        assert evaluate("sum([1, 2, 3]) * 2 - abs(-1)") == 11
        assert evaluate("max(3, 7) // 2") == 3
        assert evaluate("round(2.567, 1)") == 2.6

    def test_boolean_short_circuit(self):
        # The right side would fail on a missing key
        assert evaluate("'x' in context and context['x'] > 1", {}) is False
        assert evaluate("context.get('a') or 'default'", {}) == "default"

    def test_chained_comparison(self):
        assert evaluate("1 < context['n'] <= 3", {"n": 3}) is True

    def test_comprehensions(self):
        ctx = {"rows": [{"n": 1}, {"n": 2}, {"n": 3}]}
        assert evaluate("[r['n'] * 10 for r in context['rows'] if r['n'] > 1]", ctx) == [20, 30]
        assert evaluate("{r['n']: r['n'] ** 2 for r in context['rows']}", ctx) == {1: 1, 2: 4, 3: 9}
        assert evaluate("sum(r['n'] for r in context['rows'])", ctx) == 6

    def test_safe_methods(self):
        assert evaluate("'Hello'.lower()") == "hello"
        assert evaluate("', '.join(['a', 'b'])") == "a, b"
        assert evaluate("sorted(context.keys())", {"b": 1, "a": 2}) == ["a", "b"]

    def test_literals_and_fstrings(self):
        assert evaluate("{'total': context['n'], 'ok': True}", {"n": 4}) == {"total": 4, "ok": True}
        assert evaluate("f\"{context['name']}!\"", {"name": "hi"}) == "hi!"

    def test_ternary_and_slices(self):
        assert evaluate("'big' if context['n'] > 10 else 'small'", {"n": 3}) == "small"
        assert evaluate("[1, 2, 3, 4][1:3]") == [2, 3]

    def test_undefined_variable(self):
        with pytest.raises(SandboxRuntimeError, match="Undefined variable: x"):
            evaluate("x + 1")

    def test_missing_key_is_runtime_error(self):
        with pytest.raises(SandboxRuntimeError, match="KeyError"):
            evaluate("context['missing']", {})

    def test_division_by_zero(self):
        with pytest.raises(SandboxRuntimeError, match="ZeroDivisionError"):
            evaluate("1 / 0")

    def test_invalid_syntax(self):
        with pytest.raises(SandboxRuntimeError, match="Invalid syntax"):
            evaluate("context[")

    def test_empty_source(self):
        with pytest.raises(SandboxRuntimeError, match="No code provided"):
            evaluate("   ")

    def test_huge_exponent_refused(self):
        with pytest.raises(SandboxRuntimeError, match="Exponent too large"):
            evaluate("10 ** 100000")

    def test_chained_powers_refused(self):
        with pytest.raises(SandboxRuntimeError, match="Exponent too large"):
            evaluate("((10 ** 1000) ** 1000) ** 3 > 0")

    def test_small_powers_allowed(self):
        assert evaluate("2 ** 10") == 1024
        assert evaluate("10 ** 8") == 100000000

    @pytest.mark.parametrize("source", [
        "'ab' * (10 ** 8)",
        "(10 ** 8) * 'ab'",
        "[0] * 2000000",
    ])
    def test_huge_repetition_refused(self, source):
        with pytest.raises(SandboxRuntimeError, match="Repetition too large"):
            evaluate(source)

    def test_repetition_within_limit(self):
        assert evaluate("'ab' * 3") == "ababab"

    def test_custom_size_limit(self):
        with pytest.raises(SandboxRuntimeError, match="Repetition too large"):
            evaluate("'x' * 11", max_size=10)
        assert evaluate("'x' * 10", max_size=10) == "x" * 10

    def test_huge_format_width_refused(self):
        with pytest.raises(SandboxRuntimeError, match="Format width too large"):
            evaluate("f'{1:>1000000000}'")
        with pytest.raises(SandboxRuntimeError, match="Format width too large"):
            evaluate("'{:>1000000000}'.format(1)")
        with pytest.raises(SandboxRuntimeError, match="Format width too large"):
            evaluate("'7'.zfill(1000000000)")

    def test_normal_format_specs(self):
        assert evaluate("f'{3.14159:.2f}'") == "3.14"
        assert evaluate("'{:>5}'.format('ab')") == "   ab"
        assert evaluate("'7'.zfill(3)") == "007"


# ─── Code bodies ───

@pytest.mark.unit
class TestExecute:
    def test_return_value(self):
        assert execute("return 5") == 5

    def test_no_return_is_none(self):
        assert execute("x = 1") is None

    def test_loops_and_branches(self):
        code = (
            "total = 0\n"
            "for item in context['items']:\n"
            "    if item < 0:\n"
            "        continue\n"
            "    if item > 100:\n"
            "        break\n"
            "    total += item\n"
            "return {'total': total}\n"
        )
        assert execute(code, {"items": [1, -5, 2, 500, 3]}) == {"total": 3}

    def test_while_loop(self):
        assert execute("n = 0\nwhile n < 5:\n    n += 1\nreturn n") == 5

    def test_tuple_unpacking(self):
        assert execute("a, b = 1, 2\nreturn b - a") == 1

    def test_list_methods(self):
        assert execute("out = []\nout.append(1)\nout.extend([2, 3])\nreturn out") == [1, 2, 3]

    def test_context_is_a_copy(self):
        ctx = {"A": {"n": 1}}
        assert execute("context['A']['n'] = 99\nreturn context['A']['n']", ctx) == 99
        assert ctx == {"A": {"n": 1}}

    def test_iteration_limit(self):
        with pytest.raises(SandboxRuntimeError, match="Iteration limit"):
            execute("while True:\n    pass", max_iterations=100)

    def test_range_limit(self):
        with pytest.raises(SandboxRuntimeError, match="too large"):
            execute("return list(range(1000000))", max_iterations=100)

    def test_cannot_rebind_builtin(self):
        with pytest.raises(SecurityViolation):
            execute("len = 5")


# ─── Security ───

@pytest.mark.unit
class TestSecurity:
    @pytest.mark.parametrize("source", [
        "import os",
        "__import__('os')",
        "().__class__.__bases__",
        "os.system('ls')",
        "sys.exit(1)",
        "open('/etc/passwd')",
        "eval('1')",
        "exec('x = 1')",
        "globals()",
        "getattr(context, 'x')",
        "require('fs')",
        "process.env",
        "subprocess.run(['ls'])",
        "environ",
    ])
    def test_forbidden_patterns(self, source):
        with pytest.raises(SecurityViolation, match="disallowed references"):
            scan_source(source)

    def test_scan_allows_plain_code(self):
        scan_source("context['A']['status'] == 200")

    def test_import_rejected_by_execute(self):
        with pytest.raises(SecurityViolation):
            execute("import json\nreturn 1")

    @pytest.mark.parametrize("source", [
        "lambda: 1",
        "context.items",
        "'abc'.encode()",
        "[].clear()",
    ])
    def test_constructs_outside_whitelist(self, source):
        with pytest.raises(SecurityViolation):
            evaluate(source)

    def test_function_definitions_rejected(self):
        with pytest.raises(SecurityViolation):
            execute("def f():\n    return 1\nreturn f()")

    def test_unknown_function_rejected(self):
        with pytest.raises(SecurityViolation, match="Function not allowed"):
            evaluate("print('x')")

    def test_security_violation_not_retryable(self):
        with pytest.raises(SecurityViolation) as exc:
            evaluate("__import__('os')")
        assert exc.value.retryable is False
        assert exc.value.code == "SECURITY_VIOLATION"
