"""
Sandboxed evaluation of user-authored expressions and code bodies.

Two layers, both fail closed:

1. A deny-list scan over the raw source. Anything that looks like process
   or environment access, dynamic import, filesystem or socket use,
   global access, dunder attributes or eval/exec/open is refused before
   parsing.
2. The source is parsed with ``ast`` and walked by a whitelisted
   interpreter. Only ``context`` and a handful of pure builtins are
   bound; any node type the interpreter does not know is refused.

``evaluate`` handles a single expression (condition, transform_data).
``execute`` handles a statement body whose ``return`` value is the
result (run_code).
"""

import ast
import copy
import operator
import re
from typing import Any, Callable, Mapping, Optional

import structlog

from core.exceptions import SandboxRuntimeError, SecurityViolation

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10000
DEFAULT_MAX_SIZE = 1_000_000
MAX_EXPONENT = 1000
MAX_INT_BITS = 100_000

SIZED_TYPES = (str, bytes, list, tuple, dict, set)
FORMAT_FIELD = re.compile(r"\{[^{}]*\}")

FORBIDDEN_PATTERNS = [
    re.compile(p)
    for p in (
        r"__",
        r"\bimport\b",
        r"\bprocess\.",
        r"\brequire\s*\(",
        r"\bglobal\.",
        r"\bglobals\s*\(",
        r"\blocals\s*\(",
        r"\bvars\s*\(",
        r"child_process",
        r"subprocess",
        r"\bos\.",
        r"\bsys\.",
        r"\benviron\b",
        r"\bfs\.",
        r"\bnet\.",
        r"\bhttp\.",
        r"\bsocket\b",
        r"\beval\s*\(",
        r"\bexec\s*\(",
        r"\bcompile\s*\(",
        r"\bopen\s*\(",
        r"\bgetattr\s*\(",
        r"\bsetattr\s*\(",
        r"\bdelattr\s*\(",
    )
]


SAFE_OPERATORS: dict[type, Callable[..., Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Not: operator.not_,
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

# Pure methods callable on values of these exact kinds.
SAFE_METHODS: dict[type, frozenset[str]] = {
    str: frozenset({
        "lower", "upper", "strip", "lstrip", "rstrip", "split", "join",
        "replace", "startswith", "endswith", "find", "count", "title",
        "capitalize", "format", "isdigit", "isalpha", "zfill",
    }),
    list: frozenset({"append", "extend", "index", "count", "copy", "pop", "insert", "sort", "reverse"}),
    dict: frozenset({"get", "keys", "values", "items", "copy", "update", "pop", "setdefault"}),
    tuple: frozenset({"index", "count"}),
    set: frozenset({"add", "union", "intersection", "difference", "copy"}),
}


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


class SandboxInterpreter(ast.NodeVisitor):
    """Whitelisted AST interpreter.

    Every ``visit_*`` method below is an allowed construct. Anything else
    lands in ``generic_visit`` and raises SecurityViolation.
    """

    def __init__(
        self,
        context: Any,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_size: int = DEFAULT_MAX_SIZE,
    ):
        self.max_iterations = max_iterations
        self.max_size = max_size
        self.iterations = 0
        self.functions: dict[str, Callable[..., Any]] = {
            "len": len,
            "str": str,
            "int": int,
            "float": float,
            "bool": bool,
            "abs": abs,
            "min": min,
            "max": max,
            "round": round,
            "sum": sum,
            "sorted": sorted,
            "reversed": lambda seq: list(reversed(seq)),
            "list": list,
            "dict": dict,
            "set": set,
            "tuple": tuple,
            "any": any,
            "all": all,
            "enumerate": enumerate,
            "zip": zip,
            "range": self._range,
        }
        self.scope: dict[str, Any] = {"context": context}

    # -- bookkeeping -------------------------------------------------------

    def _tick(self) -> None:
        self.iterations += 1
        if self.iterations > self.max_iterations:
            raise SandboxRuntimeError(
                f"Iteration limit exceeded ({self.max_iterations})"
            )

    def _check_size(self, value: Any) -> Any:
        if isinstance(value, SIZED_TYPES) and len(value) > self.max_size:
            raise SandboxRuntimeError(f"Value too large ({len(value)} items, limit {self.max_size})")
        if isinstance(value, int) and not isinstance(value, bool) and value.bit_length() > MAX_INT_BITS:
            raise SandboxRuntimeError("Integer too large")
        return value

    def _check_format(self, spec: str) -> None:
        for width in re.findall(r"\d+", spec):
            if int(width) > self.max_size:
                raise SandboxRuntimeError(f"Format width too large ({width})")

    def _range(self, *args: int) -> range:
        r = range(*args)
        if len(r) > self.max_iterations:
            raise SandboxRuntimeError(f"range() too large ({len(r)} items)")
        return r

    def generic_visit(self, node: ast.AST) -> Any:
        raise SecurityViolation(f"Construct not allowed: {type(node).__name__}")

    # -- statements --------------------------------------------------------

    def visit_Module(self, node: ast.Module) -> Any:
        try:
            self._run_body(node.body)
        except _Return as ret:
            return ret.value
        return None

    def _run_body(self, body: list[ast.stmt]) -> None:
        for stmt in body:
            self.visit(stmt)

    def visit_Expr(self, node: ast.Expr) -> None:
        self.visit(node.value)

    def visit_Pass(self, node: ast.Pass) -> None:
        return None

    def visit_Return(self, node: ast.Return) -> None:
        raise _Return(self.visit(node.value) if node.value is not None else None)

    def visit_Break(self, node: ast.Break) -> None:
        raise _Break()

    def visit_Continue(self, node: ast.Continue) -> None:
        raise _Continue()

    def visit_Assign(self, node: ast.Assign) -> None:
        value = self.visit(node.value)
        for target in node.targets:
            self._assign(target, value)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        op = SAFE_OPERATORS.get(type(node.op))
        if op is None:
            raise SecurityViolation(f"Operator not allowed: {type(node.op).__name__}")
        if isinstance(node.target, ast.Name):
            current = self._lookup(node.target.id)
        elif isinstance(node.target, ast.Subscript):
            current = self.visit(node.target)
        else:
            raise SecurityViolation("Augmented assignment target not allowed")
        self._assign(node.target, self._binop(op, current, self.visit(node.value), node.op))

    def _assign(self, target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            if target.id in self.functions:
                raise SecurityViolation(f"Cannot rebind builtin '{target.id}'")
            self.scope[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise SandboxRuntimeError(
                    f"Cannot unpack {len(values)} values into {len(target.elts)} targets"
                )
            for elt, item in zip(target.elts, values):
                self._assign(elt, item)
        elif isinstance(target, ast.Subscript):
            container = self.visit(target.value)
            container[self.visit(target.slice)] = value
        else:
            raise SecurityViolation(f"Assignment target not allowed: {type(target).__name__}")

    def visit_If(self, node: ast.If) -> None:
        self._run_body(node.body if self.visit(node.test) else node.orelse)

    def visit_For(self, node: ast.For) -> None:
        broke = False
        for item in self.visit(node.iter):
            self._tick()
            self._assign(node.target, item)
            try:
                self._run_body(node.body)
            except _Break:
                broke = True
                break
            except _Continue:
                continue
        if not broke:
            self._run_body(node.orelse)

    def visit_While(self, node: ast.While) -> None:
        broke = False
        while self.visit(node.test):
            self._tick()
            try:
                self._run_body(node.body)
            except _Break:
                broke = True
                break
            except _Continue:
                continue
        if not broke:
            self._run_body(node.orelse)

    # -- expressions -------------------------------------------------------

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _lookup(self, name: str) -> Any:
        if name in self.scope:
            return self.scope[name]
        if name in self.functions:
            return self.functions[name]
        raise SandboxRuntimeError(f"Undefined variable: {name}")

    def visit_Name(self, node: ast.Name) -> Any:
        return self._lookup(node.id)

    def _binop(self, op: Callable[..., Any], left: Any, right: Any, node_op: ast.AST) -> Any:
        if isinstance(node_op, ast.Pow) and isinstance(right, (int, float)):
            if abs(right) > MAX_EXPONENT:
                raise SandboxRuntimeError("Exponent too large")
            if isinstance(left, int) and left.bit_length() * abs(right) > MAX_INT_BITS:
                raise SandboxRuntimeError("Exponent too large")
        elif isinstance(node_op, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, SIZED_TYPES) and isinstance(count, int) and len(seq) * count > self.max_size:
                    raise SandboxRuntimeError(f"Repetition too large (limit {self.max_size})")
            if isinstance(left, int) and isinstance(right, int) \
                    and left.bit_length() + right.bit_length() > MAX_INT_BITS:
                raise SandboxRuntimeError("Integer too large")
        elif isinstance(node_op, ast.Add) and isinstance(left, SIZED_TYPES) and isinstance(right, SIZED_TYPES):
            if len(left) + len(right) > self.max_size:
                raise SandboxRuntimeError(f"Value too large (limit {self.max_size})")
        return self._check_size(op(left, right))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = SAFE_OPERATORS.get(type(node.op))
        if op is None:
            raise SecurityViolation(f"Operator not allowed: {type(node.op).__name__}")
        return self._binop(op, self.visit(node.left), self.visit(node.right), node.op)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = SAFE_OPERATORS.get(type(node.op))
        if op is None:
            raise SecurityViolation(f"Operator not allowed: {type(node.op).__name__}")
        return op(self.visit(node.operand))

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        # Short-circuit like Python does
        result = None
        for value in node.values:
            result = self.visit(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = SAFE_OPERATORS.get(type(op_node))
            if op is None:
                raise SecurityViolation(f"Operator not allowed: {type(op_node).__name__}")
            right = self.visit(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        return self.visit(node.value)[self.visit(node.slice)]

    def visit_Slice(self, node: ast.Slice) -> slice:
        return slice(
            self.visit(node.lower) if node.lower else None,
            self.visit(node.upper) if node.upper else None,
            self.visit(node.step) if node.step else None,
        )

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(e) for e in node.elts)

    def visit_Set(self, node: ast.Set) -> set:
        return {self.visit(e) for e in node.elts}

    def visit_Dict(self, node: ast.Dict) -> dict:
        result: dict = {}
        for key, value in zip(node.keys, node.values):
            if key is None:
                result.update(self.visit(value))
            else:
                result[self.visit(key)] = self.visit(value)
        return result

    def visit_JoinedStr(self, node: ast.JoinedStr) -> str:
        return "".join(str(self.visit(v)) for v in node.values)

    def visit_FormattedValue(self, node: ast.FormattedValue) -> str:
        value = self.visit(node.value)
        if node.format_spec is not None:
            spec = self.visit(node.format_spec)
            self._check_format(spec)
            return format(value, spec)
        return str(value)

    def visit_Call(self, node: ast.Call) -> Any:
        if isinstance(node.func, ast.Attribute):
            target = self.visit(node.func.value)
            allowed = SAFE_METHODS.get(type(target), frozenset())
            if node.func.attr not in allowed:
                raise SecurityViolation(
                    f"Method not allowed: {type(target).__name__}.{node.func.attr}"
                )
            if isinstance(target, str) and node.func.attr == "format":
                for field in FORMAT_FIELD.findall(target):
                    self._check_format(field)
            func = getattr(target, node.func.attr)
        elif isinstance(node.func, ast.Name):
            if node.func.id not in self.functions:
                raise SecurityViolation(f"Function not allowed: {node.func.id}")
            func = self.functions[node.func.id]
        else:
            raise SecurityViolation("Call target not allowed")

        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                args.extend(self.visit(arg.value))
            else:
                args.append(self.visit(arg))
        kwargs = {}
        for kw in node.keywords:
            if kw.arg is None:
                kwargs.update(self.visit(kw.value))
            else:
                kwargs[kw.arg] = self.visit(kw.value)
        if getattr(func, "__name__", None) == "zfill" and args and isinstance(args[0], int):
            self._check_format(str(args[0]))
        return self._check_size(func(*args, **kwargs))

    # -- comprehensions ----------------------------------------------------

    def _comprehend(self, generators: list[ast.comprehension], emit: Callable[[], None]) -> None:
        saved = dict(self.scope)
        try:
            self._walk_generators(generators, 0, emit)
        finally:
            self.scope = saved

    def _walk_generators(self, generators: list[ast.comprehension], i: int, emit: Callable[[], None]) -> None:
        if i == len(generators):
            emit()
            return
        gen = generators[i]
        if gen.is_async:
            raise SecurityViolation("Async comprehensions not allowed")
        for item in self.visit(gen.iter):
            self._tick()
            self._assign(gen.target, item)
            if all(self.visit(cond) for cond in gen.ifs):
                self._walk_generators(generators, i + 1, emit)

    def visit_ListComp(self, node: ast.ListComp) -> list:
        out: list = []
        self._comprehend(node.generators, lambda: out.append(self.visit(node.elt)))
        return out

    # Generators are materialized; nothing lazy escapes the interpreter.
    visit_GeneratorExp = visit_ListComp

    def visit_SetComp(self, node: ast.SetComp) -> set:
        out: set = set()
        self._comprehend(node.generators, lambda: out.add(self.visit(node.elt)))
        return out

    def visit_DictComp(self, node: ast.DictComp) -> dict:
        out: dict = {}

        def emit() -> None:
            out[self.visit(node.key)] = self.visit(node.value)

        self._comprehend(node.generators, emit)
        return out


def scan_source(source: str) -> None:
    """Raise SecurityViolation if ``source`` matches the deny-list."""
    for pattern in FORBIDDEN_PATTERNS:
        if pattern.search(source):
            logger.warning("Sandbox rejected source", pattern=pattern.pattern)
            raise SecurityViolation("Code contains disallowed references")


def _run(
    source: str,
    mode: str,
    context: Optional[Mapping[str, Any]],
    max_iterations: int,
    max_size: int,
) -> Any:
    if not isinstance(source, str) or not source.strip():
        raise SandboxRuntimeError("No code provided")

    scan_source(source)

    try:
        tree = ast.parse(source.strip() if mode == "eval" else source, mode=mode)
    except SyntaxError as e:
        raise SandboxRuntimeError(f"Invalid syntax: {e.msg} (line {e.lineno})")

    interpreter = SandboxInterpreter(copy.deepcopy(dict(context or {})), max_iterations, max_size)
    try:
        return interpreter.visit(tree)
    except (SecurityViolation, SandboxRuntimeError):
        raise
    except (_Break, _Continue):
        raise SandboxRuntimeError("'break' or 'continue' outside loop")
    except Exception as e:
        raise SandboxRuntimeError(f"{type(e).__name__}: {e}")


def evaluate(
    source: str,
    context: Optional[Mapping[str, Any]] = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    max_size: int = DEFAULT_MAX_SIZE,
) -> Any:
    """Evaluate a single expression with ``context`` bound.

    >>> evaluate("context['A'] == 5", {"A": 5})
    True
    """
    return _run(source, "eval", context, max_iterations, max_size)


def execute(
    source: str,
    context: Optional[Mapping[str, Any]] = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    max_size: int = DEFAULT_MAX_SIZE,
) -> Any:
    """Run a statement body with ``context`` bound; return its ``return`` value."""
    return _run(source, "exec", context, max_iterations, max_size)
