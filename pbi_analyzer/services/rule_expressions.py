"""Compiler and evaluator for BPA rule expressions.

Rule expressions are written in the Dynamic LINQ dialect used by the public
best-practice rule catalog, e.g.::

    (DataType = DataType.Double or DataType = "Decimal") and not IsHidden
    RegEx.IsMatch(Expression, "(?i)IFERROR\\s*\\(")
    Columns.Any(string.IsNullOrWhitespace(Description))

Supported: boolean operators (and/or/not, &&/||/!), comparisons (=, ==, !=,
<>, <, >, <=, >=), + - * / %, string/number/bool/null literals, member access
on the current object (``it``) or its parent scope (``outerIt``), enum
literals such as ``AggregateFunction.None``, string methods, sequence methods
taking a predicate (Any, All, Count, Where, FirstOrDefault), ``iif``,
``GetAnnotation``/``HasAnnotation``, ``RegEx.IsMatch`` and
``string.IsNullOrEmpty``/``IsNullOrWhitespace``.

Expressions are parsed into a small tree of tagged nodes once and cached.
Property lookups are case-insensitive and yield null when absent.
"""

import re
from functools import lru_cache
from typing import Any, Iterator, List, NamedTuple, Optional, Tuple


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed or evaluated."""


# ----------------------------------------------------------------------
# Nodes
# ----------------------------------------------------------------------


class Literal(NamedTuple):
    value: Any


class Name(NamedTuple):
    name: str


class Member(NamedTuple):
    target: Any
    name: str


class Call(NamedTuple):
    target: Any  # None for free functions such as iif()
    name: str
    args: Tuple[Any, ...]


class Unary(NamedTuple):
    op: str
    operand: Any


class Binary(NamedTuple):
    op: str
    left: Any
    right: Any


# Type names whose members are enum literals (DataType.Double -> "Double")
ENUM_TYPES = {
    "AggregateFunction",
    "ColumnType",
    "CompatibilityMode",
    "CrossFilteringBehavior",
    "DataSourceType",
    "DataType",
    "DateTimeRelationshipBehavior",
    "ModeType",
    "ObjectState",
    "ObjectType",
    "PartitionSourceType",
    "RegexOptions",
    "RelationshipEndCardinality",
    "SecurityFilteringBehavior",
}

NAMESPACES = {"regex", "string", "math"}

# Deepest nesting of parentheses, calls and prefix operators accepted by the parser
MAX_DEPTH = 64

_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}
_COMPARISON_OPS = {"=": "==", "==": "==", "!=": "!=", "<>": "!=", "<": "<", ">": ">", "<=": "<=", ">=": ">="}

# ----------------------------------------------------------------------
# Tokenizer
# ----------------------------------------------------------------------


class Token(NamedTuple):
    kind: str  # 'number', 'string', 'ident', 'op', 'punct', 'end'
    value: Any
    pos: int


_TOKEN_RE = re.compile(
    r"""
    (?P<number>\d+(?:\.\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*")
    |(?P<char>'(?:[^'\\]|\\.)*')
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>==|!=|<>|<=|>=|&&|\|\||[=<>!+\-*/%])
    |(?P<punct>[().,])
    """,
    re.VERBOSE,
)


def _unquote(raw: str) -> str:
    # Only the quote escape is interpreted; regex escapes pass through untouched
    quote = raw[0]
    return raw[1:-1].replace("\\" + quote, quote)


def tokenize(text: str) -> Iterator[Token]:
    pos = 0
    length = len(text)
    while True:
        while pos < length and text[pos].isspace():
            pos += 1
        if pos >= length:
            yield Token("end", None, pos)
            return

        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ExpressionError(f"Unexpected character {text[pos]!r} at position {pos}")

        kind = match.lastgroup
        raw = match.group(kind)
        if kind == "number":
            yield Token("number", float(raw) if "." in raw else int(raw), pos)
        elif kind in ("string", "char"):
            yield Token("string", _unquote(raw), pos)
        else:
            yield Token(kind, raw, pos)
        pos = match.end()


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------


class _Parser:
    """Recursive-descent parser; one instance per expression."""

    def __init__(self, text: str):
        self.tokens: List[Token] = list(tokenize(text))
        self.index = 0
        self.depth = 0

    def parse(self) -> Any:
        if self._peek().kind == "end":
            raise ExpressionError("Empty expression")
        node = self._or()
        token = self._peek()
        if token.kind != "end":
            raise ExpressionError(f"Unexpected {token.value!r} at position {token.pos}")
        return node

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _next(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "end":
            self.index += 1
        return token

    def _accept(self, *values: str) -> Optional[str]:
        """Consume an operator, punctuation or keyword token if it matches."""
        token = self._peek()
        if token.kind in ("op", "punct") and token.value in values:
            self.index += 1
            return token.value
        if token.kind == "ident" and token.value.lower() in values:
            self.index += 1
            return token.value.lower()
        return None

    def _expect(self, value: str) -> None:
        if self._accept(value) is None:
            token = self._peek()
            found = "end of expression" if token.kind == "end" else repr(token.value)
            raise ExpressionError(f"Expected {value!r} but found {found} at position {token.pos}")

    def _descend(self) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise ExpressionError(f"Expression nested deeper than {MAX_DEPTH} levels at position {self._peek().pos}")

    def _or(self) -> Any:
        self._descend()
        node = self._and()
        while self._accept("or", "||"):
            node = Binary("or", node, self._and())
        self.depth -= 1
        return node

    def _and(self) -> Any:
        node = self._comparison()
        while self._accept("and", "&&"):
            node = Binary("and", node, self._comparison())
        return node

    def _comparison(self) -> Any:
        node = self._additive()
        while True:
            op = self._accept(*_COMPARISON_OPS)
            if op is None:
                return node
            node = Binary(_COMPARISON_OPS[op], node, self._additive())

    def _additive(self) -> Any:
        node = self._multiplicative()
        while True:
            op = self._accept("+", "-")
            if op is None:
                return node
            node = Binary(op, node, self._multiplicative())

    def _multiplicative(self) -> Any:
        node = self._unary()
        while True:
            op = self._accept("*", "/", "%")
            if op is None:
                return node
            node = Binary(op, node, self._unary())

    def _unary(self) -> Any:
        op = self._accept("not", "!", "-")
        if op is None:
            return self._postfix()
        self._descend()
        node = Unary("-" if op == "-" else "not", self._unary())
        self.depth -= 1
        return node

    def _postfix(self) -> Any:
        node = self._primary()
        while self._accept("."):
            token = self._next()
            if token.kind != "ident":
                raise ExpressionError(f"Expected member name at position {token.pos}")
            if self._peek().kind == "punct" and self._peek().value == "(":
                node = Call(node, token.value, self._arguments())
            else:
                node = Member(node, token.value)
        return node

    def _primary(self) -> Any:
        token = self._next()
        if token.kind in ("number", "string"):
            return Literal(token.value)
        if token.kind == "ident":
            lowered = token.value.lower()
            if lowered in _KEYWORD_LITERALS:
                return Literal(_KEYWORD_LITERALS[lowered])
            if self._peek().kind == "punct" and self._peek().value == "(":
                return Call(None, token.value, self._arguments())
            return Name(token.value)
        if token.kind == "punct" and token.value == "(":
            node = self._or()
            self._expect(")")
            return node
        if token.kind == "end":
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected {token.value!r} at position {token.pos}")

    def _arguments(self) -> Tuple[Any, ...]:
        self._expect("(")
        args = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        return tuple(args)


@lru_cache(maxsize=2048)
def compile_expression(text: str) -> Any:
    """Parse an expression into a node tree. Results are cached per text."""
    return _Parser(text).parse()


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------


class _Scope(NamedTuple):
    it: Any
    outer: Optional["_Scope"]


def evaluate(node: Any, obj: Any) -> Any:
    """Evaluate a compiled expression against an object's properties."""
    return _eval(node, _Scope(obj, None))


def matches(node: Any, obj: Any) -> bool:
    return truthy(evaluate(node, obj))


def truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) > 0
    return True


def get_property(target: Any, name: str) -> Any:
    """Case-insensitive property lookup; None when the property is absent."""
    if target is None:
        return None
    if isinstance(target, dict):
        if name in target:
            return target[name]
        lowered = name.lower()
        for key, value in target.items():
            if isinstance(key, str) and key.lower() == lowered:
                return value
        return None
    if isinstance(target, (list, tuple)):
        if name in ("Count", "Length"):
            return len(target)
        return None
    if isinstance(target, str) and name == "Length":
        return len(target)
    return None


def _eval(node: Any, scope: _Scope) -> Any:
    kind = type(node)
    if kind is Literal:
        return node.value
    if kind is Name:
        return _resolve_name(node.name, scope)
    if kind is Member:
        if type(node.target) is Name and node.target.name in ENUM_TYPES:
            return node.name
        return get_property(_eval(node.target, scope), node.name)
    if kind is Call:
        return _call(node, scope)
    if kind is Unary:
        return _unary(node, scope)
    if kind is Binary:
        return _binary(node, scope)
    raise ExpressionError(f"Unknown node type {kind.__name__}")


def _resolve_name(name: str, scope: _Scope) -> Any:
    lowered = name.lower()
    if lowered == "it":
        return scope.it
    if lowered == "outerit":
        return scope.outer.it if scope.outer else None
    return get_property(scope.it, name)


def _unary(node: Unary, scope: _Scope) -> Any:
    value = _eval(node.operand, scope)
    if node.op == "not":
        return not truthy(value)
    if value is None:
        return None
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ExpressionError(f"Cannot negate {type(value).__name__}")
    return -value


def _binary(node: Binary, scope: _Scope) -> Any:
    op = node.op
    if op == "and":
        return truthy(_eval(node.left, scope)) and truthy(_eval(node.right, scope))
    if op == "or":
        return truthy(_eval(node.left, scope)) or truthy(_eval(node.right, scope))

    left = _eval(node.left, scope)
    right = _eval(node.right, scope)

    if op == "==":
        return _equals(left, right)
    if op == "!=":
        return not _equals(left, right)
    if op in ("<", ">", "<=", ">="):
        if left is None or right is None:
            return False
        try:
            if op == "<":
                return left < right
            if op == ">":
                return left > right
            if op == "<=":
                return left <= right
            return left >= right
        except TypeError as e:
            raise ExpressionError(f"Cannot compare {type(left).__name__} with {type(right).__name__}") from e

    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return f"{'' if left is None else left}{'' if right is None else right}"
    if left is None or right is None:
        return None
    try:
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            return left / right
        if op == "%":
            return left % right
    except (TypeError, ZeroDivisionError) as e:
        raise ExpressionError(f"Cannot apply {op!r}: {e}") from e
    raise ExpressionError(f"Unknown operator {op!r}")


def _equals(left: Any, right: Any) -> bool:
    # Model objects compare by reference
    if isinstance(left, dict) or isinstance(right, dict):
        return left is right
    if isinstance(left, bool) != isinstance(right, bool) and left is not None and right is not None:
        return False
    return left == right


def _call(node: Call, scope: _Scope) -> Any:
    if node.target is None:
        return _call_function(node.name, node.args, scope)

    if type(node.target) is Name and node.target.name.lower() in NAMESPACES:
        args = [_eval(a, scope) for a in node.args]
        return _call_static(node.target.name.lower(), node.name, args)

    target = _eval(node.target, scope)
    if isinstance(target, (list, tuple)):
        return _call_sequence(list(target), node.name, node.args, scope)

    args = [_eval(a, scope) for a in node.args]
    if isinstance(target, str):
        return _call_string(target, node.name, args)
    if target is None:
        return None
    raise ExpressionError(f"Method {node.name} is not supported on {type(target).__name__}")


def _call_function(name: str, args: Tuple[Any, ...], scope: _Scope) -> Any:
    lowered = name.lower()
    if lowered == "iif":
        if len(args) != 3:
            raise ExpressionError("iif expects 3 arguments")
        branch = args[1] if truthy(_eval(args[0], scope)) else args[2]
        return _eval(branch, scope)

    if lowered in ("getannotation", "hasannotation"):
        if len(args) != 1:
            raise ExpressionError(f"{name} expects 1 argument")
        annotations = get_property(scope.it, "Annotations") or {}
        key = _eval(args[0], scope)
        value = get_property(annotations, key) if isinstance(key, str) else None
        return value is not None if lowered == "hasannotation" else value

    # Method on the implicit object, e.g. Any(...) inside a collection scope
    if isinstance(scope.it, (list, tuple)):
        return _call_sequence(list(scope.it), name, args, scope)
    raise ExpressionError(f"Unknown function {name}")


def _call_static(namespace: str, name: str, args: List[Any]) -> Any:
    lowered = name.lower()
    if namespace == "regex" and lowered == "ismatch":
        if len(args) < 2:
            raise ExpressionError("RegEx.IsMatch expects at least 2 arguments")
        text, pattern = args[0], args[1]
        if text is None or pattern is None:
            return False
        flags = re.IGNORECASE if len(args) > 2 and "IgnoreCase" in str(args[2]) else 0
        try:
            return re.search(pattern, str(text), flags) is not None
        except re.error as e:
            raise ExpressionError(f"Invalid regular expression {pattern!r}: {e}") from e

    if namespace == "string":
        if lowered == "isnullorempty":
            return args[0] is None or args[0] == ""
        if lowered in ("isnullorwhitespace", "isnullorwhitespaces"):
            return args[0] is None or not str(args[0]).strip()
        if lowered == "concat":
            return "".join("" if a is None else str(a) for a in args)

    if namespace == "math" and lowered == "abs" and args:
        return None if args[0] is None else abs(args[0])

    raise ExpressionError(f"Unknown function {namespace}.{name}")


def _call_string(target: str, name: str, args: List[Any]) -> Any:
    lowered = name.lower()
    if lowered in ("contains", "startswith", "endswith", "equals", "indexof"):
        if not args:
            raise ExpressionError(f"{name} expects an argument")
        other = args[0]
        if other is None:
            return -1 if lowered == "indexof" else False
        other = str(other)
        if lowered == "contains":
            return other in target
        if lowered == "startswith":
            return target.startswith(other)
        if lowered == "endswith":
            return target.endswith(other)
        if lowered == "equals":
            return target == other
        return target.find(other)
    if lowered == "toupper":
        return target.upper()
    if lowered == "tolower":
        return target.lower()
    if lowered == "trim":
        return target.strip()
    if lowered == "trimstart":
        return target.lstrip()
    if lowered == "trimend":
        return target.rstrip()
    if lowered == "replace" and len(args) == 2:
        return target.replace(str(args[0]), "" if args[1] is None else str(args[1]))
    if lowered == "substring" and args:
        start = int(args[0])
        return target[start:] if len(args) == 1 else target[start:start + int(args[1])]
    raise ExpressionError(f"Unknown string method {name}")


def _call_sequence(items: List[Any], name: str, args: Tuple[Any, ...], scope: _Scope) -> Any:
    lowered = name.lower()
    predicate = args[0] if args else None

    def test(item: Any) -> bool:
        return truthy(_eval(predicate, _Scope(item, scope)))

    if lowered == "any":
        return any(test(i) for i in items) if predicate is not None else bool(items)
    if lowered == "all":
        return all(test(i) for i in items) if predicate is not None else True
    if lowered == "count":
        return sum(1 for i in items if test(i)) if predicate is not None else len(items)
    if lowered == "where":
        return [i for i in items if test(i)] if predicate is not None else items
    if lowered == "firstordefault":
        if predicate is None:
            return items[0] if items else None
        return next((i for i in items if test(i)), None)
    if lowered == "contains":
        value = _eval(predicate, scope) if predicate is not None else None
        return value in items
    raise ExpressionError(f"Unknown sequence method {name}")
