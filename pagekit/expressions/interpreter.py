"""
Declarative Expression Interpreter.

A minimal, side-effect-free evaluator for binding, policy, guard and filter
expressions. Expressions come from backend configuration, so nothing here ever
reaches Python's eval/exec, attribute access or imports: the grammar is fixed,
member access only works on dicts/lists/strings, and only the functions in
BUILTIN_FUNCTIONS (plus those the caller passes explicitly) can be called.

Grammar (lowest to highest precedence):
    ternary     := coalesce ('?' ternary ':' ternary)?
    coalesce    := or ('??' or)*
    or          := and (('||' | 'or') and)*
    and         := not (('&&' | 'and') not)*
    not         := ('!' | 'not') not | comparison
    comparison  := additive (('==' | '!=' | '===' | '!==' | '<' | '<=' | '>' | '>=' | 'in') additive)*
    additive    := term (('+' | '-') term)*
    term        := unary (('*' | '/' | '%') unary)*
    unary       := '-' unary | postfix
    postfix     := primary ('.' NAME | '[' ternary ']' | '(' args ')')*
    primary     := NUMBER | STRING | true | false | null | NAME | '(' ternary ')' | '[' items ']'

Example:
    >>> evaluate("state.age >= 18 && user.country == 'US'", scope)
    True
"""
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..core.errors import ExpressionError
from ..core.paths import UNSET

MAX_EXPRESSION_LENGTH = 2000
MAX_DEPTH = 64

# =============================================================================
# Tokenizer
# =============================================================================

_OPERATORS = (
    "===", "!==", "==", "!=", "<=", ">=", "&&", "||", "??",
    "<", ">", "+", "-", "*", "/", "%", "!", "(", ")", "[", "]", ",", ".", "?", ":",
)
_KEYWORDS = {"true", "false", "null", "and", "or", "not", "in"}


@dataclass(frozen=True)
class Token:
    kind: str  # 'num', 'str', 'name', 'op', 'kw', 'eof'
    value: Any
    pos: int


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    n = len(source)
    while i < n:
        ch = source[i]
        if ch.isspace():
            i += 1
            continue
        if ch.isdigit():
            start = i
            seen_dot = False
            while i < n and (source[i].isdigit() or (source[i] == "." and not seen_dot)):
                if source[i] == ".":
                    # "1.foo" is not a float
                    if i + 1 >= n or not source[i + 1].isdigit():
                        break
                    seen_dot = True
                i += 1
            text = source[start:i]
            tokens.append(Token("num", float(text) if seen_dot else int(text), start))
            continue
        if ch in ("'", '"'):
            start = i
            quote = ch
            i += 1
            chars = []
            while i < n and source[i] != quote:
                if source[i] == "\\" and i + 1 < n:
                    i += 1
                    chars.append({"n": "\n", "t": "\t"}.get(source[i], source[i]))
                else:
                    chars.append(source[i])
                i += 1
            if i >= n:
                raise ExpressionError(f"Unterminated string at {start}", source)
            i += 1
            tokens.append(Token("str", "".join(chars), start))
            continue
        if ch.isalpha() or ch in "_$":
            start = i
            while i < n and (source[i].isalnum() or source[i] in "_$"):
                i += 1
            word = source[start:i]
            tokens.append(Token("kw" if word in _KEYWORDS else "name", word, start))
            continue
        for op in _OPERATORS:
            if source.startswith(op, i):
                tokens.append(Token("op", op, i))
                i += len(op)
                break
        else:
            raise ExpressionError(f"Unexpected character {ch!r} at {i}", source)
    tokens.append(Token("eof", None, n))
    return tokens


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any

@dataclass(frozen=True)
class Name:
    name: str

@dataclass(frozen=True)
class Member:
    target: Any
    key: Any  # str for '.name', node for '[expr]'
    computed: bool

@dataclass(frozen=True)
class Call:
    func: str
    args: Tuple[Any, ...]

@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any

@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any

@dataclass(frozen=True)
class Logical:
    op: str  # '&&', '||', '??'
    left: Any
    right: Any

@dataclass(frozen=True)
class Conditional:
    test: Any
    then: Any
    otherwise: Any

@dataclass(frozen=True)
class ListLiteral:
    items: Tuple[Any, ...]


# =============================================================================
# Parser
# =============================================================================

class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _error(self, message: str) -> ExpressionError:
        return ExpressionError(f"{message} at {self.current.pos} in {self.source!r}", self.source)

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _match(self, *ops: str) -> Optional[str]:
        token = self.current
        if token.kind == "op" and token.value in ops:
            self.index += 1
            return token.value
        if token.kind == "kw" and token.value in ops:
            self.index += 1
            return token.value
        return None

    def _expect(self, op: str):
        if not self._match(op):
            raise self._error(f"Expected '{op}'")

    def parse(self):
        if self.current.kind == "eof":
            raise self._error("Empty expression")
        node = self._ternary()
        if self.current.kind != "eof":
            raise self._error(f"Unexpected token {self.current.value!r}")
        return node

    def _nested(self):
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise self._error("Expression nested too deeply")

    def _ternary(self):
        self._nested()
        test = self._coalesce()
        if self._match("?"):
            then = self._ternary()
            self._expect(":")
            otherwise = self._ternary()
            test = Conditional(test, then, otherwise)
        self.depth -= 1
        return test

    def _coalesce(self):
        node = self._or()
        while self._match("??"):
            node = Logical("??", node, self._or())
        return node

    def _or(self):
        node = self._and()
        while self._match("||", "or"):
            node = Logical("||", node, self._and())
        return node

    def _and(self):
        node = self._not()
        while self._match("&&", "and"):
            node = Logical("&&", node, self._not())
        return node

    def _not(self):
        if self._match("!", "not"):
            self._nested()
            node = Unary("!", self._not())
            self.depth -= 1
            return node
        return self._comparison()

    def _comparison(self):
        node = self._additive()
        while True:
            op = self._match("===", "!==", "==", "!=", "<=", ">=", "<", ">", "in")
            if not op:
                return node
            node = Binary(op, node, self._additive())

    def _additive(self):
        node = self._term()
        while True:
            op = self._match("+", "-")
            if not op:
                return node
            node = Binary(op, node, self._term())

    def _term(self):
        node = self._unary()
        while True:
            op = self._match("*", "/", "%")
            if not op:
                return node
            node = Binary(op, node, self._unary())

    def _unary(self):
        if self._match("-"):
            self._nested()
            node = Unary("-", self._unary())
            self.depth -= 1
            return node
        return self._postfix()

    def _postfix(self):
        node = self._primary()
        while True:
            if self._match("."):
                token = self._advance()
                if token.kind == "num" and isinstance(token.value, int):
                    # items.0
                    node = Member(node, token.value, False)
                    continue
                if token.kind not in ("name", "kw"):
                    raise self._error("Expected property name")
                node = Member(node, token.value, False)
            elif self._match("["):
                key = self._ternary()
                self._expect("]")
                node = Member(node, key, True)
            elif self.current.kind == "op" and self.current.value == "(":
                if not isinstance(node, Name):
                    raise self._error("Only named functions can be called")
                self._advance()
                args = []
                if not self._match(")"):
                    args.append(self._ternary())
                    while self._match(","):
                        args.append(self._ternary())
                    self._expect(")")
                node = Call(node.name, tuple(args))
            else:
                return node

    def _primary(self):
        token = self.current
        if token.kind in ("num", "str"):
            self._advance()
            return Literal(token.value)
        if token.kind == "kw" and token.value in ("true", "false", "null"):
            self._advance()
            return Literal({"true": True, "false": False, "null": None}[token.value])
        if token.kind == "name":
            self._advance()
            return Name(token.value)
        if self._match("("):
            node = self._ternary()
            self._expect(")")
            return node
        if self._match("["):
            items = []
            if not self._match("]"):
                items.append(self._ternary())
                while self._match(","):
                    items.append(self._ternary())
                self._expect("]")
            return ListLiteral(tuple(items))
        raise self._error(f"Unexpected token {token.value!r}")


# =============================================================================
# Evaluation
# =============================================================================

def truthy(value: Any) -> bool:
    """Truthiness shared by guards, policies and filters (UNSET is false)."""
    if value is UNSET or value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> Any:
    if _is_number(value):
        return value
    if isinstance(value, str):
        try:
            return float(value) if any(c in value for c in ".eE") else int(value)
        except ValueError:
            return UNSET
    if isinstance(value, bool):
        return int(value)
    return UNSET


def stringify(value: Any) -> str:
    if value is UNSET or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _length(value: Any) -> Any:
    if isinstance(value, (str, list, tuple, dict)):
        return len(value)
    return 0 if value is UNSET or value is None else UNSET


BUILTIN_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": _length,
    "lower": lambda v: stringify(v).lower(),
    "upper": lambda v: stringify(v).upper(),
    "trim": lambda v: stringify(v).strip(),
    "string": stringify,
    "number": _to_number,
    "contains": lambda haystack, needle: isinstance(haystack, (str, list, tuple, dict)) and needle in haystack,
    "startsWith": lambda v, prefix: stringify(v).startswith(stringify(prefix)),
    "endsWith": lambda v, suffix: stringify(v).endswith(stringify(suffix)),
    "isEmpty": lambda v: v is UNSET or v is None or (isinstance(v, (str, list, tuple, dict)) and len(v) == 0),
    "isSet": lambda v: v is not UNSET,
    "isNull": lambda v: v is None,
    "round": lambda v, digits=0: round(v, int(digits)) if _is_number(v) else UNSET,
    "abs": lambda v: abs(v) if _is_number(v) else UNSET,
    "min": lambda *vs: min(vs) if vs else UNSET,
    "max": lambda *vs: max(vs) if vs else UNSET,
    "join": lambda items, sep=",": stringify(sep).join(stringify(i) for i in items) if isinstance(items, (list, tuple)) else UNSET,
    "coalesce": lambda *vs: next((v for v in vs if v is not UNSET and v is not None), None),
}


def _loose_equal(left: Any, right: Any) -> bool:
    if (left is UNSET or left is None) and (right is UNSET or right is None):
        return True
    if _is_number(left) and isinstance(right, str) or _is_number(right) and isinstance(left, str):
        return _to_number(left) == _to_number(right) and _to_number(left) is not UNSET
    return left == right


def _strict_equal(left: Any, right: Any) -> bool:
    if left is UNSET or right is UNSET:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if left is UNSET or right is UNSET or left is None or right is None:
        return False
    if _is_number(left) != _is_number(right):
        left, right = _to_number(left), _to_number(right)
        if left is UNSET or right is UNSET:
            return False
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right
    except TypeError:
        return False


def _contains(left: Any, right: Any) -> bool:
    if isinstance(right, str):
        return isinstance(left, str) and left in right
    if isinstance(right, dict):
        try:
            return left in right
        except TypeError:
            # unhashable key
            return False
    if isinstance(right, (list, tuple)):
        return left in right
    return False


def _arith(op: str, left: Any, right: Any, source: str) -> Any:
    if op == "+":
        if isinstance(left, str) or isinstance(right, str):
            return stringify(left) + stringify(right)
        if isinstance(left, list) and isinstance(right, list):
            return left + right
    if not (_is_number(left) and _is_number(right)):
        raise ExpressionError(f"Operator '{op}' needs numbers, got {left!r} and {right!r}", source)
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        raise ExpressionError("Division by zero", source)
    if op == "/":
        return left / right
    return left % right


class Expression:
    """
    A compiled expression. Immutable and safe to share between evaluations.
    """
    def __init__(self, source: str, tree: Any):
        self.source = source
        self.tree = tree

    def evaluate(self, scope: Mapping[str, Any], functions: Optional[Mapping[str, Callable]] = None) -> Any:
        table = dict(BUILTIN_FUNCTIONS)
        if functions:
            table.update(functions)
        return self._eval(self.tree, scope, table)

    def _eval(self, node: Any, scope: Mapping[str, Any], functions: Mapping[str, Callable]) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            return scope.get(node.name, UNSET)
        if isinstance(node, Member):
            target = self._eval(node.target, scope, functions)
            key = self._eval(node.key, scope, functions) if node.computed else node.key
            return _member(target, key)
        if isinstance(node, Logical):
            left = self._eval(node.left, scope, functions)
            if node.op == "&&":
                return self._eval(node.right, scope, functions) if truthy(left) else left
            if node.op == "||":
                return left if truthy(left) else self._eval(node.right, scope, functions)
            return self._eval(node.right, scope, functions) if left is UNSET or left is None else left
        if isinstance(node, Unary):
            value = self._eval(node.operand, scope, functions)
            if node.op == "!":
                return not truthy(value)
            if not _is_number(value):
                raise ExpressionError(f"Cannot negate {value!r}", self.source)
            return -value
        if isinstance(node, Binary):
            left = self._eval(node.left, scope, functions)
            right = self._eval(node.right, scope, functions)
            op = node.op
            if op == "==":
                return _loose_equal(left, right)
            if op == "!=":
                return not _loose_equal(left, right)
            if op == "===":
                return _strict_equal(left, right)
            if op == "!==":
                return not _strict_equal(left, right)
            if op in ("<", "<=", ">", ">="):
                return _compare(op, left, right)
            if op == "in":
                return _contains(left, right)
            return _arith(op, left, right, self.source)
        if isinstance(node, Conditional):
            branch = node.then if truthy(self._eval(node.test, scope, functions)) else node.otherwise
            return self._eval(branch, scope, functions)
        if isinstance(node, ListLiteral):
            return [self._eval(item, scope, functions) for item in node.items]
        if isinstance(node, Call):
            func = functions.get(node.func)
            if func is None:
                raise ExpressionError(f"Unknown function '{node.func}'", self.source)
            args = [self._eval(arg, scope, functions) for arg in node.args]
            try:
                return func(*args)
            except ExpressionError:
                raise
            except Exception as e:
                raise ExpressionError(f"Function '{node.func}' failed: {e}", self.source) from e
        raise ExpressionError(f"Unsupported node {type(node).__name__}", self.source)

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


def _member(target: Any, key: Any) -> Any:
    if isinstance(target, dict):
        return target.get(key, UNSET) if isinstance(key, str) else target.get(str(key), UNSET)
    if isinstance(target, (list, tuple, str)):
        if key == "length":
            return len(target)
        if _is_number(key) and float(key).is_integer():
            index = int(key)
            if -len(target) <= index < len(target):
                return target[index]
        return UNSET
    return UNSET


@lru_cache(maxsize=512)
def compile_expression(source: str) -> Expression:
    """
    Parse an expression into a reusable Expression object.

    Raises:
        ExpressionError: On syntax errors or oversized input
    """
    if not isinstance(source, str):
        raise ExpressionError(f"Expression must be a string, got {type(source).__name__}")
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression too long", source[:80])
    return Expression(source, _Parser(source).parse())


def evaluate(source: str, scope: Mapping[str, Any], functions: Optional[Mapping[str, Callable]] = None) -> Any:
    return compile_expression(source).evaluate(scope, functions)


def evaluate_bool(source: Any, scope: Mapping[str, Any], functions: Optional[Mapping[str, Callable]] = None) -> bool:
    """
    Evaluate a condition. Booleans pass through; None means "no condition".
    """
    if source is None:
        return True
    if isinstance(source, bool):
        return source
    return truthy(evaluate(source, scope, functions))
