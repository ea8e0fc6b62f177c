"""
Condition Interpreter - Boolean expression language for catalog gating

Responsibilities:
- Tokenize and parse condition strings from the catalog (ask_if,
  required_if, enable_if, set_when, when) into an AST
- Evaluate the AST against a flat vars mapping
- Apply boolean-ish tolerance for "field = true" / "field = false"
- Report failures to an observability sink and fail closed

Design principles:
- No eval, no code generation: a Pratt parser builds an immutable AST
- Pure: evaluate() never mutates vars and has no side effects beyond the sink
- Fail closed: any tokenizer, parser or evaluation error yields False
- Empty expression is vacuously True (same convention as the DSL evaluator
  of the question selector)

Grammar (loosest to tightest binding):
    expr     := expr OR expr | expr AND expr | NOT expr | comparison
    compare  := operand (= | == | === | != | !== | > | >= | < | <=) operand
              | operand includes operand
    operand  := literal | identifier | call | '(' expr ')' | '-' number
    call     := present(expr) | includes(expr, expr)

AND/OR/NOT/includes/true/false/null are case-insensitive. '&&', '||' and
'!' are accepted as aliases.
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from intakeflow.core.json_path import get_by_path
from intakeflow.errors import ConditionSyntaxError
from intakeflow.utils.helpers import is_present

logger = logging.getLogger(__name__)

# Stored values accepted as a match for "= true" / "= false"
TRUE_TOKENS = frozenset(["true", "1", "yes", "y", "new", "כן", "חדש"])
FALSE_TOKENS = frozenset(["false", "0", "no", "n", "existing", "לא", "קיים"])

ErrorSink = Callable[[str, Exception], None]


class EvaluationError(Exception):
    """Raised internally while walking the AST; never escapes evaluate()."""


# =============================================================================
# Tokenizer
# =============================================================================

@dataclass(frozen=True)
class Token:
    kind: str
    value: Any
    pos: int


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||=|>|<|!|-)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
  | (?P<ident>[^\W\d]\w*(?:\.\w+)*)
    """,
    re.VERBOSE | re.UNICODE,
)

_KEYWORDS = {
    "and": "AND",
    "or": "OR",
    "not": "NOT",
    "includes": "INCLUDES",
    "true": "TRUE",
    "false": "FALSE",
    "null": "NULL",
    "undefined": "NULL",
}

_OP_ALIASES = {"&&": "AND", "||": "OR", "!": "NOT"}


def tokenize(expression: str) -> List[Token]:
    """
    Split an expression into tokens.

    Raises:
        ConditionSyntaxError: On an unexpected character or unterminated string
    """
    tokens: List[Token] = []
    pos = 0
    length = len(expression)

    while pos < length:
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise ConditionSyntaxError(
                expression, f"unexpected character {expression[pos]!r}", pos
            )
        kind = match.lastgroup
        text = match.group()

        if kind == "string":
            tokens.append(Token("STRING", _unescape(text[1:-1]), pos))
        elif kind == "number":
            number = float(text)
            tokens.append(Token("NUMBER", int(number) if number.is_integer() else number, pos))
        elif kind == "op":
            if text in _OP_ALIASES:
                tokens.append(Token(_OP_ALIASES[text], text, pos))
            else:
                tokens.append(Token("OP", text, pos))
        elif kind == "lparen":
            tokens.append(Token("LPAREN", text, pos))
        elif kind == "rparen":
            tokens.append(Token("RPAREN", text, pos))
        elif kind == "comma":
            tokens.append(Token("COMMA", text, pos))
        elif kind == "ident":
            keyword = _KEYWORDS.get(text.lower())
            tokens.append(Token(keyword or "IDENT", text, pos))
        # whitespace is dropped

        pos = match.end()

    tokens.append(Token("EOF", None, length))
    return tokens


def _unescape(body: str) -> str:
    return re.sub(r"\\(.)", r"\1", body)


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class FieldRef:
    name: str


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class Logical:
    op: str  # AND | OR
    left: Any
    right: Any


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Includes:
    container: Any
    needle: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


# =============================================================================
# Pratt parser
# =============================================================================

_BP_OR = 10
_BP_AND = 20
_BP_NOT = 30
_BP_COMPARE = 40

_COMPARE_OPS = frozenset(["=", "==", "===", "!=", "!==", ">", ">=", "<", "<="])

_FUNCTIONS = {
    "present": 1,
    "__present": 1,
    "includes": 2,
    "__includes": 2,
}


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    def parse(self):
        node = self.expression_(0)
        if self.peek().kind != "EOF":
            self.fail(f"unexpected token {self.peek().value!r}")
        return node

    # -------------------------------------------------------------------------
    # Token helpers
    # -------------------------------------------------------------------------

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "EOF":
            self.index += 1
        return token

    def expect(self, kind: str) -> Token:
        token = self.advance()
        if token.kind != kind:
            self.fail(f"expected {kind}, got {token.value!r}", token.pos)
        return token

    def fail(self, reason: str, pos: Optional[int] = None):
        if pos is None:
            pos = self.peek().pos
        raise ConditionSyntaxError(self.expression, reason, pos)

    # -------------------------------------------------------------------------
    # Binding power
    # -------------------------------------------------------------------------

    def left_bp(self, token: Token) -> int:
        if token.kind == "OR":
            return _BP_OR
        if token.kind == "AND":
            return _BP_AND
        if token.kind == "INCLUDES":
            return _BP_COMPARE
        if token.kind == "OP" and token.value in _COMPARE_OPS:
            return _BP_COMPARE
        return 0

    def expression_(self, rbp: int):
        token = self.advance()
        left = self.nud(token)
        while rbp < self.left_bp(self.peek()):
            token = self.advance()
            left = self.led(token, left)
        return left

    # -------------------------------------------------------------------------
    # Prefix / infix handlers
    # -------------------------------------------------------------------------

    def nud(self, token: Token):
        kind = token.kind

        if kind in ("NUMBER", "STRING"):
            return Literal(token.value)
        if kind == "TRUE":
            return Literal(True)
        if kind == "FALSE":
            return Literal(False)
        if kind == "NULL":
            return Literal(None)

        if kind == "IDENT":
            if self.peek().kind == "LPAREN":
                return self.call(token)
            return FieldRef(token.value)

        if kind == "INCLUDES" and self.peek().kind == "LPAREN":
            # includes(a, b) written as a function
            return self.call(token)

        if kind == "LPAREN":
            node = self.expression_(0)
            self.expect("RPAREN")
            return node

        if kind == "NOT":
            return Not(self.expression_(_BP_NOT))

        if kind == "OP" and token.value == "-":
            number = self.expect("NUMBER")
            return Literal(-number.value)

        if kind == "EOF":
            self.fail("unexpected end of expression", token.pos)
        self.fail(f"unexpected token {token.value!r}", token.pos)

    def led(self, token: Token, left):
        if token.kind in ("AND", "OR"):
            bp = _BP_AND if token.kind == "AND" else _BP_OR
            return Logical(token.kind, left, self.expression_(bp))
        if token.kind == "INCLUDES":
            return Includes(left, self.expression_(_BP_COMPARE))
        if token.kind == "OP" and token.value in _COMPARE_OPS:
            return Compare(token.value, left, self.expression_(_BP_COMPARE))
        self.fail(f"unexpected operator {token.value!r}", token.pos)

    def call(self, name_token: Token):
        name = name_token.value.lower()
        arity = _FUNCTIONS.get(name)
        if arity is None:
            self.fail(f"unknown function {name_token.value!r}", name_token.pos)

        self.expect("LPAREN")
        args = []
        if self.peek().kind != "RPAREN":
            args.append(self.expression_(0))
            while self.peek().kind == "COMMA":
                self.advance()
                args.append(self.expression_(0))
        self.expect("RPAREN")

        if len(args) != arity:
            self.fail(
                f"{name_token.value}() takes {arity} argument(s), got {len(args)}",
                name_token.pos,
            )
        return Call(name.lstrip("_"), tuple(args))


@lru_cache(maxsize=2048)
def compile_condition(expression: str):
    """
    Parse an expression into an AST (cached per expression string).

    Raises:
        ConditionSyntaxError: If the expression is malformed
    """
    return _Parser(expression).parse()


# =============================================================================
# Value coercion
# =============================================================================

def to_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip().replace(",", "")
        if not s:
            return None
        try:
            return float(s)
        except ValueError:
            return None
    return None


def truthy(value) -> bool:
    """
    Truthiness of a bare operand.

    None, False, 0, blank strings and FALSE_TOKENS strings are falsy.
    Empty lists are falsy. Everything else is truthy.
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        s = value.strip().lower()
        return bool(s) and s not in FALSE_TOKENS
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def _matches_boolean(stored, expected: bool) -> bool:
    if isinstance(stored, bool):
        return stored is expected
    if not is_present(stored):
        return False
    token = str(stored).strip().lower()
    return token in (TRUE_TOKENS if expected else FALSE_TOKENS)


def loose_equals(left, right) -> bool:
    """Equality with boolean-ish and numeric-string tolerance."""
    if isinstance(right, bool):
        return _matches_boolean(left, right)
    if isinstance(left, bool):
        return _matches_boolean(right, left)

    if left is None or right is None:
        return left is None and right is None

    left_is_num = isinstance(left, (int, float))
    right_is_num = isinstance(right, (int, float))
    if left_is_num or right_is_num:
        a, b = to_number(left), to_number(right)
        return a is not None and b is not None and a == b

    if isinstance(left, str) and isinstance(right, str):
        return left.strip() == right.strip()

    return left == right


def includes(container, needle) -> bool:
    """Array membership (stringified) or substring test."""
    if needle is None:
        return False
    needle_str = str(needle).strip()
    if not needle_str:
        return False
    if isinstance(container, (list, tuple, set)):
        return any(str(item).strip() == needle_str for item in container)
    if isinstance(container, str):
        return needle_str in container
    return False


# =============================================================================
# Evaluator
# =============================================================================

def _lookup(name: str, vars: Mapping[str, Any]):
    if name in vars:
        return vars[name]
    if "." in name:
        return get_by_path(vars, name)
    return None


def _eval(node, vars: Mapping[str, Any]):
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, FieldRef):
        return _lookup(node.name, vars)

    if isinstance(node, Not):
        return not truthy(_eval(node.operand, vars))

    if isinstance(node, Logical):
        if node.op == "AND":
            return truthy(_eval(node.left, vars)) and truthy(_eval(node.right, vars))
        return truthy(_eval(node.left, vars)) or truthy(_eval(node.right, vars))

    if isinstance(node, Compare):
        left = _eval(node.left, vars)
        right = _eval(node.right, vars)
        return _compare(node.op, left, right)

    if isinstance(node, Includes):
        return includes(_eval(node.container, vars), _eval(node.needle, vars))

    if isinstance(node, Call):
        args = [_eval(arg, vars) for arg in node.args]
        if node.name == "present":
            return is_present(args[0])
        if node.name == "includes":
            return includes(args[0], args[1])
        raise EvaluationError(f"Unknown function: {node.name}")

    raise EvaluationError(f"Unknown AST node: {type(node).__name__}")


def _compare(op: str, left, right) -> bool:
    if op in ("=", "==", "==="):
        return loose_equals(left, right)
    if op in ("!=", "!=="):
        return not loose_equals(left, right)

    a, b = to_number(left), to_number(right)
    if a is None or b is None:
        return False
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    raise EvaluationError(f"Unknown comparison operator: {op}")


def _log_sink(expression: str, error: Exception) -> None:
    logger.warning(f"Condition evaluation failed, treating as False: {expression!r} ({error})")


class ConditionInterpreter:
    """
    Evaluates catalog condition expressions against collected data.

    Stateless apart from the error sink; a single instance is shared by
    the questionnaire engine and the process router.
    """

    def __init__(self, error_sink: Optional[ErrorSink] = None):
        """
        Args:
            error_sink: Callable receiving (expression, exception) whenever an
                expression fails. Defaults to a warning on this module's logger.
        """
        self.error_sink = error_sink or _log_sink

    def evaluate(self, expression: Optional[str], vars: Mapping[str, Any]) -> bool:
        """
        Evaluate an expression.

        Args:
            expression: Condition string; empty or None means "always"
            vars: Flat field mapping (read-only)

        Returns:
            bool: Result, or False if the expression is malformed or
            evaluation raised
        """
        if expression is None:
            return True
        if not isinstance(expression, str):
            self._report(repr(expression), TypeError("condition must be a string"))
            return False
        if not expression.strip():
            return True

        try:
            ast = compile_condition(expression.strip())
            return truthy(_eval(ast, vars or {}))
        except Exception as e:
            self._report(expression, e)
            return False

    def check_syntax(self, expression: Optional[str]) -> Optional[str]:
        """Return a parse error message, or None if the expression compiles."""
        if not expression or not str(expression).strip():
            return None
        try:
            compile_condition(str(expression).strip())
        except ConditionSyntaxError as e:
            return str(e)
        return None

    def _report(self, expression: str, error: Exception) -> None:
        try:
            self.error_sink(expression, error)
        except Exception as sink_error:
            logger.error(f"Condition error sink raised: {sink_error}")


_default_interpreter = ConditionInterpreter()


def evaluate(expression: Optional[str], vars: Dict[str, Any]) -> bool:
    """Module-level shortcut using the default (logging) interpreter."""
    return _default_interpreter.evaluate(expression, vars)
