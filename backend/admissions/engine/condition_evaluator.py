"""Condition Evaluator - Safe evaluation of transition guards

Guards are written in a small closed language, parsed once into an AST and
interpreted against a fact context fetched before evaluation starts. No
eval() or exec(), no attribute access, no calls outside FUNCTIONS.

Examples:
    all_required_documents_verified == true
    payment_status == "paid" and not (program in ["MBA", "EMBA"])
    days_since(submitted_at) > 60 || documents.transcript == "missing"
    is_subset(required_actions, completed_actions)

Grammar:
    expr       := and_expr (("or" | "||") and_expr)*
    and_expr   := not_expr (("and" | "&&") not_expr)*
    not_expr   := ("not" | "!") not_expr | comparison
    comparison := operand [(== | != | < | <= | > | >= | in | not in | contains) operand]
    operand    := number | string | true | false | null | list | call | fact | "(" expr ")"
"""
import re
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Set, Tuple, Union

from ..domain.errors import ConditionEvaluationError, ConditionSyntaxError, UnknownFactError
from ..utils.time import coerce_datetime, days_between, hours_between
from ..utils.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Tokens
# ============================================================================

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<WS>\s+)
    |(?P<NUMBER>-?\d+(?:\.\d+)?)
    |(?P<STRING>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<OP>==|!=|<=|>=|&&|\|\||[<>!(),\[\]])
    |(?P<NAME>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    |(?P<MISMATCH>.)
    """,
    re.VERBOSE
)

KEYWORDS = {"and", "or", "not", "in", "contains", "true", "false", "null"}
COMPARISON_OPS = {"==", "!=", "<", "<=", ">", ">="}


class Token(NamedTuple):
    kind: str
    value: str
    position: int


def _tokenize(expression: str) -> List[Token]:
    tokens = []
    for match in _TOKEN_PATTERN.finditer(expression):
        kind = match.lastgroup
        value = match.group()
        if kind == "WS":
            continue
        if kind == "MISMATCH":
            raise ConditionSyntaxError(
                f"Unexpected character '{value}' at position {match.start()}",
                details={"expression": expression, "position": match.start()}
            )
        tokens.append(Token(kind, value, match.start()))
    return tokens


# ============================================================================
# AST
# ============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Fact:
    path: Tuple[str, ...]

    @property
    def name(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class ListLiteral:
    items: Tuple["Node", ...]


@dataclass(frozen=True)
class Call:
    function: str
    args: Tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    operands: Tuple["Node", ...]


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Literal, Fact, ListLiteral, Call, Not, BoolOp, Compare]


# ============================================================================
# Functions
# ============================================================================

def _now(context: Dict[str, Any]) -> datetime:
    if "now" not in context:
        raise UnknownFactError("Unknown fact 'now'", details={"fact": "now"})
    return coerce_datetime(context["now"])


def _as_datetime(value: Any, function: str) -> datetime:
    if value is None:
        raise ConditionEvaluationError(f"{function}() received null")
    try:
        return coerce_datetime(value)
    except (TypeError, ValueError) as e:
        raise ConditionEvaluationError(f"{function}() expects a date: {e}")


def _days_since(args: List[Any], context: Dict[str, Any]) -> int:
    return days_between(_as_datetime(args[0], "days_since"), _now(context))


def _hours_since(args: List[Any], context: Dict[str, Any]) -> int:
    return hours_between(_as_datetime(args[0], "hours_since"), _now(context))


def _count(args: List[Any], context: Dict[str, Any]) -> int:
    value = args[0]
    if value is None:
        return 0
    if isinstance(value, (list, tuple, set, dict, str)):
        return len(value)
    raise ConditionEvaluationError(f"count() expects a list, got {type(value).__name__}")


def _lower(args: List[Any], context: Dict[str, Any]) -> str:
    if not isinstance(args[0], str):
        raise ConditionEvaluationError(f"lower() expects a string, got {type(args[0]).__name__}")
    return args[0].lower()


def _is_subset(args: List[Any], context: Dict[str, Any]) -> bool:
    subset, superset = args
    for value in (subset, superset):
        if not isinstance(value, (list, tuple, set)):
            raise ConditionEvaluationError(f"is_subset() expects lists, got {type(value).__name__}")
    return set(subset) <= set(superset)


FUNCTIONS: Dict[str, Tuple[int, Callable[[List[Any], Dict[str, Any]], Any]]] = {
    "days_since": (1, _days_since),
    "hours_since": (1, _hours_since),
    "count": (1, _count),
    "lower": (1, _lower),
    "is_subset": (2, _is_subset),
}


# ============================================================================
# Parser
# ============================================================================

class _Parser:
    """Recursive-descent parser producing a Node tree"""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionSyntaxError("Condition is empty", details={"expression": self.expression})
        node = self._or()
        leftover = self._peek()
        if leftover is not None:
            raise self._error(f"Unexpected '{leftover.value}'", leftover)
        return node

    # --- token helpers -----------------------------------------------------

    def _peek(self, offset: int = 0) -> Optional[Token]:
        position = self.index + offset
        return self.tokens[position] if position < len(self.tokens) else None

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(
                "Unexpected end of condition",
                details={"expression": self.expression, "position": len(self.expression)}
            )
        self.index += 1
        return token

    @staticmethod
    def _is_keyword(token: Optional[Token], word: str) -> bool:
        return token is not None and token.kind == "NAME" and token.value.lower() == word

    @staticmethod
    def _is_op(token: Optional[Token], op: str) -> bool:
        return token is not None and token.kind == "OP" and token.value == op

    def _accept(self, keyword: str, op: str) -> bool:
        token = self._peek()
        if self._is_keyword(token, keyword) or self._is_op(token, op):
            self.index += 1
            return True
        return False

    def _expect_op(self, op: str) -> None:
        token = self._advance()
        if not self._is_op(token, op):
            raise self._error(f"Expected '{op}' but found '{token.value}'", token)

    def _error(self, message: str, token: Token) -> ConditionSyntaxError:
        return ConditionSyntaxError(
            f"{message} at position {token.position}",
            details={"expression": self.expression, "position": token.position}
        )

    # --- grammar -----------------------------------------------------------

    def _or(self) -> Node:
        operands = [self._and()]
        while self._accept("or", "||"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def _and(self) -> Node:
        operands = [self._not()]
        while self._accept("and", "&&"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def _not(self) -> Node:
        if self._accept("not", "!"):
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._operand()
        token = self._peek()

        if token is not None and token.kind == "OP" and token.value in COMPARISON_OPS:
            self.index += 1
            return Compare(token.value, left, self._operand())
        if self._is_keyword(token, "in"):
            self.index += 1
            return Compare("in", left, self._operand())
        if self._is_keyword(token, "contains"):
            self.index += 1
            return Compare("contains", left, self._operand())
        if self._is_keyword(token, "not") and self._is_keyword(self._peek(1), "in"):
            self.index += 2
            return Compare("not in", left, self._operand())
        return left

    def _operand(self) -> Node:
        token = self._advance()

        if token.kind == "NUMBER":
            return Literal(float(token.value) if "." in token.value else int(token.value))

        if token.kind == "STRING":
            return Literal(re.sub(r"\\(.)", r"\1", token.value[1:-1]))

        if self._is_op(token, "("):
            node = self._or()
            self._expect_op(")")
            return node

        if self._is_op(token, "["):
            return self._list()

        if token.kind == "NAME":
            word = token.value.lower()
            if word == "true":
                return Literal(True)
            if word == "false":
                return Literal(False)
            if word == "null":
                return Literal(None)
            if word in KEYWORDS:
                raise self._error(f"Unexpected keyword '{token.value}'", token)
            if self._is_op(self._peek(), "("):
                return self._call(token)
            return Fact(tuple(token.value.split(".")))

        raise self._error(f"Unexpected '{token.value}'", token)

    def _list(self) -> ListLiteral:
        items: List[Node] = []
        if self._is_op(self._peek(), "]"):
            self.index += 1
            return ListLiteral(())
        while True:
            items.append(self._or())
            token = self._advance()
            if self._is_op(token, "]"):
                return ListLiteral(tuple(items))
            if not self._is_op(token, ","):
                raise self._error(f"Expected ',' or ']' but found '{token.value}'", token)

    def _call(self, name_token: Token) -> Call:
        name = name_token.value
        if name not in FUNCTIONS:
            raise self._error(f"Unknown function '{name}'", name_token)

        self._expect_op("(")
        args: List[Node] = []
        if self._is_op(self._peek(), ")"):
            self.index += 1
        else:
            while True:
                args.append(self._or())
                token = self._advance()
                if self._is_op(token, ")"):
                    break
                if not self._is_op(token, ","):
                    raise self._error(f"Expected ',' or ')' but found '{token.value}'", token)

        arity = FUNCTIONS[name][0]
        if len(args) != arity:
            raise self._error(f"{name}() takes {arity} argument(s), {len(args)} given", name_token)
        return Call(name, tuple(args))


@lru_cache(maxsize=1024)
def parse_condition(expression: str) -> Node:
    """Parse a guard expression (cached per expression string)"""
    return _Parser(expression).parse()


# ============================================================================
# Evaluator
# ============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    return "null" if value is None else type(value).__name__


class ConditionEvaluator:
    """
    Evaluate guard expressions against a fact context.

    Pure and synchronous: everything the guard may look at, including "now",
    must already be in the context.
    """

    def evaluate(self, expression: str, context: Dict[str, Any]) -> bool:
        """
        Evaluate a guard.

        Raises:
            ConditionSyntaxError: Expression does not parse
            UnknownFactError: Expression references a fact missing from context
            ConditionEvaluationError: Type mismatch or non-boolean result
        """
        node = parse_condition(expression)
        result = self._eval(node, context)
        if not isinstance(result, bool):
            raise ConditionEvaluationError(
                f"Condition must evaluate to true or false, got {_type_name(result)}",
                details={"expression": expression}
            )
        return result

    def check_syntax(self, expression: str) -> Optional[str]:
        """Return the syntax error message, or None if the expression parses"""
        try:
            parse_condition(expression)
            return None
        except ConditionSyntaxError as e:
            return e.message

    def referenced_facts(self, expression: str) -> Set[str]:
        """Top-level fact names an expression reads"""
        facts: Set[str] = set()

        def walk(node: Node) -> None:
            if isinstance(node, Fact):
                facts.add(node.path[0])
            elif isinstance(node, ListLiteral):
                for item in node.items:
                    walk(item)
            elif isinstance(node, Call):
                for arg in node.args:
                    walk(arg)
            elif isinstance(node, Not):
                walk(node.operand)
            elif isinstance(node, BoolOp):
                for operand in node.operands:
                    walk(operand)
            elif isinstance(node, Compare):
                walk(node.left)
                walk(node.right)

        walk(parse_condition(expression))
        return facts

    # --- interpretation ------------------------------------------------------

    def _eval(self, node: Node, context: Dict[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value

        if isinstance(node, Fact):
            return self._resolve(node, context)

        if isinstance(node, ListLiteral):
            return [self._eval(item, context) for item in node.items]

        if isinstance(node, Call):
            _, function = FUNCTIONS[node.function]
            return function([self._eval(arg, context) for arg in node.args], context)

        if isinstance(node, Not):
            return not self._boolean(self._eval(node.operand, context), "not")

        if isinstance(node, BoolOp):
            if node.op == "and":
                for operand in node.operands:
                    if not self._boolean(self._eval(operand, context), "and"):
                        return False
                return True
            for operand in node.operands:
                if self._boolean(self._eval(operand, context), "or"):
                    return True
            return False

        if isinstance(node, Compare):
            return self._compare(node.op, self._eval(node.left, context), self._eval(node.right, context))

        raise ConditionEvaluationError(f"Unsupported node {type(node).__name__}")

    def _resolve(self, fact: Fact, context: Dict[str, Any]) -> Any:
        head = fact.path[0]
        if head not in context:
            raise UnknownFactError(f"Unknown fact '{head}'", details={"fact": head})

        value = context[head]
        for part in fact.path[1:]:
            if value is None:
                return None
            if not isinstance(value, dict):
                raise ConditionEvaluationError(
                    f"Fact '{fact.name}' cannot be resolved: '{part}' is not a field of {_type_name(value)}"
                )
            value = value.get(part)
        return value

    @staticmethod
    def _boolean(value: Any, op: str) -> bool:
        if not isinstance(value, bool):
            raise ConditionEvaluationError(f"'{op}' expects true or false, got {_type_name(value)}")
        return value

    def _compare(self, op: str, left: Any, right: Any) -> bool:
        if op in ("==", "!="):
            left, right = self._align_dates(left, right)
            equal = left == right
            return equal if op == "==" else not equal

        if op in ("<", "<=", ">", ">="):
            left, right = self._align_dates(left, right)
            comparable = (
                (_is_number(left) and _is_number(right))
                or (isinstance(left, str) and isinstance(right, str))
                or (isinstance(left, datetime) and isinstance(right, datetime))
            )
            if not comparable:
                raise ConditionEvaluationError(
                    f"Cannot compare {_type_name(left)} {op} {_type_name(right)}"
                )
            if op == "<":
                return left < right
            if op == "<=":
                return left <= right
            if op == ">":
                return left > right
            return left >= right

        if op in ("in", "not in"):
            found = self._membership(left, right, op)
            return found if op == "in" else not found

        if op == "contains":
            return self._membership(right, left, op)

        raise ConditionEvaluationError(f"Unsupported operator '{op}'")

    @staticmethod
    def _membership(item: Any, container: Any, op: str) -> bool:
        if isinstance(container, str):
            if not isinstance(item, str):
                raise ConditionEvaluationError(f"'{op}' on text expects text, got {_type_name(item)}")
            return item in container
        if isinstance(container, (list, tuple, set, dict)):
            return item in container
        raise ConditionEvaluationError(f"'{op}' expects a list, got {_type_name(container)}")

    @staticmethod
    def _align_dates(left: Any, right: Any) -> Tuple[Any, Any]:
        """Let a date fact compare against an ISO date literal"""
        try:
            if isinstance(left, datetime) and isinstance(right, str):
                return left, coerce_datetime(right)
            if isinstance(right, datetime) and isinstance(left, str):
                return coerce_datetime(left), right
        except (TypeError, ValueError) as e:
            raise ConditionEvaluationError(f"Invalid date literal: {e}")
        if isinstance(left, datetime) and isinstance(right, datetime):
            return coerce_datetime(left), coerce_datetime(right)
        return left, right
