"""Run base64-encoded JavaScript snippets against a workflow context.

Scripts see the context as the global ``process_data`` object and may read
and change it. A small JavaScript interpreter covers what workflow scripts
use: variable declarations, assignments, ``if``/``else``, ``while``, the
usual operators, object and array literals, member access and a handful of
built-ins (``console``, ``Math``, ``String``, ``Number``, ``parseInt``,
``parseFloat``, ``isNaN`` and common string and array methods).
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import re
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)


class ScriptError(Exception):
    """Raised when a script cannot be decoded, parsed or run."""


class _Undefined:
    _instance: Optional["_Undefined"] = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()

_TOKEN_RE = re.compile(
    r"""
     (?P<ws>\s+|//[^\n]*|/\*.*?\*/)
    |(?P<num>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
    |(?P<str>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')
    |(?P<name>[A-Za-z_$][\w$]*)
    |(?P<op>===|!==|==|!=|<=|>=|&&|\|\||\+\+|--|\+=|-=|\*=|/=|%=|[-+*/%<>=!?:.,;(){}\[\]])
    """,
    re.S | re.X,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}

_PRECEDENCE = {
    "||": 1, "&&": 2,
    "==": 3, "!=": 3, "===": 3, "!==": 3,
    "<": 4, ">": 4, "<=": 4, ">=": 4,
    "+": 5, "-": 5,
    "*": 6, "/": 6, "%": 6,
}

_ASSIGN_OPS = ("=", "+=", "-=", "*=", "/=", "%=")
_LITERALS = {"true": True, "false": False, "null": None, "undefined": UNDEFINED}


def _unquote(text: str) -> str:
    def replace(match: re.Match) -> str:
        seq = match.group(1)
        if seq[0] in "ux" and len(seq) > 1:
            return chr(int(seq[1:], 16))
        return _ESCAPES.get(seq, seq)

    return re.sub(r"\\(u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|.)", replace, text[1:-1], flags=re.S)


def _tokenize(source: str) -> list[tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ScriptError(f"SyntaxError: unexpected character {source[pos]!r} at offset {pos}")
        pos = match.end()
        if match.lastgroup != "ws":
            tokens.append((match.lastgroup, match.group()))
    tokens.append(("eof", ""))
    return tokens


class _Parser:
    def __init__(self, source: str) -> None:
        self._tokens = _tokenize(source)
        self._pos = 0

    def _peek(self) -> tuple[str, str]:
        return self._tokens[self._pos]

    def _at(self, value: str) -> bool:
        kind, text = self._peek()
        return kind in ("op", "name") and text == value

    def _advance(self) -> tuple[str, str]:
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def _eat(self, value: str) -> bool:
        if self._at(value):
            self._pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._eat(value):
            kind, text = self._peek()
            found = "end of input" if kind == "eof" else repr(text)
            raise ScriptError(f"SyntaxError: expected {value!r}, found {found}")

    def program(self) -> list:
        statements = []
        while self._peek()[0] != "eof":
            statements.append(self._statement())
        return statements

    def _statement(self) -> tuple:
        if self._eat("{"):
            body = []
            while not self._eat("}"):
                if self._peek()[0] == "eof":
                    raise ScriptError("SyntaxError: unterminated block")
                body.append(self._statement())
            return ("block", body)
        if self._eat(";"):
            return ("empty",)
        if self._at("var") or self._at("let") or self._at("const"):
            self._advance()
            declarations = []
            while True:
                kind, name = self._advance()
                if kind != "name":
                    raise ScriptError(f"SyntaxError: bad variable name {name!r}")
                init = self._assignment() if self._eat("=") else None
                declarations.append((name, init))
                if not self._eat(","):
                    break
            self._eat(";")
            return ("decl", declarations)
        if self._eat("if"):
            self._expect("(")
            test = self._expression()
            self._expect(")")
            consequent = self._statement()
            alternate = self._statement() if self._eat("else") else None
            return ("if", test, consequent, alternate)
        if self._eat("while"):
            self._expect("(")
            test = self._expression()
            self._expect(")")
            return ("while", test, self._statement())
        expr = self._expression()
        self._eat(";")
        return ("expr", expr)

    def _expression(self) -> tuple:
        expr = self._assignment()
        while self._eat(","):
            expr = ("seq", expr, self._assignment())
        return expr

    def _assignment(self) -> tuple:
        left = self._conditional()
        kind, text = self._peek()
        if kind == "op" and text in _ASSIGN_OPS:
            if left[0] not in ("var", "member"):
                raise ScriptError("SyntaxError: invalid assignment target")
            self._advance()
            return ("assign", text, left, self._assignment())
        return left

    def _conditional(self) -> tuple:
        test = self._binary(1)
        if self._eat("?"):
            consequent = self._assignment()
            self._expect(":")
            return ("cond", test, consequent, self._assignment())
        return test

    def _binary(self, min_prec: int) -> tuple:
        left = self._unary()
        while True:
            kind, op = self._peek()
            prec = _PRECEDENCE.get(op) if kind == "op" else None
            if prec is None or prec < min_prec:
                return left
            self._advance()
            right = self._binary(prec + 1)
            left = ("logic" if op in ("&&", "||") else "bin", op, left, right)

    def _unary(self) -> tuple:
        kind, text = self._peek()
        if kind == "op" and text in ("!", "-", "+"):
            self._advance()
            return ("unary", text, self._unary())
        if kind == "name" and text == "typeof":
            self._advance()
            return ("typeof", self._unary())
        if kind == "op" and text in ("++", "--"):
            self._advance()
            target = self._unary()
            if target[0] not in ("var", "member"):
                raise ScriptError("SyntaxError: invalid update target")
            return ("update", text, True, target)
        return self._postfix()

    def _postfix(self) -> tuple:
        expr = self._primary()
        while True:
            if self._eat("."):
                kind, name = self._advance()
                if kind != "name":
                    raise ScriptError(f"SyntaxError: bad property name {name!r}")
                expr = ("member", expr, ("lit", name))
            elif self._eat("["):
                key = self._expression()
                self._expect("]")
                expr = ("member", expr, key)
            elif self._eat("("):
                args = []
                if not self._eat(")"):
                    while True:
                        args.append(self._assignment())
                        if self._eat(")"):
                            break
                        self._expect(",")
                expr = ("call", expr, args)
            else:
                break
        kind, text = self._peek()
        if kind == "op" and text in ("++", "--") and expr[0] in ("var", "member"):
            self._advance()
            expr = ("update", text, False, expr)
        return expr

    def _primary(self) -> tuple:
        kind, text = self._advance()
        if kind == "num":
            return ("lit", float(text))
        if kind == "str":
            return ("lit", _unquote(text))
        if kind == "name":
            if text in _LITERALS:
                return ("lit", _LITERALS[text])
            return ("var", text)
        if text == "(":
            expr = self._expression()
            self._expect(")")
            return expr
        if text == "[":
            items = []
            while not self._eat("]"):
                items.append(self._assignment())
                if not self._at("]"):
                    self._expect(",")
            return ("array", items)
        if text == "{":
            props = []
            while not self._eat("}"):
                key_kind, key = self._advance()
                if key_kind == "str":
                    key = _unquote(key)
                elif key_kind == "num":
                    key = _to_string(float(key))
                elif key_kind != "name":
                    raise ScriptError(f"SyntaxError: bad object key {key!r}")
                self._expect(":")
                props.append((key, self._assignment()))
                if not self._at("}"):
                    self._expect(",")
            return ("object", props)
        found = "end of input" if kind == "eof" else repr(text)
        raise ScriptError(f"SyntaxError: unexpected token {found}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if value is None:
        return 0.0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if text in ("Infinity", "+Infinity"):
            return math.inf
        if text == "-Infinity":
            return -math.inf
        if re.fullmatch(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", text):
            return float(text)
        return math.nan
    return math.nan


def _to_string(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        number = float(value)
        if math.isnan(number):
            return "NaN"
        if math.isinf(number):
            return "Infinity" if number > 0 else "-Infinity"
        if number.is_integer() and abs(number) < 1e21:
            return str(int(number))
        return repr(number)
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return ",".join("" if v is None or v is UNDEFINED else _to_string(v) for v in value)
    if callable(value):
        return "function () { [native code] }"
    return "[object Object]"


def _truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _strict_equal(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return float(a) == float(b)
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return a is b
    if type(a) is not type(b):
        return False
    return a == b


def _loose_equal(a: Any, b: Any) -> bool:
    a_nullish = a is None or a is UNDEFINED
    b_nullish = b is None or b is UNDEFINED
    if a_nullish or b_nullish:
        return a_nullish and b_nullish
    scalar = (str, bool, int, float)
    if isinstance(a, scalar) and isinstance(b, scalar):
        if isinstance(a, str) and isinstance(b, str):
            return a == b
        return _to_number(a) == _to_number(b)
    return _strict_equal(a, b)


def _typeof(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if callable(value):
        return "function"
    return "object"


def _arith(op: str, a: Any, b: Any) -> Any:
    if op == "+":
        if isinstance(a, (str, list, dict)) or isinstance(b, (str, list, dict)):
            return _to_string(a) + _to_string(b)
        return _to_number(a) + _to_number(b)
    x, y = _to_number(a), _to_number(b)
    if op == "-":
        return x - y
    if op == "*":
        return x * y
    if op == "/":
        if y == 0:
            if x == 0 or math.isnan(x):
                return math.nan
            return math.copysign(math.inf, x) * math.copysign(1.0, y)
        return x / y
    if op == "%":
        if y == 0 or math.isinf(x):
            return math.nan
        return math.fmod(x, y)
    raise ScriptError(f"unsupported operator {op}")


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        left, right = a, b
    else:
        left, right = _to_number(a), _to_number(b)
        if math.isnan(left) or math.isnan(right):
            return False
    return {
        "<": left < right,
        ">": left > right,
        "<=": left <= right,
        ">=": left >= right,
    }[op]


def _binary(op: str, a: Any, b: Any) -> Any:
    if op in ("+", "-", "*", "/", "%"):
        return _arith(op, a, b)
    if op == "===":
        return _strict_equal(a, b)
    if op == "!==":
        return not _strict_equal(a, b)
    if op == "==":
        return _loose_equal(a, b)
    if op == "!=":
        return not _loose_equal(a, b)
    return _compare(op, a, b)


def _parse_float(value: Any = UNDEFINED) -> float:
    match = re.match(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", _to_string(value).strip())
    return float(match.group()) if match else math.nan


def _parse_int(value: Any = UNDEFINED, *_: Any) -> float:
    match = re.match(r"[+-]?\d+", _to_string(value).strip())
    return float(int(match.group())) if match else math.nan


def _math_round(value: Any = UNDEFINED) -> float:
    number = _to_number(value)
    if math.isnan(number) or math.isinf(number):
        return number
    return float(math.floor(number + 0.5))


def _guarded(fn: Callable[[float], Any]) -> Callable[..., float]:
    def wrapper(value: Any = UNDEFINED, *_: Any) -> float:
        number = _to_number(value)
        if math.isnan(number) or math.isinf(number):
            return number
        return float(fn(number))

    return wrapper


def _math_max(*args: Any) -> float:
    numbers = [_to_number(a) for a in args]
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return max(numbers, default=-math.inf)


def _math_min(*args: Any) -> float:
    numbers = [_to_number(a) for a in args]
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return min(numbers, default=math.inf)


def _console(label: str) -> Callable[..., Any]:
    def write(*args: Any) -> Any:
        log.info("[JS %s] %s", label, " ".join(_to_string(a) for a in args))
        return UNDEFINED

    return write


def _import(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _import(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_import(v) for v in value]
    return value


def _export(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _export(v) for k, v in value.items() if not callable(v)}
    if isinstance(value, list):
        return [_export(v) for v in value]
    if value is UNDEFINED:
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _index(key: Any) -> Optional[int]:
    if _is_number(key) and float(key).is_integer() and key >= 0:
        return int(key)
    if isinstance(key, str) and key.isdigit():
        return int(key)
    return None


class _Interpreter:
    def __init__(self, context: dict) -> None:
        self.scope: dict[str, Any] = {
            "process_data": _import(context or {}),
            "console": {"log": _console("Log"), "warn": _console("Warn"), "error": _console("Error")},
            "Math": {
                "floor": _guarded(math.floor),
                "ceil": _guarded(math.ceil),
                "round": _math_round,
                "abs": lambda v=UNDEFINED, *_: abs(_to_number(v)),
                "max": _math_max,
                "min": _math_min,
                "PI": math.pi,
            },
            "String": lambda v="", *_: _to_string(v),
            "Number": lambda v=0.0, *_: _to_number(v),
            "parseInt": _parse_int,
            "parseFloat": _parse_float,
            "isNaN": lambda v=UNDEFINED, *_: math.isnan(_to_number(v)),
        }
        self.completion: Any = UNDEFINED

    def run(self, source: str) -> Any:
        for statement in _Parser(source).program():
            self._exec(statement)
        return self.completion

    def _exec(self, node: tuple) -> None:
        kind = node[0]
        if kind == "expr":
            self.completion = self._eval(node[1])
        elif kind == "block":
            for statement in node[1]:
                self._exec(statement)
        elif kind == "decl":
            for name, init in node[1]:
                if init is not None:
                    self.scope[name] = self._eval(init)
                else:
                    self.scope.setdefault(name, UNDEFINED)
        elif kind == "if":
            if _truthy(self._eval(node[1])):
                self._exec(node[2])
            elif node[3] is not None:
                self._exec(node[3])
        elif kind == "while":
            while _truthy(self._eval(node[1])):
                self._exec(node[2])

    def _eval(self, node: tuple) -> Any:
        return getattr(self, "_eval_" + node[0])(node)

    def _eval_lit(self, node: tuple) -> Any:
        return node[1]

    def _eval_var(self, node: tuple) -> Any:
        try:
            return self.scope[node[1]]
        except KeyError:
            raise ScriptError(f"ReferenceError: {node[1]} is not defined") from None

    def _eval_array(self, node: tuple) -> list:
        return [self._eval(item) for item in node[1]]

    def _eval_object(self, node: tuple) -> dict:
        return {key: self._eval(expr) for key, expr in node[1]}

    def _eval_seq(self, node: tuple) -> Any:
        self._eval(node[1])
        return self._eval(node[2])

    def _eval_cond(self, node: tuple) -> Any:
        return self._eval(node[2] if _truthy(self._eval(node[1])) else node[3])

    def _eval_logic(self, node: tuple) -> Any:
        left = self._eval(node[2])
        if node[1] == "&&":
            return self._eval(node[3]) if _truthy(left) else left
        return left if _truthy(left) else self._eval(node[3])

    def _eval_bin(self, node: tuple) -> Any:
        return _binary(node[1], self._eval(node[2]), self._eval(node[3]))

    def _eval_unary(self, node: tuple) -> Any:
        value = self._eval(node[2])
        if node[1] == "!":
            return not _truthy(value)
        number = _to_number(value)
        return -number if node[1] == "-" else number

    def _eval_typeof(self, node: tuple) -> str:
        target = node[1]
        if target[0] == "var" and target[1] not in self.scope:
            return "undefined"
        return _typeof(self._eval(target))

    def _eval_member(self, node: tuple) -> Any:
        return self._get(self._eval(node[1]), self._eval(node[2]))

    def _eval_call(self, node: tuple) -> Any:
        fn = self._eval(node[1])
        args = [self._eval(arg) for arg in node[2]]
        if not callable(fn):
            raise ScriptError(f"TypeError: {_describe(node[1])} is not a function")
        return fn(*args)

    def _eval_assign(self, node: tuple) -> Any:
        op, target, expr = node[1], node[2], node[3]
        if target[0] == "member":
            obj = self._eval(target[1])
            key = self._eval(target[2])
            value = self._eval(expr)
            if op != "=":
                value = _binary(op[0], self._get(obj, key), value)
            self._set(obj, key, value)
            return value
        value = self._eval(expr)
        if op != "=":
            value = _binary(op[0], self._eval(target), value)
        self.scope[target[1]] = value
        return value

    def _eval_update(self, node: tuple) -> Any:
        op, prefix, target = node[1], node[2], node[3]
        if target[0] == "member":
            obj = self._eval(target[1])
            key = self._eval(target[2])
            old = _to_number(self._get(obj, key))
        else:
            old = _to_number(self._eval(target))
        new = old + 1 if op == "++" else old - 1
        if target[0] == "member":
            self._set(obj, key, new)
        else:
            self.scope[target[1]] = new
        return new if prefix else old

    def _get(self, obj: Any, key: Any) -> Any:
        if obj is None or obj is UNDEFINED:
            raise ScriptError(
                f"TypeError: cannot read property '{_to_string(key)}' of {_to_string(obj)}"
            )
        if isinstance(obj, dict):
            return obj.get(_to_string(key), UNDEFINED)
        if isinstance(obj, list):
            index = _index(key)
            if index is not None:
                return obj[index] if index < len(obj) else UNDEFINED
            return _list_method(obj, _to_string(key))
        if isinstance(obj, str):
            index = _index(key)
            if index is not None:
                return obj[index] if index < len(obj) else UNDEFINED
            return _string_method(obj, _to_string(key))
        return UNDEFINED

    def _set(self, obj: Any, key: Any, value: Any) -> None:
        if isinstance(obj, dict):
            obj[_to_string(key)] = value
            return
        if isinstance(obj, list):
            index = _index(key)
            if index is not None:
                if index >= len(obj):
                    obj.extend([UNDEFINED] * (index + 1 - len(obj)))
                obj[index] = value
                return
        if obj is None or obj is UNDEFINED:
            raise ScriptError(
                f"TypeError: cannot set property '{_to_string(key)}' of {_to_string(obj)}"
            )


def _describe(node: tuple) -> str:
    if node[0] == "var":
        return node[1]
    if node[0] == "member" and node[2][0] == "lit":
        return f"{_describe(node[1])}.{_to_string(node[2][1])}"
    return "expression"


def _list_method(items: list, name: str) -> Any:
    if name == "length":
        return float(len(items))
    if name == "push":
        def push(*args: Any) -> float:
            items.extend(args)
            return float(len(items))
        return push
    if name == "join":
        return lambda sep=",", *_: _to_string(sep).join(
            "" if v is None or v is UNDEFINED else _to_string(v) for v in items
        )
    if name == "indexOf":
        return lambda value=UNDEFINED, *_: float(
            next((i for i, v in enumerate(items) if _strict_equal(v, value)), -1)
        )
    if name == "includes":
        return lambda value=UNDEFINED, *_: any(_strict_equal(v, value) for v in items)
    return UNDEFINED


def _string_method(text: str, name: str) -> Any:
    if name == "length":
        return float(len(text))
    if name == "toUpperCase":
        return lambda *_: text.upper()
    if name == "toLowerCase":
        return lambda *_: text.lower()
    if name == "trim":
        return lambda *_: text.strip()
    if name == "includes":
        return lambda sub=UNDEFINED, *_: _to_string(sub) in text
    if name == "indexOf":
        return lambda sub=UNDEFINED, *_: float(text.find(_to_string(sub)))
    return UNDEFINED


def _decode(encoded: str, what: str) -> str:
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as exc:
        raise ScriptError(f"error decoding base64 {what}: {exc}") from exc


def execute_script(base64_script: str, context: dict[str, Any]) -> dict[str, Any]:
    """Run a script with ``process_data`` bound to the context; return the new context."""
    source = _decode(base64_script, "script")
    interpreter = _Interpreter(context)
    try:
        interpreter.run(source)
    except (ScriptError, RecursionError) as exc:
        raise ScriptError(f"error executing script: {exc}") from exc
    value = interpreter.scope.get("process_data", UNDEFINED)
    if value is UNDEFINED or value is None:
        return context
    if isinstance(value, dict):
        return _export(value)
    log.warning(
        "process_data after script execution is not an object. Type: %s", _typeof(value)
    )
    return context


def evaluate_condition(base64_condition: str, context: dict[str, Any]) -> bool:
    """Evaluate a script and return its boolean completion value."""
    source = _decode(base64_condition, "condition")
    try:
        value = _Interpreter(context).run(source)
    except (ScriptError, RecursionError) as exc:
        raise ScriptError(f"error evaluating condition script: {exc}") from exc
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    raise ScriptError("condition script did not return a boolean value")


def to_json(data: dict[str, Any]) -> str:
    """Serialise a mapping to compact JSON with sorted keys."""
    return json.dumps(data, separators=(",", ":"), sort_keys=True)


def from_json(json_str: str) -> Optional[dict[str, Any]]:
    """Parse a JSON object; ``null`` gives None and other values raise ValueError."""
    data = json.loads(json_str)
    if data is not None and not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data