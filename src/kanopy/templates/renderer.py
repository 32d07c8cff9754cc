"""Template renderer — a small Go-template-flavoured minilanguage.

Manifesto:
Blueprint arguments are strings with ``{{ ... }}`` actions in them.  The
renderer turns such a string plus a :class:`TemplateContext` into a plain
string.  It is deliberately small: dotted-path lookups, conditionals,
iteration and a fixed set of pure helper functions.  There is no way to
reach the host process, the filesystem or the network from a template.
Rendering the same template against the same context always yields the
same string.

ARCHITECTURE
────────────
::

    source ──► _Lexer ──► items (text | action tokens)
                              │
                              ▼
                          _Parser  (recursive descent)
                              │
                              ▼
                 nodes: Text · Action · If · Range
                              │
                              ▼
                          _Evaluator ──► str

SYNTAX
──────
::

    {{ .Object.Name }}                   dotted lookup from the current value
    {{ . }}  {{ $ }}  {{ $x.Field }}      current value, root, variables
    {{ $x := .Options.mode }}            declare a variable (prints nothing)
    {{ if PIPE }}..{{ else if PIPE }}..{{ else }}..{{ end }}
    {{ range PIPE }}..{{ else }}..{{ end }}
    {{ range $v := PIPE }}  {{ range $k, $v := PIPE }}
    {{ .a | upper }}  {{ default "x" .a }}  {{ (index .m "k") }}
    {{- trims whitespace to the left; -}} to the right
    {{/* comment */}}

Functions: ``eq ne not and or default quote upper lower trim toJson
b64enc b64dec join index len``.

Ranging over a mapping visits keys in sorted order.  Mappings and
sequences printed directly render as compact JSON with sorted keys.

Every failure (parse error, undefined path, unknown function, bad
arguments) raises :class:`~kanopy.core.errors.TemplateError`.

Tags:
    kanopy, templates, renderer, parser

Doc-Types:
    api-reference, language-reference
"""

from __future__ import annotations

import base64
import binascii
import inspect
import json
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from kanopy.core.errors import TemplateError
from kanopy.templates.context import TemplateContext, freeze, resolve_key, thaw

LEFT_DELIM = "{{"
RIGHT_DELIM = "}}"


# =============================================================================
# Value helpers
# =============================================================================


def to_text(value: Any) -> str:
    """Printed form of a template value."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(thaw(value), sort_keys=True, separators=(",", ":"))


def is_true(value: Any) -> bool:
    """Go-template truthiness: false, 0, nil and empty values are false."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value != 0
    return len(value) > 0


def _equal(a: Any, b: Any) -> bool:
    scalars = (str, int, float, bool)
    if isinstance(a, scalars) and isinstance(b, scalars) and type(a) is not type(b):
        return to_text(a) == to_text(b)
    return a == b


# =============================================================================
# Builtin functions
# =============================================================================


def _fn_eq(a: Any, b: Any, *more: Any) -> bool:
    return any(_equal(a, other) for other in (b, *more))


def _fn_ne(a: Any, b: Any) -> bool:
    return not _equal(a, b)


def _fn_not(a: Any) -> bool:
    return not is_true(a)


def _fn_and(a: Any, *more: Any) -> Any:
    for value in (a, *more):
        if not is_true(value):
            return value
    return more[-1] if more else a


def _fn_or(a: Any, *more: Any) -> Any:
    for value in (a, *more):
        if is_true(value):
            return value
    return more[-1] if more else a


def _fn_default(fallback: Any, value: Any = None) -> Any:
    return value if is_true(value) else fallback


def _fn_quote(*values: Any) -> str:
    return " ".join(json.dumps(to_text(v)) for v in values)


def _fn_upper(value: Any) -> str:
    return to_text(value).upper()


def _fn_lower(value: Any) -> str:
    return to_text(value).lower()


def _fn_trim(value: Any) -> str:
    return to_text(value).strip()


def _fn_to_json(value: Any) -> str:
    return json.dumps(thaw(value), sort_keys=True, separators=(",", ":"))


def _fn_b64enc(value: Any) -> str:
    return base64.b64encode(to_text(value).encode("utf-8")).decode("ascii")


def _fn_b64dec(value: Any) -> str:
    try:
        return base64.b64decode(to_text(value), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise TemplateError(f"b64dec: invalid input: {e}") from e


def _fn_join(sep: Any, values: Any) -> str:
    if isinstance(values, str):
        return values
    if isinstance(values, Mapping):
        raise TemplateError("join: cannot join a mapping")
    return to_text(sep).join(to_text(v) for v in values)


def _fn_index(collection: Any, *keys: Any) -> Any:
    current = collection
    for key in keys:
        if isinstance(current, Mapping):
            # Missing keys yield the zero value so that `default` can apply.
            current = current.get(to_text(key), "")
        elif isinstance(current, tuple):
            try:
                current = current[int(key)]
            except (ValueError, IndexError):
                raise TemplateError(f"index: {to_text(key)} out of range") from None
        else:
            raise TemplateError(f"index: can't index item of type {type(current).__name__}")
    return current


def _fn_len(value: Any) -> int:
    if isinstance(value, str | Mapping | tuple):
        return len(value)
    raise TemplateError(f"len: invalid argument of type {type(value).__name__}")


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "eq": _fn_eq,
    "ne": _fn_ne,
    "not": _fn_not,
    "and": _fn_and,
    "or": _fn_or,
    "default": _fn_default,
    "quote": _fn_quote,
    "upper": _fn_upper,
    "lower": _fn_lower,
    "trim": _fn_trim,
    "toJson": _fn_to_json,
    "b64enc": _fn_b64enc,
    "b64dec": _fn_b64dec,
    "join": _fn_join,
    "index": _fn_index,
    "len": _fn_len,
}

_SIGNATURES = {name: inspect.signature(fn) for name, fn in FUNCTIONS.items()}

_KEYWORDS = frozenset({"if", "else", "end", "range"})
_UNSUPPORTED = frozenset({"with", "define", "template", "block", "break", "continue"})


# =============================================================================
# Lexer
# =============================================================================

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<raw>`[^`]*`)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<declare>:=)
  | (?P<pipe>\|)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
  | (?P<variable>\$\w*(?:\.\w[\w-]*)*)
  | (?P<field>(?:\.\w[\w-]*)+|\.)
  | (?P<ident>[A-Za-z_]\w*)
    """,
    re.VERBOSE,
)

_COMMENT_CLOSE_RE = re.compile(r"(?P<trim>\s-)?\s*\}\}")


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


@dataclass(frozen=True)
class _Text:
    text: str


@dataclass(frozen=True)
class _Action:
    tokens: tuple[_Token, ...]
    pos: int


class _Lexer:
    """Splits source into text runs and tokenized actions."""

    def __init__(self, source: str, name: str):
        self.source = source
        self.name = name

    def error(self, pos: int, message: str) -> TemplateError:
        return TemplateError(_located(self.name, self.source, pos, message))

    def items(self) -> list[_Text | _Action]:
        src = self.source
        items: list[_Text | _Action] = []
        pos = 0
        trim_next = False
        while True:
            start = src.find(LEFT_DELIM, pos)
            text = src[pos:] if start == -1 else src[pos:start]
            if trim_next:
                text = text.lstrip()
            trim_left = start != -1 and src[start + 2 : start + 3] == "-" and src[start + 3 : start + 4].isspace()
            if trim_left:
                text = text.rstrip()
            if text:
                items.append(_Text(text))
            if start == -1:
                return items

            inner = start + (3 if trim_left else 2)
            stripped = inner + (len(src[inner:]) - len(src[inner:].lstrip()))
            if src.startswith("/*", stripped):
                close = src.find("*/", stripped + 2)
                if close == -1:
                    raise self.error(start, "unclosed comment")
                m = _COMMENT_CLOSE_RE.match(src, close + 2)
                if m is None:
                    raise self.error(start, "comment ends before closing delimiter")
                trim_next = m.group("trim") is not None
                pos = m.end()
                continue

            end, trim_next = self._find_close(start, inner)
            body_end = end - 1 if trim_next else end
            items.append(_Action(self._tokenize(inner, body_end), start))
            pos = end + 2

    def _find_close(self, start: int, pos: int) -> tuple[int, bool]:
        src = self.source
        quote: str | None = None
        while pos < len(src):
            ch = src[pos]
            if quote:
                if ch == "\\" and quote == '"':
                    pos += 2
                    continue
                if ch == quote:
                    quote = None
            elif ch in ('"', "`"):
                quote = ch
            elif src.startswith(RIGHT_DELIM, pos):
                trim = pos >= 2 and src[pos - 1] == "-" and src[pos - 2].isspace()
                return pos, trim
            pos += 1
        raise self.error(start, "unclosed action")

    def _tokenize(self, start: int, end: int) -> tuple[_Token, ...]:
        tokens: list[_Token] = []
        pos = start
        while pos < end:
            m = _TOKEN_RE.match(self.source, pos, end)
            if m is None:
                raise self.error(pos, f"unexpected character {self.source[pos]!r} in action")
            kind = m.lastgroup
            assert kind is not None
            if kind != "ws":
                tokens.append(_Token(kind, m.group(), pos))
            pos = m.end()
        return tuple(tokens)


def _located(name: str, source: str, pos: int, message: str) -> str:
    line = source.count("\n", 0, pos) + 1
    return f"template: {name}:{line}: {message}"


# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class Field:
    path: tuple[str, ...]


@dataclass(frozen=True)
class Variable:
    name: str
    path: tuple[str, ...] = ()


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Identifier:
    name: str


@dataclass
class Command:
    operands: list[Any]


@dataclass
class Pipeline:
    commands: list[Command]
    decl: str | None = None
    pos: int = 0


@dataclass
class TextNode:
    text: str


@dataclass
class ActionNode:
    pipeline: Pipeline


@dataclass
class IfNode:
    branches: list[tuple[Pipeline, list[Any]]]
    else_body: list[Any] | None = None


@dataclass
class RangeNode:
    pipeline: Pipeline
    body: list[Any]
    else_body: list[Any] | None = None
    key_var: str | None = None
    value_var: str | None = None


# =============================================================================
# Parser
# =============================================================================


class _Cursor:
    def __init__(self, tokens: tuple[_Token, ...] | list[_Token]):
        self.tokens = list(tokens)
        self.i = 0

    def peek(self) -> _Token | None:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def next(self) -> _Token | None:
        tok = self.peek()
        if tok is not None:
            self.i += 1
        return tok

    def rest(self) -> list[_Token]:
        return self.tokens[self.i :]


class _Parser:
    def __init__(self, source: str, name: str):
        self.source = source
        self.name = name
        self.items = _Lexer(source, name).items()
        self.i = 0

    def error(self, pos: int, message: str) -> TemplateError:
        return TemplateError(_located(self.name, self.source, pos, message))

    def parse(self) -> list[Any]:
        nodes, terminator = self._list()
        if terminator is not None:
            kind, _, pos = terminator
            raise self.error(pos, f"unexpected {{{{{kind}}}}}")
        return nodes

    def _list(self) -> tuple[list[Any], tuple[str, list[_Token], int] | None]:
        """Parse nodes until EOF or an ``else``/``end`` action."""
        nodes: list[Any] = []
        while self.i < len(self.items):
            item = self.items[self.i]
            self.i += 1
            if isinstance(item, _Text):
                nodes.append(TextNode(item.text))
                continue
            if not item.tokens:
                raise self.error(item.pos, "missing value for command")
            head = item.tokens[0]
            keyword = head.value if head.kind == "ident" else None
            if keyword in ("else", "end"):
                return nodes, (keyword, list(item.tokens[1:]), item.pos)
            if keyword == "if":
                nodes.append(self._if(list(item.tokens[1:]), item.pos))
            elif keyword == "range":
                nodes.append(self._range(list(item.tokens[1:]), item.pos))
            elif keyword in _UNSUPPORTED:
                raise self.error(item.pos, f"'{keyword}' is not supported")
            else:
                nodes.append(ActionNode(self._pipeline(list(item.tokens), item.pos, allow_decl=True)))
        return nodes, None

    def _if(self, tokens: list[_Token], pos: int) -> IfNode:
        node = IfNode(branches=[])
        cond = self._pipeline(tokens, pos)
        while True:
            body, term = self._list()
            if term is None:
                raise self.error(pos, "unexpected EOF in if")
            node.branches.append((cond, body))
            kind, rest, term_pos = term
            if kind == "end":
                if rest:
                    raise self.error(term_pos, "unexpected arguments to end")
                return node
            if rest and rest[0].kind == "ident" and rest[0].value == "if":
                cond = self._pipeline(rest[1:], term_pos)
                continue
            if rest:
                raise self.error(term_pos, "unexpected arguments to else")
            node.else_body = self._expect_end(pos, "if")
            return node

    def _range(self, tokens: list[_Token], pos: int) -> RangeNode:
        key_var = value_var = None
        kinds = [t.kind for t in tokens]
        if kinds[:4] == ["variable", "comma", "variable", "declare"]:
            key_var, value_var = tokens[0].value, tokens[2].value
            tokens = tokens[4:]
        elif kinds[:2] == ["variable", "declare"]:
            value_var = tokens[0].value
            tokens = tokens[2:]
        for var in (key_var, value_var):
            if var is not None and "." in var:
                raise self.error(pos, f"cannot declare field of variable {var}")
        pipeline = self._pipeline(tokens, pos)
        body, term = self._list()
        if term is None:
            raise self.error(pos, "unexpected EOF in range")
        kind, rest, term_pos = term
        if rest:
            raise self.error(term_pos, f"unexpected arguments to {kind} in range")
        else_body = self._expect_end(pos, "range") if kind == "else" else None
        return RangeNode(pipeline, body, else_body, key_var, value_var)

    def _expect_end(self, pos: int, context: str) -> list[Any]:
        body, term = self._list()
        if term is None or term[0] != "end":
            raise self.error(pos, f"expected end after else in {context}")
        if term[1]:
            raise self.error(term[2], "unexpected arguments to end")
        return body

    def _pipeline(self, tokens: list[_Token], pos: int, allow_decl: bool = False) -> Pipeline:
        decl = None
        if len(tokens) >= 2 and tokens[0].kind == "variable" and tokens[1].kind == "declare":
            if not allow_decl:
                raise self.error(pos, "variable declaration not allowed here")
            decl = tokens[0].value
            if "." in decl:
                raise self.error(pos, f"cannot declare field of variable {decl}")
            tokens = tokens[2:]
        cursor = _Cursor(tokens)
        pipeline = self._commands(cursor, pos, closing=False)
        pipeline.decl = decl
        if cursor.peek() is not None:
            raise self.error(cursor.peek().pos, f"unexpected {cursor.peek().value!r}")
        return pipeline

    def _commands(self, cursor: _Cursor, pos: int, closing: bool) -> Pipeline:
        commands: list[Command] = []
        operands: list[Any] = []
        while True:
            tok = cursor.peek()
            if tok is None or (closing and tok.kind == "rparen"):
                break
            cursor.next()
            if tok.kind == "pipe":
                if not operands:
                    raise self.error(tok.pos, "missing command before '|'")
                commands.append(Command(operands))
                operands = []
                continue
            operands.append(self._operand(tok, cursor))
        if not operands:
            raise self.error(pos, "missing value for command")
        commands.append(Command(operands))
        for command in commands[1:]:
            if not isinstance(command.operands[0], Identifier):
                raise self.error(pos, "non-function command in pipeline stage")
        return Pipeline(commands, pos=pos)

    def _operand(self, tok: _Token, cursor: _Cursor) -> Any:
        kind, value = tok.kind, tok.value
        if kind == "field":
            return Field(tuple(s for s in value.split(".") if s))
        if kind == "variable":
            name, *path = value.split(".")
            return Variable(name, tuple(path))
        if kind == "string":
            try:
                return Literal(json.loads(value))
            except json.JSONDecodeError as e:
                raise self.error(tok.pos, f"invalid string literal {value}: {e.msg}") from e
        if kind == "raw":
            return Literal(value[1:-1])
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "lparen":
            inner = self._commands(cursor, tok.pos, closing=True)
            closer = cursor.next()
            if closer is None or closer.kind != "rparen":
                raise self.error(tok.pos, "unclosed left paren")
            return inner
        if kind == "ident":
            if value in ("true", "false"):
                return Literal(value == "true")
            if value == "nil":
                return Literal(None)
            if value in _KEYWORDS or value in _UNSUPPORTED:
                raise self.error(tok.pos, f"unexpected keyword '{value}'")
            if value not in FUNCTIONS:
                raise self.error(tok.pos, f'function "{value}" not defined')
            return Identifier(value)
        raise self.error(tok.pos, f"unexpected {value!r}")


# =============================================================================
# Evaluator
# =============================================================================

_NO_PIPE = object()


@dataclass
class _Evaluator:
    name: str
    source: str
    root: Any
    out: list[str] = field(default_factory=list)

    def error(self, pos: int, message: str) -> TemplateError:
        return TemplateError(_located(self.name, self.source, pos, message))

    def run(self, nodes: list[Any], dot: Any, scope: dict[str, Any]) -> None:
        for node in nodes:
            if isinstance(node, TextNode):
                self.out.append(node.text)
            elif isinstance(node, ActionNode):
                value = self.pipeline(node.pipeline, dot, scope)
                if node.pipeline.decl:
                    scope[node.pipeline.decl] = value
                else:
                    self.out.append(to_text(value))
            elif isinstance(node, IfNode):
                self._if(node, dot, scope)
            elif isinstance(node, RangeNode):
                self._range(node, dot, scope)

    def _if(self, node: IfNode, dot: Any, scope: dict[str, Any]) -> None:
        for cond, body in node.branches:
            if is_true(self.pipeline(cond, dot, scope)):
                self.run(body, dot, dict(scope))
                return
        if node.else_body is not None:
            self.run(node.else_body, dot, dict(scope))

    def _range(self, node: RangeNode, dot: Any, scope: dict[str, Any]) -> None:
        value = self.pipeline(node.pipeline, dot, scope)
        if isinstance(value, Mapping):
            entries = [(k, value[k]) for k in sorted(value)]
        elif isinstance(value, tuple | list):
            entries = list(enumerate(value))
        elif value is None:
            entries = []
        elif isinstance(value, int) and not isinstance(value, bool):
            entries = [(i, i) for i in range(value)]
        else:
            raise self.error(node.pipeline.pos, f"range can't iterate over {to_text(value)!r}")

        if not entries:
            if node.else_body is not None:
                self.run(node.else_body, dot, dict(scope))
            return
        for key, item in entries:
            inner = dict(scope)
            if node.key_var:
                inner[node.key_var] = key
            if node.value_var:
                inner[node.value_var] = item
            self.run(node.body, item, inner)

    def pipeline(self, pipeline: Pipeline, dot: Any, scope: dict[str, Any]) -> Any:
        value: Any = _NO_PIPE
        for command in pipeline.commands:
            value = self._command(command, dot, scope, value, pipeline.pos)
        return value

    def _command(self, command: Command, dot: Any, scope: dict[str, Any], piped: Any, pos: int) -> Any:
        head = command.operands[0]
        if isinstance(head, Identifier):
            args = [self._operand(op, dot, scope, pos) for op in command.operands[1:]]
            if piped is not _NO_PIPE:
                args.append(piped)
            return self._call(head.name, args, pos)
        if len(command.operands) > 1 or piped is not _NO_PIPE:
            raise self.error(pos, "can't give argument to non-function")
        return self._operand(head, dot, scope, pos)

    def _call(self, name: str, args: list[Any], pos: int) -> Any:
        try:
            _SIGNATURES[name].bind(*args)
        except TypeError:
            raise self.error(pos, f"wrong number of args for {name}: got {len(args)}") from None
        try:
            return FUNCTIONS[name](*args)
        except TemplateError as e:
            raise self.error(pos, f"error calling {name}: {e.message}") from e

    def _operand(self, operand: Any, dot: Any, scope: dict[str, Any], pos: int) -> Any:
        if isinstance(operand, Literal):
            return operand.value
        if isinstance(operand, Field):
            return self._walk(dot, operand.path, ".", pos)
        if isinstance(operand, Variable):
            if operand.name == "$":
                base = self.root
            elif operand.name in scope:
                base = scope[operand.name]
            else:
                raise self.error(pos, f"undefined variable: {operand.name}")
            return self._walk(base, operand.path, operand.name + ".", pos)
        if isinstance(operand, Identifier):
            return self._call(operand.name, [], pos)
        if isinstance(operand, Pipeline):
            return self.pipeline(operand, dot, scope)
        raise self.error(pos, f"unexpected operand {operand!r}")

    def _walk(self, base: Any, path: tuple[str, ...], prefix: str, pos: int) -> Any:
        current = base
        for i, segment in enumerate(path):
            if not isinstance(current, Mapping):
                where = prefix + ".".join(path[:i])
                raise self.error(pos, f"can't evaluate field {segment} in {where}: not a mapping")
            try:
                current = resolve_key(current, segment)
            except KeyError:
                raise self.error(pos, f"undefined path {prefix}{'.'.join(path[: i + 1])}") from None
            except TemplateError as e:
                raise self.error(pos, e.message) from None
        return current


# =============================================================================
# Public API
# =============================================================================


class Template:
    """A parsed template, reusable across contexts.

    Example:
        >>> Template("{{ .Object.Name | upper }}").render({"Object": {"Name": "db-0"}})
        'DB-0'
    """

    def __init__(self, source: str, name: str = "template"):
        self.source = source
        self.name = name
        self._nodes = _Parser(source, name).parse()

    def render(self, context: TemplateContext | Mapping[str, Any]) -> str:
        root = context.root if isinstance(context, TemplateContext) else freeze(context)
        evaluator = _Evaluator(self.name, self.source, root)
        evaluator.run(self._nodes, root, {"$": root})
        return "".join(evaluator.out)


@lru_cache(maxsize=512)
def parse(source: str, name: str = "template") -> Template:
    """Parse (and cache) a template."""
    return Template(source, name)


def render(source: str, context: TemplateContext | Mapping[str, Any], *, name: str = "template") -> str:
    """Render *source* against *context*.

    Raises:
        TemplateError: On any parse or evaluation failure.
    """
    if LEFT_DELIM not in source:
        return source
    return parse(source, name).render(context)


def render_args(
    args: Mapping[str, str],
    context: TemplateContext | Mapping[str, Any],
    *,
    name: str = "args",
) -> dict[str, str]:
    """Render every value of *args*, keeping key order."""
    if not isinstance(context, TemplateContext):
        context = TemplateContext(context)
    return {key: render(value, context, name=f"{name}.{key}") for key, value in args.items()}
