"""Reading ``rate_limit`` directives written in Caddyfile syntax.

Syntax::

    rate_limit {
        zone <name> {
            key    <string>
            window <duration>
            events <max_events>
            match {
                <matchers>
            }
        }
        distributed {
            read_interval  <duration>
            write_interval <duration>
            purge_age      <duration>
        }
        log_key
        storage <module...>
        jitter  <percent>
        sweep_interval <duration>
    }
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Tuple

from zonelimit.distributed import DistributedRateLimiting, FileStorage, MemoryStorage, Storage
from zonelimit.durations import format_duration, parse_duration
from zonelimit.handler import Handler
from zonelimit.ratelimit import MatcherSet, RateLimit

_LEXEME = re.compile(
    r"""(?P<newline>\n)
      | (?P<space>[^\S\n]+)
      | (?P<comment>\#[^\n]*)
      | "(?P<dq>(?:\\.|[^"\\])*)"
      | `(?P<bq>[^`]*)`
      | (?P<word>[^\s"`]\S*)
      | (?P<bad>["`])
    """,
    re.VERBOSE | re.DOTALL,
)
_INTEGER = re.compile(r"[+-]?[0-9]+")


class CaddyfileError(ValueError):
    """The configuration text is malformed; ``line`` is where it went wrong."""

    def __init__(self, message: str, line: Optional[int] = None) -> None:
        self.message = message
        self.line = line
        super().__init__(f"line {line}: {message}" if line is not None else message)


class _Token(NamedTuple):
    text: str
    line: int
    quoted: bool


def tokenize(text: str) -> List[_Token]:
    """Split configuration text into tokens with their line numbers.

    Tokens are separated by whitespace; double-quoted and back-quoted strings
    form one token each, and ``#`` at the start of a token begins a comment.
    """
    tokens: List[_Token] = []
    line = 1
    for match in _LEXEME.finditer(text):
        kind = match.lastgroup
        if kind == "newline":
            line += 1
        elif kind == "word":
            tokens.append(_Token(match.group("word"), line, False))
        elif kind == "dq":
            raw = match.group("dq")
            tokens.append(_Token(raw.replace('\\"', '"'), line, True))
            line += raw.count("\n")
        elif kind == "bq":
            raw = match.group("bq")
            tokens.append(_Token(raw, line, True))
            line += raw.count("\n")
        elif kind == "bad":
            raise CaddyfileError("unterminated quoted string", line)
    return tokens


def _is_open(token: _Token) -> bool:
    return token.text == "{" and not token.quoted


def _is_close(token: _Token) -> bool:
    return token.text == "}" and not token.quoted


@dataclass
class _Directive:
    name: str
    line: int
    args: List[str] = field(default_factory=list)
    block: Optional[List["_Directive"]] = None


def _parse_block(
    tokens: List[_Token], pos: int, opened_at: Optional[int]
) -> Tuple[List[_Directive], int]:
    directives: List[_Directive] = []
    while pos < len(tokens):
        token = tokens[pos]
        if _is_close(token):
            if opened_at is None:
                raise CaddyfileError("unexpected '}'", token.line)
            return directives, pos + 1
        if _is_open(token):
            raise CaddyfileError("unexpected '{'", token.line)
        directive = _Directive(token.text, token.line)
        pos += 1
        while (
            pos < len(tokens)
            and tokens[pos].line == token.line
            and not _is_open(tokens[pos])
            and not _is_close(tokens[pos])
        ):
            directive.args.append(tokens[pos].text)
            pos += 1
        if pos < len(tokens) and tokens[pos].line == token.line and _is_open(tokens[pos]):
            directive.block, pos = _parse_block(tokens, pos + 1, tokens[pos].line)
        directives.append(directive)
    if opened_at is not None:
        raise CaddyfileError("unclosed block", opened_at)
    return directives, pos


def _arg_error(directive: _Directive) -> CaddyfileError:
    last = directive.args[-1] if directive.args else directive.name
    return CaddyfileError(
        f"wrong argument count or unexpected line ending after '{last}'", directive.line
    )


def _single_arg(directive: _Directive) -> str:
    if len(directive.args) != 1 or directive.block is not None:
        raise _arg_error(directive)
    return directive.args[0]


def _no_args(directive: _Directive) -> None:
    if directive.args or directive.block is not None:
        raise _arg_error(directive)


def _duration(directive: _Directive, label: str) -> float:
    value = _single_arg(directive)
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise CaddyfileError(f"invalid {label} '{value}': {exc}", directive.line) from exc


def _unrecognized(directive: _Directive) -> CaddyfileError:
    return CaddyfileError(f"unrecognized subdirective '{directive.name}'", directive.line)


def _parse_matcher_set(directive: _Directive) -> MatcherSet:
    if directive.args:
        raise _arg_error(directive)
    methods: List[str] = []
    paths: List[str] = []
    hosts: List[str] = []
    headers: Dict[str, List[str]] = {}
    for matcher in directive.block or []:
        if matcher.block is not None or not matcher.args:
            raise _arg_error(matcher)
        if matcher.name == "method":
            methods.extend(matcher.args)
        elif matcher.name == "path":
            paths.extend(matcher.args)
        elif matcher.name == "host":
            hosts.extend(matcher.args)
        elif matcher.name == "header":
            name, *values = matcher.args
            headers.setdefault(name, []).extend(values)
        else:
            raise CaddyfileError(
                f"failed to parse match: unrecognized matcher '{matcher.name}'", matcher.line
            )
    return MatcherSet(methods=methods, paths=paths, hosts=hosts, headers=headers)


def _parse_zone(directive: _Directive) -> Tuple[str, RateLimit]:
    if len(directive.args) != 1:
        raise _arg_error(directive)
    zone = RateLimit()
    for sub in directive.block or []:
        if sub.name == "key":
            value = _single_arg(sub)
            if zone.key:
                raise CaddyfileError(f"zone key already specified: {zone.key}", sub.line)
            zone.key = value
        elif sub.name == "window":
            if len(sub.args) == 1 and zone.window != 0:
                raise CaddyfileError(
                    f"zone window already specified: {format_duration(zone.window)}", sub.line
                )
            zone.window = _duration(sub, "window duration")
        elif sub.name == "events":
            value = _single_arg(sub)
            if zone.max_events != 0:
                raise CaddyfileError(
                    f"zone max events already specified: {zone.max_events}", sub.line
                )
            if not _INTEGER.fullmatch(value):
                raise CaddyfileError(
                    f"invalid max events integer '{value}': not an integer", sub.line
                )
            zone.max_events = int(value)
        elif sub.name == "match":
            zone.match.append(_parse_matcher_set(sub))
        else:
            raise _unrecognized(sub)
    if zone.window == 0 or zone.max_events == 0:
        raise CaddyfileError(
            "a rate limit zone requires both a window and maximum events", directive.line
        )
    return directive.args[0], zone


def _parse_distributed(directive: _Directive) -> DistributedRateLimiting:
    if directive.args:
        raise _arg_error(directive)
    distributed = DistributedRateLimiting()
    labels = {
        "read_interval": ("read interval", "read_interval"),
        "write_interval": ("write interval", "write_interval"),
        "purge_age": ("purge age", "purge_age"),
    }
    for sub in directive.block or []:
        if sub.name not in labels:
            raise _unrecognized(sub)
        label, attribute = labels[sub.name]
        _single_arg(sub)
        current = getattr(distributed, attribute)
        if current != 0:
            raise CaddyfileError(
                f"{label} already specified: {format_duration(current)}", sub.line
            )
        setattr(distributed, attribute, _duration(sub, label))
    return distributed


def _parse_storage(directive: _Directive) -> Storage:
    if not directive.args:
        raise _arg_error(directive)
    module, *rest = directive.args
    if module == "memory":
        if rest or directive.block is not None:
            raise _arg_error(directive)
        return MemoryStorage()
    if module == "file_system":
        if len(rest) > 1:
            raise _arg_error(directive)
        root = rest[0] if rest else None
        for sub in directive.block or []:
            if sub.name != "root":
                raise _unrecognized(sub)
            value = _single_arg(sub)
            if root is not None:
                raise CaddyfileError("storage root already specified", sub.line)
            root = value
        if root is None:
            raise CaddyfileError("file_system storage requires a root", directive.line)
        return FileStorage(root)
    raise CaddyfileError(f"unknown storage module 'caddy.storage.{module}'", directive.line)


def _apply(handler: Handler, directive: _Directive) -> None:
    if directive.name == "zone":
        name, zone = _parse_zone(directive)
        handler.rate_limits[name] = zone
    elif directive.name == "distributed":
        handler.distributed = _parse_distributed(directive)
    elif directive.name == "log_key":
        _no_args(directive)
        handler.log_key = True
    elif directive.name == "storage":
        handler.storage = _parse_storage(directive)
    elif directive.name == "jitter":
        value = _single_arg(directive)
        if handler.jitter != 0:
            raise CaddyfileError(f"jitter already specified: {handler.jitter}", directive.line)
        try:
            if "_" in value:
                raise ValueError("invalid syntax")
            handler.jitter = float(value)
        except ValueError as exc:
            raise CaddyfileError(
                f"invalid jitter percentage '{value}': {exc}", directive.line
            ) from exc
    elif directive.name == "sweep_interval":
        _single_arg(directive)
        if handler.sweep_interval != 0:
            raise CaddyfileError(
                f"sweep interval already specified: {format_duration(handler.sweep_interval)}",
                directive.line,
            )
        handler.sweep_interval = _duration(directive, "sweep interval")
    else:
        raise _unrecognized(directive)


def parse_rate_limit(text: str) -> Handler:
    """Build an unprovisioned :class:`Handler` from ``rate_limit`` directives."""
    directives, _ = _parse_block(tokenize(text), 0, None)
    handler = Handler()
    for directive in directives:
        if directive.name != "rate_limit":
            raise CaddyfileError(
                f"expected 'rate_limit', got '{directive.name}'", directive.line
            )
        if directive.args:
            raise _arg_error(directive)
        for sub in directive.block or []:
            _apply(handler, sub)
    return handler