"""Interpolation expressions.

Strings in a configuration document may embed ``${...}`` references. They are
parsed once, at load time, into ``Template`` objects made of literal text and
typed ``Reference`` parts, so dependency edges can be derived without any
string formatting. ``$${`` escapes a literal ``${``.

Supported reference forms::

    var.NAME[...]...
    data.TYPE.NAME.attr...
    TYPE.NAME.attr...
    TYPE.NAME[0].attr / TYPE.NAME["key"].attr
    TYPE.NAME[count.index].attr / TYPE.NAME[each.key].attr
    TYPE.NAME[*].attr
    count.index / each.key / each.value...
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from driftplan.errors import ConfigParseError
from driftplan.models import ResourceAddress

DYNAMIC_KEYS = ("count.index", "each.key")

_TOKEN = re.compile(
    r'\s*(?:(?P<ident>[A-Za-z_][\w-]*)|(?P<int>\d+)|"(?P<str>[^"]*)"|(?P<punct>[.\[\]*]))'
)


@dataclass(frozen=True)
class Subscript:
    """An index step: a literal key, a dynamic key, or a splat."""

    key: int | str | None = None
    dynamic: str | None = None
    splat: bool = False

    def __str__(self) -> str:
        if self.splat:
            return "[*]"
        if self.dynamic:
            return f"[{self.dynamic}]"
        if isinstance(self.key, int):
            return f"[{self.key}]"
        return f'["{self.key}"]'


@dataclass(frozen=True)
class Reference:
    """A typed reference to a variable, data source, resource or instance context."""

    root: str
    path: tuple[str | Subscript, ...]

    @property
    def kind(self) -> str:
        if self.root in ("var", "data", "count", "each"):
            return self.root
        return "resource"

    @property
    def target(self) -> str:
        """The declared identity this reference points at."""
        if self.kind == "var":
            return f"var.{self.path[0]}"
        if self.kind == "data":
            return f"data.{self.path[0]}.{self.path[1]}"
        if self.kind == "resource":
            return f"{self.root}.{self.path[0]}"
        return self.root

    @property
    def resource_address(self) -> ResourceAddress | None:
        if self.kind != "resource":
            return None
        return ResourceAddress(self.root, str(self.path[0]))

    @property
    def selector(self) -> Subscript | None:
        """Instance selector of a resource reference, if any."""
        if self.kind == "resource" and len(self.path) > 1 and isinstance(self.path[1], Subscript):
            return self.path[1]
        return None

    @property
    def remainder(self) -> tuple[str | Subscript, ...]:
        """Traversal steps after the referenced object itself."""
        if self.kind == "var":
            return self.path[1:]
        if self.kind == "data":
            return self.path[2:]
        if self.kind == "resource":
            return self.path[2:] if self.selector is not None else self.path[1:]
        if self.kind == "each":
            return self.path[1:]
        return ()

    def __str__(self) -> str:
        text = self.root
        for step in self.path:
            text += str(step) if isinstance(step, Subscript) else f".{step}"
        return text


@dataclass(frozen=True)
class Template:
    """A string made of literal text and references."""

    parts: tuple[str | Reference, ...]

    @property
    def single(self) -> Reference | None:
        """The reference if the template is exactly one ``${...}`` and nothing else."""
        if len(self.parts) == 1 and isinstance(self.parts[0], Reference):
            return self.parts[0]
        return None

    def references(self) -> list[Reference]:
        return [p for p in self.parts if isinstance(p, Reference)]

    def __str__(self) -> str:
        return "".join(p if isinstance(p, str) else "${" + str(p) + "}" for p in self.parts)


def _parse_reference(text: str, location: str) -> Reference:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if not match or match.end() == pos:
            raise ConfigParseError(f"invalid expression ${{{text}}}", address=location)
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()

    if not tokens or tokens[0][0] != "ident":
        raise ConfigParseError(f"expression must start with a name: ${{{text}}}", address=location)

    root = tokens[0][1]
    path: list[str | Subscript] = []
    i = 1
    while i < len(tokens):
        kind, value = tokens[i]
        if kind == "punct" and value == ".":
            if i + 1 >= len(tokens) or tokens[i + 1][0] != "ident":
                raise ConfigParseError(f"expected a name after '.': ${{{text}}}", address=location)
            path.append(tokens[i + 1][1])
            i += 2
        elif kind == "punct" and value == "[":
            subscript, i = _parse_subscript(tokens, i + 1, text, location)
            path.append(subscript)
        else:
            raise ConfigParseError(f"unexpected {value!r} in ${{{text}}}", address=location)

    reference = Reference(root=root, path=tuple(path))
    _validate(reference, text, location)
    return reference


def _parse_subscript(
    tokens: list[tuple[str, str]], i: int, text: str, location: str
) -> tuple[Subscript, int]:
    def expect_close(j: int) -> int:
        if j >= len(tokens) or tokens[j] != ("punct", "]"):
            raise ConfigParseError(f"unclosed '[' in ${{{text}}}", address=location)
        return j + 1

    if i >= len(tokens):
        raise ConfigParseError(f"unclosed '[' in ${{{text}}}", address=location)
    kind, value = tokens[i]
    if kind == "int":
        return Subscript(key=int(value)), expect_close(i + 1)
    if kind == "str":
        return Subscript(key=value), expect_close(i + 1)
    if kind == "punct" and value == "*":
        return Subscript(splat=True), expect_close(i + 1)
    if kind == "ident" and i + 2 < len(tokens) and tokens[i + 1] == ("punct", "."):
        dynamic = f"{value}.{tokens[i + 2][1]}"
        if dynamic in DYNAMIC_KEYS:
            return Subscript(dynamic=dynamic), expect_close(i + 3)
    raise ConfigParseError(
        f"subscript must be a number, a quoted key, '*', count.index or each.key: ${{{text}}}",
        address=location,
    )


def _validate(reference: Reference, text: str, location: str) -> None:
    path = reference.path
    names = [p for p in path if isinstance(p, str)]
    if reference.kind == "var" and not (path and isinstance(path[0], str)):
        raise ConfigParseError(f"variable reference needs a name: ${{{text}}}", address=location)
    if reference.kind == "data" and not (
        len(path) >= 2 and isinstance(path[0], str) and isinstance(path[1], str)
    ):
        raise ConfigParseError(
            f"data reference needs a type and a name: ${{{text}}}", address=location
        )
    if reference.kind == "count" and path != ("index",):
        raise ConfigParseError(f"only count.index is supported: ${{{text}}}", address=location)
    if reference.kind == "each" and not (names and path[0] in ("key", "value")):
        raise ConfigParseError(
            f"only each.key and each.value are supported: ${{{text}}}", address=location
        )
    if reference.kind == "resource" and not (path and isinstance(path[0], str)):
        raise ConfigParseError(
            f"resource reference needs a type and a name: ${{{text}}}", address=location
        )


def parse_template(text: str, location: str = "") -> Template | str:
    """Parse a string; plain strings without interpolation are returned unchanged."""
    if "${" not in text:
        return text

    parts: list[str | Reference] = []
    literal = ""
    pos = 0
    while pos < len(text):
        start = text.find("${", pos)
        if start == -1:
            literal += text[pos:]
            break
        if start > 0 and text[start - 1] == "$":
            literal += text[pos : start - 1] + "${"
            pos = start + 2
            continue
        end = text.find("}", start)
        if end == -1:
            raise ConfigParseError(f"unterminated interpolation in {text!r}", address=location)
        literal += text[pos:start]
        if literal:
            parts.append(literal)
            literal = ""
        parts.append(_parse_reference(text[start + 2 : end], location))
        pos = end + 1
    if literal:
        parts.append(literal)

    if not any(isinstance(p, Reference) for p in parts):
        return "".join(parts)
    return Template(parts=tuple(parts))


def parse_value(value: Any, location: str = "") -> Any:
    """Recursively parse every string in a document value."""
    if isinstance(value, str):
        return parse_template(value, location)
    if isinstance(value, list):
        return [parse_value(v, f"{location}[{i}]") for i, v in enumerate(value)]
    if isinstance(value, dict):
        return {k: parse_value(v, f"{location}.{k}") for k, v in value.items()}
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference inside a parsed value."""
    if isinstance(value, Template):
        yield from value.references()
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
