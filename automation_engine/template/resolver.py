"""
Template resolution over an execution context's variables.

Resolves {{ path }} tokens without eval/exec and without regex substitution:
a small tokenizer splits a string into literal and reference segments, and a
path resolver walks dict keys and list indices. Substituted values are never
re-scanned, so a value containing "{{" stays literal.
"""

import json
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

OPEN = "{{"
CLOSE = "}}"

PathSegment = Union[str, int]


@dataclass
class TemplateReference:
    """Represents a parsed template reference."""

    full_match: str
    path: str             # Raw path text, whitespace stripped (e.g. "a.b[0]")
    segments: list[PathSegment]
    start_pos: int
    end_pos: int

    @property
    def root(self) -> str:
        return root_identifier(self.path)


def tokenize(template: str) -> list[Union[str, TemplateReference]]:
    """
    Split a string into literal text and references.

    An unterminated "{{" is literal text, as is "{{}}" with an empty path.
    """
    tokens: list[Union[str, TemplateReference]] = []
    pos = 0
    literal_start = 0
    length = len(template)

    while pos < length:
        start = template.find(OPEN, pos)
        if start == -1:
            break
        end = template.find(CLOSE, start + len(OPEN))
        if end == -1:
            break

        # "{{ {{a}}" -> the innermost opener owns the closer
        start = template.rfind(OPEN, start, end)
        inner = template[start + len(OPEN):end].strip()
        close_end = end + len(CLOSE)

        if not inner:
            pos = close_end
            continue

        if start > literal_start:
            tokens.append(template[literal_start:start])
        tokens.append(TemplateReference(
            full_match=template[start:close_end],
            path=inner,
            segments=parse_path(inner),
            start_pos=start,
            end_pos=close_end,
        ))
        pos = literal_start = close_end

    if literal_start < length:
        tokens.append(template[literal_start:])
    return tokens


def find_references(template: str) -> list[TemplateReference]:
    """Find all template references in a string."""
    return [t for t in tokenize(template) if isinstance(t, TemplateReference)]


def parse_path(path: str) -> list[PathSegment]:
    """
    Parse a reference path into segments.

    Examples:
        "a.b"          -> ["a", "b"]
        "a.b[0].c"     -> ["a", "b", 0, "c"]
        "rows[2][1]"   -> ["rows", 2, 1]
        'a["x.y"]'     -> ["a", "x.y"]
    """
    segments: list[PathSegment] = []
    buf: list[str] = []
    i = 0
    n = len(path)

    def flush() -> None:
        if buf:
            segments.append("".join(buf).strip())
            buf.clear()

    while i < n:
        ch = path[i]
        if ch == ".":
            flush()
            i += 1
        elif ch == "[":
            close = path.find("]", i + 1)
            if close == -1:
                # Unbalanced bracket is part of the key
                buf.append(path[i:])
                break
            flush()
            inner = path[i + 1:close].strip()
            if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in "'\"":
                segments.append(inner[1:-1])
            elif inner.isdigit():
                segments.append(int(inner))
            elif inner:
                segments.append(inner)
            i = close + 1
        else:
            buf.append(ch)
            i += 1
    flush()

    return [s for s in segments if s != ""]


def root_identifier(path: str) -> str:
    """Text before the first "." or "[" of a path."""
    end = len(path)
    for sep in (".", "["):
        idx = path.find(sep)
        if idx != -1:
            end = min(end, idx)
    return path[:end].strip()


def get_path(variables: dict[str, Any], path: Union[str, list[PathSegment]]) -> Any:
    """
    Look up a path in the variables.

    A missing segment yields None, never raises. Only dict keys and list
    indices are navigated; object attributes are never touched.
    """
    segments = parse_path(path) if isinstance(path, str) else path
    current: Any = variables

    for key in segments:
        if current is None:
            return None
        if isinstance(current, dict):
            if key in current:
                current = current[key]
            elif isinstance(key, int) and str(key) in current:
                current = current[str(key)]
            else:
                return None
        elif isinstance(current, (list, tuple)):
            if isinstance(key, str) and key.isdigit():
                key = int(key)
            if isinstance(key, int) and 0 <= key < len(current):
                current = current[key]
            elif key == "length":
                current = len(current)
            else:
                return None
        elif isinstance(current, str) and key == "length":
            current = len(current)
        else:
            return None

    return current


def stringify(value: Any) -> str:
    """Render a value for embedding inside a larger string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def whole_reference(template: str) -> Optional[TemplateReference]:
    """The reference if the string is exactly one token, else None."""
    tokens = tokenize(template.strip())
    if len(tokens) == 1 and isinstance(tokens[0], TemplateReference):
        return tokens[0]
    return None


def resolve(value: Any, variables: dict[str, Any]) -> Any:
    """
    Resolve all template expressions in a value.

    Handles strings, dicts, and lists recursively. A string that is exactly
    one token returns the typed value at that path; tokens embedded in text
    are stringified in place.
    """
    if isinstance(value, str):
        return _resolve_string(value, variables)
    if isinstance(value, dict):
        return {k: resolve(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, variables) for v in value]
    return value


def _resolve_string(template: str, variables: dict[str, Any]) -> Any:
    if OPEN not in template:
        return template

    tokens = tokenize(template)
    refs = [t for t in tokens if isinstance(t, TemplateReference)]
    if not refs:
        return template

    # Preserve types (dict, list, number) for whole-string references
    if len(refs) == 1 and refs[0].full_match == template.strip():
        return get_path(variables, refs[0].segments)

    parts = []
    for token in tokens:
        if isinstance(token, TemplateReference):
            parts.append(stringify(get_path(variables, token.segments)))
        else:
            parts.append(token)
    return "".join(parts)


def iter_strings(value: Any) -> Iterator[str]:
    """Every string nested inside a value (dict keys are not templated)."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_strings(v)


def extract_references(value: Any) -> list[str]:
    """Every token path found in a value, in order of appearance."""
    paths: list[str] = []
    for text in iter_strings(value):
        if OPEN in text:
            paths.extend(ref.path for ref in find_references(text))
    return paths
