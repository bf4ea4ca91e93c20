"""JSONPath and intrinsic function resolution for state data.

State machines move a single JSON document from state to state. The
subset of Amazon States Language paths supported here is what the pipeline
definitions use:

- Reference paths: `$`, `$.key`, `$.a.b`, `$[0].Output` (and the legacy
  `$.[0].Output` spelling)
- Context object paths: `$$.Execution.Name`
- The `States.Format` intrinsic function

Lookups that miss raise PathResolutionError, which an execution reports as
`States.Runtime`.
"""

from __future__ import annotations

import copy
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from markflow.core.exceptions import PathResolutionError


PathToken = Union[str, int]

_TOKEN_RE = re.compile(r"\.?\[(\d+)\]|\.([^.\[\]]+)")
_INTRINSIC_RE = re.compile(r"^(States\.[A-Za-z]+)\((.*)\)$", re.DOTALL)


def parse_path(path: str) -> List[PathToken]:
    """Split a reference path into keys and list indexes.

    Raises:
        PathResolutionError: If the path is not a supported reference path.
    """
    if not isinstance(path, str) or not path.startswith("$"):
        raise PathResolutionError(f"Invalid path: {path!r}", context={"path": path})

    tokens: List[PathToken] = []
    pos = 1
    while pos < len(path):
        match = _TOKEN_RE.match(path, pos)
        if match is None:
            raise PathResolutionError(f"Invalid path: {path!r}", context={"path": path})
        index, key = match.groups()
        tokens.append(int(index) if index is not None else key)
        pos = match.end()
    return tokens


def read_path(path: str, data: Any) -> Any:
    """Read the value at `path` in `data`."""
    current = data
    for token in parse_path(path):
        if isinstance(token, int):
            if not isinstance(current, list) or token >= len(current):
                raise PathResolutionError(
                    f"Path {path!r} could not be found in the input",
                    context={"path": path},
                )
            current = current[token]
        else:
            if not isinstance(current, Mapping) or token not in current:
                raise PathResolutionError(
                    f"Path {path!r} could not be found in the input",
                    context={"path": path},
                )
            current = current[token]
    return current


def path_exists(path: str, data: Any) -> bool:
    try:
        read_path(path, data)
    except PathResolutionError:
        return False
    return True


def write_path(path: str, data: Any, value: Any) -> Any:
    """Return a copy of `data` with `value` placed at `path`.

    `$` replaces the document. Intermediate objects are created as needed;
    list indexes are not allowed in a result path.
    """
    tokens = parse_path(path)
    if not tokens:
        return value
    if not isinstance(data, Mapping):
        raise PathResolutionError(
            f"Cannot apply result path {path!r} to a non-object input",
            context={"path": path},
        )

    result: Dict[str, Any] = copy.deepcopy(dict(data))
    current = result
    for token in tokens[:-1]:
        if isinstance(token, int):
            raise PathResolutionError(
                f"Result path {path!r} cannot contain list indexes",
                context={"path": path},
            )
        child = current.get(token)
        if not isinstance(child, dict):
            child = {}
            current[token] = child
        current = child

    last = tokens[-1]
    if isinstance(last, int):
        raise PathResolutionError(
            f"Result path {path!r} cannot contain list indexes",
            context={"path": path},
        )
    current[last] = value
    return result


# -----------------------------------------------------------------------------
# Parameters and intrinsic functions
# -----------------------------------------------------------------------------


def resolve_reference(expression: str, data: Any, context: Optional[Mapping[str, Any]] = None) -> Any:
    """Resolve the value of a `"key.$"` entry."""
    expression = expression.strip()
    if expression.startswith("$$"):
        return read_path(expression[1:], context or {})
    if expression.startswith("$"):
        return read_path(expression, data)
    if expression.startswith("States."):
        return evaluate_intrinsic(expression, data, context)
    raise PathResolutionError(
        f"Unsupported reference: {expression!r}",
        context={"expression": expression},
    )


def resolve_parameters(template: Any, data: Any, context: Optional[Mapping[str, Any]] = None) -> Any:
    """Build a concrete payload from a Parameters/ResultSelector template.

    Keys ending in `.$` are replaced by the key without the suffix, holding
    the resolved value. Everything else is copied as-is.
    """
    if isinstance(template, Mapping):
        resolved: Dict[str, Any] = {}
        for key, value in template.items():
            if key.endswith(".$"):
                if not isinstance(value, str):
                    raise PathResolutionError(
                        f"Value of {key!r} must be a path string",
                        context={"key": key},
                    )
                resolved[key[:-2]] = resolve_reference(value, data, context)
            else:
                resolved[key] = resolve_parameters(value, data, context)
        return resolved
    if isinstance(template, list):
        return [resolve_parameters(item, data, context) for item in template]
    return copy.deepcopy(template)


def evaluate_intrinsic(expression: str, data: Any, context: Optional[Mapping[str, Any]] = None) -> Any:
    match = _INTRINSIC_RE.match(expression.strip())
    if match is None:
        raise PathResolutionError(
            f"Invalid intrinsic function: {expression!r}",
            context={"expression": expression},
        )
    name, raw_args = match.groups()
    args = [_resolve_argument(arg, quoted, data, context) for arg, quoted in _split_arguments(raw_args)]

    if name == "States.Format":
        if not args or not isinstance(args[0], str):
            raise PathResolutionError(
                "States.Format requires a template string",
                context={"expression": expression},
            )
        template, values = args[0], args[1:]
        if template.count("{}") != len(values):
            raise PathResolutionError(
                "States.Format argument count does not match template",
                context={"expression": expression},
            )
        return _format(template, values)

    raise PathResolutionError(
        f"Unsupported intrinsic function: {name}",
        context={"expression": expression},
    )


def _format(template: str, values: List[Any]) -> str:
    parts = template.split("{}")
    out = [parts[0]]
    for value, part in zip(values, parts[1:]):
        out.append(value if isinstance(value, str) else _stringify(value))
        out.append(part)
    return "".join(out)


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _split_arguments(raw: str) -> List[Tuple[str, bool]]:
    """Split intrinsic arguments on top-level commas.

    Returns (text, was_quoted) pairs; quoted strings have their escapes
    removed.
    """
    args: List[Tuple[str, bool]] = []
    buf: List[str] = []
    quoted = False
    in_string = False
    depth = 0
    i = 0
    while i < len(raw):
        ch = raw[i]
        if in_string:
            if ch == "\\" and i + 1 < len(raw):
                buf.append(raw[i + 1])
                i += 2
                continue
            if ch == "'":
                in_string = False
            else:
                buf.append(ch)
        elif ch == "'":
            in_string = True
            quoted = True
        elif ch == "(":
            depth += 1
            buf.append(ch)
        elif ch == ")":
            depth -= 1
            buf.append(ch)
        elif ch == "," and depth == 0:
            args.append(("".join(buf) if quoted else "".join(buf).strip(), quoted))
            buf, quoted = [], False
        elif not ch.isspace() or depth > 0:
            buf.append(ch)
        i += 1

    if in_string:
        raise PathResolutionError("Unterminated string in intrinsic function", context={"args": raw})
    if buf or quoted or args:
        args.append(("".join(buf) if quoted else "".join(buf).strip(), quoted))
    return args


def _resolve_argument(arg: str, quoted: bool, data: Any, context: Optional[Mapping[str, Any]]) -> Any:
    if quoted:
        return arg
    if arg.startswith("$") or arg.startswith("States."):
        return resolve_reference(arg, data, context)
    if arg == "null":
        return None
    if arg in ("true", "false"):
        return arg == "true"
    try:
        return int(arg)
    except ValueError:
        pass
    try:
        return float(arg)
    except ValueError:
        raise PathResolutionError(f"Invalid intrinsic argument: {arg!r}", context={"arg": arg})
