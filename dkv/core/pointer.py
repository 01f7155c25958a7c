"""
JSON Pointer (RFC 6901) resolution, JSON Patch (RFC 6902) application and diff.

Pure functions, no state. Documents handed in are never mutated.
"""

import copy
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .errors import MalformedInput, PatchApplyError, PointerNotFound
from .schema import ValueKind, validate_value, value_kind

END_OF_ARRAY = "-"
PATCH_OPS = ("add", "remove", "replace", "move", "copy", "test")

_ARRAY_INDEX = re.compile(r"0|[1-9][0-9]*")
_BAD_ESCAPE = re.compile(r"~(?![01])")


class _OperationFailed(Exception):
    pass


@dataclass
class PointerResolution:
    target: Any
    parent: Any
    key: Optional[Union[str, int]]

    def as_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "parent": self.parent, "key": self.key}


def escape_token(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def unescape_token(token: str) -> str:
    if _BAD_ESCAPE.search(token):
        raise MalformedInput(f"Invalid escape sequence in pointer token {token!r}")
    return token.replace("~1", "/").replace("~0", "~")


def parse_pointer(pointer: str) -> List[str]:
    """Split a pointer into unescaped reference tokens. ``""`` is the whole document."""
    if not isinstance(pointer, str):
        raise MalformedInput(f"Pointer must be a string, got {type(pointer).__name__}")
    if pointer == "":
        return []
    if not pointer.startswith("/"):
        raise MalformedInput(f"Pointer must be empty or start with '/': {pointer!r}")
    return [unescape_token(token) for token in pointer[1:].split("/")]


def join_pointer(tokens) -> str:
    return "".join("/" + escape_token(str(token)) for token in tokens)


def _array_index(token: str, array: list, pointer: str, allow_end: bool = False) -> int:
    if token == END_OF_ARRAY:
        if allow_end:
            return len(array)
        raise PointerNotFound(pointer, "'-' refers past the last array element")
    if not _ARRAY_INDEX.fullmatch(token):
        raise PointerNotFound(pointer, f"invalid array index {token!r}")
    index = int(token)
    limit = len(array) if allow_end else len(array) - 1
    if index > limit:
        raise PointerNotFound(pointer, f"array index {index} out of bounds")
    return index


def _child(node: Any, token: str, pointer: str) -> Any:
    if isinstance(node, dict):
        if token not in node:
            raise PointerNotFound(pointer, f"member {token!r} does not exist")
        return node[token]
    if isinstance(node, list):
        return node[_array_index(token, node, pointer)]
    raise PointerNotFound(pointer, f"cannot descend into {value_kind(node).value}")


def _walk(document: Any, tokens: List[str], pointer: str) -> Any:
    node = document
    for token in tokens:
        node = _child(node, token, pointer)
    return node


def resolve_pointer(document: Any, pointer: str) -> PointerResolution:
    tokens = parse_pointer(pointer)
    if not tokens:
        return PointerResolution(target=document, parent=None, key=None)

    parent = _walk(document, tokens[:-1], pointer)
    token = tokens[-1]
    if isinstance(parent, list):
        index = _array_index(token, parent, pointer)
        return PointerResolution(target=parent[index], parent=parent, key=index)
    if isinstance(parent, dict):
        if token not in parent:
            raise PointerNotFound(pointer, f"member {token!r} does not exist")
        return PointerResolution(target=parent[token], parent=parent, key=token)
    raise PointerNotFound(pointer, f"cannot descend into {value_kind(parent).value}")


def apply_pointer(document: Any, pointer: str, raw: bool = False) -> Any:
    """Return the value a pointer addresses, or the full resolution record when ``raw``."""
    resolution = resolve_pointer(document, pointer)
    if raw:
        return resolution.as_dict()
    return resolution.target


def json_equal(a: Any, b: Any) -> bool:
    """JSON equality: numbers compare by value, booleans never equal numbers."""
    kind_a, kind_b = value_kind(a), value_kind(b)
    numeric = (ValueKind.INTEGER, ValueKind.FLOAT)
    if kind_a in numeric and kind_b in numeric:
        return a == b
    if kind_a is not kind_b:
        return False
    if kind_a is ValueKind.ARRAY:
        return len(a) == len(b) and all(json_equal(x, y) for x, y in zip(a, b))
    if kind_a is ValueKind.OBJECT:
        return a.keys() == b.keys() and all(json_equal(a[k], b[k]) for k in a)
    return a == b


def validate_patch(ops: Any) -> List[Dict[str, Any]]:
    """Check the shape of a patch document before anything is applied."""
    if not isinstance(ops, list):
        raise MalformedInput("JSON Patch document must be an array of operations")

    for index, op in enumerate(ops):
        if not isinstance(op, dict):
            raise MalformedInput(f"Patch operation {index} must be an object")
        name = op.get("op")
        if name not in PATCH_OPS:
            raise MalformedInput(f"Patch operation {index}: unknown op {name!r}")
        if "path" not in op:
            raise MalformedInput(f"Patch operation {index}: missing 'path'")
        try:
            parse_pointer(op["path"])
            if name in ("move", "copy"):
                if "from" not in op:
                    raise MalformedInput(f"'{name}' requires 'from'")
                parse_pointer(op["from"])
            if name in ("add", "replace", "test"):
                if "value" not in op:
                    raise MalformedInput(f"'{name}' requires 'value'")
                validate_value(op["value"])
        except MalformedInput as e:
            raise MalformedInput(f"Patch operation {index}: {e.message}") from e
    return ops


def _add(document: Any, pointer: str, value: Any) -> Any:
    tokens = parse_pointer(pointer)
    if not tokens:
        return value
    parent = _walk(document, tokens[:-1], pointer)
    token = tokens[-1]
    if isinstance(parent, list):
        parent.insert(_array_index(token, parent, pointer, allow_end=True), value)
    elif isinstance(parent, dict):
        parent[token] = value
    else:
        raise PointerNotFound(pointer, f"cannot add into {value_kind(parent).value}")
    return document


def _remove(document: Any, pointer: str) -> Any:
    """Remove the addressed value in place and return it."""
    resolution = resolve_pointer(document, pointer)
    if resolution.parent is None:
        raise _OperationFailed("cannot remove the document root")
    del resolution.parent[resolution.key]
    return resolution.target


def _apply_operation(document: Any, op: Dict[str, Any]) -> Any:
    name = op["op"]
    path = op["path"]

    if name == "add":
        return _add(document, path, copy.deepcopy(op["value"]))

    if name == "remove":
        _remove(document, path)
        return document

    if name == "replace":
        resolution = resolve_pointer(document, path)
        if resolution.parent is None:
            return copy.deepcopy(op["value"])
        resolution.parent[resolution.key] = copy.deepcopy(op["value"])
        return document

    if name == "move":
        source = op["from"]
        if source == path:
            resolve_pointer(document, source)
            return document
        if path.startswith(source + "/"):
            raise _OperationFailed(f"cannot move {source!r} into its own child {path!r}")
        value = _remove(document, source)
        return _add(document, path, value)

    if name == "copy":
        value = copy.deepcopy(resolve_pointer(document, op["from"]).target)
        return _add(document, path, value)

    # test
    actual = resolve_pointer(document, path).target
    if not json_equal(actual, op["value"]):
        raise _OperationFailed(f"test failed at {path!r}: expected {op['value']!r}, found {actual!r}")
    return document


def apply_patch(document: Any, ops: Any) -> Any:
    """Apply a JSON Patch to a copy of ``document``; either every operation applies or none does."""
    validate_patch(ops)
    result = copy.deepcopy(document)
    for index, op in enumerate(ops):
        try:
            result = _apply_operation(result, op)
        except PointerNotFound as e:
            raise PatchApplyError(index, e.message) from e
        except _OperationFailed as e:
            raise PatchApplyError(index, str(e)) from e
    return result


def diff(old: Any, new: Any) -> List[Dict[str, Any]]:
    """Compute a patch turning ``old`` into ``new``. ``old=None`` means "no previous snapshot"."""
    if old is None:
        old = {}
    ops: List[Dict[str, Any]] = []
    _diff(old, new, "", ops)
    return ops


def _diff(old: Any, new: Any, pointer: str, ops: List[Dict[str, Any]]) -> None:
    if json_equal(old, new):
        return

    old_kind, new_kind = value_kind(old), value_kind(new)

    if old_kind is ValueKind.OBJECT and new_kind is ValueKind.OBJECT:
        for key in old:
            if key not in new:
                ops.append({"op": "remove", "path": pointer + "/" + escape_token(key)})
        for key, value in new.items():
            child = pointer + "/" + escape_token(key)
            if key in old:
                _diff(old[key], value, child, ops)
            else:
                ops.append({"op": "add", "path": child, "value": copy.deepcopy(value)})
        return

    if old_kind is ValueKind.ARRAY and new_kind is ValueKind.ARRAY:
        common = min(len(old), len(new))
        for i in range(common):
            _diff(old[i], new[i], f"{pointer}/{i}", ops)
        # trailing removals go from the end so earlier indices stay valid
        for i in range(len(old) - 1, common - 1, -1):
            ops.append({"op": "remove", "path": f"{pointer}/{i}"})
        for i in range(common, len(new)):
            ops.append({"op": "add", "path": f"{pointer}/{i}", "value": copy.deepcopy(new[i])})
        return

    ops.append({"op": "replace", "path": pointer, "value": copy.deepcopy(new)})
