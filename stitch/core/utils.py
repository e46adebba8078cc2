"""Shared helpers for path resolution, edge mapping and node keys."""

from typing import Any

_MISSING = object()


def resolve_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path such as ``"customer.orders.0.id"`` against nested data.

    Dict keys are looked up by name, list elements by integer index.
    Returns ``default`` when any segment is missing.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            return default
        if current is _MISSING:
            return default
    return current


def apply_mapping(mapping: dict[str, str], source_id: str, output: Any) -> dict[str, Any]:
    """Turn a source node's output into the fields it contributes to its target.

    With a mapping, each target field is read from its source path (missing
    paths contribute ``None``). Without one, a dict output is passed through
    wholesale and anything else lands under the source node id.
    """
    if mapping:
        return {target: resolve_path(output, source) for target, source in mapping.items()}
    if isinstance(output, dict):
        return dict(output)
    return {source_id: output}


def branch_key(node_id: str, index: int) -> str:
    """Key of the ``index``-th branch instance of a node."""
    return f"{node_id}:{index}"


def split_node_key(node_key: str) -> tuple[str, int | None]:
    """Inverse of branch_key; plain node ids return ``(node_id, None)``."""
    node_id, sep, index = node_key.partition(":")
    if not sep:
        return node_id, None
    if not index.isdigit():
        raise ValueError(f"Invalid node key: '{node_key}'")
    return node_id, int(index)
