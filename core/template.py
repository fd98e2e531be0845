"""``{{dotted.path}}`` substitution and stable dependency ordering."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence
import heapq
import re


_PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}")
_WHOLE_PLACEHOLDER = re.compile(r"^\s*\{\{([^{}]+)\}\}\s*$")


class TemplateError(ValueError):
    """Raised when a placeholder cannot be resolved or a graph has a cycle."""


class TemplateResolver:
    """Substitutes placeholders against a nested mapping.

    Values found in the context may themselves contain placeholders and are
    expanded recursively. A string that is exactly one placeholder yields the
    referenced value unchanged (so ``"{{store.retries}}"`` stays an ``int``).
    """

    def __init__(self, context: Mapping[str, Any]) -> None:
        self.context = context

    def resolve(self, value: Any) -> Any:
        return self._render(value, ())

    def _render(self, value: Any, trail: tuple[str, ...]) -> Any:
        if isinstance(value, str):
            whole = _WHOLE_PLACEHOLDER.match(value)
            if whole:
                return self._lookup(whole.group(1).strip(), trail)
            return _PLACEHOLDER.sub(lambda match: str(self._lookup(match.group(1).strip(), trail)), value)
        if isinstance(value, Mapping):
            return {key: self._render(item, trail) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            rendered = [self._render(item, trail) for item in value]
            return rendered if isinstance(value, list) else tuple(rendered)
        return value

    def _lookup(self, path: str, trail: tuple[str, ...]) -> Any:
        if path in trail:
            raise TemplateError(f"Circular dependency detected: {' -> '.join(trail + (path,))}")
        node: Any = self.context
        for part in path.split("."):
            if not isinstance(node, Mapping) or part not in node:
                raise TemplateError(f"Cannot resolve path '{path}' in template context")
            node = node[part]
        return self._render(node, trail + (path,))


def extract_placeholders(value: Any) -> set[str]:
    """Every placeholder path mentioned anywhere inside *value*."""

    if isinstance(value, str):
        return {match.strip() for match in _PLACEHOLDER.findall(value) if match.strip()}
    found: set[str] = set()
    if isinstance(value, Mapping):
        value = list(value.values())
    if isinstance(value, (list, tuple)):
        for item in value:
            found |= extract_placeholders(item)
    return found


def topological_order(
    dependency_map: Mapping[str, Sequence[str]],
    *,
    priority: Mapping[str, int] | None = None,
) -> list[str]:
    """Order nodes so each follows the nodes it depends on.

    ``dependency_map`` maps a node to its dependencies; names missing from the
    map are treated as already satisfied. Among ready nodes the lowest
    ``priority`` wins, then the name, so the order is stable.
    """

    rank = dict(priority or {})
    waiting: Dict[str, set[str]] = {
        node: {dep for dep in deps if dep in dependency_map} for node, deps in dependency_map.items()
    }
    unblocks: Dict[str, List[str]] = {node: [] for node in dependency_map}
    for node, deps in waiting.items():
        for dep in deps:
            unblocks[dep].append(node)

    ready = [(rank.get(node, 0), node) for node, deps in waiting.items() if not deps]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        _, node = heapq.heappop(ready)
        order.append(node)
        for follower in unblocks[node]:
            waiting[follower].discard(node)
            if not waiting[follower]:
                heapq.heappush(ready, (rank.get(follower, 0), follower))

    if len(order) < len(waiting):
        raise TemplateError(f"Circular dependency detected: {' -> '.join(_cycle(waiting))}")
    return order


def _cycle(waiting: Mapping[str, set[str]]) -> list[str]:
    """Walk unsatisfied edges from any blocked node until a node repeats."""

    node = min(name for name, deps in waiting.items() if deps)
    seen: list[str] = []
    while node not in seen:
        seen.append(node)
        node = min(waiting[node])
    return seen[seen.index(node):] + [node]


__all__ = [
    "TemplateError",
    "TemplateResolver",
    "extract_placeholders",
    "topological_order",
]
