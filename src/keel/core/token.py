"""
keel.core.token — Deferred values and the structural resolver.

A Token stands in for an attribute that a node only reports once the
backend has realized it. Tokens can be used directly as values, or
embedded in strings (and therefore in map keys) through their marker
form:

    issuer = cluster.ref("oidc_issuer")
    conditions = {
        f"{issuer}:aud": "sts.amazonaws.com",
        f"{issuer}:sub": "system:serviceaccount:karpenter:karpenter",
    }

    str(issuer)  →  "${keel:cluster.oidc_issuer}"

At deploy time resolve() walks the value and substitutes every token,
keys included, against the attributes of already-realized nodes.
"""

from __future__ import annotations

import copy
import json
import re
import threading
from dataclasses import dataclass
from typing import Any, Iterator, Mapping

# ${keel:node_id.attribute.path}
_TOKEN_PATTERN = re.compile(
    r"\$\{keel:([A-Za-z0-9][A-Za-z0-9_:-]*)\.([A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*)\}"
)


@dataclass(frozen=True)
class Token:
    """Reference to an attribute of another node.

    Attributes:
        node_id: Node that reports the attribute
        path: Dot-separated attribute path; integer parts index lists
    """

    node_id: str
    path: str

    def __post_init__(self) -> None:
        marker = f"${{keel:{self.node_id}.{self.path}}}"
        if not _TOKEN_PATTERN.fullmatch(marker):
            raise TokenError(
                f"Invalid token reference: node '{self.node_id}', path '{self.path}'"
            )

    def __str__(self) -> str:
        return f"${{keel:{self.node_id}.{self.path}}}"


@dataclass(frozen=True)
class Join:
    """Join a list-valued token into a single string.

    Usage::

        Join(",", Token("vpc", "public_subnets"))
    """

    separator: str
    value: Any


class TokenError(Exception):
    """Token construction or resolution error."""
    pass


class UnresolvedDependencyError(Exception):
    """A token's source node has not been realized.

    Always a programming defect: the consuming node is missing an edge to
    the node it reads from.
    """

    def __init__(self, node_id: str, path: str, message: str | None = None):
        self.node_id = node_id
        self.path = path
        super().__init__(
            message or f"Node '{node_id}' is not realized; cannot resolve '{path}'"
        )


class AttributeNotFoundError(UnresolvedDependencyError):
    """The source node is realized but did not report the attribute."""

    def __init__(self, node_id: str, path: str):
        super().__init__(
            node_id, path,
            f"Node '{node_id}' reported no attribute '{path}'",
        )


class ResolveContext:
    """Attributes reported by realized nodes, keyed by node id.

    Written by worker threads while a layer runs, so access is locked.
    """

    def __init__(self, attributes: Mapping[str, Mapping[str, Any]] | None = None):
        self._attributes: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        for node_id, attrs in (attributes or {}).items():
            self.record(node_id, attrs)

    def record(self, node_id: str, attributes: Mapping[str, Any]) -> None:
        with self._lock:
            self._attributes[node_id] = copy.deepcopy(dict(attributes))

    def is_realized(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._attributes

    def attributes(self, node_id: str) -> dict[str, Any]:
        with self._lock:
            if node_id not in self._attributes:
                raise KeyError(node_id)
            return self._attributes[node_id]

    def __contains__(self, node_id: object) -> bool:
        return self.is_realized(node_id)  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._attributes)


class TokenResolver:
    """Creates tokens and resolves token-bearing values.

    One resolver serves one deploy: resolved attribute values are cached
    for its lifetime.
    """

    def __init__(self) -> None:
        self._cache: dict[tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def defer(self, node_id: str, path: str) -> Token:
        return Token(node_id, path)

    def references(self, value: Any) -> list[Token]:
        return references(value)

    def resolve(self, value: Any, context: ResolveContext) -> Any:
        """Substitute every token contained in value.

        Raises:
            UnresolvedDependencyError: a source node is not in context
            TokenError: two keys of one mapping resolve to the same key
        """
        if isinstance(value, Token):
            return self._lookup(value, context)
        if isinstance(value, str):
            return self._resolve_string(value, context)
        if isinstance(value, Join):
            return self._resolve_join(value, context)
        if isinstance(value, dict):
            return self._resolve_dict(value, context)
        if isinstance(value, list):
            return [self.resolve(item, context) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve(item, context) for item in value)
        return value

    def _resolve_dict(self, data: dict, context: ResolveContext) -> dict:
        result: dict[Any, Any] = {}
        for key, value in data.items():
            new_key = self._resolve_key(key, context)
            if new_key in result:
                raise TokenError(
                    f"Key '{key}' resolves to '{new_key}', which is already present"
                )
            result[new_key] = self.resolve(value, context)
        return result

    def _resolve_key(self, key: Any, context: ResolveContext) -> Any:
        if isinstance(key, Token):
            return _to_text(self._lookup(key, context))
        if isinstance(key, str):
            return _to_text(self._resolve_string(key, context))
        return key

    def _resolve_string(self, value: str, context: ResolveContext) -> Any:
        whole = _TOKEN_PATTERN.fullmatch(value)
        if whole:
            return self._lookup(Token(whole.group(1), whole.group(2)), context)

        def replacer(match: re.Match) -> str:
            token = Token(match.group(1), match.group(2))
            return _to_text(self._lookup(token, context))

        return _TOKEN_PATTERN.sub(replacer, value)

    def _resolve_join(self, join: Join, context: ResolveContext) -> str:
        items = self.resolve(join.value, context)
        if not isinstance(items, (list, tuple)):
            raise TokenError(
                f"Join expects a list, got {type(items).__name__}"
            )
        return join.separator.join(_to_text(item) for item in items)

    def _lookup(self, token: Token, context: ResolveContext) -> Any:
        key = (token.node_id, token.path)
        with self._lock:
            if key in self._cache:
                return copy.deepcopy(self._cache[key])

        if not context.is_realized(token.node_id):
            raise UnresolvedDependencyError(token.node_id, token.path)

        value = _get_path(context.attributes(token.node_id), token)
        with self._lock:
            self._cache[key] = copy.deepcopy(value)
        return copy.deepcopy(value)


def references(value: Any) -> list[Token]:
    """Return every token contained in value, in first-seen order."""
    seen: dict[Token, None] = {}
    for token in _walk(value):
        seen.setdefault(token, None)
    return list(seen)


def _walk(value: Any) -> Iterator[Token]:
    if isinstance(value, Token):
        yield value
    elif isinstance(value, str):
        for match in _TOKEN_PATTERN.finditer(value):
            yield Token(match.group(1), match.group(2))
    elif isinstance(value, Join):
        yield from _walk(value.value)
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _walk(key)
            yield from _walk(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk(item)


def encode(value: Any) -> Any:
    """Canonical JSON-safe form of a token-bearing value.

    Tokens become their marker string and Join becomes
    ``{"keel:join": [separator, value]}``.
    """
    if isinstance(value, Token):
        return str(value)
    if isinstance(value, Join):
        return {"keel:join": [value.separator, encode(value.value)]}
    if isinstance(value, dict):
        return {str(k): encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _to_text(value: Any) -> str:
    """Text form of a resolved value embedded in a string."""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _get_path(attributes: Mapping[str, Any], token: Token) -> Any:
    current: Any = attributes
    for part in token.path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise AttributeNotFoundError(token.node_id, token.path)
    return current
