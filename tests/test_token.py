"""
tests/test_token.py — Token resolver tests.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from keel.core.token import (
    Token, Join, TokenResolver, ResolveContext, references, encode,
    TokenError, UnresolvedDependencyError, AttributeNotFoundError,
)

ISSUER = "oidc.eks.us-east-1.amazonaws.com/id/ABC123"


@pytest.fixture
def resolver():
    return TokenResolver()


@pytest.fixture
def context():
    return ResolveContext({
        "y": {"arn": "arn:aws:iam::123:role/foo"},
        "cluster": {"name": "demo", "oidc_issuer": ISSUER, "capacity": 2},
        "vpc": {
            "public_subnets": ["subnet-a", "subnet-b"],
            "tags": {"b": 1, "a": 2},
        },
    })


# ─────────────────────────────────────────────
# TOKENS
# ─────────────────────────────────────────────
class TestToken:
    def test_marker(self):
        assert str(Token("cluster", "oidc_issuer")) == "${keel:cluster.oidc_issuer}"

    def test_nested_path(self):
        assert str(Token("vpc", "public_subnets.0")) == "${keel:vpc.public_subnets.0}"

    def test_invalid(self):
        with pytest.raises(TokenError):
            Token("bad id", "arn")
        with pytest.raises(TokenError):
            Token("ok", "")

    def test_defer(self, resolver):
        assert resolver.defer("y", "arn") == Token("y", "arn")

    def test_hashable(self):
        assert len({Token("a", "b"), Token("a", "b")}) == 1


# ─────────────────────────────────────────────
# RESOLVE
# ─────────────────────────────────────────────
class TestResolve:
    def test_resolve_input(self, resolver, context):
        inputs = {"role-arn": Token("y", "arn")}
        assert resolver.resolve(inputs, context) == {"role-arn": "arn:aws:iam::123:role/foo"}

    def test_literals_unchanged(self, resolver, context):
        inputs = {"cidr": "10.0.0.0/16", "count": 2, "flag": True, "none": None}
        assert resolver.resolve(inputs, context) == inputs

    def test_whole_marker_keeps_type(self, resolver, context):
        value = resolver.resolve("${keel:vpc.public_subnets}", context)
        assert value == ["subnet-a", "subnet-b"]

    def test_embedded_marker(self, resolver, context):
        name = f"{Token('cluster', 'name')}-karpenter"
        assert resolver.resolve(name, context) == "demo-karpenter"

    def test_embedded_number(self, resolver, context):
        assert resolver.resolve(f"n={Token('cluster', 'capacity')}", context) == "n=2"

    def test_embedded_mapping_is_compact_json(self, resolver, context):
        value = resolver.resolve(f"tags={Token('vpc', 'tags')}", context)
        assert value == 'tags={"a":2,"b":1}'

    def test_token_keys(self, resolver, context):
        issuer = Token("cluster", "oidc_issuer")
        conditions = {
            f"{issuer}:aud": "sts.amazonaws.com",
            f"{issuer}:sub": "system:serviceaccount:karpenter:karpenter",
        }
        assert resolver.resolve(conditions, context) == {
            f"{ISSUER}:aud": "sts.amazonaws.com",
            f"{ISSUER}:sub": "system:serviceaccount:karpenter:karpenter",
        }

    def test_key_collision(self, resolver, context):
        data = {
            f"{Token('cluster', 'name')}": 1,
            "demo": 2,
        }
        with pytest.raises(TokenError, match="already present"):
            resolver.resolve(data, context)

    def test_list_index(self, resolver, context):
        assert resolver.resolve(Token("vpc", "public_subnets.1"), context) == "subnet-b"

    def test_nested_structures(self, resolver, context):
        value = {"a": [{"b": Token("y", "arn")}], "t": (Token("cluster", "name"), 1)}
        assert resolver.resolve(value, context) == {
            "a": [{"b": "arn:aws:iam::123:role/foo"}],
            "t": ("demo", 1),
        }

    def test_join(self, resolver, context):
        joined = Join(",", Token("vpc", "public_subnets"))
        assert resolver.resolve(joined, context) == "subnet-a,subnet-b"

    def test_join_requires_list(self, resolver, context):
        with pytest.raises(TokenError, match="Join expects a list"):
            resolver.resolve(Join(",", Token("cluster", "name")), context)

    def test_unrealized_source(self, resolver, context):
        with pytest.raises(UnresolvedDependencyError) as exc:
            resolver.resolve({"x": Token("ghost", "arn")}, context)
        assert exc.value.node_id == "ghost"
        assert exc.value.path == "arn"

    def test_missing_attribute(self, resolver, context):
        with pytest.raises(AttributeNotFoundError) as exc:
            resolver.resolve(Token("y", "nope"), context)
        assert isinstance(exc.value, UnresolvedDependencyError)
        assert "nope" in str(exc.value)

    def test_index_out_of_range(self, resolver, context):
        with pytest.raises(AttributeNotFoundError):
            resolver.resolve(Token("vpc", "public_subnets.5"), context)


class TestCaching:
    def test_resolved_once_per_resolver(self, resolver):
        context = ResolveContext({"y": {"arn": "one"}})
        assert resolver.resolve(Token("y", "arn"), context) == "one"
        context.record("y", {"arn": "two"})
        assert resolver.resolve(Token("y", "arn"), context) == "one"
        # A new resolver (a new deploy) sees the new value
        assert TokenResolver().resolve(Token("y", "arn"), context) == "two"

    def test_results_are_copies(self, resolver, context):
        first = resolver.resolve(Token("vpc", "public_subnets"), context)
        first.append("mutated")
        second = resolver.resolve(Token("vpc", "public_subnets"), context)
        assert second == ["subnet-a", "subnet-b"]

    def test_repeated_resolution_identical(self, resolver, context):
        value = {
            f"{Token('cluster', 'oidc_issuer')}:sub": "system:serviceaccount:karpenter:karpenter",
            "subnets": Join(",", Token("vpc", "public_subnets")),
            "nested": [{"role": Token("y", "arn"), "tags": Token("vpc", "tags")}],
        }
        first = resolver.resolve(value, context)
        second = resolver.resolve(value, context)
        assert first == second
        assert list(first) == list(second)
        assert first[f"{ISSUER}:sub"] == "system:serviceaccount:karpenter:karpenter"
        assert first["subnets"] == "subnet-a,subnet-b"
        # A fresh resolver over the same attributes agrees
        assert TokenResolver().resolve(value, context) == first

    def test_context_copies_attributes(self):
        attrs = {"arn": "one"}
        context = ResolveContext()
        context.record("y", attrs)
        attrs["arn"] = "changed"
        assert context.attributes("y") == {"arn": "one"}
        assert "y" in context
        assert len(context) == 1


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────
class TestHelpers:
    def test_references_ordered_unique(self):
        value = {
            "a": Token("vpc", "id"),
            f"{Token('cluster', 'name')}-x": [Token("vpc", "id"), "${keel:role.arn}"],
            "j": Join(",", Token("vpc", "public_subnets")),
        }
        assert references(value) == [
            Token("vpc", "id"),
            Token("cluster", "name"),
            Token("role", "arn"),
            Token("vpc", "public_subnets"),
        ]

    def test_references_none(self):
        assert references({"a": 1, "b": ["x", "${param:Name}"]}) == []

    def test_encode(self):
        value = {"a": Token("vpc", "id"), "j": Join(",", Token("vpc", "ids")), "t": (1, 2)}
        assert encode(value) == {
            "a": "${keel:vpc.id}",
            "j": {"keel:join": [",", "${keel:vpc.ids}"]},
            "t": [1, 2],
        }
