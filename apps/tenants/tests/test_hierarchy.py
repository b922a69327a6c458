"""
Tests for organization hierarchy validation.

Covers depth queries, cycle rejection, the depth limit, bounded walks
over corrupt data, and property tests over random trees.
"""
import uuid
from unittest.mock import patch

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings, strategies as st

from apps.core.exceptions import OrgCycleDetected, OrgDepthExceeded
from apps.tenants.models import Organization
from apps.tenants.services.hierarchy import (
    MAX_PARENT_WALK_ITERATIONS,
    OrganizationTree,
    collect_descendants,
    get_depth,
    get_subtree_depth,
    validate_new_child,
    validate_reparent,
    walk_parent_chain,
)


def make_org(slug, parent=None):
    """Helper to create an organization without hierarchy validation."""
    return Organization.objects.create(name=slug.title(), slug=slug, parent_organization=parent)


def make_chain(*slugs):
    """Helper to create a chain where each organization is the parent of the next."""
    orgs = []
    parent = None
    for slug in slugs:
        parent = make_org(slug, parent)
        orgs.append(parent)
    return orgs


def node(i):
    """Organization id for node i of a generated tree."""
    return str(uuid.UUID(int=i + 1))


class DictTree:
    """In-memory stand-in for OrganizationTree over a {child: parent} map of node numbers."""

    using = 'default'

    def __init__(self, parents):
        self.parents = {node(k): (node(v) if v is not None else None) for k, v in parents.items()}

    def exists(self, org_id):
        return org_id in self.parents

    def parent_of(self, org_id):
        return self.parents.get(org_id)

    def children_of_many(self, org_ids):
        return {
            o: [c for c, p in self.parents.items() if p == o]
            for o in org_ids
        }

    def children_of(self, org_id):
        return self.children_of_many([org_id])[org_id]


@pytest.mark.django_db
class TestDepth:
    """Test depth and subtree depth queries."""

    def test_root_has_depth_zero(self):
        """Test that a root organization has depth 0."""
        root = make_org('root')
        assert get_depth(root.id) == 0

    def test_depth_counts_ancestors(self):
        """Test that depth equals the number of ancestors."""
        root, a, b, c = make_chain('root', 'a', 'b', 'c')

        assert get_depth(a.id) == 1
        assert get_depth(b.id) == 2
        assert get_depth(c.id) == 3

    def test_unknown_id_has_depth_zero(self):
        """Test that walking from an unknown id stops immediately."""
        assert get_depth('00000000-0000-0000-0000-000000000000') == 0

    def test_subtree_depth(self):
        """Test levels below a node, taking the deepest branch."""
        root, a, b = make_chain('root', 'a', 'b')
        make_org('a2', root)

        assert get_subtree_depth(root.id) == 2
        assert get_subtree_depth(a.id) == 1
        assert get_subtree_depth(b.id) == 0


@pytest.mark.django_db
class TestCycleRejection:
    """Test that reparenting never closes a loop."""

    def test_self_parent_rejected(self):
        """Test that an organization cannot become its own parent."""
        org = make_org('solo')

        with pytest.raises(OrgCycleDetected):
            validate_reparent(org.id, org.id)

    @pytest.mark.parametrize('spelling', [
        lambda pk: pk.hex,
        lambda pk: str(pk).upper(),
        lambda pk: pk.hex.upper(),
        lambda pk: '{%s}' % pk,
    ])
    def test_self_parent_rejected_in_any_spelling(self, spelling):
        """Test that another spelling of the same UUID is still the same organization."""
        org = make_org('solo')

        with pytest.raises(OrgCycleDetected):
            validate_reparent(org.id, spelling(org.id))

    def test_ancestor_rejected_in_any_spelling(self):
        """Test Root -> A: moving Root under A's hex id is a cycle."""
        root, a = make_chain('root', 'a')

        with pytest.raises(OrgCycleDetected):
            validate_reparent(str(root.id).upper(), a.id.hex)

    def test_root_under_grandchild_rejected(self):
        """Test Root -> A -> B: moving Root under B is a cycle."""
        root, a, b = make_chain('root', 'a', 'b')

        with pytest.raises(OrgCycleDetected) as exc_info:
            validate_reparent(root.id, b.id)

        assert exc_info.value.code == 'org_cycle_detected'
        assert exc_info.value.status_code == 400

    def test_parent_under_child_rejected(self):
        """Test Root -> A -> B: moving A under B is a cycle."""
        root, a, b = make_chain('root', 'a', 'b')

        with pytest.raises(OrgCycleDetected):
            validate_reparent(a.id, b.id)

    def test_cycle_rejection_logged_as_security_event(self):
        """Test that a rejected cycle is reported to the security log."""
        root, a = make_chain('root', 'a')

        with patch('apps.tenants.services.hierarchy.SecurityLogger.log_cycle_rejected') as log:
            with pytest.raises(OrgCycleDetected):
                validate_reparent(root.id, a.id)

        log.assert_called_once_with(root.id, a.id)

    def test_sibling_move_allowed(self):
        """Test that moving a node under its sibling is valid."""
        root = make_org('root')
        a = make_org('a', root)
        b = make_org('b', root)

        assert validate_reparent(a.id, b.id) == 2


@pytest.mark.django_db
class TestDepthLimit:
    """Test the maximum hierarchy depth."""

    def test_depth_three_allowed(self):
        """Test that a node may sit at depth 3."""
        root, a, b = make_chain('root', 'a', 'b')
        leaf = make_org('leaf')

        assert validate_reparent(leaf.id, b.id) == 3

    def test_depth_four_rejected(self):
        """Test that a node may not sit at depth 4."""
        root, a, b, c = make_chain('root', 'a', 'b', 'c')
        leaf = make_org('leaf')

        with pytest.raises(OrgDepthExceeded) as exc_info:
            validate_reparent(leaf.id, c.id)

        assert exc_info.value.details['parent_depth'] == 3
        assert exc_info.value.details['max_depth'] == 3

    def test_subtree_counts_toward_depth(self):
        """Test that the moved subtree's own depth is included."""
        root, a = make_chain('root', 'a')
        x, y, z = make_chain('x', 'y', 'z')

        # z would land at depth 1 + 1 + 2 = 4
        with pytest.raises(OrgDepthExceeded) as exc_info:
            validate_reparent(x.id, a.id)

        assert exc_info.value.details['subtree_depth'] == 2

    def test_limit_follows_setting(self, settings):
        """Test that ORG_MAX_DEPTH changes the limit."""
        settings.ORG_MAX_DEPTH = 1
        root, a = make_chain('root', 'a')
        leaf = make_org('leaf')

        with pytest.raises(OrgDepthExceeded):
            validate_reparent(leaf.id, a.id)

    def test_new_child_depth(self):
        """Test the depth check used when creating under a parent."""
        root, a, b, c = make_chain('root', 'a', 'b', 'c')

        assert validate_new_child(b.id) == 3
        with pytest.raises(OrgDepthExceeded):
            validate_new_child(c.id)


@pytest.mark.django_db
class TestCorruptData:
    """Test that walks terminate even when the stored tree has a cycle."""

    def make_loop(self):
        x = make_org('x')
        y = make_org('y', x)
        # Bypass validation to simulate corrupt data
        Organization.objects.filter(id=x.id).update(parent_organization=y)
        return x, y

    def test_depth_walk_is_bounded(self):
        """Test that get_depth stops after the iteration cap."""
        x, y = self.make_loop()
        assert get_depth(x.id) == MAX_PARENT_WALK_ITERATIONS

    def test_subtree_walk_is_bounded(self):
        """Test that get_subtree_depth terminates on a loop."""
        x, y = self.make_loop()
        assert get_subtree_depth(x.id) <= MAX_PARENT_WALK_ITERATIONS

    def test_descendants_walk_is_bounded(self):
        """Test that collect_descendants visits each node once on a loop."""
        x, y = self.make_loop()
        assert collect_descendants(x.id) == [str(y.id)]

    def test_move_under_corrupt_chain_fails_closed(self):
        """Test that a move under a runaway chain is rejected, not accepted."""
        x, y = self.make_loop()
        leaf = make_org('leaf')

        with pytest.raises(OrgDepthExceeded):
            validate_reparent(leaf.id, x.id)

    def test_move_into_loop_detected_as_cycle(self):
        """Test that moving a loop member under its partner is a cycle."""
        x, y = self.make_loop()

        with pytest.raises(OrgCycleDetected):
            validate_reparent(x.id, y.id)


@pytest.mark.django_db
class TestCollectDescendants:
    """Test descendant collection."""

    def test_nearest_first(self):
        """Test that children come before grandchildren."""
        root = make_org('root')
        a = make_org('a', root)
        b = make_org('b', root)
        a1 = make_org('a1', a)

        descendants = collect_descendants(root.id)

        assert set(descendants[:2]) == {str(a.id), str(b.id)}
        assert descendants[2] == str(a1.id)

    def test_limit_caps_result(self):
        """Test that collection stops at the limit."""
        root = make_org('root')
        for i in range(5):
            make_org(f'child-{i}', root)

        assert len(collect_descendants(root.id, limit=3)) == 3

    def test_leaf_has_no_descendants(self):
        """Test that a leaf yields an empty list."""
        leaf = make_org('leaf')
        assert collect_descendants(leaf.id) == []


@pytest.mark.django_db
class TestOrganizationTree:
    """Test the tree index."""

    def test_parent_lookups_are_memoized(self, django_assert_num_queries):
        """Test that each node is loaded once per tree."""
        root, a, b = make_chain('root', 'a', 'b')
        tree = OrganizationTree()

        with django_assert_num_queries(3):
            get_depth(b.id, tree)
        with django_assert_num_queries(0):
            get_depth(b.id, tree)
            assert tree.parent_of(a.id) == str(root.id)

    def test_children_fetched_per_level(self, django_assert_num_queries):
        """Test that one query loads the children of a whole frontier."""
        root = make_org('root')
        a = make_org('a', root)
        b = make_org('b', root)
        make_org('a1', a)
        make_org('b1', b)
        tree = OrganizationTree()

        # root level, {a, b} level, {a1, b1} level
        with django_assert_num_queries(3):
            assert get_subtree_depth(root.id, tree) == 2

    def test_exists(self):
        """Test existence checks for live and unknown ids."""
        root = make_org('root')
        tree = OrganizationTree()

        assert tree.exists(root.id)
        assert not tree.exists('00000000-0000-0000-0000-000000000000')


# Random forests: node i may only point at an earlier node, so the map is acyclic
acyclic_forests = st.integers(min_value=1, max_value=9).flatmap(
    lambda n: st.tuples(*[
        st.one_of(st.none(), st.integers(min_value=0, max_value=i - 1)) if i else st.none()
        for i in range(n)
    ])
)

# Arbitrary parent maps, cycles included
parent_maps = st.integers(min_value=1, max_value=9).flatmap(
    lambda n: st.lists(
        st.one_of(st.none(), st.integers(min_value=0, max_value=n - 1)),
        min_size=n, max_size=n,
    )
)


def ancestors(parents, node):
    seen = []
    current = parents[node]
    while current is not None:
        seen.append(current)
        current = parents[current]
    return seen


def height(parents, node):
    children = [i for i, p in enumerate(parents) if p == node]
    return 1 + max(height(parents, c) for c in children) if children else 0


@pytest.mark.django_db
class TestHierarchyProperties:
    """Property tests over random trees."""

    @hypothesis_settings(max_examples=75, deadline=None,
                         suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(data=st.data(), parents=acyclic_forests)
    def test_reparent_matches_reference_rules(self, data, parents):
        """Test that validate_reparent agrees with a direct computation."""
        n = len(parents)
        org = data.draw(st.integers(min_value=0, max_value=n - 1))
        new_parent = data.draw(st.integers(min_value=0, max_value=n - 1))
        tree = DictTree(dict(enumerate(parents)))

        parent_ancestors = ancestors(parents, new_parent)
        if org == new_parent or org in parent_ancestors:
            with pytest.raises(OrgCycleDetected):
                validate_reparent(node(org), node(new_parent), tree)
            return

        new_depth = len(parent_ancestors) + 1
        if new_depth + height(parents, org) > 3:
            with pytest.raises(OrgDepthExceeded):
                validate_reparent(node(org), node(new_parent), tree)
        else:
            assert validate_reparent(node(org), node(new_parent), tree) == new_depth


class TestWalkBounds:
    """Property tests that need no database."""

    @given(parents=parent_maps, data=st.data())
    def test_walks_terminate_on_any_parent_map(self, parents, data):
        """Test that every walk is bounded, even over cyclic data."""
        n = len(parents)
        start = data.draw(st.integers(min_value=0, max_value=n - 1))
        target = data.draw(st.integers(min_value=0, max_value=n - 1))
        tree = DictTree(dict(enumerate(parents)))

        assert 0 <= get_depth(node(start), tree) <= MAX_PARENT_WALK_ITERATIONS
        assert 0 <= get_subtree_depth(node(start), tree) <= MAX_PARENT_WALK_ITERATIONS
        assert len(collect_descendants(node(start), tree)) < n

        try:
            depth = walk_parent_chain(node(target), node(start), tree)
        except OrgCycleDetected:
            return
        assert 0 <= depth <= MAX_PARENT_WALK_ITERATIONS
