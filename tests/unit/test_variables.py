"""
Unit Tests for the Variable Context

Scoped storage, TTL expiry, reference resolution, interpolation and
persistence of global/workflow variables.
"""

import asyncio

import pytest

from workflow_engine.services.variable_store import InMemoryVariableStore
from workflow_engine.workflows.variables import (
    VariableContext,
    VariableScope,
    split_path,
    stringify,
    walk_path,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def context():
    ctx = VariableContext(workflow_id="wf-1", execution_id="exec-9", environment="test")
    ctx.set(VariableScope.EXECUTION, "formData", {
        "fields": {"name": "Ann", "email": "ann@example.com", "value": "15000"},
        "items": [{"sku": "A-1"}, {"sku": "B-2"}],
    })
    return ctx


# ==================== Paths ====================


class TestPaths:
    """Path splitting and walking"""

    def test_split_path_with_indexes(self):
        """Dots and [n] indexes become keys and ints"""
        assert split_path("formData.fields.items[0].name") == ["formData", "fields", "items", 0, "name"]

    def test_split_path_quoted_key(self):
        """Bracketed quoted keys are kept verbatim"""
        assert split_path("fields['first name']") == ["fields", "first name"]

    def test_walk_path_missing_step(self):
        """Any missing step yields None"""
        assert walk_path({"a": {"b": 1}}, ["a", "c"]) is None
        assert walk_path({"a": [1, 2]}, ["a", 5]) is None
        assert walk_path(None, ["a"]) is None

    def test_stringify(self):
        """Values are rendered for text templates"""
        assert stringify(True) == "true"
        assert stringify(12) == "12"
        assert stringify({"a": 1}) == '{"a": 1}'


# ==================== Scoped Access ====================


class TestScopes:
    """Reading and writing scoped variables"""

    def test_set_and_get(self):
        """Values are stored per scope"""
        ctx = VariableContext()
        ctx.set("execution", "x", 1)
        ctx.set(VariableScope.BRANCH, "x", 2)

        assert ctx.get(VariableScope.EXECUTION, "x") == 1
        assert ctx.get("branch", "x") == 2
        assert ctx.get(VariableScope.GLOBAL, "x") is None

    def test_unknown_scope_rejected(self):
        """Scope names are validated"""
        ctx = VariableContext()
        with pytest.raises(ValueError):
            ctx.set("session", "x", 1)

    def test_delete(self):
        """delete() reports whether the key existed"""
        ctx = VariableContext()
        ctx.set(VariableScope.EXECUTION, "x", 1)

        assert ctx.delete(VariableScope.EXECUTION, "x") is True
        assert ctx.delete(VariableScope.EXECUTION, "x") is False
        assert ctx.get(VariableScope.EXECUTION, "x") is None

    def test_bare_reference_prefers_most_specific_scope(self):
        """Unscoped lookups search ephemeral, branch, execution, workflow, global"""
        ctx = VariableContext()
        ctx.set(VariableScope.GLOBAL, "deal", {"stage": "Prospect"})
        ctx.set(VariableScope.EXECUTION, "deal", {"stage": "Won"})
        ctx.set(VariableScope.BRANCH, "deal", {"stage": "Lost"})

        assert ctx.resolve("deal.stage") == "Lost"

        ctx.clear_branch()
        assert ctx.resolve("deal.stage") == "Won"

    def test_branch_scope_is_private(self):
        """Each branch starts with an empty branch scope that is dropped when it ends"""
        ctx = VariableContext()
        ctx.set(VariableScope.BRANCH, "outer", 1)

        with ctx.branch_scope():
            assert ctx.get(VariableScope.BRANCH, "outer") is None
            ctx.set(VariableScope.BRANCH, "x", "a")
            assert ctx.resolve("x") == "a"
        with ctx.branch_scope():
            assert ctx.get(VariableScope.BRANCH, "x") is None

        assert ctx.get(VariableScope.BRANCH, "x") is None
        assert ctx.get(VariableScope.BRANCH, "outer") == 1

    @pytest.mark.asyncio
    async def test_parallel_branch_scopes(self):
        """Concurrent branches never see each other's branch values"""
        ctx = VariableContext()
        seen = {}

        async def branch(name: str) -> None:
            with ctx.branch_scope():
                ctx.set(VariableScope.BRANCH, "owner", name)
                await asyncio.sleep(0)
                seen[name] = ctx.get(VariableScope.BRANCH, "owner")

        await asyncio.gather(branch("a"), branch("b"))

        assert seen == {"a": "a", "b": "b"}
        assert ctx.get(VariableScope.BRANCH, "owner") is None

    def test_clear_execution_keeps_persistent_scopes(self):
        """Ending a run drops execution, branch and ephemeral values only"""
        ctx = VariableContext(workflow_id="wf-1")
        ctx.set(VariableScope.GLOBAL, "g", 1)
        ctx.set(VariableScope.WORKFLOW, "w", 2)
        ctx.set(VariableScope.EXECUTION, "e", 3)
        ctx.set(VariableScope.EPHEMERAL, "t", 4)

        ctx.clear_execution()

        assert ctx.get(VariableScope.GLOBAL, "g") == 1
        assert ctx.get(VariableScope.WORKFLOW, "w") == 2
        assert ctx.get(VariableScope.EXECUTION, "e") is None
        assert ctx.get(VariableScope.EPHEMERAL, "t") is None


# ==================== TTL ====================


class TestTTL:
    """Time-to-live handling"""

    def test_value_expires(self):
        """A value is unreadable once its TTL elapses"""
        clock = FakeClock()
        ctx = VariableContext(clock=clock)
        ctx.set(VariableScope.EPHEMERAL, "token", "abc", ttl_seconds=10)

        assert ctx.get(VariableScope.EPHEMERAL, "token") == "abc"

        clock.now += 11
        assert ctx.get(VariableScope.EPHEMERAL, "token") is None
        assert "token" not in ctx.scope_values(VariableScope.EPHEMERAL)

    def test_rewrite_without_ttl_clears_expiry(self):
        """Setting a key again without TTL makes it permanent"""
        clock = FakeClock()
        ctx = VariableContext(clock=clock)
        ctx.set(VariableScope.EXECUTION, "k", 1, ttl_seconds=5)
        ctx.set(VariableScope.EXECUTION, "k", 2)

        clock.now += 60
        assert ctx.get(VariableScope.EXECUTION, "k") == 2

    def test_cleanup_expired(self):
        """cleanup_expired() evicts and counts expired entries"""
        clock = FakeClock()
        ctx = VariableContext(clock=clock)
        ctx.set(VariableScope.EPHEMERAL, "a", 1, ttl_seconds=1)
        ctx.set(VariableScope.EPHEMERAL, "b", 2, ttl_seconds=100)

        clock.now += 2
        assert ctx.cleanup_expired() == 1
        assert ctx.scope_values(VariableScope.EPHEMERAL) == {"b": 2}

    def test_non_positive_ttl_rejected(self):
        """TTL must be positive"""
        ctx = VariableContext()
        with pytest.raises(ValueError):
            ctx.set(VariableScope.EPHEMERAL, "k", 1, ttl_seconds=0)


# ==================== Resolution ====================


class TestResolution:
    """Reference resolution and interpolation"""

    def test_resolve_scoped_path(self, context):
        """Scoped references walk into nested values"""
        assert context.resolve("${execution.formData.fields.name}") == "Ann"
        assert context.resolve("execution.formData.items[1].sku") == "B-2"

    def test_resolve_returns_raw_value(self, context):
        """A single reference keeps its type"""
        assert context.resolve("${execution.formData.items}") == [{"sku": "A-1"}, {"sku": "B-2"}]

    def test_unresolvable_reference_is_none(self, context):
        """Missing paths resolve to None"""
        assert context.resolve("${execution.formData.fields.phone}") is None
        assert context.resolve("${nothing.here}") is None

    def test_node_reference(self, context):
        """node("id").path reads recorded node outputs"""
        context.record_node_output("router_1", {"selectedRoute": "high", "routeData": {"a": 1}})

        assert context.resolve('node("router_1").selectedRoute') == "high"
        assert context.resolve("${node('router_1').routeData.a}") == 1
        assert context.resolve("nodeOutputs.router_1.selectedRoute") == "high"

    def test_system_variables(self, context):
        """system.* exposes computed values"""
        assert context.resolve("system.executionId") == "exec-9"
        assert context.resolve("system.workflowId") == "wf-1"
        assert context.resolve("system.environment") == "test"
        assert isinstance(context.resolve("system.random"), float)

    def test_interpolate_leaves_unresolved_references(self, context):
        """Each reference is replaced independently; unknown ones stay literal"""
        text = context.interpolate("Hi ${execution.formData.fields.name} (${execution.formData.fields.phone})")
        assert text == "Hi Ann (${execution.formData.fields.phone})"

    def test_interpolate_non_string_untouched(self, context):
        """Non-string templates are returned as-is"""
        assert context.interpolate(42) == 42
        assert context.interpolate(None) is None

    def test_interpolate_value_nested(self, context):
        """Strings inside dicts and lists are interpolated"""
        value = context.interpolate_value({"to": ["${execution.formData.fields.email}"], "n": 1})
        assert value == {"to": ["ann@example.com"], "n": 1}

    def test_record_node_output_bookkeeping(self):
        """Node outputs feed previousOutput and the last AI response"""
        ctx = VariableContext(execution_id="exec-1")
        ctx.record_node_output("ai_1", {"content": "Drafted reply"})

        assert ctx.get(VariableScope.WORKFLOW, "previousOutput") == {"content": "Drafted reply"}
        assert ctx.get(VariableScope.WORKFLOW, "currentNode") == "ai_1"
        assert ctx.resolve("execution.custom.lastAIResponse") == "Drafted reply"

    def test_autocomplete(self, context):
        """Autocomplete lists resolvable paths by prefix"""
        paths = context.autocomplete("execution.formData")

        assert "execution.formData" in paths
        assert "execution.formData.fields.name" in paths
        assert all(path.startswith("execution.formData") for path in paths)


# ==================== Persistence ====================


class TestPersistence:
    """Snapshots and the variable store"""

    def test_snapshot_restore(self, context):
        """A restored context resolves the same values; ephemeral data is not kept"""
        context.set(VariableScope.EPHEMERAL, "scratch", 1)
        context.record_node_output("n1", {"ok": True})

        restored = VariableContext.restore(context.snapshot())

        assert restored.resolve("execution.formData.fields.email") == "ann@example.com"
        assert restored.node_outputs == {"n1": {"ok": True}}
        assert restored.get(VariableScope.EPHEMERAL, "scratch") is None
        assert restored.execution_id == "exec-9"

    @pytest.mark.asyncio
    async def test_flush_and_load(self):
        """Global/workflow writes survive into the next run"""
        store = InMemoryVariableStore()
        first = VariableContext(workflow_id="wf-1")
        first.set(VariableScope.GLOBAL, "counter", 1)
        first.set(VariableScope.WORKFLOW, "lastLead", {"name": "Ann"})
        first.set(VariableScope.EXECUTION, "temp", "not persisted")

        assert await first.flush(store) == 2
        assert await first.flush(store) == 0

        second = VariableContext(workflow_id="wf-1")
        await second.load(store)
        assert second.get(VariableScope.GLOBAL, "counter") == 1
        assert second.resolve("workflow.lastLead.name") == "Ann"
        assert second.get(VariableScope.EXECUTION, "temp") is None

    @pytest.mark.asyncio
    async def test_workflow_scope_isolated_per_workflow(self):
        """Workflow-scoped values belong to one workflow"""
        store = InMemoryVariableStore()
        ctx = VariableContext(workflow_id="wf-1")
        ctx.set(VariableScope.WORKFLOW, "k", "v")
        await ctx.flush(store)

        other = VariableContext(workflow_id="wf-2")
        await other.load(store)
        assert other.get(VariableScope.WORKFLOW, "k") is None

    @pytest.mark.asyncio
    async def test_delete_is_flushed(self):
        """Deleting a persistent key removes it from the store"""
        store = InMemoryVariableStore()
        await store.set("global", None, "k", 1)

        ctx = VariableContext()
        await ctx.load(store)
        ctx.delete(VariableScope.GLOBAL, "k")
        await ctx.flush(store)

        assert await store.load("global", None) == {}

    @pytest.mark.asyncio
    async def test_ttl_survives_flush(self):
        """A persistent value keeps its remaining lifetime across runs"""
        clock = FakeClock()
        store = InMemoryVariableStore(clock=clock)
        first = VariableContext(clock=clock)
        first.set(VariableScope.GLOBAL, "token", "abc", ttl_seconds=10)
        await first.flush(store)

        clock.now += 4
        second = VariableContext(clock=clock)
        await second.load(store)
        assert second.get(VariableScope.GLOBAL, "token") == "abc"
        assert second.remaining_ttl(VariableScope.GLOBAL, "token") == pytest.approx(6)

        clock.now += 7
        assert second.get(VariableScope.GLOBAL, "token") is None
        third = VariableContext(clock=clock)
        await third.load(store)
        assert third.get(VariableScope.GLOBAL, "token") is None

    @pytest.mark.asyncio
    async def test_expired_before_flush_is_deleted(self):
        """A value that expired during the run is removed from the store"""
        clock = FakeClock()
        store = InMemoryVariableStore(clock=clock)
        await store.set("global", None, "token", "old")

        ctx = VariableContext(clock=clock)
        await ctx.load(store)
        ctx.set(VariableScope.GLOBAL, "token", "new", ttl_seconds=1)
        clock.now += 2
        await ctx.flush(store)

        assert await store.load("global", None) == {}

    @pytest.mark.asyncio
    async def test_expired_read_is_flushed_as_delete(self):
        """Reading an expired persistent value drops it from the store too"""
        clock = FakeClock()
        store = InMemoryVariableStore(clock=clock)
        await store.set("workflow", "wf-1", "lock", False)
        ctx = VariableContext(workflow_id="wf-1", clock=clock)
        await ctx.load(store)
        ctx.set(VariableScope.WORKFLOW, "lock", True, ttl_seconds=1)
        clock.now += 5
        assert ctx.get(VariableScope.WORKFLOW, "lock") is None

        await ctx.flush(store)

        assert await store.load("workflow", "wf-1") == {}
