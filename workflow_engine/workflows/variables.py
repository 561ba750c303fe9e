"""
Variable Context

Layered key/value store threaded through a workflow run:
- global / workflow scopes persist beyond a single run
- execution / branch scopes are cleared when the run (or branch) ends
- ephemeral entries live in process memory only and may carry a TTL
- node outputs and computed system variables are readable alongside them

Expressions of the form ``${scope.path.to.value}``, ``${field[0].name}`` and
``${node("id").path}`` are resolved against the context. Unresolvable
references resolve to ``None``; interpolation leaves them in the text as-is.
"""

import copy
import json
import random
import re
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from ..logging_config import get_logger

if TYPE_CHECKING:
    from ..services.variable_store import VariableStore

logger = get_logger(__name__)


class VariableScope(str, Enum):
    """Named variable scopes."""
    GLOBAL = "global"
    WORKFLOW = "workflow"
    EXECUTION = "execution"
    BRANCH = "branch"
    EPHEMERAL = "ephemeral"


# Most specific first; used when a reference does not name a scope
LOOKUP_ORDER = (
    VariableScope.EPHEMERAL,
    VariableScope.BRANCH,
    VariableScope.EXECUTION,
    VariableScope.WORKFLOW,
    VariableScope.GLOBAL,
)

PERSISTENT_SCOPES = frozenset({VariableScope.GLOBAL, VariableScope.WORKFLOW})

SYSTEM_SCOPE = "system"
NODE_OUTPUTS_SCOPE = "nodeOutputs"

REFERENCE_PATTERN = re.compile(r"\$\{([^}]+)\}")
_NODE_CALL_PATTERN = re.compile(r"""^node\(\s*(['"])(?P<node_id>[^'"]+)\1\s*\)(?P<rest>.*)$""")
_PATH_TOKEN_PATTERN = re.compile(r"\[(-?\d+)\]|\[\s*(['\"])(.*?)\2\s*\]|([^.\[\]]+)")

_DELETED = object()

PathPart = Union[str, int]


@dataclass
class _BranchFrame:
    """Branch scope of one splitter branch, private to the task running it."""
    owner: "VariableContext"
    values: Dict[str, Any] = field(default_factory=dict)
    expiry: Dict[Tuple["VariableScope", str], float] = field(default_factory=dict)


_branch_frame: ContextVar[Optional[_BranchFrame]] = ContextVar("workflow_branch_frame", default=None)


def split_path(path: str) -> List[PathPart]:
    """
    Split a dotted path into keys and list indexes.

    >>> split_path('formData.fields.items[0].name')
    ['formData', 'fields', 'items', 0, 'name']
    """
    parts: List[PathPart] = []
    for index, _, quoted, name in _PATH_TOKEN_PATTERN.findall(path.strip()):
        if index:
            parts.append(int(index))
        elif quoted:
            parts.append(quoted)
        elif name.strip():
            parts.append(name.strip())
    return parts


def walk_path(value: Any, parts: Iterable[PathPart]) -> Any:
    """Follow ``parts`` into nested dicts/lists; return None when any step is missing."""
    current = value
    for part in parts:
        if current is None:
            return None
        if isinstance(part, int):
            if isinstance(current, (list, tuple)) and -len(current) <= part < len(current):
                current = current[part]
            else:
                return None
        elif isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return None
            current = current[idx]
        else:
            return None
    return current


def stringify(value: Any) -> str:
    """Render a resolved value for insertion into a text template."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class VariableContext:
    """
    Scoped variables for one workflow run.

    Only one run owns a context. Global/workflow values are loaded from and
    flushed to a VariableStore; everything else is in-memory.
    """

    def __init__(
        self,
        workflow_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        environment: str = "development",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.workflow_id = workflow_id
        self.execution_id = execution_id
        self.environment = environment
        self._clock = clock
        self._scopes: Dict[VariableScope, Dict[str, Any]] = {scope: {} for scope in VariableScope}
        self._expiry: Dict[Tuple[VariableScope, str], float] = {}
        self._dirty: Dict[Tuple[VariableScope, str], Any] = {}
        self.node_outputs: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Scoped access
    # ------------------------------------------------------------------

    def _frame(self) -> Optional[_BranchFrame]:
        frame = _branch_frame.get()
        return frame if frame is not None and frame.owner is self else None

    def _values(self, scope: VariableScope) -> Dict[str, Any]:
        if scope == VariableScope.BRANCH:
            frame = self._frame()
            if frame is not None:
                return frame.values
        return self._scopes[scope]

    def _expiries(self, scope: VariableScope) -> Dict[Tuple[VariableScope, str], float]:
        if scope == VariableScope.BRANCH:
            frame = self._frame()
            if frame is not None:
                return frame.expiry
        return self._expiry

    @contextmanager
    def branch_scope(self) -> Iterator[None]:
        """
        Give the current task a fresh branch scope, discarded on exit.

        Parallel branches each run in their own asyncio task, so their
        branch values never meet.
        """
        token = _branch_frame.set(_BranchFrame(owner=self))
        try:
            yield
        finally:
            _branch_frame.reset(token)

    def get(self, scope: Union[VariableScope, str], key: str) -> Any:
        """Read ``key`` from ``scope``. Expired entries are removed and read as None."""
        scope = VariableScope(scope)
        values = self._values(scope)
        if key not in values:
            return None
        if self._is_expired(scope, key):
            self._evict(scope, key)
            return None
        return values[key]

    def set(
        self,
        scope: Union[VariableScope, str],
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        """
        Write ``key`` into ``scope``.

        Args:
            scope: Target scope
            key: Variable name (top-level key within the scope)
            value: Any JSON-compatible value
            ttl_seconds: Optional time-to-live; the value is unreadable once it elapses
        """
        scope = VariableScope(scope)
        self._values(scope)[key] = value
        expiries = self._expiries(scope)
        if ttl_seconds is not None:
            if ttl_seconds <= 0:
                raise ValueError("ttl_seconds must be positive")
            expiries[(scope, key)] = self._clock() + ttl_seconds
        else:
            expiries.pop((scope, key), None)
        if scope in PERSISTENT_SCOPES:
            self._dirty[(scope, key)] = value

    def delete(self, scope: Union[VariableScope, str], key: str) -> bool:
        """Remove ``key`` from ``scope``; returns True if it existed."""
        scope = VariableScope(scope)
        values = self._values(scope)
        existed = key in values and not self._is_expired(scope, key)
        values.pop(key, None)
        self._expiries(scope).pop((scope, key), None)
        if scope in PERSISTENT_SCOPES:
            self._dirty[(scope, key)] = _DELETED
        return existed

    def scope_values(self, scope: Union[VariableScope, str]) -> Dict[str, Any]:
        """Live (non-expired) values of a scope."""
        scope = VariableScope(scope)
        stored = self._values(scope)
        values = {}
        for key in list(stored):
            if self._is_expired(scope, key):
                self._evict(scope, key)
                continue
            values[key] = stored[key]
        return values

    def update_scope(self, scope: Union[VariableScope, str], values: Dict[str, Any]) -> None:
        """Merge a mapping into a scope."""
        for key, value in (values or {}).items():
            self.set(scope, key, value)

    # ------------------------------------------------------------------
    # TTL handling
    # ------------------------------------------------------------------

    def _is_expired(self, scope: VariableScope, key: str) -> bool:
        expires_at = self._expiries(scope).get((scope, key))
        return expires_at is not None and self._clock() >= expires_at

    def _evict(self, scope: VariableScope, key: str) -> None:
        self._values(scope).pop(key, None)
        self._expiries(scope).pop((scope, key), None)
        if scope in PERSISTENT_SCOPES and (scope, key) in self._dirty:
            self._dirty[(scope, key)] = _DELETED

    def remaining_ttl(self, scope: Union[VariableScope, str], key: str) -> Optional[float]:
        """Seconds until ``key`` expires; None when it carries no TTL."""
        scope = VariableScope(scope)
        expires_at = self._expiries(scope).get((scope, key))
        if expires_at is None:
            return None
        return max(0.0, expires_at - self._clock())

    def cleanup_expired(self) -> int:
        """Evict every entry whose TTL has elapsed. Returns the number evicted."""
        tracked = set(self._expiry)
        frame = self._frame()
        if frame is not None:
            tracked.update(frame.expiry)
        expired = [(scope, key) for (scope, key) in tracked if self._is_expired(scope, key)]
        for scope, key in expired:
            self._evict(scope, key)
        if expired:
            logger.debug("Expired variables evicted", count=len(expired), execution_id=self.execution_id)
        return len(expired)

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    def record_node_output(self, node_id: str, output: Any) -> None:
        """Fold a node's output into nodeOutputs and the workflow bookkeeping keys."""
        self.node_outputs[node_id] = output
        workflow_scope = self._scopes[VariableScope.WORKFLOW]
        workflow_scope["previousOutput"] = output
        workflow_scope["currentNode"] = node_id
        if self.execution_id:
            workflow_scope.setdefault("executionId", self.execution_id)

        if isinstance(output, dict):
            ai_text = output.get("content") or output.get("response")
            if ai_text and not output.get("error"):
                custom = dict(self._scopes[VariableScope.EXECUTION].get("custom") or {})
                custom["lastAIResponse"] = ai_text
                self._scopes[VariableScope.EXECUTION]["custom"] = custom

    def clear_branch(self) -> None:
        """Drop branch-scoped values."""
        self._clear_scope(VariableScope.BRANCH)

    def clear_execution(self) -> None:
        """Drop execution, branch and ephemeral values; global/workflow are untouched."""
        for scope in (VariableScope.EXECUTION, VariableScope.BRANCH, VariableScope.EPHEMERAL):
            self._clear_scope(scope)

    def _clear_scope(self, scope: VariableScope) -> None:
        self._values(scope).clear()
        expiries = self._expiries(scope)
        for key in [k for k in expiries if k[0] == scope]:
            del expiries[key]

    # ------------------------------------------------------------------
    # System variables
    # ------------------------------------------------------------------

    def system_variables(self) -> Dict[str, Any]:
        """Computed values available under ``${system.*}``."""
        now = datetime.utcnow()
        return {
            "timestamp": now.isoformat(),
            "date": now.date().isoformat(),
            "time": now.strftime("%H:%M:%S"),
            "random": random.random(),
            "environment": self.environment,
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
        }

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_path(self, path: str) -> Any:
        """
        Resolve a reference body such as ``execution.formData.fields.email``.

        Supported roots: a scope name, ``system``, ``nodeOutputs``,
        ``node("id")``, or a bare key looked up across scopes from most to
        least specific.
        """
        path = path.strip()
        if not path:
            return None

        node_call = _NODE_CALL_PATTERN.match(path)
        if node_call:
            output = self.node_outputs.get(node_call.group("node_id"))
            return walk_path(output, split_path(node_call.group("rest")))

        parts = split_path(path)
        if not parts or not isinstance(parts[0], str):
            return None
        root, rest = parts[0], parts[1:]

        if root == SYSTEM_SCOPE:
            return walk_path(self.system_variables(), rest)
        if root == NODE_OUTPUTS_SCOPE:
            return walk_path(self.node_outputs, rest)
        if root in VariableScope._value2member_map_:
            scope = VariableScope(root)
            if not rest:
                return self.scope_values(scope)
            if not isinstance(rest[0], str):
                return None
            return walk_path(self.get(scope, rest[0]), rest[1:])

        for scope in LOOKUP_ORDER:
            if root in self._values(scope):
                value = self.get(scope, root)
                if value is not None:
                    return walk_path(value, rest)
        return None

    def resolve(self, expression: str) -> Any:
        """
        Resolve a single reference, given either as ``${path}`` or a bare path.

        Returns the raw value (not stringified) or None when unresolvable.
        """
        if not isinstance(expression, str):
            return None
        text = expression.strip()
        match = REFERENCE_PATTERN.fullmatch(text)
        if match:
            return self.resolve_path(match.group(1))
        return self.resolve_path(text)

    def interpolate(self, template: Any) -> Any:
        """
        Replace every ``${...}`` occurrence in a text template independently.

        Unresolvable references are left as literal text. Non-string inputs
        are returned untouched.
        """
        if not isinstance(template, str) or "${" not in template:
            return template

        def replace(match: "re.Match[str]") -> str:
            value = self.resolve_path(match.group(1))
            if value is None:
                return match.group(0)
            return stringify(value)

        return REFERENCE_PATTERN.sub(replace, template)

    def interpolate_value(self, value: Any) -> Any:
        """Interpolate strings nested anywhere inside dicts/lists."""
        if isinstance(value, str):
            return self.interpolate(value)
        if isinstance(value, dict):
            return {k: self.interpolate_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.interpolate_value(v) for v in value]
        return value

    # ------------------------------------------------------------------
    # Autocomplete
    # ------------------------------------------------------------------

    def autocomplete(self, prefix: str = "", max_depth: int = 3) -> List[str]:
        """List resolvable variable paths starting with ``prefix``."""
        paths: Set[str] = set()

        def collect(base: str, value: Any, depth: int) -> None:
            paths.add(base)
            if depth >= max_depth:
                return
            if isinstance(value, dict):
                for key, child in value.items():
                    collect(f"{base}.{key}", child, depth + 1)
            elif isinstance(value, list) and value:
                collect(f"{base}[0]", value[0], depth + 1)

        for scope in VariableScope:
            for key, value in self.scope_values(scope).items():
                collect(f"{scope.value}.{key}", value, 1)
        for key in self.system_variables():
            paths.add(f"{SYSTEM_SCOPE}.{key}")
        for node_id, output in self.node_outputs.items():
            collect(f'node("{node_id}")', output, 0)

        return sorted(p for p in paths if p.startswith(prefix))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self, store: "VariableStore") -> None:
        """Load global and workflow scopes, with their remaining TTLs, from the variable store."""
        await self._load_scope(store, VariableScope.GLOBAL, None)
        if self.workflow_id:
            await self._load_scope(store, VariableScope.WORKFLOW, self.workflow_id)

    async def _load_scope(self, store: "VariableStore", scope: VariableScope, workflow_id: Optional[str]) -> None:
        values = await store.load(scope.value, workflow_id)
        self._scopes[scope].update(values)
        if not values:
            return
        for key, remaining in (await store.ttls(scope.value, workflow_id, list(values))).items():
            self._expiry[(scope, key)] = self._clock() + remaining

    async def flush(self, store: "VariableStore") -> int:
        """
        Write global/workflow values set during this run. Returns the number of writes.

        Values carrying a TTL are written with their remaining lifetime; ones
        that already expired are deleted from the store instead.
        """
        writes = 0
        for (scope, key), value in list(self._dirty.items()):
            workflow_id = self.workflow_id if scope == VariableScope.WORKFLOW else None
            if scope == VariableScope.WORKFLOW and not workflow_id:
                continue
            ttl_seconds = self.remaining_ttl(scope, key)
            if value is _DELETED or ttl_seconds == 0:
                await store.delete(scope.value, workflow_id, key)
            else:
                await store.set(scope.value, workflow_id, key, value, ttl_seconds=ttl_seconds)
            writes += 1
        self._dirty.clear()
        if writes:
            logger.debug("Variables flushed", writes=writes, execution_id=self.execution_id)
        return writes

    def snapshot(self) -> Dict[str, Any]:
        """
        Serializable copy of the in-memory state, used to reconstruct a paused run.

        Ephemeral values are process-local and are not included.
        """
        now_wall = time.time()
        now_clock = self._clock()
        expiry = {
            f"{scope.value}:{key}": now_wall + (expires_at - now_clock)
            for (scope, key), expires_at in self._expiry.items()
            if scope != VariableScope.EPHEMERAL
        }
        return {
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "environment": self.environment,
            "scopes": {
                scope.value: copy.deepcopy(values)
                for scope, values in self._scopes.items()
                if scope != VariableScope.EPHEMERAL
            },
            "expiry": expiry,
            "node_outputs": copy.deepcopy(self.node_outputs),
        }

    @classmethod
    def restore(cls, data: Dict[str, Any], clock: Callable[[], float] = time.monotonic) -> "VariableContext":
        """Rebuild a context from snapshot()."""
        context = cls(
            workflow_id=data.get("workflow_id"),
            execution_id=data.get("execution_id"),
            environment=data.get("environment", "development"),
            clock=clock,
        )
        for scope_name, values in (data.get("scopes") or {}).items():
            context._scopes[VariableScope(scope_name)].update(copy.deepcopy(values))
        now_wall = time.time()
        for composite, expires_wall in (data.get("expiry") or {}).items():
            scope_name, _, key = composite.partition(":")
            remaining = expires_wall - now_wall
            scope = VariableScope(scope_name)
            if remaining <= 0:
                context._evict(scope, key)
            else:
                context._expiry[(scope, key)] = clock() + remaining
        context.node_outputs = copy.deepcopy(data.get("node_outputs") or {})
        return context

    def to_dict(self) -> Dict[str, Any]:
        """Readable view of all scopes, used as NodeExecution input."""
        return {
            **{scope.value: self.scope_values(scope) for scope in VariableScope},
            NODE_OUTPUTS_SCOPE: dict(self.node_outputs),
        }
