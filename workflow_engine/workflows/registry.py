"""
Node Registry

Maps a node's declared kind (and, for action nodes, its sub-type) to a
handler with the uniform signature ``handler(node, context) -> output``.
"""

import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

from ..config import Settings, settings as default_settings
from ..exceptions import ConfigurationError
from ..logging_config import get_logger
from . import actions, handlers
from .nodes import ActionType, NodeKind, WorkflowNode, normalize_action_type

if TYPE_CHECKING:
    from ..services.ai_provider import AIProvider
    from ..services.data_store import DataStore
    from ..services.effects import EffectDispatcher
    from ..services.identity import IdentityProvider
    from .state import ExecutionContext

logger = get_logger(__name__)

Handler = Callable[[WorkflowNode, "ExecutionContext"], Union[Any, Awaitable[Any]]]

# Handled by the walker itself, never dispatched through the registry
WALKER_ACTIONS = frozenset({ActionType.MULTI_ACTION_SPLITTER.value, ActionType.JOIN.value})


@dataclass
class NodeServices:
    """External collaborators available to handlers through ``context.services``."""
    ai_provider: Optional["AIProvider"] = None
    data_store: Optional["DataStore"] = None
    effects: Optional["EffectDispatcher"] = None
    identity: Optional["IdentityProvider"] = None
    settings: Settings = field(default_factory=lambda: default_settings)

    def require(self, name: str) -> Any:
        service = getattr(self, name)
        if service is None:
            raise ConfigurationError(f"Service '{name}' is not configured")
        return service


class NodeRegistry:
    """
    Handler lookup by node kind and action sub-type.

    Example:
        registry = NodeRegistry()

        @registry.handler(NodeKind.TRIGGER)
        async def handle_trigger(node, context):
            return {"triggered": True}
    """

    def __init__(self):
        self._kind_handlers: Dict[NodeKind, Handler] = {}
        self._action_handlers: Dict[str, Handler] = {}
        self._fallback_action: Optional[Handler] = None

    def register(self, kind: Union[NodeKind, str], handler: Handler) -> None:
        self._kind_handlers[NodeKind(kind)] = handler

    def register_action(self, action_type: Union[ActionType, str], handler: Handler) -> None:
        key = action_type.value if isinstance(action_type, ActionType) else normalize_action_type(action_type)
        self._action_handlers[key] = handler

    def register_fallback_action(self, handler: Handler) -> None:
        """Handler for action types with no registered handler."""
        self._fallback_action = handler

    def handler(self, kind: Union[NodeKind, str]):
        """Decorator form of register()."""
        def decorator(func: Handler) -> Handler:
            self.register(kind, func)
            return func
        return decorator

    def action(self, action_type: Union[ActionType, str]):
        """Decorator form of register_action()."""
        def decorator(func: Handler) -> Handler:
            self.register_action(action_type, func)
            return func
        return decorator

    def resolve(self, node: WorkflowNode) -> Handler:
        """
        Find the handler for a node.

        Raises:
            ConfigurationError: If no handler is registered for the node
        """
        if node.kind == NodeKind.ACTION:
            action_type = node.action_type
            if action_type in WALKER_ACTIONS:
                raise ConfigurationError(
                    f"Action '{action_type}' is executed by the walker, not a handler",
                    node_id=node.id,
                )
            handler = self._action_handlers.get(action_type) or self._fallback_action
        else:
            handler = self._kind_handlers.get(node.kind)
        if handler is None:
            raise ConfigurationError(f"No handler registered for node type '{node.type_name}'", node_id=node.id)
        return handler

    def supports(self, node: WorkflowNode) -> bool:
        if node.kind == NodeKind.ACTION:
            return node.action_type in WALKER_ACTIONS or bool(
                self._action_handlers.get(node.action_type) or self._fallback_action
            )
        return node.kind in self._kind_handlers

    async def dispatch(self, node: WorkflowNode, context: "ExecutionContext") -> Any:
        """Run a node's handler; sync handlers are accepted."""
        result = self.resolve(node)(node, context)
        if inspect.isawaitable(result):
            result = await result
        return result


def create_default_registry() -> NodeRegistry:
    """Registry with every built-in handler."""
    registry = NodeRegistry()
    handlers.register_handlers(registry)
    actions.register_actions(registry)
    return registry
