"""
Workflow Node Definitions

Nodes are declarative: ``{id, kind, config}``. Behaviour lives in the
handlers registered for each kind (see registry.py).

Kinds:
- trigger / form: entry points, seed the run
- ai-completion / custom-assistant / assistant-manager: provider calls
- action: sub-typed by ``config.actionType`` (create-task, send-email,
  send-notification, edit-fields, multi-action-splitter, join, meeting-*)
- condition / router: decision nodes whose output filters outgoing edges
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class NodeKind(str, Enum):
    """Declared node kinds."""
    TRIGGER = "trigger"
    FORM = "form"
    AI_COMPLETION = "ai-completion"
    CUSTOM_ASSISTANT = "custom-assistant"
    ASSISTANT_MANAGER = "assistant-manager"
    ACTION = "action"
    CONDITION = "condition"
    ROUTER = "router"


class ActionType(str, Enum):
    """Built-in action sub-types."""
    CREATE_TASK = "create-task"
    SEND_EMAIL = "send-email"
    SEND_NOTIFICATION = "send-notification"
    EDIT_FIELDS = "edit-fields"
    MULTI_ACTION_SPLITTER = "multi-action-splitter"
    JOIN = "join"
    MEETING = "meeting"


class FailurePolicy(str, Enum):
    """What the walker does when a node handler raises."""
    STOP = "stop"
    CONTINUE = "continue"


KIND_ALIASES: Dict[str, NodeKind] = {
    "ai": NodeKind.AI_COMPLETION,
    "aiAgent": NodeKind.AI_COMPLETION,
    "ai_agent": NodeKind.AI_COMPLETION,
    "customGPT": NodeKind.CUSTOM_ASSISTANT,
    "custom_gpt": NodeKind.CUSTOM_ASSISTANT,
    "assistantManager": NodeKind.ASSISTANT_MANAGER,
    "assistant_manager": NodeKind.ASSISTANT_MANAGER,
}

ACTION_ALIASES: Dict[str, ActionType] = {
    "create_task": ActionType.CREATE_TASK,
    "send_email": ActionType.SEND_EMAIL,
    "send_notification": ActionType.SEND_NOTIFICATION,
    "edit_fields": ActionType.EDIT_FIELDS,
    "multi_action": ActionType.MULTI_ACTION_SPLITTER,
    "multi-action": ActionType.MULTI_ACTION_SPLITTER,
    "join_actions": ActionType.JOIN,
}

# Kinds whose ``kind`` field may be written directly as an action sub-type
ACTION_KIND_SHORTCUTS = {
    ActionType.MULTI_ACTION_SPLITTER.value,
    ActionType.JOIN.value,
    "multi_action",
    "join_actions",
}

MEETING_PREFIX = "meeting-"


def normalize_action_type(value: Optional[str]) -> Optional[str]:
    """
    Canonical action type for a configured value.

    Unknown types are returned unchanged; ``meeting-*`` and ``meeting_*``
    collapse to ``meeting``.
    """
    if not value:
        return None
    if value in ACTION_ALIASES:
        return ACTION_ALIASES[value].value
    if value.startswith(MEETING_PREFIX) or value.startswith("meeting_") or value == "meeting":
        return ActionType.MEETING.value
    return value


class HITLConfig(BaseModel):
    """
    Human-in-the-loop gate configuration.

    Attached to a node as ``hitl_before`` (pause before the handler runs) or
    ``hitl_after`` (pause after it completes, before its children run).
    """
    enabled: bool = False
    prompt: str = "Please review this step"
    request_type: str = "confirmation"  # confirmation | question | choice | input
    options: List[Any] = Field(default_factory=list)
    channels: List[str] = Field(default_factory=lambda: ["in_app"])
    timeout_minutes: Optional[int] = None
    timeout_action: str = "fail"  # fail | continue | use_default
    default_value: Any = None
    assigned_to_user_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_camel_case(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        renames = {
            "requestType": "request_type",
            "timeoutMinutes": "timeout_minutes",
            "timeoutAction": "timeout_action",
            "defaultValue": "default_value",
            "assignedToUserId": "assigned_to_user_id",
        }
        return {renames.get(key, key): value for key, value in data.items()}


class WorkflowNode(BaseModel):
    """
    A node in a workflow graph.

    ``config`` is kind-specific and opaque to the walker. Failure policy and
    HITL gates may be given either at the top level or inside ``config``.
    """
    id: str
    kind: NodeKind
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    on_failure: FailurePolicy = FailurePolicy.STOP
    hitl_before: Optional[HITLConfig] = None
    hitl_after: Optional[HITLConfig] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        config = dict(data.get("config") or data.get("data") or {})
        data.pop("data", None)

        kind = data.get("kind") or data.get("type")
        data.pop("type", None)
        if kind in ACTION_KIND_SHORTCUTS:
            config.setdefault("actionType", kind)
            kind = NodeKind.ACTION.value
        elif kind in KIND_ALIASES:
            kind = KIND_ALIASES[kind].value
        data["kind"] = kind

        if "actionType" not in config and kind == NodeKind.ACTION.value and config.get("type"):
            config["actionType"] = config["type"]

        for key, alias in (("on_failure", "onFailure"), ("hitl_before", "hitlBefore"), ("hitl_after", "hitlAfter")):
            if data.get(key) is None:
                value = config.get(key, config.get(alias))
                if value is not None:
                    data[key] = value

        data["config"] = config
        return data

    @property
    def label(self) -> str:
        return self.name or self.config.get("label") or self.id

    @property
    def action_type(self) -> Optional[str]:
        """Canonical action sub-type, or None for non-action nodes."""
        if self.kind != NodeKind.ACTION:
            return None
        return normalize_action_type(self.config.get("actionType")) or "unknown"

    @property
    def type_name(self) -> str:
        """Kind plus action sub-type, as recorded on NodeExecution entries."""
        if self.kind == NodeKind.ACTION:
            return f"action:{self.action_type}"
        return self.kind.value

    @property
    def is_splitter(self) -> bool:
        return self.action_type == ActionType.MULTI_ACTION_SPLITTER.value

    @property
    def is_join(self) -> bool:
        return self.action_type == ActionType.JOIN.value

    @property
    def meeting_action(self) -> Optional[str]:
        """Meeting sub-action (create, update, add_transcript, ...)."""
        if self.action_type != ActionType.MEETING.value:
            return None
        if self.config.get("meetingAction"):
            return self.config["meetingAction"]
        raw = self.config.get("actionType", "")
        for prefix in (MEETING_PREFIX, "meeting_"):
            if raw.startswith(prefix):
                return raw[len(prefix):].replace("-", "_")
        return "create"


class WorkflowEdge(BaseModel):
    """
    A directed "runs after" connection.

    ``label`` (alias ``sourceHandle``) names the route or condition outcome
    the edge belongs to; unlabelled edges are always followed.
    """
    source: str
    target: str
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_source_handle(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("label") is None and data.get("sourceHandle") is not None:
            data = {**data, "label": data["sourceHandle"]}
        return data
