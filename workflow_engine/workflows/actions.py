"""
Action Node Handlers

One handler per action sub-type. CRM writes go through the data store,
emails and notifications through the effect dispatcher, and the acting
user comes from the identity source.

Splitter and join actions are run by the walker (see splitter.py).
"""

import html
import json
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..exceptions import ConfigurationError, ValidationError
from ..logging_config import get_logger
from .nodes import ActionType, WorkflowNode
from .variables import REFERENCE_PATTERN, VariableScope, stringify

if TYPE_CHECKING:
    from .registry import NodeRegistry
    from .state import ExecutionContext

logger = get_logger(__name__)

TASKS = "tasks"
MEETINGS = "meetings"

# UI task column -> stored task status
TASK_STATUS_MAPPING = {
    "planned": "pending",
    "started": "in_progress",
    "complete": "completed",
    "overdue": "overdue",
}

DEFAULT_EMAIL_RECIPIENT = "${execution.formData.fields.email}"


def _now() -> str:
    return datetime.utcnow().isoformat()


def _text(context: "ExecutionContext", template: Any, default: str = "") -> str:
    """Interpolate a config value into text."""
    if template is None or template == "":
        template = default
    return stringify(context.variables.interpolate(template))


def _unresolved(value: str) -> bool:
    return not value or bool(REFERENCE_PATTERN.search(value))


# =============================================================================
# Tasks
# =============================================================================


async def create_task(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    config = node.config
    data_store = context.services.require("data_store")

    title = _text(context, config.get("taskTitle"), "New Task")
    description = _text(context, config.get("description"))
    priority = config.get("priority", "medium")
    task_status = config.get("taskStatus", "planned")
    assigned_to = config.get("assignedTo") or context.options.user_id

    due_date = None
    if config.get("dueInDays") not in (None, ""):
        try:
            days = float(config["dueInDays"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid dueInDays: {config['dueInDays']!r}", node_id=node.id) from e
        due_date = (datetime.utcnow() + timedelta(days=days)).date().isoformat()

    task = await data_store.create_entity(TASKS, {
        "title": title,
        "description": description,
        "priority": priority,
        "status": TASK_STATUS_MAPPING.get(task_status, "pending"),
        "assigned_to": assigned_to,
        "created_by": assigned_to,
        "due_date": due_date,
        "workflow_execution_id": context.execution_id,
    })
    logger.info("Task created", node_id=node.id, task_id=task["id"], execution_id=context.execution_id)

    return {
        "action": "task_created",
        "success": True,
        "taskId": task["id"],
        "title": title,
        "description": description,
        "priority": priority,
        "status": task_status,
        "assignedTo": assigned_to,
        "dueDate": due_date,
        "createdAt": task.get("created_at"),
    }


# =============================================================================
# Email
# =============================================================================


def render_html_email(title: str, content: str) -> str:
    """Minimal HTML body used when no ``htmlBody`` is configured."""
    body = html.escape(content).replace("\n", "<br>")
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif;\">"
        f"<h2>{html.escape(title)}</h2><div>{body}</div>"
        "</body></html>"
    )


async def send_email(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    config = node.config
    effects = context.services.require("effects")

    recipient = _text(context, config.get("recipientEmail") or config.get("to"), DEFAULT_EMAIL_RECIPIENT)
    if _unresolved(recipient):
        raise ConfigurationError("Email recipient could not be resolved", node_id=node.id)
    subject = _text(context, config.get("emailSubject") or config.get("subject"), "Workflow notification")
    email_format = config.get("emailFormat", "html")
    if email_format not in ("html", "text", "both"):
        raise ConfigurationError(f"Unknown emailFormat '{email_format}'", node_id=node.id)

    text_body = _text(context, config.get("emailBody") or config.get("plainTextBody"), "Notification from your workflow.")
    payload: Dict[str, Any] = {"to": recipient, "subject": subject, "format": email_format}
    if email_format in ("text", "both"):
        payload["text"] = text_body
    if email_format in ("html", "both"):
        if config.get("htmlBody"):
            payload["html"] = _text(context, config["htmlBody"])
        else:
            payload["html"] = render_html_email(subject, text_body)

    receipt = await effects.dispatch("email", payload)
    return {
        "action": "email_sent",
        "success": True,
        "recipient": recipient,
        "subject": subject,
        "format": email_format,
        "messageId": receipt.get("effect_id"),
        "sentAt": _now(),
    }


# =============================================================================
# Notifications
# =============================================================================


def notification_recipients(config: Dict[str, Any], context: "ExecutionContext") -> List[str]:
    """
    Resolve ``notifyUsers``: ``current`` (the acting user), a list of user
    ids, or a comma separated string of user ids.
    """
    notify_users = config.get("notifyUsers", "current")
    if notify_users == "current":
        identity = context.services.identity
        user_id = identity.current_user_id() if identity is not None else None
        user_id = user_id or context.options.user_id
        return [user_id] if user_id else []

    if isinstance(notify_users, str):
        notify_users = notify_users.split(",")
    recipients = []
    for entry in notify_users or []:
        value = _text(context, entry).strip()
        if value and not _unresolved(value) and value not in recipients:
            recipients.append(value)
    return recipients


def _action_url(context: "ExecutionContext") -> Optional[str]:
    for entity, prefix in (("deal", "/crm/deals"), ("task", "/tasks"), ("contact", "/contacts")):
        entity_id = context.variables.resolve(f"{entity}.id")
        if entity_id:
            return f"{prefix}/{entity_id}"
    return None


async def send_notification(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    config = node.config
    title = _text(context, config.get("notificationTitle"), "Workflow Notification")
    message = _text(context, config.get("notificationMessage"))
    notification_type = config.get("notificationType", "info")
    recipients = notification_recipients(config, context)

    if not recipients:
        logger.warning("No recipients found for notification", node_id=node.id)
        return {
            "action": "notification_skipped",
            "success": False,
            "message": "No recipients found for notification",
            "title": title,
            "timestamp": _now(),
        }

    effects = context.services.require("effects")
    receipt = await effects.dispatch("notification", {
        "recipients": recipients,
        "title": title,
        "message": message,
        "type": notification_type,
        "category": "workflow",
        "workflow_execution_id": context.execution_id,
        "action_url": _action_url(context),
        "metadata": {
            "workflow_id": context.workflow_id,
            "node_id": node.id,
            "node_type": ActionType.SEND_NOTIFICATION.value,
        },
    })

    return {
        "action": "notification_sent",
        "success": True,
        "totalRecipients": len(recipients),
        "successfulNotifications": len(recipients),
        "failedNotifications": 0,
        "title": title,
        "message": message,
        "type": notification_type,
        "recipients": recipients,
        "notificationId": receipt.get("effect_id"),
        "timestamp": _now(),
    }


# =============================================================================
# Field edits
# =============================================================================


def _email_domain(value: str) -> str:
    match = re.search(r"@(.+)$", value)
    return match.group(1) if match else value


TRANSFORMATIONS: Dict[str, Callable[[str], str]] = {
    "uppercase": str.upper,
    "lowercase": str.lower,
    "capitalize": lambda s: s[:1].upper() + s[1:].lower(),
    "trim": lambda s: "".join(s.split()),
    "email_domain": _email_domain,
}


def apply_transformation(value: Any, transformation: Optional[str]) -> Any:
    """Apply a named transformation; ``none`` or unknown names return the value unchanged."""
    if not transformation or transformation == "none":
        return value
    func = TRANSFORMATIONS.get(transformation)
    if func is None:
        logger.warning("Unknown transformation", transformation=transformation)
        return value
    return func("" if value is None else str(value))


def _source_value(source: str, context: "ExecutionContext") -> Any:
    if "${" in source:
        match = REFERENCE_PATTERN.fullmatch(source.strip())
        if match:
            resolved = context.variables.resolve_path(match.group(1))
            return source if resolved is None else resolved
        return context.variables.interpolate(source)
    resolved = context.variables.resolve_path(source)
    return source if resolved is None else resolved


async def edit_fields(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    mappings = node.config.get("fieldMappings") or []
    transformed: Dict[str, Any] = {}
    processed = []

    for mapping in mappings:
        source, target = mapping.get("sourceField"), mapping.get("targetField")
        if not source or not target:
            logger.warning("Skipping incomplete field mapping", node_id=node.id, mapping=mapping)
            continue
        transformation = mapping.get("transformation") or "none"
        source_value = _source_value(source, context)
        value = apply_transformation(source_value, transformation)

        transformed[target] = value
        context.variables.set(VariableScope.EXECUTION, target, value)
        processed.append({
            "sourceField": source,
            "targetField": target,
            "transformation": transformation,
            "sourceValue": source_value,
            "transformedValue": value,
        })

    return {
        "action": "edit_fields_completed",
        "success": True,
        "totalMappings": len(mappings),
        "successfulMappings": len(processed),
        "transformedFields": transformed,
        "processedMappings": processed,
        "message": f"Processed {len(processed)} field mappings" if mappings else "No field mappings configured",
        "timestamp": _now(),
    }


# =============================================================================
# Meetings
# =============================================================================


def _meeting_id(node: WorkflowNode, context: "ExecutionContext", purpose: str) -> str:
    meeting_id = _text(context, node.config.get("meetingId"))
    if _unresolved(meeting_id):
        raise ConfigurationError(f"Meeting ID is required to {purpose}", node_id=node.id)
    return meeting_id


def _required_text(node: WorkflowNode, context: "ExecutionContext", key: str, label: str) -> str:
    value = _text(context, node.config.get(key))
    if not value:
        raise ConfigurationError(f"{label} is required", node_id=node.id)
    return value


def _duration(value: str, node: WorkflowNode) -> int:
    try:
        return int(float(value))
    except ValueError as e:
        raise ValidationError(f"Invalid meeting duration: {value!r}", details={"node_id": node.id}) from e


async def _create_meeting(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    config = node.config
    meeting = await context.services.require("data_store").create_entity(MEETINGS, {
        "title": _text(context, config.get("title")),
        "description": _text(context, config.get("description")),
        "scheduled_for": _text(context, config.get("scheduledFor")),
        "duration": _duration(_text(context, config.get("duration"), "60"), node),
        "attendees": _text(context, config.get("attendees")),
        "location": _text(context, config.get("location")),
        "meeting_type": _text(context, config.get("meetingType"), "general"),
    })
    context.variables.set(VariableScope.EXECUTION, "meeting", meeting)
    return {"meeting": meeting}


async def _update_meeting(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    meeting_id = _meeting_id(node, context, "update a meeting")
    fields = {
        "title": "title",
        "description": "description",
        "scheduledFor": "scheduled_for",
        "attendees": "attendees",
        "location": "location",
        "meetingType": "meeting_type",
    }
    changes: Dict[str, Any] = {
        column: _text(context, node.config[key]) for key, column in fields.items() if node.config.get(key)
    }
    if node.config.get("duration"):
        changes["duration"] = _duration(_text(context, node.config["duration"]), node)

    meeting = await context.services.require("data_store").update_entity(MEETINGS, meeting_id, changes)
    context.variables.set(VariableScope.EXECUTION, "meeting", meeting)
    return {"meeting": meeting}


def _text_field_update(config_key: str, column: str, label: str, purpose: str):
    """Meeting action that writes one required text field."""
    async def run(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
        meeting_id = _meeting_id(node, context, purpose)
        value = _required_text(node, context, config_key, label)
        meeting = await context.services.require("data_store").update_entity(MEETINGS, meeting_id, {column: value})
        return {"meeting": meeting}
    return run


def parse_task_list(raw: str) -> List[str]:
    """Tasks given as a JSON list, or separated by newlines or commas."""
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [str(item).strip() for item in parsed if str(item).strip()]
    return [item.strip() for item in re.split(r"\n|,", raw) if item.strip()]


async def _add_tasks(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    meeting_id = _meeting_id(node, context, "add tasks")
    raw = _required_text(node, context, "tasks", "Tasks content")
    data_store = context.services.require("data_store")

    tasks = await data_store.create_entities(TASKS, [
        {
            "title": title,
            "description": f"Task from meeting: {meeting_id}",
            "meeting_id": meeting_id,
            "status": "pending",
        }
        for title in parse_task_list(raw)
    ])
    meeting = await data_store.update_entity(MEETINGS, meeting_id, {"tasks": raw})
    return {"meeting": meeting, "tasks": tasks}


async def _add_rating(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    meeting_id = _meeting_id(node, context, "add a rating")
    raw = _required_text(node, context, "rating", "Rating")
    try:
        rating = float(raw)
    except ValueError:
        rating = None
    if rating is None or not 1 <= rating <= 5:
        raise ValidationError("Rating must be a number between 1 and 5", details={"rating": raw, "node_id": node.id})
    meeting = await context.services.require("data_store").update_entity(MEETINGS, meeting_id, {"rating": rating})
    return {"meeting": meeting}


async def _add_talk_time(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    meeting_id = _meeting_id(node, context, "add talk time")
    raw = _required_text(node, context, "talkTime", "Talk time data")
    try:
        talk_time = json.loads(raw)
    except ValueError:
        talk_time = raw
    meeting = await context.services.require("data_store").update_entity(MEETINGS, meeting_id, {"talk_time": talk_time})
    return {"meeting": meeting}


MEETING_ACTIONS = {
    "create": _create_meeting,
    "update": _update_meeting,
    "add_transcript": _text_field_update("transcript", "transcript", "Transcript content", "add a transcript"),
    "add_summary": _text_field_update("summary", "summary", "Summary content", "add a summary"),
    "add_tasks": _add_tasks,
    "add_next_steps": _text_field_update("nextSteps", "next_steps", "Next steps content", "add next steps"),
    "add_coaching": _text_field_update("coaching", "coaching_notes", "Coaching content", "add coaching"),
    "add_rating": _add_rating,
    "add_talk_time": _add_talk_time,
}


async def run_meeting_action(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    action = node.meeting_action
    handler = MEETING_ACTIONS.get(action)
    if handler is None:
        raise ConfigurationError(f"Unknown meeting action: {action}", node_id=node.id)
    result = await handler(node, context)
    logger.info("Meeting action completed", node_id=node.id, meeting_action=action)
    return {"action": f"meeting_{action}", "success": True, **result, "timestamp": _now()}


def passthrough_action(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    logger.debug("No handler for action type, passing through", node_id=node.id, action_type=node.action_type)
    return {"action": node.action_type, "executed": True, "timestamp": _now()}


def register_actions(registry: "NodeRegistry") -> None:
    registry.register_action(ActionType.CREATE_TASK, create_task)
    registry.register_action(ActionType.SEND_EMAIL, send_email)
    registry.register_action(ActionType.SEND_NOTIFICATION, send_notification)
    registry.register_action(ActionType.EDIT_FIELDS, edit_fields)
    registry.register_action(ActionType.MEETING, run_meeting_action)
    registry.register_fallback_action(passthrough_action)
