"""
Simulation Mode

Test runs replace external effects (AI calls, emails, notifications, CRM
writes) with mocked outputs so a workflow can be exercised end to end
without side effects.
"""

import random
import string
import time
from datetime import datetime
from typing import Any, Dict, Optional

from .nodes import ActionType, NodeKind, WorkflowNode

DEFAULT_MOCK_DATA: Dict[str, Any] = {
    "contact": {
        "id": "mock-contact-1",
        "name": "Jane Smith",
        "email": "jane.smith@acme.com",
        "company": "Acme Corporation",
        "role": "VP of Engineering",
        "phone": "+1 (555) 123-4567",
        "linkedin_url": "https://linkedin.com/in/janesmith",
        "last_contacted": "2025-12-15T10:30:00Z",
    },
    "deal": {
        "id": "mock-deal-1",
        "name": "Enterprise License Deal",
        "stage": "Proposal",
        "value": 85000,
        "probability": 60,
        "expected_close_date": "2026-02-15",
        "last_activity": "2025-12-28T14:00:00Z",
        "days_in_stage": 12,
    },
    "meeting": {
        "id": "mock-meeting-1",
        "title": "Q1 Product Roadmap Review",
        "date": "2026-01-10T15:00:00Z",
        "attendees": ["jane.smith@acme.com", "john.doe@acme.com"],
        "duration_minutes": 60,
        "meeting_type": "discovery",
        "notes": "Discuss Q1 priorities and integration timeline",
    },
    "company": {
        "id": "mock-company-1",
        "name": "Acme Corporation",
        "domain": "acme.com",
        "industry": "Technology",
        "size": "1000-5000",
        "revenue": "$50M-$100M",
        "founded": 2012,
        "headquarters": "San Francisco, CA",
        "tech_stack": ["React", "Node.js", "PostgreSQL", "AWS"],
    },
    "email": {
        "id": "mock-email-1",
        "subject": "Following up on our conversation",
        "from": "sales@yourcompany.com",
        "to": "jane.smith@acme.com",
        "sent_at": "2025-12-20T09:00:00Z",
        "opened": True,
        "clicked": False,
    },
    "task": {
        "id": "mock-task-1",
        "title": "Send proposal follow-up",
        "due_date": "2026-01-05T17:00:00Z",
        "priority": "high",
        "status": "pending",
        "assigned_to": "current_user",
    },
}

_EXTERNAL_KINDS = {NodeKind.AI_COMPLETION, NodeKind.CUSTOM_ASSISTANT, NodeKind.ASSISTANT_MANAGER}
_EXTERNAL_ACTIONS = {
    ActionType.CREATE_TASK.value,
    ActionType.SEND_EMAIL.value,
    ActionType.SEND_NOTIFICATION.value,
    ActionType.MEETING.value,
}


def new_simulation_id() -> str:
    """Execution id for simulation runs: ``sim-<ms timestamp>-<random>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"sim-{int(time.time() * 1000)}-{suffix}"


def is_external_effect(node: WorkflowNode) -> bool:
    """True for nodes whose handler reaches outside the engine."""
    if node.kind in _EXTERNAL_KINDS:
        return True
    return node.kind == NodeKind.ACTION and node.action_type in _EXTERNAL_ACTIONS


def mock_key_for(node: WorkflowNode) -> str:
    """Key used to pick a mock: ``config.mockKey``, else the action type or node label."""
    if node.config.get("mockKey"):
        return str(node.config["mockKey"]).lower()
    if node.kind == NodeKind.ACTION:
        return f"{node.action_type}-{node.meeting_action or ''}".lower()
    return f"{node.kind.value}-{node.label}".lower()


def generate_mock_output(
    mock_key: str,
    input_data: Optional[Dict[str, Any]] = None,
    mock_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Mock output chosen by substrings of ``mock_key``.

    contact, deal, meeting and company return the matching mock entity;
    email/draft returns a drafted email; brief/summary returns a meeting brief.
    """
    input_data = input_data or {}
    data = {**DEFAULT_MOCK_DATA, **(mock_data or {})}
    contact = data.get("contact") or {}
    company = data.get("company") or {}
    deal = data.get("deal") or {}
    now = datetime.utcnow().isoformat()

    if "contact" in mock_key:
        return dict(contact)
    if "deal" in mock_key:
        return dict(deal)
    if "meeting" in mock_key:
        return dict(data.get("meeting") or {})
    if "company" in mock_key or "enrich" in mock_key:
        return dict(company)
    if "email" in mock_key or "draft" in mock_key:
        return {
            "subject": f"Re: {input_data.get('subject') or 'Follow-up'}",
            "body": f"Hi {contact.get('name') or 'there'},\n\nThank you for your time...\n\nBest regards",
            "generated_at": now,
        }
    if "brief" in mock_key or "summary" in mock_key:
        return {
            "summary": f"Meeting brief for {contact.get('name') or 'contact'}",
            "talking_points": [
                "Discuss current challenges",
                "Present solution overview",
                "Review timeline and next steps",
            ],
            "key_insights": [
                f"{company.get('name') or 'Company'} is in growth phase",
                f"Current deal value: ${deal.get('value') or 0}",
            ],
            "generated_at": now,
        }
    if "task" in mock_key:
        return dict(data.get("task") or {})

    return {
        "result": "Mock execution completed",
        "input_received": input_data,
        "timestamp": now,
    }


def simulate_node_output(
    node: WorkflowNode,
    input_data: Optional[Dict[str, Any]] = None,
    mock_data: Optional[Dict[str, Any]] = None,
) -> Any:
    """Output used in place of an external-effect handler during simulation."""
    if "mockOutput" in node.config:
        return node.config["mockOutput"]
    output = generate_mock_output(mock_key_for(node), input_data, mock_data)
    output["simulated"] = True
    return output
