"""
CRM Workflow Engine

Executes user-defined workflow graphs over CRM data: triggers, AI calls,
decisions, actions, fan-out/fan-in and human-in-the-loop pauses.
"""

__version__ = "1.0.0"
