"""
Workflow definitions

YAML/JSON workflow definition loading and validation.
"""

from .loader import (
    DefinitionMetadata,
    DefinitionValidationError,
    WorkflowDefinitionLoader,
    build_graph,
    parse_definition,
    validate_definition,
)

__all__ = [
    "DefinitionMetadata",
    "DefinitionValidationError",
    "WorkflowDefinitionLoader",
    "build_graph",
    "parse_definition",
    "validate_definition",
]
