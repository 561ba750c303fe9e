"""
Built-in Node Handlers

Handlers for trigger, form, AI/assistant, condition and router nodes.
Action sub-types live in actions.py.

Every handler has the signature ``handler(node, context) -> output`` and
raises on failure; the walker wraps exceptions in NodeHandlerError.
"""

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

from ..exceptions import ConfigurationError, ExternalProviderError, NodeHandlerError
from ..logging_config import get_logger
from .expressions import evaluate_conditions, evaluate_expression
from .nodes import NodeKind, WorkflowNode
from .retry import retry_with_delay
from .variables import VariableScope

if TYPE_CHECKING:
    from ..services.ai_provider import AIResponse
    from .registry import NodeRegistry
    from .state import ExecutionContext

logger = get_logger(__name__)

JSON_ONLY_INSTRUCTION = (
    "You must respond with valid JSON only. "
    "Do not include any explanatory text outside the JSON structure."
)
TOOL_INSTRUCTIONS = (
    "To use a tool, format your response as:\n"
    "<tool>tool_name</tool>\n"
    '<parameters>{"param1": "value1", "param2": "value2"}</parameters>\n'
    "Then provide your analysis of the results."
)


def _now() -> str:
    return datetime.utcnow().isoformat()


def node_settings(node: WorkflowNode) -> Dict[str, Any]:
    """Node config with a nested ``config`` block flattened on top."""
    nested = node.config.get("config")
    if isinstance(nested, dict):
        return {**node.config, **nested}
    return dict(node.config)


# =============================================================================
# Entry points
# =============================================================================


def handle_trigger(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    variables = context.variables
    trigger_data = variables.get(VariableScope.EXECUTION, "formData") or variables.get(
        VariableScope.EXECUTION, "triggerData"
    )
    return {
        "triggered": True,
        "triggeredAt": _now(),
        "triggerType": node.config.get("triggerType") or node.config.get("type") or context.execution.triggered_by,
        "triggerData": trigger_data or {},
    }


def handle_form(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    form_data = context.variables.get(VariableScope.EXECUTION, "formData") or {}
    return {
        "formData": form_data,
        "formConfig": node.config.get("formConfig", node.config.get("config")),
        "submittedAt": form_data.get("submittedAt") if isinstance(form_data, dict) else None,
    }


# =============================================================================
# AI nodes
# =============================================================================


def build_system_prompt(settings: Dict[str, Any], context: "ExecutionContext") -> str:
    prompt = context.variables.interpolate(settings.get("systemPrompt") or "")

    tools: List[str] = settings.get("selectedTools") or []
    if settings.get("enableTools") and tools:
        prompt += "\n\nYou have access to the following tools:\n\n"
        prompt += "\n".join(f"- {tool}" for tool in tools)
        prompt += "\n\n" + TOOL_INSTRUCTIONS

    if settings.get("outputFormat") == "json":
        prompt += "\n\n" + JSON_ONLY_INSTRUCTION
        if settings.get("jsonSchema"):
            schema = settings["jsonSchema"]
            if not isinstance(schema, str):
                schema = json.dumps(schema)
            prompt += f"\n\nThe JSON must conform to this schema:\n{schema}"
    return prompt.strip()


def build_user_prompt(settings: Dict[str, Any], context: "ExecutionContext") -> str:
    prompt = context.variables.interpolate(settings.get("userPrompt") or "")
    examples = settings.get("fewShotExamples") or []
    if examples:
        rendered = "\n\n".join(
            f"Example:\nInput: {example.get('input', '')}\nOutput: {example.get('output', '')}"
            for example in examples
        )
        prompt = f"{rendered}\n\nNow process this:\n{prompt}"
    return prompt


def _completion_options(settings: Dict[str, Any]) -> Dict[str, Any]:
    options = {
        "model": settings.get("model"),
        "temperature": settings.get("temperature", 0.7),
        "max_tokens": settings.get("maxTokens", 1000),
    }
    if settings.get("outputFormat") == "json":
        options["response_format"] = "json"
    return options


async def call_provider(
    node: WorkflowNode,
    context: "ExecutionContext",
    settings: Dict[str, Any],
    call: Callable[[], Awaitable["AIResponse"]],
) -> "AIResponse":
    """
    Invoke the provider, turning an ``error`` response into ExternalProviderError.

    With ``retryOnError`` the call is retried up to ``maxRetries`` times with a
    fixed delay. Exhausted retries surface as NodeHandlerError carrying an
    ``{content: None, error}`` partial output.
    """
    provider_name = getattr(context.services.ai_provider, "name", "ai")

    async def attempt() -> "AIResponse":
        response = await call()
        if response.error:
            raise ExternalProviderError(response.error, provider=provider_name)
        return response

    try:
        if settings.get("retryOnError"):
            return await retry_with_delay(
                attempt,
                max_retries=int(settings.get("maxRetries", 3)),
                delay=context.services.settings.AI_RETRY_DELAY_SECONDS,
                operation=f"ai:{node.id}",
            )
        return await attempt()
    except Exception as e:
        message = f"AI generation failed: {e}"
        raise NodeHandlerError(
            message,
            node_id=node.id,
            original=e,
            partial_output={"content": None, "usage": None, "error": str(e), "timestamp": _now()},
        ) from e


async def handle_ai_completion(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    settings = node_settings(node)
    if not settings.get("userPrompt") and not settings.get("systemPrompt"):
        raise ConfigurationError("AI node requires a systemPrompt or userPrompt", node_id=node.id)

    provider = context.services.require("ai_provider")
    system_prompt = build_system_prompt(settings, context)
    user_prompt = build_user_prompt(settings, context)
    options = _completion_options(settings)

    async def call():
        response = await provider.complete(system_prompt, user_prompt, options)
        if response.ok and settings.get("outputFormat") == "json":
            try:
                response.metadata["processedData"] = json.loads(response.content or "")
            except ValueError as e:
                return type(response)(error=f"Invalid JSON response: {e}", model=response.model)
        return response

    response = await call_provider(node, context, settings, call)
    output = {
        "content": response.content,
        "usage": response.usage,
        "model": response.model or options.get("model"),
        "prompt": user_prompt,
        "timestamp": _now(),
    }
    if "processedData" in response.metadata:
        output["processedData"] = response.metadata["processedData"]
    return output


async def handle_custom_assistant(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    settings = node_settings(node)
    assistant_id = settings.get("assistantId")
    if not assistant_id:
        raise ConfigurationError("Assistant ID is required for custom-assistant node", node_id=node.id)

    provider = context.services.require("ai_provider")
    message = context.variables.interpolate(settings.get("message") or "")
    thread_id = "new" if settings.get("createNewThread") else context.variables.interpolate(
        settings.get("threadId") or "new"
    )
    options = {
        **_completion_options(settings),
        "thread_id": thread_id,
        "instructions": settings.get("instructions"),
    }

    response = await call_provider(
        node, context, settings, lambda: provider.run_assistant(assistant_id, message, options)
    )

    if response.thread_id and not settings.get("createNewThread"):
        context.variables.set(VariableScope.EXECUTION, "lastThreadId", response.thread_id)

    return {
        "assistantId": assistant_id,
        "assistantName": settings.get("assistantName"),
        "threadId": response.thread_id or thread_id,
        "message": message,
        "content": response.content,
        "usage": response.usage,
        "timestamp": _now(),
    }


async def handle_assistant_manager(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    settings = node_settings(node)
    provider = context.services.require("ai_provider")
    system_prompt = context.variables.interpolate(
        settings.get("systemPrompt") or "You coordinate specialist assistants and report results."
    )
    system_prompt += "\n\n" + JSON_ONLY_INSTRUCTION
    user_prompt = context.variables.interpolate(
        settings.get("task") or settings.get("userPrompt") or settings.get("message") or ""
    )
    options = {**_completion_options(settings), "response_format": "json"}

    async def call():
        response = await provider.complete(system_prompt, user_prompt, options)
        if response.ok:
            try:
                response.metadata["processedData"] = json.loads(response.content or "")
            except ValueError as e:
                return type(response)(error=f"Assistant manager returned invalid JSON: {e}", model=response.model)
        return response

    response = await call_provider(node, context, settings, call)
    result = response.metadata["processedData"]
    if not isinstance(result, dict):
        result = {"result": result}
    return {**result, "success": True, "timestamp": _now()}


# =============================================================================
# Decisions
# =============================================================================


def handle_condition(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    """
    Evaluate ``config.condition`` (expression) and/or ``config.conditions``
    (structured list); both must hold when both are given.
    """
    expression = node.config.get("condition")
    conditions = node.config.get("conditions")
    if not expression and not conditions:
        raise ConfigurationError("Condition node requires 'condition' or 'conditions'", node_id=node.id)

    resolve = context.variables.resolve
    result = True
    if expression:
        result = evaluate_expression(str(expression), resolve)
    if result and conditions:
        result = evaluate_conditions(conditions, resolve)

    logger.debug("Condition evaluated", node_id=node.id, result=result)
    return {
        "condition": expression if expression else conditions,
        "result": result,
        "evaluatedAt": _now(),
    }


_ROUTER_DEFAULTS = {
    "stage": "SQL",
    "value": 0,
    "priority": "normal",
    "owner": "unassigned",
}


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def handle_router(node: WorkflowNode, context: "ExecutionContext") -> Dict[str, Any]:
    """
    Pick one route from the node's route table.

    The lookup value comes from ``config.lookupPath`` or, by default, from
    ``execution.formData.fields.<routerType>``.
    """
    router_type = node.config.get("routerType", "stage")
    selected_route = "default"

    if router_type in _ROUTER_DEFAULTS:
        path = node.config.get("lookupPath") or f"execution.formData.fields.{router_type}"
        value = context.variables.resolve(path)
        if value is None or value == "":
            value = _ROUTER_DEFAULTS[router_type]

        if router_type == "stage":
            selected_route = node.config.get(f"route_{value}") or node.config.get("routes", {}).get(str(value)) or "continue"
        elif router_type == "value":
            amount = _as_float(value)
            if amount > 100000:
                selected_route = "high"
            elif amount > 10000:
                selected_route = "medium"
            else:
                selected_route = "low"
        else:
            selected_route = str(value)

    logger.debug("Router selected route", node_id=node.id, router_type=router_type, route=selected_route)
    return {
        "routerType": router_type,
        "selectedRoute": selected_route,
        "routeData": {k: v for k, v in node.config.items() if k.startswith("route")},
        "input": context.variables.get(VariableScope.EXECUTION, "formData"),
    }


def register_handlers(registry: "NodeRegistry") -> None:
    registry.register(NodeKind.TRIGGER, handle_trigger)
    registry.register(NodeKind.FORM, handle_form)
    registry.register(NodeKind.AI_COMPLETION, handle_ai_completion)
    registry.register(NodeKind.CUSTOM_ASSISTANT, handle_custom_assistant)
    registry.register(NodeKind.ASSISTANT_MANAGER, handle_assistant_manager)
    registry.register(NodeKind.CONDITION, handle_condition)
    registry.register(NodeKind.ROUTER, handle_router)
