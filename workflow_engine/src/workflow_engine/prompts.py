"""Prompt and context assembly for a single task.

Context is built in the task's declared dependency order and encoded with a fixed
JSON layout, so the same inputs always produce byte-identical provider requests.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

from .models import Agent, Task

WORKFLOW_INPUT_KEY = "workflowInput"

_CONTEXT_HINT = "You have access to outputs from previous tasks in the context."
_DEFAULT_INSTRUCTION = "Please execute this task and provide the result."


def build_context(
    task: Task,
    prior_outputs: Mapping[str, Any],
    workflow_input: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Collect dependency outputs (declared order) plus the workflow-level input."""
    context: Dict[str, Any] = {}
    for dep_id in task.dependencies:
        if dep_id in prior_outputs and dep_id not in context:
            context[dep_id] = prior_outputs[dep_id]
    if workflow_input:
        context[WORKFLOW_INPUT_KEY] = dict(workflow_input)
    return context


def build_prompt(task: Task, agent: Agent, has_context: bool = False) -> str:
    override = task.prompt_override
    if override:
        return override

    capabilities = ", ".join(agent.capabilities)
    lines = [
        f"Task: {task.name}",
        f"Description: {task.description}",
        f"Agent Role: {agent.role}",
        f"Agent Description: {agent.description}",
        f"Agent Capabilities: {capabilities}",
        "",
        _DEFAULT_INSTRUCTION,
    ]
    if has_context:
        lines.append("")
        lines.append(_CONTEXT_HINT)
    return "\n".join(lines).strip()


def encode_context(context: Mapping[str, Any]) -> str:
    # Key order comes from build_context; keys are not re-sorted
    return json.dumps(context, indent=2, ensure_ascii=False, default=str)


def compose_user_content(prompt: str, context: Optional[Mapping[str, Any]]) -> str:
    """Prepend the encoded context block when there is one."""
    if not context:
        return prompt
    return f"Context: {encode_context(context)}\n\n{prompt}"
