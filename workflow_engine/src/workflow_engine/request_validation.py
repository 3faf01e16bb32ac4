"""Helpers for turning a submitted workflow document into typed definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from . import config
from .models import Agent, Task, Workflow


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    """Return the first present key, so camelCase and snake_case both work."""
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class ExecutionRequest:
    workflow: Optional[Workflow]
    input: Optional[Dict[str, Any]] = None
    credentials: Dict[str, str] = field(default_factory=dict)
    problems: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.workflow is not None and not self.problems


def _parse_agent(raw: Any, index: int, problems: List[str]) -> Optional[Agent]:
    where = f"agents[{index}]"
    if not isinstance(raw, Mapping):
        problems.append(f"{where} must be an object")
        return None
    agent_id = _clean_str(raw.get("id"))
    if not agent_id:
        problems.append(f"{where}.id is required")
        return None

    capabilities = raw.get("capabilities") or []
    if isinstance(capabilities, str):
        capabilities = [capabilities]
    if not isinstance(capabilities, list):
        problems.append(f"{where}.capabilities must be a list of strings")
        capabilities = []

    temperature = raw.get("temperature")
    if temperature is not None and not _is_number(temperature):
        problems.append(f"{where}.temperature must be a number")
        temperature = None

    max_tokens = _pick(raw, "maxTokens", "max_tokens")
    if max_tokens is not None and (not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens <= 0):
        problems.append(f"{where}.maxTokens must be a positive integer")
        max_tokens = None

    system_prompt = _pick(raw, "systemPrompt", "system_prompt")
    return Agent(
        id=agent_id,
        name=_clean_str(raw.get("name")),
        role=_clean_str(raw.get("role")),
        description=_clean_str(raw.get("description")),
        capabilities=[_clean_str(c) for c in capabilities if _clean_str(c)],
        model=_clean_str(raw.get("model")),
        temperature=float(temperature) if temperature is not None else None,
        max_tokens=max_tokens,
        system_prompt=_clean_str(system_prompt) or None,
    )


def _parse_task(raw: Any, index: int, problems: List[str]) -> Optional[Task]:
    where = f"tasks[{index}]"
    if not isinstance(raw, Mapping):
        problems.append(f"{where} must be an object")
        return None
    task_id = _clean_str(raw.get("id"))
    if not task_id:
        problems.append(f"{where}.id is required")
        return None

    dependencies = raw.get("dependencies") or []
    if not isinstance(dependencies, list):
        problems.append(f"{where}.dependencies must be a list of task ids")
        dependencies = []
    deps: List[str] = []
    for dep in dependencies:
        dep_id = _clean_str(dep)
        if dep_id and dep_id not in deps:
            deps.append(dep_id)

    task_input = raw.get("input") or {}
    if not isinstance(task_input, Mapping):
        problems.append(f"{where}.input must be an object")
        task_input = {}

    max_retries = _pick(raw, "maxRetries", "max_retries")
    if max_retries is not None and (not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0):
        problems.append(f"{where}.maxRetries must be a non-negative integer")
        max_retries = None

    prompt = raw.get("prompt")
    return Task(
        id=task_id,
        name=_clean_str(raw.get("name")) or task_id,
        description=_clean_str(raw.get("description")),
        agent_id=_clean_str(_pick(raw, "agentId", "agent_id")),
        dependencies=deps,
        input=dict(task_input),
        prompt=prompt if isinstance(prompt, str) and prompt.strip() else None,
        max_retries=max_retries,
    )


def _parse_list(raw: Mapping[str, Any], key: str, limit: int, problems: List[str]) -> List[Any]:
    items = raw.get(key)
    if not isinstance(items, list) or not items:
        problems.append(f"workflow.{key} must be a non-empty list")
        return []
    if len(items) > limit:
        problems.append(f"workflow.{key} has {len(items)} entries; at most {limit} allowed")
    return items


def _duplicates(ids: List[str]) -> List[str]:
    seen, dupes = set(), []
    for item in ids:
        if item in seen and item not in dupes:
            dupes.append(item)
        seen.add(item)
    return dupes


def sanitize_credentials(raw: Any, problems: List[str]) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        problems.append("credentials must be an object of provider -> key")
        return {}
    creds: Dict[str, str] = {}
    for provider, key in raw.items():
        if key is None:
            continue
        if not isinstance(key, str):
            problems.append(f"credentials.{provider} must be a string")
            continue
        if key.strip():
            creds[_clean_str(provider).lower()] = key.strip()
    return creds


def sanitize_execution_request(raw: Any) -> ExecutionRequest:
    """Validate a submission. Dangling agent/dependency references are left for run time."""
    problems: List[str] = []
    if not isinstance(raw, Mapping):
        return ExecutionRequest(workflow=None, problems=["request body must be a JSON object"])

    doc = _pick(raw, "workflowData", "workflow_data", "workflow")
    if not isinstance(doc, Mapping):
        return ExecutionRequest(workflow=None, problems=["workflow is required and must be an object"])

    raw_tasks = _parse_list(doc, "tasks", config.MAX_WORKFLOW_TASKS, problems)
    raw_agents = _parse_list(doc, "agents", config.MAX_WORKFLOW_AGENTS, problems)
    tasks = [t for t in (_parse_task(item, i, problems) for i, item in enumerate(raw_tasks)) if t]
    agents = [a for a in (_parse_agent(item, i, problems) for i, item in enumerate(raw_agents)) if a]

    for dupe in _duplicates([t.id for t in tasks]):
        problems.append(f"duplicate task id: {dupe}")
    for dupe in _duplicates([a.id for a in agents]):
        problems.append(f"duplicate agent id: {dupe}")

    workflow_input = raw.get("input")
    if workflow_input is not None and not isinstance(workflow_input, Mapping):
        problems.append("input must be an object")
        workflow_input = None

    credentials = sanitize_credentials(_pick(raw, "apiKeys", "api_keys", "credentials"), problems)

    workflow = Workflow(
        id=_clean_str(doc.get("id")) or "inline",
        name=_clean_str(doc.get("name")),
        tasks=tasks,
        agents=agents,
    )
    return ExecutionRequest(
        workflow=workflow,
        input=dict(workflow_input) if workflow_input else None,
        credentials=credentials,
        problems=problems,
    )
