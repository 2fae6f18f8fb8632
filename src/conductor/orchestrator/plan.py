"""Static phase plans.

A plan declares the phases, their milestones and the agents each milestone
needs. Plans are written in YAML and loaded once when an orchestrator is
built.

Example plan:
```yaml
name: release
goal: Ship the payment service
agents:
  architect:
    priority: 20
  builder:
    max_concurrent: 2
    depends_on: [architect]
    fallback: senior-builder
  scanner:
    factory: mypackage.agents:SecurityScanner
phases:
  - ordinal: 1
    name: Foundation
    milestones:
      - id: design
        name: Architecture design
        agents: [architect, builder]
  - ordinal: 2
    name: Hardening
    prerequisites: [1]
    milestones:
      - id: scan
        name: Security scan
        agents: [scanner]
        validation: scan-report
```
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..agent.base import Agent
from ..errors import PlanError
from ..state import Milestone, OrchestratorState, Phase

logger = logging.getLogger(__name__)

PLANS_DIR = Path(__file__).parent / "plans"
DEFAULT_PLAN_NAME = "default"


@dataclass
class AgentSettings:
    """Per-agent scheduling settings.

    Attributes:
        name: Agent type.
        max_concurrent: Concurrency ceiling for this agent type.
        priority: Added to the phase priority of each task (0-99).
        depends_on: Agent types whose task in the same milestone must
            succeed before this agent's task is dispatched.
        fallback: Agent type to re-issue the task to after a terminal failure.
        factory: ``module:attr`` import path building the agent.
        estimated_duration: Expected seconds per task, for the ledger.
    """

    name: str
    max_concurrent: int = 1
    priority: int = 0
    depends_on: list[str] = field(default_factory=list)
    fallback: str | None = None
    factory: str | None = None
    estimated_duration: float | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise PlanError("Agent name is required")
        if self.max_concurrent < 1:
            raise PlanError(f"Agent '{self.name}' needs max_concurrent >= 1")
        if not 0 <= self.priority < 100:
            raise PlanError(f"Agent '{self.name}' priority must be within 0-99")
        if self.fallback == self.name:
            raise PlanError(f"Agent '{self.name}' cannot be its own fallback")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "max_concurrent": self.max_concurrent,
            "priority": self.priority,
        }
        if self.depends_on:
            data["depends_on"] = list(self.depends_on)
        if self.fallback:
            data["fallback"] = self.fallback
        if self.factory:
            data["factory"] = self.factory
        if self.estimated_duration is not None:
            data["estimated_duration"] = self.estimated_duration
        return data


@dataclass
class MilestoneSpec:
    id: str
    name: str
    agents: list[str]
    description: str = ""
    validation: str | None = None
    critical: bool = True
    depends_on: list[str] = field(default_factory=list)


@dataclass
class PhaseSpec:
    ordinal: int
    name: str
    milestones: list[MilestoneSpec] = field(default_factory=list)
    description: str = ""
    prerequisites: list[int] = field(default_factory=list)

    @property
    def required_agents(self) -> list[str]:
        seen: list[str] = []
        for milestone in self.milestones:
            for agent in milestone.agents:
                if agent not in seen:
                    seen.append(agent)
        return seen


@dataclass
class Plan:
    name: str
    phases: list[PhaseSpec]
    agents: dict[str, AgentSettings] = field(default_factory=dict)
    description: str = ""
    goal: str = ""

    def phase(self, ordinal: int) -> PhaseSpec | None:
        for phase in self.phases:
            if phase.ordinal == ordinal:
                return phase
        return None

    @property
    def agent_types(self) -> list[str]:
        names: list[str] = []
        for phase in self.phases:
            for agent in phase.required_agents:
                if agent not in names:
                    names.append(agent)
        for settings in self.agents.values():
            if settings.fallback and settings.fallback not in names:
                names.append(settings.fallback)
        return names

    def settings_for(self, agent_type: str) -> AgentSettings:
        return self.agents.get(agent_type) or AgentSettings(name=agent_type)

    def task_priority(self, ordinal: int, agent_type: str) -> int:
        """Earlier phases outrank later ones; agent priority breaks ties within a phase."""
        highest = max((p.ordinal for p in self.phases), default=ordinal)
        return (highest + 1 - ordinal) * 100 + self.settings_for(agent_type).priority

    def concurrency(self) -> dict[str, int]:
        return {name: s.max_concurrent for name, s in self.agents.items()}

    def build_state(self, goal: str | None = None) -> OrchestratorState:
        """Create the initial orchestrator state for this plan."""
        phases = [
            Phase(
                ordinal=spec.ordinal,
                name=spec.name,
                description=spec.description,
                prerequisites=list(spec.prerequisites),
                required_agents=spec.required_agents,
                milestones=[
                    Milestone(
                        id=m.id,
                        name=m.name,
                        description=m.description,
                        required_agents=list(m.agents),
                        validation_ref=m.validation,
                        critical=m.critical,
                        depends_on=list(m.depends_on),
                    )
                    for m in spec.milestones
                ],
            )
            for spec in sorted(self.phases, key=lambda p: p.ordinal)
        ]
        return OrchestratorState(goal=goal if goal is not None else self.goal, phases=phases)

    def load_agents(self) -> dict[str, Agent]:
        """Instantiate agents that declare a ``factory`` import path."""
        agents: dict[str, Agent] = {}
        for name, settings in self.agents.items():
            if settings.factory:
                agents[name] = _load_factory(settings.factory, name)
        return agents

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "goal": self.goal,
            "agents": {name: s.to_dict() for name, s in self.agents.items()},
            "phases": [
                {
                    "ordinal": p.ordinal,
                    "name": p.name,
                    "description": p.description,
                    "prerequisites": list(p.prerequisites),
                    "milestones": [
                        {
                            "id": m.id,
                            "name": m.name,
                            "description": m.description,
                            "agents": list(m.agents),
                            "validation": m.validation,
                            "critical": m.critical,
                            "depends_on": list(m.depends_on),
                        }
                        for m in p.milestones
                    ],
                }
                for p in self.phases
            ],
        }


def _load_factory(path: str, agent_type: str) -> Agent:
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise PlanError(f"Agent '{agent_type}' factory must look like 'module:attr', got '{path}'")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise PlanError(f"Cannot load factory '{path}' for agent '{agent_type}': {e}") from e
    agent = factory()
    if not isinstance(agent, Agent):
        raise PlanError(f"Factory '{path}' did not return an Agent for '{agent_type}'")
    if not agent.agent_type:
        agent.agent_type = agent_type
    return agent


def _find_cycle(graph: dict[Any, list[Any]]) -> list[Any] | None:
    """Return one cycle in ``graph`` as a node list, or None."""
    visiting: set[Any] = set()
    done: set[Any] = set()
    stack: list[Any] = []

    def visit(node: Any) -> list[Any] | None:
        visiting.add(node)
        stack.append(node)
        for nxt in graph.get(node, []):
            if nxt in visiting:
                return stack[stack.index(nxt):] + [nxt]
            if nxt not in done and nxt in graph:
                found = visit(nxt)
                if found:
                    return found
        visiting.discard(node)
        done.add(node)
        stack.pop()
        return None

    for node in graph:
        if node not in done:
            found = visit(node)
            if found:
                return found
    return None


def validate_plan(plan: Plan) -> list[str]:
    """Return a list of problems with ``plan`` (empty when valid)."""
    problems: list[str] = []
    if not plan.phases:
        problems.append(f"Plan '{plan.name}' has no phases")

    ordinals = [p.ordinal for p in plan.phases]
    duplicates = sorted({o for o in ordinals if ordinals.count(o) > 1})
    if duplicates:
        problems.append(f"Duplicate phase ordinals: {duplicates}")

    known = set(ordinals)
    for phase in plan.phases:
        for prereq in phase.prerequisites:
            if prereq == phase.ordinal:
                problems.append(f"Phase {phase.ordinal} lists itself as a prerequisite")
            elif prereq not in known:
                problems.append(f"Phase {phase.ordinal} has unknown prerequisite {prereq}")

        ids = [m.id for m in phase.milestones]
        dup_ids = sorted({i for i in ids if ids.count(i) > 1})
        if dup_ids:
            problems.append(f"Phase {phase.ordinal} has duplicate milestones: {dup_ids}")
        for milestone in phase.milestones:
            if not milestone.agents:
                problems.append(f"Milestone '{milestone.id}' has no agents")
            for dep in milestone.depends_on:
                if dep not in ids or dep == milestone.id:
                    problems.append(
                        f"Milestone '{milestone.id}' depends on unknown milestone '{dep}'"
                    )
        cycle = _find_cycle({m.id: list(m.depends_on) for m in phase.milestones})
        if cycle:
            problems.append(f"Milestone dependency cycle in phase {phase.ordinal}: {cycle}")

    cycle = _find_cycle({p.ordinal: list(p.prerequisites) for p in plan.phases})
    if cycle:
        problems.append(f"Phase prerequisite cycle: {cycle}")

    agent_names = set(plan.agent_types) | set(plan.agents)
    for settings in plan.agents.values():
        for dep in settings.depends_on:
            if dep not in agent_names:
                problems.append(f"Agent '{settings.name}' depends on unknown agent '{dep}'")
    cycle = _find_cycle({name: list(s.depends_on) for name, s in plan.agents.items()})
    if cycle:
        problems.append(f"Agent dependency cycle: {cycle}")

    return problems


def _str_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise PlanError(f"{where} must be a list")
    return [str(v) for v in value]


def parse_milestone(data: dict[str, Any], phase: int) -> MilestoneSpec:
    if not isinstance(data, dict):
        raise PlanError(f"Milestones of phase {phase} must be mappings")
    milestone_id = data.get("id")
    if not milestone_id:
        raise PlanError(f"Milestone in phase {phase} is missing 'id'")
    return MilestoneSpec(
        id=str(milestone_id),
        name=str(data.get("name", milestone_id)),
        description=str(data.get("description", "")),
        agents=_str_list(data.get("agents"), f"Milestone '{milestone_id}' agents"),
        validation=data.get("validation"),
        critical=bool(data.get("critical", True)),
        depends_on=_str_list(data.get("depends_on"), f"Milestone '{milestone_id}' depends_on"),
    )


def parse_phase(data: dict[str, Any]) -> PhaseSpec:
    if not isinstance(data, dict):
        raise PlanError("Each phase must be a mapping")
    ordinal = data.get("ordinal")
    if not isinstance(ordinal, int) or isinstance(ordinal, bool) or ordinal < 1:
        raise PlanError(f"Phase ordinal must be a positive integer, got {ordinal!r}")
    prerequisites = data.get("prerequisites") or []
    if not isinstance(prerequisites, list) or not all(isinstance(p, int) for p in prerequisites):
        raise PlanError(f"Phase {ordinal} prerequisites must be a list of ordinals")
    return PhaseSpec(
        ordinal=ordinal,
        name=str(data.get("name", f"Phase {ordinal}")),
        description=str(data.get("description", "")),
        prerequisites=list(prerequisites),
        milestones=[parse_milestone(m, ordinal) for m in data.get("milestones") or []],
    )


def parse_agents(data: Any) -> dict[str, AgentSettings]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PlanError("'agents' must be a mapping of agent name to settings")
    agents = {}
    for name, settings in data.items():
        settings = settings or {}
        if not isinstance(settings, dict):
            raise PlanError(f"Settings for agent '{name}' must be a mapping")
        estimated = settings.get("estimated_duration")
        agents[str(name)] = AgentSettings(
            name=str(name),
            max_concurrent=int(settings.get("max_concurrent", 1)),
            priority=int(settings.get("priority", 0)),
            depends_on=_str_list(settings.get("depends_on"), f"Agent '{name}' depends_on"),
            fallback=settings.get("fallback"),
            factory=settings.get("factory"),
            estimated_duration=float(estimated) if estimated is not None else None,
        )
    return agents


def parse_plan(data: Any) -> Plan:
    """Build and validate a plan from parsed YAML data."""
    if not isinstance(data, dict):
        raise PlanError("Plan must be a YAML mapping")
    phases = data.get("phases")
    if not isinstance(phases, list) or not phases:
        raise PlanError("Plan must have at least one phase")

    try:
        plan = Plan(
            name=str(data.get("name", "unnamed")),
            description=str(data.get("description", "")),
            goal=str(data.get("goal", "")),
            agents=parse_agents(data.get("agents")),
            phases=[parse_phase(p) for p in phases],
        )
    except PlanError:
        raise
    except (TypeError, ValueError) as e:
        raise PlanError(f"Invalid plan value: {e}") from e
    problems = validate_plan(plan)
    if problems:
        raise PlanError("; ".join(problems))
    return plan


def parse_plan_yaml(content: str) -> Plan:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PlanError(f"Invalid YAML: {e}") from e
    return parse_plan(data)


def load_plan(path: Path | str) -> Plan:
    """Load a plan from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise PlanError(f"Plan file not found: {path}")
    plan = parse_plan_yaml(path.read_text())
    logger.debug("Loaded plan '%s' from %s", plan.name, path)
    return plan


def builtin_plan(name: str = DEFAULT_PLAN_NAME) -> Plan:
    """Load a plan bundled with the package."""
    return load_plan(PLANS_DIR / f"{name}.yaml")


def serialize_plan(plan: Plan) -> str:
    result: str = yaml.safe_dump(plan.to_dict(), default_flow_style=False, sort_keys=False)
    return result
