"""Tests for plan parsing and validation."""

from __future__ import annotations

from textwrap import dedent

import pytest
from conftest import build_plan, milestone, single_phase

from conductor.agent.base import EchoAgent
from conductor.errors import PlanError
from conductor.orchestrator.plan import (
    AgentSettings,
    builtin_plan,
    load_plan,
    parse_plan,
    parse_plan_yaml,
    serialize_plan,
    validate_plan,
)
from conductor.state import MilestoneStatus, PhaseStatus


def phase(ordinal: int, *milestones, prerequisites=None) -> dict:
    data = single_phase(*milestones, ordinal=ordinal)
    if prerequisites is not None:
        data["prerequisites"] = prerequisites
    return data


# =============================================================================
# Parsing
# =============================================================================


class TestParsePlan:
    def test_minimal(self):
        plan = build_plan([phase(1, milestone("m", ["a"]))])
        assert plan.name == "test"
        assert plan.phases[0].milestones[0].agents == ["a"]
        assert plan.phases[0].milestones[0].critical is True

    def test_agent_settings(self):
        plan = build_plan(
            [phase(1, milestone("m", ["a", "b"]))],
            agents={
                "a": {"max_concurrent": 3, "priority": 10, "estimated_duration": "2.5"},
                "b": {"depends_on": "a", "fallback": "c"},
            },
        )
        a = plan.agents["a"]
        assert (a.max_concurrent, a.priority, a.estimated_duration) == (3, 10, 2.5)
        assert plan.agents["b"].depends_on == ["a"]
        assert plan.concurrency() == {"a": 3, "b": 1}

    @pytest.mark.parametrize(
        "data, message",
        [
            ([], "YAML mapping"),
            ({"name": "x"}, "at least one phase"),
            ({"phases": [{"ordinal": 0}]}, "positive integer"),
            ({"phases": [{"ordinal": True}]}, "positive integer"),
            ({"phases": [{"ordinal": 1, "prerequisites": ["one"]}]}, "list of ordinals"),
            ({"phases": [{"ordinal": 1, "milestones": [{"agents": ["a"]}]}]}, "missing 'id'"),
            ({"phases": [{"ordinal": 1, "milestones": ["m"]}]}, "must be mappings"),
            ({"phases": [{"ordinal": 1}], "agents": ["a"]}, "'agents' must be a mapping"),
            (
                {"phases": [{"ordinal": 1}], "agents": {"a": {"max_concurrent": "many"}}},
                "Invalid plan value",
            ),
        ],
    )
    def test_malformed(self, data, message):
        with pytest.raises(PlanError, match=message):
            parse_plan(data)

    def test_yaml(self):
        plan = parse_plan_yaml(
            dedent(
                """
                name: yaml-plan
                goal: Ship it
                phases:
                  - ordinal: 1
                    milestones:
                      - id: build
                        agents: builder
                        critical: false
                """
            )
        )
        assert plan.goal == "Ship it"
        assert plan.phases[0].name == "Phase 1"
        assert plan.phases[0].milestones[0].agents == ["builder"]
        assert plan.phases[0].milestones[0].critical is False

    def test_invalid_yaml(self):
        with pytest.raises(PlanError, match="Invalid YAML"):
            parse_plan_yaml("phases: [unclosed")

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(PlanError, match="Plan file not found"):
            load_plan(tmp_path / "missing.yaml")

    def test_serialize_round_trip(self):
        plan = builtin_plan()
        again = parse_plan_yaml(serialize_plan(plan))
        assert again.to_dict() == plan.to_dict()


# =============================================================================
# Validation
# =============================================================================


class TestAgentSettings:
    @pytest.mark.parametrize(
        "kwargs, message",
        [
            ({"name": ""}, "name is required"),
            ({"name": "a", "max_concurrent": 0}, "max_concurrent >= 1"),
            ({"name": "a", "priority": 100}, "within 0-99"),
            ({"name": "a", "priority": -1}, "within 0-99"),
            ({"name": "a", "fallback": "a"}, "own fallback"),
        ],
    )
    def test_invalid(self, kwargs, message):
        with pytest.raises(PlanError, match=message):
            AgentSettings(**kwargs)


class TestValidatePlan:
    def problems(self, phases, agents=None) -> str:
        with pytest.raises(PlanError) as exc_info:
            build_plan(phases, agents)
        return str(exc_info.value)

    def test_unknown_prerequisite(self):
        assert "unknown prerequisite 3" in self.problems(
            [phase(1, milestone("m", ["a"]), prerequisites=[3])]
        )

    def test_self_prerequisite(self):
        assert "itself as a prerequisite" in self.problems(
            [phase(1, milestone("m", ["a"]), prerequisites=[1])]
        )

    def test_phase_cycle(self):
        message = self.problems(
            [
                phase(1, milestone("m", ["a"]), prerequisites=[2]),
                phase(2, milestone("n", ["a"]), prerequisites=[1]),
            ]
        )
        assert "Phase prerequisite cycle" in message

    def test_duplicate_ordinals(self):
        assert "Duplicate phase ordinals: [1]" in self.problems(
            [phase(1, milestone("m", ["a"])), phase(1, milestone("n", ["a"]))]
        )

    def test_milestone_problems(self):
        message = self.problems(
            [
                phase(
                    1,
                    milestone("m", []),
                    milestone("m", ["a"]),
                    milestone("x", ["a"], depends_on=["ghost"]),
                )
            ]
        )
        assert "has no agents" in message
        assert "duplicate milestones: ['m']" in message
        assert "unknown milestone 'ghost'" in message

    def test_milestone_cycle(self):
        message = self.problems(
            [
                phase(
                    1,
                    milestone("x", ["a"], depends_on=["y"]),
                    milestone("y", ["a"], depends_on=["x"]),
                )
            ]
        )
        assert "Milestone dependency cycle in phase 1" in message

    def test_agent_dependency_problems(self):
        message = self.problems(
            [phase(1, milestone("m", ["a", "b"]))],
            agents={"a": {"depends_on": ["b", "ghost"]}, "b": {"depends_on": ["a"]}},
        )
        assert "depends on unknown agent 'ghost'" in message
        assert "Agent dependency cycle" in message

    def test_all_problems_reported_together(self):
        message = self.problems(
            [phase(1, milestone("m", []), prerequisites=[9])],
        )
        assert message.count("; ") == 1

    def test_valid_plan_has_no_problems(self):
        assert validate_plan(builtin_plan()) == []


# =============================================================================
# Derived values
# =============================================================================


class TestPlanQueries:
    def setup_method(self):
        self.plan = build_plan(
            [
                phase(1, milestone("m", ["a", "b"])),
                phase(2, milestone("n", ["b", "c"]), prerequisites=[1]),
                phase(3, milestone("o", ["a"]), prerequisites=[2]),
            ],
            agents={"a": {"priority": 7}, "b": {"fallback": "senior"}},
        )

    def test_agent_types_include_fallbacks(self):
        assert self.plan.agent_types == ["a", "b", "c", "senior"]

    def test_earlier_phases_outrank_later(self):
        assert self.plan.task_priority(1, "b") == 300
        assert self.plan.task_priority(1, "a") == 307
        assert self.plan.task_priority(3, "a") == 107
        assert self.plan.task_priority(2, "c") > self.plan.task_priority(3, "a")

    def test_settings_default_for_undeclared_agent(self):
        settings = self.plan.settings_for("c")
        assert settings.max_concurrent == 1
        assert settings.priority == 0

    def test_build_state(self):
        state = self.plan.build_state(goal="override")
        assert state.goal == "override"
        assert [p.ordinal for p in state.phases] == [1, 2, 3]
        assert all(p.status == PhaseStatus.NOT_STARTED for p in state.phases)
        assert state.phases[1].prerequisites == [1]
        assert state.phases[1].required_agents == ["b", "c"]
        assert state.phases[0].milestones[0].status == MilestoneStatus.PENDING


class TestAgentFactories:
    def test_builtin_plan_loads_echo_agents(self):
        plan = builtin_plan()
        agents = plan.load_agents()
        assert set(agents) == {"architect", "builder", "tester", "scanner", "documenter"}
        assert all(isinstance(a, EchoAgent) for a in agents.values())
        assert agents["builder"].agent_type == "builder"

    @pytest.mark.parametrize(
        "factory, message",
        [
            ("no_colon", "must look like 'module:attr'"),
            ("conductor.nope:Agent", "Cannot load factory"),
            ("conductor.agent.base:Missing", "Cannot load factory"),
            ("conductor.ids:IdSequence", "did not return an Agent"),
        ],
    )
    def test_bad_factory(self, factory, message):
        plan = build_plan([phase(1, milestone("m", ["a"]))], agents={"a": {"factory": factory}})
        with pytest.raises(PlanError, match=message):
            plan.load_agents()

    def test_unknown_builtin(self):
        with pytest.raises(PlanError, match="Plan file not found"):
            builtin_plan("nope")
