"""
Tests for the analyze-then-act router: direct actions, planning, plan
execution with fallbacks, and the keyword classifier.
"""

from typing import Optional

import pytest

from codeagent.domain.models.conversation_state import CompletionStatus, HistoryPhase
from codeagent.domain.models.plan import AnalysisResult, AnalysisType, Plan, PlanStatus, PlanStep, StepStatus
from codeagent.domain.orchestration.core.base_strategy import MAX_ITERATIONS_NOTE
from codeagent.domain.orchestration.core.reasoning import Planner, RequestClassifier
from codeagent.domain.orchestration.router.input_analyzer import KeywordInputAnalyzer
from codeagent.domain.orchestration.router.orchestration_router import OrchestrationRouter
from codeagent.domain.tool.tool_models import ToolDefinition

from conftest import ALL_TEST_TOOLS, FakeReasoningService, event_types


class FakePlanner(Planner):

    def __init__(self, plan: Optional[Plan] = None, error: Optional[Exception] = None):
        self.plan = plan
        self.error = error
        self.calls = 0

    async def create_plan(self, state, capability_descriptions) -> Plan:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.plan if self.plan is not None else Plan(goal=state.user_message)


def plan_of(*steps: PlanStep) -> Plan:
    return Plan(goal="test", steps=list(steps))


class FixedClassifier(RequestClassifier):

    def __init__(self, analysis: AnalysisResult):
        self.analysis = analysis

    async def classify(self, message, tools) -> AnalysisResult:
        return self.analysis


@pytest.fixture
def build(dispatcher, registry, memory, state_store, broker, settings):
    def _build(planner: Planner, reasoning=None, classifier=None):
        return OrchestrationRouter(
            dispatcher=dispatcher,
            registry=registry,
            memory=memory,
            reasoning=reasoning or FakeReasoningService(final_response="Summary."),
            settings=settings,
            state_store=state_store,
            broker=broker,
            planner=planner,
            classifier=classifier,
        )
    return _build


class TestDirectAction:

    @pytest.mark.asyncio
    async def test_explicit_request_skips_planning(self, build, state_store):
        planner = FakePlanner()
        state = await state_store.get_or_create("c1", 'read file path="README.md"')

        state = await build(planner).run(state)

        assert planner.calls == 0
        assert state.completion_status == CompletionStatus.COMPLETED
        assert state.iteration_count == 1
        assert state.action_result.result == "# Demo\n"
        assert state.final_output == "Summary."

    @pytest.mark.asyncio
    async def test_failed_direct_action_falls_back_to_planning(self, build, state_store):
        planner = FakePlanner(plan_of(PlanStep(tool_name="listFiles")))
        state = await state_store.get_or_create("c1", 'read file path="missing.py"')

        state = await build(planner).run(state)

        assert planner.calls == 1
        assert state.completion_status == CompletionStatus.COMPLETED
        assert "Direct action 'read_file' failed" in state.error
        assert [e.metadata["status"] for e in state.history if e.phase == HistoryPhase.ACTION] == ["error", "success"]

    @pytest.mark.asyncio
    async def test_direct_response_tool_completes(self, build, state_store):
        planner = FakePlanner()
        reasoning = FakeReasoningService()
        state = await state_store.get_or_create("c1", 'respond send answer message="hi"')

        state = await build(planner, reasoning).run(state)

        assert state.final_output == "hi"
        assert reasoning.final_calls == 0
        assert planner.calls == 0

    @pytest.mark.asyncio
    async def test_response_tool_without_data_uses_its_message(self, build, state_store, registry):
        registry.register(ToolDefinition(
            name="final_answer",
            description="Deliver the answer",
            parameters_schema={"type": "object", "properties": {"message": {"type": "string"}}},
            execute=lambda params, context: None,
        ))
        classifier = FixedClassifier(AnalysisResult(
            type=AnalysisType.DIRECT_ACTION,
            tool_name="final_answer",
            parameters={"message": "Done."},
            confidence=1.0,
        ))
        state = await state_store.get_or_create("c1", "finish up")

        state = await build(FakePlanner(), classifier=classifier).run(state)

        assert state.completion_status == CompletionStatus.COMPLETED
        assert state.final_output == "Done."


class TestPlanning:

    @pytest.mark.asyncio
    async def test_fallback_step_recovers(self, build, state_store):
        plan = plan_of(
            PlanStep(tool_name="read_file", parameters={"path": "missing.py"}, fallback_step=1),
            PlanStep(tool_name="read_file", parameters={"path": "README.md"}),
            PlanStep(tool_name="listFiles"),
        )
        state = await state_store.get_or_create("c1", "refactor everything")

        state = await build(FakePlanner(plan)).run(state)

        assert state.completion_status == CompletionStatus.COMPLETED
        assert [s.status for s in plan.steps] == [StepStatus.FAILED, StepStatus.COMPLETED, StepStatus.COMPLETED]
        assert plan.status == PlanStatus.COMPLETED
        assert state.iteration_count == 3

    @pytest.mark.asyncio
    async def test_unused_fallback_is_skipped(self, build, state_store):
        plan = plan_of(
            PlanStep(tool_name="listFiles", fallback_step=1),
            PlanStep(tool_name="read_file", parameters={"path": "README.md"}),
        )
        state = await state_store.get_or_create("c1", "refactor everything")

        await build(FakePlanner(plan)).run(state)

        assert plan.steps[1].status == StepStatus.SKIPPED
        assert state.iteration_count == 1

    @pytest.mark.asyncio
    async def test_required_step_failure_fails_the_run(self, build, state_store, dispatcher):
        plan = plan_of(
            PlanStep(tool_name="read_file", parameters={"path": "missing.py"}, description="read config"),
            PlanStep(tool_name="listFiles"),
        )
        state = await state_store.get_or_create("c1", "refactor everything")

        state = await build(FakePlanner(plan)).run(state)

        assert state.completion_status == CompletionStatus.FAILED
        assert "Required step 'read config' failed" in state.error
        assert plan.steps[1].status == StepStatus.PENDING
        assert "system:error" in event_types(dispatcher)

    @pytest.mark.asyncio
    async def test_optional_step_failure_is_skipped(self, build, state_store):
        plan = plan_of(
            PlanStep(tool_name="read_file", parameters={"path": "missing.py"}, required=False),
            PlanStep(tool_name="listFiles"),
        )
        state = await state_store.get_or_create("c1", "refactor everything")

        state = await build(FakePlanner(plan)).run(state)

        assert state.completion_status == CompletionStatus.COMPLETED
        skipped = [e for e in state.history if e.phase == HistoryPhase.SYSTEM_MESSAGE]
        assert skipped[0].status == "skipped"

    @pytest.mark.asyncio
    async def test_permission_denial_in_plan_is_fatal(self, build, state_store):
        plan = plan_of(
            PlanStep(tool_name="write_file", parameters={"path": "a.py", "content": "x"}, required=False),
            PlanStep(tool_name="listFiles"),
        )
        state = await state_store.get_or_create("c1", "refactor everything")

        state = await build(FakePlanner(plan)).run(state)

        assert state.completion_status == CompletionStatus.FAILED
        assert plan.steps[1].status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_empty_plan_goes_straight_to_answer(self, build, state_store):
        state = await state_store.get_or_create("c1", "refactor everything")

        state = await build(FakePlanner()).run(state)

        assert state.completion_status == CompletionStatus.COMPLETED
        assert state.final_output == "Summary."
        assert state.iteration_count == 0

    @pytest.mark.asyncio
    async def test_planner_error_fails_the_run(self, build, state_store, dispatcher):
        state = await state_store.get_or_create("c1", "refactor everything")

        state = await build(FakePlanner(error=RuntimeError("no plan"))).run(state)

        assert state.completion_status == CompletionStatus.FAILED
        assert "Planning failed: no plan" in state.error
        types = event_types(dispatcher)
        assert types.count("system:error") == 1
        assert types[-1] == "conversation:ended"

    @pytest.mark.asyncio
    async def test_steps_past_the_ceiling_are_skipped(self, build, state_store):
        plan = plan_of(*[PlanStep(tool_name="listFiles", required=False) for _ in range(4)])
        state = await state_store.get_or_create("c1", "refactor everything")
        state.max_iterations = 2

        state = await build(FakePlanner(plan)).run(state)

        assert state.iteration_count == 2
        assert [s.status for s in plan.steps][2:] == [StepStatus.SKIPPED, StepStatus.SKIPPED]

    @pytest.mark.asyncio
    async def test_ceiling_on_required_steps_still_answers(self, build, state_store, dispatcher):
        plan = plan_of(*[PlanStep(tool_name="listFiles") for _ in range(3)])
        state = await state_store.get_or_create("c1", "refactor everything")
        state.max_iterations = 2

        state = await build(FakePlanner(plan)).run(state)

        assert state.completion_status == CompletionStatus.COMPLETED
        assert state.final_output == "Summary."
        assert state.iteration_count == 2
        assert [s.status for s in plan.steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.SKIPPED]
        assert plan.status == PlanStatus.COMPLETED
        notes = [e.content for e in state.history if e.phase == HistoryPhase.SYSTEM_MESSAGE]
        assert notes == [MAX_ITERATIONS_NOTE]
        assert "system:error" not in event_types(dispatcher)


class TestKeywordInputAnalyzer:

    @pytest.mark.asyncio
    async def test_key_value_parameters(self):
        analysis = await KeywordInputAnalyzer().classify('read file path="src/app.py"', ALL_TEST_TOOLS)

        assert analysis.type == AnalysisType.DIRECT_ACTION
        assert analysis.tool_name == "read_file"
        assert analysis.parameters == {"path": "src/app.py"}

    @pytest.mark.asyncio
    async def test_single_quoted_value(self):
        analysis = await KeywordInputAnalyzer().classify("read file 'README.md'", ALL_TEST_TOOLS)

        assert analysis.is_direct
        assert analysis.parameters == {"path": "README.md"}

    @pytest.mark.asyncio
    async def test_missing_parameters_need_planning(self):
        analysis = await KeywordInputAnalyzer().classify(
            "please write new text into the notes document file", ALL_TEST_TOOLS
        )

        assert analysis.type == AnalysisType.PLANNING_NEEDED
        assert analysis.tool_name == "write_file"

    @pytest.mark.asyncio
    async def test_vague_request_needs_planning(self):
        analysis = await KeywordInputAnalyzer().classify("make the app faster", ALL_TEST_TOOLS)

        assert not analysis.is_direct
        assert analysis.confidence < 0.5

    @pytest.mark.asyncio
    async def test_parameters_are_coerced(self):
        from codeagent.domain.tool.tool_models import ToolDefinition

        tail = ToolDefinition(
            name="tail_log",
            description="Show the tail of the log",
            parameters_schema={
                "type": "object",
                "properties": {"lines": {"type": "integer"}, "follow": {"type": "boolean"}},
                "required": ["lines"],
            },
            execute=lambda params, context: None,
        )
        analysis = await KeywordInputAnalyzer().classify("tail log lines=20 follow=yes", [tail])

        assert analysis.parameters == {"lines": 20, "follow": True}

    @pytest.mark.asyncio
    async def test_no_tools(self):
        analysis = await KeywordInputAnalyzer().classify("anything", [])
        assert analysis.reason == "No tools registered"
