"""
Unit tests for task_schemas.py

Tests Pydantic models for:
1. DB compatibility of Enum values
2. Field validation (tags as ordered set, estimated_hours >= 0, similarity range)
3. Helpers (has_valid_dates, UsageMetadata.accumulate, PhaseSchedule totals)
"""

from datetime import date

import pytest
from pydantic import ValidationError

from services.task_schemas import (
    CandidateTask,
    DuplicateStatus,
    Phase,
    PhaseSchedule,
    SimilarityBasis,
    SimilarityResult,
    Task,
    TaskPriority,
    TaskStatus,
    UsageMetadata,
)


class TestEnums:
    """Test Enum definitions"""

    def test_task_status_values(self):
        """Test TaskStatus matches the stored status values"""
        assert {s.value for s in TaskStatus} == {"todo", "in_progress", "done", "archived"}

    def test_task_priority_values(self):
        assert {p.value for p in TaskPriority} == {"low", "medium", "high", "critical"}

    def test_duplicate_status_values(self):
        assert {d.value for d in DuplicateStatus} == {"unique", "possible_duplicate", "exact_duplicate"}


class TestTaskModels:
    """Test Task / CandidateTask validation"""

    def test_enum_fields_are_stored_as_values(self):
        task = Task(id="t1", title="Write docs", status=TaskStatus.DONE, priority=TaskPriority.HIGH)
        assert task.status == "done"
        assert task.priority == "high"

    def test_tags_are_deduplicated_in_order(self):
        """Tags behave as a set but keep their first-seen order"""
        task = Task(id="t1", title="Write docs", tags=["docs", "api", "docs", "qa", "api"])
        assert task.tags == ["docs", "api", "qa"]

    def test_negative_estimated_hours_rejected(self):
        with pytest.raises(ValidationError):
            CandidateTask(title="Write docs", estimated_hours=-1)

    def test_candidate_defaults(self):
        """Candidates are AI generated and unique until classified"""
        candidate = CandidateTask(title="Write docs")
        assert candidate.ai_generated is True
        assert candidate.duplicate_status == "unique"
        assert candidate.existing_task_id is None
        assert candidate.status == "todo"
        assert candidate.priority == "medium"

    def test_default_enum_fields_are_plain_strings(self):
        """Defaults render as stored values in prompts and dumps, not as enum members"""
        candidate = CandidateTask(title="Write docs")
        dumped = Task(id="t", title="Write docs").model_dump()

        assert type(candidate.status) is str
        assert type(candidate.duplicate_status) is str
        assert f"[{candidate.status}/{candidate.priority}]" == "[todo/medium]"
        assert (type(dumped["status"]), type(dumped["priority"])) == (str, str)

    def test_has_valid_dates(self):
        assert Task(id="t", title="a", start_date=date(2025, 1, 1), due_date=date(2025, 1, 1)).has_valid_dates()
        assert not Task(id="t", title="a", start_date=date(2025, 1, 2), due_date=date(2025, 1, 1)).has_valid_dates()
        assert not Task(id="t", title="a", due_date=date(2025, 1, 1)).has_valid_dates()

    def test_phase_display_name_fallback(self):
        assert Phase(phase_number=3).display_name == "Phase 3"
        assert Phase(phase_number=3, phase_name="QA").display_name == "QA"


class TestSimilarityResult:
    def test_similarity_must_be_in_unit_range(self):
        with pytest.raises(ValidationError):
            SimilarityResult(similarity=1.5, basis=SimilarityBasis.STRING)

    def test_basis_stored_as_value(self):
        assert SimilarityResult(similarity=0.5, basis=SimilarityBasis.HYBRID).basis == "hybrid"


class TestUsageMetadata:
    def test_accumulate_sums_counters(self):
        first = UsageMetadata(model="m", input_tokens=10, output_tokens=5, total_tokens=15, estimated_cost=0.1)
        second = UsageMetadata(model="m", input_tokens=1, output_tokens=2, total_tokens=3, estimated_cost=0.2)

        total = first.accumulate(second)

        assert total.input_tokens == 11
        assert total.output_tokens == 7
        assert total.total_tokens == 18
        assert total.calls == 2
        assert total.estimated_cost == pytest.approx(0.3)
        assert first.calls == 1, "accumulate must not mutate the receiver"

    def test_accumulate_none_returns_self(self):
        usage = UsageMetadata(input_tokens=3)
        assert usage.accumulate(None) is usage


class TestPhaseSchedule:
    def test_total_days_and_empty_end_date(self):
        schedule = PhaseSchedule(today=date(2025, 1, 6), planning_days=14, build_days=90)
        assert schedule.total_days == 104
        assert schedule.end_date == date(2025, 1, 6)
