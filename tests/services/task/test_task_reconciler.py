"""
Unit tests for services/task/task_reconciler.py

Merging never deletes: user edits survive, AI tasks are refreshed, stale
completed AI tasks are archived.
"""

from datetime import date

from services.task.task_reconciler import TaskReconciler, normalize_title, titles_match
from services.task_schemas import CandidateTask, SourceReference, Task

TODAY = date(2025, 1, 6)


def _merge(existing, generated, ai_analysis_id="run-2"):
    return TaskReconciler().merge_tasks(existing, generated, ai_analysis_id=ai_analysis_id, today=TODAY)


class TestTitleMatching:
    def test_normalize_title(self):
        assert normalize_title("  Set   up CI ") == "set up ci"

    def test_containment(self):
        assert titles_match("Set up CI", "set up CI pipeline")
        assert titles_match("Set up CI pipeline", "set up ci")

    def test_empty_titles_never_match(self):
        assert not titles_match("", "Anything")
        assert not titles_match("   ", "   ")


class TestArchiving:
    def test_stale_completed_ai_task_is_archived(self):
        existing = [
            Task(id="old", title="Old research", status="done", ai_generated=True),
            Task(id="manual", title="Manual chore", status="done", ai_generated=False),
            Task(id="open", title="Open AI task", status="todo", ai_generated=True),
        ]

        result = _merge(existing, [CandidateTask(title="Brand new task")])

        assert [t.id for t in result.to_archive] == ["old"]
        assert result.to_archive[0].status == "archived"
        assert [t.title for t in result.to_insert] == ["Brand new task"]
        assert result.to_update == []

    def test_completed_ai_task_still_relevant_is_kept(self):
        existing = [Task(id="done", title="Set up CI", status="done", ai_generated=True)]

        result = _merge(existing, [CandidateTask(title="Set up CI")])

        assert result.to_archive == []


class TestUserTasks:
    def test_missing_dates_are_backfilled(self):
        existing = [Task(id="docs", title="Write API docs", ai_generated=False, description="mine")]
        candidate = CandidateTask(
            title="Write API docs", description="generated",
            start_date=date(2025, 1, 28), due_date=date(2025, 2, 1),
        )

        result = _merge(existing, [candidate])

        assert len(result.to_update) == 1
        updated = result.to_update[0]
        assert (updated.start_date, updated.due_date) == (date(2025, 1, 28), date(2025, 2, 1))
        assert updated.description == "mine"
        assert updated.notes is None
        assert result.to_insert == []

    def test_backfill_never_breaks_date_order(self):
        existing = [Task(id="docs", title="Write API docs", start_date=date(2025, 3, 1))]
        candidate = CandidateTask(title="Write API docs", due_date=date(2025, 2, 1), start_date=date(2025, 1, 28))

        result = _merge(existing, [candidate])

        assert result.to_update == []

    def test_existing_dates_are_not_overwritten(self):
        existing = [Task(id="docs", title="Write API docs", start_date=date(2025, 1, 10), due_date=date(2025, 1, 20))]
        candidate = CandidateTask(title="Write API docs", start_date=date(2025, 2, 1), due_date=date(2025, 2, 5))

        assert _merge(existing, [candidate]).to_update == []


class TestAiTasks:
    def test_content_is_refreshed_and_assignee_kept(self):
        existing = [Task(
            id="ci", title="Set up CI", description="old", ai_generated=True,
            assignee_id="u-eng", notes="keep me", due_date=date(2025, 1, 20),
        )]
        candidate = CandidateTask(title="Set up CI", description="new", assignee_id="u-pm", priority="high")

        result = _merge(existing, [candidate])

        updated = result.to_update[0]
        assert updated.id == "ci"
        assert updated.description == "new"
        assert updated.priority == "high"
        assert updated.assignee_id == "u-eng"
        assert updated.due_date == date(2025, 1, 20)
        assert updated.notes == "keep me\n\n---\n[2025-01-06] Re-analysis update: new"
        assert updated.ai_analysis_id == "run-2"

    def test_source_reference_only_replaced_when_supplied(self):
        reference = SourceReference(phase_number=1, field_key="goals", field_hash="abc")
        existing = [Task(id="ci", title="Set up CI", ai_generated=True, source_reference=[reference])]

        result = _merge(existing, [CandidateTask(title="Set up CI", description="new")])

        assert result.to_update[0].source_reference == [reference]

    def test_start_after_due_is_clamped(self):
        existing = [Task(id="ci", title="Set up CI", ai_generated=True, start_date=date(2025, 3, 1))]
        candidate = CandidateTask(title="Set up CI", due_date=date(2025, 2, 1))

        updated = _merge(existing, [candidate]).to_update[0]

        assert updated.start_date == updated.due_date == date(2025, 2, 1)

    def test_merge_is_idempotent(self):
        candidate = CandidateTask(
            title="Set up CI", description="pipeline", phase_number=2, priority="high",
            tags=["devops"], start_date=date(2025, 1, 10), due_date=date(2025, 1, 14),
            source_reference=[SourceReference(phase_number=2, field_key="build_timeline")],
        )
        existing = [Task(id="ci", **candidate.model_dump())]

        result = _merge(existing, [candidate])

        assert result.to_update == []
        assert result.to_insert == []
        assert result.to_archive == []


class TestMatching:
    def test_substring_match_updates(self):
        existing = [Task(id="ci", title="Set up CI", ai_generated=True)]

        result = _merge(existing, [CandidateTask(title="Set up CI pipeline")])

        assert [t.id for t in result.to_update] == ["ci"]
        assert result.to_update[0].title == "Set up CI pipeline"
        assert result.to_insert == []

    def test_empty_title_does_not_match(self):
        existing = [Task(id="ci", title="Set up CI", ai_generated=True)]

        result = _merge(existing, [CandidateTask(title="   ")])

        assert result.to_update == []
        assert len(result.to_insert) == 1

    def test_exact_duplicate_uses_existing_task_id(self):
        existing = [
            Task(id="a", title="Configure pipeline", ai_generated=True),
            Task(id="b", title="Continuous integration", ai_generated=True),
        ]
        candidate = CandidateTask(
            title="Automate builds on every push",
            duplicate_status="exact_duplicate",
            existing_task_id="b",
        )

        result = _merge(existing, [candidate])

        assert [t.id for t in result.to_update] == ["b"]

    def test_existing_task_is_updated_once(self):
        existing = [Task(id="ci", title="Set up CI", ai_generated=True)]
        generated = [CandidateTask(title="Set up CI", description="v1"), CandidateTask(title="set up ci", description="v2")]

        result = _merge(existing, generated)

        assert len(result.to_update) == 1
        assert result.to_update[0].description == "v1"
        assert result.to_insert == []

    def test_inserts_carry_analysis_id(self):
        result = _merge([], [CandidateTask(title="New")], ai_analysis_id="run-9")
        assert result.to_insert[0].ai_analysis_id == "run-9"

    def test_inputs_are_not_mutated(self):
        existing = [Task(id="ci", title="Set up CI", description="old", ai_generated=True, status="done")]
        generated = [CandidateTask(title="Set up CI", description="new")]

        _merge(existing, generated)

        assert existing[0].description == "old"
        assert existing[0].status == "done"
        assert generated[0].ai_analysis_id is None


class TestScenarios:
    def test_onboarding_doc_is_archived(self):
        existing = [Task(id="doc", title="Write onboarding doc", status="done", ai_generated=True)]

        result = _merge(existing, [CandidateTask(title="Plan sprint one")])

        assert [(t.id, t.status) for t in result.to_archive] == [("doc", "archived")]

    def test_manual_task_only_gains_due_date(self):
        existing = Task(id="m1", title="Prepare demo", description="by hand", priority="high", tags=["demo"])
        candidate = CandidateTask(title="Prepare demo", description="generated", due_date=date(2025, 3, 1))

        result = _merge([existing], [candidate])

        updated = result.to_update[0]
        before, after = existing.model_dump(), updated.model_dump()
        assert {k for k in before if before[k] != after[k]} == {"due_date"}
        assert updated.due_date == date(2025, 3, 1)

    def test_second_run_inserts_nothing(self):
        generated = [CandidateTask(title="Set up CI"), CandidateTask(title="Write API docs")]
        first = _merge([], generated)
        persisted = [Task(id=f"t{i}", **c.model_dump()) for i, c in enumerate(first.to_insert)]

        second = _merge(persisted, generated)

        assert second.to_insert == []
