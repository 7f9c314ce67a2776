"""
Unit tests for services/task/phase_date_distributor.py

Phase buckets, the 90-day build floor, per-phase windows and per-task date repair.
"""

from datetime import date, timedelta

import pytest

from services.errors import TaskValidationError
from services.task.phase_date_distributor import (
    BUILD_FLOOR_DAYS,
    PhaseDateDistributor,
    split_phase_buckets,
)
from services.task_schemas import CandidateTask, Phase, Task


def _phases(*names, completed=(), data=None):
    data = data or {}
    return [
        Phase(phase_number=i, phase_name=name, completed=i in completed, data=data.get(i, {}))
        for i, name in enumerate(names, start=1)
    ]


class TestBuckets:
    def test_marker_starts_build_bucket(self):
        planning, build = split_phase_buckets(_phases("Discovery", "Development", "QA", "Launch"))
        assert [p.phase_number for p in planning] == [1]
        assert [p.phase_number for p in build] == [2, 3, 4]

    def test_upper_half_without_marker(self):
        planning, build = split_phase_buckets(_phases("Discovery", "Strategy", "Prototype", "Launch"))
        assert [p.phase_number for p in planning] == [1, 2]
        assert [p.phase_number for p in build] == [3, 4]

    def test_odd_count_without_marker(self):
        planning, build = split_phase_buckets(_phases("Discovery", "Strategy", "Launch"))
        assert [p.phase_number for p in build] == [3]


class TestBuildFloor:
    def test_scenario_without_build_evidence(self, today):
        """Plan/Build with a 2 week plan and no build evidence: build gets nothing"""
        schedule = PhaseDateDistributor().build_schedule(
            _phases("Plan", "Build"), today, planning_days=14, build_days=None, build_timeline=""
        )
        assert schedule.build_days == 0
        assert schedule.total_days == 14
        assert not schedule.build_floor_applied

    def test_build_phase_data_triggers_floor(self, today):
        phases = _phases("Plan", "Build", data={2: {"scope": "MVP"}})
        schedule = PhaseDateDistributor().build_schedule(phases, today, planning_days=14)
        assert schedule.build_days == BUILD_FLOOR_DAYS
        assert schedule.build_floor_applied
        assert schedule.total_days == 104

    def test_existing_build_task_triggers_floor(self, today):
        existing = [Task(id="t1", title="Implement API", phase_number=2)]
        schedule = PhaseDateDistributor().build_schedule(
            _phases("Plan", "Build"), today, planning_days=14, existing_tasks=existing
        )
        assert schedule.build_days == 90

    def test_short_build_timeline_is_raised(self, today):
        schedule = PhaseDateDistributor().build_schedule(
            _phases("Plan", "Build"), today, planning_days=14, build_days=42, build_timeline="6 weeks"
        )
        assert schedule.build_days == 90
        assert schedule.build_floor_applied

    def test_long_build_timeline_is_kept(self, today):
        schedule = PhaseDateDistributor().build_schedule(
            _phases("Plan", "Build"), today, planning_days=14, build_days=120, build_timeline="4 months"
        )
        assert schedule.build_days == 120
        assert not schedule.build_floor_applied

    @pytest.mark.parametrize(
        "names,evidence",
        [
            (("Plan", "Build"), {"data": {2: {"x": 1}}}),
            (("Discovery", "Design", "Development", "QA"), {"build_timeline": "3 weeks"}),
            (("A", "B", "C", "D", "E", "F"), {"existing": [Task(id="t", title="t", phase_number=5)]}),
            (("Concept", "Build", "Test"), {"build_days": 30, "build_timeline": "1 month"}),
        ],
    )
    def test_build_bucket_at_least_floor_with_evidence(self, today, names, evidence):
        phases = _phases(*names, data=evidence.get("data"))
        schedule = PhaseDateDistributor().build_schedule(
            phases,
            today,
            build_days=evidence.get("build_days"),
            existing_tasks=evidence.get("existing", ()),
            build_timeline=evidence.get("build_timeline", ""),
        )
        build_window_days = sum(w.days for w in schedule.windows.values() if w.is_build)
        assert schedule.build_days >= 90
        assert build_window_days >= 90


class TestPhaseWindows:
    def test_even_split_with_remainder_on_last_phase(self, today):
        phases = _phases("Discovery", "Strategy", "Design", "Build")
        schedule = PhaseDateDistributor().build_schedule(phases, today, planning_days=46)
        assert [schedule.windows[n].days for n in (1, 2, 3)] == [15, 15, 16]

    def test_default_planning_days(self, today):
        phases = _phases("Discovery", "Strategy", "Build", "Launch")
        schedule = PhaseDateDistributor().build_schedule(phases, today)
        assert schedule.planning_days == 28
        assert schedule.windows[1].days == 14

    def test_windows_are_cumulative(self, today):
        phases = _phases("Plan", "Build", data={2: {"scope": "MVP"}})
        schedule = PhaseDateDistributor().build_schedule(phases, today, planning_days=14)

        assert schedule.windows[1].start_date == today
        assert schedule.windows[1].end_date == today + timedelta(days=13)
        assert schedule.windows[2].start_offset == 14
        assert schedule.windows[2].start_date == today + timedelta(days=14)
        assert schedule.end_date == today + timedelta(days=103)

    def test_explicit_phase_duration_is_honoured(self, today):
        phases = _phases("Discovery", "Strategy", "Build", "Launch")
        schedule = PhaseDateDistributor().build_schedule(
            phases, today, planning_days=30, planning_timeline="1 month overall, Phase 1: 1w"
        )
        assert schedule.windows[1].days == 7
        assert schedule.windows[2].days == 23

    def test_explicit_durations_below_floor_extend_first_build_phase(self, today):
        phases = _phases("Discovery", "Strategy", "Build", "Launch")
        schedule = PhaseDateDistributor().build_schedule(
            phases, today, planning_days=28, build_days=28, build_timeline="Phase 3: 2w, Phase 4: 2w"
        )
        assert schedule.windows[3].days == 76
        assert schedule.windows[4].days == 14
        assert schedule.build_days == 90

    def test_completed_phases_consume_no_time(self, today):
        phases = _phases("Plan", "Design", "Build", completed=(1,), data={3: {"scope": "MVP"}})
        schedule = PhaseDateDistributor().build_schedule(phases, today, planning_days=28)

        assert schedule.windows[1].days == 0
        assert schedule.windows[1].start_date == today
        assert schedule.windows[2].start_offset == 0


class TestTaskDates:
    @pytest.fixture
    def schedule(self, today):
        phases = _phases("Plan", "Build", data={2: {"scope": "MVP"}})
        return PhaseDateDistributor().build_schedule(phases, today, planning_days=14)

    def test_tasks_are_spread_within_phase(self, schedule, today):
        tasks = [CandidateTask(title=f"Task {i}", phase_number=1) for i in range(3)]

        dated = PhaseDateDistributor().assign_task_dates(tasks, schedule)

        assert [t.due_date for t in dated] == [today, today + timedelta(days=6), today + timedelta(days=13)]
        assert dated[0].start_date == today, "start is clamped to today"
        assert dated[1].start_date == today + timedelta(days=2), "medium priority leads by 4 days"

    def test_single_task_lands_mid_phase(self, schedule, today):
        dated = PhaseDateDistributor().assign_task_dates([CandidateTask(title="Build", phase_number=2)], schedule)
        assert dated[0].due_date == today + timedelta(days=14 + 45)

    @pytest.mark.parametrize("priority,lead", [("critical", 2), ("high", 3), ("medium", 4), ("low", 5)])
    def test_lead_time_by_priority(self, schedule, today, priority, lead):
        dated = PhaseDateDistributor().assign_task_dates(
            [CandidateTask(title="Build", phase_number=2, priority=priority)], schedule
        )
        assert dated[0].due_date - dated[0].start_date == timedelta(days=lead)

    @pytest.mark.parametrize("supplied", [date(2020, 1, 1), date(2029, 6, 1)])
    def test_implausible_due_date_is_recomputed(self, schedule, today, supplied):
        dated = PhaseDateDistributor().assign_task_dates(
            [CandidateTask(title="Plan", phase_number=1, due_date=supplied)], schedule
        )
        assert dated[0].due_date == today + timedelta(days=7)

    def test_plausible_due_date_is_kept(self, schedule):
        dated = PhaseDateDistributor().assign_task_dates(
            [CandidateTask(title="Plan", phase_number=1, due_date=date(2025, 2, 1))], schedule
        )
        assert dated[0].due_date == date(2025, 2, 1)

    def test_start_after_due_is_repaired(self, schedule):
        task = CandidateTask(
            title="Plan", phase_number=1, priority="high",
            start_date=date(2025, 2, 10), due_date=date(2025, 2, 1),
        )
        dated = PhaseDateDistributor().assign_task_dates([task], schedule)
        assert dated[0].start_date == date(2025, 1, 29)
        assert dated[0].due_date == date(2025, 2, 1)

    def test_unknown_phase_falls_back_to_first_phase(self, schedule, today):
        dated = PhaseDateDistributor().assign_task_dates([CandidateTask(title="X", phase_number=99)], schedule)
        assert dated[0].phase_number == 1
        assert dated[0].due_date == today + timedelta(days=7)

    def test_input_tasks_are_not_mutated(self, schedule):
        task = CandidateTask(title="Plan", phase_number=1)
        PhaseDateDistributor().assign_task_dates([task], schedule)
        assert task.due_date is None
        assert task.start_date is None

    def test_all_tasks_end_with_valid_dates(self, schedule, today):
        tasks = [
            CandidateTask(title="a", phase_number=1, priority="critical"),
            CandidateTask(title="b", phase_number=2, start_date=date(2025, 12, 1), due_date=date(2025, 3, 1)),
            CandidateTask(title="c", phase_number=None, due_date=date(2019, 1, 1)),
            CandidateTask(title="d", phase_number=2, start_date=date(2025, 1, 10)),
            CandidateTask(title="e", phase_number=2, priority="low", due_date=today),
        ]
        for task in PhaseDateDistributor().assign_task_dates(tasks, schedule):
            assert task.start_date is not None and task.due_date is not None
            assert task.start_date <= task.due_date

    def test_validate_dates_raises(self):
        with pytest.raises(TaskValidationError) as exc_info:
            PhaseDateDistributor.validate_dates(date(2025, 1, 2), date(2025, 1, 1))
        assert exc_info.value.field == "start_date"
