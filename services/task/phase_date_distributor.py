"""
フェーズ期間・タスク日付の割り当て

1. フェーズを「計画」と「ビルド」の2つのバケットに分ける
2. パース済みの日数（なければポリシーのデフォルト）をバケット内のフェーズに配分する
   - ビルド作業の形跡がある場合、ビルドバケットは最低90日
3. フェーズ内でタスクのインデックスに応じて期日を均等に配置し、優先度に応じて開始日を決める

"due_date は必ず存在し、妥当な範囲にある" という不変条件はこのモジュールだけが実装する。
"""
import logging
import math
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from services.errors import TaskValidationError
from services.task_schemas import (
    CandidateTask, Phase, PhaseSchedule, PhaseWindow, Task, TaskPriority
)
from .timeline_parser import TimelineParser

logger = logging.getLogger("task_engine.phase_date_distributor")

BUILD_FLOOR_DAYS = 90
DEFAULT_PLANNING_PHASE_DAYS = 14
BUILD_PHASE_MARKERS = ("build", "development", "develop")

# 期日から何日前に着手するか
LEAD_TIME_DAYS = {
    TaskPriority.CRITICAL.value: 2,
    TaskPriority.HIGH.value: 3,
    TaskPriority.MEDIUM.value: 4,
    TaskPriority.LOW.value: 5,
}

# これより過去・未来の期日は信用せず再計算する
MAX_PAST_DAYS = 730
MAX_FUTURE_DAYS = 1095


def is_build_phase_name(name: Optional[str]) -> bool:
    lowered = (name or "").lower()
    return any(marker in lowered for marker in BUILD_PHASE_MARKERS)


def split_phase_buckets(phases: Sequence[Phase]) -> tuple[List[Phase], List[Phase]]:
    """
    フェーズを (計画, ビルド) に分割する

    名前にビルド/開発の目印があるフェーズ以降をビルドとする。
    目印がひとつもなければ後半（番号順で上位半分）をビルドとする。
    """
    ordered = sorted(phases, key=lambda p: p.phase_number)
    build_start = next(
        (i for i, phase in enumerate(ordered) if is_build_phase_name(phase.phase_name)),
        None,
    )
    if build_start is None:
        build_start = math.ceil(len(ordered) / 2)
    return ordered[:build_start], ordered[build_start:]


def _split_evenly(total_days: int, count: int) -> List[int]:
    """均等に配分し、端数は最後のフェーズに寄せる（合計を保つ）"""
    if count <= 0:
        return []
    per_phase = max(total_days, 0) // count
    shares = [per_phase] * count
    shares[-1] += max(total_days, 0) - per_phase * count
    return shares


class PhaseDateDistributor:
    """フェーズ期間とタスク日付の配分ロジック"""

    def __init__(
        self,
        build_floor_days: int = BUILD_FLOOR_DAYS,
        default_planning_phase_days: int = DEFAULT_PLANNING_PHASE_DAYS,
    ):
        self.build_floor_days = build_floor_days
        self.default_planning_phase_days = default_planning_phase_days
        self.logger = logger

    # ------------------------------------------------------------------
    # フェーズ期間
    # ------------------------------------------------------------------
    def build_schedule(
        self,
        phases: Sequence[Phase],
        today: date,
        planning_days: Optional[int] = None,
        build_days: Optional[int] = None,
        existing_tasks: Iterable[Task] = (),
        planning_timeline: str = "",
        build_timeline: str = "",
    ) -> PhaseSchedule:
        """
        パース済みの日数とフェーズの完了状態から、全フェーズの期間を決める

        Args:
            phases: フェーズ一覧
            today: 起算日
            planning_days / build_days: TimelineParser.parse の結果（None はデフォルト適用）
            existing_tasks: 既存タスク（ビルド作業の形跡の判定に使う）
            planning_timeline / build_timeline: 元のタイムライン文字列（フェーズ別期間の抽出に使う）
        """
        planning_phases, build_phases = split_phase_buckets(phases)
        parser = TimelineParser(p.phase_number for p in phases)

        planning_total = planning_days
        if planning_total is None:
            planning_total = self.default_planning_phase_days * len(planning_phases)

        build_total, floor_applied = self._build_bucket_days(
            build_phases, build_days, existing_tasks, build_timeline
        )
        if not build_phases and build_days:
            self.logger.warning(
                "Build timeline (%d days) ignored: project has no build phases", build_days
            )

        durations: Dict[int, int] = {}
        durations.update(self._distribute(
            planning_phases, planning_total, parser.parse_phase_durations(planning_timeline)
        ))
        durations.update(self._distribute(
            build_phases, build_total, parser.parse_phase_durations(build_timeline)
        ))

        build_numbers = {p.phase_number for p in build_phases}
        windows: Dict[int, PhaseWindow] = {}
        offset = 0
        for phase in sorted(phases, key=lambda p: p.phase_number):
            # 完了済みフェーズはこれからの日程を消費しない
            days = 0 if phase.completed else durations.get(phase.phase_number, 0)
            start_date = today + timedelta(days=offset)
            windows[phase.phase_number] = PhaseWindow(
                phase_number=phase.phase_number,
                start_offset=offset,
                days=days,
                start_date=start_date,
                end_date=start_date + timedelta(days=max(days - 1, 0)),
                is_build=phase.phase_number in build_numbers,
            )
            offset += days

        schedule = PhaseSchedule(
            today=today,
            planning_days=planning_total if planning_phases else 0,
            build_days=build_total,
            build_floor_applied=floor_applied,
            windows=windows,
        )
        self.logger.debug(
            "Phase schedule: planning=%d days, build=%d days, total=%d days",
            schedule.planning_days, schedule.build_days, schedule.total_days,
        )
        return schedule

    def _build_bucket_days(
        self,
        build_phases: Sequence[Phase],
        build_days: Optional[int],
        existing_tasks: Iterable[Task],
        build_timeline: str,
    ) -> tuple[int, bool]:
        if not build_phases:
            return 0, False

        build_numbers = {p.phase_number for p in build_phases}
        has_tasks = any(t.phase_number in build_numbers for t in existing_tasks)
        has_data = any(bool(p.data) for p in build_phases)
        has_timeline = bool(build_timeline and build_timeline.strip()) or bool(build_days)
        if not (has_tasks or has_data or has_timeline):
            return 0, False

        if build_days is not None and build_days >= self.build_floor_days:
            return build_days, False

        self.logger.info(
            "Applying %d-day build floor (parsed=%s, tasks=%s, data=%s, timeline=%s)",
            self.build_floor_days, build_days, has_tasks, has_data, has_timeline,
        )
        return self.build_floor_days, True

    def _distribute(
        self,
        bucket: Sequence[Phase],
        total_days: int,
        explicit: Dict[int, int],
    ) -> Dict[int, int]:
        """バケットの合計日数をフェーズに配分する（明示されたフェーズ別期間を優先）"""
        if not bucket:
            return {}

        durations = {
            p.phase_number: explicit[p.phase_number]
            for p in bucket if p.phase_number in explicit
        }
        remaining = [p for p in bucket if p.phase_number not in durations]
        leftover = total_days - sum(durations.values())

        if remaining:
            for phase, days in zip(remaining, _split_evenly(leftover, len(remaining))):
                durations[phase.phase_number] = days
        elif leftover > 0:
            # すべて明示されていても下限に届かない分は先頭フェーズに足す
            first = bucket[0].phase_number
            durations[first] += leftover
        return durations

    # ------------------------------------------------------------------
    # タスク日付
    # ------------------------------------------------------------------
    def assign_task_dates(
        self,
        tasks: Sequence[CandidateTask],
        schedule: PhaseSchedule,
    ) -> List[CandidateTask]:
        """
        すべてのタスクに妥当な start_date / due_date を持たせた新しいリストを返す

        - due_date がない、または不自然（730日以上前 / 1095日以上先）なら再計算
        - start_date がない、または due_date より後なら優先度に応じて再計算
        """
        today = schedule.today
        phase_index = self._index_within_phase(tasks, schedule)
        repaired: List[CandidateTask] = []

        for position, task in enumerate(tasks):
            phase_number = self._resolve_phase(task.phase_number, schedule)
            index, count = phase_index[position]

            due_date = task.due_date
            if due_date is None or not self._is_plausible(due_date, today):
                if due_date is not None:
                    self.logger.warning(
                        "Task '%s' has unrealistic due_date %s, recalculating", task.title, due_date
                    )
                due_date = self.calculate_due_date(schedule, phase_number, index, count)

            start_date = task.start_date
            try:
                self.validate_dates(start_date, due_date)
            except TaskValidationError as e:
                self.logger.info("Repairing dates of task '%s': %s", task.title, e)
                start_date = None
            if start_date is None:
                start_date = self.calculate_start_date(due_date, task.priority, today)

            repaired.append(task.model_copy(update={
                "phase_number": phase_number,
                "due_date": due_date,
                "start_date": start_date,
            }))
        return repaired

    def calculate_due_date(self, schedule: PhaseSchedule, phase_number: Optional[int], index: int, count: int) -> date:
        """due = today + 先行フェーズの合計日数 + フェーズ内オフセット"""
        window = schedule.windows.get(phase_number) if phase_number is not None else None
        if window is None:
            return schedule.today + timedelta(days=schedule.total_days // 2)

        phase_days = max(window.days, 1)
        if count > 1:
            offset = math.floor(index / (count - 1) * (phase_days - 1))
        else:
            offset = phase_days // 2
        return schedule.today + timedelta(days=window.start_offset + offset)

    @staticmethod
    def calculate_start_date(due_date: date, priority: str, today: date) -> date:
        """start = due - 優先度別リードタイム。today より前にも due より後にもしない"""
        lead_days = LEAD_TIME_DAYS.get(priority, LEAD_TIME_DAYS[TaskPriority.LOW.value])
        start_date = due_date - timedelta(days=lead_days)
        start_date = max(start_date, today)
        return min(start_date, due_date)

    @staticmethod
    def validate_dates(start_date: Optional[date], due_date: Optional[date]) -> None:
        if start_date is not None and due_date is not None and start_date > due_date:
            raise TaskValidationError(
                f"start_date {start_date} is after due_date {due_date}", field="start_date"
            )

    @staticmethod
    def _is_plausible(due_date: date, today: date) -> bool:
        delta = (due_date - today).days
        return -MAX_PAST_DAYS <= delta <= MAX_FUTURE_DAYS

    @staticmethod
    def _resolve_phase(phase_number: Optional[int], schedule: PhaseSchedule) -> Optional[int]:
        if phase_number in schedule.windows:
            return phase_number
        # 不明なフェーズ番号は最初のフェーズに寄せる
        return min(schedule.windows) if schedule.windows else phase_number

    def _index_within_phase(self, tasks: Sequence[CandidateTask], schedule: PhaseSchedule) -> Dict[int, tuple[int, int]]:
        """リスト内の位置 -> (フェーズ内インデックス, フェーズ内タスク数)"""
        positions_by_phase: Dict[Optional[int], List[int]] = {}
        for position, task in enumerate(tasks):
            phase_number = self._resolve_phase(task.phase_number, schedule)
            positions_by_phase.setdefault(phase_number, []).append(position)

        result: Dict[int, tuple[int, int]] = {}
        for positions in positions_by_phase.values():
            for index, position in enumerate(positions):
                result[position] = (index, len(positions))
        return result
