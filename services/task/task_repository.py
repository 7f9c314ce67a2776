"""
タスク・フェーズ・チームのDBアクセス

エンジン本体はDBに触れず、スナップショット（pydantic モデル）だけを扱う。
このリポジトリが ORM 行 <-> スナップショットの変換と、マージ結果の一括保存を担当する。
"""
import logging
from typing import Dict, List

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.project_task import ProjectPhase, ProjectTask, ProjectTeamMember
from services.errors import TaskEngineError
from services.task_schemas import (
    CandidateTask, MergeResult, Phase, SourceReference, Task, TaskStatus, TeamMember
)

logger = logging.getLogger("task_engine.task_repository")

# 未完了タスクがこの件数以上のメンバーは過負荷とみなす
OVERWORKED_TASK_THRESHOLD = 8

OPEN_STATUSES = (TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value)


class TaskRepository:
    def __init__(self, db: Session, overworked_threshold: int = OVERWORKED_TASK_THRESHOLD):
        self.db = db
        self.overworked_threshold = overworked_threshold

    # ---- 読み込み ---------------------------------------------------------
    def load_phases(self, project_id: str) -> List[Phase]:
        rows = (
            self.db.query(ProjectPhase)
            .filter_by(project_id=project_id)
            .order_by(ProjectPhase.phase_number)
            .all()
        )
        return [
            Phase(
                phase_number=row.phase_number,
                phase_name=row.phase_name,
                completed=bool(row.completed),
                data=dict(row.data or {}),
            )
            for row in rows
        ]

    def load_tasks(self, project_id: str) -> List[Task]:
        rows = (
            self.db.query(ProjectTask)
            .filter_by(project_id=project_id)
            .order_by(ProjectTask.created_at, ProjectTask.task_id)
            .all()
        )
        return [self._to_task(row) for row in rows]

    def load_roster(self, project_id: str) -> List[TeamMember]:
        """チームメンバーと、それぞれの未完了タスク数"""
        members = (
            self.db.query(ProjectTeamMember)
            .filter_by(project_id=project_id)
            .order_by(ProjectTeamMember.name)
            .all()
        )
        counts: Dict[str, int] = dict(
            self.db.query(ProjectTask.assignee_id, func.count(ProjectTask.task_id))
            .filter(
                ProjectTask.project_id == project_id,
                ProjectTask.assignee_id.isnot(None),
                ProjectTask.status.in_(OPEN_STATUSES),
            )
            .group_by(ProjectTask.assignee_id)
            .all()
        )
        return [
            TeamMember(
                user_id=member.user_id,
                name=member.name,
                role_name=member.role_name,
                role_description=member.role_description,
                current_task_count=counts.get(member.user_id, 0),
                is_overworked=counts.get(member.user_id, 0) >= self.overworked_threshold,
            )
            for member in members
        ]

    # ---- 書き込み ---------------------------------------------------------
    def apply_merge_result(self, project_id: str, result: MergeResult) -> List[str]:
        """
        insert / update / archive を1回のコミットで保存する

        Returns:
            追加したタスクのID

        Raises:
            TaskEngineError: 保存に失敗した場合（ロールバック済み）
        """
        inserted_ids: List[str] = []
        try:
            for candidate in result.to_insert:
                row = ProjectTask(project_id=project_id, **self._task_columns(candidate))
                self.db.add(row)
                self.db.flush()
                inserted_ids.append(row.task_id)

            for task in list(result.to_update) + list(result.to_archive):
                row = self.db.get(ProjectTask, task.id)
                if row is None or row.project_id != project_id:
                    logger.warning("Task %s not found in project %s, skipping update", task.id, project_id)
                    continue
                for column, value in self._task_columns(task).items():
                    setattr(row, column, value)

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to persist merge result for project %s: %s", project_id, e)
            raise TaskEngineError(f"Failed to persist merge result: {e}") from e

        logger.info(
            "Persisted merge result for project %s (inserted=%d, updated=%d, archived=%d)",
            project_id, len(inserted_ids), len(result.to_update), len(result.to_archive),
        )
        return inserted_ids

    # ---- 変換 -------------------------------------------------------------
    @staticmethod
    def _to_task(row: ProjectTask) -> Task:
        return Task(
            id=row.task_id,
            title=row.title,
            description=row.description,
            phase_number=row.phase_number,
            status=row.status,
            priority=row.priority,
            assignee_id=row.assignee_id,
            start_date=row.start_date,
            due_date=row.due_date,
            estimated_hours=row.estimated_hours,
            tags=list(row.tags or []),
            source_reference=[SourceReference(**ref) for ref in (row.source_reference or [])],
            ai_generated=bool(row.ai_generated),
            notes=row.notes,
            ai_analysis_id=row.ai_analysis_id,
        )

    @staticmethod
    def _task_columns(task: Task | CandidateTask) -> Dict[str, object]:
        return {
            "title": task.title,
            "description": task.description,
            "phase_number": task.phase_number,
            "status": task.status,
            "priority": task.priority,
            "assignee_id": task.assignee_id,
            "start_date": task.start_date,
            "due_date": task.due_date,
            "estimated_hours": task.estimated_hours,
            "tags": list(task.tags),
            "source_reference": [ref.model_dump() for ref in task.source_reference],
            "ai_generated": task.ai_generated,
            "notes": task.notes,
            "ai_analysis_id": task.ai_analysis_id,
        }
