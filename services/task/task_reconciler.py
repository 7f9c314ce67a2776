"""
生成タスクと既存タスクのリコンサイル

再分析のたびに呼ばれる前提で、ユーザーの手動編集を壊さずに
update / insert / archive の3つに振り分ける。削除は一切しない。

マッチングの厳しさ:
1. 類似度判定で exact_duplicate とされた候補は existing_task_id の既存タスク
2. それ以外はタイトルの正規化一致（大文字小文字・空白を無視）
3. それもなければ部分文字列の包含
空のタイトルはマッチさせない。1回の実行で既存タスクを更新するのは1度だけ。
"""
import logging
import re
from datetime import date
from typing import Dict, List, Optional, Sequence, Set

from services.task_schemas import (
    CandidateTask, DuplicateStatus, MergeResult, Task, TaskStatus
)

logger = logging.getLogger("task_engine.task_reconciler")

_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (title or "").strip().lower())


def titles_match(a: Optional[str], b: Optional[str]) -> bool:
    """正規化したタイトルの一致、またはどちらかがもう一方を含む"""
    left, right = normalize_title(a), normalize_title(b)
    if not left or not right:
        return False
    return left == right or left in right or right in left


class TaskReconciler:
    """mergeTasks の実装"""

    def __init__(self):
        self.logger = logger

    def merge_tasks(
        self,
        existing_tasks: Sequence[Task],
        generated_tasks: Sequence[CandidateTask],
        ai_analysis_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> MergeResult:
        """
        Args:
            existing_tasks: プロジェクトの既存タスク（変更しない）
            generated_tasks: 今回生成されたタスク
            ai_analysis_id: 今回の分析ID（insert / update したタスクに記録）
            today: 変更履歴に記録する日付
        """
        today = today or date.today()
        by_id: Dict[str, Task] = {task.id: task for task in existing_tasks}
        claimed: Set[str] = set()
        relevant: Set[str] = set()
        result = MergeResult()

        for candidate in generated_tasks:
            matching = self._find_match(candidate, existing_tasks, by_id, claimed)
            for task in existing_tasks:
                if titles_match(task.title, candidate.title):
                    relevant.add(task.id)

            if matching is None:
                if any(titles_match(by_id[task_id].title, candidate.title) for task_id in claimed):
                    # 既に今回更新済みのタスクと同じもの -> 二重に追加しない
                    self.logger.debug("Absorbing candidate '%s' into an already matched task", candidate.title)
                    continue
                result.to_insert.append(self._prepare_insert(candidate, ai_analysis_id))
                continue

            claimed.add(matching.id)
            relevant.add(matching.id)
            if matching.ai_generated:
                updated = self._merge_ai_task(matching, candidate, ai_analysis_id, today)
            else:
                updated = self._backfill_user_task(matching, candidate)
            if updated is not None:
                result.to_update.append(updated)

        for task in existing_tasks:
            if task.ai_generated and task.status == TaskStatus.DONE.value and task.id not in relevant:
                result.to_archive.append(task.model_copy(update={"status": TaskStatus.ARCHIVED.value}))

        self.logger.info(
            "Merge result: %d to update, %d to insert, %d to archive",
            len(result.to_update), len(result.to_insert), len(result.to_archive),
        )
        return result

    def _find_match(
        self,
        candidate: CandidateTask,
        existing_tasks: Sequence[Task],
        by_id: Dict[str, Task],
        claimed: Set[str],
    ) -> Optional[Task]:
        if (
            candidate.duplicate_status == DuplicateStatus.EXACT_DUPLICATE.value
            and candidate.existing_task_id in by_id
            and candidate.existing_task_id not in claimed
        ):
            return by_id[candidate.existing_task_id]

        title = normalize_title(candidate.title)
        if not title:
            return None
        unclaimed = [task for task in existing_tasks if task.id not in claimed]
        for task in unclaimed:
            if normalize_title(task.title) == title:
                return task
        for task in unclaimed:
            if titles_match(task.title, candidate.title):
                return task
        return None

    @staticmethod
    def _prepare_insert(candidate: CandidateTask, ai_analysis_id: Optional[str]) -> CandidateTask:
        if ai_analysis_id is None:
            return candidate
        return candidate.model_copy(update={"ai_analysis_id": ai_analysis_id})

    def _merge_ai_task(
        self,
        existing: Task,
        candidate: CandidateTask,
        ai_analysis_id: Optional[str],
        today: date,
    ) -> Optional[Task]:
        """AI生成タスクは内容を上書きする（日付は指定があるときだけ、担当者は既存を優先）"""
        changes = {
            "title": candidate.title,
            "description": candidate.description,
            "phase_number": candidate.phase_number,
            "priority": candidate.priority,
            "tags": list(candidate.tags),
            "start_date": candidate.start_date or existing.start_date,
            "due_date": candidate.due_date or existing.due_date,
            "assignee_id": existing.assignee_id or candidate.assignee_id,
        }
        if candidate.source_reference:
            changes["source_reference"] = list(candidate.source_reference)

        if changes["start_date"] and changes["due_date"] and changes["start_date"] > changes["due_date"]:
            self.logger.info("Clamping start_date of '%s' to its due_date", existing.title)
            changes["start_date"] = changes["due_date"]

        changed = {key: value for key, value in changes.items() if getattr(existing, key) != value}
        if not changed:
            return None

        if "description" in changed:
            note = f"\n\n---\n[{today.isoformat()}] Re-analysis update: {candidate.description or ''}"
            changed["notes"] = (existing.notes or "") + note
        if ai_analysis_id is not None:
            changed["ai_analysis_id"] = ai_analysis_id
        return existing.model_copy(update=changed)

    def _backfill_user_task(self, existing: Task, candidate: CandidateTask) -> Optional[Task]:
        """手動作成タスクは空の日付を埋めるだけ"""
        changes = {}
        if existing.due_date is None and candidate.due_date is not None:
            if existing.start_date is None or existing.start_date <= candidate.due_date:
                changes["due_date"] = candidate.due_date
        if existing.start_date is None and candidate.start_date is not None:
            due_date = changes.get("due_date", existing.due_date)
            if due_date is None or candidate.start_date <= due_date:
                changes["start_date"] = candidate.start_date

        if not changes:
            return None
        self.logger.debug("Backfilling %s of user task '%s'", sorted(changes), existing.title)
        return existing.model_copy(update=changes)
