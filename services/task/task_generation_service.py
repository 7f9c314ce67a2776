"""
タスク生成オーケストレーター

フェーズ情報・タイムライン・チーム・既存タスクからプロンプトを組み立て、
生成AIでタスク候補を作り、担当者と日付を検証・補完して返す。

- analyze_project: プロジェクト全体を分析してタスク一覧・サマリーを作る
- generate_tasks_from_prompt: ユーザーの自由記述からタスクを作る（日付抽出と並列実行）
- detect_duplicates / merge_tasks: 類似度判定・リコンサイルへの委譲
- regenerate_project_tasks: DBから読み込み -> 分析 -> マージ -> 保存

主処理の生成呼び出しが失敗した場合は同じ種類の例外を1つだけ投げる（部分的な結果は返さない）。
"""
import asyncio
import hashlib
import json
import time
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from langchain_core.prompts import PromptTemplate
from sqlalchemy.orm import Session

from services.base_service import BaseService
from services.errors import ConfigurationError, ParseError, ServiceCallError
from services.task_schemas import (
    CandidateTask, DuplicateDetectionResult, MergeResult, Phase, PhaseSchedule,
    ProjectAnalysisResult, SourceReference, Task, TaskGenerationResult,
    TaskPriority, TaskStatus, TeamContext, TeamMember, UsageMetadata
)
from .assignment_matcher import AssignmentMatcher, PhaseRoleCache
from .phase_date_distributor import PhaseDateDistributor, split_phase_buckets
from .task_reconciler import TaskReconciler
from .task_repository import TaskRepository
from .task_similarity_service import TaskSimilarityService
from .timeline_parser import TimelineParser

MAX_EXISTING_TITLES_ANALYSIS = 12
MAX_EXISTING_TITLES_PROMPT = 10
MAX_INVENTORY_FIELDS = 5
MAX_USER_INPUT_CHARS = 2000
MAX_CONTEXT_CHARS = 500
MAX_DATE_TEXT_CHARS = 500
FIELD_HASH_LENGTH = 16

# フィールド一覧に出さない内部フィールド
EXCLUDED_FIELDS = {"master_prompt", "generated_document", "document_generated_at"}

PLANNING_TIMELINE_FIELD = "high_level_timeline"
BUILD_TIMELINE_FIELD = "build_timeline"


def compute_field_hash(value: Any) -> str:
    """フェーズフィールドの値の短いハッシュ（変更検知用）"""
    payload = json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:FIELD_HASH_LENGTH]


def parse_date(value: Any) -> Optional[date]:
    """'YYYY-MM-DD'（時刻付きも可）を date に。解釈できなければ None"""
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value.strip()) < 10:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _visible_fields(phase: Phase) -> List[str]:
    return [key for key in (phase.data or {}) if not key.startswith("_") and key not in EXCLUDED_FIELDS]


def _merge_usage(current: Optional[UsageMetadata], other: Optional[UsageMetadata]) -> Optional[UsageMetadata]:
    if current is None:
        return other
    return current.accumulate(other)


class TaskGenerationService(BaseService):
    """タスク生成エンジンの入り口"""

    def __init__(
        self,
        db: Optional[Session] = None,
        default_model_provider: Optional[str] = None,
        similarity_service: Optional[TaskSimilarityService] = None,
        matcher: Optional[AssignmentMatcher] = None,
        distributor: Optional[PhaseDateDistributor] = None,
        reconciler: Optional[TaskReconciler] = None,
        repository: Optional[TaskRepository] = None,
        phase_role_cache: Optional[PhaseRoleCache] = None,
        **kwargs,
    ):
        super().__init__(db, default_model_provider, **kwargs)
        self.similarity_service = similarity_service or TaskSimilarityService(
            db, llm_client=self.llm_client, lite_client=self.lite_client
        )
        self.matcher = matcher or AssignmentMatcher(phase_role_cache)
        self.distributor = distributor or PhaseDateDistributor()
        self.reconciler = reconciler or TaskReconciler()
        self.repository = repository or (TaskRepository(db) if db is not None else None)

    # ------------------------------------------------------------------
    # プロジェクト分析
    # ------------------------------------------------------------------
    async def analyze_project(
        self,
        project_name: str,
        phases: Sequence[Phase],
        existing_tasks: Sequence[Task] = (),
        roster: Sequence[TeamMember] = (),
        is_default_template: bool = True,
        today: Optional[date] = None,
    ) -> ProjectAnalysisResult:
        """
        プロジェクト全体を分析し、タスク・サマリー・次の一手・ブロッカー・見積もりを返す

        Raises:
            ServiceCallError / ParseError: 主処理の生成呼び出しが失敗した場合
        """
        today = today or date.today()
        metadata: Optional[UsageMetadata] = None

        if is_default_template:
            planning_timeline, build_timeline = self._read_known_timelines(phases)
        else:
            planning_timeline, build_timeline, usage = await self._extract_timelines(project_name, phases)
            metadata = _merge_usage(metadata, usage)

        parser = TimelineParser(p.phase_number for p in phases)
        schedule = self.distributor.build_schedule(
            phases,
            today,
            planning_days=parser.parse(planning_timeline),
            build_days=parser.parse(build_timeline),
            existing_tasks=existing_tasks,
            planning_timeline=planning_timeline,
            build_timeline=build_timeline,
        )
        team_context = self._team_context(roster, phases)

        template = PromptTemplate.from_template(self.get_prompt("task_generation_service", "analyze_project"))
        prompt = template.format(
            project_name=project_name,
            phase_count=len(phases),
            phase_list=self._phase_list(phases),
            phase_inventory=self._phase_inventory(phases),
            existing_tasks=self._existing_tasks_section(existing_tasks, MAX_EXISTING_TITLES_ANALYSIS, "Existing Tasks"),
            team_context=team_context.prompt_text,
            timeline_rules=self._timeline_rules(phases, schedule, planning_timeline, build_timeline),
        )
        options = {"project_data": {"name": project_name, "phases": self._phase_summaries(phases)}}

        self.logger.info("Analyzing project '%s' (%d phases, %d existing tasks)",
                         project_name, len(phases), len(existing_tasks))
        try:
            parsed, usage = await self.llm_client.generate_structured(prompt, options, project_name)
        except ServiceCallError as e:
            self.logger.error("Project analysis failed for '%s': %s", project_name, e)
            raise ServiceCallError(f"Failed to analyze project: {e}", status=e.status) from e
        except ParseError as e:
            self.logger.error("Project analysis response could not be parsed for '%s'", project_name)
            raise ParseError("Failed to analyze project: response was not valid JSON", e.response_preview) from e
        metadata = _merge_usage(metadata, usage)

        raw_tasks = self._raw_task_list(parsed)
        candidates = self._build_candidates(raw_tasks, phases, roster, team_context)
        candidates = self.distributor.assign_task_dates(candidates, schedule)

        body = parsed if isinstance(parsed, dict) else {}
        estimates = body.get("estimates") if isinstance(body.get("estimates"), dict) else {}
        return ProjectAnalysisResult(
            tasks=candidates,
            summary=str(body.get("summary") or ""),
            next_steps=self._string_list(body.get("next_steps")),
            blockers=self._string_list(body.get("blockers")),
            estimates=estimates,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # 自由記述からの生成
    # ------------------------------------------------------------------
    async def generate_tasks_from_prompt(
        self,
        free_text: str,
        project_name: str,
        phases: Sequence[Phase],
        existing_tasks: Sequence[Task] = (),
        roster: Sequence[TeamMember] = (),
        context: Optional[str] = None,
        check_duplicates: bool = True,
        today: Optional[date] = None,
    ) -> TaskGenerationResult:
        """
        ユーザー入力（PRDなど）からタスクを生成する

        日付抽出（軽量モデル）とタスク生成は並列に実行し、抽出できた最も早い日付を
        期日のないタスクに補う。check_duplicates が True なら既存タスクとの重複も判定する。
        """
        start_time = time.monotonic()
        today = today or date.today()
        team_context = self._team_context(roster, phases)

        user_input = free_text[:MAX_USER_INPUT_CHARS] + ("..." if len(free_text) > MAX_USER_INPUT_CHARS else "")
        context_text = f"\nCONTEXT: {context[:MAX_CONTEXT_CHARS]}\n" if context else ""
        existing_section = ""
        if existing_tasks:
            existing_section = self._existing_tasks_section(
                existing_tasks, MAX_EXISTING_TITLES_PROMPT, "EXISTING (avoid duplicates)"
            )

        template = PromptTemplate.from_template(self.get_prompt("task_generation_service", "generate_from_prompt"))
        prompt = template.format(
            project_name=project_name,
            team_context=team_context.prompt_text,
            user_input=user_input,
            context=context_text,
            phase_inventory=self._phase_inventory(phases),
            existing_tasks=existing_section,
            phase_numbers=", ".join(str(p.phase_number) for p in sorted(phases, key=lambda p: p.phase_number)),
            today=today.isoformat(),
        )
        options = {"project_data": {"name": project_name, "phases": self._phase_summaries(phases)}}

        extraction = asyncio.ensure_future(self._extract_dates(free_text, today))
        try:
            try:
                parsed, usage = await self.llm_client.generate_structured(prompt, options, project_name)
            except BaseException:
                # 主処理が失敗したら日付抽出の呼び出しも打ち切る
                extraction.cancel()
                raise
        except ServiceCallError as e:
            self.logger.error("Task generation failed for '%s': %s", project_name, e)
            raise ServiceCallError(f"Failed to generate tasks: {e}", status=e.status) from e
        except ParseError as e:
            self.logger.error("Task generation response could not be parsed for '%s'", project_name)
            raise ParseError("Failed to generate tasks: response was not valid JSON", e.response_preview) from e
        earliest_date, date_usage = await extraction
        metadata = _merge_usage(usage, date_usage)

        candidates = self._build_candidates(self._raw_task_list(parsed), phases, roster, team_context)
        if earliest_date is not None:
            candidates = [
                c if c.due_date is not None else c.model_copy(update={"due_date": earliest_date})
                for c in candidates
            ]

        schedule = self.distributor.build_schedule(
            phases,
            today,
            planning_days=TimelineParser(p.phase_number for p in phases).parse(free_text),
            existing_tasks=existing_tasks,
        )
        candidates = self.distributor.assign_task_dates(candidates, schedule)

        if check_duplicates and existing_tasks:
            detection = await self.similarity_service.detect_duplicates(candidates, existing_tasks)
            candidates = detection.tasks
            metadata = _merge_usage(metadata, detection.metadata)

        body = parsed if isinstance(parsed, dict) else {}
        response_time_ms = int((time.monotonic() - start_time) * 1000)
        self.logger.info("Generated %d tasks for '%s' in %dms", len(candidates), project_name, response_time_ms)
        return TaskGenerationResult(
            tasks=candidates,
            summary=str(body.get("summary") or ""),
            response_time_ms=response_time_ms,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # 委譲
    # ------------------------------------------------------------------
    async def detect_duplicates(
        self, candidates: Sequence[CandidateTask], existing_tasks: Sequence[Task]
    ) -> DuplicateDetectionResult:
        return await self.similarity_service.detect_duplicates(candidates, existing_tasks)

    def merge_tasks(
        self,
        existing_tasks: Sequence[Task],
        generated_tasks: Sequence[CandidateTask],
        ai_analysis_id: Optional[str] = None,
    ) -> MergeResult:
        return self.reconciler.merge_tasks(existing_tasks, generated_tasks, ai_analysis_id)

    async def regenerate_project_tasks(
        self,
        project_id: str,
        project_name: str,
        is_default_template: bool = True,
        check_duplicates: bool = False,
    ) -> MergeResult:
        """DBのプロジェクトを再分析し、マージ結果を保存して返す"""
        if self.repository is None:
            raise ConfigurationError("A database session is required to regenerate project tasks")

        phases = self.repository.load_phases(project_id)
        existing_tasks = self.repository.load_tasks(project_id)
        roster = self.repository.load_roster(project_id)

        analysis = await self.analyze_project(
            project_name, phases, existing_tasks, roster, is_default_template=is_default_template
        )
        generated = analysis.tasks
        if check_duplicates and existing_tasks:
            generated = (await self.detect_duplicates(generated, existing_tasks)).tasks

        ai_analysis_id = str(uuid.uuid4())
        result = self.merge_tasks(existing_tasks, generated, ai_analysis_id)
        self.repository.apply_merge_result(project_id, result)
        return result

    # ------------------------------------------------------------------
    # タイムライン・日付の抽出
    # ------------------------------------------------------------------
    def _read_known_timelines(self, phases: Sequence[Phase]) -> Tuple[str, str]:
        """デフォルトテンプレート: 既知のフィールドからタイムラインを読む"""
        planning_phases, build_phases = split_phase_buckets(phases)

        def first_text(bucket: Sequence[Phase], field: str) -> str:
            for phase in bucket:
                value = (phase.data or {}).get(field)
                if isinstance(value, str) and value.strip():
                    return value.strip()
            return ""

        return first_text(planning_phases, PLANNING_TIMELINE_FIELD), first_text(build_phases, BUILD_TIMELINE_FIELD)

    async def _extract_timelines(
        self, project_name: str, phases: Sequence[Phase]
    ) -> Tuple[str, str, Optional[UsageMetadata]]:
        """カスタムテンプレート: フェーズ内容から生成AIでタイムラインを抽出する（失敗時は正規表現）"""
        ordered = sorted(phases, key=lambda p: p.phase_number)
        content = [self._phase_content(p) for p in ordered[:2] if p.data]
        if not content:
            content = [self._phase_content(p) for p in ordered[2:] if p.data]
        if not content:
            return "", "", None

        phase_content = "\n\n".join(content)
        template = PromptTemplate.from_template(self.get_prompt("task_generation_service", "extract_timelines"))
        prompt = template.format(phase_content=phase_content)
        try:
            parsed, usage = await self.llm_client.generate_structured(
                prompt, {"context": "Extract timeline information from project phases"}, project_name
            )
        except (ServiceCallError, ParseError) as e:
            self.logger.warning("Timeline extraction failed, using text search fallback: %s", e)
            return TimelineParser.find_timeline_mentions(phase_content), "", None

        body = parsed if isinstance(parsed, dict) else {}
        planning = str(body.get("planning_timeline") or body.get("overall_timeline") or "").strip()
        build = str(body.get("build_timeline") or "").strip()
        if not planning and not build:
            planning = TimelineParser.find_timeline_mentions(phase_content)
        return planning, build, usage

    async def _extract_dates(self, text: str, today: date) -> Tuple[Optional[date], Optional[UsageMetadata]]:
        """自由記述から最も早い日付を抽出する（失敗しても生成全体は止めない）"""
        template = PromptTemplate.from_template(self.get_prompt("task_generation_service", "extract_dates"))
        prompt = template.format(text=text[:MAX_DATE_TEXT_CHARS], today=today.isoformat())
        try:
            parsed, usage = await self.lite_client.generate_structured(prompt)
        except (ServiceCallError, ParseError) as e:
            self.logger.warning("Date extraction failed, continuing without extracted dates: %s", e)
            return None, None

        body = parsed if isinstance(parsed, dict) else {}
        earliest = parse_date(body.get("earliest"))
        if earliest is None:
            extracted = [d for d in (parse_date(v) for v in self._string_list(body.get("dates"))) if d]
            earliest = min(extracted) if extracted else None
        return earliest, usage

    # ------------------------------------------------------------------
    # 応答 -> CandidateTask
    # ------------------------------------------------------------------
    def _raw_task_list(self, parsed: Any) -> List[Dict[str, Any]]:
        if isinstance(parsed, list):
            raw_tasks = parsed
        elif isinstance(parsed, dict):
            raw_tasks = parsed.get("tasks")
        else:
            raw_tasks = None
        if not isinstance(raw_tasks, list):
            raise ParseError("Response does not contain a task list", json.dumps(parsed, default=str))
        return [item for item in raw_tasks if isinstance(item, dict)]

    def _build_candidates(
        self,
        raw_tasks: Sequence[Dict[str, Any]],
        phases: Sequence[Phase],
        roster: Sequence[TeamMember],
        team_context: TeamContext,
    ) -> List[CandidateTask]:
        phases_by_number = {p.phase_number: p for p in phases}
        candidates = []
        for index, raw in enumerate(raw_tasks):
            candidate = self._to_candidate(raw, phases_by_number, index)
            suggested = AssignmentMatcher.expand_short_id(raw.get("assignee_id"), team_context.short_id_map)
            # ロスターが空なら誰も割り当てない（UUID形式の提案も検証する）
            assignee_id = self.matcher.validate_assignee(
                candidate, phases_by_number.get(candidate.phase_number), roster, suggested
            )
            candidates.append(candidate.model_copy(update={"assignee_id": assignee_id}))
        return candidates

    def _to_candidate(self, raw: Dict[str, Any], phases_by_number: Dict[int, Phase], index: int) -> CandidateTask:
        title = str(raw.get("title") or "").strip() or "Untitled Task"

        phase_number = self._to_int(raw.get("phase_number"))
        if phase_number not in phases_by_number:
            phase_number = None

        priority = str(raw.get("priority") or "").lower()
        if priority not in {p.value for p in TaskPriority}:
            priority = TaskPriority.MEDIUM.value
        status = str(raw.get("status") or "").lower()
        if status not in {TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value}:
            status = TaskStatus.TODO.value

        estimated_hours = None
        try:
            if raw.get("estimated_hours") is not None:
                estimated_hours = max(float(raw["estimated_hours"]), 0.0)
        except (TypeError, ValueError):
            self.logger.debug("Ignoring invalid estimated_hours for '%s': %r", title, raw.get("estimated_hours"))

        description = raw.get("description")
        return CandidateTask(
            title=title,
            description=str(description).strip() if description else None,
            phase_number=phase_number,
            status=status,
            priority=priority,
            start_date=parse_date(raw.get("start_date")),
            due_date=parse_date(raw.get("due_date")),
            estimated_hours=estimated_hours,
            tags=self._string_list(raw.get("tags")),
            source_reference=self._source_references(raw.get("source_fields"), phases_by_number),
            notes=str(raw["notes"]) if raw.get("notes") else None,
            requirements=self._string_list(raw.get("requirements")),
            user_stories=self._string_list(raw.get("userStories") or raw.get("user_stories")),
            preview_id=f"preview-{index}-{uuid.uuid4().hex[:8]}",
        )

    def _source_references(self, raw_fields: Any, phases_by_number: Dict[int, Phase]) -> List[SourceReference]:
        if not isinstance(raw_fields, list):
            return []
        references = []
        for item in raw_fields:
            if not isinstance(item, dict):
                continue
            phase_number = self._to_int(item.get("phase"))
            field_key = item.get("field")
            if phase_number is None or not isinstance(field_key, str) or not field_key:
                continue
            phase = phases_by_number.get(phase_number)
            field_hash = None
            if phase is not None and field_key in (phase.data or {}):
                field_hash = compute_field_hash(phase.data[field_key])
            references.append(SourceReference(phase_number=phase_number, field_key=field_key, field_hash=field_hash))
        return references

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        if isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _string_list(value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if item is not None and str(item).strip()]

    # ------------------------------------------------------------------
    # プロンプト部品
    # ------------------------------------------------------------------
    def _team_context(self, roster: Sequence[TeamMember], phases: Sequence[Phase]) -> TeamContext:
        if not roster:
            return TeamContext()
        rules = self.get_prompt("assignment_matcher", "assignment_rules")
        return self.matcher.build_team_context(roster, phases, rules)

    @staticmethod
    def _phase_list(phases: Sequence[Phase]) -> str:
        return "\n".join(f"{p.phase_number}. {p.display_name}" for p in sorted(phases, key=lambda p: p.phase_number))

    @staticmethod
    def _phase_inventory(phases: Sequence[Phase]) -> str:
        """P1:Plan ✓ [field_a, field_b...] 形式（値は含めない）"""
        lines = []
        for phase in sorted(phases, key=lambda p: p.phase_number):
            keys = _visible_fields(phase)
            shown = ", ".join(keys[:MAX_INVENTORY_FIELDS]) + ("..." if len(keys) > MAX_INVENTORY_FIELDS else "")
            status = " ✓" if phase.completed else ""
            lines.append(f"P{phase.phase_number}:{phase.display_name}{status} [{shown}]")
        return "\n".join(lines)

    @staticmethod
    def _phase_summaries(phases: Sequence[Phase]) -> List[Dict[str, Any]]:
        return [
            {"phase_number": p.phase_number, "phase_name": p.phase_name, "completed": p.completed}
            for p in sorted(phases, key=lambda p: p.phase_number)
        ]

    @staticmethod
    def _phase_content(phase: Phase) -> str:
        return f"Phase {phase.phase_number} ({phase.display_name}): {json.dumps(phase.data, ensure_ascii=False, default=str)}"

    @staticmethod
    def _existing_tasks_section(existing_tasks: Sequence[Task], limit: int, header: str) -> str:
        if not existing_tasks:
            return "No existing tasks.\n"
        lines = [f"- {t.title} [{t.status}]" for t in existing_tasks[:limit]]
        if len(existing_tasks) > limit:
            lines.append(f"- ... and {len(existing_tasks) - limit} more")
        return f"{header}:\n" + "\n".join(lines) + "\n"

    @staticmethod
    def _timeline_rules(
        phases: Sequence[Phase],
        schedule: PhaseSchedule,
        planning_timeline: str,
        build_timeline: str,
    ) -> str:
        lines = [
            f"Planning Timeline: {planning_timeline or 'No planning timeline provided.'}",
            f"Build Timeline: {build_timeline or 'No build timeline provided.'}",
            f"Current date (TODAY): {schedule.today.isoformat()}",
            f"Total Project Duration: {schedule.total_days} days (approximately {round(schedule.total_days / 30)} months)",
            f"  - Planning phases: {schedule.planning_days} days",
            f"  - Build phases: {schedule.build_days} days"
            + (" (minimum 90 days for full scale build)" if schedule.build_floor_applied else ""),
            "Phase windows:",
        ]
        ordered = sorted(phases, key=lambda p: p.phase_number)
        for phase in ordered:
            window = schedule.windows.get(phase.phase_number)
            if window is None:
                continue
            if phase.completed:
                lines.append(f"  - Phase {phase.phase_number} ({phase.display_name}): COMPLETED")
            else:
                lines.append(
                    f"  - Phase {phase.phase_number} ({phase.display_name}): "
                    f"{window.start_date.isoformat()} to {window.end_date.isoformat()}"
                )

        completed = [p.display_name for p in ordered if p.completed]
        current = next((p for p in ordered if not p.completed), None)
        if completed:
            status = f"Project Status: {', '.join(completed)} COMPLETED."
            if current is not None:
                status += f" Currently working on {current.display_name}."
        elif ordered:
            status = f"Project Status: Just starting - {ordered[0].display_name} is the first phase."
        else:
            status = "Project Status: No phases defined."
        lines.append(status)
        lines.append("Every task MUST have a due_date (YYYY-MM-DD) inside its phase window.")
        return "\n".join(lines)
