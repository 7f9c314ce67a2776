"""
Pydantic models for the task generation & reconciliation engine.

These models are used for:
1. Immutable snapshots of caller data (phases, tasks, team roster)
2. Candidate tasks produced by generation before persistence
3. Result envelopes returned by the engine entry points

IMPORTANT: Task / Phase / TeamMember must stay compatible with the DB rows in
models/project_task.py (see TaskRepository for the conversion).
"""

from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# =====================================================================
# Enums (must match DB values)
# =====================================================================

class TaskStatus(str, Enum):
    """タスクの状態"""
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ARCHIVED = "archived"  # 削除はせず、アーカイブのみ


class TaskPriority(str, Enum):
    """タスクの優先度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DuplicateStatus(str, Enum):
    """既存タスクに対する重複判定"""
    UNIQUE = "unique"
    POSSIBLE_DUPLICATE = "possible_duplicate"
    EXACT_DUPLICATE = "exact_duplicate"


class SimilarityBasis(str, Enum):
    """類似度の算出根拠"""
    STRING = "string"      # 文字列類似度のみ
    SEMANTIC = "semantic"  # 生成AIによる意味的判定のみ
    HYBRID = "hybrid"      # 0.3 * string + 0.7 * semantic


# =====================================================================
# Project snapshot
# =====================================================================

class Phase(BaseModel):
    """
    プロジェクトのフェーズ

    data にはユーザーが自由に入力したフィールド（タイムライン、説明など）が入る。
    エンジンからは読み取り専用。
    """
    phase_number: int
    phase_name: Optional[str] = None
    completed: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.phase_name or f"Phase {self.phase_number}"


class SourceReference(BaseModel):
    """タスクを生成したフェーズフィールドへの参照（変更検知用）"""
    phase_number: int
    field_key: str
    field_hash: Optional[str] = None


class TeamMember(BaseModel):
    """リクエストごとに渡されるチームメンバーのスナップショット"""
    user_id: str
    name: str
    role_name: str
    role_description: Optional[str] = None
    current_task_count: int = Field(default=0, ge=0)
    is_overworked: bool = False


class TaskFields(BaseModel):
    """Task / CandidateTask 共通のフィールド"""
    title: str
    description: Optional[str] = None
    phase_number: Optional[int] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee_id: Optional[str] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    tags: List[str] = Field(default_factory=list)
    source_reference: List[SourceReference] = Field(default_factory=list)
    ai_generated: bool = False
    notes: Optional[str] = None
    ai_analysis_id: Optional[str] = None

    class Config:
        use_enum_values = True
        validate_default = True  # デフォルト値も文字列にそろえる

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, tags: List[str]) -> List[str]:
        # 集合として扱うが、表示順は保持する
        seen = set()
        unique = []
        for tag in tags:
            if tag not in seen:
                seen.add(tag)
                unique.append(tag)
        return unique

    def has_valid_dates(self) -> bool:
        if self.start_date is None or self.due_date is None:
            return False
        return self.start_date <= self.due_date


class Task(TaskFields):
    """永続化済みのタスク"""
    id: str


class CandidateTask(TaskFields):
    """
    生成直後のタスク（永続化前）

    重複判定・リコンサイル後に insert / update / 破棄のいずれかになる。
    """
    ai_generated: bool = True
    duplicate_status: DuplicateStatus = DuplicateStatus.UNIQUE
    existing_task_id: Optional[str] = None
    requirements: List[str] = Field(default_factory=list)
    user_stories: List[str] = Field(default_factory=list)
    preview_id: Optional[str] = None


class SimilarityResult(BaseModel):
    """類似度判定の結果（永続化しない）"""
    similarity: float = Field(ge=0.0, le=1.0)
    basis: SimilarityBasis

    class Config:
        use_enum_values = True
        validate_default = True


# =====================================================================
# Service usage / results
# =====================================================================

class UsageMetadata(BaseModel):
    """生成AI呼び出しのトークン数・コスト"""
    model: str = ""
    prompt_length: int = 0
    full_prompt_length: int = 0
    response_length: int = 0
    response_time_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    calls: int = 1
    error: Optional[str] = None

    def accumulate(self, other: Optional["UsageMetadata"]) -> "UsageMetadata":
        """2つの使用量を合算した新しいインスタンスを返す"""
        if other is None:
            return self
        return UsageMetadata(
            model=self.model or other.model,
            prompt_length=self.prompt_length + other.prompt_length,
            full_prompt_length=self.full_prompt_length + other.full_prompt_length,
            response_length=self.response_length + other.response_length,
            response_time_ms=self.response_time_ms + other.response_time_ms,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated_cost=self.estimated_cost + other.estimated_cost,
            calls=self.calls + other.calls,
            error=self.error or other.error,
        )


class GenerationResponse(BaseModel):
    """生成AIサービスの応答"""
    text: str
    usage: Optional[UsageMetadata] = None


class PhaseWindow(BaseModel):
    """フェーズに割り当てられた期間"""
    phase_number: int
    start_offset: int  # today からの日数
    days: int
    start_date: date
    end_date: date
    is_build: bool = False


class PhaseSchedule(BaseModel):
    """フェーズごとの期間と、計画/ビルドの合計日数"""
    today: date
    planning_days: int
    build_days: int
    build_floor_applied: bool = False
    windows: Dict[int, PhaseWindow] = Field(default_factory=dict)

    @property
    def total_days(self) -> int:
        return self.planning_days + self.build_days

    @property
    def end_date(self) -> date:
        if not self.windows:
            return self.today
        return max(window.end_date for window in self.windows.values())


class TeamContext(BaseModel):
    """プロンプト用のチーム情報と短縮ID（M1, M2...）の対応表"""
    prompt_text: str = ""
    short_id_map: Dict[str, str] = Field(default_factory=dict)


class ProjectAnalysisResult(BaseModel):
    tasks: List[CandidateTask]
    summary: str = ""
    next_steps: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    estimates: Dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[UsageMetadata] = None


class TaskGenerationResult(BaseModel):
    tasks: List[CandidateTask]
    summary: str = ""
    response_time_ms: int = 0
    metadata: Optional[UsageMetadata] = None


class DuplicateDetectionResult(BaseModel):
    tasks: List[CandidateTask]
    metadata: Optional[UsageMetadata] = None


class MergeResult(BaseModel):
    """リコンサイル結果（呼び出し側がこの単位で永続化する）"""
    to_update: List[Task] = Field(default_factory=list)
    to_insert: List[CandidateTask] = Field(default_factory=list)
    to_archive: List[Task] = Field(default_factory=list)
