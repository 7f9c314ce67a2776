# Task domain services
# タイムライン解析、日付配分、重複判定、担当者割り当て、タスク生成、リコンサイルに関するサービス

from .timeline_parser import TimelineParser
from .phase_date_distributor import PhaseDateDistributor
from .task_similarity_service import TaskSimilarityService, calculate_string_similarity
from .assignment_matcher import AssignmentMatcher, PhaseRoleCache
from .task_reconciler import TaskReconciler
from .task_repository import TaskRepository
from .task_generation_service import TaskGenerationService

__all__ = [
    "TimelineParser",
    "PhaseDateDistributor",
    "TaskSimilarityService",
    "calculate_string_similarity",
    "AssignmentMatcher",
    "PhaseRoleCache",
    "TaskReconciler",
    "TaskRepository",
    "TaskGenerationService",
]
