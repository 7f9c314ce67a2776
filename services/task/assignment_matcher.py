"""
チームメンバーの割り当て

フェーズ名・タスク内容のキーワードとメンバーの役割を突き合わせてスコアリングする。
- プロンプト前: メンバーごとに向いているフェーズを添えたロスター（短縮ID M1, M2...）を作る
- 応答後: AIの提案を検証し、不正・未指定ならスコア最上位のメンバーで補う
"""
import logging
import re
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from services.task_schemas import Phase, TaskFields, TeamContext, TeamMember

logger = logging.getLogger("task_engine.assignment_matcher")

PHASE_MATCH_SCORE = 3.0
TASK_KEYWORD_SCORE = 2.0
PER_TASK_PENALTY = 0.1
OVERWORKED_PENALTY = 2.0

# 役割名・役割説明 -> カテゴリ
ROLE_KEYWORDS: Dict[str, List[str]] = {
    "engineering": ["engineer", "developer", "architect", "technical", "programmer", "coder",
                    "backend", "frontend", "full-stack", "fullstack", "software", "devops"],
    "design": ["design", "ui", "ux", "visual", "creative"],
    "qa": ["qa", "test", "quality", "assurance", "sdet"],
    "product": ["product", "strategy", "strategist", "manager", "owner", "analyst", "scrum"],
    "business": ["business", "sales", "marketing", "partnership", "account"],
}

# フェーズ名 -> 期待される役割カテゴリ
PHASE_KEYWORDS: Dict[str, List[str]] = {
    "product": ["concept", "discovery", "strategy", "plan", "framing", "research",
                "requirement", "analysis", "stories", "specification", "scope"],
    "design": ["design", "ui", "ux", "wireframe", "mockup", "visual", "prototype"],
    "engineering": ["build", "develop", "implement", "code", "engineering", "accelerator",
                    "technical", "architecture", "api", "backend", "frontend", "database"],
    "qa": ["qa", "quality", "test", "hardening", "verification", "assurance"],
    "business": ["launch", "go-to-market", "marketing", "sales"],
}

# タスクのタイトル・説明 -> 役割カテゴリ
TASK_KEYWORDS: Dict[str, List[str]] = {
    "design": ["design", "ui", "ux", "wireframe", "mockup", "visual", "prototype"],
    "engineering": ["code", "implement", "develop", "build", "api", "backend", "frontend",
                    "database", "engineer", "infrastructure", "deploy", "integrate", "migrat"],
    "qa": ["test", "qa", "quality", "verify", "verification", "bug"],
    "product": ["product", "strategy", "requirement", "stakeholder", "roadmap", "user stor"],
    "business": ["business", "sales", "marketing", "outreach", "partnership", "pricing"],
}


def _compile(keyword_map: Dict[str, List[str]]) -> Dict[str, re.Pattern]:
    # 語頭一致（"test" は "testing" に一致し、"contest" には一致しない）
    return {
        category: re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + ")", re.IGNORECASE)
        for category, keywords in keyword_map.items()
    }


_ROLE_PATTERNS = _compile(ROLE_KEYWORDS)
_PHASE_PATTERNS = _compile(PHASE_KEYWORDS)
_TASK_PATTERNS = _compile(TASK_KEYWORDS)

_SHORT_ID = re.compile(r"^M\d+$", re.IGNORECASE)
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def match_categories(text: Optional[str], patterns: Dict[str, re.Pattern]) -> FrozenSet[str]:
    if not text:
        return frozenset()
    return frozenset(category for category, pattern in patterns.items() if pattern.search(text))


class PhaseRoleCache:
    """
    フェーズ一覧のシグネチャ（"1:Plan|2:Build"）-> フェーズ番号ごとの役割カテゴリ

    プロセス全体で共有せず、サービスに注入して使う。
    """

    def __init__(self):
        self._entries: Dict[str, Dict[int, FrozenSet[str]]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def signature(phases: Iterable[Phase]) -> str:
        ordered = sorted(phases, key=lambda p: p.phase_number)
        return "|".join(f"{p.phase_number}:{p.phase_name or ''}" for p in ordered)

    def get_or_compute(
        self,
        phases: Sequence[Phase],
        compute: Callable[[Sequence[Phase]], Dict[int, FrozenSet[str]]],
    ) -> Dict[int, FrozenSet[str]]:
        key = self.signature(phases)
        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        value = compute(phases)
        self._entries[key] = value
        return value

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0


class AssignmentMatcher:
    """役割・フェーズ・負荷に基づく担当者選定"""

    def __init__(self, cache: Optional[PhaseRoleCache] = None):
        self.cache = cache if cache is not None else PhaseRoleCache()

    @staticmethod
    def member_categories(member: TeamMember) -> FrozenSet[str]:
        text = f"{member.role_name} {member.role_description or ''}"
        return match_categories(text, _ROLE_PATTERNS)

    def phase_categories(self, phases: Sequence[Phase]) -> Dict[int, FrozenSet[str]]:
        return self.cache.get_or_compute(
            phases,
            lambda items: {p.phase_number: match_categories(p.phase_name, _PHASE_PATTERNS) for p in items},
        )

    @staticmethod
    def task_categories(task: TaskFields) -> FrozenSet[str]:
        return match_categories(f"{task.title} {task.description or ''}", _TASK_PATTERNS)

    def score_member(
        self,
        member: TeamMember,
        phase_categories: FrozenSet[str],
        task_categories: FrozenSet[str],
    ) -> float:
        categories = self.member_categories(member)
        score = 0.0
        if categories & phase_categories:
            score += PHASE_MATCH_SCORE
        if categories & task_categories:
            score += TASK_KEYWORD_SCORE
        score -= PER_TASK_PENALTY * member.current_task_count
        if member.is_overworked:
            score -= OVERWORKED_PENALTY
        return score

    def find_best_assignee(
        self,
        task: TaskFields,
        phase: Optional[Phase],
        members: Sequence[TeamMember],
    ) -> Optional[str]:
        """
        最高スコアのメンバーのIDを返す（スコアが0以下なら None）

        同点の場合は担当タスクが少ないメンバー、それも同じならロスター順で先のメンバー。
        """
        if not members:
            return None

        phase_cats: FrozenSet[str] = frozenset()
        if phase is not None:
            phase_cats = self.phase_categories([phase]).get(phase.phase_number, frozenset())
        task_cats = self.task_categories(task)

        best_id: Optional[str] = None
        best_key = None
        for index, member in enumerate(members):
            score = self.score_member(member, phase_cats, task_cats)
            key = (score, -member.current_task_count, -index)
            if best_key is None or key > best_key:
                best_id, best_key = member.user_id, key

        if best_key is None or best_key[0] <= 0:
            return None
        return best_id

    def build_team_context(
        self,
        members: Sequence[TeamMember],
        phases: Sequence[Phase],
        rules: str = "",
    ) -> TeamContext:
        """プロンプト用のロスター（短縮ID付き）と、短縮ID -> 実ID の対応表"""
        if not members:
            return TeamContext()

        phase_map = self.phase_categories(phases)
        ordered_phases = sorted(phases, key=lambda p: p.phase_number)
        short_id_map: Dict[str, str] = {}
        member_lines = []
        for index, member in enumerate(members, start=1):
            short_id = f"M{index}"
            short_id_map[short_id] = member.user_id

            categories = self.member_categories(member)
            suited = [str(p.phase_number) for p in ordered_phases if categories & phase_map.get(p.phase_number, frozenset())]
            line = f'- {short_id}: {member.name} (Role: "{member.role_name}"'
            if member.role_description:
                line += f' - Description: "{member.role_description}"'
            line += f"): {member.current_task_count} current tasks"
            if member.is_overworked:
                line += " [OVERWORKED - avoid assigning]"
            if suited:
                line += f" | suited phases: {', '.join(suited)}"
            member_lines.append(line)

        phase_lines = [f'- Phase {p.phase_number}: "{p.display_name}"' for p in ordered_phases]
        prompt_text = (
            "\nTeam Members Available:\n" + "\n".join(member_lines)
            + "\n\nProject Phases (for reference):\n" + "\n".join(phase_lines)
            + ("\n\n" + rules.strip() if rules else "")
            + "\n"
        )
        return TeamContext(prompt_text=prompt_text, short_id_map=short_id_map)

    @staticmethod
    def expand_short_id(value: Optional[str], short_id_map: Dict[str, str]) -> Optional[str]:
        """M1 などの短縮IDを実IDに戻す。UUIDはそのまま通し、それ以外は捨てる"""
        if value is None:
            return None
        candidate = str(value).strip()
        if not candidate or candidate.lower() in ("null", "none"):
            return None
        if _SHORT_ID.match(candidate):
            return short_id_map.get(candidate.upper())
        if _UUID.match(candidate):
            return candidate
        if candidate in short_id_map.values():
            return candidate
        logger.debug("Dropping unrecognised assignee id %r", candidate)
        return None

    def validate_assignee(
        self,
        task: TaskFields,
        phase: Optional[Phase],
        members: Sequence[TeamMember],
        suggested: Optional[str],
    ) -> Optional[str]:
        """ロスターに存在する提案はそのまま採用し、それ以外はマッチャーの選定結果で置き換える"""
        roster_ids = {m.user_id for m in members}
        if suggested and suggested in roster_ids:
            return suggested
        if suggested:
            logger.info("Assignee %s for task '%s' is not on the roster, re-matching", suggested, task.title)
        return self.find_best_assignee(task, phase, members)
