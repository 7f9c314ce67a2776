"""
タスク類似度判定サービス

2段階で既存タスクとの重複を判定する:
1. 文字列類似度（編集距離 + トークン集合のJaccard）で候補を絞り込む（安価・高再現率）
2. 上位3件だけを生成AIで意味的に比較し、0.3 * 文字列 + 0.7 * 意味 で最終スコアを出す

意味的比較が失敗した場合は文字列類似度にフォールバックし、全体は失敗させない。
"""
import re
from typing import List, Optional, Sequence, Set, Tuple

from langchain_core.prompts import PromptTemplate

from services.base_service import BaseService
from services.errors import ParseError, ServiceCallError
from services.task_schemas import (
    CandidateTask, DuplicateDetectionResult, DuplicateStatus, SimilarityBasis,
    SimilarityResult, Task, TaskFields, UsageMetadata
)

TITLE_WEIGHT = 0.6
DESCRIPTION_WEIGHT = 0.4
STRING_WEIGHT = 0.3
SEMANTIC_WEIGHT = 0.7

DEFAULT_FILTER_THRESHOLD = 0.70
DEFAULT_EXACT_THRESHOLD = 0.90
DEFAULT_POSSIBLE_THRESHOLD = 0.70
MAX_SEMANTIC_CHECKS = 3

ARTICLES = {"a", "an", "the"}
_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_text(text: Optional[str]) -> List[str]:
    """小文字化・記号除去・冠詞除去した単語列"""
    if not text:
        return []
    cleaned = _PUNCTUATION.sub(" ", text.lower())
    return [word for word in cleaned.split() if word not in ARTICLES]


def levenshtein_distance(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (c1 != c2),
            ))
        previous = current
    return previous[-1]


def _token_set(words: Sequence[str]) -> Set[str]:
    # "set up" と "setup" を一致させるため、隣接語の連結も含める
    tokens = set(words)
    tokens.update(a + b for a, b in zip(words, words[1:]))
    return tokens


def text_similarity(text_a: Optional[str], text_b: Optional[str]) -> float:
    """0.5 * 正規化編集距離類似度 + 0.5 * Jaccard類似度"""
    words_a = normalize_text(text_a)
    words_b = normalize_text(text_b)
    if not words_a and not words_b:
        # 記号・絵文字・冠詞だけのテキストは元の文字列が同じときだけ一致とみなす
        return 1.0 if (text_a or "").strip() == (text_b or "").strip() else 0.0

    # 空白の有無で差がつかないよう、編集距離は詰めた文字列で測る
    compact_a = "".join(words_a)
    compact_b = "".join(words_b)
    max_length = max(len(compact_a), len(compact_b))
    edit_similarity = 1.0 - levenshtein_distance(compact_a, compact_b) / max_length

    tokens_a = _token_set(words_a)
    tokens_b = _token_set(words_b)
    union = tokens_a | tokens_b
    jaccard = len(tokens_a & tokens_b) / len(union)

    return 0.5 * edit_similarity + 0.5 * jaccard


def calculate_string_similarity(task_a: TaskFields, task_b: TaskFields) -> float:
    """
    タイトル60% + 説明40% の文字列類似度（対称、同一タスクなら1.0）

    説明が両方空ならタイトルだけで判定する。片方だけ空なら説明の寄与は0。
    """
    title_similarity = text_similarity(task_a.title, task_b.title)

    has_desc_a = bool(normalize_text(task_a.description))
    has_desc_b = bool(normalize_text(task_b.description))
    if not has_desc_a and not has_desc_b:
        return title_similarity

    description_similarity = 0.0
    if has_desc_a and has_desc_b:
        description_similarity = text_similarity(task_a.description, task_b.description)

    return TITLE_WEIGHT * title_similarity + DESCRIPTION_WEIGHT * description_similarity


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def combine_similarity(string_score: float, result: SimilarityResult) -> SimilarityResult:
    """意味的判定が得られた場合だけ 0.3 * 文字列 + 0.7 * 意味 の hybrid スコアにする"""
    if result.basis != SimilarityBasis.SEMANTIC.value:
        return result
    return SimilarityResult(
        similarity=_clamp(STRING_WEIGHT * string_score + SEMANTIC_WEIGHT * result.similarity),
        basis=SimilarityBasis.HYBRID,
    )


class TaskSimilarityService(BaseService):
    """文字列 + 意味的類似度による重複判定"""

    def __init__(
        self,
        db=None,
        default_model_provider: Optional[str] = None,
        filter_threshold: float = DEFAULT_FILTER_THRESHOLD,
        exact_threshold: float = DEFAULT_EXACT_THRESHOLD,
        possible_threshold: float = DEFAULT_POSSIBLE_THRESHOLD,
        max_semantic_checks: int = MAX_SEMANTIC_CHECKS,
        **kwargs,
    ):
        super().__init__(db, default_model_provider, **kwargs)
        self.filter_threshold = filter_threshold
        self.exact_threshold = exact_threshold
        self.possible_threshold = possible_threshold
        self.max_semantic_checks = max_semantic_checks

    async def calculate_semantic_similarity(
        self, task_a: TaskFields, task_b: TaskFields
    ) -> Tuple[SimilarityResult, Optional[UsageMetadata]]:
        """
        生成AI（軽量モデル）で2つのタスクの意味的な類似度を判定する

        失敗時は文字列類似度（basis=string）を返す。
        """
        template = PromptTemplate.from_template(
            self.get_prompt("task_similarity_service", "semantic_similarity")
        )
        prompt = template.format(
            title_1=task_a.title,
            description_1=task_a.description or "(none)",
            title_2=task_b.title,
            description_2=task_b.description or "(none)",
        )

        try:
            parsed, usage = await self.lite_client.generate_structured(prompt)
            if not isinstance(parsed, dict) or "similarity" not in parsed:
                raise ParseError("Semantic similarity response has no 'similarity' field", str(parsed))
            try:
                similarity = float(parsed["similarity"])
            except (TypeError, ValueError) as e:
                raise ParseError("Semantic similarity is not a number", str(parsed)) from e
        except (ServiceCallError, ParseError) as e:
            self.logger.warning("Semantic comparison failed, using string similarity: %s", e)
            fallback = calculate_string_similarity(task_a, task_b)
            return SimilarityResult(similarity=_clamp(fallback), basis=SimilarityBasis.STRING), None

        self.logger.debug(
            "Semantic similarity '%s' vs '%s' = %.2f (%s)",
            task_a.title, task_b.title, similarity, parsed.get("reason", ""),
        )
        return SimilarityResult(similarity=_clamp(similarity), basis=SimilarityBasis.SEMANTIC), usage

    async def detect_duplicates(
        self,
        candidates: Sequence[CandidateTask],
        existing_tasks: Sequence[Task],
    ) -> DuplicateDetectionResult:
        """
        候補タスクごとに duplicate_status / existing_task_id を付けた新しいリストを返す

        - 文字列類似度が filter_threshold 以上の既存タスクに絞る
        - 上位 max_semantic_checks 件を順番に意味的比較する（並列にしない）
        - 最良スコアで exact (>= 0.90) / possible (>= 0.70) / unique に分類。同点は先勝ち
        """
        metadata: Optional[UsageMetadata] = None
        results: List[CandidateTask] = []

        for candidate in candidates:
            scored = [
                (calculate_string_similarity(candidate, existing), existing)
                for existing in existing_tasks
            ]
            filtered = [pair for pair in scored if pair[0] >= self.filter_threshold]
            filtered.sort(key=lambda pair: pair[0], reverse=True)

            best_task: Optional[Task] = None
            best_score = 0.0
            for string_score, existing in filtered[: self.max_semantic_checks]:
                result, usage = await self.calculate_semantic_similarity(candidate, existing)
                if usage is not None:
                    metadata = usage if metadata is None else metadata.accumulate(usage)

                result = combine_similarity(string_score, result)
                if best_task is None or result.similarity > best_score:
                    best_task, best_score = existing, result.similarity

            status = DuplicateStatus.UNIQUE
            if best_task is not None and best_score >= self.exact_threshold:
                status = DuplicateStatus.EXACT_DUPLICATE
            elif best_task is not None and best_score >= self.possible_threshold:
                status = DuplicateStatus.POSSIBLE_DUPLICATE

            if status != DuplicateStatus.UNIQUE:
                self.logger.info(
                    "Task '%s' classified %s of '%s' (score=%.2f)",
                    candidate.title, status.value, best_task.title, best_score,
                )
            results.append(candidate.model_copy(update={
                "duplicate_status": status.value,
                "existing_task_id": best_task.id if status != DuplicateStatus.UNIQUE else None,
            }))

        return DuplicateDetectionResult(tasks=results, metadata=metadata)
