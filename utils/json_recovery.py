"""
LLM応答からのJSON復元パーサ

生成AIは指示してもコードフェンスや前置きの文章を混ぜることがあるため、
段階的に復元を試みる。

Stages:
    1. strip_code_fences: ```json ... ``` を除去
    2. extract_json_span: 最大のトップレベル {...} / [...] を抽出してパース
    3. 全体をそのままパース
    4. json_repair による修復（途中で切れたJSONなど）

Usage:
    data = parse_json_response(response.content)
"""

import json
import logging
import re
from typing import Any, List, Optional, Tuple

from json_repair import repair_json

from services.errors import ParseError

logger = logging.getLogger("task_engine.json_recovery")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)\s*```")
_OPENERS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    """コードフェンスで囲まれていれば中身だけを返す"""
    cleaned = text.strip()
    match = _FENCE_RE.search(cleaned)
    if match:
        return match.group(1).strip()
    # 閉じフェンスがない（出力が途中で切れた）場合は先頭だけ落とす
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
    return cleaned.strip()


def _find_spans(text: str) -> List[Tuple[int, int]]:
    """文字列リテラルを考慮して、閉じているトップレベルの括弧範囲を列挙する"""
    spans = []
    stack: List[str] = []
    start = -1
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and stack:
            in_string = True
        elif ch in _OPENERS:
            if not stack:
                start = i
            stack.append(_OPENERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
            if not stack:
                spans.append((start, i + 1))
        elif stack and ch in ("}", "]"):
            # 対応しない閉じ括弧: このスパンは壊れているので破棄
            stack.clear()
            start = -1
    return spans


def extract_json_span(text: str) -> Optional[str]:
    """最大のトップレベル {...} または [...] を返す。見つからなければ None"""
    spans = _find_spans(text)
    if not spans:
        return None
    start, end = max(spans, key=lambda span: span[1] - span[0])
    return text[start:end]


def parse_json_response(text: str) -> Any:
    """
    LLM応答をJSONとしてパースする

    Raises:
        ParseError: すべての段階で失敗した場合（先頭200文字のプレビュー付き）
    """
    if not text or not text.strip():
        raise ParseError("Empty response from generative service")

    cleaned = strip_code_fences(text)

    span = extract_json_span(cleaned)
    if span is not None:
        try:
            return json.loads(span)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse extracted JSON span, trying full string: %s", e)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    repaired = repair_json(cleaned, return_objects=True)
    if isinstance(repaired, (dict, list)) and repaired:
        logger.info("Recovered malformed JSON response with json_repair (length=%d)", len(text))
        return repaired

    logger.error("Failed to parse AI response as JSON (length=%d)", len(text))
    logger.debug("Response preview (first 500 chars): %s", text[:500])
    raise ParseError("Failed to parse AI response as JSON", response_text=text)
