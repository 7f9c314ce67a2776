"""
タイムライン表記のパーサ

"3 months" / "Phase 1: 2 weeks, Phase 2: 10d" のような自由記述から日数を取り出す。
全体期間の表記（月 > 年 > 週 > 日 の優先順）を、フェーズ別の細かい期間より優先する。
"""
import logging
import re
from typing import Dict, Iterable, Optional

logger = logging.getLogger("task_engine.timeline_parser")

DAYS_PER_UNIT = {
    "month": 30,
    "year": 365,
    "week": 7,
    "day": 1,
}

# 全体期間: 最初にマッチした単位の種類を採用する（この順序がポリシー）
OVERALL_PATTERNS = [
    ("month", re.compile(r"(\d+)\s*(?:months?|mos?)\b", re.IGNORECASE)),
    ("year", re.compile(r"(\d+)\s*(?:years?|yrs?)\b", re.IGNORECASE)),
    ("week", re.compile(r"(\d+)\s*(?:weeks?|wks?)\b", re.IGNORECASE)),
    ("day", re.compile(r"(\d+)\s*days?\b", re.IGNORECASE)),
]

# フェーズ別: "Phase 2: 3 weeks" / "phase 2 - 10d" など短縮単位も許可
_PHASE_UNIT = r"(months?|mos?|m|weeks?|wks?|w|days?|d)\b"

_UNIT_ALIASES = {
    "m": "month", "mo": "month", "mos": "month", "month": "month", "months": "month",
    "w": "week", "wk": "week", "wks": "week", "week": "week", "weeks": "week",
    "d": "day", "day": "day", "days": "day",
}

# 構造化されていないコンテンツからタイムラインらしき記述を拾うためのパターン
TIMELINE_MENTION_PATTERNS = [
    re.compile(r"timeline[:\s]+([^.\n]{10,200})", re.IGNORECASE),
    re.compile(r"duration[:\s]+([^.\n]{10,200})", re.IGNORECASE),
    re.compile(r"(\d+\s*(?:week|month|day|year)s?[^.\n]{0,100})", re.IGNORECASE),
    re.compile(r"(?:complete|finish|done|deliver|launch).*?(\d+\s*(?:week|month|day|year)s?)", re.IGNORECASE),
]


class TimelineParser:
    """既知のフェーズ番号を持つタイムラインパーサ"""

    def __init__(self, phase_numbers: Iterable[int] = ()):
        self.phase_numbers = sorted(set(phase_numbers))

    def parse(self, text: Optional[str]) -> Optional[int]:
        """
        タイムライン表記を日数に変換する

        Returns:
            日数。解釈できなければ None（呼び出し側はデフォルト値を使うこと。0 扱いにしない）
        """
        if not text:
            return None

        for unit, pattern in OVERALL_PATTERNS:
            match = pattern.search(text)
            if match:
                return int(match.group(1)) * DAYS_PER_UNIT[unit]

        durations = self.parse_phase_durations(text)
        total = sum(durations.values())
        return total if total > 0 else None

    def parse_phase_durations(self, text: Optional[str]) -> Dict[int, int]:
        """"Phase N: <k> <unit>" 形式の記述をフェーズ番号ごとの日数にする"""
        durations: Dict[int, int] = {}
        if not text:
            return durations

        for phase_number in self.phase_numbers:
            pattern = re.compile(
                rf"phase\s*{phase_number}(?!\d)[\s:\-–]+(\d+)\s*{_PHASE_UNIT}",
                re.IGNORECASE,
            )
            match = pattern.search(text)
            if not match:
                continue
            unit = _UNIT_ALIASES[match.group(2).lower()]
            durations[phase_number] = int(match.group(1)) * DAYS_PER_UNIT[unit]
        return durations

    @staticmethod
    def find_timeline_mentions(content: str, limit: int = 3) -> str:
        """
        自由記述からタイムラインらしき部分を抜き出す（AI抽出が使えない場合のフォールバック）

        最初にヒットしたパターンの先頭 limit 件を "; " で連結して返す。
        """
        if not content:
            return ""
        for pattern in TIMELINE_MENTION_PATTERNS:
            matches = [m.group(0).strip() for m in pattern.finditer(content)]
            if matches:
                return "; ".join(matches[:limit])
        return ""
