"""
タスク生成エンジンの例外定義

- ConfigurationError: 認証情報・設定の不備（致命的、フォールバックなし）
- ServiceCallError: 生成AIサービス呼び出しの失敗（可能なら呼び出し側でフォールバック）
- ParseError: レスポンスから有効なJSONを取り出せなかった
- TaskValidationError: 生成タスクが不変条件を満たさない（呼び出し側で修復する）
"""
from typing import Optional


class TaskEngineError(Exception):
    """エンジン共通の基底例外"""


class ConfigurationError(TaskEngineError):
    """APIキー未設定・不正、未知のプロバイダなど"""


class ServiceCallError(TaskEngineError):
    """生成AIサービスへの呼び出しが失敗した"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ParseError(TaskEngineError):
    """修復を試みてもJSONとして解釈できなかった"""

    PREVIEW_LENGTH = 200

    def __init__(self, message: str, response_text: str = ""):
        self.response_preview = response_text[: self.PREVIEW_LENGTH]
        suffix = f" Response preview: {self.response_preview}..." if response_text else ""
        super().__init__(f"{message}.{suffix}")


class TaskValidationError(TaskEngineError):
    """タスクが不変条件（start_date <= due_date など）に違反している"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field
