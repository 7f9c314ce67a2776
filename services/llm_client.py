"""
生成AIサービスのクライアント

LangChain のチャットモデルを包み、以下を担当する:
- 同一リクエスト（プロンプト・オプション・プロジェクト名のハッシュ）の同時実行を1回にまとめる
- トークン数・推定コスト・応答時間のメタデータ計測
- エラーの分類（認証・権限・レート制限 -> ServiceCallError）
- 構造化出力用の「JSONのみで返答」指示の付与と復元パース

リトライは行わない（コストが無制限に膨らむのを避けるため）。
"""
import hashlib
import json
import logging
import math
import time
from typing import Any, Dict, Optional, Tuple

from .errors import ServiceCallError
from .task_schemas import GenerationResponse, UsageMetadata
from utils.json_recovery import parse_json_response
from utils.request_deduplication import RequestDeduplicator

logger = logging.getLogger("task_engine.llm_client")

JSON_ONLY_INSTRUCTION = "\n\nPlease respond with valid JSON only, no additional text."

# USD / 1M tokens（入力, 出力）
MODEL_PRICING = {
    "gemini-2.5-flash": (0.30, 2.50),
    "gemini-2.5-flash-lite": (0.10, 0.40),
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "claude-sonnet-4-5": (3.00, 15.00),
    "claude-haiku-4-5": (1.00, 5.00),
}
DEFAULT_PRICING = (0.30, 2.50)
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """使用量が返ってこない場合の概算（4文字 = 1トークン）"""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = MODEL_PRICING.get(model, DEFAULT_PRICING)
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


def generate_request_key(prompt: str, options: Optional[Dict[str, Any]], project_name: Optional[str]) -> str:
    """重複排除用のリクエストキー"""
    digest = hashlib.sha256()
    digest.update(prompt.encode("utf-8"))
    digest.update(json.dumps(options or {}, sort_keys=True, default=str).encode("utf-8"))
    if project_name:
        digest.update(project_name.encode("utf-8"))
    return f"ai:{digest.hexdigest()}"


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        # Gemini はパーツのリストで返すことがある
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return content if isinstance(content, str) else str(content)


def _classify_error(error: Exception) -> ServiceCallError:
    message = str(error)
    if "401" in message or "Unauthorized" in message or "API key not valid" in message:
        return ServiceCallError("Invalid API key. Please check your API key configuration.", status=401)
    if "403" in message or "Forbidden" in message or "PERMISSION_DENIED" in message:
        return ServiceCallError("API key does not have permission to access the generative service.", status=403)
    if "429" in message or "RESOURCE_EXHAUSTED" in message or "rate limit" in message.lower():
        return ServiceCallError("Rate limit exceeded. Please try again later.", status=429)
    return ServiceCallError(f"Generative service call failed: {message or type(error).__name__}")


class GenerativeTextClient:
    """generate(prompt, options) -> {text, usage} の契約を満たすクライアント"""

    def __init__(self, llm: Any, model_name: str = "", deduplicator: Optional[RequestDeduplicator] = None):
        self.llm = llm
        self.model_name = model_name or getattr(llm, "model", "") or ""
        self.deduplicator = deduplicator or RequestDeduplicator()

    async def generate(
        self,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        project_name: Optional[str] = None,
    ) -> GenerationResponse:
        """
        プロンプトを送信してテキストを得る

        Args:
            prompt: プロンプト本文
            options: context / project_data などの付加情報（コンパクトJSONで末尾に付与）
            project_name: プロジェクト名（先頭に付与、重複排除キーにも含む）

        Raises:
            ServiceCallError: 通信・認証・レート制限などの失敗、または空の応答
        """
        request_key = generate_request_key(prompt, options, project_name)
        return await self.deduplicator.execute(
            request_key, lambda: self._invoke(prompt, options or {}, project_name)
        )

    async def generate_structured(
        self,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        project_name: Optional[str] = None,
    ) -> Tuple[Any, Optional[UsageMetadata]]:
        """
        JSONで返答させ、復元パースした結果とメタデータを返す

        Raises:
            ServiceCallError: 呼び出しの失敗
            ParseError: 修復してもJSONとして解釈できない場合
        """
        response = await self.generate(prompt + JSON_ONLY_INSTRUCTION, options, project_name)
        return parse_json_response(response.text), response.usage

    def _build_full_prompt(self, prompt: str, options: Dict[str, Any], project_name: Optional[str]) -> str:
        full_prompt = prompt
        if project_name:
            full_prompt = f"Project: {project_name}\n\n{full_prompt}"
        if options.get("context"):
            full_prompt = f"Context: {options['context']}\n\n{full_prompt}"
        # トークン削減のためインデントなしのJSON
        if options.get("phase_data"):
            full_prompt += f"\n\nCurrent phase data: {json.dumps(options['phase_data'], ensure_ascii=False, default=str)}"
        if options.get("project_data"):
            full_prompt += f"\n\nProject information: {json.dumps(options['project_data'], ensure_ascii=False, default=str)}"
        return full_prompt

    async def _invoke(self, prompt: str, options: Dict[str, Any], project_name: Optional[str]) -> GenerationResponse:
        start_time = time.monotonic()
        full_prompt = self._build_full_prompt(prompt, options, project_name)
        logger.debug("Invoking model=%s prompt_length=%d", self.model_name, len(full_prompt))

        try:
            response = await self.llm.ainvoke(full_prompt)
        except Exception as e:
            logger.error("Generative service call failed (model=%s): %s", self.model_name, e)
            raise _classify_error(e) from e

        response_time_ms = int((time.monotonic() - start_time) * 1000)
        text = _response_text(response)
        if not text.strip():
            logger.error("No text in response from model=%s", self.model_name)
            raise ServiceCallError("No text response from generative service")

        usage = getattr(response, "usage_metadata", None) or {}
        input_tokens = usage.get("input_tokens")
        output_tokens = usage.get("output_tokens")
        if input_tokens is None or output_tokens is None:
            input_tokens = estimate_tokens(full_prompt)
            output_tokens = estimate_tokens(text)
            total_tokens = input_tokens + output_tokens
        else:
            total_tokens = usage.get("total_tokens") or input_tokens + output_tokens

        metadata = UsageMetadata(
            model=self.model_name,
            prompt_length=len(prompt),
            full_prompt_length=len(full_prompt),
            response_length=len(text),
            response_time_ms=response_time_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            estimated_cost=calculate_cost(self.model_name, input_tokens, output_tokens),
        )
        logger.info(
            "Generative call completed (model=%s, %dms, tokens=%d, cost=$%.6f)",
            self.model_name, response_time_ms, total_tokens, metadata.estimated_cost,
        )
        return GenerationResponse(text=text, usage=metadata)
