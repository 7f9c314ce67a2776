import os
import tomllib
import logging
from logging import Logger
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional

from dotenv import load_dotenv

# LangChain & Model
from langchain_openai import ChatOpenAI
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_anthropic import ChatAnthropic
from sqlalchemy.orm import Session

from .errors import ConfigurationError
from .llm_client import GenerativeTextClient
from utils.request_deduplication import RequestDeduplicator

LOGGER_NAME = "task_engine"

DEFAULT_MODELS = {
    "google": ("gemini-2.5-flash", "gemini-2.5-flash-lite"),
    "openai": ("gpt-4o", "gpt-4o-mini"),
    "anthropic": ("claude-sonnet-4-5", "claude-haiku-4-5"),
}

API_KEY_ENV = {
    "google": "GOOGLE_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

MIN_API_KEY_LENGTH = 20


# ---- ロギング設定（環境変数で調整可能） -------------------------------
def _configure_logging() -> Logger:
    """
    LOG_LEVEL=DEBUG|INFO|WARNING|ERROR|CRITICAL
    LOG_FILE=/path/to/app.log（指定時はファイル出力; ローテーション有）
    LOG_MAX_BYTES=1048576（1MB）
    LOG_BACKUP_COUNT=3
    LOG_FORMAT='%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        # すでに設定済みなら再設定しない（重複出力防止）
        return logger

    level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_str, logging.INFO)

    log_format = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    formatter = logging.Formatter(log_format)

    logger.setLevel(level)
    logger.propagate = False  # ルートへ伝播しない

    # 標準出力
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    # ファイル出力（任意）
    log_file = os.getenv("LOG_FILE")
    if log_file:
        max_bytes = int(os.getenv("LOG_MAX_BYTES", "1048576"))
        backup_count = int(os.getenv("LOG_BACKUP_COUNT", "3"))
        fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger

LOGGER = _configure_logging()

# ---- .env 読み込み ------------------------------------------------------
dotenv_path = os.getenv("TASK_ENGINE_DOTENV", ".env")
if load_dotenv(dotenv_path):
    LOGGER.info("Loaded environment variables from %s", dotenv_path)

# 同一プロンプトの同時呼び出しをプロセス内で1回にまとめる
SHARED_DEDUPLICATOR = RequestDeduplicator()


def clean_api_key(raw_key: Optional[str]) -> str:
    """JSON文字列として保存されたキーの引用符などを除去する"""
    if not raw_key:
        return ""
    return str(raw_key).strip().strip("\"'")


class BaseService:
    def __init__(
        self,
        db: Optional[Session] = None,
        default_model_provider: Optional[str] = None,
        llm_client: Optional[GenerativeTextClient] = None,
        lite_client: Optional[GenerativeTextClient] = None,
    ):
        """
        db: DBセッション（リポジトリを使う処理のみ必要）
        default_model_provider: モデルのプロバイダ（google/openai/anthropic）
        llm_client / lite_client: 注入されたクライアント（テスト用）。未指定なら環境変数から生成
        """
        self.db = db
        self.logger = logging.getLogger(f"{LOGGER.name}.{self.__class__.__name__}")

        # プロンプトの読み込み
        prompts_path = os.path.join(os.path.dirname(__file__), "prompts.toml")
        try:
            with open(prompts_path, "rb") as f:
                self.prompts: Dict[str, Dict[str, str]] = tomllib.load(f)
            self.logger.debug("Prompts loaded from %s", prompts_path)
        except FileNotFoundError:
            self.logger.exception("prompts.toml not found at %s", prompts_path)
            raise
        except Exception:
            self.logger.exception("Failed to load prompts from %s", prompts_path)
            raise

        if llm_client is not None:
            self.llm_client = llm_client
            self.lite_client = lite_client or llm_client
            return

        # AIモデルの初期化
        # ※ APIキーそのものはログに出さない
        provider = (default_model_provider or os.getenv("LLM_PROVIDER", "google")).lower()
        if provider not in DEFAULT_MODELS:
            self.logger.error("Unknown model provider: %s", provider)
            raise ConfigurationError(f"Unknown model provider: {provider}")
        default_model, default_lite = DEFAULT_MODELS[provider]
        model_type = os.getenv("LLM_MODEL", default_model)
        lite_type = os.getenv("LLM_LITE_MODEL", default_lite)

        self.llm_client = GenerativeTextClient(
            self._load_llm(provider, model_type),
            model_name=model_type,
            deduplicator=SHARED_DEDUPLICATOR,
        )
        self.lite_client = lite_client or GenerativeTextClient(
            self._load_llm(provider, lite_type, temperature=0.0),
            model_name=lite_type,
            deduplicator=SHARED_DEDUPLICATOR,
        )
        self.logger.debug("LLMs initialized")

    def _load_llm(self, model_provider: str, model_type: str, temperature: float = 0.5):
        self.logger.debug("Loading LLM (provider=%s, model=%s, temp=%.2f)",
                          model_provider, model_type, temperature)
        api_key = self._require_api_key(model_provider)
        try:
            match model_provider:
                case "google":
                    llm = ChatGoogleGenerativeAI(
                        model=model_type,
                        temperature=temperature,
                        api_key=api_key,
                    )
                case "openai":
                    llm = ChatOpenAI(
                        model=model_type,
                        temperature=temperature,
                        api_key=api_key,
                    )
                case "anthropic":
                    llm = ChatAnthropic(
                        model=model_type,
                        temperature=temperature,
                        api_key=api_key,
                    )
                case _:
                    self.logger.error("Unknown model provider: %s", model_provider)
                    raise ConfigurationError(f"Unknown model provider: {model_provider}")

            self.logger.info("LLM loaded (provider=%s, model=%s)", model_provider, model_type)
            return llm

        except ConfigurationError:
            raise
        except Exception as e:
            self.logger.exception("Failed to load LLM (provider=%s, model=%s)",
                                  model_provider, model_type)
            raise ConfigurationError(
                f"Failed to initialize {model_provider} client: {e}"
            ) from e

    def _require_api_key(self, model_provider: str) -> str:
        """APIキーの存在と形式を検証する。不備は致命的エラー"""
        env_name = API_KEY_ENV.get(model_provider)
        if env_name is None:
            raise ConfigurationError(f"Unknown model provider: {model_provider}")

        api_key = clean_api_key(os.getenv(env_name))
        if not api_key:
            self.logger.error("%s is not set", env_name)
            raise ConfigurationError(f"{env_name} is not configured")
        if len(api_key) < MIN_API_KEY_LENGTH:
            raise ConfigurationError(f"Invalid API key format in {env_name}: key is too short")
        if model_provider == "google" and not api_key.startswith("AIza"):
            # Vertex AI など別種のキーの可能性があるので失敗にはしない
            self.logger.warning("%s does not start with 'AIza' - this is unusual for Gemini API keys", env_name)
        return api_key

    def get_prompt(self, service_name: str, prompt_name: str) -> str:
        """
        TOMLファイルからプロンプトを取得する。
        """
        self.logger.debug("Fetching prompt '%s.%s'", service_name, prompt_name)
        try:
            prompt = self.prompts[service_name][prompt_name]
            if not isinstance(prompt, str) or not prompt.strip():
                self.logger.error("Prompt '%s.%s' is empty or not a string", service_name, prompt_name)
                raise ValueError(f"Prompt '{prompt_name}' in '{service_name}' is empty")
            return prompt
        except KeyError:
            self.logger.exception(
                "Prompt '%s' not found under service '%s' in prompts.toml",
                prompt_name, service_name
            )
            raise ValueError(
                f"Prompt '{prompt_name}' not found in service '{service_name}' in prompts.toml"
            )
