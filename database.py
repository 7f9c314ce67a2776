import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from dotenv import load_dotenv

# 環境変数の読み込み
load_dotenv(os.getenv("TASK_ENGINE_DOTENV", ".env"))


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./task_engine.db")

# エンジンの作成
engine = create_engine(DATABASE_URL, echo=False)

# セッション作成用のファクトリ
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# SQLAlchemy のベースクラス（モデル定義で継承する）
Base = declarative_base()


def create_tables(bind: Optional[Engine] = None) -> None:
    """モデルのテーブルを作成する（マイグレーション未使用の環境向け）"""
    import models.project_task  # noqa: F401  テーブル定義を Base に登録する
    Base.metadata.create_all(bind=bind or engine)
