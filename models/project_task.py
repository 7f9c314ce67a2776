import uuid
from sqlalchemy import (
    Column, String, Integer, Text, Date, DateTime, Float,
    Boolean, JSON, Index, func
)
from database import Base

# IDは文字列（UUID文字列）で保持する。SQLite / PostgreSQL のどちらでも動かすため


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------- Phase ------------------------------------------------------------
class ProjectPhase(Base):
    __tablename__ = "project_phase"

    phase_id     = Column(String(36), primary_key=True, default=_new_id)
    project_id   = Column(String(36), nullable=False, index=True)
    phase_number = Column(Integer, nullable=False)
    phase_name   = Column(String, nullable=True)
    completed    = Column(Boolean, nullable=False, default=False)
    data         = Column(JSON, nullable=False, default=dict)  # ユーザー入力のフィールド

    __table_args__ = (
        Index("ix_project_phase_project_number", "project_id", "phase_number", unique=True),
    )

    def __repr__(self):
        return f"<ProjectPhase(project={self.project_id}, number={self.phase_number}, name={self.phase_name})>"


# ---------- Task -------------------------------------------------------------
class ProjectTask(Base):
    __tablename__ = "project_task"

    task_id          = Column(String(36), primary_key=True, default=_new_id)
    project_id       = Column(String(36), nullable=False, index=True)
    phase_number     = Column(Integer, nullable=True)
    title            = Column(String, nullable=False)
    description      = Column(Text, nullable=True)
    status           = Column(String(20), nullable=False, default="todo")  # todo / in_progress / done / archived
    priority         = Column(String(20), nullable=False, default="medium")
    assignee_id      = Column(String(36), nullable=True, index=True)  # ProjectTeamMember.user_id
    start_date       = Column(Date, nullable=True)
    due_date         = Column(Date, nullable=True)
    estimated_hours  = Column(Float, nullable=True)
    tags             = Column(JSON, nullable=False, default=list)
    source_reference = Column(JSON, nullable=False, default=list)  # [{phase_number, field_key, field_hash}]
    ai_generated     = Column(Boolean, nullable=False, default=False)
    notes            = Column(Text, nullable=True)
    ai_analysis_id   = Column(String(36), nullable=True)
    created_at       = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at       = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
                              nullable=False)

    __table_args__ = (
        Index("ix_project_task_project_status", "project_id", "status"),
    )

    def __repr__(self):
        return f"<ProjectTask(id={self.task_id}, title={self.title}, status={self.status})>"


# ---------- Team member -------------------------------------------------------
class ProjectTeamMember(Base):
    __tablename__ = "project_team_member"

    team_member_id   = Column(String(36), primary_key=True, default=_new_id)
    project_id       = Column(String(36), nullable=False, index=True)
    user_id          = Column(String(36), nullable=False, index=True)
    name             = Column(String, nullable=False)
    role_name        = Column(String, nullable=False)
    role_description = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_project_team_member_project_user", "project_id", "user_id", unique=True),
    )

    def __repr__(self):
        return f"<ProjectTeamMember(id={self.user_id}, name={self.name}, role={self.role_name})>"
