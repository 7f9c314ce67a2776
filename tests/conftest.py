"""
Shared fixtures for the task engine tests.

The generative-text service is replaced by FakeChatModel: an object exposing the
same ``ainvoke`` coroutine as LangChain chat models and returning
``langchain_core`` AIMessages. Responses are chosen from the prompt text so that
concurrent calls (date extraction + generation) are deterministic.
"""
import asyncio
import json
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from langchain_core.messages import AIMessage
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import create_tables
from models.project_task import ProjectPhase
from services.llm_client import GenerativeTextClient
from services.task_schemas import Phase, TeamMember
from utils.request_deduplication import RequestDeduplicator

Reply = Union[str, dict, list, Exception, AIMessage]

DEFAULT_USAGE = {"input_tokens": 100, "output_tokens": 20, "total_tokens": 120}


class FakeChatModel:
    """Minimal async chat model: routes prompts to canned replies"""

    def __init__(
        self,
        routes: Optional[Dict[str, Reply]] = None,
        default: Optional[Reply] = None,
        usage: Optional[Dict[str, int]] = DEFAULT_USAGE,
        delay: float = 0.0,
        delays: Optional[Dict[str, float]] = None,
        model: str = "gemini-2.5-flash",
    ):
        self.routes = routes or {}
        self.default = default
        self.usage = usage
        self.delay = delay
        self.delays = delays or {}
        self.model = model
        self.calls: List[str] = []
        self.completed: List[str] = []

    def calls_matching(self, marker: str) -> List[str]:
        return [prompt for prompt in self.calls if marker in prompt]

    def _reply_for(self, prompt: str) -> Reply:
        for marker, reply in self.routes.items():
            if marker in prompt:
                return reply
        if self.default is None:
            raise AssertionError(f"Unexpected prompt: {prompt[:200]}")
        return self.default

    def _delay_for(self, prompt: str) -> float:
        for marker, delay in self.delays.items():
            if marker in prompt:
                return delay
        return self.delay

    async def ainvoke(self, prompt: str) -> AIMessage:
        self.calls.append(prompt)
        delay = self._delay_for(prompt)
        if delay:
            await asyncio.sleep(delay)
        self.completed.append(prompt)
        reply = self._reply_for(prompt)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, AIMessage):
            return reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        if self.usage is None:
            return AIMessage(content=content)
        return AIMessage(content=content, usage_metadata=dict(self.usage))


@pytest.fixture
def make_client() -> Callable[..., GenerativeTextClient]:
    """Build a GenerativeTextClient around a FakeChatModel (fresh dedup map per client)"""

    def factory(routes: Optional[Dict[str, Reply]] = None, **kwargs: Any) -> GenerativeTextClient:
        model = FakeChatModel(routes, **kwargs)
        return GenerativeTextClient(model, model_name=model.model, deduplicator=RequestDeduplicator())

    return factory


@pytest.fixture
def today() -> date:
    return date(2025, 1, 6)


@pytest.fixture
def plan_build_phases() -> List[Phase]:
    return [
        Phase(phase_number=1, phase_name="Plan", data={"high_level_timeline": "2 weeks", "goals": "Ship an MVP"}),
        Phase(phase_number=2, phase_name="Build", data={"build_timeline": "6 weeks"}),
    ]


@pytest.fixture
def roster() -> List[TeamMember]:
    return [
        TeamMember(user_id="u-eng", name="Eve", role_name="Software Engineer", current_task_count=1),
        TeamMember(user_id="u-pm", name="Paul", role_name="Product Manager", current_task_count=0),
    ]


@pytest.fixture
def db_session():
    """In-memory SQLite session with all tables created"""
    engine = create_engine("sqlite://")
    create_tables(engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def save_phases() -> Callable[..., None]:
    """Persist phase snapshots for a project (repository and regeneration tests)"""

    def save(db, project_id: str, phases: List[Phase]) -> None:
        for phase in phases:
            db.add(ProjectPhase(
                project_id=project_id,
                phase_number=phase.phase_number,
                phase_name=phase.phase_name,
                completed=phase.completed,
                data=dict(phase.data),
            ))
        db.commit()

    return save
