"""
Pytest fixtures for Alpaka tests

This module provides shared fixtures for all tests:
- Database session fixtures (in-memory SQLite)
- Fake model provider and provider factory
- Sample project canvases
"""

import asyncio
import pytest
from typing import Any, Dict, List, Optional
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from alpaka_engine.models import Base
from alpaka_engine.models.project import Project
from alpaka_engine.core.circuit_breaker import reset_circuit_breakers
from alpaka_engine.core.executors import NodeExecutor
from alpaka_engine.providers.base import GenerationResult, ModelProvider, StreamChunk


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """
    In-memory SQLite engine shared by every session of a test
    (StaticPool keeps one connection, so all sessions see the same data).
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory bound to the test database."""
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """
    Create an in-memory SQLite database for testing.
    Each test gets a fresh database that's torn down after the test.
    """
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clean_provider_state():
    """Circuit breakers are process-wide."""
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


# ============================================================================
# PROVIDER FIXTURES
# ============================================================================

class FakeProvider(ModelProvider):
    """
    Scripted provider.

    Args:
        responses: Texts returned in order (the last one repeats)
        delay: Seconds to sleep before answering
        error: Exception raised instead of answering
    """

    name = "fake"

    def __init__(
        self,
        responses: Optional[List[str]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        model_name: str = "fake-model",
    ):
        super().__init__(model_name)
        self.responses = list(responses or ["fake response"])
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def _next(self) -> str:
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    async def list_models(self) -> List[str]:
        return [self.model_name]

    async def generate(self, messages, **params) -> GenerationResult:
        self.calls.append({"messages": messages, "params": params})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        text = self._next()
        return GenerationResult(
            text=text,
            model=self.model_name,
            usage={"input_tokens": 10, "output_tokens": len(text.split())},
            finish_reason="stop",
        )

    async def stream(self, messages, **params):
        self.calls.append({"messages": messages, "params": params, "stream": True})
        if self.error:
            raise self.error
        accumulated = ""
        for word in self._next().split(" "):
            delta = word if not accumulated else " " + word
            accumulated += delta
            yield StreamChunk(delta=delta, accumulated=accumulated)
        yield StreamChunk(delta="", accumulated=accumulated, done=True, usage={"input_tokens": 10, "output_tokens": 2})


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider_configs():
    """Rendered model_provider configurations seen by the factory."""
    return []


@pytest.fixture
def provider_factory(fake_provider, provider_configs):
    """Factory handing out fake_provider for any configuration."""
    def factory(config):
        provider_configs.append(config)
        return fake_provider
    return factory


@pytest.fixture
def executor(provider_factory):
    return NodeExecutor(provider_factory=provider_factory, default_timeout=5)


# ============================================================================
# CANVAS FIXTURES
# ============================================================================

def canvas_node(node_id: str, node_type: str, **data) -> Dict[str, Any]:
    """Canvas node as the editor stores it."""
    return {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": data}


def canvas_edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    edge = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle:
        edge["sourceHandle"] = handle
    return edge


@pytest.fixture
def missing_branch_canvas():
    """
    A -> B, A -> C; C references {{B.text}} although B has no path to C.
    """
    return {
        "nodes": [
            canvas_node("A", "input", fields={"topic": "pricing"}),
            canvas_node("B", "transform", template="About {{A.topic}}"),
            canvas_node("C", "transform", template="Summary of {{B.text}}"),
        ],
        "edges": [canvas_edge("A", "B"), canvas_edge("A", "C")],
    }


@pytest.fixture
def chain_canvas():
    """input -> llm_chain -> output, with a model_provider for group 'main'."""
    return {
        "nodes": [
            canvas_node("input", "input", label="session", fields={"question": "{{question}}"}),
            canvas_node("model", "model_provider", provider="openai", model="gpt-4o-mini",
                        modelGroup="main", apiKey="{{OPENAI_API_KEY}}", temperature=0.2),
            canvas_node("answer", "llm_chain", modelGroup="main", messages=[
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Q: {{input.question}}"},
            ]),
            canvas_node("report", "output", reportKey="final", fields={"answer": "{{answer.text}}"}),
        ],
        "edges": [canvas_edge("input", "answer"), canvas_edge("answer", "report")],
    }


@pytest.fixture
def make_project(db_session):
    """Create and persist a project with the given canvas."""
    def _make(canvas: Dict[str, Any], name: str = "Test Project", **kwargs) -> Project:
        project = Project(name=name, canvas_data=canvas, **kwargs)
        db_session.add(project)
        db_session.commit()
        db_session.refresh(project)
        return project
    return _make


@pytest.fixture
def build_node():
    return canvas_node


@pytest.fixture
def build_edge():
    return canvas_edge


@pytest.fixture
def make_provider():
    """FakeProvider class, for tests that script their own provider."""
    return FakeProvider
