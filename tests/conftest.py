"""Shared fixtures: settings and node services wired to in-memory fakes."""
import pytest

from support_workflow.agent.graph import WorkflowCompiler
from support_workflow.agent.nodes import NodeServices
from support_workflow.config import Settings
from support_workflow.notifications import HandoffNotifier
from support_workflow.repository import InMemoryTicketRepository
from support_workflow.retrieval import RetrievalPipeline
from tests.fakes import FakeLLM, FakeVectorStore, RecordingChannel


@pytest.fixture
def settings() -> Settings:
    """Settings with fast timeouts and no retry delay."""
    return Settings(
        openai_api_key="test-key",
        search_timeout_seconds=0.5,
        llm_timeout_seconds=1.0,
        runtime_retry_delay_seconds=0.0,
        feishu_webhook_url=None,
        environment="test",
    )


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def fake_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def repository() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def notifier(repository, channel, settings) -> HandoffNotifier:
    return HandoffNotifier(repository, channels={"feishu": channel}, settings=settings)


@pytest.fixture
def services(fake_llm, fake_store, repository, notifier, settings) -> NodeServices:
    return NodeServices(
        llm=fake_llm,
        retrieval=RetrievalPipeline(fake_store, settings),
        repository=repository,
        notifier=notifier,
        settings=settings,
    )


@pytest.fixture
def compiler(services, settings) -> WorkflowCompiler:
    return WorkflowCompiler(services, settings)
