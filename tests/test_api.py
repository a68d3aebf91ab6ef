"""Tests for the admin API."""
import pytest
from fastapi.testclient import TestClient

from support_workflow.agent.cache import WorkflowCache
from support_workflow.agent.runtime import WorkflowRuntime
from support_workflow.api.main import AppServices, create_app
from support_workflow.models import AIRoleConfig
from support_workflow.repository import StaticRoleConfigSource
from tests.fakes import make_message, make_ticket


def chat_workflow(workflow_id):
    return {
        "id": workflow_id,
        "name": "闲聊",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "chat", "type": "smartChat", "config": {"userPrompt": "{{lastCustomerMessage}}"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "chat"},
            {"id": "e2", "source": "chat", "target": "end"},
        ],
    }


@pytest.fixture
def role_source():
    return StaticRoleConfigSource(
        [AIRoleConfig.model_validate({"id": "1", "scope": "devbox", "aiUserId": 1, "workflow": chat_workflow("wf-1")})]
    )


@pytest.fixture
def client(compiler, repository, fake_store, notifier, settings, role_source):
    """Test client around an app wired to in-memory collaborators."""
    cache = WorkflowCache(compiler, role_source, settings)
    app_services = AppServices(
        repository=repository,
        store=fake_store,
        compiler=compiler,
        cache=cache,
        runtime=WorkflowRuntime(cache, repository, settings),
        notifier=notifier,
    )
    with TestClient(create_app(app_services)) as test_client:
        yield test_client


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["vector_store"] is True
        assert data["scopes"] == 1
        assert data["timestamp"].endswith(("Z", "+00:00"))


class TestWorkflowEndpoints:
    """Test validation and cache refresh."""

    def test_validate_valid_workflow(self, client):
        response = client.post("/workflows/validate", json=chat_workflow("wf-new"))

        assert response.status_code == 200
        data = response.json()
        assert data["workflow_id"] == "wf-new"
        assert data["valid"] is True
        assert data["has_cycle"] is False

    def test_validate_rejects_missing_start(self, client):
        definition = chat_workflow("wf-bad")
        definition["nodes"] = definition["nodes"][1:]
        definition["edges"] = definition["edges"][1:]

        response = client.post("/workflows/validate", json=definition)

        assert response.status_code == 422
        assert response.json()["code"] == "no_start"

    def test_refresh_picks_up_new_bindings(self, client, role_source):
        role_source.configs.append(
            AIRoleConfig.model_validate({"id": "2", "scope": "billing", "aiUserId": 2, "workflow": chat_workflow("wf-2")})
        )

        response = client.post("/workflows/refresh")

        assert response.status_code == 200
        assert sorted(response.json()["scopes"]) == ["billing", "devbox"]
        assert response.json()["workflow_count"] == 2


class TestAIResponse:
    """Test the ticket reply endpoint."""

    def test_reply(self, client, repository, fake_llm):
        fake_llm.completions = ["请检查镜像地址"]
        repository.add_ticket(make_ticket())
        repository.add_message(make_message(1, "登录报错"))

        response = client.post("/tickets/T-1/ai-response")

        assert response.status_code == 200
        data = response.json()
        assert data["response"] == "请检查镜像地址"
        assert data["rich_text"]["content"][0]["content"][0]["text"] == "请检查镜像地址"
        assert data["latency_ms"] >= 0

    def test_workflow_test_ticket(self, client, repository, fake_llm):
        repository.add_ticket(make_ticket("TT-1"), is_test=True)
        repository.add_message(make_message(1, "测试消息", ticket_id="TT-1"), is_test=True)

        response = client.post("/tickets/TT-1/ai-response", json={"is_workflow_test": True})

        assert response.status_code == 200
        assert fake_llm.complete_calls[0][1].content == "测试消息"

    def test_unknown_ticket(self, client):
        assert client.post("/tickets/missing/ai-response").status_code == 404

    def test_test_ticket_is_not_a_real_ticket(self, client, repository):
        repository.add_ticket(make_ticket("TT-1"), is_test=True)

        assert client.post("/tickets/TT-1/ai-response").status_code == 404

    def test_unbound_module(self, client, repository):
        repository.add_ticket(make_ticket(module="billing"))

        response = client.post("/tickets/T-1/ai-response")

        assert response.status_code == 503
