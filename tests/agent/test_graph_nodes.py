"""Unit tests for workflow nodes."""
import pytest

from support_workflow.agent.heuristics import REASON_EXPLICIT_REQUEST, REASON_NEGATIVE_SENTIMENT
from support_workflow.agent.nodes import (
    WEAK_RETRIEVAL_REASON,
    emotion_detector_node,
    escalation_offer_node,
    handoff_node,
    rag_node,
    smart_chat_node,
)
from support_workflow.agent.state import initial_state, ticket_summary
from support_workflow.models import (
    EmotionDetectionConfig,
    EscalationOfferConfig,
    HandoffConfig,
    Priority,
    RagConfig,
    SentimentLabel,
    SmartChatConfig,
    TicketStatus,
)
from tests.fakes import make_hit, make_ticket


def state_for(text, ticket=None, **overrides):
    ticket = ticket or make_ticket()
    messages = [{"role": "customer", "content": text, "created_at": "2025-08-14T09:30:00"}]
    state = initial_state(messages, ticket_summary(ticket))
    state.update(overrides)
    return state


def rag_config(intent_analysis=True):
    return RagConfig.model_validate(
        {
            "enableIntentAnalysis": intent_analysis,
            "intentAnalysisConfig": {"intentAnalysisUserPrompt": "{{lastCustomerMessage}}"},
            "generateSearchQueriesUserPrompt": "{{lastCustomerMessage}}",
        }
    )


class TestEmotionDetectorNode:
    """Test the emotion detector node."""

    @pytest.mark.asyncio
    async def test_explicit_handoff_request_skips_llm(self, services, fake_llm):
        """Test that asking for a human short-circuits without an LLM call."""
        result = await emotion_detector_node(state_for("不要回复了，转人工"), EmotionDetectionConfig(), services)

        assert result["handoff_required"] is True
        assert result["handoff_reason"] == REASON_EXPLICIT_REQUEST
        assert result["handoff_priority"] == Priority.P2
        assert result["sentiment_label"] == SentimentLabel.REQUEST_AGENT
        assert fake_llm.structured_calls == []

    @pytest.mark.asyncio
    async def test_abusive_message_triggers_handoff(self, services, fake_llm):
        """Test that abusive language hands off with the sentiment reason."""
        result = await emotion_detector_node(state_for("你们就是垃圾"), EmotionDetectionConfig(), services)

        assert result["handoff_required"] is True
        assert result["handoff_reason"] == REASON_NEGATIVE_SENTIMENT
        assert fake_llm.structured_calls == []

    @pytest.mark.asyncio
    async def test_llm_decision_is_applied(self, services, fake_llm):
        """Test that the structured decision populates the handoff fields."""
        fake_llm.responses["SentimentDecision"] = {
            "sentiment": "ANGRY",
            "handoff": True,
            "reasons": ["多次尝试仍失败"],
            "priority": "P1",
        }

        result = await emotion_detector_node(state_for("第三次了还是登录不上"), EmotionDetectionConfig(), services)

        assert result["sentiment_label"] == SentimentLabel.ANGRY
        assert result["handoff_required"] is True
        assert result["handoff_reason"] == "多次尝试仍失败"
        assert result["handoff_priority"] == Priority.P1
        assert result["user_query"] == "第三次了还是登录不上"

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_neutral(self, services, fake_llm):
        """Test that a failed classification leaves the handoff flags untouched."""
        result = await emotion_detector_node(state_for("登录报错"), EmotionDetectionConfig(), services)

        assert fake_llm.count("SentimentDecision") == 1
        assert result["sentiment_label"] == SentimentLabel.NEUTRAL
        assert "handoff_required" not in result


class TestRagNode:
    """Test the retrieval node."""

    @pytest.mark.asyncio
    async def test_small_talk_skips_search(self, services, fake_llm, fake_store):
        """Test that thanks are answered without intent LLM or search."""
        result = await rag_node(state_for("谢谢，解决了"), rag_config(), services)

        assert result["retrieved_context"] == []
        assert fake_llm.structured_calls == []
        assert fake_store.search_calls == []

    @pytest.mark.asyncio
    async def test_no_search_decision(self, services, fake_llm, fake_store):
        """Test that a NO_SEARCH decision returns empty context."""
        fake_llm.responses["SearchDecision"] = {"action": "NO_SEARCH"}

        result = await rag_node(state_for("这个工单可以关闭了吗"), rag_config(), services)

        assert result["retrieved_context"] == []
        assert fake_llm.count("SearchQueries") == 0
        assert fake_store.search_calls == []

    @pytest.mark.asyncio
    async def test_search_with_generated_queries(self, services, fake_llm, fake_store):
        """Test that generated queries are searched with the ticket module filter."""
        fake_llm.responses["SearchDecision"] = {"action": "NEED_SEARCH"}
        fake_llm.responses["SearchQueries"] = {"queries": ["devbox 登录报错", "镜像拉取失败。"]}
        fake_store.results["devbox 登录报错"] = [make_hit("historical_ticket", "100", 2, 0.8)]
        fake_store.results["镜像拉取失败"] = [make_hit("general_knowledge", "doc-1", 1, 0.6)]

        result = await rag_node(state_for("登录报错 ImagePullBackOff"), rag_config(), services)

        assert result["search_queries"] == ["devbox 登录报错", "镜像拉取失败"]
        assert {q for q, _, _ in fake_store.search_calls} == {"devbox 登录报错", "镜像拉取失败"}
        assert all(f.module == "devbox" for _, _, f in fake_store.search_calls)
        assert "general_knowledge:doc-1:1" in [h.id for h in result["retrieved_context"]]

    @pytest.mark.asyncio
    async def test_intent_failure_still_searches(self, services, fake_llm, fake_store):
        """Test that a failed intent analysis defaults to searching."""
        fake_llm.responses["SearchQueries"] = {"queries": ["登录报错", "登录失败"]}

        await rag_node(state_for("登录报错"), rag_config(), services)

        assert fake_llm.count("SearchDecision") == 1
        assert len(fake_store.search_calls) == 2

    @pytest.mark.asyncio
    async def test_query_generation_failure_uses_message(self, services, fake_llm, fake_store):
        """Test that the customer's message becomes the only query."""
        result = await rag_node(state_for("登录报错 ImagePullBackOff"), rag_config(intent_analysis=False), services)

        assert fake_llm.count("SearchDecision") == 0
        assert result["search_queries"] == ["登录报错 ImagePullBackOff"]
        assert [q for q, _, _ in fake_store.search_calls] == ["登录报错 ImagePullBackOff"]


class TestSmartChatNode:
    """Test the reply generation node."""

    @pytest.mark.asyncio
    async def test_returns_completion(self, services, fake_llm):
        """Test that the model output becomes the response."""
        fake_llm.completions = ["请检查镜像地址是否正确"]
        config = SmartChatConfig(system_prompt="语气: {{stylePrompt}}", user_prompt="{{lastCustomerMessage}}")

        result = await smart_chat_node(state_for("登录报错"), config, services)

        assert result == {"response": "请检查镜像地址是否正确"}
        system, user = fake_llm.complete_calls[0]
        assert system.content == "语气: 专业简洁"
        assert user.content == "登录报错"

    @pytest.mark.asyncio
    async def test_llm_error_yields_empty_response(self, services, fake_llm):
        """Test that generation errors produce an empty response."""
        fake_llm.completions = [RuntimeError("model down")]

        result = await smart_chat_node(state_for("登录报错"), SmartChatConfig(), services)

        assert result == {"response": ""}

    @pytest.mark.asyncio
    async def test_vision_attaches_customer_images(self, services, fake_llm):
        """Test that images from the latest customer turn are attached."""
        content = [
            {"type": "text", "text": "截图如下"},
            {"type": "image_url", "image_url": {"url": "https://img.example.com/a.png"}},
        ]
        config = SmartChatConfig(user_prompt="{{lastCustomerMessage}}", enable_vision=True)

        await smart_chat_node(state_for(content), config, services)

        parts = fake_llm.complete_calls[0][1].content
        assert parts[0]["type"] == "text"
        assert {"type": "image_url", "image_url": {"url": "https://img.example.com/a.png"}} in parts


class TestEscalationOfferNode:
    """Test the escalation offer node."""

    @pytest.mark.asyncio
    async def test_weak_retrieval_proposal(self, services, fake_llm):
        """Test that a proposal renders the offer message with the weak-retrieval reason."""
        fake_llm.responses["EscalationDecision"] = {"decision": "PROPOSE_ESCALATION", "priority": "P3"}
        config = EscalationOfferConfig(offer_message_template="需要为您转人工吗？")
        state = state_for("还是不行", retrieved_context=[make_hit("general_knowledge", "d", 1)])

        result = await escalation_offer_node(state, config, services)

        assert result["propose_escalation"] is True
        assert result["escalation_reason"] == WEAK_RETRIEVAL_REASON
        assert result["handoff_priority"] == Priority.P3
        assert result["response"] == "需要为您转人工吗？"

    @pytest.mark.asyncio
    async def test_continue_keeps_response(self, services, fake_llm):
        """Test that CONTINUE neither proposes nor overwrites the response."""
        fake_llm.responses["EscalationDecision"] = {"decision": "CONTINUE", "reasons": ["资料充分"]}
        hits = [make_hit("general_knowledge", "d", 1), make_hit("general_knowledge", "d", 2)]

        result = await escalation_offer_node(state_for("好的", retrieved_context=hits), EscalationOfferConfig(), services)

        assert result["propose_escalation"] is False
        assert result["escalation_reason"] == "资料充分"
        assert "response" not in result

    @pytest.mark.asyncio
    async def test_failure_proposes_nothing(self, services):
        """Test that a failed decision does not propose escalation."""
        result = await escalation_offer_node(state_for("还是不行"), EscalationOfferConfig(), services)

        assert result == {"propose_escalation": False}


class TestHandoffNode:
    """Test the handoff node."""

    @pytest.mark.asyncio
    async def test_creates_record_and_notifies(self, services, repository, notifier, channel):
        """Test the first handoff persists a record, parks the ticket and notifies."""
        repository.add_ticket(make_ticket())
        state = state_for("转人工", handoff_reason="用户明确请求人工", user_query="转人工")
        config = HandoffConfig(message_template="已为您转接人工客服，原因: {{handoffReason}}")

        result = await handoff_node(state, config, services)
        await notifier.drain()

        assert result == {"response": "已为您转接人工客服，原因: 用户明确请求人工"}
        record = await repository.get_handoff_record("T-1")
        assert record.priority == Priority.P2
        assert record.user_query == "转人工"
        assert record.notification_sent is True
        assert (await repository.get_ticket("T-1")).status == TicketStatus.PENDING
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_repeated_handoff_is_idempotent(self, services, repository, notifier, channel):
        """Test that a second handoff neither duplicates the record nor re-notifies."""
        repository.add_ticket(make_ticket())
        state = state_for("转人工", handoff_reason="用户明确请求人工")

        await handoff_node(state, HandoffConfig(), services)
        await notifier.drain()
        await handoff_node(state, HandoffConfig(), services)
        await notifier.drain()

        assert len(repository.handoff_records) == 1
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_notification_failure_is_recorded(self, services, repository, notifier, channel):
        """Test that a failed notification stores the error on the record."""
        channel.fail = True
        repository.add_ticket(make_ticket())

        await handoff_node(state_for("转人工"), HandoffConfig(), services)
        await notifier.drain()

        record = await repository.get_handoff_record("T-1")
        assert record.notification_sent is False
        assert record.notification_error == "webhook down"

    @pytest.mark.asyncio
    async def test_test_ticket_has_no_side_effects(self, services, repository):
        """Test that workflow-test tickets only get the message."""
        repository.add_ticket(make_ticket(), is_test=True)

        result = await handoff_node(state_for("转人工"), HandoffConfig(message_template="稍等"), services)

        assert result == {"response": "稍等"}
        assert repository.handoff_records == {}

    @pytest.mark.asyncio
    async def test_missing_ticket_still_returns_message(self, services, repository):
        """Test that persistence failures do not lose the reply."""
        result = await handoff_node(state_for("转人工"), HandoffConfig(message_template="稍等"), services)

        assert result == {"response": "稍等"}
        assert repository.handoff_records == {}
