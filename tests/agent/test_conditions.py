"""Tests for edge conditions and conditional routing."""
import pytest
from langgraph.graph import END

from support_workflow.agent.conditions import Condition, evaluate_condition, normalize_expression, parse_condition
from support_workflow.agent.graph import ConditionalRoute
from support_workflow.exceptions import ConditionError


@pytest.fixture
def variables():
    return {
        "handoffRequired": True,
        "proposeEscalation": False,
        "sentiment": "ANGRY",
        "handoffReason": "",
        "retrievedContextCount": 1,
        "retrievedContext": [{"id": "general_knowledge:doc:1"}],
        "currentTicket": {"id": "T-1", "module": "devbox"},
        "escalationReason": "a && b",
    }


class TestConditionEvaluation:
    """Test the expression subset accepted on edges."""

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("handoffRequired === true", True),
            ("handoffRequired", True),
            ("!proposeEscalation", True),
            ("proposeEscalation === true", False),
            ("sentiment === 'ANGRY' || sentiment === 'ABUSIVE'", True),
            ("sentiment in ['ANGRY', 'ABUSIVE'] && !proposeEscalation", True),
            ("sentiment !== 'NEUTRAL'", True),
            ("handoffReason !== ''", False),
            ("retrievedContextCount <= 1", True),
            ("retrievedContext.length > 0", True),
            ("retrievedContext[0].id === 'general_knowledge:doc:1'", True),
            ("currentTicket.module === 'devbox'", True),
            ("currentTicket.area === null", True),
            ("escalationReason === 'a && b'", True),
        ],
    )
    def test_expressions(self, variables, expression, expected):
        assert evaluate_condition(expression, variables) is expected

    def test_operators_inside_strings_are_untouched(self):
        assert normalize_expression("x === 'true && !y'") == "x == 'true && !y'"

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os').system('ls')",
            "(lambda: True)()",
            "[x for x in retrievedContext]",
            "(y := 1)",
        ],
    )
    def test_code_is_rejected(self, variables, expression):
        """Test that calls, lambdas, comprehensions and assignments never run."""
        with pytest.raises(ConditionError):
            parse_condition(expression)
        assert evaluate_condition(expression, variables) is False

    def test_invalid_syntax_is_false(self, variables):
        condition = Condition("handoffRequired ===")

        assert condition.tree is None
        assert condition.error is not None
        assert condition.evaluate(variables) is False

    def test_unknown_variable_is_false(self, variables):
        assert evaluate_condition("missingFlag === true", variables) is False

    def test_attribute_on_scalar_is_false(self, variables):
        """Test that attribute access outside mappings and sequences fails closed."""
        assert evaluate_condition("sentiment.upper", variables) is False

    def test_type_errors_are_false(self, variables):
        assert evaluate_condition("sentiment > 3", variables) is False


class TestConditionalRoute:
    """Test branch resolution order."""

    def test_first_truthy_branch_wins(self, variables):
        route = ConditionalRoute(
            "emotion",
            ((Condition("handoffRequired"), "handoff"), (Condition("sentiment === 'ANGRY'"), "offer")),
            default="rag",
        )

        assert route.resolve(variables) == "handoff"

    def test_default_when_nothing_matches(self, variables):
        route = ConditionalRoute("emotion", ((Condition("proposeEscalation"), "offer"),), default="rag")

        assert route.resolve(variables) == "rag"

    def test_end_without_default(self, variables):
        route = ConditionalRoute("emotion", ((Condition("proposeEscalation"), "offer"),))

        assert route.resolve(variables) == END
