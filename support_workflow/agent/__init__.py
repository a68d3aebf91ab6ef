"""Agent package: compiles authored workflows into LangGraph state machines and runs them."""
from support_workflow.agent.cache import WorkflowCache
from support_workflow.agent.graph import CompiledWorkflow, WorkflowCompiler
from support_workflow.agent.nodes import NodeServices
from support_workflow.agent.runtime import WorkflowRuntime

__all__ = ["WorkflowCache", "CompiledWorkflow", "WorkflowCompiler", "NodeServices", "WorkflowRuntime"]
