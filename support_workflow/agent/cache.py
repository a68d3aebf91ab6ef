"""Compiled-workflow cache keyed by scope and by workflow id."""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

import structlog

from support_workflow.agent.graph import CompiledWorkflow, WorkflowCompiler
from support_workflow.config import Settings, get_settings
from support_workflow.repository import RoleConfigSource

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ScopeBinding:
    ai_user_id: int
    workflow_id: str


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable view of the cache; replaced wholesale on refresh."""
    workflows: Mapping[str, CompiledWorkflow] = field(default_factory=lambda: MappingProxyType({}))
    scopes: Mapping[str, ScopeBinding] = field(default_factory=lambda: MappingProxyType({}))


class WorkflowCache:
    """
    Holds compiled workflows for every active AI role config.

    Two levels: scope -> (ai user id, workflow id) and workflow id -> compiled
    workflow. ``initialize``/``refresh`` build a new snapshot and swap it in one
    assignment, so readers never observe a partially built cache.
    """

    def __init__(
        self,
        compiler: WorkflowCompiler,
        source: RoleConfigSource,
        settings: Optional[Settings] = None,
    ):
        self.compiler = compiler
        self.source = source
        self.fallback_scope = (settings or get_settings()).fallback_scope
        self._snapshot = CacheSnapshot()

    async def initialize(self) -> None:
        """Load active role configs and compile each bound workflow once."""
        logger.info("workflow_cache_initializing")
        configs = await self.source.list_active_role_configs()
        logger.info("workflow_cache_configs_loaded", count=len(configs))

        workflows: Dict[str, CompiledWorkflow] = {}
        failed: set = set()
        scopes: Dict[str, ScopeBinding] = {}

        for config in configs:
            log = logger.bind(config_id=config.id, scope=config.scope)
            if config.workflow is None:
                log.info("workflow_cache_config_skipped", reason="no workflow bound")
                continue

            workflow_id = config.workflow.id
            if workflow_id not in workflows and workflow_id not in failed:
                try:
                    workflows[workflow_id] = self.compiler.compile(config.workflow)
                except Exception as e:
                    failed.add(workflow_id)
                    log.error(
                        "workflow_cache_compile_failed",
                        workflow_id=workflow_id,
                        error=str(e),
                        code=getattr(e, "code", None),
                    )
            if workflow_id in failed:
                continue

            scopes[config.scope] = ScopeBinding(ai_user_id=config.ai_user_id, workflow_id=workflow_id)
            log.info("workflow_cache_scope_bound", workflow_id=workflow_id, ai_user_id=config.ai_user_id)

        self._snapshot = CacheSnapshot(
            workflows=MappingProxyType(workflows),
            scopes=MappingProxyType(scopes),
        )
        logger.info("workflow_cache_ready", scopes=len(scopes), workflows=len(workflows), failed=len(failed))

    async def refresh(self) -> None:
        """Rebuild the cache from the role-config source."""
        logger.info("workflow_cache_refreshing")
        await self.initialize()

    def clear(self) -> None:
        logger.info("workflow_cache_cleared")
        self._snapshot = CacheSnapshot()

    def get_workflow(self, scope: Optional[str]) -> Optional[CompiledWorkflow]:
        snapshot = self._snapshot
        binding = snapshot.scopes.get(scope) if scope else None
        if binding is None:
            logger.info("workflow_scope_not_found", scope=scope, available=list(snapshot.scopes))
            return None
        return snapshot.workflows.get(binding.workflow_id)

    def get_workflow_by_id(self, workflow_id: str) -> Optional[CompiledWorkflow]:
        return self._snapshot.workflows.get(workflow_id)

    def get_fallback_workflow(self) -> Optional[CompiledWorkflow]:
        workflow = self.get_workflow(self.fallback_scope)
        if workflow is None:
            logger.error("fallback_workflow_missing", scope=self.fallback_scope, available=self.get_scopes())
        return workflow

    def get_ai_user_id(self, scope: str) -> Optional[int]:
        binding = self._snapshot.scopes.get(scope)
        return binding.ai_user_id if binding else None

    def get_scopes(self) -> List[str]:
        return list(self._snapshot.scopes)

    def has(self, scope: str) -> bool:
        return scope in self._snapshot.scopes

    def size(self) -> int:
        return len(self._snapshot.scopes)

    def workflow_count(self) -> int:
        return len(self._snapshot.workflows)
