"""Application wiring for the orchestration backend.

lifespan() builds every component in dependency order, reconciles state left
behind by a previous process and tears everything down on exit. Transports
(HTTP, WebSocket, CLI) wrap it; none ship here.

Usage:
    >>> async with lifespan() as app:
    ...     result = await app.engine.execute(user_id="user_1", tasks=tasks)
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import structlog

from agents.llm import LLMClient, MockLLMClient
from agents.tools import ToolRegistry, register_builtin_tools
from config import settings
from events.distributor import EventDistributor
from metrics import RunMetricsCollector
from models.cache import OrchestratorCache, create_cache
from models.database import OrchestratorRepository
from models.schemas import TaskInput
from orchestrator.engine import OrchestrationEngine
from orchestrator.loop_guard import LoopGuard
from orchestrator.manager import SubAgentManager


logger = structlog.get_logger(__name__)


@dataclass
class AppContext:
    """Every long-lived component, for transports to reach into."""

    repository: OrchestratorRepository
    cache: OrchestratorCache
    distributor: EventDistributor
    tools: ToolRegistry
    llm_client: LLMClient
    loop_guard: LoopGuard
    manager: SubAgentManager
    engine: OrchestrationEngine
    metrics_collector: RunMetricsCollector


@asynccontextmanager
async def lifespan(
    llm_client: LLMClient | None = None,
    database_path: str | None = None,
) -> AsyncGenerator[AppContext, None]:
    """Start the orchestration stack and shut it down on exit.

    Args:
        llm_client: Inference client override. Defaults to the mock client when
            settings.use_mock_llm is set, otherwise a LiteLLM client.
        database_path: SQLite path override.

    Yields:
        The wired AppContext.
    """
    logger.info(
        "application_starting",
        cache_backend=settings.cache_backend,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
    )

    db_path = database_path or settings.database_path
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    repository = OrchestratorRepository(db_path)
    await repository.init()

    cache = create_cache(
        settings.cache_backend,
        settings.redis_url,
        settings.cache_key_prefix,
        settings.cache_ttl_seconds,
    )
    metrics_collector = RunMetricsCollector()
    distributor = EventDistributor(cache, write_timeout=settings.event_write_timeout_seconds)

    tools = ToolRegistry()
    register_builtin_tools(tools)

    if llm_client is None:
        if settings.use_mock_llm:
            llm_client = MockLLMClient(responses=[], metrics_collector=metrics_collector)
        else:
            llm_client = LLMClient(metrics_collector=metrics_collector)

    loop_guard = LoopGuard(cache, repository)
    manager = SubAgentManager(
        repository,
        cache,
        distributor,
        llm_client=llm_client,
        tool_invoker=tools,
        metrics_collector=metrics_collector,
    )
    engine = OrchestrationEngine(
        repository,
        cache,
        distributor,
        manager,
        loop_guard,
        metrics_collector=metrics_collector,
    )

    orphaned = await manager.reconcile_on_startup(loop_guard)
    logger.info("application_started", orphaned_agents=orphaned)

    try:
        yield AppContext(
            repository=repository,
            cache=cache,
            distributor=distributor,
            tools=tools,
            llm_client=llm_client,
            loop_guard=loop_guard,
            manager=manager,
            engine=engine,
            metrics_collector=metrics_collector,
        )
    finally:
        logger.info("application_shutting_down")
        await manager.shutdown()
        await cache.close()
        logger.info("application_shutdown_complete")


async def _demo() -> None:
    """Run a two-task plan end to end against the scripted mock client."""
    from agents.llm import LLMResponse

    mock = MockLLMClient(
        responses=[
            LLMResponse(content="The answer is 42."),
            LLMResponse(content="Summary: the answer is 42."),
        ]
    )
    tasks = [
        TaskInput(tempId="t1", description="Find the answer", agentType="general"),
        TaskInput(tempId="t2", description="Summarize the answer", agentType="general", dependencies=["t1"]),
    ]
    async with lifespan(llm_client=mock) as app:
        result = await app.engine.execute(user_id="demo", tasks=tasks, reasoning="demo run")
        logger.info("demo_finished", **result.model_dump(mode="json"))


if __name__ == "__main__":
    asyncio.run(_demo())
