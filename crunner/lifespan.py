"""Application startup and shutdown.

Builds the runner (sandbox, workspace manager) and the optional Redis
event bus, and on shutdown closes every live interactive session so no
program or workspace outlives the process.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

import redis.asyncio as redis
from redis.asyncio import BlockingConnectionPool as RedisConnectionPool

from crunner import state
from crunner.bus import EventBus
from crunner.config import Settings, get_settings
from crunner.sandbox import CodeRunner, DockerSandbox, WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class LifespanResources:
    """Container for resources initialized during lifespan."""

    runner: CodeRunner | None = None
    redis_client: redis.Redis | None = None
    event_bus: EventBus | None = None


def init_redis(settings: Settings) -> redis.Redis:
    """Initialize Redis client with a blocking connection pool.

    The pool connects lazily, so an unreachable Redis only shows up as
    failed publishes and an unhealthy /health entry.
    """
    redis_pool = RedisConnectionPool(
        host=settings.redis.host,
        port=settings.redis.port,
        password=settings.redis.password if settings.redis.password else None,
        max_connections=settings.redis.max_connections,
        timeout=settings.redis.pool_timeout_sec,
        socket_timeout=settings.redis.socket_timeout,
        socket_connect_timeout=settings.redis.socket_connect_timeout,
        decode_responses=True,
    )
    return redis.Redis(connection_pool=redis_pool)


def init_runner(settings: Settings) -> CodeRunner:
    """Build the batch runner from sandbox and limit settings."""
    sandbox_settings = settings.sandbox
    base_dir = Path(sandbox_settings.workspace_dir) if sandbox_settings.workspace_dir else None
    workspaces = WorkspaceManager(base_dir, owner=sandbox_settings.uid_gid)
    return CodeRunner(DockerSandbox(sandbox_settings), workspaces, settings.limits)


async def setup_resources(settings: Settings | None = None) -> LifespanResources:
    """Set up all shared resources and publish them on `crunner.state`."""
    settings = settings or get_settings()
    resources = LifespanResources()

    resources.runner = init_runner(settings)

    if settings.features.event_bus:
        resources.redis_client = init_redis(settings)
        resources.event_bus = EventBus(resources.redis_client)

    state.runner = resources.runner
    state.sandbox = resources.runner.sandbox
    state.workspaces = resources.runner.workspaces
    state.redis_client = resources.redis_client
    state.event_bus = resources.event_bus

    logger.info(
        "runner ready image=%s workspaces=%s event_bus=%s",
        settings.sandbox.image,
        resources.runner.workspaces.base_dir,
        resources.event_bus is not None,
    )
    return resources


async def close_sessions() -> None:
    """Close every live interactive session."""
    async with state.sessions_lock:
        sessions = list(state.active_sessions.values())
    if sessions:
        logger.info("closing %d interactive session(s)", len(sessions))
    results = await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)
    for session, result in zip(sessions, results):
        if isinstance(result, Exception):
            logger.warning("session close failed id=%s err=%r", session.id, result)


async def cleanup_resources(resources: LifespanResources) -> None:
    """Clean up all resources on shutdown."""
    await close_sessions()

    if resources.redis_client:
        await resources.redis_client.aclose()

    state.runner = None
    state.sandbox = None
    state.workspaces = None
    state.redis_client = None
    state.event_bus = None
