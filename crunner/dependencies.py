"""Dependency injection for FastAPI endpoints.

This module provides FastAPI dependencies for accessing shared resources
like the batch runner, the sandbox, Redis and the event bus.

Usage in controllers:
    from crunner.dependencies import Runner

    @router.post("/api/run")
    async def run(body: RunRequest, runner: Runner):
        ...
"""

from typing import Annotated

import redis.asyncio as redis
from fastapi import Depends

from crunner import state
from crunner.bus import EventBus
from crunner.errors import ServiceUnavailableError
from crunner.sandbox import CodeRunner, DockerSandbox


def get_runner() -> CodeRunner:
    """Get the batch runner.

    Raises:
        ServiceUnavailableError: If the application has not finished starting.
    """
    if state.runner is None:
        raise ServiceUnavailableError(detail="Runner not initialized")
    return state.runner


def get_optional_redis() -> redis.Redis | None:
    """Get the Redis client if available, or None."""
    return state.redis_client


def get_optional_sandbox() -> DockerSandbox | None:
    """Get the docker sandbox, or None before startup."""
    return state.sandbox


def get_optional_event_bus() -> EventBus | None:
    """Get the EventBus if available, or None."""
    return state.event_bus


Runner = Annotated[CodeRunner, Depends(get_runner)]
OptionalRedis = Annotated[redis.Redis | None, Depends(get_optional_redis)]
OptionalBus = Annotated[EventBus | None, Depends(get_optional_event_bus)]
OptionalSandbox = Annotated[DockerSandbox | None, Depends(get_optional_sandbox)]
