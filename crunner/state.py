from typing import Optional, Dict
import redis.asyncio as redis
from crunner.bus import EventBus
from crunner.sandbox import CodeRunner, DockerSandbox, InteractiveSession, WorkspaceManager
import asyncio

# Global runtime state initialized in lifespan.setup_resources
redis_client: Optional[redis.Redis] = None
event_bus: Optional[EventBus] = None
sandbox: Optional[DockerSandbox] = None
workspaces: Optional[WorkspaceManager] = None
runner: Optional[CodeRunner] = None

# Live interactive sessions, closed on shutdown
active_sessions: Dict[str, InteractiveSession] = {}
sessions_lock: asyncio.Lock = asyncio.Lock()
