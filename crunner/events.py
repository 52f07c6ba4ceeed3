from typing import Literal, Optional, TypedDict


class RunEvent(TypedDict):
    type: Literal["run_finished", "run_failed", "session_closed"]
    id: str
    mode: Literal["batch", "interactive"]
    outcome: str
    exit_code: Optional[int]
    timed_out: bool
    duration_ms: int
    code_hash: Optional[str]
    timestamp: str
