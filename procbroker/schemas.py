from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import ErrorKind


RequestMode = Literal["query", "stream"]


class RequestState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED, RequestState.TIMED_OUT}
)


class QueryOptions(BaseModel):
    max_tokens: Optional[int] = Field(default=None, gt=0)
    timeout_s: Optional[float] = Field(default=None, gt=0)
    model: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class QueryResult(BaseModel):
    success: bool
    content: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    request_id: Optional[str] = None
    state: Optional[RequestState] = None


class StreamResult(BaseModel):
    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    request_id: Optional[str] = None
    state: Optional[RequestState] = None


class InstalledStatus(BaseModel):
    installed: bool
    version: Optional[str] = None
    error: Optional[str] = None


class AuthStatus(BaseModel):
    authenticated: bool
    account: Optional[str] = None
    error: Optional[str] = None


class AvailabilityStatus(BaseModel):
    installed: bool = False
    version: Optional[str] = None
    authenticated: bool = False
    account: Optional[str] = None
    checked_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.installed and self.authenticated


class BrokerStatus(AvailabilityStatus):
    active_slots: int = 0
    capacity: int = 0
    queued: int = 0


class FallbackResult(BaseModel):
    content: str
    used_cli: bool
    cli_error: Optional[str] = None
    cli_error_kind: Optional[ErrorKind] = None
    request_id: Optional[str] = None
    cancelled: bool = False


# HTTP payloads


class QueryRequest(BaseModel):
    prompt: str = Field(min_length=1)
    options: QueryOptions = Field(default_factory=QueryOptions)
    request_id: Optional[str] = None


class ImageQueryRequest(QueryRequest):
    image_base64: str = Field(min_length=1)
    media_type: str = "image/png"


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    history: List[ChatTurn] = Field(default_factory=list)
    system: Optional[str] = None
    options: QueryOptions = Field(default_factory=QueryOptions)


class ChainAgent(BaseModel):
    name: str = "agent"
    task_spec: str = ""
    model: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class ChainRunRequest(BaseModel):
    prompt: str = Field(min_length=1)
    agents: List[ChainAgent] = Field(min_length=1)


class ChainStepResult(BaseModel):
    agent: str
    input: str
    output: str
    used_cli: bool
    cli_error: Optional[str] = None


class ChainRunResult(BaseModel):
    steps: List[ChainStepResult] = Field(default_factory=list)
    output: str = ""
    stopped: bool = False


class ExtractRequest(BaseModel):
    text: str = Field(min_length=1)
    instructions: Optional[str] = None
    options: QueryOptions = Field(default_factory=QueryOptions)


class ExtractResult(BaseModel):
    content: str
    items: Optional[List[Any]] = None
    used_cli: bool
    cli_error: Optional[str] = None


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool


class RequestInfo(BaseModel):
    request_id: str
    state: RequestState
    mode: RequestMode
    submitted_at: float
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
