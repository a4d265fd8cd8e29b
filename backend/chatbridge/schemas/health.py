from pydantic import BaseModel


class AgentStatus(BaseModel):
    url: str
    healthy: bool
    version: str | None = None


class HealthSnapshot(BaseModel):
    ok: bool
    opencode: AgentStatus
    channels: dict[str, bool]


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
