from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class BackendSettings(BaseModel):
    tsserver_path: Optional[str] = None
    node_path: Optional[str] = None
    args: List[str] = []
    request_framing: Literal["content-length", "line"] = "content-length"


class TimeoutSettings(BaseModel):
    interactive_seconds: float = Field(5.0, gt=0)
    navigation_seconds: float = Field(10.0, gt=0)
    project_seconds: float = Field(30.0, gt=0)


class RestartSettings(BaseModel):
    cooldown_seconds: float = Field(2.0, ge=0)
    max_restarts: Optional[int] = Field(None, ge=0)
    window_seconds: float = Field(60.0, gt=0)


class DiagnosticsSettings(BaseModel):
    enabled: bool = True
    delay_ms: int = Field(0, ge=0)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


class BridgeSettings(BaseModel):
    backend: BackendSettings = BackendSettings()
    timeouts: TimeoutSettings = TimeoutSettings()
    restart: RestartSettings = RestartSettings()
    diagnostics: DiagnosticsSettings = DiagnosticsSettings()
    logging: LoggingSettings = LoggingSettings()
