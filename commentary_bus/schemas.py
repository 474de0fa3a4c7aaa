from typing import Optional

from pydantic import BaseModel


class IngestRequest(BaseModel):
    channel: Optional[str] = None
    name: Optional[str] = None
    text: Optional[str] = None


class IngestResponse(BaseModel):
    ok: bool
    channel: str
    id: int


class SessionDirRequest(BaseModel):
    sessionDir: Optional[str] = None


class SessionDirState(BaseModel):
    sessionDir: Optional[str]
    projectPath: Optional[str]
    watching: bool
    activeTails: int


class SessionDirResponse(BaseModel):
    success: bool
    sessionDir: str
    inputPath: str
    sessionFiles: int
