"""Newline-delimited JSON messages exchanged with the background worker."""

from __future__ import annotations

import base64
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RequestType = Literal["compile", "getVersion"]
ResponseType = Literal["stdout", "stderr", "done", "version", "error"]
TERMINAL_RESPONSES = ("done", "version", "error")


class WorkerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    # Kept as a plain string so unknown request types reach the worker and
    # come back as an ``error`` response instead of failing validation.
    type: str
    source_text: str = Field(default="", alias="sourceText")
    output_format: str = Field(default="stl", alias="outputFormat")
    extra_arguments: List[str] = Field(default_factory=list, alias="extraArguments")

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True) + "\n"


class WorkerResponse(BaseModel):
    id: int
    type: ResponseType
    data: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def artifact(cls, message_id: int, payload: bytes) -> "WorkerResponse":
        return cls(id=message_id, type="done", data=base64.b64encode(payload).decode("ascii"))

    def artifact_bytes(self) -> bytes:
        return base64.b64decode(self.data or "")

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_RESPONSES

    def to_line(self) -> str:
        return self.model_dump_json(exclude_none=True) + "\n"
