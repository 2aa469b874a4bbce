"""Schemas shared by the tracer, the transport client and the evaluation runner."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

SCORE_TYPE = Union[bool, int, float, None]
VALUE_TYPE = Union[Dict, bool, int, float, str, None]
ID_TYPE = Union[UUID, str]


class RunTypeEnum(str, Enum):
    """Enum for run types."""

    chain = "chain"
    llm = "llm"
    tool = "tool"
    retriever = "retriever"
    prompt = "prompt"
    parser = "parser"


VALID_RUN_TYPES = tuple(member.value for member in RunTypeEnum)


class Example(BaseModel):
    """A dataset example an experiment target is run against."""

    model_config = ConfigDict(extra="allow")

    id: str
    dataset_id: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class TracerSession(BaseModel):
    """A project (session) on the backend; experiments are sessions too."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    reference_dataset_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
