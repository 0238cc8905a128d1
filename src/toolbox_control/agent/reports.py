"""Validated extraction of the fields we depend on from an agent status payload.

The payload is otherwise opaque: unknown keys are kept (``extra='allow'``) and
the raw mapping is what gets stored as the health snapshot. Each per-instance
report is validated on its own so one malformed entry cannot sink the rest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class ToolInstanceReport(BaseModel):
    model_config = ConfigDict(extra="allow")

    account_tool_instance_id: str | None = None
    status: str | None = None
    container_id: str | None = None
    instance_name_on_toolbox: str | None = None
    metrics: dict[str, Any] | None = None

    @field_validator(
        "account_tool_instance_id", "status", "container_id", "instance_name_on_toolbox",
        mode="before",
    )
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)):
            return str(value)
        return value

    def details(self) -> dict[str, Any]:
        """Runtime details persisted on the Instance record."""
        return self.model_dump(
            exclude={"account_tool_instance_id", "status"}, exclude_none=True,
        )


class AgentStatusReport(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: str | None = Field(
        default=None, validation_alias=AliasChoices("version", "dtma_version"),
    )
    system_metrics: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("system_metrics", "environment"),
    )
    tool_instances: list[Any] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def _version_to_str(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("system_metrics", mode="before")
    @classmethod
    def _metrics_mapping(cls, value: Any) -> Any:
        return value if isinstance(value, Mapping) else None

    @field_validator("tool_instances", mode="before")
    @classmethod
    def _instances_list(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []


@dataclass(frozen=True, slots=True)
class ParsedStatus:
    report: AgentStatusReport
    instances: list[ToolInstanceReport] = field(default_factory=list)
    rejected: int = 0


def parse_status_payload(payload: Mapping[str, Any]) -> ParsedStatus:
    """Extract version and per-instance reports from a ``GET /status`` body."""
    report = AgentStatusReport.model_validate(dict(payload))
    instances: list[ToolInstanceReport] = []
    rejected = 0
    for index, item in enumerate(report.tool_instances):
        try:
            instances.append(ToolInstanceReport.model_validate(item))
        except ValidationError as exc:
            rejected += 1
            logger.warning(
                "Discarding malformed tool instance report #%d: %s",
                index,
                exc.errors()[0].get("msg", "invalid") if exc.errors() else "invalid",
            )
    return ParsedStatus(report=report, instances=instances, rejected=rejected)
