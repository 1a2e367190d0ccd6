"""Tool handler interface and the write-safety guard."""

from __future__ import annotations

from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import ClassVar
from typing import Dict
from typing import Optional
from typing import Type

from pydantic import BaseModel

from orgpilot.models.enums import OrgType
from orgpilot.models.enums import ToolMode
from orgpilot.services.component_cache import ComponentCacheService
from orgpilot.services.org_context import OrgContextService
from orgpilot.services.salesforce import SalesforceClient
from orgpilot.tools.error_envelope import ToolResult


class WriteBlockedError(PermissionError):
    pass


def assert_writable_org(org_type: OrgType | str) -> None:
    """Raise :class:`WriteBlockedError` for production orgs."""

    if OrgType(org_type) == OrgType.PRODUCTION:
        raise WriteBlockedError(
            "WRITE BLOCKED: This is a production org. Apex class and trigger writes are only allowed in "
            "sandbox or developer orgs. Please connect a sandbox org to make changes."
        )


@dataclass
class ToolContext:
    """Everything a tool may touch while serving one job."""

    org_id: int
    org_type: OrgType
    client: Optional[SalesforceClient]
    org_context: OrgContextService
    components: ComponentCacheService
    job_id: Optional[int] = None
    sample_rows: int = 50
    # (artifact_type, filename, content) sink for successful writes
    record_artifact: Optional[Callable[[str, str, str], None]] = None

    @property
    def write_enabled(self) -> bool:
        return self.client is not None and OrgType(self.org_type) != OrgType.PRODUCTION


class NoArgs(BaseModel):
    pass


def _strip_titles(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {k: _strip_titles(v) for k, v in schema.items() if k != "title"}
    if isinstance(schema, list):
        return [_strip_titles(item) for item in schema]
    return schema


class CrmTool(ABC):
    """Base class for every tool offered to the model.

    Subclasses set ``name``, ``description``, ``args_model`` and ``mode``
    and implement :meth:`run`.  Argument validation happens in the registry
    before :meth:`run` is called, so ``args`` is always an ``args_model``
    instance.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    args_model: ClassVar[Type[BaseModel]] = NoArgs
    mode: ClassVar[ToolMode] = ToolMode.ALL

    def parameters_schema(self) -> Dict[str, Any]:
        schema = _strip_titles(self.args_model.model_json_schema())
        schema.setdefault("properties", {})
        schema.setdefault("required", [])
        return schema

    def to_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }

    def validate(self, raw_args: Optional[Dict[str, Any]]) -> BaseModel:
        return self.args_model.model_validate(raw_args or {})

    @abstractmethod
    async def run(self, args: Any, ctx: ToolContext) -> ToolResult:  # pragma: no cover
        raise NotImplementedError
