"""Immutable tool registry.

Built once at startup from handler instances and passed to the agent loop
via dependency injection.  Two jobs:

* :meth:`ToolRegistry.tools_for_org`: the catalog offered to the model.
  Production orgs only see ``ToolMode.ALL`` tools; this filtering is the
  primary capability gate.
* :meth:`ToolRegistry.execute`: validates arguments, runs the handler and
  folds every failure into a :class:`ToolResult`.  Nothing raises out of it.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any
from typing import Dict
from typing import FrozenSet
from typing import Iterable
from typing import List
from typing import Optional

from pydantic import ValidationError

from orgpilot.metrics import tool_calls_total
from orgpilot.models.enums import OrgType
from orgpilot.models.enums import ToolMode
from orgpilot.services.component_cache import ComponentNotFound
from orgpilot.services.component_cache import InvalidComponentName
from orgpilot.services.salesforce import SalesforceError
from orgpilot.tools.base import CrmTool
from orgpilot.tools.base import ToolContext
from orgpilot.tools.base import WriteBlockedError
from orgpilot.tools.base import assert_writable_org
from orgpilot.tools.error_envelope import ErrorType
from orgpilot.tools.error_envelope import ToolResult
from orgpilot.tools.error_envelope import tool_error
from orgpilot.tools.result_utils import loggable_args
from orgpilot.tools.result_utils import safe_preview

logger = logging.getLogger(__name__)


def _format_validation_error(tool_name: str, exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "arguments"
        problems.append(f"{location}: {err.get('msg')}")
    return f"Invalid arguments for {tool_name}: " + "; ".join(problems)


@dataclass(frozen=True)
class ToolRegistry:
    """Thread-safe, immutable name → handler mapping."""

    _tools: MappingProxyType
    _names: FrozenSet[str]

    @classmethod
    def build(cls, tools: Iterable[CrmTool]) -> "ToolRegistry":
        """
        Raises:
            ValueError: If duplicate tool names are found
        """
        mapping: Dict[str, CrmTool] = {}
        for tool in tools:
            if tool.name in mapping:
                raise ValueError(f"Duplicate tool name '{tool.name}'")
            mapping[tool.name] = tool
        return cls(_tools=MappingProxyType(mapping), _names=frozenset(mapping))

    def get(self, name: str) -> Optional[CrmTool]:
        return self._tools.get(name)

    def all_tools(self) -> List[CrmTool]:
        return list(self._tools.values())

    def tools_for_org(self, org_type: OrgType) -> List[CrmTool]:
        if OrgType(org_type) != OrgType.PRODUCTION:
            return self.all_tools()
        return [tool for tool in self._tools.values() if tool.mode == ToolMode.ALL]

    def openai_tools_for_org(self, org_type: OrgType) -> List[Dict[str, Any]]:
        return [tool.to_openai_tool() for tool in self.tools_for_org(org_type)]

    async def execute(self, name: str, raw_args: Optional[Dict[str, Any]], ctx: ToolContext) -> ToolResult:
        result = await self._execute(name, raw_args, ctx)
        outcome = "error" if result.is_error else "ok"
        tool_calls_total.labels(tool=name if name in self._names else "unknown", outcome=outcome).inc()
        logger.info(f"Tool {name} {outcome}: {safe_preview(result.content)}")
        return result

    async def _execute(self, name: str, raw_args: Optional[Dict[str, Any]], ctx: ToolContext) -> ToolResult:
        tool = self.get(name)
        if tool is None:
            return tool_error(ErrorType.UNKNOWN_TOOL, f"Unknown tool: {name}")

        logger.info(f"Executing tool {name} for org {ctx.org_id} args={loggable_args(raw_args)}")

        try:
            if tool.mode == ToolMode.DEVELOPMENT:
                # The catalog already hides these from production orgs.
                assert_writable_org(ctx.org_type)
                if not ctx.write_enabled:
                    return tool_error(
                        ErrorType.PERMISSION_DENIED,
                        f"Tool {name} needs a live connection to a sandbox or developer org.",
                    )
            args = tool.validate(raw_args)
            return await tool.run(args, ctx)
        except ValidationError as exc:
            return tool_error(ErrorType.VALIDATION_ERROR, _format_validation_error(name, exc))
        except WriteBlockedError as exc:
            return tool_error(ErrorType.WRITE_BLOCKED, str(exc))
        except InvalidComponentName as exc:
            return tool_error(ErrorType.VALIDATION_ERROR, str(exc))
        except ComponentNotFound as exc:
            return tool_error(ErrorType.NOT_FOUND, str(exc))
        except SalesforceError as exc:
            return tool_error(ErrorType.EXECUTION_ERROR, f"Salesforce error: {exc}")
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Tool {name} crashed")
            return tool_error(ErrorType.EXECUTION_ERROR, f"Error: {exc}")


__all__ = [
    "ToolRegistry",
]
