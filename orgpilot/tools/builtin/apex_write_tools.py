"""Apex class/trigger create and update via the Tooling API.

Sandbox and developer orgs only.  Every handler calls
:func:`assert_writable_org` before touching the org, validates the
component name, and invalidates the affected cache entries after a
successful save.  Compile errors come back as tool errors so the model can
fix the code and try again.
"""

import logging
from typing import Any
from typing import Dict
from typing import List

from pydantic import BaseModel
from pydantic import Field

from orgpilot.models.enums import ToolMode
from orgpilot.services.component_cache import validate_name
from orgpilot.tools.base import CrmTool
from orgpilot.tools.base import ToolContext
from orgpilot.tools.base import assert_writable_org
from orgpilot.tools.error_envelope import ErrorType
from orgpilot.tools.error_envelope import ToolResult
from orgpilot.tools.error_envelope import tool_error
from orgpilot.tools.error_envelope import tool_success

logger = logging.getLogger(__name__)


def format_save_errors(errors: List[Dict[str, Any]]) -> str:
    if not errors:
        return "Unknown error"
    lines = []
    for err in errors:
        fields = err.get("fields") or []
        suffix = f" (fields: {', '.join(fields)})" if fields else ""
        lines.append(f"{err.get('statusCode') or 'ERROR'}: {err.get('message')}{suffix}")
    return "\n".join(lines)


def _save_failed(action: str, kind: str, name: str, errors: List[Dict[str, Any]]) -> ToolResult:
    return tool_error(
        ErrorType.SAVE_FAILED,
        f'Failed to {action} {kind} "{name}".\n\nCompile errors:\n{format_save_errors(errors)}',
    )


def _record(ctx: ToolContext, artifact_type: str, filename: str, body: str) -> None:
    if ctx.record_artifact is not None:
        ctx.record_artifact(artifact_type, filename, body)


class ApexClassArgs(BaseModel):
    class_name: str = Field(description="The name of the Apex class.")
    body: str = Field(description="The full Apex class source code (must include the class declaration).")


class NewTriggerArgs(BaseModel):
    trigger_name: str = Field(description="The name for the new trigger.")
    sobject_name: str = Field(description="The sObject API name the trigger fires on (e.g. 'Account', 'Custom__c').")
    body: str = Field(description="The full Apex trigger source code (must include the trigger declaration).")


class TriggerBodyArgs(BaseModel):
    trigger_name: str = Field(description="The name of the existing Apex trigger to update.")
    body: str = Field(description="The new full Apex trigger source code.")


class CreateApexClassTool(CrmTool):
    name = "create_apex_class"
    description = (
        "Create a new Apex class in the org via the Tooling API. Only available in sandbox/developer orgs. "
        "Returns the new class ID or compile errors."
    )
    args_model = ApexClassArgs
    mode = ToolMode.DEVELOPMENT

    async def run(self, args: ApexClassArgs, ctx: ToolContext) -> ToolResult:
        assert_writable_org(ctx.org_type)
        name = validate_name(args.class_name, "Apex class")
        logger.info(f"Creating Apex class {name} ({len(args.body)} chars) in org {ctx.org_id}")

        result = await ctx.client.tooling_create("ApexClass", {"Name": name, "Body": args.body})
        if not result.success:
            return _save_failed("create", "Apex class", name, result.errors)

        ctx.org_context.invalidate("apex_classes")
        ctx.components.invalidate("apex_class", name)
        _record(ctx, "apex_class", f"{name}.cls", args.body)
        return tool_success(f'Apex class "{name}" created successfully.\nId: {result.id}')


class UpdateApexClassTool(CrmTool):
    name = "update_apex_class"
    description = (
        "Update an existing Apex class body in the org via the Tooling API. Only available in sandbox/developer "
        "orgs. Looks up the class by name, then replaces the body. Returns success or compile errors."
    )
    args_model = ApexClassArgs
    mode = ToolMode.DEVELOPMENT

    async def run(self, args: ApexClassArgs, ctx: ToolContext) -> ToolResult:
        assert_writable_org(ctx.org_type)
        name = validate_name(args.class_name, "Apex class")
        existing = await ctx.components.get_apex_class(name)
        logger.info(f"Updating Apex class {name} ({existing['id']}) in org {ctx.org_id}")

        result = await ctx.client.tooling_update("ApexClass", existing["id"], {"Body": args.body})
        if not result.success:
            return _save_failed("update", "Apex class", name, result.errors)

        ctx.org_context.invalidate("apex_classes")
        ctx.components.invalidate("apex_class", name)
        _record(ctx, "apex_class", f"{name}.cls", args.body)
        return tool_success(f'Apex class "{name}" updated successfully.')


class CreateApexTriggerTool(CrmTool):
    name = "create_apex_trigger"
    description = (
        "Create a new Apex trigger in the org via the Tooling API. Only available in sandbox/developer orgs. "
        "Returns the new trigger ID or compile errors."
    )
    args_model = NewTriggerArgs
    mode = ToolMode.DEVELOPMENT

    async def run(self, args: NewTriggerArgs, ctx: ToolContext) -> ToolResult:
        assert_writable_org(ctx.org_type)
        name = validate_name(args.trigger_name, "Apex trigger")
        sobject = validate_name(args.sobject_name, "sObject")
        logger.info(f"Creating Apex trigger {name} on {sobject} in org {ctx.org_id}")

        result = await ctx.client.tooling_create(
            "ApexTrigger", {"Name": name, "TableEnumOrId": sobject, "Body": args.body}
        )
        if not result.success:
            return _save_failed("create", "Apex trigger", name, result.errors)

        ctx.components.invalidate("apex_trigger", name)
        _record(ctx, "apex_trigger", f"{name}.trigger", args.body)
        return tool_success(f'Apex trigger "{name}" on {sobject} created successfully.\nId: {result.id}')


class UpdateApexTriggerTool(CrmTool):
    name = "update_apex_trigger"
    description = (
        "Update an existing Apex trigger body in the org via the Tooling API. Only available in sandbox/developer "
        "orgs. Looks up the trigger by name, then replaces the body. Returns success or compile errors."
    )
    args_model = TriggerBodyArgs
    mode = ToolMode.DEVELOPMENT

    async def run(self, args: TriggerBodyArgs, ctx: ToolContext) -> ToolResult:
        assert_writable_org(ctx.org_type)
        name = validate_name(args.trigger_name, "Apex trigger")
        existing = await ctx.components.get_apex_trigger(name)
        logger.info(f"Updating Apex trigger {name} ({existing['id']}) in org {ctx.org_id}")

        result = await ctx.client.tooling_update("ApexTrigger", existing["id"], {"Body": args.body})
        if not result.success:
            return _save_failed("update", "Apex trigger", name, result.errors)

        ctx.components.invalidate("apex_trigger", name)
        _record(ctx, "apex_trigger", f"{name}.trigger", args.body)
        return tool_success(f'Apex trigger "{name}" updated successfully.')


TOOLS = [
    CreateApexClassTool(),
    UpdateApexClassTool(),
    CreateApexTriggerTool(),
    UpdateApexTriggerTool(),
]
