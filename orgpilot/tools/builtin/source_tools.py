"""Deep reads of single components, served from the component cache tier."""

import json

from pydantic import BaseModel
from pydantic import Field

from orgpilot.tools.base import CrmTool
from orgpilot.tools.base import ToolContext
from orgpilot.tools.error_envelope import ToolResult
from orgpilot.tools.error_envelope import tool_success

_FENCE_LANG = {"js": "javascript", "html": "html", "css": "css", "xml": "xml"}


class ClassNameArgs(BaseModel):
    class_name: str = Field(description="The name of the Apex class (e.g. 'AccountTriggerHandler').")


class TriggerNameArgs(BaseModel):
    trigger_name: str = Field(description="The name of the Apex trigger (e.g. 'AccountTrigger').")


class FlowNameArgs(BaseModel):
    flow_api_name: str = Field(description="The API/Developer name of the Flow (e.g. 'Update_Account_Status').")


class LwcNameArgs(BaseModel):
    developer_name: str = Field(
        description="The developer name of the LWC (e.g. 'myComponent'). Use list_lwc_bundles to find available names."
    )


class GetApexClassBodyTool(CrmTool):
    name = "get_apex_class_body"
    description = "Get the full source code of an Apex class by name. Returns the complete class body."
    args_model = ClassNameArgs

    async def run(self, args: ClassNameArgs, ctx: ToolContext) -> ToolResult:
        data = await ctx.components.get_apex_class(args.class_name)
        return tool_success(f"Apex Class: {data['name']} (Id: {data['id']})\n\n```apex\n{data['body']}\n```")


class GetApexTriggerBodyTool(CrmTool):
    name = "get_apex_trigger_body"
    description = (
        "Get the full source code of an Apex trigger by name. Returns the complete trigger body and the "
        "sObject it's on."
    )
    args_model = TriggerNameArgs

    async def run(self, args: TriggerNameArgs, ctx: ToolContext) -> ToolResult:
        data = await ctx.components.get_apex_trigger(args.trigger_name)
        return tool_success(
            f"Apex Trigger: {data['name']} on {data.get('table_enum_or_id')} (Id: {data['id']})\n\n"
            f"```apex\n{data['body']}\n```"
        )


class GetFlowDefinitionTool(CrmTool):
    name = "get_flow_definition"
    description = (
        "Get the full definition/metadata of a Flow by API name. Returns the flow structure including "
        "elements, decisions, actions, and assignments."
    )
    args_model = FlowNameArgs

    async def run(self, args: FlowNameArgs, ctx: ToolContext) -> ToolResult:
        data = await ctx.components.get_flow_definition(args.flow_api_name)
        return tool_success(
            f"Flow: {data.get('label')} ({data.get('api_name')})\n"
            f"Type: {data.get('process_type')}\n"
            f"Version: {data.get('version_status')}\n"
            f"Id: {data['id']}\n\n"
            f"Metadata:\n{json.dumps(data.get('metadata'), indent=2, default=str)}"
        )


class GetLwcSourceTool(CrmTool):
    name = "get_lwc_source"
    description = (
        "Get the full source code of a Lightning Web Component by developer name. Returns all files in "
        "the bundle (JS, HTML, CSS, XML config)."
    )
    args_model = LwcNameArgs

    async def run(self, args: LwcNameArgs, ctx: ToolContext) -> ToolResult:
        data = await ctx.components.get_lwc_source(args.developer_name)
        output = f"LWC: {data['developer_name']} (Bundle Id: {data['bundle_id']})\nFiles: {len(data['files'])}\n"
        for file in data["files"]:
            ext = (file.get("file_path") or "").rsplit(".", 1)[-1]
            lang = _FENCE_LANG.get(ext, ext)
            output += f"\n--- {file.get('file_path')} ---\n```{lang}\n{file['source']}\n```\n"
        return tool_success(output)


TOOLS = [
    GetApexClassBodyTool(),
    GetApexTriggerBodyTool(),
    GetFlowDefinitionTool(),
    GetLwcSourceTool(),
]
