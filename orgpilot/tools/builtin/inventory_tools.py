"""Inventory listings served from the inventory cache tier."""

from collections import OrderedDict

from pydantic import BaseModel
from pydantic import Field

from orgpilot.tools.base import CrmTool
from orgpilot.tools.base import ToolContext
from orgpilot.tools.error_envelope import ToolResult
from orgpilot.tools.error_envelope import tool_success


class GetOrgSummaryTool(CrmTool):
    name = "get_org_summary"
    description = (
        "Get a compact overview of the org: custom objects, active flows by type, Apex classes and "
        "permission sets."
    )

    async def run(self, args, ctx: ToolContext) -> ToolResult:
        summary = await ctx.org_context.build_org_summary()
        return tool_success(summary or "The org summary is empty.")


class ListObjectsArgs(BaseModel):
    custom_only: bool = Field(default=False, description="If true, only return custom objects. Default false.")


class ListObjectsTool(CrmTool):
    name = "list_objects"
    description = "List all queryable sObjects in the org. Returns both standard and custom objects with labels."
    args_model = ListObjectsArgs

    async def run(self, args: ListObjectsArgs, ctx: ToolContext) -> ToolResult:
        objects = await ctx.org_context.get_objects()
        custom = [f"{o['name']} ({o.get('label')})" for o in objects if o.get("custom")]
        standard = [] if args.custom_only else [o["name"] for o in objects if not o.get("custom")]

        output = ""
        if custom:
            output += f"Custom Objects ({len(custom)}):\n" + "\n".join(custom) + "\n\n"
        if standard:
            output += f"Standard Objects ({len(standard)}):\n" + ", ".join(standard)
        return tool_success(output or "No objects found.")


class ListFlowsTool(CrmTool):
    name = "list_flows"
    description = "List all active Flows in the org, grouped by process type (Record-Triggered, Screen Flow, etc.)."

    async def run(self, args, ctx: ToolContext) -> ToolResult:
        flows = await ctx.org_context.get_flows()
        if not flows:
            return tool_success("No active flows found in this org.")

        by_type = OrderedDict()
        for flow in flows:
            by_type.setdefault(flow.get("process_type") or "Unknown", []).append(flow)

        output = f"Active Flows ({len(flows)} total):\n\n"
        for process_type, typed in by_type.items():
            output += f"{process_type} ({len(typed)}):\n"
            for flow in typed:
                output += f"  - {flow.get('label')} ({flow.get('name')})\n"
            output += "\n"
        return tool_success(output)


class ListApexClassesTool(CrmTool):
    name = "list_apex_classes"
    description = "List all custom Apex classes in the org (excluding managed packages)."

    async def run(self, args, ctx: ToolContext) -> ToolResult:
        classes = await ctx.org_context.get_apex_classes()
        if not classes:
            return tool_success("No custom Apex classes found in this org.")
        lines = [f"Apex Classes ({len(classes)}):"]
        lines += [f"  - {c['name']} ({c.get('length_without_comments')} chars)" for c in classes]
        return tool_success("\n".join(lines))


class ListPermissionSetsTool(CrmTool):
    name = "list_permission_sets"
    description = "List permission sets in the org (excluding profile-owned ones), flagging custom ones."

    async def run(self, args, ctx: ToolContext) -> ToolResult:
        permission_sets = await ctx.org_context.get_permission_sets()
        if not permission_sets:
            return tool_success("No permission sets found in this org.")
        lines = [f"Permission Sets ({len(permission_sets)}):"]
        for ps in permission_sets:
            marker = " [custom]" if ps.get("is_custom") else ""
            lines.append(f"  - {ps.get('label')} ({ps.get('name')}){marker}")
        return tool_success("\n".join(lines))


class ListLwcBundlesTool(CrmTool):
    name = "list_lwc_bundles"
    description = (
        "List all custom Lightning Web Components in the org (excluding managed packages). Returns "
        "developer name, label, API version, and description."
    )

    async def run(self, args, ctx: ToolContext) -> ToolResult:
        bundles = await ctx.org_context.get_lwc_bundles()
        if not bundles:
            return tool_success("No custom Lightning Web Components found in this org.")
        lines = [f"Lightning Web Components ({len(bundles)}):"]
        for b in bundles:
            desc = f" - {b['description']}" if b.get("description") else ""
            lines.append(f"  - {b['developer_name']} ({b.get('master_label')}) [API {b.get('api_version')}]{desc}")
        return tool_success("\n".join(lines))


TOOLS = [
    GetOrgSummaryTool(),
    ListObjectsTool(),
    ListFlowsTool(),
    ListApexClassesTool(),
    ListPermissionSetsTool(),
    ListLwcBundlesTool(),
]
