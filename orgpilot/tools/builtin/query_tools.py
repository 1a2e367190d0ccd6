"""Read-only data access: SOQL queries and object describes."""

import json
import logging
import re
from typing import Any
from typing import Dict
from typing import List

from pydantic import BaseModel
from pydantic import Field

from orgpilot.services.component_cache import validate_name
from orgpilot.tools.base import CrmTool
from orgpilot.tools.base import ToolContext
from orgpilot.tools.error_envelope import ErrorType
from orgpilot.tools.error_envelope import ToolResult
from orgpilot.tools.error_envelope import tool_error
from orgpilot.tools.error_envelope import tool_success

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 200
MAX_LIMIT = 2000
MAX_CHILD_RELATIONSHIPS = 30

_HAS_LIMIT = re.compile(r"\bLIMIT\b", re.IGNORECASE)
_LIMIT_VALUE = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)


class NotAReadQuery(ValueError):
    pass


def prepare_soql(soql: str, *, default_limit: int = DEFAULT_LIMIT, max_limit: int = MAX_LIMIT) -> str:
    """Return *soql* with a LIMIT guaranteed and clamped to *max_limit*.

    Raises :class:`NotAReadQuery` unless the statement starts with SELECT.
    """

    query = soql.strip()
    if not query.upper().startswith("SELECT"):
        raise NotAReadQuery(
            "Only SELECT queries are allowed. INSERT, UPDATE, DELETE, and UPSERT are not supported."
        )

    if not _HAS_LIMIT.search(query):
        query = f"{query} LIMIT {default_limit}"

    match = _LIMIT_VALUE.search(query)
    if match and int(match.group(1)) > max_limit:
        query = _LIMIT_VALUE.sub(f"LIMIT {max_limit}", query, count=1)
    return query


def strip_attributes(value: Any) -> Any:
    """Drop the ``attributes`` bookkeeping key from records, recursively."""

    if isinstance(value, dict):
        return {k: strip_attributes(v) for k, v in value.items() if k != "attributes"}
    if isinstance(value, list):
        return [strip_attributes(item) for item in value]
    return value


class QueryArgs(BaseModel):
    soql: str = Field(description="The SOQL query to execute. Must be a SELECT statement.")


class QuerySalesforceTool(CrmTool):
    name = "query_salesforce"
    description = (
        "Execute a SOQL query against the Salesforce org. SELECT queries only. A LIMIT clause will be "
        f"auto-appended if missing (default {DEFAULT_LIMIT}). Returns up to 50 records for display; "
        "use COUNT() for totals."
    )
    args_model = QueryArgs

    async def run(self, args: QueryArgs, ctx: ToolContext) -> ToolResult:
        try:
            query = prepare_soql(args.soql)
        except NotAReadQuery as exc:
            return tool_error(ErrorType.VALIDATION_ERROR, str(exc))

        logger.info(f"Executing SOQL for org {ctx.org_id}: {query}")
        result = await ctx.client.query(query)

        total = result.get("totalSize", 0)
        records: List[Dict[str, Any]] = strip_attributes((result.get("records") or [])[: ctx.sample_rows])

        output = f"Total records: {total}\n"
        if not records:
            output += "No records found."
        else:
            of_total = f" of {total}" if total > len(records) else ""
            output += f"Showing {len(records)}{of_total}:\n"
            output += json.dumps(records, indent=2, default=str)
        return tool_success(output)


class DescribeArgs(BaseModel):
    object_name: str = Field(description="The API name of the sObject (e.g. 'Account', 'Custom_Object__c').")


def summarise_describe(desc: Dict[str, Any]) -> Dict[str, Any]:
    fields = []
    for f in desc.get("fields") or []:
        info: Dict[str, Any] = {
            "name": f.get("name"),
            "label": f.get("label"),
            "type": f.get("type"),
            "required": not f.get("nillable") and not f.get("defaultedOnCreate"),
        }
        if f.get("referenceTo"):
            info["referenceTo"] = f["referenceTo"]
            info["relationshipName"] = f.get("relationshipName")
        picklist = [p.get("value") for p in f.get("picklistValues") or [] if p.get("active")]
        if picklist:
            info["picklistValues"] = picklist
        if f.get("type") == "string" and f.get("length"):
            info["maxLength"] = f["length"]
        fields.append(info)

    children = [
        {"name": cr.get("relationshipName"), "childObject": cr.get("childSObject"), "field": cr.get("field")}
        for cr in desc.get("childRelationships") or []
        if cr.get("relationshipName")
    ][:MAX_CHILD_RELATIONSHIPS]

    return {
        "name": desc.get("name"),
        "label": desc.get("label"),
        "custom": desc.get("custom"),
        "recordCount": "Use query_salesforce with COUNT() to get record count",
        "fieldCount": len(fields),
        "fields": fields,
        "childRelationships": children,
    }


class DescribeObjectTool(CrmTool):
    name = "describe_object"
    description = (
        "Get the full field and relationship description of a Salesforce sObject. Returns field names, "
        "types, labels, picklist values, and relationship info."
    )
    args_model = DescribeArgs

    async def run(self, args: DescribeArgs, ctx: ToolContext) -> ToolResult:
        desc = await ctx.client.describe(validate_name(args.object_name, "sObject"))
        return tool_success(summarise_describe(desc))


TOOLS = [QuerySalesforceTool(), DescribeObjectTool()]
