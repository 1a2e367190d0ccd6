"""Inventory tier: org-wide metadata lists and the compressed org summary."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any
from typing import Dict
from typing import List

from orgpilot.services.cache import TTLCache
from orgpilot.services.salesforce import SalesforceClient

logger = logging.getLogger(__name__)

INVENTORY_TTL_S: Dict[str, int] = {
    "objects": 86400,
    "flows": 21600,
    "apex_classes": 21600,
    "permission_sets": 43200,
    "lwc_bundles": 21600,
}

_FLOWS_PER_TYPE = 10
_APEX_CLASSES_SHOWN = 30
_CUSTOM_PERMSETS_SHOWN = 15


class OrgContextService:
    """Cached inventory lookups for one org."""

    def __init__(self, org_id: int, client: SalesforceClient, cache: TTLCache):
        self.org_id = org_id
        self._client = client
        self._cache = cache

    async def _cached(self, key: str, fetch) -> List[Dict[str, Any]]:
        return await self._cache.get_or_fetch(self.org_id, key, INVENTORY_TTL_S[key], fetch)

    def invalidate(self, key: str) -> None:
        self._cache.invalidate(self.org_id, key)

    # ------------------------------------------------------------------
    # Inventory lists
    # ------------------------------------------------------------------

    async def get_objects(self) -> List[Dict[str, Any]]:
        async def fetch():
            result = await self._client.describe_global()
            objects = [
                {"name": s["name"], "label": s.get("label"), "custom": bool(s.get("custom"))}
                for s in result.get("sobjects", [])
                if s.get("queryable")
            ]
            logger.info(f"Fetched {len(objects)} queryable objects for org {self.org_id}")
            return objects

        return await self._cached("objects", fetch)

    async def get_flows(self) -> List[Dict[str, Any]]:
        async def fetch():
            result = await self._client.query(
                "SELECT Id, Definition.DeveloperName, MasterLabel, ProcessType, Status "
                "FROM FlowVersionView WHERE Status = 'Active' ORDER BY MasterLabel LIMIT 500"
            )
            return [
                {
                    "id": r.get("Id"),
                    "name": (r.get("Definition") or {}).get("DeveloperName") or "Unknown",
                    "label": r.get("MasterLabel"),
                    "process_type": r.get("ProcessType"),
                    "status": r.get("Status"),
                }
                for r in result.get("records", [])
            ]

        return await self._cached("flows", fetch)

    async def get_apex_classes(self) -> List[Dict[str, Any]]:
        async def fetch():
            result = await self._client.query(
                "SELECT Id, Name, LengthWithoutComments FROM ApexClass "
                "WHERE NamespacePrefix = null ORDER BY Name LIMIT 1000"
            )
            return [
                {"id": r.get("Id"), "name": r.get("Name"), "length_without_comments": r.get("LengthWithoutComments")}
                for r in result.get("records", [])
            ]

        return await self._cached("apex_classes", fetch)

    async def get_permission_sets(self) -> List[Dict[str, Any]]:
        async def fetch():
            result = await self._client.query(
                "SELECT Id, Name, Label, IsCustom FROM PermissionSet "
                "WHERE IsOwnedByProfile = false ORDER BY Label LIMIT 500"
            )
            return [
                {"id": r.get("Id"), "name": r.get("Name"), "label": r.get("Label"), "is_custom": bool(r.get("IsCustom"))}
                for r in result.get("records", [])
            ]

        return await self._cached("permission_sets", fetch)

    async def get_lwc_bundles(self) -> List[Dict[str, Any]]:
        async def fetch():
            result = await self._client.tooling_query(
                "SELECT Id, DeveloperName, MasterLabel, ApiVersion, Description FROM LightningComponentBundle "
                "WHERE NamespacePrefix = null ORDER BY DeveloperName LIMIT 2000"
            )
            return [
                {
                    "id": r.get("Id"),
                    "developer_name": r.get("DeveloperName"),
                    "master_label": r.get("MasterLabel"),
                    "api_version": r.get("ApiVersion"),
                    "description": r.get("Description"),
                }
                for r in result.get("records", [])
            ]

        return await self._cached("lwc_bundles", fetch)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    async def _section(self, name: str, loader) -> List[Dict[str, Any]]:
        try:
            return await loader()
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to fetch {name} for org {self.org_id}: {exc}")
            return []

    async def build_org_summary(self) -> str:
        """Compact, prompt-sized description of what the org contains."""

        objects, flows, apex_classes, permission_sets = await asyncio.gather(
            self._section("objects", self.get_objects),
            self._section("flows", self.get_flows),
            self._section("apex classes", self.get_apex_classes),
            self._section("permission sets", self.get_permission_sets),
        )

        custom_objects = [o for o in objects if o.get("custom")]
        standard_count = len(objects) - len(custom_objects)
        lines: List[str] = []

        if custom_objects:
            lines.append(f"Custom Objects ({len(custom_objects)}):")
            lines.append("\n".join(f"  {o['name']} ({o.get('label')})" for o in custom_objects))

        lines.append(f"Standard Objects: {standard_count} queryable")

        if flows:
            lines.append(f"\nActive Flows ({len(flows)}):")
            by_type: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
            for flow in flows:
                by_type.setdefault(flow.get("process_type") or "Unknown", []).append(flow)
            for process_type, typed in by_type.items():
                names = ", ".join(f["name"] for f in typed[:_FLOWS_PER_TYPE])
                more = "..." if len(typed) > _FLOWS_PER_TYPE else ""
                lines.append(f"  {process_type} ({len(typed)}): {names}{more}")

        if apex_classes:
            lines.append(f"\nApex Classes ({len(apex_classes)}):")
            names = ", ".join(c["name"] for c in apex_classes[:_APEX_CLASSES_SHOWN])
            extra = len(apex_classes) - _APEX_CLASSES_SHOWN
            more = f", ... and {extra} more" if extra > 0 else ""
            lines.append(f"  {names}{more}")

        if permission_sets:
            custom_ps = [p for p in permission_sets if p.get("is_custom")]
            lines.append(f"\nPermission Sets: {len(permission_sets)} total, {len(custom_ps)} custom")
            if custom_ps:
                labels = ", ".join(p.get("label") or p.get("name") for p in custom_ps[:_CUSTOM_PERMSETS_SHOWN])
                more = "..." if len(custom_ps) > _CUSTOM_PERMSETS_SHOWN else ""
                lines.append(f"  Custom: {labels}{more}")

        summary = "\n".join(lines)
        logger.info(f"Org summary built for org {self.org_id}: {len(summary)} chars")
        return summary
