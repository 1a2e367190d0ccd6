"""Component tier: full source of single Apex classes, triggers, flows and LWCs.

Names are interpolated into Tooling API SOQL, so every lookup validates
them against :data:`NAME_PATTERN` first.
"""

from __future__ import annotations

import logging
import re
from typing import Any
from typing import Dict

from orgpilot.services.cache import TTLCache
from orgpilot.services.salesforce import SalesforceClient

logger = logging.getLogger(__name__)

COMPONENT_TTL_S = 3600

NAME_PATTERN = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


class InvalidComponentName(ValueError):
    pass


class ComponentNotFound(LookupError):
    pass


def validate_name(name: str, kind: str) -> str:
    if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name):
        raise InvalidComponentName(
            f"Invalid {kind} name: {name!r}. Names may only contain letters, digits and underscores "
            "and must not start with a digit."
        )
    return name


def cache_key(component_type: str, name: str) -> str:
    return f"{component_type}:{name}"


class ComponentCacheService:
    def __init__(self, org_id: int, client: SalesforceClient, cache: TTLCache):
        self.org_id = org_id
        self._client = client
        self._cache = cache

    def invalidate(self, component_type: str, name: str) -> None:
        self._cache.invalidate(self.org_id, cache_key(component_type, name))

    async def _first_record(self, soql: str) -> Dict[str, Any] | None:
        result = await self._client.tooling_query(soql)
        records = result.get("records") or []
        return records[0] if records else None

    async def get_apex_class(self, name: str) -> Dict[str, Any]:
        validate_name(name, "Apex class")

        async def fetch():
            record = await self._first_record(f"SELECT Id, Name, Body FROM ApexClass WHERE Name = '{name}' LIMIT 1")
            if record is None:
                raise ComponentNotFound(f'Apex class not found: "{name}". Check the name and try again.')
            logger.info(f"Fetched Apex class body {name} ({len(record.get('Body') or '')} chars)")
            return {"id": record["Id"], "name": record["Name"], "body": record.get("Body") or ""}

        return await self._cache.get_or_fetch(self.org_id, cache_key("apex_class", name), COMPONENT_TTL_S, fetch)

    async def get_apex_trigger(self, name: str) -> Dict[str, Any]:
        validate_name(name, "Apex trigger")

        async def fetch():
            record = await self._first_record(
                f"SELECT Id, Name, Body, TableEnumOrId FROM ApexTrigger WHERE Name = '{name}' LIMIT 1"
            )
            if record is None:
                raise ComponentNotFound(f'Apex trigger not found: "{name}". Check the name and try again.')
            return {
                "id": record["Id"],
                "name": record["Name"],
                "body": record.get("Body") or "",
                "table_enum_or_id": record.get("TableEnumOrId"),
            }

        return await self._cache.get_or_fetch(self.org_id, cache_key("apex_trigger", name), COMPONENT_TTL_S, fetch)

    async def get_flow_definition(self, api_name: str) -> Dict[str, Any]:
        """Active version if there is one, otherwise the newest draft."""

        validate_name(api_name, "Flow")

        async def fetch():
            fields = "Id, DeveloperName, MasterLabel, ProcessType, Metadata"
            record = await self._first_record(
                f"SELECT {fields} FROM Flow WHERE DeveloperName = '{api_name}' AND Status = 'Active' LIMIT 1"
            )
            status = "active"
            if record is None:
                record = await self._first_record(
                    f"SELECT {fields} FROM Flow WHERE DeveloperName = '{api_name}' ORDER BY VersionNumber DESC LIMIT 1"
                )
                status = "draft"
            if record is None:
                raise ComponentNotFound(f'Flow not found: "{api_name}". Check the API name and try again.')
            return {
                "id": record["Id"],
                "api_name": record.get("DeveloperName"),
                "label": record.get("MasterLabel"),
                "process_type": record.get("ProcessType"),
                "version_status": status,
                "metadata": record.get("Metadata"),
            }

        return await self._cache.get_or_fetch(self.org_id, cache_key("flow", api_name), COMPONENT_TTL_S, fetch)

    async def get_lwc_source(self, developer_name: str) -> Dict[str, Any]:
        validate_name(developer_name, "LWC")

        async def fetch():
            bundle = await self._first_record(
                f"SELECT Id, DeveloperName FROM LightningComponentBundle WHERE DeveloperName = '{developer_name}' LIMIT 1"
            )
            if bundle is None:
                raise ComponentNotFound(f'LWC bundle not found: "{developer_name}". Check the name and try again.')
            resources = await self._client.tooling_query(
                "SELECT Id, FilePath, Source FROM LightningComponentResource "
                f"WHERE LightningComponentBundleId = '{bundle['Id']}'"
            )
            files = [
                {"file_path": r.get("FilePath"), "source": r.get("Source") or ""}
                for r in resources.get("records", [])
            ]
            return {"bundle_id": bundle["Id"], "developer_name": developer_name, "files": files}

        return await self._cache.get_or_fetch(self.org_id, cache_key("lwc", developer_name), COMPONENT_TTL_S, fetch)
