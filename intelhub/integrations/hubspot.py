"""
HubSpot CRM adapter: entity lookups for the job runner and read-only
search/association tools for the agent.
"""

import logging
from typing import Any

import httpx

from intelhub.core.errors import UpstreamToolError
from intelhub.core.tools import AgentTool

logger = logging.getLogger(__name__)

OBJECT_TYPES = ("companies", "contacts", "deals")

# entity_type -> CRM object type
ENTITY_OBJECT_TYPES = {
    "company": "companies",
    "contact": "contacts",
    "deal": "deals",
}

DEFAULT_PROPERTIES = {
    "companies": [
        "name",
        "domain",
        "industry",
        "city",
        "state",
        "numberofemployees",
        "annualrevenue",
        "lifecyclestage",
        "description",
        "hs_lastmodifieddate",
    ],
    "contacts": [
        "firstname",
        "lastname",
        "email",
        "jobtitle",
        "company",
        "phone",
        "lifecyclestage",
        "hs_lead_status",
        "lastmodifieddate",
    ],
    "deals": [
        "dealname",
        "amount",
        "dealstage",
        "pipeline",
        "closedate",
        "dealtype",
        "hs_lastmodifieddate",
        "notes_last_updated",
    ],
}

MAX_SEARCH_LIMIT = 50


def _object_type(value: str | None) -> str:
    object_type = ENTITY_OBJECT_TYPES.get(value or "", value)
    if object_type not in OBJECT_TYPES:
        raise UpstreamToolError(
            "hubspot", f"Unsupported object type: {value!r}. Use one of {OBJECT_TYPES}"
        )
    return object_type


class HubSpotClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str,
        base_url: str = "https://api.hubapi.com",
    ):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._http.request(
                method, f"{self._base_url}{path}", headers=self._headers, **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamToolError(
                "hubspot",
                f"{method} {path} failed with {e.response.status_code}: {e.response.text[:300]}",
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamToolError("hubspot", f"{method} {path} failed: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamToolError("hubspot", f"{method} {path} returned invalid JSON: {e}") from e

    async def get_object(
        self,
        object_type: str,
        object_id: str,
        properties: list[str] | None = None,
    ) -> dict[str, Any]:
        object_type = _object_type(object_type)
        params = {
            "properties": ",".join(properties or DEFAULT_PROPERTIES[object_type]),
            "associations": ",".join(t for t in OBJECT_TYPES if t != object_type),
        }
        return await self._request(
            "GET", f"/crm/v3/objects/{object_type}/{object_id}", params=params
        )

    async def search_objects(
        self,
        object_type: str,
        query: str | None = None,
        filters: list[dict[str, Any]] | None = None,
        properties: list[str] | None = None,
        limit: int = 10,
    ) -> dict[str, Any]:
        object_type = _object_type(object_type)
        body: dict[str, Any] = {
            "properties": properties or DEFAULT_PROPERTIES[object_type],
            "limit": max(1, min(int(limit), MAX_SEARCH_LIMIT)),
        }
        if query:
            body["query"] = query
        if filters:
            body["filterGroups"] = [{"filters": filters}]
        data = await self._request(
            "POST", f"/crm/v3/objects/{object_type}/search", json=body
        )
        return {
            "total": data.get("total", 0),
            "results": [
                {"id": item.get("id"), "properties": item.get("properties", {})}
                for item in data.get("results", [])
            ],
        }

    async def list_associations(
        self, object_type: str, object_id: str, to_object_type: str
    ) -> dict[str, Any]:
        object_type = _object_type(object_type)
        to_object_type = _object_type(to_object_type)
        data = await self._request(
            "GET",
            f"/crm/v4/objects/{object_type}/{object_id}/associations/{to_object_type}",
        )
        return {
            "results": [
                {
                    "id": str(item.get("toObjectId")),
                    "types": [
                        t.get("label") or t.get("category")
                        for t in item.get("associationTypes", [])
                    ],
                }
                for item in data.get("results", [])
            ]
        }

    # -----------------------------------------------------------------------
    # Agent tools
    # -----------------------------------------------------------------------

    async def _search_tool(self, tool_input: dict, context: dict) -> dict:
        return await self.search_objects(
            tool_input.get("object_type"),
            query=tool_input.get("query"),
            filters=tool_input.get("filters"),
            properties=tool_input.get("properties"),
            limit=tool_input.get("limit", 10),
        )

    async def _associations_tool(self, tool_input: dict, context: dict) -> dict:
        return await self.list_associations(
            tool_input.get("object_type"),
            tool_input["object_id"],
            tool_input.get("to_object_type"),
        )

    async def _get_object_tool(self, tool_input: dict, context: dict) -> dict:
        return await self.get_object(
            tool_input.get("object_type"),
            tool_input["object_id"],
            properties=tool_input.get("properties"),
        )

    def tools(self) -> list[AgentTool]:
        object_type_schema = {"type": "string", "enum": list(OBJECT_TYPES)}
        return [
            AgentTool(
                name="hubspot_search_objects",
                description=(
                    "Search HubSpot CRM records (companies, contacts or deals) by "
                    "free-text query and/or property filters. Returns at most "
                    f"{MAX_SEARCH_LIMIT} records."
                ),
                handler=self._search_tool,
                input_schema={
                    "type": "object",
                    "properties": {
                        "object_type": object_type_schema,
                        "query": {"type": "string"},
                        "filters": {
                            "type": "array",
                            "description": "HubSpot filters: {propertyName, operator, value}",
                            "items": {"type": "object"},
                        },
                        "properties": {"type": "array", "items": {"type": "string"}},
                        "limit": {"type": "integer", "minimum": 1, "maximum": MAX_SEARCH_LIMIT},
                    },
                    "required": ["object_type"],
                },
            ),
            AgentTool(
                name="hubspot_list_associations",
                description=(
                    "List records associated with a HubSpot record, e.g. the "
                    "contacts linked to a deal."
                ),
                handler=self._associations_tool,
                input_schema={
                    "type": "object",
                    "properties": {
                        "object_type": object_type_schema,
                        "object_id": {"type": "string"},
                        "to_object_type": object_type_schema,
                    },
                    "required": ["object_type", "object_id", "to_object_type"],
                },
            ),
            AgentTool(
                name="hubspot_get_object",
                description="Fetch one HubSpot record with its properties and associations.",
                handler=self._get_object_tool,
                input_schema={
                    "type": "object",
                    "properties": {
                        "object_type": object_type_schema,
                        "object_id": {"type": "string"},
                        "properties": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["object_type", "object_id"],
                },
            ),
        ]
