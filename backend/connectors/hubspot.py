"""
HubSpot connector implementation.

Responsibilities:
- Page through CRM objects (v3 list and search APIs) and owners
- Introspect property schemas and association label definitions
- Look up associations with the v4 API, single and batched
- Health check and account details

Auth, retries and error classification live in BaseConnector; everything
here is HubSpot's URL and payload shapes.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from config import settings
from connectors.base import BaseConnector
from connectors.errors import ConnectorError, PermanentError
from connectors.models import (
    AssociationTypeDefinition,
    ConnectionTestResult,
    ExternalRecord,
    ObjectPage,
    PropertyDefinition,
    PropertyOption,
    parse_provider_timestamp,
)
from connectors.registry import AuthType, ConnectorMeta, OAuthEndpoints

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"

PAGE_SIZE = 100
BATCH_ASSOCIATION_SIZE = 100

HUBSPOT_OBJECT_TYPES: list[str] = [
    "deals",
    "contacts",
    "companies",
    "tickets",
    "feedback_submissions",
    "line_items",
    "products",
    "calls",
    "emails",
    "meetings",
    "notes",
    "tasks",
    "owners",
]


def _owner_to_record(owner: dict[str, Any]) -> ExternalRecord:
    properties: dict[str, Any] = {
        "email": owner.get("email"),
        "firstName": owner.get("firstName"),
        "lastName": owner.get("lastName"),
        "userId": owner.get("userId"),
        "teams": owner.get("teams") or [],
    }
    return ExternalRecord(
        external_id=str(owner.get("id", "")),
        properties=properties,
        created_at=parse_provider_timestamp(owner.get("createdAt")),
        updated_at=parse_provider_timestamp(owner.get("updatedAt")),
        archived=bool(owner.get("archived", False)),
    )


def _object_to_record(obj: dict[str, Any]) -> ExternalRecord:
    return ExternalRecord(
        external_id=str(obj.get("id", "")),
        properties=dict(obj.get("properties") or {}),
        created_at=parse_provider_timestamp(obj.get("createdAt")),
        updated_at=parse_provider_timestamp(obj.get("updatedAt")),
        archived=bool(obj.get("archived", False)),
    )


def _next_cursor(data: dict[str, Any]) -> Optional[str]:
    after = ((data.get("paging") or {}).get("next") or {}).get("after")
    return str(after) if after else None


class HubSpotConnector(BaseConnector):
    """Connector for HubSpot CRM."""

    source_system = "hubspot"
    api_base = HUBSPOT_API_BASE
    meta = ConnectorMeta(
        name="HubSpot",
        slug="hubspot",
        auth_type=AuthType.OAUTH2,
        entity_types=["owners", "deals", "activities", "contacts", "companies", "tickets"],
        object_types=HUBSPOT_OBJECT_TYPES,
        oauth=OAuthEndpoints(
            authorization_url="https://app.hubspot.com/oauth/authorize",
            token_url=f"{HUBSPOT_API_BASE}/oauth/v1/token",
            required_scopes=["oauth"],
            optional_scopes=[
                "crm.objects.deals.read",
                "crm.objects.contacts.read",
                "crm.objects.companies.read",
                "crm.objects.owners.read",
                "crm.schemas.deals.read",
                "crm.schemas.companies.read",
                "tickets",
            ],
            supports_refresh=True,
        ),
        description="HubSpot CRM: deals, contacts, companies, tickets and owners",
    )

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_objects(
        self,
        object_type: str,
        cursor: Optional[str] = None,
        properties: Optional[list[str]] = None,
        filters: Optional[list[dict[str, Any]]] = None,
    ) -> ObjectPage:
        """Fetch one page. Uses the search API when filters are given (it requires at least one)."""
        if object_type == "owners":
            return await self._list_owners(cursor)

        if filters:
            body: dict[str, Any] = {
                "filterGroups": [{"filters": filters}],
                "limit": PAGE_SIZE,
            }
            if properties:
                body["properties"] = properties
            if cursor:
                body["after"] = cursor
            data = await self._make_request(
                "POST", f"/crm/v3/objects/{object_type}/search", json_data=body
            )
        else:
            params: dict[str, Any] = {"limit": PAGE_SIZE}
            if properties:
                params["properties"] = ",".join(properties)
            if cursor:
                params["after"] = cursor
            data = await self._make_request("GET", f"/crm/v3/objects/{object_type}", params=params)

        records = [_object_to_record(obj) for obj in data.get("results", [])]
        next_cursor = _next_cursor(data)
        logger.debug(
            "[HubSpot] %s page: %d records, next cursor %s", object_type, len(records), next_cursor
        )
        return ObjectPage(records=records, next_cursor=next_cursor)

    async def _list_owners(self, cursor: Optional[str]) -> ObjectPage:
        params: dict[str, Any] = {"limit": PAGE_SIZE}
        if cursor:
            params["after"] = cursor
        data = await self._make_request("GET", "/crm/v3/owners", params=params)
        records = [_owner_to_record(o) for o in data.get("results", []) if not o.get("archived")]
        return ObjectPage(records=records, next_cursor=_next_cursor(data))

    async def list_objects_with_inline_associations(
        self,
        object_type: str,
        to_types: list[str],
        limit: int = 5,
    ) -> list[dict[str, Any]]:
        """
        Raw v3 list response with inline ``associations``.

        Diagnostic only: the v3 shape ({"associations": {"tickets": {"results":
        [{"id", "type"}]}}}) is never consumed by the sync pipeline, which
        relies on the v4 batch API instead.
        """
        params: dict[str, Any] = {"limit": limit, "associations": ",".join(to_types)}
        data = await self._make_request("GET", f"/crm/v3/objects/{object_type}", params=params)
        return list(data.get("results", []))

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def get_object_properties(self, object_type: str) -> list[PropertyDefinition]:
        data = await self._make_request("GET", f"/crm/v3/properties/{object_type}")
        definitions: list[PropertyDefinition] = []
        for prop in data.get("results", []):
            definitions.append(
                PropertyDefinition(
                    name=prop.get("name", ""),
                    label=prop.get("label") or prop.get("name", ""),
                    type=prop.get("type") or "string",
                    field_type=prop.get("fieldType"),
                    group=prop.get("groupName") or "other",
                    description=prop.get("description") or None,
                    options=[
                        PropertyOption(label=str(o.get("label", "")), value=str(o.get("value", "")))
                        for o in prop.get("options") or []
                    ],
                    calculated=bool(prop.get("calculated", False)),
                    read_only=bool((prop.get("modificationMetadata") or {}).get("readOnlyValue", False)),
                )
            )
        definitions.sort(key=lambda d: (d.group.lower(), d.label.lower()))
        return definitions

    async def get_association_schema(
        self, from_type: str, to_type: str
    ) -> list[AssociationTypeDefinition]:
        """
        Association labels between two object types.

        HubSpot answers 400/404 for pairs it has no relationship for (e.g.
        feedback_submissions -> tickets on many portals); that is the same
        answer as an empty list.
        """
        try:
            data = await self._make_request(
                "GET", f"/crm/v4/associations/{from_type}/{to_type}/labels"
            )
        except PermanentError as exc:
            logger.info(
                "[HubSpot] No association schema %s -> %s (%s)", from_type, to_type, exc.message
            )
            return []
        return [
            AssociationTypeDefinition(
                type_id=int(item.get("typeId", 0)),
                label=item.get("label"),
                category=item.get("category") or "HUBSPOT_DEFINED",
            )
            for item in data.get("results", [])
        ]

    # ------------------------------------------------------------------
    # Associations (v4)
    # ------------------------------------------------------------------

    async def fetch_associations(self, from_type: str, from_id: str, to_type: str) -> list[str]:
        to_ids: list[str] = []
        cursor: Optional[str] = None
        while True:
            params: dict[str, Any] = {"limit": 500}
            if cursor:
                params["after"] = cursor
            data = await self._make_request(
                "GET",
                f"/crm/v4/objects/{from_type}/{from_id}/associations/{to_type}",
                params=params,
            )
            to_ids.extend(str(r["toObjectId"]) for r in data.get("results", []) if "toObjectId" in r)
            cursor = _next_cursor(data)
            if not cursor:
                return to_ids

    async def batch_fetch_associations(
        self, from_type: str, from_ids: list[str], to_type: str
    ) -> dict[str, list[str]]:
        """
        Batch association lookup.

        HubSpot's batch/read omits ids with zero associations (reporting them
        under "errors" with a 207), so every input id is seeded with an empty
        list first.
        """
        associations: dict[str, list[str]] = {str(i): [] for i in from_ids}
        ids = list(associations)

        for start in range(0, len(ids), BATCH_ASSOCIATION_SIZE):
            chunk = ids[start:start + BATCH_ASSOCIATION_SIZE]
            try:
                data = await self._make_request(
                    "POST",
                    f"/crm/v4/associations/{from_type}/{to_type}/batch/read",
                    json_data={"inputs": [{"id": i} for i in chunk]},
                )
            except PermanentError as exc:
                logger.warning(
                    "[HubSpot] Batch associations %s -> %s failed (%s), falling back to individual requests",
                    from_type, to_type, exc.message,
                )
                for from_id in chunk:
                    associations[from_id] = await self.fetch_associations(from_type, from_id, to_type)
                continue

            for result in data.get("results", []):
                from_id = str((result.get("from") or {}).get("id", ""))
                if from_id not in associations:
                    continue
                to_ids = [str(t["toObjectId"]) for t in result.get("to", []) if "toObjectId" in t]
                # A large association set can span several result entries for one id
                associations[from_id].extend(i for i in to_ids if i not in associations[from_id])

        return associations

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self._make_request("GET", "/crm/v3/objects/contacts", params={"limit": 1})
        except ConnectorError as exc:
            return ConnectionTestResult(success=False, error=exc.message)

        details: Optional[dict[str, Any]] = None
        try:
            details = await self.get_account_info()
        except ConnectorError as exc:
            # Account details need an extra scope on some portals; the connection itself works
            logger.info("[HubSpot] Account info unavailable during connection test: %s", exc.message)
        return ConnectionTestResult(success=True, details=details)

    async def get_account_info(self) -> dict[str, Any]:
        data = await self._make_request("GET", "/account-info/v3/details")
        portal_id = data.get("portalId")
        return {
            "portal_id": str(portal_id) if portal_id is not None else None,
            "account_type": data.get("accountType"),
            "time_zone": data.get("timeZone"),
        }

    @classmethod
    async def fetch_account_identity(
        cls,
        access_token: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> tuple[Optional[str], Optional[str]]:
        """Hub id and domain from the token introspection endpoint."""
        url = f"{HUBSPOT_API_BASE}/oauth/v1/access-tokens/{access_token}"
        timeout: float = settings.HTTP_TIMEOUT_SECONDS
        if http_client is not None:
            response = await http_client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=timeout)

        if response.status_code >= 400:
            logger.warning("[HubSpot] Token introspection failed with status %d", response.status_code)
            return None, None

        data: dict[str, Any] = response.json()
        hub_id = data.get("hub_id")
        return (str(hub_id) if hub_id is not None else None), data.get("hub_domain")
