"""Salesforce REST/Tooling API access.

Two layers:

* :class:`SalesforceClient`: thin async wrapper around the REST endpoints
  the tools need (SOQL query, describe, Tooling create/update, synchronous
  Apex test runs).  One instance per live connection.
* :class:`SalesforceService`: owns credential exchange (client-credentials
  login, refresh-token grant) and turns an ``Org`` row into a ready
  :class:`OrgConnection`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

import httpx
from sqlalchemy.orm import sessionmaker

from orgpilot.crud import crud
from orgpilot.database import db_session
from orgpilot.models.enums import LogLevel
from orgpilot.models.enums import OrgType
from orgpilot.models.enums import TokenStatus
from orgpilot.utils.crypto import decrypt
from orgpilot.utils.crypto import encrypt

logger = logging.getLogger(__name__)


class SalesforceError(Exception):
    """Non-2xx response or transport failure talking to Salesforce."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class SalesforceAuthError(SalesforceError):
    """Credential exchange failed."""


@dataclass
class SaveResult:
    success: bool
    id: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


def _normalise_errors(body: Any) -> List[Dict[str, Any]]:
    """Map REST error payloads to ``{statusCode, message, fields}`` dicts."""

    items = body if isinstance(body, list) else [body] if isinstance(body, dict) else []
    errors = []
    for item in items:
        if not isinstance(item, dict):
            continue
        errors.append(
            {
                "statusCode": item.get("statusCode") or item.get("errorCode") or "UNKNOWN_ERROR",
                "message": item.get("message") or item.get("error_description") or "",
                "fields": item.get("fields") or [],
            }
        )
    return errors


def _error_message(response: httpx.Response) -> tuple[str, List[Dict[str, Any]]]:
    try:
        errors = _normalise_errors(response.json())
    except ValueError:
        errors = []
    if errors:
        return "; ".join(f"{e['statusCode']}: {e['message']}" for e in errors), errors
    return f"HTTP {response.status_code}: {response.text[:200]}", errors


class SalesforceClient:
    """Authenticated access to one org's REST API."""

    def __init__(
        self,
        instance_url: str,
        access_token: str,
        *,
        api_version: str = "v60.0",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.instance_url = instance_url.rstrip("/")
        self.api_version = api_version
        self._http = httpx.AsyncClient(
            base_url=self.instance_url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "SalesforceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _path(self, suffix: str, *, tooling: bool = False) -> str:
        base = f"/services/data/{self.api_version}"
        if tooling:
            base += "/tooling"
        return f"{base}{suffix}"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise SalesforceError(f"Salesforce request timed out: {method} {path}") from exc
        except httpx.RequestError as exc:
            raise SalesforceError(f"Failed to reach Salesforce: {exc}") from exc

    async def _json(self, method: str, path: str, **kwargs) -> Any:
        response = await self._request(method, path, **kwargs)
        if response.status_code >= 400:
            message, errors = _error_message(response)
            raise SalesforceError(message, status_code=response.status_code, errors=errors)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _save(self, method: str, path: str, fields: Dict[str, Any], record_id: Optional[str] = None) -> SaveResult:
        response = await self._request(method, path, json=fields)
        if response.status_code >= 400:
            _, errors = _error_message(response)
            return SaveResult(success=False, id=record_id, errors=errors)
        body = response.json() if response.content else {}
        if isinstance(body, dict) and body.get("success") is False:
            return SaveResult(success=False, id=body.get("id"), errors=_normalise_errors(body.get("errors")))
        new_id = body.get("id") if isinstance(body, dict) else None
        return SaveResult(success=True, id=new_id or record_id)

    # ------------------------------------------------------------------
    # REST API
    # ------------------------------------------------------------------

    async def query(self, soql: str) -> Dict[str, Any]:
        return await self._json("GET", self._path("/query"), params={"q": soql})

    async def describe(self, sobject: str) -> Dict[str, Any]:
        return await self._json("GET", self._path(f"/sobjects/{sobject}/describe"))

    async def describe_global(self) -> Dict[str, Any]:
        return await self._json("GET", self._path("/sobjects"))

    # ------------------------------------------------------------------
    # Tooling API
    # ------------------------------------------------------------------

    async def tooling_query(self, soql: str) -> Dict[str, Any]:
        return await self._json("GET", self._path("/query", tooling=True), params={"q": soql})

    async def tooling_create(self, sobject: str, fields: Dict[str, Any]) -> SaveResult:
        return await self._save("POST", self._path(f"/sobjects/{sobject}", tooling=True), fields)

    async def tooling_update(self, sobject: str, record_id: str, fields: Dict[str, Any]) -> SaveResult:
        return await self._save(
            "PATCH",
            self._path(f"/sobjects/{sobject}/{record_id}", tooling=True),
            fields,
            record_id=record_id,
        )

    async def run_tests_synchronous(self, class_names: List[str]) -> Dict[str, Any]:
        body = {"tests": [{"className": name} for name in class_names]}
        return await self._json("POST", self._path("/runTestsSynchronous", tooling=True), json=body)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def classify_org(record: Dict[str, Any]) -> OrgType:
    """Org class from an ``Organization`` record."""

    if record.get("IsSandbox"):
        return OrgType.SANDBOX
    if record.get("OrganizationType") in ("Developer Edition", "Developer"):
        return OrgType.DEVELOPER
    return OrgType.PRODUCTION


@dataclass
class CredentialLoginResult:
    access_token: str
    instance_url: str
    salesforce_org_id: Optional[str] = None
    org_name: Optional[str] = None
    org_type: OrgType = OrgType.PRODUCTION


@dataclass
class OrgConnection:
    """Live connection plus the org facts the agent loop needs."""

    org_id: int
    account_id: int
    name: str
    type: OrgType
    client: SalesforceClient

    @property
    def is_production(self) -> bool:
        return self.type == OrgType.PRODUCTION


class SalesforceService:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        api_version: str = "v60.0",
        timeout_s: float = 30.0,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        default_login_url: str = "https://login.salesforce.com",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._session_factory = session_factory
        self.api_version = api_version
        self.timeout_s = timeout_s
        self._client_id = client_id
        self._client_secret = client_secret
        self._default_login_url = default_login_url
        self._transport = transport

    def client_for(self, instance_url: str, access_token: str) -> SalesforceClient:
        return SalesforceClient(
            instance_url,
            access_token,
            api_version=self.api_version,
            timeout=self.timeout_s,
            transport=self._transport,
        )

    async def _token_request(self, login_url: str, data: Dict[str, str]) -> Dict[str, Any]:
        token_url = f"{login_url.rstrip('/')}/services/oauth2/token"
        try:
            async with httpx.AsyncClient(transport=self._transport) as http:
                response = await http.post(token_url, data=data, timeout=self.timeout_s)
        except httpx.TimeoutException as exc:
            raise SalesforceAuthError(
                f"Salesforce token request timed out after {int(self.timeout_s)} seconds. "
                "Check that your Salesforce Domain is correct."
            ) from exc
        except httpx.RequestError as exc:
            raise SalesforceAuthError(f"Failed to connect to Salesforce: {exc}") from exc

        if response.status_code >= 400:
            try:
                body = response.json()
                reason = body.get("error_description") or body.get("error") or "Unknown error"
            except ValueError:
                reason = response.text[:200] or "Unknown error"
            raise SalesforceAuthError(f"Salesforce token request failed: {reason}", status_code=response.status_code)
        return response.json()

    async def login_with_client_credentials(
        self, *, consumer_key: str, consumer_secret: str, login_url: str
    ) -> CredentialLoginResult:
        """Client-credentials grant followed by an ``Organization`` lookup."""

        token = await self._token_request(
            login_url,
            {"grant_type": "client_credentials", "client_id": consumer_key, "client_secret": consumer_secret},
        )
        result = CredentialLoginResult(access_token=token["access_token"], instance_url=token["instance_url"])

        async with self.client_for(result.instance_url, result.access_token) as client:
            info = await client.query("SELECT Id, Name, IsSandbox, OrganizationType FROM Organization LIMIT 1")
        records = info.get("records") or []
        if records:
            record = records[0]
            result.salesforce_org_id = record.get("Id")
            result.org_name = record.get("Name")
            result.org_type = classify_org(record)
        return result

    async def refresh_access_token(
        self,
        *,
        refresh_token: str,
        login_url: str,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
    ) -> CredentialLoginResult:
        client_id = consumer_key or self._client_id
        client_secret = consumer_secret or self._client_secret
        if not client_id or not client_secret:
            raise SalesforceAuthError("Salesforce OAuth client credentials are not configured")
        token = await self._token_request(
            login_url,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        return CredentialLoginResult(access_token=token["access_token"], instance_url=token["instance_url"])

    async def connect(self, org_id: int, *, job_id: Optional[int] = None) -> OrgConnection:
        """Open a live connection to *org_id*.

        Orgs with stored client credentials (or a refresh token) get a fresh
        access token first.  When that exchange fails the stored token is
        used as-is and the failure is logged as a warning.
        """

        with db_session(self._session_factory) as db:
            org = crud.get_org(db, org_id)
            if org is None:
                raise SalesforceError(f"Org {org_id} not found")
            account_id = org.account_id
            name = org.name
            org_type = OrgType(org.type)
            instance_url = org.instance_url
            login_url = org.login_url or self._default_login_url
            access_token = decrypt(org.access_token)
            refresh_token = decrypt(org.refresh_token) if org.refresh_token else None
            consumer_key = org.consumer_key
            consumer_secret = decrypt(org.consumer_secret) if org.consumer_secret else None

        refreshed: Optional[CredentialLoginResult] = None
        try:
            if consumer_key and consumer_secret:
                refreshed = await self.login_with_client_credentials(
                    consumer_key=consumer_key, consumer_secret=consumer_secret, login_url=login_url
                )
            elif refresh_token:
                refreshed = await self.refresh_access_token(
                    refresh_token=refresh_token,
                    login_url=login_url,
                    consumer_key=consumer_key,
                    consumer_secret=consumer_secret,
                )
        except SalesforceError as exc:
            logger.warning(f"Token refresh failed for org {org_id}, using stored token: {exc}")
            if job_id is not None:
                with db_session(self._session_factory) as db:
                    crud.append_job_log(db, job_id, LogLevel.WARN, f"Token refresh failed, using stored token: {exc}")

        with db_session(self._session_factory) as db:
            if refreshed is not None:
                access_token = refreshed.access_token
                instance_url = refreshed.instance_url
                crud.touch_org(
                    db,
                    org_id,
                    access_token=encrypt(access_token),
                    instance_url=instance_url,
                    token_status=TokenStatus.VALID,
                )
            else:
                crud.touch_org(db, org_id)

        return OrgConnection(
            org_id=org_id,
            account_id=account_id,
            name=name,
            type=org_type,
            client=self.client_for(instance_url, access_token),
        )
