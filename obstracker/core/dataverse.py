from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from obstracker.core.codes import ObservationStatus, coerce_code
from obstracker.core.config import ObsTrackerConfig
from obstracker.core.errors import RecordNotFoundError, RecordStoreError
from obstracker.core.records import (
    D_OBSERVATION_REF,
    F_DUE_DATE,
    F_EMAIL,
    F_REFERENCE,
    F_STATUS,
    U_OBSERVATION_REF,
    U_SUBMITTED_DATE,
    iso_day,
)

logger = logging.getLogger(__name__)

TOKEN_HEADER = "__RequestVerificationToken"
ERROR_BODY_LIMIT = 500


def odata_literal(value: Any) -> str:
    text = "" if value is None else str(value)
    return "'" + text.replace("'", "''") + "'"


def odata_and(clauses: List[str]) -> Optional[str]:
    parts = [c for c in clauses if c]
    return " and ".join(parts) if parts else None


class AntiForgeryTokenProvider:
    """Fetches the anti-forgery token; any failure or timeout yields None."""

    def __init__(
        self,
        token_url: str,
        *,
        timeout_s: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.token_url = token_url
        self.timeout_s = timeout_s
        self._client = client

    def get(self) -> Optional[str]:
        if not self.token_url:
            return None
        try:
            if self._client is not None:
                response = self._client.get(self.token_url, timeout=self.timeout_s)
            else:
                response = httpx.get(self.token_url, timeout=self.timeout_s)
        except httpx.TimeoutException:
            logger.warning("Anti-forgery token request timed out after %ss; continuing without token", self.timeout_s)
            return None
        except httpx.RequestError as exc:
            logger.warning("Anti-forgery token request failed: %s; continuing without token", exc)
            return None
        if response.status_code != 200:
            logger.warning("Anti-forgery token endpoint returned HTTP %s; continuing without token", response.status_code)
            return None
        token = _token_from_response(response)
        return token or None


def _token_from_response(response: httpx.Response) -> str:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            body = response.json()
        except ValueError:
            return ""
        if isinstance(body, dict):
            return str(body.get("token") or body.get(TOKEN_HEADER) or "").strip()
        return ""
    text = response.text.strip()
    # Portal token endpoints answer with a hidden input element.
    marker = 'value="'
    if TOKEN_HEADER in text and marker in text:
        start = text.index(marker, text.index(TOKEN_HEADER)) + len(marker)
        return text[start : text.index('"', start)]
    return text


class DataverseRecordStore:
    """Record store backed by the Dataverse-style REST data API."""

    def __init__(
        self,
        base_url: str,
        *,
        observations_path: str = "/_api/cr650_ia_observations",
        client_updates_path: str = "/_api/cr650_iaclientupdates",
        documents_path: str = "/_api/cr650_ia_documentses",
        token_provider: Optional[AntiForgeryTokenProvider] = None,
        timeout_s: float = 30.0,
        list_top: int = 1000,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.observations_path = observations_path
        self.client_updates_path = client_updates_path
        self.documents_path = documents_path
        self.list_top = list_top
        self.token_provider = token_provider
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout_s,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_config(cls, settings: ObsTrackerConfig, transport: Optional[httpx.BaseTransport] = None) -> "DataverseRecordStore":
        api = settings.data_api
        return cls(
            api.base_url,
            observations_path=api.observations_path,
            client_updates_path=api.client_updates_path,
            documents_path=api.documents_path,
            token_provider=AntiForgeryTokenProvider(api.token_url, timeout_s=api.token_timeout_s),
            timeout_s=api.request_timeout_s,
            list_top=api.list_top,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    # -- plumbing -----------------------------------------------------------

    def _mutation_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.token_provider.get() if self.token_provider is not None else None
        if token:
            headers[TOKEN_HEADER] = token
        return headers

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise RecordStoreError(f"{method} {url} failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            body = response.text[:ERROR_BODY_LIMIT]
            raise RecordStoreError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RecordStoreError(
                f"{response.request.method} {response.request.url} returned a non-JSON body",
                status_code=response.status_code,
                body=response.text[:ERROR_BODY_LIMIT],
            ) from exc

    def _get_value(self, url: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        body = self._json(self._send("GET", url, params=params))
        rows = body.get("value") if isinstance(body, dict) else None
        return [row for row in rows or [] if isinstance(row, dict)]

    @staticmethod
    def _optional_json(response: httpx.Response) -> Optional[Dict[str, Any]]:
        if response.status_code == 204 or not response.content:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def _entity_url(self, path: str, entity_id: str) -> str:
        return f"{path}({entity_id})"

    # -- observations -------------------------------------------------------

    def list_observations(
        self,
        *,
        email: Optional[str] = None,
        due_date: Optional[str] = None,
        status: Any = None,
        order_by: str = F_DUE_DATE,
        descending: bool = False,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        if email:
            clauses.append(f"{F_EMAIL} eq {odata_literal(email.strip())}")
        if due_date:
            clauses.append(f"{F_DUE_DATE} eq {iso_day(due_date) or due_date}")
        status_code = coerce_code(ObservationStatus, status)
        if status_code is not None:
            clauses.append(f"{F_STATUS} eq {int(status_code)}")
        params = {
            "$orderby": f"{order_by} {'desc' if descending else 'asc'}",
            "$top": str(top or self.list_top),
        }
        filter_expr = odata_and(clauses)
        if filter_expr:
            params["$filter"] = filter_expr
        return self._get_value(self.observations_path, params)

    def get_observation(self, obs_id: str) -> Dict[str, Any]:
        try:
            response = self._send("GET", self._entity_url(self.observations_path, obs_id))
        except RecordStoreError as exc:
            if exc.status_code == 404:
                raise RecordNotFoundError("Observation", obs_id) from exc
            raise
        body = self._json(response)
        if not isinstance(body, dict):
            raise RecordStoreError(f"Observation {obs_id} came back in an unexpected shape", status_code=response.status_code)
        return body

    def find_observation_by_reference(self, reference: str) -> Dict[str, Any]:
        rows = self._get_value(
            self.observations_path,
            {"$filter": f"{F_REFERENCE} eq {odata_literal(reference)}", "$top": "1"},
        )
        if not rows:
            raise RecordNotFoundError("Observation", reference)
        return rows[0]

    def create_observation(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = self._send("POST", self.observations_path, json=payload, headers=self._mutation_headers())
        logger.info("Observation created (status=%s)", response.status_code)
        return self._optional_json(response)

    def update_observation(self, obs_id: str, patch: Dict[str, Any]) -> None:
        self._send("PATCH", self._entity_url(self.observations_path, obs_id), json=patch, headers=self._mutation_headers())
        logger.info("Observation updated (id=%s fields=%s)", obs_id, ",".join(sorted(patch)))

    def delete_observation(self, obs_id: str) -> None:
        try:
            self._send("DELETE", self._entity_url(self.observations_path, obs_id), headers=self._mutation_headers())
        except RecordStoreError as exc:
            if exc.status_code == 404:
                raise RecordNotFoundError("Observation", obs_id) from exc
            raise
        logger.info("Observation deleted (id=%s)", obs_id)

    # -- client updates -----------------------------------------------------

    def list_client_updates(
        self,
        observation_id: Optional[str] = None,
        *,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"$orderby": f"{U_SUBMITTED_DATE} desc"}
        if observation_id:
            params["$filter"] = f"{U_OBSERVATION_REF} eq {odata_literal(observation_id)}"
        if top:
            params["$top"] = str(top)
        return self._get_value(self.client_updates_path, params)

    def create_client_update(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = self._send("POST", self.client_updates_path, json=payload, headers=self._mutation_headers())
        logger.info("Client update created (status=%s)", response.status_code)
        return self._optional_json(response)

    def update_client_update(self, update_id: str, patch: Dict[str, Any]) -> None:
        self._send("PATCH", self._entity_url(self.client_updates_path, update_id), json=patch, headers=self._mutation_headers())

    # -- documents ----------------------------------------------------------

    def list_documents(self, observation_id: str) -> List[Dict[str, Any]]:
        try:
            return self._get_value(
                self.documents_path,
                {"$filter": f"{D_OBSERVATION_REF} eq {odata_literal(observation_id)}"},
            )
        except RecordStoreError as exc:
            logger.warning("Failed to load documents for observation %s: %s", observation_id, exc)
            return []
