"""Remote document store backed by the Firestore REST API (v1).

Documents are plain dicts on our side; Firestore's typed value wrappers
(``stringValue``, ``integerValue``, ``mapValue`` ...) are handled by
``encode_fields``/``decode_fields``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from librahub.config import settings
from librahub.services.http_client import HTTPClient, get_http_client

logger = logging.getLogger(__name__)

PAGE_SIZE = 300


class RemoteStoreError(Exception):
    """Hard failure talking to the remote store."""
    pass


class RemoteUnavailableError(RemoteStoreError):
    """Network failure or timeout."""
    pass


class PermissionDeniedError(RemoteStoreError):
    pass


class DocumentNotFoundError(RemoteStoreError):
    pass


class PreconditionFailedError(RemoteStoreError):
    """The document changed since it was read."""
    pass


@dataclass
class RemoteDocument:
    id: str
    data: Dict[str, Any]
    update_time: Optional[str] = None


def encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    # bool first: it is a subclass of int
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": value.isoformat()}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Cannot store value of type {type(value).__name__}")


def decode_value(value: Dict[str, Any]) -> Any:
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return value["timestampValue"]
    if "referenceValue" in value:
        return value["referenceValue"]
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "geoPointValue" in value:
        return dict(value["geoPointValue"])
    raise ValueError(f"Unknown Firestore value: {sorted(value)}")


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: encode_value(v) for key, v in data.items()}


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(v) for key, v in fields.items()}


def _field_path(key: str) -> str:
    if key.replace("_", "a").isalnum() and not key[0].isdigit():
        return key
    return "`" + key.replace("\\", "\\\\").replace("`", "\\`") + "`"


class FirestoreStore:
    """CRUD over Firestore collections. Every method raises RemoteStoreError on failure."""

    def __init__(self, project_id: Optional[str] = None, database: Optional[str] = None,
                 api_key: Optional[str] = None, base_url: Optional[str] = None,
                 http_client: Optional[HTTPClient] = None, timeout: Optional[float] = None):
        self.project_id = project_id or settings.remote_project_id
        if not self.project_id:
            raise ValueError("A Firestore project id is required.")
        self.database = database or settings.remote_database
        self.api_key = api_key or settings.remote_api_key
        self.base_url = (base_url or settings.remote_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.remote_timeout
        self._http = http_client

    @property
    def http(self) -> HTTPClient:
        return self._http or get_http_client()

    @property
    def documents_url(self) -> str:
        return f"{self.base_url}/projects/{self.project_id}/databases/{self.database}/documents"

    def _name_to_id(self, name: str) -> str:
        return name.rsplit("/", 1)[-1]

    def _to_document(self, payload: Dict[str, Any]) -> RemoteDocument:
        return RemoteDocument(
            id=self._name_to_id(payload["name"]),
            data=decode_fields(payload.get("fields", {})),
            update_time=payload.get("updateTime"),
        )

    def _request(self, method: str, path: str, params: Optional[list] = None,
                 json: Optional[dict] = None) -> Dict[str, Any]:
        params = list(params or [])
        if self.api_key:
            params.append(("key", self.api_key))
        url = f"{self.documents_url}/{path}"

        try:
            response = self.http.request(method, url, params=params, json=json, timeout=self.timeout)
        except httpx.RequestError as e:
            raise RemoteUnavailableError(f"{method} {path}: {e}") from e

        if response.status_code in (200, 204):
            return response.json() if response.content else {}

        status = ""
        message = response.text
        try:
            error = response.json().get("error", {})
            status = error.get("status", "")
            message = error.get("message", message)
        except ValueError:
            pass

        if response.status_code == 404:
            raise DocumentNotFoundError(f"{path}: {message}")
        if response.status_code in (401, 403):
            raise PermissionDeniedError(f"{path}: {message}")
        if response.status_code == 409 or status in ("FAILED_PRECONDITION", "ABORTED"):
            raise PreconditionFailedError(f"{path}: {message}")
        if response.status_code >= 500 or response.status_code == 429:
            raise RemoteUnavailableError(f"{path}: HTTP {response.status_code} {message}")
        raise RemoteStoreError(f"{path}: HTTP {response.status_code} {message}")

    def list_documents(self, collection: str) -> List[RemoteDocument]:
        documents = []
        page_token = None
        while True:
            params = [("pageSize", PAGE_SIZE)]
            if page_token:
                params.append(("pageToken", page_token))
            payload = self._request("GET", collection, params=params)
            documents.extend(self._to_document(d) for d in payload.get("documents", []))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        logger.debug(f"Retrieved {len(documents)} documents from remote '{collection}'")
        return documents

    def get_document(self, collection: str, doc_id: str) -> Optional[RemoteDocument]:
        try:
            return self._to_document(self._request("GET", f"{collection}/{doc_id}"))
        except DocumentNotFoundError:
            return None

    def add_document(self, collection: str, data: Dict[str, Any]) -> RemoteDocument:
        """Create a document with a store-generated id."""
        payload = self._request("POST", collection, json={"fields": encode_fields(data)})
        document = self._to_document(payload)
        logger.info(f"Document added to remote '{collection}' with ID: {document.id}")
        return document

    def set_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> RemoteDocument:
        """Create or overwrite the document at a caller-chosen id."""
        payload = self._request("PATCH", f"{collection}/{doc_id}", json={"fields": encode_fields(data)})
        return self._to_document(payload)

    def update_document(self, collection: str, doc_id: str, data: Dict[str, Any],
                        update_time: Optional[str] = None) -> RemoteDocument:
        """Update the given fields of an existing document.

        With ``update_time`` the write only succeeds if the document has not
        changed since that time, otherwise PreconditionFailedError is raised.
        """
        params = [("updateMask.fieldPaths", _field_path(key)) for key in data]
        if update_time:
            params.append(("currentDocument.updateTime", update_time))
        else:
            params.append(("currentDocument.exists", "true"))
        payload = self._request("PATCH", f"{collection}/{doc_id}", params=params,
                                json={"fields": encode_fields(data)})
        logger.info(f"Document updated in remote '{collection}': {doc_id}")
        return self._to_document(payload)

    def delete_document(self, collection: str, doc_id: str) -> None:
        self._request("DELETE", f"{collection}/{doc_id}", params=[("currentDocument.exists", "true")])
        logger.info(f"Document deleted from remote '{collection}': {doc_id}")
