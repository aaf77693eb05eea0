"""Keeps the local store and the remote document store approximately in step.

Merging is one policy for every collection: documents are matched by an
identity key and the remote copy wins. Writes go to the remote store first
when it is configured, then always to the local store. Remote failures are
logged and reported in the returned result; nothing here raises them.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from librahub import database
from librahub.database import LocalStore
from librahub.services.remote_store import (
    DocumentNotFoundError,
    FirestoreStore,
    PreconditionFailedError,
    RemoteDocument,
    RemoteStoreError,
)

logger = logging.getLogger(__name__)

# Account documents live in two remote collections, split by role.
PATRONS_COLLECTION = "users"
STAFF_COLLECTION = "staff"
SETTINGS_DOCUMENT = "librarySettings"

ID_PREFIXES = {
    database.BOOKS: "book",
    database.BORROWING_RECORDS: "record",
    database.BRANCHES: "branch",
    database.USERS: "user",
}

# Written locally only, never mirrored into remote documents.
LOCAL_ONLY_FIELDS = ("remoteId",)


def record_key(doc: dict) -> Optional[str]:
    return doc.get("id")


def account_key(doc: dict) -> Optional[str]:
    email = (doc.get("email") or "").strip().lower()
    if email:
        return email
    # Accounts without an email still need a stable identity.
    return f"id:{doc['id']}" if doc.get("id") else None


def identity_key_for(collection: str) -> Callable[[dict], Optional[str]]:
    return account_key if collection == database.USERS else record_key


def merge_collections(local: List[dict], remote: List[dict],
                      key: Callable[[dict], Optional[str]] = record_key) -> List[dict]:
    """Union of two collections, remote copy winning on identity collisions.

    Remote documents come first in remote order, then local-only documents in
    local order. Within one side the first occurrence of a key wins. Documents
    with no identity are kept as-is.
    """
    merged: List[dict] = []
    seen = set()
    for doc in list(remote) + list(local):
        k = key(doc)
        if k is None:
            merged.append(doc)
            continue
        if k in seen:
            continue
        seen.add(k)
        merged.append(doc)
    return merged


@dataclass
class LoadResult:
    items: List[dict]
    remote_ok: bool = True
    error: Optional[str] = None


@dataclass
class SaveResult:
    success: bool
    record: Optional[dict] = None
    remote_synced: bool = False
    conflict: bool = False
    message: str = ""
    warnings: List[str] = field(default_factory=list)


class SyncedRepository:
    """Collection access over an injected local store and optional remote store."""

    def __init__(self, local: LocalStore, remote: Optional[FirestoreStore] = None):
        self.local = local
        self.remote = remote
        # Last seen remote update time per (collection, remote id).
        self._update_times: Dict[Tuple[str, str], str] = {}

    @property
    def remote_enabled(self) -> bool:
        return self.remote is not None

    # ----------------- helpers -----------------

    def _remember(self, collection: str, document: RemoteDocument) -> None:
        if document.update_time:
            self._update_times[(collection, document.id)] = document.update_time

    def _strip_local_fields(self, record: dict) -> dict:
        return {k: v for k, v in record.items() if k not in LOCAL_ONLY_FIELDS}

    def _from_remote(self, collection: str, document: RemoteDocument) -> dict:
        data = dict(document.data)
        if collection in (PATRONS_COLLECTION, STAFF_COLLECTION):
            data["id"] = document.id
            data["isAdmin"] = collection == STAFF_COLLECTION
            data.setdefault("borrowedBooks", [])
            return data
        data.setdefault("id", document.id)
        data["remoteId"] = document.id
        return data

    def _read_remote(self, collection: str) -> List[dict]:
        if collection == database.USERS:
            patrons = self.remote.list_documents(PATRONS_COLLECTION)
            staff = self.remote.list_documents(STAFF_COLLECTION)
            logger.info(f"Loaded {len(patrons) + len(staff)} accounts from remote "
                        f"({len(patrons)} patrons, {len(staff)} staff)")
            return ([self._from_remote(PATRONS_COLLECTION, d) for d in patrons]
                    + [self._from_remote(STAFF_COLLECTION, d) for d in staff])

        documents = self.remote.list_documents(collection)
        for document in documents:
            self._remember(collection, document)
        return [self._from_remote(collection, d) for d in documents]

    def _replace_local(self, collection: str, record: dict) -> None:
        key = identity_key_for(collection)
        items = self.local.get_collection(collection)
        record_id = record.get("id")
        target = key(record)
        for i, item in enumerate(items):
            if (record_id is not None and item.get("id") == record_id) or key(item) == target:
                items[i] = record
                break
        else:
            items.append(record)
        self.local.set_collection(collection, items)

    def new_id(self, collection: str) -> str:
        return f"{ID_PREFIXES.get(collection, 'doc')}-{uuid.uuid4().hex[:12]}"

    # ----------------- contract -----------------

    def load(self, collection: str) -> LoadResult:
        """Merge local and remote copies of a collection and cache the union locally."""
        local_items = self.local.get_collection(collection)
        if not self.remote_enabled:
            return LoadResult(items=local_items)

        try:
            remote_items = self._read_remote(collection)
        except RemoteStoreError as e:
            logger.error(f"Error loading '{collection}' from remote, using local data: {e}")
            return LoadResult(items=local_items, remote_ok=False, error=str(e))

        merged = merge_collections(local_items, remote_items, identity_key_for(collection))
        self.local.set_collection(collection, merged)
        logger.info(f"Loaded {len(merged)} '{collection}' ({len(remote_items)} from remote)")
        return LoadResult(items=merged)

    def local_items(self, collection: str) -> List[dict]:
        return self.local.get_collection(collection)

    def find(self, collection: str, record_id: str) -> Optional[dict]:
        """Look a record up in the local copy only."""
        for item in self.local.get_collection(collection):
            if item.get("id") == record_id:
                return item
        return None

    def refresh(self, collection: str, record: dict) -> dict:
        """Latest copy of one record: remote when reachable, otherwise local."""
        if collection == database.USERS:
            target = STAFF_COLLECTION if record.get("isAdmin") else PATRONS_COLLECTION
            remote_id = record.get("id")
        else:
            target = collection
            remote_id = record.get("remoteId")
        if self.remote_enabled and remote_id:
            try:
                document = self.remote.get_document(target, remote_id)
            except RemoteStoreError as e:
                logger.warning(f"Could not refresh {target}/{remote_id} from remote: {e}")
            else:
                if document is not None:
                    self._remember(target, document)
                    fresh = self._from_remote(target, document)
                    self._replace_local(collection, fresh)
                    return fresh
        return self.find(collection, record.get("id")) or record

    def save(self, collection: str, record: dict, check_conflict: bool = False) -> SaveResult:
        """Persist a record to both stores.

        With ``check_conflict`` an update of an existing remote document is
        conditional on it being unchanged since this repository last read it;
        on a conflict nothing is written anywhere.
        """
        record = dict(record)
        if not record.get("id"):
            record["id"] = self.new_id(collection)

        if not self.remote_enabled:
            self._replace_local(collection, record)
            return SaveResult(success=True, record=record, message="Saved locally.")

        warnings = []
        remote_synced = False
        try:
            if collection == database.USERS:
                self._save_account_remote(record)
            elif record.get("remoteId"):
                update_time = None
                if check_conflict:
                    update_time = self._update_times.get((collection, record["remoteId"]))
                document = self.remote.update_document(
                    collection, record["remoteId"], self._strip_local_fields(record), update_time=update_time
                )
                self._remember(collection, document)
            else:
                document = self.remote.add_document(collection, self._strip_local_fields(record))
                self._remember(collection, document)
                record["remoteId"] = document.id
            remote_synced = True
        except PreconditionFailedError as e:
            logger.warning(f"Conflicting remote update of {collection}/{record.get('id')}: {e}")
            return SaveResult(success=False, record=record, conflict=True,
                              message="The record was changed by someone else. Reload and try again.")
        except RemoteStoreError as e:
            logger.error(f"Error saving {collection}/{record.get('id')} to remote, kept locally: {e}")
            warnings.append(f"Remote sync failed: {e}")

        self._replace_local(collection, record)
        message = "Saved." if remote_synced else "Saved locally only."
        return SaveResult(success=True, record=record, remote_synced=remote_synced,
                          message=message, warnings=warnings)

    def _save_account_remote(self, record: dict) -> None:
        target = STAFF_COLLECTION if record.get("isAdmin") else PATRONS_COLLECTION
        data = {k: v for k, v in record.items() if k not in ("id",) + LOCAL_ONLY_FIELDS}
        self.remote.set_document(target, record["id"], data)

    def delete(self, collection: str, record: dict) -> SaveResult:
        """Delete from the remote store (best effort) and always from the local store."""
        warnings = []
        remote_synced = False
        if self.remote_enabled:
            try:
                if collection == database.USERS:
                    target = STAFF_COLLECTION if record.get("isAdmin") else PATRONS_COLLECTION
                    self.remote.delete_document(target, record["id"])
                    remote_synced = True
                elif record.get("remoteId"):
                    self.remote.delete_document(collection, record["remoteId"])
                    self._update_times.pop((collection, record["remoteId"]), None)
                    remote_synced = True
            except DocumentNotFoundError as e:
                logger.warning(f"{collection}/{record.get('id')} was not in the remote store: {e}")
                warnings.append("Record was not found in the remote store.")
            except RemoteStoreError as e:
                logger.error(f"Error deleting {collection}/{record.get('id')} from remote: {e}")
                warnings.append(f"Remote delete failed: {e}")

        items = self.local.get_collection(collection)
        key = identity_key_for(collection)
        remaining = [i for i in items
                     if not (i.get("id") == record.get("id") or (key(i) is not None and key(i) == key(record)))]
        if len(remaining) == len(items):
            return SaveResult(success=False, record=record, remote_synced=remote_synced,
                              message="Record not found in the local store.", warnings=warnings)

        self.local.set_collection(collection, remaining)
        return SaveResult(success=True, record=record, remote_synced=remote_synced,
                          message="Deleted." if not warnings else "Deleted locally.", warnings=warnings)

    # ----------------- settings -----------------

    def load_settings(self) -> LoadResult:
        """Settings document: remote copy is canonical, local copy is the fallback."""
        local_settings = self.local.get(database.SETTINGS, {}) or {}
        if not self.remote_enabled:
            return LoadResult(items=[local_settings])
        try:
            document = self.remote.get_document(database.SETTINGS, SETTINGS_DOCUMENT)
        except RemoteStoreError as e:
            logger.error(f"Error loading settings from remote, using local copy: {e}")
            return LoadResult(items=[local_settings], remote_ok=False, error=str(e))
        if document is None:
            return LoadResult(items=[local_settings])
        merged = {**local_settings, **document.data}
        self.local.set(database.SETTINGS, merged)
        return LoadResult(items=[merged])

    def save_settings(self, values: dict) -> SaveResult:
        warnings = []
        remote_synced = False
        if self.remote_enabled:
            try:
                self.remote.set_document(database.SETTINGS, SETTINGS_DOCUMENT, values)
                remote_synced = True
            except RemoteStoreError as e:
                logger.error(f"Error saving settings to remote: {e}")
                warnings.append(f"Remote sync failed: {e}")
        self.local.set(database.SETTINGS, values)
        return SaveResult(success=True, record=values, remote_synced=remote_synced,
                          message="Settings saved.", warnings=warnings)
