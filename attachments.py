"""Note attachment reconciliation.

``reconcile`` compares the attachment list submitted with a note against the
list currently stored on it, then writes, moves and deletes blobs so the
uploads directory holds exactly what the returned list references.
"""
import base64
import binascii
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Union

from blob_store import (
    BlobStore,
    BlobStoreError,
    DeleteStatus,
    is_temp_path,
    note_blob_path,
    note_dir_path,
    public_url,
    safe_extension,
)

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:(.+?);base64,(.+)$", re.DOTALL)


class AttachmentError(Exception):
    """Reconciliation could not complete; nothing after the failure was applied."""


class MalformedAttachmentError(AttachmentError):
    pass


# ==============================
# ATTACHMENT VARIANTS
# ==============================

@dataclass(frozen=True)
class PendingAttachment:
    """Staged upload waiting under ``temp/`` to be adopted by a note."""
    id: Optional[str]
    name: str
    type: Optional[str]
    size: Optional[int]
    temp_path: str


@dataclass(frozen=True)
class InlineAttachment:
    """Legacy transfer: the file arrived as a base64 data URL, decoded into ``payload``."""
    id: Optional[str]
    name: str
    type: Optional[str]
    size: Optional[int]
    payload: bytes


@dataclass(frozen=True)
class FinalAttachment:
    """Already stored under the note; passed through untouched."""
    record: Dict[str, Any]

    @property
    def id(self):
        return self.record.get("id")

    @property
    def storage_path(self):
        return self.record.get("storagePath")


Attachment = Union[PendingAttachment, InlineAttachment, FinalAttachment]


def _checked_path(storage_path, att_id) -> str:
    rel = PurePosixPath(str(storage_path).replace("\\", "/"))
    if rel.is_absolute() or ".." in rel.parts:
        raise MalformedAttachmentError(f"Attachment {att_id} has an invalid storage path: {storage_path}")
    return str(storage_path)


def _owned_by(note_id, storage_path) -> bool:
    rel = PurePosixPath(str(storage_path).replace("\\", "/"))
    return rel.parent == PurePosixPath(note_dir_path(note_id))


def parse_attachment(note_id, raw, existing_by_id: Mapping[str, Mapping]) -> Attachment:
    if not isinstance(raw, Mapping):
        raise MalformedAttachmentError("Attachment entry must be an object")
    att_id = raw.get("id") or None
    storage_path = raw.get("storagePath")
    if storage_path:
        storage_path = _checked_path(storage_path, att_id)
    name = raw.get("name") or ""
    mime = raw.get("type")
    size = raw.get("size")

    if raw.get("isTemp") or (storage_path and is_temp_path(storage_path)):
        if not storage_path:
            raise MalformedAttachmentError(f"Temporary attachment {att_id} has no storage path")
        if not is_temp_path(storage_path):
            raise MalformedAttachmentError(f"Temporary attachment {att_id} is not a staged upload")
        return PendingAttachment(att_id, name, mime, size, storage_path)
    if raw.get("dataUrl"):
        data_mime, payload = decode_data_url(raw["dataUrl"])
        return InlineAttachment(att_id, name, mime or data_mime, size, payload)
    # a stored record is only trusted inside this note's directory
    if storage_path and _owned_by(note_id, storage_path):
        return FinalAttachment(dict(raw))
    if att_id in existing_by_id:
        return FinalAttachment(dict(existing_by_id[att_id]))
    if storage_path:
        raise MalformedAttachmentError(f"Attachment {att_id} belongs to another note: {storage_path}")
    raise MalformedAttachmentError(f"Attachment {att_id} has no data and matches no stored attachment")


def decode_data_url(data_url: str):
    """Return ``(mime_type, bytes)`` for a ``data:<mime>;base64,<payload>`` string."""
    match = _DATA_URL.match(data_url or "")
    if not match:
        raise MalformedAttachmentError("Invalid attachment data URL")
    try:
        payload = base64.b64decode(match.group(2).strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedAttachmentError(f"Invalid attachment data URL: {e}") from e
    return match.group(1), payload


# ==============================
# RECONCILIATION
# ==============================

def _final_record(att_id, name, mime, size, storage_path) -> Dict[str, Any]:
    return {
        "id": att_id,
        "name": name,
        "type": mime,
        "size": size,
        "url": public_url(storage_path),
        "storagePath": storage_path,
    }


def _remove_blob(store: BlobStore, storage_path: Optional[str]) -> None:
    if not storage_path:
        return
    result = store.delete(storage_path)
    if result.status is DeleteStatus.FAILED:
        raise AttachmentError(f"Unable to delete attachment {storage_path}: {result.reason}")


def _replace_previous(note_id, store, existing_by_id, att_id) -> None:
    previous = existing_by_id.get(att_id) if att_id else None
    if previous and _owned_by(note_id, previous.get("storagePath") or ""):
        _remove_blob(store, previous.get("storagePath"))


def _adopt(note_id, att: PendingAttachment, existing_by_id, store: BlobStore) -> Dict[str, Any]:
    att_id = att.id or PurePosixPath(att.temp_path).stem or str(uuid.uuid4())
    if not store.exists(att.temp_path):
        raise AttachmentError(f"Uploaded file for attachment {att_id} is missing: {att.temp_path}")
    _replace_previous(note_id, store, existing_by_id, att_id)

    ext = safe_extension(att.name) or safe_extension(att.temp_path)
    storage_path = note_blob_path(note_id, f"{att_id}{ext}")
    try:
        store.move(att.temp_path, storage_path)
    except BlobStoreError as e:
        raise AttachmentError(str(e)) from e
    logger.debug("Adopted %s as %s", att.temp_path, storage_path)
    return _final_record(att_id, att.name, att.type, att.size, storage_path)


def _write_inline(note_id, att: InlineAttachment, existing_by_id, store: BlobStore) -> Dict[str, Any]:
    att_id = att.id or str(uuid.uuid4())
    _replace_previous(note_id, store, existing_by_id, att_id)

    storage_path = note_blob_path(note_id, f"{att_id}{safe_extension(att.name)}")
    try:
        store.write(storage_path, att.payload)
    except BlobStoreError as e:
        raise AttachmentError(str(e)) from e
    size = att.size if att.size is not None else len(att.payload)
    return _final_record(att_id, att.name, att.type, size, storage_path)


def reconcile(note_id, incoming, existing, store: BlobStore) -> List[Dict[str, Any]]:
    """Make blob storage for ``note_id`` match ``incoming`` and return the stored list.

    Entries are handled in input order. Every entry is parsed before any file
    is touched, so malformed input aborts without side effects. I/O failures
    abort midway; blobs written earlier in the same call are left in place.
    """
    existing = [a for a in (existing or []) if isinstance(a, Mapping)]
    existing_by_id = {a["id"]: a for a in existing if a.get("id")}
    parsed = [parse_attachment(note_id, raw, existing_by_id) for raw in (incoming or [])]

    result = []
    for att in parsed:
        if isinstance(att, PendingAttachment):
            result.append(_adopt(note_id, att, existing_by_id, store))
        elif isinstance(att, InlineAttachment):
            result.append(_write_inline(note_id, att, existing_by_id, store))
        elif isinstance(att, FinalAttachment):
            result.append(att.record)
        else:
            raise TypeError(f"Unhandled attachment variant: {att!r}")

    kept_ids = {a.get("id") for a in result}
    kept_paths = {a.get("storagePath") for a in result}
    for old in existing:
        if old.get("id") in kept_ids or old.get("storagePath") in kept_paths:
            continue
        if old.get("storagePath") and not _owned_by(note_id, old["storagePath"]):
            logger.warning("Not deleting %s: outside note %s", old["storagePath"], note_id)
            continue
        _remove_blob(store, old.get("storagePath"))
    return result


def delete_note_attachments(note_id, attachments, store: BlobStore) -> list:
    """Remove every blob of a deleted note. Failures are logged, never raised."""
    results = []
    for att in attachments or []:
        storage_path = att.get("storagePath") if isinstance(att, Mapping) else None
        if not storage_path:
            continue
        if not _owned_by(note_id, storage_path):
            logger.warning("Not deleting %s: outside note %s", storage_path, note_id)
            continue
        result = store.delete(storage_path)
        if result.status is DeleteStatus.FAILED:
            logger.warning("Leaving attachment %s of note %s behind: %s",
                           storage_path, note_id, result.reason)
        results.append(result)
    store.prune_dir(note_dir_path(note_id))
    return results
