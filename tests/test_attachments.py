import base64
import uuid

import pytest

from attachments import (
    AttachmentError,
    MalformedAttachmentError,
    decode_data_url,
    delete_note_attachments,
    reconcile,
)
from blob_store import BlobStore, DeleteResult, DeleteStatus, note_dir_path, public_url, temp_blob_path

NOTE_ID = 1


class RecordingStore(BlobStore):
    def __init__(self, root):
        super().__init__(root)
        self.calls = []

    def write(self, relative_path, data):
        self.calls.append(("write", relative_path))
        super().write(relative_path, data)

    def move(self, src, dst):
        self.calls.append(("move", src, dst))
        super().move(src, dst)

    def delete(self, relative_path):
        self.calls.append(("delete", relative_path))
        return super().delete(relative_path)


@pytest.fixture()
def store(tmp_path):
    return RecordingStore(tmp_path / "uploads")


def stage(store, name="photo.png", data=b"\x89PNG fake"):
    """Simulate the upload endpoint: a blob under temp/ plus its attachment record."""
    att_id = str(uuid.uuid4())
    ext = "." + name.rsplit(".", 1)[1] if "." in name else ""
    path = temp_blob_path(f"{att_id}{ext}")
    BlobStore.write(store, path, data)
    return {"id": att_id, "name": name, "type": "image/png", "size": len(data),
            "url": public_url(path), "storagePath": path, "isTemp": True}


def inline(name="note.txt", data=b"hello", mime="text/plain", att_id=None):
    record = {"name": name, "type": mime, "size": len(data),
              "dataUrl": f"data:{mime};base64," + base64.b64encode(data).decode()}
    if att_id:
        record["id"] = att_id
    return record


def note_files(store, note_id=NOTE_ID):
    return set(store.list_dir(note_dir_path(note_id)))


def stored_paths(attachments):
    return {a["storagePath"] for a in attachments}


def test_temp_upload_is_moved_into_note_directory(store):
    pending = stage(store, "receipt.png")

    result = reconcile(NOTE_ID, [pending], [], store)

    assert len(result) == 1
    att = result[0]
    assert att["id"] == pending["id"]
    assert att["storagePath"] == f"notes/{NOTE_ID}/{pending['id']}.png"
    assert att["url"] == f"/uploads/notes/{NOTE_ID}/{pending['id']}.png"
    assert "isTemp" not in att
    assert not store.exists(pending["storagePath"])
    assert store.exists(att["storagePath"])


def test_resaving_unchanged_list_touches_nothing(store):
    existing = reconcile(NOTE_ID, [stage(store), stage(store, "b.png")], [], store)
    store.calls.clear()

    result = reconcile(NOTE_ID, existing, existing, store)

    assert result == existing
    assert store.calls == []


def test_bare_reference_keeps_identifier_and_storage(store):
    existing = reconcile(NOTE_ID, [stage(store)], [], store)

    result = reconcile(NOTE_ID, [{"id": existing[0]["id"]}], existing, store)

    assert result == existing
    assert store.exists(existing[0]["storagePath"])


def test_inline_payload_is_written_as_blob(store):
    result = reconcile(NOTE_ID, [inline(att_id="abc")], [], store)

    assert result[0]["storagePath"] == f"notes/{NOTE_ID}/abc.txt"
    assert "dataUrl" not in result[0]
    assert store.resolve(result[0]["storagePath"]).read_bytes() == b"hello"


def test_inline_payload_without_id_gets_one(store):
    result = reconcile(NOTE_ID, [inline()], [], store)

    assert result[0]["id"]
    assert result[0]["size"] == 5


def test_blobs_match_references_after_every_save(store):
    first = reconcile(NOTE_ID, [stage(store, "a.png"), stage(store, "b.png")], [], store)
    assert note_files(store) == stored_paths(first)

    second = reconcile(NOTE_ID, [first[1], inline(att_id="c")], first, store)
    assert note_files(store) == stored_paths(second)
    assert not store.exists(first[0]["storagePath"])

    replacement = stage(store, "b.jpg")
    replacement["id"] = second[0]["id"]
    third = reconcile(NOTE_ID, [replacement, second[1]], second, store)
    assert note_files(store) == stored_paths(third)
    assert third[0]["storagePath"].endswith(".jpg")

    fourth = reconcile(NOTE_ID, [], third, store)
    assert fourth == []
    assert note_files(store) == set()


def test_output_follows_input_order(store):
    a, b = stage(store, "a.png"), stage(store, "b.png")
    existing = reconcile(NOTE_ID, [a, b], [], store)

    result = reconcile(NOTE_ID, [existing[1], inline(att_id="z"), existing[0]], existing, store)

    assert [r["id"] for r in result] == [b["id"], "z", a["id"]]


def test_finalized_record_passes_through_without_existing_match(store):
    record = {"id": "x", "name": "x.pdf", "type": "application/pdf", "size": 3,
              "url": "/uploads/notes/1/x.pdf", "storagePath": "notes/1/x.pdf"}

    assert reconcile(NOTE_ID, [record], [], store) == [record]
    assert store.calls == []


def test_missing_temp_file_aborts(store):
    pending = stage(store)
    store.resolve(pending["storagePath"]).unlink()

    with pytest.raises(AttachmentError):
        reconcile(NOTE_ID, [pending], [], store)


def test_earlier_blobs_survive_a_later_failure(store):
    missing = stage(store)
    store.resolve(missing["storagePath"]).unlink()

    with pytest.raises(AttachmentError):
        reconcile(NOTE_ID, [inline(att_id="first"), missing], [], store)

    assert store.exists(f"notes/{NOTE_ID}/first.txt")


def test_malformed_data_url_fails_before_any_write(store):
    bad = {"id": "bad", "name": "x.txt", "dataUrl": "not-a-data-url"}

    with pytest.raises(MalformedAttachmentError):
        reconcile(NOTE_ID, [inline(att_id="ok"), bad], [], store)

    assert store.calls == []


def test_reference_to_unknown_attachment_is_malformed(store):
    with pytest.raises(MalformedAttachmentError):
        reconcile(NOTE_ID, [{"id": "ghost", "name": "ghost.png"}], [], store)


def test_record_from_another_note_is_rejected(store):
    theirs = reconcile(2, [stage(store)], [], store)

    with pytest.raises(MalformedAttachmentError, match="another note"):
        reconcile(NOTE_ID, theirs, [], store)

    assert store.exists(theirs[0]["storagePath"])
    assert note_files(store) == set()


def test_foreign_path_on_known_id_resolves_to_stored_record(store):
    existing = reconcile(NOTE_ID, [stage(store)], [], store)
    tampered = dict(existing[0], storagePath="notes/2/elsewhere.png")

    assert reconcile(NOTE_ID, [tampered], existing, store) == existing


def test_cleanup_never_deletes_outside_the_note(store):
    theirs = reconcile(2, [stage(store)], [], store)

    assert reconcile(NOTE_ID, [], theirs, store) == []
    assert delete_note_attachments(NOTE_ID, theirs, store) == []
    assert store.exists(theirs[0]["storagePath"])


@pytest.mark.parametrize("path", ["temp/../../x.png", "/temp/x.png", "notes/1/../../x.png"])
def test_escaping_storage_path_is_malformed(store, path):
    with pytest.raises(MalformedAttachmentError, match="invalid storage path"):
        reconcile(NOTE_ID, [{"id": "x", "name": "x.png", "storagePath": path, "isTemp": True}], [], store)

    assert store.calls == []


def test_already_absent_blob_is_tolerated_during_cleanup(store):
    existing = reconcile(NOTE_ID, [stage(store)], [], store)
    store.resolve(existing[0]["storagePath"]).unlink()

    assert reconcile(NOTE_ID, [], existing, store) == []


def test_failed_delete_propagates(store, monkeypatch):
    existing = reconcile(NOTE_ID, [stage(store)], [], store)
    monkeypatch.setattr(store, "delete",
                        lambda path: DeleteResult(DeleteStatus.FAILED, path, "permission denied"))

    with pytest.raises(AttachmentError, match="permission denied"):
        reconcile(NOTE_ID, [], existing, store)


def test_decode_data_url():
    assert decode_data_url("data:text/plain;base64,aGk=") == ("text/plain", b"hi")
    with pytest.raises(MalformedAttachmentError):
        decode_data_url("data:text/plain;base64,@@@")


def test_delete_note_attachments_removes_everything(store):
    attachments = reconcile(NOTE_ID, [stage(store), stage(store), inline(att_id="c")], [], store)
    store.resolve(attachments[1]["storagePath"]).unlink()

    results = delete_note_attachments(NOTE_ID, attachments, store)

    assert [r.status for r in results] == [
        DeleteStatus.DELETED, DeleteStatus.ALREADY_ABSENT, DeleteStatus.DELETED,
    ]
    assert not (store.root / "notes" / str(NOTE_ID)).exists()
