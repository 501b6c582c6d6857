import enum
import logging
import os
import re
import shutil
import time
from collections import namedtuple
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

NOTES_DIR = "notes"
TEMP_DIR = "temp"


class BlobStoreError(Exception):
    pass


class DeleteStatus(enum.Enum):
    DELETED = "deleted"
    ALREADY_ABSENT = "already_absent"
    FAILED = "failed"


DeleteResult = namedtuple("DeleteResult", ["status", "path", "reason"])


# ==============================
# PATH HELPERS
# ==============================

def safe_extension(name: str) -> str:
    """Extension of ``name`` with anything outside [a-zA-Z0-9.] stripped."""
    ext = os.path.splitext(name or "")[1]
    return re.sub(r"[^a-zA-Z0-9.]", "", ext)


def note_blob_path(note_id, filename: str) -> str:
    return str(PurePosixPath(NOTES_DIR, str(note_id), filename))


def note_dir_path(note_id) -> str:
    return str(PurePosixPath(NOTES_DIR, str(note_id)))


def temp_blob_path(filename: str) -> str:
    return str(PurePosixPath(TEMP_DIR, filename))


def public_url(relative_path: str) -> str:
    return "/uploads/" + relative_path.replace("\\", "/").lstrip("/")


def is_temp_path(relative_path: str) -> bool:
    parts = PurePosixPath(relative_path.replace("\\", "/")).parts
    return len(parts) >= 2 and parts[0] == TEMP_DIR


# ==============================
# STORE
# ==============================

class BlobStore:
    """Files under a fixed uploads root, addressed by relative path.

    Two subtrees are used: ``notes/<noteId>/`` for permanent blobs and
    ``temp/`` for staged uploads. Parent directories are created on demand.
    """

    def __init__(self, root):
        self.root = Path(root)

    def resolve(self, relative_path: str) -> Path:
        if not relative_path:
            raise BlobStoreError("Empty storage path")
        rel = PurePosixPath(relative_path.replace("\\", "/"))
        if rel.is_absolute() or ".." in rel.parts:
            raise BlobStoreError(f"Storage path escapes uploads root: {relative_path}")
        return self.root.joinpath(*rel.parts)

    def exists(self, relative_path: str) -> bool:
        return self.resolve(relative_path).is_file()

    def write(self, relative_path: str, data: bytes) -> None:
        target = self.resolve(relative_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise BlobStoreError(f"Unable to write {relative_path}: {e}") from e

    def write_stream(self, relative_path: str, stream) -> int:
        """Copy a file-like object into the store; return the number of bytes written."""
        target = self.resolve(relative_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as out:
                shutil.copyfileobj(stream, out)
        except OSError as e:
            raise BlobStoreError(f"Unable to write {relative_path}: {e}") from e
        return target.stat().st_size

    def move(self, src: str, dst: str) -> None:
        source = self.resolve(src)
        target = self.resolve(dst)
        if not source.is_file():
            raise BlobStoreError(f"Blob not found: {src}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
        except OSError as e:
            raise BlobStoreError(f"Unable to move {src} to {dst}: {e}") from e

    def delete(self, relative_path: str) -> DeleteResult:
        try:
            self.resolve(relative_path).unlink()
        except FileNotFoundError:
            logger.warning("Attachment already absent: %s", relative_path)
            return DeleteResult(DeleteStatus.ALREADY_ABSENT, relative_path, None)
        except (OSError, BlobStoreError) as e:
            logger.error("Unable to delete attachment %s: %s", relative_path, e)
            return DeleteResult(DeleteStatus.FAILED, relative_path, str(e))
        return DeleteResult(DeleteStatus.DELETED, relative_path, None)

    def list_dir(self, relative_dir: str) -> list:
        directory = self.resolve(relative_dir)
        if not directory.is_dir():
            return []
        return sorted(
            str(PurePosixPath(relative_dir, p.name)) for p in directory.iterdir() if p.is_file()
        )

    def prune_dir(self, relative_dir: str) -> bool:
        """Remove ``relative_dir`` if it exists and is empty."""
        directory = self.resolve(relative_dir)
        try:
            directory.rmdir()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.debug("Not pruning %s: %s", relative_dir, e)
            return False
        return True

    def sweep_temp(self, max_age_seconds: float, now=None) -> list:
        """Delete staged uploads older than ``max_age_seconds``; return their paths."""
        now = now if now is not None else time.time()
        removed = []
        for rel in self.list_dir(TEMP_DIR):
            try:
                age = now - self.resolve(rel).stat().st_mtime
            except FileNotFoundError:
                continue
            if age < max_age_seconds:
                continue
            if self.delete(rel).status is DeleteStatus.DELETED:
                removed.append(rel)
        return removed
