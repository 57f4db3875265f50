"""Deterministic artifact identifiers.

An artifact staged for a content hash is registered under ``md5(hash)`` so the
same input produces the same identifier regardless of machine, store root or
run. Re-keying a registered artifact goes through an eviction: the store only
reads identifiers when an artifact is (re)imported.
"""

from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .content.paths import AssetLocation
from .errors import ConversionError, ErrorCode, IdentityError
from .logging import get_logger
from .store.artifacts import FileArtifactStore, render_sidecar

__all__ = ["cid_to_guid", "derived_guid", "IdentityNormalizer"]

_GUID_LINE = re.compile(r"^guid: \w+$", re.MULTILINE)


def cid_to_guid(content_hash: str) -> str:
    return hashlib.md5(content_hash.encode("utf-8")).hexdigest()


def derived_guid(content_hash: str, relative: str) -> str:
    """Identifier of an artifact extracted from the content ``content_hash``."""
    return cid_to_guid(f"{content_hash}/{relative}")


@contextmanager
def _scratch_copy(source: Path) -> Iterator[Path]:
    fd, name = tempfile.mkstemp(prefix="bundlegen-", suffix=source.suffix)
    os.close(fd)
    scratch = Path(name)
    try:
        shutil.copyfile(source, scratch)
        yield scratch
    finally:
        scratch.unlink(missing_ok=True)


class IdentityNormalizer:
    def __init__(self, store: FileArtifactStore) -> None:
        self.store = store
        self.evictions = 0

    def _fail(self, location: AssetLocation, message: str) -> IdentityError:
        return IdentityError(
            code=ErrorCode.UNEXPECTED_ERROR,
            message=message,
            context={"hash": location.hash, "path": str(location.final_path)},
        )

    def normalize(self, location: AssetLocation) -> str:
        """Re-key the artifact at ``location`` to ``cid_to_guid(hash)``."""
        target = cid_to_guid(location.hash)
        path = location.final_path
        store = self.store
        try:
            store.save_all()
            record = store.load_at_path(path)
            if record is None:
                record = store.import_at_path(path)
            if record.guid == target:
                return target
            sidecar = store.get_sidecar_path_for(path)
            if sidecar.exists():
                text, count = _GUID_LINE.subn(
                    f"guid: {target}", sidecar.read_text(encoding="utf-8"), count=1
                )
            else:
                count = 0
            if count == 0:
                text = render_sidecar(target, record.bundle, list(record.references))
            get_logger("identity").debug(
                "evicting %s (%s -> %s)", location, record.guid, target
            )
            with _scratch_copy(path) as scratch:
                store.delete_at_path(path)
                store.refresh()
                shutil.copyfile(scratch, path)
                sidecar.write_text(text, encoding="utf-8")
            store.refresh()
            store.save_all()
            self.evictions += 1
        except ConversionError:
            raise
        except (OSError, RuntimeError) as exc:
            raise self._fail(location, f"Identity eviction failed: {exc}") from exc
        actual = store.guid_for(path)
        if actual != target:
            raise self._fail(
                location,
                f"Identifier mismatch after eviction: expected {target}, got {actual}",
            )
        return target
