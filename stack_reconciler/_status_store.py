"""JSON file-backed persistence for stack status."""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path

from stack_reconciler._errors import StackReconcileError
from stack_reconciler._models import StackStatus


class StatusStoreError(StackReconcileError):
    """Raised when persisted status cannot be read or written."""

    kind = "StatusStore"


def _split_identity(identity: str) -> tuple[str, str]:
    """Split ``namespace/name`` into its parts.

    Examples
    --------
    >>> _split_identity("default/dev")
    ('default', 'dev')
    """
    namespace, sep, name = identity.partition("/")
    if not sep or not namespace or not name or "/" in name:
        msg = f"stack identity must be namespace/name, got {identity!r}"
        raise StatusStoreError(msg)
    for part in (namespace, name):
        if part in {".", ".."} or part.startswith("."):
            msg = f"invalid stack identity {identity!r}"
            raise StatusStoreError(msg)
    return namespace, name


@dataclass(slots=True)
class StatusStore:
    """Store one JSON status document per stack under ``state_dir``.

    Examples
    --------
    >>> store = StatusStore(Path("state"))
    >>> store.get("default/dev")
    StackStatus(outputs={}, last_update=None)
    """

    state_dir: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def path_for(self, identity: str) -> Path:
        """Return the status file for ``identity``."""
        namespace, name = _split_identity(identity)
        return self.state_dir / namespace / f"{name}.json"

    def get(self, identity: str) -> StackStatus:
        """Load the status for ``identity``; empty when none was recorded."""
        path = self.path_for(identity)
        if not path.exists():
            return StackStatus()
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            msg = f"Failed to read status file {path}: {exc}"
            raise StatusStoreError(msg) from exc
        if not isinstance(payload, dict):
            msg = f"Status file {path} must contain a JSON object"
            raise StatusStoreError(msg)
        try:
            return StackStatus.from_mapping(payload)
        except (TypeError, ValueError) as exc:
            msg = f"Invalid status in {path}: {exc}"
            raise StatusStoreError(msg) from exc

    def put(self, identity: str, status: StackStatus) -> None:
        """Write ``status`` for ``identity`` atomically."""
        path = self.path_for(identity)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        payload = json.dumps(status.to_mapping(), indent=2, sort_keys=True)

        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
        except Exception:
            with suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise

        tmp_path.replace(path)
        os.chmod(path, 0o600)

    def update(
        self, identity: str, fn: Callable[[StackStatus], StackStatus]
    ) -> StackStatus:
        """Read, transform, and write the status for ``identity`` under the store lock."""
        with self._lock:
            status = fn(self.get(identity))
            self.put(identity, status)
            return status


__all__ = ["StatusStore", "StatusStoreError"]
