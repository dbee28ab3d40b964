from __future__ import annotations

import json
import os
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from stagegate.errors import StateError
from stagegate.models import utcnow_iso


class StateStore:
    """Revisioned JSON documents under the state directory, one file per namespace."""

    NAMESPACES = {"executions", "checkpoints", "incidents", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.documents_dir = self.state_dir / "state"
        self.documents_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.documents_dir / ".lock"
        self._thread_lock = threading.RLock()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _document(self, namespace: str) -> Path:
        return self.documents_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        with self._thread_lock:
            start = time.monotonic()
            while True:
                try:
                    fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                    os.write(fd, str(os.getpid()).encode("utf-8"))
                    os.close(fd)
                    break
                except FileExistsError as exc:
                    if time.monotonic() - start > timeout_seconds:
                        raise StateError("Timed out waiting for state lock.") from exc
                    time.sleep(0.02)
            try:
                yield
            finally:
                try:
                    self.lock_file.unlink()
                except FileNotFoundError:
                    pass

    def _read_raw(self, namespace: str) -> Any:
        path = self._document(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw(self, namespace: str, envelope: dict[str, Any]) -> None:
        path = self._document(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        return self._normalize_envelope(
            self._read_raw(namespace), {} if default is None else default
        )

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace)
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_raw(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: StateError | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def _get_mapping(self, namespace: str) -> dict[str, Any]:
        payload = self.get_json(namespace, default={})
        return payload if isinstance(payload, dict) else {}

    def _put_item(self, namespace: str, key: str, item: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            mapping = payload if isinstance(payload, dict) else {}
            mapping[key] = item
            return mapping

        self.update_json(namespace, _updater, default={})

    def get_execution(self, execution_id: str) -> dict[str, Any] | None:
        item = self._get_mapping("executions").get(execution_id)
        return item if isinstance(item, dict) else None

    def put_execution(self, execution: dict[str, Any]) -> None:
        self._put_item("executions", str(execution["id"]), execution)

    def list_executions(self) -> list[dict[str, Any]]:
        items = [
            item for item in self._get_mapping("executions").values() if isinstance(item, dict)
        ]
        return sorted(items, key=lambda item: str(item.get("created_at", "")))

    def get_checkpoints(self) -> dict[str, dict[str, Any]]:
        return {
            key: value
            for key, value in self._get_mapping("checkpoints").items()
            if isinstance(value, dict)
        }

    def put_checkpoint(self, checkpoint: dict[str, Any]) -> None:
        self._put_item("checkpoints", str(checkpoint["id"]), checkpoint)

    def put_incident(self, incident: dict[str, Any]) -> None:
        self._put_item("incidents", str(incident["id"]), incident)

    def get_incidents(self) -> list[dict[str, Any]]:
        return [item for item in self._get_mapping("incidents").values() if isinstance(item, dict)]

    def get_metrics(self) -> dict[str, Any]:
        return self._get_mapping("metrics")

    def set_metrics(self, metrics: dict[str, Any]) -> None:
        self.set_json("metrics", metrics)
