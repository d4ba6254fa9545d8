"""Versioned generated documents and the single "current" artifact."""

from __future__ import annotations

import logging
import threading

from .models import Artifact, ChangeEvent, ContentType
from .store import Store

logger = logging.getLogger(__name__)


class ArtifactShelf:
    def __init__(
        self,
        store: Store,
        *,
        project_id: str | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self._store = store
        self.project_id = project_id
        self.conversation_id = conversation_id
        self._current_id: str | None = None
        # Serializes read-then-bump so concurrent updates never reuse a version.
        self._write_lock = threading.Lock()
        self._unsubscribe = store.subscribe("artifacts", self._on_change)

    def list_artifacts(self) -> list[Artifact]:
        rows = self._store.select(
            "artifacts", filters=self._scope(), order_by="updated_at", descending=True
        )
        return [Artifact.model_validate(row) for row in rows]

    def get(self, artifact_id: str) -> Artifact | None:
        for artifact in self.list_artifacts():
            if artifact.id == artifact_id:
                return artifact
        return None

    def create(self, title: str, content: str, content_type: ContentType = "markdown") -> Artifact:
        artifact = Artifact.model_validate(
            self._store.insert_one(
                "artifacts",
                {
                    "project_id": self.project_id,
                    "conversation_id": self.conversation_id,
                    "title": title,
                    "content": content,
                    "content_type": content_type,
                    "version": 1,
                },
            )
        )
        self._current_id = artifact.id
        return artifact

    def update(
        self,
        artifact_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
    ) -> Artifact:
        """Write changes and bump the version by exactly one."""
        with self._write_lock:
            current = self.get(artifact_id)
            if current is None:
                raise KeyError(f"Artifact {artifact_id} does not exist")
            changes: dict[str, object] = {"version": current.version + 1}
            if title is not None:
                changes["title"] = title
            if content is not None:
                changes["content"] = content
            artifact = Artifact.model_validate(
                self._store.update_by_id("artifacts", artifact_id, changes)
            )
        self._current_id = artifact.id
        logger.info("artifacts event=updated artifact_id=%s version=%d", artifact.id, artifact.version)
        return artifact

    def select(self, artifact_id: str) -> Artifact:
        artifact = self.get(artifact_id)
        if artifact is None:
            raise KeyError(f"Artifact {artifact_id} does not exist")
        self._current_id = artifact.id
        return artifact

    def current(self) -> Artifact | None:
        artifacts = self.list_artifacts()
        for artifact in artifacts:
            if artifact.id == self._current_id:
                return artifact
        return artifacts[0] if artifacts else None

    def close(self) -> None:
        self._unsubscribe()

    def _on_change(self, change: ChangeEvent) -> None:
        # Pushed inserts and updates take the view, deletes release it.
        if change.event_type == "DELETE":
            if (change.old or {}).get("id") == self._current_id:
                self._current_id = None
            return
        row = change.new or {}
        if self.project_id and row.get("project_id") != self.project_id:
            return
        self._current_id = row.get("id")

    def _scope(self) -> dict[str, str]:
        return {"project_id": self.project_id} if self.project_id else {}
