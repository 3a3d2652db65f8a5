"""Video record store consumed by the job handlers.

The orchestration core reads videos by id and updates them field by field;
each call is atomic at row granularity. ``SQLiteVideoStore`` is the local
implementation; any relational store can sit behind ``VideoStore``.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import VideoNotFound
from .models import UserSettings, Video, VideoStatus
from .queue.models import utc_now
from .sqlite import ThreadLocalSQLite
from .state import validate_video_transition

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    status TEXT NOT NULL,
    video_url TEXT,
    generated_at TEXT,
    posted_at TEXT,
    instagram_post_id TEXT,
    instagram_permalink TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_videos_user ON videos(user_id, status);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT PRIMARY KEY,
    default_caption TEXT,
    default_hashtags TEXT
);
"""

_DATETIME_FIELDS = ("generated_at", "posted_at", "updated_at")


class VideoStore(ABC):
    """Key-addressed persistence for video rows and per-user settings."""

    @abstractmethod
    def get_video(self, video_id: str) -> Optional[Video]:
        """Read a video by id (None if missing)."""

    @abstractmethod
    def transition(self, video_id: str, status: VideoStatus, **fields: Any) -> Video:
        """Atomically validate and apply a status change plus extra fields.

        Raises:
            VideoNotFound: If the video does not exist
            InvalidTransition: If the lifecycle forbids the change
        """

    @abstractmethod
    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        """Publishing defaults for a user (None if never saved)."""


class SQLiteVideoStore(ThreadLocalSQLite, VideoStore):
    """SQLite-backed record store sharing the queue's database file."""

    def __init__(self, db_path: str, busy_timeout_s: float = 5.0):
        super().__init__(db_path, busy_timeout_s=busy_timeout_s)
        self._with_retry(lambda: self.db.executescript(SCHEMA_SQL))

    def create_video(self, video: Video) -> Video:
        """Insert a new video row.

        Raises:
            ValueError: If a video with the same id already exists
        """
        row = _to_row(video.model_dump())
        row["updated_at"] = row.get("updated_at") or utc_now().isoformat()

        def op():
            try:
                self.db["videos"].insert(row, pk="id")
            except sqlite3.IntegrityError:
                raise ValueError(f"Video {video.id} already exists") from None

        self._with_retry(op)
        return self.get_video(video.id)

    def get_video(self, video_id: str) -> Optional[Video]:
        def op():
            rows = list(self.db["videos"].rows_where("id = ?", [video_id]))
            return rows[0] if rows else None

        row = self._with_retry(op)
        return Video(**row) if row else None

    def transition(self, video_id: str, status: VideoStatus, **fields: Any) -> Video:
        status = VideoStatus(status)
        updates = _to_row({**fields, "status": status})
        updates["updated_at"] = utc_now().isoformat()

        def op():
            with self._transaction() as conn:
                row = conn.execute("SELECT status FROM videos WHERE id = ?", (video_id,)).fetchone()
                if row is None:
                    raise VideoNotFound(f"Video {video_id} not found")
                validate_video_transition(video_id, VideoStatus(row[0]), status)
                assignments = ", ".join(f"{key} = :{key}" for key in updates)
                conn.execute(
                    f"UPDATE videos SET {assignments} WHERE id = :video_id",
                    {**updates, "video_id": video_id},
                )
                return row[0]

        previous = self._with_retry(op)
        if previous != status.value:
            logger.info("Video %s: %s -> %s", video_id, previous, status.value)
        return self.get_video(video_id)

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        def op():
            rows = list(self.db["user_settings"].rows_where("user_id = ?", [user_id]))
            return rows[0] if rows else None

        row = self._with_retry(op)
        if not row:
            return None
        return UserSettings(
            user_id=row["user_id"],
            default_caption=row["default_caption"],
            default_hashtags=json.loads(row["default_hashtags"]) if row["default_hashtags"] else [],
        )

    def save_user_settings(self, settings: UserSettings) -> None:
        row = {
            "user_id": settings.user_id,
            "default_caption": settings.default_caption,
            "default_hashtags": json.dumps(settings.default_hashtags),
        }
        self._with_retry(lambda: self.db["user_settings"].insert(row, pk="user_id", replace=True))


def _to_row(data: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize enums and datetimes for storage."""
    row = {}
    for key, value in data.items():
        if isinstance(value, VideoStatus):
            value = value.value
        elif key in _DATETIME_FIELDS and isinstance(value, datetime):
            value = value.isoformat()
        row[key] = value
    return row
