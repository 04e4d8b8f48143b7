"""
Catalog storage for artwork records and upload jobs.

This module owns the SQLite database: schema setup, artwork CRUD,
atomic engagement counters, and persistence of in-flight upload jobs.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .config import Settings
from .models.schemas import Artwork, UploadJob, UploadJobStatus

logger = logging.getLogger(__name__)

COUNTER_COLUMNS = ("views", "likes", "bookmarks")


class StorageError(Exception):
    """Storage related errors."""


class DuplicateHashError(StorageError):
    """A live artwork with the same content digest already exists."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CatalogRepository:
    """
    Persistent store of artwork records.

    Exclusive owner of record lifecycle and counter mutations. Each
    operation opens its own connection, so one repository can be shared
    by concurrent requests.
    """

    def __init__(self, settings: Settings):
        """
        Initialize catalog repository.

        Args:
            settings: Application settings

        Raises:
            StorageError: If initialization fails
        """
        assert settings is not None, "Settings object is required"

        self.settings = settings
        self.db_path = Path(settings.database_path)

        self._setup_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _setup_database(self) -> None:
        """Setup SQLite database and tables."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS artworks (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        file_id TEXT NOT NULL,
                        url TEXT NOT NULL,
                        thumbnail_url TEXT NOT NULL DEFAULT '',
                        hash TEXT NOT NULL,
                        phash INTEGER NOT NULL DEFAULT 0,
                        views INTEGER NOT NULL DEFAULT 0 CHECK (views >= 0),
                        likes INTEGER NOT NULL DEFAULT 0 CHECK (likes >= 0),
                        bookmarks INTEGER NOT NULL DEFAULT 0
                            CHECK (bookmarks >= 0),
                        tags TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        deleted_at TEXT
                    )
                """
                )

                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS upload_jobs (
                        id TEXT PRIMARY KEY,
                        hash TEXT NOT NULL,
                        phash INTEGER NOT NULL DEFAULT 0,
                        filename TEXT NOT NULL,
                        file_id TEXT NOT NULL,
                        job_id TEXT NOT NULL,
                        status_url TEXT NOT NULL DEFAULT '',
                        status TEXT NOT NULL,
                        error TEXT,
                        created_at TEXT NOT NULL,
                        last_checked_at TEXT NOT NULL
                    )
                """
                )

                # Content digest is unique among live records only
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_artworks_hash
                    ON artworks (hash) WHERE deleted_at IS NULL
                """
                )

                conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_artworks_phash
                    ON artworks (phash)
                """
                )

                conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_artworks_created_at
                    ON artworks (created_at)
                """
                )

                conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_upload_jobs_status
                    ON upload_jobs (status)
                """
                )

                conn.commit()

            logger.info(f"Database initialized: {self.db_path}")

        except Exception as e:
            error_msg = f"Failed to setup database: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def _create_artwork_from_row(self, row: sqlite3.Row) -> Artwork:
        """
        Create Artwork instance from database row.

        Args:
            row: Database row containing artwork columns

        Returns:
            Artwork instance
        """
        tags = json.loads(row["tags"]) if row["tags"] else []
        return Artwork(
            id=row["id"],
            file_id=row["file_id"],
            url=row["url"],
            thumbnail_url=row["thumbnail_url"],
            hash=row["hash"],
            phash=row["phash"],
            views=row["views"],
            likes=row["likes"],
            bookmarks=row["bookmarks"],
            tags=tags or [],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            deleted_at=(
                datetime.fromisoformat(row["deleted_at"])
                if row["deleted_at"]
                else None
            ),
        )

    # ========================================
    # ARTWORKS
    # ========================================

    def create_artwork(
        self,
        file_id: str,
        url: str,
        hash: str,
        phash: int = 0,
        thumbnail_url: str = "",
        tags: Optional[List[str]] = None,
    ) -> Artwork:
        """
        Insert a new artwork record.

        Args:
            file_id: Remote file identifier
            url: Public access URL
            hash: SHA-256 content digest
            phash: Perceptual digest (0 when not computed)
            thumbnail_url: Thumbnail URL
            tags: Optional tags list

        Returns:
            Created artwork

        Raises:
            DuplicateHashError: If a live record already has this digest
            StorageError: If the insert fails for any other reason
        """
        assert file_id, "File ID is required"
        assert hash, "Content digest is required"

        now = _utcnow().isoformat()
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO artworks (
                        file_id, url, thumbnail_url, hash, phash,
                        tags, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        file_id,
                        url,
                        thumbnail_url,
                        hash,
                        phash,
                        json.dumps(tags or []),
                        now,
                        now,
                    ),
                )
                artwork_id = cursor.lastrowid
                conn.commit()

        except sqlite3.IntegrityError as e:
            if "artworks.hash" in str(e):
                raise DuplicateHashError(
                    f"Artwork with hash {hash} already exists"
                ) from e
            raise StorageError(f"Database integrity error: {e}") from e
        except sqlite3.Error as e:
            error_msg = f"Failed to create artwork: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

        artwork = self.get_artwork(artwork_id)
        if artwork is None:
            raise StorageError("Failed to retrieve created artwork")

        logger.info(f"Created artwork {artwork.id} (file {file_id})")
        return artwork

    def get_artwork(self, artwork_id: int) -> Optional[Artwork]:
        """
        Get a live artwork by ID.

        Returns:
            Artwork or None if not found or soft-deleted
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM artworks WHERE id = ? AND deleted_at IS NULL",
                    (artwork_id,),
                ).fetchone()
                return self._create_artwork_from_row(row) if row else None

        except sqlite3.Error as e:
            error_msg = f"Failed to get artwork {artwork_id}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def get_by_hash(self, digest: str) -> Optional[Artwork]:
        """Get the live artwork carrying a content digest, if any."""
        assert digest, "Content digest is required"

        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM artworks "
                    "WHERE hash = ? AND deleted_at IS NULL",
                    (digest,),
                ).fetchone()
                return self._create_artwork_from_row(row) if row else None

        except sqlite3.Error as e:
            error_msg = f"Failed to look up hash: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def get_all_with_phash(self) -> List[Artwork]:
        """All live artworks carrying a non-zero perceptual digest."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM artworks "
                    "WHERE phash != 0 AND deleted_at IS NULL ORDER BY id"
                ).fetchall()
                return [self._create_artwork_from_row(row) for row in rows]

        except sqlite3.Error as e:
            error_msg = f"Failed to load perceptual digests: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    @staticmethod
    def _tag_filter(tags: Optional[Iterable[str]]) -> Tuple[str, list]:
        conditions = ["deleted_at IS NULL"]
        params: list = []
        for tag in tags or []:
            pattern = json.dumps(tag)
            for char in ("\\", "%", "_"):
                pattern = pattern.replace(char, "\\" + char)
            conditions.append("tags LIKE ? ESCAPE '\\'")
            params.append(f"%{pattern}%")
        return " WHERE " + " AND ".join(conditions), params

    def list_artworks(
        self,
        page: int = 1,
        page_size: int = 20,
        tags: Optional[List[str]] = None,
    ) -> Tuple[List[Artwork], int]:
        """
        List live artworks, newest first.

        Args:
            page: 1-based page number
            page_size: Results per page
            tags: Only artworks carrying all of these tags

        Returns:
            Tuple of (page of artworks, total count)
        """
        assert page >= 1, f"Invalid page: {page}"
        assert page_size >= 1, f"Invalid page_size: {page_size}"

        where_clause, params = self._tag_filter(tags)
        offset = (page - 1) * page_size

        try:
            with self._connect() as conn:
                total = conn.execute(
                    f"SELECT COUNT(*) FROM artworks{where_clause}", params
                ).fetchone()[0]

                rows = conn.execute(
                    f"SELECT * FROM artworks{where_clause} "
                    f"ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                    params + [page_size, offset],
                ).fetchall()

                return [self._create_artwork_from_row(r) for r in rows], total

        except sqlite3.Error as e:
            error_msg = f"Failed to list artworks: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def random_artworks(
        self, limit: int = 10, tags: Optional[List[str]] = None
    ) -> List[Artwork]:
        """Random sample of live artworks."""
        assert limit >= 1, f"Invalid limit: {limit}"

        where_clause, params = self._tag_filter(tags)
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM artworks{where_clause} "
                    f"ORDER BY RANDOM() LIMIT ?",
                    params + [limit],
                ).fetchall()
                return [self._create_artwork_from_row(r) for r in rows]

        except sqlite3.Error as e:
            error_msg = f"Failed to sample artworks: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def update_artwork(
        self,
        artwork_id: int,
        url: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Optional[Artwork]:
        """
        Update artwork fields.

        Args:
            artwork_id: Artwork identifier
            url: New URL (None to keep existing)
            thumbnail_url: New thumbnail URL (None to keep existing)
            tags: New tags list (None to keep existing)

        Returns:
            Updated artwork, None if not found
        """
        update_fields = []
        params: list = []

        if url is not None:
            update_fields.append("url = ?")
            params.append(url)

        if thumbnail_url is not None:
            update_fields.append("thumbnail_url = ?")
            params.append(thumbnail_url)

        if tags is not None:
            update_fields.append("tags = ?")
            params.append(json.dumps(tags))

        if not update_fields:
            return self.get_artwork(artwork_id)

        update_fields.append("updated_at = ?")
        params.append(_utcnow().isoformat())
        params.append(artwork_id)

        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE artworks SET {', '.join(update_fields)} "
                    f"WHERE id = ? AND deleted_at IS NULL",
                    params,
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None

        except sqlite3.Error as e:
            error_msg = f"Failed to update artwork {artwork_id}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

        return self.get_artwork(artwork_id)

    def soft_delete_artwork(self, artwork_id: int) -> bool:
        """
        Mark an artwork as deleted.

        Returns:
            True if deleted, False if not found
        """
        now = _utcnow().isoformat()
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE artworks SET deleted_at = ?, updated_at = ? "
                    "WHERE id = ? AND deleted_at IS NULL",
                    (now, now, artwork_id),
                )
                conn.commit()
                deleted = cursor.rowcount > 0

        except sqlite3.Error as e:
            error_msg = f"Failed to delete artwork {artwork_id}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

        if deleted:
            logger.info(f"Deleted artwork: {artwork_id}")
        return deleted

    def count_artworks(self) -> int:
        """Number of live artworks."""
        try:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT COUNT(*) FROM artworks WHERE deleted_at IS NULL"
                ).fetchone()[0]

        except sqlite3.Error as e:
            raise StorageError(f"Failed to count artworks: {e}") from e

    # ========================================
    # COUNTERS
    # ========================================

    def _change_counter(self, artwork_id: int, column: str, delta: int) -> bool:
        """
        Apply a counter change in a single UPDATE statement.

        Decrements clamp at zero inside the database.
        """
        assert column in COUNTER_COLUMNS, f"Invalid counter: {column}"
        assert delta in (1, -1), f"Invalid delta: {delta}"

        if delta > 0:
            expression = f"{column} + 1"
        else:
            expression = f"CASE WHEN {column} > 0 THEN {column} - 1 ELSE 0 END"

        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE artworks SET {column} = {expression} "
                    f"WHERE id = ? AND deleted_at IS NULL",
                    (artwork_id,),
                )
                conn.commit()
                return cursor.rowcount > 0

        except sqlite3.Error as e:
            error_msg = f"Failed to update {column} for {artwork_id}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def increment_views(self, artwork_id: int) -> bool:
        return self._change_counter(artwork_id, "views", 1)

    def increment_likes(self, artwork_id: int) -> bool:
        return self._change_counter(artwork_id, "likes", 1)

    def decrement_likes(self, artwork_id: int) -> bool:
        return self._change_counter(artwork_id, "likes", -1)

    def increment_bookmarks(self, artwork_id: int) -> bool:
        return self._change_counter(artwork_id, "bookmarks", 1)

    def decrement_bookmarks(self, artwork_id: int) -> bool:
        return self._change_counter(artwork_id, "bookmarks", -1)

    # ========================================
    # UPLOAD JOBS
    # ========================================

    def _create_upload_job_from_row(self, row: sqlite3.Row) -> UploadJob:
        return UploadJob(
            id=row["id"],
            hash=row["hash"],
            phash=row["phash"],
            filename=row["filename"],
            file_id=row["file_id"],
            job_id=row["job_id"],
            status_url=row["status_url"],
            status=UploadJobStatus(row["status"]),
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_checked_at=datetime.fromisoformat(row["last_checked_at"]),
        )

    def create_upload_job(self, job: UploadJob) -> UploadJob:
        """Persist a freshly delegated upload."""
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO upload_jobs (
                        id, hash, phash, filename, file_id, job_id,
                        status_url, status, error, created_at, last_checked_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        job.id,
                        job.hash,
                        job.phash,
                        job.filename,
                        job.file_id,
                        job.job_id,
                        job.status_url,
                        job.status.value,
                        job.error,
                        job.created_at.isoformat(),
                        job.last_checked_at.isoformat(),
                    ),
                )
                conn.commit()

        except sqlite3.Error as e:
            error_msg = f"Failed to save upload job {job.id}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

        return job

    def update_upload_job_status(
        self,
        job_id: str,
        status: UploadJobStatus,
        error: Optional[str] = None,
    ) -> bool:
        """Record a status check result for an upload job."""
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE upload_jobs "
                    "SET status = ?, error = ?, last_checked_at = ? WHERE id = ?",
                    (status.value, error, _utcnow().isoformat(), job_id),
                )
                conn.commit()
                return cursor.rowcount > 0

        except sqlite3.Error as e:
            error_msg = f"Failed to update upload job {job_id}: {e}"
            logger.error(error_msg)
            raise StorageError(error_msg) from e

    def get_upload_job(self, job_id: str) -> Optional[UploadJob]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM upload_jobs WHERE id = ?", (job_id,)
                ).fetchone()
                return self._create_upload_job_from_row(row) if row else None

        except sqlite3.Error as e:
            raise StorageError(f"Failed to get upload job {job_id}: {e}") from e

    def list_upload_jobs(
        self, statuses: Optional[Iterable[UploadJobStatus]] = None
    ) -> List[UploadJob]:
        """Upload jobs, oldest first, optionally filtered by status."""
        query = "SELECT * FROM upload_jobs"
        params: list = []
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            query += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at"

        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
                return [self._create_upload_job_from_row(r) for r in rows]

        except sqlite3.Error as e:
            raise StorageError(f"Failed to list upload jobs: {e}") from e

    def delete_upload_job(self, job_id: str) -> bool:
        """Discard an upload job once its artwork exists."""
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM upload_jobs WHERE id = ?", (job_id,)
                )
                conn.commit()
                return cursor.rowcount > 0

        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete upload job {job_id}: {e}") from e
