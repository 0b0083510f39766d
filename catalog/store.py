"""
catalog/store.py -- SQLAlchemy Core persistence for libraries and media.

Uses SQLAlchemy Core (not ORM) so the dataclasses in catalog/models.py remain
the authoritative domain representation.

Pattern: Repository + Data Mapper. CatalogStore is the repository; the
_row_to_* functions are the mappers.

Writes go through the shared Database.write() (see core/database.py), so
scanner inserts and account changes are serialized by the same permit.
add_media() is the insert-or-get path: scanners racing on the same title in
the same library all get back the one surviving row's id.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    catalog = CatalogStore(db)
    lib_id = catalog.create_library(Library(name="Movies", location="/media/movies", media_type=MediaKind.MOVIE))
    media_id = catalog.add_media(Media(library_id=lib_id, name="Heat", media_type=MediaKind.MOVIE))
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Connection

from catalog.models import InsertStrategy, Library, Media, MediaKind, strategy_for
from core.database import Database, insert_or_get
from core.errors import NotFound

logger = logging.getLogger("dim.catalog")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_library = Table(
    "library",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("location", Text, nullable=False),
    Column("media_type", String(20), nullable=False),
)

_media = Table(
    "media",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("library_id", Integer, ForeignKey("library.id"), nullable=False),
    Column("name", Text, nullable=False),
    Column("description", Text),
    Column("rating", Integer),
    Column("year", Integer),
    Column("added", String(32), nullable=False),
    Column("poster_path", Text),
    Column("backdrop_path", Text),
    Column("media_type", String(20), nullable=False),
)

# Marker table: a row here means "this media can be played".
_streamable = Table(
    "streamable_media",
    metadata,
    Column("id", Integer, ForeignKey("media.id"), primary_key=True),
)

_movies = Table("movies", metadata, Column("id", Integer, ForeignKey("media.id"), primary_key=True))
_episodes = Table("episodes", metadata, Column("id", Integer, ForeignKey("media.id"), primary_key=True))
_tv_shows = Table("tv_shows", metadata, Column("id", Integer, ForeignKey("media.id"), primary_key=True))

_KIND_TABLES: dict[MediaKind, Table] = {
    MediaKind.MOVIE: _movies,
    MediaKind.EPISODE: _episodes,
    MediaKind.TV: _tv_shows,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_row(conn: Connection, table: Table, row_id: int) -> int:
    return insert_or_get(conn, select(table.c.id).where(table.c.id == row_id), table.insert().values(id=row_id))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CatalogStore:
    def __init__(self, db: Database) -> None:
        self.db = db
        metadata.create_all(db.engine)

    # ------------------------------------------------------------------
    # Libraries
    # ------------------------------------------------------------------

    def create_library(self, library: Library) -> int:
        """Insert a new library and return its id."""

        def _insert(conn: Connection) -> int:
            result = conn.execute(
                _library.insert().values(
                    name=library.name,
                    location=library.location,
                    media_type=MediaKind(library.media_type).value,
                )
            )
            return result.inserted_primary_key[0]

        return self.db.write(_insert)

    def get_library(self, library_id: int) -> Optional[Library]:
        with self.db.read() as conn:
            row = conn.execute(_library.select().where(_library.c.id == library_id)).fetchone()
        return _row_to_library(row) if row is not None else None

    def delete_library(self, library_id: int) -> bool:
        """Delete a library and every media row in it. Returns False if it did not exist."""

        def _delete(conn: Connection) -> bool:
            media_ids = select(_media.c.id).where(_media.c.library_id == library_id)
            for table in (_streamable, *_KIND_TABLES.values()):
                conn.execute(table.delete().where(table.c.id.in_(media_ids)))
            conn.execute(_media.delete().where(_media.c.library_id == library_id))
            result = conn.execute(_library.delete().where(_library.c.id == library_id))
            return result.rowcount > 0

        deleted = self.db.write(_delete)
        if deleted:
            logger.info("Library %d deleted with its media", library_id)
        return deleted

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def add_media(self, media: Media) -> int:
        """Insert media unless (library_id, name) already exists; return the row id.

        Concurrent callers with the same natural key converge on one row.
        Raises NotFound if the library does not exist.
        """

        def _insert_or_get(conn: Connection) -> int:
            self._require_library(conn, media.library_id)
            lookup = (
                select(_media.c.id)
                .where(_media.c.library_id == media.library_id)
                .where(_media.c.name == media.name)
                .order_by(_media.c.id)
                .limit(1)
            )
            media_id = insert_or_get(conn, lookup, self._insert_statement(media))
            self.attach_kind(conn, media_id, media.media_type)
            return media_id

        return self.db.write(_insert_or_get)

    def add_media_blind(self, media: Media) -> int:
        """Insert media without looking for an existing row with the same name."""

        def _insert(conn: Connection) -> int:
            self._require_library(conn, media.library_id)
            media_id = conn.execute(self._insert_statement(media)).inserted_primary_key[0]
            self.attach_kind(conn, media_id, media.media_type)
            return media_id

        return self.db.write(_insert)

    def attach_kind(self, conn: Connection, media_id: int, kind: MediaKind, manual_insert: bool = False) -> int:
        """Write the rows that follow from kind's insert strategy. Returns media_id.

        manual_insert=True writes only the streamable marker, for callers that
        insert the kind-specific row themselves.
        """
        strategy = strategy_for(kind)
        if strategy is InsertStrategy.STREAMABLE:
            _ensure_row(conn, _streamable, media_id)
            if manual_insert:
                return media_id
            return _ensure_row(conn, _KIND_TABLES[MediaKind(kind)], media_id)
        elif strategy is InsertStrategy.STATIC:
            return _ensure_row(conn, _KIND_TABLES[MediaKind(kind)], media_id)
        raise ValueError(f"Unhandled insert strategy: {strategy!r}")

    def get_media(self, media_id: int) -> Optional[Media]:
        with self.db.read() as conn:
            row = conn.execute(_media.select().where(_media.c.id == media_id)).fetchone()
        return _row_to_media(row) if row is not None else None

    def list_media(self, library_id: int) -> list[Media]:
        """Return the top-level media of a library (episodes are listed under their show)."""
        with self.db.read() as conn:
            rows = conn.execute(
                _media.select()
                .where(_media.c.library_id == library_id)
                .where(_media.c.media_type != MediaKind.EPISODE.value)
                .order_by(_media.c.name)
            ).fetchall()
        return [_row_to_media(r) for r in rows]

    def is_streamable(self, media_id: int) -> bool:
        with self.db.read() as conn:
            return conn.execute(select(_streamable.c.id).where(_streamable.c.id == media_id)).first() is not None

    def delete_media(self, media_id: int) -> bool:
        """Delete one media row and its marker rows. Returns False if it did not exist."""

        def _delete(conn: Connection) -> bool:
            for table in (_streamable, *_KIND_TABLES.values()):
                conn.execute(table.delete().where(table.c.id == media_id))
            return conn.execute(_media.delete().where(_media.c.id == media_id)).rowcount > 0

        return self.db.write(_delete)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _require_library(conn: Connection, library_id: int) -> None:
        if conn.execute(select(_library.c.id).where(_library.c.id == library_id)).first() is None:
            raise NotFound(f"Library {library_id} not found.")

    @staticmethod
    def _insert_statement(media: Media):
        return _media.insert().values(
            library_id=media.library_id,
            name=media.name,
            description=media.description,
            rating=media.rating,
            year=media.year,
            added=media.added or _now_iso(),
            poster_path=media.poster_path,
            backdrop_path=media.backdrop_path,
            media_type=MediaKind(media.media_type).value,
        )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_library(row) -> Library:
    return Library(
        id=row.id,
        name=row.name,
        location=row.location,
        media_type=MediaKind(row.media_type),
    )


def _row_to_media(row) -> Media:
    return Media(
        id=row.id,
        library_id=row.library_id,
        name=row.name,
        media_type=MediaKind(row.media_type),
        description=row.description,
        rating=row.rating,
        year=row.year,
        added=row.added,
        poster_path=row.poster_path,
        backdrop_path=row.backdrop_path,
    )
