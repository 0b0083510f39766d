"""
tests/test_catalog_store.py -- Unit tests for CatalogStore insert paths.

Covers:
  - add_media is insert-or-get on (library, name), also under concurrency
  - add_media_blind always creates a new row
  - streamable kinds get a streamable marker, tv shows do not
  - unknown library raises NotFound and writes nothing
  - listing excludes episodes; delete_media / delete_library cascade
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from catalog.models import InsertStrategy, Library, Media, MediaKind, strategy_for
from catalog.store import CatalogStore
from core.database import Database
from core.errors import NotFound


def _library(catalog: CatalogStore, kind: MediaKind = MediaKind.MOVIE) -> int:
    return catalog.create_library(Library(name="Movies", location="/media/movies", media_type=kind))


class TestStrategies:
    def test_strategy_table(self) -> None:
        assert strategy_for(MediaKind.MOVIE) is InsertStrategy.STREAMABLE
        assert strategy_for(MediaKind.EPISODE) is InsertStrategy.STREAMABLE
        assert strategy_for(MediaKind.TV) is InsertStrategy.STATIC


class TestLibraries:
    def test_create_and_get(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog)
        lib = catalog.get_library(lib_id)
        assert lib.name == "Movies"
        assert lib.media_type is MediaKind.MOVIE

    def test_get_missing(self, catalog: CatalogStore) -> None:
        assert catalog.get_library(999) is None

    def test_delete_library_removes_media(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog)
        media_id = catalog.add_media(Media(library_id=lib_id, name="Heat", media_type=MediaKind.MOVIE))
        assert catalog.delete_library(lib_id) is True
        assert catalog.get_library(lib_id) is None
        assert catalog.get_media(media_id) is None
        assert catalog.is_streamable(media_id) is False
        assert catalog.delete_library(lib_id) is False


class TestAddMedia:
    def test_insert_then_get(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog)
        media_id = catalog.add_media(Media(library_id=lib_id, name="Heat", media_type=MediaKind.MOVIE, year=1995))
        media = catalog.get_media(media_id)
        assert media.name == "Heat"
        assert media.year == 1995
        assert media.added  # stamped on insert
        assert catalog.is_streamable(media_id)

    def test_same_name_returns_same_id(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog)
        first = catalog.add_media(Media(library_id=lib_id, name="Heat", media_type=MediaKind.MOVIE))
        second = catalog.add_media(Media(library_id=lib_id, name="Heat", media_type=MediaKind.MOVIE))
        assert first == second
        assert len(catalog.list_media(lib_id)) == 1

    def test_same_name_in_other_library_is_distinct(self, catalog: CatalogStore) -> None:
        a = _library(catalog)
        b = _library(catalog)
        id_a = catalog.add_media(Media(library_id=a, name="Heat", media_type=MediaKind.MOVIE))
        id_b = catalog.add_media(Media(library_id=b, name="Heat", media_type=MediaKind.MOVIE))
        assert id_a != id_b

    def test_unknown_library(self, catalog: CatalogStore) -> None:
        with pytest.raises(NotFound):
            catalog.add_media(Media(library_id=42, name="Heat", media_type=MediaKind.MOVIE))

    def test_blind_insert_allows_duplicates(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog, MediaKind.TV)
        first = catalog.add_media_blind(Media(library_id=lib_id, name="Pilot", media_type=MediaKind.EPISODE))
        second = catalog.add_media_blind(Media(library_id=lib_id, name="Pilot", media_type=MediaKind.EPISODE))
        assert first != second
        assert catalog.is_streamable(first) and catalog.is_streamable(second)

    def test_tv_show_is_not_streamable(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog, MediaKind.TV)
        show_id = catalog.add_media(Media(library_id=lib_id, name="The Wire", media_type=MediaKind.TV))
        assert catalog.is_streamable(show_id) is False

    def test_manual_insert_writes_only_marker(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog)
        media_id = catalog.add_media(Media(library_id=lib_id, name="Heat", media_type=MediaKind.MOVIE))
        # Re-attaching is idempotent for both modes.
        assert catalog.db.write(lambda conn: catalog.attach_kind(conn, media_id, MediaKind.MOVIE, True)) == media_id
        assert catalog.db.write(lambda conn: catalog.attach_kind(conn, media_id, MediaKind.MOVIE)) == media_id

    def test_list_excludes_episodes(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog, MediaKind.TV)
        catalog.add_media(Media(library_id=lib_id, name="The Wire", media_type=MediaKind.TV))
        catalog.add_media_blind(Media(library_id=lib_id, name="Pilot", media_type=MediaKind.EPISODE))
        assert [m.name for m in catalog.list_media(lib_id)] == ["The Wire"]

    def test_delete_media(self, catalog: CatalogStore) -> None:
        lib_id = _library(catalog)
        media_id = catalog.add_media(Media(library_id=lib_id, name="Heat", media_type=MediaKind.MOVIE))
        assert catalog.delete_media(media_id) is True
        assert catalog.get_media(media_id) is None
        assert catalog.delete_media(media_id) is False

    def test_concurrent_scanners_converge(self, file_db: Database) -> None:
        catalog = CatalogStore(file_db)
        lib_id = _library(catalog)

        def scan(_):
            return catalog.add_media(Media(library_id=lib_id, name="Heat", media_type=MediaKind.MOVIE))

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(scan, range(24)))

        assert len(set(ids)) == 1
        assert len(catalog.list_media(lib_id)) == 1
