"""
catalog/models.py -- Domain dataclasses for the media catalog.

Pure data containers plus one lookup table. All persistence logic lives in
catalog/store.py.

Every media row is one of a fixed set of kinds. What happens after the base
row is written depends only on the kind's InsertStrategy:
  STREAMABLE -- movies and episodes: a streamable marker row plus a
                kind-specific row.
  STATIC     -- tv shows: only a kind-specific row; a show itself is never
                played, its episodes are.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MediaKind(str, Enum):
    MOVIE = "movie"
    TV = "tv"
    EPISODE = "episode"


class InsertStrategy(Enum):
    STREAMABLE = "streamable"
    STATIC = "static"


_STRATEGIES: dict[MediaKind, InsertStrategy] = {
    MediaKind.MOVIE: InsertStrategy.STREAMABLE,
    MediaKind.EPISODE: InsertStrategy.STREAMABLE,
    MediaKind.TV: InsertStrategy.STATIC,
}


def strategy_for(kind: MediaKind) -> InsertStrategy:
    return _STRATEGIES[MediaKind(kind)]


@dataclass
class Library:
    """A scanned folder. media_type says which kind of media it holds.

    id is None before the record is written to the database.
    """

    name: str
    location: str
    media_type: MediaKind
    id: Optional[int] = None


@dataclass
class Media:
    """A movie, tv show, or episode.

    (library_id, name) is the natural key used by CatalogStore.add_media();
    add_media_blind() skips that check so episodes sharing a title can coexist.
    """

    library_id: int
    name: str
    media_type: MediaKind
    id: Optional[int] = None
    description: Optional[str] = None
    rating: Optional[int] = None
    year: Optional[int] = None
    added: str = ""  # ISO 8601, set by store on insert
    poster_path: Optional[str] = None
    backdrop_path: Optional[str] = None
