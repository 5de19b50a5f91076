"""Genre tag to TMDB genre identifier lookups."""

from __future__ import annotations

from typing import Iterable, Mapping

from .models import MediaType


MOVIE_GENRE_IDS: Mapping[str, int] = {
    "Action": 28,
    "Adventure": 12,
    "Animation": 16,
    "Comedy": 35,
    "Crime": 80,
    "Documentary": 99,
    "Drama": 18,
    "Fantasy": 14,
    "Horror": 27,
    "Mystery": 9648,
    "Romance": 10749,
    "Sci-Fi": 878,
    "Thriller": 53,
    "Family": 10751,
    "History": 36,
    "Music": 10402,
    "War": 10752,
    "Western": 37,
}

# TV folds several movie genres into combined ids (Action & Adventure,
# Sci-Fi & Fantasy, War & Politics).
TV_GENRE_IDS: Mapping[str, int] = {
    "Action": 10759,
    "Adventure": 10759,
    "Animation": 16,
    "Comedy": 35,
    "Crime": 80,
    "Documentary": 99,
    "Drama": 18,
    "Fantasy": 10765,
    "Family": 10751,
    "Mystery": 9648,
    "Sci-Fi": 10765,
    "War": 10768,
    "Western": 37,
    "Romance": 10749,
    "Horror": 27,
    "Thriller": 53,
}


def genre_map_for(media_type: MediaType) -> Mapping[str, int]:
    """Return the tag lookup for the requested media type."""

    return MOVIE_GENRE_IDS if media_type == "movie" else TV_GENRE_IDS


def resolve_genre_ids(media_type: MediaType, genres: Iterable[str]) -> list[int]:
    """Map genre tags to TMDB ids, ignoring unknown tags and duplicates."""

    lookup = genre_map_for(media_type)
    resolved: list[int] = []
    for genre in genres:
        genre_id = lookup.get(genre.strip())
        if genre_id is not None and genre_id not in resolved:
            resolved.append(genre_id)
    return resolved
