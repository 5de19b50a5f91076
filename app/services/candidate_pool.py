"""Builds the deduplicated, priority-ordered pool of candidate titles."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Sequence

from ..config import Settings
from ..genres import resolve_genre_ids
from ..models import CatalogItem, DescriptionFilters, MediaType, PreferenceRequest
from .openrouter import OpenRouterClient
from .tmdb import DiscoverFilters, TMDBClient

logger = logging.getLogger(__name__)

FILTER_REQUEST_TEMPLATE = """
A user wants a {media_label} matching this description: "{description}"

Generate short TMDB search queries and similar well-known {media_label} titles.
Search queries should be 2-4 words capturing themes, tone, or style.
Similar titles should be real, recognisable {media_plural}.
"""

TOP_RATED_MIN_VOTES = 150


@dataclass(frozen=True, slots=True)
class DiscoveryQuery:
    """One page of a region-scoped discover listing."""

    sort_by: str
    page: int
    min_votes: int | None = None


DISCOVERY_QUERIES: tuple[DiscoveryQuery, ...] = (
    DiscoveryQuery("popularity.desc", 1),
    DiscoveryQuery("popularity.desc", 2),
    DiscoveryQuery("popularity.desc", 3),
    DiscoveryQuery("vote_average.desc", 1, min_votes=TOP_RATED_MIN_VOTES),
    DiscoveryQuery("vote_average.desc", 2, min_votes=TOP_RATED_MIN_VOTES),
)


@dataclass(slots=True)
class CandidatePool:
    """Description-derived picks followed by the shuffled discover results."""

    priority: list[CatalogItem] = field(default_factory=list)
    general: list[CatalogItem] = field(default_factory=list)

    @property
    def items(self) -> list[CatalogItem]:
        return [*self.priority, *self.general]

    @property
    def found_count(self) -> int:
        return len(self.priority) + len(self.general)

    def candidates(self, limit: int) -> list[CatalogItem]:
        return self.items[:limit]

    def without_titles(self, titles: set[str]) -> "CandidatePool":
        """Return a pool without items whose casefolded title is listed."""

        if not titles:
            return self

        def _keep(item: CatalogItem) -> bool:
            return item.title.strip().casefold() not in titles

        return CandidatePool(
            priority=[item for item in self.priority if _keep(item)],
            general=[item for item in self.general if _keep(item)],
        )

    @classmethod
    def merge(
        cls,
        description_items: Sequence[CatalogItem],
        discovery_batches: Sequence[Sequence[CatalogItem]],
        *,
        rng: random.Random | None = None,
    ) -> "CandidatePool":
        """Merge search and discover results into a single pool.

        Search results are unscoped, so only those that also appear in a
        region-scoped discover batch are kept; they lead the pool in their
        original order. The remaining discover results are shuffled behind
        them. The first record seen for an id wins.
        """

        available_ids = {item.id for batch in discovery_batches for item in batch}
        seen_ids: set[int] = set()

        priority: list[CatalogItem] = []
        for item in description_items:
            if item.id in seen_ids or item.id not in available_ids:
                continue
            seen_ids.add(item.id)
            priority.append(item)

        general: list[CatalogItem] = []
        for batch in discovery_batches:
            for item in batch:
                if item.id in seen_ids:
                    continue
                seen_ids.add(item.id)
                general.append(item)

        (rng or random).shuffle(general)
        return cls(priority=priority, general=general)


class CandidatePoolBuilder:
    """Runs the discover and description searches for one request."""

    def __init__(
        self,
        settings: Settings,
        tmdb_client: TMDBClient,
        openrouter_client: OpenRouterClient,
        *,
        rng: random.Random | None = None,
    ):
        self._settings = settings
        self._tmdb = tmdb_client
        self._ai = openrouter_client
        self._rng = rng

    async def build(self, preferences: PreferenceRequest) -> CandidatePool:
        """Return the merged pool with already-rated titles removed."""

        media_type = preferences.media_type
        filters = DiscoverFilters(
            region=preferences.resolve_region(self._settings.default_region),
            provider_ids=tuple(preferences.provider_ids),
            genre_ids=tuple(resolve_genre_ids(media_type, preferences.genres)),
        )

        discovery_calls = [
            self._absorb(
                f"discover {query.sort_by} page {query.page}",
                self._tmdb.discover(
                    media_type,
                    self._filters_for(filters, query),
                    sort_by=query.sort_by,
                    page=query.page,
                ),
                default=[],
            )
            for query in DISCOVERY_QUERIES
        ]
        description_items, *discovery_batches = await asyncio.gather(
            self._description_items(preferences),
            *discovery_calls,
        )

        pool = CandidatePool.merge(
            description_items, discovery_batches, rng=self._rng
        ).without_titles(preferences.seen_titles())
        logger.info(
            "Candidate pool for %s in %s: %s titles (%s from description)",
            media_type,
            filters.region,
            pool.found_count,
            len(pool.priority),
        )
        return pool

    async def extract_filters(
        self, preferences: PreferenceRequest
    ) -> DescriptionFilters | None:
        """Ask the filter model for search hints describing the free text."""

        if not preferences.description:
            return None
        media_plural = "films" if preferences.media_type == "movie" else "shows"
        prompt = FILTER_REQUEST_TEMPLATE.format(
            media_label=preferences.media_label,
            media_plural=media_plural,
            description=preferences.description,
        ).strip()
        filters = await self._ai.structured_call(
            prompt,
            DescriptionFilters,
            schema=DescriptionFilters.json_schema(),
            schema_name="description_filters",
            model=self._settings.openrouter_filter_model,
        )
        logger.info(
            "Description filters: queries=%s similar=%s",
            filters.search_queries,
            filters.similar_titles,
        )
        return filters

    async def _description_items(
        self, preferences: PreferenceRequest
    ) -> list[CatalogItem]:
        filters = await self._absorb(
            "description filter extraction",
            self.extract_filters(preferences),
            default=None,
        )
        if filters is None:
            return []

        media_type: MediaType = preferences.media_type
        batches = await asyncio.gather(
            *(
                self._absorb(
                    f"search {term!r}",
                    self._tmdb.search(media_type, term),
                    default=[],
                )
                for term in filters.terms()
            )
        )
        return [item for batch in batches for item in batch]

    @staticmethod
    def _filters_for(base: DiscoverFilters, query: DiscoveryQuery) -> DiscoverFilters:
        if query.min_votes is None:
            return base
        return replace(base, min_votes=query.min_votes)

    @staticmethod
    async def _absorb(label: str, call: Awaitable[Any], *, default: Any) -> Any:
        """Await ``call`` and swap any failure for ``default``."""

        try:
            return await call
        except Exception as exc:
            logger.warning("Candidate query %s failed: %s", label, exc)
            return default
