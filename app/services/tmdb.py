"""Client for The Movie Database (TMDB) discover, search and provider APIs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import ConfigurationError, UpstreamError
from ..models import CatalogItem, MediaType, WatchProvider

logger = logging.getLogger(__name__)

# TMDB ignores ``watch_region`` unless it is paired with a provider or
# monetization filter.
ANY_AVAILABILITY = "flatrate|free|ads"
BASE_MIN_VOTES = 40
BASE_MIN_RATING = 5.5


@dataclass(slots=True, frozen=True)
class DiscoverFilters:
    """Region, availability and genre constraints shared by discover calls."""

    region: str
    provider_ids: Sequence[int] = field(default_factory=tuple)
    genre_ids: Sequence[int] = field(default_factory=tuple)
    min_votes: int = BASE_MIN_VOTES
    min_rating: float = BASE_MIN_RATING

    def to_params(self) -> dict[str, str]:
        params = {
            "vote_count.gte": str(self.min_votes),
            "vote_average.gte": str(self.min_rating),
            "watch_region": self.region,
        }
        if self.genre_ids:
            params["with_genres"] = ",".join(str(genre) for genre in self.genre_ids)
        if self.provider_ids:
            params["with_watch_providers"] = "|".join(
                str(provider) for provider in self.provider_ids
            )
        else:
            params["with_watch_monetization_types"] = ANY_AVAILABILITY
        return params


class TMDBClient:
    """Thin wrapper around the TMDB v3 HTTP API."""

    service_name = "TMDB"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.tmdb_api_key)

    async def discover(
        self,
        media_type: MediaType,
        filters: DiscoverFilters,
        *,
        sort_by: str = "popularity.desc",
        page: int = 1,
    ) -> list[CatalogItem]:
        """Return one page of region-scoped discover results."""

        params = filters.to_params()
        params["sort_by"] = sort_by
        params["page"] = str(page)
        payload = await self._get(f"/discover/{media_type}", params)
        return self._decode_items(payload)

    async def search(self, media_type: MediaType, query: str) -> list[CatalogItem]:
        """Return the first page of an unscoped title search."""

        payload = await self._get(
            f"/search/{media_type}",
            {"query": query, "include_adult": "false"},
        )
        return self._decode_items(payload)

    async def watch_providers(
        self, media_type: MediaType, region: str
    ) -> list[WatchProvider]:
        payload = await self._get(
            f"/watch/providers/{media_type}", {"watch_region": region}
        )
        providers: list[WatchProvider] = []
        for entry in self._results(payload):
            try:
                providers.append(WatchProvider.model_validate(entry))
            except ValidationError:
                continue
        return providers

    async def region_providers(self, region: str, *, limit: int) -> list[WatchProvider]:
        """Return movie and TV providers for a region, best ranked first."""

        movie_providers, tv_providers = await asyncio.gather(
            self.watch_providers("movie", region),
            self.watch_providers("tv", region),
        )
        merged: dict[int, WatchProvider] = {}
        for provider in [*movie_providers, *tv_providers]:
            merged.setdefault(provider.provider_id, provider)
        ranked = sorted(merged.values(), key=lambda provider: provider.display_priority)
        return ranked[:limit]

    async def _get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        api_key = self._settings.tmdb_api_key
        if not api_key:
            raise ConfigurationError("TMDB not configured")

        query = {
            "api_key": api_key,
            "language": self._settings.tmdb_language,
            **params,
        }
        try:
            response = await self._client.get(path, params=query)
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"request to {path} failed: {exc!r}", service=self.service_name
            ) from exc

        if response.status_code >= 400:
            logger.debug("TMDB %s responded %s: %s", path, response.status_code, response.text)
            raise UpstreamError(
                response.text,
                service=self.service_name,
                upstream_status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(
                f"undecodable response from {path}", service=self.service_name
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(
                f"unexpected response shape from {path}", service=self.service_name
            )
        return payload

    @staticmethod
    def _results(payload: dict[str, Any]) -> list[dict[str, Any]]:
        results = payload.get("results") or []
        if not isinstance(results, list):
            return []
        return [entry for entry in results if isinstance(entry, dict)]

    @classmethod
    def _decode_items(cls, payload: dict[str, Any]) -> list[CatalogItem]:
        """Validate raw result entries, skipping ones without usable ids."""

        items: list[CatalogItem] = []
        for entry in cls._results(payload):
            try:
                items.append(CatalogItem.model_validate(entry))
            except ValidationError:
                continue
        return items
