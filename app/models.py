"""Pydantic models describing request, catalog and curation payloads."""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MediaType = Literal["movie", "tv"]

SYNOPSIS_EXCERPT_LENGTH = 200
MAX_DESCRIPTION_TERMS = 3
MIN_PICKS = 3
MAX_PICKS = 5


def _none_to_list(value: object) -> object:
    return [] if value is None else value


class CatalogItem(BaseModel):
    """A single title returned by TMDB discover or search endpoints."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: int
    title: str = Field(
        default="Unknown", validation_alias=AliasChoices("title", "name")
    )
    release_date: str | None = Field(
        default=None,
        validation_alias=AliasChoices("release_date", "first_air_date"),
    )
    overview: str = ""
    vote_average: float | None = None
    poster_path: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _fallback_title(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "Unknown"
        return value

    @field_validator("overview", mode="before")
    @classmethod
    def _blank_overview(cls, value: object) -> object:
        return "" if value is None else value

    @property
    def year(self) -> str:
        """Return the four digit release year or an empty string."""

        return (self.release_date or "")[:4]

    @property
    def rating_label(self) -> str:
        if self.vote_average is None:
            return "?"
        return f"{self.vote_average:.1f}"

    def synopsis_excerpt(self, limit: int = SYNOPSIS_EXCERPT_LENGTH) -> str:
        return self.overview[:limit]

    def to_candidate_line(self, index: int) -> str:
        """Render the item as an enumerated line for the selection prompt."""

        return (
            f"[{index}] {self.title} ({self.year}) [{self.rating_label}★]"
            f" — {self.synopsis_excerpt()}"
        )


class PreferenceRequest(BaseModel):
    """Body accepted by ``POST /api/recommend``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    region: str | None = Field(
        default=None, validation_alias=AliasChoices("region", "country")
    )
    provider_ids: list[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("providerIds", "provider_ids"),
    )
    media_type: MediaType = Field(
        default="movie", validation_alias=AliasChoices("mediaType", "media_type")
    )
    genres: list[str] = Field(default_factory=list)
    moods: list[str] = Field(default_factory=list)
    styles: list[str] = Field(default_factory=list)
    description: str = ""
    liked: list[str] = Field(default_factory=list)
    disliked: list[str] = Field(default_factory=list)

    @field_validator(
        "provider_ids", "genres", "moods", "styles", "liked", "disliked", mode="before"
    )
    @classmethod
    def _lists_default(cls, value: object) -> object:
        return _none_to_list(value)

    @field_validator("media_type", mode="before")
    @classmethod
    def _default_media_type(cls, value: object) -> object:
        return "movie" if value is None else value

    @field_validator("region", mode="before")
    @classmethod
    def _normalise_region(cls, value: object) -> object:
        if value is None:
            return None
        if not isinstance(value, str):
            return value
        cleaned = value.strip().upper()
        return cleaned or None

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, value: object) -> object:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value

    def resolve_region(self, fallback: str) -> str:
        return self.region or fallback

    def seen_titles(self) -> set[str]:
        """Return casefolded names of titles the user already rated."""

        return {
            title.strip().casefold()
            for title in [*self.liked, *self.disliked]
            if title and title.strip()
        }

    @property
    def media_label(self) -> str:
        return "movie" if self.media_type == "movie" else "TV show"


class DescriptionFilters(BaseModel):
    """Search hints extracted from the free-text description."""

    model_config = ConfigDict(populate_by_name=True)

    search_queries: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("searchQueries", "search_queries"),
    )
    similar_titles: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("similarTitles", "similar_titles"),
    )

    @field_validator("search_queries", "similar_titles", mode="before")
    @classmethod
    def _trim_terms(cls, value: object) -> object:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        cleaned = [str(term).strip() for term in value if str(term).strip()]
        return cleaned[:MAX_DESCRIPTION_TERMS]

    def terms(self) -> list[str]:
        return [*self.search_queries, *self.similar_titles]

    @staticmethod
    def json_schema() -> dict[str, object]:
        return {
            "type": "object",
            "properties": {
                "searchQueries": {
                    "type": "array",
                    "items": {"type": "string"},
                    "maxItems": MAX_DESCRIPTION_TERMS,
                    "description": (
                        "2-3 short TMDB search queries (2-4 words each) that "
                        "capture the essence of the description"
                    ),
                },
                "similarTitles": {
                    "type": "array",
                    "items": {"type": "string"},
                    "maxItems": MAX_DESCRIPTION_TERMS,
                    "description": (
                        "2-3 specific well-known titles that match what is described"
                    ),
                },
            },
            "required": ["searchQueries", "similarTitles"],
            "additionalProperties": False,
        }


class Pick(BaseModel):
    """One index selected by the curator model."""

    index: int
    vibe: str = ""

    @field_validator("vibe", mode="before")
    @classmethod
    def _strip_vibe(cls, value: object) -> object:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value


class CurationSelection(BaseModel):
    picks: list[Pick] = Field(default_factory=list)

    @staticmethod
    def json_schema(pool_size: int) -> dict[str, object]:
        """Schema constraining the curator to 3-5 in-range indices."""

        return {
            "type": "object",
            "properties": {
                "picks": {
                    "type": "array",
                    "minItems": min(MIN_PICKS, pool_size),
                    "maxItems": MAX_PICKS,
                    "items": {
                        "type": "object",
                        "properties": {
                            "index": {
                                "type": "integer",
                                "minimum": 0,
                                "maximum": max(pool_size - 1, 0),
                                "description": "Position of the title in the candidate list",
                            },
                            "vibe": {
                                "type": "string",
                                "description": "2-4 word genre or vibe label",
                            },
                        },
                        "required": ["index", "vibe"],
                        "additionalProperties": False,
                    },
                }
            },
            "required": ["picks"],
            "additionalProperties": False,
        }


class RecommendationBlock(BaseModel):
    """A validated pick joined with the catalog data used for narration."""

    model_config = ConfigDict(frozen=True)

    title: str
    year: str
    synopsis: str
    poster_path: str | None = None
    vibe: str

    @classmethod
    def from_pick(cls, item: CatalogItem, pick: Pick) -> "RecommendationBlock":
        return cls(
            title=item.title,
            year=item.year,
            synopsis=item.synopsis_excerpt(),
            poster_path=item.poster_path,
            vibe=pick.vibe,
        )

    def to_prompt_block(self) -> str:
        lines = [
            f"Title: {self.title}",
            f"Year: {self.year or 'unknown'}",
            f"Vibe: {self.vibe or 'your call'}",
        ]
        if self.poster_path:
            lines.append(f"Poster: {self.poster_path}")
        if self.synopsis:
            lines.append(f"Synopsis: {self.synopsis}")
        return "\n".join(lines)


class WatchProvider(BaseModel):
    """A streaming service available in a region."""

    model_config = ConfigDict(extra="ignore")

    provider_id: int
    provider_name: str
    logo_path: str | None = None
    display_priority: int = 999
