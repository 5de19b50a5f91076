"""Selects picks from the candidate pool and narrates them."""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import AsyncIterator, Sequence

from ..config import Settings
from ..models import (
    MAX_PICKS,
    CatalogItem,
    CurationSelection,
    Pick,
    PreferenceRequest,
    RecommendationBlock,
)
from .openrouter import OpenRouterClient

logger = logging.getLogger(__name__)

SELECTION_SYSTEM_PROMPT = (
    "You are an expert film and TV recommender. You choose titles only by their "
    "index in the numbered candidate list and respond with JSON matching the "
    "schema. Never refer to titles that are not in the list."
)

SELECTION_REQUEST_TEMPLATE = """
Looking for: {media_phrase}
{preferences}

Available titles (pick from anywhere in this list):
{candidates}

Pick the 3-5 best matches by index. For each pick add a short vibe label
(2-4 words, e.g. "Slow-burn noir"). Vary your selections and favour titles that
fit the stated tastes.
"""

NARRATION_SYSTEM_PROMPT = """You are an expert film and TV recommender.
Write about EXACTLY the titles you are given and no others. Never invent or add titles.
Format each title EXACTLY like this (include [img:...] only when a poster is listed):
**[Title]** ([Year]) · [Vibe] [img:[poster_path]]
_Why you'll love it:_ [1–2 warm, specific sentences]
Separate titles with a blank line. Be enthusiastic and personal."""

NARRATION_REQUEST_TEMPLATE = """
Looking for: {media_phrase}
{preferences}

Write the recommendations for these {count} titles, in this order:

{blocks}
"""

SELECTION_TEMPERATURE = 1.0
NARRATION_TEMPERATURE = 1.1
NARRATION_MAX_TOKENS = 900


def describe_preferences(preferences: PreferenceRequest, region: str) -> str:
    """Render the user's stated tastes as prompt lines."""

    lines: list[str] = []
    if preferences.genres:
        lines.append(f"Genres: {', '.join(preferences.genres)}")
    if preferences.moods:
        lines.append(f"Mood: {', '.join(preferences.moods)}")
    if preferences.styles:
        lines.append(f"Style: {', '.join(preferences.styles)}")
    if preferences.description:
        lines.append(f'Notes: "{preferences.description}"')
    if preferences.liked:
        lines.append(f"Previously liked: {', '.join(preferences.liked)}")
    if preferences.disliked:
        lines.append(f"Previously disliked: {', '.join(preferences.disliked)}")
    if preferences.provider_ids:
        lines.append(f"(On selected services in {region})")
    return "\n".join(lines)


def media_phrase(preferences: PreferenceRequest) -> str:
    return "a movie" if preferences.media_type == "movie" else "a TV show"


class Curator:
    """Runs the index selection and narration model calls."""

    def __init__(self, settings: Settings, openrouter_client: OpenRouterClient):
        self._settings = settings
        self._ai = openrouter_client

    async def select_picks(
        self,
        preferences: PreferenceRequest,
        candidates: Sequence[CatalogItem],
    ) -> list[Pick]:
        """Ask the curator model for indices into ``candidates``."""

        region = preferences.resolve_region(self._settings.default_region)
        prompt = SELECTION_REQUEST_TEMPLATE.format(
            media_phrase=media_phrase(preferences),
            preferences=describe_preferences(preferences, region),
            candidates="\n".join(
                item.to_candidate_line(index) for index, item in enumerate(candidates)
            ),
        ).strip()
        selection = await self._ai.structured_call(
            prompt,
            CurationSelection,
            schema=CurationSelection.json_schema(len(candidates)),
            schema_name="curated_picks",
            model=self._settings.openrouter_curator_model,
            system=SELECTION_SYSTEM_PROMPT,
            temperature=SELECTION_TEMPERATURE,
        )
        return selection.picks

    @staticmethod
    def validate_picks(
        picks: Sequence[Pick], candidates: Sequence[CatalogItem]
    ) -> list[RecommendationBlock]:
        """Join in-range picks with their candidate data.

        Out-of-range and repeated indices are dropped; nothing is backfilled.
        At most ``MAX_PICKS`` blocks are kept, in reply order.
        """

        blocks: list[RecommendationBlock] = []
        used: set[int] = set()
        for position, pick in enumerate(picks):
            if len(blocks) == MAX_PICKS:
                logger.warning(
                    "Ignoring %s picks beyond the first %s", len(picks) - position, MAX_PICKS
                )
                break
            if not 0 <= pick.index < len(candidates) or pick.index in used:
                logger.warning("Discarding invalid pick index %s", pick.index)
                continue
            used.add(pick.index)
            blocks.append(RecommendationBlock.from_pick(candidates[pick.index], pick))
        return blocks

    async def narrate(
        self,
        preferences: PreferenceRequest,
        blocks: Sequence[RecommendationBlock],
    ) -> AsyncIterator[str]:
        """Stream the narrator's text for exactly ``blocks``."""

        region = preferences.resolve_region(self._settings.default_region)
        prompt = NARRATION_REQUEST_TEMPLATE.format(
            media_phrase=media_phrase(preferences),
            preferences=describe_preferences(preferences, region),
            count=len(blocks),
            blocks="\n\n".join(block.to_prompt_block() for block in blocks),
        ).strip()
        stream = self._ai.stream_call(
            prompt,
            system=NARRATION_SYSTEM_PROMPT,
            model=self._settings.openrouter_narrator_model,
            temperature=NARRATION_TEMPERATURE,
            max_tokens=NARRATION_MAX_TOKENS,
        )
        async with aclosing(stream) as chunks:
            async for chunk in chunks:
                yield chunk
