"""Streams a recommendation response for one preference request."""

from __future__ import annotations

import logging
import random
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterator

from ..config import Settings
from ..errors import ConfigurationError
from ..models import Pick, PreferenceRequest
from .candidate_pool import CandidatePoolBuilder
from .curation import Curator
from .openrouter import OpenRouterClient
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

SEARCHING_MARKER = "[SEARCHING]\n"


def found_marker(count: int) -> str:
    return f"[FOUND:{count}]\n"


class PipelineState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    FOUND = "found"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


_STATE_ORDER = {
    PipelineState.IDLE: 0,
    PipelineState.SEARCHING: 1,
    PipelineState.FOUND: 2,
    PipelineState.STREAMING: 3,
    PipelineState.DONE: 4,
}


class PipelineRun:
    """Tracks the forward-only progress of a single recommendation stream."""

    def __init__(self) -> None:
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    def advance(self, target: PipelineState) -> None:
        if self.state in (PipelineState.DONE, PipelineState.ERROR):
            raise RuntimeError(f"Pipeline already finished in state {self.state.value}")
        if target is not PipelineState.ERROR and (
            _STATE_ORDER[target] != _STATE_ORDER[self.state] + 1
        ):
            raise RuntimeError(
                f"Illegal pipeline transition {self.state.value} -> {target.value}"
            )
        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        if self.state not in (PipelineState.DONE, PipelineState.ERROR):
            self.advance(PipelineState.ERROR)


class RecommendationService:
    """Composes the candidate pool builder with the curation stage."""

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
        self._pool_builder = CandidatePoolBuilder(
            settings, tmdb_client, openrouter_client, rng=rng
        )
        self._curator = Curator(settings, openrouter_client)

    def ensure_configured(self) -> None:
        """Raise before streaming when an upstream credential is missing."""

        if not self._ai.configured:
            raise ConfigurationError("OpenRouter not configured")
        if not self._tmdb.configured:
            raise ConfigurationError("TMDB not configured")

    async def stream(
        self,
        preferences: PreferenceRequest,
        run: PipelineRun | None = None,
    ) -> AsyncIterator[str]:
        """Yield the phase markers followed by the narrated picks.

        Failures after the first marker propagate and end the stream early;
        there is no way to report them once the response has started.
        """

        run = run or PipelineRun()
        try:
            run.advance(PipelineState.SEARCHING)
            yield SEARCHING_MARKER

            pool = await self._pool_builder.build(preferences)
            candidates = pool.candidates(self._settings.candidate_limit)
            run.advance(PipelineState.FOUND)
            yield found_marker(pool.found_count)

            picks: list[Pick] = []
            if candidates:
                picks = await self._curator.select_picks(preferences, candidates)
            blocks = self._curator.validate_picks(picks, candidates)
            logger.info(
                "Validated %s of %s picks from %s candidates",
                len(blocks),
                len(picks),
                len(candidates),
            )

            run.advance(PipelineState.STREAMING)
            if blocks:
                async with aclosing(self._curator.narrate(preferences, blocks)) as chunks:
                    async for chunk in chunks:
                        yield chunk
            run.advance(PipelineState.DONE)
        except Exception:
            failed_in = run.state
            run.fail()
            logger.exception("Recommendation stream aborted while %s", failed_in.value)
            raise
