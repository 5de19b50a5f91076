"""End-to-end behaviour of the streamed recommendation pipeline."""

from __future__ import annotations

import random
import re

import httpx
import pytest

from app.errors import ConfigurationError, UpstreamError
from app.models import DescriptionFilters, Pick, PreferenceRequest
from app.services.recommender import (
    SEARCHING_MARKER,
    PipelineRun,
    PipelineState,
    RecommendationService,
)
from app.services.tmdb import TMDBClient

from fakes import (
    FakeOpenRouterClient,
    FakeTMDBClient,
    build_settings,
    make_item,
    make_items,
    titles_in_narration,
)

FOUND_RE = re.compile(r"^\[FOUND:(\d+)\]\n", re.MULTILINE)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def _collect(service: RecommendationService, preferences: PreferenceRequest, run: PipelineRun | None = None) -> list[str]:
    return [chunk async for chunk in service.stream(preferences, run)]


def _service(tmdb: TMDBClient, ai: FakeOpenRouterClient, **overrides: object) -> RecommendationService:
    return RecommendationService(build_settings(**overrides), tmdb, ai, rng=random.Random(11))


def _comedy_catalog(request: httpx.Request) -> httpx.Response:
    """Three popularity pages of unique comedies; the top-rated pages repeat them."""

    params = request.url.params
    assert request.url.path.endswith("/discover/movie")
    page = int(params["page"])
    if params["sort_by"] == "popularity.desc":
        ranges = {1: range(1, 21), 2: range(21, 41), 3: range(41, 51)}
        ids = ranges.get(page, range(0))
    else:
        ids = range(page, 51, 5)
    results = [
        {
            "id": item_id,
            "title": f"Comedy {item_id}",
            "release_date": "2015-06-01",
            "overview": "Laughs.",
            "vote_average": 6.8,
            "poster_path": f"/comedy-{item_id}.jpg",
        }
        for item_id in ids
    ]
    return httpx.Response(200, json={"results": results})


@pytest.mark.anyio("asyncio")
async def test_comedy_request_streams_markers_then_pool_titles() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return _comedy_catalog(request)

    ai = FakeOpenRouterClient(
        picks=[Pick(index=0, vibe="Feel-good"), Pick(index=5, vibe="Screwball"), Pick(index=29, vibe="Dry wit")]
    )
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://api.example.com/3") as http_client:
        settings = build_settings()
        service = RecommendationService(
            settings, TMDBClient(settings, http_client), ai, rng=random.Random(5)
        )
        chunks = await _collect(
            service,
            PreferenceRequest.model_validate(
                {"mediaType": "movie", "genres": ["Comedy"], "providerIds": []}
            ),
        )

    body = "".join(chunks)
    assert body.startswith("[SEARCHING]\n[FOUND:50]\n")
    narration = body[len("[SEARCHING]\n[FOUND:50]\n"):]
    titles = titles_in_narration(narration)
    assert 3 <= len(titles) <= 5
    assert all(re.fullmatch(r"Comedy ([1-9]|[1-4][0-9]|50)", title) for title in titles)
    assert "_Why you'll love it:_" in narration

    for request in requests:
        params = request.url.params
        assert params["with_genres"] == "35"
        assert "watch_region" in params
        assert "with_watch_providers" in params or "with_watch_monetization_types" in params

    _, selection_prompt, _ = ai.structured_calls[0]
    assert len(re.findall(r"^\[\d+\] ", selection_prompt, re.MULTILINE)) == 30


@pytest.mark.anyio("asyncio")
async def test_found_marker_reports_untruncated_pool_size() -> None:
    tmdb = FakeTMDBClient(
        discover_results={
            ("popularity.desc", 1): make_items(range(1, 21)),
            ("popularity.desc", 2): make_items(range(21, 41)),
            ("vote_average.desc", 1): make_items(range(35, 46)),
        }
    )
    ai = FakeOpenRouterClient()

    chunks = await _collect(_service(tmdb, ai, CANDIDATE_LIMIT=30), PreferenceRequest())

    assert chunks[0] == SEARCHING_MARKER
    assert chunks[1] == "[FOUND:45]\n"
    schema = ai.structured_calls[-1][2]
    assert schema["properties"]["picks"]["items"]["properties"]["index"]["maximum"] == 29


@pytest.mark.anyio("asyncio")
async def test_marker_offsets_precede_narration() -> None:
    tmdb = FakeTMDBClient(discover_results={("popularity.desc", 1): make_items(range(1, 8))})
    ai = FakeOpenRouterClient(chunks=["**Title 1** (2020)", " · Cosy\n", "_Why you'll love it:_ Yes."])

    body = "".join(await _collect(_service(tmdb, ai), PreferenceRequest()))

    searching = body.index("[SEARCHING]\n")
    found = FOUND_RE.search(body)
    assert found is not None
    narration_start = body.index("**Title 1**")
    assert searching < found.start() < narration_start
    assert body.count("[SEARCHING]") == 1
    assert len(FOUND_RE.findall(body)) == 1


@pytest.mark.anyio("asyncio")
async def test_chunks_are_forwarded_unmodified() -> None:
    tmdb = FakeTMDBClient(discover_results={("popularity.desc", 1): make_items(range(1, 5))})
    scripted = ["**Ti", "tle 1** (20", "20) · X\n", "", "_Why you'll love it:_ ok"]
    ai = FakeOpenRouterClient(chunks=scripted)

    chunks = await _collect(_service(tmdb, ai), PreferenceRequest())

    assert chunks[2:] == scripted


@pytest.mark.anyio("asyncio")
async def test_description_without_regional_overlap_uses_discover_only() -> None:
    tmdb = FakeTMDBClient(
        discover_results={("popularity.desc", 1): make_items(range(1, 11))},
        search_results={
            "tense heist": make_items(range(200, 205)),
            "Heat": [make_item(300, "Heat")],
        },
    )
    ai = FakeOpenRouterClient(
        filters=DescriptionFilters(search_queries=["tense heist"], similar_titles=["Heat"]),
    )

    body = "".join(
        await _collect(_service(tmdb, ai), PreferenceRequest(description="a tense heist thriller"))
    )

    assert "[FOUND:10]\n" in body
    _, selection_prompt, _ = ai.structured_calls[-1]
    assert "Heat" not in selection_prompt.split("Available titles")[1]
    for title in titles_in_narration(body):
        assert title in {f"Title {item_id}" for item_id in range(1, 11)}


@pytest.mark.anyio("asyncio")
async def test_total_discover_failure_closes_stream_cleanly() -> None:
    tmdb = FakeTMDBClient(fail_discover=True)
    ai = FakeOpenRouterClient()
    run = PipelineRun()

    chunks = await _collect(_service(tmdb, ai), PreferenceRequest(genres=["Horror"]), run)

    assert chunks == [SEARCHING_MARKER, "[FOUND:0]\n"]
    assert ai.structured_calls == []
    assert ai.stream_prompts == []
    assert run.state is PipelineState.DONE


@pytest.mark.anyio("asyncio")
async def test_liked_title_is_excluded_regardless_of_case() -> None:
    tmdb = FakeTMDBClient(
        discover_results={("popularity.desc", 1): [make_item(1, "inception"), *make_items(range(2, 6))]}
    )
    ai = FakeOpenRouterClient()

    body = "".join(await _collect(_service(tmdb, ai), PreferenceRequest(liked=["Inception"])))

    assert "[FOUND:4]\n" in body
    _, selection_prompt, _ = ai.structured_calls[-1]
    assert "inception" not in selection_prompt.split("Available titles")[1].lower()


@pytest.mark.anyio("asyncio")
async def test_out_of_range_picks_never_reach_narration() -> None:
    tmdb = FakeTMDBClient(discover_results={("popularity.desc", 1): make_items(range(1, 4))})
    ai = FakeOpenRouterClient(
        picks=[Pick(index=7, vibe="Ghost"), Pick(index=1, vibe="Real"), Pick(index=3, vibe="Ghost")]
    )

    body = "".join(await _collect(_service(tmdb, ai), PreferenceRequest()))

    titles = titles_in_narration(body)
    assert len(titles) == 1
    assert titles[0] in {"Title 1", "Title 2", "Title 3"}
    assert "Ghost" not in ai.stream_prompts[0]


@pytest.mark.anyio("asyncio")
async def test_all_picks_invalid_skips_narration() -> None:
    tmdb = FakeTMDBClient(discover_results={("popularity.desc", 1): make_items(range(1, 4))})
    ai = FakeOpenRouterClient(picks=[Pick(index=40, vibe="Nope")])
    run = PipelineRun()

    chunks = await _collect(_service(tmdb, ai), PreferenceRequest(), run)

    assert chunks == [SEARCHING_MARKER, "[FOUND:3]\n"]
    assert ai.stream_prompts == []
    assert run.state is PipelineState.DONE


@pytest.mark.anyio("asyncio")
async def test_selection_failure_aborts_stream_after_found_marker() -> None:
    tmdb = FakeTMDBClient(discover_results={("popularity.desc", 1): make_items(range(1, 4))})
    ai = FakeOpenRouterClient(picks=UpstreamError("overloaded", service="OpenRouter", upstream_status=503))
    run = PipelineRun()
    received: list[str] = []

    with pytest.raises(UpstreamError):
        async for chunk in _service(tmdb, ai).stream(PreferenceRequest(), run):
            received.append(chunk)

    assert received == [SEARCHING_MARKER, "[FOUND:3]\n"]
    assert run.state is PipelineState.ERROR
    assert run.history == [
        PipelineState.IDLE,
        PipelineState.SEARCHING,
        PipelineState.FOUND,
        PipelineState.ERROR,
    ]


@pytest.mark.anyio("asyncio")
async def test_narration_failure_terminates_mid_stream() -> None:
    tmdb = FakeTMDBClient(discover_results={("popularity.desc", 1): make_items(range(1, 4))})
    ai = FakeOpenRouterClient(
        chunks=["**Title 1**"],
        stream_error=UpstreamError("connection reset", service="OpenRouter"),
    )
    run = PipelineRun()
    received: list[str] = []

    with pytest.raises(UpstreamError):
        async for chunk in _service(tmdb, ai).stream(PreferenceRequest(), run):
            received.append(chunk)

    assert received[-1] == "**Title 1**"
    assert run.history[-2:] == [PipelineState.STREAMING, PipelineState.ERROR]


def test_pipeline_run_rejects_skipped_or_repeated_states() -> None:
    run = PipelineRun()
    run.advance(PipelineState.SEARCHING)

    with pytest.raises(RuntimeError):
        run.advance(PipelineState.STREAMING)
    with pytest.raises(RuntimeError):
        run.advance(PipelineState.SEARCHING)

    run.advance(PipelineState.FOUND)
    run.advance(PipelineState.STREAMING)
    run.advance(PipelineState.DONE)
    with pytest.raises(RuntimeError):
        run.advance(PipelineState.ERROR)


def test_ensure_configured_reports_missing_credentials() -> None:
    settings = build_settings(OPENROUTER_API_KEY=None)
    service = RecommendationService(
        settings, FakeTMDBClient(settings), FakeOpenRouterClient(settings)
    )

    with pytest.raises(ConfigurationError, match="OpenRouter"):
        service.ensure_configured()

    settings = build_settings(TMDB_API_KEY=None)
    service = RecommendationService(
        settings, FakeTMDBClient(settings), FakeOpenRouterClient(settings)
    )
    with pytest.raises(ConfigurationError, match="TMDB"):
        service.ensure_configured()


@pytest.mark.anyio("asyncio")
async def test_oversized_selection_narrates_at_most_five_titles() -> None:
    tmdb = FakeTMDBClient(discover_results={("popularity.desc", 1): make_items(range(1, 21))})
    ai = FakeOpenRouterClient(picks=[Pick(index=index, vibe="Pick") for index in range(8)])

    body = "".join(await _collect(_service(tmdb, ai), PreferenceRequest()))

    assert "[FOUND:20]\n" in body
    assert len(titles_in_narration(body)) == 5
    assert ai.stream_prompts[0].count("Title: ") == 5
