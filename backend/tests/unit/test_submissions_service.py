from datetime import datetime, timedelta, timezone

import pytest

from overlooked.domain.submissions.models import (
    FeaturedSort,
    Submission,
    extract_youtube_id,
    month_window,
    normalise_streak,
)
from overlooked.domain.xp.models import XP_AMOUNTS, XPReason
from overlooked.infra.errors import BackendFailure, Conflict, Forbidden, InvalidRequest, NotFound, NotSignedIn
from overlooked.settings import settings

VIDEO = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def _seed_users(backend):
    backend.seed(
        "users",
        [
            {"id": "pro", "tier": "pro", "xp": 0, "level": 1},
            {"id": "free", "tier": "free", "xp": 0, "level": 1},
        ],
    )


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtube.com/watch?feature=share&v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ",
        "https://www.youtube.com/shorts/dQw4w9WgXcQ",
    ],
)
def test_extract_youtube_id(url):
    assert extract_youtube_id(url) == "dQw4w9WgXcQ"


def test_extract_youtube_id_rejects_other_links():
    assert extract_youtube_id("https://vimeo.com/12345678") is None
    assert extract_youtube_id("") is None


def test_normalise_streak_shapes():
    assert normalise_streak(3) == 3
    assert normalise_streak("4") == 4
    assert normalise_streak([{"get_monthly_submission_streak": 2}]) == 2
    assert normalise_streak({"streak": 5.0}) == 5
    assert normalise_streak({"other": 1}) == 0
    assert normalise_streak(True) == 0
    assert normalise_streak(float("nan")) == 0
    assert normalise_streak("many") == 0
    assert normalise_streak(None) == 0


def test_stored_objects_skip_remote_urls():
    submission = Submission(
        id="s1",
        user_id="u",
        storage_path="uploads/abc/source.mp4",
        thumbnail_url="https://i.ytimg.com/vi/x/0.jpg",
    )
    assert submission.stored_objects() == ["uploads/abc/source.mp4"]


@pytest.mark.asyncio
async def test_submit_requires_pro_tier(services, backend):
    _seed_users(backend)

    with pytest.raises(Forbidden) as denied:
        await services.submissions.submit_to_challenge("free", title="Run", word="echo", youtube_url=VIDEO)

    assert denied.value.reason == "tier_too_low"
    assert backend.rows("submissions") == []


@pytest.mark.asyncio
async def test_submit_records_quota_and_xp(services, backend):
    _seed_users(backend)

    submission = await services.submissions.submit_to_challenge(
        "pro", title=" Run ", word="echo", youtube_url=VIDEO
    )

    assert submission.title == "Run"
    assert submission.youtube_id == "dQw4w9WgXcQ"
    assert (await services.membership.submission_quota("pro")).remaining == 1
    assert backend.rows("xp_events")[0]["amount"] == 300


@pytest.mark.asyncio
async def test_submit_validation(services, backend):
    _seed_users(backend)
    submissions = services.submissions

    with pytest.raises(InvalidRequest) as missing:
        await submissions.submit_to_challenge("pro", title="", word="echo", youtube_url=VIDEO)
    assert missing.value.reason == "fields_required"

    with pytest.raises(InvalidRequest) as bad_url:
        await submissions.submit_to_challenge("pro", title="Run", word="echo", youtube_url="https://example.com")
    assert bad_url.value.reason == "invalid_youtube_url"

    await submissions.submit_to_challenge("pro", title="Run", word="echo", youtube_url=VIDEO)
    with pytest.raises(Conflict):
        await submissions.submit_to_challenge("pro", title="Again", word="echo", youtube_url=VIDEO)


@pytest.mark.asyncio
async def test_delete_youtube_only_submission_skips_storage(services, backend):
    backend.seed("submissions", {"id": "s1", "user_id": "pro", "youtube_url": VIDEO})
    backend.seed("user_votes", {"submission_id": "s1", "user_id": "fan"})

    await services.submissions.delete_submission("pro", "s1")

    assert backend.rows("submissions") == []
    assert backend.rows("user_votes") == []
    assert backend.storage.remove_calls == []
    assert backend.rpc_calls[-1] == ("delete_submission", {"p_submission_id": "s1", "p_user_id": "pro"})


@pytest.mark.asyncio
async def test_delete_stored_submission_removes_files(services, backend):
    backend.seed(
        "submissions",
        {
            "id": "s2",
            "user_id": "pro",
            "storage_path": "uploads/v1/source.mp4",
            "thumbnail_url": "uploads/v1/thumb.jpg",
        },
    )
    backend.storage.objects[("films", "uploads/v1/source.mp4")] = (b"film", "video/mp4")

    await services.submissions.delete_submission("pro", "s2")

    assert backend.storage.remove_calls == [("films", ("uploads/v1/source.mp4", "uploads/v1/thumb.jpg"))]
    assert ("films", "uploads/v1/source.mp4") not in backend.storage.objects


@pytest.mark.asyncio
async def test_delete_survives_storage_failure(services, backend, monkeypatch):
    backend.seed("submissions", {"id": "s3", "user_id": "pro", "storage_path": "uploads/v2/source.mp4"})

    async def _fail(bucket, paths):
        raise BackendFailure("storage_down")

    monkeypatch.setattr(backend.storage, "remove", _fail)

    deleted = await services.submissions.delete_submission("pro", "s3")

    assert deleted.id == "s3"
    assert backend.rows("submissions") == []


@pytest.mark.asyncio
async def test_delete_requires_owner(services, backend):
    backend.seed("submissions", {"id": "s4", "user_id": "pro", "youtube_url": VIDEO})

    with pytest.raises(Forbidden):
        await services.submissions.delete_submission("free", "s4")
    assert len(backend.rows("submissions")) == 1


@pytest.mark.asyncio
async def test_playback_url_is_cached_until_near_expiry(services, backend, clock):
    backend.storage.objects[("films", "uploads/v3/source.mp4")] = (b"film", "video/mp4")

    first = await services.submissions.playback_url("uploads/v3/source.mp4")
    second = await services.submissions.playback_url("uploads/v3/source.mp4")
    assert first == second
    assert len(backend.storage.signed_requests) == 1

    clock.advance(151)
    third = await services.submissions.playback_url("uploads/v3/source.mp4")
    assert third != first
    assert len(backend.storage.signed_requests) == 2


@pytest.mark.asyncio
async def test_begin_video_upload_creates_session(services):
    session = await services.submissions.begin_video_upload("pro", "cut.mov")

    assert session.bucket == "films"
    assert session.path.startswith("uploads/") and session.path.endswith("/source.mp4")
    assert session.content_type == "video/quicktime"


@pytest.mark.asyncio
async def test_monthly_streak(services, backend):
    async def _streak(backend, **params):
        return [{"get_monthly_submission_streak": 3}]

    backend.register_rpc("get_monthly_submission_streak", _streak)

    assert await services.submissions.monthly_streak("pro") == 3
    assert await services.submissions.monthly_streak(None) == 0


def _seed_voting(backend, clock):
    backend.seed(
        "users",
        [
            {"id": "pro", "tier": "pro", "xp": 0, "level": 1},
            {"id": "fan", "tier": "free", "xp": 0, "level": 1},
        ],
    )
    backend.seed("submissions", {"id": "s1", "user_id": "pro", "youtube_url": VIDEO, "votes": 0})


def test_month_window_rolls_over_december():
    start, end = month_window(datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc))

    assert start == datetime(2024, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_vote_toggles_and_recounts(services, backend, clock):
    _seed_voting(backend, clock)

    cast = await services.submissions.vote("fan", "s1")

    assert (cast.voted, cast.votes, cast.votes_left) == (True, 1, settings.votes_per_month - 1)
    assert backend.rows("submissions")[0]["votes"] == 1
    (row,) = backend.rows("user_votes")
    assert (row["user_id"], row["submission_id"], row["voted_at"]) == ("fan", "s1", clock())
    fan = next(user for user in backend.rows("users") if user["id"] == "fan")
    assert fan["xp"] == XP_AMOUNTS[XPReason.VOTE_SUBMISSION]

    withdrawn = await services.submissions.vote("fan", "s1")

    assert (withdrawn.voted, withdrawn.votes, withdrawn.votes_left) == (False, 0, settings.votes_per_month)
    assert backend.rows("submissions")[0]["votes"] == 0
    assert backend.rows("user_votes") == []


@pytest.mark.asyncio
async def test_vote_rejects_owner_and_missing_submission(services, backend, clock):
    _seed_voting(backend, clock)

    with pytest.raises(Forbidden) as own:
        await services.submissions.vote("pro", "s1")
    assert own.value.reason == "cannot_vote_own_submission"

    with pytest.raises(NotFound):
        await services.submissions.vote("fan", "nope")

    with pytest.raises(NotSignedIn):
        await services.submissions.vote(None, "s1")


@pytest.mark.asyncio
async def test_monthly_vote_cap(services, backend, clock):
    _seed_voting(backend, clock)
    cap = settings.votes_per_month
    backend.seed(
        "user_votes",
        [{"user_id": "fan", "submission_id": f"other-{index}", "voted_at": clock()} for index in range(cap)],
    )
    # last month's votes do not count
    backend.seed("user_votes", {"user_id": "fan", "submission_id": "old", "voted_at": clock() - timedelta(days=31)})

    assert await services.submissions.votes_left("fan") == 0
    with pytest.raises(Forbidden) as capped:
        await services.submissions.vote("fan", "s1")
    assert capped.value.reason == "no_votes_left"

    # withdrawing is always allowed and hands the vote back
    backend.seed("submissions", {"id": "other-0", "user_id": "pro", "votes": 1})
    withdrawn = await services.submissions.vote("fan", "other-0")
    assert withdrawn.voted is False
    assert withdrawn.votes_left == 1

    clock.advance(17 * 24 * 3600)
    assert await services.submissions.votes_left("fan") == cap


@pytest.mark.asyncio
async def test_list_featured_sorts(services, backend, clock):
    base = clock()
    backend.seed(
        "submissions",
        [
            {"id": "a", "user_id": "u1", "votes": 3, "created_at": base - timedelta(days=3)},
            {"id": "b", "user_id": "u2", "votes": 7, "created_at": base - timedelta(days=1)},
            {"id": "c", "user_id": "u3", "votes": 3, "created_at": base - timedelta(days=2)},
            {"id": "d", "user_id": "u4", "votes": 0, "created_at": base},
        ],
    )

    async def _ids(sort):
        return [submission.id for submission in await services.submissions.list_featured(sort)]

    assert await _ids(FeaturedSort.NEWEST) == ["d", "b", "c", "a"]
    assert await _ids("oldest") == ["a", "c", "b", "d"]
    assert await _ids(FeaturedSort.MOST_VOTED) == ["b", "c", "a", "d"]
    assert await _ids(FeaturedSort.LEAST_VOTED) == ["d", "c", "a", "b"]
    assert [s.id for s in await services.submissions.list_featured("newest", limit=2)] == ["d", "b"]

    with pytest.raises(InvalidRequest):
        await services.submissions.list_featured("random")


@pytest.mark.asyncio
async def test_voted_ids_marks_only_callers_votes(services, backend, clock):
    backend.seed(
        "user_votes",
        [
            {"user_id": "fan", "submission_id": "a", "voted_at": clock()},
            {"user_id": "other", "submission_id": "b", "voted_at": clock()},
        ],
    )

    assert await services.submissions.voted_ids("fan", ["a", "b"]) == {"a"}
    assert await services.submissions.voted_ids(None, ["a"]) == set()
