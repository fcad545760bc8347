from datetime import timedelta

import pytest

from overlooked.domain.support.models import SupportStatus
from overlooked.infra.errors import Conflict, InvalidRequest, NotFound, NotSignedIn


@pytest.mark.asyncio
async def test_support_and_status(services, backend):
    support = await services.support.support("me", "ana")

    assert (support.supporter_id, support.supported_id) == ("me", "ana")
    assert await services.support.status("me", "ana") is SupportStatus.SUPPORTING
    assert await services.support.status("ana", "me") is SupportStatus.SUPPORTED_BY
    assert await services.support.status("me", "bo") is SupportStatus.NONE
    assert await services.support.status(None, "ana") is SupportStatus.NONE


@pytest.mark.asyncio
async def test_support_twice_conflicts(services):
    await services.support.support("me", "ana")

    with pytest.raises(Conflict) as exc:
        await services.support.support("me", "ana")
    assert exc.value.reason == "already_supporting"


@pytest.mark.asyncio
async def test_support_validation(services):
    with pytest.raises(InvalidRequest):
        await services.support.support("me", "me")
    with pytest.raises(InvalidRequest):
        await services.support.support("me", "")
    with pytest.raises(NotSignedIn):
        await services.support.support(None, "ana")


@pytest.mark.asyncio
async def test_unsupport(services, backend):
    await services.support.support("me", "ana")

    await services.support.unsupport("me", "ana")

    assert backend.rows("user_supports") == []
    with pytest.raises(NotFound):
        await services.support.unsupport("me", "ana")


@pytest.mark.asyncio
async def test_supporters_and_supporting_newest_first(services, backend, clock):
    backend.seed("users", [{"id": "ana", "full_name": "Ana"}, {"id": "bo", "full_name": "Bo"}])
    backend.seed(
        "user_supports",
        [
            {"supporter_id": "ana", "supported_id": "me", "created_at": clock() - timedelta(days=2)},
            {"supporter_id": "bo", "supported_id": "me", "created_at": clock() - timedelta(days=1)},
            {"supporter_id": "me", "supported_id": "ana", "created_at": clock()},
        ],
    )

    supporters = await services.support.supporters("me")
    supporting = await services.support.supporting("me")

    assert [edge.user_id for edge in supporters] == ["bo", "ana"]
    assert supporters[0].to_dict()["full_name"] == "Bo"
    assert [edge.user_id for edge in supporting] == ["ana"]
