from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from lfg.errors import (
    AlreadyInFilter,
    GameNotAllowed,
    NotInFilter,
    PermissionDenied,
    RateLimited,
    SessionNotFound,
    ValidationError,
)
from lfg.protocol import (
    CreateSessionRequest,
    FilterAction,
    GameFilterRequest,
    HistoryRequest,
    JoinSessionRequest,
    ListMembersRequest,
    ModifySessionRequest,
    RemovalMode,
    RemoveMemberRequest,
    SetAnnouncementTargetRequest,
    StatsRequest,
)


def _create(actor: str = "100", community: str = "g1", game: str = "Valorant", can_manage: bool = True, **kw):
    fields = dict(
        actor_id=actor,
        actor_name=f"user{actor}",
        community_id=community,
        community_name="Home",
        can_manage=can_manage,
        command_room_id="cmd",
        game=game,
        platform="PC",
        activity="Casual",
        gametag="tag",
        capacity=4,
    )
    fields.update(kw)
    return CreateSessionRequest(**fields)


# -----------------------------
# Rate limiting
# -----------------------------

@pytest.mark.asyncio
async def test_sixth_command_in_a_minute_is_rate_limited(make_service, scheduler):
    service = make_service(rate_quota=5)

    for _ in range(5):
        await service.dispatch(StatsRequest(actor_id="u1", community_id="g1"))
    with pytest.raises(RateLimited):
        await service.dispatch(StatsRequest(actor_id="u1", community_id="g1"))

    await scheduler.advance(60)
    await service.dispatch(StatsRequest(actor_id="u1", community_id="g1"))


@pytest.mark.asyncio
async def test_quota_is_shared_across_command_kinds(make_service):
    service = make_service(rate_quota=3)
    await service.dispatch(StatsRequest(actor_id="u1", community_id="g1"))
    await service.dispatch(HistoryRequest(actor_id="u1", community_id="g1"))
    with pytest.raises(SessionNotFound):
        await service.dispatch(JoinSessionRequest(actor_id="u1", community_id="g1", session_id="9999"))

    with pytest.raises(RateLimited):
        await service.dispatch(StatsRequest(actor_id="u1", community_id="g1"))
    # other actors are unaffected
    await service.dispatch(StatsRequest(actor_id="u2", community_id="g1"))


# -----------------------------
# Capabilities
# -----------------------------

@pytest.mark.asyncio
async def test_create_requires_manage(make_service, gateway):
    service = make_service()
    with pytest.raises(PermissionDenied):
        await service.dispatch(_create(can_manage=False))
    assert gateway.created == []


@pytest.mark.asyncio
async def test_modify_requires_manage(make_service):
    service = make_service()
    out = await service.dispatch(_create())
    with pytest.raises(PermissionDenied):
        await service.dispatch(
            ModifySessionRequest(actor_id="100", community_id="g1", session_id=out.snapshot.id, capacity=6)
        )


@pytest.mark.asyncio
async def test_join_and_kick_through_dispatch(make_service, gateway):
    service = make_service()
    sid = (await service.dispatch(_create())).snapshot.id

    snap = await service.dispatch(JoinSessionRequest(actor_id="200", community_id="g1", session_id=sid))
    assert snap.roster == ["100", "200"]

    gateway.occupants[gateway.voice_id(sid)] = ["100", "200"]
    ack = await service.dispatch(
        RemoveMemberRequest(actor_id="100", community_id="g1", session_id=sid, target_id="200", mode=RemovalMode.KICK)
    )
    assert ack.removed_from_roster
    assert service.registry.roster(sid) == ["100"]


@pytest.mark.asyncio
async def test_game_outside_own_filter_is_rejected_with_allowed_list(make_service):
    service = make_service()
    await service.dispatch(
        GameFilterRequest(actor_id="100", community_id="g1", can_manage=True, action=FilterAction.ADD, game="Dota 2")
    )

    with pytest.raises(GameNotAllowed) as exc:
        await service.dispatch(_create(game="Valorant"))
    assert exc.value.allowed == ["Dota 2"]


# -----------------------------
# Views
# -----------------------------

@pytest.mark.asyncio
async def test_history_pages_are_clamped(make_service):
    service = make_service()
    for i in range(12):
        await service.dispatch(_create(actor=str(i)))

    first = await service.dispatch(HistoryRequest(actor_id="x", community_id="g1", page=1))
    last = await service.dispatch(HistoryRequest(actor_id="x", community_id="g1", page=99))
    low = await service.dispatch(HistoryRequest(actor_id="x", community_id="g1", page=0))

    assert (first.total, first.total_pages, len(first.sessions)) == (12, 2, 10)
    assert (last.page, len(last.sessions)) == (2, 2)
    assert low.page == 1


@pytest.mark.asyncio
async def test_history_of_nothing(make_service):
    page = await make_service().dispatch(HistoryRequest(actor_id="x", community_id="g1", page=3))
    assert (page.page, page.total_pages, page.total) == (1, 1, 0)


@pytest.mark.asyncio
async def test_list_members_paginates_voice_occupants(make_service, gateway):
    service = make_service()
    out = await service.dispatch(_create())
    sid = out.snapshot.id
    gateway.occupants[gateway.voice_id(sid)] = [str(n) for n in range(12)]

    page2 = await service.dispatch(ListMembersRequest(actor_id="x", community_id="g1", session_id=sid, page=2))

    assert page2.in_voice == ["10", "11"]
    assert (page2.total_pages, page2.in_voice_count, page2.roster_count) == (2, 12, 1)
    with pytest.raises(ValidationError):
        await service.dispatch(ListMembersRequest(actor_id="x", community_id="g1", session_id=sid, page=3))


@pytest.mark.asyncio
async def test_stats(make_service):
    service = make_service()
    sid = (await service.dispatch(_create(capacity=5))).snapshot.id
    await service.dispatch(JoinSessionRequest(actor_id="7", community_id="g1", session_id=sid))

    st = await service.dispatch(StatsRequest(actor_id="x", community_id="g1"))

    assert (st.total_sessions, st.total_players, st.active_sessions, st.active_players) == (1, 5, 1, 2)


# -----------------------------
# Community settings
# -----------------------------

@pytest.mark.asyncio
async def test_set_announcement_target(make_service):
    service = make_service()
    with pytest.raises(PermissionDenied):
        await service.dispatch(SetAnnouncementTargetRequest(actor_id="1", community_id="g2", room_id="r"))

    target = await service.dispatch(
        SetAnnouncementTargetRequest(actor_id="1", community_id="g2", room_id="r", can_manage=True)
    )
    assert target.room_id == "r"
    assert await service.directory.get_target("g2") == "r"


@pytest.mark.asyncio
async def test_game_filter_actions(make_service):
    service = make_service()

    def req(action, game=None):
        return GameFilterRequest(actor_id="1", community_id="g2", can_manage=True, action=action, game=game)

    assert (await service.dispatch(req(FilterAction.VIEW))).accepts_all
    assert (await service.dispatch(req(FilterAction.ADD, "Valorant"))).games == ["Valorant"]
    assert (await service.dispatch(req(FilterAction.ADD, "Dota 2"))).games == ["Valorant", "Dota 2"]
    with pytest.raises(AlreadyInFilter):
        await service.dispatch(req(FilterAction.ADD, "Valorant"))
    with pytest.raises(NotInFilter):
        await service.dispatch(req(FilterAction.REMOVE, "Tekken 8"))
    assert (await service.dispatch(req(FilterAction.REMOVE, "Valorant"))).games == ["Dota 2"]
    assert (await service.dispatch(req(FilterAction.RESET))).games == []


@pytest.mark.asyncio
async def test_filter_requires_manage(make_service):
    with pytest.raises(PermissionDenied):
        await make_service().dispatch(GameFilterRequest(actor_id="1", community_id="g2", action=FilterAction.VIEW))


# -----------------------------
# Occupancy / maintenance
# -----------------------------

@pytest.mark.asyncio
async def test_voice_room_activity_maps_to_session(make_service, gateway, scheduler):
    service = make_service()
    sid = (await service.dispatch(_create())).snapshot.id

    assert await service.handle_voice_room_activity(gateway.voice_id(sid), empty=False) == sid
    assert await service.handle_voice_room_activity("unrelated-room", empty=True) is None

    await scheduler.advance(600)
    assert sid in service.registry


@pytest.mark.asyncio
async def test_maintenance_pass(make_service, gateway, scheduler):
    service = make_service()
    sid = (await service.dispatch(_create(actor="5"))).snapshot.id
    await service.handle_occupancy(sid, empty=False)

    result = await service.run_maintenance(scheduler.now() + 25 * 3600)

    assert result["expired_sessions"] == 1
    assert result["pruned_windows"] == 1
    assert sid not in service.registry
    assert len(gateway.torn_down) == 1


@pytest.mark.asyncio
async def test_maintenance_evicts_lapsed_settings_after_flush(make_service, repository, gateway, scheduler):
    service = make_service(repository)
    await service.dispatch(SetAnnouncementTargetRequest(actor_id="1", community_id="g2", room_id="room-g2", can_manage=True))
    await service.dispatch(
        GameFilterRequest(actor_id="1", community_id="g2", can_manage=True, action=FilterAction.ADD, game="Valorant")
    )

    await scheduler.advance(3600)
    result = await service.run_maintenance()

    assert result["evicted_entries"] == 2
    assert service.directory.sizes() == (0, 0)

    # still announced: the target and its filter come back from the store
    out = await service.dispatch(_create(game="Valorant"))
    assert out.fanout.delivered == ["g2"]
    assert await service.directory.get_filter("g2") == ["Valorant"]


@pytest.mark.asyncio
async def test_failed_flush_keeps_lapsed_settings_in_memory(make_service, repository, scheduler, monkeypatch):
    service = make_service(repository)
    service.directory.set_target("g2", "room-g2")

    def _boom(state):
        raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

    monkeypatch.setattr(repository, "save_all", _boom)
    await scheduler.advance(3600)

    result = await service.run_maintenance()

    assert result["evicted_entries"] == 0
    assert service.directory.targets() == {"g2": "room-g2"}


@pytest.mark.asyncio
async def test_stop_waits_for_running_timer_callbacks(make_service, scheduler):
    service = make_service()
    await service.start()
    await service.stop()
    assert scheduler.drained == 1
