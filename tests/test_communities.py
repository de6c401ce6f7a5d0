from __future__ import annotations

import pytest

from lfg.communities import CommunityDirectory
from lfg.errors import ValidationError
from lfg.repository import PersistedState


@pytest.mark.asyncio
async def test_missing_target_is_read_through(repository, scheduler):
    repository.save_all(PersistedState(targets={"g2": "room-2"}))
    directory = CommunityDirectory(repository, clock=scheduler.now)

    assert await directory.get_target("g2") == "room-2"
    assert directory.targets() == {"g2": "room-2"}
    assert await directory.get_target("unknown") is None


@pytest.mark.asyncio
async def test_lapsed_filter_in_memory_wins_over_store(repository, scheduler):
    directory = CommunityDirectory(repository, target_ttl=1800, filter_ttl=3600, clock=scheduler.now)
    repository.save_all(PersistedState(filters={"g2": ["Valorant"]}))
    # reset held only in memory, its save never went through
    directory.load({}, {"g2": ["Valorant"]})
    directory.reset_filter("g2")

    await scheduler.advance(3600)

    assert await directory.get_filter("g2") == []
    assert await directory.is_game_allowed("g2", "Tekken 8")


@pytest.mark.asyncio
async def test_evicted_entries_are_read_back_from_store(repository, scheduler):
    directory = CommunityDirectory(repository, target_ttl=1800, filter_ttl=3600, clock=scheduler.now)
    repository.save_all(PersistedState(targets={"g2": "room-2"}, filters={"g2": ["Valorant", "Tekken 8"]}))
    directory.load({"g2": "room-2"}, {"g2": ["Valorant", "Tekken 8"]})

    await scheduler.advance(1800)
    assert directory.evict_expired() == 1
    await scheduler.advance(1800)
    assert directory.evict_expired() == 1
    assert directory.sizes() == (0, 0)

    assert await directory.all_targets() == {"g2": "room-2"}
    assert await directory.get_target("g2") == "room-2"
    assert await directory.get_filter("g2") == ["Valorant", "Tekken 8"]
    assert directory.sizes() == (1, 1)


@pytest.mark.asyncio
async def test_nothing_is_evicted_without_a_store(scheduler):
    directory = CommunityDirectory(None, clock=scheduler.now)
    directory.set_target("g2", "room-2")
    await scheduler.advance(10 ** 5)
    assert directory.evict_expired() == 0
    assert await directory.get_target("g2") == "room-2"


@pytest.mark.asyncio
async def test_filter_without_store_defaults_to_accept_all(scheduler):
    directory = CommunityDirectory(None, clock=scheduler.now)
    assert await directory.is_game_allowed("g1", "Anything")
    await directory.add_game("g1", "Smite")
    assert not await directory.is_game_allowed("g1", "Anything")
    assert await directory.is_game_allowed("g1", "Smite")


def test_target_needs_a_room(scheduler):
    with pytest.raises(ValidationError):
        CommunityDirectory(None, clock=scheduler.now).set_target("g1", "")
