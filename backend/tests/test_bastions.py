from __future__ import annotations

import pytest

from fortized.social.outcome import Rejection


@pytest.mark.anyio("asyncio")
async def test_bastion_registry_round_trip(services) -> None:
    await services.bastions.save_bastion("keep", {"name": "The Keep", "owner": "alice", "channels": ["general"]})
    await services.bastions.save_bastion("tower", {"name": "Tower", "owner": "bob"})

    keep = await services.bastions.get_bastion("keep")
    assert keep == {"name": "The Keep", "owner": "alice", "channels": ["general"], "id": "keep"}
    assert sorted(await services.bastions.list_bastions()) == ["keep", "tower"]
    assert await services.bastions.get_bastion("missing") is None


@pytest.mark.anyio("asyncio")
async def test_membership_is_a_set(services) -> None:
    assert await services.bastions.add_member("keep", "Alice") == ["alice"]
    assert await services.bastions.add_member("keep", "alice") == ["alice"]
    assert await services.bastions.add_member("keep", "bob") == ["alice", "bob"]
    assert await services.bastions.is_member("keep", "BOB")

    assert await services.bastions.remove_member("keep", "alice") == ["bob"]
    assert await services.bastions.remove_member("keep", "alice") == ["bob"]
    assert not await services.bastions.is_member("keep", "alice")


@pytest.mark.anyio("asyncio")
async def test_invite_uses_are_counted(services) -> None:
    await services.bastions.save_invite("abc123", {"bastionId": "keep", "createdBy": "alice"})
    assert (await services.bastions.get_invite("abc123"))["uses"] == 0

    assert (await services.bastions.increment_invite_uses("abc123")).data == 1
    assert (await services.bastions.increment_invite_uses("abc123")).data == 2
    missing = await services.bastions.increment_invite_uses("nope")
    assert missing.code is Rejection.NOT_FOUND


@pytest.mark.anyio("asyncio")
async def test_join_with_invite(services) -> None:
    await services.bastions.save_bastion("keep", {"name": "The Keep", "owner": "alice"})
    await services.bastions.add_member("keep", "alice")
    await services.bastions.save_invite("abc123", {"bastionId": "keep", "createdBy": "alice"})

    joined = await services.bastions.join_with_invite("abc123", "bob")
    assert joined.ok and joined.data == "keep" and joined.msg == "Joined bastion."
    assert await services.bastions.get_members("keep") == ["alice", "bob"]

    again = await services.bastions.join_with_invite("abc123", "bob")
    assert again.msg == "Already a member."
    assert (await services.bastions.get_invite("abc123"))["uses"] == 1

    assert (await services.bastions.join_with_invite("unknown", "bob")).code is Rejection.NOT_FOUND
    await services.bastions.save_invite("stale", {"bastionId": "gone"})
    assert (await services.bastions.join_with_invite("stale", "bob")).msg == "Bastion not found."


@pytest.mark.anyio("asyncio")
async def test_membership_is_mirrored_on_user_records(services) -> None:
    assert await services.identity.register("alice", "password1")
    assert await services.identity.register("bob", "password1")
    await services.bastions.save_bastion("keep", {"name": "The Keep", "owner": "alice"})
    await services.bastions.add_member("keep", "alice")
    await services.bastions.add_member("tower", "alice")
    await services.bastions.save_invite("abc123", {"bastionId": "keep", "createdBy": "alice"})

    await services.bastions.join_with_invite("abc123", "bob")
    assert (await services.identity.get_user("alice")).bastions == ["keep", "tower"]
    assert (await services.identity.get_user("bob")).bastions == ["keep"]

    await services.bastions.remove_member("keep", "alice")
    await services.bastions.remove_member("keep", "alice")
    assert (await services.identity.get_user("alice")).bastions == ["tower"]

    # members without a user record are not given one
    await services.bastions.add_member("keep", "ghost")
    assert await services.identity.get_user("ghost") is None
