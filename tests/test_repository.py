import pytest

from voice_avatar.repository import ConversationRepository


@pytest.fixture
async def repository(tmp_path):
    repo = ConversationRepository(tmp_path / "conversations.db")
    await repo.initialize()
    yield repo
    await repo.close()


@pytest.mark.asyncio
async def test_turns_are_listed_in_insertion_order(repository):
    await repository.append("c1", "user", "Hello")
    await repository.append("c2", "user", "Elsewhere")
    record = await repository.append("c1", "assistant", "Hi there.")

    turns = await repository.list("c1")

    assert record["role"] == "assistant"
    assert [(t["role"], t["content"]) for t in turns] == [
        ("user", "Hello"),
        ("assistant", "Hi there."),
    ]
    assert turns[0]["id"] < turns[1]["id"]
    assert turns[0]["created_at"].endswith("+00:00")


@pytest.mark.asyncio
async def test_unknown_role_is_rejected(repository):
    with pytest.raises(ValueError):
        await repository.append("c1", "system", "nope")


@pytest.mark.asyncio
async def test_clear_only_touches_one_conversation(repository):
    await repository.append("c1", "user", "Hello")
    await repository.append("c2", "user", "Keep me")

    await repository.clear("c1")

    assert await repository.list("c1") == []
    assert len(await repository.list("c2")) == 1


@pytest.mark.asyncio
async def test_initialize_is_idempotent(repository):
    await repository.initialize()
    await repository.append("c1", "user", "Still works")

    assert len(await repository.list("c1")) == 1
