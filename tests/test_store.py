"""
Tests for the key-value stores and BotRepository on top of them.
"""
import asyncio
from decimal import Decimal

import pytest

from conftest import OWNER
from gridworker.core.errors import InvariantViolation, PersistenceError
from gridworker.state.models import BotConfig, BotState, BotStatus, LevelSlot, Scope
from gridworker.state.repository import BotRepository
from gridworker.state.store import JsonFileStore, MemoryStore


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return JsonFileStore(str(tmp_path / "data"))


class TestStores:
    @pytest.mark.asyncio
    async def test_read_missing_returns_default(self, any_store):
        assert await any_store.read("nope", {"x": 1}) == {"x": 1}
        assert await any_store.read("nope") is None

    @pytest.mark.asyncio
    async def test_write_then_read(self, any_store):
        await any_store.write("state/bot1", {"status": "running"})
        assert await any_store.read("state/bot1") == {"status": "running"}

    @pytest.mark.asyncio
    async def test_read_returns_a_copy(self, any_store):
        await any_store.write("k", {"items": [1]})
        value = await any_store.read("k")
        value["items"].append(2)
        assert await any_store.read("k") == {"items": [1]}

    @pytest.mark.asyncio
    async def test_concurrent_updates_do_not_lose_writes(self, any_store):
        def bump(d):
            d = dict(d or {})
            d["n"] = d.get("n", 0) + 1
            return d

        await asyncio.gather(*(any_store.update("counter", bump, {}) for _ in range(25)))
        assert (await any_store.read("counter"))["n"] == 25

    @pytest.mark.asyncio
    async def test_delete_and_keys(self, any_store):
        await any_store.write("state/a", {})
        await any_store.write("state/b", {})
        await any_store.write("bots", {})
        assert await any_store.keys("state/") == ["state/a", "state/b"]
        await any_store.delete("state/a")
        await any_store.delete("state/missing")
        assert await any_store.keys("state/") == ["state/b"]


class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path):
        data_dir = str(tmp_path / "data")
        await JsonFileStore(data_dir).write(f"activity/{OWNER}", {"next_seq": 3})
        assert await JsonFileStore(data_dir).read(f"activity/{OWNER}") == {"next_seq": 3}

    @pytest.mark.asyncio
    async def test_key_cannot_escape_data_dir(self, tmp_path):
        store = JsonFileStore(str(tmp_path / "data"))
        with pytest.raises(PersistenceError):
            await store.write("../..", {})
        with pytest.raises(PersistenceError):
            await store.write("state/../evil", {"x": 1})
        await store.write("state/a b", {"x": 1})
        assert (tmp_path / "data" / "state" / "a_b.json").exists()

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_persistence_error(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        (tmp_path / "bots.json").write_text("{not json")
        with pytest.raises(PersistenceError):
            await store.read("bots")

    @pytest.mark.asyncio
    async def test_unserializable_value(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        with pytest.raises(PersistenceError):
            await store.write("bad", {"x": object()})
        assert not (tmp_path / "bad.json").exists()


class TestRepository:
    @pytest.mark.asyncio
    async def test_config_round_trip_and_owner_filter(self, repo, make_config):
        await repo.save_config(make_config(bot_id="a"))
        await repo.save_config(make_config(bot_id="b", owner="bob@example.com"))

        assert [c.bot_id for c in await repo.list_configs()] == ["a", "b"]
        assert [c.bot_id for c in await repo.list_configs(OWNER)] == ["a"]
        cfg = await repo.get_config("a")
        assert cfg == make_config(bot_id="a")
        assert await repo.get_config("zzz") is None

    @pytest.mark.asyncio
    async def test_unreadable_config_is_skipped_in_listing(self, repo, store, make_config):
        await repo.save_config(make_config(bot_id="good"))
        bots = await store.read("bots")
        bots["bad"] = {"owner": OWNER, "lower": "abc"}
        await store.write("bots", bots)

        assert [c.bot_id for c in await repo.list_configs()] == ["good"]
        assert len(await repo.list_raw_configs()) == 2
        with pytest.raises(InvariantViolation):
            await repo.get_config("bad")

    @pytest.mark.asyncio
    async def test_update_config(self, repo, make_config):
        await repo.save_config(make_config())
        new = await repo.update_config("bot1", lambda c: c.with_changes(levels=5))
        assert new.levels == 5
        assert new.updated_at_ms > 0
        assert (await repo.get_config("bot1")).levels == 5
        assert await repo.update_config("missing", lambda c: c) is None

    @pytest.mark.asyncio
    async def test_delete_removes_state(self, repo, make_config):
        await repo.save_config(make_config())
        await repo.save_state("bot1", BotState(status=BotStatus.STOPPED))
        removed = await repo.delete_config("bot1")
        assert removed["symbol"] == "BTCUSD"
        assert await repo.get_config("bot1") is None
        assert (await repo.load_state("bot1")).status == BotStatus.CREATED
        assert await repo.delete_config("bot1") is None

    @pytest.mark.asyncio
    async def test_state_round_trip(self, repo):
        state = BotState(status=BotStatus.RUNNING, product_id=27,
                         slots={0: LevelSlot("buy", "11", Decimal("1")), 1: LevelSlot(None)})
        await repo.save_state("bot1", state)
        loaded = await repo.load_state("bot1")
        assert loaded.slots == state.slots
        assert loaded.status == BotStatus.RUNNING

    @pytest.mark.asyncio
    async def test_stop_flag_set_once(self, repo):
        scope = Scope(OWNER, "delta_india")
        assert not (await repo.get_stop_flag(scope)).set
        assert await repo.set_stop_flag(scope) is True
        assert await repo.set_stop_flag(scope) is False
        flag = await repo.get_stop_flag(scope)
        assert flag.set and flag.set_at_ms > 0
        assert not (await repo.get_stop_flag(Scope(OWNER, "delta_global"))).set

        await repo.clear_stop_flag(scope)
        assert not (await repo.get_stop_flag(scope)).set

    @pytest.mark.asyncio
    async def test_repository_on_file_store(self, tmp_path, make_config):
        repo = BotRepository(JsonFileStore(str(tmp_path)))
        await repo.save_config(make_config(tick_size=Decimal("0.5")))
        cfg = await BotRepository(JsonFileStore(str(tmp_path))).get_config("bot1")
        assert cfg.tick_size == Decimal("0.5")
        assert isinstance(cfg, BotConfig)
