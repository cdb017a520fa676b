"""Tests for the long-term memory ledger: extraction, scoring, sweeps."""

import asyncio
import json

import pytest

from tutor_pipeline.core.routing_types import MemoryEntry, MemoryStatus
from tutor_pipeline.memory.conversation_manager import InMemoryMessageLog
from tutor_pipeline.memory.ledger_store import InMemoryLedgerStore, JsonLedgerStore
from tutor_pipeline.memory.memory_system import (
    DAY_SECONDS,
    LedgerConfig,
    MemoryLedger,
    extract_facts,
    importance,
    jaccard,
)

T0 = 1_700_000_000.0


def stale_entry(**overrides):
    fields = dict(
        user_id="u1",
        content="Likes regex golf",
        type="preference",
        created_at=T0,
        last_accessed_at=T0,
        confidence=0.3,
    )
    fields.update(overrides)
    return MemoryEntry(**fields)


class TestExtraction:
    def test_user_turns_only(self):
        facts = extract_facts(
            [
                {"role": "user", "content": "My name is Alice and I want to learn Rust"},
                {"role": "assistant", "content": "I love teaching, I'm a teacher"},
            ]
        )
        assert [(f.type, f.content) for f in facts] == [
            ("fact", "Name is Alice"),
            ("goal", "Wants to learn Rust"),
        ]
        assert facts[1].namespace == {"category": "education", "topic": "learning_goals"}

    def test_current_learning(self):
        facts = extract_facts([{"role": "user", "content": "I'm studying linear algebra."}])
        assert facts[0].content == "Is currently learning linear algebra"


class TestImportance:
    def test_monotonic_in_access_count(self):
        now = T0 + 10 * DAY_SECONDS
        scores = [importance(stale_entry(access_count=n), now) for n in range(6)]
        assert scores == sorted(scores)
        assert scores[-1] > scores[0]

    def test_decays_with_age(self):
        entry = stale_entry()
        assert importance(entry, T0 + 30 * DAY_SECONDS) < importance(entry, T0 + DAY_SECONDS)

    def test_flagged_bypasses_decay(self):
        assert importance(stale_entry(user_flagged=True), T0 + 1000 * DAY_SECONDS) == 1.0

    def test_jaccard(self):
        assert jaccard("Likes chess", "likes CHESS") == 1.0
        assert jaccard("", "x") == 0.0


class TestIngest:
    async def test_duplicate_merges_instead_of_creating(self, ledger):
        turns = [{"role": "user", "content": "My name is Alice"}]
        await ledger.ingest("u1", "c1", turns, now=T0)
        merged = await ledger.ingest("u1", "c2", turns, now=T0 + 60)

        entries = await ledger.store.list_by_user("u1")
        assert len(entries) == 1
        assert merged[0].access_count == 1
        assert merged[0].last_accessed_at == T0 + 60

    async def test_token_overlap_without_gateway(self):
        ledger = MemoryLedger(InMemoryLedgerStore())
        await ledger.ingest("u1", "c1", [{"role": "user", "content": "I love chess"}], now=T0)
        await ledger.ingest("u1", "c1", [{"role": "user", "content": "I like chess"}], now=T0)
        entries = await ledger.store.list_by_user("u1")
        assert len(entries) == 1
        assert entries[0].access_count == 1

    async def test_nothing_to_extract(self, ledger):
        assert await ledger.ingest("u1", "c1", [{"role": "user", "content": "ok"}]) == []


class TestSweep:
    async def test_archives_decayed_entries_once(self):
        ledger = MemoryLedger(InMemoryLedgerStore())
        entry = stale_entry()
        await ledger.store.add(entry)
        cutoff = T0 + 200 * DAY_SECONDS

        first = await ledger.sweep(cutoff)
        second = await ledger.sweep(cutoff)

        assert first.archived == 1
        assert entry.status == MemoryStatus.ARCHIVED
        assert entry.archived_at == cutoff
        assert second.examined == 0
        assert second.archived == 0

    async def test_rerun_with_same_cutoff_changes_nothing(self):
        ledger = MemoryLedger(InMemoryLedgerStore())
        entry = stale_entry(confidence=0.9)
        await ledger.store.add(entry)
        cutoff = T0 + 20 * DAY_SECONDS

        first = await ledger.sweep(cutoff)
        snapshot = entry.to_dict()
        second = await ledger.sweep(cutoff)

        assert first.rescored == 1
        assert second.rescored == 0
        assert entry.to_dict() == snapshot

    async def test_flagged_and_recent_entries_survive(self):
        ledger = MemoryLedger(InMemoryLedgerStore())
        flagged = stale_entry(user_flagged=True)
        young = stale_entry(created_at=T0 + 150 * DAY_SECONDS, last_accessed_at=T0 + 150 * DAY_SECONDS)
        for e in (flagged, young):
            await ledger.store.add(e)

        report = await ledger.sweep(T0 + 200 * DAY_SECONDS)
        assert report.archived == 0
        assert flagged.status == young.status == MemoryStatus.ACTIVE

    async def test_restore(self):
        ledger = MemoryLedger(InMemoryLedgerStore())
        entry = stale_entry()
        await ledger.store.add(entry)
        await ledger.sweep(T0 + 200 * DAY_SECONDS)

        restored = await ledger.restore(entry.id, now=T0 + 201 * DAY_SECONDS)
        assert restored.status == MemoryStatus.ACTIVE
        assert restored.archived_at is None
        assert [e.id for e in await ledger.profile_facts("u1")] == [entry.id]


class TestReadPaths:
    async def test_recall_ranks_and_marks_accessed(self, ledger):
        await ledger.ingest(
            "u1", "c1",
            [{"role": "user", "content": "I love chess. I want to learn Rust"}],
            now=T0,
        )
        ranked = await ledger.recall("u1", "learn Rust", top_k=1, now=T0 + 10)

        assert ranked[0][0].content == "Wants to learn Rust"
        assert ranked[0][0].access_count == 1
        assert ranked[0][0].last_accessed_at == T0 + 10

    async def test_profile_ranks_by_recomputed_importance(self):
        ledger = MemoryLedger(InMemoryLedgerStore())
        now = T0 + 60 * DAY_SECONDS
        stale = stale_entry(content="Likes old stuff", importance_score=0.95)
        fresh = stale_entry(
            content="Name is Alice", type="fact", created_at=now, last_accessed_at=now,
            confidence=0.9, importance_score=0.1,
        )
        for e in (stale, fresh):
            await ledger.store.add(e)

        ranked = await ledger.profile_facts("u1", now=now)
        assert [e.content for e in ranked] == ["Name is Alice", "Likes old stuff"]

    async def test_vector_cache_is_bounded(self, gateway):
        ledger = MemoryLedger(InMemoryLedgerStore(), gateway, LedgerConfig(vector_cache_size=2))
        for text in ("Likes chess", "Likes go", "Likes poker"):
            await ledger.store.add(stale_entry(content=text))

        await ledger.recall("u1", "chess", now=T0)
        assert len(ledger._vectors) == 2

    async def test_archived_entries_excluded_from_profile(self, ledger):
        entry = stale_entry()
        entry.status = MemoryStatus.ARCHIVED
        await ledger.store.add(entry)
        assert await ledger.profile_facts("u1") == []

    async def test_flag_and_health_metrics(self, ledger):
        await ledger.ingest("u1", "c1", [{"role": "user", "content": "My name is Alice"}], now=T0)
        entry = (await ledger.store.list_by_user("u1"))[0]
        await ledger.flag(entry.id)

        metrics = await ledger.health_metrics("u1")
        assert metrics["total"] == 1
        assert metrics["flagged"] == 1
        assert metrics["type_distribution"] == {"fact": 1}
        assert metrics["average_importance"] == 1.0

    async def test_flag_unknown_entry(self, ledger):
        with pytest.raises(KeyError):
            await ledger.flag("missing")


class TestConsolidation:
    async def test_marker_makes_reruns_noops(self, ledger):
        log = InMemoryMessageLog()
        log.append("c1", "user", "My name is Alice", user_id="u1", created_at=T0)
        log.append("c1", "user", "I love chess", user_id="u1", created_at=T0 + 47 * 3600)
        cutoff = T0 + 48 * 3600

        assert await ledger.consolidate(log.conversations(), cutoff) == 1
        assert await ledger.consolidate(log.conversations(), cutoff) == 0
        assert [e.content for e in await ledger.store.list_by_user("u1")] == ["Name is Alice"]

        assert await ledger.consolidate(log.conversations(), cutoff + 24 * 3600) == 1

    async def test_turns_ingested_per_turn_are_not_counted_again(self, ledger):
        log = InMemoryMessageLog()
        turn = [{"role": "user", "content": "My name is Alice"}]
        await ledger.ingest("u1", "c1", turn, now=T0)
        log.append("c1", "user", "My name is Alice", user_id="u1", created_at=T0, ingested=True)

        assert await ledger.consolidate(log.conversations(), T0 + 2 * DAY_SECONDS) == 0
        entries = await ledger.store.list_by_user("u1")
        assert [(e.content, e.access_count) for e in entries] == [("Name is Alice", 0)]


class TestJsonStore:
    async def test_persists_entries_and_markers(self, tmp_path):
        path = tmp_path / "ledger.json"
        store = JsonLedgerStore(str(path))
        entry = stale_entry()
        await store.add(entry)
        await store.set_marker("consolidated:c1", "1.0")

        data = json.loads(path.read_text())
        assert data["markers"] == {"consolidated:c1": "1.0"}

        reloaded = JsonLedgerStore(str(path))
        assert (await reloaded.get(entry.id)).content == "Likes regex golf"
        assert await reloaded.get_marker("consolidated:c1") == "1.0"

    async def test_concurrent_first_reads_see_loaded_file(self, tmp_path):
        path = tmp_path / "ledger.json"
        await JsonLedgerStore(str(path)).add(stale_entry())

        store = JsonLedgerStore(str(path))
        first, second = await asyncio.gather(store.list_by_user("u1"), store.list_by_user("u1"))
        assert len(first) == len(second) == 1

    async def test_write_during_first_load_keeps_existing_entries(self, tmp_path):
        path = tmp_path / "ledger.json"
        old = stale_entry()
        await JsonLedgerStore(str(path)).add(old)

        store = JsonLedgerStore(str(path))
        new = stale_entry(content="Likes chess")
        await asyncio.gather(store.list_by_user("u1"), store.add(new))

        ids = {row["id"] for row in json.loads(path.read_text())["entries"]}
        assert ids == {old.id, new.id}

    async def test_ledger_config_defaults(self):
        config = LedgerConfig()
        assert config.weight_recency + config.weight_frequency + config.weight_confidence == pytest.approx(1.0)
