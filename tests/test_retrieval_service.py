"""Tests for the RetrievalService high-level API."""

import pytest

from contextengine.config import BackendKind, EngineConfig, QueryConfig, StoreConfig
from contextengine.errors import (
    BatchIngestError,
    ConfigurationError,
    NotFoundError,
    ValidationError,
)
from contextengine.interfaces import ContextKind, ContextPatch
from contextengine.providers.base import ProviderStatus
from contextengine.providers.memory import BoundedMemoryStore
from contextengine.providers.redis import RedisContextStore
from contextengine.services import RetrievalService


@pytest.fixture
async def service(test_config, clock):
    """Provide a started service on the in-process backend."""
    service = RetrievalService(test_config)
    await service.start()
    service.store._now = clock
    yield service
    await service.stop()


class TestLifecycle:
    """Start/stop behaviour."""

    async def test_start_and_stop(self, test_config):
        service = RetrievalService(test_config)
        assert not service._started

        await service.start()
        assert service._started
        assert isinstance(service.store, BoundedMemoryStore)

        await service.stop()
        assert not service._started

    async def test_context_manager(self, test_config):
        async with RetrievalService(test_config) as service:
            assert service._started
        assert not service._started

    async def test_double_start_and_stop_are_safe(self, test_config):
        service = RetrievalService(test_config)
        await service.start()
        await service.start()
        await service.stop()
        await service.stop()

    async def test_start_validates_config(self):
        config = EngineConfig(store=StoreConfig(max_size=0))
        with pytest.raises(ConfigurationError) as exc_info:
            await RetrievalService(config).start()
        assert any("max_size" in e for e in exc_info.value.errors)

    async def test_operations_require_start(self, test_config):
        with pytest.raises(RuntimeError):
            await RetrievalService(test_config).query()

    async def test_redis_backend_selected_from_config(self, fake_redis):
        config = EngineConfig(store=StoreConfig(backend=BackendKind.REDIS))
        async with RetrievalService(config, redis_client=fake_redis) as service:
            assert isinstance(service.store, RedisContextStore)
            context_id = await service.create("documentation", "Docs", "body")
            assert (await service.get(context_id)).title == "Docs"
            assert (await service.stats())["backend"] == "redis"

    async def test_health(self, service):
        health = await service.health()
        assert health["store"].status == ProviderStatus.HEALTHY

    async def test_start_ingests_seed_paths(self, tmp_path):
        seed = tmp_path / "seed.yaml"
        seed.write_text("- {kind: best_practice, title: Seeded, content: x}\n")
        config = EngineConfig.for_testing()
        config.seed_paths = [str(seed)]

        async with RetrievalService(config) as service:
            result = await service.query()
            assert [r.record.title for r in result.results] == ["Seeded"]


class TestCrud:
    """Validated create/get/update/delete."""

    async def test_create_assigns_id_and_prior_score(self, service):
        context_id = await service.create(
            "security-tip", "Reentrancy", "guard calls", tags=["Security"],
        )
        record = await service.get(context_id)

        assert record.kind == ContextKind.SECURITY_TIP
        assert record.tags == ["security"]
        assert record.base_score == pytest.approx(0.7)

    async def test_create_with_explicit_score(self, service):
        context_id = await service.create("documentation", "T", "x", base_score=0.3)
        assert (await service.get(context_id)).base_score == 0.3

    @pytest.mark.parametrize("kwargs", [
        {"kind": "tutorial", "title": "T", "content": "x"},
        {"kind": "documentation", "title": " ", "content": "x"},
        {"kind": "documentation", "title": "T", "content": "x", "tags": [""]},
        {"kind": "documentation", "title": "T", "content": "x", "base_score": 1.2},
        {"kind": "documentation", "title": "T", "content": "x", "base_score": -0.1},
    ])
    async def test_create_rejects_invalid_input(self, service, kwargs):
        with pytest.raises(ValidationError):
            await service.create(**kwargs)
        assert await service.count() == 0

    async def test_get_rejects_blank_id(self, service):
        with pytest.raises(ValidationError):
            await service.get("  ")

    async def test_get_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.get("missing")

    async def test_update(self, service):
        context_id = await service.create("documentation", "T", "x", tags=["a"])

        updated = await service.update(context_id, ContextPatch(title="New", tags=["B"]))

        assert updated.title == "New"
        assert updated.tags == ["b"]
        assert (await service.query(tags=["a"])).total == 0

    @pytest.mark.parametrize("patch", [
        ContextPatch(title=""),
        ContextPatch(base_score=2.0),
        ContextPatch(kind="tutorial"),
        ContextPatch(tags=["  "]),
    ])
    async def test_update_rejects_invalid_patch(self, service, patch):
        context_id = await service.create("documentation", "T", "x")
        with pytest.raises(ValidationError):
            await service.update(context_id, patch)

    async def test_delete(self, service):
        context_id = await service.create("documentation", "T", "x")
        assert await service.delete(context_id) is True
        assert await service.delete(context_id) is False


class TestQuery:
    """Query validation and results."""

    @pytest.fixture
    async def seeded(self, service):
        ids = {}
        ids["mapper"] = await service.create(
            "best_practice", "Storage mappers", "use storage mappers",
            tags=["storage"], domain_category="token", base_score=0.5,
        )
        ids["gas"] = await service.create(
            "optimization", "Gas", "pack storage", tags=["storage", "gas"], base_score=0.5,
        )
        ids["deploy"] = await service.create(
            "deployment_tool", "Deploy", "ksc deploy", tags=["deploy"],
            domain_category="token", base_score=0.5,
        )
        return ids

    async def test_query_returns_scored_page_with_total(self, service, seeded):
        result = await service.query(tags=["storage"], limit=1)

        assert result.total == 2
        assert result.limit == 1
        assert len(result.results) == 1
        assert result.has_more
        assert result.results[0].score > 0

    async def test_default_limit_from_config(self, service, seeded):
        result = await service.query()
        assert result.limit == service.config.query.default_page_size

    @pytest.mark.parametrize("kwargs", [
        {"limit": 0},
        {"limit": 101},
        {"limit": True},
        {"offset": -1},
        {"kinds": ["tutorial"]},
        {"tags": [""]},
        {"match": "some"},
        {"domain_category": 5},
        {"text": ["storage"]},
    ])
    async def test_query_validation(self, service, kwargs):
        with pytest.raises(ValidationError):
            await service.query(**kwargs)

    async def test_kinds_accepts_single_value(self, service, seeded):
        result = await service.query(kinds="optimization")
        assert [r.record.id for r in result.results] == [seeded["gas"]]

    async def test_count(self, service, seeded):
        assert await service.count() == 3
        assert await service.count(domain_category="token") == 2
        assert await service.count(text="ksc") == 1

    async def test_similar_excludes_source(self, service, seeded):
        results = await service.similar(seeded["mapper"], top_k=5)

        ids = [r.record.id for r in results]
        assert seeded["mapper"] not in ids
        # Gas shares a tag, Deploy shares the domain category
        assert set(ids) == {seeded["gas"], seeded["deploy"]}

    async def test_similar_respects_top_k(self, service, seeded):
        assert len(await service.similar(seeded["mapper"], top_k=1)) == 1
        assert await service.similar(seeded["mapper"], top_k=0) == []

    async def test_similar_validation(self, service, seeded):
        with pytest.raises(ValidationError):
            await service.similar(seeded["mapper"], top_k=-1)
        with pytest.raises(NotFoundError):
            await service.similar("missing")

    async def test_stats(self, service, seeded):
        stats = await service.stats()
        assert stats["total"] == 3
        assert stats["backend"] == "memory"
        assert stats["by_tag"]["storage"] == 2


class TestEnhance:
    """Free-text enhancement."""

    async def test_enhance_formats_matching_contexts(self, service):
        await service.create(
            "code_example", "Storage mapper example", "let x = mapper.get();",
            description="Reading a mapper", language="rust", tags=["storage"],
        )

        enhanced = await service.enhance("How do I read a storage mapper?")

        assert enhanced.keywords == ["read", "storage", "mapper"]
        assert len(enhanced.contexts) == 1
        assert enhanced.text.startswith('Query: "How do I read a storage mapper?"')
        assert "## Relevant Context:" in enhanced.text
        assert "### Storage mapper example" in enhanced.text
        assert "Reading a mapper" in enhanced.text
        assert "```rust\nlet x = mapper.get();\n```" in enhanced.text
        assert enhanced.text.endswith("## Original Query:\nHow do I read a storage mapper?")

    async def test_enhance_without_matches(self, service):
        enhanced = await service.enhance("completely unrelated words")
        assert enhanced.contexts == []
        assert "## Relevant Context:" not in enhanced.text

    async def test_enhance_without_auto_include(self, service):
        await service.create("documentation", "Storage", "storage docs")
        enhanced = await service.enhance("storage", auto_include=False)
        assert len(enhanced.contexts) == 1
        assert "## Relevant Context:" not in enhanced.text

    async def test_enhance_respects_limit(self, service):
        for i in range(5):
            await service.create("documentation", f"Storage {i}", "storage")
        enhanced = await service.enhance("storage")
        assert len(enhanced.contexts) == 3

    async def test_enhance_rejects_empty_message(self, service):
        with pytest.raises(ValidationError):
            await service.enhance("   ")


class TestIngest:
    """Batch and seed ingestion."""

    async def test_batch_create_does_not_mutate_input(self, service, make_record):
        records = [make_record(f"R{i}") for i in range(3)]
        before = [r.to_dict() for r in records]

        ids = await service.batch_create(records)

        assert ids == [r.id for r in records]
        assert [r.to_dict() for r in records] == before

    async def test_batch_create_validates_everything_first(self, service, make_record):
        records = [make_record("Good"), make_record("  ")]
        with pytest.raises(ValidationError):
            await service.batch_create(records)
        assert await service.count() == 0

    async def test_batch_failure_reports_committed(self, service, make_record):
        existing = make_record("Existing")
        await service.batch_create([existing])
        records = [make_record(f"R{i}") for i in range(12)] + [existing]

        with pytest.raises(BatchIngestError) as exc_info:
            await service.batch_create(records)

        assert len(exc_info.value.committed_ids) == 10

    async def test_ingest_seed_files(self, service, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(
            "contexts:\n"
            "  - {kind: documentation, title: A, content: a}\n"
            "  - {kind: bogus, title: B, content: b}\n"
        )

        summary = await service.ingest_seed_files([path], default_language="rust")

        assert summary.ingested == 1
        assert summary.invalid == 1
        result = await service.query()
        assert result.results[0].record.language == "rust"

    async def test_verify(self, service):
        await service.create("documentation", "T", "x", tags=["a"])
        assert await service.verify() == []


class TestPageBounds:
    """Configured page size bounds."""

    async def test_custom_max_page_size(self):
        config = EngineConfig.for_testing()
        config.query = QueryConfig(default_page_size=2, max_page_size=3)
        async with RetrievalService(config) as service:
            assert (await service.query()).limit == 2
            with pytest.raises(ValidationError):
                await service.query(limit=4)
