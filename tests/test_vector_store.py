"""
Tests for the vector store registry
===================================

Run with: pytest tests/test_vector_store.py -v
"""

import pytest

from editor_ai.advanced.types import (
    CategorizedContext,
    ContextCategory,
    ContextMetadata,
    ContextRelationship,
    SemanticSearchQuery,
)
from editor_ai.advanced.vector_store import (
    VectorDatabaseService,
    VectorStoreConfig,
    VectorStoreError,
    cosine_similarity,
)
from editor_ai.errors import AIError, AIErrorCode


def doc(
    content: str,
    embedding: list[float] | None = None,
    category: ContextCategory = ContextCategory.CODE_CONTEXT,
    **kwargs,
) -> CategorizedContext:
    return CategorizedContext(
        category=category, content=content, embedding=embedding or [], **kwargs
    )


@pytest.fixture
def database():
    return VectorDatabaseService()


async def new_store(database: VectorDatabaseService, name: str = "code") -> str:
    return await database.create_store(
        VectorStoreConfig(name=name, dimensions=2, categories=[ContextCategory.CODE_CONTEXT])
    )


class TestCosineSimilarity:
    """Test the similarity function"""

    def test_values(self):
        """Identical, orthogonal and opposite vectors"""
        assert cosine_similarity([1, 0], [2, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == 0.0
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)

    def test_undefined_cases(self):
        """Empty, mismatched or zero vectors score 0"""
        assert cosine_similarity([], [1]) == 0.0
        assert cosine_similarity([1, 2], [1]) == 0.0
        assert cosine_similarity([0, 0], [1, 1]) == 0.0


class TestStoreRegistry:
    """Test store lifecycle"""

    @pytest.mark.asyncio
    async def test_create_and_list(self, database):
        """Created stores are listed with their configuration"""
        created = []
        database.on_did_create_store.subscribe(created.append)
        store_id = await new_store(database)

        stores = await database.list_stores()
        assert [s.id for s in stores] == [store_id]
        assert stores[0].name == "code"
        assert stores[0].document_count == 0
        assert created == [store_id]

    @pytest.mark.asyncio
    async def test_unknown_store(self, database):
        """Operations on unknown stores raise VectorStoreError"""
        with pytest.raises(VectorStoreError) as exc_info:
            await database.search("missing", SemanticSearchQuery(query="x"))
        assert isinstance(exc_info.value, AIError)
        assert exc_info.value.code == AIErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_unsupported_types(self, database):
        """Only the memory type is registered; others raise VectorStoreError"""
        for store_type in ("pinecone", "faiss", "chroma"):
            with pytest.raises(VectorStoreError) as exc_info:
                await database.create_store(VectorStoreConfig(name="x", type=store_type))
            assert exc_info.value.code == AIErrorCode.INVALID_REQUEST
            assert store_type in exc_info.value.message
        assert await database.list_stores() == []

    @pytest.mark.asyncio
    async def test_delete_store(self, database):
        """Deleted stores are gone and deletion is idempotent"""
        store_id = await new_store(database)
        deleted = []
        database.on_did_delete_store.subscribe(deleted.append)

        await database.delete_store(store_id)
        await database.delete_store(store_id)
        assert deleted == [store_id]
        with pytest.raises(VectorStoreError):
            await database.get_store_info(store_id)


class TestDocuments:
    """Test document operations"""

    @pytest.mark.asyncio
    async def test_add_fires_update(self, database):
        """Adding documents reports the new count"""
        store_id = await new_store(database)
        updates = []
        database.on_did_update_store.subscribe(updates.append)

        ids = await database.add_documents(store_id, [doc("a"), doc("b")])
        assert len(set(ids)) == 2
        assert updates[-1].document_count == 2
        assert (await database.get_document(store_id, ids[0])).content == "a"

    @pytest.mark.asyncio
    async def test_update_unknown_document(self, database):
        """Updating a missing document raises; deleting one does not"""
        store_id = await new_store(database)
        with pytest.raises(VectorStoreError):
            await database.update_document(store_id, "nope", doc("x"))
        await database.delete_document(store_id, "nope")

    @pytest.mark.asyncio
    async def test_related_and_recommendations(self, database):
        """Relationships resolve to stored documents"""
        store_id = await new_store(database)
        [target_id] = await database.add_documents(store_id, [doc("helper")])
        [source_id] = await database.add_documents(
            store_id,
            [doc("caller", relationships=[ContextRelationship(target_id, "calls", 0.9)])],
        )
        await database.add_documents(
            store_id, [doc("guide", category=ContextCategory.DOCUMENTATION)]
        )

        related = await database.get_related_documents(store_id, source_id)
        assert [d.content for d in related] == ["helper"]
        assert await database.get_related_documents(store_id, source_id, "uses") == []

        recommended = await database.get_recommendations(store_id, source_id, 5)
        assert [d.content for d in recommended] == ["helper"]

    @pytest.mark.asyncio
    async def test_statistics(self, database):
        """Statistics count categories and embedding norms"""
        store_id = await new_store(database)
        await database.add_documents(
            store_id,
            [doc("a", [3.0, 4.0]), doc("b", category=ContextCategory.TESTING)],
        )
        stats = await database.get_store_statistics(store_id)
        assert stats.total_documents == 2
        assert stats.average_embedding_norm == pytest.approx(5.0)
        assert stats.category_counts == {
            ContextCategory.CODE_CONTEXT: 1,
            ContextCategory.TESTING: 1,
        }


class TestSearch:
    """Test text, embedding and hybrid search"""

    @pytest.mark.asyncio
    async def test_text_search(self, database):
        """Substring matches are case-insensitive and capped"""
        store_id = await new_store(database)
        await database.add_documents(
            store_id, [doc("Parse JSON"), doc("json schema"), doc("yaml")]
        )

        results = await database.search(store_id, SemanticSearchQuery(query="JSON"))
        assert sorted(r.content for r in results) == ["Parse JSON", "json schema"]
        assert all(r.score == 0.8 for r in results)

        capped = await database.search(
            store_id, SemanticSearchQuery(query="json", max_results=1)
        )
        assert len(capped) == 1

    @pytest.mark.asyncio
    async def test_similarity_order(self, database):
        """Embedding search ranks by cosine similarity"""
        store_id = await new_store(database)
        await database.add_documents(
            store_id, [doc("far", [0.0, 1.0]), doc("near", [1.0, 0.1])]
        )
        results = await database.similarity_search(store_id, [1.0, 0.0], 1)
        assert [r.content for r in results] == ["near"]

    @pytest.mark.asyncio
    async def test_hybrid_merges_scores(self, database):
        """Documents matching both ways add their weighted scores"""
        store_id = await new_store(database)
        await database.add_documents(
            store_id,
            [
                doc("cache layer", [1.0, 0.0]),
                doc("unrelated", [0.0, 1.0]),
                doc("cache docs", [0.0, 1.0]),
            ],
        )

        results = await database.hybrid_search(
            store_id, "cache", [1.0, 0.0], {"text": 0.5, "semantic": 1.0}
        )
        scores = {r.content: r.score for r in results}
        assert [r.content for r in results][:2] == ["cache layer", "cache docs"]
        assert scores["cache layer"] == pytest.approx(1.4)
        assert scores["cache docs"] == pytest.approx(0.4)
        assert scores["unrelated"] == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_search_by_category(self, database):
        """Category search filters on the document category"""
        store_id = await new_store(database)
        await database.add_documents(
            store_id,
            [doc("retry logic"), doc("retry docs", category=ContextCategory.DOCUMENTATION)],
        )
        results = await database.search_by_category(
            store_id, ContextCategory.DOCUMENTATION, "retry"
        )
        assert [r.content for r in results] == ["retry docs"]


class TestBackup:
    """Test backup and restore"""

    @pytest.mark.asyncio
    async def test_round_trip(self, database, tmp_path):
        """A restored store has the same documents under the same ids"""
        source = await new_store(database, "source")
        ids = await database.add_documents(
            source,
            [doc("kept", [0.6, 0.8], metadata=ContextMetadata(source="a.py", tags=["x"]))],
        )
        backup_path = tmp_path / "backups" / "store.json"
        await database.backup_store(source, backup_path)

        target = await new_store(database, "target")
        await database.restore_store(target, backup_path)

        restored = await database.get_document(target, ids[0])
        assert restored.content == "kept"
        assert restored.embedding == [0.6, 0.8]
        assert restored.metadata.source == "a.py"
        assert restored.metadata.tags == ["x"]

    @pytest.mark.asyncio
    async def test_restore_malformed(self, database, tmp_path):
        """Unreadable backups raise VectorStoreError"""
        store_id = await new_store(database)
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(VectorStoreError):
            await database.restore_store(store_id, path)
