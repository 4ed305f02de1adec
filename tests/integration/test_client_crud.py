"""
Integration tests for single-document operations against a fake server.

Tests cover:
- Create / get / update / delete through DocStoreClient
- Preconditions and update masks
- Field transforms and their results
- Retry behaviour of retry-safe and unsafe writes
- Batch gets and nested collections
"""

from dataclasses import dataclass

import pytest

from docstore_sdk.errors import PreconditionFailedError, TransientTransportError
from docstore_sdk.errors import StatusCode
from docstore_sdk.protocol import Method
from docstore_sdk.query import Query, field
from docstore_sdk.value import Value, ValueKind
from docstore_sdk.writes import Precondition, Transform
from tests.fakes import ROOT, FakeDocStore, make_client


@dataclass
class User:
    name: str
    age: int = 0


@pytest.fixture
def store():
    return FakeDocStore()


@pytest.fixture
def client(store):
    return make_client(store)


class TestCreateAndGet:
    """Tests for create() and get()."""

    @pytest.mark.asyncio
    async def test_connect_and_close(self, store, client):
        """The client drives the transport lifecycle."""
        async with client:
            assert store.connected
        assert not store.connected

    @pytest.mark.asyncio
    async def test_create_then_get(self, client):
        """A created document reads back into its model."""
        result = await client.create("users", User("Ada", 36), document_id="ada")
        assert result.document_path == f"{ROOT}/users/ada"
        assert result.update_time is not None

        user = await client.get("users", "ada", User)
        assert user == User("Ada", 36)

    @pytest.mark.asyncio
    async def test_generated_id(self, client):
        """Omitting the id generates a 20-character one."""
        result = await client.create("users", {"name": "Bo"})
        document_id = result.document_path.rsplit("/", 1)[1]
        assert len(document_id) == 20
        assert (await client.get("users", document_id)).fields["name"] == Value.string("Bo")

    @pytest.mark.asyncio
    async def test_get_missing(self, client):
        """Missing documents read as None."""
        assert await client.get("users", "nobody", User) is None

    @pytest.mark.asyncio
    async def test_duplicate_create(self, client):
        """Creating an existing document fails its precondition."""
        await client.create("users", User("Ada"), document_id="ada")
        with pytest.raises(PreconditionFailedError):
            await client.create("users", User("Imposter"), document_id="ada")
        assert (await client.get("users", "ada", User)).name == "Ada"

    @pytest.mark.asyncio
    async def test_batch_get(self, store, client):
        """Batch gets map every requested path, None for missing ones."""
        store.seed(f"{ROOT}/users/a", {"name": Value.string("A")})
        paths = [f"{ROOT}/users/a", f"{ROOT}/users/missing"]
        found = await client.batch_get(paths, User)
        assert found == {paths[0]: User("A"), paths[1]: None}

    @pytest.mark.asyncio
    async def test_nested_collections(self, client):
        """Sub-collections are addressed through parent paths."""
        parent = client.parent_path().at("users", "ada")
        await client.create("orders", {"total": 5}, document_id="o1", parent=parent)
        document = await client.get("orders", "o1", parent=parent)
        assert document.name == f"{ROOT}/users/ada/orders/o1"
        assert await client.list_collection_ids(parent.path) == ["orders"]


class TestUpdateAndDelete:
    """Tests for update(), delete() and preconditions."""

    @pytest.mark.asyncio
    async def test_full_replace(self, client):
        """Without a mask the whole document is replaced."""
        await client.create("users", {"name": "Ada", "age": 36}, document_id="ada")
        await client.update("users", "ada", {"name": "Ada L."})
        document = await client.get("users", "ada")
        assert document.fields == {"name": Value.string("Ada L.")}

    @pytest.mark.asyncio
    async def test_masked_update(self, client):
        """Only masked fields change; masked fields absent from the body are deleted."""
        await client.create("users", {"name": "Ada", "age": 36, "nick": "a"}, document_id="ada")
        await client.update("users", "ada", {"age": 37}, fields=["age", "nick"])
        document = await client.get("users", "ada")
        assert document.fields == {"name": Value.string("Ada"), "age": Value.integer(37)}

    @pytest.mark.asyncio
    async def test_masked_update_of_dotted_field(self, client):
        """An escaped mask path updates the dotted field, not the nested one."""
        await client.create("users", {"a.b": 1, "a": {"b": 2}}, document_id="dots")
        await client.update("users", "dots", {"a.b": 10}, fields=["`a.b`"])

        document = await client.get("users", "dots")
        assert document.fields == {
            "a.b": Value.integer(10),
            "a": Value.map({"b": Value.integer(2)}),
        }
        literal = await client.query(Query("users").where(field("`a.b`").equal(10)))
        nested = await client.query(Query("users").where(field("a.b").equal(2)))
        assert [d.name for d in literal] == [d.name for d in nested] == [f"{ROOT}/users/dots"]

    @pytest.mark.asyncio
    async def test_update_time_precondition(self, client):
        """A stale update_time rejects the write."""
        created = await client.create("users", User("Ada", 1), document_id="ada")
        await client.update("users", "ada", User("Ada", 2))
        with pytest.raises(PreconditionFailedError):
            await client.update(
                "users", "ada", User("Ada", 3), precondition=Precondition.updated_at(created.update_time)
            )
        assert (await client.get("users", "ada", User)).age == 2

    @pytest.mark.asyncio
    async def test_must_exist(self, client):
        """must_exist rejects writes to missing documents."""
        with pytest.raises(PreconditionFailedError):
            await client.update("users", "ghost", User("Ghost"), precondition=Precondition.must_exist())
        assert await client.get("users", "ghost") is None

    @pytest.mark.asyncio
    async def test_delete(self, client):
        """Deleted documents read as None; deleting again succeeds."""
        await client.create("users", User("Ada"), document_id="ada")
        await client.delete("users", "ada")
        assert await client.get("users", "ada") is None
        await client.delete("users", "ada")


class TestTransforms:
    """Tests for transform()."""

    @pytest.mark.asyncio
    async def test_increment_twice(self, client):
        """Increments accumulate and report the new value."""
        await client.create("counters", {"count": 5}, document_id="c")
        first = await client.transform("counters", "c", [Transform.increment("count", 1)])
        second = await client.transform("counters", "c", [Transform.increment("count", 1)])
        assert first.transform_results == [Value.integer(6)]
        assert second.transform_results == [Value.integer(7)]

    @pytest.mark.asyncio
    async def test_array_and_server_time(self, client):
        """Array transforms de-duplicate; server time yields a timestamp."""
        await client.create("posts", {"tags": ["a", "b"]}, document_id="p")
        result = await client.transform(
            "posts",
            "p",
            [
                Transform.append_missing_elements("tags", ["b", "c"]),
                Transform.remove_all_from_array("tags", ["a"]),
                Transform.server_time("edited_at"),
            ],
        )
        tags, _, edited = result.transform_results
        assert tags == Value.array([Value.string("a"), Value.string("b"), Value.string("c")])
        assert edited.kind is ValueKind.TIMESTAMP
        document = await client.get("posts", "p")
        assert document.fields["tags"] == Value.array([Value.string("b"), Value.string("c")])

    @pytest.mark.asyncio
    async def test_maximum(self, client):
        """maximum keeps the larger value."""
        await client.create("scores", {"best": 10}, document_id="s")
        result = await client.transform("scores", "s", [Transform.maximum("best", 7)])
        assert result.transform_results == [Value.integer(10)]


class TestWriteRetries:
    """Tests for transient failure handling of single writes."""

    @pytest.mark.asyncio
    async def test_plain_update_is_retried(self, store, client):
        """Updates are replay-safe and retried."""
        store.fail_next(Method.COMMIT, StatusCode.UNAVAILABLE, times=2)
        await client.update("users", "ada", User("Ada"))
        assert len(store.calls_to(Method.COMMIT)) == 3
        assert (await client.get("users", "ada", User)).name == "Ada"

    @pytest.mark.asyncio
    async def test_plain_create_is_not_retried(self, store, client):
        """A plain create surfaces the transient failure."""
        store.fail_next(Method.COMMIT, StatusCode.UNAVAILABLE)
        with pytest.raises(TransientTransportError):
            await client.create("users", User("Ada"), document_id="ada")
        assert len(store.calls_to(Method.COMMIT)) == 1

    @pytest.mark.asyncio
    async def test_create_with_idempotency_key_is_retried(self, store, client):
        """An idempotency key makes a create retry-safe."""
        store.fail_next(Method.COMMIT, StatusCode.UNAVAILABLE)
        await client.create("users", User("Ada"), document_id="ada", idempotency_key="k1")
        assert len(store.calls_to(Method.COMMIT)) == 2

    @pytest.mark.asyncio
    async def test_increment_is_not_retried(self, store, client):
        """Increments are not replay-safe."""
        await client.create("counters", {"count": 1}, document_id="c")
        store.fail_next(Method.COMMIT, StatusCode.DEADLINE_EXCEEDED)
        with pytest.raises(TransientTransportError):
            await client.transform("counters", "c", [Transform.increment("count", 1)])
        assert (await client.get("counters", "c")).fields["count"] == Value.integer(1)

    @pytest.mark.asyncio
    async def test_reads_are_retried(self, store, client):
        """Point reads retry transient failures."""
        store.seed(f"{ROOT}/users/a", {"name": Value.string("A")})
        store.fail_next(Method.BATCH_GET_DOCUMENTS, StatusCode.UNAVAILABLE)
        assert await client.get("users", "a", User) == User("A")
        assert len(store.calls_to(Method.BATCH_GET_DOCUMENTS)) == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, store):
        """Retries stop after retry_max_attempts."""
        client = make_client(store, retry_max_attempts=2)
        store.fail_next(Method.COMMIT, StatusCode.UNAVAILABLE, times=5)
        with pytest.raises(TransientTransportError):
            await client.delete("users", "ada")
        assert len(store.calls_to(Method.COMMIT)) == 2
