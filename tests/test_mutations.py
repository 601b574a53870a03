import asyncio

import pytest

from recipe_client.errors import (
    ImageUploadError,
    MutationError,
    MutationInProgressError,
    RecipeValidationError,
    UnsavedRecipeError,
)
from recipe_client.ids import PendingId, PersistedId, new_pending_id
from recipe_client.services.cache import recipe_key, recipes_key
from recipe_client.services.images import ImageFile
from recipe_client.services.mutations import MutationState, Operation


def _ids(recipes):
    return [r.id for r in recipes]


# ---------------------------
# Create
# ---------------------------

def test_create_shows_temp_entry_then_server_entity(make_client, store):
    store.next_ids.append("real-1")
    seen = []

    async def scenario():
        async with make_client() as rc:
            await rc.queries.recipes()
            rc.queries.watch_recipes(seen.append)
            saved = await rc.mutations.create({"title": "Toast", "servings": 2})
            return saved, rc.cache.get(recipes_key()), rc.cache.keys(("recipe",))

    saved, final, detail_keys = asyncio.run(scenario())

    # la primera notificación es la proyección optimista
    first = seen[0]
    assert len(first) == 1 and isinstance(first[0].id, PendingId)
    assert first[0].title == "Toast"

    assert saved.id == PersistedId(value="real-1")
    assert _ids(final) == [PersistedId(value="real-1")]
    assert not any(r.is_pending for r in final)
    assert detail_keys == [recipe_key(PersistedId(value="real-1"))]
    assert store.count("POST /recipes") == 1


def test_create_only_touches_lists_already_cached(make_client, store):
    async def scenario():
        async with make_client() as rc:
            await rc.mutations.create({"title": "Stew", "servings": 4, "category": "Dinner"})
            return rc.cache.has(recipes_key()), rc.cache.has(recipes_key("Dinner"))

    assert asyncio.run(scenario()) == (False, False)


def test_create_failure_removes_temp_entries(make_client, store):
    store.seed(id="r1", title="Soup", servings=2)
    store.fail_next(400, methods={"POST"})

    async def scenario():
        async with make_client() as rc:
            before = await rc.queries.recipes()
            with pytest.raises(MutationError) as info:
                await rc.mutations.create({"title": "Toast", "servings": 2})
            return before, rc.cache.get(recipes_key()), rc.cache.keys(("recipe",)), info.value

    before, after, detail_keys, error = asyncio.run(scenario())
    assert after == before
    assert detail_keys == []
    assert error.operation == "create"
    assert error.error.status == 400


def test_invalid_create_never_starts_a_mutation(make_client, store):
    async def scenario():
        async with make_client() as rc:
            await rc.queries.recipes()
            with pytest.raises(RecipeValidationError):
                await rc.mutations.create({"title": "x" * 201, "servings": 2})
            return rc.cache.get(recipes_key()), list(rc.mutations.recent)

    cached, recent = asyncio.run(scenario())
    assert cached == []
    assert recent == []
    assert store.count("POST /recipes") == 0


# ---------------------------
# Update
# ---------------------------

def test_update_failure_restores_snapshot(make_client, store):
    store.seed(id="r1", title="Toast", servings=2)

    async def scenario():
        async with make_client(fail_methods={"PUT"}) as rc:
            await rc.queries.recipes()
            await rc.queries.recipe("r1")
            with pytest.raises(MutationError) as info:
                await rc.mutations.update("r1", {"title": "Burnt Toast", "servings": 2})
            return (
                rc.cache.get(recipes_key()),
                rc.cache.get(recipe_key(PersistedId(value="r1"))),
                info.value,
                rc.mutations.recent[-1],
            )

    listed, detail, error, mutation = asyncio.run(scenario())
    assert [r.title for r in listed] == ["Toast"]
    assert detail.title == "Toast"
    assert str(error).startswith("Network error")
    assert mutation.state is MutationState.ROLLED_BACK
    assert mutation.operation is Operation.UPDATE


def test_update_success_reconciles_server_fields(make_client, store):
    seeded = store.seed(id="r1", title="Toast", servings=2, category="Breakfast")

    async def scenario():
        async with make_client() as rc:
            await rc.queries.recipes()
            await rc.queries.recipes("Breakfast")
            saved = await rc.mutations.update("r1", {"title": "French Toast", "servings": 3, "category": "Breakfast"})
            return saved, rc.cache.get(recipes_key()), rc.cache.get(recipes_key("Breakfast")), rc.mutations.recent[-1]

    saved, listed, by_category, mutation = asyncio.run(scenario())
    assert saved.title == "French Toast"
    assert saved.created_at == seeded.created_at
    assert saved.user_id == seeded.user_id
    assert listed == [saved]
    assert by_category == [saved]
    assert mutation.state is MutationState.RESOLVED
    assert mutation.result == saved


def test_update_of_unsaved_recipe_is_rejected(make_client, store):
    async def scenario():
        async with make_client() as rc:
            with pytest.raises(UnsavedRecipeError):
                await rc.mutations.update(new_pending_id(), {"title": "x", "servings": 1})
            with pytest.raises(UnsavedRecipeError):
                await rc.mutations.delete(new_pending_id())

    asyncio.run(scenario())
    assert store.calls == []


def test_double_submit_is_rejected_while_pending(make_client, store):
    store.seed(id="r1", title="Toast", servings=2)

    async def scenario():
        async with make_client() as rc:
            await rc.queries.recipes()
            entered = asyncio.Event()
            release = asyncio.Event()
            original = rc.service.update_recipe

            async def gated(recipe_id, data):
                entered.set()
                await release.wait()
                return await original(recipe_id, data)

            rc.service.update_recipe = gated
            first = asyncio.create_task(rc.mutations.update("r1", {"title": "A", "servings": 2}))
            await entered.wait()
            assert rc.mutations.is_pending("r1")
            assert rc.cache.is_syncing(recipes_key())
            with pytest.raises(MutationInProgressError):
                await rc.mutations.update("r1", {"title": "B", "servings": 2})
            release.set()
            saved = await first
            return saved, rc.mutations.is_pending("r1"), rc.cache.is_syncing(recipes_key())

    saved, still_pending, syncing = asyncio.run(scenario())
    assert saved.title == "A"
    assert not still_pending
    assert not syncing
    assert store.count("PUT /recipes/r1") == 1


# ---------------------------
# Delete
# ---------------------------

def test_delete_failure_reinserts_identical_entry(make_client, store):
    store.seed(id="r1", title="Toast", servings=2)
    store.seed(id="r2", title="Soup", servings=4)
    store.fail_next(500, times=3, methods={"DELETE"})

    async def scenario():
        async with make_client() as rc:
            before = await rc.queries.recipes()
            with pytest.raises(MutationError):
                await rc.mutations.delete("r1")
            return before, rc.cache.get(recipes_key())

    before, after = asyncio.run(scenario())
    assert after == before
    assert store.count("DELETE /recipes/r1") == 3
    assert "r1" in store.recipes


def test_delete_success_removes_from_every_list(make_client, store):
    store.seed(id="r1", title="Toast", servings=2, category="Breakfast")
    store.seed(id="r2", title="Soup", servings=4, category="Lunch")

    async def scenario():
        async with make_client() as rc:
            await rc.queries.recipes()
            await rc.queries.recipes("Breakfast")
            await rc.mutations.delete("r1")
            return rc.cache.get(recipes_key()), rc.cache.get(recipes_key("Breakfast"))

    listed, breakfast = asyncio.run(scenario())
    assert [r.title for r in listed] == ["Soup"]
    assert breakfast == []
    assert store.count("DELETE /recipes/r1") == 1


def test_mutation_error_retry_replays_the_call(make_client, store):
    store.seed(id="r1", title="Toast", servings=2)
    store.fail_next(503, times=3, methods={"DELETE"})

    async def scenario():
        async with make_client() as rc:
            await rc.queries.recipes()
            with pytest.raises(MutationError) as info:
                await rc.mutations.delete("r1")
            await info.value.retry()
            return rc.cache.get(recipes_key())

    assert asyncio.run(scenario()) == []
    assert store.recipes == {}


# ---------------------------
# Conectividad
# ---------------------------

def test_mutation_waits_for_connectivity(make_client, store):
    async def scenario():
        async with make_client() as rc:
            await rc.queries.recipes()
            rc.connectivity.set_online(False)
            task = asyncio.create_task(rc.mutations.create({"title": "Toast", "servings": 2}))
            for _ in range(5):
                await asyncio.sleep(0)
            optimistic = rc.cache.get(recipes_key())
            sent_while_offline = store.count("POST /recipes")
            rc.connectivity.set_online(True)
            saved = await task
            return optimistic, sent_while_offline, saved

    optimistic, sent_while_offline, saved = asyncio.run(scenario())
    assert len(optimistic) == 1 and optimistic[0].is_pending
    assert sent_while_offline == 0
    assert isinstance(saved.id, PersistedId)


# ---------------------------
# Save con imagen
# ---------------------------

def test_save_with_image_uploads_then_creates(make_client, store):
    image = ImageFile(uri="file:///tmp/photos/toast.png", content=b"\x89PNG fake")

    async def scenario():
        async with make_client() as rc:
            return await rc.mutations.save_with_image({"title": "Toast", "servings": 2}, image=image)

    saved = asyncio.run(scenario())
    assert saved.image_url is not None and saved.image_url.endswith("-toast.png")
    assert list(store.blobs.values()) == [b"\x89PNG fake"]
    assert store.count("POST /recipes") == 1


def test_save_with_image_upload_failure_starts_no_mutation(make_client, store):
    store.fail_next(500, times=3, methods={"POST"})
    image = ImageFile(uri="toast.jpg", content=b"jpeg")

    async def scenario():
        async with make_client() as rc:
            with pytest.raises(ImageUploadError):
                await rc.mutations.save_with_image({"title": "Toast", "servings": 2}, image=image, form_key="new")
            return list(rc.mutations.recent), rc.mutations.is_pending(("create", "new"))

    recent, pending = asyncio.run(scenario())
    assert recent == []
    assert not pending
    assert store.count("POST /recipes") == 0
    assert store.blobs == {}


# ---------------------------
# Robustez del rollback y guard de create
# ---------------------------

def test_listener_error_during_optimistic_apply_rolls_back_every_key(make_client, store):
    store.seed(id="r1", title="Toast", servings=2, category="Breakfast")
    store.seed(id="r2", title="Soup", servings=4, category="Lunch")

    def broken_listener(_):
        raise RuntimeError("listener exploded")

    async def scenario():
        async with make_client() as rc:
            full = await rc.queries.recipes()
            lunch = await rc.queries.recipes("Lunch")
            rc.cache.subscribe(recipes_key("Lunch"), broken_listener)
            with pytest.raises(RuntimeError):
                await rc.mutations.delete("r2")
            return (
                (full, lunch),
                (rc.cache.get(recipes_key()), rc.cache.get(recipes_key("Lunch"))),
                rc.mutations.recent[-1],
                rc.mutations.is_pending("r2"),
                rc.cache.is_syncing(recipes_key()),
            )

    before, after, mutation, pending, syncing = asyncio.run(scenario())
    assert after == before
    assert mutation.state is MutationState.ROLLED_BACK
    assert not pending
    assert not syncing
    assert store.count("DELETE /recipes/r2") == 0


def _gate_create(rc):
    entered = asyncio.Event()
    release = asyncio.Event()
    original = rc.service.create_recipe

    async def gated(data):
        entered.set()
        await release.wait()
        return await original(data)

    rc.service.create_recipe = gated
    return entered, release


@pytest.mark.parametrize("form_key", ["new", None])
def test_double_create_submit_sends_one_request(make_client, store, form_key):
    async def scenario():
        async with make_client() as rc:
            entered, release = _gate_create(rc)
            first = asyncio.create_task(rc.mutations.create({"title": "Toast", "servings": 2}, form_key=form_key))
            await entered.wait()
            with pytest.raises(MutationInProgressError):
                await rc.mutations.create({"title": "Toast", "servings": 2}, form_key=form_key)
            release.set()
            return await first

    saved = asyncio.run(scenario())
    assert isinstance(saved.id, PersistedId)
    assert store.count("POST /recipes") == 1


def test_different_create_forms_do_not_block_each_other(make_client, store):
    async def scenario():
        async with make_client() as rc:
            entered, release = _gate_create(rc)
            first = asyncio.create_task(rc.mutations.create({"title": "Toast", "servings": 2}))
            await entered.wait()
            second = asyncio.create_task(rc.mutations.create({"title": "Soup", "servings": 4}))
            await asyncio.sleep(0)
            release.set()
            return await asyncio.gather(first, second)

    saved = asyncio.run(scenario())
    assert sorted(r.title for r in saved) == ["Soup", "Toast"]
    assert store.count("POST /recipes") == 2


def test_save_with_image_blocks_same_form_during_upload(make_client, store):
    image = ImageFile(uri="toast.jpg", content=b"jpeg")

    async def scenario():
        async with make_client() as rc:
            entered = asyncio.Event()
            release = asyncio.Event()
            original = rc.images.upload_image

            async def gated(img):
                entered.set()
                await release.wait()
                return await original(img)

            rc.images.upload_image = gated
            first = asyncio.create_task(rc.mutations.save_with_image({"title": "Toast", "servings": 2}, image=image))
            await entered.wait()
            with pytest.raises(MutationInProgressError):
                await rc.mutations.save_with_image({"title": "Toast", "servings": 2}, image=image)
            release.set()
            return await first

    saved = asyncio.run(scenario())
    assert saved.image_url is not None
    assert store.count("POST /recipes") == 1
    assert len(store.blobs) == 1
