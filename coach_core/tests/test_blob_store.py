import aiosqlite
import pytest

from coach_core.domain.exceptions import BusinessError
from coach_core.domain.models import Attachment
from coach_core.infrastructure.storage.blob_store import SqliteBlobStore, new_blob_key


PNG = Attachment(mime_type="image/png", data=b"\x89PNG\r\n", name="chart.png")


def test_blob_keys_are_unique_and_prefixed():
    keys = {new_blob_key() for _ in range(200)}
    assert len(keys) == 200
    assert all(k.startswith("img_") for k in keys)


@pytest.mark.asyncio
async def test_put_get_round_trip(tmp_path):
    store = SqliteBlobStore(root=tmp_path)
    key = await store.put(PNG)
    assert await store.get(key) == PNG
    assert await store.get("img_missing") is None


@pytest.mark.asyncio
async def test_blobs_are_immutable(tmp_path):
    store = SqliteBlobStore(root=tmp_path)
    await store.put(PNG, key="img_fixed")
    with pytest.raises(BusinessError) as exc:
        await store.put(Attachment("image/jpeg", b"other"), key="img_fixed")
    assert exc.value.code == "BLOB_EXISTS"
    assert (await store.get("img_fixed")).data == PNG.data


@pytest.mark.asyncio
async def test_copy_creates_independent_blob(tmp_path):
    store = SqliteBlobStore(root=tmp_path)
    key = await store.put(PNG)
    copied = await store.copy(key)
    assert copied is not None and copied != key
    await store.delete(key)
    assert await store.get(key) is None
    assert await store.get(copied) == PNG
    assert await store.copy("img_missing") is None


@pytest.mark.asyncio
async def test_non_bytes_payload_is_treated_as_absent(tmp_path):
    store = SqliteBlobStore(root=tmp_path)
    good = await store.put(PNG)
    await store.ensure_database()
    async with aiosqlite.connect(store.db_path) as db:
        await db.execute(
            "INSERT INTO blobs (key, mime_type, name, data, created_at) VALUES (?, ?, ?, ?, ?)",
            ("img_corrupt", "image/png", "x", "not bytes", 0),
        )
        await db.commit()
    assert await store.get("img_corrupt") is None
    assert [k for k, _ in await store.list_all()] == [good]


@pytest.mark.asyncio
async def test_clear_removes_everything(tmp_path):
    store = SqliteBlobStore(root=tmp_path)
    await store.put(PNG)
    await store.put(PNG)
    assert len(await store.list_all()) == 2
    await store.clear()
    assert await store.list_all() == []


@pytest.mark.asyncio
async def test_corrupt_database_reads_as_empty(tmp_path):
    (tmp_path / "blobs.db").write_bytes(b"this is not an sqlite database file\n" * 64)
    store = SqliteBlobStore(root=tmp_path)

    assert await store.get("img_any") is None
    assert await store.list_all() == []
    assert await store.copy("img_any") is None
    with pytest.raises(BusinessError) as exc:
        await store.delete("img_any")
    assert exc.value.code == "STORE_DELETE_ERROR"
    with pytest.raises(BusinessError) as exc:
        await store.put(PNG)
    assert exc.value.code == "STORE_WRITE_ERROR"
