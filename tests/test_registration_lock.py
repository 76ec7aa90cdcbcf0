"""Registration lock mutual exclusion and ownership tests."""

import asyncio

import pytest

from shortlink.errors import LockBusy
from shortlink.registration_lock import RegistrationLock


@pytest.fixture
def lock(kv_store) -> RegistrationLock:
    return RegistrationLock(kv_store, ttl_seconds=30, retry_delay_seconds=0.001)


@pytest.mark.asyncio
async def test_only_one_concurrent_acquire_succeeds(kv_store):
    # Separate instances stand in for separate service processes.
    locks = [RegistrationLock(kv_store) for _ in range(8)]

    results = await asyncio.gather(*(lock.try_acquire("register:alice") for lock in locks))

    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_acquire_is_per_name(lock):
    assert await lock.try_acquire("register:alice") is True
    assert await lock.try_acquire("register:bob") is True


@pytest.mark.asyncio
async def test_release_makes_lock_available_again(kv_store, lock):
    other = RegistrationLock(kv_store)
    assert await lock.try_acquire("register:alice") is True
    assert await other.try_acquire("register:alice") is False

    await lock.release("register:alice")

    assert await other.try_acquire("register:alice") is True


@pytest.mark.asyncio
async def test_lock_expires_after_ttl(kv_store, clock, lock):
    other = RegistrationLock(kv_store)
    assert await lock.try_acquire("register:alice") is True

    clock.advance(31)

    assert await other.try_acquire("register:alice") is True


@pytest.mark.asyncio
async def test_release_after_expiry_does_not_delete_new_owner(kv_store, clock, lock):
    other = RegistrationLock(kv_store)
    await lock.try_acquire("register:alice")
    clock.advance(31)
    await other.try_acquire("register:alice")

    await lock.release("register:alice")

    assert await RegistrationLock(kv_store).try_acquire("register:alice") is False


@pytest.mark.asyncio
async def test_release_without_holding_is_a_no_op(kv_store, lock):
    await RegistrationLock(kv_store).try_acquire("register:alice")

    await lock.release("register:alice")

    assert await kv_store.get("register:alice") is not None


@pytest.mark.asyncio
async def test_try_acquire_with_wait_polls_until_free(kv_store, lock):
    holder = RegistrationLock(kv_store)
    held = asyncio.Event()

    async def hold_briefly() -> None:
        await holder.try_acquire("register:alice")
        held.set()
        await asyncio.sleep(0.01)
        await holder.release("register:alice")

    async def wait_for_lock() -> bool:
        await held.wait()
        return await lock.try_acquire("register:alice", wait=1.0)

    _, acquired = await asyncio.gather(hold_briefly(), wait_for_lock())

    assert acquired is True


@pytest.mark.asyncio
async def test_shared_instance_expired_hold_does_not_release_new_owner(kv_store, clock, lock):
    a_inside = asyncio.Event()
    b_inside = asyncio.Event()
    a_released = asyncio.Event()
    still_held: list[bool] = []

    async def request_a() -> None:
        async with lock.hold("register:alice"):
            a_inside.set()
            await b_inside.wait()
        a_released.set()

    async def request_b() -> None:
        await a_inside.wait()
        clock.advance(31)
        async with lock.hold("register:alice"):
            b_inside.set()
            await a_released.wait()
            still_held.append(not await RegistrationLock(kv_store).try_acquire("register:alice"))

    await asyncio.gather(request_a(), request_b())

    assert still_held == [True]


@pytest.mark.asyncio
async def test_shared_instance_try_acquire_after_expiry_keeps_new_owner(kv_store, clock, lock):
    a_acquired = asyncio.Event()
    b_acquired = asyncio.Event()

    async def request_a() -> None:
        assert await lock.try_acquire("register:alice") is True
        a_acquired.set()
        await b_acquired.wait()
        await lock.release("register:alice")

    async def request_b() -> None:
        await a_acquired.wait()
        clock.advance(31)
        assert await lock.try_acquire("register:alice") is True
        b_acquired.set()

    await asyncio.gather(request_a(), request_b())

    assert await RegistrationLock(kv_store).try_acquire("register:alice") is False


@pytest.mark.asyncio
async def test_release_from_another_task_keeps_the_lock(kv_store, lock):
    assert await lock.try_acquire("register:alice") is True

    await asyncio.create_task(lock.release("register:alice"))

    assert await kv_store.get("register:alice") is not None
    await lock.release("register:alice")
    assert await kv_store.get("register:alice") is None


@pytest.mark.asyncio
async def test_hold_raises_lock_busy_when_taken(kv_store, lock):
    await RegistrationLock(kv_store).try_acquire("register:alice")

    with pytest.raises(LockBusy) as exc_info:
        async with lock.hold("register:alice"):
            pytest.fail("critical section must not run")

    assert exc_info.value.name == "register:alice"


@pytest.mark.asyncio
async def test_hold_releases_when_body_raises(kv_store, lock):
    with pytest.raises(RuntimeError):
        async with lock.hold("register:alice"):
            raise RuntimeError("insert failed")

    assert await kv_store.get("register:alice") is None


@pytest.mark.asyncio
async def test_hold_serializes_concurrent_sections(kv_store):
    entered: list[str] = []
    busy = 0

    async def register(owner: str) -> None:
        nonlocal busy
        try:
            async with RegistrationLock(kv_store).hold("register:alice"):
                entered.append(owner)
                await asyncio.sleep(0)
        except LockBusy:
            busy += 1

    await asyncio.gather(*(register(f"worker-{i}") for i in range(5)))

    assert len(entered) == 1
    assert busy == 4
