import pytest

from registry.allocator import IdBatchAllocator, parse_counter, reconcile_next_batch
from registry.config import COUNTER_PATH
from registry.errors import CounterCorruptedError, LostMastershipError
from registry.store import SchemaRecord


class Role:
    def __init__(self, master: bool = True):
        self.master = master

    def __call__(self) -> bool:
        return self.master


def make_allocator(zk, store, role=None, batch_size=20):
    return IdBatchAllocator(zk, store, role or Role(), batch_size, COUNTER_PATH, name="test")


def counter(zk) -> int:
    return int(zk.get(COUNTER_PATH)[0])


@pytest.mark.parametrize("value, max_assigned, batch_size, floor, expected", [
    (None, -1, 20, 0, 0),
    (0, -1, 20, 0, 0),
    (19, -1, 20, 0, 20),
    (20, -1, 20, 0, 20),
    (40, 5, 20, 0, 40),
    (0, 50, 100, 0, 100),
    (0, 99, 100, 0, 100),
    (0, 100, 100, 0, 200),
    (0, 18, 20, 20, 20),
    (-7, -1, 20, 0, 0),
])
def test_reconcile_next_batch(value, max_assigned, batch_size, floor, expected):
    assert reconcile_next_batch(value, max_assigned, batch_size, floor) == expected


def test_parse_counter():
    assert parse_counter("40") == 40
    assert parse_counter(" 40\n") == 40
    with pytest.raises(CounterCorruptedError):
        parse_counter("forty")
    with pytest.raises(CounterCorruptedError):
        parse_counter(None)


def test_first_batch_creates_counter(make_client, store):
    zk = make_client()
    allocator = make_allocator(zk, store)

    batch = allocator.on_become_master()

    assert batch.batch_start == 0
    assert counter(zk) == 20
    assert [allocator.next_id() for _ in range(3)] == [0, 1, 2]


def test_unaligned_counter_is_bumped(make_client, store):
    zk = make_client()
    zk.create(COUNTER_PATH, "19")
    allocator = make_allocator(zk, store)

    assert allocator.on_become_master().batch_start == 20
    assert counter(zk) == 40


def test_each_reservation_jumps_a_batch(make_client, store):
    zk = make_client()
    allocator = make_allocator(zk, store)
    for k in range(4):
        allocator.on_become_master()
        assert counter(zk) >= (k + 1) * 20
        assert counter(zk) % 20 == 0


def test_last_id_of_batch_reserves_next(make_client, store):
    zk = make_client()
    allocator = make_allocator(zk, store)
    allocator.on_become_master()

    ids = [allocator.next_id() for _ in range(20)]

    assert ids == list(range(20))
    assert counter(zk) == 40
    assert allocator.batch.batch_start == 20
    assert allocator.next_id() == 20


def test_ids_keep_increasing_after_counter_reset(make_client, store):
    zk = make_client()
    allocator = make_allocator(zk, store)
    allocator.on_become_master()

    issued = []
    for i in range(30):
        if i == 10:
            zk.set(COUNTER_PATH, "0")
        schema_id = allocator.next_id()
        store.append(SchemaRecord("s", i + 1, schema_id, f"schema-{i}"))
        issued.append(schema_id)

    assert issued == sorted(set(issued))
    assert issued[:20] == list(range(20))
    assert min(issued[20:]) >= 20
    assert counter(zk) % 20 == 0


def test_reservation_uses_store_max_id(make_client, store):
    zk = make_client()
    zk.create(COUNTER_PATH, "0")
    store.append(SchemaRecord("s", 1, 57, "x"))
    allocator = make_allocator(zk, store)

    assert allocator.on_become_master().batch_start == 60
    assert allocator.next_id() == 60
    assert counter(zk) == 80


def test_corrupted_counter_is_fatal(make_client, store):
    zk = make_client()
    zk.create(COUNTER_PATH, "garbage")
    allocator = make_allocator(zk, store)

    with pytest.raises(CounterCorruptedError):
        allocator.on_become_master()
    assert allocator.batch is None


def test_concurrent_change_is_retried(make_client, store):
    zk = make_client()
    other = make_client("other")
    zk.create(COUNTER_PATH, "0")
    allocator = make_allocator(zk, store)

    original_set = zk.set
    calls = []

    def racing_set(path, data, version=-1):
        if not calls:
            other.set(COUNTER_PATH, "100")
        calls.append(data)
        return original_set(path, data, version)

    zk.set = racing_set
    batch = allocator.on_become_master()

    assert batch.batch_start == 100
    assert counter(zk) == 120
    assert calls == ["20", "120"]


def test_not_master_cannot_allocate(make_client, store):
    zk = make_client()
    role = Role(master=False)
    allocator = make_allocator(zk, store, role)
    with pytest.raises(LostMastershipError):
        allocator.next_id()

    role.master = True
    with pytest.raises(LostMastershipError):
        allocator.next_id()  # no batch reserved yet


def test_invalidate_discards_batch(make_client, store):
    zk = make_client()
    allocator = make_allocator(zk, store)
    allocator.on_become_master()
    allocator.next_id()

    allocator.invalidate()

    assert allocator.batch is None
    with pytest.raises(LostMastershipError):
        allocator.next_id()
    allocator.on_become_master()
    assert allocator.next_id() == 20


def test_demotion_during_allocation_fails(make_client, store):
    zk = make_client()
    answers = iter([True, True, True, False])
    allocator = make_allocator(zk, store, lambda: next(answers))
    allocator.on_become_master()

    assert allocator.next_id() == 0
    with pytest.raises(LostMastershipError):
        allocator.next_id()
    assert allocator.batch is None


def test_failed_eager_reservation_keeps_the_issued_id(make_client, store):
    zk = make_client()
    allocator = make_allocator(zk, store, batch_size=3)
    allocator.on_become_master()
    assert [allocator.next_id(), allocator.next_id()] == [0, 1]

    zk.set(COUNTER_PATH, "garbage")

    # the last id of the batch is still handed out; the reservation failure
    # surfaces on the next call
    assert allocator.next_id() == 2
    with pytest.raises(CounterCorruptedError):
        allocator.next_id()

    zk.set(COUNTER_PATH, "3")
    assert allocator.next_id() == 3
