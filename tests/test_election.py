import pytest
from kazoo.exceptions import ConnectionLoss, NoNodeError

from registry.config import COUNTER_PATH, MASTER_PATH
from registry.election import ElectorState, Role
from registry.errors import CounterCorruptedError, IneligibleForMasterError, LostMastershipError, NotMasterError
from registry.identity import NodeIdentity

from conftest import wait_until


def masters(nodes):
    return [n for n in nodes if n.is_master()]


def converged(nodes):
    """Exactly one master, and every node agrees on who it is."""
    found = masters(nodes)
    if len(found) != 1:
        return False
    expected = found[0].my_identity()
    return all(n.master_identity() == expected for n in nodes)


def counter(zk_server) -> int:
    return int(zk_server.value(COUNTER_PATH))


def test_first_node_becomes_master(make_node):
    node = make_node(9001)
    assert node.is_master()
    assert node.elector.state is ElectorState.MASTER
    assert node.master_identity() == node.my_identity()


def test_single_master_among_eligible(make_node):
    nodes = [make_node(9001 + i) for i in range(3)]
    wait_until(lambda: converged(nodes))
    assert nodes[0].is_master()


def test_master_key_holds_encoded_identity(make_node, zk_server):
    node = make_node(9001)
    assert NodeIdentity.decode(zk_server.value(MASTER_PATH)) == node.my_identity()


def test_ineligible_nodes_never_master(make_node):
    followers = [make_node(9101 + i, eligible=False) for i in range(2)]
    assert masters(followers) == []
    assert all(n.master_identity() is None for n in followers)

    leader = make_node(9001)
    everyone = followers + [leader]
    wait_until(lambda: converged(everyone))
    assert leader.is_master()

    leader.stop()
    wait_until(lambda: all(n.master_identity() is None for n in followers))
    assert masters(followers) == []


def test_forcing_ineligible_master_fails(make_node):
    leader = make_node(9001)
    follower = make_node(9101, eligible=False)
    wait_until(lambda: follower.master_identity() == leader.my_identity())

    with pytest.raises(IneligibleForMasterError):
        follower.set_master(follower.my_identity())
    with pytest.raises(IneligibleForMasterError):
        leader.set_master(NodeIdentity("localhost", 9101, False))

    assert follower.master_identity() == leader.my_identity()
    assert leader.is_master()
    assert not follower.is_master()


def test_new_master_after_stop(make_node):
    nodes = [make_node(9001 + i) for i in range(3)]
    wait_until(lambda: converged(nodes))

    nodes[0].stop()
    remaining = nodes[1:]
    wait_until(lambda: converged(remaining))


def test_every_election_reserves_a_new_batch(make_node, zk_server):
    nodes = [make_node(9001 + i, batch_size=20) for i in range(3)]
    wait_until(lambda: converged(nodes))
    assert counter(zk_server) == 20

    nodes[0].stop()
    wait_until(lambda: converged(nodes[1:]))
    assert counter(zk_server) == 40

    master = masters(nodes[1:])[0]
    master.stop()
    last = next(n for n in nodes[1:] if n is not master)
    wait_until(lambda: last.is_master())
    assert counter(zk_server) == 60


def test_session_loss_demotes_master(make_node, zk_server):
    first = make_node(9001)
    second = make_node(9002)
    wait_until(lambda: converged([first, second]))
    changes = []
    first.elector.add_listener(lambda prev, cur: changes.append((prev, cur)))
    old_session = first.zk.session_id

    zk_server.expire_session(first.zk.client)

    wait_until(lambda: (first.my_identity(), None) in changes)
    wait_until(lambda: first.zk.session_id != old_session)
    wait_until(lambda: converged([first, second]))
    # whichever node won the re-election reserved a fresh batch
    assert counter(zk_server) == 40


def test_follower_rejoins_after_session_loss(make_node, zk_server):
    first = make_node(9001)
    second = make_node(9002)
    wait_until(lambda: converged([first, second]))
    old_session = second.zk.session_id

    zk_server.expire_session(second.zk.client)

    wait_until(lambda: second.zk.session_id != old_session)
    wait_until(lambda: converged([first, second]))
    assert first.is_master()
    assert second.elector.role() is Role.FOLLOWER


def test_forced_demotion_fences_allocator(make_node):
    first = make_node(9001)
    second = make_node(9002)
    wait_until(lambda: converged([first, second]))

    first.set_master(second.my_identity())

    assert not first.is_master()
    with pytest.raises(LostMastershipError):
        first.allocator.next_id()


def test_listeners_see_master_changes(make_node):
    first = make_node(9001)
    second = make_node(9002, start=False)
    changes = []
    second.elector.add_listener(lambda prev, cur: changes.append((prev, cur)))
    second.start()
    wait_until(lambda: changes)
    assert changes[0] == (None, first.my_identity())

    first.stop()
    wait_until(lambda: second.is_master())
    assert changes[-1] == (None, second.my_identity())


def test_cluster_view_tracks_members(make_node):
    first = make_node(9001)
    second = make_node(9002, eligible=False)
    expected = [first.my_identity(), second.my_identity()]
    wait_until(lambda: first.cluster_view() == expected and second.cluster_view() == expected)

    second.stop()
    wait_until(lambda: first.cluster_view() == [first.my_identity()])


def test_corrupted_counter_stops_node(make_node, make_client, zk_server):
    make_client().create(COUNTER_PATH, "not a number")
    node = make_node(9001, start=False)
    with pytest.raises(CounterCorruptedError):
        node.start()
    assert node.zk.closed
    with pytest.raises(NoNodeError):
        zk_server.value(MASTER_PATH)


def test_partitioned_master_steps_down_before_takeover(make_node, zk_server):
    first = make_node(9001)
    second = make_node(9002)
    wait_until(lambda: converged([first, second]))
    first_was_master = []

    def on_change(previous, current):
        if current == second.my_identity():
            first_was_master.append(first.is_master())

    second.elector.add_listener(on_change)

    zk_server.partition(first.zk.client)
    wait_until(lambda: not first.is_master())
    # the session, and with it the master key, is still alive on the server
    assert second.master_identity() == first.my_identity()
    with pytest.raises(NotMasterError):
        first.register("s", "during partition")

    zk_server.expire_session(first.zk.client)
    wait_until(lambda: second.is_master())
    assert first_was_master == [False]

    zk_server.heal(first.zk.client)
    wait_until(lambda: converged([first, second]))
    assert second.is_master()


def test_master_resumes_after_short_partition(make_node, zk_server):
    node = make_node(9001)
    zk_server.partition(node.zk.client)
    wait_until(lambda: not node.is_master())

    zk_server.heal(node.zk.client)
    wait_until(lambda: node.is_master())
    # the batch held before the partition was dropped
    assert counter(zk_server) == 40
    assert node.register("s", "after partition") == 20


@pytest.mark.parametrize("operation", ["create", "get_children", "get"])
def test_failed_rejoin_is_retried(make_node, zk_server, operation):
    node = make_node(9001)
    node.zk.client.fail_next(operation, ConnectionLoss())

    zk_server.expire_session(node.zk.client)

    wait_until(lambda: node.is_master())
    assert NodeIdentity.decode(zk_server.value(MASTER_PATH)) == node.my_identity()
    assert node.cluster_view() == [node.my_identity()]
