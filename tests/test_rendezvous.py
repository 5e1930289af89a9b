import pytest

from errors import PairingRejected
from rendezvous import PairingRendezvous, PeerRole


def types(messages):
    return [m["type"] for m in messages]


@pytest.fixture
def rendezvous():
    return PairingRendezvous()


def test_first_peer_waits(rendezvous, make_connection, drain):
    first = make_connection()

    assert rendezvous.join(first, "s1") is False
    assert first.peer_role == PeerRole.INITIATOR
    assert first.paired_with is None
    assert drain(first) == [{"type": "session-joined", "sessionId": "s1", "role": "initiator"}]


def test_second_peer_completes_pair(rendezvous, make_connection, drain):
    first, second = make_connection("mobile"), make_connection("web")
    rendezvous.join(first, "s1")
    drain(first)

    assert rendezvous.join(second, "s1") is True

    assert second.peer_role == PeerRole.JOINER
    assert first.paired_with == second.connection_id
    assert second.paired_with == first.connection_id
    assert types(drain(first)) == ["connection-established"]
    assert types(drain(second)) == ["session-joined", "connection-established"]
    assert rendezvous.peer_of(first) is second
    assert rendezvous.peer_of(second) is first


def test_third_peer_is_rejected(rendezvous, make_connection, drain):
    first, second, third = make_connection(), make_connection(), make_connection()
    rendezvous.join(first, "s1")
    rendezvous.join(second, "s1")
    drain(first)
    drain(second)

    with pytest.raises(PairingRejected):
        rendezvous.join(third, "s1")

    assert len(rendezvous.members("s1")) == 2
    assert third.session_id is None
    assert drain(first) == []
    assert drain(second) == []
    assert drain(third) == []


def test_connection_cannot_join_twice(rendezvous, make_connection):
    conn = make_connection()
    rendezvous.join(conn, "s1")

    with pytest.raises(PairingRejected):
        rendezvous.join(conn, "s2")
    assert "s2" not in rendezvous.rooms


def test_rooms_are_isolated(rendezvous, make_connection):
    a, b = make_connection(), make_connection()
    assert rendezvous.join(a, "s1") is False
    assert rendezvous.join(b, "s2") is False
    assert rendezvous.peer_of(a) is None


def test_leave_notifies_remaining_peer_once(rendezvous, make_connection, drain):
    first, second = make_connection(), make_connection()
    rendezvous.join(first, "s1")
    rendezvous.join(second, "s1")
    drain(first)

    assert rendezvous.leave(second) is first
    assert rendezvous.leave(second) is None

    assert drain(first) == [{"type": "peer-disconnected", "sessionId": "s1"}]
    assert first.paired_with is None
    assert rendezvous.members("s1") == [first]


def test_last_leave_closes_room(rendezvous, make_connection, drain):
    conn = make_connection()
    rendezvous.join(conn, "s1")

    assert rendezvous.leave(conn) is None
    assert "s1" not in rendezvous.rooms


def test_remaining_peer_can_pair_again(rendezvous, make_connection, drain):
    first, second, replacement = make_connection(), make_connection(), make_connection()
    rendezvous.join(first, "s1")
    rendezvous.join(second, "s1")
    rendezvous.leave(second)
    drain(first)

    assert rendezvous.join(replacement, "s1") is True
    assert types(drain(first)) == ["connection-established"]
    assert rendezvous.peer_of(first) is replacement


def test_closed_connection_drops_messages(make_connection):
    conn = make_connection()
    conn.close()
    assert conn.send({"type": "anything"}) is False
