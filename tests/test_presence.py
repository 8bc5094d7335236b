from realtime import PresenceRegistry


def test_join_and_lookup():
    registry = PresenceRegistry()
    registry.join("u1", "sid-a")
    assert registry.socket_for("u1") == "sid-a"
    assert "u1" in registry
    assert registry.socket_for("u2") is None


def test_rejoin_replaces_socket():
    registry = PresenceRegistry()
    registry.join("u1", "sid-a")
    registry.join("u1", "sid-b")
    assert registry.socket_for("u1") == "sid-b"
    assert len(registry) == 1


def test_leave_by_sid():
    registry = PresenceRegistry()
    registry.join("u1", "sid-a")
    registry.join("u2", "sid-b")
    assert registry.leave("sid-a") == "u1"
    assert registry.leave("sid-unknown") is None
    assert "u1" not in registry
    assert len(registry) == 1


def test_sweep_removes_disconnected():
    registry = PresenceRegistry()
    registry.join("u1", "sid-a")
    registry.join("u2", "sid-b")
    assert registry.sweep(lambda sid: sid == "sid-b") == 1
    assert "u1" not in registry
    assert registry.socket_for("u2") == "sid-b"
