import pytest

from connections.models import ParticipantRole
from connections.registry import ConnectionRegistry


@pytest.fixture
def registry():
    return ConnectionRegistry()


def test_register_defaults_driver_to_unavailable(registry):
    participant = registry.register("A", "driver", object())

    assert participant.role == ParticipantRole.DRIVER
    assert participant.available is False
    assert registry.list_eligible_drivers() == []


def test_reregister_replaces_handle_and_keeps_state(registry):
    old, new = object(), object()
    registry.register("A", "driver", old)
    registry.set_availability("A", True)
    registry.claim_driver("A", "r1")

    registry.register("A", "driver", new)

    assert registry.connection_for("A") is new
    assert registry.assignment_of("A") == "r1"
    assert len(registry) == 1


def test_reregister_with_other_role_is_refused(registry):
    registry.register("A", "driver", object())

    with pytest.raises(ValueError):
        registry.register("A", "rider", object())


def test_eligible_drivers_in_registration_order(registry):
    for driver_id in ("C", "A", "B"):
        registry.register(driver_id, "driver", object())
        registry.set_availability(driver_id, True)
    registry.register("rider-1", "rider", object())

    assert registry.list_eligible_drivers() == ["C", "A", "B"]
    assert registry.list_eligible_drivers(exclude_ids=["A"]) == ["C", "B"]

    registry.set_availability("C", False)
    assert registry.list_eligible_drivers() == ["A", "B"]


def test_availability_only_for_drivers(registry):
    registry.register("rider-1", "rider", object())

    assert registry.set_availability("rider-1", True) is False
    assert registry.set_availability("ghost", True) is False


def test_claim_is_exclusive(registry):
    registry.register("A", "driver", object())
    registry.set_availability("A", True)

    assert registry.claim_driver("A", "r1") is True
    assert registry.claim_driver("A", "r2") is False
    assert registry.assignment_of("A") == "r1"
    assert registry.list_eligible_drivers() == []


def test_claim_requires_availability(registry):
    registry.register("A", "driver", object())

    assert registry.claim_driver("A", "r1") is False
    assert registry.claim_driver("ghost", "r1") is False


def test_release_only_matching_assignment(registry):
    registry.register("A", "driver", object())
    registry.set_availability("A", True)
    registry.claim_driver("A", "r1")

    assert registry.release_driver("A", "r2") is False
    assert registry.release_driver("A", "r1") is True
    assert registry.assignment_of("A") is None
    assert registry.list_eligible_drivers() == ["A"]


def test_unregister_returns_final_record(registry):
    registry.register("A", "driver", object())
    registry.set_availability("A", True)
    registry.claim_driver("A", "r1")

    participant = registry.unregister("A")

    assert participant.current_request_id == "r1"
    assert "A" not in registry
    assert registry.connection_for("A") is None
    assert registry.unregister("A") is None


def test_get_returns_copy(registry):
    registry.register("A", "driver", object())

    copy = registry.get("A")
    copy.available = True

    assert registry.get("A").available is False
