from __future__ import annotations

import pytest

from fleet.app.models import CONFIRMED, Command, Device, PENDING
from fleet.app.services import device_commands as cmds
from fleet.app.services.projects import create_project, register_device


def _devices(fleet_db) -> tuple[Device, Device]:
    with fleet_db.db_session() as session:
        create_project(session, name="Commands", owner="ops@example.com")
    with fleet_db.db_session() as session:
        a = register_device(session, "PROJ1", slot=1, name="Pump").device
        b = register_device(session, "PROJ1", slot=2, name="Fan").device
    return a, b


def _enqueue(fleet_db, device: Device, actuator: str, kind: str = "on", value: float | None = None) -> str:
    with fleet_db.db_session() as session:
        return cmds.enqueue(session, device=device, actuator_ref=actuator, kind=kind, value=value).id


def _poll(fleet_db, device: Device) -> list[str]:
    with fleet_db.db_session() as session:
        return [c.id for c in cmds.poll_pending(session, device_id=device.id)]


def test_poll_is_fifo_per_device(fleet_db) -> None:
    a, b = _devices(fleet_db)
    first = _enqueue(fleet_db, a, "relay-1")
    other = _enqueue(fleet_db, b, "relay-9")
    second = _enqueue(fleet_db, a, "relay-2", kind="set_value", value=42.0)
    third = _enqueue(fleet_db, a, "relay-1", kind="off")

    assert _poll(fleet_db, a) == [first, second, third]
    assert _poll(fleet_db, b) == [other]


def test_identical_commands_are_not_deduplicated(fleet_db) -> None:
    a, _ = _devices(fleet_db)
    one = _enqueue(fleet_db, a, "relay-1")
    two = _enqueue(fleet_db, a, "relay-1")

    assert one != two
    assert _poll(fleet_db, a) == [one, two]


def test_pending_commands_are_redelivered_until_confirmed(fleet_db) -> None:
    a, _ = _devices(fleet_db)
    cid = _enqueue(fleet_db, a, "relay-1")

    assert _poll(fleet_db, a) == [cid]
    # Device lost the response; next poll hands it out again.
    assert _poll(fleet_db, a) == [cid]

    with fleet_db.db_session() as session:
        assert cmds.confirm(session, command_id=cid, device_id=a.id) is True

    assert _poll(fleet_db, a) == []


def test_confirm_is_idempotent(fleet_db) -> None:
    a, _ = _devices(fleet_db)
    cid = _enqueue(fleet_db, a, "relay-1")

    with fleet_db.db_session() as session:
        assert cmds.confirm(session, command_id=cid) is True
    with fleet_db.session_local() as session:
        first_confirmed_at = session.query(Command).filter(Command.id == cid).one().confirmed_at

    with fleet_db.db_session() as session:
        assert cmds.confirm(session, command_id=cid) is False

    with fleet_db.session_local() as session:
        row = session.query(Command).filter(Command.id == cid).one()
        assert row.state == CONFIRMED
        assert row.confirmed_at == first_confirmed_at


def test_confirm_unknown_id_is_a_noop(fleet_db) -> None:
    _devices(fleet_db)
    with fleet_db.db_session() as session:
        assert cmds.confirm(session, command_id="does-not-exist") is False


def test_confirm_is_scoped_to_the_owning_device(fleet_db) -> None:
    a, b = _devices(fleet_db)
    cid = _enqueue(fleet_db, a, "relay-1")

    with fleet_db.db_session() as session:
        assert cmds.confirm(session, command_id=cid, device_id=b.id) is False

    assert _poll(fleet_db, a) == [cid]


def test_cancel_after_confirm_keeps_history(fleet_db) -> None:
    a, _ = _devices(fleet_db)
    cid = _enqueue(fleet_db, a, "relay-1")

    with fleet_db.db_session() as session:
        assert cmds.confirm(session, command_id=cid) is True
    with fleet_db.db_session() as session:
        assert cmds.cancel(session, command_id=cid) is False

    with fleet_db.session_local() as session:
        assert session.query(Command).filter(Command.id == cid).one().state == CONFIRMED


def test_confirm_after_cancel_is_a_noop(fleet_db) -> None:
    a, _ = _devices(fleet_db)
    cid = _enqueue(fleet_db, a, "relay-1")

    with fleet_db.db_session() as session:
        assert cmds.cancel(session, command_id=cid) is True
    with fleet_db.db_session() as session:
        assert cmds.confirm(session, command_id=cid) is False

    assert _poll(fleet_db, a) == []


def test_cancel_pending_clears_only_that_device_queue(fleet_db) -> None:
    a, b = _devices(fleet_db)
    done = _enqueue(fleet_db, a, "relay-1")
    _enqueue(fleet_db, a, "relay-2")
    _enqueue(fleet_db, a, "relay-3")
    keep = _enqueue(fleet_db, b, "relay-1")
    with fleet_db.db_session() as session:
        cmds.confirm(session, command_id=done)

    with fleet_db.db_session() as session:
        assert cmds.cancel_pending(session, device_id=a.id) == 2

    assert _poll(fleet_db, a) == []
    assert _poll(fleet_db, b) == [keep]
    with fleet_db.session_local() as session:
        states = [c.state for c in cmds.list_commands(session, device_id=a.id)]
    assert states == [CONFIRMED]


def test_list_commands_filters_by_state(fleet_db) -> None:
    a, _ = _devices(fleet_db)
    c1 = _enqueue(fleet_db, a, "relay-1")
    c2 = _enqueue(fleet_db, a, "relay-2")
    with fleet_db.db_session() as session:
        cmds.confirm(session, command_id=c1)

    with fleet_db.session_local() as session:
        assert [c.id for c in cmds.list_commands(session, device_id=a.id)] == [c1, c2]
        assert [c.id for c in cmds.list_commands(session, device_id=a.id, state=PENDING)] == [c2]
        assert [c.id for c in cmds.list_commands(session, device_id=a.id, state=CONFIRMED)] == [c1]
        assert cmds.pending_count(session, device_id=a.id) == 1

        with pytest.raises(ValueError):
            cmds.list_commands(session, device_id=a.id, state="expired")


def test_enqueue_rejects_blank_references(fleet_db) -> None:
    a, _ = _devices(fleet_db)
    with pytest.raises(ValueError):
        with fleet_db.db_session() as session:
            cmds.enqueue(session, device=a, actuator_ref="  ", kind="on")
