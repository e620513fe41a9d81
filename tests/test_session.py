import pytest

from conftest import RecordingTransport, run
from quickcollab.errors import AuthorizationError
from quickcollab.schemas import inbound_event
from quickcollab.session import SessionState


def test_lifecycle_transitions(hub, world):
    session = hub.open_session(RecordingTransport())
    assert session.state is SessionState.CONNECTED

    session.join(f"board:{world.board.id}")
    session.authenticate(world.alice.id)
    assert session.state is SessionState.AUTHENTICATED
    assert session.rooms == {f"board:{world.board.id}"}

    session.disconnect()
    assert session.state is SessionState.DISCONNECTED
    assert session.rooms == frozenset()
    assert session.id not in hub.sessions

    with pytest.raises(AuthorizationError):
        session.join(f"board:{world.board.id}")
    with pytest.raises(AuthorizationError):
        session.authenticate(world.alice.id)


def test_disconnect_removes_session_exactly_once(hub, monkeypatch):
    calls = []
    real_remove = hub.registry.remove_session

    def spy(session):
        calls.append(session)
        return real_remove(session)

    monkeypatch.setattr(hub.registry, "remove_session", spy)
    session = hub.open_session(RecordingTransport())
    session.join("board:b1")

    session.disconnect()
    session.disconnect()

    assert calls == [session]
    assert run(hub.dispatcher.broadcast("board:b1", "taskDeleted", "t1")) == 0


def test_deliver_after_disconnect_is_dropped(hub):
    transport = RecordingTransport()
    session = hub.open_session(transport)
    session.disconnect()

    assert run(session.deliver("taskCreated", {})) is False
    assert transport.sent == []


def test_mutations_require_authentication(hub, world):
    session = hub.open_session(RecordingTransport())
    session.join(f"board:{world.board.id}")
    event = inbound_event.validate_python(
        {"event": "createTask", "data": {"title": "Spec", "boardId": world.board.id}}
    )

    with pytest.raises(AuthorizationError):
        run(session.apply(event))


def test_handle_logs_failures_and_sends_nothing(hub, world, storage, caplog):
    transport = RecordingTransport()
    session = hub.open_session(transport, principal_id=world.carol.id)
    session.join(f"board:{world.board.id}")
    transport.sent.clear()

    run(session.handle({"event": "createTask", "data": {"title": "Spec", "board": world.board.id}}))
    run(session.handle({"event": "noSuchEvent", "data": {}}))
    run(session.handle({"event": "joinBoard"}))

    assert transport.sent == []
    assert storage.tasks == {}
    assert "createTask rejected" in caplog.text
    assert "malformed" in caplog.text


def test_authenticate_event(hub, world):
    transport = RecordingTransport()
    session = hub.open_session(transport)

    run(session.handle({"event": "authenticate", "data": {"token": "bogus"}}))
    assert session.state is SessionState.CONNECTED

    run(session.handle({"event": "authenticate", "data": {"token": world.bob.id}}))
    assert session.state is SessionState.AUTHENTICATED
    assert session.principal_id == world.bob.id
    assert transport.sent == [("authenticated", {"userId": world.bob.id})]


def test_join_and_leave_events_are_acknowledged(hub, world):
    transport = RecordingTransport()
    session = hub.open_session(transport)

    run(session.handle({"event": "joinBoard", "data": {"boardId": world.board.id}}))
    run(session.handle({"event": "joinTask", "data": {"taskId": "t1"}}))
    run(session.handle({"event": "joinUser", "data": {"userId": world.alice.id}}))
    run(session.handle({"event": "leaveTask", "data": {"taskId": "t1"}}))

    assert session.rooms == {f"board:{world.board.id}", f"user:{world.alice.id}"}
    assert transport.events() == ["joined", "joined", "joined", "left"]


def test_two_clients_see_the_same_created_task(hub, world):
    a, b = RecordingTransport(), RecordingTransport()
    alice = hub.open_session(a, principal_id=world.alice.id)
    bob = hub.open_session(b, principal_id=world.bob.id)
    for session in (alice, bob):
        run(session.handle({"event": "joinBoard", "data": {"boardId": world.board.id}}))

    run(
        alice.handle(
            {"event": "createTask", "data": {"title": "Spec", "board": world.board.id, "status": "To Do"}}
        )
    )

    [seen_by_a] = a.payloads("taskCreated")
    [seen_by_b] = b.payloads("taskCreated")
    assert seen_by_a == seen_by_b
    assert seen_by_a["id"]
    assert seen_by_a["title"] == "Spec"
    assert seen_by_a["status"] == "To Do"
    assert seen_by_a["createdAt"]


def test_socket_events_reach_every_mutation(hub, world):
    transport = RecordingTransport()
    session = hub.open_session(transport, principal_id=world.alice.id)
    run(session.handle({"event": "joinBoard", "data": {"boardId": world.board.id}}))
    run(session.handle({"event": "createTask", "data": {"title": "Spec", "boardId": world.board.id}}))
    task_id = transport.payloads("taskCreated")[0]["id"]
    run(session.handle({"event": "joinTask", "data": {"taskId": task_id}}))

    run(session.handle({"event": "updateTask", "data": {"_id": task_id, "status": "Done"}}))
    run(session.handle({"event": "editTask", "data": {"id": task_id, "title": "Spec v2"}}))
    run(session.handle({"event": "taskAssigned", "data": {"id": task_id, "assignedTo": world.bob.id}}))
    run(session.handle({"event": "commentAdded", "data": {"taskId": task_id, "content": "ship it"}}))
    run(session.handle({"event": "collaboratorAdded", "data": {"boardId": world.board.id, "collaborator": {"userId": world.bob.id}}}))
    run(session.handle({"event": "deleteTask", "data": {"taskId": task_id, "boardId": world.board.id}}))

    assert transport.events() == [
        "joined",
        "taskCreated",
        "joined",
        "taskUpdated",
        "taskEdited",
        "taskAssigned",
        "commentAdded",
        "collaboratorAdded",
        "taskDeleted",
    ]
    assert transport.payloads("taskDeleted") == [task_id]
