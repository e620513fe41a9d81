from datetime import datetime, timedelta, timezone

import pytest

from conftest import run
from quickcollab.db import SqlStorage, init_db, make_engine
from quickcollab.errors import ConflictError
from quickcollab.models import Collaborator, Role, TaskStatus


@pytest.fixture
def sql():
    engine = make_engine("sqlite://")
    init_db(engine)
    storage = SqlStorage(engine)
    yield storage
    engine.dispose()


def test_boards_and_collaborators(sql):
    async def scenario():
        alice = await sql.create_user("Alice@Example.com", "Alice")
        bob = await sql.create_user("bob@example.com", "Bob")
        board = await sql.create_board("Launch", alice)
        updated = await sql.add_collaborator(board.id, Collaborator(user_id=bob.id, email=bob.email))
        with pytest.raises(ConflictError):
            await sql.add_collaborator(board.id, Collaborator(user_id=bob.id, email=bob.email))
        return alice, bob, board, updated, await sql.list_boards_for_user(bob.id)

    alice, bob, board, updated, bobs_boards = run(scenario())

    assert alice.email == "alice@example.com"
    assert [(c.user_id, c.role) for c in board.collaborators] == [(alice.id, Role.OWNER)]
    assert [(c.user_id, c.role) for c in updated.collaborators] == [
        (alice.id, Role.OWNER),
        (bob.id, Role.MEMBER),
    ]
    assert [b.id for b in bobs_boards] == [board.id]
    assert run(sql.get_user_by_email("ALICE@example.com")).id == alice.id


def test_task_lifecycle(sql):
    async def scenario():
        owner = await sql.create_user("owner@example.com", "Owner")
        board = await sql.create_board("Ops", owner)
        task = await sql.create_task(board.id, "Spec", tags=["a", "b"])
        updated = await sql.update_task(task.id, {"status": TaskStatus.DONE, "tags": []})
        comment = await sql.create_comment(task.id, owner.id, "done")
        listed = await sql.list_tasks(board.id)
        comments = await sql.list_comments(task.id)
        first = await sql.delete_task(task.id)
        second = await sql.delete_task(task.id)
        missing = await sql.update_task(task.id, {"title": "x"})
        return task, updated, comment, listed, comments, first, second, missing

    task, updated, comment, listed, comments, first, second, missing = run(scenario())

    assert task.status is TaskStatus.TODO
    assert task.created_at.tzinfo is not None
    assert updated.status is TaskStatus.DONE
    assert updated.tags == []
    assert updated.title == "Spec"
    assert updated.created_at == task.created_at
    assert [t.id for t in listed] == [task.id]
    assert [c.id for c in comments] == [comment.id]
    assert (first, second, missing) == (True, False, None)


def test_update_refuses_board_change(sql):
    async def scenario():
        owner = await sql.create_user("owner@example.com", "Owner")
        board = await sql.create_board("Ops", owner)
        task = await sql.create_task(board.id, "Spec")
        await sql.update_task(task.id, {"board": "elsewhere"})

    with pytest.raises(ValueError):
        run(scenario())


def test_due_dates_are_stored_as_utc(sql):
    due = datetime(2025, 1, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))

    async def scenario():
        owner = await sql.create_user("owner@example.com", "Owner")
        board = await sql.create_board("Ops", owner)
        created = await sql.create_task(board.id, "Spec", due_date=due)
        fetched = await sql.get_task(created.id)
        moved = await sql.update_task(created.id, {"due_date": datetime(2025, 3, 1, 9, 30)})
        return created, fetched, moved, await sql.get_task(created.id)

    created, fetched, moved, refetched = run(scenario())

    assert created.due_date == fetched.due_date == due
    assert fetched.due_date.utcoffset() == timedelta(0)
    assert fetched.due_date.hour == 8
    assert moved.due_date == refetched.due_date == datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)
