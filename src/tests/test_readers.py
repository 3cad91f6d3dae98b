from datetime import date, datetime, timedelta

import pytest

from libris import models
from libris.actions import loans, readers
from conftest import make_profile, make_book, caller_for

pytestmark = pytest.mark.asyncio

NOW = datetime(2024, 4, 2, 10, 0)

async def test_first_profile_may_be_admin_then_only_admins_assign_roles(session):
    r = await readers.register_profile(session, username="root", email="Root@Example.edu",
                                       first_name="Ada", last_name="Admin", role=models.Role.ADMIN)
    assert r["ok"] is True
    assert r["data"]["email"] == "root@example.edu"
    admin = caller_for(await session.get(models.Profile, r["data"]["user_id"]))

    r = await readers.register_profile(session, username="sneaky", email="s@example.edu",
                                       first_name="S", last_name="Neaky", role=models.Role.LIBRARIAN)
    assert r["code"] == "FORBIDDEN"
    r = await readers.register_profile(session, username="libby", email="l@example.edu",
                                       first_name="Libby", last_name="Stacks", role=models.Role.LIBRARIAN,
                                       caller=admin)
    assert r["ok"] is True
    assert r["data"]["role"] == "librarian"

async def test_register_profile_rejections(session, student):
    r = await readers.register_profile(session, username="sam", email="other@example.edu",
                                       first_name="Sam", last_name="Two")
    assert r["code"] == "USERNAME_EXISTS"
    r = await readers.register_profile(session, username="sammy", email="SAM@example.edu",
                                       first_name="Sam", last_name="Two")
    assert r["code"] == "EMAIL_EXISTS"
    r = await readers.register_profile(session, username="", email="x@example.edu",
                                       first_name="X", last_name="Y")
    assert r["code"] == "MISSING_FIELDS"

async def test_profile_admin_operations(session, librarian, student):
    admin = await make_profile(session, username="ada", role=models.Role.ADMIN)
    helper = await make_profile(session, username="tom")
    r = await readers.set_role(session, caller=caller_for(librarian), user_id=helper.id, role=models.Role.LIBRARIAN)
    assert r["code"] == "FORBIDDEN"
    r = await readers.set_role(session, caller=caller_for(admin), user_id=helper.id, role=models.Role.LIBRARIAN)
    assert r["data"]["role"] == "librarian"

    r = await readers.set_active(session, caller=caller_for(librarian), user_id=helper.id, is_active=False)
    assert r["data"]["is_active"] is False
    r = await readers.set_active(session, caller=caller_for(student), user_id=librarian.id, is_active=False)
    assert r["code"] == "FORBIDDEN"

    listed = await readers.list_profiles(session, caller=caller_for(librarian))
    assert len(listed["data"]["items"]) == 4
    assert (await readers.list_profiles(session, caller=caller_for(student)))["code"] == "FORBIDDEN"
    assert (await readers.get_profile(session, caller=caller_for(student), user_id=student.id))["ok"] is True
    assert (await readers.get_profile(session, caller=caller_for(student), user_id=admin.id))["code"] == "FORBIDDEN"
    assert (await readers.get_profile(session, caller=caller_for(admin), user_id="nope"))["code"] == "USER_NOT_FOUND"

async def test_favorites(session, student, book):
    me = caller_for(student)
    r = await readers.add_favorite(session, caller=me, book_id=book.id, now=NOW)
    assert r["ok"] is True
    favorite_id = r["data"]["favorite_id"]
    assert (await readers.add_favorite(session, caller=me, book_id=book.id))["code"] == "ALREADY_FAVORITE"
    assert (await readers.add_favorite(session, caller=me, book_id="nope"))["code"] == "BOOK_NOT_FOUND"

    listed = await readers.list_favorites(session, caller=me)
    [fav] = listed["data"]["items"]
    assert fav["title"] == "Fluent Python"
    assert fav["available_copies"] == 2

    other = await make_profile(session, username="olivia")
    r = await readers.remove_favorite(session, caller=caller_for(other), favorite_id=favorite_id)
    assert r["code"] == "FAVORITE_NOT_FOUND"
    r = await readers.remove_favorite(session, caller=me, favorite_id=favorite_id)
    assert r["ok"] is True
    assert (await readers.list_favorites(session, caller=me))["data"]["items"] == []

async def test_goal_progress_counts_returns_in_window(session, librarian, student):
    me = caller_for(student)
    r = await readers.create_goal(session, caller=me, target_value=2, start_date=date(2024, 1, 31))
    assert r["ok"] is True
    assert r["data"]["end_date"] == "2024-02-29"
    assert (await readers.create_goal(session, caller=me, target_value=0))["code"] == "INVALID_TARGET"

    for n, returned in enumerate([datetime(2024, 2, 5), datetime(2024, 2, 20), datetime(2024, 3, 5)]):
        b = await make_book(session, call_number=f"PZ{n}", title=f"Story {n}", genre="Fiction", copies=1)
        issued = await loans.issue_book(session, caller=caller_for(librarian), book_id=b.id,
                                        borrower_id=student.id, now=returned - timedelta(days=3))
        await loans.return_book(session, caller=me, loan_id=issued["data"]["loan_id"], return_date=returned)

    goals = await readers.list_goals(session, caller=me, now=datetime(2024, 2, 21))
    [goal] = goals["data"]["items"]
    assert goal["current_value"] == 2
    assert goal["status"] == "completed"
    assert goal["progress"] == 100.0

async def test_goal_expires_when_window_passes(session, student):
    me = caller_for(student)
    await readers.create_goal(session, caller=me, target_value=3, start_date=date(2024, 1, 1))
    goals = await readers.list_goals(session, caller=me, now=datetime(2024, 2, 10))
    assert goals["data"]["items"][0]["status"] == "expired"
    assert goals["data"]["items"][0]["days_left"] == 0

async def test_history_tracks_loans_and_notes(session, librarian, student, book):
    me = caller_for(student)
    issued = await loans.issue_book(session, caller=caller_for(librarian), book_id=book.id,
                                    borrower_id=student.id, now=NOW)
    [entry] = (await readers.list_history(session, caller=me))["data"]["items"]
    assert entry["reading_status"] == "reading"

    await loans.return_book(session, caller=me, loan_id=issued["data"]["loan_id"], return_date=NOW + timedelta(days=3))
    [entry] = (await readers.list_history(session, caller=me, search="ramalho"))["data"]["items"]
    assert entry["reading_status"] == "completed"
    assert (await readers.list_history(session, caller=me, search="tolkien"))["data"]["items"] == []

    r = await readers.update_history_notes(session, caller=me, history_id=entry["history_id"], notes="Chapter 17!")
    assert r["data"]["notes"] == "Chapter 17!"
    other = await make_profile(session, username="olivia")
    r = await readers.update_history_notes(session, caller=caller_for(other), history_id=entry["history_id"], notes="x")
    assert r["code"] == "HISTORY_NOT_FOUND"

async def test_reading_stats(session, librarian, student, book):
    staff = caller_for(librarian)
    novel = await make_book(session, call_number="PR6019", title="Dubliners", author="James Joyce",
                            genre="Fiction", copies=1)
    ulysses = await make_book(session, call_number="PR6023", title="Ulysses", author="James Joyce",
                              genre="Fiction", copies=1)
    done = await loans.issue_book(session, caller=staff, book_id=novel.id, borrower_id=student.id, now=NOW)
    await loans.return_book(session, caller=staff, loan_id=done["data"]["loan_id"], return_date=NOW + timedelta(days=2))
    await loans.issue_book(session, caller=staff, book_id=ulysses.id, borrower_id=student.id, now=NOW)
    await loans.issue_book(session, caller=staff, book_id=book.id, borrower_id=student.id,
                           now=NOW - timedelta(days=30))

    r = await readers.reading_stats(session, caller=caller_for(student), now=NOW + timedelta(days=3))
    assert r["data"]["total_books_read"] == 1
    assert r["data"]["currently_reading"] == 1
    assert r["data"]["overdue_books"] == 1
    assert r["data"]["favorite_genre"] == "Fiction"
    other = await make_profile(session, username="olivia")
    assert (await readers.reading_stats(session, caller=caller_for(other), user_id=student.id))["code"] == "FORBIDDEN"
