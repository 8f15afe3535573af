"""
Dependent lifecycle under capacity rules: count recompute, soft archive,
atomic slot reservation and the starter-tier boundary
"""
import pytest
from sqlalchemy import select, func

from clockwork.errors import RestrictionError
from clockwork.models import Account, Dependent, ScheduledTask, TaskType
from clockwork.models.account import RestrictionReason
from clockwork.services.dependents import dependent_service
from clockwork.services.usage_tracker import usage_tracker


async def _true_active_count(db, account):
    result = await db.execute(
        select(func.count(Dependent.id)).where(
            Dependent.account_id == account.id, Dependent.is_active.is_(True)
        )
    )
    return result.scalar_one()


async def _stored_count(db, account):
    result = await db.execute(select(Account.active_dependent_count).where(Account.id == account.id))
    return result.scalar_one()


async def test_count_matches_active_dependents_after_every_change(db, account):
    created = await dependent_service.import_dependents(
        db, account, [{"name": f"Client {i}"} for i in range(4)]
    )
    assert await _stored_count(db, account) == await _true_active_count(db, account) == 4

    await dependent_service.archive_dependents(db, account, [created[0].id, created[1].id])
    assert await _stored_count(db, account) == await _true_active_count(db, account) == 2

    await dependent_service.reactivate_dependent(db, account, created[0].id)
    assert await _stored_count(db, account) == await _true_active_count(db, account) == 3

    await dependent_service.create_dependent(db, account, {"name": "Late joiner"})
    assert await _stored_count(db, account) == await _true_active_count(db, account) == 4
    assert account.active_dependent_count == 4


async def test_recompute_repairs_a_drifted_counter(db, account, add_dependents):
    await add_dependents(account, 3)
    account.active_dependent_count = 42
    await db.commit()

    count = await usage_tracker.recompute_dependent_count(db, account)
    await db.commit()

    assert count == 3
    assert await _stored_count(db, account) == 3


async def test_archive_never_deletes_rows(db, account, add_dependents):
    dependents = await add_dependents(account, 3)
    target = dependents[0]

    archived = await dependent_service.archive_dependents(db, account, [target.id], reason="moved away")

    assert [d.id for d in archived] == [target.id]
    total = await db.execute(select(func.count(Dependent.id)).where(Dependent.account_id == account.id))
    assert total.scalar_one() == 3

    await db.refresh(target)
    assert target.is_active is False
    assert target.is_archived is True
    assert target.archived_at is not None
    assert target.archived_reason == "moved away"
    assert target.name == "Client 1"


async def test_archiving_twice_is_a_no_op(db, account, add_dependents):
    dependents = await add_dependents(account, 2)
    await dependent_service.archive_dependents(db, account, [dependents[0].id])

    second = await dependent_service.archive_dependents(db, account, [dependents[0].id])

    assert second == []
    assert await _stored_count(db, account) == 1


async def test_starter_tier_boundary(db, account, add_dependents):
    dependents = await add_dependents(account, 9)

    # The tenth fits and puts the account at its limit
    await dependent_service.create_dependent(db, account, {"name": "Tenth"})
    assert account.active_dependent_count == 10
    assert account.is_restricted
    assert account.restriction_reason == RestrictionReason.CAPACITY_EXCEEDED.value

    with pytest.raises(RestrictionError) as exc_info:
        await dependent_service.create_dependent(db, account, {"name": "Eleventh"})
    payload = exc_info.value.payload
    assert payload["reason"] == "capacity_exceeded"
    assert payload["current_clients"] == 10
    assert payload["client_limit"] == 10
    assert payload["upgrade_url"].endswith("/billing/upgrade")
    assert await _true_active_count(db, account) == 10

    # Freeing a slot lifts the capacity restriction and creation works again
    await dependent_service.archive_dependents(db, account, [dependents[0].id])
    assert account.is_restricted is False

    await dependent_service.create_dependent(db, account, {"name": "Replacement"})
    assert await _true_active_count(db, account) == 10


async def test_reservation_refuses_bulk_import_over_capacity(db, account, add_dependents):
    await add_dependents(account, 5)

    with pytest.raises(RestrictionError) as exc_info:
        await dependent_service.import_dependents(db, account, [{"name": f"New {i}"} for i in range(6)])

    assert exc_info.value.payload["requested"] == 6
    assert await _true_active_count(db, account) == 5
    assert await _stored_count(db, account) == 5
    # Under the limit, so no persisted restriction
    await db.refresh(account)
    assert account.is_restricted is False


async def test_reserve_slots_is_conditional(db, account, add_dependents):
    await add_dependents(account, 10)

    assert await usage_tracker.reserve_dependent_slots(db, account, 1) is False
    await db.rollback()

    other = Account(email="big@example.com", name="Big Gym", category="enterprise", tier_id="enterprise")
    db.add(other)
    await db.commit()
    assert await usage_tracker.reserve_dependent_slots(db, other, 500) is True


async def test_reactivation_blocked_when_restricted(db, account, add_dependents):
    dependents = await add_dependents(account, 10)
    await dependent_service.archive_dependents(db, account, [dependents[0].id])
    await dependent_service.create_dependent(db, account, {"name": "Takes the slot"})
    assert account.is_restricted

    with pytest.raises(RestrictionError):
        await dependent_service.reactivate_dependent(db, account, dependents[0].id)

    await db.refresh(dependents[0])
    assert dependents[0].is_active is False


async def test_restricted_account_can_still_read(db, account, add_dependents):
    await add_dependents(account, 10)
    account.is_restricted = True
    account.restriction_reason = RestrictionReason.CAPACITY_EXCEEDED.value
    await db.commit()

    listed = await dependent_service.list_dependents(db, account)
    assert len(listed) == 10
    fetched = await dependent_service.get_dependent(db, account, listed[0].id)
    assert fetched.id == listed[0].id


async def test_approaching_limit_schedules_one_warning(db, account, add_dependents):
    await add_dependents(account, 7)

    await dependent_service.create_dependent(db, account, {"name": "Eighth"})
    await dependent_service.create_dependent(db, account, {"name": "Ninth"})

    result = await db.execute(
        select(ScheduledTask).where(ScheduledTask.task_type == TaskType.SEND_LIMIT_WARNING.value)
    )
    warnings = result.scalars().all()
    assert len(warnings) == 1
    assert warnings[0].payload == {"client_count": 8, "limit": 10}


async def test_limit_email_sent_once(db, account, add_dependents, sent_emails):
    await add_dependents(account, 9)

    await dependent_service.create_dependent(db, account, {"name": "Tenth"})
    with pytest.raises(RestrictionError):
        await dependent_service.create_dependent(db, account, {"name": "Eleventh"})

    templates = [call.kwargs["template"] for call in sent_emails.await_args_list]
    assert templates.count("limit_reached") == 1
