"""Tests for driver assignment."""

import asyncio

import pytest
from sqlalchemy import func, select

from lastmile.assign.coordinator import (
    OUTCOME_ASSIGNED,
    OUTCOME_CONFLICT,
    OUTCOME_RESCANNED,
    AssignmentCoordinator,
)
from lastmile.db.models import DriverAssignment, ScanLog
from tests.conftest import OWNER


@pytest.mark.asyncio
async def test_first_scan_assigns(db_session, make_driver):
    driver = await make_driver()

    result = await AssignmentCoordinator(db_session).assign(driver.id, "100", OWNER, scanned_code="100")

    assert result.outcome == OUTCOME_ASSIGNED
    assert result.ok
    assert result.assignment.driver_id == driver.id
    assert result.assignment.returned_at is None


@pytest.mark.asyncio
async def test_same_driver_rescan_keeps_single_assignment(db_session, make_driver):
    driver = await make_driver()
    coordinator = AssignmentCoordinator(db_session)

    first = await coordinator.assign(driver.id, "100", OWNER)
    second = await coordinator.assign(driver.id, "100", OWNER)

    assert second.outcome == OUTCOME_RESCANNED
    assert second.assignment.id == first.assignment.id
    rows = await db_session.scalar(select(func.count()).select_from(DriverAssignment))
    assert rows == 1


@pytest.mark.asyncio
async def test_other_driver_gets_conflict_with_holder_details(db_session, make_driver):
    holder = await make_driver(name="Ana", phone="555-0101")
    other = await make_driver(name="Bruno")
    coordinator = AssignmentCoordinator(db_session)

    await coordinator.assign(holder.id, "100", OWNER)
    result = await coordinator.assign(other.id, "100", OWNER)

    assert result.outcome == OUTCOME_CONFLICT
    assert not result.ok
    assert result.conflict.holder_driver_id == holder.id
    assert result.conflict.holder_name == "Ana"
    assert "555-0101" in str(result.conflict)

    active = await coordinator.get_active("100", OWNER)
    assert active.driver_id == holder.id


@pytest.mark.asyncio
async def test_return_then_reassign(db_session, make_driver):
    first = await make_driver()
    second = await make_driver()
    coordinator = AssignmentCoordinator(db_session)

    await coordinator.assign(first.id, "100", OWNER)
    assert (await coordinator.assign(second.id, "100", OWNER)).outcome == OUTCOME_CONFLICT

    returned = await coordinator.mark_returned("100", OWNER)
    assert returned.returned_at is not None

    result = await coordinator.assign(second.id, "100", OWNER)
    assert result.outcome == OUTCOME_ASSIGNED
    assert result.assignment.driver_id == second.id


@pytest.mark.asyncio
async def test_mark_returned_without_active_assignment(db_session):
    assert await AssignmentCoordinator(db_session).mark_returned("404", OWNER) is None


@pytest.mark.asyncio
async def test_same_package_for_different_owners(db_session, make_driver):
    mine = await make_driver()
    theirs = await make_driver(owner_id="owner-2")
    coordinator = AssignmentCoordinator(db_session)

    assert (await coordinator.assign(mine.id, "100", OWNER)).outcome == OUTCOME_ASSIGNED
    assert (await coordinator.assign(theirs.id, "100", "owner-2")).outcome == OUTCOME_ASSIGNED


@pytest.mark.asyncio
async def test_concurrent_scans_produce_one_holder(session_factory, make_driver):
    drivers = [await make_driver(name=f"Driver {n}") for n in range(5)]

    async def scan(driver_id):
        async with session_factory() as db:
            result = await AssignmentCoordinator(db).assign(driver_id, "321", OWNER)
            return result.outcome

    outcomes = await asyncio.gather(*(scan(d.id) for d in drivers))

    assert outcomes.count(OUTCOME_ASSIGNED) == 1
    assert outcomes.count(OUTCOME_CONFLICT) == 4

    async with session_factory() as db:
        active = await db.scalar(
            select(func.count())
            .select_from(DriverAssignment)
            .where(DriverAssignment.shipment_id == "321", DriverAssignment.returned_at.is_(None))
        )
        logged = (await db.execute(select(ScanLog.outcome))).scalars().all()
    assert active == 1
    assert sorted(logged) == sorted(outcomes)
