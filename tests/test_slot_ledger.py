"""Tests for SlotLedger holds, releases and contention."""

from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from carebook.domain.slots import SlotLedger
from carebook.enums import SlotStatus
from carebook.errors import InvalidSlotState, SlotUnavailable
from carebook.models import Appointment, Slot

DAY = date(2030, 1, 15)


@pytest.fixture
def ledger(db, locks, clock) -> SlotLedger:
    return SlotLedger(db, locks=locks, clock=clock)


class TestReserve:
    """Tests for SlotLedger.reserve."""

    def test_reserve_materialises_and_holds(self, ledger) -> None:
        """First reservation creates the slot row in HELD."""
        slot = ledger.reserve("doctor_1", DAY, "10:00", "10:30", appointment_id="appt_a")
        assert slot.status == SlotStatus.HELD.value
        assert slot.appointment_id == "appt_a"
        assert slot.held_at is not None

    def test_second_reserve_unavailable(self, ledger) -> None:
        """A held slot cannot be reserved again."""
        ledger.reserve("doctor_1", DAY, "10:00", "10:30", appointment_id="appt_a")
        with pytest.raises(SlotUnavailable) as exc:
            ledger.reserve("doctor_1", DAY, "10:00", "10:30", appointment_id="appt_b")
        assert "choose another time" in exc.value.message

    def test_different_identity_is_independent(self, ledger) -> None:
        """Another doctor or interval is a different slot."""
        ledger.reserve("doctor_1", DAY, "10:00", "10:30")
        other_doctor = ledger.reserve("doctor_2", DAY, "10:00", "10:30")
        other_time = ledger.reserve("doctor_1", DAY, "10:30", "11:00")
        assert other_doctor.status == SlotStatus.HELD.value
        assert other_time.status == SlotStatus.HELD.value

    def test_reserve_published_slot(self, ledger, db) -> None:
        """Reserving a published OPEN slot reuses its row."""
        published = ledger.publish_availability("doctor_1", DAY, [("09:00", "09:30")])
        slot = ledger.reserve("doctor_1", DAY, "09:00", "09:30")
        assert slot.id == published[0].id
        assert db.query(Slot).count() == 1

    @pytest.mark.parametrize("start,end", [("10:30", "10:00"), ("10:00", "10:00"), ("9am", "10:00")])
    def test_invalid_interval(self, ledger, start, end) -> None:
        """Malformed or empty intervals are rejected before touching state."""
        with pytest.raises(ValueError):
            ledger.reserve("doctor_1", DAY, start, end)


class TestConfirmAndRelease:
    """Tests for confirm and release transitions."""

    def test_confirm_held_slot(self, ledger) -> None:
        """HELD -> BOOKED."""
        slot = ledger.reserve("doctor_1", DAY, "10:00", "10:30")
        booked = ledger.confirm(slot.id)
        assert booked.status == SlotStatus.BOOKED.value
        assert booked.booked_at is not None

    def test_confirm_open_slot_fails(self, ledger) -> None:
        """Only HELD slots can be confirmed."""
        slot = ledger.publish_availability("doctor_1", DAY, [("10:00", "10:30")])[0]
        with pytest.raises(InvalidSlotState):
            ledger.confirm(slot.id)

    def test_confirm_booked_slot_fails(self, ledger) -> None:
        """Confirming twice is an error."""
        slot = ledger.reserve("doctor_1", DAY, "10:00", "10:30")
        ledger.confirm(slot.id)
        with pytest.raises(InvalidSlotState):
            ledger.confirm(slot.id)

    def test_release_held_and_rebook(self, ledger) -> None:
        """A released slot can be reserved again."""
        slot = ledger.reserve("doctor_1", DAY, "10:00", "10:30", appointment_id="appt_a")
        released = ledger.release(slot.id, appointment_id="appt_a")
        assert released.status == SlotStatus.OPEN.value
        assert released.appointment_id is None
        again = ledger.reserve("doctor_1", DAY, "10:00", "10:30", appointment_id="appt_b")
        assert again.appointment_id == "appt_b"

    def test_release_booked(self, ledger) -> None:
        """BOOKED -> OPEN on cancellation."""
        slot = ledger.reserve("doctor_1", DAY, "10:00", "10:30")
        ledger.confirm(slot.id)
        assert ledger.release(slot.id).status == SlotStatus.OPEN.value

    def test_release_is_idempotent(self, ledger) -> None:
        """Releasing an OPEN slot is a no-op, not an error."""
        slot = ledger.reserve("doctor_1", DAY, "10:00", "10:30")
        ledger.release(slot.id)
        assert ledger.release(slot.id).status == SlotStatus.OPEN.value

    def test_release_by_other_appointment_keeps_hold(self, ledger) -> None:
        """A stale release from a previous holder never frees the current hold."""
        slot = ledger.reserve("doctor_1", DAY, "10:00", "10:30", appointment_id="appt_a")
        ledger.release(slot.id, appointment_id="appt_a")
        ledger.reserve("doctor_1", DAY, "10:00", "10:30", appointment_id="appt_b")

        current = ledger.release(slot.id, appointment_id="appt_a")
        assert current.status == SlotStatus.HELD.value
        assert current.appointment_id == "appt_b"


class TestAvailability:
    """Tests for publishing and resetting availability."""

    def test_publish_is_idempotent(self, ledger, db) -> None:
        """Publishing the same windows twice does not duplicate slots."""
        windows = [("09:00", "09:30"), ("09:30", "10:00")]
        ledger.publish_availability("doctor_1", DAY, windows)
        slots = ledger.publish_availability("doctor_1", DAY, windows)
        assert len(slots) == 2
        assert db.query(Slot).count() == 2
        assert all(s.status == SlotStatus.OPEN.value for s in slots)

    def test_publish_keeps_held_slots(self, ledger) -> None:
        """Republishing never reopens a held slot."""
        ledger.reserve("doctor_1", DAY, "09:00", "09:30")
        slots = ledger.publish_availability("doctor_1", DAY, [("09:00", "09:30")])
        assert slots[0].status == SlotStatus.HELD.value

    def test_reset_period_drops_unused_open_slots(self, ledger, db) -> None:
        """Only OPEN, never-booked slots before the cutoff are removed."""
        old_day = date(2030, 1, 1)
        ledger.publish_availability("doctor_1", old_day, [("09:00", "09:30"), ("09:30", "10:00")])
        held = ledger.reserve("doctor_1", old_day, "10:00", "10:30")
        released = ledger.reserve("doctor_1", old_day, "11:00", "11:30")
        db.add(
            Appointment(
                id="appt_hist",
                patient_id="p",
                doctor_id="doctor_1",
                slot_id=released.id,
                status="CANCELLED",
                base_fee=1,
                consultation_fee=1,
                platform_fee=0,
                total_amount=1,
            )
        )
        db.commit()
        ledger.release(released.id)
        ledger.publish_availability("doctor_1", DAY, [("09:00", "09:30")])

        deleted = ledger.reset_period("doctor_1", date(2030, 1, 10))

        assert deleted == 2
        remaining = {s.id for s in ledger.list_slots("doctor_1")}
        assert held.id in remaining
        assert released.id in remaining
        assert len(ledger.list_slots("doctor_1", slot_date=DAY)) == 1

    def test_list_slots_by_status(self, ledger) -> None:
        """Listing filters by state."""
        ledger.publish_availability("doctor_1", DAY, [("09:00", "09:30"), ("09:30", "10:00")])
        ledger.reserve("doctor_1", DAY, "09:00", "09:30")
        open_slots = ledger.list_slots("doctor_1", DAY, SlotStatus.OPEN)
        assert [s.start_time for s in open_slots] == ["09:30"]


class TestContention:
    """Concurrent reservations of one slot identity."""

    def test_exactly_one_of_many_concurrent_reserves_wins(self, session_factory, locks) -> None:
        """1000 concurrent reserve calls: one HELD, 999 SlotUnavailable."""
        attempts = 1000

        def attempt(i: int) -> str:
            session = session_factory()
            try:
                SlotLedger(session, locks=locks).reserve(
                    "doctor_hot", DAY, "18:00", "18:30", appointment_id=f"appt_{i}"
                )
                return "won"
            except SlotUnavailable:
                return "lost"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=32) as pool:
            results = list(pool.map(attempt, range(attempts)))

        assert results.count("won") == 1
        assert results.count("lost") == attempts - 1

        session = session_factory()
        try:
            slots = session.query(Slot).filter(Slot.doctor_id == "doctor_hot").all()
            assert len(slots) == 1
            assert slots[0].status == SlotStatus.HELD.value
            winner = results.index("won")
            assert slots[0].appointment_id == f"appt_{winner}"
        finally:
            session.close()
        assert locks.active_keys() == 0
