"""Tests for campaign steps, callbacks, appointments and reminders."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from lead_dispatch.campaigns.scheduler import CampaignScheduler
from lead_dispatch.core.errors import NotFoundError, ValidationError
from lead_dispatch.core.models import (
    AppointmentStatus,
    CallbackStatus,
    CampaignStatus,
    CampaignStepSpec,
    Channel,
    ContactInfo,
    DateRange,
    LeadSource,
    LeadType,
    ReminderType,
    SequenceStatus,
    StepType,
)

from conftest import FailingMessenger


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _campaign(scheduler, *step_types, delay_hours: float = 0.0, **kwargs):
    steps = [
        CampaignStepSpec(order=i + 1, type=t, delay_hours=delay_hours, content=f"step {i + 1}")
        for i, t in enumerate(step_types)
    ]
    return scheduler.create_campaign(
        kwargs.pop("name", "Test campaign"), kwargs.pop("type", "follow_up"), steps=steps, **kwargs
    )


# ---------------------------------------------------------------------------
# Campaign definition
# ---------------------------------------------------------------------------


class TestCampaigns:
    def test_steps_keep_order_type_and_content(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE, StepType.WAIT, StepType.CALLBACK)

        assert [s.order for s in campaign.steps] == [1, 2, 3]
        assert [s.type for s in campaign.steps] == [StepType.MESSAGE, StepType.WAIT, StepType.CALLBACK]
        assert [s.content for s in campaign.steps] == ["step 1", "step 2", "step 3"]
        assert len({s.id for s in campaign.steps}) == 3

    def test_step_order_renumbered_in_input_order(self, scheduler):
        campaign = scheduler.create_campaign(
            "Renumbered",
            "follow_up",
            steps=[{"order": 7, "type": "email"}, {"order": 2, "type": "message"}],
        )
        assert [(s.order, s.type) for s in campaign.steps] == [(1, StepType.EMAIL), (2, StepType.MESSAGE)]

    def test_new_campaign_is_active_with_zero_counters(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE)
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.performance.total_leads == 0
        assert campaign.performance.completed_steps == 0

    def test_invalid_campaign_type(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.create_campaign("Bad", "carrier_pigeon")

    def test_invalid_step(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.create_campaign("Bad", "follow_up", steps=[{"order": 1, "type": "fax"}])

    def test_unknown_campaign(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.get_campaign("missing")

    def test_performance_snapshots_are_stable(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE)
        first = scheduler.get_campaign_performance(campaign.id)
        second = scheduler.get_campaign_performance(campaign.id)
        assert first == second

    def test_returned_campaign_is_a_copy(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE)
        campaign.steps.clear()
        assert len(scheduler.get_campaign(campaign.id).steps) == 1

    def test_pause_and_resume(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE)
        scheduler.pause_campaign(campaign.id)
        assert scheduler.get_active_campaigns() == []
        scheduler.resume_campaign(campaign.id)
        assert [c.id for c in scheduler.get_active_campaigns()] == [campaign.id]

    def test_audience_matching(self, scheduler, make_lead):
        _campaign(
            scheduler,
            StepType.MESSAGE,
            target_audience={"lead_types": ["hot"], "sources": ["website"]},
        )
        hot = make_lead(source=LeadSource.WEBSITE, lead_type=LeadType.HOT)
        cold = make_lead(source=LeadSource.WEBSITE, lead_type=LeadType.COLD)
        assert scheduler.find_campaign_for(hot) is not None
        assert scheduler.find_campaign_for(cold) is None

    def test_qualification_bounds(self, scheduler, make_lead):
        _campaign(scheduler, StepType.MESSAGE, target_audience={"qualification_score_min": 0.5})
        assert scheduler.find_campaign_for(make_lead(qualification=0.4)) is None
        assert scheduler.find_campaign_for(make_lead(qualification=0.6)) is not None


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


class TestStepExecution:
    async def test_callback_step(self, scheduler):
        campaign = _campaign(scheduler, StepType.CALLBACK, type="callback_sequence")

        ok = await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id)

        assert ok is True
        perf = scheduler.get_campaign_performance(campaign.id)
        assert perf.callbacks_scheduled == 1
        assert perf.completed_steps == 1
        assert perf.total_leads == 1
        assert len(scheduler.get_lead_callbacks("lead_1")) == 1

    async def test_appointment_step_books_consultation(self, scheduler):
        campaign = _campaign(scheduler, StepType.APPOINTMENT, delay_hours=48)

        assert await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id)

        [appointment] = scheduler.get_lead_appointments("lead_1")
        assert appointment.type.value == "consultation"
        assert appointment.duration_minutes == 60
        assert scheduler.get_campaign_performance(campaign.id).appointments_booked == 1
        assert scheduler.get_campaign_performance(campaign.id).conversion_rate == 1.0

    async def test_message_step_uses_registered_contact(self, scheduler, messenger):
        campaign = _campaign(scheduler, StepType.EMAIL)
        scheduler.register_contact("lead_1", ContactInfo(email="ada@example.com", phone="+1555"))

        await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id)

        channel, destination, message = messenger.sent[0]
        assert channel == Channel.EMAIL
        assert destination == "ada@example.com"
        assert message.content == "step 1"

    async def test_wait_step_succeeds_without_side_effects(self, scheduler, messenger):
        campaign = _campaign(scheduler, StepType.WAIT)
        assert await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id)
        assert messenger.sent == []

    async def test_failed_delivery_returns_false(self, settings, audit):
        scheduler = CampaignScheduler(settings, FailingMessenger(), audit)
        campaign = _campaign(scheduler, StepType.MESSAGE)

        ok = await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id)

        assert ok is False
        perf = scheduler.get_campaign_performance(campaign.id)
        assert perf.failed_steps == 1
        assert perf.completed_steps == 0

    async def test_raising_messenger_returns_false(self, settings, audit):
        scheduler = CampaignScheduler(settings, FailingMessenger(raise_error=True), audit)
        campaign = _campaign(scheduler, StepType.EMAIL)
        assert await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id) is False

    async def test_unknown_step(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE)
        with pytest.raises(NotFoundError):
            await scheduler.execute_campaign_step(campaign.id, "lead_1", "missing")

    async def test_unknown_campaign(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.execute_campaign_step("missing", "lead_1", "step")

    async def test_paused_campaign_does_not_run(self, scheduler, messenger):
        campaign = _campaign(scheduler, StepType.MESSAGE)
        scheduler.pause_campaign(campaign.id)
        assert await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id) is False
        assert messenger.sent == []

    async def test_concurrent_steps_are_all_counted(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE)
        leads = [f"lead_{i}" for i in range(25)]

        results = await scheduler.run_campaign_step_for_leads(campaign.id, campaign.steps[0].id, leads)

        assert all(results.values())
        perf = scheduler.get_campaign_performance(campaign.id)
        assert perf.completed_steps == 25
        assert perf.total_leads == 25

    async def test_lead_enrolled_once(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE, StepType.EMAIL)
        for step in campaign.steps:
            await scheduler.execute_campaign_step(campaign.id, "lead_1", step.id)
        assert scheduler.get_campaign_performance(campaign.id).total_leads == 1

    async def test_advance_lead_walks_steps(self, scheduler):
        campaign = _campaign(scheduler, StepType.MESSAGE, StepType.EMAIL)

        assert await scheduler.advance_lead(campaign.id, "lead_1") is True
        assert await scheduler.advance_lead(campaign.id, "lead_1") is True
        assert await scheduler.advance_lead(campaign.id, "lead_1") is None

        progress = scheduler.get_campaign_progress(campaign.id, "lead_1")
        assert progress.completed_step_ids == [s.id for s in campaign.steps]

    async def test_delay_multiplier_scales_step_delay(self, scheduler):
        scheduler.update_scheduling_parameters(delay_multiplier=0.5)
        campaign = _campaign(scheduler, StepType.CALLBACK, delay_hours=4)

        await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id)

        [callback] = scheduler.get_lead_callbacks("lead_1")
        delay = callback.scheduled_at - _now()
        assert timedelta(hours=1, minutes=59) < delay <= timedelta(hours=2)

    async def test_step_recorded_in_audit(self, scheduler, audit):
        campaign = _campaign(scheduler, StepType.MESSAGE)
        await scheduler.execute_campaign_step(campaign.id, "lead_1", campaign.steps[0].id)
        assert audit.interactions[0][:2] == ("lead_1", "campaign_step:message")


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


class TestCallbacks:
    async def test_failed_after_max_attempts(self, settings, messenger, audit):
        async def never(callback):
            return False

        scheduler = CampaignScheduler(settings, messenger, audit, attempt_callback=never)
        callback = await scheduler.schedule_callback("lead_1", _now() - timedelta(minutes=1), max_attempts=2)

        first = await scheduler.process_pending_callbacks()
        assert first["retrying"] == 1
        assert scheduler.get_callback(callback.id).status == CallbackStatus.PENDING

        second = await scheduler.process_pending_callbacks()
        assert second["failed"] == 1

        stored = scheduler.get_callback(callback.id)
        assert stored.status == CallbackStatus.FAILED
        assert stored.attempts == 2

    async def test_raising_attempt_counts_as_failure(self, settings, messenger, audit):
        async def explode(callback):
            raise RuntimeError("line busy")

        scheduler = CampaignScheduler(settings, messenger, audit, attempt_callback=explode)
        callback = await scheduler.schedule_callback("lead_1", _now(), max_attempts=1)

        await scheduler.process_pending_callbacks()

        assert scheduler.get_callback(callback.id).status == CallbackStatus.FAILED

    async def test_successful_attempt_completes(self, scheduler, audit):
        callback = await scheduler.schedule_callback("lead_1", _now() - timedelta(seconds=1))

        counts = await scheduler.process_pending_callbacks()

        assert counts == {"processed": 1, "completed": 1, "failed": 0, "retrying": 0}
        stored = scheduler.get_callback(callback.id)
        assert stored.status == CallbackStatus.COMPLETED
        assert stored.attempts == 1
        assert audit.status_changes[-1][2:] == ("pending", "completed")

    async def test_naive_schedule_time_is_treated_as_utc(self, scheduler):
        await scheduler.schedule_callback("lead_1", _now() - timedelta(seconds=1))
        naive = await scheduler.schedule_callback("lead_2", datetime(2020, 1, 1, 10, 0))

        counts = await scheduler.process_pending_callbacks()

        assert counts["completed"] == 2
        stored = scheduler.get_callback(naive.id)
        assert stored.scheduled_at == datetime(2020, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert stored.status == CallbackStatus.COMPLETED

    async def test_future_callback_not_attempted(self, scheduler):
        await scheduler.schedule_callback("lead_1", _now() + timedelta(hours=1))
        counts = await scheduler.process_pending_callbacks()
        assert counts["processed"] == 0

    async def test_default_max_attempts(self, scheduler):
        callback = await scheduler.schedule_callback("lead_1", _now())
        assert callback.max_attempts == 3

    async def test_paused_scheduler_does_not_poll(self, scheduler):
        await scheduler.schedule_callback("lead_1", _now() - timedelta(seconds=1))
        scheduler.pause()
        assert (await scheduler.process_pending_callbacks())["processed"] == 0
        scheduler.resume()
        assert (await scheduler.process_pending_callbacks())["processed"] == 1

    async def test_cancel_callback(self, scheduler):
        callback = await scheduler.schedule_callback("lead_1", _now() - timedelta(seconds=1))
        cancelled = await scheduler.cancel_callback(callback.id, "lead asked us to stop")

        assert cancelled.status == CallbackStatus.CANCELLED
        assert (await scheduler.process_pending_callbacks())["processed"] == 0

    async def test_cannot_cancel_completed_callback(self, scheduler):
        callback = await scheduler.schedule_callback("lead_1", _now() - timedelta(seconds=1))
        await scheduler.process_pending_callbacks()
        with pytest.raises(ValidationError):
            await scheduler.cancel_callback(callback.id)


# ---------------------------------------------------------------------------
# Appointments and reminders
# ---------------------------------------------------------------------------


class TestAppointments:
    async def test_booking_creates_reminder_sequence(self, scheduler):
        at = _now() + timedelta(hours=48)
        appointment = await scheduler.book_appointment("lead_1", "consultation", at)

        [sequence] = scheduler.get_reminder_sequences(appointment.id)
        assert sequence.status == SequenceStatus.ACTIVE
        assert [r.scheduled_at for r in sequence.reminders] == [
            at - timedelta(hours=24),
            at - timedelta(hours=2),
        ]
        assert [r.type for r in sequence.reminders] == [ReminderType.EMAIL, ReminderType.SMS]

    async def test_unknown_appointment_type(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.book_appointment("lead_1", "seance", _now())

    async def test_reschedule_unknown(self, scheduler):
        with pytest.raises(NotFoundError, match="appt-404"):
            await scheduler.reschedule_appointment("appt-404", _now())

    async def test_reschedule_replaces_reminders(self, scheduler):
        appointment = await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=48))
        new_time = _now() + timedelta(hours=72)

        updated = await scheduler.reschedule_appointment(appointment.id, new_time, "lead travelling")

        assert updated.status == AppointmentStatus.RESCHEDULED
        assert updated.scheduled_at == new_time
        assert "lead travelling" in updated.notes[-1]
        sequences = scheduler.get_reminder_sequences(appointment.id)
        assert [s.status for s in sequences] == [SequenceStatus.CANCELLED, SequenceStatus.ACTIVE]
        assert sequences[1].reminders[0].scheduled_at == new_time - timedelta(hours=24)

    async def test_confirm(self, scheduler):
        appointment = await scheduler.book_appointment("lead_1", "site_visit", _now() + timedelta(hours=5))
        confirmed = await scheduler.confirm_appointment(appointment.id)
        assert confirmed.status == AppointmentStatus.CONFIRMED
        assert confirmed.confirmation_sent is True

    async def test_cancel_stops_reminders(self, scheduler):
        appointment = await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=1))
        await scheduler.cancel_appointment(appointment.id, "no longer interested")

        [sequence] = scheduler.get_reminder_sequences(appointment.id)
        assert sequence.status == SequenceStatus.CANCELLED
        assert (await scheduler.process_pending_reminders())["sent"] == 0

    async def test_terminal_states_are_final(self, scheduler):
        appointment = await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=1))
        await scheduler.complete_appointment(appointment.id, "signed")
        with pytest.raises(ValidationError):
            await scheduler.confirm_appointment(appointment.id)

    async def test_no_show(self, scheduler):
        appointment = await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=1))
        updated = await scheduler.mark_no_show(appointment.id)
        assert updated.status == AppointmentStatus.NO_SHOW

    async def test_upcoming_window_sorted(self, scheduler):
        late = await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=20))
        early = await scheduler.book_appointment("lead_2", "consultation", _now() + timedelta(hours=2))
        await scheduler.book_appointment("lead_3", "consultation", _now() + timedelta(hours=30))
        cancelled = await scheduler.book_appointment("lead_4", "consultation", _now() + timedelta(hours=3))
        await scheduler.cancel_appointment(cancelled.id)

        upcoming = scheduler.get_upcoming_appointments()
        assert [a.id for a in upcoming] == [early.id, late.id]

    async def test_naive_times_are_treated_as_utc(self, scheduler):
        naive_now = _now().replace(tzinfo=None)
        appointment = await scheduler.book_appointment(
            "lead_1", "consultation", naive_now + timedelta(hours=2)
        )
        assert appointment.scheduled_at.tzinfo is not None
        assert [a.id for a in scheduler.get_upcoming_appointments()] == [appointment.id]

        await scheduler.reschedule_appointment(appointment.id, naive_now + timedelta(hours=1))

        assert [a.id for a in scheduler.get_upcoming_appointments()] == [appointment.id]
        assert await scheduler.process_pending_reminders() == {"sent": 2, "failed": 0}

    async def test_due_reminders_are_sent_once(self, scheduler, messenger):
        appointment = await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=1))

        counts = await scheduler.process_pending_reminders()

        assert counts == {"sent": 2, "failed": 0}
        assert scheduler.get_appointment(appointment.id).reminders_sent == 2
        [sequence] = scheduler.get_reminder_sequences(appointment.id)
        assert sequence.status == SequenceStatus.COMPLETED
        assert (await scheduler.process_pending_reminders())["sent"] == 0
        assert len(messenger.sent) == 2

    async def test_failed_reminders_not_retried(self, settings, audit):
        messenger = FailingMessenger()
        scheduler = CampaignScheduler(settings, messenger, audit)
        appointment = await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=1))

        assert await scheduler.process_pending_reminders() == {"sent": 0, "failed": 2}
        assert await scheduler.process_pending_reminders() == {"sent": 0, "failed": 0}
        assert scheduler.get_appointment(appointment.id).reminders_sent == 0
        assert messenger.attempts == 2

    async def test_future_reminders_wait(self, scheduler):
        await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=48))
        assert await scheduler.process_pending_reminders() == {"sent": 0, "failed": 0}


# ---------------------------------------------------------------------------
# Parameters and performance
# ---------------------------------------------------------------------------


class TestParameters:
    def test_unknown_parameter_rejected(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.update_scheduling_parameters(speed=11)

    def test_parameters_copy(self, scheduler):
        params = scheduler.get_scheduling_parameters()
        params.delay_multiplier = 5
        assert scheduler.get_scheduling_parameters().delay_multiplier == 1.0

    async def test_agent_performance(self, scheduler):
        appointment = await scheduler.book_appointment("lead_1", "consultation", _now() + timedelta(hours=5))
        await scheduler.confirm_appointment(appointment.id)
        await scheduler.schedule_callback("lead_2", _now() + timedelta(hours=1))

        period = DateRange(start=_now() - timedelta(hours=1), end=_now() + timedelta(minutes=1))
        perf = scheduler.get_agent_performance(period)

        assert perf.metrics.total_interactions == 2
        assert perf.metrics.conversion_rate == 0.5
        assert perf.metrics.appointment_booking_rate == 1.0
        assert scheduler.appointments_created_in(period) == 1
