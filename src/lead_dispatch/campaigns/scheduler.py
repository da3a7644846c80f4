"""Campaign, callback and appointment scheduler.

Owns every campaign, per-lead campaign progress, callback, appointment and
reminder sequence. Callbacks and reminders are driven by polling: the
worker calls ``process_pending_callbacks`` and ``process_pending_reminders``
every ``poll_interval`` seconds, and that cadence doubles as the retry
cadence for failed callbacks.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from lead_dispatch.core.audit import AuditSink, LoggingAuditSink
from lead_dispatch.core.config import SchedulingParameters, Settings
from lead_dispatch.core.errors import NotFoundError, TransientDeliveryFailure, ValidationError
from lead_dispatch.core.models import (
    AgentPerformance,
    Appointment,
    AppointmentStatus,
    AppointmentType,
    Callback,
    CallbackStatus,
    Campaign,
    CampaignAudience,
    CampaignPerformance,
    CampaignProgress,
    CampaignStatus,
    CampaignStep,
    CampaignStepSpec,
    CampaignType,
    Channel,
    ContactInfo,
    DateRange,
    LeadSnapshot,
    PerformanceMetrics,
    Reminder,
    ReminderSequence,
    ReminderStatus,
    ReminderType,
    SequenceStatus,
    StepType,
    as_utc,
    new_id,
    utcnow,
)
from lead_dispatch.messaging.base import Message, MessagingChannel
from lead_dispatch.messaging.logging_messenger import LoggingMessenger

logger = logging.getLogger(__name__)

CallbackAttempt = Callable[[Callback], Awaitable[bool]]


# ---------------------------------------------------------------------------
# Legal transition maps
# ---------------------------------------------------------------------------

CALLBACK_TRANSITIONS: dict[CallbackStatus, set[CallbackStatus]] = {
    CallbackStatus.PENDING: {
        CallbackStatus.COMPLETED,
        CallbackStatus.FAILED,
        CallbackStatus.CANCELLED,
    },
    CallbackStatus.COMPLETED: set(),  # terminal
    CallbackStatus.FAILED: set(),  # terminal
    CallbackStatus.CANCELLED: set(),  # terminal
}

_OPEN_APPOINTMENT_TARGETS = {
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.RESCHEDULED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.NO_SHOW,
}

APPOINTMENT_TRANSITIONS: dict[AppointmentStatus, set[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: _OPEN_APPOINTMENT_TARGETS,
    AppointmentStatus.CONFIRMED: _OPEN_APPOINTMENT_TARGETS,
    AppointmentStatus.RESCHEDULED: _OPEN_APPOINTMENT_TARGETS,
    AppointmentStatus.CANCELLED: set(),  # terminal
    AppointmentStatus.COMPLETED: set(),  # terminal
    AppointmentStatus.NO_SHOW: set(),  # terminal
}

UPCOMING_STATUSES = {
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.RESCHEDULED,
}

STEP_CHANNELS: dict[StepType, Channel] = {
    StepType.MESSAGE: Channel.SMS,
    StepType.EMAIL: Channel.EMAIL,
}

REMINDER_CHANNELS: dict[ReminderType, Channel] = {
    ReminderType.EMAIL: Channel.EMAIL,
    ReminderType.SMS: Channel.SMS,
}


def _validate_transition(table: dict, entity: str, current, target) -> None:
    if current == target:
        return  # no-op is always allowed
    allowed = table.get(current, set())
    if target not in allowed:
        raise ValidationError(
            f"Illegal {entity} transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {sorted(s.value for s in allowed)}"
        )


class CampaignScheduler:
    """Runs campaign steps and the callback / reminder machinery."""

    def __init__(
        self,
        settings: Settings | None = None,
        messenger: MessagingChannel | None = None,
        audit: AuditSink | None = None,
        attempt_callback: CallbackAttempt | None = None,
        parameters: SchedulingParameters | None = None,
        agent_id: str = "scheduler",
    ):
        self.settings = settings or Settings()
        self.messenger = messenger or LoggingMessenger(self.settings)
        self.audit = audit or LoggingAuditSink()
        self.attempt_callback = attempt_callback or self._default_attempt_callback
        self.parameters = parameters or SchedulingParameters.from_settings(self.settings)
        self.agent_id = agent_id

        self._lock = threading.RLock()
        self._paused = False
        self._campaigns: dict[str, Campaign] = {}
        self._progress: dict[tuple[str, str], CampaignProgress] = {}
        self._callbacks: dict[str, Callback] = {}
        self._appointments: dict[str, Appointment] = {}
        self._sequences: dict[str, ReminderSequence] = {}
        self._contacts: dict[str, ContactInfo] = {}

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    def create_campaign(
        self,
        name: str,
        type: CampaignType | str,
        target_audience: CampaignAudience | dict | None = None,
        steps: list[CampaignStepSpec | dict] | None = None,
    ) -> Campaign:
        """Create an active campaign with fresh step ids and zeroed counters."""
        try:
            campaign_type = CampaignType(type)
            audience = (
                target_audience
                if isinstance(target_audience, CampaignAudience)
                else CampaignAudience.model_validate(target_audience or {})
            )
            specs = [
                s if isinstance(s, CampaignStepSpec) else CampaignStepSpec.model_validate(s)
                for s in steps or []
            ]
        except (ValueError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid campaign definition: {e}") from e

        campaign = Campaign(
            name=name,
            type=campaign_type,
            target_audience=audience,
            steps=[
                CampaignStep(
                    id=new_id(),
                    order=i + 1,
                    type=spec.type,
                    delay_hours=spec.delay_hours,
                    content=spec.content,
                )
                for i, spec in enumerate(specs)
            ],
        )
        with self._lock:
            self._campaigns[campaign.id] = campaign
        logger.info("Created campaign %s (%s) with %d steps", campaign.name, campaign.id, len(specs))
        return campaign.model_copy(deep=True)

    def _get_campaign(self, campaign_id: str) -> Campaign:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None:
            raise NotFoundError("Campaign", campaign_id)
        return campaign

    def get_campaign(self, campaign_id: str) -> Campaign:
        with self._lock:
            return self._get_campaign(campaign_id).model_copy(deep=True)

    def get_active_campaigns(self) -> list[Campaign]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._campaigns.values()
                if c.status == CampaignStatus.ACTIVE
            ]

    def pause_campaign(self, campaign_id: str) -> Campaign:
        return self._set_campaign_status(campaign_id, CampaignStatus.PAUSED)

    def resume_campaign(self, campaign_id: str) -> Campaign:
        return self._set_campaign_status(campaign_id, CampaignStatus.ACTIVE)

    def _set_campaign_status(self, campaign_id: str, status: CampaignStatus) -> Campaign:
        with self._lock:
            campaign = self._get_campaign(campaign_id)
            if campaign.status in (CampaignStatus.COMPLETED, CampaignStatus.CANCELLED):
                raise ValidationError(
                    f"Campaign {campaign_id} is {campaign.status.value} and cannot change status"
                )
            campaign.status = status
            campaign.updated_at = utcnow()
            return campaign.model_copy(deep=True)

    def get_campaign_performance(self, campaign_id: str) -> CampaignPerformance:
        """Snapshot of the campaign counters with conversion rate refreshed."""
        with self._lock:
            campaign = self._get_campaign(campaign_id)
            perf = campaign.performance
            if perf.total_leads > 0:
                perf.conversion_rate = perf.appointments_booked / perf.total_leads
            return perf.model_copy()

    def get_campaign_progress(self, campaign_id: str, lead_id: str) -> CampaignProgress | None:
        with self._lock:
            progress = self._progress.get((campaign_id, lead_id))
            return progress.model_copy(deep=True) if progress else None

    @staticmethod
    def matches_audience(campaign: Campaign, lead: LeadSnapshot) -> bool:
        audience = campaign.target_audience
        if audience.lead_types and lead.lead_type not in audience.lead_types:
            return False
        if audience.sources and lead.source.value not in audience.sources:
            return False
        if (
            audience.qualification_score_min is not None
            and lead.qualification_score < audience.qualification_score_min
        ):
            return False
        if (
            audience.qualification_score_max is not None
            and lead.qualification_score > audience.qualification_score_max
        ):
            return False
        return True

    def find_campaign_for(self, lead: LeadSnapshot) -> Campaign | None:
        """First active campaign (in creation order) whose audience includes ``lead``."""
        with self._lock:
            for campaign in self._campaigns.values():
                if campaign.status == CampaignStatus.ACTIVE and self.matches_audience(campaign, lead):
                    return campaign.model_copy(deep=True)
        return None

    def register_contact(self, lead_id: str, contact: ContactInfo) -> None:
        """Remember where to deliver messages for ``lead_id``."""
        with self._lock:
            self._contacts[lead_id] = contact

    def _destination(self, lead_id: str, channel: Channel) -> str:
        contact = self._contacts.get(lead_id)
        if contact is None:
            return lead_id
        if channel == Channel.EMAIL:
            return contact.email or lead_id
        return contact.phone or lead_id

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def execute_campaign_step(self, campaign_id: str, lead_id: str, step_id: str) -> bool:
        """Run one step of a campaign for one lead.

        Raises NotFoundError for an unknown campaign or step. Any delivery
        failure is logged and reported as False.
        """
        now = utcnow()
        with self._lock:
            campaign = self._get_campaign(campaign_id)
            step = next((s for s in campaign.steps if s.id == step_id), None)
            if step is None:
                raise NotFoundError("Campaign step", step_id)
            if campaign.status != CampaignStatus.ACTIVE:
                logger.warning(
                    "Skipping step %s for lead %s: campaign %s is %s",
                    step_id,
                    lead_id,
                    campaign_id,
                    campaign.status.value,
                )
                return False

            key = (campaign_id, lead_id)
            progress = self._progress.get(key)
            if progress is None:
                progress = CampaignProgress(campaign_id=campaign_id, lead_id=lead_id)
                self._progress[key] = progress
                campaign.performance.total_leads += 1
            delay = timedelta(hours=step.delay_hours * self.parameters.delay_multiplier)

        try:
            await self._run_step(campaign_id, lead_id, step, now + delay)
        except Exception:
            logger.exception(
                "Failed to execute campaign step %s for lead %s", step_id, lead_id
            )
            with self._lock:
                progress.failed_step_ids.append(step_id)
                progress.last_step_at = utcnow()
                campaign.performance.failed_steps += 1
            return False

        with self._lock:
            campaign.performance.completed_steps += 1
            campaign.updated_at = utcnow()
            progress.completed_step_ids.append(step_id)
            progress.last_step_at = campaign.updated_at

        await self.audit.record_interaction(
            lead_id,
            f"campaign_step:{step.type.value}",
            {"campaign_id": campaign_id, "step_id": step_id, "order": step.order},
        )
        return True

    async def _run_step(
        self, campaign_id: str, lead_id: str, step: CampaignStep, due: datetime
    ) -> None:
        if step.type == StepType.CALLBACK:
            await self.schedule_callback(lead_id, due, campaign_id=campaign_id, notes=step.content)
        elif step.type == StepType.APPOINTMENT:
            await self.book_appointment(
                lead_id,
                AppointmentType.CONSULTATION,
                due,
                duration_minutes=self.parameters.appointment_duration_minutes,
                campaign_id=campaign_id,
            )
        elif step.type in STEP_CHANNELS:
            channel = STEP_CHANNELS[step.type]
            delivered = await self.messenger.send(
                channel,
                self._destination(lead_id, channel),
                Message(content=step.content or ""),
            )
            if not delivered:
                raise TransientDeliveryFailure(f"{channel.value} delivery to lead {lead_id} failed")
        else:
            logger.debug("Wait step %s for lead %s (%.1fh)", step.id, lead_id, step.delay_hours)

    async def run_campaign_step_for_leads(
        self, campaign_id: str, step_id: str, lead_ids: list[str]
    ) -> dict[str, bool]:
        """Run one step for many leads concurrently. One failure never blocks the rest."""
        with self._lock:
            campaign = self._get_campaign(campaign_id)
            if not any(s.id == step_id for s in campaign.steps):
                raise NotFoundError("Campaign step", step_id)

        results = await asyncio.gather(
            *(self.execute_campaign_step(campaign_id, lead_id, step_id) for lead_id in lead_ids)
        )
        return dict(zip(lead_ids, results))

    async def advance_lead(self, campaign_id: str, lead_id: str) -> bool | None:
        """Execute the next uncompleted step for ``lead_id``.

        Returns None when every step has already completed.
        """
        with self._lock:
            campaign = self._get_campaign(campaign_id)
            progress = self._progress.get((campaign_id, lead_id))
            done = set(progress.completed_step_ids) if progress else set()
            next_step = next(
                (s for s in sorted(campaign.steps, key=lambda s: s.order) if s.id not in done),
                None,
            )
        if next_step is None:
            return None
        return await self.execute_campaign_step(campaign_id, lead_id, next_step.id)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def schedule_callback(
        self,
        lead_id: str,
        scheduled_at: datetime,
        campaign_id: str | None = None,
        max_attempts: int | None = None,
        notes: str | None = None,
    ) -> Callback:
        callback = Callback(
            lead_id=lead_id,
            campaign_id=campaign_id,
            scheduled_at=scheduled_at,
            max_attempts=max_attempts or self.parameters.callback_max_attempts,
            notes=notes,
        )
        with self._lock:
            self._callbacks[callback.id] = callback
            if campaign_id and campaign_id in self._campaigns:
                campaign = self._campaigns[campaign_id]
                campaign.performance.callbacks_scheduled += 1
                campaign.updated_at = utcnow()
        logger.info("Scheduled callback %s for lead %s at %s", callback.id, lead_id, scheduled_at)
        return callback.model_copy()

    def get_callback(self, callback_id: str) -> Callback:
        with self._lock:
            callback = self._callbacks.get(callback_id)
            if callback is None:
                raise NotFoundError("Callback", callback_id)
            return callback.model_copy()

    def get_lead_callbacks(self, lead_id: str) -> list[Callback]:
        with self._lock:
            return [c.model_copy() for c in self._callbacks.values() if c.lead_id == lead_id]

    async def cancel_callback(self, callback_id: str, reason: str | None = None) -> Callback:
        with self._lock:
            callback = self._callbacks.get(callback_id)
            if callback is None:
                raise NotFoundError("Callback", callback_id)
            previous = callback.status
            _validate_transition(CALLBACK_TRANSITIONS, "callback", previous, CallbackStatus.CANCELLED)
            callback.status = CallbackStatus.CANCELLED
            callback.updated_at = utcnow()
            if reason:
                callback.notes = f"{callback.notes}\n{reason}" if callback.notes else reason
            snapshot = callback.model_copy()
        await self.audit.record_status_change(
            "Callback", callback_id, previous.value, snapshot.status.value, reason
        )
        return snapshot

    async def _default_attempt_callback(self, callback: Callback) -> bool:
        await asyncio.sleep(self.settings.simulated_io_delay_seconds)
        return await self.messenger.send(
            Channel.SMS,
            self._destination(callback.lead_id, Channel.SMS),
            Message(content="We tried to reach you by phone and will call again shortly."),
        )

    async def process_pending_callbacks(self) -> dict[str, int]:
        """Attempt every pending callback that is due.

        Success completes the callback. Failure bumps ``attempts`` and leaves
        it pending for the next poll until ``max_attempts`` is reached.
        """
        counts = {"processed": 0, "completed": 0, "failed": 0, "retrying": 0}
        if self._paused:
            return counts

        now = utcnow()
        with self._lock:
            due = [
                cb.model_copy()
                for cb in self._callbacks.values()
                if cb.status == CallbackStatus.PENDING and cb.scheduled_at <= now
            ]

        for snapshot in due:
            try:
                ok = bool(await self.attempt_callback(snapshot))
            except Exception:
                logger.exception("Callback attempt %s for lead %s raised", snapshot.id, snapshot.lead_id)
                ok = False

            with self._lock:
                callback = self._callbacks[snapshot.id]
                if callback.status != CallbackStatus.PENDING:
                    continue  # cancelled while the attempt was in flight
                callback.attempts += 1
                callback.updated_at = utcnow()
                if ok:
                    callback.status = CallbackStatus.COMPLETED
                elif callback.attempts >= callback.max_attempts:
                    callback.status = CallbackStatus.FAILED
                status = callback.status
                attempts = callback.attempts

            counts["processed"] += 1
            if status == CallbackStatus.PENDING:
                counts["retrying"] += 1
                logger.info(
                    "Callback %s failed (attempt %d/%d), will retry next poll",
                    snapshot.id,
                    attempts,
                    snapshot.max_attempts,
                )
                continue

            counts["completed" if status == CallbackStatus.COMPLETED else "failed"] += 1
            await self.audit.record_status_change(
                "Callback", snapshot.id, CallbackStatus.PENDING.value, status.value
            )
        return counts

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    def _get_appointment(self, appointment_id: str) -> Appointment:
        appointment = self._appointments.get(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    def get_appointment(self, appointment_id: str) -> Appointment:
        with self._lock:
            return self._get_appointment(appointment_id).model_copy(deep=True)

    async def book_appointment(
        self,
        lead_id: str,
        type: AppointmentType | str,
        scheduled_at: datetime,
        duration_minutes: int | None = None,
        location: str | None = None,
        campaign_id: str | None = None,
    ) -> Appointment:
        """Book an appointment together with its reminder sequence."""
        try:
            appointment_type = AppointmentType(type)
        except ValueError as e:
            raise ValidationError(f"Unknown appointment type: {type}") from e

        appointment = Appointment(
            lead_id=lead_id,
            campaign_id=campaign_id,
            type=appointment_type,
            scheduled_at=scheduled_at,
            duration_minutes=duration_minutes or self.parameters.appointment_duration_minutes,
            location=location,
        )
        with self._lock:
            self._appointments[appointment.id] = appointment
            self._create_reminder_sequence(appointment)
            if campaign_id and campaign_id in self._campaigns:
                campaign = self._campaigns[campaign_id]
                campaign.performance.appointments_booked += 1
                campaign.updated_at = utcnow()
            snapshot = appointment.model_copy(deep=True)

        await self.audit.record_status_change(
            "Appointment", appointment.id, None, snapshot.status.value, "booked"
        )
        return snapshot

    def _create_reminder_sequence(self, appointment: Appointment) -> ReminderSequence:
        when = appointment.scheduled_at.strftime("%Y-%m-%d %H:%M %Z").strip()
        reminders = []
        for offset in self.parameters.reminder_offsets_hours:
            if offset >= 24:
                reminder_type = ReminderType.EMAIL
                content = f"Reminder: You have an appointment scheduled for {when}"
            else:
                reminder_type = ReminderType.SMS
                content = f"Reminder: Your appointment is in {offset} hours at {when}"
            reminders.append(
                Reminder(
                    type=reminder_type,
                    offset_hours=offset,
                    scheduled_at=appointment.scheduled_at - timedelta(hours=offset),
                    content=content,
                )
            )
        sequence = ReminderSequence(appointment_id=appointment.id, reminders=reminders)
        self._sequences[sequence.id] = sequence
        return sequence

    def _cancel_sequences(self, appointment_id: str) -> None:
        for sequence in self._sequences.values():
            if sequence.appointment_id == appointment_id and sequence.status == SequenceStatus.ACTIVE:
                sequence.status = SequenceStatus.CANCELLED

    def get_reminder_sequences(self, appointment_id: str) -> list[ReminderSequence]:
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._sequences.values()
                if s.appointment_id == appointment_id
            ]

    async def _transition_appointment(
        self,
        appointment_id: str,
        target: AppointmentStatus,
        note: str | None = None,
        **updates: Any,
    ) -> Appointment:
        with self._lock:
            appointment = self._get_appointment(appointment_id)
            previous = appointment.status
            _validate_transition(APPOINTMENT_TRANSITIONS, "appointment", previous, target)
            for field, value in updates.items():
                setattr(appointment, field, value)
            appointment.status = target
            appointment.updated_at = utcnow()
            if note:
                appointment.notes.append(note)
            if target in (
                AppointmentStatus.RESCHEDULED,
                AppointmentStatus.CANCELLED,
                AppointmentStatus.COMPLETED,
                AppointmentStatus.NO_SHOW,
            ):
                self._cancel_sequences(appointment_id)
            if target == AppointmentStatus.RESCHEDULED:
                self._create_reminder_sequence(appointment)
            snapshot = appointment.model_copy(deep=True)

        await self.audit.record_status_change(
            "Appointment", appointment_id, previous.value, target.value, note
        )
        return snapshot

    async def reschedule_appointment(
        self, appointment_id: str, new_time: datetime, reason: str | None = None
    ) -> Appointment:
        new_time = as_utc(new_time)
        with self._lock:
            old_time = self._get_appointment(appointment_id).scheduled_at
        note = f"Rescheduled from {old_time.isoformat()} to {new_time.isoformat()}"
        if reason:
            note += f": {reason}"
        return await self._transition_appointment(
            appointment_id, AppointmentStatus.RESCHEDULED, note, scheduled_at=new_time
        )

    async def confirm_appointment(self, appointment_id: str) -> Appointment:
        return await self._transition_appointment(
            appointment_id, AppointmentStatus.CONFIRMED, confirmation_sent=True
        )

    async def cancel_appointment(self, appointment_id: str, reason: str | None = None) -> Appointment:
        note = f"Cancelled: {reason}" if reason else "Cancelled"
        return await self._transition_appointment(appointment_id, AppointmentStatus.CANCELLED, note)

    async def complete_appointment(self, appointment_id: str, notes: str | None = None) -> Appointment:
        return await self._transition_appointment(appointment_id, AppointmentStatus.COMPLETED, notes)

    async def mark_no_show(self, appointment_id: str) -> Appointment:
        return await self._transition_appointment(
            appointment_id, AppointmentStatus.NO_SHOW, "Lead did not attend"
        )

    def get_lead_appointments(self, lead_id: str) -> list[Appointment]:
        with self._lock:
            return [
                a.model_copy(deep=True) for a in self._appointments.values() if a.lead_id == lead_id
            ]

    def get_upcoming_appointments(self, window_hours: float = 24) -> list[Appointment]:
        now = utcnow()
        cutoff = now + timedelta(hours=window_hours)
        with self._lock:
            upcoming = [
                a.model_copy(deep=True)
                for a in self._appointments.values()
                if a.status in UPCOMING_STATUSES and now <= a.scheduled_at <= cutoff
            ]
        return sorted(upcoming, key=lambda a: a.scheduled_at)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def process_pending_reminders(self) -> dict[str, int]:
        """Send every due reminder once. Failed reminders are not retried."""
        counts = {"sent": 0, "failed": 0}
        if self._paused:
            return counts

        now = utcnow()
        with self._lock:
            due = [
                (sequence.id, reminder.model_copy(), sequence.appointment_id)
                for sequence in self._sequences.values()
                if sequence.status == SequenceStatus.ACTIVE
                for reminder in sequence.reminders
                if reminder.status == ReminderStatus.PENDING and reminder.scheduled_at <= now
            ]
            lead_ids = {
                appointment_id: self._appointments[appointment_id].lead_id
                for _, _, appointment_id in due
            }

        for sequence_id, reminder, appointment_id in due:
            channel = REMINDER_CHANNELS.get(reminder.type, Channel.SMS)
            lead_id = lead_ids[appointment_id]
            try:
                ok = await self.messenger.send(
                    channel,
                    self._destination(lead_id, channel),
                    Message(content=reminder.content, subject="Appointment reminder"),
                )
            except Exception:
                logger.exception("Reminder %s for appointment %s raised", reminder.id, appointment_id)
                ok = False

            with self._lock:
                sequence = self._sequences[sequence_id]
                stored = next(r for r in sequence.reminders if r.id == reminder.id)
                if stored.status != ReminderStatus.PENDING or sequence.status != SequenceStatus.ACTIVE:
                    continue
                if ok:
                    stored.status = ReminderStatus.SENT
                    stored.sent_at = utcnow()
                    self._appointments[appointment_id].reminders_sent += 1
                else:
                    stored.status = ReminderStatus.FAILED
                if all(r.status != ReminderStatus.PENDING for r in sequence.reminders):
                    sequence.status = SequenceStatus.COMPLETED

            if ok:
                counts["sent"] += 1
                await self.audit.record_interaction(
                    lead_id, f"reminder:{reminder.type.value}", {"appointment_id": appointment_id}
                )
            else:
                counts["failed"] += 1
                logger.warning("Reminder %s for appointment %s failed", reminder.id, appointment_id)
        return counts

    # ------------------------------------------------------------------
    # Parameters, performance, overrides
    # ------------------------------------------------------------------

    def get_scheduling_parameters(self) -> SchedulingParameters:
        with self._lock:
            return self.parameters.model_copy(deep=True)

    def update_scheduling_parameters(self, **changes: Any) -> SchedulingParameters:
        unknown = set(changes) - set(SchedulingParameters.model_fields)
        if unknown:
            raise ValidationError(f"Unknown scheduling parameters: {sorted(unknown)}")
        with self._lock:
            try:
                self.parameters = SchedulingParameters.model_validate(
                    {**self.parameters.model_dump(), **changes}
                )
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e
            logger.info("Scheduling parameters updated: %s", changes)
            return self.parameters.model_copy(deep=True)

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Override hook: polls become no-ops until ``resume``."""
        self._paused = True
        logger.warning("Campaign scheduler paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Campaign scheduler resumed")

    def get_agent_performance(self, period: DateRange) -> AgentPerformance:
        with self._lock:
            appointments = [a for a in self._appointments.values() if period.contains(a.created_at)]
            callbacks = [c for c in self._callbacks.values() if period.contains(c.created_at)]
            suggestions = self._optimization_suggestions()

        successful_appointments = sum(
            1
            for a in appointments
            if a.status in (AppointmentStatus.COMPLETED, AppointmentStatus.CONFIRMED)
        )
        successful_callbacks = sum(1 for c in callbacks if c.status == CallbackStatus.COMPLETED)
        total = len(appointments) + len(callbacks)

        return AgentPerformance(
            agent_id=self.agent_id,
            period=period,
            metrics=PerformanceMetrics(
                total_interactions=total,
                conversion_rate=(successful_appointments + successful_callbacks) / total if total else 0.0,
                appointment_booking_rate=(
                    successful_appointments / len(appointments) if appointments else 0.0
                ),
            ),
            optimization_suggestions=suggestions,
        )

    def _optimization_suggestions(self) -> list[str]:
        suggestions: list[str] = []

        appointments = list(self._appointments.values())
        if appointments:
            completed = sum(1 for a in appointments if a.status == AppointmentStatus.COMPLETED)
            if completed / len(appointments) < 0.7:
                suggestions.append(
                    "Consider improving appointment confirmation process to reduce no-shows"
                )

        callbacks = list(self._callbacks.values())
        if callbacks:
            failed = sum(1 for c in callbacks if c.status == CallbackStatus.FAILED)
            if failed / len(callbacks) > 0.3:
                suggestions.append(
                    "High callback failure rate - consider adjusting timing or contact methods"
                )

        campaigns = list(self._campaigns.values())
        if campaigns:
            avg = sum(c.performance.conversion_rate for c in campaigns) / len(campaigns)
            if avg < 0.2:
                suggestions.append(
                    "Campaign conversion rates are low - consider A/B testing different messaging"
                )
        return suggestions

    def counts(self) -> dict[str, int]:
        """Entity counts for dashboards."""
        with self._lock:
            return {
                "campaigns": len(self._campaigns),
                "active_campaigns": sum(
                    1 for c in self._campaigns.values() if c.status == CampaignStatus.ACTIVE
                ),
                "pending_callbacks": sum(
                    1 for c in self._callbacks.values() if c.status == CallbackStatus.PENDING
                ),
                "appointments": len(self._appointments),
                "appointments_booked_today": sum(
                    1
                    for a in self._appointments.values()
                    if a.created_at.date() == utcnow().date()
                ),
            }

    def appointments_created_in(self, period: DateRange) -> int:
        with self._lock:
            return sum(1 for a in self._appointments.values() if period.contains(a.created_at))
