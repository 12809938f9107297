from __future__ import annotations

import asyncio
from datetime import date

import pytest

from hyflo.domain import AlertLevel, Audience, FlowThreshold, ReadingStatus, Severity
from hyflo.domain_errors import ConflictError, ForbiddenError, NotFoundError, StorageError, ValidationError
from hyflo.services.reading_state import ReadingEventKind
from hyflo.services.workflow import ReadingInput, ValidationWorkflowService
from hyflo.stores.memory import InMemoryReadingStore


OPERATOR_ID = 1
SECOND_OPERATOR_ID = 2
VALIDATOR_ID = 3
READING_DAY = date(2026, 3, 2)


class _Authorization:
    def __init__(self, validators=(VALIDATOR_ID,)):
        self.validators = set(validators)

    def has_authority(self, user_id, authority):
        return authority == "VALIDATE_READING" and user_id in self.validators


class _HubStub:
    def __init__(self, *, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, event, audience):
        if self.fail:
            raise RuntimeError("hub down")
        self.published.append((event, audience))
        return 1


class _NotificationStoreStub:
    def __init__(self, *, fail=False):
        self.fail = fail
        self.appended = []

    async def append(self, event, audience):
        if self.fail:
            raise RuntimeError("outbox unavailable")
        self.appended.append((event, audience))


class _BrokenCommitStore(InMemoryReadingStore):
    async def commit_transition(self, reading, expected_version, events=()):
        if reading.validation_status is ReadingStatus.SUBMITTED:
            raise RuntimeError("database went away")
        return await super().commit_transition(reading, expected_version, events)


def _service(*, store=None, hub=None, notification_store=None, authorization=None):
    return ValidationWorkflowService(
        store=store or InMemoryReadingStore(),
        authorization=authorization or _Authorization(),
        hub=hub or _HubStub(),
        notification_store=notification_store or _NotificationStoreStub(),
    )


def _input(**values) -> ReadingInput:
    values.setdefault("pressure", 250.0)
    return ReadingInput(pipeline_id=1, reading_date=READING_DAY, reading_slot_id=4, **values)


@pytest.mark.asyncio
async def test_submit_reading_immediately_notifies_validators() -> None:
    hub = _HubStub()
    notifications = _NotificationStoreStub()
    service = _service(hub=hub, notification_store=notifications)

    reading = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)

    assert reading.validation_status is ReadingStatus.SUBMITTED
    assert reading.version == 2
    assert reading.alert_level is AlertLevel.NORMAL
    assert len(hub.published) == 1
    event, audience = hub.published[0]
    assert audience == Audience.validators()
    assert event.type == "READING_SUBMITTED"
    assert event.related_entity_id == reading.id
    assert notifications.appended == hub.published


@pytest.mark.asyncio
async def test_draft_is_saved_without_notification() -> None:
    hub = _HubStub()
    service = _service(hub=hub)

    draft = await service.submit_reading(_input(pressure=None, notes="gauge warming up"), actor_id=OPERATOR_ID)
    again = await service.create_or_update_draft(_input(pressure=240.0), actor_id=OPERATOR_ID)

    assert draft.validation_status is ReadingStatus.DRAFT
    assert again.id == draft.id
    assert again.pressure == 240.0
    assert again.version == 2
    assert hub.published == []


@pytest.mark.asyncio
async def test_submit_for_occupied_slot_names_existing_reading() -> None:
    service = _service()
    first = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)

    with pytest.raises(ConflictError) as exc_info:
        await service.submit_reading(_input(pressure=260.0, submit_immediately=True), actor_id=SECOND_OPERATOR_ID)

    assert exc_info.value.conflicting_reading_id == first.id


@pytest.mark.asyncio
async def test_concurrent_submissions_yield_one_winner() -> None:
    store = InMemoryReadingStore()
    service = _service(store=store)

    results = await asyncio.gather(
        service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID),
        service.submit_reading(_input(pressure=255.0, submit_immediately=True), actor_id=SECOND_OPERATOR_ID),
        return_exceptions=True,
    )

    winners = [item for item in results if not isinstance(item, Exception)]
    losers = [item for item in results if isinstance(item, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ConflictError)
    assert losers[0].conflicting_reading_id == winners[0].id
    assert [r.id for r in await store.list_readings(status=ReadingStatus.SUBMITTED)] == [winners[0].id]


@pytest.mark.asyncio
async def test_breach_escalates_notification_to_urgent() -> None:
    store = InMemoryReadingStore()
    await store.save_threshold(FlowThreshold(pipeline_id=1, pressure_min=100.0, pressure_max=400.0, alert_tolerance=5.0))
    hub = _HubStub()
    service = _service(store=store, hub=hub)

    reading = await service.submit_reading(
        _input(pressure=450.0, submit_immediately=True),
        actor_id=OPERATOR_ID,
        severity=Severity.NORMAL,
    )

    event, _ = hub.published[0]
    assert reading.alert_level is AlertLevel.BREACH
    assert event.severity is Severity.URGENT
    assert event.type == "READING_BREACH"
    assert "pressure" in event.message


@pytest.mark.asyncio
async def test_warning_keeps_requested_severity() -> None:
    store = InMemoryReadingStore()
    await store.save_threshold(FlowThreshold(pipeline_id=1, pressure_min=100.0, pressure_max=400.0, alert_tolerance=5.0))
    hub = _HubStub()
    service = _service(store=store, hub=hub)

    reading = await service.submit_reading(
        _input(pressure=390.0, submit_immediately=True),
        actor_id=OPERATOR_ID,
        severity=Severity.HIGH,
    )

    assert reading.alert_level is AlertLevel.WARNING
    assert hub.published[0][0].severity is Severity.HIGH


@pytest.mark.asyncio
async def test_validate_by_recorder_is_forbidden() -> None:
    service = _service(authorization=_Authorization(validators=(OPERATOR_ID, VALIDATOR_ID)))
    reading = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)

    with pytest.raises(ForbiddenError) as exc_info:
        await service.validate(reading.id, validator_id=OPERATOR_ID)

    assert exc_info.value.code == "READING_SELF_VALIDATION_FORBIDDEN"
    assert (await service.get_reading(reading.id)).validation_status is ReadingStatus.SUBMITTED


@pytest.mark.asyncio
async def test_validate_without_authority_is_forbidden() -> None:
    service = _service()
    reading = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)

    with pytest.raises(ForbiddenError):
        await service.validate(reading.id, validator_id=SECOND_OPERATOR_ID)


@pytest.mark.asyncio
async def test_validate_notifies_recorder() -> None:
    hub = _HubStub()
    service = _service(hub=hub)
    reading = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)

    validated = await service.validate(reading.id, validator_id=VALIDATOR_ID)

    assert validated.validation_status is ReadingStatus.VALIDATED
    assert validated.validated_by_id == VALIDATOR_ID
    event, audience = hub.published[-1]
    assert audience == Audience.user(OPERATOR_ID)
    assert event.type == "READING_VALIDATED"


@pytest.mark.asyncio
async def test_reject_reason_length_boundary() -> None:
    hub = _HubStub()
    service = _service(hub=hub)
    reading = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)

    with pytest.raises(ValidationError):
        await service.reject(reading.id, validator_id=VALIDATOR_ID, reason="abcd")
    rejected = await service.reject(reading.id, validator_id=VALIDATOR_ID, reason="abcde")

    assert rejected.validation_status is ReadingStatus.REJECTED
    assert rejected.rejection_reason == "abcde"
    event, audience = hub.published[-1]
    assert audience == Audience.user(OPERATOR_ID)
    assert event.type == "READING_REJECTED"


@pytest.mark.asyncio
async def test_resubmission_after_rejection_keeps_reading_id() -> None:
    service = _service()
    reading = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)
    await service.reject(reading.id, validator_id=VALIDATOR_ID, reason="pressure gauge not zeroed")

    resubmitted = await service.resubmit(reading.id, {"pressure": 245.0}, actor_id=OPERATOR_ID)

    assert resubmitted.id == reading.id
    assert resubmitted.validation_status is ReadingStatus.SUBMITTED
    assert resubmitted.pressure == 245.0
    assert resubmitted.rejection_reason is None
    assert resubmitted.version == 5
    history = await service.history(reading.id)
    assert [event.kind for event in history] == [
        ReadingEventKind.CREATED,
        ReadingEventKind.SUBMITTED,
        ReadingEventKind.REJECTED,
        ReadingEventKind.UPDATED,
        ReadingEventKind.SUBMITTED,
    ]
    assert all(event.reading_id == reading.id for event in history)


@pytest.mark.asyncio
async def test_new_submission_after_rejection_takes_the_freed_slot() -> None:
    service = _service()
    reading = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)
    await service.reject(reading.id, validator_id=VALIDATOR_ID, reason="pressure gauge not zeroed")

    replacement = await service.submit_reading(_input(pressure=245.0, submit_immediately=True), actor_id=OPERATOR_ID)

    assert replacement.id != reading.id
    assert replacement.validation_status is ReadingStatus.SUBMITTED


@pytest.mark.asyncio
async def test_storage_failure_surfaces_and_sends_nothing() -> None:
    hub = _HubStub()
    notifications = _NotificationStoreStub()
    service = _service(store=_BrokenCommitStore(), hub=hub, notification_store=notifications)

    with pytest.raises(StorageError) as exc_info:
        await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)

    assert exc_info.value.retryable is True
    assert hub.published == []
    assert notifications.appended == []


@pytest.mark.asyncio
async def test_dispatch_failures_do_not_fail_the_transition() -> None:
    service = _service(hub=_HubStub(fail=True), notification_store=_NotificationStoreStub(fail=True))

    reading = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)

    assert reading.validation_status is ReadingStatus.SUBMITTED


@pytest.mark.asyncio
async def test_only_recorder_can_edit_draft() -> None:
    service = _service()
    draft = await service.submit_reading(_input(), actor_id=OPERATOR_ID)

    with pytest.raises(ForbiddenError) as exc_info:
        await service.update_draft(draft.id, {"pressure": 100.0}, actor_id=SECOND_OPERATOR_ID)

    assert exc_info.value.code == "READING_NOT_OWNER"


@pytest.mark.asyncio
async def test_unknown_reading_is_not_found() -> None:
    service = _service()

    with pytest.raises(NotFoundError) as exc_info:
        await service.submit(999, actor_id=OPERATOR_ID)

    assert exc_info.value.code == "READING_NOT_FOUND"


@pytest.mark.asyncio
async def test_batch_validate_collects_failures() -> None:
    service = _service()
    ok = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)
    draft = await service.submit_reading(
        ReadingInput(pipeline_id=1, reading_date=READING_DAY, reading_slot_id=5, pressure=200.0),
        actor_id=OPERATOR_ID,
    )

    result = await service.batch_validate([ok.id, draft.id, 404], validator_id=VALIDATOR_ID)

    assert [reading.id for reading in result.succeeded] == [ok.id]
    assert [(failure.reading_id, failure.code) for failure in result.failed] == [
        (draft.id, "READING_INVALID_STATE"),
        (404, "READING_NOT_FOUND"),
    ]


@pytest.mark.asyncio
async def test_batch_reject_applies_the_same_reason() -> None:
    service = _service()
    first = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)
    second = await service.submit_reading(
        ReadingInput(pipeline_id=1, reading_date=READING_DAY, reading_slot_id=5, pressure=200.0, submit_immediately=True),
        actor_id=OPERATOR_ID,
    )

    result = await service.batch_reject([first.id, second.id], validator_id=VALIDATOR_ID, reason="meter drift")

    assert result.failed == []
    assert {reading.rejection_reason for reading in result.succeeded} == {"meter drift"}


@pytest.mark.asyncio
async def test_preview_uses_the_active_threshold() -> None:
    store = InMemoryReadingStore()
    await store.save_threshold(FlowThreshold(pipeline_id=1, pressure_min=100.0, pressure_max=500.0, alert_tolerance=5.0))
    service = _service(store=store)

    evaluation = await service.evaluate_reading({"pressure": 480.0}, pipeline_id=1)

    assert evaluation.level is AlertLevel.WARNING
    assert evaluation.threshold_id is not None


@pytest.mark.asyncio
async def test_list_pending_returns_submitted_only() -> None:
    service = _service()
    submitted = await service.submit_reading(_input(submit_immediately=True), actor_id=OPERATOR_ID)
    await service.submit_reading(
        ReadingInput(pipeline_id=1, reading_date=READING_DAY, reading_slot_id=6, pressure=210.0),
        actor_id=OPERATOR_ID,
    )

    pending = await service.list_pending()

    assert [reading.id for reading in pending] == [submitted.id]


@pytest.mark.asyncio
async def test_invalid_threshold_is_rejected() -> None:
    service = _service()

    with pytest.raises(ValidationError) as exc_info:
        await service.save_threshold(
            FlowThreshold(pipeline_id=1, pressure_min=300.0, pressure_max=200.0),
            actor_id=VALIDATOR_ID,
        )

    assert exc_info.value.code == "THRESHOLD_CONFIG_INVALID"


@pytest.mark.asyncio
@pytest.mark.parametrize("tolerance", [float("nan"), float("inf")])
async def test_non_finite_tolerance_is_rejected(tolerance) -> None:
    service = _service()

    with pytest.raises(ValidationError) as exc_info:
        await service.save_threshold(
            FlowThreshold(pipeline_id=1, pressure_min=100.0, pressure_max=500.0, alert_tolerance=tolerance),
            actor_id=VALIDATOR_ID,
        )

    assert exc_info.value.code == "THRESHOLD_TOLERANCE_INVALID"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "bounds",
    [
        {"pressure_min": float("nan"), "pressure_max": 400.0},
        {"pressure_min": 100.0, "pressure_max": float("inf")},
        {"pressure_min": float("-inf"), "pressure_max": 400.0},
    ],
)
async def test_non_finite_threshold_bounds_are_rejected(bounds) -> None:
    service = _service()

    with pytest.raises(ValidationError) as exc_info:
        await service.save_threshold(FlowThreshold(pipeline_id=1, **bounds), actor_id=VALIDATOR_ID)

    assert exc_info.value.code == "THRESHOLD_CONFIG_INVALID"
    assert exc_info.value.details["fields"] == {"pressure": "bounds must be finite numbers"}


@pytest.mark.asyncio
async def test_non_finite_submission_is_not_stored_or_announced() -> None:
    store = InMemoryReadingStore()
    hub = _HubStub()
    service = _service(store=store, hub=hub)

    with pytest.raises(ValidationError) as exc_info:
        await service.submit_reading(_input(pressure=float("nan"), submit_immediately=True), actor_id=OPERATOR_ID)

    assert exc_info.value.code == "READING_MEASUREMENT_OUT_OF_RANGE"
    assert await store.load_reading(1, READING_DAY, 4) is None
    assert hub.published == []


@pytest.mark.asyncio
async def test_preview_refuses_non_finite_values() -> None:
    service = _service()

    with pytest.raises(ValidationError) as exc_info:
        await service.evaluate_reading({"pressure": float("nan")}, pipeline_id=1)

    assert exc_info.value.code == "READING_MEASUREMENT_OUT_OF_RANGE"
