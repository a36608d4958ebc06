import pytest
from datetime import datetime, timezone

from greenhouse_gateway.models.notification import (
    NotificationEvent,
    NotificationSettings,
    NotificationSettingsUpdate,
    NotificationType,
    Severity,
)
from greenhouse_gateway.utils.exceptions import DatabaseError


def alert_event(ids, user_id=None, **metadata):
    return NotificationEvent(
        type=NotificationType.SENSOR_ALERT,
        severity=Severity.WARNING,
        title="Air temperature out of range",
        message="Greenhouse 1: air temperature above limit",
        metadata=metadata,
        project_id=ids.project,
        greenhouse_id=ids.greenhouse,
        user_id=user_id,
        auto_dismiss=False
    )


def offline_event(ids):
    return NotificationEvent(
        type=NotificationType.SENSOR_OFFLINE,
        severity=Severity.WARNING,
        title="Sensors offline (Greenhouse 1)",
        message="Greenhouse 1: 2 points offline",
        metadata={"offlinePointCount": 2},
        project_id=ids.project,
        greenhouse_id=ids.greenhouse,
        auto_dismiss=False
    )


async def total_rows(database, user_ids):
    return sum([await database.notifications.count_for_user(uid) for uid in user_ids])


@pytest.mark.asyncio
async def test_project_event_reaches_entitled_users(engine, database, seeded):
    delivered = await engine.create(offline_event(seeded))

    assert delivered == 4
    for user_id in (seeded.admin, seeded.alice, seeded.bob, seeded.vera):
        assert await database.notifications.count_for_user(user_id) == 1
    assert await database.notifications.count_for_user(seeded.olga) == 0
    assert await database.notifications.count_for_user(seeded.inactive) == 0


@pytest.mark.asyncio
async def test_event_without_project_reaches_operators(engine, database, seeded):
    delivered = await engine.create(NotificationEvent(
        type=NotificationType.SYSTEM_ERROR,
        severity=Severity.CRITICAL,
        title="Database backup failed",
        message="Nightly backup did not complete"
    ))

    assert delivered == 4
    assert await database.notifications.count_for_user(seeded.olga) == 1
    assert await database.notifications.count_for_user(seeded.vera) == 0


@pytest.mark.asyncio
async def test_disabled_type_writes_nothing(engine, database, seeded):
    await engine.update_settings(seeded.alice, NotificationSettingsUpdate(sensor_alert=False))

    delivered = await engine.create(alert_event(seeded, user_id=seeded.alice, sensorKey="air_temp", triggered="high"))

    assert delivered == 0
    assert await database.notifications.count_for_user(seeded.alice) == 0


@pytest.mark.asyncio
async def test_severity_and_allow_lists(engine, database, seeded):
    await engine.update_settings(seeded.alice, NotificationSettingsUpdate(show_warning=False))
    await engine.update_settings(seeded.bob, NotificationSettingsUpdate(project_filter=[999]))
    await engine.update_settings(seeded.vera, NotificationSettingsUpdate(
        project_filter=[seeded.project], greenhouse_filter=[seeded.greenhouse]
    ))

    delivered = await engine.create(offline_event(seeded))

    assert delivered == 2
    assert await database.notifications.count_for_user(seeded.alice) == 0
    assert await database.notifications.count_for_user(seeded.bob) == 0
    assert await database.notifications.count_for_user(seeded.vera) == 1


@pytest.mark.asyncio
async def test_sensor_alert_dedup_window(engine, database, seeded, clock):
    event = alert_event(seeded, user_id=seeded.alice, sensorKey="air_temp", triggered="high")

    assert await engine.create(event) == 1
    clock.advance(minutes=1)
    assert await engine.create(event) == 0
    clock.advance(minutes=10)
    assert await engine.create(event) == 1

    assert await database.notifications.count_for_user(seeded.alice) == 2


@pytest.mark.asyncio
async def test_sensor_alert_discriminators(engine, database, seeded, clock):
    await engine.create(alert_event(seeded, user_id=seeded.alice, sensorKey="air_temp", triggered="high"))
    clock.advance(minutes=1)

    assert await engine.create(alert_event(seeded, user_id=seeded.alice, sensorKey="air_temp", triggered="low")) == 1
    assert await engine.create(alert_event(seeded, user_id=seeded.alice, sensorKey="soil1_ph", triggered="high")) == 1


@pytest.mark.asyncio
async def test_sensor_alert_without_discriminators_is_not_deduplicated(engine, database, seeded, clock):
    event = alert_event(seeded, user_id=seeded.alice, sensorKey="air_temp")

    assert await engine.create(event) == 1
    clock.advance(seconds=30)
    assert await engine.create(event) == 1
    assert await engine.can_create_sensor_alert(seeded.project, seeded.greenhouse, "air_temp", None)


@pytest.mark.asyncio
async def test_sensor_offline_dedup_and_guard(engine, database, seeded, clock):
    recipients = (seeded.admin, seeded.alice, seeded.bob, seeded.vera)

    assert await engine.can_create_sensor_offline_summary(seeded.project, seeded.greenhouse)
    assert await engine.create(offline_event(seeded)) == 4

    clock.advance(minutes=5)
    assert not await engine.can_create_sensor_offline_summary(seeded.project, seeded.greenhouse)
    assert await engine.create(offline_event(seeded)) == 0
    assert await total_rows(database, recipients) == 4

    clock.advance(minutes=26)
    assert await engine.can_create_sensor_offline_summary(seeded.project, seeded.greenhouse)
    assert await engine.create(offline_event(seeded)) == 4


@pytest.mark.asyncio
async def test_guard_true_when_one_recipient_outside_window(engine, database, seeded):
    await engine.create(alert_event(seeded, user_id=seeded.alice, sensorKey="air_temp", triggered="high"))

    assert await engine.can_create_sensor_alert(seeded.project, seeded.greenhouse, "air_temp", "high")

    for user_id in (seeded.admin, seeded.bob, seeded.vera):
        await engine.create(alert_event(seeded, user_id=user_id, sensorKey="air_temp", triggered="high"))
    assert not await engine.can_create_sensor_alert(seeded.project, seeded.greenhouse, "air_temp", "high")


@pytest.mark.asyncio
async def test_quiet_hours_wrap_midnight(engine, database, seeded, clock):
    await engine.update_settings(seeded.alice, NotificationSettingsUpdate(quiet_hours_enabled=True))
    event = NotificationEvent(
        type=NotificationType.INFO,
        severity=Severity.INFO,
        title="Firmware update available",
        message="Version 1.5.0 is ready",
        user_id=seeded.alice
    )

    clock.now = datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc)
    assert await engine.create(event) == 0

    clock.now = datetime(2024, 3, 2, 8, 0, tzinfo=timezone.utc)
    assert await engine.create(event) == 1


def test_quiet_hours_same_day_window(engine):
    settings = NotificationSettings(quiet_hours_enabled=True, quiet_hours_start="12:00", quiet_hours_end="13:30")

    assert engine.is_quiet_time(settings, datetime(2024, 3, 1, 12, 45, tzinfo=timezone.utc))
    assert engine.is_quiet_time(settings, datetime(2024, 3, 1, 13, 30, tzinfo=timezone.utc))
    assert not engine.is_quiet_time(settings, datetime(2024, 3, 1, 14, 0, tzinfo=timezone.utc))
    assert not engine.is_quiet_time(settings.model_copy(update={"quiet_hours_enabled": False}),
                                    datetime(2024, 3, 1, 12, 45, tzinfo=timezone.utc))


@pytest.mark.asyncio
async def test_explicit_zero_dismiss_is_kept(engine, database, seeded):
    event = offline_event(seeded).model_copy(update={"auto_dismiss": True, "dismiss_after_seconds": 0})
    await engine.create(event)
    await engine.create(alert_event(seeded, sensorKey="air_temp", triggered="high"))

    rows = await database.notifications.list_for_user(seeded.bob)
    assert {row.type: row.dismiss_after_seconds for row in rows} == {
        NotificationType.SENSOR_OFFLINE: 0,
        NotificationType.SENSOR_ALERT: 300,
    }


@pytest.mark.asyncio
async def test_exclude_user(engine, database, seeded):
    event = offline_event(seeded).model_copy(update={"exclude_user_id": seeded.alice})

    assert await engine.create(event) == 3
    assert await database.notifications.count_for_user(seeded.alice) == 0


@pytest.mark.asyncio
async def test_recipient_failures_are_isolated(engine, database, seeded, monkeypatch):
    original = database.notification_settings.get_or_create

    async def flaky(user_id):
        if user_id == seeded.alice:
            raise DatabaseError("disk I/O error")
        return await original(user_id)

    monkeypatch.setattr(database.notification_settings, "get_or_create", flaky)

    assert await engine.create(offline_event(seeded)) == 3
    assert await database.notifications.count_for_user(seeded.bob) == 1


@pytest.mark.asyncio
async def test_create_never_raises(engine, database, seeded, monkeypatch):
    async def broken(project_id=None):
        raise DatabaseError("database is locked")

    monkeypatch.setattr(database.directory, "get_target_user_ids", broken)

    assert await engine.create(offline_event(seeded)) == 0


@pytest.mark.asyncio
async def test_settings_are_created_lazily(engine, database, seeded):
    settings = await engine.get_settings(seeded.bob)
    again = await engine.get_settings(seeded.bob)

    assert settings == again == NotificationSettings()

    updated = await engine.update_settings(seeded.bob, NotificationSettingsUpdate(
        quiet_hours_enabled=True, quiet_hours_start="21:30", greenhouse_filter=[seeded.greenhouse]
    ))
    assert updated.quiet_hours_enabled
    assert updated.quiet_hours_start == "21:30"
    assert updated.quiet_hours_end == "07:00"
    assert updated.greenhouse_filter == [str(seeded.greenhouse)]


def test_invalid_quiet_hours_rejected():
    with pytest.raises(ValueError):
        NotificationSettingsUpdate(quiet_hours_start="25:00")


@pytest.mark.asyncio
async def test_inbox_operations(engine, database, seeded, clock):
    await engine.create(offline_event(seeded))
    await engine.create(alert_event(seeded, user_id=seeded.alice, sensorKey="air_temp", triggered="high"))

    items = await engine.list_for_user(seeded.alice)
    # same timestamp, newest insert first
    assert [n.type for n in items] == [NotificationType.SENSOR_ALERT, NotificationType.SENSOR_OFFLINE]
    assert await engine.unread_count(seeded.alice) == 2

    first = items[0]
    assert await engine.mark_as_read(first.id, seeded.alice)
    assert not await engine.mark_as_read(first.id, seeded.bob)
    assert await engine.unread_count(seeded.alice) == 1

    assert await engine.mark_all_as_read(seeded.alice) == 1
    assert await engine.unread_count(seeded.alice) == 0

    unread_only = await engine.list_for_user(seeded.bob, {"is_read": False})
    assert len(unread_only) == 1
    assert await engine.delete(unread_only[0].id, seeded.bob)
    assert await engine.delete_read(seeded.alice) == 2


@pytest.mark.asyncio
async def test_cleanup_removes_old_read_rows(engine, database, seeded, clock):
    await engine.create(offline_event(seeded))
    await engine.mark_all_as_read(seeded.alice)

    clock.advance(days=29)
    assert await engine.cleanup(30) == 0

    clock.advance(days=2)
    assert await engine.cleanup(30) == 1
    assert await database.notifications.count_for_user(seeded.bob) == 1


@pytest.mark.asyncio
async def test_device_status_transitions(engine, database, seeded):
    assert await engine.log_device_status_change(seeded.greenhouse, "online", "offline", reason="heartbeat lost") == 4
    offline = (await engine.list_for_user(seeded.bob))[0]
    assert offline.type == NotificationType.DEVICE_OFFLINE
    assert offline.severity == Severity.CRITICAL
    assert not offline.auto_dismiss

    assert await engine.log_device_status_change(seeded.greenhouse, "offline", "online", offline_duration=600) == 4
    online = await engine.list_for_user(seeded.bob, {"type": NotificationType.DEVICE_ONLINE})
    assert online[0].dismiss_after_seconds == 10
    assert "10 min" in online[0].message

    assert await engine.log_device_status_change(seeded.greenhouse, "unknown", "online") == 0
    assert len(await database.device_status.recent(seeded.greenhouse)) == 3
