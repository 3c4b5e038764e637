"""
End-to-end tests for ChatSession wired to in-memory service and push
doubles: channel switching, sending across delivery paths, badges,
connection health and cache handling.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from chatsync.errors import PermissionDenied, RemoteServiceError, SendOutcome
from chatsync.models import Badge, ConnectionState, NotificationKind, SendStatus, Viewer, ViewerTier
from chatsync.session import ChatSession, SessionSettings

from conftest import make_message

SETTINGS = SessionSettings(
    poll_interval_seconds=60,
    health_tick_seconds=60,
    background_poll_seconds=0,
)


def build_session(viewer, service, push, **kwargs):
    return ChatSession(
        viewer, service, push, settings=SETTINGS, clock=lambda: 1700000000.0, **kwargs
    )


def push_payload(message_id="42", body="hello", channel="general", sender="u-me", ms=1700000000100):
    return {"id": message_id, "channelId": channel, "senderId": sender, "content": body, "createdAt": ms}


def ids(session, channel=None):
    return [m.id for m in session.messages(channel)]


class TestSettings:
    def test_from_config(self):
        settings = SessionSettings.from_config({"poll_interval_seconds": 2, "dedup_window_ms": 5000})
        assert settings.poll_interval_seconds == 2.0
        assert settings.dedup_window_ms == 5000
        assert settings.background_poll_seconds == 30.0


class TestChannelSwitch:
    @pytest.mark.asyncio
    async def test_start_opens_initial_channel(self, viewer, service, push, channels):
        service.recent["general"] = [make_message("1"), make_message("2", offset_ms=5000)]
        session = build_session(viewer, service, push)

        await session.start(channels, "general")

        assert push.started
        assert push.channel_id == "general"
        assert session.active_channel == "general"
        assert ids(session) == ["1", "2"]
        await session.close()
        assert push.closed

    @pytest.mark.asyncio
    async def test_view_gate(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")

        with pytest.raises(PermissionDenied):
            await session.switch_active_channel("elite-room")
        with pytest.raises(KeyError):
            await session.switch_active_channel("nope")

        assert session.active_channel == "general"
        assert push.channel_id == "general"
        await session.close()

    @pytest.mark.asyncio
    async def test_initial_fetch_failure_still_subscribes(self, viewer, service, push, channels):
        service.fetch_error = RemoteServiceError("down")
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        assert push.channel_id == "general"
        assert session.coordinator.poll_active
        await session.close()

    @pytest.mark.asyncio
    async def test_switch_resets_only_target_badge(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        queue = session.notifications()

        service.recent["premium-lounge"] = [make_message("p1", channel_id="premium-lounge")]
        service.recent["announcements"] = [make_message("a1", channel_id="announcements")]
        await session.sweep_once()
        assert session.get_badges() == {"general": Badge()}
        assert queue.empty()

        service.recent["premium-lounge"].append(
            make_message("p2", channel_id="premium-lounge", offset_ms=5000)
        )
        service.recent["announcements"].append(
            make_message("a2", channel_id="announcements", body="@Alice heads up", offset_ms=5000)
        )
        await session.sweep_once()

        badges = session.get_badges()
        assert badges["premium-lounge"] == Badge(unread=1, mentions=0)
        assert badges["announcements"] == Badge(unread=1, mentions=1)
        kinds = {queue.get_nowait().kind, queue.get_nowait().kind}
        assert kinds == {NotificationKind.MESSAGE, NotificationKind.MENTION}

        await session.switch_active_channel("premium-lounge")
        badges = session.get_badges()
        assert badges["premium-lounge"] == Badge()
        assert badges["announcements"] == Badge(unread=1, mentions=1)
        assert push.channel_id == "premium-lounge"
        await session.close()

    @pytest.mark.asyncio
    async def test_sweep_skips_unviewable_channels(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        service.fetches.clear()
        await session.sweep_once()
        assert {"premium-lounge", "announcements"} <= set(service.fetches)
        assert "elite-room" not in service.fetches
        assert "staff" not in service.fetches
        await session.close()


class TestSending:
    @pytest.mark.asyncio
    async def test_send_then_push_then_poll(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")

        result = await session.send("general", "hello")
        assert result.ok
        assert result.message.id == "42"

        await push.deliver(push_payload())
        service.recent["general"] = [make_message("42", sender_id="u-me", body="hello", offset_ms=100)]
        await session.coordinator.poll_once("general")

        assert ids(session) == ["42"]
        await session.close()

    @pytest.mark.asyncio
    async def test_push_before_ack(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        service.write_gate = asyncio.Event()

        send = asyncio.create_task(session.send("general", "hello"))
        await asyncio.sleep(0)
        assert ids(session) == ["local:1700000000000"]

        await push.deliver(push_payload())
        assert ids(session) == ["42"]

        service.write_gate.set()
        result = await send
        assert result.message.id == "42"
        assert ids(session) == ["42"]
        await session.close()

    @pytest.mark.asyncio
    async def test_free_viewer_denied_in_elite_channel(self, service, push, channels):
        free = Viewer(id="u-me", display_name="Alice", tier=ViewerTier.FREE)
        session = build_session(free, service, push)
        await session.start(channels, "general")

        result = await session.send("elite-room", "hi")

        assert result.status is SendOutcome.DENIED
        assert isinstance(result.error, PermissionDenied)
        assert session.messages("elite-room") == []
        assert service.writes == []
        await session.close()

    @pytest.mark.asyncio
    async def test_unknown_channel_is_invalid(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels)
        assert (await session.send("nope", "hi")).status is SendOutcome.INVALID
        await session.close()

    @pytest.mark.asyncio
    async def test_failed_send_then_retry(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        service.write_error = RemoteServiceError("down")

        failed = await session.send("general", "hello")
        assert failed.status is SendOutcome.FAILED
        assert session.messages()[0].status is SendStatus.FAILED

        service.write_error = None
        retried = await session.retry(failed.message.id)
        assert retried.ok
        assert ids(session) == ["42"]
        assert (await session.retry("local:missing")).status is SendOutcome.INVALID
        await session.close()

    @pytest.mark.asyncio
    async def test_xp_accrues_on_session_ledger(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        await session.send("general", "x" * 100)
        assert session.ledger.xp == pytest.approx(2.01)
        await session.close()


class TestIngest:
    @pytest.mark.asyncio
    async def test_malformed_push_payload_dropped(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        await push.deliver({"content": "no id"})
        await push.deliver(push_payload("7", sender="u-other", body="ok"))
        assert ids(session) == ["7"]
        await session.close()

    @pytest.mark.asyncio
    async def test_payload_routed_by_own_channel(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        await push.deliver(push_payload("9", channel="announcements", sender="u-other"))
        assert ids(session) == []
        assert ids(session, "announcements") == ["9"]
        assert session.get_badges()["announcements"].unread == 1
        await session.close()


class TestConnectionHealth:
    @pytest.mark.asyncio
    async def test_push_drop_falls_back_to_polling(self, viewer, service, push, channels):
        service.probe_ok = False
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        assert session.coordinator.poll_active

        await push.open()
        assert session.get_connection_state() is ConnectionState.CONNECTED
        assert not session.coordinator.poll_active

        await push.drop()
        assert session.get_connection_state() is ConnectionState.DEGRADED_SERVER
        assert session.coordinator.poll_active
        await session.close()

    @pytest.mark.asyncio
    async def test_network_signal(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        await session.set_network_reachable(False)
        assert session.get_connection_state() is ConnectionState.DEGRADED_NETWORK
        await session.set_network_reachable(True)
        assert session.get_connection_state() is ConnectionState.CONNECTING
        await session.close()


    @pytest.mark.asyncio
    async def test_retry_push_only_when_exhausted(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        assert session.retry_push() is False

        push.exhausted = True
        assert session.retry_push() is True
        assert push.retries == 1
        assert session.retry_push() is False
        await session.close()


class TestSubscriptionChanges:
    @pytest.mark.asyncio
    async def test_downgrade_leaves_unviewable_channel(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "premium-lounge")
        unsubscribes = push.unsubscribe_calls

        tier = await session.update_subscription({"subscription_plan": "premium", "payment_failed": True})

        assert tier is ViewerTier.FREE
        assert session.viewer.tier is ViewerTier.FREE
        assert session.active_channel is None
        assert push.unsubscribe_calls == unsubscribes + 1
        assert (await session.send("premium-lounge", "hi")).status is SendOutcome.DENIED
        await session.close()

    @pytest.mark.asyncio
    async def test_left_channel_counts_unread_again(self, viewer, service, push, channels):
        service.recent["general"] = [make_message("1")]
        session = build_session(viewer, service, push)
        await session.start(channels, "general")

        await session.apply_context(viewer, [c for c in channels if c.id != "general"])
        assert session.active_channel is None

        session.update_channels(channels)
        service.recent["general"].append(make_message("2", offset_ms=5000))
        await session.sweep_once()

        assert session.get_badges()["general"].unread == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_upgrade_opens_elite(self, viewer, service, push, channels):
        session = build_session(viewer, service, push)
        await session.start(channels, "general")
        await session.update_subscription({"role": "admin"})
        await session.switch_active_channel("staff")
        assert session.active_channel == "staff"
        await session.close()


class TestCacheAndAudit:
    @pytest.mark.asyncio
    async def test_cache_seed_and_save(self, viewer, service, push, channels):
        cached = make_message("c1")
        cache = MagicMock()
        cache.load = AsyncMock(side_effect=lambda cid: [cached] if cid == "general" else [])
        cache.save = AsyncMock()
        session = build_session(viewer, service, push, cache=cache)

        await session.start(channels, "general")
        assert ids(session) == ["c1"]

        await session.switch_active_channel("announcements")
        cache.save.assert_awaited_with("general", [cached])

        await session.close()
        assert call("general", [cached]) in cache.save.await_args_list

    @pytest.mark.asyncio
    async def test_audit_trail(self, viewer, service, push, channels):
        audit = MagicMock()
        audit.log = AsyncMock()
        session = build_session(viewer, service, push, audit=audit)
        await session.start(channels, "general")
        await push.open()
        with pytest.raises(PermissionDenied):
            await session.switch_active_channel("staff")
        await session.close()

        actions = [c.args[1] for c in audit.log.await_args_list]
        assert "channel_switch" in actions
        assert "connection_state" in actions
        assert "permission_denied" in actions
