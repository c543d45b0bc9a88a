"""Tests for the Conversation Session Engine."""
import asyncio
import pytest
from unittest.mock import AsyncMock

from grantkeeper.domain.conversation.engine import ConversationEngine, Prompt, SessionStep, TimeoutNotices
from grantkeeper.domain.errors import (
    AlreadyRegisteredError, InvalidNameError, NameTakenError,
    NoActiveSessionError, ProvisioningFailedError, SessionAlreadyActiveError,
    WeakSecretError
)

SECRET = "Str0ngPass!"


class TestRegistrationFlow:
    @pytest.mark.asyncio
    async def test_end_to_end_registration(self, engine, store):
        """startSession(42) -> name -> secret yields an active account and no session."""
        assert await engine.start_session(42) == Prompt.ASK_NAME

        reply = await engine.submit_input(42, "alice_01")
        assert reply.prompt == Prompt.ASK_SECRET
        assert reply.completed is False

        reply = await engine.submit_input(42, SECRET)
        assert reply.completed is True
        assert reply.ok
        assert reply.account.name == "alice_01"
        assert reply.account.active is True
        assert reply.account.profile_artifact_ref

        assert await engine.get_session(42) is None
        assert engine.active_sessions() == 0
        assert (await store.find_by_requester(42)).name == "alice_01"

    @pytest.mark.asyncio
    async def test_short_name_keeps_session_awaiting_name(self, engine):
        await engine.start_session(42)

        with pytest.raises(InvalidNameError) as exc:
            await engine.submit_input(42, "ab")

        assert "3-20" in exc.value.message
        session = await engine.get_session(42)
        assert session.step == SessionStep.AWAITING_NAME
        assert session.pending_name is None

    @pytest.mark.asyncio
    async def test_taken_name_is_rejected(self, engine, orchestrator):
        await orchestrator.create(7, "bob_02", SECRET)
        await engine.start_session(42)

        with pytest.raises(NameTakenError):
            await engine.submit_input(42, "bob_02")

        assert (await engine.get_session(42)).step == SessionStep.AWAITING_NAME

    @pytest.mark.asyncio
    async def test_weak_secret_keeps_pending_name(self, engine, store):
        await engine.start_session(42)
        await engine.submit_input(42, "alice_01")

        with pytest.raises(WeakSecretError):
            await engine.submit_input(42, "password")

        session = await engine.get_session(42)
        assert session.step == SessionStep.AWAITING_SECRET
        assert session.pending_name == "alice_01"
        assert await store.list_accounts() == []

    @pytest.mark.asyncio
    async def test_create_failure_ends_session_with_error(self, engine, provisioner, store):
        provisioner.fail("create_credential")
        await engine.start_session(42)
        await engine.submit_input(42, "alice_01")

        reply = await engine.submit_input(42, SECRET)

        assert reply.completed is True
        assert isinstance(reply.error, ProvisioningFailedError)
        assert reply.account is None
        assert await engine.get_session(42) is None
        # The half-provisioned row is kept for finish_provisioning
        assert (await store.find_by_name("alice_01")).active is False


class TestSessionInvariants:
    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, engine):
        await engine.start_session(42)

        with pytest.raises(SessionAlreadyActiveError):
            await engine.start_session(42)

    @pytest.mark.asyncio
    async def test_registered_requester_cannot_start(self, engine, orchestrator):
        await orchestrator.create(42, "alice_01", SECRET)

        with pytest.raises(AlreadyRegisteredError):
            await engine.start_session(42)

    @pytest.mark.asyncio
    async def test_input_without_session(self, engine):
        with pytest.raises(NoActiveSessionError):
            await engine.submit_input(42, "alice_01")

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, engine):
        await engine.start_session(42)

        assert await engine.cancel(42) is True
        assert await engine.cancel(42) is False
        assert await engine.get_session(42) is None
        # A fresh session can start after cancel
        assert await engine.start_session(42) == Prompt.ASK_NAME

    @pytest.mark.asyncio
    async def test_requesters_are_independent(self, engine):
        await engine.start_session(1)
        await engine.start_session(2)

        await engine.submit_input(1, "alice_01")

        assert (await engine.get_session(1)).step == SessionStep.AWAITING_SECRET
        assert (await engine.get_session(2)).step == SessionStep.AWAITING_NAME
        assert engine.active_sessions() == 2

    @pytest.mark.asyncio
    async def test_concurrent_inputs_are_serialized(self, engine):
        await engine.start_session(42)

        results = await asyncio.gather(
            engine.submit_input(42, "alice_01"),
            engine.submit_input(42, "bob_02"),
            return_exceptions=True,
        )

        # The second input is read as the secret, never as a second name
        assert results[0].prompt == Prompt.ASK_SECRET
        assert isinstance(results[1], WeakSecretError)
        assert (await engine.get_session(42)).pending_name == "alice_01"


class TestIdleTimeout:
    @pytest.mark.asyncio
    async def test_idle_session_is_gone_on_next_lookup(self, orchestrator, store, clock):
        on_timeout = AsyncMock()
        engine = ConversationEngine(orchestrator, idle_timeout_seconds=300, clock=clock, on_timeout=on_timeout)
        try:
            await engine.start_session(42)
            await engine.submit_input(42, "alice_01")
            clock.advance(seconds=301)

            assert await engine.get_session(42) is None
            with pytest.raises(NoActiveSessionError):
                await engine.submit_input(42, SECRET)

            on_timeout.assert_awaited_once_with(42)
            assert await store.list_accounts() == []
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_session_within_timeout_survives(self, engine, clock):
        await engine.start_session(42)
        clock.advance(seconds=299)

        assert await engine.get_session(42) is not None

    @pytest.mark.asyncio
    async def test_timer_expires_session_and_notifies_once(self, orchestrator, clock):
        on_timeout = AsyncMock()
        engine = ConversationEngine(orchestrator, idle_timeout_seconds=0.05, clock=clock, on_timeout=on_timeout)
        try:
            await engine.start_session(42)
            await asyncio.sleep(0.2)

            assert engine.active_sessions() == 0
            assert await engine.get_session(42) is None
            on_timeout.assert_awaited_once_with(42)
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_timeout_never_aborts_committed_create(self, orchestrator, clock, monkeypatch):
        on_timeout = AsyncMock()
        engine = ConversationEngine(orchestrator, idle_timeout_seconds=0.05, clock=clock, on_timeout=on_timeout)
        real_create = orchestrator.create

        async def slow_create(*args, **kwargs):
            await asyncio.sleep(0.15)
            return await real_create(*args, **kwargs)

        monkeypatch.setattr(orchestrator, "create", slow_create)
        try:
            await engine.start_session(42)
            await engine.submit_input(42, "alice_01")

            reply = await engine.submit_input(42, SECRET)

            assert reply.ok
            assert reply.account.name == "alice_01"
            on_timeout.assert_not_awaited()
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_expiry(self, orchestrator, clock):
        engine = ConversationEngine(
            orchestrator, idle_timeout_seconds=300, clock=clock,
            on_timeout=AsyncMock(side_effect=RuntimeError("transport down")),
        )
        try:
            await engine.start_session(42)
            clock.advance(minutes=6)

            assert await engine.get_session(42) is None
            assert await engine.start_session(42) == Prompt.ASK_NAME
        finally:
            await engine.shutdown()


class TestTimeoutNotices:
    @pytest.mark.asyncio
    async def test_notice_is_consumed_once(self):
        notices = TimeoutNotices()
        await notices.record(42)

        assert notices.pop(42) is True
        assert notices.pop(42) is False
        assert notices.pop(7) is False

    @pytest.mark.asyncio
    async def test_oldest_notices_are_dropped(self):
        notices = TimeoutNotices(max_entries=2)
        for requester_id in (1, 2, 3):
            await notices.record(requester_id)

        assert [notices.pop(i) for i in (1, 2, 3)] == [False, True, True]

    @pytest.mark.asyncio
    async def test_engine_records_lazy_expiry(self, orchestrator, clock):
        notices = TimeoutNotices()
        engine = ConversationEngine(orchestrator, idle_timeout_seconds=300, clock=clock, on_timeout=notices.record)
        try:
            await engine.start_session(42)
            clock.advance(seconds=301)

            assert await engine.get_session(42) is None
            assert notices.pop(42) is True
        finally:
            await engine.shutdown()
