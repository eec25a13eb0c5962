"""
DurableQueue: transactional enqueue, atomic claim, conversation lifecycle.
"""

import time
from uuid import uuid4

import pytest

from loan_kernel.exceptions import (
    ConversationClosedError,
    ConversationNotFoundError,
    MalformedMessageError,
)
from loan_kernel.models.queue import ConversationState
from loan_kernel.services.queue_service import (
    END_DIALOG,
    LOAN_APPLICATION_MESSAGE,
    DurableQueue,
    ReceivedMessage,
)


def _enqueue(session_factory, queue, body=None, conversation_id=None, message_type="Test"):
    with session_factory() as session:
        cid = queue.enqueue(session, message_type, body, conversation_id=conversation_id)
        session.commit()
    return cid


def _dequeue_commit(session_factory, queue, timeout=0.0):
    with session_factory() as session:
        received = queue.dequeue(session, timeout)
        session.commit()
    return received


class TestEnqueueDequeue:
    def test_roundtrip(self, session_factory, queue):
        cid = _enqueue(session_factory, queue, {"n": 1})
        received = _dequeue_commit(session_factory, queue)
        assert received.conversation_id == cid
        assert received.message_type == "Test"
        assert received.body == {"n": 1}

    def test_claim_is_consumed_on_commit(self, session_factory, queue):
        _enqueue(session_factory, queue, {"n": 1})
        assert _dequeue_commit(session_factory, queue) is not None
        assert _dequeue_commit(session_factory, queue) is None

    def test_uncommitted_enqueue_is_invisible(self, session_factory, queue):
        producer_session = session_factory()
        try:
            queue.enqueue(producer_session, "Test", {"n": 1})
            with session_factory() as consumer:
                assert queue.dequeue(consumer, 0) is None
        finally:
            producer_session.rollback()
            producer_session.close()
        assert _dequeue_commit(session_factory, queue) is None

    def test_rollback_returns_message(self, session_factory, queue):
        _enqueue(session_factory, queue, {"n": 1})
        with session_factory() as session:
            first = queue.dequeue(session, 0)
            session.rollback()
        again = _dequeue_commit(session_factory, queue)
        assert again.seq == first.seq
        assert again.body == {"n": 1}

    def test_fifo_within_conversation(self, session_factory, queue):
        cid = _enqueue(session_factory, queue, {"n": 1})
        _enqueue(session_factory, queue, {"n": 2}, conversation_id=cid)
        assert _dequeue_commit(session_factory, queue).body == {"n": 1}
        assert _dequeue_commit(session_factory, queue).body == {"n": 2}

    def test_only_head_of_conversation_is_deliverable(self, session_factory, queue):
        cid = _enqueue(session_factory, queue, {"n": 1})
        _enqueue(session_factory, queue, {"n": 2}, conversation_id=cid)
        with session_factory() as holder:
            assert queue.dequeue(holder, 0).body == {"n": 1}
            # Second message waits until the head's claim resolves
            assert queue.messages_for(holder, cid)[0].body == {"n": 2}
            holder.commit()
        assert _dequeue_commit(session_factory, queue).body == {"n": 2}

    def test_oldest_conversation_first(self, session_factory, queue):
        first = _enqueue(session_factory, queue, {"n": 1})
        second = _enqueue(session_factory, queue, {"n": 2})
        assert _dequeue_commit(session_factory, queue).conversation_id == first
        assert _dequeue_commit(session_factory, queue).conversation_id == second

    def test_queues_are_isolated_by_name(self, session_factory, queue, clock):
        other = DurableQueue("OtherQueue", clock=clock, poll_interval=0.01)
        _enqueue(session_factory, other, {"n": 1})
        assert _dequeue_commit(session_factory, queue) is None
        assert _dequeue_commit(session_factory, other).body == {"n": 1}


class TestTimeout:
    def test_empty_queue_returns_none_after_timeout(self, session_factory, queue):
        start = time.monotonic()
        assert _dequeue_commit(session_factory, queue, timeout=0.2) is None
        assert time.monotonic() - start >= 0.2

    def test_zero_timeout_returns_immediately(self, session_factory, queue):
        start = time.monotonic()
        assert _dequeue_commit(session_factory, queue, timeout=0) is None
        assert time.monotonic() - start < 1.0

    def test_idle_dequeue_leaves_no_open_transaction(self, session_factory, queue):
        with session_factory() as session:
            assert queue.dequeue(session, 0.05) is None
            assert not session.in_transaction()


class TestConversationLifecycle:
    def test_close_open_conversation_sends_end_dialog(self, session_factory, queue):
        cid = _enqueue(session_factory, queue, {"n": 1})
        _dequeue_commit(session_factory, queue)

        with session_factory() as session:
            assert queue.close_conversation(session, cid) == ConversationState.CLOSING
            session.commit()

        received = _dequeue_commit(session_factory, queue)
        assert received.message_type == END_DIALOG
        assert received.is_end_dialog
        assert received.body is None

        with session_factory() as session:
            assert queue.close_conversation(session, cid) == ConversationState.CLOSED
            assert queue.get_conversation(session, cid).closed_at is not None
            session.commit()

    def test_close_is_idempotent_once_closed(self, session_factory, queue):
        cid = _enqueue(session_factory, queue, {"n": 1})
        with session_factory() as session:
            queue.close_conversation(session, cid)
            queue.close_conversation(session, cid)
            assert queue.close_conversation(session, cid) == ConversationState.CLOSED
            session.commit()

    def test_close_purges_pending_messages(self, session_factory, queue):
        cid = _enqueue(session_factory, queue, {"n": 1})
        _enqueue(session_factory, queue, {"n": 2}, conversation_id=cid)
        with session_factory() as session:
            queue.close_conversation(session, cid)
            messages = queue.messages_for(session, cid)
            assert [m.message_type for m in messages] == [END_DIALOG]
            session.commit()

    def test_close_without_end_dialog(self, session_factory, clock):
        queue = DurableQueue(clock=clock, poll_interval=0.01, end_dialog_on_close=False)
        cid = _enqueue(session_factory, queue, {"n": 1})
        with session_factory() as session:
            assert queue.close_conversation(session, cid) == ConversationState.CLOSED
            session.commit()
        assert _dequeue_commit(session_factory, queue) is None

    def test_send_on_closed_conversation_rejected(self, session_factory, clock):
        queue = DurableQueue(clock=clock, end_dialog_on_close=False)
        cid = _enqueue(session_factory, queue, {"n": 1})
        with session_factory() as session:
            queue.close_conversation(session, cid)
            with pytest.raises(ConversationClosedError):
                queue.enqueue(session, "Test", {"n": 2}, conversation_id=cid)

    def test_unknown_conversation(self, session, queue):
        with pytest.raises(ConversationNotFoundError):
            queue.close_conversation(session, uuid4())
        with pytest.raises(ConversationNotFoundError):
            queue.enqueue(session, "Test", None, conversation_id=uuid4())


class TestFailedAttempts:
    @pytest.fixture
    def queue(self, clock):
        return DurableQueue(clock=clock, poll_interval=0.01, max_delivery_attempts=2)

    @staticmethod
    def _fail_once(session_factory, queue):
        """Claim the head message, roll back, then count the failure."""
        with session_factory() as session:
            received = queue.dequeue(session, 0)
            session.rollback()
            dead_lettered = queue.record_failed_attempt(session, received)
            session.commit()
        return received, dead_lettered

    def test_attempts_are_counted_on_the_message(self, session_factory, queue):
        cid = _enqueue(session_factory, queue, {"n": 1})

        received, dead_lettered = self._fail_once(session_factory, queue)

        assert received.failed_attempts == 0
        assert not dead_lettered
        redelivered = _dequeue_commit(session_factory, queue)
        assert redelivered.conversation_id == cid
        assert redelivered.failed_attempts == 1

    def test_dead_lettered_at_the_limit(self, session_factory, queue):
        poisoned = _enqueue(session_factory, queue, {"n": 1})
        healthy = _enqueue(session_factory, queue, {"n": 2})

        assert self._fail_once(session_factory, queue)[1] is False
        assert self._fail_once(session_factory, queue)[1] is True

        with session_factory() as session:
            conversation = queue.get_conversation(session, poisoned)
            assert conversation.state_enum == ConversationState.CLOSED
            assert conversation.closed_at is not None
            assert queue.messages_for(session, poisoned) == []
        assert _dequeue_commit(session_factory, queue).conversation_id == healthy

    def test_message_already_completed_elsewhere(self, session_factory, queue):
        _enqueue(session_factory, queue, {"n": 1})
        received = _dequeue_commit(session_factory, queue)

        with session_factory() as session:
            assert queue.record_failed_attempt(session, received) is False
            session.commit()

    def test_limit_must_be_positive(self, clock):
        with pytest.raises(ValueError):
            DurableQueue(clock=clock, max_delivery_attempts=0)


class TestInspection:
    def test_pending_count_and_has_pending(self, session_factory, queue):
        with session_factory() as session:
            assert queue.pending_count(session) == 0
            assert not queue.has_pending(session)
        _enqueue(session_factory, queue, {"n": 1})
        _enqueue(session_factory, queue, {"n": 2})
        with session_factory() as session:
            assert queue.pending_count(session) == 2
            assert queue.has_pending(session)


class TestReceivedMessage:
    def _message(self, body, message_type=LOAN_APPLICATION_MESSAGE):
        return ReceivedMessage(uuid4(), message_type, body, 1, None)

    def test_application_id(self):
        app_id = uuid4()
        assert self._message({"application_id": str(app_id)}).application_id() == app_id

    @pytest.mark.parametrize("body", [None, {}, {"application_id": "not-a-uuid"}, {"other": 1}])
    def test_malformed_body(self, body):
        with pytest.raises(MalformedMessageError):
            self._message(body).application_id()

    def test_type_checks(self):
        assert self._message({}).is_application_message
        assert not self._message({}, "Mystery").is_application_message
        assert self._message(None, END_DIALOG).is_end_dialog
