"""Tests for the enrichment state machine."""

import pytest

from blockmem.processing_state import MAX_ERROR_LENGTH, ProcessingStateStore


@pytest.fixture
def states(db):
    return ProcessingStateStore(db)


class TestEnqueue:
    """Tests for enqueue transitions."""

    def test_new_row_pending(self, states):
        states.enqueue("user_block", "b1", "h1")
        state = states.get("user_block", "b1")
        assert state.state == "pending"
        assert state.attempts == 0
        assert state.input_hash == "h1"

    def test_processed_same_hash_stays_processed(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        states.complete("user_block", "b1", "h1")
        states.enqueue("user_block", "b1", "h1")
        assert states.get("user_block", "b1").state == "processed"

    def test_processed_new_hash_goes_pending(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        states.complete("user_block", "b1", "h1")
        states.enqueue("user_block", "b1", "h2")
        state = states.get("user_block", "b1")
        assert state.state == "pending"
        assert state.attempts == 0

    def test_error_same_hash_keeps_attempts(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        states.fail("user_block", "b1", "boom")
        states.enqueue("user_block", "b1", "h1")
        state = states.get("user_block", "b1")
        assert state.state == "pending"
        assert state.attempts == 1

    def test_processing_keeps_claim(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        states.enqueue("user_block", "b1", "h2")
        state = states.get("user_block", "b1")
        assert state.state == "processing"
        assert state.input_hash == "h2"


class TestClaimAndComplete:
    """Tests for claiming, completing and failing."""

    def test_claim_marks_processing(self, states):
        for i in range(3):
            states.enqueue("user_block", f"b{i}", f"h{i}")
        states.enqueue("artifact", "a1", "x")

        claimed = states.claim_batch("user_block", 2)
        assert [c.subject_id for c in claimed] == ["b0", "b1"]
        assert all(c.state == "processing" and c.attempts == 1 for c in claimed)
        assert states.get("user_block", "b0").claimed_at is not None
        assert [c.subject_id for c in states.claim_batch("user_block", 10)] == ["b2"]
        assert states.claim_batch("user_block", 10) == []

    def test_complete_with_stale_hash_requeues(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        states.enqueue("user_block", "b1", "h2")
        assert states.complete("user_block", "b1", "h1") == "pending"
        state = states.get("user_block", "b1")
        assert state.last_processed_hash == "h1"
        assert state.processed_at is not None

    def test_fail_truncates_error(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        states.fail("user_block", "b1", "x" * 5000)
        state = states.get("user_block", "b1")
        assert state.state == "error"
        assert len(state.last_error) == MAX_ERROR_LENGTH
        assert state.claimed_at is None

    def test_error_rows_are_claimed_again(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        states.fail("user_block", "b1", "boom")
        claimed = states.claim_batch("user_block", 10)
        assert claimed[0].attempts == 2
        assert states.get("user_block", "b1").last_error is None

    def test_max_attempts_skips(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        states.fail("user_block", "b1", "boom")
        assert states.claim_batch("user_block", 10, max_attempts=1) == []

    def test_stale_claim_recovered(self, states, db):
        states.enqueue("user_block", "b1", "h1")
        states.claim_batch("user_block", 10)
        db.execute(
            "UPDATE processing_state SET claimed_at = '2020-01-01T00:00:00' WHERE subject_id = 'b1'"
        )
        claimed = states.claim_batch("user_block", 10)
        assert [c.subject_id for c in claimed] == ["b1"]
        assert claimed[0].attempts == 2

    def test_stats(self, states):
        states.enqueue("user_block", "b1", "h1")
        states.enqueue("user_block", "b2", "h2")
        states.enqueue("artifact", "a1", "x")
        states.claim_batch("artifact", 10)
        assert states.stats() == {
            "user_block": {"pending": 2},
            "artifact": {"processing": 1},
        }
