"""
repvote/tests/test_factory.py

Unit tests for poll creation and discovery.
"""

import pytest

from repvote.errors import InvalidPollConfig, PollNotFound, ValidationError
from repvote.protocol.factory import PollFactory, generate_poll_id, validate_poll_config
from repvote.protocol.notifications import PollCreated

from conftest import DAY


class TestValidatePollConfig:
    """Test poll parameter bounds."""

    def test_valid(self):
        assert validate_poll_config("Q?", ["A", "B"], DAY, 2) == ["A", "B"]
        assert validate_poll_config("Q?", [str(i) for i in range(10)], 30 * DAY, 20)

    def test_blank_options_dropped(self):
        assert validate_poll_config("Q?", ["A", "", "  ", " B "], DAY, 10) == ["A", "B"]
        with pytest.raises(InvalidPollConfig):
            validate_poll_config("Q?", ["A", " "], DAY, 10)

    @pytest.mark.parametrize("question,options,duration,cap", [
        ("", ["A", "B"], DAY, 10),
        ("   ", ["A", "B"], DAY, 10),
        ("x" * 201, ["A", "B"], DAY, 10),
        ("Q?", ["A"], DAY, 10),
        ("Q?", [str(i) for i in range(11)], DAY, 10),
        ("Q?", ["A", "B"], DAY - 1, 10),
        ("Q?", ["A", "B"], 30 * DAY + 1, 10),
        ("Q?", ["A", "B"], DAY, 1),
        ("Q?", ["A", "B"], DAY, 21),
        ("Q?", ["A", "B"], float(DAY), 10),
    ])
    def test_out_of_bounds(self, question, options, duration, cap):
        with pytest.raises(InvalidPollConfig) as exc_info:
            validate_poll_config(question, options, duration, cap)
        assert isinstance(exc_info.value, ValidationError)

    def test_question_at_limit(self):
        validate_poll_config("x" * 200, ["A", "B"], DAY, 10)


class TestPollFactory:
    """Test PollFactory."""

    def test_create_poll(self, factory, clock):
        poll_id = factory.create_poll("Ship it?", ["Yes", "No"], 7 * DAY, 10, creator="alice")

        assert len(poll_id) == 16
        ledger = factory.get_poll(poll_id)
        assert ledger.question == "Ship it?"
        assert ledger.end_time == clock.now + 7 * DAY
        assert ledger.max_weight_cap == 10
        assert factory.get_poll_count() == 1

    def test_poll_ids_unique(self, factory):
        first = factory.create_poll("Same?", ["A", "B"], DAY, 10)
        second = factory.create_poll("Same?", ["A", "B"], DAY, 10)
        assert first != second

    def test_generate_poll_id_deterministic(self):
        assert generate_poll_id("Q", "a", 1, 0) == generate_poll_id("Q", "a", 1, 0)
        assert generate_poll_id("Q", "a", 1, 0) != generate_poll_id("Q", "a", 1, 1)

    def test_unknown_poll(self, factory):
        with pytest.raises(PollNotFound):
            factory.get_poll("missing")
        with pytest.raises(PollNotFound):
            factory.get_poll_info("missing")

    def test_recent_polls_newest_first(self, factory):
        ids = [factory.create_poll(f"Q{i}?", ["A", "B"], DAY, 10) for i in range(4)]

        assert factory.get_recent_polls(2) == [ids[3], ids[2]]
        assert factory.get_recent_polls(10) == list(reversed(ids))
        assert factory.get_recent_polls(0) == []

    def test_recent_index_bounded(self, oracle, token, clock):
        factory = PollFactory(oracle, token, clock=clock, recent_limit=3)
        ids = [factory.create_poll(f"Q{i}?", ["A", "B"], DAY, 10) for i in range(5)]

        assert factory.get_recent_polls(10) == [ids[4], ids[3], ids[2]]
        assert factory.get_poll_count() == 5
        assert factory.get_poll(ids[0]).question == "Q0?"

    def test_poll_info(self, factory):
        poll_id = factory.create_poll("Ship it?", ["Yes", "No"], DAY, 10)
        info = factory.get_poll_info(poll_id)

        assert info.poll_id == poll_id
        assert info.options == ["Yes", "No"]
        assert info.is_active is True
        assert info.total_voters == 0

    @pytest.mark.trio
    async def test_publishes_poll_created(self, factory, hub):
        receive_channel = hub.subscribe()
        poll_id = factory.create_poll("Ship it?", ["Yes", "No"], DAY, 10, creator="bob")

        event = receive_channel.receive_nowait()
        assert isinstance(event, PollCreated)
        assert event.poll_id == poll_id
        assert event.creator == "bob"
        assert event.to_dict()["type"] == "poll_created"

    def test_invalid_config_creates_nothing(self, factory):
        with pytest.raises(InvalidPollConfig):
            factory.create_poll("Q?", ["A"], DAY, 10)
        assert factory.get_poll_count() == 0
