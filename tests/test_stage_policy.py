"""
Unit tests for stage transition policy.

Tests noop detection, the warnings attached to corrective moves and the
blocking of moves the catalog refuses.
"""

import pytest

from models.errors import InvalidStage
from utils.stage_policy import TransitionResult, validate_transition


class TestTransitionResult:
    """Tests for TransitionResult class."""

    def test_defaults(self):
        result = TransitionResult("Offer", allowed=True)
        assert result.is_noop is False
        assert result.error_message is None
        assert result.warnings == []

    def test_allowed_result_does_not_raise(self):
        TransitionResult("Offer", allowed=True).raise_if_blocked()

    def test_blocked_result_raises_invalid_stage(self):
        result = TransitionResult("Offer", allowed=False, error_message="not here")
        with pytest.raises(InvalidStage) as exc_info:
            result.raise_if_blocked()
        assert exc_info.value.stage == "Offer"
        assert exc_info.value.message == "not here"


class TestValidateTransition:
    """Tests for validate_transition."""

    def test_same_stage_is_noop(self, schema):
        result = validate_transition(schema, "Interview", "Interview")
        assert result.allowed is True
        assert result.is_noop is True

    def test_forward_move_has_no_warnings(self, schema):
        result = validate_transition(schema, "Applied", "Offer")
        assert result.allowed is True
        assert result.is_noop is False
        assert result.warnings == []

    def test_backward_move_allowed_with_demotion_warning(self, schema):
        result = validate_transition(schema, "Phone Screen", "Interested")
        assert result.allowed is True
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("demotion")

    def test_exit_move_has_no_warnings(self, schema):
        result = validate_transition(schema, "Interview", "Rejected")
        assert result.allowed is True
        assert result.warnings == []

    def test_leaving_exit_stage_is_reopen(self, schema):
        result = validate_transition(schema, "Rejected", "Applied")
        assert result.allowed is True
        assert result.warnings[0].startswith("reopened")

    def test_between_exit_stages(self, schema):
        result = validate_transition(schema, "Rejected", "Withdrawn")
        assert result.allowed is True
        assert result.warnings == []

    def test_unknown_stage_not_allowed(self, schema):
        result = validate_transition(schema, "Applied", "Ghosted")
        assert result.allowed is False
        assert "Ghosted" in result.error_message
