from __future__ import annotations

import pytest

from agentforge.core.errors import ConstraintViolationError
from agentforge.domain.enums import (
    ANALYSIS_TERMINAL_STATUSES,
    ANALYSIS_TRANSITIONS,
    SEVERITIES,
    VIOLATION_RESOLUTION_STATUSES,
    VIOLATION_TRANSITIONS,
    check_in,
    require_member,
)


def test_require_member_accepts_known_values() -> None:
    assert require_member("critical", SEVERITIES, field="severity") == "critical"


def test_require_member_rejects_unknown_values_without_coercion() -> None:
    with pytest.raises(ConstraintViolationError) as excinfo:
        require_member("CRITICAL", SEVERITIES, field="severity")
    assert excinfo.value.kind == "enum"
    assert excinfo.value.field == "severity"


def test_check_in_renders_closed_enumeration() -> None:
    assert check_in("severity", ("low", "high")) == "severity IN ('low', 'high')"


def test_terminal_analysis_statuses_have_no_exits() -> None:
    for status in ANALYSIS_TERMINAL_STATUSES:
        assert ANALYSIS_TRANSITIONS[status] == ()
    assert "completed" in ANALYSIS_TRANSITIONS["in_progress"]
    assert "completed" not in ANALYSIS_TRANSITIONS["pending"]


def test_closed_violations_can_only_reopen() -> None:
    for status in VIOLATION_RESOLUTION_STATUSES:
        assert VIOLATION_TRANSITIONS[status] == ("open",)
    assert set(VIOLATION_RESOLUTION_STATUSES) <= set(VIOLATION_TRANSITIONS["open"])
