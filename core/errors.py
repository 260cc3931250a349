"""
Error hierarchies for the engine.

Step errors are raised inside step handlers and captured by the Step
Executor as a failed StepOutcome; they never escape ``execute()``.

Engine errors are raised by the dispatcher and state machine for
caller mistakes (unknown ids, illegal operator transitions) and are
mapped to HTTP status codes by the API layer.
"""
from __future__ import annotations

from typing import Optional


# ══════════════════════════════════════════════════════════════
#  STEP ERRORS
# ══════════════════════════════════════════════════════════════

class StepError(Exception):
    """Base exception for a single step's business failure."""

    kind = "StepError"

    def __init__(self, message: str, step_type: str = ""):
        self.step_type = step_type
        super().__init__(message)


class ParameterError(StepError):
    """Required step/condition configuration is missing or invalid."""
    kind = "ParameterError"


class MissingParameter(ParameterError):
    kind = "MissingParameter"


class UnknownConditionType(ParameterError):
    kind = "UnknownConditionType"


class NotFoundError(StepError):
    """A referenced template/tag/menu id does not exist."""
    kind = "NotFoundError"


class TransportError(StepError):
    """The remote was never reached (network, timeout, DNS)."""
    kind = "TransportError"


class ResponseError(StepError):
    """The remote answered with a status outside the accepted range."""
    kind = "ResponseError"

    def __init__(self, message: str, status_code: Optional[int] = None, step_type: str = ""):
        self.status_code = status_code
        super().__init__(message, step_type)


# ══════════════════════════════════════════════════════════════
#  ENGINE ERRORS
# ══════════════════════════════════════════════════════════════

class EngineError(Exception):
    """Base exception for dispatcher / state machine caller errors."""


class ScenarioNotFound(EngineError):
    def __init__(self, scenario_id: str):
        self.scenario_id = scenario_id
        super().__init__(f"scenario id={scenario_id} not found")


class ScenarioDisabled(EngineError):
    def __init__(self, scenario_id: str):
        self.scenario_id = scenario_id
        super().__init__(f"scenario id={scenario_id} is disabled")


class EnrollmentNotFound(EngineError):
    def __init__(self, enrollment_id: str):
        self.enrollment_id = enrollment_id
        super().__init__(f"enrollment id={enrollment_id} not found")


class InvalidTransition(EngineError):
    def __init__(self, enrollment_id: str, from_status: str, action: str):
        self.enrollment_id = enrollment_id
        self.from_status = from_status
        self.action = action
        super().__init__(
            f"cannot {action} enrollment id={enrollment_id} in status '{from_status}'"
        )


class TransitionConflict(EngineError):
    def __init__(self, enrollment_id: str, action: str):
        self.enrollment_id = enrollment_id
        self.action = action
        super().__init__(
            f"could not {action} enrollment id={enrollment_id}: modified concurrently"
        )
