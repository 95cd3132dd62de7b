"""Saga runner: an ordered list of steps, each with a failure policy.

The store has no transaction spanning a whole automation, so each
multi-step action is written as a saga:

    saga = Saga("create lead")
    saga.step("insert lead", insert_lead, on_error=ABORT)
    saga.step("follow-up tasks", create_tasks)          # CONTINUE by default
    saga.step("notify agent", notify)
    result = saga.run()

An ABORT step that raises stops the saga and re-raises as
PrimaryWriteError (later steps never run). A CONTINUE step that raises is
logged and recorded on the result; the saga moves on.
"""

import logging

from app.services.errors import (
    NotFoundError,
    OwnershipError,
    PrimaryWriteError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ABORT = "abort"
CONTINUE = "continue"

# Raised as-is from an ABORT step: the caller's input was wrong,
# nothing was written.
PASSTHROUGH_ERRORS = (ValidationError, NotFoundError, OwnershipError)


class Step:
    def __init__(self, name, execute, on_error=CONTINUE):
        if on_error not in (ABORT, CONTINUE):
            raise ValueError(f"Invalid on_error '{on_error}'.")
        self.name = name
        self.execute = execute
        self.on_error = on_error

    def __repr__(self):
        return f"<Step {self.name} ({self.on_error})>"


class SagaResult:
    def __init__(self, name):
        self.name = name
        self.results = {}
        self.failures = []  # list of (step_name, exception)

    @property
    def ok(self):
        return not self.failures

    @property
    def failed_steps(self):
        return [name for name, _ in self.failures]

    def __getitem__(self, step_name):
        return self.results[step_name]

    def get(self, step_name, default=None):
        return self.results.get(step_name, default)


class Saga:
    def __init__(self, name):
        self.name = name
        self.steps = []

    def step(self, name, execute, on_error=CONTINUE):
        self.steps.append(Step(name, execute, on_error))
        return self

    def run(self):
        result = SagaResult(self.name)
        for step in self.steps:
            try:
                result.results[step.name] = step.execute()
            except PASSTHROUGH_ERRORS as e:
                if step.on_error == ABORT:
                    raise
                logger.warning(f"[{self.name}] step '{step.name}' skipped: {e}")
                result.failures.append((step.name, e))
            except Exception as e:
                if step.on_error == ABORT:
                    logger.error(f"[{self.name}] step '{step.name}' failed, aborting: {e}")
                    raise PrimaryWriteError(self.name, e) from e
                logger.warning(f"[{self.name}] step '{step.name}' failed, continuing: {e}")
                result.failures.append((step.name, e))
        return result
