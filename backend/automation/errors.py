"""Exception types raised inside the automation engine."""


class AutomationError(Exception):
    """Base class for automation engine failures."""


class ChangeFeedUnavailable(AutomationError):
    """The store topology cannot supply ordered change feeds."""


class MalformedChangeEvent(AutomationError):
    """A raw change record could not be normalized."""


class InvalidTransition(AutomationError):
    """A WorkflowTracking status change outside the stage lifecycle."""

    def __init__(self, stage: str, from_status: str, to_status: str):
        super().__init__(f"{stage}: {from_status} -> {to_status} is not a valid transition")
        self.stage = stage
        self.from_status = from_status
        self.to_status = to_status


class UnknownAutomation(AutomationError):
    """A direct trigger named an automation kind that does not exist."""


class ReactionFailed(AutomationError):
    """A queued reaction ran and failed; the task is retried."""
