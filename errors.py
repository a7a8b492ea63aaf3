"""Typed error taxonomy for the team orchestration engine.

Every failure the core can produce is one of these classes. They are
surfaced to the caller as exceptions and never downgraded to log lines.

``retryable`` marks the per-attempt failures (reasoning call failed or
returned something unparseable). The scheduler consumes an attempt for
those and tries again while the attempt cap allows; everything else is a
caller or programming error and is not retried.
"""


class AgentError(Exception):
    """Base error for all orchestration operations."""

    retryable: bool = False


class LlmError(AgentError):
    """A call to the reasoning capability failed."""

    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(f"LLM API error: {message}")


class InvalidTeamSize(AgentError):
    """Team formation produced fewer than 3 or more than 5 workers."""

    def __init__(self, size: int) -> None:
        self.size = size
        super().__init__(f"Invalid team size: {size} (must be 3-5 workers)")


class JsonError(AgentError):
    """A structured response could not be parsed into the expected schema."""

    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(f"JSON parsing error: {message}")


class AgentNotFound(AgentError):
    """Reference to an unknown worker, task or team."""

    def __init__(self, kind: str, identity: str) -> None:
        self.kind = kind
        self.identity = identity
        super().__init__(f"Agent not found: {kind} {identity}")


class TaskExecutionFailed(AgentError):
    """Execution without a valid assignment, or assignment to a busy worker."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Task execution failed: {message}")


class InvalidStateTransition(AgentError):
    """A status change that is not in the allowed transition table."""

    def __init__(self, entity: str, from_state: str, to_state: str) -> None:
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition for {entity} from {from_state} to {to_state}"
        )


class MessageDeliveryFailed(AgentError):
    """A point-to-point message was addressed to an unknown identity."""

    def __init__(self, destination: str) -> None:
        self.destination = destination
        super().__init__(f"Message delivery failed: unknown destination {destination}")


class ConfigError(AgentError):
    """Invalid configuration, e.g. a malformed prompt template."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Configuration error: {message}")
