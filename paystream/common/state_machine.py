"""Status transition tables for payments and for creation attempts."""

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"SUCCESS", "FAILED"},
    "SUCCESS": set(),
    "FAILED": set(),
}

# One creation attempt inside the workflow. Terminal states have no exits.
ATTEMPT_TRANSITIONS: dict[str, set[str]] = {
    "STARTED": {"VALIDATING", "IDEMPOTENT_HIT", "FAILED"},
    "VALIDATING": {"VALIDATED", "FAILED"},
    "VALIDATED": {"IDEMPOTENT_HIT", "PERSISTING", "FAILED"},
    "PERSISTING": {"PUBLISHING", "FAILED"},
    "PUBLISHING": {"RECORDING_KEY", "FAILED"},
    "RECORDING_KEY": {"COMPLETED", "FAILED"},
    "IDEMPOTENT_HIT": set(),
    "COMPLETED": set(),
    "FAILED": set(),
}


def validate_transition(current: str, new: str, table: dict[str, set[str]] = PAYMENT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the given table."""

    if new not in table.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_terminal(status: str, table: dict[str, set[str]] = PAYMENT_TRANSITIONS) -> bool:
    return not table.get(status, set())


class AttemptTracker:
    """Tracks one creation attempt through `ATTEMPT_TRANSITIONS`."""

    def __init__(self) -> None:
        self.state = "STARTED"
        self.history: list[str] = ["STARTED"]

    def advance(self, new: str) -> None:
        validate_transition(self.state, new, ATTEMPT_TRANSITIONS)
        self.state = new
        self.history.append(new)

    def fail(self) -> None:
        if not is_terminal(self.state, ATTEMPT_TRANSITIONS):
            self.advance("FAILED")
