from typing import List, Optional


class BridgeError(Exception):
    """Base for everything the turn engine recovers into a user-facing message."""

    user_message = "❌ Something went wrong, please try again."


class BackendUnavailable(BridgeError):
    user_message = "❌ The agent backend is unavailable, please try again later."


class TurnTimeout(BridgeError):
    """The synchronous wait window elapsed. Not a failure: the turn continues in the background."""

    user_message = "⏳ Request sent, the agent is still working on it..."


class SubmissionFailure(BridgeError):
    user_message = "⚠️ Failed to submit your answers, please try again."

    def __init__(self, request_id: str, answers: Optional[List[List[str]]] = None):
        super().__init__(f"question reply rejected for request {request_id}")
        self.request_id = request_id
        self.answers = answers or []


class UnrecognizedAnswer(BridgeError):
    user_message = "Answer not recognized. Reply with an option number or letter, or type your own answer."


class PersistenceFailure(BridgeError):
    user_message = "⚠️ Could not save conversation state."
