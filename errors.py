"""
PowGate error taxonomy.

Every error carries a short ``reason`` code. Servers log the reason and
answer clients with a generic denial.
"""


class GateError(Exception):
    reason = "gate_error"

    def __init__(self, message: str = "", reason: str = None):
        if reason:
            self.reason = reason
        super().__init__(message or self.reason)


class SignalDegraded(GateError):
    """A fingerprint signal was unavailable; its sentinel value was substituted."""
    reason = "signal_degraded"

    def __init__(self, signal: str, cause: Exception = None):
        self.signal = signal
        self.cause = cause
        super().__init__(f"signal {signal} degraded: {cause!r}")


class ChallengeIssueError(GateError):
    reason = "issuance_failed"


class UnknownNonce(GateError):
    reason = "challenge_not_found"


class ChallengeExpired(UnknownNonce):
    reason = "challenge_expired"


class AlreadyConsumed(GateError):
    reason = "solution_already_used"


class ProofIterationExhausted(GateError):
    reason = "iterations_exhausted"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"no satisfying iteration within {attempts} attempts")


class ProofInvalid(GateError):
    reason = "invalid_proof"


class InteractiveAnswerIncorrect(GateError):
    reason = "incorrect_answer"


class UnknownSession(GateError):
    reason = "session_not_found"


class VerificationFailed(GateError):
    reason = "verification_failed"
