"""Error types raised inside psp-router.

None of these escape :meth:`psp_router.router.PspRouter.decide`; they mark the
boundaries where the router falls back or resets state.
"""


class PspRouterError(Exception):
    """Base class for routing errors."""


class ScorerUnavailable(PspRouterError):
    """A scorer could not produce a decision for this call."""


class ReasonerUnavailable(ScorerUnavailable):
    """The external reasoner timed out, failed, or could not be reached."""


class InvalidReasonerResponse(ReasonerUnavailable):
    """The reasoner answered, but the answer failed validation."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class StatisticsCorruption(PspRouterError):
    """A bandit statistic was found in an impossible state."""

    def __init__(self, segment_key: str, arm: str, detail: str):
        super().__init__(f"{segment_key}/{arm}: {detail}")
        self.segment_key = segment_key
        self.arm = arm
        self.detail = detail
