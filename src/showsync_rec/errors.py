"""Error taxonomy surfaced by the recommendation core."""


class RecommendationError(Exception):
    code: str = "recommendation_error"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code


class NotFoundError(RecommendationError):
    """Unknown user, media, group or recommendation id."""
    code = "not_found"


class InvalidInputError(RecommendationError, ValueError):
    """Out-of-range rating or malformed parameter."""
    code = "invalid_input"


class ForbiddenError(RecommendationError):
    """Acting on a recommendation that belongs to someone else."""
    code = "forbidden"


class TransientComputeError(RecommendationError):
    code = "transient_compute_failure"


class ConfigurationError(RecommendationError, ValueError):
    code = "configuration_error"
