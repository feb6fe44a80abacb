"""Error taxonomy for the debugging supervisor.

Each error kind maps to one handling rule:
- ConfigError: fatal at startup
- ProviderError: retried locally when ``retryable``, otherwise terminal for that loop
- ParseError: non-fatal, the offending tag is skipped
- ToolError / PolicyError: non-fatal, fed back to the model as corrective context
- ProcessError: an investigator crashed or timed out, no report produced
"""


class BugsquadError(Exception):
    """Base class for all bugsquad errors."""

    pass


class ConfigError(BugsquadError):
    """Configuration is missing or invalid. Aborts startup."""

    pass


# --- Provider errors (LLM adapter) ---


class ProviderError(BugsquadError):
    """LLM provider call failed."""

    retryable: bool = False

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AuthError(ProviderError):
    """Provider rejected the credential (401/403)."""

    pass


class RateLimitError(ProviderError):
    """Provider rate limit hit (429)."""

    pass


class TransientNetworkError(ProviderError):
    """Timeout, connection failure or 5xx. Safe to retry."""

    retryable = True


class MalformedResponseError(ProviderError):
    """Provider answered but the body is unusable (bad JSON, no text). Safe to retry."""

    retryable = True


class FatalConfigError(ProviderError):
    """Provider cannot be called at all (missing credential, unknown provider)."""

    pass


# --- Loop-level errors ---


class ParseError(BugsquadError):
    """A tag in model output could not be parsed."""

    pass


class ToolError(BugsquadError):
    """A tool call failed. The message is fed back to the model."""

    pass


class PolicyError(ToolError):
    """A tool call violates the caller's policy (e.g. investigator creating a branch)."""

    pass


class ProcessError(BugsquadError):
    """Investigator process failed to start, crashed or timed out."""

    pass


class BranchError(BugsquadError):
    """Branch allocation or checkout failed.

    Always fatal for the spawn that needed it: every investigator assumes an
    exclusive checkout.
    """

    pass


class ReportExistsError(BugsquadError):
    """A report was already written for this investigator instance."""

    pass


class SessionNotFoundError(BugsquadError):
    """No session with this id exists in the data directory."""

    pass
