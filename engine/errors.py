"""Error taxonomy shared by the probe, selection and download layers."""

from __future__ import annotations

import re

AUTH_HELP_MESSAGE = (
    "YouTube requires authentication. Configure yt-dlp cookies "
    "(set YT_DLP_COOKIES_FROM_BROWSER or YT_DLP_COOKIES_FILE)."
)


class TubefetchError(Exception):
    """Base class; ``status_code`` is the HTTP status the API layer maps it to."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        super().__init__(message or self.code)
        self.detail = detail


class MalformedInputError(TubefetchError):
    """Unparseable video reference; rejected before any probe is made."""

    status_code = 400
    code = "malformed_input"


class ProbeUnavailableError(TubefetchError):
    """Metadata tool failed, timed out or returned something that is not JSON."""

    status_code = 500
    code = "probe_unavailable"


class AuthenticationRequiredError(TubefetchError):
    """Provider demands a signed-in session; retrying without cookies will not help."""

    status_code = 403
    code = "authentication_required"

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        super().__init__(message or AUTH_HELP_MESSAGE, detail=detail)


class StaleSelectorError(TubefetchError):
    """A selector built from an earlier probe no longer resolves."""

    status_code = 409
    code = "stale_selector"

    def __init__(self, selector: str, missing: list[str] | None = None, *, reason: str | None = None) -> None:
        self.selector = selector
        self.missing = list(missing or [])
        self.reason = reason
        super().__init__(f"selector {selector!r} is stale (missing: {', '.join(self.missing) or 'unknown'})")


class NoCompatibleAudioError(TubefetchError):
    """A video-only stream has no eligible audio partner."""

    status_code = 404
    code = "no_compatible_audio"


class TranscodeFailedError(TubefetchError):
    """Every strategy of the fallback ladder failed."""

    status_code = 500
    code = "transcode_failed"


class ClientCancelledError(TubefetchError):
    """The client went away mid-request. Normal termination, not a failure."""

    status_code = 499
    code = "client_cancelled"


_AUTH_SIGNAL_RE = re.compile(r"sign in to confirm", re.IGNORECASE)


def requires_login(output) -> bool:
    """True when provider output carries the "Sign in to confirm ..." gate."""
    return isinstance(output, str) and bool(_AUTH_SIGNAL_RE.search(output))
