from typing import Optional


class ChipotleError(Exception):
    """Base class for every failure surfaced by the client."""

    code = "CHIPOTLE_ERROR"


class TwoFactorRequired(ChipotleError):
    """The account asked for a two-step verification code. Needs a human."""

    code = "TWO_FACTOR_REQUIRED"

    def __init__(self, message: str = "Two factor authentication required"):
        super().__init__(message)


class LoginExhausted(ChipotleError):
    code = "LOGIN_EXHAUSTED"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Failed login after {attempts} attempts")


class LoginRejected(ChipotleError):
    code = "LOGIN_REJECTED"

    def __init__(self, status: int, reason: str = ""):
        self.status = status
        message = f"Login failed with code {status}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class TransportFailure(ChipotleError):
    """A REST call could not be made or came back with a non-success status."""

    code = "TRANSPORT_FAILURE"

    def __init__(self, endpoint: str, status: Optional[int] = None, detail: str = ""):
        self.endpoint = endpoint
        self.status = status
        message = endpoint
        if status is not None:
            message += f" returned {status}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class NotAuthenticated(TransportFailure):
    code = "NOT_AUTHENTICATED"

    def __init__(self, endpoint: str):
        super().__init__(endpoint, detail="no authenticated client, call login first")


class StaleConcurrencyToken(ChipotleError):
    """The order service refused the If-Match etag (HTTP 412)."""

    code = "STALE_ETAG"

    def __init__(self, endpoint: str, etag: Optional[str]):
        self.endpoint = endpoint
        self.etag = etag
        super().__init__(f"{endpoint} rejected etag {etag!r} as stale")


class UISelectorNotFound(ChipotleError):
    code = "SELECTOR_NOT_FOUND"

    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"Could not find element {selector}")


class InvalidTimeSlot(ChipotleError):
    code = "INVALID_TIME_SLOT"

    def __init__(self, slot: str):
        self.slot = slot
        super().__init__(f"Invalid time: no selectable pickup slot {slot!r}")


class MirrorStateMissing(ChipotleError):
    code = "MIRROR_STATE_MISSING"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No local storage found under {key!r}, open the site first")
