from enum import Enum


class FailureKind(str, Enum):
    """What the user should do about a failure.

    TRANSIENT    still waiting, keep polling (never shown as an error)
    KNOWN_BAD    the backend gave a definitive no: start a new attempt
    UNKNOWN      budget ran out, true state unknown: retry / reload later
    BROKEN       the backend misbehaved: contact support
    FATAL_LOCAL  a correlation key is missing: nothing was sent
    RESOURCE     camera unavailable or denied: grant permission or type
                 the code in
    """
    TRANSIENT = "transient"
    KNOWN_BAD = "known_bad"
    UNKNOWN = "unknown"
    BROKEN = "broken"
    FATAL_LOCAL = "fatal_local"
    RESOURCE = "resource"


class TictifyError(Exception):
    kind: FailureKind = FailureKind.BROKEN


class MalformedResponse(TictifyError):
    kind = FailureKind.BROKEN


class EventNotSelected(TictifyError):
    kind = FailureKind.FATAL_LOCAL

    def __init__(self, msg: str = "Select an event before scanning tickets."):
        super().__init__(msg)


class SessionExpired(TictifyError):
    kind = FailureKind.FATAL_LOCAL

    def __init__(self, msg: str = "Your session has expired. Log in again."):
        super().__init__(msg)


class CameraUnavailable(TictifyError):
    kind = FailureKind.RESOURCE


class CameraBusy(CameraUnavailable):
    pass
