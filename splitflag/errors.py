from typing import Optional


class SplitFlagError(Exception):
    """Base class for every error raised by the library."""

    code = "SPLITFLAG_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return super().__str__() or self.code


# Datafile / config

class InvalidDatafileError(SplitFlagError):
    code = "INVALID_DATAFILE"


class UnsupportedDatafileVersionError(InvalidDatafileError):
    code = "UNSUPPORTED_DATAFILE_VERSION"

    def __init__(self, version) -> None:
        super().__init__(f"datafile version {version!r} is not supported")
        self.version = version


class InvalidIntegrationError(InvalidDatafileError):
    code = "INVALID_INTEGRATION"


class NotFoundError(SplitFlagError, LookupError):
    code = "NOT_FOUND"

    def __init__(self, kind: str, key) -> None:
        super().__init__(f"{kind} {key!r} not found")
        self.kind = kind
        self.key = key


class InvalidVersionFormatError(SplitFlagError, ValueError):
    code = "INVALID_VERSION_FORMAT"


# Condition evaluation, always folded into a null result by the condition tree

class ConditionEvaluationError(SplitFlagError):
    code = "CONDITION_EVALUATION"


class UnsupportedConditionValueError(ConditionEvaluationError):
    code = "UNSUPPORTED_CONDITION_VALUE"


class InvalidAttributeTypeError(ConditionEvaluationError):
    code = "INVALID_ATTRIBUTE_TYPE"


class MissingAttributeError(ConditionEvaluationError):
    code = "MISSING_ATTRIBUTE"


# ODP

class InvalidSegmentIdentifierError(SplitFlagError):
    code = "INVALID_SEGMENT_IDENTIFIER"

    def __init__(self) -> None:
        super().__init__("audience segments fetch failed (invalid identifier)")


class FetchSegmentsFailedError(SplitFlagError):
    code = "FETCH_SEGMENTS_FAILED"

    def __init__(self, reason: str) -> None:
        super().__init__(f"audience segments fetch failed ({reason})")
        self.reason = reason


class OdpNotIntegratedError(SplitFlagError):
    code = "ODP_NOT_INTEGRATED"

    def __init__(self) -> None:
        super().__init__("ODP not integrated")


class OdpInvalidActionError(SplitFlagError, ValueError):
    code = "ODP_INVALID_ACTION"

    def __init__(self) -> None:
        super().__init__("ODP action is not valid (cannot be empty)")


class OdpInvalidDataError(SplitFlagError, ValueError):
    code = "ODP_INVALID_DATA"

    def __init__(self) -> None:
        super().__init__("ODP data is not valid")


class QueueFullError(SplitFlagError):
    code = "QUEUE_FULL"


class EventDispatchError(SplitFlagError):
    code = "EVENT_DISPATCH_FAILED"

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class OdpEventFailedError(EventDispatchError):
    code = "ODP_EVENT_FAILED"

    def __init__(self, reason: str, retryable: bool = False) -> None:
        super().__init__(f"ODP event send failed ({reason})", retryable)
        self.reason = reason


class OdpNotEnabledError(SplitFlagError):
    code = "ODP_NOT_ENABLED"

    def __init__(self) -> None:
        super().__init__("ODP is not enabled")
