class NotFoundError(LookupError):
    def __init__(self, identifier: str, kind: str = "content") -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.identifier = identifier
        self.kind = kind


class MalformedIdentifier(ValueError):
    def __init__(self, value: str, reason: str) -> None:
        super().__init__(f"malformed identifier {value!r}: {reason}")
        self.value = value
        self.reason = reason


class ForwardingError(RuntimeError):
    def __init__(self, message: str, code: str = "TELEGRAM_ERROR", retryable: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class FileTypeMismatch(ForwardingError):
    """Document transport refused the file; the video transport may accept it."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="FILE_TYPE_MISMATCH", retryable=False)
