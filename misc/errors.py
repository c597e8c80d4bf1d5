from __future__ import annotations


class BotError(RuntimeError):
    """Base for errors that are reported back to the caller.

    `code` is stable and machine-friendly; `user_message()` is what a chat
    surface may show verbatim.
    """

    code = "error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = str(code)

    def user_message(self) -> str:
        return str(self)


class NotFound(BotError):
    code = "not_found"


class Forbidden(BotError):
    code = "forbidden"

    def __init__(self, message: str, *, capability: str | None = None):
        super().__init__(message)
        self.capability = capability


class InvalidSchedule(BotError):
    code = "invalid_schedule"


class InvalidInput(BotError):
    code = "invalid_input"


class StorageFailure(BotError):
    code = "storage_failure"

    def user_message(self) -> str:
        return "Something went wrong while saving or loading data. Please try again later."


class UpstreamFailure(BotError):
    code = "upstream_failure"

    def user_message(self) -> str:
        return "The assistant is unavailable right now. Please try again."


class RequestCancelled(BotError):
    code = "cancelled"

    def user_message(self) -> str:
        return "Request cancelled."


def storage_failure(operation: str, exc: BaseException) -> StorageFailure:
    print(f"[DB] {operation} failed: {type(exc).__name__}: {exc}")
    return StorageFailure(f"{operation} failed: {exc}")
