class WidgetError(Exception):
    """Base class for failures the widget converts into a no-op, rollback or notice."""


class RemoteCallError(WidgetError):
    pass


class StoreError(WidgetError):
    pass


class UploadError(WidgetError):
    pass


class AttachmentTooLarge(UploadError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Attachment of {size} bytes exceeds the {limit} byte limit")
        self.size = size
        self.limit = limit


class SendFailed(WidgetError):
    pass


class ChatRejected(WidgetError):
    """A user action the current state does not allow (shown to the visitor, not logged as an error)."""


class InvalidTransition(WidgetError):
    pass


class CsatError(WidgetError):
    pass
