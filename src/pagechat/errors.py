class PageChatError(Exception):
    pass


class PreconditionError(PageChatError):
    """Input rejected before any network or storage attempt."""


class SendInProgressError(PreconditionError):
    pass


class RemoteError(PageChatError):
    def __init__(self, status: int | None, message: str):
        self.status = status
        self.message = message
        if status is None:
            super().__init__(f"Completion request failed: {message}")
        else:
            super().__init__(f"Completion service returned HTTP {status}: {message}")


class StorageError(PageChatError):
    pass


class NotFoundError(PageChatError):
    def __init__(self, page_load_id: str):
        self.page_load_id = page_load_id
        super().__init__(f"Chat session not found: {page_load_id}")


class ToolExecutionError(PageChatError):
    pass
