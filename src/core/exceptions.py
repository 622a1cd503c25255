class AppError(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class ImageStoreError(Exception):
    """Raised when a fetched image cannot be written to the image store."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"cannot store image {key}: {reason}")
        self.key = key
        self.reason = reason
