class DatasetStoreError(RuntimeError):
    """Raised when the persisted dataset or cursor cannot be read or written."""


class JobAlreadyRunningError(RuntimeError):
    pass
