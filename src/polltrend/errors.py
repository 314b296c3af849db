class PollPipelineError(RuntimeError):
    """Base class for pipeline failures that are reported per record."""


class ParseFailure(PollPipelineError):
    """A poll page exists but a mandatory field could not be extracted."""

    def __init__(self, field: str, source_ref: str, detail: str | None = None):
        self.field = field
        self.source_ref = source_ref
        message = f"could not extract {field} from {source_ref}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    @property
    def error_code(self) -> str:
        return f"MISSING_{self.field.upper()}"


class NetworkFailure(PollPipelineError):
    """A reference could not be fetched after the allowed retry."""

    def __init__(self, url: str, detail: str, *, timed_out: bool = False):
        self.url = url
        self.timed_out = timed_out
        super().__init__(f"fetch failed for {url}: {detail}")


class LookupTableError(PollPipelineError):
    """Raised when a lookup table file is missing or malformed."""
