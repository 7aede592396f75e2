"""Exception taxonomy.

Catalog errors abort before any file is read, resolution and decode errors
abort a single file, line errors never leave the extractor, sink errors roll
back a single file.
"""


class LumberjackError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class CatalogError(LumberjackError):
    """The pattern catalog is inconsistent. ``problems`` is the validation report."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        summary = "; ".join(self.problems)
        super().__init__(f"Invalid pattern catalog ({len(self.problems)} problem(s)): {summary}")


# ---------------------------------------------------------------------------
# Resolution (fatal per file)
# ---------------------------------------------------------------------------


class ResolutionError(LumberjackError):
    """The dialect of an input file could not be determined."""


class NoDialectMatch(ResolutionError):
    def __init__(self, scanned: int):
        self.scanned = scanned
        super().__init__(f"No dialect claims the input (scanned {scanned} line(s))")


class AmbiguousDialect(ResolutionError):
    def __init__(self, dialects: list[str]):
        self.dialects = sorted(dialects)
        super().__init__(f"Input claimed by more than one dialect: {', '.join(self.dialects)}")


class InvalidVersion(ResolutionError):
    def __init__(self, text: str):
        self.text = text
        super().__init__(f"Unparseable version string '{text}'")


class UnsupportedVersion(ResolutionError):
    def __init__(self, dialect: str, version: str):
        self.dialect = dialect
        self.version = version
        super().__init__(f"No catalog revision of dialect '{dialect}' covers version {version}")


class MissingLevel(ResolutionError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"'{path}' has no level in its name and its dialect defines no level regex"
        )


# ---------------------------------------------------------------------------
# Line level (recovered inside the extractor)
# ---------------------------------------------------------------------------


class LineError(LumberjackError):
    """A single line could not be fully interpreted."""

    kind = "line_error"


class UnrecognizedLevel(LineError):
    kind = "unrecognized_level"

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Unrecognized level token '{token}'")


class TimestampParseError(LineError):
    kind = "timestamp"

    def __init__(self, text: str, reason: str = "no format matched"):
        self.text = text
        super().__init__(f"Cannot parse timestamp '{text}': {reason}")


class CaptureTypeMismatch(LineError):
    kind = "capture_type_mismatch"

    def __init__(self, event: str, capture: str, expected: str, value: str):
        self.event = event
        self.capture = capture
        self.expected = expected
        self.value = value
        super().__init__(
            f"Event '{event}': capture '{capture}' expected {expected}, got '{value}'"
        )


class InvalidObjectId(LineError):
    kind = "object_id"

    def __init__(self, marker: str, value: str):
        self.marker = marker
        self.value = value
        super().__init__(f"Object marker '{marker}' has a non-integer id '{value}'")


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class DecodeError(LumberjackError):
    """Malformed binary log."""

    def __init__(self, message: str, offset: int):
        self.offset = offset
        super().__init__(f"Invalid binary log: {message} at byte {offset}")


class SinkError(LumberjackError):
    """The Record Sink rejected a file; its partial writes were rolled back."""


class PipelineCancelled(LumberjackError):
    """Cooperative cancellation was requested."""
